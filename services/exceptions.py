# services/exceptions.py
"""
Ledger error taxonomy.

Every error is local and recoverable by the caller. A service that raises
one of these after it started writing leaves the unit of work to be rolled
back by the session owner, so nothing is ever partially committed.
"""


class LedgerError(Exception):
     """Base class for ticket ledger errors."""


class NotFoundError(LedgerError):
     """Unknown student, account, transaction or recharge."""


class InsufficientBalanceError(LedgerError):
     """A debit would take the balance below zero."""

     def __init__(self, balance: int, requested: int):
          self.balance = balance
          self.requested = requested
          super().__init__(f"Insufficient tickets: balance {balance}, requested {requested}")


class DuplicateDebitError(LedgerError):
     """The lesson has already been debited on this account."""

     def __init__(self, account_id: int, lesson_id: int):
          self.account_id = account_id
          self.lesson_id = lesson_id
          super().__init__(f"Lesson {lesson_id} already debited on account {account_id}")


class DuplicateRefundError(LedgerError):
     """The lesson debit has already been refunded."""

     def __init__(self, account_id: int, lesson_id: int):
          self.account_id = account_id
          self.lesson_id = lesson_id
          super().__init__(f"Lesson {lesson_id} already refunded on account {account_id}")


class ConflictError(LedgerError):
     """A concurrent writer created the same row first. Re-read and retry."""


class InvalidPayloadError(LedgerError):
     """Malformed or unverifiable payment provider payload."""


class InvalidRequestError(LedgerError, ValueError):
     """Bad arguments (non-positive amount, missing reference)."""
