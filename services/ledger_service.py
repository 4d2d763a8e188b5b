# services/ledger_service.py
"""
Ticket Ledger Service - the only writer of ticket balances.

Every balance change:
1. Locks the account row (FOR UPDATE; UPDLOCK, ROWLOCK hint on SQL Server)
2. Computes the new balance from the locked, committed balance
3. Appends an immutable TicketTransaction with balance_before / balance_after
4. Updates the account balance in the same unit of work

The caller owns the unit of work (request session or get_session_context):
the transaction row and the balance update commit together or not at all.
A balance notification is queued and only sent once that commit succeeds.

Verification: replay an account's transactions and check the chain
(each balance_after equals the next balance_before) and the balance.
"""
import logging
from typing import Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from database import for_update
from models import TicketAccount, TicketTransaction, TransactionType, utcnow
from .exceptions import (
     NotFoundError,
     InsufficientBalanceError,
     DuplicateDebitError,
     DuplicateRefundError,
     InvalidRequestError,
)
from .notification_service import BalanceNotification, queue_notification

logger = logging.getLogger(__name__)


def _check_amount(amount: int) -> int:
     if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
          raise InvalidRequestError(f"Amount must be a positive integer, got {amount!r}")
     return amount


def account_lock_query(db: Session, account_id: int) -> Query:
     return for_update(
          db.query(TicketAccount).filter(TicketAccount.id == account_id),
          TicketAccount,
     ).populate_existing()


def lock_account(db: Session, account_id: int) -> TicketAccount:
     """
     Load an account holding a write lock on its row until the unit of work ends.

     populate_existing() refreshes an instance already in the identity map,
     so the balance read is the committed one observed under the lock.
     """
     account = account_lock_query(db, account_id).first()
     if account is None:
          raise NotFoundError(f"Ticket account with ID {account_id} not found")
     return account


def _find_lesson_transaction(
     db: Session,
     account_id: int,
     lesson_id: int,
     tx_type: TransactionType
) -> Optional[TicketTransaction]:
     return (
          db.query(TicketTransaction)
          .filter(
               TicketTransaction.account_id == account_id,
               TicketTransaction.lesson_id == lesson_id,
               TicketTransaction.type == tx_type,
          )
          .first()
     )


def _append(
     db: Session,
     account: TicketAccount,
     tx_type: TransactionType,
     amount: int,
     description: str,
     lesson_id: Optional[int] = None,
     recharge_id: Optional[int] = None,
) -> TicketTransaction:
     """Append one ledger row and move the balance. The account must be locked."""
     balance_before = account.balance
     if tx_type == TransactionType.CREDIT:
          balance_after = balance_before + amount
     else:
          balance_after = balance_before - amount
          if balance_after < 0:
               raise InsufficientBalanceError(balance_before, amount)

     now = utcnow()
     tx = TicketTransaction(
          uuid=str(uuid4()),
          account_id=account.id,
          recharge_id=recharge_id,
          lesson_id=lesson_id,
          type=tx_type,
          amount=amount,
          balance_before=balance_before,
          balance_after=balance_after,
          description=description,
          created_at=now,
     )
     db.add(tx)
     account.balance = balance_after
     account.updated_at = now
     db.flush()

     queue_notification(db, BalanceNotification(
          student_id=account.student_id,
          account_uuid=account.uuid,
          transaction_uuid=tx.uuid,
          transaction_type=tx_type.value,
          amount=amount,
          balance_after=balance_after,
          description=description,
     ))
     logger.info(
          "Ticket %s of %d on account %s: %d -> %d",
          tx_type.value, amount, account.id, balance_before, balance_after
     )
     return tx


def apply_debit(
     db: Session,
     account_id: int,
     amount: int,
     lesson_id: Optional[int],
     description: Optional[str] = None
) -> TicketTransaction:
     """
     Debit tickets from an account (lesson consumption).

     A lesson can be debited once per account: a second debit for the same
     lesson_id raises DuplicateDebitError and writes nothing.

     Raises:
          InvalidRequestError: amount is not a positive integer.
          NotFoundError: unknown account.
          DuplicateDebitError: lesson already debited.
          InsufficientBalanceError: balance would go negative (no write).
     """
     _check_amount(amount)
     account = lock_account(db, account_id)

     if lesson_id is not None and _find_lesson_transaction(db, account.id, lesson_id, TransactionType.DEBIT):
          logger.info("Rejected duplicate debit of lesson %s on account %s", lesson_id, account.id)
          raise DuplicateDebitError(account.id, lesson_id)

     if description is None:
          description = f"Lesson #{lesson_id} debit" if lesson_id is not None else "Ticket debit"

     try:
          return _append(db, account, TransactionType.DEBIT, amount, description, lesson_id=lesson_id)
     except IntegrityError as exc:
          # Unique index on (account_id, lesson_id) for debits
          db.rollback()
          raise DuplicateDebitError(account_id, lesson_id) from exc


def apply_credit(
     db: Session,
     account_id: int,
     amount: int,
     recharge_id: Optional[int] = None,
     description: Optional[str] = None
) -> TicketTransaction:
     """
     Credit tickets to an account (recharge or manual grant).

     Raises:
          InvalidRequestError: amount is not a positive integer.
          NotFoundError: unknown account.
     """
     _check_amount(amount)
     account = lock_account(db, account_id)
     if description is None:
          description = f"Recharge #{recharge_id} credit" if recharge_id is not None else "Ticket credit"
     return _append(db, account, TransactionType.CREDIT, amount, description, recharge_id=recharge_id)


def reverse_recharge_credit(
     db: Session,
     account_id: int,
     amount: int,
     recharge_id: int,
     description: Optional[str] = None
) -> TicketTransaction:
     """
     Offsetting DEBIT for a refunded recharge.

     Follows the debit rules: the refund is rejected with
     InsufficientBalanceError when the credited tickets were already spent.
     """
     _check_amount(amount)
     account = lock_account(db, account_id)
     if description is None:
          description = f"Recharge #{recharge_id} refunded"
     return _append(db, account, TransactionType.DEBIT, amount, description, recharge_id=recharge_id)


def refund_lesson_debit(
     db: Session,
     account_id: int,
     lesson_id: Optional[int] = None,
     debit_transaction_uuid: Optional[str] = None,
     reason: Optional[str] = None
) -> TicketTransaction:
     """
     Give back the tickets of a lesson debit (lesson cancelled or not held).

     The lesson DEBIT is found by its transaction uuid (preferred) or by
     lesson id. A lesson is refunded at most once.

     Raises:
          InvalidRequestError: no reference given.
          NotFoundError: unknown account or no matching lesson debit.
          DuplicateRefundError: lesson already refunded.
     """
     if debit_transaction_uuid is None and (lesson_id is None or lesson_id <= 0):
          raise InvalidRequestError("A debit transaction uuid or a lesson id is required")

     account = lock_account(db, account_id)

     query = db.query(TicketTransaction).filter(
          TicketTransaction.account_id == account.id,
          TicketTransaction.type == TransactionType.DEBIT,
          TicketTransaction.lesson_id.isnot(None),
     )
     if debit_transaction_uuid is not None:
          query = query.filter(TicketTransaction.uuid == str(debit_transaction_uuid))
     else:
          query = query.filter(TicketTransaction.lesson_id == lesson_id)
     debit = query.first()
     if debit is None:
          raise NotFoundError("No lesson debit matches the refund request")

     if _find_lesson_transaction(db, account.id, debit.lesson_id, TransactionType.CREDIT):
          raise DuplicateRefundError(account.id, debit.lesson_id)

     description = f"Lesson #{debit.lesson_id} refund"
     if reason and reason.strip():
          description = f"{description} ({reason.strip()})"[:255]

     try:
          return _append(db, account, TransactionType.CREDIT, debit.amount, description, lesson_id=debit.lesson_id)
     except IntegrityError as exc:
          db.rollback()
          raise DuplicateRefundError(account_id, debit.lesson_id) from exc


def verify_account_ledger(db: Session, account_id: int) -> Tuple[bool, str, int]:
     """
     Replay an account's transactions and check the ledger invariants.

     - each row moves the balance by exactly +amount (CREDIT) / -amount (DEBIT)
     - each balance_before equals the previous balance_after (first starts at 0)
     - the account balance equals the sum of credits minus debits

     Returns:
          (all_valid: bool, message: str, entries_checked: int)
     """
     account = db.query(TicketAccount).filter(TicketAccount.id == account_id).first()
     if account is None:
          return False, "Ticket account not found", 0

     entries = (
          db.query(TicketTransaction)
          .filter(TicketTransaction.account_id == account_id)
          .order_by(TicketTransaction.id)
          .all()
     )

     running = 0
     checked = 0
     for entry in entries:
          if entry.balance_before != running:
               return False, f"Chain broken at transaction id={entry.id}: balance_before mismatch", checked
          if entry.balance_after - entry.balance_before != entry.signed_amount:
               return False, f"Amount mismatch at transaction id={entry.id}", checked
          if entry.balance_after < 0:
               return False, f"Negative balance at transaction id={entry.id}", checked
          running = entry.balance_after
          checked += 1

     if account.balance != running:
          return False, f"Balance mismatch: stored={account.balance}, ledger={running}", checked

     if not entries:
          return True, "Ledger is empty (no transactions)", 0
     return True, "Ledger verification passed", checked
