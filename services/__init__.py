# services/__init__.py
from .exceptions import (
     LedgerError,
     NotFoundError,
     InsufficientBalanceError,
     DuplicateDebitError,
     DuplicateRefundError,
     ConflictError,
     InvalidPayloadError,
     InvalidRequestError,
)
from .account_service import (
     get_or_create_account,
     get_account_by_student,
     get_balance,
     get_account_summary,
     list_transactions,
)
from .ledger_service import (
     apply_debit,
     apply_credit,
     refund_lesson_debit,
     verify_account_ledger,
)
from .recharge_service import (
     initiate,
     reconcile,
     parse_provider_event,
     get_recharge,
     find_stale_pending_recharges,
)

__all__ = [
     "LedgerError",
     "NotFoundError",
     "InsufficientBalanceError",
     "DuplicateDebitError",
     "DuplicateRefundError",
     "ConflictError",
     "InvalidPayloadError",
     "InvalidRequestError",
     "get_or_create_account",
     "get_account_by_student",
     "get_balance",
     "get_account_summary",
     "list_transactions",
     "apply_debit",
     "apply_credit",
     "refund_lesson_debit",
     "verify_account_ledger",
     "initiate",
     "reconcile",
     "parse_provider_event",
     "get_recharge",
     "find_stale_pending_recharges",
]
