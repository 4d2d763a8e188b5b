# schemas/__init__.py
from .tickets import (
     DebitRequest,
     RefundRequest,
     TicketTransactionResponse,
     TicketAccountResponse,
     TransactionListResponse,
     LedgerVerificationResponse,
)
from .payment import (
     RechargeCreateRequest,
     RechargeResponse,
     RechargeCheckoutResponse,
     RechargeListResponse,
     WebhookResponse,
)

__all__ = [
     "DebitRequest",
     "RefundRequest",
     "TicketTransactionResponse",
     "TicketAccountResponse",
     "TransactionListResponse",
     "LedgerVerificationResponse",
     "RechargeCreateRequest",
     "RechargeResponse",
     "RechargeCheckoutResponse",
     "RechargeListResponse",
     "WebhookResponse",
]
