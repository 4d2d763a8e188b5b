# services/notification_service.py
"""
Balance-change notifications.

Ledger writes queue a notification on the session; it is dispatched only
after that session commits and discarded if it rolls back. Dispatch is
fire-and-forget: a failing notification is logged and never reaches the
ledger transaction.
"""
import logging
from dataclasses import dataclass, field
from typing import Callable, List

from sqlalchemy import event
from sqlalchemy.orm import Session

from utils.notifications import send_balance_notification

logger = logging.getLogger(__name__)

_PENDING_KEY = "pending_balance_notifications"


@dataclass(frozen=True)
class BalanceNotification:
     """User-facing balance update for one committed ledger transaction."""
     student_id: int
     account_uuid: str
     transaction_uuid: str
     transaction_type: str
     amount: int
     balance_after: int
     description: str = ""
     kind: str = "TICKET_BALANCE_UPDATED"
     metadata: dict = field(default_factory=dict)

     def to_payload(self) -> dict:
          return {
               "type": self.kind,
               "student_id": self.student_id,
               "title": "Ticket balance updated",
               "message": self.description or f"{self.transaction_type} of {self.amount} ticket(s)",
               "metadata": {
                    "account_uuid": self.account_uuid,
                    "transaction_uuid": self.transaction_uuid,
                    "transaction_type": self.transaction_type,
                    "amount": self.amount,
                    "balance_after": self.balance_after,
                    **self.metadata,
               },
          }


# Replaced in tests to capture dispatched notifications
dispatcher: Callable[[dict], None] = send_balance_notification


def queue_notification(db: Session, notification: BalanceNotification) -> None:
     """Attach a notification to the session's current unit of work."""
     db.info.setdefault(_PENDING_KEY, []).append(notification)


def pending_notifications(db: Session) -> List[BalanceNotification]:
     return list(db.info.get(_PENDING_KEY, []))


@event.listens_for(Session, "after_commit")
def _dispatch_after_commit(session: Session) -> None:
     queued = session.info.pop(_PENDING_KEY, [])
     for notification in queued:
          try:
               dispatcher(notification.to_payload())
          except Exception:
               logger.exception(
                    "Balance notification failed for student %s (transaction %s)",
                    notification.student_id,
                    notification.transaction_uuid,
               )


@event.listens_for(Session, "after_soft_rollback")
def _discard_after_rollback(session: Session, previous_transaction) -> None:
     dropped = session.info.pop(_PENDING_KEY, [])
     if dropped:
          logger.debug("Discarded %d balance notification(s) after rollback", len(dropped))
