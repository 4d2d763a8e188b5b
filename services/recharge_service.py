# services/recharge_service.py
"""
Recharge Reconciler - ticket purchases confirmed by payment webhooks.

1. initiate() records a PENDING recharge; its reference (RCH-<uuid>) is sent
   to the payment provider as requestReferenceNumber.
2. The provider calls the webhook; reconcile() matches the event to the
   recharge and applies it exactly once:
     PENDING  + SUCCESS   -> SUCCESS and one CREDIT of the recharge tickets
     PENDING  + FAILED    -> FAILED
     PENDING  + REFUNDED  -> REFUNDED
     SUCCESS  + REFUNDED  -> REFUNDED and one offsetting DEBIT
     anything else        -> no-op, the recharge is returned unchanged

Redelivered events are always safe: the recharge row is locked while it is
reconciled, the provider transaction id is unique, and a recharge owns at
most one CREDIT (unique index).
"""
import json
import logging
import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple, List, Union
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from database import for_update
from models import Student, TicketRecharge, RechargeStatus, utcnow
from models.ticket_recharge import REFERENCE_PREFIX, TERMINAL_STATUSES
from .account_service import get_or_create_account
from .exceptions import (
     NotFoundError,
     ConflictError,
     InvalidPayloadError,
     InvalidRequestError,
)
from .ledger_service import apply_credit, reverse_recharge_credit

logger = logging.getLogger(__name__)

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

# Provider event name -> recharge outcome
PROVIDER_EVENTS = {
     "CHECKOUT.SUCCESS": RechargeStatus.SUCCESS,
     "PAYMENT_SUCCESS": RechargeStatus.SUCCESS,
     "CHECKOUT.FAILURE": RechargeStatus.FAILED,
     "CHECKOUT.DROPOUT": RechargeStatus.FAILED,
     "PAYMENT_FAILED": RechargeStatus.FAILED,
     "PAYMENT_EXPIRED": RechargeStatus.FAILED,
     "REFUND_SUCCESS": RechargeStatus.REFUNDED,
     "PAYMENT.REFUNDED": RechargeStatus.REFUNDED,
}


# ---------------------------------------------------------------------------
# Purchase initiation
# ---------------------------------------------------------------------------

def initiate(
     db: Session,
     student_id: int,
     amount: Union[Decimal, str, int],
     currency: str,
     tickets_requested: int,
     payment_method: Optional[str] = None,
     comment: Optional[str] = None
) -> TicketRecharge:
     """
     Record a PENDING recharge for a purchase about to be paid.

     Nothing is credited here; tickets are added when the provider confirms.

     Raises:
          InvalidRequestError: non-positive amount or ticket count, bad currency.
          NotFoundError: unknown student.
     """
     try:
          amount = Decimal(str(amount))
     except InvalidOperation as exc:
          raise InvalidRequestError(f"Invalid amount {amount!r}") from exc
     if amount <= 0:
          raise InvalidRequestError("Amount must be positive")
     if not currency or not CURRENCY_PATTERN.match(currency):
          raise InvalidRequestError(f"Invalid currency {currency!r} (ISO 4217 expected, e.g. PHP)")
     if isinstance(tickets_requested, bool) or not isinstance(tickets_requested, int) or tickets_requested <= 0:
          raise InvalidRequestError("Ticket count must be a positive integer")

     student = db.query(Student).filter(Student.id == student_id).first()
     if student is None:
          raise NotFoundError(f"Student with ID {student_id} not found")

     now = utcnow()
     recharge = TicketRecharge(
          uuid=str(uuid4()),
          student_id=student_id,
          amount=amount,
          currency=currency,
          tickets_credited=tickets_requested,
          status=RechargeStatus.PENDING,
          payment_method=payment_method,
          comment=comment,
          created_at=now,
          updated_at=now,
     )
     db.add(recharge)
     db.flush()
     logger.info(
          "Initiated recharge %s for student %s: %s %s for %d ticket(s)",
          recharge.reference, student_id, amount, currency, tickets_requested
     )
     return recharge


def get_recharge(db: Session, recharge_uuid: Union[UUID, str]) -> TicketRecharge:
     recharge = db.query(TicketRecharge).filter(TicketRecharge.uuid == str(recharge_uuid)).first()
     if recharge is None:
          raise NotFoundError(f"Recharge {recharge_uuid} not found")
     return recharge


def find_stale_pending_recharges(db: Session, older_than: timedelta) -> List[TicketRecharge]:
     """PENDING recharges created before now - older_than, oldest first."""
     cutoff = utcnow() - older_than
     return (
          db.query(TicketRecharge)
          .filter(
               TicketRecharge.status == RechargeStatus.PENDING,
               TicketRecharge.created_at < cutoff,
          )
          .order_by(TicketRecharge.created_at.asc(), TicketRecharge.id.asc())
          .all()
     )


# ---------------------------------------------------------------------------
# Webhook payload handling
# ---------------------------------------------------------------------------

def _load_payload(raw_payload: Union[str, bytes]) -> dict:
     try:
          payload = json.loads(raw_payload)
     except (TypeError, ValueError) as exc:
          raise InvalidPayloadError("Webhook payload is not valid JSON") from exc
     if not isinstance(payload, dict):
          raise InvalidPayloadError("Webhook payload must be a JSON object")
     return payload


def _event_data(payload: dict) -> dict:
     data = payload.get("data")
     return data if isinstance(data, dict) else payload


def _payload_reference(payload: dict) -> Optional[str]:
     """Recharge uuid carried by the requestReferenceNumber of the event, if any."""
     reference = _event_data(payload).get("requestReferenceNumber") or payload.get("requestReferenceNumber")
     if reference is None:
          return None
     if not isinstance(reference, str) or not reference.startswith(REFERENCE_PREFIX):
          raise InvalidPayloadError(f"Invalid recharge reference {reference!r}")
     try:
          return str(UUID(reference[len(REFERENCE_PREFIX):]))
     except ValueError as exc:
          raise InvalidPayloadError(f"Invalid recharge reference {reference!r}") from exc


def _extract_reference(payload: dict) -> str:
     recharge_uuid = _payload_reference(payload)
     if recharge_uuid is None:
          raise InvalidPayloadError("Missing recharge reference")
     return recharge_uuid


def parse_provider_event(raw_payload: Union[str, bytes]) -> Tuple[str, RechargeStatus]:
     """
     Extract (external_transaction_id, outcome) from a provider webhook body.

     Accepts both the checkout event shape ({"event": ..., "data": {"id": ...}})
     and the payment status shape ({"id": ..., "status": ...}).

     Raises:
          InvalidPayloadError: malformed body or unknown event.
     """
     payload = _load_payload(raw_payload)
     data = _event_data(payload)
     event_name = payload.get("event") or data.get("status") or payload.get("status")
     outcome = PROVIDER_EVENTS.get(str(event_name).upper()) if event_name else None
     if outcome is None:
          raise InvalidPayloadError(f"Unsupported payment event {event_name!r}")
     external_id = data.get("id") or payload.get("id")
     if not isinstance(external_id, str) or not external_id.strip():
          raise InvalidPayloadError("Missing provider transaction id")
     return external_id.strip(), outcome


def _coerce_outcome(outcome: Union[RechargeStatus, str]) -> RechargeStatus:
     if isinstance(outcome, str) and not isinstance(outcome, RechargeStatus):
          outcome = outcome.strip().upper()
     try:
          status = RechargeStatus(outcome)
     except ValueError as exc:
          raise InvalidPayloadError(f"Unknown payment outcome {outcome!r}") from exc
     if status not in TERMINAL_STATUSES:
          raise InvalidPayloadError(f"Outcome {status.value} is not a final payment state")
     return status


def recharge_lock_query(db: Session, *criteria) -> Query:
     return for_update(db.query(TicketRecharge).filter(*criteria), TicketRecharge).populate_existing()


def _lock_recharge(db: Session, *criteria) -> Optional[TicketRecharge]:
     return recharge_lock_query(db, *criteria).first()


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

def reconcile(
     db: Session,
     external_transaction_id: str,
     outcome: Union[RechargeStatus, str],
     raw_payload: Union[str, bytes]
) -> Tuple[TicketRecharge, bool]:
     """
     Apply a provider outcome to its recharge, exactly once.

     Returns:
          (recharge, applied) - applied is False when the event was a
          redelivery or otherwise had no effect.

     Raises:
          InvalidPayloadError: malformed payload (nothing is written).
          NotFoundError: the payload references no known recharge.
          InsufficientBalanceError: refund after SUCCESS whose tickets were
               already spent (the recharge stays SUCCESS).
          ConflictError: the provider transaction id is already bound to
               another recharge.

     Any failure after the first write rolls back the whole unit of work,
     so the recharge stays reconcilable on redelivery.
     """
     status = _coerce_outcome(outcome)
     if not isinstance(external_transaction_id, str) or not external_transaction_id.strip():
          raise InvalidPayloadError("Missing provider transaction id")
     external_transaction_id = external_transaction_id.strip()
     payload = _load_payload(raw_payload)
     raw_text = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload

     recharge = _lock_recharge(db, TicketRecharge.external_transaction_id == external_transaction_id)
     if recharge is None:
          recharge_uuid = _extract_reference(payload)
          recharge = _lock_recharge(db, TicketRecharge.uuid == recharge_uuid)
          if recharge is None:
               raise NotFoundError(f"Recharge {REFERENCE_PREFIX}{recharge_uuid} not found")
     else:
          referenced = _payload_reference(payload)
          if referenced is not None and referenced != recharge.uuid:
               raise ConflictError(
                    f"Provider transaction {external_transaction_id} is bound to {recharge.reference}, "
                    f"not {REFERENCE_PREFIX}{referenced}"
               )

     if recharge.status == RechargeStatus.PENDING:
          try:
               if status == RechargeStatus.SUCCESS:
                    _apply_success(db, recharge, external_transaction_id, raw_text)
               else:
                    _apply_final_status(db, recharge, status, external_transaction_id, raw_text)
          except Exception:
               db.rollback()
               raise
          return recharge, True

     if recharge.status == RechargeStatus.SUCCESS and status == RechargeStatus.REFUNDED:
          try:
               _apply_refund(db, recharge, raw_text)
          except Exception:
               db.rollback()
               raise
          return recharge, True

     if recharge.status == RechargeStatus.FAILED and status == RechargeStatus.SUCCESS:
          logger.warning(
               "SUCCESS received for FAILED recharge %s (provider transaction %s); needs manual review",
               recharge.reference, external_transaction_id
          )
     else:
          logger.info(
               "Ignored %s event for recharge %s already %s",
               status.value, recharge.reference, recharge.status.value
          )
     return recharge, False


def _bind_external_id(db: Session, recharge: TicketRecharge, external_transaction_id: str) -> None:
     recharge.external_transaction_id = external_transaction_id
     try:
          db.flush()
     except IntegrityError as exc:
          raise ConflictError(
               f"Provider transaction {external_transaction_id} is already bound to another recharge"
          ) from exc


def _apply_success(db: Session, recharge: TicketRecharge, external_transaction_id: str, raw_text: str) -> None:
     account = get_or_create_account(db, recharge.student_id)
     now = utcnow()
     recharge.status = RechargeStatus.SUCCESS
     recharge.paid_at = now
     recharge.raw_payload = raw_text
     recharge.updated_at = now
     _bind_external_id(db, recharge, external_transaction_id)

     tx = apply_credit(
          db,
          account.id,
          recharge.tickets_credited,
          recharge_id=recharge.id,
          description=f"Recharge {recharge.reference}: {recharge.tickets_credited} ticket(s)",
     )
     logger.info("Recharge %s succeeded, credited transaction %s", recharge.reference, tx.uuid)


def _apply_final_status(
     db: Session,
     recharge: TicketRecharge,
     status: RechargeStatus,
     external_transaction_id: str,
     raw_text: str
) -> None:
     recharge.status = status
     recharge.raw_payload = raw_text
     recharge.updated_at = utcnow()
     _bind_external_id(db, recharge, external_transaction_id)
     logger.info("Recharge %s marked %s", recharge.reference, status.value)


def _apply_refund(db: Session, recharge: TicketRecharge, raw_text: str) -> None:
     account = get_or_create_account(db, recharge.student_id)
     tx = reverse_recharge_credit(
          db,
          account.id,
          recharge.tickets_credited,
          recharge.id,
          description=f"Recharge {recharge.reference} refunded: {recharge.tickets_credited} ticket(s)",
     )
     recharge.status = RechargeStatus.REFUNDED
     recharge.raw_payload = raw_text
     recharge.updated_at = utcnow()
     db.flush()
     logger.info("Recharge %s refunded, reversal transaction %s", recharge.reference, tx.uuid)
