# routers/payments.py
"""
Ticket purchase API.

POST /api/payments/recharges: start a purchase (PENDING recharge + PayMaya checkout).
POST /api/payments/webhook: PayMaya payment result; credits the tickets exactly once.
Tickets are never credited from the client redirect, only from the webhook.
"""
import logging
from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

import config
from database import get_session
from dependencies import verify_token, require_roles, resolve_student_id, token_role, ledger_http_error
from schemas.payment import (
     RechargeCreateRequest,
     RechargeResponse,
     RechargeCheckoutResponse,
     RechargeListResponse,
     WebhookResponse,
)
from services.exceptions import LedgerError, InvalidPayloadError
from services.recharge_service import (
     initiate,
     get_recharge,
     find_stale_pending_recharges,
     parse_provider_event,
     reconcile,
)
from utils import paymaya

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["payments"])

SIGNATURE_HEADERS = ("X-Signature", "Paymaya-Signature")


@router.post(
     "/recharges",
     response_model=RechargeCheckoutResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Buy tickets"
)
def create_recharge(
     body: RechargeCreateRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """
     Record a PENDING recharge and open a PayMaya checkout for it.

     The recharge is committed before the provider is called, so a webhook
     can always find it. When PayMaya is not configured the recharge is
     returned without a redirect URL.
     """
     student_id = resolve_student_id(db, token, body.student_id)
     try:
          recharge = initiate(
               db,
               student_id,
               body.amount,
               body.currency,
               body.tickets,
               payment_method=body.payment_method,
               comment=body.comment,
          )
     except LedgerError as exc:
          db.rollback()
          raise ledger_http_error(exc)
     db.commit()

     if not paymaya.is_configured():
          logger.warning("PayMaya is not configured; recharge %s has no checkout", recharge.reference)
          return RechargeCheckoutResponse(recharge=RechargeResponse.model_validate(recharge))

     try:
          checkout = paymaya.create_checkout(recharge)
     except Exception as exc:
          logger.exception("Checkout creation failed for recharge %s", recharge.reference)
          raise HTTPException(
               status_code=status.HTTP_502_BAD_GATEWAY,
               detail=f"Payment provider error for {recharge.reference}"
          ) from exc

     return RechargeCheckoutResponse(
          recharge=RechargeResponse.model_validate(recharge),
          checkout_id=checkout.get("checkoutId"),
          redirect_url=checkout.get("redirectUrl"),
     )


@router.get(
     "/recharges/stale",
     response_model=RechargeListResponse,
     summary="List stale pending recharges"
)
def list_stale_recharges(
     db: Session = Depends(get_session),
     token: dict = Depends(require_roles("ADMIN"))
):
     """PENDING recharges older than STALE_RECHARGE_MINUTES, for manual follow-up."""
     recharges = find_stale_pending_recharges(db, timedelta(minutes=config.STALE_RECHARGE_MINUTES))
     return RechargeListResponse(
          recharges=[RechargeResponse.model_validate(r) for r in recharges],
          total=len(recharges),
     )


@router.get(
     "/recharges/{recharge_uuid}",
     response_model=RechargeResponse,
     summary="Get recharge status"
)
def get_recharge_status(
     recharge_uuid: UUID,
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     try:
          recharge = get_recharge(db, recharge_uuid)
     except LedgerError as exc:
          raise ledger_http_error(exc)

     if token_role(token) not in ("ADMIN", "SERVICE"):
          if resolve_student_id(db, token) != recharge.student_id:
               raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="You do not have permission to view this recharge"
               )
     return recharge


@router.post("/webhook", response_model=WebhookResponse)
async def paymaya_webhook(
     request: Request,
     db: Session = Depends(get_session),
):
     """
     Receives PayMaya payment results.

     Redelivered events are acknowledged with applied=false. A refund whose
     tickets were already spent is rejected with 402 and the recharge stays
     SUCCESS.
     """
     raw_body = await request.body()
     signature = next((request.headers.get(h) for h in SIGNATURE_HEADERS if request.headers.get(h)), None)
     if not paymaya.verify_webhook_signature(raw_body, signature):
          logger.warning("Rejected webhook with invalid signature")
          raise ledger_http_error(InvalidPayloadError("Invalid webhook signature"))

     def _process():
          external_id, outcome = parse_provider_event(raw_body)
          recharge, applied = reconcile(db, external_id, outcome, raw_body)
          db.commit()
          return external_id, recharge, applied

     # Row locks and the commit block; keep them off the event loop
     try:
          external_id, recharge, applied = await run_in_threadpool(_process)
     except LedgerError as exc:
          await run_in_threadpool(db.rollback)
          logger.warning("Webhook rejected: %s", exc)
          raise ledger_http_error(exc)

     return WebhookResponse(
          reference=recharge.reference,
          status=recharge.status.value,
          applied=applied,
          provider_reference=external_id,
          message="Processed" if applied else "Already processed",
     )
