# routers/tickets.py
"""
Ticket account API routes.

- Students read their own balance and history.
- The lesson-booking service (role SERVICE) or an admin debits a lesson
  and refunds a cancelled one.
- Admins can audit an account ledger.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from database import get_session
from dependencies import verify_token, require_roles, resolve_student_id, ledger_http_error
from models import TicketTransaction, TicketAccount
from schemas.tickets import (
     DebitRequest,
     RefundRequest,
     TicketTransactionResponse,
     TicketAccountResponse,
     TransactionListResponse,
     LedgerVerificationResponse,
)
from services.exceptions import LedgerError
from services.account_service import get_account_summary, get_or_create_account, list_transactions, get_balance
from services.ledger_service import apply_debit, refund_lesson_debit, verify_account_ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/tickets", tags=["tickets"])


@router.get(
     "/account",
     response_model=TicketAccountResponse,
     summary="Get ticket account"
)
def get_ticket_account(
     student_id: Optional[int] = Query(None, description="Student (admins only)"),
     recent: int = Query(5, ge=0, le=50, description="Number of latest transactions"),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """
     Balance, last recharge date and latest transactions.
     The account is created with a zero balance on first access.
     """
     student_id = resolve_student_id(db, token, student_id)
     try:
          account, last_recharge_at, last_tx = get_account_summary(db, student_id, recent=recent)
     except LedgerError as exc:
          db.rollback()
          raise ledger_http_error(exc)
     db.commit()
     return _build_account_response(account, last_recharge_at, last_tx)


@router.get(
     "/account/transactions",
     response_model=TransactionListResponse,
     summary="List ticket transactions"
)
def get_ticket_transactions(
     student_id: Optional[int] = Query(None, description="Student (admins only)"),
     page: int = Query(1, ge=1, description="Page number"),
     page_size: int = Query(50, ge=1, le=100, description="Items per page"),
     db: Session = Depends(get_session),
     token: dict = Depends(verify_token)
):
     """Transaction history, newest first."""
     student_id = resolve_student_id(db, token, student_id)
     try:
          items, total = list_transactions(db, student_id, page=page, page_size=page_size)
          balance = get_balance(db, student_id)
     except LedgerError as exc:
          raise ledger_http_error(exc)

     return TransactionListResponse(
          transactions=[_build_transaction_response(tx) for tx in items],
          total=total,
          page=page,
          page_size=page_size,
          balance=balance,
     )


@router.post(
     "/debit",
     response_model=TicketTransactionResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Debit a lesson"
)
def debit_lesson(
     body: DebitRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(require_roles("ADMIN", "SERVICE"))
):
     """
     Consume tickets for a lesson.

     - **402** when the balance is insufficient (nothing is written)
     - **409** when the lesson was already debited
     """
     try:
          account = get_or_create_account(db, body.student_id)
          tx = apply_debit(db, account.id, body.amount, body.lesson_id, body.description)
     except LedgerError as exc:
          db.rollback()
          logger.info("Debit of lesson %s for student %s rejected: %s", body.lesson_id, body.student_id, exc)
          raise ledger_http_error(exc)

     db.commit()
     return _build_transaction_response(tx)


@router.post(
     "/refund",
     response_model=TicketTransactionResponse,
     status_code=status.HTTP_201_CREATED,
     summary="Refund a lesson debit"
)
def refund_lesson(
     body: RefundRequest,
     db: Session = Depends(get_session),
     token: dict = Depends(require_roles("ADMIN", "SERVICE"))
):
     """
     Give back the tickets of a cancelled lesson (once per lesson).
     This does not refund a purchase; purchase refunds come from the payment provider.
     """
     try:
          account = get_or_create_account(db, body.student_id)
          tx = refund_lesson_debit(
               db,
               account.id,
               lesson_id=body.lesson_id,
               debit_transaction_uuid=str(body.debit_transaction_uuid) if body.debit_transaction_uuid else None,
               reason=body.reason,
          )
     except LedgerError as exc:
          db.rollback()
          raise ledger_http_error(exc)

     db.commit()
     return _build_transaction_response(tx)


@router.get(
     "/accounts/{account_id}/verify",
     response_model=LedgerVerificationResponse,
     summary="Verify an account ledger"
)
def verify_ticket_ledger(
     account_id: int,
     db: Session = Depends(get_session),
     token: dict = Depends(require_roles("ADMIN"))
):
     """
     Replay the account's transactions and check the balance chain
     and the stored balance.
     """
     if db.query(TicketAccount.id).filter(TicketAccount.id == account_id).first() is None:
          raise HTTPException(
               status_code=status.HTTP_404_NOT_FOUND,
               detail=f"Ticket account with ID {account_id} not found"
          )
     valid, message, count = verify_account_ledger(db, account_id)
     if not valid:
          logger.error("Ledger verification failed for account %s: %s", account_id, message)
     return LedgerVerificationResponse(
          verified=valid,
          message=message,
          entries_checked=count,
          account_id=account_id,
     )


def _build_transaction_response(tx: TicketTransaction) -> TicketTransactionResponse:
     return TicketTransactionResponse(
          uuid=tx.uuid,
          type=tx.type.value,
          amount=tx.amount,
          description=tx.description,
          lesson_id=tx.lesson_id,
          balance_before=tx.balance_before,
          balance_after=tx.balance_after,
          created_at=tx.created_at,
          recharge_uuid=tx.recharge.uuid if tx.recharge is not None else None,
     )


def _build_account_response(account: TicketAccount, last_recharge_at, last_tx) -> TicketAccountResponse:
     return TicketAccountResponse(
          uuid=account.uuid,
          student_id=account.student_id,
          balance=account.balance,
          created_at=account.created_at,
          updated_at=account.updated_at,
          last_recharge_at=last_recharge_at,
          last_transactions=[_build_transaction_response(tx) for tx in last_tx],
     )
