# services/account_service.py
"""
Account Manager - one ticket account per student.

Accounts are created lazily the first time a student needs one (first
balance lookup, first purchase, first lesson). The balance itself is only
ever changed by services/ledger_service.py.
"""
import logging
from datetime import datetime
from typing import Optional, Tuple, List
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import Student, TicketAccount, TicketTransaction, TicketRecharge, RechargeStatus, utcnow
from .exceptions import NotFoundError, ConflictError

logger = logging.getLogger(__name__)


def get_account_by_student(db: Session, student_id: int) -> Optional[TicketAccount]:
     """Return the student's account, or None if it was never created."""
     return db.query(TicketAccount).filter(TicketAccount.student_id == student_id).first()


def get_or_create_account(db: Session, student_id: int) -> TicketAccount:
     """
     Return the student's account, creating it with a zero balance if absent.

     Raises:
          NotFoundError: If the student does not exist.
          ConflictError: If a concurrent request created the account first.
               The unit of work has been rolled back; re-read to get it.
     """
     account = get_account_by_student(db, student_id)
     if account is not None:
          return account

     student = db.query(Student).filter(Student.id == student_id).first()
     if student is None:
          raise NotFoundError(f"Student with ID {student_id} not found")

     now = utcnow()
     account = TicketAccount(
          uuid=str(uuid4()),
          student_id=student_id,
          balance=0,
          created_at=now,
          updated_at=now,
     )
     db.add(account)
     try:
          db.flush()
     except IntegrityError as exc:
          db.rollback()
          logger.warning("Concurrent ticket account creation for student %s", student_id)
          raise ConflictError(f"Ticket account for student {student_id} was created concurrently") from exc

     logger.info("Created ticket account %s for student %s", account.uuid, student_id)
     return account


def get_balance(db: Session, student_id: int) -> int:
     """
     Current ticket balance of a student.

     Raises:
          NotFoundError: If the student has no account.
     """
     account = get_account_by_student(db, student_id)
     if account is None:
          raise NotFoundError(f"No ticket account for student {student_id}")
     return account.balance


def get_last_recharge_at(db: Session, student_id: int) -> Optional[datetime]:
     """Payment time of the student's latest successful recharge."""
     last = (
          db.query(TicketRecharge)
          .filter(
               TicketRecharge.student_id == student_id,
               TicketRecharge.status == RechargeStatus.SUCCESS,
          )
          .order_by(TicketRecharge.paid_at.desc(), TicketRecharge.id.desc())
          .first()
     )
     return last.paid_at if last else None


def get_account_summary(
     db: Session,
     student_id: int,
     recent: int = 5
) -> Tuple[TicketAccount, Optional[datetime], List[TicketTransaction]]:
     """
     Account, last recharge time and latest transactions (newest first).

     Creates the account on first access.
     """
     account = get_or_create_account(db, student_id)
     last_tx = (
          db.query(TicketTransaction)
          .filter(TicketTransaction.account_id == account.id)
          .order_by(TicketTransaction.created_at.desc(), TicketTransaction.id.desc())
          .limit(recent)
          .all()
     )
     return account, get_last_recharge_at(db, student_id), last_tx


def list_transactions(
     db: Session,
     student_id: int,
     page: int = 1,
     page_size: int = 50
) -> Tuple[List[TicketTransaction], int]:
     """
     Paginated transaction history of a student (newest first).

     Returns:
          (transactions, total)

     Raises:
          NotFoundError: If the student has no account.
     """
     account = get_account_by_student(db, student_id)
     if account is None:
          raise NotFoundError(f"No ticket account for student {student_id}")

     query = db.query(TicketTransaction).filter(TicketTransaction.account_id == account.id)
     total = query.count()
     offset = (page - 1) * page_size
     items = (
          query.order_by(TicketTransaction.created_at.desc(), TicketTransaction.id.desc())
          .offset(offset)
          .limit(page_size)
          .all()
     )
     return items, total
