# models/ticket_transaction.py
"""
TicketTransaction model - immutable ledger entry of a ticket account.

Every balance change appends exactly one row carrying the balance before and
after the change. Rows are append-only; nothing updates or deletes them.

Filtered unique indexes back the service-level guards:
- one lesson DEBIT per (account, lesson)
- one lesson refund CREDIT per (account, lesson)
- one CREDIT and one reversal DEBIT per recharge
"""
import enum

from sqlalchemy import (
     Column, Integer, BigInteger, String, DateTime, ForeignKey, Enum, Index, CheckConstraint, text
)
from sqlalchemy.orm import relationship
from .base import Base


class TransactionType(str, enum.Enum):
     """Direction of a ledger entry."""
     DEBIT = "DEBIT"
     CREDIT = "CREDIT"


def _filtered_unique_index(name: str, *columns: str, where: str) -> Index:
     clause = text(where)
     return Index(
          name,
          *columns,
          unique=True,
          sqlite_where=clause,
          postgresql_where=clause,
          mssql_where=clause,
     )


class TicketTransaction(Base):
     """Append-only balance movement (DEBIT or CREDIT) of a TicketAccount."""
     __tablename__ = "ticket_transactions"
     __table_args__ = (
          CheckConstraint("amount > 0", name="ck_ticket_transactions_amount_positive"),
          CheckConstraint("balance_after >= 0", name="ck_ticket_transactions_balance_after_non_negative"),
          _filtered_unique_index(
               "uq_ticket_transactions_lesson_debit",
               "account_id", "lesson_id",
               where="type = 'DEBIT' AND lesson_id IS NOT NULL",
          ),
          _filtered_unique_index(
               "uq_ticket_transactions_lesson_refund",
               "account_id", "lesson_id",
               where="type = 'CREDIT' AND lesson_id IS NOT NULL",
          ),
          _filtered_unique_index(
               "uq_ticket_transactions_recharge_credit",
               "recharge_id",
               where="type = 'CREDIT' AND recharge_id IS NOT NULL",
          ),
          _filtered_unique_index(
               "uq_ticket_transactions_recharge_reversal",
               "recharge_id",
               where="type = 'DEBIT' AND recharge_id IS NOT NULL",
          ),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     uuid = Column(String(36), nullable=False, unique=True, index=True)
     account_id = Column(
          Integer,
          ForeignKey("ticket_accounts.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )
     recharge_id = Column(
          Integer,
          ForeignKey("ticket_recharges.id", ondelete="RESTRICT"),
          nullable=True,
          index=True
     )
     lesson_id = Column(BigInteger, nullable=True, index=True)  # External lesson reference

     type = Column(
          Enum(TransactionType, name="ticket_transaction_type", create_constraint=True, native_enum=False, length=10),
          nullable=False
     )
     amount = Column(Integer, nullable=False)
     balance_before = Column(Integer, nullable=False)
     balance_after = Column(Integer, nullable=False)
     description = Column(String(255), nullable=True)

     created_at = Column(DateTime, nullable=False, index=True)

     # Relationships
     account = relationship("TicketAccount", back_populates="transactions")
     recharge = relationship("TicketRecharge", back_populates="transactions")

     @property
     def signed_amount(self) -> int:
          """+amount for CREDIT, -amount for DEBIT."""
          return self.amount if self.type == TransactionType.CREDIT else -self.amount

     def __repr__(self):
          return (
               f"<TicketTransaction(id={self.id}, type={self.type.value}, amount={self.amount}, "
               f"{self.balance_before}->{self.balance_after})>"
          )
