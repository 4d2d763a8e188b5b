# models/ticket_recharge.py
"""
TicketRecharge model - one ticket purchase attempt.

Created PENDING when the student starts a purchase. Only the payment webhook
reconciliation (services/recharge_service.py) moves it to SUCCESS, FAILED or
REFUNDED. The provider transaction id is the idempotency key for webhook
redelivery and is unique when present.
"""
import enum

from sqlalchemy import Column, Integer, String, Numeric, Text, DateTime, ForeignKey, Enum, Index, text
from sqlalchemy.orm import relationship
from .base import Base
from .ticket_transaction import TransactionType


class RechargeStatus(str, enum.Enum):
     """Payment status of a recharge."""
     PENDING = "PENDING"
     SUCCESS = "SUCCESS"
     FAILED = "FAILED"
     REFUNDED = "REFUNDED"


TERMINAL_STATUSES = frozenset({RechargeStatus.SUCCESS, RechargeStatus.FAILED, RechargeStatus.REFUNDED})

# Prefix of the reference handed to the payment provider
REFERENCE_PREFIX = "RCH-"


class TicketRecharge(Base):
     """Ticket purchase. A SUCCESS transition produces exactly one CREDIT transaction."""
     __tablename__ = "ticket_recharges"
     __table_args__ = (
          Index(
               "uq_ticket_recharges_external_transaction_id",
               "external_transaction_id",
               unique=True,
               sqlite_where=text("external_transaction_id IS NOT NULL"),
               postgresql_where=text("external_transaction_id IS NOT NULL"),
               mssql_where=text("external_transaction_id IS NOT NULL"),
          ),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     uuid = Column(String(36), nullable=False, unique=True, index=True)
     student_id = Column(
          Integer,
          ForeignKey("students.id", ondelete="RESTRICT"),
          nullable=False,
          index=True
     )

     # Payment details
     amount = Column(Numeric(19, 2), nullable=False)
     currency = Column(String(3), nullable=False)
     tickets_credited = Column(Integer, nullable=False)
     status = Column(
          Enum(RechargeStatus, name="ticket_recharge_status", create_constraint=True, native_enum=False, length=20),
          default=RechargeStatus.PENDING,
          nullable=False,
          index=True
     )
     payment_method = Column(String(50), nullable=True)
     comment = Column(String(500), nullable=True)

     # Provider data
     external_transaction_id = Column(String(150), nullable=True)
     raw_payload = Column(Text, nullable=True)  # Stored verbatim for dispute resolution
     paid_at = Column(DateTime, nullable=True)

     # Timestamps (set explicitly by the services)
     created_at = Column(DateTime, nullable=False, index=True)
     updated_at = Column(DateTime, nullable=False)

     # Relationships
     student = relationship("Student", back_populates="recharges")
     transactions = relationship("TicketTransaction", back_populates="recharge", order_by="TicketTransaction.id")

     def __repr__(self):
          return f"<TicketRecharge(id={self.id}, status='{self.status.value}', tickets={self.tickets_credited})>"

     @property
     def reference(self) -> str:
          """Reference sent to the payment provider and echoed back in webhooks."""
          return f"{REFERENCE_PREFIX}{self.uuid}"

     @property
     def is_terminal(self) -> bool:
          return self.status in TERMINAL_STATUSES

     @property
     def credit_transaction(self):
          """The CREDIT produced by the SUCCESS transition, if any."""
          for tx in self.transactions:
               if tx.type == TransactionType.CREDIT:
                    return tx
          return None

     @property
     def reversal_transaction(self):
          """The offsetting DEBIT produced by a refund after SUCCESS, if any."""
          for tx in self.transactions:
               if tx.type == TransactionType.DEBIT:
                    return tx
          return None
