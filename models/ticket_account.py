# models/ticket_account.py
"""
TicketAccount model - a student's ticket (credit) balance.

One account per student (unique student_id). The balance is never written
directly: services/ledger_service.py updates it in the same unit of work
that appends the matching TicketTransaction, while holding a row lock.
"""
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, CheckConstraint
from sqlalchemy.orm import relationship
from .base import Base


class TicketAccount(Base):
     """Ticket balance of a student. Balance history lives in TicketTransaction."""
     __tablename__ = "ticket_accounts"
     __table_args__ = (
          CheckConstraint("balance >= 0", name="ck_ticket_accounts_balance_non_negative"),
     )

     id = Column(Integer, primary_key=True, autoincrement=True)
     uuid = Column(String(36), nullable=False, unique=True, index=True)
     student_id = Column(
          Integer,
          ForeignKey("students.id", ondelete="RESTRICT"),  # Never deleted while the student exists
          nullable=False,
          unique=True,  # One account per student
          index=True
     )
     balance = Column(Integer, nullable=False, default=0)

     # Timestamps (set explicitly by the services)
     created_at = Column(DateTime, nullable=False)
     updated_at = Column(DateTime, nullable=False)

     # Relationships
     student = relationship("Student", back_populates="ticket_account")
     transactions = relationship(
          "TicketTransaction",
          back_populates="account",
          order_by="TicketTransaction.id"
     )

     def __repr__(self):
          return f"<TicketAccount(id={self.id}, student_id={self.student_id}, balance={self.balance})>"
