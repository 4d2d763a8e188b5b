# schemas/tickets.py
"""
Pydantic schemas for the ticket account API.
"""
from datetime import datetime
from enum import Enum
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict, model_validator


class TransactionTypeEnum(str, Enum):
     """Ledger entry direction."""
     DEBIT = "DEBIT"
     CREDIT = "CREDIT"


class DebitRequest(BaseModel):
     """Lesson consumption sent by the lesson-booking service."""
     student_id: int = Field(..., gt=0, description="Student whose tickets are consumed")
     lesson_id: int = Field(..., gt=0, description="Lesson reference (one debit per lesson)")
     amount: int = Field(1, gt=0, description="Tickets to debit (1 ticket = 1 lesson)")
     description: Optional[str] = Field(None, max_length=255)

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "student_id": 12,
                    "lesson_id": 4051,
                    "amount": 1,
                    "description": "Maths lesson, 45 min",
               }
          }
     )


class RefundRequest(BaseModel):
     """Give back the tickets of a cancelled lesson."""
     student_id: int = Field(..., gt=0)
     debit_transaction_uuid: Optional[UUID] = Field(None, description="Original DEBIT (preferred)")
     lesson_id: Optional[int] = Field(None, gt=0, description="Lesson reference if the uuid is unknown")
     reason: Optional[str] = Field(None, max_length=500)

     @model_validator(mode="after")
     def _has_reference(self):
          if self.debit_transaction_uuid is None and self.lesson_id is None:
               raise ValueError("debit_transaction_uuid or lesson_id is required")
          return self


class TicketTransactionResponse(BaseModel):
     """One ledger entry as shown in the account history."""
     uuid: UUID
     type: TransactionTypeEnum
     amount: int
     description: Optional[str] = None
     lesson_id: Optional[int] = None
     balance_before: int
     balance_after: int
     created_at: datetime
     recharge_uuid: Optional[UUID] = None

     model_config = ConfigDict(from_attributes=True)


class TicketAccountResponse(BaseModel):
     """Ticket account with its latest activity."""
     uuid: UUID
     student_id: int
     balance: int
     created_at: datetime
     updated_at: datetime
     last_recharge_at: Optional[datetime] = None
     last_transactions: List[TicketTransactionResponse] = Field(default_factory=list)

     model_config = ConfigDict(
          from_attributes=True,
          json_schema_extra={
               "example": {
                    "uuid": "7b0c5a3e-3f0e-4c55-9f1e-0d8f6f1c2b11",
                    "student_id": 12,
                    "balance": 40,
                    "created_at": "2026-10-01T09:00:00",
                    "updated_at": "2026-10-19T14:30:00",
                    "last_recharge_at": "2026-10-01T09:05:00",
                    "last_transactions": [],
               }
          }
     )


class TransactionListResponse(BaseModel):
     """Paginated transaction history."""
     transactions: List[TicketTransactionResponse]
     total: int
     page: int = 1
     page_size: int = 50
     balance: int


class LedgerVerificationResponse(BaseModel):
     verified: bool
     message: str
     entries_checked: int
     account_id: int
