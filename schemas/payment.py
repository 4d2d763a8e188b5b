# schemas/payment.py
"""
Pydantic schemas for ticket purchases and payment webhooks.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, List
from uuid import UUID

from pydantic import BaseModel, Field, ConfigDict


class RechargeStatusEnum(str, Enum):
     """Recharge payment status options."""
     PENDING = "PENDING"
     SUCCESS = "SUCCESS"
     FAILED = "FAILED"
     REFUNDED = "REFUNDED"


class RechargeCreateRequest(BaseModel):
     """Request body for POST /api/payments/recharges."""

     student_id: Optional[int] = Field(None, gt=0, description="Defaults to the authenticated student")
     amount: Decimal = Field(..., gt=0, max_digits=19, decimal_places=2, description="Price paid")
     currency: str = Field(..., pattern=r"^[A-Z]{3}$", description="ISO 4217 currency, e.g. PHP")
     tickets: int = Field(..., gt=0, description="Tickets credited once the payment succeeds")
     payment_method: Optional[str] = Field(None, max_length=50)
     comment: Optional[str] = Field(None, max_length=500)

     model_config = ConfigDict(
          json_schema_extra={
               "example": {
                    "amount": 1500.00,
                    "currency": "PHP",
                    "tickets": 10,
                    "payment_method": "CARD",
               }
          }
     )


class RechargeResponse(BaseModel):
     """Recharge as exposed by the API."""

     uuid: UUID
     reference: str = Field(..., description="Reference sent to the payment provider")
     student_id: int
     status: RechargeStatusEnum
     amount: Decimal
     currency: str
     tickets_credited: int
     external_transaction_id: Optional[str] = None
     payment_method: Optional[str] = None
     comment: Optional[str] = None
     created_at: datetime
     paid_at: Optional[datetime] = None

     model_config = ConfigDict(from_attributes=True)


class RechargeCheckoutResponse(BaseModel):
     """Response for POST /api/payments/recharges."""

     recharge: RechargeResponse
     checkout_id: Optional[str] = None
     redirect_url: Optional[str] = None


class RechargeListResponse(BaseModel):
     recharges: List[RechargeResponse]
     total: int


class WebhookResponse(BaseModel):
     """Response for POST /api/payments/webhook."""

     reference: str
     status: RechargeStatusEnum
     applied: bool = Field(..., description="False when the event was already processed")
     provider_reference: str
     message: str
