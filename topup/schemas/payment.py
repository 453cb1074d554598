"""
Top-up payment schemas.

Request models are intentionally loose (optional fields, no bounds): the
business rules live in PaymentOrchestrator so that validate, pre-create and
create reject the same inputs with the same errors.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field

from topup.schemas.base import BaseSchema, SuccessResponse


# ------------------------------------------------------------------ requests
class TopupRequest(BaseSchema):
    user_id: Optional[str] = Field(None, description="Already-resolved user id")
    amount: Optional[int] = Field(None, description="Amount in minor units (IDR)")
    payment_method: Optional[str] = Field(None, description="qris | va")
    bank: Optional[str] = Field(None, description="Bank code, required for va")


class CreatePaymentRequest(TopupRequest):
    invoice_id: Optional[str] = Field(None, description="Invoice id returned by pre-create")
    external_id: Optional[str] = Field(None, description="External id returned by pre-create")


# ------------------------------------------------------------------ responses
class ValidateResponse(SuccessResponse):
    user_id: str
    amount: int
    currency: str
    payment_method: str
    bank: Optional[str] = None
    gateway_request: Dict[str, Any]


class PreCreateResponse(SuccessResponse):
    invoice_id: str
    external_id: str
    status: str
    user_id: str
    amount: int
    currency: str
    payment_method: str
    bank: Optional[str] = None
    expires_at: Optional[datetime] = None
    gateway_request: Dict[str, Any]


class CreatePaymentResponse(SuccessResponse):
    payment_id: str = Field(..., description="Gateway resource id")
    invoice_id: str
    external_id: str
    amount: int
    currency: str
    payment_method: str
    bank: Optional[str] = None
    qr_string: Optional[str] = None
    account_number: Optional[str] = None
    expires_at: Optional[datetime] = None
    status: str
    already_existed: bool = False


class PaymentStatusResponse(SuccessResponse):
    status: str = Field(..., description="PENDING | PAID | CANCELLED")
    payment_method: str
    amount: int
    bank: Optional[str] = None
    invoice_id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    payment_time: Optional[datetime] = None


class CancelPaymentResponse(SuccessResponse):
    invoice_id: str
    status: str
    cancelled_at: Optional[datetime] = None


class CallbackResponse(SuccessResponse):
    outcome: str
    invoice_id: Optional[str] = None
    credited_amount: int = 0


class BillingHistoryItem(BaseSchema):
    invoice_id: str
    external_id: str
    payment_id: Optional[str] = Field(None, description="Gateway resource id")
    amount: int
    currency: str
    payment_method: str
    bank: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    payment_time: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class BillingHistoryResponse(SuccessResponse):
    user_id: str
    items: List[BillingHistoryItem]


class NotificationItem(BaseSchema):
    id: int
    kind: str
    invoice_id: str
    amount: int
    created_at: Optional[datetime] = None


class NotificationsResponse(SuccessResponse):
    user_id: str
    notifications: List[NotificationItem]
