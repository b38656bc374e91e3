"""
Pydantic schemas for registration request/response validation.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import AliasChoices, BaseModel, Field

from app.models.registration import MAX_QUANTITY, MIN_QUANTITY


class RegistrationCreate(BaseModel):
    phone_number: Optional[str] = Field(
        None,
        max_length=20,
        validation_alias=AliasChoices("phone_number", "phoneNumber"),
        description="M-Pesa number, required for paid events (e.g. 0712345678 or 254712345678)",
    )
    quantity: int = Field(default=1, ge=MIN_QUANTITY, le=MAX_QUANTITY)


class RegistrationCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class RegistrationResponse(BaseModel):
    id: int
    event_id: int
    user_id: int
    quantity: int
    status: str
    payment_status: str
    phone_number: Optional[str] = None
    payment_amount: Optional[Decimal] = None
    payment_currency: Optional[str] = None
    checkout_request_id: Optional[str] = None
    payment_reference: Optional[str] = None
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RegistrationResult(BaseModel):
    registration: RegistrationResponse
    requires_payment: bool
    checkout_request_id: Optional[str] = None
    message: str


class RegistrationCancelResponse(BaseModel):
    message: str
    registration_id: int
    status: str
