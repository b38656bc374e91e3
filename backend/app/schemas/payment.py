"""
Pydantic schemas for the M-Pesa STK callback envelope and our acknowledgment.

Daraja posts:

    {"Body": {"stkCallback": {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": 0,
        "ResultDesc": "The service request is processed successfully.",
        "CallbackMetadata": {"Item": [
            {"Name": "Amount", "Value": 1.00},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254708374149}]}}}}
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, Field

# Daraja timestamps are East Africa Time without an offset
EAT = timezone(timedelta(hours=3), name="EAT")
SUCCESS_RESULT_CODE = 0


class CallbackItem(BaseModel):
    Name: str
    Value: Optional[Any] = None


class CallbackMetadataBlock(BaseModel):
    Item: list[CallbackItem] = Field(default_factory=list)


class StkCallback(BaseModel):
    MerchantRequestID: Optional[str] = None
    CheckoutRequestID: str
    ResultCode: int
    ResultDesc: Optional[str] = None
    CallbackMetadata: Optional[CallbackMetadataBlock] = None

    def metadata_value(self, name: str) -> Optional[Any]:
        if not self.CallbackMetadata:
            return None
        for item in self.CallbackMetadata.Item:
            if item.Name == name:
                return item.Value
        return None


class SettlementResult(BaseModel):
    """Provider outcome for one push, from a callback or a status query."""

    checkout_request_id: str
    result_code: int
    result_desc: Optional[str] = None
    receipt_number: Optional[str] = None
    amount: Optional[Decimal] = None
    transaction_date: Optional[datetime] = None

    @property
    def is_success(self) -> bool:
        return self.result_code == SUCCESS_RESULT_CODE

    @classmethod
    def from_callback(cls, callback: StkCallback) -> "SettlementResult":
        return cls(
            checkout_request_id=callback.CheckoutRequestID,
            result_code=callback.ResultCode,
            result_desc=callback.ResultDesc,
            receipt_number=_as_str(callback.metadata_value("MpesaReceiptNumber")),
            amount=_as_decimal(callback.metadata_value("Amount")),
            transaction_date=parse_transaction_date(callback.metadata_value("TransactionDate")),
        )


def parse_callback_envelope(payload: Any) -> StkCallback:
    """Accept both the full {"Body": {"stkCallback": ...}} envelope and a bare stkCallback."""
    body = payload.get("Body", payload) if isinstance(payload, dict) else payload
    if isinstance(body, dict):
        body = body.get("stkCallback", body)
    return StkCallback.model_validate(body)


def parse_transaction_date(value: Any) -> Optional[datetime]:
    """20191219102115 (EAT) -> aware datetime; None when absent or malformed."""
    if value is None:
        return None
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S").replace(tzinfo=EAT)
    except ValueError:
        return None


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


class CallbackAck(BaseModel):
    ResultCode: int = 0
    ResultDesc: str = "Callback processed"
