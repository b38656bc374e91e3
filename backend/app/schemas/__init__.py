from app.schemas.registration import (
    RegistrationCreate, RegistrationCancel, RegistrationResponse,
    RegistrationResult, RegistrationCancelResponse,
)
from app.schemas.payment import StkCallback, SettlementResult, CallbackAck

__all__ = [
    "RegistrationCreate", "RegistrationCancel", "RegistrationResponse",
    "RegistrationResult", "RegistrationCancelResponse",
    "StkCallback", "SettlementResult", "CallbackAck",
]
