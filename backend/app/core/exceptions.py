"""
Domain errors for the registration flow.

Services raise these directly, the same way they raise HTTPException, so
FastAPI renders them without extra handlers. Each error puts a stable
machine-readable ``code`` in ``detail`` so clients can tell a full event
from a duplicate registration without parsing messages.
"""

from typing import Any, Optional

from fastapi import HTTPException, status


class RegistrationError(HTTPException):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "registration_error"
    message = "Registration failed"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.message
        self.extra = extra
        super().__init__(
            status_code=self.status_code,
            detail={"code": self.code, "message": self.message, **extra},
        )


# Validation (422)

class InvalidQuantity(RegistrationError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_quantity"
    message = "Quantity must be between 1 and 10"


class PhoneNumberRequired(RegistrationError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "phone_number_required"
    message = "A phone number is required for paid events"


class InvalidPhoneFormat(RegistrationError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    code = "invalid_phone_format"
    message = "Invalid phone number format. Must be 2547XXXXXXXX or 2541XXXXXXXX"


# Not found (404)

class EventNotFound(RegistrationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "event_not_found"
    message = "Event not found"


class RegistrationNotFound(RegistrationError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "registration_not_found"
    message = "No active registration found for this event"


# Forbidden (403)

class NotEventOrganizer(RegistrationError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_event_organizer"
    message = "Only the event organizer can view attendees"


class NotRegistrationOwner(RegistrationError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "not_registration_owner"
    message = "This registration belongs to another user"


# Conflict (409)

class AlreadyRegistered(RegistrationError):
    status_code = status.HTTP_409_CONFLICT
    code = "already_registered"
    message = "You are already registered for this event"


class RegistrationInProgress(RegistrationError):
    status_code = status.HTTP_409_CONFLICT
    code = "registration_in_progress"
    message = "A registration for this event is awaiting payment confirmation"


class CapacityExceeded(RegistrationError):
    status_code = status.HTTP_409_CONFLICT
    code = "capacity_exceeded"
    message = "Not enough slots remaining for this event"

    def __init__(self, remaining: int, message: Optional[str] = None):
        self.remaining = remaining
        super().__init__(message, remaining=remaining)


# Gateway (502)

class PaymentInitiationFailed(RegistrationError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "payment_initiation_failed"
    message = "Failed to initiate M-Pesa payment"

    def __init__(self, reason: str, message: Optional[str] = None, registration_id: Optional[int] = None):
        self.reason = reason
        super().__init__(message, reason=reason, registration_id=registration_id)


class PaymentStatusUnavailable(RegistrationError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "payment_status_unavailable"
    message = "Could not verify payment status with M-Pesa"
