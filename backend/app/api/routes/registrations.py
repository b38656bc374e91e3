"""
Event registration endpoints with concurrency-safe admission control.
"""

from typing import Optional

from fastapi import APIRouter, Body, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import get_current_user_id
from app.db.session import get_db
from app.infrastructure.mpesa_client import MpesaClient, get_mpesa_client
from app.schemas.registration import (
    RegistrationCancel,
    RegistrationCancelResponse,
    RegistrationCreate,
    RegistrationResponse,
    RegistrationResult,
)
from app.services.interfaces.admission import AdmissionStrategy
from app.services.interfaces.notifier import TicketNotifier
from app.services.registration_service import (
    cancel_registration,
    get_registration,
    list_attendees,
    register,
)
from app.services.strategy_factory import get_admission, get_notifier

router = APIRouter(prefix="/events", tags=["Registrations"])


@router.post(
    "/{event_id}/register",
    response_model=RegistrationResult,
    status_code=status.HTTP_201_CREATED,
)
async def register_for_event(
    event_id: int,
    registration_data: RegistrationCreate,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: MpesaClient = Depends(get_mpesa_client),
    notifier: TicketNotifier = Depends(get_notifier),
    admission: AdmissionStrategy = Depends(get_admission),
):
    """
    Register for an event.

    Free events are confirmed immediately. Paid events send an M-Pesa STK
    push to `phone_number`; the registration stays pending until the
    payment callback arrives.
    """
    return await register(
        db,
        event_id,
        user_id,
        registration_data.quantity,
        registration_data.phone_number,
        gateway=gateway,
        notifier=notifier,
        admission=admission,
    )


@router.post("/{event_id}/cancel-rsvp", response_model=RegistrationCancelResponse)
async def cancel_event_registration(
    event_id: int,
    cancel_data: Optional[RegistrationCancel] = Body(None),
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    admission: AdmissionStrategy = Depends(get_admission),
):
    """Withdraw from an event and release the slots back to it."""
    reason = cancel_data.reason if cancel_data else None
    registration = await cancel_registration(db, event_id, user_id, reason, admission=admission)
    return RegistrationCancelResponse(
        message="Registration cancelled successfully",
        registration_id=registration.id,
        status=registration.status,
    )


@router.get("/{event_id}/registration", response_model=RegistrationResponse)
async def get_my_registration(
    event_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """The caller's registration for this event, in whatever state it is."""
    return await get_registration(db, event_id, user_id)


@router.get("/{event_id}/attendees", response_model=list[RegistrationResponse])
async def get_event_attendees(
    event_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
):
    """Confirmed registrations. Only the organizer can see them."""
    return await list_attendees(db, event_id, user_id)
