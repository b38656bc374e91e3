"""
Registration service: admission control for event tickets.

CONCURRENCY STRATEGY: Conditional Commit
========================================

Problem:
  Two users chase the last slot. Both SUM the confirmed quantity, both see
  one slot left, both insert a confirmed row. Result: overselling.

Solution:
  Capacity is never checked with a read that is trusted later. The event
  row carries a denormalized `confirmed_quantity`, and the only way to
  raise it is

    UPDATE events
       SET confirmed_quantity = confirmed_quantity + :qty, version = version + 1
     WHERE id = :event_id
       AND (max_attendees = 0 OR confirmed_quantity + :qty <= max_attendees)

  in the same transaction as the registration row write. If no row is
  updated the event is full and the transaction is rolled back. PostgreSQL
  re-evaluates the WHERE clause after waiting on the row lock, so
  concurrent registrants are serialized on the event row; SQLite gets the
  same effect from BEGIN IMMEDIATE (see app.db.session). The DB CHECK
  constraint confirmed_quantity <= max_attendees is the final safety net.

  Paid registrations only hold capacity once the payment settles, so the
  conditional UPDATE runs in the settlement service at PENDING -> CONFIRMED;
  here a paid request gets a fast-fail read only.

Slot reuse:
  (event_id, user_id) is unique. A cancelled or failed row is claimed by
  the next attempt with a conditional UPDATE keyed on the status we
  observed, so two concurrent attempts cannot both reuse it. A concurrent
  INSERT for a brand-new pair hits the unique constraint instead.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import case, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import (
    AlreadyRegistered,
    CapacityExceeded,
    EventNotFound,
    InvalidQuantity,
    NotEventOrganizer,
    PaymentInitiationFailed,
    PhoneNumberRequired,
    RegistrationError,
    RegistrationInProgress,
    RegistrationNotFound,
)
from app.core.logging import get_logger
from app.core.metrics import record_registration, registration_cancellations
from app.core.phone import mask_phone_number, normalize_phone_number
from app.infrastructure.mpesa_client import GatewayError
from app.models.event import Event
from app.models.registration import (
    MAX_QUANTITY,
    MIN_QUANTITY,
    PaymentStatus,
    Registration,
    RegistrationStatus,
)
from app.schemas.registration import RegistrationResponse, RegistrationResult
from app.services.interfaces.admission import Admission, AdmissionStrategy
from app.services.interfaces.notifier import TicketNotifier

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3
TRANSACTION_DESCRIPTION = "Event ticket"


# --- Store helpers -----------------------------------------------------------

async def get_event(db: AsyncSession, event_id: int) -> Event:
    result = await db.execute(select(Event).where(Event.id == event_id))
    event = result.scalar_one_or_none()
    if not event:
        raise EventNotFound(f"Event {event_id} not found")
    return event


async def find_registration(db: AsyncSession, event_id: int, user_id: int) -> Optional[Registration]:
    result = await db.execute(
        select(Registration)
        .where(Registration.event_id == event_id, Registration.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def reserve_capacity(db: AsyncSession, event_id: int, quantity: int) -> bool:
    """Atomically add `quantity` to the confirmed count if it still fits."""
    result = await db.execute(
        update(Event)
        .where(
            Event.id == event_id,
            or_(
                Event.max_attendees == 0,
                Event.confirmed_quantity + quantity <= Event.max_attendees,
            ),
        )
        .values(
            confirmed_quantity=Event.confirmed_quantity + quantity,
            version=Event.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def release_capacity(db: AsyncSession, event_id: int, quantity: int) -> None:
    await db.execute(
        update(Event)
        .where(Event.id == event_id, Event.confirmed_quantity >= quantity)
        .values(
            confirmed_quantity=Event.confirmed_quantity - quantity,
            version=Event.version + 1,
        )
        .execution_options(synchronize_session=False)
    )


async def remaining_slots(db: AsyncSession, event_id: int) -> Optional[int]:
    """Fresh remaining capacity, None for unlimited events."""
    result = await db.execute(
        select(Event.max_attendees, Event.confirmed_quantity).where(Event.id == event_id)
    )
    max_attendees, confirmed = result.one()
    if max_attendees == 0:
        return None
    return max(max_attendees - confirmed, 0)


def failed_payment_values(reason: Optional[str]) -> dict:
    """
    Column values for a payment that did not go through.
    A registration the user already cancelled stays cancelled.
    """
    return {
        "payment_status": PaymentStatus.FAILED.value,
        "status": case(
            (Registration.status == RegistrationStatus.PENDING.value, RegistrationStatus.FAILED.value),
            else_=Registration.status,
        ),
        "failure_reason": (reason or "Payment failed")[:255],
    }


def _fresh_values(quantity: int, status: RegistrationStatus, payment_status: PaymentStatus, **payment) -> dict:
    values = {
        "quantity": quantity,
        "status": status.value,
        "payment_status": payment_status.value,
        "phone_number": None,
        "payment_amount": None,
        "payment_currency": None,
        "checkout_request_id": None,
        "merchant_request_id": None,
        "payment_reference": None,
        "settled_amount": None,
        "paid_at": None,
        "failure_reason": None,
        "cancelled_at": None,
        "cancellation_reason": None,
    }
    values.update(payment)
    return values


async def _claim_registration(
    db: AsyncSession,
    existing: Optional[Registration],
    event_id: int,
    user_id: int,
    values: dict,
) -> Registration:
    """Find-existing-inactive-or-create: reuse a cancelled/failed row, else insert."""
    if existing is not None:
        if existing.payment_status == PaymentStatus.SUCCESS.value:
            logger.warning(
                "registration_reused_after_settled_payment",
                registration_id=existing.id,
                previous_status=existing.status,
                previous_reference=existing.payment_reference,
            )
        result = await db.execute(
            update(Registration)
            .where(Registration.id == existing.id, Registration.status == existing.status)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise RegistrationInProgress()
        await db.refresh(existing)
        return existing

    registration = Registration(event_id=event_id, user_id=user_id, **values)
    db.add(registration)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise RegistrationInProgress()
    await db.refresh(registration)
    return registration


# --- Operations --------------------------------------------------------------

async def register(
    db: AsyncSession,
    event_id: int,
    user_id: int,
    quantity: int = 1,
    phone_number: Optional[str] = None,
    *,
    gateway,
    notifier: TicketNotifier,
    admission: AdmissionStrategy,
) -> RegistrationResult:
    """
    Register `user_id` for `event_id`.

    Free events are confirmed immediately. Paid events get a PENDING row and
    an STK push; the settlement service confirms them when M-Pesa calls back.
    """
    try:
        result = await _register(db, event_id, user_id, quantity, phone_number, gateway, notifier, admission)
    except RegistrationError as e:
        record_registration(e.code)
        raise
    record_registration("payment_initiated" if result.requires_payment else "confirmed")
    return result


async def _register(db, event_id, user_id, quantity, phone_number, gateway, notifier, admission):
    if not isinstance(quantity, int) or not MIN_QUANTITY <= quantity <= MAX_QUANTITY:
        raise InvalidQuantity()

    event = await get_event(db, event_id)
    existing = await find_registration(db, event_id, user_id)
    if existing is not None:
        if existing.status == RegistrationStatus.CONFIRMED:
            raise AlreadyRegistered()
        if existing.status == RegistrationStatus.PENDING:
            raise RegistrationInProgress()

    phone = None
    if event.is_paid:
        if not phone_number:
            raise PhoneNumberRequired()
        phone = normalize_phone_number(phone_number)

    admitted = await admission.admit(event_id, quantity)
    if not admitted:
        remaining = await remaining_slots(db, event_id)
        logger.info("registration_rejected_at_gate", event_id=event_id, requested=quantity, remaining=remaining)
        raise CapacityExceeded(remaining=remaining or 0)

    try:
        if event.is_paid:
            return await _register_paid(db, event, existing, user_id, quantity, phone, gateway, admission)
        return await _register_free(db, event, existing, user_id, quantity, notifier, admission)
    finally:
        if admitted == Admission.HELD:
            await admission.release(event_id, quantity)


async def _register_free(db, event, existing, user_id, quantity, notifier, admission):
    event_id = event.id
    if not await reserve_capacity(db, event_id, quantity):
        remaining = await remaining_slots(db, event_id)
        await db.rollback()
        logger.warning(
            "registration_failed_capacity",
            event_id=event_id,
            requested=quantity,
            remaining=remaining,
        )
        raise CapacityExceeded(remaining=remaining or 0)

    registration = await _claim_registration(
        db,
        existing,
        event_id,
        user_id,
        _fresh_values(quantity, RegistrationStatus.CONFIRMED, PaymentStatus.NONE),
    )
    remaining = await remaining_slots(db, event_id)
    await db.commit()
    await admission.sync(event_id, remaining)

    logger.info(
        "registration_confirmed",
        registration_id=registration.id,
        event_id=event_id,
        user_id=user_id,
        quantity=quantity,
        remaining=remaining,
        source="free",
    )
    await notifier.send_confirmation(registration, event)

    return RegistrationResult(
        registration=RegistrationResponse.model_validate(registration),
        requires_payment=False,
        message="Registration confirmed, no payment required",
    )


async def _register_paid(db, event, existing, user_id, quantity, phone, gateway, admission):
    event_id = event.id
    remaining = await remaining_slots(db, event_id)
    if remaining is not None and remaining < quantity:
        await db.rollback()
        logger.warning(
            "registration_failed_capacity",
            event_id=event_id,
            requested=quantity,
            remaining=remaining,
        )
        raise CapacityExceeded(remaining=remaining)

    amount = (Decimal(event.price) * quantity).quantize(Decimal("0.01"))
    registration = await _claim_registration(
        db,
        existing,
        event_id,
        user_id,
        _fresh_values(
            quantity,
            RegistrationStatus.PENDING,
            PaymentStatus.PENDING,
            phone_number=phone,
            payment_amount=amount,
            payment_currency=event.currency,
        ),
    )
    # Never hold a transaction open across the gateway call
    await db.commit()

    try:
        push = await gateway.initiate_push(
            phone,
            amount,
            reference=f"EVT{event_id}",
            description=TRANSACTION_DESCRIPTION,
        )
    except GatewayError as e:
        await db.execute(
            update(Registration)
            .where(
                Registration.id == registration.id,
                Registration.payment_status == PaymentStatus.PENDING.value,
                Registration.checkout_request_id.is_(None),
            )
            .values(**failed_payment_values(e.message))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.error(
            "payment_initiation_failed",
            registration_id=registration.id,
            event_id=event_id,
            reason=e.reason,
            error=e.message,
            phone=mask_phone_number(phone),
        )
        raise PaymentInitiationFailed(reason=e.reason, message=e.message, registration_id=registration.id)

    await db.execute(
        update(Registration)
        .where(
            Registration.id == registration.id,
            Registration.payment_status == PaymentStatus.PENDING.value,
        )
        .values(
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(registration)

    logger.info(
        "registration_payment_initiated",
        registration_id=registration.id,
        event_id=event_id,
        user_id=user_id,
        quantity=quantity,
        amount=str(amount),
        currency=event.currency,
        checkout_request_id=push.checkout_request_id,
    )

    return RegistrationResult(
        registration=RegistrationResponse.model_validate(registration),
        requires_payment=True,
        checkout_request_id=push.checkout_request_id,
        message=(
            push.customer_message
            or "Payment initiated. Confirm the M-Pesa prompt on your phone to complete registration."
        ),
    )


async def cancel_registration(
    db: AsyncSession,
    event_id: int,
    user_id: int,
    reason: Optional[str] = None,
    *,
    admission: AdmissionStrategy,
) -> Registration:
    """
    Withdraw the caller's PENDING or CONFIRMED registration.
    A confirmed registration gives its quantity back to the event.
    Retries when a settlement changes the row underneath us.
    """
    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        registration = await find_registration(db, event_id, user_id)
        if registration is None or not registration.is_active:
            raise RegistrationNotFound()

        previous_status = registration.status
        result = await db.execute(
            update(Registration)
            .where(Registration.id == registration.id, Registration.status == previous_status)
            .values(
                status=RegistrationStatus.CANCELLED.value,
                cancelled_at=datetime.now(timezone.utc),
                cancellation_reason=reason,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(
                "cancellation_retry",
                registration_id=registration.id,
                attempt=attempt,
                reason="status_changed",
            )
            await db.rollback()
            continue

        if previous_status == RegistrationStatus.CONFIRMED:
            await release_capacity(db, event_id, registration.quantity)
        remaining = await remaining_slots(db, event_id)
        await db.commit()
        await db.refresh(registration)
        await admission.sync(event_id, remaining)

        registration_cancellations.labels(previous_status=previous_status).inc()
        logger.info(
            "registration_cancelled",
            registration_id=registration.id,
            event_id=event_id,
            user_id=user_id,
            previous_status=previous_status,
            quantity_released=registration.quantity if previous_status == RegistrationStatus.CONFIRMED else 0,
        )
        return registration

    raise RegistrationInProgress("Registration is being updated, please try again")


async def get_registration(db: AsyncSession, event_id: int, user_id: int) -> Registration:
    registration = await find_registration(db, event_id, user_id)
    if registration is None:
        raise RegistrationNotFound("You have not registered for this event")
    return registration


async def list_attendees(db: AsyncSession, event_id: int, requester_id: int) -> list[Registration]:
    """Confirmed registrations of an event. Organizer only."""
    event = await get_event(db, event_id)
    if event.organizer_id != requester_id:
        raise NotEventOrganizer()

    result = await db.execute(
        select(Registration)
        .where(
            Registration.event_id == event_id,
            Registration.status == RegistrationStatus.CONFIRMED.value,
        )
        .order_by(Registration.created_at.asc(), Registration.id.asc())
    )
    return list(result.scalars().all())
