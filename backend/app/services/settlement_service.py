"""
Settlement of M-Pesa payments: the STK callback handler and reconciliation.

IDEMPOTENCY STRATEGY
====================

Daraja retries callbacks and can deliver them twice or late. Every
transition out of payment_status = "pending" is a single conditional
UPDATE ... WHERE payment_status = 'pending'. Whoever gets rowcount == 1
owns the transition and performs the side effects (capacity, tickets);
everyone else sees rowcount == 0 and does nothing. A read-then-write pair
would let two concurrent deliveries both confirm and both issue tickets.

A success that arrives after the sweep expired the push is the one late
write: it is recorded against the failed row, conditional on the timeout
reason, so the money is never lost and no capacity is taken.

The provider is always acknowledged with ResultCode 0, including for
unknown checkout ids, duplicates and our own processing errors; it cannot
act on any of those and would only retry.
"""

from collections import Counter as Tally
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import NotRegistrationOwner, PaymentStatusUnavailable, RegistrationNotFound
from app.core.logging import get_logger
from app.core.metrics import pending_registrations_expired, record_callback
from app.infrastructure.mpesa_client import GatewayError
from app.models.event import Event
from app.models.registration import PaymentStatus, Registration, RegistrationStatus
from app.schemas.payment import CallbackAck, SettlementResult, parse_callback_envelope
from app.services.interfaces.admission import AdmissionStrategy
from app.services.interfaces.notifier import TicketNotifier
from app.services.registration_service import failed_payment_values, remaining_slots, reserve_capacity

logger = get_logger(__name__)

PAYMENT_TIMEOUT_REASON = "Payment timed out"
SOLD_OUT_REASON = "Event sold out before payment settled"


async def handle_callback(
    db: AsyncSession,
    payload: Any,
    notifier: TicketNotifier,
    admission: Optional[AdmissionStrategy] = None,
) -> CallbackAck:
    """Process one Daraja STK callback. Always returns the acknowledgment."""
    try:
        callback = parse_callback_envelope(payload)
    except ValidationError as e:
        record_callback("invalid")
        logger.warning("callback_invalid_payload", errors=e.errors(include_url=False))
        return CallbackAck()

    checkout_request_id = callback.CheckoutRequestID
    try:
        outcome = await settle(
            db,
            SettlementResult.from_callback(callback),
            notifier,
            admission,
            source="callback",
        )
    except Exception:
        await db.rollback()
        record_callback("error")
        logger.exception("callback_processing_failed", checkout_request_id=checkout_request_id)
        return CallbackAck()

    record_callback(outcome)
    return CallbackAck()


async def settle(
    db: AsyncSession,
    result: SettlementResult,
    notifier: TicketNotifier,
    admission: Optional[AdmissionStrategy] = None,
    source: str = "callback",
) -> str:
    """
    Apply a final provider result to the matching registration.

    Returns the outcome: confirmed, failed, duplicate, unknown, inactive,
    oversubscribed or late (paid after the sweep expired the push).
    """
    checkout_request_id = result.checkout_request_id
    found = await db.execute(
        select(Registration)
        .where(Registration.checkout_request_id == checkout_request_id)
        .execution_options(populate_existing=True)
    )
    registration = found.scalar_one_or_none()

    if registration is None:
        logger.warning(
            "callback_registration_not_found",
            checkout_request_id=checkout_request_id,
            result_code=result.result_code,
            source=source,
        )
        return "unknown"

    if result.is_success:
        return await _settle_success(db, registration, result, notifier, admission, source)
    return await _settle_failure(db, registration, result, source)


async def _settle_success(db, registration, result, notifier, admission, source) -> str:
    registration_id = registration.id
    paid = await db.execute(
        update(Registration)
        .where(
            Registration.id == registration_id,
            Registration.payment_status == PaymentStatus.PENDING.value,
        )
        .values(
            payment_status=PaymentStatus.SUCCESS.value,
            payment_reference=result.receipt_number,
            settled_amount=result.amount if result.amount is not None else registration.payment_amount,
            paid_at=result.transaction_date or datetime.now(timezone.utc),
            failure_reason=None,
        )
        .execution_options(synchronize_session=False)
    )
    if paid.rowcount != 1:
        if await _record_payment_after_expiry(db, registration_id, result, registration.payment_amount):
            await db.commit()
            logger.error(
                "payment_received_after_expiry",
                registration_id=registration_id,
                event_id=registration.event_id,
                checkout_request_id=result.checkout_request_id,
                payment_reference=result.receipt_number,
                amount=str(result.amount),
                source=source,
            )
            return "late"

        await db.rollback()
        logger.info(
            "callback_duplicate_ignored",
            registration_id=registration_id,
            checkout_request_id=result.checkout_request_id,
            source=source,
        )
        return "duplicate"

    await db.refresh(registration)
    event_id = registration.event_id

    if registration.status != RegistrationStatus.PENDING:
        # Cancelled while the user was paying; money arrived, no ticket.
        await db.commit()
        logger.error(
            "payment_received_for_inactive_registration",
            registration_id=registration_id,
            status=registration.status,
            payment_reference=result.receipt_number,
            amount=str(result.amount),
        )
        return "inactive"

    if not await reserve_capacity(db, event_id, registration.quantity):
        await db.execute(
            update(Registration)
            .where(Registration.id == registration_id)
            .values(status=RegistrationStatus.FAILED.value, failure_reason=SOLD_OUT_REASON)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.error(
            "payment_received_without_capacity",
            registration_id=registration_id,
            event_id=event_id,
            quantity=registration.quantity,
            payment_reference=result.receipt_number,
            amount=str(result.amount),
        )
        return "oversubscribed"

    await db.execute(
        update(Registration)
        .where(Registration.id == registration_id)
        .values(status=RegistrationStatus.CONFIRMED.value)
        .execution_options(synchronize_session=False)
    )
    remaining = await remaining_slots(db, event_id)
    await db.commit()
    await db.refresh(registration)
    event = await db.get(Event, event_id, populate_existing=True)
    if admission is not None:
        await admission.sync(event_id, remaining)

    logger.info(
        "registration_confirmed",
        registration_id=registration_id,
        event_id=event_id,
        user_id=registration.user_id,
        quantity=registration.quantity,
        payment_reference=registration.payment_reference,
        remaining=remaining,
        source=source,
    )
    await notifier.send_confirmation(registration, event)
    return "confirmed"


async def _record_payment_after_expiry(db, registration_id, result, expected_amount) -> bool:
    """
    The sweep gave up on this push but the customer paid anyway. Keep the
    money on record; the registration stays failed and holds no capacity.
    """
    recorded = await db.execute(
        update(Registration)
        .where(
            Registration.id == registration_id,
            Registration.payment_status == PaymentStatus.FAILED.value,
            Registration.failure_reason == PAYMENT_TIMEOUT_REASON,
        )
        .values(
            payment_status=PaymentStatus.SUCCESS.value,
            payment_reference=result.receipt_number,
            settled_amount=result.amount if result.amount is not None else expected_amount,
            paid_at=result.transaction_date or datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    return recorded.rowcount == 1


async def _settle_failure(db, registration, result, source) -> str:
    registration_id = registration.id
    failed = await db.execute(
        update(Registration)
        .where(
            Registration.id == registration_id,
            Registration.payment_status == PaymentStatus.PENDING.value,
        )
        .values(**failed_payment_values(result.result_desc))
        .execution_options(synchronize_session=False)
    )
    if failed.rowcount != 1:
        await db.rollback()
        logger.info(
            "callback_duplicate_ignored",
            registration_id=registration_id,
            checkout_request_id=result.checkout_request_id,
            source=source,
        )
        return "duplicate"

    await db.commit()
    logger.warning(
        "payment_failed",
        registration_id=registration_id,
        result_code=result.result_code,
        result_desc=result.result_desc,
        source=source,
    )
    return "failed"


async def reconcile_registration(
    db: AsyncSession,
    registration: Registration,
    gateway,
    notifier: TicketNotifier,
    admission: Optional[AdmissionStrategy] = None,
) -> Optional[str]:
    """
    Ask M-Pesa about a pending push and settle it if the result is final.
    Returns the settlement outcome, or None while the payment is still open.
    """
    if registration.payment_status != PaymentStatus.PENDING or not registration.checkout_request_id:
        return None

    status = await gateway.query_status(registration.checkout_request_id)
    if not status.is_final:
        logger.info(
            "payment_still_processing",
            registration_id=registration.id,
            checkout_request_id=registration.checkout_request_id,
        )
        return None
    return await settle(db, status.to_settlement(), notifier, admission, source="query")


async def verify_payment(
    db: AsyncSession,
    registration_id: int,
    user_id: int,
    *,
    gateway,
    notifier: TicketNotifier,
    admission: Optional[AdmissionStrategy] = None,
) -> Registration:
    """Owner-triggered status check for a registration awaiting payment."""
    registration = await db.get(Registration, registration_id, populate_existing=True)
    if registration is None:
        raise RegistrationNotFound("Registration not found")
    if registration.user_id != user_id:
        raise NotRegistrationOwner()

    try:
        await reconcile_registration(db, registration, gateway, notifier, admission)
    except GatewayError as e:
        logger.warning(
            "payment_verification_failed",
            registration_id=registration_id,
            reason=e.reason,
            error=e.message,
        )
        raise PaymentStatusUnavailable(reason=e.reason)

    await db.refresh(registration)
    return registration


async def expire_stale_registrations(
    db: AsyncSession,
    gateway,
    notifier: TicketNotifier,
    older_than: timedelta,
    admission: Optional[AdmissionStrategy] = None,
) -> dict:
    """
    Sweep registrations stuck in payment_status = "pending".

    Final provider results are settled like a callback. Pushes that never
    got a checkout id, or that are still open past the timeout, are failed
    so the user can register again. When the gateway cannot be reached the
    row is left for the next sweep, since the user may have paid.
    """
    cutoff = datetime.now(timezone.utc) - older_than
    result = await db.execute(
        select(Registration.id, Registration.checkout_request_id)
        .where(
            Registration.payment_status == PaymentStatus.PENDING.value,
            Registration.updated_at < cutoff,
        )
        .order_by(Registration.id.asc())
    )
    stale = result.all()
    await db.commit()

    counts = Tally()
    for registration_id, checkout_request_id in stale:
        if checkout_request_id:
            try:
                status = await gateway.query_status(checkout_request_id)
            except GatewayError as e:
                logger.warning(
                    "reconciliation_query_failed",
                    registration_id=registration_id,
                    reason=e.reason,
                    error=e.message,
                )
                counts["skipped"] += 1
                continue
            if status.is_final:
                outcome = await settle(db, status.to_settlement(), notifier, admission, source="sweep")
                counts[outcome] += 1
                continue

        expired = await db.execute(
            update(Registration)
            .where(
                Registration.id == registration_id,
                Registration.payment_status == PaymentStatus.PENDING.value,
            )
            .values(**failed_payment_values(PAYMENT_TIMEOUT_REASON))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if expired.rowcount == 1:
            pending_registrations_expired.inc()
            counts["expired"] += 1
            logger.info("pending_registration_expired", registration_id=registration_id)

    return dict(counts)
