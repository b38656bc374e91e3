"""
Tests for the M-Pesa callback, payment verification and the reconciliation sweep.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient
from sqlalchemy import update

from app.infrastructure.mpesa_client import GatewayUnavailable, ProviderStatus
from app.models.event import Event
from app.models.registration import Registration
from app.services.settlement_service import PAYMENT_TIMEOUT_REASON, SOLD_OUT_REASON, expire_stale_registrations
from conftest import add, bearer, create_users, load, load_registration

CALLBACK_URL = "/api/v1/payments/mpesa/callback"
ACK = {"ResultCode": 0, "ResultDesc": "Callback processed"}


def stk_callback(checkout_request_id: str, result_code: int = 0, amount=1500, receipt: str = "NLJ7RT61SV") -> dict:
    callback = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0 else "Request cancelled by user",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {
            "Item": [
                {"Name": "Amount", "Value": amount},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "Balance"},
                {"Name": "TransactionDate", "Value": 20261019102115},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
        }
    return {"Body": {"stkCallback": callback}}


async def start_paid_registration(client: AsyncClient, event_id: int, headers: dict, quantity: int = 3) -> str:
    response = await client.post(
        f"/api/v1/events/{event_id}/register",
        json={"quantity": quantity, "phone_number": "0712345678"},
        headers=headers,
    )
    assert response.status_code == 201
    return response.json()["checkout_request_id"]


@pytest.mark.asyncio
async def test_successful_callback_confirms_registration(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, notifier):
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)

    response = await client.post(CALLBACK_URL, json=stk_callback(checkout_id))
    assert response.status_code == 200
    assert response.json() == ACK

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "confirmed"
    assert registration.payment_status == "success"
    assert registration.payment_reference == "NLJ7RT61SV"
    assert registration.settled_amount == Decimal("1500")
    assert registration.paid_at is not None

    event = await load(session_factory, Event, paid_event.id)
    assert event.confirmed_quantity == 3
    assert notifier.tickets == [registration.id]


@pytest.mark.asyncio
async def test_duplicate_callback_issues_one_ticket(client: AsyncClient, session_factory, auth_headers, paid_event, notifier):
    """Daraja retries: the second delivery is acknowledged and ignored."""
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)

    first = await client.post(CALLBACK_URL, json=stk_callback(checkout_id))
    second = await client.post(CALLBACK_URL, json=stk_callback(checkout_id))
    assert first.json() == ACK
    assert second.json() == ACK

    event = await load(session_factory, Event, paid_event.id)
    assert event.confirmed_quantity == 3
    assert len(notifier.tickets) == 1


@pytest.mark.asyncio
async def test_failure_after_success_is_ignored(client: AsyncClient, session_factory, auth_headers, test_user, paid_event):
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)
    await client.post(CALLBACK_URL, json=stk_callback(checkout_id))
    await client.post(CALLBACK_URL, json=stk_callback(checkout_id, result_code=1032))

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "confirmed"
    assert registration.payment_status == "success"


@pytest.mark.asyncio
async def test_failed_callback_marks_registration_failed(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, notifier):
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)

    response = await client.post(CALLBACK_URL, json=stk_callback(checkout_id, result_code=1032))
    assert response.json() == ACK

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "failed"
    assert registration.payment_status == "failed"
    assert registration.failure_reason == "Request cancelled by user"
    event = await load(session_factory, Event, paid_event.id)
    assert event.confirmed_quantity == 0
    assert notifier.tickets == []

    # The slot can be tried again
    await start_paid_registration(client, paid_event.id, auth_headers, quantity=1)


@pytest.mark.asyncio
async def test_unknown_checkout_id_is_acknowledged(client: AsyncClient):
    response = await client.post(CALLBACK_URL, json=stk_callback("ws_CO_DOES_NOT_EXIST"))
    assert response.status_code == 200
    assert response.json() == ACK


@pytest.mark.asyncio
@pytest.mark.parametrize("payload", [{"Body": {}}, {"Body": {"stkCallback": {"ResultCode": "x"}}}, [], "hello"])
async def test_malformed_callback_is_acknowledged(client: AsyncClient, payload):
    response = await client.post(CALLBACK_URL, json=payload)
    assert response.status_code == 200
    assert response.json() == ACK


@pytest.mark.asyncio
async def test_non_json_callback_is_acknowledged(client: AsyncClient):
    response = await client.post(CALLBACK_URL, content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 200
    assert response.json() == ACK


@pytest.mark.asyncio
async def test_payment_after_sell_out(client: AsyncClient, session_factory, organizer, notifier):
    """Two pending payers, one slot: the second payment is recorded but not admitted."""
    event = await add(
        session_factory,
        Event(title="VIP Dinner", organizer_id=organizer.id, max_attendees=1, is_paid=True, price=Decimal("2500")),
    )
    first_user, second_user = await create_users(session_factory, 2)
    first_checkout = await start_paid_registration(client, event.id, bearer(first_user), quantity=1)
    second_checkout = await start_paid_registration(client, event.id, bearer(second_user), quantity=1)

    await client.post(CALLBACK_URL, json=stk_callback(first_checkout, amount=2500, receipt="RCPT0001"))
    response = await client.post(CALLBACK_URL, json=stk_callback(second_checkout, amount=2500, receipt="RCPT0002"))
    assert response.json() == ACK

    first = await load_registration(session_factory, event.id, first_user.id)
    second = await load_registration(session_factory, event.id, second_user.id)
    assert first.status == "confirmed"
    assert second.status == "failed"
    assert second.payment_status == "success"
    assert second.payment_reference == "RCPT0002"
    assert second.failure_reason == SOLD_OUT_REASON

    event = await load(session_factory, Event, event.id)
    assert event.confirmed_quantity == 1
    assert notifier.tickets == [first.id]


@pytest.mark.asyncio
async def test_payment_for_cancelled_registration(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, notifier):
    """Money that arrives after a cancel is recorded; no ticket, no capacity."""
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)
    await client.post(f"/api/v1/events/{paid_event.id}/cancel-rsvp", headers=auth_headers)

    await client.post(CALLBACK_URL, json=stk_callback(checkout_id))

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "cancelled"
    assert registration.payment_status == "success"
    assert registration.payment_reference == "NLJ7RT61SV"
    event = await load(session_factory, Event, paid_event.id)
    assert event.confirmed_quantity == 0
    assert notifier.tickets == []


@pytest.mark.asyncio
async def test_failed_payment_for_cancelled_registration_stays_cancelled(client: AsyncClient, session_factory, auth_headers, test_user, paid_event):
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)
    await client.post(f"/api/v1/events/{paid_event.id}/cancel-rsvp", headers=auth_headers)

    await client.post(CALLBACK_URL, json=stk_callback(checkout_id, result_code=1032))

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "cancelled"
    assert registration.payment_status == "failed"


# --- Verification ------------------------------------------------------------

@pytest.mark.asyncio
async def test_verify_settles_completed_payment(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, gateway, notifier):
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)
    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    gateway.statuses[checkout_id] = ProviderStatus(checkout_id, 0, "The service request is processed successfully.")

    response = await client.post(f"/api/v1/payments/registrations/{registration.id}/verify", headers=auth_headers)
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "confirmed"
    assert data["payment_status"] == "success"
    assert gateway.queries == [checkout_id]
    assert notifier.tickets == [registration.id]

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.settled_amount == Decimal("1500.00")


@pytest.mark.asyncio
async def test_verify_still_processing(client: AsyncClient, session_factory, auth_headers, test_user, paid_event):
    await start_paid_registration(client, paid_event.id, auth_headers)
    registration = await load_registration(session_factory, paid_event.id, test_user.id)

    response = await client.post(f"/api/v1/payments/registrations/{registration.id}/verify", headers=auth_headers)
    assert response.status_code == 200
    assert response.json()["status"] == "pending"


@pytest.mark.asyncio
async def test_verify_gateway_unavailable(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, gateway):
    await start_paid_registration(client, paid_event.id, auth_headers)
    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    gateway.query_error = GatewayUnavailable("M-Pesa request timed out")

    response = await client.post(f"/api/v1/payments/registrations/{registration.id}/verify", headers=auth_headers)
    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "payment_status_unavailable"

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.payment_status == "pending"


@pytest.mark.asyncio
async def test_verify_someone_elses_registration(client: AsyncClient, session_factory, auth_headers, organizer_headers, test_user, paid_event):
    await start_paid_registration(client, paid_event.id, auth_headers)
    registration = await load_registration(session_factory, paid_event.id, test_user.id)

    response = await client.post(f"/api/v1/payments/registrations/{registration.id}/verify", headers=organizer_headers)
    assert response.status_code == 403

    response = await client.post("/api/v1/payments/registrations/99999/verify", headers=auth_headers)
    assert response.status_code == 404


# --- Reconciliation sweep ----------------------------------------------------

async def _age(session_factory, *registration_ids):
    long_ago = datetime.now(timezone.utc) - timedelta(hours=2)
    async with session_factory() as session:
        await session.execute(
            update(Registration)
            .where(Registration.id.in_(registration_ids))
            .values(updated_at=long_ago)
        )
        await session.commit()


@pytest.mark.asyncio
async def test_sweep_settles_and_expires(client: AsyncClient, session_factory, organizer, paid_event, gateway, notifier):
    paid_user, abandoned_user, offline_user, fresh_user, unpushed_user = await create_users(session_factory, 5)

    paid_checkout = await start_paid_registration(client, paid_event.id, bearer(paid_user), quantity=1)
    await start_paid_registration(client, paid_event.id, bearer(abandoned_user), quantity=1)
    offline_checkout = await start_paid_registration(client, paid_event.id, bearer(offline_user), quantity=1)
    await start_paid_registration(client, paid_event.id, bearer(fresh_user), quantity=1)
    unpushed = await add(
        session_factory,
        Registration(
            event_id=paid_event.id,
            user_id=unpushed_user.id,
            quantity=1,
            status="pending",
            payment_status="pending",
            payment_amount=Decimal("500.00"),
            payment_currency="KES",
        ),
    )

    rows = {
        user.id: await load_registration(session_factory, paid_event.id, user.id)
        for user in (paid_user, abandoned_user, offline_user)
    }
    await _age(session_factory, unpushed.id, *[row.id for row in rows.values()])

    gateway.statuses[paid_checkout] = ProviderStatus(paid_checkout, 0, "The service request is processed successfully.")

    class FlakyGateway:
        async def query_status(self, checkout_request_id):
            if checkout_request_id == offline_checkout:
                raise GatewayUnavailable("M-Pesa request timed out")
            return await gateway.query_status(checkout_request_id)

    async with session_factory() as session:
        counts = await expire_stale_registrations(session, FlakyGateway(), notifier, timedelta(minutes=15))

    assert counts == {"confirmed": 1, "expired": 2, "skipped": 1}

    paid = await load_registration(session_factory, paid_event.id, paid_user.id)
    abandoned = await load_registration(session_factory, paid_event.id, abandoned_user.id)
    offline = await load_registration(session_factory, paid_event.id, offline_user.id)
    fresh = await load_registration(session_factory, paid_event.id, fresh_user.id)
    unpushed = await load(session_factory, Registration, unpushed.id)

    assert paid.status == "confirmed"
    assert abandoned.status == "failed"
    assert abandoned.failure_reason == PAYMENT_TIMEOUT_REASON
    assert unpushed.status == "failed"
    assert offline.status == "pending"
    assert fresh.status == "pending"
    assert notifier.tickets == [paid.id]


@pytest.mark.asyncio
async def test_payment_after_expiry_is_recorded(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, gateway, notifier):
    """The sweep gave up on the push, then the customer's payment landed."""
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)
    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    await _age(session_factory, registration.id)

    async with session_factory() as session:
        counts = await expire_stale_registrations(session, gateway, notifier, timedelta(minutes=15))
    assert counts == {"expired": 1}

    response = await client.post(CALLBACK_URL, json=stk_callback(checkout_id, receipt="PAIDLATE01"))
    assert response.json() == ACK

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "failed"
    assert registration.failure_reason == PAYMENT_TIMEOUT_REASON
    assert registration.payment_status == "success"
    assert registration.payment_reference == "PAIDLATE01"
    assert registration.settled_amount == Decimal("1500")
    assert registration.paid_at is not None

    # A retry of the same late callback changes nothing
    await client.post(CALLBACK_URL, json=stk_callback(checkout_id, receipt="PAIDLATE01"))
    event = await load(session_factory, Event, paid_event.id)
    assert event.confirmed_quantity == 0
    assert notifier.tickets == []


@pytest.mark.asyncio
async def test_failed_payment_is_not_overwritten_by_late_success(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, notifier):
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)
    await client.post(CALLBACK_URL, json=stk_callback(checkout_id, result_code=1032))

    await client.post(CALLBACK_URL, json=stk_callback(checkout_id, receipt="NOTREAL01"))

    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.payment_status == "failed"
    assert registration.payment_reference is None
    assert notifier.tickets == []


# --- Concurrent delivery -----------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_duplicate_callbacks_issue_one_ticket(client: AsyncClient, session_factory, auth_headers, test_user, paid_event, notifier):
    """Six simultaneous deliveries of the same callback confirm once."""
    checkout_id = await start_paid_registration(client, paid_event.id, auth_headers)

    responses = await asyncio.gather(
        *[client.post(CALLBACK_URL, json=stk_callback(checkout_id)) for _ in range(6)]
    )

    assert all(response.json() == ACK for response in responses)
    registration = await load_registration(session_factory, paid_event.id, test_user.id)
    assert registration.status == "confirmed"
    event = await load(session_factory, Event, paid_event.id)
    assert event.confirmed_quantity == 3
    assert notifier.tickets == [registration.id]


@pytest.mark.asyncio
async def test_concurrent_payers_for_last_slots(client: AsyncClient, session_factory, organizer, notifier):
    """Six pending payers settle at once for two slots: exactly two get in."""
    event = await add(
        session_factory,
        Event(title="Masterclass", organizer_id=organizer.id, max_attendees=2, is_paid=True, price=Decimal("1000")),
    )
    users = await create_users(session_factory, 6)
    checkouts = [await start_paid_registration(client, event.id, bearer(user), quantity=1) for user in users]

    responses = await asyncio.gather(
        *[
            client.post(CALLBACK_URL, json=stk_callback(checkout_id, amount=1000, receipt=f"RCPT{n:04d}"))
            for n, checkout_id in enumerate(checkouts)
        ]
    )
    assert all(response.json() == ACK for response in responses)

    registrations = [await load_registration(session_factory, event.id, user.id) for user in users]
    confirmed = [r for r in registrations if r.status == "confirmed"]
    oversubscribed = [r for r in registrations if r.status == "failed"]
    assert len(confirmed) == 2
    assert len(oversubscribed) == 4
    assert all(r.failure_reason == SOLD_OUT_REASON for r in oversubscribed)
    assert all(r.payment_status == "success" for r in registrations)

    event = await load(session_factory, Event, event.id)
    assert event.confirmed_quantity == 2
    assert sorted(notifier.tickets) == sorted(r.id for r in confirmed)
