"""
Locust Load Test Suite

Accounts and events live in the wider platform, so the load test works
against pre-seeded rows:
  LOCUST_EVENT_ID      limited free event to fight over (e.g. 10 slots)
  LOCUST_PAID_EVENT_ID paid event for the STK push path (sandbox only)
  LOCUST_USER_IDS      "1-500": user ids that exist in the users table
  SECRET_KEY           same value the API signs tokens with

Run scenarios:
  locust -f locustfile.py --tags concurrency  # Test overselling
  locust -f locustfile.py --tags callback     # Test callback idempotency
  locust -f locustfile.py --tags edge         # Test bad input
  locust -f locustfile.py                     # All tests
"""

import os
import random
import threading
from datetime import datetime, timedelta, timezone

import jwt
from locust import HttpUser, task, between, tag, events

SECRET_KEY = os.getenv("SECRET_KEY", "super-secret-key-change-in-production")
EVENT_ID = int(os.getenv("LOCUST_EVENT_ID", "1"))
PAID_EVENT_ID = os.getenv("LOCUST_PAID_EVENT_ID")


def _user_ids():
    first, _, last = os.getenv("LOCUST_USER_IDS", "1-500").partition("-")
    return list(range(int(first), int(last or first) + 1))


USER_IDS = _user_ids()
_lock = threading.Lock()


def next_user_id():
    """Hand out each seeded user once so every locust user is a distinct attendee."""
    with _lock:
        if not USER_IDS:
            return None
        return USER_IDS.pop(0)


def auth_headers(user_id):
    token = jwt.encode(
        {"sub": str(user_id), "exp": datetime.now(timezone.utc) + timedelta(hours=2)},
        SECRET_KEY,
        algorithm="HS256",
    )
    return {"Authorization": f"Bearer {token}"}


@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    print("\n" + "=" * 60)
    print(f"Registration load test against event {EVENT_ID} with {len(USER_IDS)} seeded users")
    print("=" * 60)


class ConcurrencyUser(HttpUser):
    """
    TEST 1: Concurrency - many users -> few slots

    Run: locust -f locustfile.py --tags concurrency -u 100 -r 50 --run-time 30s

    After test, verify:
      SELECT confirmed_quantity, max_attendees FROM events WHERE id = X;
      SELECT SUM(quantity) FROM registrations WHERE event_id = X AND status = 'confirmed';
    Both sums must match and stay <= max_attendees
    """
    wait_time = between(0, 0.1)

    def on_start(self):
        user_id = next_user_id()
        self.headers = auth_headers(user_id) if user_id else {}
        self.registered = False

    @tag("concurrency")
    @task
    def register_for_last_slots(self):
        """All users fight for the same slots."""
        if not self.headers or self.registered:
            return

        with self.client.post(
            f"/api/v1/events/{EVENT_ID}/register",
            json={"quantity": 1},
            headers=self.headers,
            name="/api/v1/events/{id}/register",
            catch_response=True,
        ) as resp:
            if resp.status_code == 201:
                self.registered = True
                resp.success()
            elif resp.status_code == 409:
                self.registered = resp.json()["detail"]["code"] == "already_registered"
                resp.success()  # Expected: sold out
            else:
                resp.failure(f"Unexpected: {resp.status_code}")

    @tag("concurrency")
    @task
    def churn(self):
        """Cancel and retry so released slots are contested again."""
        if not self.registered:
            return
        if random.random() < 0.2:
            resp = self.client.post(
                f"/api/v1/events/{EVENT_ID}/cancel-rsvp",
                headers=self.headers,
                name="/api/v1/events/{id}/cancel-rsvp",
            )
            if resp.status_code == 200:
                self.registered = False


class CallbackUser(HttpUser):
    """
    TEST 2: Callback storms - Daraja retries

    Run: locust -f locustfile.py --tags callback -u 50 -r 10 --run-time 30s

    Every callback must be acknowledged with ResultCode 0, even for
    checkout ids we never issued.
    """
    wait_time = between(0, 0.2)

    @tag("callback")
    @task
    def replay_callback(self):
        checkout_id = f"ws_CO_LOAD_{random.randint(1, 20)}"
        payload = {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": "load",
                    "CheckoutRequestID": checkout_id,
                    "ResultCode": random.choice([0, 1032]),
                    "ResultDesc": "load test",
                }
            }
        }
        with self.client.post(
            "/api/v1/payments/mpesa/callback",
            json=payload,
            name="/api/v1/payments/mpesa/callback",
            catch_response=True,
        ) as resp:
            if resp.status_code == 200 and resp.json().get("ResultCode") == 0:
                resp.success()
            else:
                resp.failure(f"Callback not acknowledged: {resp.status_code}")

    @tag("callback")
    @task
    def health_check(self):
        self.client.get("/health")


class EdgeCaseUser(HttpUser):
    """
    TEST 3: Edge cases - Bad input handling

    Run: locust -f locustfile.py --tags edge -u 20 -r 5 --run-time 30s

    System should NOT crash, return proper error codes.
    """
    wait_time = between(0.5, 1.5)

    def on_start(self):
        self.headers = auth_headers(random.choice(_user_ids()))

    def _expect(self, resp, *codes):
        if resp.status_code in codes:
            resp.success()
        else:
            resp.failure(f"Expected {codes}, got {resp.status_code}")

    @tag("edge")
    @task
    def invalid_event_id(self):
        with self.client.post("/api/v1/events/999999/register", json={"quantity": 1},
                              headers=self.headers, catch_response=True) as resp:
            self._expect(resp, 404)

    @tag("edge")
    @task
    def zero_quantity(self):
        with self.client.post(f"/api/v1/events/{EVENT_ID}/register", json={"quantity": 0},
                              headers=self.headers, catch_response=True) as resp:
            self._expect(resp, 422)

    @tag("edge")
    @task
    def huge_quantity(self):
        with self.client.post(f"/api/v1/events/{EVENT_ID}/register", json={"quantity": 999999},
                              headers=self.headers, catch_response=True) as resp:
            self._expect(resp, 422)

    @tag("edge")
    @task
    def bad_phone(self):
        if not PAID_EVENT_ID:
            return
        with self.client.post(f"/api/v1/events/{PAID_EVENT_ID}/register",
                              json={"quantity": 1, "phone_number": "12345"},
                              headers=self.headers, catch_response=True) as resp:
            self._expect(resp, 409, 422)

    @tag("edge")
    @task
    def malformed_json(self):
        with self.client.post(f"/api/v1/events/{EVENT_ID}/register", data="not json at all",
                              headers=self.headers, catch_response=True) as resp:
            self._expect(resp, 400, 422)

    @tag("edge")
    @task
    def missing_auth(self):
        with self.client.post(f"/api/v1/events/{EVENT_ID}/register", json={"quantity": 1},
                              catch_response=True) as resp:
            self._expect(resp, 401)
