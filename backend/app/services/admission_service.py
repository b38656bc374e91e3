"""
Admission control service for high-contention scenarios.
Implements AdmissionStrategy interface using Redis.

Circuit Breaker Pattern:
  On Redis failure, the system "fails open" (admits all requests).
  This prevents Redis outages from blocking all registrations.
  Database remains authoritative - Redis is advisory only.

  The conditional capacity UPDATE in the registration service still
  prevents overselling, so a stale or missing Redis counter can only cost
  an extra database round trip, never an extra ticket.
"""

import os
from typing import Optional

from app.core.logging import get_logger
from app.core.metrics import record_admission, redis_connection_errors, redis_circuit_breaker_open
from app.infrastructure.redis_client import get_redis
from app.services.interfaces.admission import Admission, AdmissionStrategy

logger = get_logger(__name__)

SCRIPT_PATH = os.path.join(os.path.dirname(__file__), '../infrastructure/admission_lua.lua')
with open(SCRIPT_PATH, 'r') as f:
    ADMISSION_SCRIPT = f.read()

# Only requests the script returned HELD for release. A hold that expired
# with its TTL must not drive the counter below zero.
RELEASE_SCRIPT = """
local held = tonumber(redis.call('GET', KEYS[1]) or '0')
if held <= 0 then
  return 0
end
local left = redis.call('DECRBY', KEYS[1], math.min(held, tonumber(ARGV[1])))
if left <= 0 then
  redis.call('DEL', KEYS[1])
end
return left
"""

RESERVATION_TTL_SECONDS = 60


def _keys(event_id: int) -> tuple[str, str]:
    return f"admission:{event_id}:remaining", f"admission:{event_id}:reserved"


class RedisAdmission(AdmissionStrategy):
    """
    Redis-based admission control.

    Strategy: Fail fast at the Redis gate before opening a database
    transaction. Useful for flash registrations where thousands of users
    chase a few hundred slots.
    """

    def __init__(self, redis_client=None):
        self._redis = redis_client
        self._admit_script = None
        self._release_script = None

    async def _client(self):
        if self._redis is None:
            self._redis = await get_redis()
        if self._redis is not None and self._admit_script is None:
            self._admit_script = self._redis.register_script(ADMISSION_SCRIPT)
            self._release_script = self._redis.register_script(RELEASE_SCRIPT)
        return self._redis

    def _trip(self, operation: str, error: Exception) -> None:
        redis_connection_errors.inc()
        redis_circuit_breaker_open.set(1)
        logger.warning("admission_gate_unavailable", operation=operation, error=str(error))

    async def admit(self, event_id: int, quantity: int = 1) -> Admission:
        remaining_key, reserved_key = _keys(event_id)
        try:
            client = await self._client()
            if client is None:
                return Admission.ADMITTED
            result = await self._admit_script(
                keys=[remaining_key, reserved_key],
                args=[quantity, RESERVATION_TTL_SECONDS],
            )
            redis_circuit_breaker_open.set(0)
        except Exception as e:
            # Circuit breaker: On Redis failure, fail open (admit all)
            self._trip("admit", e)
            return Admission.ADMITTED

        admitted = Admission(int(result))
        record_admission(bool(admitted))
        return admitted

    async def release(self, event_id: int, quantity: int = 1) -> None:
        _, reserved_key = _keys(event_id)
        try:
            client = await self._client()
            if client is not None:
                await self._release_script(keys=[reserved_key], args=[quantity])
        except Exception as e:
            self._trip("release", e)

    async def sync(self, event_id: int, remaining: Optional[int]) -> None:
        remaining_key, _ = _keys(event_id)
        try:
            client = await self._client()
            if client is None:
                return
            if remaining is None:
                await client.delete(remaining_key)
            else:
                await client.set(remaining_key, remaining)
        except Exception as e:
            self._trip("sync", e)
