"""
Admission control strategy interface.
Allows swapping between different fail-fast approaches in front of the
database, which always has the final say on capacity.
"""

from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Optional


class Admission(IntEnum):
    """Outcome of admit(). Falsy only when the request is turned away."""
    REJECTED = 0
    ADMITTED = 1  # no hold taken: nothing to release
    HELD = 2      # slots reserved at the gate until release()


class AdmissionStrategy(ABC):
    """
    Interface for admission control strategies.

    Implementations:
    - OptimisticAdmission: No pre-check, rely on the conditional capacity UPDATE
    - RedisAdmission: Fast fail-fast check in Redis before the database
    """

    @abstractmethod
    async def admit(self, event_id: int, quantity: int = 1) -> Admission:
        """
        Check if a registration request should be admitted.

        Returns:
            Admission.HELD if admitted with slots reserved (call release)
            Admission.ADMITTED if admitted without a reservation
            Admission.REJECTED if rejected (fail fast)
        """

    @abstractmethod
    async def release(self, event_id: int, quantity: int = 1) -> None:
        """Release the hold taken by admit() once the request is finished."""

    @abstractmethod
    async def sync(self, event_id: int, remaining: Optional[int]) -> None:
        """
        Sync admission state with the database after a committed change.

        Args:
            event_id: Event ID
            remaining: Remaining slots from the DB, None for unlimited events
        """
