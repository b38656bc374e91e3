"""
Optimistic admission strategy - no pre-check.
Relies entirely on the conditional capacity UPDATE in the database.
"""

from typing import Optional

from app.services.interfaces.admission import Admission, AdmissionStrategy


class OptimisticAdmission(AdmissionStrategy):
    """
    No admission control - always admit.

    Use when:
    - Normal load scenarios
    - No Redis available (tests, local development)
    """

    async def admit(self, event_id: int, quantity: int = 1) -> Admission:
        return Admission.ADMITTED

    async def release(self, event_id: int, quantity: int = 1) -> None:
        pass

    async def sync(self, event_id: int, remaining: Optional[int]) -> None:
        pass
