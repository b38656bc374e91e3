"""
Ticket issuance interface.

Rendering and delivering tickets (e-mail, push) belongs to the wider
platform. The registration core only needs to say "this registration is
now confirmed" and does so through this interface, from both the free
path and the settlement path.
"""

from abc import ABC, abstractmethod

from app.core.logging import get_logger
from app.models.event import Event
from app.models.registration import Registration

logger = get_logger(__name__)


class TicketNotifier(ABC):

    @abstractmethod
    async def issue_ticket(self, registration: Registration, event: Event) -> None:
        """Send the attendee their ticket for a confirmed registration."""

    @abstractmethod
    async def notify_organizer(self, registration: Registration, event: Event) -> None:
        """Tell the organizer someone registered (and paid, for paid events)."""

    async def send_confirmation(self, registration: Registration, event: Event) -> None:
        """
        Issue the ticket and notify the organizer.

        The registration is already committed when this runs, so a delivery
        failure is logged for follow-up instead of undoing the confirmation.
        """
        try:
            await self.issue_ticket(registration, event)
        except Exception:
            logger.exception(
                "ticket_issuance_failed",
                registration_id=registration.id,
                event_id=event.id,
            )

        if event.organizer_id == registration.user_id:
            return
        try:
            await self.notify_organizer(registration, event)
        except Exception:
            logger.exception(
                "organizer_notification_failed",
                registration_id=registration.id,
                event_id=event.id,
            )
