"""
Notifier that records ticket issuance in the structured log.
Default backend until the platform's mail/push service is wired in.
"""

from app.core.logging import get_logger
from app.models.event import Event
from app.models.registration import Registration
from app.services.interfaces.notifier import TicketNotifier

logger = get_logger(__name__)


class LoggingNotifier(TicketNotifier):

    async def issue_ticket(self, registration: Registration, event: Event) -> None:
        logger.info(
            "ticket_issued",
            registration_id=registration.id,
            event_id=event.id,
            user_id=registration.user_id,
            quantity=registration.quantity,
            payment_reference=registration.payment_reference,
        )

    async def notify_organizer(self, registration: Registration, event: Event) -> None:
        tickets = "ticket" if registration.quantity == 1 else "tickets"
        logger.info(
            "organizer_notified",
            organizer_id=event.organizer_id,
            event_id=event.id,
            message=f"New registration for {event.title} ({registration.quantity} {tickets})",
        )
