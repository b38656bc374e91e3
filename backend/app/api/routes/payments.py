"""
M-Pesa payment endpoints: the STK callback and owner-triggered verification.
"""

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.core.security import get_current_user_id
from app.db.session import get_db
from app.infrastructure.mpesa_client import MpesaClient, get_mpesa_client
from app.schemas.payment import CallbackAck
from app.schemas.registration import RegistrationResponse
from app.services.interfaces.admission import AdmissionStrategy
from app.services.interfaces.notifier import TicketNotifier
from app.services.settlement_service import handle_callback, verify_payment
from app.services.strategy_factory import get_admission, get_notifier

logger = get_logger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/mpesa/callback", response_model=CallbackAck, status_code=status.HTTP_200_OK)
async def mpesa_callback(
    request: Request,
    db: AsyncSession = Depends(get_db),
    notifier: TicketNotifier = Depends(get_notifier),
    admission: AdmissionStrategy = Depends(get_admission),
):
    """
    Called by Safaricom when an STK push completes. Unauthenticated.

    Always answers ResultCode 0 so M-Pesa does not retry; anomalies are
    logged and handled on our side.
    """
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("mpesa_callback_unreadable_body")
        payload = None
    logger.info("mpesa_callback_received")
    return await handle_callback(db, payload, notifier, admission)


@router.post("/registrations/{registration_id}/verify", response_model=RegistrationResponse)
async def verify_registration_payment(
    registration_id: int,
    user_id: int = Depends(get_current_user_id),
    db: AsyncSession = Depends(get_db),
    gateway: MpesaClient = Depends(get_mpesa_client),
    notifier: TicketNotifier = Depends(get_notifier),
    admission: AdmissionStrategy = Depends(get_admission),
):
    """Query M-Pesa for a pending payment and settle it if it has completed."""
    return await verify_payment(
        db,
        registration_id,
        user_id,
        gateway=gateway,
        notifier=notifier,
        admission=admission,
    )
