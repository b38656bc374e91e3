"""
Reconciliation sweep for registrations whose M-Pesa callback never came.

Run periodically (cron, k8s CronJob):

    python -m app.tasks.reconcile
"""

import asyncio
from datetime import timedelta

from app.core.config import get_settings
from app.core.logging import get_logger, setup_logging
from app.db.session import SessionLocal
from app.infrastructure.mpesa_client import close_mpesa_client, get_mpesa_client
from app.infrastructure.redis_client import close_redis
from app.services.settlement_service import expire_stale_registrations
from app.services.strategy_factory import get_admission, get_notifier


async def run_sweep() -> dict:
    settings = get_settings()
    logger = get_logger(__name__)
    older_than = timedelta(minutes=settings.PENDING_REGISTRATION_TIMEOUT_MINUTES)

    logger.info("reconciliation_sweep_started", older_than_minutes=settings.PENDING_REGISTRATION_TIMEOUT_MINUTES)
    try:
        async with SessionLocal() as db:
            counts = await expire_stale_registrations(
                db,
                get_mpesa_client(),
                get_notifier(),
                older_than,
                admission=get_admission(),
            )
    finally:
        await close_mpesa_client()
        await close_redis()

    logger.info("reconciliation_sweep_finished", **counts)
    return counts


def main() -> None:
    setup_logging()
    asyncio.run(run_sweep())


if __name__ == "__main__":
    main()
