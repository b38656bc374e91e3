"""
Collaborator factories.
Configures which admission strategy and which ticket notifier to use.
"""

from typing import Optional

from app.core.config import get_settings
from app.services.admission_service import RedisAdmission
from app.services.interfaces.admission import AdmissionStrategy
from app.services.interfaces.log_notifier import LoggingNotifier
from app.services.interfaces.notifier import TicketNotifier
from app.services.interfaces.optimistic_admission import OptimisticAdmission


def get_admission_strategy() -> AdmissionStrategy:
    """
    Build the configured admission strategy.

    - optimistic (default): no pre-check, the database decides
    - redis: fail-fast gate in Redis, then the database decides
    """
    strategy = get_settings().ADMISSION_STRATEGY

    if strategy == 'redis':
        return RedisAdmission()
    return OptimisticAdmission()


def get_notifier_backend() -> TicketNotifier:
    backend = get_settings().NOTIFIER_BACKEND
    if backend != 'log':
        raise ValueError(f"Unknown NOTIFIER_BACKEND: {backend}")
    return LoggingNotifier()


# Singleton instances
_strategy: Optional[AdmissionStrategy] = None
_notifier: Optional[TicketNotifier] = None


def get_admission() -> AdmissionStrategy:
    """FastAPI dependency: admission strategy singleton."""
    global _strategy
    if _strategy is None:
        _strategy = get_admission_strategy()
    return _strategy


def get_notifier() -> TicketNotifier:
    """FastAPI dependency: ticket notifier singleton."""
    global _notifier
    if _notifier is None:
        _notifier = get_notifier_backend()
    return _notifier
