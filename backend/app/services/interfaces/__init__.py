"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .admission import Admission, AdmissionStrategy
from .optimistic_admission import OptimisticAdmission
from .notifier import TicketNotifier
from .log_notifier import LoggingNotifier

__all__ = ['Admission', 'AdmissionStrategy', 'OptimisticAdmission', 'TicketNotifier', 'LoggingNotifier']
