"""
Service layer for the fleet reservation scheduler.

Services contain the scheduling rules and orchestrate repository access.
"""

from .availability_index import AvailabilityIndex, IntervalEntry
from .base import BaseService
from .booking_state_machine import BookingStateMachine
from .conflict_checker import AdmissionDecision, ConflictChecker, evaluate_admission, peak_occupancy
from .scheduler_service import SchedulerService

__all__ = [
    "AdmissionDecision",
    "AvailabilityIndex",
    "BaseService",
    "BookingStateMachine",
    "ConflictChecker",
    "IntervalEntry",
    "SchedulerService",
    "evaluate_admission",
    "peak_occupancy",
]
