from .actors import APPROVER_CAPABILITIES, DRIVER_CAPABILITIES, REQUESTER_CAPABILITIES, Actor
from .entities import Booking, SharedRideMembership, Vehicle

__all__ = [
    "Actor",
    "APPROVER_CAPABILITIES",
    "Booking",
    "DRIVER_CAPABILITIES",
    "REQUESTER_CAPABILITIES",
    "SharedRideMembership",
    "Vehicle",
]
