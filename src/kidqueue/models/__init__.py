"""Shared database models."""

from .base import Base
from .queue import ACTIVE_STATUSES, QueueEntry, SchoolQueueLock
from .school import School, User
from .student import Student
from .vehicle import Vehicle, VehicleStudent

__all__ = [
    "ACTIVE_STATUSES",
    "Base",
    "QueueEntry",
    "School",
    "SchoolQueueLock",
    "Student",
    "User",
    "Vehicle",
    "VehicleStudent",
]
