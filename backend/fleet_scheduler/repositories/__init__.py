"""
Repository layer for the fleet reservation scheduler.

All storage access goes through a SchedulerRepository implementation.
"""

from .factory import RepositoryFactory
from .memory_repository import InMemorySchedulerRepository
from .scheduler_repository import SchedulerRepository
from .sqlalchemy_repository import SqlAlchemySchedulerRepository

__all__ = [
    "InMemorySchedulerRepository",
    "RepositoryFactory",
    "SchedulerRepository",
    "SqlAlchemySchedulerRepository",
]
