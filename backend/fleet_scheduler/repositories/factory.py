# backend/fleet_scheduler/repositories/factory.py
"""
Repository Factory for the fleet reservation scheduler.

Centralizes backend construction so the scheduler service only ever sees the
SchedulerRepository contract.
"""

from typing import TYPE_CHECKING, Optional

from sqlalchemy.orm import sessionmaker

# Avoid circular imports
if TYPE_CHECKING:
    from .memory_repository import InMemorySchedulerRepository
    from .sqlalchemy_repository import SqlAlchemySchedulerRepository


class RepositoryFactory:
    """
    Factory class for creating scheduler repositories.

    Makes it easy to swap the storage backend without touching services.
    """

    @staticmethod
    def create_in_memory_repository() -> "InMemorySchedulerRepository":
        """Create a process-local repository (tests, single-instance deployments)."""
        from .memory_repository import InMemorySchedulerRepository

        return InMemorySchedulerRepository()

    @staticmethod
    def create_sqlalchemy_repository(
        session_factory: Optional[sessionmaker] = None,
    ) -> "SqlAlchemySchedulerRepository":
        """
        Create a repository over a relational database.

        Args:
            session_factory: Session factory to use; when omitted one is built
                from settings.database_url and the schema is created

        Returns:
            SqlAlchemySchedulerRepository instance
        """
        from ..database import build_engine, init_db, make_session_factory
        from .sqlalchemy_repository import SqlAlchemySchedulerRepository

        if session_factory is None:
            engine = build_engine()
            init_db(engine)
            session_factory = make_session_factory(engine)
        return SqlAlchemySchedulerRepository(session_factory)
