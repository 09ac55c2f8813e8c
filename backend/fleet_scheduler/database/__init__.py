"""
Database engine, session factory, and metadata for the SQL reservation store.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeMeta, Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from ..core.config import settings

logger = logging.getLogger(__name__)

Base: DeclarativeMeta = declarative_base()


def build_engine(url: Optional[str] = None, **kwargs: Any) -> Engine:
    """
    Create an engine for the given URL (defaults to settings.database_url).

    In-memory SQLite gets a StaticPool so every session sees the same database.
    """
    db_url = url or settings.database_url
    engine_kwargs: dict[str, Any] = {"future": True}
    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in db_url or db_url.rstrip("/") == "sqlite:":
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs.update(pool_pre_ping=True, pool_size=5, max_overflow=5)
    engine_kwargs.update(kwargs)
    logger.info("Creating database engine for dialect %s", db_url.split(":", 1)[0])
    return create_engine(db_url, **engine_kwargs)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    """Create all scheduler tables that do not exist yet."""
    # Register models on Base.metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=engine)


__all__ = ["Base", "build_engine", "init_db", "make_session_factory"]
