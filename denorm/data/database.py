"""
Database connection and session management.
Uses SQLAlchemy engines and sessionmakers with the denormalization hooks installed.
"""
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from denorm.core.config import get_config
from denorm.utils.logger import get_logger

logger = get_logger("data.database")

# Base class for applications that do not bring their own declarative base
Base = declarative_base()

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def make_engine(database_url: Optional[str] = None, **kwargs: Any) -> Engine:
    """
    Create an engine for database_url (falls back to the configured URL, then in-memory SQLite).

    In-memory SQLite engines share one connection so every session sees the same tables.
    """
    url = database_url or get_config().database_url or "sqlite://"
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        if url in _MEMORY_URLS:
            kwargs.setdefault("poolclass", StaticPool)
    else:
        kwargs.setdefault("pool_pre_ping", True)
    logger.info(f"Creating engine for {url.split('@')[-1]}")
    return create_engine(url, **kwargs)


def make_session_factory(
    database_url: Optional[str] = None,
    denormalizer: Any = None,
    engine: Optional[Engine] = None,
    **session_kwargs: Any,
) -> sessionmaker:
    """
    Build a sessionmaker bound to engine (or a new engine for database_url).

    When a denormalizer is given, its lifecycle hooks are installed on every
    session the factory creates.
    """
    session_kwargs.setdefault("autoflush", False)
    factory = sessionmaker(bind=engine or make_engine(database_url), **session_kwargs)
    if denormalizer is not None:
        denormalizer.install(factory)
    return factory


def session_scope(factory: sessionmaker) -> Iterator[Session]:
    """
    Yield a session from factory and close it afterwards.
    Usable as a dependency provider or wrapped with contextlib.contextmanager.
    """
    db = factory()
    try:
        yield db
    finally:
        db.close()
