"""
Ecotrack - Database Configuration

Engine and session factory for the auth tables. PostgreSQL in
production, SQLite for local runs and tests.

Usage:
    from ecotrack.auth.database import get_engine, get_session_factory, init_db

    engine = get_engine()
    init_db(engine)
    session_factory = get_session_factory(engine)
"""

from typing import Callable, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from ecotrack.config import settings


SessionFactory = Callable[[], Session]


def get_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Build an engine for ``database_url`` (defaults to ``settings.DATABASE_URL``).

    Connection and pool waits are bounded by UPSTREAM_TIMEOUT_SECONDS.
    """
    url = database_url or settings.DATABASE_URL
    timeout = settings.UPSTREAM_TIMEOUT_SECONDS

    if url.startswith("sqlite"):
        sqlite_args = {
            "connect_args": {"check_same_thread": False, "timeout": timeout},
        }
        if ":memory:" in url:
            # One shared connection, or every session sees an empty database
            sqlite_args["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **sqlite_args)

    return create_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_timeout=timeout,
        connect_args={"connect_timeout": int(timeout)},
    )


def init_db(engine: Engine) -> None:
    """Create any missing auth tables."""
    from ecotrack.auth.models import User, RefreshToken, EmailToken  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine: Engine) -> SessionFactory:
    """
    Return a callable that opens a new Session on ``engine``.

    Sessions keep attributes loaded after commit so records can be
    returned to callers once the session is closed.
    """
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory
