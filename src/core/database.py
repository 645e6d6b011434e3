"""SQLAlchemy engine and session management for the payment ledger."""

import logging
from functools import lru_cache
from typing import Any

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.core.config import get_settings

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine for the given URL.

    SQLite connections run with driver-level transaction handling disabled
    and every transaction opened with BEGIN IMMEDIATE, so concurrent writers
    serialize on the database lock and SAVEPOINT works.

    Args:
        database_url: SQLAlchemy database URL.
        echo: Log emitted SQL.

    Returns:
        Engine: Configured engine.
    """
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    engine = create_engine(
        database_url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    """Create a session factory bound to an engine."""
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@lru_cache
def get_engine() -> Engine:
    """Get the cached application engine."""
    settings = get_settings()
    return make_engine(settings.database_url, echo=settings.database_echo)


@lru_cache
def get_session_factory() -> sessionmaker[Session]:
    """Get the cached application session factory."""
    return make_session_factory(get_engine())


def init_db(engine: Engine | None = None) -> None:
    """Create ledger tables that do not exist yet."""
    # Register models on Base.metadata
    from src.models import payment  # noqa: F401

    target = engine or get_engine()
    Base.metadata.create_all(bind=target)
    logger.info("Ledger tables ensured on %s", target.url.render_as_string(hide_password=True))


def dispose_engine() -> None:
    """Dispose of pooled connections held by the application engine."""
    if get_engine.cache_info().currsize:
        get_engine().dispose()


async def check_database_connection() -> dict[str, Any]:
    """Check if database connection is healthy.

    Returns:
        dict: Connection status with 'healthy' boolean and optional 'error' message.
    """
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
