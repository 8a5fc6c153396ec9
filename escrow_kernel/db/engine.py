"""
Engine and session management for the escrow database.

The HTTP layer calls ``init_engine_from_url`` once at startup and hands
``get_session_factory()`` to the request dependencies and the auto-approval
scheduler.  Tests build throwaway engines with ``build_engine`` instead.

Services never commit.  ``session_scope`` is the only commit-or-rollback
boundary: one scope per unit of work in a request and one per auto-approved
milestone.

PostgreSQL runs at READ COMMITTED; exactly-once milestone review and dispute
resolution rely on conditional UPDATEs, not on the isolation level.  SQLite
is opened with ``check_same_thread`` disabled because sync endpoints run on
FastAPI's worker threads and share the engine.
"""

import atexit
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from escrow_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def build_engine(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """Create an engine for ``database_url`` without installing it."""
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url, echo=echo, connect_args={"check_same_thread": False},
        )
    pool_options.setdefault("pool_size", 10)
    pool_options.setdefault("max_overflow", 10)
    pool_options.setdefault("pool_pre_ping", True)
    return create_engine(
        database_url, echo=echo, isolation_level="READ COMMITTED", **pool_options,
    )


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """
    Install the process-wide engine and session factory.

    A second call replaces the first; the old engine is disposed.
    """
    global _engine, _session_factory

    previous = _engine
    _engine = build_engine(database_url, echo=echo, **pool_options)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)
    if previous is not None:
        previous.dispose()

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized; call init_engine_from_url() first")
    return _session_factory


@contextmanager
def session_scope(
    session_factory: Callable[[], Session] | None = None,
) -> Iterator[Session]:
    """
    Run a unit of work in its own session.

    Commits on normal exit.  Any exception rolls back and propagates.  The
    session is closed either way::

        with session_scope(factory) as session:
            EscrowOrchestrator(session, gateway, notifier).milestones.approve(...)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """Create every escrow table that does not exist yet."""
    from escrow_kernel.db.base import Base
    import escrow_kernel.models  # noqa: F401  (registers the mappers)

    Base.metadata.create_all(engine)


@atexit.register
def _dispose_engine() -> None:
    if _engine is not None:
        _engine.dispose()
