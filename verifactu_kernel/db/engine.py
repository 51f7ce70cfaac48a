"""
Module: verifactu_kernel.db.engine
Responsibility: Engine construction and the process-wide session factory.
Architecture position: Kernel > DB.  Imports models only inside
    create_tables().

Two ways in:
    - ``build_engine(url)`` returns a configured engine and touches no
      global state.  The runtime wiring and the tests use it directly.
    - ``init_engine_from_url(url)`` additionally installs a module-level
      engine and session factory for embedding applications that want
      ``session_scope()``.

Locking:
    - PostgreSQL runs at READ COMMITTED; chain creation takes an explicit
      ``FOR UPDATE`` on the business configuration row.
    - SQLite opens every transaction with ``BEGIN IMMEDIATE`` so writers
      queue on the database lock (30 s busy timeout) instead of failing
      mid-transaction.
"""

import atexit
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from verifactu_kernel.logging_config import configure_logging, get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def build_engine(
    database_url: str,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
) -> Engine:
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=echo,
            connect_args={
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            },
        )
        _install_sqlite_locking(engine)
        return engine

    return create_engine(
        database_url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_timeout=pool_timeout,
        pool_recycle=pool_recycle,
        isolation_level="READ COMMITTED",
    )


def _install_sqlite_locking(engine: Engine) -> None:
    # pysqlite's own BEGIN handling is switched off so ours is the only one.
    @event.listens_for(engine, "connect")
    def _autocommit_driver(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def init_engine_from_url(database_url: str, echo: bool = False, **pool_options) -> Engine:
    """Install the module-level engine and session factory (replacing any previous one)."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = build_engine(database_url, echo=echo, **pool_options)
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    configure_logging()
    logger.info("engine_initialized", extra={"dialect": _engine.dialect.name})
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


def get_session() -> Session:
    return get_session_factory()()


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Commit on normal exit; roll back and re-raise on error."""
    session = get_session()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        logger.warning("transaction_rolled_back", exc_info=True)
        raise
    finally:
        session.close()


def create_tables(engine: Engine | None = None) -> None:
    """Create compliance_configs, chain_records and compliance_events if missing."""
    from verifactu_kernel.db.base import Base
    import verifactu_kernel.models  # noqa: F401  registers tables on Base.metadata

    Base.metadata.create_all(engine or get_engine())


def dispose_engine() -> None:
    """Release the module-level engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None


atexit.register(dispose_engine)
