"""
Module: procurement_kernel.db.engine
Responsibility: Build the process-wide SQLAlchemy engine and session factory
    that PurchaseOrderService draws one session per operation from.
Architecture position: Kernel > DB.  create_tables imports models/ lazily
    so Base.metadata is populated; nothing else above db/ is imported.

Backends:
    - PostgreSQL runs at READ COMMITTED; the repository takes explicit
      SELECT ... FOR UPDATE row locks where a check-then-act needs them.
    - SQLite (the default) gets WAL journaling, a busy timeout and enforced
      foreign keys so request-handler threads can share one database file.
      The pysqlite driver opens its transaction lazily at the first write,
      so concurrent readers are never blocked by an idle session.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker

from procurement_kernel.logging_config import get_logger

logger = get_logger("db.engine")

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None


def _sqlite_engine(url, echo: bool) -> Engine:
    engine = create_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_SECONDS},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        try:
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_SECONDS * 1000}")
            cursor.execute("PRAGMA foreign_keys=ON")
        finally:
            cursor.close()

    return engine


def init_engine_from_url(
    database_url: str,
    echo: bool = False,
    pool_size: int = 20,
    max_overflow: int = 10,
) -> Engine:
    """
    Create the engine for ``database_url`` and a matching session factory.

    A second call replaces the first; the previous engine is disposed.
    Sessions do not expire on commit, so DTOs can be built from rows after
    the transaction ends.
    """
    global _engine, _session_factory

    reset_engine()
    url = make_url(database_url)
    dialect = url.get_backend_name()

    if dialect == "sqlite":
        _engine = _sqlite_engine(url, echo)
    else:
        _engine = create_engine(
            url,
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            isolation_level="READ COMMITTED",
        )
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    logger.info(
        "engine_initialized",
        extra={"dialect": dialect, "database": url.database, "echo": echo},
    )
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    if _session_factory is None:
        raise RuntimeError("Engine not initialized. Call init_engine_from_url() first.")
    return _session_factory


def create_tables() -> None:
    """Create the schema and register the ORM write guards."""
    from procurement_kernel.db.base import Base
    from procurement_kernel.db.immutability import register_immutability_listeners
    import procurement_kernel.models  # noqa: F401  (populates Base.metadata)

    Base.metadata.create_all(get_engine())
    register_immutability_listeners()
    logger.info("tables_created", extra={"table_count": len(Base.metadata.tables)})


def drop_tables() -> None:
    from procurement_kernel.db.base import Base

    Base.metadata.drop_all(get_engine())


def reset_engine() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
