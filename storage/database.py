"""
Storage - Database Engine and Sessions.

============================================================
PURPOSE
============================================================
Engine construction, session factories and transaction
scopes for the journal database.

- DATABASE_URL read from the environment (.env supported)
- SQLite for local use, PostgreSQL in production
- Explicit transaction boundaries (commit or roll back)
- Storage compaction after bulk deletes

============================================================
"""

import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from storage.models import Base

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///trade_journal.db"


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(Exception):
    """Raised when database persistence fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


# =============================================================
# CONFIGURATION
# =============================================================


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL_SYNC") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Sessions here are synchronous
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def _redact(url: str) -> str:
    return url.split("@")[-1]


@dataclass
class DatabaseConfig:
    """Database connection settings."""

    url: str = DEFAULT_DATABASE_URL
    pool_size: int = 10
    max_overflow: int = 20
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        return cls(
            url=get_database_url(),
            pool_size=int(os.getenv("DATABASE_POOL_SIZE", "10")),
            max_overflow=int(os.getenv("DATABASE_MAX_OVERFLOW", "20")),
            echo=os.getenv("DATABASE_ECHO", "false").lower() == "true",
        )

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")


# =============================================================
# DATABASE ENGINE
# =============================================================


def create_database_engine(config: Optional[DatabaseConfig] = None) -> Engine:
    """
    Create SQLAlchemy engine.

    In-memory SQLite uses a single shared connection so every
    session sees the same database.
    """
    config = config or DatabaseConfig.from_env()

    logger.info(f"Creating database engine for: {_redact(config.url)}")

    if config.is_sqlite:
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in config.url or config.url.rstrip("/") == "sqlite:":
            kwargs["poolclass"] = StaticPool
        engine = create_engine(config.url, echo=config.echo, **kwargs)
    else:
        engine = create_engine(
            config.url,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
            echo=config.echo,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        if config.is_sqlite:
            # pysqlite's implicit BEGIN breaks SAVEPOINT; SQLAlchemy emits BEGIN instead
            dbapi_conn.isolation_level = None
        logger.debug("Database connection established")

    if config.is_sqlite:
        @event.listens_for(engine, "begin")
        def on_begin(conn):
            if conn.get_execution_options().get("isolation_level") != "AUTOCOMMIT":
                conn.exec_driver_sql("BEGIN")

    return engine


_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


def get_engine() -> Engine:
    """Get the process-wide engine, creating it if necessary."""
    global _engine
    if _engine is None:
        _engine = create_database_engine()
    return _engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


def get_session_factory() -> sessionmaker:
    """Get the process-wide session factory."""
    global _SessionFactory
    if _SessionFactory is None:
        _SessionFactory = create_session_factory(get_engine())
    return _SessionFactory


def configure(config: DatabaseConfig) -> sessionmaker:
    """Replace the process-wide engine (CLI --database-url)."""
    global _engine, _SessionFactory
    if _engine is not None:
        _engine.dispose()
    _engine = create_database_engine(config)
    _SessionFactory = create_session_factory(_engine)
    return _SessionFactory


# =============================================================
# SESSION MANAGEMENT
# =============================================================


@contextmanager
def transaction_scope(
    session_factory: Optional[sessionmaker] = None,
) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs; rolls back on ANY
    exception and re-raises it unchanged.

    Usage:
        with transaction_scope() as session:
            TradeRepository(session).create_trade(...)
    """
    factory = session_factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        logger.debug("Transaction rolled back")
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# INITIALIZATION / MAINTENANCE
# =============================================================


def init_db(engine: Optional[Engine] = None) -> None:
    """
    Create all journal tables if they do not exist.

    Raises:
        DatabaseInitializationError if table creation fails
    """
    engine = engine or get_engine()
    try:
        logger.info("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}") from e


def compact_database(engine: Optional[Engine] = None) -> bool:
    """
    Reclaim storage after bulk deletes.

    SQLite: VACUUM. PostgreSQL: VACUUM ANALYZE. Both must run
    outside a transaction, hence AUTOCOMMIT.

    Returns:
        True if a compaction statement ran
    """
    engine = engine or get_engine()
    dialect = engine.dialect.name

    if dialect == "sqlite":
        statement = "VACUUM"
    elif dialect == "postgresql":
        statement = "VACUUM ANALYZE"
    else:
        logger.info(f"Compaction not supported for dialect {dialect}, skipping")
        return False

    with engine.connect() as conn:
        conn.execution_options(isolation_level="AUTOCOMMIT").execute(text(statement))

    logger.info(f"Database compacted ({statement})")
    return True


__all__ = [
    "DatabaseConfig",
    "DatabasePersistenceError",
    "DatabaseInitializationError",
    "get_database_url",
    "create_database_engine",
    "create_session_factory",
    "get_engine",
    "get_session_factory",
    "configure",
    "transaction_scope",
    "init_db",
    "compact_database",
]
