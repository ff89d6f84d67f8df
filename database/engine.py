"""
Database Persistence Layer - Core Engine.

============================================================
ALLOCATION STATE PERSISTENCE
============================================================

Durable storage for donors, hospitals, requests and the
donation ledger between CLI runs.

Requirements:
- SQLAlchemy ORM (SQLite by default, any SQLAlchemy URL works)
- Explicit transaction management
- Structured logging with row counts
- Hard failures on persistence errors

============================================================
"""

import os
import logging
from typing import Dict, Generator, Optional
from contextlib import contextmanager

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.pool import QueuePool, StaticPool

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)

# =============================================================
# DECLARATIVE BASE
# =============================================================

Base = declarative_base()

# =============================================================
# DATABASE ENGINE
# =============================================================

DEFAULT_DATABASE_URL = "sqlite:///bloodlink.db"

# Engine execution option marking connections that must take the
# database write lock when their transaction begins.
WRITE_LOCK_OPTION = "bloodlink_write_lock"

SQLITE_BUSY_TIMEOUT_SECONDS = 30

_engine: Optional[Engine] = None
_SessionFactory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("BLOODLINK_DATABASE_URL")
    if not url:
        url = DEFAULT_DATABASE_URL
        logger.debug(f"BLOODLINK_DATABASE_URL not set, using default: {url}")
    return url


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_sqlite_memory(url: str) -> bool:
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def create_database_engine(
    database_url: Optional[str] = None,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLAlchemy engine for the given URL.

    SQLite gets no queue pool; an in-memory SQLite database uses a
    single shared connection so every session sees the same data.

    Args:
        database_url: SQLAlchemy URL (defaults to get_database_url())
        pool_size: Number of connections to keep in pool
        max_overflow: Max connections beyond pool_size
        pool_timeout: Seconds to wait for available connection
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or get_database_url()
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if _is_sqlite_memory(url):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    elif _is_sqlite(url):
        engine = create_engine(
            url,
            connect_args={
                "check_same_thread": False,
                "timeout": SQLITE_BUSY_TIMEOUT_SECONDS,
            },
            echo=echo,
        )
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
            pool_recycle=pool_recycle,
            echo=echo,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    if _is_sqlite(url):
        _install_sqlite_transaction_control(engine)

    return engine


def _install_sqlite_transaction_control(engine: Engine) -> None:
    """
    Let SQLAlchemy, not the sqlite3 driver, emit BEGIN.

    The driver defers BEGIN until the first write, so a read-then-write
    transaction would not hold the write lock while it reads. Connections
    carrying WRITE_LOCK_OPTION start with BEGIN IMMEDIATE instead, which
    takes the lock up front; concurrent writers wait on the busy timeout.
    """

    @event.listens_for(engine, "connect")
    def disable_driver_begin(dbapi_conn, connection_record):
        dbapi_conn.isolation_level = None

    @event.listens_for(engine, "begin")
    def emit_begin(conn):
        if conn.get_execution_options().get(WRITE_LOCK_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def configure_database(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Create the process-wide engine and session factory.

    Replaces (and disposes) any previously configured engine.
    """
    global _engine, _SessionFactory

    dispose_engine()
    _engine = create_database_engine(database_url, echo=echo)
    _SessionFactory = sessionmaker(
        bind=_engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    return _engine


def get_engine() -> Engine:
    """Get the database engine, creating if necessary."""
    if _engine is None:
        configure_database()
    return _engine


def get_session_factory() -> sessionmaker:
    """Get session factory, creating if necessary."""
    if _SessionFactory is None:
        configure_database()
    return _SessionFactory


def dispose_engine() -> None:
    """Close pooled connections and forget the configured engine."""
    global _engine, _SessionFactory

    if _engine is not None:
        _engine.dispose()
        logger.debug("Database engine disposed")
    _engine = None
    _SessionFactory = None


# =============================================================
# SESSION MANAGEMENT
# =============================================================


def get_session() -> Session:
    """
    Get a new database session.

    IMPORTANT: Caller is responsible for committing/closing.
    Prefer using get_db_session() context manager instead.
    """
    factory = get_session_factory()
    return factory()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Usage:
        with get_db_session() as session:
            load_store(session, store)

    On exception:
        - Automatically rolls back
        - Re-raises the exception
        - Logs the error
    """
    session = get_session()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error(f"Database error, rolling back: {e}")
        session.rollback()
        raise
    except Exception as e:
        logger.error(f"Unexpected error, rolling back: {e}")
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def transaction_scope() -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception.

    Usage:
        with transaction_scope() as session:
            save_store(session, store)
            # Commits automatically at end
    """
    with _committing(get_session()) as session:
        yield session


@contextmanager
def locked_transaction_scope() -> Generator[Session, None, None]:
    """
    Transaction scope holding the database write lock from the start.

    Use for load-modify-save sequences. On SQLite the transaction
    opens with BEGIN IMMEDIATE, so concurrent writers queue behind it;
    other databases serialize on the store revision row, which
    lock_store_revision() selects FOR UPDATE.

    Usage:
        with locked_transaction_scope() as session:
            revision = lock_store_revision(session)
            load_store(session, store)
            ...
            save_store(session, store, baseline, expected_revision=revision)
    """
    locked_engine = get_engine().execution_options(**{WRITE_LOCK_OPTION: True})
    with _committing(get_session_factory()(bind=locked_engine)) as session:
        yield session


@contextmanager
def _committing(session: Session) -> Generator[Session, None, None]:
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except DatabasePersistenceError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise DatabasePersistenceError(f"Transaction failed: {e}") from e
    except Exception:
        logger.error("Transaction aborted, rolling back")
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================

REQUIRED_TABLES = [
    "donors",
    "hospitals",
    "blood_requests",
    "request_assignments",
    "donation_records",
    "store_revision",
]


def verify_database_connection() -> bool:
    """
    Verify database connection is working.

    Raises:
        DatabaseConnectionError if connection fails
    """
    engine = get_engine()

    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise DatabaseConnectionError(f"Cannot connect to database: {e}") from e


def create_all_tables() -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        DatabaseInitializationError if table creation fails
    """
    from . import models  # noqa: F401

    engine = get_engine()

    try:
        Base.metadata.create_all(bind=engine)
        logger.debug("Database tables ensured")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise DatabaseInitializationError(f"Table creation failed: {e}") from e


def drop_all_tables() -> None:
    """
    Drop every allocation table.

    Raises:
        DatabaseInitializationError if the drop fails
    """
    from . import models  # noqa: F401

    try:
        Base.metadata.drop_all(bind=get_engine())
        logger.warning("All allocation tables dropped")
    except SQLAlchemyError as e:
        logger.error(f"Failed to drop database tables: {e}")
        raise DatabaseInitializationError(f"Table drop failed: {e}") from e


def missing_tables() -> list:
    """Required tables that do not exist yet."""
    existing = set(inspect(get_engine()).get_table_names())
    return [t for t in REQUIRED_TABLES if t not in existing]


def initialize_database(database_url: Optional[str] = None) -> None:
    """
    Full database initialization sequence.

    1. Configure engine for the URL
    2. Verify connection
    3. Create tables if not exist
    4. Abort on any failure
    """
    try:
        configure_database(database_url)
        verify_database_connection()
        create_all_tables()

        missing = missing_tables()
        if missing:
            raise DatabaseInitializationError(f"Tables missing after create: {missing}")

    except Exception as e:
        logger.critical(f"DATABASE INITIALIZATION FAILED: {e}")
        raise


def get_table_row_counts() -> Dict[str, int]:
    """
    Get row counts for all tables.

    Returns:
        Dict mapping table name to row count (-1 when the table is missing)
    """
    counts = {}
    engine = get_engine()

    with engine.connect() as conn:
        for table in REQUIRED_TABLES:
            try:
                counts[table] = conn.execute(text(f"SELECT COUNT(*) FROM {table}")).scalar()
            except SQLAlchemyError:
                counts[table] = -1

    return counts


# =============================================================
# CUSTOM EXCEPTIONS
# =============================================================


class DatabasePersistenceError(Exception):
    """Raised when database persistence fails."""
    pass


class DatabaseConnectionError(DatabasePersistenceError):
    """Raised when database connection fails."""
    pass


class DatabaseInitializationError(DatabasePersistenceError):
    """Raised when database initialization fails."""
    pass


class PersistenceValidationError(DatabasePersistenceError):
    """Raised when stored rows cannot be rebuilt into entities."""
    pass


class StaleStoreError(DatabasePersistenceError):
    """Raised when the stored state changed after it was loaded."""
    pass


# =============================================================
# EXPORTS
# =============================================================

__all__ = [
    # Base
    "Base",
    # Engine & Session
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "configure_database",
    "dispose_engine",
    "get_engine",
    "get_session",
    "get_db_session",
    "get_session_factory",
    "transaction_scope",
    "locked_transaction_scope",
    "WRITE_LOCK_OPTION",
    # Initialization
    "REQUIRED_TABLES",
    "initialize_database",
    "verify_database_connection",
    "create_all_tables",
    "drop_all_tables",
    "missing_tables",
    "get_table_row_counts",
    # Exceptions
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "PersistenceValidationError",
    "StaleStoreError",
]
