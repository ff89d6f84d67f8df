"""
Database Package Initialization.

============================================================
ALLOCATION PERSISTENCE LAYER
============================================================

SQLAlchemy persistence of donors, hospitals, requests and
the donation ledger.

REQUIRED:
- Every write is logged with structured format
- Every failure raises hard exceptions
- All transactions are explicit with commit/rollback

Usage:
    from database import initialize_database, locked_transaction_scope
    from database import lock_store_revision, load_store, save_store

    initialize_database("sqlite:///bloodlink.db")
    with locked_transaction_scope() as session:
        revision = lock_store_revision(session)
        load_store(session, engine.store)
        baseline = engine.store.snapshot()
        engine.confirm_donation("REQ001", "DON002")
        save_store(session, engine.store, baseline, expected_revision=revision)

============================================================
"""

# Core engine and session management
from .engine import (
    # Declarative base
    Base,

    # Engine creation
    DEFAULT_DATABASE_URL,
    get_database_url,
    create_database_engine,
    configure_database,
    dispose_engine,
    get_engine,

    # Session management
    get_session,
    get_db_session,
    transaction_scope,
    locked_transaction_scope,
    WRITE_LOCK_OPTION,

    # Database initialization
    REQUIRED_TABLES,
    initialize_database,
    create_all_tables,
    drop_all_tables,
    missing_tables,
    get_table_row_counts,

    # Exceptions
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
    PersistenceValidationError,
    StaleStoreError,
)

# ORM Models
from .models import (
    DonorRow,
    HospitalRow,
    BloodRequestRow,
    RequestAssignmentRow,
    DonationRecordRow,
    StoreRevisionRow,
    STORE_REVISION_ID,
)

# Save / load
from .persistence import (
    read_store_revision,
    lock_store_revision,
    save_store,
    load_snapshot,
    load_store,
)


__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "configure_database",
    "dispose_engine",
    "get_engine",
    "get_session",
    "get_db_session",
    "transaction_scope",
    "locked_transaction_scope",
    "WRITE_LOCK_OPTION",
    "REQUIRED_TABLES",
    "initialize_database",
    "create_all_tables",
    "drop_all_tables",
    "missing_tables",
    "get_table_row_counts",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
    "PersistenceValidationError",
    "StaleStoreError",
    "DonorRow",
    "HospitalRow",
    "BloodRequestRow",
    "RequestAssignmentRow",
    "DonationRecordRow",
    "StoreRevisionRow",
    "STORE_REVISION_ID",
    "read_store_revision",
    "lock_store_revision",
    "save_store",
    "load_snapshot",
    "load_store",
]
