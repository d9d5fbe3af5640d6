"""
Database Package Initialization.

============================================================
SQL PERSISTENCE LAYER
============================================================

Backs the SQL variants of the job store, the model store
and the audit log. All writes go through transaction_scope
with explicit commit/rollback; failures raise
PersistenceError.

============================================================
"""

from .engine import (
    Base,
    DEFAULT_DATABASE_URL,
    create_all_tables,
    create_database_engine,
    get_database_url,
    get_db_session,
    get_session_factory,
    initialize_database,
    transaction_scope,
    verify_database_connection,
)
from .models import (
    AuditEntryRecord,
    ModelRecord,
    ShadowTestRecord,
    TrainingJobRecord,
)

__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "create_all_tables",
    "create_database_engine",
    "get_database_url",
    "get_db_session",
    "get_session_factory",
    "initialize_database",
    "transaction_scope",
    "verify_database_connection",
    "AuditEntryRecord",
    "ModelRecord",
    "ShadowTestRecord",
    "TrainingJobRecord",
]
