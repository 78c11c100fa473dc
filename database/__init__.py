"""
Database Package Initialization.

============================================================
REGISTRY / OVERRIDE PERSISTENCE LAYER
============================================================

Engine and session management for the SQL-backed stores.
All writes happen inside explicit transactions with
commit/rollback; failures raise PersistenceError.

============================================================
"""

from .engine import (
    # Declarative base
    Base,

    # Engine creation
    create_database_engine,
    configure_engine,
    get_engine,
    get_database_url,

    # Session management
    get_session,
    get_session_factory,
    transaction_scope,

    # Initialization
    initialize_database,
    verify_database_connection,
    create_all_tables,
)

__all__ = [
    "Base",
    "create_database_engine",
    "configure_engine",
    "get_engine",
    "get_database_url",
    "get_session",
    "get_session_factory",
    "transaction_scope",
    "initialize_database",
    "verify_database_connection",
    "create_all_tables",
]
