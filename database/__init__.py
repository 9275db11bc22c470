"""
Database Package Initialization.

============================================================
ASYNC DATABASE PERSISTENCE LAYER
============================================================

Engine, sessions and initialization for the rebalancing
ledger. ORM models live in rebalancing_engine.models.

============================================================
"""

from .engine import (
    # Declarative base
    Base,

    # Engine creation
    get_database_url,
    create_database_engine,
    get_engine,
    dispose_engine,

    # Session management
    create_session_factory,
    get_session_factory,
    transaction_scope,

    # Database initialization
    verify_database_connection,
    create_all_tables,
    initialize_database,

    # Exceptions
    DatabasePersistenceError,
    DatabaseConnectionError,
    DatabaseInitializationError,
)

__all__ = [
    "Base",
    "get_database_url",
    "create_database_engine",
    "get_engine",
    "dispose_engine",
    "create_session_factory",
    "get_session_factory",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
    "initialize_database",
    "DatabasePersistenceError",
    "DatabaseConnectionError",
    "DatabaseInitializationError",
]
