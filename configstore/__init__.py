"""Governance configuration store for a multi-tenant API gateway.

Persists provider credentials, tenant hierarchies (customer, team, virtual
key), budgets, rate limits and plugin/tool registrations on SQLite or
PostgreSQL, and can move itself between the two while serving traffic.
"""

from configstore.config import (
    PostgresConfig,
    SQLiteConfig,
    StoreConfig,
    StoreSettings,
    get_settings,
    load_store_config,
    save_store_config,
)
from configstore.exceptions import (
    ConfigStoreError,
    ConflictError,
    MigrationError,
    NotFoundError,
    RepairError,
    StorageError,
    ValidationError,
)
from configstore.migration import (
    BackendMigrator,
    BulkTransfer,
    MigrationResult,
    MigrationState,
    PgloaderTransfer,
)
from configstore.redaction import REDACTED_VALUE
from configstore.store import ConfigStore

__version__ = "0.1.0"

__all__ = [
    "__version__",
    # Store
    "ConfigStore",
    "REDACTED_VALUE",
    # Configuration
    "PostgresConfig",
    "SQLiteConfig",
    "StoreConfig",
    "StoreSettings",
    "get_settings",
    "load_store_config",
    "save_store_config",
    # Migration
    "BackendMigrator",
    "BulkTransfer",
    "MigrationResult",
    "MigrationState",
    "PgloaderTransfer",
    # Exceptions
    "ConfigStoreError",
    "ConflictError",
    "MigrationError",
    "NotFoundError",
    "RepairError",
    "StorageError",
    "ValidationError",
]
