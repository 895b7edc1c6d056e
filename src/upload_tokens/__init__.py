"""Upload Tokens: single-use image upload tokens and a rendered image cache.

Public API:
    - TokenStore: Abstract storage interface
    - SQLiteTokenStore: SQLite storage implementation with a connection pool
    - CacheParams: Rendering parameters keying the image cache
    - CompletedUpload, PendingUpload: Query result structures
    - SampledCleanup, PeriodicCleanup: Expired token cleanup policies
    - TokenServer: HTTP endpoint issuing tokens
    - run_app_migrations, backfill_uploaded_at: Application migrations
"""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("upload-tokens")
except PackageNotFoundError:
    # Package not installed, use development version
    __version__ = "0.0.0.dev"

# Storage interfaces and implementations
from .storage import SQLiteTokenStore, TokenStore
from .storage.base import (
    CacheParams,
    CompletedUpload,
    MigrationError,
    PendingUpload,
    PoolClosedError,
    StoreError,
)
from .storage.cleanup import PeriodicCleanup, SampledCleanup

# Application migrations
from .app_migrations import backfill_uploaded_at, run_app_migrations, run_next_app_migration

# HTTP endpoint
from .server import TokenServer

# Configuration
from .config import Config, ServerConfig, StorageConfig

__all__ = [
    # Version
    "__version__",
    # Storage
    "TokenStore",
    "SQLiteTokenStore",
    "CacheParams",
    "CompletedUpload",
    "PendingUpload",
    "StoreError",
    "PoolClosedError",
    "MigrationError",
    # Cleanup
    "SampledCleanup",
    "PeriodicCleanup",
    # Application migrations
    "run_app_migrations",
    "run_next_app_migration",
    "backfill_uploaded_at",
    # HTTP
    "TokenServer",
    # Configuration
    "Config",
    "StorageConfig",
    "ServerConfig",
]
