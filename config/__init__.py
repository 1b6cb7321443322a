"""Environment-driven configuration: pipeline settings and storage backend."""

from .database import DatabaseConfig, DatabaseFactory, DatabaseType, StoreAdapter, initialize_database
from .settings import IngestionSettings

__all__ = [
    'DatabaseConfig',
    'DatabaseFactory',
    'DatabaseType',
    'StoreAdapter',
    'initialize_database',
    'IngestionSettings',
]
