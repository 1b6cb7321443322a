"""Storage backend selection for SiteFoundry.

Pages, chunks and ingestion runs live in SQLite during development and
tests, and in PostgreSQL with pgvector in production. Both adapters expose
the same async interface, so callers only deal with :data:`StoreAdapter`.
"""

import os
import logging
from typing import Union, Optional
from enum import Enum
from pydantic import BaseModel, Field

from indexer.postgres_adapter import PostgresAdapter, PostgresConfig
from indexer.sqlite_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)

StoreAdapter = Union[PostgresAdapter, SQLiteAdapter]


class DatabaseType(str, Enum):
    SQLITE = "sqlite"
    POSTGRESQL = "postgresql"


def _postgres_from_env() -> PostgresConfig:
    return PostgresConfig(
        host=os.getenv('POSTGRES_HOST', 'localhost'),
        port=int(os.getenv('POSTGRES_PORT', '5432')),
        database=os.getenv('POSTGRES_DB', 'sitefoundry'),
        user=os.getenv('POSTGRES_USER', 'sitefoundry'),
        password=os.getenv('POSTGRES_PASSWORD', ''),
        min_connections=int(os.getenv('POSTGRES_MIN_CONNECTIONS', '2')),
        max_connections=int(os.getenv('POSTGRES_MAX_CONNECTIONS', '10')),
        command_timeout=int(os.getenv('POSTGRES_COMMAND_TIMEOUT', '60'))
    )


class DatabaseConfig(BaseModel):
    """Which backend to open and how to reach it."""
    type: DatabaseType = Field(default=DatabaseType.SQLITE, description="Storage backend")
    sqlite_path: str = Field(default="sitefoundry.db", description="SQLite database file")
    postgres: PostgresConfig = Field(default_factory=PostgresConfig, description="PostgreSQL connection")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        """``SITEFOUNDRY_DB_TYPE`` picks the backend; ``POSTGRES_*`` / ``SQLITE_PATH`` configure it."""
        backend = DatabaseType(os.getenv('SITEFOUNDRY_DB_TYPE', 'sqlite').strip().lower())
        if backend is DatabaseType.POSTGRESQL:
            return cls(type=backend, postgres=_postgres_from_env())
        return cls(type=backend, sqlite_path=os.getenv('SQLITE_PATH', 'sitefoundry.db'))

    def describe(self) -> str:
        """Connection target without credentials, for log lines."""
        if self.type is DatabaseType.POSTGRESQL:
            pg = self.postgres
            return f"postgresql://{pg.user}@{pg.host}:{pg.port}/{pg.database}"
        return f"sqlite:///{self.sqlite_path}"


class DatabaseFactory:
    """Builds, opens and closes the storage adapter for one process."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig.from_env()
        self._adapter: Optional[StoreAdapter] = None

    @property
    def backend(self) -> DatabaseType:
        return self.config.type

    @property
    def adapter(self) -> StoreAdapter:
        if self._adapter is None:
            raise RuntimeError("Storage adapter not initialized. Call initialize() first.")
        return self._adapter

    def _build_adapter(self) -> StoreAdapter:
        if self.backend is DatabaseType.POSTGRESQL:
            return PostgresAdapter(self.config.postgres)
        return SQLiteAdapter(self.config.sqlite_path)

    async def initialize(self) -> StoreAdapter:
        """Open the configured adapter (once) and return it."""
        if self._adapter is None:
            adapter = self._build_adapter()
            await adapter.initialize()
            self._adapter = adapter
            logger.info(f"Storage ready: {self.config.describe()}")
        return self._adapter

    async def close(self):
        if self._adapter is not None:
            await self._adapter.close()
            self._adapter = None
            logger.info("Storage adapter closed")


async def initialize_database(config: Optional[DatabaseConfig] = None) -> DatabaseFactory:
    """Factory for ``config`` (or the environment) with its adapter already open."""
    factory = DatabaseFactory(config)
    await factory.initialize()
    return factory
