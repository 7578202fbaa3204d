"""Database handle for the configuration store.

A ``Database`` bundles the async engine and session factory for one backend.
The store holds exactly one active ``Database`` and replaces it with a single
assignment when a backend migration completes.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from configstore.config import StoreConfig, StoreSettings, get_settings

logger = logging.getLogger(__name__)


def _set_sqlite_pragmas(dbapi_connection: Any, connection_record: Any) -> None:
    # Cascades in config_keys / governance_virtual_key_keys need foreign keys on.
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


class Database:
    """Engine plus session factory for a single backend."""

    def __init__(self, store_config: StoreConfig, engine: AsyncEngine) -> None:
        self.store_config = store_config
        self.engine = engine
        self.session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def is_sqlite(self) -> bool:
        return self.dialect == "sqlite"

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on exception."""
        session = self.session_maker()
        try:
            yield session
            await session.commit()
        except BaseException:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def dispose(self) -> None:
        """Close pooled connections. Stored data is not touched."""
        await self.engine.dispose()

    def __repr__(self) -> str:
        return f"<Database({self.store_config.describe()})>"


def open_database(
    store_config: StoreConfig,
    settings: Optional[StoreSettings] = None,
) -> Database:
    """Create a ``Database`` for ``store_config``.

    No connection is made until the first statement runs.
    """
    settings = settings or get_settings()
    kwargs: dict[str, Any] = {
        "echo": settings.sql_echo,
        "pool_pre_ping": True,
    }
    if store_config.type == "postgres":
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_recycle=3600,
        )

    engine = create_async_engine(store_config.to_url(), **kwargs)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)

    logger.debug("Opened database engine for %s", store_config.describe())
    return Database(store_config, engine)
