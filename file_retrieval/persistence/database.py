"""Engine, session and schema management for the SQL backend."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool


logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./file_retrieval.db"

DATABASE_URL_ENV_VARS = ("FILE_RETRIEVAL_DATABASE_URL", "DATABASE_URL")

# Synchronous driver prefixes and their async replacements
ASYNC_DRIVERS = {
    "postgresql://": "postgresql+psycopg_async://",
    "postgresql+psycopg://": "postgresql+psycopg_async://",
    "sqlite:///": "sqlite+aiosqlite:///",
}


class Base(DeclarativeBase):
    """Declarative base for the configuration and execution tables."""
    pass


def normalize_database_url(url: str) -> str:
    """Swap a synchronous driver prefix for its async counterpart."""
    for sync_prefix, async_prefix in ASYNC_DRIVERS.items():
        if url.startswith(sync_prefix):
            return async_prefix + url[len(sync_prefix):]
    return url


def redact_url(url: str) -> str:
    """Hide credentials in a database URL for logging."""
    if '@' not in url or '://' not in url:
        return url
    scheme, rest = url.split('://', 1)
    return f"{scheme}://***@{rest.rsplit('@', 1)[1]}"


def database_url_from_environment() -> str:
    for env_var in DATABASE_URL_ENV_VARS:
        url = os.getenv(env_var)
        if url:
            return normalize_database_url(url)
    return DEFAULT_DATABASE_URL


class DatabaseConfig:
    """Lazily built async engine and session factory for one database URL."""

    def __init__(
        self,
        url: Optional[str] = None,
        pool_size: int = 10,
        max_overflow: int = 20,
        pool_timeout: int = 30,
        pool_recycle: int = 3600,
        echo: bool = False,
    ):
        """
        Args:
            url: Async SQLAlchemy URL; read from FILE_RETRIEVAL_DATABASE_URL or DATABASE_URL if None
            pool_size: Pooled connections (server databases only)
            max_overflow: Connections allowed beyond pool_size
            pool_timeout: Seconds to wait for a pooled connection
            pool_recycle: Seconds before a pooled connection is replaced
            echo: Log emitted SQL
        """
        self.url = url or database_url_from_environment()
        self.echo = echo
        self.pool_options: Dict[str, Any] = {
            "pool_size": pool_size,
            "max_overflow": max_overflow,
            "pool_timeout": pool_timeout,
            "pool_recycle": pool_recycle,
        }

        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def is_memory(self) -> bool:
        return self.is_sqlite and (":memory:" in self.url or self.url.rstrip('/').endswith(":"))

    def _engine_options(self) -> Dict[str, Any]:
        if self.is_memory:
            # An in-memory database lives only as long as its single connection
            return {"poolclass": StaticPool}
        if self.is_sqlite:
            return {"poolclass": NullPool}
        return dict(self.pool_options)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.url, echo=self.echo, **self._engine_options())
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(self.engine, expire_on_commit=False)
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on any error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    async def health_check(self) -> bool:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning(f"Database health check failed for {redact_url(self.url)}: {e}")
            return False
        return True


class DatabaseInitializer:
    """Creates the schema once per database, on explicit request.

    Owned by whoever starts the service; concurrent callers of
    :meth:`initialize` wait on one lock and only the first creates tables.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self._lock = asyncio.Lock()
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Create tables if this initializer has not done so yet."""
        async with self._lock:
            if self._initialized:
                return

            # Register the ORM tables on Base.metadata
            from . import models  # noqa: F401

            async with self.config.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            self._initialized = True
            logger.info(f"Initialized database schema at {redact_url(self.config.url)}")

    async def close(self) -> None:
        async with self._lock:
            await self.config.close()
            self._initialized = False
