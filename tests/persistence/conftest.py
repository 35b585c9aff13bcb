"""Test configuration and fixtures for persistence layer tests."""

from typing import AsyncGenerator

import pytest_asyncio

from file_retrieval.persistence.database import DatabaseConfig, DatabaseInitializer
from file_retrieval.persistence.stores import (
    SqlConfigurationStore,
    SqlDiscoveredFileRepository,
    SqlExecutionLedger,
)


@pytest_asyncio.fixture(scope="function")
async def test_db_config() -> AsyncGenerator[DatabaseConfig, None]:
    """Create test database configuration with in-memory SQLite."""
    # Use in-memory SQLite for fast tests
    config = DatabaseConfig(
        url="sqlite+aiosqlite:///:memory:",
        echo=False
    )

    initializer = DatabaseInitializer(config)
    await initializer.initialize()

    yield config

    # Cleanup
    await initializer.close()


@pytest_asyncio.fixture
async def sql_store(test_db_config: DatabaseConfig) -> SqlConfigurationStore:
    return SqlConfigurationStore(test_db_config)


@pytest_asyncio.fixture
async def sql_ledger(test_db_config: DatabaseConfig) -> SqlExecutionLedger:
    return SqlExecutionLedger(test_db_config)


@pytest_asyncio.fixture
async def sql_discovered_files(test_db_config: DatabaseConfig) -> SqlDiscoveredFileRepository:
    return SqlDiscoveredFileRepository(test_db_config)
