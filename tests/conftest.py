"""Shared test fixtures and configuration for file retrieval tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from file_retrieval.configuration.lifecycle import ConfigurationLifecycleManager
from file_retrieval.configuration.notifications import InMemoryNotificationPublisher
from file_retrieval.configuration.store import InMemoryConfigurationStore
from file_retrieval.executions.discovered import InMemoryDiscoveredFileRepository
from file_retrieval.executions.ledger import InMemoryExecutionLedger
from file_retrieval.protocols.base import ProtocolAdapter
from file_retrieval.protocols.factory import ProtocolAdapterFactory
from file_retrieval.protocols.secrets import StaticSecretResolver


class FixedClock:
    """Settable clock for deterministic tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 3, 15, 10, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def ftp_spec() -> Dict[str, Any]:
    """FTP configuration spec with date tokens in path and filename."""
    return {
        "name": "Partner A daily drop",
        "description": "Nightly settlement files",
        "protocol_settings": {
            "protocol": "ftp",
            "server": "ftp.partner-a.example",
            "port": 21,
            "username": "retriever",
            "password_secret_ref": "ftp/partner-a",
        },
        "file_path_pattern": "/outbound/{yyyy}/{mm}",
        "filename_pattern": "settlement_{yyyy}{mm}{dd}*.csv",
        "file_extension": "csv",
        "schedule": {"cron_expression": "0 9 * * *", "timezone": "UTC"},
        "notifications": [{"event_type": "settlement.files_found", "properties": {"team": "finance"}}],
        "instructions": [{"instruction_type": "ingest", "target": "queue://ingest"}],
    }


@pytest.fixture
def https_spec() -> Dict[str, Any]:
    return {
        "name": "Vendor reports",
        "protocol_settings": {
            "protocol": "https",
            "base_url": "https://files.vendor.example/reports",
            "authentication_type": "bearer_token",
            "credential_secret_ref": "vendor/token",
        },
        "file_path_pattern": "{yyyy}-{mm}-{dd}",
        "filename_pattern": "*.json",
        "schedule": {"cron_expression": "*/15 * * * *", "timezone": "America/New_York"},
        "notifications": [{"event_type": "reports.available"}],
    }


@pytest.fixture
def object_storage_spec() -> Dict[str, Any]:
    return {
        "name": "Data lake exports",
        "protocol_settings": {
            "protocol": "object_storage",
            "account_name": "analytics",
            "container_name": "exports-bucket",
            "prefix": "daily",
        },
        "file_path_pattern": "{yyyy}/{mm}/{dd}",
        "filename_pattern": "part-*",
        "file_extension": ".parquet",
        "schedule": {"cron_expression": "0 6 * * 1-5", "timezone": "Europe/London"},
        "notifications": [{"event_type": "exports.ready"}],
    }


@pytest.fixture
def store() -> InMemoryConfigurationStore:
    return InMemoryConfigurationStore()


@pytest.fixture
def ledger() -> InMemoryExecutionLedger:
    return InMemoryExecutionLedger()


@pytest.fixture
def discovered_files() -> InMemoryDiscoveredFileRepository:
    return InMemoryDiscoveredFileRepository()


@pytest.fixture
def publisher() -> InMemoryNotificationPublisher:
    return InMemoryNotificationPublisher()


@pytest.fixture
def manager(store, publisher, clock) -> ConfigurationLifecycleManager:
    return ConfigurationLifecycleManager(store, publisher, clock=clock)


class ScriptedAdapter(ProtocolAdapter):
    """Adapter double that replays scripted outcomes.

    Each call to ``check_for_files`` pops the next outcome: a list of files
    is returned, an exception is raised. Once the script is exhausted every
    call returns no files.
    """

    def __init__(self, settings, secret_resolver, outcomes, calls):
        super().__init__(settings, secret_resolver)
        self.outcomes = outcomes
        self.calls = calls
        self.closed = False

    async def check_for_files(self, address, path_pattern, filename_pattern, extension_filter=None):
        self.calls.append((address, path_pattern, filename_pattern, extension_filter))
        outcome = self.outcomes.pop(0) if self.outcomes else []
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def test_connection(self):
        return True

    async def close(self):
        self.closed = True


class ScriptedAdapterFactory(ProtocolAdapterFactory):
    """Factory handing out ScriptedAdapters for every protocol."""

    def __init__(self, outcomes=None):
        super().__init__(StaticSecretResolver())
        self.outcomes = list(outcomes or [])
        self.calls = []
        self.adapters = []

    def create(self, settings):
        adapter = ScriptedAdapter(settings, self.secret_resolver, self.outcomes, self.calls)
        self.adapters.append(adapter)
        return adapter


@pytest.fixture
def adapter_factory() -> ScriptedAdapterFactory:
    return ScriptedAdapterFactory()
