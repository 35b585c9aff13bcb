"""Protocol adapter contract and registry.

An adapter discovers files at a remote location and tests connectivity for
one transport. Patterns it receives are already resolved; adapters never
substitute date tokens themselves. Failures are raised as
``TransientTransportError`` (retryable) or ``ConfigurationError``.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Type

from ..configuration.models import ProtocolType
from ..configuration.tokens import matches_extension, matches_filename
from ..errors import ConfigurationError
from .secrets import SecretResolver


logger = logging.getLogger(__name__)


@dataclass
class DiscoveredFile:
    """A file found by an adapter; transient, never persisted here."""
    name: str
    location: str
    size_bytes: int = 0
    modified_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "location": self.location,
            "size_bytes": self.size_bytes,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
            "metadata": dict(self.metadata),
        }


def select_files(
    files: Iterable[DiscoveredFile],
    filename_pattern: Optional[str],
    extension_filter: Optional[str]
) -> List[DiscoveredFile]:
    """Keep files whose name matches the wildcard pattern and extension."""
    return [
        f for f in files
        if matches_filename(f.name, filename_pattern or '') and matches_extension(f.name, extension_filter or '')
    ]


def join_path(*parts: Optional[str]) -> str:
    """Join path segments with single slashes, dropping empty segments."""
    cleaned = [p.strip('/') for p in parts if p and p.strip('/')]
    return '/'.join(cleaned)


class ProtocolAdapter(ABC):
    """Base class for protocol adapters."""

    protocol: ProtocolType
    settings_class: Type = object

    def __init__(self, settings: Any, secret_resolver: SecretResolver):
        if not isinstance(settings, self.settings_class):
            raise ConfigurationError(
                f"{type(self).__name__} requires {self.settings_class.__name__}, "
                f"got {type(settings).__name__}"
            )
        self.settings = settings
        self.secret_resolver = secret_resolver

    @abstractmethod
    async def check_for_files(
        self,
        address: str,
        path_pattern: str,
        filename_pattern: str,
        extension_filter: Optional[str] = None
    ) -> List[DiscoveredFile]:
        """Discover files matching the resolved patterns.

        Args:
            address: Endpoint derived from the settings (host, base URL or bucket)
            path_pattern: Resolved directory path or key prefix
            filename_pattern: Resolved filename with ``*``/``?`` wildcards
            extension_filter: Optional extension, with or without leading dot

        Returns:
            Matching files

        Raises:
            TransientTransportError: For retryable connectivity failures
            ConfigurationError: For unusable settings
        """
        pass

    @abstractmethod
    async def test_connection(self) -> bool:
        """Return True if the endpoint is reachable with the configured credentials."""
        pass

    async def close(self) -> None:
        """Release transport resources."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class ProtocolAdapterRegistry:
    """Registry for protocol adapter classes keyed by protocol."""

    def __init__(self):
        self._adapters: Dict[ProtocolType, Type[ProtocolAdapter]] = {}

    def register(self, protocol: ProtocolType, adapter_class: Type[ProtocolAdapter]) -> None:
        if not issubclass(adapter_class, ProtocolAdapter):
            raise ValueError(f"Adapter class must inherit from ProtocolAdapter: {adapter_class}")
        self._adapters[protocol] = adapter_class

    def get_adapter_class(self, protocol: ProtocolType) -> Optional[Type[ProtocolAdapter]]:
        return self._adapters.get(protocol)

    def list_protocols(self) -> List[ProtocolType]:
        return list(self._adapters)


# Global adapter registry
adapter_registry = ProtocolAdapterRegistry()


def register_adapter(protocol: ProtocolType):
    """Decorator to register a protocol adapter class.

    Args:
        protocol: Protocol the adapter implements
    """
    def decorator(adapter_class: type) -> type:
        adapter_class.protocol = protocol
        adapter_registry.register(protocol, adapter_class)
        return adapter_class

    return decorator
