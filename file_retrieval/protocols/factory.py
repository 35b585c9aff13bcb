"""Factory selecting a protocol adapter from the settings discriminator."""

import logging
from typing import Any, Callable, Dict, List, Optional

from ..configuration.models import ProtocolType
from ..errors import ConfigurationError
from .base import ProtocolAdapter, adapter_registry
from .secrets import EnvironmentSecretResolver, SecretResolver

# Adapter modules register themselves on import
from . import ftp, https, object_storage  # noqa: F401


logger = logging.getLogger(__name__)

AdapterBuilder = Callable[[Any, SecretResolver], ProtocolAdapter]


class ProtocolAdapterFactory:
    """Creates the adapter registered for a settings variant's protocol."""

    def __init__(
        self,
        secret_resolver: Optional[SecretResolver] = None,
        overrides: Optional[Dict[ProtocolType, AdapterBuilder]] = None
    ):
        """Initialize the factory.

        Args:
            secret_resolver: Resolves credential references; defaults to
                environment variables
            overrides: Per-protocol builders that replace the registered
                adapter class
        """
        self.secret_resolver = secret_resolver or EnvironmentSecretResolver()
        self._overrides = dict(overrides or {})

    def create(self, settings: Any) -> ProtocolAdapter:
        """Create an adapter for ``settings``.

        Raises:
            ConfigurationError: If no adapter handles the settings
        """
        protocol = getattr(settings, 'protocol_type', None)
        if protocol is None:
            raise ConfigurationError(f"Unsupported protocol settings: {type(settings).__name__}")

        builder = self._overrides.get(protocol)
        if builder is not None:
            return builder(settings, self.secret_resolver)

        adapter_class = adapter_registry.get_adapter_class(protocol)
        if adapter_class is None:
            raise ConfigurationError(f"No adapter registered for protocol '{protocol.value}'")

        logger.debug(f"Creating {adapter_class.__name__} for {settings.address}")
        return adapter_class(settings, self.secret_resolver)

    def supported_protocols(self) -> List[ProtocolType]:
        return sorted(set(adapter_registry.list_protocols()) | set(self._overrides), key=lambda p: p.value)
