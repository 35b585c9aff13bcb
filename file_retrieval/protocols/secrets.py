"""Resolution of credential references to secret values."""

import os
import re
from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..errors import ConfigurationError


class SecretResolver(ABC):
    """Turns a credential reference from settings into its secret value."""

    @abstractmethod
    async def resolve(self, reference: str) -> str:
        """Resolve a secret reference.

        Raises:
            ConfigurationError: If the reference cannot be resolved
        """
        pass


class StaticSecretResolver(SecretResolver):
    """Secrets from a fixed mapping; for tests and local development."""

    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self._secrets = dict(secrets or {})

    async def resolve(self, reference: str) -> str:
        try:
            return self._secrets[reference]
        except KeyError:
            raise ConfigurationError(f"Secret '{reference}' could not be resolved")


class EnvironmentSecretResolver(SecretResolver):
    """Secrets from environment variables.

    Reference ``ftp/partner-a`` is read from ``FILE_RETRIEVAL_SECRET_FTP_PARTNER_A``.
    """

    def __init__(self, prefix: str = "FILE_RETRIEVAL_SECRET_"):
        self.prefix = prefix

    def variable_name(self, reference: str) -> str:
        return self.prefix + re.sub(r'[^A-Za-z0-9]', '_', reference).upper()

    async def resolve(self, reference: str) -> str:
        value = os.getenv(self.variable_name(reference))
        if not value:
            raise ConfigurationError(
                f"Secret '{reference}' could not be resolved (set {self.variable_name(reference)})"
            )
        return value
