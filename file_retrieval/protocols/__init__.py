"""Protocol adapters for file discovery.

One adapter per transport behind a common interface, selected by a factory
keyed on the settings discriminator:
- FTP/FTPS via a stateful ftplib session
- HTTPS via httpx, reading JSON listings or single files
- S3-compatible object storage via boto3 prefix listing
"""

from .base import (
    DiscoveredFile,
    ProtocolAdapter,
    ProtocolAdapterRegistry,
    adapter_registry,
    register_adapter,
    select_files,
)

from .secrets import (
    SecretResolver,
    StaticSecretResolver,
    EnvironmentSecretResolver,
)

from .ftp import FtpProtocolAdapter
from .https import HttpsProtocolAdapter
from .object_storage import ObjectStorageProtocolAdapter
from .factory import ProtocolAdapterFactory

__all__ = [
    'DiscoveredFile',
    'ProtocolAdapter',
    'ProtocolAdapterRegistry',
    'adapter_registry',
    'register_adapter',
    'select_files',
    'SecretResolver',
    'StaticSecretResolver',
    'EnvironmentSecretResolver',
    'FtpProtocolAdapter',
    'HttpsProtocolAdapter',
    'ObjectStorageProtocolAdapter',
    'ProtocolAdapterFactory',
]
