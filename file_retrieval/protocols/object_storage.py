"""Object storage protocol adapter for S3-compatible buckets.

Lists the direct children of ``prefix/path`` with ``list_objects_v2``.
Credentials come either from the delegated boto3 credential chain (instance
role, environment, profile) or from a secret reference holding
``ACCESS_KEY_ID:SECRET_ACCESS_KEY[:SESSION_TOKEN]``.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from ..configuration.models import ObjectStorageAuthenticationType, ObjectStorageSettings, ProtocolType
from ..errors import ConfigurationError, ErrorCategory, TransientTransportError, TransportError
from .base import DiscoveredFile, ProtocolAdapter, join_path, register_adapter, select_files
from .secrets import SecretResolver


logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    "AccessDenied", "ExpiredToken", "ExpiredTokenException", "InvalidAccessKeyId",
    "InvalidToken", "SignatureDoesNotMatch", "TokenRefreshRequired",
}
CONFIGURATION_ERROR_CODES = {
    "NoSuchBucket", "InvalidBucketName", "PermanentRedirect", "AuthorizationHeaderMalformed",
    "InvalidArgument",
}
TRANSIENT_ERROR_CODES = {
    "SlowDown", "ServiceUnavailable", "InternalError", "RequestTimeout", "Throttling",
}


def classify_storage_error(error: Exception) -> TransportError:
    """Map botocore failures to retryable or non-retryable errors."""
    if isinstance(error, TransportError):
        return error
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        message = f"Object storage request failed ({code}): {error}"
        if code in AUTH_ERROR_CODES:
            return TransientTransportError(message, ErrorCategory.AUTHENTICATION_FAILURE)
        if code in CONFIGURATION_ERROR_CODES:
            return ConfigurationError(message)
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return TransientTransportError(message, ErrorCategory.PROTOCOL_ERROR)
        return ConfigurationError(message, ErrorCategory.PROTOCOL_ERROR)
    if isinstance(error, (ConnectTimeoutError, ReadTimeoutError)):
        return TransientTransportError(f"Object storage timed out: {error}", ErrorCategory.CONNECTION_TIMEOUT)
    if isinstance(error, EndpointConnectionError):
        return TransientTransportError(f"Object storage unreachable: {error}", ErrorCategory.CONNECTION_TIMEOUT)
    if isinstance(error, (NoCredentialsError, PartialCredentialsError)):
        return ConfigurationError(f"No usable credentials: {error}", ErrorCategory.AUTHENTICATION_FAILURE)
    if isinstance(error, BotoCoreError):
        return TransientTransportError(f"Object storage error: {error}", ErrorCategory.PROTOCOL_ERROR)
    return TransientTransportError(f"Unexpected object storage failure: {error}", ErrorCategory.UNKNOWN_ERROR)


def _default_client_factory(client_kwargs: Dict[str, Any]) -> Any:
    return boto3.client(**client_kwargs)


@register_adapter(ProtocolType.OBJECT_STORAGE)
class ObjectStorageProtocolAdapter(ProtocolAdapter):
    """Discovers objects in a bucket by key prefix."""

    settings_class = ObjectStorageSettings

    def __init__(
        self,
        settings: ObjectStorageSettings,
        secret_resolver: SecretResolver,
        client_factory: Optional[Callable[[Dict[str, Any]], Any]] = None
    ):
        super().__init__(settings, secret_resolver)
        self._client_factory = client_factory or _default_client_factory

    async def check_for_files(
        self,
        address: str,
        path_pattern: str,
        filename_pattern: str,
        extension_filter: Optional[str] = None
    ) -> List[DiscoveredFile]:
        prefix = join_path(self.settings.prefix, path_pattern)
        if prefix:
            prefix += "/"

        loop = asyncio.get_running_loop()
        try:
            client = await self._create_client()
            entries = await loop.run_in_executor(None, self._list_objects, client, prefix)
        except (ClientError, BotoCoreError) as e:
            raise classify_storage_error(e) from e

        files = select_files(entries, filename_pattern, extension_filter)
        logger.info(
            f"Object storage {address}/{prefix}: {len(files)} of {len(entries)} objects match '{filename_pattern}'"
        )
        return files

    async def test_connection(self) -> bool:
        try:
            client = await self._create_client()
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, lambda: client.head_bucket(**self._bucket_args()))
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(
                f"Object storage connection test failed for {self.settings.address}: {classify_storage_error(e)}"
            )
            return False
        except TransportError as e:
            logger.warning(f"Object storage connection test failed for {self.settings.address}: {e}")
            return False

    async def _create_client(self) -> Any:
        client_kwargs: Dict[str, Any] = {
            "service_name": "s3",
            "config": Config(
                signature_version="s3v4",
                connect_timeout=self.settings.connection_timeout_seconds,
                read_timeout=self.settings.connection_timeout_seconds,
                retries={"max_attempts": 1}
            ),
        }
        if self.settings.region:
            client_kwargs["region_name"] = self.settings.region
        if self.settings.endpoint_url:
            client_kwargs["endpoint_url"] = self.settings.endpoint_url

        if self.settings.authentication_type != ObjectStorageAuthenticationType.DELEGATED_IDENTITY:
            client_kwargs.update(await self._resolve_credentials())

        return self._client_factory(client_kwargs)

    async def _resolve_credentials(self) -> Dict[str, str]:
        secret = await self.secret_resolver.resolve(self.settings.credential_secret_ref)
        parts = secret.split(':')
        expected = 3 if self.settings.authentication_type == ObjectStorageAuthenticationType.SESSION_TOKEN else 2
        if len(parts) != expected or not all(parts):
            raise ConfigurationError(
                f"Secret '{self.settings.credential_secret_ref}' must hold {expected} ':'-separated parts "
                f"for {self.settings.authentication_type.value} authentication",
                ErrorCategory.AUTHENTICATION_FAILURE
            )
        credentials = {"aws_access_key_id": parts[0], "aws_secret_access_key": parts[1]}
        if expected == 3:
            credentials["aws_session_token"] = parts[2]
        return credentials

    def _bucket_args(self) -> Dict[str, str]:
        args = {"Bucket": self.settings.container_name}
        # A 12-digit account name is an AWS account id and pins the bucket owner
        if self.settings.endpoint_url is None and self.settings.account_name.isdigit() \
                and len(self.settings.account_name) == 12:
            args["ExpectedBucketOwner"] = self.settings.account_name
        return args

    def _list_objects(self, client: Any, prefix: str) -> List[DiscoveredFile]:
        paginator = client.get_paginator("list_objects_v2")
        files = []
        for page in paginator.paginate(Prefix=prefix, Delimiter='/', **self._bucket_args()):
            for item in page.get("Contents", []):
                key = item["Key"]
                name = key[len(prefix):]
                if not name or name.endswith('/'):
                    continue
                files.append(DiscoveredFile(
                    name=name,
                    location=self._location(key),
                    size_bytes=int(item.get("Size", 0)),
                    modified_at=item.get("LastModified"),
                    metadata={k: item[k] for k in ("ETag", "StorageClass") if k in item}
                ))
        return files

    def _location(self, key: str) -> str:
        if self.settings.endpoint_url:
            return f"{self.settings.endpoint_url.rstrip('/')}/{self.settings.container_name}/{key}"
        return f"s3://{self.settings.container_name}/{key}"
