"""HTTPS protocol adapter.

GETs ``base_url/path``. A JSON array response is read as a file listing of
``{name, url, size, last_modified}`` objects; any other response is treated
as a single file at the requested URL.
"""

import logging
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import unquote, urljoin, urlparse

import httpx

from ..configuration.models import HttpsAuthenticationType, HttpsSettings, ProtocolType
from ..errors import ConfigurationError, ErrorCategory, TransientTransportError, TransportError
from .base import DiscoveredFile, ProtocolAdapter, join_path, register_adapter, select_files
from .secrets import SecretResolver


logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}


def classify_http_status(response: httpx.Response) -> TransportError:
    """Map an error status to a retryable or non-retryable failure."""
    status = response.status_code
    message = f"HTTP {status} from {response.request.url}: {response.text[:200]}"
    if status in (401, 403):
        return TransientTransportError(message, ErrorCategory.AUTHENTICATION_FAILURE)
    if status in RETRYABLE_STATUS_CODES:
        return TransientTransportError(message, ErrorCategory.CONNECTION_TIMEOUT)
    if status >= 500:
        return TransientTransportError(message, ErrorCategory.PROTOCOL_ERROR)
    return ConfigurationError(message, ErrorCategory.CONFIGURATION_ERROR if status == 404 else ErrorCategory.PROTOCOL_ERROR)


def classify_http_error(error: httpx.HTTPError) -> TransportError:
    """Map httpx transport exceptions."""
    if isinstance(error, httpx.TimeoutException):
        return TransientTransportError(f"Request timed out: {error}", ErrorCategory.CONNECTION_TIMEOUT)
    if isinstance(error, httpx.TooManyRedirects):
        return ConfigurationError(f"Too many redirects: {error}", ErrorCategory.PROTOCOL_ERROR)
    if isinstance(error, httpx.UnsupportedProtocol):
        return ConfigurationError(f"Unsupported URL: {error}")
    if isinstance(error, httpx.TransportError):
        return TransientTransportError(f"Request error: {error}", ErrorCategory.PROTOCOL_ERROR)
    return TransientTransportError(f"Unexpected HTTP error: {error}", ErrorCategory.UNKNOWN_ERROR)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


def parse_iso_date(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None


@register_adapter(ProtocolType.HTTPS)
class HttpsProtocolAdapter(ProtocolAdapter):
    """Discovers files served over HTTPS."""

    settings_class = HttpsSettings

    def __init__(
        self,
        settings: HttpsSettings,
        secret_resolver: SecretResolver,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(settings, secret_resolver)
        self._transport = transport

    async def check_for_files(
        self,
        address: str,
        path_pattern: str,
        filename_pattern: str,
        extension_filter: Optional[str] = None
    ) -> List[DiscoveredFile]:
        url = self._build_url(address, path_pattern)
        async with await self._create_client() as client:
            try:
                response = await client.get(url)
            except httpx.HTTPError as e:
                raise classify_http_error(e) from e

        if response.status_code >= 400:
            raise classify_http_status(response)

        if self._is_listing(response):
            entries = self._parse_listing(str(response.url), response.json())
        else:
            entries = [self._single_file(response)]

        files = select_files(entries, filename_pattern, extension_filter)
        logger.info(f"HTTPS {url}: {len(files)} of {len(entries)} files match '{filename_pattern}'")
        return files

    async def test_connection(self) -> bool:
        try:
            async with await self._create_client() as client:
                response = await client.head(self.settings.base_url)
            if response.status_code >= 400:
                logger.warning(f"HTTPS connection test for {self.settings.base_url} returned {response.status_code}")
                return False
            return True
        except httpx.HTTPError as e:
            logger.warning(f"HTTPS connection test failed for {self.settings.base_url}: {classify_http_error(e)}")
            return False
        except TransportError as e:
            logger.warning(f"HTTPS connection test failed for {self.settings.base_url}: {e}")
            return False

    async def _create_client(self) -> httpx.AsyncClient:
        headers: Dict[str, str] = {}
        auth = None
        auth_type = self.settings.authentication_type

        if auth_type != HttpsAuthenticationType.NONE:
            secret = await self.secret_resolver.resolve(self.settings.credential_secret_ref)
            if auth_type == HttpsAuthenticationType.USERNAME_PASSWORD:
                auth = httpx.BasicAuth(self.settings.username, secret)
            elif auth_type == HttpsAuthenticationType.BEARER_TOKEN:
                headers["Authorization"] = f"Bearer {secret}"
            elif auth_type == HttpsAuthenticationType.API_KEY:
                headers[self.settings.api_key_header] = secret

        return httpx.AsyncClient(
            timeout=httpx.Timeout(timeout=self.settings.connection_timeout_seconds),
            follow_redirects=self.settings.follow_redirects,
            max_redirects=self.settings.max_redirects,
            headers=headers,
            auth=auth,
            transport=self._transport
        )

    @staticmethod
    def _build_url(address: str, path: str) -> str:
        relative = join_path(path)
        if not relative:
            return address
        return f"{address.rstrip('/')}/{relative}"

    @staticmethod
    def _is_listing(response: httpx.Response) -> bool:
        if "json" not in response.headers.get("content-type", ""):
            return False
        try:
            return isinstance(response.json(), list)
        except ValueError:
            return False

    def _parse_listing(self, base_url: str, payload: List[Any]) -> List[DiscoveredFile]:
        files = []
        for item in payload:
            if not isinstance(item, dict) or not item.get("name"):
                logger.debug(f"Skipping listing entry without a name: {item!r}")
                continue
            name = str(item["name"])
            location = urljoin(base_url.rstrip('/') + '/', str(item.get("url") or name))
            files.append(DiscoveredFile(
                name=name,
                location=location,
                size_bytes=int(item.get("size") or 0),
                modified_at=parse_iso_date(item.get("last_modified")),
                metadata={
                    k: item[k] for k in ("content_type", "etag") if item.get(k) is not None
                }
            ))
        return files

    @staticmethod
    def _single_file(response: httpx.Response) -> DiscoveredFile:
        url = str(response.url)
        name = unquote(urlparse(url).path.rstrip('/').rsplit('/', 1)[-1])
        metadata = {}
        for header, key in (("content-type", "content_type"), ("etag", "etag")):
            if response.headers.get(header):
                metadata[key] = response.headers[header]
        return DiscoveredFile(
            name=name,
            location=url,
            size_bytes=int(response.headers.get("content-length") or len(response.content)),
            modified_at=parse_http_date(response.headers.get("last-modified")),
            metadata=metadata
        )
