"""Unit tests for the HTTPS protocol adapter using httpx.MockTransport."""

from datetime import datetime, timezone

import httpx
import pytest

from file_retrieval.configuration.models import FtpSettings, HttpsAuthenticationType, HttpsSettings
from file_retrieval.errors import ConfigurationError, ErrorCategory, TransientTransportError
from file_retrieval.protocols.https import HttpsProtocolAdapter
from file_retrieval.protocols.secrets import StaticSecretResolver


BASE_URL = "https://files.vendor.example/reports"

LISTING = [
    {"name": "summary.json", "size": 120, "last_modified": "2024-03-14T05:00:00Z", "etag": "abc"},
    {"name": "detail.json", "url": "https://cdn.vendor.example/detail.json", "size": 4096},
    {"name": "notes.txt", "size": 10},
    {"url": "nameless.json"},
]


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler):
        self.requests = []

        def recording_handler(request):
            self.requests.append(request)
            return handler(request)

        super().__init__(recording_handler)


def make_adapter(handler, authentication_type=HttpsAuthenticationType.NONE, secrets=None, **settings):
    settings_kwargs = {"base_url": BASE_URL, "authentication_type": authentication_type}
    if authentication_type != HttpsAuthenticationType.NONE:
        settings_kwargs["credential_secret_ref"] = "vendor/token"
    settings_kwargs.update(settings)
    transport = RecordingTransport(handler)
    adapter = HttpsProtocolAdapter(
        HttpsSettings(**settings_kwargs),
        StaticSecretResolver(secrets or {"vendor/token": "s3cret"}),
        transport=transport
    )
    return adapter, transport


class TestListingDiscovery:
    """Test JSON listing responses."""

    @pytest.mark.asyncio
    async def test_listing_is_filtered_by_pattern(self):
        adapter, transport = make_adapter(lambda request: httpx.Response(200, json=LISTING))

        files = await adapter.check_for_files(BASE_URL, "2024-03-14", "*.json")

        assert str(transport.requests[0].url) == f"{BASE_URL}/2024-03-14"
        assert [f.name for f in files] == ["summary.json", "detail.json"]
        assert files[0].location == f"{BASE_URL}/2024-03-14/summary.json"
        assert files[0].size_bytes == 120
        assert files[0].modified_at == datetime(2024, 3, 14, 5, 0, tzinfo=timezone.utc)
        assert files[0].metadata == {"etag": "abc"}
        assert files[1].location == "https://cdn.vendor.example/detail.json"

    @pytest.mark.asyncio
    async def test_extension_filter(self):
        adapter, _ = make_adapter(lambda request: httpx.Response(200, json=LISTING))

        files = await adapter.check_for_files(BASE_URL, "", "*", "txt")

        assert [f.name for f in files] == ["notes.txt"]

    @pytest.mark.asyncio
    async def test_empty_path_requests_base_url(self):
        adapter, transport = make_adapter(lambda request: httpx.Response(200, json=[]))

        assert await adapter.check_for_files(BASE_URL, "", "*") == []
        assert str(transport.requests[0].url) == BASE_URL


class TestSingleFileDiscovery:

    @pytest.mark.asyncio
    async def test_non_listing_response_is_one_file(self):
        def handler(request):
            return httpx.Response(
                200,
                content=b"a,b\n1,2\n",
                headers={
                    "content-type": "text/csv",
                    "last-modified": "Thu, 14 Mar 2024 05:00:00 GMT",
                    "etag": '"v1"',
                }
            )

        adapter, _ = make_adapter(handler)

        files = await adapter.check_for_files(BASE_URL, "2024-03-14/report.csv", "report*.csv")

        assert len(files) == 1
        assert files[0].name == "report.csv"
        assert files[0].size_bytes == 8
        assert files[0].modified_at == datetime(2024, 3, 14, 5, 0, tzinfo=timezone.utc)
        assert files[0].metadata == {"content_type": "text/csv", "etag": '"v1"'}

    @pytest.mark.asyncio
    async def test_single_file_not_matching_pattern(self):
        adapter, _ = make_adapter(lambda request: httpx.Response(200, content=b"x"))

        assert await adapter.check_for_files(BASE_URL, "other.bin", "*.csv") == []


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_bearer_token(self):
        adapter, transport = make_adapter(
            lambda request: httpx.Response(200, json=[]),
            authentication_type=HttpsAuthenticationType.BEARER_TOKEN
        )

        await adapter.check_for_files(BASE_URL, "", "*")

        assert transport.requests[0].headers["authorization"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_api_key_header(self):
        adapter, transport = make_adapter(
            lambda request: httpx.Response(200, json=[]),
            authentication_type=HttpsAuthenticationType.API_KEY,
            api_key_header="X-Vendor-Key"
        )

        await adapter.check_for_files(BASE_URL, "", "*")

        assert transport.requests[0].headers["x-vendor-key"] == "s3cret"

    @pytest.mark.asyncio
    async def test_basic_auth(self):
        adapter, transport = make_adapter(
            lambda request: httpx.Response(200, json=[]),
            authentication_type=HttpsAuthenticationType.USERNAME_PASSWORD,
            username="reports"
        )

        await adapter.check_for_files(BASE_URL, "", "*")

        assert transport.requests[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.asyncio
    async def test_unresolvable_secret(self):
        adapter, transport = make_adapter(
            lambda request: httpx.Response(200, json=[]),
            authentication_type=HttpsAuthenticationType.BEARER_TOKEN,
            secrets={"something/else": "x"}
        )

        with pytest.raises(ConfigurationError):
            await adapter.check_for_files(BASE_URL, "", "*")
        assert transport.requests == []


class TestFailureClassification:
    """Test retryable versus non-retryable HTTP failures."""

    @pytest.mark.parametrize("status,error_class,category", [
        (401, TransientTransportError, ErrorCategory.AUTHENTICATION_FAILURE),
        (403, TransientTransportError, ErrorCategory.AUTHENTICATION_FAILURE),
        (404, ConfigurationError, ErrorCategory.CONFIGURATION_ERROR),
        (400, ConfigurationError, ErrorCategory.PROTOCOL_ERROR),
        (429, TransientTransportError, ErrorCategory.CONNECTION_TIMEOUT),
        (503, TransientTransportError, ErrorCategory.PROTOCOL_ERROR),
    ])
    @pytest.mark.asyncio
    async def test_status_codes(self, status, error_class, category):
        adapter, _ = make_adapter(lambda request: httpx.Response(status, text="nope"))

        with pytest.raises(error_class) as exc_info:
            await adapter.check_for_files(BASE_URL, "", "*")

        assert type(exc_info.value) is error_class
        assert exc_info.value.category == category

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        adapter, _ = make_adapter(handler)

        with pytest.raises(TransientTransportError):
            await adapter.check_for_files(BASE_URL, "", "*")

    @pytest.mark.asyncio
    async def test_timeout_is_transient(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        adapter, _ = make_adapter(handler)

        with pytest.raises(TransientTransportError) as exc_info:
            await adapter.check_for_files(BASE_URL, "", "*")

        assert exc_info.value.category == ErrorCategory.CONNECTION_TIMEOUT


class TestConnection:

    @pytest.mark.asyncio
    async def test_connection_ok(self):
        adapter, transport = make_adapter(lambda request: httpx.Response(200))

        assert await adapter.test_connection() is True
        assert transport.requests[0].method == "HEAD"

    @pytest.mark.asyncio
    async def test_connection_failure(self):
        adapter, _ = make_adapter(lambda request: httpx.Response(500))

        assert await adapter.test_connection() is False

    def test_wrong_settings_type(self):
        settings = FtpSettings(server="ftp.example.com", username="u", password_secret_ref="ref")

        with pytest.raises(ConfigurationError):
            HttpsProtocolAdapter(settings, StaticSecretResolver())
