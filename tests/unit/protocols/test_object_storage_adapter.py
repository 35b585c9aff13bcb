"""Unit tests for the object storage adapter using botocore's Stubber."""

from datetime import datetime, timezone

import boto3
import pytest
from botocore.stub import Stubber

from file_retrieval.configuration.models import ObjectStorageSettings
from file_retrieval.errors import ConfigurationError, ErrorCategory, TransientTransportError
from file_retrieval.protocols.object_storage import ObjectStorageProtocolAdapter
from file_retrieval.protocols.secrets import StaticSecretResolver


MODIFIED = datetime(2024, 3, 15, 6, 5, tzinfo=timezone.utc)


class StubbedS3:
    """Client factory returning one stubbed S3 client and keeping its kwargs."""

    def __init__(self):
        self.client = boto3.client(
            "s3",
            region_name="us-east-1",
            aws_access_key_id="testing",
            aws_secret_access_key="testing"
        )
        self.stubber = Stubber(self.client)
        self.client_kwargs = None

    def __call__(self, client_kwargs):
        self.client_kwargs = client_kwargs
        return self.client


@pytest.fixture
def s3():
    stubbed = StubbedS3()
    stubbed.stubber.activate()
    yield stubbed
    stubbed.stubber.deactivate()


def make_adapter(s3, secrets=None, **overrides):
    data = {"account_name": "analytics", "container_name": "exports-bucket", "prefix": "daily"}
    data.update(overrides)
    return ObjectStorageProtocolAdapter(
        ObjectStorageSettings(**data),
        StaticSecretResolver(secrets or {}),
        client_factory=s3
    )


def listing(*keys):
    return {
        "IsTruncated": False,
        "KeyCount": len(keys),
        "Contents": [
            {"Key": key, "Size": 100 + index, "LastModified": MODIFIED, "ETag": f'"etag-{index}"'}
            for index, key in enumerate(keys)
        ],
    }


class TestDiscovery:
    """Test prefix listing."""

    @pytest.mark.asyncio
    async def test_lists_direct_children_matching_pattern(self, s3):
        s3.stubber.add_response(
            "list_objects_v2",
            listing(
                "daily/2024/03/15/part-0000.parquet",
                "daily/2024/03/15/part-0001.parquet",
                "daily/2024/03/15/_SUCCESS",
                "daily/2024/03/15/",
            ),
            {"Bucket": "exports-bucket", "Prefix": "daily/2024/03/15/", "Delimiter": "/"}
        )
        adapter = make_adapter(s3)

        files = await adapter.check_for_files("analytics/exports-bucket", "2024/03/15", "part-*", "parquet")

        assert [f.name for f in files] == ["part-0000.parquet", "part-0001.parquet"]
        assert files[0].location == "s3://exports-bucket/daily/2024/03/15/part-0000.parquet"
        assert files[0].size_bytes == 100
        assert files[0].modified_at == MODIFIED
        assert files[0].metadata["ETag"] == '"etag-0"'
        s3.stubber.assert_no_pending_responses()

    @pytest.mark.asyncio
    async def test_delegated_identity_passes_no_keys(self, s3):
        s3.stubber.add_response("list_objects_v2", listing())
        adapter = make_adapter(s3, region="eu-west-2")

        await adapter.check_for_files("analytics/exports-bucket", "", "*")

        assert s3.client_kwargs["service_name"] == "s3"
        assert s3.client_kwargs["region_name"] == "eu-west-2"
        assert "aws_access_key_id" not in s3.client_kwargs

    @pytest.mark.asyncio
    async def test_access_key_credentials(self, s3):
        s3.stubber.add_response("list_objects_v2", listing())
        adapter = make_adapter(
            s3,
            secrets={"lake/keys": "AKIAEXAMPLE:secretkey"},
            authentication_type="access_key",
            credential_secret_ref="lake/keys"
        )

        await adapter.check_for_files("analytics/exports-bucket", "", "*")

        assert s3.client_kwargs["aws_access_key_id"] == "AKIAEXAMPLE"
        assert s3.client_kwargs["aws_secret_access_key"] == "secretkey"
        assert "aws_session_token" not in s3.client_kwargs

    @pytest.mark.asyncio
    async def test_malformed_credential_secret(self, s3):
        adapter = make_adapter(
            s3,
            secrets={"lake/keys": "only-one-part"},
            authentication_type="session_token",
            credential_secret_ref="lake/keys"
        )

        with pytest.raises(ConfigurationError) as exc_info:
            await adapter.check_for_files("analytics/exports-bucket", "", "*")

        assert exc_info.value.category == ErrorCategory.AUTHENTICATION_FAILURE

    @pytest.mark.asyncio
    async def test_account_id_pins_bucket_owner(self, s3):
        s3.stubber.add_response(
            "list_objects_v2",
            listing(),
            {"Bucket": "exports-bucket", "Prefix": "", "Delimiter": "/", "ExpectedBucketOwner": "123456789012"}
        )
        adapter = make_adapter(s3, account_name="123456789012", prefix=None)

        await adapter.check_for_files("123456789012/exports-bucket", "", "*")

        s3.stubber.assert_no_pending_responses()

    @pytest.mark.asyncio
    async def test_custom_endpoint_location(self, s3):
        s3.stubber.add_response("list_objects_v2", listing("daily/a.csv"))
        adapter = make_adapter(s3, endpoint_url="https://minio.internal:9000/")

        files = await adapter.check_for_files("analytics/exports-bucket", "", "*.csv")

        assert s3.client_kwargs["endpoint_url"] == "https://minio.internal:9000/"
        assert files[0].location == "https://minio.internal:9000/exports-bucket/daily/a.csv"


class TestFailures:

    @pytest.mark.parametrize("code,status,error_class,category", [
        ("NoSuchBucket", 404, ConfigurationError, ErrorCategory.CONFIGURATION_ERROR),
        ("AccessDenied", 403, TransientTransportError, ErrorCategory.AUTHENTICATION_FAILURE),
        ("SlowDown", 503, TransientTransportError, ErrorCategory.PROTOCOL_ERROR),
        ("SomethingOdd", 400, ConfigurationError, ErrorCategory.PROTOCOL_ERROR),
    ])
    @pytest.mark.asyncio
    async def test_client_errors(self, s3, code, status, error_class, category):
        s3.stubber.add_client_error("list_objects_v2", service_error_code=code, http_status_code=status)
        adapter = make_adapter(s3)

        with pytest.raises(error_class) as exc_info:
            await adapter.check_for_files("analytics/exports-bucket", "", "*")

        assert type(exc_info.value) is error_class
        assert exc_info.value.category == category


class TestConnection:

    @pytest.mark.asyncio
    async def test_connection_ok(self, s3):
        s3.stubber.add_response("head_bucket", {}, {"Bucket": "exports-bucket"})
        adapter = make_adapter(s3)

        assert await adapter.test_connection() is True

    @pytest.mark.asyncio
    async def test_connection_denied(self, s3):
        s3.stubber.add_client_error("head_bucket", service_error_code="403", http_status_code=403)
        adapter = make_adapter(s3)

        assert await adapter.test_connection() is False
