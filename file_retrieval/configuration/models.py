"""Data models for file retrieval configurations.

A configuration couples a protocol-specific location with path and filename
patterns, a cron schedule and the notifications to emit when files turn up.
Protocol settings form a tagged union discriminated by ``protocol``.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union
from urllib.parse import urlparse
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from ..scheduling.cron import CronValidationError, ScheduleEvaluator, as_utc
from .tokens import normalize_extension, validate_patterns


CONTAINER_NAME_PATTERN = re.compile(r'^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$')


class ProtocolType(str, Enum):
    """Supported transport protocols."""
    FTP = "ftp"
    HTTPS = "https"
    OBJECT_STORAGE = "object_storage"


class HttpsAuthenticationType(str, Enum):
    NONE = "none"
    USERNAME_PASSWORD = "username_password"
    BEARER_TOKEN = "bearer_token"
    API_KEY = "api_key"


class ObjectStorageAuthenticationType(str, Enum):
    DELEGATED_IDENTITY = "delegated_identity"
    ACCESS_KEY = "access_key"
    SESSION_TOKEN = "session_token"


class FtpSettings(BaseModel):
    """Connection settings for an FTP or FTPS server."""

    protocol: Literal["ftp"] = "ftp"

    server: str = Field(
        min_length=1,
        max_length=255,
        description="FTP server hostname or IP address"
    )

    port: int = Field(
        default=21,
        ge=1,
        le=65535,
        description="FTP server port"
    )

    username: str = Field(
        min_length=1,
        max_length=100,
        description="Login user name"
    )

    password_secret_ref: str = Field(
        min_length=1,
        max_length=255,
        description="Secret reference resolved to the password at execution time"
    )

    use_tls: bool = Field(default=True, description="Negotiate explicit FTPS")
    use_passive_mode: bool = Field(default=True, description="Use passive data connections")

    connection_timeout_seconds: int = Field(
        default=30,
        ge=1,
        le=300,
        description="Connection timeout in seconds"
    )

    @property
    def protocol_type(self) -> ProtocolType:
        return ProtocolType.FTP

    @property
    def address(self) -> str:
        return self.server

    @property
    def host(self) -> str:
        return self.server


class HttpsSettings(BaseModel):
    """Settings for an HTTPS endpoint serving files or a JSON file listing."""

    protocol: Literal["https"] = "https"

    base_url: str = Field(
        min_length=1,
        max_length=500,
        description="Base URL; must use https://"
    )

    authentication_type: HttpsAuthenticationType = Field(
        default=HttpsAuthenticationType.NONE,
        description="How requests authenticate"
    )

    username: Optional[str] = Field(default=None, max_length=100)

    credential_secret_ref: Optional[str] = Field(
        default=None,
        max_length=255,
        description="Secret reference for the password, bearer token or API key"
    )

    api_key_header: str = Field(default="X-API-Key", min_length=1, max_length=100)

    connection_timeout_seconds: int = Field(default=30, ge=1, le=300)
    follow_redirects: bool = Field(default=True)
    max_redirects: int = Field(default=3, ge=0, le=10)

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, v):
        """Require an absolute https URL."""
        if not v.lower().startswith('https://'):
            raise ValueError("base_url must start with https://")
        if not urlparse(v).netloc:
            raise ValueError(f"base_url '{v}' has no host")
        return v

    @model_validator(mode='after')
    def validate_credentials(self):
        """Check the credentials each authentication type needs."""
        if self.authentication_type == HttpsAuthenticationType.USERNAME_PASSWORD and not self.username:
            raise ValueError("username is required for username_password authentication")
        if self.authentication_type != HttpsAuthenticationType.NONE and not self.credential_secret_ref:
            raise ValueError(
                f"credential_secret_ref is required for {self.authentication_type.value} authentication"
            )
        return self

    @property
    def protocol_type(self) -> ProtocolType:
        return ProtocolType.HTTPS

    @property
    def address(self) -> str:
        return self.base_url

    @property
    def host(self) -> str:
        return urlparse(self.base_url).netloc


class ObjectStorageSettings(BaseModel):
    """Settings for an S3-compatible bucket listed by key prefix."""

    protocol: Literal["object_storage"] = "object_storage"

    account_name: str = Field(
        min_length=1,
        max_length=63,
        description="Storage account; sent as the expected bucket owner on AWS"
    )

    container_name: str = Field(
        min_length=3,
        max_length=63,
        description="Bucket name"
    )

    authentication_type: ObjectStorageAuthenticationType = Field(
        default=ObjectStorageAuthenticationType.DELEGATED_IDENTITY,
        description="Delegated credential chain or key-based credentials"
    )

    credential_secret_ref: Optional[str] = Field(default=None, max_length=255)
    prefix: Optional[str] = Field(default=None, max_length=1024)
    endpoint_url: Optional[str] = Field(default=None, max_length=500)
    region: Optional[str] = Field(default=None, max_length=50)
    connection_timeout_seconds: int = Field(default=30, ge=1, le=300)

    @field_validator('container_name')
    @classmethod
    def validate_container_name(cls, v):
        """Bucket names are lowercase letters, digits, dots and hyphens."""
        if not CONTAINER_NAME_PATTERN.match(v):
            raise ValueError(
                f"container_name '{v}' must be lowercase letters, digits, '.' or '-'"
            )
        return v

    @model_validator(mode='after')
    def validate_credentials(self):
        if (self.authentication_type != ObjectStorageAuthenticationType.DELEGATED_IDENTITY
                and not self.credential_secret_ref):
            raise ValueError(
                f"credential_secret_ref is required for {self.authentication_type.value} authentication"
            )
        return self

    @property
    def protocol_type(self) -> ProtocolType:
        return ProtocolType.OBJECT_STORAGE

    @property
    def address(self) -> str:
        return f"{self.account_name}/{self.container_name}"

    @property
    def host(self) -> str:
        return self.account_name


ProtocolSettings = Annotated[
    Union[FtpSettings, HttpsSettings, ObjectStorageSettings],
    Field(discriminator='protocol')
]


class ScheduleDefinition(BaseModel):
    """Cron schedule evaluated in the local time of ``timezone``."""

    cron_expression: str = Field(description="5-field or 6-field (leading seconds) cron expression")
    timezone: str = Field(default="UTC", description="IANA timezone identifier")
    description: Optional[str] = Field(default=None, max_length=200)

    @field_validator('cron_expression')
    @classmethod
    def validate_cron(cls, v):
        """Validate cron expression format."""
        try:
            ScheduleEvaluator().validate_expression(v)
        except CronValidationError as e:
            raise ValueError(str(e))
        return v.strip()

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v):
        """Validate IANA timezone identifier."""
        try:
            ScheduleEvaluator.validate_timezone(v)
        except CronValidationError as e:
            raise ValueError(str(e))
        return v


class NotificationDefinition(BaseModel):
    """Notification published for each check that discovers files."""

    event_type: str = Field(min_length=1, max_length=100)
    properties: Dict[str, str] = Field(default_factory=dict)


class InstructionDefinition(BaseModel):
    """Downstream instruction sent for each check that discovers files."""

    instruction_type: str = Field(min_length=1, max_length=100)
    target: str = Field(min_length=1, max_length=500)
    properties: Dict[str, str] = Field(default_factory=dict)


class ConfigurationSpec(BaseModel):
    """User-supplied fields of a configuration, as accepted by create and update."""

    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    protocol_settings: ProtocolSettings
    file_path_pattern: str = Field(min_length=1, max_length=500)
    filename_pattern: str = Field(min_length=1, max_length=200)
    file_extension: Optional[str] = Field(default=None, max_length=10)
    schedule: ScheduleDefinition

    notifications: List[NotificationDefinition] = Field(
        min_length=1,
        description="At least one notification to publish on discovery"
    )

    instructions: List[InstructionDefinition] = Field(default_factory=list)

    @field_validator('file_extension')
    @classmethod
    def validate_file_extension(cls, v):
        if v is None:
            return None
        normalized = normalize_extension(v)
        return normalized or None

    @model_validator(mode='after')
    def validate_tokens(self):
        """Date tokens are allowed in paths and filenames, never in the host."""
        errors = validate_patterns(
            self.protocol_settings.host,
            self.file_path_pattern,
            self.filename_pattern
        )
        if errors:
            raise ValueError("; ".join(errors))
        return self

    @property
    def protocol(self) -> ProtocolType:
        return self.protocol_settings.protocol_type


SPEC_FIELDS = tuple(ConfigurationSpec.model_fields)


class Configuration(ConfigurationSpec):
    """Stored, tenant-scoped configuration."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str = Field(min_length=1, max_length=50)

    is_active: bool = Field(default=True, description="Inactive configurations are never scheduled")
    last_executed_at: Optional[datetime] = None
    next_scheduled_run: Optional[datetime] = None

    # Set when a check fails on a configuration error; cleared by a completed check or an edit
    attention_reason: Optional[str] = Field(default=None, max_length=2000)
    attention_flagged_at: Optional[datetime] = None

    version: int = Field(default=1, ge=1, description="Optimistic concurrency token")

    created_by: str = Field(default="system")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    modified_by: Optional[str] = None
    modified_at: Optional[datetime] = None

    @field_validator('last_executed_at', 'next_scheduled_run', 'attention_flagged_at', 'created_at', 'modified_at')
    @classmethod
    def ensure_utc(cls, v):
        return as_utc(v) if v is not None else None

    @property
    def needs_attention(self) -> bool:
        return self.attention_reason is not None

    def to_spec(self) -> ConfigurationSpec:
        return ConfigurationSpec.model_validate(self.model_dump(include=set(SPEC_FIELDS)))

    def snapshot(self) -> Dict[str, Any]:
        """Key fields carried on lifecycle notifications."""
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "protocol": self.protocol.value,
            "address": self.protocol_settings.address,
            "file_path_pattern": self.file_path_pattern,
            "filename_pattern": self.filename_pattern,
            "file_extension": self.file_extension,
            "cron_expression": self.schedule.cron_expression,
            "timezone": self.schedule.timezone,
            "is_active": self.is_active,
            "needs_attention": self.needs_attention,
            "version": self.version,
        }


def changed_fields(before: ConfigurationSpec, after: ConfigurationSpec) -> List[str]:
    """Names of user-owned fields whose values differ."""
    return [name for name in SPEC_FIELDS if getattr(before, name) != getattr(after, name)]
