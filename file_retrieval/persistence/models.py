"""SQLAlchemy ORM models for configurations, execution history and discovered files."""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..configuration.models import SPEC_FIELDS, Configuration
from ..executions.discovered import DiscoveredFileRecord
from ..executions.models import Execution
from .database import Base


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to aware UTC; SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class ConfigurationRecord(Base):
    """Stored configuration; user-owned fields live in ``spec_json``."""

    __tablename__ = "file_retrieval_configurations"

    tenant_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    protocol: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    spec_json: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
        comment="Validated configuration spec"
    )

    # Scheduling bookkeeping
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_scheduled_run: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    attention_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attention_flagged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Audit
    created_by: Mapped[str] = mapped_column(String(200), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    modified_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("version >= 1", name="ck_configuration_version_positive"),
    )

    @classmethod
    def from_domain(cls, configuration: Configuration) -> "ConfigurationRecord":
        record = cls(tenant_id=configuration.tenant_id, id=configuration.id)
        record.apply(configuration)
        return record

    def apply(self, configuration: Configuration) -> None:
        """Copy every field except the key from a domain configuration."""
        self.name = configuration.name
        self.protocol = configuration.protocol.value
        self.is_active = configuration.is_active
        self.version = configuration.version
        self.spec_json = configuration.to_spec().model_dump(mode="json")
        self.last_executed_at = to_utc(configuration.last_executed_at)
        self.next_scheduled_run = to_utc(configuration.next_scheduled_run)
        self.attention_reason = configuration.attention_reason
        self.attention_flagged_at = to_utc(configuration.attention_flagged_at)
        self.created_by = configuration.created_by
        self.created_at = to_utc(configuration.created_at)
        self.modified_by = configuration.modified_by
        self.modified_at = to_utc(configuration.modified_at)

    def to_domain(self) -> Configuration:
        spec = {name: self.spec_json[name] for name in SPEC_FIELDS if name in self.spec_json}
        return Configuration.model_validate({
            **spec,
            "id": self.id,
            "tenant_id": self.tenant_id,
            "is_active": self.is_active,
            "version": self.version,
            "last_executed_at": self.last_executed_at,
            "next_scheduled_run": self.next_scheduled_run,
            "attention_reason": self.attention_reason,
            "attention_flagged_at": self.attention_flagged_at,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "modified_by": self.modified_by,
            "modified_at": self.modified_at,
        })

    def __repr__(self) -> str:
        return f"<ConfigurationRecord(id={self.id}, tenant={self.tenant_id}, version={self.version})>"


class ExecutionRecord(Base):
    """One file check attempt."""

    __tablename__ = "file_retrieval_executions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(50), nullable=False)
    configuration_id: Mapped[str] = mapped_column(String(36), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    files_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    resolved_file_path_pattern: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    resolved_filename_pattern: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    duration_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    scheduled_execution_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)
    trigger_type: Mapped[str] = mapped_column(String(20), nullable=False)
    triggered_by: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    __table_args__ = (
        Index("idx_executions_config_started", "tenant_id", "configuration_id", "started_at", "id"),
        CheckConstraint("files_processed <= files_found", name="ck_execution_processed_le_found"),
        CheckConstraint("retry_count >= 0 AND retry_count <= 3", name="ck_execution_retry_count"),
    )

    @classmethod
    def from_domain(cls, execution: Execution) -> "ExecutionRecord":
        record = cls(id=execution.id)
        record.apply(execution)
        return record

    def apply(self, execution: Execution) -> None:
        self.tenant_id = execution.tenant_id
        self.configuration_id = execution.configuration_id
        self.status = execution.status.value
        self.started_at = to_utc(execution.started_at)
        self.completed_at = to_utc(execution.completed_at)
        self.files_found = execution.files_found
        self.files_processed = execution.files_processed
        self.error_message = execution.error_message
        self.error_category = execution.error_category.value if execution.error_category else None
        self.retry_count = execution.retry_count
        self.resolved_file_path_pattern = execution.resolved_file_path_pattern
        self.resolved_filename_pattern = execution.resolved_filename_pattern
        self.duration_ms = execution.duration_ms
        self.scheduled_execution_time = to_utc(execution.scheduled_execution_time)
        self.idempotency_key = execution.idempotency_key
        self.trigger_type = execution.trigger_type.value
        self.triggered_by = execution.triggered_by

    def to_domain(self) -> Execution:
        return Execution.model_validate({
            "id": self.id,
            "tenant_id": self.tenant_id,
            "configuration_id": self.configuration_id,
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "files_found": self.files_found,
            "files_processed": self.files_processed,
            "error_message": self.error_message,
            "error_category": self.error_category,
            "retry_count": self.retry_count,
            "resolved_file_path_pattern": self.resolved_file_path_pattern,
            "resolved_filename_pattern": self.resolved_filename_pattern,
            "duration_ms": self.duration_ms,
            "scheduled_execution_time": self.scheduled_execution_time,
            "idempotency_key": self.idempotency_key,
            "trigger_type": self.trigger_type,
            "triggered_by": self.triggered_by,
        })

    def __repr__(self) -> str:
        return f"<ExecutionRecord(id={self.id}, configuration={self.configuration_id}, status={self.status})>"


class DiscoveredFileRow(Base):
    """A file announced by an execution; unique per location per discovery date."""

    __tablename__ = "file_retrieval_discovered_files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(50), nullable=False)
    configuration_id: Mapped[str] = mapped_column(String(36), nullable=False)
    execution_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    location: Mapped[str] = mapped_column(String(2000), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    modified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    discovered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    discovery_date: Mapped[date] = mapped_column(Date, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "configuration_id", "location", "discovery_date",
            name="uq_discovered_file_per_day"
        ),
    )

    @classmethod
    def from_domain(cls, record: DiscoveredFileRecord) -> "DiscoveredFileRow":
        return cls(
            id=record.id,
            tenant_id=record.tenant_id,
            configuration_id=record.configuration_id,
            execution_id=record.execution_id,
            name=record.name,
            location=record.location,
            size_bytes=record.size_bytes,
            modified_at=to_utc(record.modified_at),
            discovered_at=to_utc(record.discovered_at),
            discovery_date=record.discovery_date,
        )

    def to_domain(self) -> DiscoveredFileRecord:
        return DiscoveredFileRecord(
            id=self.id,
            tenant_id=self.tenant_id,
            configuration_id=self.configuration_id,
            execution_id=self.execution_id,
            name=self.name,
            location=self.location,
            size_bytes=self.size_bytes,
            modified_at=self.modified_at,
            discovered_at=self.discovered_at,
            discovery_date=self.discovery_date,
        )

    def __repr__(self) -> str:
        return f"<DiscoveredFileRow(location={self.location}, date={self.discovery_date})>"
