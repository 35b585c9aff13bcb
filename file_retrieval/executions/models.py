"""Execution history models.

An execution records one triggered file check. Status only ever moves
forward: pending -> running -> completed | failed (a check that fails
before starting may go straight from pending to failed).
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from ..errors import ErrorCategory, InvalidStatusTransitionError


class ExecutionStatus(str, Enum):
    """Execution lifecycle status."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class TriggerType(str, Enum):
    """What caused a check to run."""
    SCHEDULED = "scheduled"
    MANUAL = "manual"


ALLOWED_TRANSITIONS: Dict[ExecutionStatus, FrozenSet[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({
        ExecutionStatus.PENDING, ExecutionStatus.RUNNING, ExecutionStatus.FAILED
    }),
    ExecutionStatus.RUNNING: frozenset({
        ExecutionStatus.RUNNING, ExecutionStatus.COMPLETED, ExecutionStatus.FAILED
    }),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
}

# Fields fixed at creation; update may not touch them
IMMUTABLE_FIELDS = (
    "tenant_id", "configuration_id", "started_at", "scheduled_execution_time",
    "idempotency_key", "trigger_type", "triggered_by",
)


def validate_transition(current: ExecutionStatus, new: ExecutionStatus) -> None:
    """Raise if moving from ``current`` to ``new`` would go backwards."""
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(
            f"Cannot move execution from {current.value} to {new.value}"
        )


class Execution(BaseModel):
    """Append-only record of one file check attempt."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str = Field(min_length=1, max_length=50)
    configuration_id: str = Field(min_length=1)

    status: ExecutionStatus = Field(default=ExecutionStatus.PENDING)
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None

    files_found: int = Field(default=0, ge=0)
    files_processed: int = Field(default=0, ge=0)

    error_message: Optional[str] = Field(default=None, max_length=2000)
    error_category: Optional[ErrorCategory] = None
    retry_count: int = Field(default=0, ge=0, le=3)

    resolved_file_path_pattern: Optional[str] = None
    resolved_filename_pattern: Optional[str] = None
    duration_ms: int = Field(default=0, ge=0)

    scheduled_execution_time: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    trigger_type: TriggerType = Field(default=TriggerType.SCHEDULED)
    triggered_by: Optional[str] = None

    @field_validator('started_at', 'completed_at', 'scheduled_execution_time')
    @classmethod
    def ensure_utc(cls, v):
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode='after')
    def validate_counts(self):
        if self.files_processed > self.files_found:
            raise ValueError("files_processed cannot exceed files_found")
        return self

    def mark_running(self) -> "Execution":
        validate_transition(self.status, ExecutionStatus.RUNNING)
        return self.model_copy(update={"status": ExecutionStatus.RUNNING})

    def mark_completed(self, files_found: int, completed_at: Optional[datetime] = None) -> "Execution":
        validate_transition(self.status, ExecutionStatus.COMPLETED)
        completed_at = completed_at or datetime.now(timezone.utc)
        return self.model_copy(update={
            "status": ExecutionStatus.COMPLETED,
            "files_found": files_found,
            "completed_at": completed_at,
            "duration_ms": self._elapsed_ms(completed_at),
        })

    def mark_failed(
        self,
        error_message: str,
        error_category: ErrorCategory,
        completed_at: Optional[datetime] = None
    ) -> "Execution":
        validate_transition(self.status, ExecutionStatus.FAILED)
        completed_at = completed_at or datetime.now(timezone.utc)
        return self.model_copy(update={
            "status": ExecutionStatus.FAILED,
            "error_message": error_message[:2000],
            "error_category": error_category,
            "completed_at": completed_at,
            "duration_ms": self._elapsed_ms(completed_at),
        })

    def _elapsed_ms(self, completed_at: datetime) -> int:
        return max(0, int((completed_at - self.started_at).total_seconds() * 1000))


@dataclass(frozen=True)
class DateRange:
    """Inclusive range on ``started_at``; either end may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def contains(self, value: datetime) -> bool:
        if self.start is not None and value < self.start:
            return False
        if self.end is not None and value > self.end:
            return False
        return True


@dataclass
class ExecutionPage:
    """One page of execution history."""
    items: List[Execution]
    continuation_token: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.continuation_token is not None
