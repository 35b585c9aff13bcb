"""Scheduler options with bounds, loadable from the environment or YAML."""

import os
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError


ENVIRONMENT_VARIABLES = {
    "poll_interval_seconds": "FILE_RETRIEVAL_POLL_INTERVAL_SECONDS",
    "execution_window_minutes": "FILE_RETRIEVAL_EXECUTION_WINDOW_MINUTES",
    "max_concurrent_checks": "FILE_RETRIEVAL_MAX_CONCURRENT_CHECKS",
    "drain_timeout_seconds": "FILE_RETRIEVAL_DRAIN_TIMEOUT_SECONDS",
    "idempotency_window_minutes": "FILE_RETRIEVAL_IDEMPOTENCY_WINDOW_MINUTES",
}


class SchedulerOptions(BaseModel):
    """Tuning for the scheduler loop."""

    poll_interval_seconds: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Seconds between scheduler ticks"
    )

    execution_window_minutes: int = Field(
        default=2,
        ge=1,
        le=60,
        description="How far ahead of its next run a configuration counts as due"
    )

    max_concurrent_checks: int = Field(
        default=100,
        ge=1,
        le=1000,
        description="Maximum checks in flight at once in this process"
    )

    drain_timeout_seconds: float = Field(
        default=30.0,
        ge=0,
        le=600,
        description="How long stop() waits for in-flight checks"
    )

    idempotency_window_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="How long a dispatched idempotency key blocks re-dispatch"
    )

    @property
    def execution_window(self) -> timedelta:
        return timedelta(minutes=self.execution_window_minutes)

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "SchedulerOptions":
        """Validate options from a mapping.

        Raises:
            ValidationError: If any option is out of bounds
        """
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise ValidationError(f"Invalid scheduler options: {'; '.join(errors)}", errors=errors)

    @classmethod
    def from_environment(cls, environ: Optional[Dict[str, str]] = None) -> "SchedulerOptions":
        """Create options from FILE_RETRIEVAL_* environment variables."""
        environ = os.environ if environ is None else environ
        data = {
            name: environ[variable]
            for name, variable in ENVIRONMENT_VARIABLES.items()
            if environ.get(variable)
        }
        return cls.from_mapping(data)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "SchedulerOptions":
        """Load options from a YAML file, optionally nested under ``scheduler``."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationError(f"Scheduler options in {path} must be a mapping")
        return cls.from_mapping(data.get("scheduler", data))
