"""Dispatch of due configurations to the execution handler.

Each due occurrence becomes a ``DispatchInstruction`` whose idempotency key
is derived from the tenant, configuration and scheduled instant, so a
re-dispatch of the same occurrence is recognisable downstream.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from ..configuration.notifications import CheckTriggered, NotificationPublisher
from ..executions.models import TriggerType
from .cron import as_utc


logger = logging.getLogger(__name__)

# Tick counts are 100ns intervals since 0001-01-01T00:00:00Z
TICKS_EPOCH = datetime(1, 1, 1, tzinfo=timezone.utc)
TICKS_PER_MICROSECOND = 10


def to_ticks(value: datetime) -> int:
    """Convert an instant to 100-nanosecond ticks since 0001-01-01 UTC."""
    return (as_utc(value) - TICKS_EPOCH) // timedelta(microseconds=1) * TICKS_PER_MICROSECOND


def build_idempotency_key(tenant_id: str, configuration_id: str, scheduled_time: datetime) -> str:
    return f"{tenant_id}:{configuration_id}:{to_ticks(scheduled_time)}"


@dataclass(frozen=True)
class DispatchInstruction:
    """Instruction to run one file check."""
    tenant_id: str
    configuration_id: str
    scheduled_execution_time: datetime
    idempotency_key: str
    trigger_type: TriggerType = TriggerType.SCHEDULED
    triggered_by: Optional[str] = None

    @classmethod
    def for_occurrence(
        cls,
        tenant_id: str,
        configuration_id: str,
        scheduled_time: datetime,
        trigger_type: TriggerType = TriggerType.SCHEDULED,
        triggered_by: Optional[str] = None
    ) -> "DispatchInstruction":
        scheduled_time = as_utc(scheduled_time)
        return cls(
            tenant_id=tenant_id,
            configuration_id=configuration_id,
            scheduled_execution_time=scheduled_time,
            idempotency_key=build_idempotency_key(tenant_id, configuration_id, scheduled_time),
            trigger_type=trigger_type,
            triggered_by=triggered_by
        )

    @property
    def key(self):
        return (self.tenant_id, self.configuration_id)


class ExecutionHandler(ABC):
    """Runs the check described by an instruction."""

    @abstractmethod
    async def handle(self, instruction: DispatchInstruction, cancel_event: asyncio.Event) -> Any:
        """Execute a check.

        Args:
            instruction: What to check and for which scheduled occurrence
            cancel_event: Set when the process is shutting down; long waits
                should end early when it is set
        """
        pass


class CheckDispatcher(ABC):
    """Transport that hands instructions to an execution handler."""

    @abstractmethod
    async def dispatch(self, instruction: DispatchInstruction, cancel_event: asyncio.Event) -> None:
        pass


@dataclass
class DispatchStats:
    """Statistics for dispatch operations."""
    total_dispatched: int = 0
    total_completed: int = 0
    total_failed: int = 0
    duplicates_blocked: int = 0


class InProcessCheckDispatcher(CheckDispatcher):
    """Publishes a check-triggered notification and runs the handler in-process.

    Remembers idempotency keys for ``idempotency_window_minutes`` and drops
    instructions that repeat one.
    """

    def __init__(
        self,
        handler: ExecutionHandler,
        publisher: NotificationPublisher,
        idempotency_window_minutes: int = 60,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.handler = handler
        self.publisher = publisher
        self.idempotency_window = timedelta(minutes=idempotency_window_minutes)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._idempotency_cache: Dict[str, datetime] = {}
        self._stats = DispatchStats()

    async def dispatch(self, instruction: DispatchInstruction, cancel_event: asyncio.Event) -> None:
        if self._is_duplicate(instruction.idempotency_key):
            self._stats.duplicates_blocked += 1
            logger.info(f"Dispatch blocked by idempotency: {instruction.idempotency_key}")
            return

        self._idempotency_cache[instruction.idempotency_key] = self._clock()
        self._stats.total_dispatched += 1

        try:
            await self.publisher.publish(CheckTriggered(
                tenant_id=instruction.tenant_id,
                configuration_id=instruction.configuration_id,
                actor=instruction.triggered_by,
                trigger_type=instruction.trigger_type,
                triggered_by=instruction.triggered_by,
                scheduled_execution_time=instruction.scheduled_execution_time,
                idempotency_key=instruction.idempotency_key
            ))
        except Exception as e:
            logger.error(f"Failed to publish check-triggered for {instruction.idempotency_key}: {e}", exc_info=True)

        try:
            await self.handler.handle(instruction, cancel_event)
        except Exception:
            self._stats.total_failed += 1
            raise
        self._stats.total_completed += 1

    def get_stats(self) -> DispatchStats:
        return self._stats

    def _is_duplicate(self, idempotency_key: str) -> bool:
        cutoff = self._clock() - self.idempotency_window
        expired = [key for key, seen_at in self._idempotency_cache.items() if seen_at < cutoff]
        for key in expired:
            del self._idempotency_cache[key]
        if expired:
            logger.debug(f"Cleaned up {len(expired)} old idempotency entries")
        return idempotency_key in self._idempotency_cache
