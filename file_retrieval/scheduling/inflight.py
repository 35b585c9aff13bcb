"""In-flight registry and concurrency cap for dispatched checks.

Guarantees at most one in-flight check per configuration in this process and
at most ``max_concurrency`` checks overall. Acquisition never waits: a
configuration is either admitted, already running, or deferred to the next
tick.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)

ConfigurationKey = Tuple[str, str]


class AcquireOutcome(str, Enum):
    ACQUIRED = "acquired"
    IN_FLIGHT = "in_flight"
    DEFERRED = "deferred"


@dataclass
class InFlightEntry:
    """A configuration holding a concurrency slot."""
    key: ConfigurationKey
    idempotency_key: Optional[str] = None
    acquired_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class InFlightRegistry:
    """Insert-if-absent registry paired with a counting semaphore."""

    def __init__(self, max_concurrency: int):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._entries: Dict[ConfigurationKey, InFlightEntry] = {}

    async def try_acquire(self, key: ConfigurationKey, idempotency_key: Optional[str] = None) -> AcquireOutcome:
        """Admit a configuration without waiting.

        Returns:
            ACQUIRED if a slot was taken, IN_FLIGHT if the configuration is
            already running, DEFERRED if every slot is in use
        """
        if key in self._entries:
            return AcquireOutcome.IN_FLIGHT
        if self._semaphore.locked():
            return AcquireOutcome.DEFERRED

        # Completes without suspending because a slot is free
        await self._semaphore.acquire()
        self._entries[key] = InFlightEntry(key=key, idempotency_key=idempotency_key)
        return AcquireOutcome.ACQUIRED

    def release(self, key: ConfigurationKey) -> None:
        """Remove the entry and free its slot."""
        entry = self._entries.pop(key, None)
        if entry is None:
            logger.warning(f"Release requested for {key} which is not in flight")
            return
        self._semaphore.release()

    def is_in_flight(self, key: ConfigurationKey) -> bool:
        return key in self._entries

    def entries(self) -> List[InFlightEntry]:
        return list(self._entries.values())

    @property
    def in_flight_count(self) -> int:
        return len(self._entries)

    @property
    def available_slots(self) -> int:
        return self.max_concurrency - len(self._entries)
