"""Configuration store contract with optimistic concurrency.

Writes that change user-owned fields are version checked: a stale version
yields a conflict result and leaves the stored record untouched. Bookkeeping
written by the execution handler (last run, precomputed next run, attention
flag) does not change the version, and version-checked writes never
overwrite it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..errors import ConflictError, NotFoundError
from .models import Configuration, changed_fields


logger = logging.getLogger(__name__)


class UpdateOutcome(str, Enum):
    """Result of a version-checked write."""
    OK = "ok"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


@dataclass
class UpdateResult:
    """Typed outcome of an update; conflicts are values, not exceptions."""

    outcome: UpdateOutcome
    configuration: Optional[Configuration] = None
    current_version: Optional[int] = None
    changed_fields: List[str] = field(default_factory=list)
    message: Optional[str] = None

    @classmethod
    def ok(cls, configuration: Configuration, changed_fields: Optional[List[str]] = None) -> "UpdateResult":
        return cls(
            outcome=UpdateOutcome.OK,
            configuration=configuration,
            current_version=configuration.version,
            changed_fields=changed_fields or []
        )

    @classmethod
    def conflict(cls, current_version: int, expected_version: int) -> "UpdateResult":
        return cls(
            outcome=UpdateOutcome.CONFLICT,
            current_version=current_version,
            message=f"Version mismatch: expected {expected_version}, current is {current_version}"
        )

    @classmethod
    def not_found(cls, tenant_id: str, configuration_id: str) -> "UpdateResult":
        return cls(
            outcome=UpdateOutcome.NOT_FOUND,
            message=f"Configuration {configuration_id} not found for tenant {tenant_id}"
        )

    @property
    def is_ok(self) -> bool:
        return self.outcome == UpdateOutcome.OK

    @property
    def is_conflict(self) -> bool:
        return self.outcome == UpdateOutcome.CONFLICT

    @property
    def is_not_found(self) -> bool:
        return self.outcome == UpdateOutcome.NOT_FOUND

    def unwrap(self) -> Configuration:
        """Return the configuration or raise the matching error."""
        if self.outcome == UpdateOutcome.CONFLICT:
            raise ConflictError(self.message or "Version conflict", current_version=self.current_version)
        if self.outcome == UpdateOutcome.NOT_FOUND:
            raise NotFoundError(self.message or "Configuration not found")
        return self.configuration


def apply_replacement(stored: Configuration, incoming: Configuration) -> Configuration:
    """Build the record written by a successful version-checked replace.

    User-owned fields, the active flag and modification audit come from
    ``incoming``. Bookkeeping comes from ``stored``, except that a changed
    schedule drops the precomputed next run so it is re-evaluated and any
    edit of user-owned fields clears the attention flag.
    """
    next_scheduled_run = stored.next_scheduled_run
    if incoming.schedule != stored.schedule:
        next_scheduled_run = None

    attention_reason = stored.attention_reason
    attention_flagged_at = stored.attention_flagged_at
    if changed_fields(stored, incoming):
        attention_reason = None
        attention_flagged_at = None

    return incoming.model_copy(update={
        "id": stored.id,
        "tenant_id": stored.tenant_id,
        "created_by": stored.created_by,
        "created_at": stored.created_at,
        "last_executed_at": stored.last_executed_at,
        "next_scheduled_run": next_scheduled_run,
        "attention_reason": attention_reason,
        "attention_flagged_at": attention_flagged_at,
        "version": stored.version + 1,
        "modified_at": incoming.modified_at or datetime.now(timezone.utc),
    }, deep=True)


class ConfigurationStore(ABC):
    """Durable configuration storage."""

    @abstractmethod
    async def add(self, configuration: Configuration) -> Configuration:
        """Persist a new configuration.

        Raises:
            ConflictError: If the identifier already exists for the tenant
        """
        pass

    @abstractmethod
    async def get(self, tenant_id: str, configuration_id: str) -> Optional[Configuration]:
        """Get a configuration, active or not."""
        pass

    @abstractmethod
    async def replace(self, configuration: Configuration, expected_version: int) -> UpdateResult:
        """Version-checked write of a full configuration.

        Returns:
            OK with the stored record, CONFLICT if ``expected_version`` is
            stale, or NOT_FOUND
        """
        pass

    @abstractmethod
    async def list_active(self) -> List[Configuration]:
        """All active configurations across tenants."""
        pass

    @abstractmethod
    async def list_by_tenant(self, tenant_id: str, include_inactive: bool = False) -> List[Configuration]:
        pass

    @abstractmethod
    async def record_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        executed_at: Optional[datetime],
        next_scheduled_run: Optional[datetime]
    ) -> bool:
        """Record scheduling bookkeeping after a completed check.

        Returns:
            True if the configuration exists
        """
        pass

    @abstractmethod
    async def flag_attention(
        self,
        tenant_id: str,
        configuration_id: str,
        reason: Optional[str],
        flagged_at: Optional[datetime] = None
    ) -> bool:
        """Mark a configuration as needing attention, or clear the mark.

        Like bookkeeping this does not change the version.

        Args:
            reason: Why the configuration needs attention; None clears the flag
            flagged_at: When the problem was seen

        Returns:
            True if the configuration exists
        """
        pass


class InMemoryConfigurationStore(ConfigurationStore):
    """In-memory implementation of the configuration store for testing and development."""

    def __init__(self):
        self._configurations: Dict[Tuple[str, str], Configuration] = {}
        self._lock = asyncio.Lock()
        logger.info("InMemoryConfigurationStore initialized")

    async def add(self, configuration: Configuration) -> Configuration:
        key = (configuration.tenant_id, configuration.id)
        async with self._lock:
            if key in self._configurations:
                raise ConflictError(
                    f"Configuration {configuration.id} already exists for tenant {configuration.tenant_id}"
                )
            self._configurations[key] = configuration.model_copy(deep=True)
            logger.debug(f"Created configuration {configuration.id} in memory store")
            return configuration

    async def get(self, tenant_id: str, configuration_id: str) -> Optional[Configuration]:
        async with self._lock:
            configuration = self._configurations.get((tenant_id, configuration_id))
            return configuration.model_copy(deep=True) if configuration else None

    async def replace(self, configuration: Configuration, expected_version: int) -> UpdateResult:
        key = (configuration.tenant_id, configuration.id)
        async with self._lock:
            stored = self._configurations.get(key)
            if stored is None:
                return UpdateResult.not_found(configuration.tenant_id, configuration.id)
            if stored.version != expected_version:
                logger.info(
                    f"Version conflict on configuration {configuration.id}: "
                    f"expected {expected_version}, stored {stored.version}"
                )
                return UpdateResult.conflict(stored.version, expected_version)

            updated = apply_replacement(stored, configuration)
            self._configurations[key] = updated
            logger.debug(f"Replaced configuration {configuration.id} (version {updated.version})")
            return UpdateResult.ok(updated.model_copy(deep=True))

    async def list_active(self) -> List[Configuration]:
        async with self._lock:
            return [c.model_copy(deep=True) for c in self._configurations.values() if c.is_active]

    async def list_by_tenant(self, tenant_id: str, include_inactive: bool = False) -> List[Configuration]:
        async with self._lock:
            return [
                c.model_copy(deep=True) for (tenant, _), c in self._configurations.items()
                if tenant == tenant_id and (include_inactive or c.is_active)
            ]

    async def record_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        executed_at: Optional[datetime],
        next_scheduled_run: Optional[datetime]
    ) -> bool:
        key = (tenant_id, configuration_id)
        async with self._lock:
            stored = self._configurations.get(key)
            if stored is None:
                logger.warning(f"Cannot record execution for unknown configuration {configuration_id}")
                return False
            self._configurations[key] = stored.model_copy(update={
                "last_executed_at": executed_at,
                "next_scheduled_run": next_scheduled_run,
            })
            return True

    async def flag_attention(
        self,
        tenant_id: str,
        configuration_id: str,
        reason: Optional[str],
        flagged_at: Optional[datetime] = None
    ) -> bool:
        key = (tenant_id, configuration_id)
        async with self._lock:
            stored = self._configurations.get(key)
            if stored is None:
                logger.warning(f"Cannot flag unknown configuration {configuration_id}")
                return False
            self._configurations[key] = stored.model_copy(update={
                "attention_reason": reason[:2000] if reason is not None else None,
                "attention_flagged_at": (flagged_at or datetime.now(timezone.utc)) if reason is not None else None,
            })
            return True
