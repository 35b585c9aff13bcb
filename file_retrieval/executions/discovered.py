"""Discovered file registry.

A file counts as new once per configuration per UTC discovery date: the
first check that finds a location on a given day records it, later checks
that day see it as already known and do not announce it again.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from ..protocols.base import DiscoveredFile


logger = logging.getLogger(__name__)

DiscoveryKey = Tuple[str, str, str, date]


class DiscoveredFileRecord(BaseModel):
    """A file first seen by one execution on one discovery date."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    tenant_id: str = Field(min_length=1, max_length=50)
    configuration_id: str = Field(min_length=1)
    execution_id: str = Field(min_length=1)

    name: str
    location: str = Field(min_length=1, max_length=2000)
    size_bytes: int = Field(default=0, ge=0)
    modified_at: Optional[datetime] = None

    discovered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    discovery_date: date

    @field_validator('modified_at', 'discovered_at')
    @classmethod
    def ensure_utc(cls, v):
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @classmethod
    def from_file(
        cls,
        file: DiscoveredFile,
        tenant_id: str,
        configuration_id: str,
        execution_id: str,
        discovered_at: datetime
    ) -> "DiscoveredFileRecord":
        discovered_at = discovered_at.astimezone(timezone.utc)
        return cls(
            tenant_id=tenant_id,
            configuration_id=configuration_id,
            execution_id=execution_id,
            name=file.name,
            location=file.location,
            size_bytes=file.size_bytes,
            modified_at=file.modified_at,
            discovered_at=discovered_at,
            discovery_date=discovered_at.date()
        )

    @property
    def key(self) -> DiscoveryKey:
        return (self.tenant_id, self.configuration_id, self.location, self.discovery_date)

    @property
    def idempotency_key(self) -> str:
        """Stable key consumers use to drop repeated announcements."""
        return f"{self.tenant_id}:{self.configuration_id}:{self.location}:{self.discovery_date.isoformat()}"


class DiscoveredFileRepository(ABC):
    """Records which files have already been announced."""

    @abstractmethod
    async def exists(
        self,
        tenant_id: str,
        configuration_id: str,
        location: str,
        discovery_date: date
    ) -> bool:
        pass

    @abstractmethod
    async def add_if_new(self, record: DiscoveredFileRecord) -> bool:
        """Record a discovery unless its location is already known that day.

        Returns:
            True if the record was stored, False if it was a duplicate
        """
        pass

    @abstractmethod
    async def list_by_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str
    ) -> List[DiscoveredFileRecord]:
        pass


class InMemoryDiscoveredFileRepository(DiscoveredFileRepository):
    """In-memory registry for testing and single-process deployments."""

    def __init__(self):
        self._records: Dict[DiscoveryKey, DiscoveredFileRecord] = {}
        self._lock = asyncio.Lock()

    async def exists(
        self,
        tenant_id: str,
        configuration_id: str,
        location: str,
        discovery_date: date
    ) -> bool:
        async with self._lock:
            return (tenant_id, configuration_id, location, discovery_date) in self._records

    async def add_if_new(self, record: DiscoveredFileRecord) -> bool:
        async with self._lock:
            if record.key in self._records:
                logger.debug(f"File {record.location} already discovered on {record.discovery_date}")
                return False
            self._records[record.key] = record
            return True

    async def list_by_execution(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str
    ) -> List[DiscoveredFileRecord]:
        async with self._lock:
            return [
                r for r in self._records.values()
                if r.tenant_id == tenant_id and r.configuration_id == configuration_id
                and r.execution_id == execution_id
            ]
