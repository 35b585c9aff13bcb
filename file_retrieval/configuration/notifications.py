"""Lifecycle notifications and the publisher contract that transports them."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field

from ..errors import ErrorCategory
from ..executions.models import TriggerType


logger = logging.getLogger(__name__)


class LifecycleNotification(BaseModel):
    """Base fields shared by every notification."""

    notification_id: str = Field(default_factory=lambda: str(uuid4()))
    notification_type: str
    tenant_id: str
    configuration_id: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    actor: Optional[str] = None


class ConfigurationCreated(LifecycleNotification):
    notification_type: Literal["configuration_created"] = "configuration_created"
    snapshot: Dict[str, Any]


class ConfigurationUpdated(LifecycleNotification):
    notification_type: Literal["configuration_updated"] = "configuration_updated"
    changed_fields: List[str]
    version: int


class ConfigurationDeleted(LifecycleNotification):
    """Soft delete; ``before`` is the state prior to deactivation."""

    notification_type: Literal["configuration_deleted"] = "configuration_deleted"
    before: Dict[str, Any]


class CheckTriggered(LifecycleNotification):
    notification_type: Literal["check_triggered"] = "check_triggered"
    trigger_type: TriggerType
    triggered_by: Optional[str] = None
    scheduled_execution_time: datetime
    idempotency_key: str


class FileDiscovered(LifecycleNotification):
    """Published for each new file and each configured notification definition."""

    notification_type: Literal["file_discovered"] = "file_discovered"
    event_type: str
    execution_id: str
    discovered_file_id: str
    file: Dict[str, Any]
    discovery_date: date
    idempotency_key: str
    properties: Dict[str, str] = Field(default_factory=dict)


class CheckCompleted(LifecycleNotification):
    notification_type: Literal["check_completed"] = "check_completed"
    execution_id: str
    trigger_type: TriggerType
    scheduled_execution_time: Optional[datetime] = None
    files_found: int
    files_processed: int
    duration_ms: int
    resolved_file_path_pattern: Optional[str] = None
    resolved_filename_pattern: Optional[str] = None


class CheckFailed(LifecycleNotification):
    notification_type: Literal["check_failed"] = "check_failed"
    execution_id: str
    trigger_type: TriggerType
    scheduled_execution_time: Optional[datetime] = None
    error_message: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    retry_count: int = 0
    duration_ms: int
    resolved_file_path_pattern: Optional[str] = None
    resolved_filename_pattern: Optional[str] = None


class DownstreamInstruction(BaseModel):
    """Instruction sent to a downstream consumer after a discovery."""

    instruction_id: str = Field(default_factory=lambda: str(uuid4()))
    instruction_type: str
    target: str
    tenant_id: str
    configuration_id: str
    execution_id: str
    files: List[Dict[str, Any]]
    properties: Dict[str, str] = Field(default_factory=dict)


N = TypeVar('N', bound=LifecycleNotification)


class NotificationPublisher(ABC):
    """Transport for lifecycle notifications and downstream instructions."""

    @abstractmethod
    async def publish(self, notification: LifecycleNotification) -> None:
        pass

    @abstractmethod
    async def send_instruction(self, instruction: DownstreamInstruction) -> None:
        pass


class InMemoryNotificationPublisher(NotificationPublisher):
    """Collects everything published; used by tests and local runs."""

    def __init__(self):
        self.notifications: List[LifecycleNotification] = []
        self.instructions: List[DownstreamInstruction] = []
        self._lock = asyncio.Lock()

    async def publish(self, notification: LifecycleNotification) -> None:
        async with self._lock:
            self.notifications.append(notification)

    async def send_instruction(self, instruction: DownstreamInstruction) -> None:
        async with self._lock:
            self.instructions.append(instruction)

    def of_type(self, notification_class: Type[N]) -> List[N]:
        return [n for n in self.notifications if isinstance(n, notification_class)]


class LoggingNotificationPublisher(NotificationPublisher):
    """Writes notifications to the log instead of a message transport."""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    async def publish(self, notification: LifecycleNotification) -> None:
        logger.log(
            self.level,
            f"Notification {notification.notification_type} for "
            f"{notification.tenant_id}/{notification.configuration_id}: "
            f"{notification.model_dump_json(exclude={'tenant_id', 'configuration_id'})}"
        )

    async def send_instruction(self, instruction: DownstreamInstruction) -> None:
        logger.log(
            self.level,
            f"Instruction {instruction.instruction_type} -> {instruction.target} "
            f"({len(instruction.files)} files) for {instruction.tenant_id}/{instruction.configuration_id}"
        )
