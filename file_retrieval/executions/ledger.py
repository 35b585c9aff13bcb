"""Execution history ledger contract and in-memory implementation."""

import asyncio
import base64
import binascii
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, Iterable, Optional, Tuple

from ..errors import ConflictError, NotFoundError, ValidationError
from .models import (
    IMMUTABLE_FIELDS,
    DateRange,
    Execution,
    ExecutionPage,
    ExecutionStatus,
    validate_transition,
)


logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


def encode_continuation_token(started_at: datetime, execution_id: str) -> str:
    """Encode the sort key of the last returned execution as an opaque cursor."""
    payload = {"started_at": started_at.astimezone(timezone.utc).isoformat(), "id": execution_id}
    raw = json.dumps(payload, separators=(',', ':')).encode('utf-8')
    return base64.urlsafe_b64encode(raw).decode('ascii')


def decode_continuation_token(token: str) -> Tuple[datetime, str]:
    """Decode a cursor produced by :func:`encode_continuation_token`.

    Raises:
        ValidationError: If the token is malformed
    """
    try:
        payload = json.loads(base64.urlsafe_b64decode(token.encode('ascii')))
        started_at = datetime.fromisoformat(payload["started_at"])
        execution_id = str(payload["id"])
    except (binascii.Error, ValueError, KeyError, TypeError, UnicodeEncodeError) as e:
        raise ValidationError(f"Invalid continuation token: {e}")
    if started_at.tzinfo is None:
        started_at = started_at.replace(tzinfo=timezone.utc)
    return started_at, execution_id


def validate_page_size(page_size: int) -> None:
    if page_size < 1 or page_size > MAX_PAGE_SIZE:
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}")


def normalize_date_range(date_range: Optional[DateRange]) -> Optional[DateRange]:
    """Give naive range bounds UTC so they compare with stored timestamps."""
    if date_range is None:
        return None

    def _utc(value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)

    return DateRange(start=_utc(date_range.start), end=_utc(date_range.end))


def check_update(current: Execution, updated: Execution) -> None:
    """Reject updates that rewrite history or move status backwards."""
    for field_name in IMMUTABLE_FIELDS:
        if getattr(current, field_name) != getattr(updated, field_name):
            raise ValidationError(f"Execution field '{field_name}' cannot be changed")
    validate_transition(current.status, updated.status)


class ExecutionHistoryLedger(ABC):
    """Append-only store of execution records.

    Executions are never deleted. Updates may only change status and outcome
    fields, and status only moves forward.
    """

    @abstractmethod
    async def create(self, execution: Execution) -> Execution:
        """Record a new execution.

        Raises:
            ConflictError: If an execution with the same id exists
        """
        pass

    @abstractmethod
    async def get_by_id(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str
    ) -> Optional[Execution]:
        pass

    @abstractmethod
    async def list_by_configuration(
        self,
        tenant_id: str,
        configuration_id: str,
        page_size: int = 50,
        continuation_token: Optional[str] = None,
        status_filter: Optional[Iterable[ExecutionStatus]] = None,
        date_range: Optional[DateRange] = None
    ) -> ExecutionPage:
        """List executions most-recent-first with cursor pagination.

        Args:
            tenant_id: Tenant scope
            configuration_id: Configuration whose history to list
            page_size: Maximum items to return (1-100)
            continuation_token: Cursor returned by the previous page
            status_filter: Only include these statuses
            date_range: Only include executions started within this range

        Returns:
            ExecutionPage with a continuation token when more items exist
        """
        pass

    @abstractmethod
    async def update(self, execution: Execution) -> Execution:
        """Persist a status transition.

        Raises:
            NotFoundError: If the execution does not exist
            InvalidStatusTransitionError: If the status would move backwards
        """
        pass


class InMemoryExecutionLedger(ExecutionHistoryLedger):
    """In-memory ledger for testing and single-process deployments."""

    def __init__(self):
        self._executions: Dict[str, Execution] = {}
        self._lock = asyncio.Lock()
        logger.info("InMemoryExecutionLedger initialized")

    async def create(self, execution: Execution) -> Execution:
        async with self._lock:
            if execution.id in self._executions:
                raise ConflictError(f"Execution with ID {execution.id} already exists")
            self._executions[execution.id] = execution
            logger.debug(f"Created execution {execution.id} for configuration {execution.configuration_id}")
            return execution

    async def get_by_id(
        self,
        tenant_id: str,
        configuration_id: str,
        execution_id: str
    ) -> Optional[Execution]:
        async with self._lock:
            execution = self._executions.get(execution_id)
            if (execution is None or execution.tenant_id != tenant_id
                    or execution.configuration_id != configuration_id):
                return None
            return execution

    async def list_by_configuration(
        self,
        tenant_id: str,
        configuration_id: str,
        page_size: int = 50,
        continuation_token: Optional[str] = None,
        status_filter: Optional[Iterable[ExecutionStatus]] = None,
        date_range: Optional[DateRange] = None
    ) -> ExecutionPage:
        validate_page_size(page_size)
        cursor = decode_continuation_token(continuation_token) if continuation_token else None
        statuses = set(status_filter) if status_filter else None
        date_range = normalize_date_range(date_range)

        async with self._lock:
            matching = [
                execution for execution in self._executions.values()
                if self._matches_filters(execution, tenant_id, configuration_id, statuses, date_range)
            ]

        matching.sort(key=lambda e: (e.started_at, e.id), reverse=True)
        if cursor is not None:
            matching = [e for e in matching if (e.started_at, e.id) < cursor]

        items = matching[:page_size]
        next_token = None
        if len(matching) > page_size:
            last = items[-1]
            next_token = encode_continuation_token(last.started_at, last.id)

        logger.debug(
            f"Listed {len(items)} executions for configuration {configuration_id} "
            f"(more: {next_token is not None})"
        )
        return ExecutionPage(items=items, continuation_token=next_token)

    async def update(self, execution: Execution) -> Execution:
        async with self._lock:
            current = self._executions.get(execution.id)
            if current is None:
                raise NotFoundError(f"Execution {execution.id} does not exist")
            check_update(current, execution)
            self._executions[execution.id] = execution
            logger.debug(f"Execution {execution.id}: {current.status.value} -> {execution.status.value}")
            return execution

    def _matches_filters(
        self,
        execution: Execution,
        tenant_id: str,
        configuration_id: str,
        statuses: Optional[set],
        date_range: Optional[DateRange]
    ) -> bool:
        """Check if an execution matches every supplied filter."""
        if execution.tenant_id != tenant_id or execution.configuration_id != configuration_id:
            return False
        if statuses and execution.status not in statuses:
            return False
        if date_range and not date_range.contains(execution.started_at):
            return False
        return True
