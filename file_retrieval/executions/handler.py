"""Reference execution handler: runs one file check end to end.

The handler records the execution in the ledger, resolves date tokens for
the scheduled occurrence and asks the protocol adapter for matching files.
Files not yet announced today are registered, announced one by one and
handed to downstream instructions; every check ends with a completed or
failed notification. Transient transport failures are retried here, never
by the scheduler.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Tuple

from ..configuration.models import Configuration
from ..configuration.notifications import (
    CheckCompleted,
    CheckFailed,
    DownstreamInstruction,
    FileDiscovered,
    LifecycleNotification,
    NotificationPublisher,
)
from ..configuration.store import ConfigurationStore
from ..configuration.tokens import replace_tokens
from ..errors import ConfigurationError, ErrorCategory, TransientTransportError, TransportError, categorize_error
from ..protocols.base import DiscoveredFile
from ..protocols.factory import ProtocolAdapterFactory
from ..scheduling.cron import ScheduleEvaluator
from ..scheduling.dispatch import DispatchInstruction, ExecutionHandler
from .discovered import DiscoveredFileRecord, DiscoveredFileRepository, InMemoryDiscoveredFileRepository
from .ledger import ExecutionHistoryLedger
from .models import Execution, ExecutionStatus, TriggerType


logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAYS = (2.0, 5.0, 10.0)
MAX_RETRIES = 3

NewFile = Tuple[DiscoveredFileRecord, DiscoveredFile]


class FileCheckHandler(ExecutionHandler):
    """Checks a configuration's remote location for files."""

    def __init__(
        self,
        store: ConfigurationStore,
        ledger: ExecutionHistoryLedger,
        adapter_factory: ProtocolAdapterFactory,
        publisher: NotificationPublisher,
        evaluator: Optional[ScheduleEvaluator] = None,
        discovered_files: Optional[DiscoveredFileRepository] = None,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the handler.

        Args:
            store: Configuration source and bookkeeping sink
            ledger: Execution history
            adapter_factory: Builds the protocol adapter for a configuration
            publisher: Transport for discovery notifications and instructions
            evaluator: Computes the next run recorded after each check
            discovered_files: Registry of files already announced; in memory if omitted
            retry_delays: Seconds to wait before each retry of a transient failure
            clock: Returns the current UTC instant
        """
        if len(retry_delays) > MAX_RETRIES:
            raise ValueError(f"At most {MAX_RETRIES} retries are allowed")
        self.store = store
        self.ledger = ledger
        self.adapter_factory = adapter_factory
        self.publisher = publisher
        self.evaluator = evaluator or ScheduleEvaluator()
        self.discovered_files = discovered_files or InMemoryDiscoveredFileRepository()
        self.retry_delays = tuple(retry_delays)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def handle(self, instruction: DispatchInstruction, cancel_event: asyncio.Event) -> Execution:
        execution = await self.ledger.create(Execution(
            tenant_id=instruction.tenant_id,
            configuration_id=instruction.configuration_id,
            started_at=self._clock(),
            scheduled_execution_time=instruction.scheduled_execution_time,
            idempotency_key=instruction.idempotency_key,
            trigger_type=instruction.trigger_type,
            triggered_by=instruction.triggered_by
        ))

        configuration = await self.store.get(instruction.tenant_id, instruction.configuration_id)
        if configuration is None or not configuration.is_active:
            logger.warning(f"Configuration {instruction.configuration_id} is gone; failing execution {execution.id}")
            failed = execution.mark_failed(
                f"Configuration {instruction.configuration_id} not found or inactive",
                ErrorCategory.CONFIGURATION_ERROR,
                self._clock()
            )
            failed = await self.ledger.update(failed)
            await self._announce_outcome(failed)
            return failed

        execution = await self.ledger.update(self._resolve_patterns(execution.mark_running(), configuration))
        logger.info(
            f"Checking configuration {configuration.id} for '{execution.resolved_filename_pattern}' "
            f"under '{execution.resolved_file_path_pattern}' (execution {execution.id})"
        )

        execution, files = await self._check(execution, configuration, cancel_event)
        new_files: List[NewFile] = []
        if execution.status == ExecutionStatus.COMPLETED and files:
            new_files = await self._register_new_files(execution, configuration, files)
            execution = execution.model_copy(update={"files_processed": len(new_files)})
        execution = await self.ledger.update(execution)

        if execution.status == ExecutionStatus.COMPLETED:
            logger.info(
                f"Execution {execution.id} completed: {execution.files_found} files "
                f"({execution.files_processed} new) in {execution.duration_ms}ms"
            )
            if new_files:
                await self._fan_out(execution, configuration, new_files)
            if configuration.needs_attention:
                await self._set_attention(configuration, None)
        else:
            logger.error(
                f"Execution {execution.id} for configuration {configuration.id} failed "
                f"({execution.error_category.value}) after {execution.retry_count} retries: {execution.error_message}"
            )

        await self._announce_outcome(execution)
        await self._record_bookkeeping(execution, configuration)
        return execution

    def _resolve_patterns(self, execution: Execution, configuration: Configuration) -> Execution:
        tz = ScheduleEvaluator.validate_timezone(configuration.schedule.timezone)
        local_date = execution.scheduled_execution_time.astimezone(tz)
        return execution.model_copy(update={
            "resolved_file_path_pattern": replace_tokens(configuration.file_path_pattern, local_date),
            "resolved_filename_pattern": replace_tokens(configuration.filename_pattern, local_date),
        })

    async def _check(
        self,
        execution: Execution,
        configuration: Configuration,
        cancel_event: asyncio.Event
    ) -> Tuple[Execution, List[DiscoveredFile]]:
        """Run discovery with retries and return the terminal execution."""
        settings = configuration.protocol_settings
        retries = 0
        try:
            async with self.adapter_factory.create(settings) as adapter:
                while True:
                    try:
                        files = await adapter.check_for_files(
                            settings.address,
                            execution.resolved_file_path_pattern,
                            execution.resolved_filename_pattern,
                            configuration.file_extension
                        )
                        break
                    except TransientTransportError as e:
                        if retries >= len(self.retry_delays):
                            raise
                        delay = self.retry_delays[retries]
                        retries += 1
                        logger.warning(
                            f"Transient failure checking configuration {configuration.id} "
                            f"(retry {retries}/{len(self.retry_delays)} in {delay}s): {e}"
                        )
                        if await self._wait_or_cancelled(delay, cancel_event):
                            logger.info(f"Shutdown requested; abandoning retries for execution {execution.id}")
                            raise
        except TransportError as e:
            if isinstance(e, ConfigurationError):
                logger.error(f"Configuration {configuration.id} needs attention: {e}")
                await self._set_attention(configuration, str(e))
            execution = execution.model_copy(update={"retry_count": retries})
            return execution.mark_failed(str(e), e.category, self._clock()), []
        except Exception as e:
            logger.error(f"Unexpected failure checking configuration {configuration.id}: {e}", exc_info=True)
            execution = execution.model_copy(update={"retry_count": retries})
            return execution.mark_failed(str(e) or type(e).__name__, categorize_error(e), self._clock()), []

        execution = execution.model_copy(update={"retry_count": retries})
        return execution.mark_completed(len(files), self._clock()), files

    @staticmethod
    async def _wait_or_cancelled(delay: float, cancel_event: asyncio.Event) -> bool:
        """Sleep for ``delay`` seconds; return True if cancelled meanwhile."""
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _register_new_files(
        self,
        execution: Execution,
        configuration: Configuration,
        files: List[DiscoveredFile]
    ) -> List[NewFile]:
        """Keep the files not yet discovered today, recording each one.

        Files the registry cannot record are treated as new.
        """
        discovered_at = self._clock()
        new_files: List[NewFile] = []
        for file in files:
            record = DiscoveredFileRecord.from_file(
                file, configuration.tenant_id, configuration.id, execution.id, discovered_at
            )
            try:
                is_new = await self.discovered_files.add_if_new(record)
            except Exception as e:
                logger.error(
                    f"Failed to record discovery of {file.location} for execution {execution.id}: {e}",
                    exc_info=True
                )
                is_new = True
            if is_new:
                new_files.append((record, file))
            else:
                logger.info(f"Skipping {file.location}: already discovered on {record.discovery_date}")
        return new_files

    async def _fan_out(self, execution: Execution, configuration: Configuration, new_files: List[NewFile]) -> None:
        for record, file in new_files:
            payload = file.to_dict()
            for definition in configuration.notifications:
                await self._publish(FileDiscovered(
                    tenant_id=configuration.tenant_id,
                    configuration_id=configuration.id,
                    actor=execution.triggered_by,
                    event_type=definition.event_type,
                    execution_id=execution.id,
                    discovered_file_id=record.id,
                    file=payload,
                    discovery_date=record.discovery_date,
                    idempotency_key=record.idempotency_key,
                    properties=definition.properties
                ))

        batch = [file.to_dict() for _, file in new_files]
        for definition in configuration.instructions:
            try:
                await self.publisher.send_instruction(DownstreamInstruction(
                    instruction_type=definition.instruction_type,
                    target=definition.target,
                    tenant_id=configuration.tenant_id,
                    configuration_id=configuration.id,
                    execution_id=execution.id,
                    files=batch,
                    properties=definition.properties
                ))
            except Exception as e:
                logger.error(
                    f"Failed to send {definition.instruction_type} to {definition.target} "
                    f"for execution {execution.id}: {e}",
                    exc_info=True
                )

    async def _announce_outcome(self, execution: Execution) -> None:
        common = {
            "tenant_id": execution.tenant_id,
            "configuration_id": execution.configuration_id,
            "actor": execution.triggered_by,
            "execution_id": execution.id,
            "trigger_type": execution.trigger_type,
            "scheduled_execution_time": execution.scheduled_execution_time,
            "duration_ms": execution.duration_ms,
            "resolved_file_path_pattern": execution.resolved_file_path_pattern,
            "resolved_filename_pattern": execution.resolved_filename_pattern,
        }
        if execution.status == ExecutionStatus.COMPLETED:
            notification = CheckCompleted(
                files_found=execution.files_found,
                files_processed=execution.files_processed,
                **common
            )
        else:
            notification = CheckFailed(
                error_message=execution.error_message,
                error_category=execution.error_category,
                retry_count=execution.retry_count,
                **common
            )
        await self._publish(notification)

    async def _publish(self, notification: LifecycleNotification) -> None:
        try:
            await self.publisher.publish(notification)
        except Exception as e:
            logger.error(
                f"Failed to publish {notification.notification_type} for configuration "
                f"{notification.configuration_id}: {e}",
                exc_info=True
            )

    async def _set_attention(self, configuration: Configuration, reason: Optional[str]) -> None:
        """Flag the configuration with ``reason``, or clear the flag when None."""
        try:
            await self.store.flag_attention(configuration.tenant_id, configuration.id, reason, self._clock())
        except Exception as e:
            logger.error(f"Failed to update attention flag of configuration {configuration.id}: {e}", exc_info=True)
            return
        if reason is None:
            logger.info(f"Configuration {configuration.id} no longer needs attention")

    async def _record_bookkeeping(self, execution: Execution, configuration: Configuration) -> None:
        """Advance the schedule after a scheduled check.

        A completed check moves the last run to its scheduled instant. A
        failed check leaves the last run alone but still moves the next run
        past the failed occurrence. Manual checks do not touch the schedule.
        """
        if execution.trigger_type != TriggerType.SCHEDULED:
            return

        scheduled = execution.scheduled_execution_time
        next_run = self.evaluator.next_run(
            configuration.schedule.cron_expression,
            configuration.schedule.timezone,
            last_run_utc=scheduled
        )
        last_run = scheduled if execution.status == ExecutionStatus.COMPLETED else configuration.last_executed_at

        try:
            await self.store.record_execution(configuration.tenant_id, configuration.id, last_run, next_run)
        except Exception as e:
            logger.error(f"Failed to record schedule bookkeeping for {configuration.id}: {e}", exc_info=True)
