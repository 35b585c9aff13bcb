"""Polling scheduler loop.

Every poll interval the loop reads all active configurations, works out
which ones are due within the execution window and dispatches each due
configuration as its own task. Dispatched tasks are never awaited by the
loop; they release their concurrency slot when they finish.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..configuration.models import Configuration
from ..configuration.store import ConfigurationStore
from ..errors import ConcurrencyDeferred, ConflictError, NotFoundError
from ..executions.models import TriggerType
from .cron import ScheduleEvaluator, as_utc
from .dispatch import CheckDispatcher, DispatchInstruction
from .inflight import AcquireOutcome, InFlightRegistry
from .options import SchedulerOptions


logger = logging.getLogger(__name__)


class TickOutcome(str, Enum):
    """What happened to one configuration during a tick."""
    TRIGGERED = "triggered"
    SKIPPED_IN_PROGRESS = "skipped_in_progress"
    DEFERRED = "deferred"
    OVERDUE = "overdue"
    NOT_DUE = "not_due"
    INVALID_SCHEDULE = "invalid_schedule"
    FAILED = "failed"


@dataclass
class TickSummary:
    """Counts produced by one pass over the active configurations."""
    tick_time: datetime
    active: int = 0
    triggered: int = 0
    skipped_in_progress: int = 0
    deferred: int = 0
    overdue: int = 0
    not_due: int = 0
    invalid_schedule: int = 0
    failed: int = 0
    store_error: bool = False

    def record(self, outcome: TickOutcome) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["tick_time"] = self.tick_time.isoformat()
        return data


@dataclass
class SchedulerStats:
    """Running totals across ticks."""
    total_ticks: int = 0
    total_triggered: int = 0
    total_overdue: int = 0
    total_deferred: int = 0
    total_failed: int = 0
    store_errors: int = 0
    checks_completed: int = 0
    checks_failed: int = 0
    last_tick_time: Optional[datetime] = None
    average_tick_duration_ms: float = 0.0
    last_summary: Optional[TickSummary] = None
    tick_durations: List[float] = field(default_factory=list, repr=False)


class SchedulerLoop:
    """Evaluates configuration schedules and dispatches due checks."""

    def __init__(
        self,
        store: ConfigurationStore,
        dispatcher: CheckDispatcher,
        evaluator: Optional[ScheduleEvaluator] = None,
        options: Optional[SchedulerOptions] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """Initialize the scheduler loop.

        Args:
            store: Source of active configurations
            dispatcher: Hands due checks to the execution handler
            evaluator: Cron evaluator; a default instance is created if omitted
            options: Poll interval, execution window and concurrency cap
            clock: Returns the current UTC instant
        """
        self.store = store
        self.dispatcher = dispatcher
        self.evaluator = evaluator or ScheduleEvaluator()
        self.options = options or SchedulerOptions()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self.registry = InFlightRegistry(self.options.max_concurrent_checks)
        self._shutdown_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False
        self._stats = SchedulerStats()
        self._max_tick_samples = 100

    @property
    def cancel_event(self) -> asyncio.Event:
        """Event shared with every dispatched check; set when stopping."""
        return self._shutdown_event

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the scheduler loop."""
        if self._running:
            logger.warning("Scheduler loop is already running")
            return

        logger.info("Starting scheduler loop")
        self._running = True
        self._shutdown_event.clear()
        self._loop_task = asyncio.create_task(self._scheduler_loop())

        logger.info(
            f"Scheduler loop started (poll interval: {self.options.poll_interval_seconds}s, "
            f"window: {self.options.execution_window_minutes}m, "
            f"max concurrent checks: {self.options.max_concurrent_checks})"
        )

    async def stop(self, drain_timeout: Optional[float] = None) -> None:
        """Stop polling and wait for in-flight checks to wind down.

        In-flight checks see the cancel event and are given up to
        ``drain_timeout`` seconds to finish. They are never cancelled.
        """
        if not self._running:
            return

        logger.info("Stopping scheduler loop")
        self._running = False
        self._shutdown_event.set()

        if self._loop_task:
            try:
                await self._loop_task
            except Exception as e:
                logger.error(f"Scheduler loop ended with error: {e}", exc_info=True)
            self._loop_task = None

        await self.drain(drain_timeout)
        logger.info("Scheduler loop stopped")

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Wait for dispatched checks to finish.

        Returns:
            Number of checks still running when the timeout expired
        """
        timeout = self.options.drain_timeout_seconds if timeout is None else timeout
        pending = set(self._tasks)
        if not pending:
            return 0

        logger.info(f"Waiting up to {timeout}s for {len(pending)} in-flight checks")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if still_running:
            logger.warning(f"{len(still_running)} checks still running after drain timeout")
        return len(still_running)

    async def run_tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Evaluate every active configuration once.

        Args:
            now: Tick instant; the clock is read when omitted

        Returns:
            Summary of what happened to each configuration
        """
        tick_time = as_utc(now or self._clock())
        summary = TickSummary(tick_time=tick_time)

        if self._shutdown_event.is_set():
            logger.debug("Shutdown in progress; skipping tick")
            return summary

        try:
            configurations = await self.store.list_active()
        except Exception as e:
            logger.error(f"Failed to load active configurations: {e}", exc_info=True)
            summary.store_error = True
            self._record_summary(summary)
            return summary

        summary.active = len(configurations)
        for configuration in configurations:
            try:
                outcome = await self._evaluate(configuration, tick_time)
            except Exception as e:
                logger.error(
                    f"Failed to process configuration {configuration.id} "
                    f"(tenant {configuration.tenant_id}): {e}",
                    exc_info=True
                )
                outcome = TickOutcome.FAILED
            summary.record(outcome)

        self._record_summary(summary)
        return summary

    async def trigger_now(
        self,
        tenant_id: str,
        configuration_id: str,
        actor: Optional[str] = None
    ) -> DispatchInstruction:
        """Dispatch a check immediately, outside the schedule.

        Raises:
            NotFoundError: If the configuration is unknown or deleted
            ConflictError: If a check for it is already running
            ConcurrencyDeferred: If every concurrency slot is in use
        """
        configuration = await self.store.get(tenant_id, configuration_id)
        if configuration is None or not configuration.is_active:
            raise NotFoundError(f"Configuration {configuration_id} not found for tenant {tenant_id}")

        instruction = DispatchInstruction.for_occurrence(
            tenant_id,
            configuration_id,
            self._clock(),
            trigger_type=TriggerType.MANUAL,
            triggered_by=actor
        )

        outcome = await self.registry.try_acquire(instruction.key, instruction.idempotency_key)
        if outcome == AcquireOutcome.IN_FLIGHT:
            raise ConflictError(f"A check for configuration {configuration_id} is already running")
        if outcome == AcquireOutcome.DEFERRED:
            raise ConcurrencyDeferred(
                f"All {self.registry.max_concurrency} check slots are in use; try again later"
            )

        logger.info(f"Manual check of configuration {configuration_id} triggered by {actor or 'unknown'}")
        self._spawn(instruction)
        return instruction

    def get_stats(self) -> SchedulerStats:
        return self._stats

    async def _scheduler_loop(self) -> None:
        """Main loop: tick, then sleep until the next poll or shutdown."""
        logger.info("Starting scheduler loop iterations")

        while self._running:
            try:
                tick_start = datetime.now(timezone.utc)
                await self.run_tick()

                tick_duration = (datetime.now(timezone.utc) - tick_start).total_seconds() * 1000
                self._stats.tick_durations.append(tick_duration)
                if len(self._stats.tick_durations) > self._max_tick_samples:
                    self._stats.tick_durations.pop(0)
                self._stats.average_tick_duration_ms = (
                    sum(self._stats.tick_durations) / len(self._stats.tick_durations)
                )

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.options.poll_interval_seconds
                    )
                    break  # Shutdown requested
                except asyncio.TimeoutError:
                    continue

            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}", exc_info=True)
                await asyncio.sleep(1)

    async def _evaluate(self, configuration: Configuration, tick_time: datetime) -> TickOutcome:
        key = (configuration.tenant_id, configuration.id)
        if self.registry.is_in_flight(key):
            logger.debug(f"Configuration {configuration.id} is still running; skipping")
            return TickOutcome.SKIPPED_IN_PROGRESS

        schedule = configuration.schedule
        next_run = configuration.next_scheduled_run or self._next_occurrence(configuration, tick_time)
        if next_run is None:
            logger.warning(
                f"Configuration {configuration.id} has no evaluable schedule "
                f"('{schedule.cron_expression}' in {schedule.timezone})"
            )
            return TickOutcome.INVALID_SCHEDULE

        delta = as_utc(next_run) - tick_time
        if delta < timedelta(0):
            logger.warning(
                f"Configuration {configuration.id} is overdue: next run {next_run.isoformat()} "
                f"was {-delta.total_seconds():.0f}s ago; not dispatching"
            )
            await self._skip_missed_occurrence(configuration, tick_time)
            return TickOutcome.OVERDUE
        if delta > self.options.execution_window:
            return TickOutcome.NOT_DUE

        instruction = DispatchInstruction.for_occurrence(configuration.tenant_id, configuration.id, next_run)
        outcome = await self.registry.try_acquire(key, instruction.idempotency_key)
        if outcome == AcquireOutcome.IN_FLIGHT:
            return TickOutcome.SKIPPED_IN_PROGRESS
        if outcome == AcquireOutcome.DEFERRED:
            logger.warning(
                f"Concurrency limit reached; deferring configuration {configuration.id} to the next tick"
            )
            return TickOutcome.DEFERRED

        logger.info(
            f"Dispatching configuration {configuration.id} for {instruction.scheduled_execution_time.isoformat()}"
        )
        self._spawn(instruction)
        return TickOutcome.TRIGGERED

    def _next_occurrence(self, configuration: Configuration, after: datetime) -> Optional[datetime]:
        """First occurrence after the later of the last run and ``after``."""
        reference = after
        if configuration.last_executed_at is not None:
            reference = max(as_utc(configuration.last_executed_at), after)
        schedule = configuration.schedule
        return self.evaluator.next_run(schedule.cron_expression, schedule.timezone, last_run_utc=reference)

    async def _skip_missed_occurrence(self, configuration: Configuration, tick_time: datetime) -> None:
        """Move a stale next run past ``tick_time`` so later ticks dispatch again."""
        following = self._next_occurrence(configuration, tick_time)
        if following is None:
            return
        try:
            await self.store.record_execution(
                configuration.tenant_id,
                configuration.id,
                configuration.last_executed_at,
                following
            )
        except Exception as e:
            logger.error(f"Failed to advance next run for configuration {configuration.id}: {e}")
            return
        logger.info(f"Configuration {configuration.id} will next run at {following.isoformat()}")

    def _spawn(self, instruction: DispatchInstruction) -> None:
        task = asyncio.create_task(self._run_check(instruction))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_check(self, instruction: DispatchInstruction) -> None:
        try:
            await self.dispatcher.dispatch(instruction, self._shutdown_event)
            self._stats.checks_completed += 1
        except Exception as e:
            self._stats.checks_failed += 1
            logger.error(
                f"Check {instruction.idempotency_key} failed: {e}",
                exc_info=True
            )
        finally:
            self.registry.release(instruction.key)

    def _record_summary(self, summary: TickSummary) -> None:
        self._stats.total_ticks += 1
        self._stats.total_triggered += summary.triggered
        self._stats.total_overdue += summary.overdue
        self._stats.total_deferred += summary.deferred
        self._stats.total_failed += summary.failed
        if summary.store_error:
            self._stats.store_errors += 1
        self._stats.last_tick_time = summary.tick_time
        self._stats.last_summary = summary

        logger.info(
            f"Tick {summary.tick_time.isoformat()}: active={summary.active} "
            f"triggered={summary.triggered} skipped={summary.skipped_in_progress} "
            f"deferred={summary.deferred} overdue={summary.overdue} not_due={summary.not_due} "
            f"invalid={summary.invalid_schedule} failed={summary.failed}"
            + (" store_error=True" if summary.store_error else "")
        )
