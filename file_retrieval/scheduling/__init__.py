"""Scheduling for file retrieval checks.

This package provides:
- Timezone-aware cron evaluation with a fixed DST policy
- Scheduler options with bounds
- The in-flight registry and concurrency cap
- Dispatch instructions, idempotency keys and the dispatcher contract

The polling loop lives in :mod:`file_retrieval.scheduling.scheduler` and the
service wiring in :mod:`file_retrieval.scheduling.service`.
"""

from .cron import (
    ScheduleEvaluator,
    CronValidationError,
    validate_cron_expression,
    get_next_run_time,
)

from .options import SchedulerOptions

from .inflight import (
    InFlightRegistry,
    AcquireOutcome,
)

from .dispatch import (
    DispatchInstruction,
    ExecutionHandler,
    CheckDispatcher,
    InProcessCheckDispatcher,
    build_idempotency_key,
    to_ticks,
)

__all__ = [
    # Cron evaluation
    'ScheduleEvaluator',
    'CronValidationError',
    'validate_cron_expression',
    'get_next_run_time',

    # Options
    'SchedulerOptions',

    # Concurrency
    'InFlightRegistry',
    'AcquireOutcome',

    # Dispatch
    'DispatchInstruction',
    'ExecutionHandler',
    'CheckDispatcher',
    'InProcessCheckDispatcher',
    'build_idempotency_key',
    'to_ticks',
]
