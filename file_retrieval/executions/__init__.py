"""Execution history: records of triggered file checks.

Provides the execution model with its forward-only status lifecycle and the
ledger contract with an in-memory implementation. The execution handler that
drives checks lives in :mod:`file_retrieval.executions.handler` and the
registry of already announced files in :mod:`file_retrieval.executions.discovered`.
"""

from .models import (
    Execution,
    ExecutionStatus,
    ExecutionPage,
    DateRange,
    TriggerType,
    validate_transition,
)

from .ledger import (
    ExecutionHistoryLedger,
    InMemoryExecutionLedger,
    encode_continuation_token,
    decode_continuation_token,
)

__all__ = [
    'Execution',
    'ExecutionStatus',
    'ExecutionPage',
    'DateRange',
    'TriggerType',
    'validate_transition',
    'ExecutionHistoryLedger',
    'InMemoryExecutionLedger',
    'encode_continuation_token',
    'decode_continuation_token',
]
