"""Error taxonomy shared across the file retrieval core."""

from enum import Enum
from typing import List, Optional


class ErrorCategory(str, Enum):
    """Category recorded on failed executions."""
    AUTHENTICATION_FAILURE = "authentication_failure"
    CONNECTION_TIMEOUT = "connection_timeout"
    PROTOCOL_ERROR = "protocol_error"
    CONFIGURATION_ERROR = "configuration_error"
    UNKNOWN_ERROR = "unknown_error"


class FileRetrievalError(Exception):
    """Base class for all file retrieval errors."""
    pass


class ValidationError(FileRetrievalError):
    """Raised when a schedule, pattern or protocol settings are malformed.

    Raised before anything is persisted. ``errors`` carries one message per
    failed rule so callers can report all of them at once.
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or [message]


class InvalidStatusTransitionError(ValidationError):
    """Raised when an execution status would move backwards."""
    pass


class ConflictError(FileRetrievalError):
    """Raised when a version token no longer matches the stored record."""

    def __init__(self, message: str, current_version: Optional[int] = None):
        super().__init__(message)
        self.current_version = current_version


class NotFoundError(FileRetrievalError):
    """Raised for an unknown configuration or execution identifier."""
    pass


class TransportError(FileRetrievalError):
    """Failure raised by a protocol adapter."""

    retryable = False

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN_ERROR):
        super().__init__(message)
        self.category = category


class TransientTransportError(TransportError):
    """Connectivity or credential hiccup the execution handler may retry."""

    retryable = True

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.CONNECTION_TIMEOUT):
        super().__init__(message, category)


class ConfigurationError(TransportError):
    """Settings found to be unusable at execution time. Never retried."""

    def __init__(self, message: str, category: ErrorCategory = ErrorCategory.CONFIGURATION_ERROR):
        super().__init__(message, category)


class ConcurrencyDeferred(FileRetrievalError):
    """Soft condition: every concurrency slot is taken, try again later."""
    pass


def categorize_error(error: BaseException) -> ErrorCategory:
    """Map an arbitrary exception to the category stored on an execution."""
    if isinstance(error, TransportError):
        return error.category
    if isinstance(error, (ValidationError, NotFoundError)):
        return ErrorCategory.CONFIGURATION_ERROR
    if isinstance(error, TimeoutError):
        return ErrorCategory.CONNECTION_TIMEOUT
    if isinstance(error, PermissionError):
        return ErrorCategory.AUTHENTICATION_FAILURE
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.PROTOCOL_ERROR
    return ErrorCategory.UNKNOWN_ERROR
