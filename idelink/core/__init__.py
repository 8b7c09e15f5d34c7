"""Core relay infrastructure: error taxonomy and bounded retries."""

from idelink.core.errors import (
    ErrorCategory,
    HostNotFoundError,
    HostResponseError,
    HostTimeoutError,
    HostUnreachableError,
    RelayError,
    classify_error,
)
from idelink.core.retry import RetryConfig, with_retry

__all__ = [
    "ErrorCategory",
    "HostNotFoundError",
    "HostResponseError",
    "HostTimeoutError",
    "HostUnreachableError",
    "RelayError",
    "RetryConfig",
    "classify_error",
    "with_retry",
]
