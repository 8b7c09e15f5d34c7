"""Error classification for the relay.

Every failure the relay can observe while talking to a host is mapped onto a
small taxonomy so the relay loop can decide whether to demote the connection,
fall back to offline answers, or report the failure to the client.
"""

import errno
from enum import Enum
from typing import Optional

import httpx
import structlog

log = structlog.get_logger()


class ErrorCategory(Enum):
    """Categories of relay errors for handling decisions."""

    UNREACHABLE = "unreachable"  # Refused, reset, DNS - demote connection
    TIMEOUT = "timeout"          # Host reachable but slow - keep connection
    PROTOCOL = "protocol"        # Host answered with something unusable
    NOT_FOUND = "not_found"      # No live instance in the registry


class RelayError(Exception):
    """Base class for errors raised while reaching a host."""

    category: ErrorCategory = ErrorCategory.PROTOCOL
    default_suggestion: Optional[str] = None

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion or self.default_suggestion

    def __str__(self) -> str:
        """Human-readable error representation."""
        parts = [self.message]
        if self.suggestion:
            parts.append(f"Suggestion: {self.suggestion}")
        return " | ".join(parts)


class HostUnreachableError(RelayError):
    """The host endpoint refused or dropped the connection."""

    category = ErrorCategory.UNREACHABLE
    default_suggestion = "Check that the IDE is running with the idelink host enabled"


class HostTimeoutError(RelayError):
    """The host accepted the call but did not answer in time."""

    category = ErrorCategory.TIMEOUT
    default_suggestion = "The IDE may be busy or showing a modal dialog; retry shortly"

    def __init__(self, message: str, timeout: float, suggestion: Optional[str] = None):
        super().__init__(message, suggestion)
        self.timeout = timeout


class HostResponseError(RelayError):
    """The host answered with an error status or an unparseable body."""

    category = ErrorCategory.PROTOCOL

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message, suggestion)
        self.status_code = status_code


class HostNotFoundError(RelayError):
    """No live host instance matched the selector."""

    category = ErrorCategory.NOT_FOUND
    default_suggestion = "Start the IDE and open the project, then retry"


# OSError errno values that mean the endpoint is gone rather than slow
UNREACHABLE_ERRNO = {
    errno.ECONNREFUSED,  # Connection refused (host exited)
    errno.ECONNRESET,    # Connection reset by peer
    errno.ECONNABORTED,  # Connection aborted
    errno.EPIPE,         # Broken pipe
    errno.ENETUNREACH,   # Network unreachable
    errno.EHOSTUNREACH,  # Host unreachable
    errno.EADDRNOTAVAIL, # Address not available
}


def classify_error(error: Exception, timeout: float = 0.0) -> RelayError:
    """Map a raw transport exception onto the relay taxonomy.

    Args:
        error: Exception raised by the HTTP client or socket layer
        timeout: The timeout that was in force, used in timeout messages

    Returns:
        A RelayError subclass instance describing the failure
    """
    if isinstance(error, RelayError):
        return error

    # ConnectTimeout means nothing accepted the connection at all
    if isinstance(error, httpx.ConnectTimeout):
        return HostUnreachableError(f"Connection to host timed out: {error}")

    if isinstance(error, httpx.TimeoutException):
        return HostTimeoutError(
            f"Host did not respond within {timeout:g} seconds",
            timeout=timeout,
        )

    if isinstance(error, httpx.TransportError):
        return HostUnreachableError(f"Host unreachable: {error}")

    if isinstance(error, TimeoutError):
        return HostTimeoutError(
            f"Host did not respond within {timeout:g} seconds",
            timeout=timeout,
        )

    if isinstance(error, (ConnectionError, ConnectionRefusedError, ConnectionResetError)):
        return HostUnreachableError(f"Host unreachable: {error}")

    if isinstance(error, OSError) and error.errno in UNREACHABLE_ERRNO:
        return HostUnreachableError(f"Host unreachable: {error}")

    log.debug("unclassified_transport_error", error_type=type(error).__name__, error=str(error))
    return HostResponseError(f"Unexpected transport failure: {error}")
