"""Connection state of one relay session.

The relay loop is single-threaded, so the current endpoint is plain
session state: it is only replaced between messages, never while a
forwarded call is in flight.
"""

from enum import Enum
from pathlib import Path
from typing import Optional

import structlog

from idelink.core.errors import HostNotFoundError
from idelink.core.retry import RetryConfig, with_retry
from idelink.discovery.resolver import Endpoint, InstanceResolver, Resolution, Selector

log = structlog.get_logger()


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


class ConnectionState:
    """Disconnected, or connected to exactly one endpoint."""

    def __init__(self):
        self._endpoint: Optional[Endpoint] = None

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return self._endpoint

    @property
    def status(self) -> ConnectionStatus:
        if self._endpoint is None:
            return ConnectionStatus.DISCONNECTED
        return ConnectionStatus.CONNECTED

    @property
    def is_connected(self) -> bool:
        return self._endpoint is not None

    def connect(self, endpoint: Endpoint) -> None:
        previous = self._endpoint
        self._endpoint = endpoint
        if previous != endpoint:
            log.info(
                "relay_connected",
                port=endpoint.port,
                pid=endpoint.process_id,
                project=endpoint.project_path,
                previous_port=previous.port if previous else None,
            )

    def disconnect(self, reason: str = "") -> None:
        if self._endpoint is not None:
            log.warning("relay_disconnected", port=self._endpoint.port, reason=reason)
        self._endpoint = None


class RelaySession:
    """Selector, discovered candidates and connection state for one relay process."""

    def __init__(
        self,
        resolver: InstanceResolver,
        selector: Optional[Selector] = None,
        state: Optional[ConnectionState] = None,
    ):
        self.resolver = resolver
        self.selector = selector or Selector()
        self.state = state or ConnectionState()
        self.candidates: list[Path] = []
        self.last_resolution: Optional[Resolution] = None

    @property
    def endpoint(self) -> Optional[Endpoint]:
        return self.state.endpoint

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    def reconnect(self) -> bool:
        """Re-resolve once. A failed attempt leaves the state unchanged.

        Returns:
            True if an endpoint is current afterwards
        """
        resolution = self.resolver.resolve(self.selector)
        self.last_resolution = resolution
        if resolution.candidates:
            self.candidates = list(resolution.candidates)

        endpoint = resolution.endpoint
        if endpoint is None:
            log.debug("relay_resolve_failed", selector=str(self.selector))
            return self.state.is_connected

        self.state.connect(endpoint)
        return True

    def mark_unreachable(self, reason: str = "") -> None:
        self.state.disconnect(reason)

    async def establish(self, attempts: int, interval: float) -> bool:
        """Bounded start-up discovery.

        Args:
            attempts: Maximum resolve attempts
            interval: Seconds between attempts

        Returns:
            True if a host was found
        """
        @with_retry(RetryConfig.fixed_interval(attempts, interval, (HostNotFoundError,)))
        async def locate() -> Endpoint:
            if not self.reconnect():
                raise HostNotFoundError("No running IDE host instance found")
            return self.state.endpoint

        try:
            await locate()
        except HostNotFoundError as e:
            log.warning("relay_host_not_found", attempts=attempts, error=str(e))
            return False
        return True
