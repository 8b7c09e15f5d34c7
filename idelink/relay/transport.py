"""HTTP transport from the relay to a host endpoint."""

import json
from typing import Any, Optional

import httpx
import structlog

from idelink.core.errors import HostResponseError, classify_error
from idelink.discovery.resolver import Endpoint

log = structlog.get_logger()

MCP_PATH = "/mcp"
HEALTH_PATH = "/health"


class HostTransport:
    """One POST per forwarded request, bounded by a fixed timeout.

    Failures are raised as ``RelayError`` subclasses:
    ``HostUnreachableError``, ``HostTimeoutError`` or ``HostResponseError``.
    """

    def __init__(self, timeout: float = 120.0, client: Optional[httpx.AsyncClient] = None):
        """Initialize transport.

        Args:
            timeout: Upper bound for one call, in seconds
            client: Optional preconfigured client (tests inject mock transports)
        """
        self.timeout = timeout
        # Loopback traffic must never be routed through an environment proxy
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout), trust_env=False)

    async def post(self, endpoint: Endpoint, message: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Forward one JSON-RPC message.

        Returns:
            The host's JSON-RPC response, or None when the host answered 204
        """
        try:
            response = await self._client.post(
                endpoint.url + MCP_PATH,
                content=json.dumps(message).encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise classify_error(e, self.timeout) from e
        except OSError as e:
            raise classify_error(e, self.timeout) from e

        if response.status_code == httpx.codes.NO_CONTENT:
            return None

        if response.status_code >= 400:
            raise HostResponseError(
                f"Host returned HTTP {response.status_code}",
                status_code=response.status_code,
            )

        if not response.content.strip():
            return None

        try:
            body = response.json()
        except (ValueError, RecursionError) as e:
            raise HostResponseError(
                f"Host returned a non-JSON body: {e}", status_code=response.status_code
            ) from e

        if not isinstance(body, dict):
            raise HostResponseError("Host returned a non-object JSON body", status_code=response.status_code)
        return body

    async def health(self, endpoint: Endpoint) -> dict[str, Any]:
        """Query the host's health endpoint."""
        try:
            response = await self._client.get(endpoint.url + HEALTH_PATH)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise HostResponseError(
                f"Health check failed with HTTP {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise classify_error(e, self.timeout) from e
        except (ValueError, RecursionError) as e:
            raise HostResponseError(f"Health check returned a non-JSON body: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()
