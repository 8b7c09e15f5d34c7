"""Relay Server Implementation.

Bridges a line-delimited JSON-RPC client on stdio to an IDE host over HTTP.
One message is read, fully answered (or deliberately left unanswered), and
written before the next one is read.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from idelink.config import IdelinkConfig
from idelink.core.errors import (
    HostResponseError,
    HostTimeoutError,
    HostUnreachableError,
    RelayError,
)
from idelink.discovery.cache import CapabilityCache
from idelink.discovery.installations import detect_installations
from idelink.discovery.registry import InstanceRegistry
from idelink.discovery.resolver import InstanceResolver, Selector
from idelink.relay.protocol import (
    ACKNOWLEDGEMENTS,
    ErrorCode,
    InitializeResult,
    MalformedMessage,
    Method,
    RPCRequest,
    RPCResponse,
    ToolResult,
    build_instructions,
)
from idelink.relay.state import RelaySession
from idelink.relay.transport import HostTransport

log = structlog.get_logger()

Handler = Callable[[RPCRequest], Awaitable[Optional[dict[str, Any]]]]


class RelayServer:
    """Single-threaded read-dispatch-write relay.

    ``initialize`` and ``ping`` are always answered locally. ``tools/list``
    falls back to the capability cache and ``tools/call`` to an offline
    tool-result error when the host cannot be reached.
    """

    def __init__(
        self,
        session: RelaySession,
        transport: HostTransport,
        cache: CapabilityCache,
        install_root: Optional[Path] = None,
        max_line_bytes: int = 16 * 1024 * 1024,
    ):
        """Initialize relay server.

        Args:
            session: Selector and connection state for this relay
            transport: HTTP transport to the host
            cache: Offline capability snapshot
            install_root: Where to look for host installations in offline errors
            max_line_bytes: Longest inbound line accepted
        """
        self.session = session
        self.transport = transport
        self.cache = cache
        self.install_root = install_root
        self.max_line_bytes = max_line_bytes
        self._handlers: dict[str, Handler] = {
            Method.INITIALIZE.value: self._handle_initialize,
            Method.PING.value: self._handle_ping,
            Method.TOOLS_LIST.value: self._handle_tools_list,
            Method.TOOLS_CALL.value: self._handle_tools_call,
        }

    async def startup(self, attempts: int, interval: float) -> bool:
        """Bounded discovery before the first message is read."""
        found = await self.session.establish(attempts, interval)
        if found:
            endpoint = self.session.endpoint
            log.info("relay_ready", port=endpoint.port, pid=endpoint.process_id)
        else:
            log.warning(
                "relay_offline",
                message="Could not find a running IDE host; serving offline until one appears",
            )
        return found

    async def run_stdio(self) -> None:
        """Run the relay over this process's stdin/stdout."""
        loop = asyncio.get_running_loop()

        reader = asyncio.StreamReader(limit=self.max_line_bytes)
        protocol = asyncio.StreamReaderProtocol(reader)
        await loop.connect_read_pipe(lambda: protocol, sys.stdin)

        writer_transport, writer_protocol = await loop.connect_write_pipe(
            asyncio.streams.FlowControlMixin, sys.stdout
        )
        writer = asyncio.StreamWriter(writer_transport, writer_protocol, reader, loop)

        await self.run(reader, writer)

    async def run(self, reader: asyncio.StreamReader, writer: Any) -> None:
        """Relay until the reader hits EOF or the task is cancelled.

        Args:
            reader: Source of newline-delimited messages
            writer: Object with ``write(bytes)`` and ``drain()``
        """
        log.info("relay_started", connected=self.session.is_connected)
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError as e:
                    # Over-long line; its remainder surfaces as an unparseable line
                    log.warning("relay_line_too_long", limit=self.max_line_bytes, error=str(e))
                    continue

                if not line:
                    break

                response = await self.handle_line(line)
                if response is not None:
                    await self._write_message(writer, response)
        except asyncio.CancelledError:
            log.info("relay_cancelled")
            raise
        finally:
            await self.transport.aclose()
            log.info("relay_stopped")

    async def _write_message(self, writer: Any, message: dict[str, Any]) -> None:
        """Write one message as a single line.

        Non-ASCII text is escaped, so any string the client sent (lone
        surrogates included) can be echoed back.
        """
        content = json.dumps(message, separators=(",", ":"))
        writer.write(content.encode("ascii") + b"\n")
        await writer.drain()

    async def handle_line(self, line: Union[bytes, str]) -> Optional[dict[str, Any]]:
        """Handle one inbound line.

        Returns:
            The response to write, or None when nothing must be written
        """
        if isinstance(line, bytes):
            try:
                line = line.decode("utf-8")
            except UnicodeDecodeError as e:
                log.warning("relay_message_dropped", reason=f"invalid UTF-8: {e}")
                return None

        if not line.strip():
            return None

        try:
            request = RPCRequest.parse(line)
        except MalformedMessage as e:
            log.warning("relay_message_dropped", reason=str(e))
            return None

        try:
            return await self.handle_request(request)
        except Exception as e:
            log.exception("relay_handler_error", method=request.method)
            if request.is_notification:
                return None
            return RPCResponse.error(request.id, ErrorCode.INTERNAL_ERROR, str(e)).to_dict()

    async def handle_request(self, request: RPCRequest) -> Optional[dict[str, Any]]:
        """Dispatch a parsed message."""
        log.debug("request_received", method=request.method, id=request.id)

        if request.method in ACKNOWLEDGEMENTS:
            return None

        if request.is_notification:
            log.debug("notification_dropped", method=request.method)
            return None

        handler = self._handlers.get(request.method)
        if handler is None:
            return await self._handle_other(request)
        return await handler(request)

    # Local handlers
    async def _handle_initialize(self, request: RPCRequest) -> dict[str, Any]:
        endpoint = self.session.endpoint
        instructions = build_instructions(
            tool_count=self.cache.count(),
            candidates=self.session.candidates,
            connected_project=endpoint.project_path if endpoint else None,
        )
        log.info(
            "relay_initialized",
            connected=endpoint is not None,
            candidates=len(self.session.candidates),
        )
        return RPCResponse.success(request.id, InitializeResult(instructions).to_dict()).to_dict()

    async def _handle_ping(self, request: RPCRequest) -> dict[str, Any]:
        return RPCResponse.success(request.id, {}).to_dict()

    # Forwarded handlers
    async def _handle_tools_list(self, request: RPCRequest) -> dict[str, Any]:
        try:
            response = await self._forward(request)
        except RelayError as e:
            log.info("tools_list_offline", reason=str(e))
            response = None

        if response is None:
            tools = self.cache.tools()
            log.debug("tools_list_from_cache", count=len(tools))
            return RPCResponse.success(request.id, {"tools": tools}).to_dict()
        return response

    async def _handle_tools_call(self, request: RPCRequest) -> dict[str, Any]:
        try:
            response = await self._forward(request)
        except HostTimeoutError as e:
            result = ToolResult.failure(
                f"The IDE host did not respond within {e.timeout:g} seconds (timeout). "
                "It is still running but may be busy or blocked by a modal dialog. "
                "Retry shortly."
            )
            return RPCResponse.success(request.id, result.to_dict()).to_dict()
        except HostResponseError as e:
            result = ToolResult.failure(f"The IDE host returned an invalid response: {e.message}")
            return RPCResponse.success(request.id, result.to_dict()).to_dict()
        except HostUnreachableError as e:
            log.info("tools_call_offline", reason=str(e))
            result = ToolResult.failure(self._offline_message())
            return RPCResponse.success(request.id, result.to_dict()).to_dict()

        if response is None:
            result = ToolResult.failure("The IDE host accepted the call but returned no result.")
            return RPCResponse.success(request.id, result.to_dict()).to_dict()
        return response

    async def _handle_other(self, request: RPCRequest) -> Optional[dict[str, Any]]:
        try:
            return await self._forward(request)
        except HostUnreachableError:
            return RPCResponse.error(
                request.id,
                ErrorCode.METHOD_NOT_FOUND,
                f"Method not available: {request.method} (the IDE host is not running)",
            ).to_dict()
        except HostTimeoutError as e:
            return RPCResponse.error(request.id, ErrorCode.HOST_TIMEOUT, e.message).to_dict()
        except RelayError as e:
            return RPCResponse.error(request.id, ErrorCode.INTERNAL_ERROR, e.message).to_dict()

    async def _forward(self, request: RPCRequest) -> Optional[dict[str, Any]]:
        """Send one request to the current host.

        Reconnects lazily when disconnected. On an unreachable host the
        connection is demoted and re-resolved once, then the error propagates
        so the caller can substitute an offline answer.

        Raises:
            HostUnreachableError: No endpoint, or the endpoint refused the call
            HostTimeoutError: The host did not answer in time
            HostResponseError: The host answered with something unusable
        """
        if not self.session.is_connected:
            self.session.reconnect()

        endpoint = self.session.endpoint
        if endpoint is None:
            raise HostUnreachableError("No running IDE host instance found")

        try:
            return await self.transport.post(endpoint, request.to_dict())
        except HostUnreachableError as e:
            log.warning("forward_failed", method=request.method, port=endpoint.port, error=e.message)
            self.session.mark_unreachable(e.message)
            self.session.reconnect()
            raise
        except HostTimeoutError as e:
            log.warning("forward_timeout", method=request.method, port=endpoint.port, timeout=e.timeout)
            raise

    def _offline_message(self) -> str:
        """Tool-result text explaining that no host is reachable."""
        lines = ["The IDE is not running, or the idelink host is not reachable."]

        selector = self.session.selector
        if selector.process_id is not None:
            lines.append(f"Requested IDE process id: {selector.process_id}.")
        if selector.project_path:
            lines.append(f"Requested solution: {selector.project_path}.")

        if self.session.candidates:
            lines.append("Solution files found near the working directory:")
            lines.extend(f"  - {c}" for c in self.session.candidates)

        installations = detect_installations(self.install_root)
        if installations:
            lines.append("Detected IDE installations:")
            lines.extend(f"  - {i.display_name}: {i.executable}" for i in installations)
        else:
            lines.append("No IDE installations were detected on this machine.")

        lines.append(
            "Do not guess which installation to launch. Ask the user which one to start "
            "(and which solution to open), wait for it to finish loading, then retry."
        )
        return "\n".join(lines)


def build_relay(
    config: IdelinkConfig,
    selector: Optional[Selector] = None,
    start_dir: Optional[Path] = None,
    transport: Optional[HostTransport] = None,
) -> RelayServer:
    """Wire a relay from configuration."""
    registry = InstanceRegistry(config.data_dir, config.record_prefix, config.record_suffix)
    resolver = InstanceResolver(
        registry,
        start_dir=start_dir,
        descriptor_patterns=config.descriptor_patterns,
        max_walk_depth=config.max_walk_depth,
    )
    return RelayServer(
        session=RelaySession(resolver, selector),
        transport=transport or HostTransport(timeout=config.request_timeout),
        cache=CapabilityCache(config.cache_path),
        install_root=config.install_root,
        max_line_bytes=config.max_line_bytes,
    )
