"""Bounded tool dispatch for a host process.

Every call runs in two phases, each with its own deadline:

1. Liveness probe - is the IDE able to take work at all? (``probe_timeout``)
2. Handler execution on a bounded worker pool (``handler_timeout``)

The two failures produce different tool-result messages so a client can
tell a frozen IDE from a slow operation.
"""

import asyncio
import inspect
import json
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Optional

import structlog

from idelink.host.tools import CapabilityRegistry, HandlerResult, ToolHandler
from idelink.relay.protocol import ToolResult

log = structlog.get_logger()

LivenessProbe = Callable[[], Awaitable[Any]]


def executor_probe(executor: Executor) -> LivenessProbe:
    """Build a probe that round-trips a no-op through ``executor``.

    An embedding IDE passes the executor that owns its UI thread, so a modal
    dialog or a long synchronous operation there shows up as a probe timeout.
    Without one, the dispatcher probes its own worker pool: handlers that
    outlived their deadline still hold threads, and a pool they fill up can
    take no new work.
    """
    async def probe() -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(executor, _noop)

    return probe


def _noop() -> None:
    return None


class UnknownToolError(LookupError):
    """No handler is registered under the requested name."""


class ToolDispatcher:
    """Runs tool handlers with a liveness probe and a per-call deadline."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        probe: Optional[LivenessProbe] = None,
        probe_timeout: float = 10.0,
        handler_timeout: float = 90.0,
        max_workers: int = 4,
    ):
        """Initialize dispatcher.

        Args:
            registry: Tools available for dispatch
            probe: Awaitable liveness check (defaults to probing the worker pool)
            probe_timeout: Seconds the probe may take before the host counts as unresponsive
            handler_timeout: Seconds one handler may run
            max_workers: Pool size; also caps concurrent async handlers
        """
        self.registry = registry
        self.probe_timeout = probe_timeout
        self.handler_timeout = handler_timeout
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="idelink-tool")
        self.probe = probe or executor_probe(self._executor)
        self._slots = asyncio.Semaphore(max_workers)

    async def call(self, name: str, arguments: Optional[dict[str, Any]] = None) -> ToolResult:
        """Execute a tool by name.

        Raises:
            UnknownToolError: If no tool with that name is registered
        """
        entry = self.registry.get(name)
        if entry is None:
            raise UnknownToolError(name)
        _, handler = entry
        arguments = arguments or {}

        async with self._slots:
            try:
                await asyncio.wait_for(self.probe(), timeout=self.probe_timeout)
            except asyncio.TimeoutError:
                log.warning("host_probe_timeout", tool=name, timeout=self.probe_timeout)
                return ToolResult.failure(
                    "The IDE is not responding. Its UI thread may be blocked by a modal dialog."
                )

            log.info("tool_execute", name=name)
            try:
                result = await asyncio.wait_for(
                    self._invoke(handler, arguments), timeout=self.handler_timeout
                )
            except asyncio.TimeoutError:
                # A thread-pool handler keeps running; its result is discarded
                log.warning("tool_timeout", name=name, timeout=self.handler_timeout)
                return ToolResult.failure(
                    f"Tool '{name}' did not complete within {self.handler_timeout:g} seconds."
                )
            except Exception as e:
                log.error("tool_execution_error", name=name, error=str(e))
                return ToolResult.failure(f"Tool execution failed: {e}")

        return coerce_result(result)

    async def _invoke(self, handler: ToolHandler, arguments: dict[str, Any]) -> HandlerResult:
        if inspect.iscoroutinefunction(handler):
            return await handler(arguments)

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(self._executor, handler, arguments)
        if inspect.isawaitable(result):
            result = await result
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def coerce_result(result: HandlerResult) -> ToolResult:
    """Normalize whatever a handler returned into a ToolResult."""
    if isinstance(result, ToolResult):
        return result
    if isinstance(result, str):
        return ToolResult(text=result)
    return ToolResult(text=json.dumps(result, indent=2, default=str))
