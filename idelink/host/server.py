"""IDE host endpoint.

FastAPI application exposing the host half of the relay protocol:

- ``POST /mcp``   one JSON-RPC request per call; 204 for notifications
- ``GET /health`` instance identity, port and workspace-load state

``HostRuntime`` owns the registry record and the capability cache for the
lifetime of the app.
"""

import os
import socket
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel

from idelink.config import IdelinkConfig
from idelink.discovery.cache import CapabilityCache
from idelink.discovery.registry import InstanceRegistry
from idelink.host.dispatcher import LivenessProbe, ToolDispatcher, UnknownToolError
from idelink.host.tools import CapabilityRegistry, ToolDefinition
from idelink.relay.protocol import (
    SERVER_NAME,
    SERVER_VERSION,
    ErrorCode,
    InitializeResult,
    MalformedMessage,
    Method,
    RPCRequest,
    RPCResponse,
    build_instructions,
)

log = structlog.get_logger()


class WorkspaceState(str, Enum):
    """Load state of the workspace open in the IDE."""

    NO_SOLUTION = "NoSolution"
    LOADING = "Loading"
    READY = "Ready"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    server: str
    version: str
    process_id: int
    port: int
    workspace_path: str
    workspace_state: str


def find_free_port() -> int:
    """Ask the OS for an unused loopback port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class HostRuntime:
    """Registry record, capability cache and workspace state of one host."""

    def __init__(
        self,
        registry: InstanceRegistry,
        cache: CapabilityCache,
        tools: Optional[CapabilityRegistry] = None,
        port: int = 0,
        process_id: Optional[int] = None,
    ):
        self.registry = registry
        self.cache = cache
        self.tools = tools or CapabilityRegistry()
        self.port = port
        self.process_id = process_id or os.getpid()
        self.workspace_path = ""
        self.workspace_state = WorkspaceState.NO_SOLUTION
        self.started = False

        self.tools.register(
            ToolDefinition(
                name="get_status",
                description="Report the IDE instance, its port and the open solution.",
            ),
            self._get_status,
        )
        self.tools.subscribe(self._on_tools_changed)

    def start(self) -> None:
        """Publish the registry record and snapshot the capability list."""
        self.registry.publish(self.process_id, self.port, self.workspace_path)
        self.cache.write(self.tools.schemas())
        self.started = True
        log.info("host_started", pid=self.process_id, port=self.port, tools=len(self.tools))

    def stop(self) -> None:
        self.registry.unpublish(self.process_id)
        self.started = False
        log.info("host_stopped", pid=self.process_id)

    def workspace_loading(self) -> None:
        self.workspace_state = WorkspaceState.LOADING
        log.info("host_workspace_state", state=self.workspace_state.value)

    def open_workspace(self, path: str) -> None:
        """A solution finished loading."""
        self.workspace_path = str(Path(path).expanduser().resolve()) if path else ""
        self.workspace_state = WorkspaceState.READY
        if self.started:
            self.registry.update_project_path(self.process_id, self.workspace_path)
        log.info("host_workspace_opened", path=self.workspace_path)

    def close_workspace(self) -> None:
        self.workspace_path = ""
        self.workspace_state = WorkspaceState.NO_SOLUTION
        if self.started:
            self.registry.update_project_path(self.process_id, "")
        log.info("host_workspace_closed")

    def health(self) -> HealthResponse:
        return HealthResponse(
            status="ok",
            server=SERVER_NAME,
            version=SERVER_VERSION,
            process_id=self.process_id,
            port=self.port,
            workspace_path=self.workspace_path,
            workspace_state=self.workspace_state.value,
        )

    def _on_tools_changed(self, schemas: list[dict[str, Any]]) -> None:
        if self.started:
            self.cache.write(schemas)

    def _get_status(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return {
            "processId": self.process_id,
            "port": self.port,
            "solution": self.workspace_path or None,
            "solutionState": self.workspace_state.value,
            "tools": len(self.tools),
        }


class HostRouter:
    """Routes JSON-RPC requests to host handlers."""

    def __init__(self, runtime: HostRuntime, dispatcher: ToolDispatcher):
        self.runtime = runtime
        self.dispatcher = dispatcher
        self._handlers = {
            Method.INITIALIZE.value: self._handle_initialize,
            Method.PING.value: self._handle_ping,
            Method.TOOLS_LIST.value: self._handle_tools_list,
            Method.TOOLS_CALL.value: self._handle_tools_call,
        }

    async def route(self, request: RPCRequest) -> Optional[RPCResponse]:
        """Handle a request; None for notifications."""
        if request.is_notification:
            log.debug("notification_received", method=request.method)
            return None

        handler = self._handlers.get(request.method)
        if handler is None:
            return RPCResponse.error(
                request.id, ErrorCode.METHOD_NOT_FOUND, f"Method not found: {request.method}"
            )

        try:
            return await handler(request)
        except Exception as e:
            log.error("request_handler_error", method=request.method, error=str(e))
            return RPCResponse.error(request.id, ErrorCode.INTERNAL_ERROR, str(e))

    async def _handle_initialize(self, request: RPCRequest) -> RPCResponse:
        instructions = build_instructions(len(self.runtime.tools))
        return RPCResponse.success(request.id, InitializeResult(instructions).to_dict())

    async def _handle_ping(self, request: RPCRequest) -> RPCResponse:
        return RPCResponse.success(request.id, {})

    async def _handle_tools_list(self, request: RPCRequest) -> RPCResponse:
        return RPCResponse.success(request.id, {"tools": self.runtime.tools.schemas()})

    async def _handle_tools_call(self, request: RPCRequest) -> RPCResponse:
        params = request.params if isinstance(request.params, dict) else {}
        name = params.get("name")
        if not name or not isinstance(name, str):
            return RPCResponse.error(request.id, ErrorCode.INVALID_PARAMS, "Missing tool name")

        arguments = params.get("arguments")
        if arguments is not None and not isinstance(arguments, dict):
            return RPCResponse.error(request.id, ErrorCode.INVALID_PARAMS, "arguments must be an object")

        try:
            result = await self.dispatcher.call(name, arguments)
        except UnknownToolError:
            return RPCResponse.error(request.id, ErrorCode.METHOD_NOT_FOUND, f"Tool not found: {name}")
        return RPCResponse.success(request.id, result.to_dict())


def create_app(
    runtime: HostRuntime,
    dispatcher: Optional[ToolDispatcher] = None,
) -> FastAPI:
    """Create and configure the host FastAPI application.

    Args:
        runtime: Host state; published on startup and withdrawn on shutdown
        dispatcher: Tool dispatcher (defaults to one over ``runtime.tools``)

    Returns:
        Configured FastAPI application
    """
    dispatcher = dispatcher or ToolDispatcher(runtime.tools)
    router = HostRouter(runtime, dispatcher)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        runtime.start()
        yield
        runtime.stop()
        dispatcher.shutdown()

    app = FastAPI(
        title="idelink host",
        description="IDE automation host endpoint for idelink relays",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.router = router

    @app.get("/health", response_model=HealthResponse)
    async def health():
        return runtime.health()

    @app.post("/mcp")
    async def mcp(request: Request):
        body = await request.body()
        try:
            rpc_request = RPCRequest.parse(body.decode("utf-8"))
        except (MalformedMessage, UnicodeDecodeError) as e:
            log.warning("host_parse_error", error=str(e))
            error = RPCResponse.error(None, ErrorCode.PARSE_ERROR, f"Parse error: {e}")
            return JSONResponse(error.to_dict())

        rpc_response = await router.route(rpc_request)
        if rpc_response is None:
            return Response(status_code=204)
        return JSONResponse(rpc_response.to_dict())

    return app


def build_host(
    config: IdelinkConfig,
    port: int,
    tools: Optional[CapabilityRegistry] = None,
    probe: Optional[LivenessProbe] = None,
) -> tuple[FastAPI, HostRuntime]:
    """Wire a runtime and app from configuration.

    ``probe`` is the embedding IDE's liveness check, typically
    ``executor_probe`` over its UI-thread executor.
    """
    registry = InstanceRegistry(config.data_dir, config.record_prefix, config.record_suffix)
    runtime = HostRuntime(registry, CapabilityCache(config.cache_path), tools=tools, port=port)
    dispatcher = ToolDispatcher(
        runtime.tools,
        probe=probe,
        probe_timeout=config.host.probe_timeout,
        handler_timeout=config.host.handler_timeout,
        max_workers=config.host.max_workers,
    )
    return create_app(runtime, dispatcher), runtime
