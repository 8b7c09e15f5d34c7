"""Relay Protocol Definitions.

JSON-RPC 2.0 messages as exchanged with MCP clients:
- Requests carry an id and expect exactly one response
- Notifications carry no id and never get a response
- Tool failures travel inside a successful result marked ``isError``
"""

import json
import math
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence, Union

from idelink import __version__

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "idelink"
SERVER_VERSION = __version__

RequestId = Union[str, int, float, None]


class Method(str, Enum):
    """Methods the relay recognizes."""

    INITIALIZE = "initialize"
    PING = "ping"
    TOOLS_LIST = "tools/list"
    TOOLS_CALL = "tools/call"


# Acknowledgements never produce a response, id or not
ACKNOWLEDGEMENTS = frozenset({
    "initialized",
    "cancelled",
    "notifications/initialized",
    "notifications/cancelled",
})


class ErrorCode:
    """Standard JSON-RPC error codes."""

    PARSE_ERROR = -32700
    INVALID_REQUEST = -32600
    METHOD_NOT_FOUND = -32601
    INVALID_PARAMS = -32602
    INTERNAL_ERROR = -32603

    # Relay-specific
    HOST_UNAVAILABLE = -32000
    HOST_TIMEOUT = -32001


class MalformedMessage(ValueError):
    """Inbound line that is not a usable JSON-RPC message."""


@dataclass
class RPCRequest:
    """JSON-RPC request or notification."""

    method: str
    params: Optional[dict[str, Any]] = None
    id: RequestId = None

    @property
    def is_notification(self) -> bool:
        return self.id is None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-RPC format."""
        result: dict[str, Any] = {
            "jsonrpc": "2.0",
            "method": self.method,
        }
        if self.params is not None:
            result["params"] = self.params
        if self.id is not None:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "RPCRequest":
        """Parse from JSON-RPC format.

        Raises:
            MalformedMessage: If the payload is not a request object
        """
        if not isinstance(data, dict):
            raise MalformedMessage("message is not a JSON object")

        method = data.get("method")
        if not isinstance(method, str) or not method:
            raise MalformedMessage("message has no method")

        request_id = data.get("id")
        if isinstance(request_id, bool) or not isinstance(request_id, (str, int, float, type(None))):
            raise MalformedMessage("message id must be a string or number")
        if isinstance(request_id, float) and not math.isfinite(request_id):
            raise MalformedMessage("message id must be a finite number")

        params = data.get("params")
        if params is not None and not isinstance(params, (dict, list)):
            raise MalformedMessage("params must be an object or array")

        return cls(method=method, params=params, id=request_id)

    @classmethod
    def parse(cls, line: str) -> "RPCRequest":
        try:
            data = json.loads(line)
        except (ValueError, RecursionError) as e:
            raise MalformedMessage(f"invalid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass
class RPCResponse:
    """JSON-RPC response message."""

    id: RequestId
    result: Optional[Any] = None
    error_data: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-RPC format."""
        response: dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": self.id,
        }
        if self.error_data is not None:
            response["error"] = self.error_data
        else:
            response["result"] = self.result
        return response

    @classmethod
    def success(cls, id: RequestId, result: Any) -> "RPCResponse":
        """Create a success response."""
        return cls(id=id, result=result)

    @classmethod
    def error(
        cls,
        id: RequestId,
        code: int,
        message: str,
        data: Any = None,
    ) -> "RPCResponse":
        """Create an error response."""
        error_obj: dict[str, Any] = {"code": code, "message": message}
        if data is not None:
            error_obj["data"] = data
        return cls(id=id, error_data=error_obj)


@dataclass
class ToolResult:
    """Result payload of ``tools/call``."""

    text: str
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"content": [{"type": "text", "text": self.text}]}
        if self.is_error:
            result["isError"] = True
        return result

    @classmethod
    def failure(cls, text: str) -> "ToolResult":
        return cls(text=text, is_error=True)


@dataclass
class InitializeResult:
    """Result for the locally answered ``initialize`` request."""

    instructions: str
    protocol_version: str = PROTOCOL_VERSION
    server_info: dict[str, str] = field(
        default_factory=lambda: {"name": SERVER_NAME, "version": SERVER_VERSION}
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "protocolVersion": self.protocol_version,
            "capabilities": {"tools": {"listChanged": False}},
            "serverInfo": self.server_info,
            "instructions": self.instructions,
        }


def build_instructions(
    tool_count: int,
    candidates: Sequence[Path] = (),
    connected_project: Optional[str] = None,
) -> str:
    """Natural-language usage notes returned from ``initialize``.

    Args:
        tool_count: Number of known tools (live or cached)
        candidates: Project descriptors found near the working directory
        connected_project: Project path of the instance currently targeted

    Returns:
        Instruction text
    """
    text = (
        f"You are connected to {SERVER_NAME}, an IDE automation server with {tool_count} tools. "
        "FIRST STEP: call get_status to check which solution is open and the debugger state. "
        "Use these tools instead of command-line equivalents: build through the IDE, "
        "start debugging through the IDE, and read IDE output panes through the tools. "
        "WRONG SOLUTION: if get_status shows a different solution, ask the user how to proceed. "
        "SOLUTION FILES: never guess solution file names; verify they exist first. "
        "OFFLINE MODE: if a tool reports that the IDE is not running, the error lists detected "
        "installations. Ask the user which one to start, wait for it to load, then retry."
    )

    if len(candidates) > 1:
        listed = ", ".join(str(c) for c in candidates)
        text += f" MULTIPLE SOLUTIONS: several solution files were found near the working directory: {listed}."
        if connected_project:
            text += f" Currently targeting {connected_project}; the others are candidates too."
        else:
            text += " None of them is open in a running IDE instance."
        text += " If the user meant a different one, ask them before acting."

    return text
