"""Stdio relay.

Speaks newline-delimited JSON-RPC 2.0 on stdin/stdout and forwards calls to
the current IDE host over HTTP, answering locally or from the offline cache
whenever the host is absent or slow.

Usage:
    idelink relay                  # auto-select by solution files near cwd
    idelink relay --pid 4242       # a specific IDE process
    idelink relay --sln C:/src/App.sln
"""

from idelink.relay.protocol import (
    ErrorCode,
    InitializeResult,
    Method,
    RPCRequest,
    RPCResponse,
    ToolResult,
)
from idelink.relay.server import RelayServer
from idelink.relay.state import ConnectionState, ConnectionStatus, RelaySession
from idelink.relay.transport import HostTransport

__all__ = [
    "ConnectionState",
    "ConnectionStatus",
    "ErrorCode",
    "HostTransport",
    "InitializeResult",
    "Method",
    "RPCRequest",
    "RPCResponse",
    "RelayServer",
    "RelaySession",
    "ToolResult",
]
