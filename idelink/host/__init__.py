"""Host endpoint that a relay forwards to.

The IDE automation operations themselves live in whatever embeds the host;
this package provides the transport, capability registry and bounded
dispatch around them.
"""

from idelink.host.dispatcher import ToolDispatcher, UnknownToolError
from idelink.host.server import HostRuntime, WorkspaceState, build_host, create_app
from idelink.host.tools import CapabilityRegistry, ToolDefinition

__all__ = [
    "CapabilityRegistry",
    "HostRuntime",
    "ToolDefinition",
    "ToolDispatcher",
    "UnknownToolError",
    "WorkspaceState",
    "build_host",
    "create_app",
]
