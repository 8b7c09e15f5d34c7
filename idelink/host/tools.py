"""Capability registry for a host process."""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

from idelink.relay.protocol import ToolResult

log = structlog.get_logger()

HandlerResult = Union[ToolResult, str, dict, list]
ToolHandler = Callable[[dict[str, Any]], Union[HandlerResult, Awaitable[HandlerResult]]]


@dataclass
class ToolDefinition:
    """Advertised shape of one invokable operation."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }


class CapabilityRegistry:
    """Tool definitions and their handlers.

    Listeners are told about every change to the capability set; the host
    uses this to refresh the offline capability cache.
    """

    def __init__(self):
        self._definitions: dict[str, ToolDefinition] = {}
        self._handlers: dict[str, ToolHandler] = {}
        self._listeners: list[Callable[[list[dict[str, Any]]], Any]] = []

    def register(self, definition: ToolDefinition, handler: ToolHandler) -> None:
        """Register (or replace) a tool."""
        self._definitions[definition.name] = definition
        self._handlers[definition.name] = handler
        log.debug("tool_registered", name=definition.name)
        self._notify()

    def unregister(self, name: str) -> bool:
        if name not in self._definitions:
            return False
        del self._definitions[name]
        del self._handlers[name]
        self._notify()
        return True

    def get(self, name: str) -> Optional[tuple[ToolDefinition, ToolHandler]]:
        if name not in self._definitions:
            return None
        return self._definitions[name], self._handlers[name]

    def definitions(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    def schemas(self) -> list[dict[str, Any]]:
        return [d.to_dict() for d in self._definitions.values()]

    def subscribe(self, listener: Callable[[list[dict[str, Any]]], Any]) -> None:
        self._listeners.append(listener)

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: str) -> bool:
        return name in self._definitions

    def _notify(self) -> None:
        schemas = self.schemas()
        for listener in self._listeners:
            listener(schemas)
