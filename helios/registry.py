"""Tool registry: descriptors, argument validation and never-raising dispatch."""

import asyncio
import inspect
from dataclasses import dataclass, field
from typing import Any, Callable

MCP_SEPARATOR = "__"

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "array": list,
    "object": dict,
}


@dataclass(frozen=True)
class ToolDescriptor:
    name: str
    description: str
    parameters: dict = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    handler: Callable[..., Any] | None = None

    def to_openai(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    @property
    def param_order(self) -> list[str]:
        return list(self.parameters.get("properties", {}))


def validate_arguments(descriptor: ToolDescriptor, args: dict) -> str | None:
    """Return an error message if *args* violates the descriptor's schema."""
    if not isinstance(args, dict):
        return f"arguments must be an object, got {type(args).__name__}"
    props = descriptor.parameters.get("properties", {})
    for req in descriptor.parameters.get("required", []):
        if req not in args or args[req] is None:
            return f"missing required argument {req!r}"
    for key, value in args.items():
        spec = props.get(key)
        if not spec or "type" not in spec or value is None:
            continue
        expected = _JSON_TYPES.get(spec["type"])
        if expected is None:
            continue
        # bool is a subclass of int; JSON keeps them apart.
        if isinstance(value, bool) and spec["type"] != "boolean":
            return f"argument {key!r} expected {spec['type']}, got boolean"
        if not isinstance(value, expected):
            return f"argument {key!r} expected {spec['type']}, got {type(value).__name__}"
    return None


class ToolRegistry:
    """Maps tool names to descriptors.

    Local tools are registered directly. When an MCP manager is attached,
    its namespaced tools are merged into the listing and any call whose
    name contains the namespace separator is routed to it.
    """

    def __init__(self):
        self._tools: dict[str, ToolDescriptor] = {}
        self._mcp = None

    def register(self, descriptor: ToolDescriptor) -> None:
        if descriptor.name in self._tools:
            raise ValueError(f"tool {descriptor.name!r} is already registered")
        if MCP_SEPARATOR in descriptor.name:
            raise ValueError(
                f"tool name {descriptor.name!r} must not contain {MCP_SEPARATOR!r}"
            )
        self._tools[descriptor.name] = descriptor

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def attach_mcp(self, manager) -> None:
        self._mcp = manager

    def detach_mcp(self) -> None:
        self._mcp = None

    def _mcp_descriptors(self) -> list[ToolDescriptor]:
        if self._mcp is None:
            return []
        return [d for d in self._mcp.list_tools() if d.name not in self._tools]

    def get(self, name: str) -> ToolDescriptor | None:
        if name in self._tools:
            return self._tools[name]
        for d in self._mcp_descriptors():
            if d.name == name:
                return d
        return None

    def descriptors(self) -> list[ToolDescriptor]:
        return list(self._tools.values()) + self._mcp_descriptors()

    def names(self) -> list[str]:
        return [d.name for d in self.descriptors()]

    def schemas(self) -> list[dict]:
        return [d.to_openai() for d in self.descriptors()]

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    async def dispatch(self, name: str, args: dict) -> tuple[str, bool]:
        """Run a tool and return ``(result_text, is_error)``. Never raises
        except for cancellation."""
        if MCP_SEPARATOR in name and name not in self._tools:
            return await self._dispatch_mcp(name, args)

        descriptor = self._tools.get(name)
        if descriptor is None or descriptor.handler is None:
            available = ", ".join(self.names())
            return (f"Unknown tool: {name}. Available: {available}", True)

        try:
            result = descriptor.handler(**args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            return (f"Error executing {name}: {e}", True)

        result = "" if result is None else str(result)
        return (result, result.startswith("error:"))

    async def _dispatch_mcp(self, name: str, args: dict) -> tuple[str, bool]:
        if self._mcp is None:
            return (f"Unknown tool: {name}. No MCP servers are connected", True)
        try:
            return await asyncio.to_thread(self._mcp.call_tool, name, args)
        except Exception as e:
            return (f"Error executing {name}: {e}", True)

    async def execute(self, name: str, args: dict) -> str:
        text, _ = await self.dispatch(name, args)
        return text
