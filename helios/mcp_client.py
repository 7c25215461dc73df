"""MCP (Model Context Protocol) bridge.

Connects to the configured MCP servers and publishes their tools as
ToolDescriptors named ``{server}__{tool}``, next to the built-in tools.
"""

import asyncio
import atexit
import copy
import json
import logging
import re
import threading
from contextlib import AsyncExitStack
from typing import Any

from . import fmt
from .errors import ConfigError
from .registry import MCP_SEPARATOR, ToolDescriptor

logger = logging.getLogger(__name__)

_SERVER_NAME_RE = re.compile(r"^[a-zA-Z0-9_-]+$")
_SANITIZE_RE = re.compile(r"[^a-zA-Z0-9_-]")
_DOUBLE_UNDER_RE = re.compile(r"__+")

STARTUP_TIMEOUT = 30
CALL_TIMEOUT = 120


class McpShutdownError(Exception):
    """Raised when call_tool() is invoked during or after shutdown."""


class McpManager:
    """Owns the connections to a set of MCP servers.

    The MCP SDK is asyncio/anyio based and its transports must be entered
    and exited from the same task, so every server lives in its own
    long-running task on a private event loop thread. Public methods are
    synchronous and block on that loop.
    """

    def __init__(self, server_configs: dict[str, dict]):
        self._server_configs = server_configs
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

        self._sessions: dict[str, Any] = {}
        self._descriptors: dict[str, list[ToolDescriptor]] = {}
        self._originals: dict[str, str] = {}  # namespaced -> server-side name
        self._failed: set[str] = set()

        self._tasks: dict[str, asyncio.Task] = {}
        self._stop_events: dict[str, asyncio.Event] = {}
        self._closed = False

    def start(self) -> None:
        if self._closed:
            raise McpShutdownError("manager is already closed")

        ready = threading.Event()
        self._loop = asyncio.new_event_loop()

        def _run():
            self._loop.call_soon(ready.set)
            self._loop.run_forever()

        self._thread = threading.Thread(target=_run, name="helios-mcp", daemon=True)
        self._thread.start()
        if not ready.wait(timeout=10):
            raise McpShutdownError("MCP event loop failed to start")

        for name, config in self._server_configs.items():
            try:
                self._connect(name, config)
            except Exception as e:
                fmt.mcp_server_error(name, str(e))

        self._drop_collisions()
        atexit.register(self.close)

    def list_tools(self) -> list[ToolDescriptor]:
        return [d for descs in self._descriptors.values() for d in descs]

    def servers(self) -> list[str]:
        return list(self._sessions)

    def call_tool(self, namespaced: str, arguments: dict) -> tuple[str, bool]:
        """Route a namespaced call to its server; returns (text, is_error)."""
        if self._closed:
            raise McpShutdownError("manager is shut down")

        server, sep, tool = namespaced.partition(MCP_SEPARATOR)
        if not sep or namespaced not in self._originals:
            return (f"error: unknown MCP tool: {namespaced}", True)
        if server in self._failed:
            return (f"error: MCP server {server!r} is unavailable", True)
        session = self._sessions.get(server)
        if session is None:
            return (f"error: MCP server {server!r} is not connected", True)

        try:
            result = self._submit(
                session.call_tool(self._originals[namespaced], arguments),
                timeout=CALL_TIMEOUT,
            )
        except McpShutdownError:
            raise
        except Exception as e:
            self._failed.add(server)
            return (f"error: MCP server {server!r} failed: {e}", True)
        return normalize_result(result)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True

        if self._loop is not None and self._loop.is_running():
            try:
                self._submit(self._shutdown(), timeout=10)
            except Exception as e:
                logger.warning("MCP shutdown did not complete: %s", e)
            self._loop.call_soon_threadsafe(self._loop.stop)

        if self._thread is not None:
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning("MCP loop thread still running after close")

    # -- internals -------------------------------------------------------------

    def _submit(self, coro, timeout: float):
        if self._loop is None or not self._loop.is_running():
            coro.close()
            raise McpShutdownError("event loop is not running")
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        try:
            return future.result(timeout=timeout)
        except TimeoutError:
            future.cancel()
            raise

    def _connect(self, name: str, config: dict) -> None:
        ready = threading.Event()
        outcome: list[BaseException | None] = [None]

        async def _spawn():
            stop = asyncio.Event()
            self._stop_events[name] = stop
            self._tasks[name] = asyncio.create_task(
                self._serve(name, config, ready, outcome, stop), name=f"mcp-{name}"
            )

        self._submit(_spawn(), timeout=5)

        if not ready.wait(timeout=STARTUP_TIMEOUT):
            task = self._tasks.pop(name, None)
            if task is not None:
                self._loop.call_soon_threadsafe(task.cancel)
            raise TimeoutError(f"MCP server {name!r} did not start in {STARTUP_TIMEOUT}s")
        if outcome[0] is not None:
            self._tasks.pop(name, None)
            self._stop_events.pop(name, None)
            raise outcome[0]

    async def _serve(self, name, config, ready, outcome, stop) -> None:
        """Connect, publish tools, then park until asked to stop."""
        import mcp

        stack = AsyncExitStack()
        try:
            if "url" in config:
                from mcp.client.sse import sse_client

                transport = sse_client(
                    url=config["url"],
                    headers=config.get("headers"),
                    timeout=10,
                    sse_read_timeout=300,
                )
            else:
                transport = mcp.stdio_client(
                    mcp.StdioServerParameters(
                        command=config["command"],
                        args=config.get("args", []),
                        env=config.get("env"),
                    )
                )
            read_stream, write_stream = await stack.enter_async_context(transport)
            session = await stack.enter_async_context(
                mcp.ClientSession(read_stream, write_stream)
            )
            await session.initialize()
            listed = await session.list_tools()

            self._sessions[name] = session
            descriptors = []
            for tool in listed.tools:
                descriptor = mcp_tool_descriptor(name, tool)
                self._originals[descriptor.name] = tool.name
                descriptors.append(descriptor)
            self._descriptors[name] = descriptors
            fmt.mcp_server_start(name, len(descriptors))
            ready.set()

            await stop.wait()
        except Exception as exc:
            outcome[0] = exc
            ready.set()
        finally:
            try:
                await asyncio.wait_for(stack.aclose(), timeout=5)
            except Exception as e:
                logger.warning("error closing MCP server %r: %s", name, e)
            self._sessions.pop(name, None)

    async def _shutdown(self) -> None:
        for event in self._stop_events.values():
            event.set()
        tasks = list(self._tasks.values())
        if tasks:
            for result in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(result, Exception):
                    logger.warning("MCP server task failed during shutdown: %s", result)
        self._tasks.clear()
        self._stop_events.clear()

    def _drop_collisions(self) -> None:
        """Servers whose sanitized tool names collide with an earlier server's
        are skipped entirely."""
        seen: dict[str, str] = {}
        for server, descriptors in list(self._descriptors.items()):
            names = [d.name for d in descriptors]
            clashes = [n for n in names if n in seen] + [
                n for n in set(names) if names.count(n) > 1
            ]
            if clashes:
                self._descriptors[server] = []
                for n in names:
                    if seen.get(n) != server:
                        self._originals.pop(n, None)
                fmt.mcp_server_error(
                    server,
                    "tool name collision after sanitization, skipping its tools: "
                    + ", ".join(sorted(set(clashes))),
                )
                continue
            for n in names:
                seen[n] = server


def sanitize_tool_name(name: str) -> str:
    name = _SANITIZE_RE.sub("_", name)
    name = _DOUBLE_UNDER_RE.sub("_", name)
    return name.strip("_-")


def validate_server_name(name: str) -> None:
    """Raise ConfigError unless *name* can be used as a namespace prefix."""
    if not _SERVER_NAME_RE.match(name):
        raise ConfigError(
            f"MCP server name {name!r} is invalid: must match [a-zA-Z0-9_-]+"
        )
    if MCP_SEPARATOR in name:
        raise ConfigError(
            f"MCP server name {name!r} must not contain {MCP_SEPARATOR!r}"
        )


def mcp_tool_descriptor(server: str, tool) -> ToolDescriptor:
    return ToolDescriptor(
        name=f"{server}{MCP_SEPARATOR}{sanitize_tool_name(tool.name)}",
        description=f"[{server}] {tool.description or 'MCP tool'}",
        parameters=convert_schema(tool.inputSchema or {}),
    )


def convert_schema(input_schema: dict) -> dict:
    """Make an MCP inputSchema acceptable as OpenAI function parameters."""
    schema = copy.deepcopy(input_schema)
    schema.setdefault("type", "object")
    schema.setdefault("properties", {})
    schema.pop("$schema", None)
    schema.pop("$id", None)
    return schema


def normalize_result(result) -> tuple[str, bool]:
    """Flatten a CallToolResult into ``(text, is_error)``."""
    parts = []
    for block in result.content:
        kind = getattr(block, "type", None)
        if kind == "text":
            parts.append(block.text)
        elif kind in ("image", "audio"):
            mime = getattr(block, "mimeType", "unknown")
            parts.append(f"[{kind}: {mime}, {len(getattr(block, 'data', ''))} bytes]")
        elif kind == "resource":
            resource = getattr(block, "resource", None)
            text = getattr(resource, "text", None)
            parts.append(text if text else f"[resource: {getattr(resource, 'uri', 'unknown')}]")
        else:
            parts.append(f"[{kind or 'unknown'} content]")

    text = "\n".join(parts)
    if result.isError:
        return (f"error: {text}" if text else "error: MCP tool returned an error", True)

    # Some servers wrap results in {"ok": bool, "result"|"error": ...}
    try:
        payload = json.loads(text)
    except (TypeError, json.JSONDecodeError):
        payload = None
    if isinstance(payload, dict) and payload.get("ok") is False:
        return (f"error: {payload.get('error') or payload.get('message') or 'MCP tool failed'}", True)
    return (text if text else "(empty result)", False)
