"""Tests for tool descriptors, argument validation and dispatch."""

import asyncio

import pytest

from helios.registry import ToolDescriptor, ToolRegistry, validate_arguments


def _desc(name="echo", handler=None, properties=None, required=None):
    return ToolDescriptor(
        name=name,
        description=f"{name} tool",
        parameters={
            "type": "object",
            "properties": properties or {"text": {"type": "string"}},
            "required": required if required is not None else ["text"],
        },
        handler=handler,
    )


def _dispatch(registry, name, args):
    return asyncio.run(registry.dispatch(name, args))


class FakeMcp:
    def __init__(self):
        self.calls = []

    def list_tools(self):
        return [_desc("fs__read", required=[])]

    def call_tool(self, name, args):
        self.calls.append((name, args))
        return ("from mcp", False)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidateArguments:
    def test_ok(self):
        assert validate_arguments(_desc(), {"text": "hi"}) is None

    def test_missing_required(self):
        assert "missing required argument 'text'" in validate_arguments(_desc(), {})

    def test_wrong_type(self):
        problem = validate_arguments(_desc(), {"text": 3})
        assert "expected string" in problem

    def test_bool_is_not_integer(self):
        d = _desc(properties={"n": {"type": "integer"}}, required=[])
        assert "got boolean" in validate_arguments(d, {"n": True})

    def test_int_is_a_number(self):
        d = _desc(properties={"x": {"type": "number"}}, required=[])
        assert validate_arguments(d, {"x": 2}) is None

    def test_extra_keys_allowed(self):
        assert validate_arguments(_desc(), {"text": "a", "other": 1}) is None


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    def test_duplicate_rejected(self):
        reg = ToolRegistry()
        reg.register(_desc())
        with pytest.raises(ValueError, match="already registered"):
            reg.register(_desc())

    def test_separator_reserved(self):
        with pytest.raises(ValueError, match="must not contain"):
            ToolRegistry().register(_desc("a__b"))

    def test_schemas(self):
        reg = ToolRegistry()
        reg.register(_desc())
        (schema,) = reg.schemas()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "echo"

    def test_mcp_tools_listed(self):
        reg = ToolRegistry()
        reg.register(_desc())
        reg.attach_mcp(FakeMcp())
        assert reg.names() == ["echo", "fs__read"]
        assert "fs__read" in reg
        reg.detach_mcp()
        assert "fs__read" not in reg


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    def test_sync_handler(self):
        reg = ToolRegistry()
        reg.register(_desc(handler=lambda text: text.upper()))
        assert _dispatch(reg, "echo", {"text": "hi"}) == ("HI", False)

    def test_async_handler(self):
        async def handler(text):
            await asyncio.sleep(0)
            return f"<{text}>"

        reg = ToolRegistry()
        reg.register(_desc(handler=handler))
        assert _dispatch(reg, "echo", {"text": "x"}) == ("<x>", False)

    def test_exception_becomes_error_text(self):
        def handler(text):
            raise RuntimeError("boom")

        reg = ToolRegistry()
        reg.register(_desc(handler=handler))
        result, is_error = _dispatch(reg, "echo", {"text": "x"})
        assert is_error
        assert result == "Error executing echo: boom"

    def test_error_prefix_flags_error(self):
        reg = ToolRegistry()
        reg.register(_desc(handler=lambda text: "error: nope"))
        assert _dispatch(reg, "echo", {"text": "x"}) == ("error: nope", True)

    def test_unknown_tool(self):
        reg = ToolRegistry()
        reg.register(_desc(handler=lambda text: text))
        result, is_error = _dispatch(reg, "nope", {})
        assert is_error
        assert result.startswith("Unknown tool: nope. Available: echo")

    def test_mcp_routing(self):
        mcp = FakeMcp()
        reg = ToolRegistry()
        reg.attach_mcp(mcp)
        assert _dispatch(reg, "fs__read", {"p": 1}) == ("from mcp", False)
        assert mcp.calls == [("fs__read", {"p": 1})]

    def test_mcp_without_manager(self):
        result, is_error = _dispatch(ToolRegistry(), "fs__read", {})
        assert is_error
        assert "No MCP servers" in result

    def test_execute_returns_text(self):
        reg = ToolRegistry()
        reg.register(_desc(handler=lambda text: text))
        assert asyncio.run(reg.execute("echo", {"text": "ok"})) == "ok"
