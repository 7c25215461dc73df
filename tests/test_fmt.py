"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from helios import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=120)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestTurnHeader:
    def test_contains_iteration_info(self):
        out = _capture(fmt.turn_header, 3, 10, 4200)
        assert "Iteration 3/10" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_stop_reason(self):
        out = _capture(fmt.llm_timing, 1.4, "stop")
        assert "LLM responded in 1.4s" in out
        assert "finish_reason=stop" in out


class TestCompletion:
    def test_ok(self):
        out = _capture(fmt.completion, 5, "ok")
        assert "Agent finished" in out
        assert "5 iterations" in out

    def test_max_iterations(self):
        out = _capture(fmt.completion, 3, "max_iterations")
        assert "exit=max_iterations" in out


class TestToolOutput:
    def test_call_with_args(self):
        out = _capture(fmt.tool_call, "read_file", '{\n  "path": "a"\n}')
        assert "read_file" in out
        assert '"path": "a"' in out

    def test_result_preview(self):
        out = _capture(fmt.tool_result, "read_file", 0.25, "1: hello")
        assert "read_file" in out
        assert "0.2s" in out or "0.3s" in out
        assert "1: hello" in out

    def test_result_without_preview(self):
        out = _capture(fmt.tool_result, "read_file", 0.1, "")
        assert out.count("\n") == 1

    def test_error(self):
        out = _capture(fmt.tool_error, "write_file", "disk full")
        assert "write_file" in out
        assert "disk full" in out

    def test_recovered_calls(self):
        out = _capture(fmt.recovered_calls, 2, "json")
        assert "recovered 2 tool call(s)" in out
        assert "(json)" in out


class TestSupervision:
    def test_loop_blocked(self):
        out = _capture(fmt.loop_blocked, "read_file", "repeated 3 times")
        assert "Loop" in out
        assert "read_file blocked" in out

    def test_security_blocked(self):
        out = _capture(fmt.security_blocked, "run_command", "Fork bomb")
        assert "Security" in out
        assert "Fork bomb" in out

    def test_permission_denied(self):
        out = _capture(fmt.permission_denied, "delete_file")
        assert "delete_file skipped by user" in out


class TestDiagnostics:
    def test_warning_prefix(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")

    def test_error_prefix(self):
        assert _capture(fmt.error, "broken").startswith("Error: broken")

    def test_markup_not_interpreted(self):
        out = _capture(fmt.info, "[bold]literal[/bold]")
        assert "[bold]literal[/bold]" in out


class TestStreaming:
    def test_stream_goes_to_stdout(self, capsys):
        fmt.stream_text("hel")
        fmt.stream_text("lo")
        fmt.stream_end()
        assert capsys.readouterr().out == "hello\n"


class TestInit:
    def test_no_color(self):
        old = fmt._console
        try:
            fmt.init(no_color=True)
            assert fmt._console.no_color
        finally:
            fmt._console = old

    def test_force_color(self):
        old = fmt._console
        try:
            fmt.init(color=True)
            assert fmt._console.is_terminal
        finally:
            fmt._console = old
