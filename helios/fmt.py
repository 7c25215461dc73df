"""ANSI-formatted stderr output using Rich."""

import sys

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Iteration {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def completion(iterations: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {iterations} iterations", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Agent finished: {iterations} iterations, exit={exit_code}",
                style="bold red",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def recovered_calls(count: int, parser: str) -> None:
    _console.print(
        Text(
            f"  recovered {count} tool call(s) from plain text ({parser})",
            style="dim italic",
        )
    )


# -- Supervision -------------------------------------------------------------


def loop_blocked(name: str, message: str) -> None:
    line = Text()
    line.append("  ⚠ Loop: ", style="bold yellow")
    line.append(f"{name} blocked. {message}", style="yellow")
    _console.print(line)


def security_blocked(name: str, message: str) -> None:
    line = Text()
    line.append("  ⛔ Security: ", style="bold red")
    line.append(f"{name} blocked. {message}", style="red")
    _console.print(line)


def security_notice(severity: str, message: str) -> None:
    line = Text()
    line.append(f"  [{severity}] ", style="yellow")
    line.append(message, style="dim")
    _console.print(line)


def permission_denied(name: str) -> None:
    line = Text()
    line.append("  ✗ Permission: ", style="bold red")
    line.append(f"{name} skipped by user", style="red")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


def stream_text(chunk: str) -> None:
    """Echo a streamed text fragment to stdout as it arrives."""
    sys.stdout.write(chunk)
    sys.stdout.flush()


def stream_end() -> None:
    sys.stdout.write("\n")
    sys.stdout.flush()


# -- MCP ---------------------------------------------------------------------


def mcp_server_start(name: str, tool_count: int) -> None:
    _console.print(Text(f"  MCP server {name!r} connected ({tool_count} tools)", style="dim"))


def mcp_server_error(name: str, msg: str) -> None:
    line = Text()
    line.append(f"  ⚠ MCP server {name!r}: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text(
            "Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
