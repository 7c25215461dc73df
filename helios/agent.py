import argparse
import asyncio
import contextlib
import json
import signal
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .audit import AuditLogger
from .config import _UNSET, apply_config_to_args, args_to_session_kwargs, generate_config, load_config
from .errors import AgentError, ConfigError, ProviderError, ProviderTimeoutError
from .fallback import recover_tool_calls
from .loop_detector import LoopDetector
from .permissions import Confirm, PermissionState, check_permission
from .provider import (
    PROVIDERS,
    ChatOptions,
    Provider,
    ProviderResponse,
    ToolCall,
    resolve_provider,
    with_retry,
)
from .registry import ToolRegistry, validate_arguments
from .security import scan_tool_call

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000
MAX_RESULT_PREVIEW = 500

LOOP_BLOCKED_MESSAGE = "LOOP DETECTED: Try a different approach."
DENIED_MESSAGE = (
    "User denied permission. Try a different approach or explain why this is needed."
)
INTERRUPTED_MESSAGE = "Interrupted: the user cancelled the turn before this tool ran."
MAX_ITERATIONS_MESSAGE = "Max iterations reached. Stopping to prevent infinite loop."
TIMEOUT_HINT = "Try a shorter prompt or check your connection."

_encoder = tiktoken.get_encoding("cl100k_base")


@dataclass
class Supervisor:
    """Supervision state shared by every tool call of a session."""

    loop_detector: LoopDetector
    audit: AuditLogger
    permissions: PermissionState
    confirm: Confirm | None = None
    block_medium_loops: bool = False


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # ~4 tokens of per-message overhead
    total += 4 * len(messages)
    return total


def build_system_prompt(
    system_prompt: str | None, no_system_prompt: bool, base_dir: str
) -> str | None:
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    text = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
    return f"{text}\n\nCurrent directory: {Path(base_dir).resolve()}"


def _tool_message(tool_call: ToolCall, content: str) -> dict:
    return {"role": "tool", "tool_call_id": tool_call.id, "content": content}


async def handle_tool_call(
    tool_call: ToolCall,
    registry: ToolRegistry,
    supervisor: Supervisor,
    *,
    verbose: bool = True,
    compact: bool = False,
) -> tuple[dict, dict]:
    """Supervise and execute a single tool call.

    Returns (tool_msg, metadata). tool_msg is always produced, whether the
    call ran, failed or was blocked. metadata has stable keys: name,
    arguments, elapsed, outcome ("success" | "error" | "blocked").
    """
    name = tool_call.name
    audit = supervisor.audit

    def _done(content, args, outcome, elapsed=0.0):
        return (
            _tool_message(tool_call, content),
            {"name": name, "arguments": args, "elapsed": elapsed, "outcome": outcome},
        )

    def _reject(problem, args=None):
        audit.log(name, args, "error")
        if verbose:
            fmt.tool_error(name, problem)
        return _done(f"Error executing {name}: {problem}", args, "error")

    try:
        args = json.loads(tool_call.arguments) if tool_call.arguments.strip() else {}
    except json.JSONDecodeError as e:
        return _reject(f"invalid JSON in tool arguments: {e}")
    if not isinstance(args, dict):
        return _reject(f"tool arguments must be a JSON object, got {type(args).__name__}")

    if verbose:
        pretty = json.dumps(args, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    descriptor = registry.get(name)
    if descriptor is None:
        return _reject(f"unknown tool. Available: {', '.join(registry.names())}", args)
    problem = validate_arguments(descriptor, args)
    if problem:
        return _reject(problem, args)

    check = supervisor.loop_detector.check(name, args)
    if check.is_loop and (check.risk == "high" or supervisor.block_medium_loops):
        audit.log(name, args, "blocked", {"loop_detected": True, "reason": check.message})
        if verbose:
            fmt.loop_blocked(name, check.message)
        return _done(LOOP_BLOCKED_MESSAGE, args, "blocked")
    if check.is_loop and verbose:
        fmt.warning(check.message)

    scan = scan_tool_call(name, args)
    if scan is not None and not scan.approved:
        top = scan.top
        audit.log(
            name,
            args,
            "blocked",
            {"security_issues": len(scan.issues), "reason": top.message},
        )
        if verbose:
            fmt.security_blocked(name, top.message)
        return _done(f"BLOCKED: {top.message}. {top.suggestion}", args, "blocked")
    if scan is not None and verbose:
        for issue in scan.issues:
            fmt.security_notice(issue.severity, issue.message)

    decision = await check_permission(
        name, args, supervisor.permissions, supervisor.confirm
    )
    if not decision.approved:
        audit.log(
            name, args, "blocked", {"permission_denied": True, "reason": decision.reason}
        )
        if verbose:
            fmt.permission_denied(name)
        return _done(DENIED_MESSAGE, args, "blocked")

    t0 = time.monotonic()
    result, is_error = await registry.dispatch(name, args)
    elapsed = time.monotonic() - t0

    audit.log(name, args, "error" if is_error else "success")
    if verbose:
        if is_error:
            fmt.tool_error(name, result)
        else:
            fmt.tool_result(name, elapsed, "" if compact else result[:MAX_RESULT_PREVIEW])
    return _done(result, args, "error" if is_error else "success", elapsed)


async def _collect_stream(
    provider: Provider, messages: list, tools: list, options: ChatOptions, echo: bool
) -> ProviderResponse:
    """Drain a provider stream into a ProviderResponse.

    Nothing is appended to the conversation here, so an aborted stream
    leaves no partial assistant output behind.
    """
    text_parts: list[str] = []
    calls: list[ToolCall] = []
    try:
        async with contextlib.aclosing(provider.stream(messages, tools, options)) as chunks:
            async for chunk in chunks:
                if chunk.type == "text":
                    text_parts.append(chunk.content)
                    if echo:
                        fmt.stream_text(chunk.content)
                elif chunk.type == "tool_call" and chunk.tool_call is not None:
                    calls.append(chunk.tool_call)
                elif chunk.type == "error":
                    error_cls = ProviderTimeoutError if chunk.timed_out else ProviderError
                    raise error_cls(chunk.error or "stream failed")
                elif chunk.type == "done":
                    break
    finally:
        if echo and text_parts:
            fmt.stream_end()
    return ProviderResponse(
        content="".join(text_parts) or None,
        tool_calls=calls,
        finish_reason="tool_calls" if calls else "stop",
    )


async def _chat(
    provider: Provider, messages: list, tools: list, options: ChatOptions, verbose: bool
) -> ProviderResponse:
    async def _once():
        try:
            return await provider.chat(messages, tools, options)
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(f"LLM call failed: {e}") from e

    if verbose:
        with fmt.llm_spinner():
            return await with_retry(_once, options.max_retries)
    return await with_retry(_once, options.max_retries)


async def _run_batch(
    calls: list[ToolCall],
    messages: list,
    registry: ToolRegistry,
    supervisor: Supervisor,
    verbose: bool,
    compact: bool,
) -> None:
    """Run a batch sequentially, one tool message per call, even on cancellation."""
    done = 0
    try:
        for call in calls:
            tool_msg, _ = await handle_tool_call(
                call, registry, supervisor, verbose=verbose, compact=compact
            )
            messages.append(tool_msg)
            done += 1
    except (asyncio.CancelledError, KeyboardInterrupt):
        for call in calls[done:]:
            messages.append(_tool_message(call, INTERRUPTED_MESSAGE))
        raise


async def run_agent_loop(
    messages: list,
    registry: ToolRegistry,
    provider: Provider,
    supervisor: Supervisor,
    *,
    options: ChatOptions,
    max_iterations: int,
    streaming: bool = True,
    verbose: bool = True,
    compact: bool = False,
) -> tuple[str | None, bool]:
    """Run the agent loop until the model answers without tool calls.

    The caller appends the user message first. Returns (answer, exhausted):
    exhausted is True when max_iterations was reached, in which case answer
    is the last assistant text seen (possibly None).
    """
    iterations = 0
    last_text = None

    while iterations < max_iterations:
        iterations += 1
        tools = registry.schemas()
        if verbose:
            fmt.turn_header(iterations, max_iterations, estimate_tokens(messages, tools))

        t0 = time.monotonic()
        if streaming:
            response = await _collect_stream(
                provider, messages, tools, options, echo=verbose
            )
        else:
            response = await _chat(provider, messages, tools, options, verbose)
        if verbose:
            fmt.llm_timing(time.monotonic() - t0, response.finish_reason)

        text = response.content or ""
        calls = list(response.tool_calls)
        if not calls and text:
            calls, parser = recover_tool_calls(text, registry.descriptors())
            if calls and verbose:
                fmt.recovered_calls(len(calls), parser)

        if not calls:
            messages.append({"role": "assistant", "content": text})
            if verbose:
                fmt.completion(iterations, "ok")
            return text, False

        if text:
            last_text = text
            if verbose and not streaming:
                fmt.assistant_text(text)
        messages.append(
            {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [c.to_dict() for c in calls],
            }
        )
        await _run_batch(calls, messages, registry, supervisor, verbose, compact)

    fmt.warning(MAX_ITERATIONS_MESSAGE)
    if verbose:
        fmt.completion(iterations, "max_iterations")
    return last_text, True


# -- CLI ----------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="helios",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A supervised terminal coding agent with multi-provider LLM support.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--init-config",
        nargs="?",
        const="global",
        choices=["global", "project"],
        default=None,
        help="Print a commented config template (global or project) and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="LLM provider (default: detected from OPENROUTER_API_KEY, "
        "ANTHROPIC_API_KEY or OPENAI_API_KEY).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument("--api-key", default=_UNSET, help="API key (overrides env var).")
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (lmstudio default: http://127.0.0.1:1234).",
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=_UNSET,
        help="Per-request timeout in milliseconds (default: 60000).",
    )
    parser.add_argument(
        "--max-retries",
        type=int,
        default=_UNSET,
        help="Attempts per non-streaming request (default: 3).",
    )
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=_UNSET,
        help="Maximum agent loop iterations per question (default: 30).",
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature (default: 0.7)."
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 8192).",
    )
    parser.add_argument(
        "--no-stream",
        dest="streaming",
        action="store_false",
        default=_UNSET,
        help="Wait for complete responses instead of streaming.",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Auto-approve dangerous tools (security and loop checks still apply).",
    )
    parser.add_argument(
        "--block-medium-loops",
        action="store_true",
        default=_UNSET,
        help="Block calls on medium loop risk instead of only warning.",
    )
    parser.add_argument(
        "--audit-log",
        metavar="FILE",
        default=_UNSET,
        help="Audit log location (default: ~/.helios/audit.jsonl).",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt", default=_UNSET, help="System prompt to use instead of the default."
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "--base-dir",
        default=".",
        help="Base directory for file tools (default: current directory).",
    )
    parser.add_argument(
        "--no-mcp",
        action="store_true",
        default=_UNSET,
        help="Don't connect to configured MCP servers.",
    )
    parser.add_argument(
        "--compact",
        action="store_true",
        default=_UNSET,
        help="Hide tool result previews.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    return parser


def report_error(e: AgentError) -> None:
    if isinstance(e, ProviderTimeoutError):
        fmt.error(f"{e}. {TIMEOUT_HINT}")
    else:
        fmt.error(str(e))


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("helios-agent")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.init_config == "project"))
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("a question is required unless --repl is given")

    try:
        apply_config_to_args(args, load_config(args.base_dir))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    fmt.init(color=args.color, no_color=args.no_color)

    from .session import Session

    session = Session(**args_to_session_kwargs(args))
    try:
        exit_code = asyncio.run(_run_main(args, session))
    except AgentError as e:
        report_error(e)
        exit_code = 1
    except KeyboardInterrupt:
        fmt.warning("interrupted.")
        exit_code = 130
    finally:
        session.close()
    sys.exit(exit_code)


async def _run_main(args, session) -> int:
    if args.repl:
        await repl_loop(session, initial=args.question)
        return 0

    result = await session.ask_async(args.question)
    if result.answer is not None and not session.echoes_stream:
        print(result.answer)
    return 2 if result.exhausted else 0


# -- REPL ---------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation and loop history\n"
        "  /tools             List available tools\n"
        "  /status            Show provider, message and audit counts\n"
        "  /history [N]       Show the last N audited actions (default 5)\n"
        "  /git               Show git status of the working directory\n"
        "  /doctor            Check provider settings and the working directory\n"
        "  /stream            Toggle streaming responses\n"
        "  /compact           Toggle tool result previews\n"
        "  /yolo              Toggle auto-approval of dangerous tools\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_clear(session) -> None:
    dropped = session.reset()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_tools(session) -> None:
    lines = [f"{d.name}: {d.description.splitlines()[0]}" for d in session.registry.descriptors()]
    fmt.info("\n".join(lines) if lines else "no tools available")


def _repl_status(session) -> None:
    s = session.supervisor.audit.session
    life = session.supervisor.audit.lifetime_stats()
    fmt.info(
        f"provider: {session.provider_name} | model: {session.model_name}\n"
        f"messages: {len(session.messages)} | "
        f"streaming: {'on' if session.streaming else 'off'} | "
        f"auto-approve: {'on' if session.supervisor.permissions.auto_approve else 'off'}\n"
        f"actions this session: {s['total']} ({s['blocked']} blocked, {s['errors']} errors)\n"
        f"actions all time: {life['total']} ({life['blocked']} blocked, {life['errors']} errors)"
    )


_HISTORY_MARKS = {"success": "✓", "error": "✗", "blocked": "⛔"}


def _repl_history(session, arg: str) -> None:
    arg = arg.strip()
    try:
        limit = int(arg) if arg else 5
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    entries = session.supervisor.audit.get_recent(limit)
    if not entries:
        fmt.info("no audited actions yet")
        return
    fmt.info(
        "\n".join(
            f"{_HISTORY_MARKS.get(e.get('result'), '?')} {e.get('action')}  {e.get('timestamp', '')}"
            for e in entries
        )
    )


async def _repl_git(session) -> None:
    text, is_error = await session.registry.dispatch("git_status", {})
    if is_error:
        fmt.warning(text)
    else:
        fmt.info(text)


def _repl_doctor(session) -> None:
    """Re-check the provider settings and the base directory."""
    issues = []
    backend = session.backend
    if session.provider or backend is None:
        try:
            backend = resolve_provider(
                provider=session.provider,
                model=session.model,
                api_key=session.api_key,
                base_url=session.base_url,
            )
        except ConfigError as e:
            issues.append(str(e))
    if not Path(session.base_dir).is_dir():
        issues.append(f"base directory {session.base_dir} does not exist")

    if issues:
        for issue in issues:
            fmt.warning(issue)
        return
    fmt.info(f"all checks passed (provider: {backend.name}, model: {backend.model})")


async def handle_repl_command(line: str, session) -> bool:
    """Run a slash command. Returns False when *line* is not a command."""
    parts = line.split(None, 1)
    cmd = parts[0].lower()
    arg = parts[1] if len(parts) > 1 else ""

    if cmd == "/help":
        _repl_help()
    elif cmd == "/clear":
        _repl_clear(session)
    elif cmd == "/tools":
        _repl_tools(session)
    elif cmd == "/status":
        _repl_status(session)
    elif cmd == "/history":
        _repl_history(session, arg)
    elif cmd == "/git":
        await _repl_git(session)
    elif cmd == "/doctor":
        _repl_doctor(session)
    elif cmd == "/stream":
        session.streaming = not session.streaming
        fmt.info(f"streaming {'on' if session.streaming else 'off'}")
    elif cmd == "/compact":
        session.compact = not session.compact
        fmt.info(f"compact output {'on' if session.compact else 'off'}")
    elif cmd == "/yolo":
        state = session.toggle_auto_approve()
        fmt.info(f"auto-approve {'on' if state else 'off'}")
    else:
        return False
    return True


async def _repl_turn(session, line: str) -> None:
    """Run one question as a task that Ctrl-C cancels."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(session.ask_async(line))
    try:
        loop.add_signal_handler(signal.SIGINT, task.cancel)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False

    try:
        result = await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        fmt.warning("interrupted, question aborted.")
        return
    except AgentError as e:
        report_error(e)
        return
    finally:
        if handler_installed:
            loop.remove_signal_handler(signal.SIGINT)

    if result.answer is not None and not session.echoes_stream:
        print(result.answer)
    if result.exhausted:
        fmt.warning("max iterations reached for this question.")


async def repl_loop(session, initial: str | None = None) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    session.setup()

    history_path = Path(session.base_dir) / ".helios" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt = PromptSession(history=FileHistory(str(history_path)), enable_history_search=True)
    prompt_text = FormattedText([("bold fg:ansigreen", "helios> ")])

    if session.verbose:
        fmt.repl_banner()

    pending = initial
    while True:
        if pending is not None:
            line, pending = pending, None
        else:
            try:
                print(file=sys.stderr)
                line = await prompt.prompt_async(prompt_text)
            except (EOFError, KeyboardInterrupt):
                print(file=sys.stderr)
                break

        line = line.strip()
        if not line:
            continue
        if line.lower() in ("/exit", "/quit", "exit", "quit", "q"):
            break
        if line.startswith("/"):
            if not await handle_repl_command(line, session):
                fmt.warning(f"unknown command {line.split()[0]!r}, type /help")
            continue

        await _repl_turn(session, line)


if __name__ == "__main__":
    main()
