"""Interactive approval gate for side-effecting tools."""

import json
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable

DANGEROUS_TOOLS = frozenset(
    {
        "write_file",
        "edit_file",
        "append_file",
        "delete_file",
        "rename_file",
        "create_directory",
        "run_command",
        "git_commit",
        "git_reset",
        "git_rebase",
        "docker_run",
        "vercel_deploy",
        "railway_deploy",
        "fly_deploy",
        "install_package",
        "uninstall_package",
        "prisma_migrate",
    }
)

SAFE_PATTERNS = [
    re.compile(p)
    for p in (
        r"^read_",
        r"^list_",
        r"^search_",
        r"^find_",
        r"^git_status$",
        r"^git_log$",
        r"^git_diff$",
        r"^git_branch$",
        r"^docker_ps$",
        r"^docker_logs$",
    )
]

DENIED_REASON = "User denied permission"

Confirm = Callable[[str], Awaitable[bool]]


@dataclass
class PermissionState:
    auto_approve: bool = False
    approved: set[str] = field(default_factory=set)


@dataclass(frozen=True)
class PermissionDecision:
    approved: bool
    reason: str = ""


def is_safe_tool(name: str) -> bool:
    return any(p.search(name) for p in SAFE_PATTERNS)


def is_dangerous_tool(name: str) -> bool:
    return name in DANGEROUS_TOOLS and not is_safe_tool(name)


def fingerprint(name: str, args: dict) -> str:
    return f"{name}:{json.dumps(args, sort_keys=True, default=str)}"


def describe_action(name: str, args: dict) -> str:
    """Human-readable one-liner for the confirmation prompt."""
    path = args.get("path", "")
    if name in ("write_file", "edit_file"):
        return f"Write to: {path}"
    if name == "append_file":
        return f"Append to: {path}"
    if name == "delete_file":
        return f"DELETE: {path}"
    if name == "rename_file":
        return f"Rename: {args.get('from', '')} -> {args.get('to', '')}"
    if name == "create_directory":
        return f"Create folder: {path}"
    if name == "run_command":
        return f"Run: {args.get('command', '')}"
    if name == "git_commit":
        return f'Commit: "{args.get("message", "")}"'
    if name == "git_reset":
        return f"Reset to: {args.get('commit', 'HEAD')} ({args.get('mode') or 'mixed'})"
    if name == "install_package":
        return f"Install: {args.get('package', '')}"
    if name == "uninstall_package":
        return f"Uninstall: {args.get('package', '')}"
    if name == "vercel_deploy":
        return "Deploy to Vercel " + ("(PRODUCTION)" if args.get("production") else "(preview)")
    return f"{name}: {json.dumps(args, default=str)[:50]}"


async def prompt_confirm(description: str) -> bool:
    """Ask the user on the terminal. Ctrl-C and Ctrl-D count as a refusal."""
    from prompt_toolkit.shortcuts import create_confirm_session

    session = create_confirm_session(f"Allow: {description}?")
    try:
        return bool(await session.prompt_async())
    except (EOFError, KeyboardInterrupt):
        return False


async def check_permission(
    name: str,
    args: dict,
    state: PermissionState,
    confirm: Confirm | None = None,
) -> PermissionDecision:
    if is_safe_tool(name):
        return PermissionDecision(True)
    if state.auto_approve:
        return PermissionDecision(True, "auto-approve")

    key = fingerprint(name, args)
    if key in state.approved:
        return PermissionDecision(True, "previously approved")
    if not is_dangerous_tool(name):
        return PermissionDecision(True)

    confirm = confirm or prompt_confirm
    if await confirm(describe_action(name, args)):
        state.approved.add(key)
        return PermissionDecision(True)
    return PermissionDecision(False, DENIED_REASON)


def toggle_auto_approve(state: PermissionState) -> bool:
    state.auto_approve = not state.auto_approve
    return state.auto_approve
