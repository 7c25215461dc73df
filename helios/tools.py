"""Built-in tools: file access, search, shell and git, confined to base_dir."""

import asyncio
import fnmatch
import functools
import os
import re
import signal
import subprocess
import sys
from collections import OrderedDict
from pathlib import Path, PurePosixPath, PureWindowsPath

from .registry import ToolDescriptor, ToolRegistry

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100
MAX_INLINE_OUTPUT = 10 * 1024
MAX_TIMEOUT = 120
GIT_TIMEOUT = 30


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve a path and ensure it stays within base_dir.

    Symlinks are resolved on both sides before the containment check.

    Raises:
        ValueError: If the resolved path escapes base_dir.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()

    if not resolved.is_relative_to(base):
        raise ValueError(
            f"Path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _relative(path: Path, base_dir: str) -> str:
    try:
        return path.relative_to(Path(base_dir).resolve()).as_posix()
    except ValueError:
        return str(path)


def _check_pattern(pattern: str) -> str | None:
    """Reject patterns that are absolute or contain '..'."""
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"error: pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"error: pattern {pattern!r} must not contain '..'"
    return None


def _glob_match(rel: str, pattern: str) -> bool:
    if fnmatch.fnmatch(rel, pattern):
        return True
    # "**/x" should also match "x" at the top level
    return pattern.startswith("**/") and fnmatch.fnmatch(rel, pattern[3:])


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


# -- File tools ---------------------------------------------------------------


def read_file(base_dir: str, path: str, offset: int = 1, limit: int = 2000) -> str:
    """Read a file with line numbers, or list a directory."""
    resolved = safe_resolve(path, base_dir)
    if not resolved.exists():
        return f"error: path does not exist: {path}"

    if resolved.is_dir():
        names = [
            child.name + ("/" if child.is_dir() else "")
            for child in sorted(resolved.iterdir())
        ]
        return "\n".join(names) if names else "(empty directory)"

    if _is_binary(resolved):
        return f"error: binary file detected: {path}"
    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {path} as UTF-8: {exc}"

    lines = text.splitlines()
    start = max(offset - 1, 0)
    selected = lines[start : start + limit]

    output_parts = []
    total_bytes = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            break
        output_parts.append(numbered)
        total_bytes += encoded_len

    remaining = len(lines) - (start + len(output_parts))
    result = "\n".join(output_parts)
    if remaining > 0:
        next_offset = start + len(output_parts) + 1
        result += f"\n[{remaining} more lines, use offset={next_offset} to continue]"
    return result


def write_file(base_dir: str, path: str, content: str) -> str:
    resolved = safe_resolve(path, base_dir)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {path}"


def append_file(base_dir: str, path: str, content: str) -> str:
    resolved = safe_resolve(path, base_dir)
    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    with open(resolved, "ab") as f:
        f.write(data)
    return f"Appended {len(data)} bytes to {path}"


def edit_file(
    base_dir: str, path: str, search: str, replace: str, replace_all: bool = False
) -> str:
    """Replace an exact snippet in an existing file."""
    resolved = safe_resolve(path, base_dir)
    if not resolved.is_file():
        return f"error: file does not exist: {path}"
    if not search:
        return "error: search must not be empty"

    content = resolved.read_text(encoding="utf-8")
    count = content.count(search)
    if count == 0:
        return f"error: search text not found in {path}"
    if count > 1 and not replace_all:
        return (
            f"error: search text occurs {count} times in {path}; "
            f"add context to make it unique or set replace_all"
        )

    new_content = content.replace(search, replace, -1 if replace_all else 1)
    resolved.write_text(new_content, encoding="utf-8")
    return f"Edited {path} ({count if replace_all else 1} replacement(s))"


def delete_file(base_dir: str, path: str) -> str:
    resolved = safe_resolve(path, base_dir)
    if resolved == Path(base_dir).resolve():
        return "error: refusing to delete the base directory"
    if not resolved.exists():
        return f"error: path does not exist: {path}"
    if resolved.is_dir():
        return f"error: {path} is a directory; only files can be deleted"
    resolved.unlink()
    return f"Deleted {path}"


def rename_file(base_dir: str, **kwargs) -> str:
    # "from" is a keyword, so the arguments arrive as a mapping.
    src, dst = kwargs.get("from"), kwargs.get("to")
    if not src or not dst:
        return "error: both 'from' and 'to' are required"
    src_path = safe_resolve(src, base_dir)
    dst_path = safe_resolve(dst, base_dir)
    if not src_path.exists():
        return f"error: path does not exist: {src}"
    if dst_path.exists():
        return f"error: destination already exists: {dst}"
    dst_path.parent.mkdir(parents=True, exist_ok=True)
    src_path.rename(dst_path)
    return f"Renamed {src} -> {dst}"


def create_directory(base_dir: str, path: str) -> str:
    resolved = safe_resolve(path, base_dir)
    if resolved.is_file():
        return f"error: a file already exists at {path}"
    resolved.mkdir(parents=True, exist_ok=True)
    return f"Created directory {path}"


def list_files(base_dir: str, pattern: str = "**/*", path: str = ".") -> str:
    """Recursively list files matching a glob, newest first."""
    err = _check_pattern(pattern)
    if err:
        return err
    root = safe_resolve(path, base_dir)
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    matched: list[Path] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            filepath = Path(dirpath) / filename
            if _glob_match(filepath.relative_to(root).as_posix(), pattern):
                matched.append(filepath)

    if not matched:
        return "No files matched the pattern."

    matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
    truncated = len(matched) > MAX_LIST_RESULTS
    result = "\n".join(_relative(f, base_dir) for f in matched[:MAX_LIST_RESULTS])
    if truncated:
        result += (
            f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
            "Use a more specific pattern or path.)"
        )
    return result


def search_files(
    base_dir: str, pattern: str, path: str = ".", include: str | None = None
) -> str:
    """Search file contents for a regex, grouped by file."""
    if include is not None:
        err = _check_pattern(include)
        if err:
            return err
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"

    root = safe_resolve(path, base_dir)
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    matches: list[tuple[Path, int, str, float]] = []
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            if include and not fnmatch.fnmatch(filename, include):
                continue
            filepath = Path(dirpath) / filename
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
                mtime = filepath.stat().st_mtime
            except (UnicodeDecodeError, OSError):
                continue
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((filepath, line_no, line, mtime))

    if not matches:
        return "No matches found."

    matches.sort(key=lambda m: (-m[3], m[0], m[1]))
    total_found = len(matches)

    grouped: OrderedDict[Path, list[tuple[int, str]]] = OrderedDict()
    for filepath, line_no, line_text, _ in matches[:MAX_GREP_MATCHES]:
        grouped.setdefault(filepath, []).append((line_no, line_text))

    output_parts = [f"Found {total_found} matches"]
    for filepath, file_matches in grouped.items():
        output_parts.append(f"\n{_relative(filepath, base_dir)}:")
        for line_no, line_text in file_matches:
            output_parts.append(f"  Line {line_no}: {line_text[:MAX_LINE_LENGTH]}")

    result = "\n".join(output_parts)
    if total_found > MAX_GREP_MATCHES:
        result += (
            f"\n(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return result


# -- Processes ----------------------------------------------------------------


def _kill_process_tree(proc: asyncio.subprocess.Process) -> None:
    """Kill the process group started for *proc* (best effort)."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _format_output(raw: bytes, returncode: int | None) -> str:
    output = raw.decode("utf-8", errors="replace")
    parts = []
    if returncode:
        parts.append(f"Exit code: {returncode}")
    if len(output.encode("utf-8")) > MAX_INLINE_OUTPUT:
        output = output[:MAX_INLINE_OUTPUT] + "\n[output truncated]"
    if output:
        parts.append(output)
    return "\n".join(parts) if parts else "(no output)"


async def _communicate(proc: asyncio.subprocess.Process, timeout: float) -> bytes | None:
    """Collect output, killing the process tree on timeout or cancellation.

    Returns None when the timeout expired.
    """
    try:
        async with asyncio.timeout(timeout):
            out, _ = await proc.communicate()
    except TimeoutError:
        _kill_process_tree(proc)
        await proc.wait()
        return None
    except asyncio.CancelledError:
        _kill_process_tree(proc)
        raise
    return out


async def run_command(base_dir: str, command: str, timeout: int = 30) -> str:
    """Run a shell command in base_dir and return its combined output."""
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        stdin=subprocess.DEVNULL,
        cwd=base_dir,
        start_new_session=sys.platform != "win32",
    )
    out = await _communicate(proc, timeout)
    if out is None:
        return f"error: command timed out after {timeout}s"
    return _format_output(out, proc.returncode)


async def _git(base_dir: str, *args: str) -> str:
    try:
        proc = await asyncio.create_subprocess_exec(
            "git",
            *args,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=base_dir,
            start_new_session=sys.platform != "win32",
        )
    except FileNotFoundError:
        return "error: git is not installed"
    out = await _communicate(proc, GIT_TIMEOUT)
    if out is None:
        return f"error: git {args[0]} timed out after {GIT_TIMEOUT}s"
    if proc.returncode:
        return f"error: git {args[0]} failed: " + out.decode("utf-8", errors="replace").strip()
    return out.decode("utf-8", errors="replace").strip() or "(no output)"


async def git_status(base_dir: str) -> str:
    return await _git(base_dir, "status", "--short", "--branch")


async def git_diff(base_dir: str, path: str | None = None, staged: bool = False) -> str:
    args = ["diff"]
    if staged:
        args.append("--staged")
    if path:
        safe_resolve(path, base_dir)
        args += ["--", path]
    return await _git(base_dir, *args)


async def git_log(base_dir: str, limit: int = 10) -> str:
    return await _git(base_dir, "log", f"-{max(1, int(limit))}", "--oneline", "--decorate")


async def git_commit(base_dir: str, message: str, add_all: bool = False) -> str:
    if add_all:
        staged = await _git(base_dir, "add", "-A")
        if staged.startswith("error:"):
            return staged
    return await _git(base_dir, "commit", "-m", message)


# -- Descriptors --------------------------------------------------------------


def _params(properties: dict, required: list[str]) -> dict:
    return {"type": "object", "properties": properties, "required": required}


def _str(description: str) -> dict:
    return {"type": "string", "description": description}


_SPECS = [
    (
        "read_file",
        read_file,
        "Read a file with line numbers, or list a directory. "
        "Use offset/limit to paginate large files.",
        _params(
            {
                "path": _str("Path to the file or directory."),
                "offset": {"type": "integer", "description": "1-based first line (default 1)."},
                "limit": {"type": "integer", "description": "Maximum lines (default 2000)."},
            },
            ["path"],
        ),
    ),
    (
        "write_file",
        write_file,
        "Create or overwrite a file, creating parent directories as needed.",
        _params({"path": _str("File to write."), "content": _str("Full file content.")}, ["path", "content"]),
    ),
    (
        "edit_file",
        edit_file,
        "Replace an exact snippet of an existing file. The search text must be unique "
        "unless replace_all is set.",
        _params(
            {
                "path": _str("File to edit."),
                "search": _str("Exact text to find."),
                "replace": _str("Replacement text."),
                "replace_all": {"type": "boolean", "description": "Replace every occurrence."},
            },
            ["path", "search", "replace"],
        ),
    ),
    (
        "append_file",
        append_file,
        "Append content to the end of a file, creating it if missing.",
        _params({"path": _str("File to append to."), "content": _str("Text to append.")}, ["path", "content"]),
    ),
    (
        "delete_file",
        delete_file,
        "Delete a single file.",
        _params({"path": _str("File to delete.")}, ["path"]),
    ),
    (
        "rename_file",
        rename_file,
        "Rename or move a file or directory.",
        _params({"from": _str("Current path."), "to": _str("New path.")}, ["from", "to"]),
    ),
    (
        "create_directory",
        create_directory,
        "Create a directory and any missing parents.",
        _params({"path": _str("Directory to create.")}, ["path"]),
    ),
    (
        "list_files",
        list_files,
        "Recursively list files matching a glob pattern, newest first.",
        _params(
            {
                "pattern": _str('Glob pattern such as "**/*.py" (default "**/*").'),
                "path": _str("Directory to search from (default base directory)."),
            },
            [],
        ),
    ),
    (
        "search_files",
        search_files,
        "Search file contents for a regular expression.",
        _params(
            {
                "pattern": _str("Regular expression."),
                "path": _str("Directory to search (default base directory)."),
                "include": _str('Filename glob filter such as "*.py".'),
            },
            ["pattern"],
        ),
    ),
    (
        "run_command",
        run_command,
        "Run a shell command in the base directory and return its output.",
        _params(
            {
                "command": _str("Shell command line."),
                "timeout": {
                    "type": "integer",
                    "description": f"Seconds before the command is killed (max {MAX_TIMEOUT}).",
                },
            },
            ["command"],
        ),
    ),
    ("git_status", git_status, "Show the working tree status.", _params({}, [])),
    (
        "git_diff",
        git_diff,
        "Show unstaged (or staged) changes.",
        _params(
            {
                "path": _str("Limit the diff to this path."),
                "staged": {"type": "boolean", "description": "Show staged changes."},
            },
            [],
        ),
    ),
    (
        "git_log",
        git_log,
        "Show recent commits.",
        _params({"limit": {"type": "integer", "description": "Number of commits (default 10)."}}, []),
    ),
    (
        "git_commit",
        git_commit,
        "Commit staged changes.",
        _params(
            {
                "message": _str("Commit message."),
                "add_all": {"type": "boolean", "description": "Stage all changes first."},
            },
            ["message"],
        ),
    ),
]


def builtin_tools(base_dir: str) -> list[ToolDescriptor]:
    return [
        ToolDescriptor(
            name=name,
            description=description,
            parameters=parameters,
            handler=functools.partial(func, base_dir),
        )
        for name, func, description, parameters in _SPECS
    ]


def register_builtin_tools(registry: ToolRegistry, base_dir: str) -> None:
    for descriptor in builtin_tools(base_dir):
        registry.register(descriptor)
