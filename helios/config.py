"""Configuration file loading and merging for helios.

Reads TOML config from ~/.config/helios/config.toml (global) and
<base_dir>/helios.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # not set on the command line


CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "timeout_ms": int,
    "max_retries": int,
    "max_iterations": int,
    "temperature": (int, float),
    "max_output_tokens": int,
    "streaming": bool,
    "auto_approve": bool,
    "audit_log": str,
    "system_prompt": str,
    "no_system_prompt": bool,
    "block_medium_loops": bool,
    "compact": bool,
    "color": bool,
    "quiet": bool,
    "no_mcp": bool,
}

_POSITIVE_INT_KEYS = ("timeout_ms", "max_retries", "max_iterations", "max_output_tokens")

# Config key -> argparse dest, where they differ
_CONFIG_TO_ARGPARSE = {
    "auto_approve": "yolo",
}

_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "api_key": None,
    "base_url": None,
    "timeout_ms": 60_000,
    "max_retries": 3,
    "max_iterations": 30,
    "temperature": 0.7,
    "max_output_tokens": 8192,
    "streaming": True,
    "yolo": False,
    "audit_log": None,
    "system_prompt": None,
    "no_system_prompt": False,
    "block_medium_loops": False,
    "compact": False,
    "color": False,
    "no_color": False,
    "quiet": False,
    "no_mcp": False,
}


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "helios"
    return Path.home() / ".config" / "helios"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Raise ConfigError on type mismatches; warn about unknown keys."""
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )
        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


_MCP_SERVER_FIELD_TYPES: dict[str, type] = {
    "command": str,
    "url": str,
    "args": list,
    "env": dict,
    "headers": dict,
}


def _validate_mcp_servers(servers: dict, source: str) -> None:
    from .mcp_client import validate_server_name

    for name, cfg in servers.items():
        validate_server_name(name)
        prefix = f"{source}: mcp_servers.{name}"
        if not isinstance(cfg, dict):
            raise ConfigError(f"{prefix} must be a table")
        if ("command" in cfg) == ("url" in cfg):
            raise ConfigError(f"{prefix} needs exactly one of 'command' or 'url'")

        for field, expected in _MCP_SERVER_FIELD_TYPES.items():
            if field in cfg and not isinstance(cfg[field], expected):
                raise ConfigError(
                    f"{prefix}.{field}: expected {expected.__name__}, "
                    f"got {type(cfg[field]).__name__}"
                )
        for i, elem in enumerate(cfg.get("args", [])):
            if not isinstance(elem, str):
                raise ConfigError(
                    f"{prefix}.args[{i}]: expected string, got {type(elem).__name__}"
                )
        for table in ("env", "headers"):
            for k, v in cfg.get(table, {}).items():
                if not isinstance(v, str):
                    raise ConfigError(
                        f"{prefix}.{table}.{k}: expected string, got {type(v).__name__}"
                    )


def _load_single(path: Path, label: str) -> dict:
    """Load and validate one TOML file. Missing files yield an empty dict."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    mcp_servers = config.pop("mcp_servers", None)
    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if "audit_log" in known:
        p = Path(known["audit_log"]).expanduser()
        known["audit_log"] = str(p if p.is_absolute() else path.parent / p)

    if mcp_servers is not None:
        if not isinstance(mcp_servers, dict):
            raise ConfigError(f"{label}: 'mcp_servers' must be a table")
        _validate_mcp_servers(mcp_servers, label)
        known["mcp_servers"] = mcp_servers
    return known


def load_config(base_dir: str | Path) -> dict:
    """Load and merge global + project config.

    Only keys present in a config file are returned; defaults are applied
    later by apply_config_to_args(). MCP servers merge by name, project
    entries winning.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "helios.toml"
    project_config = _load_single(project_path, str(project_path))

    servers = {
        **global_config.pop("mcp_servers", {}),
        **project_config.pop("mcp_servers", {}),
    }
    merged = {**global_config, **project_config}
    if servers:
        merged["mcp_servers"] = servers

    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key in ("color", "mcp_servers"):
            continue
        dest = _CONFIG_TO_ARGPARSE.get(key, key)
        if _is_unset(dest):
            setattr(args, dest, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    args.mcp_servers = {} if args.no_mcp else config.get("mcp_servers", {})


def args_to_session_kwargs(args: argparse.Namespace) -> dict:
    """Translate resolved CLI args to Session keyword arguments."""
    return {
        "base_dir": args.base_dir,
        "provider": args.provider,
        "model": args.model,
        "api_key": args.api_key,
        "base_url": args.base_url,
        "timeout_ms": args.timeout_ms,
        "max_retries": args.max_retries,
        "max_iterations": args.max_iterations,
        "temperature": args.temperature,
        "max_output_tokens": args.max_output_tokens,
        "streaming": args.streaming,
        "auto_approve": args.yolo,
        "audit_log": args.audit_log,
        "system_prompt": args.system_prompt,
        "no_system_prompt": args.no_system_prompt,
        "block_medium_loops": args.block_medium_loops,
        "compact": args.compact,
        "mcp_servers": args.mcp_servers,
        "verbose": not args.quiet,
    }


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config."""
    where = "<project>/helios.toml" if project else "~/.config/helios/config.toml"
    lines = [
        "# helios configuration file",
        f"# {'Project' if project else 'Global'} config: {where}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "openrouter"       # openrouter | openai | anthropic | lmstudio | custom',
        '# model = "google/gemini-2.0-flash-exp:free"',
        '# api_key = "sk-or-..."         # prefer OPENROUTER_API_KEY and friends',
        '# base_url = "https://..."',
        "",
        "# --- Requests ---",
        "# timeout_ms = 60000",
        "# max_retries = 3",
        "# temperature = 0.7",
        "# max_output_tokens = 8192",
        "# streaming = true",
        "",
        "# --- Agent loop ---",
        "# max_iterations = 30",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "",
        "# --- Supervision ---",
        "# auto_approve = false",
        "# block_medium_loops = false",
        '# audit_log = "~/.helios/audit.jsonl"',
        "",
        "# --- MCP servers ---",
        "# no_mcp = false",
        "",
        "# [mcp_servers.filesystem]",
        '# command = "npx"',
        '# args = ["-y", "@modelcontextprotocol/server-filesystem", "/tmp"]',
        "",
        "# [mcp_servers.remote-api]",
        '# url = "https://api.example.com/mcp"',
        '# headers = { Authorization = "Bearer token123" }',
        "",
        "# --- UI ---",
        "# color = true",
        "# quiet = false",
        "# compact = false",
        "",
    ]
    return "\n".join(lines)
