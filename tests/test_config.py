"""Tests for helios.config — TOML config file loading, merging, and CLI integration."""

import argparse
import tomllib

import pytest

from helios.config import (
    _UNSET,
    apply_config_to_args,
    args_to_session_kwargs,
    generate_config,
    global_config_dir,
    load_config,
)
from helios.errors import ConfigError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "timeout_ms": _UNSET,
        "max_retries": _UNSET,
        "max_iterations": _UNSET,
        "temperature": _UNSET,
        "max_output_tokens": _UNSET,
        "streaming": _UNSET,
        "yolo": _UNSET,
        "audit_log": _UNSET,
        "system_prompt": _UNSET,
        "no_system_prompt": _UNSET,
        "block_medium_loops": _UNSET,
        "compact": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
        "no_mcp": _UNSET,
        "base_dir": ".",
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path, no_global):
        assert load_config(tmp_path) == {}

    def test_global_dir_respects_xdg(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert global_config_dir() == tmp_path / "helios"

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "helios" / "config.toml", 'provider = "openrouter"\n')
        result = load_config(tmp_path / "project")
        assert result["provider"] == "openrouter"

    def test_project_only(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", "max_iterations = 42\n")
        assert load_config(tmp_path)["max_iterations"] == 42

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "helios" / "config.toml", "max_iterations = 10\n")
        _write_toml(tmp_path / "helios.toml", "max_iterations = 50\n")
        assert load_config(tmp_path)["max_iterations"] == 50

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "helios.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_invalid_toml_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_relative_audit_log_resolved_against_config_file(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", 'audit_log = "logs/audit.jsonl"\n')
        result = load_config(tmp_path)
        assert result["audit_log"] == str(tmp_path.resolve() / "logs" / "audit.jsonl")

    def test_generate_config_is_valid_toml(self):
        lines = []
        for line in generate_config().splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        tomllib.loads("\n".join(lines))

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


# ===========================================================================
# Type validation
# ===========================================================================


class TestTypeValidation:
    def test_string_where_int_expected(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", 'timeout_ms = "long"\n')
        with pytest.raises(ConfigError, match="timeout_ms.*expected int.*got str"):
            load_config(tmp_path)

    def test_toml_int_for_float_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_bool_for_int_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", "max_iterations = true\n")
        with pytest.raises(ConfigError, match="max_iterations.*expected int.*got bool"):
            load_config(tmp_path)

    def test_non_positive_rejected(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", "max_retries = 0\n")
        with pytest.raises(ConfigError, match="at least 1"):
            load_config(tmp_path)

    def test_system_prompt_conflict(self, tmp_path, no_global):
        _write_toml(
            tmp_path / "helios.toml",
            'system_prompt = "hello"\nno_system_prompt = true\n',
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)


# ===========================================================================
# MCP server tables
# ===========================================================================


class TestMcpServers:
    def test_servers_merge_by_name(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(
            global_dir / "helios" / "config.toml",
            '[mcp_servers.fs]\ncommand = "old"\n[mcp_servers.web]\nurl = "http://x"\n',
        )
        _write_toml(tmp_path / "helios.toml", '[mcp_servers.fs]\ncommand = "new"\n')
        servers = load_config(tmp_path)["mcp_servers"]
        assert servers["fs"] == {"command": "new"}
        assert servers["web"] == {"url": "http://x"}

    def test_needs_command_or_url(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", '[mcp_servers.fs]\nargs = ["a"]\n')
        with pytest.raises(ConfigError, match="exactly one"):
            load_config(tmp_path)

    def test_bad_server_name(self, tmp_path, no_global):
        _write_toml(tmp_path / "helios.toml", '[mcp_servers."a__b"]\ncommand = "x"\n')
        with pytest.raises(ConfigError, match="must not contain"):
            load_config(tmp_path)


# ===========================================================================
# CLI merging
# ===========================================================================


class TestApplyConfig:
    def test_defaults_filled(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.max_iterations == 30
        assert args.timeout_ms == 60_000
        assert args.streaming is True
        assert args.yolo is False
        assert args.mcp_servers == {}

    def test_cli_beats_config(self):
        args = _make_args(max_iterations=5)
        apply_config_to_args(args, {"max_iterations": 50})
        assert args.max_iterations == 5

    def test_auto_approve_maps_to_yolo(self):
        args = _make_args()
        apply_config_to_args(args, {"auto_approve": True})
        assert args.yolo is True

    def test_color_from_config(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_no_mcp_drops_servers(self):
        args = _make_args(no_mcp=True)
        apply_config_to_args(args, {"mcp_servers": {"fs": {"command": "x"}}})
        assert args.mcp_servers == {}

    def test_session_kwargs(self):
        args = _make_args(quiet=True, yolo=True)
        apply_config_to_args(args, {})
        kwargs = args_to_session_kwargs(args)
        assert kwargs["verbose"] is False
        assert kwargs["auto_approve"] is True
        assert kwargs["max_iterations"] == 30
