"""Tests for the static code and command scanner."""

import pytest

from helios.security import (
    COMMAND_BLOCKED_SUGGESTION,
    scan,
    scan_command,
    scan_tool_call,
)


class TestScanCommand:
    @pytest.mark.parametrize(
        "command",
        [
            "rm -rf /",
            "rm -rf /etc",
            "rm -rf /usr",
            "rm -rf /home",
            "rm -rf /var/lib",
            "rm -r -f /opt/app",
            "rm --recursive /srv",
            "rm -rf \"/root\"",
            "rm -rf ~",
            "rm -rf ~/projects",
            "rm -fr $HOME",
            "sudo rm -rf / --no-preserve-root",
            "rm -rf *",
            ":(){ :|:& };:",
            "mkfs.ext4 /dev/sda1",
            "dd if=/dev/zero of=/dev/sda",
            "echo x > /dev/sda",
            "chmod -R 777 .",
            "chmod 777 /",
        ],
    )
    def test_destructive_commands_blocked(self, command):
        result = scan_command(command)
        assert not result.approved
        assert result.top.severity == "critical"
        assert result.top.suggestion == COMMAND_BLOCKED_SUGGESTION

    @pytest.mark.parametrize(
        "command",
        ["ls -la", "rm -rf ./dist", "rm -f /tmp/app.lock", "git status", "chmod 644 a.txt"],
    )
    def test_ordinary_commands_pass(self, command):
        result = scan_command(command)
        assert result.approved
        assert result.issues == []


class TestScanCode:
    def test_eval_is_critical(self):
        result = scan("x = eval(user_input)")
        assert not result.approved
        assert result.top.severity == "critical"

    def test_method_named_exec_is_not_flagged(self):
        result = scan("cursor.exec(query)")
        assert all("exec()" not in i.message for i in result.issues)

    def test_subprocess_shell_true_is_high(self):
        result = scan("subprocess.run(cmd, shell=True)")
        assert not result.approved
        assert any(i.severity == "high" for i in result.issues)

    def test_hardcoded_secret(self):
        result = scan('API_KEY = "sk-abcdefghijklmnopqrstuvwx"')
        assert not result.approved

    def test_low_issues_are_approved(self):
        result = scan("# TODO: tidy\nconsole.log('hi')\n")
        assert result.approved
        assert {i.severity for i in result.issues} == {"low"}

    def test_issues_sorted_by_severity(self):
        result = scan("# TODO\nyaml.load(data)\neval(x)\n")
        severities = [i.severity for i in result.issues]
        assert severities[0] == "critical"
        order = {"critical": 0, "high": 1, "medium": 2, "low": 3}
        assert severities == sorted(severities, key=order.__getitem__)

    def test_clean_code(self):
        result = scan("def add(a, b):\n    return a + b\n")
        assert result.approved
        assert result.issues == []

    def test_pure(self):
        code = "eval(x)"
        assert scan(code) == scan(code)


class TestScanToolCall:
    def test_write_file_content_scanned(self):
        result = scan_tool_call("write_file", {"path": "a.py", "content": "eval(x)"})
        assert result is not None and not result.approved

    def test_edit_file_replace_scanned(self):
        result = scan_tool_call(
            "edit_file", {"path": "a.py", "search": "x", "replace": "eval(x)"}
        )
        assert not result.approved

    def test_run_command_scanned(self):
        result = scan_tool_call("run_command", {"command": "rm -rf /"})
        assert not result.approved

    def test_other_tools_skipped(self):
        assert scan_tool_call("read_file", {"path": "eval(x)"}) is None
