"""Tests for the interactive permission gate."""

import asyncio

import pytest

from helios.permissions import (
    DENIED_REASON,
    PermissionState,
    check_permission,
    describe_action,
    fingerprint,
    is_dangerous_tool,
    is_safe_tool,
    toggle_auto_approve,
)


class FakeConfirm:
    def __init__(self, answer=True):
        self.answer = answer
        self.prompts = []

    async def __call__(self, description):
        self.prompts.append(description)
        return self.answer


def _check(name, args, state, confirm):
    return asyncio.run(check_permission(name, args, state, confirm))


class TestClassification:
    @pytest.mark.parametrize("name", ["read_file", "list_files", "search_files", "git_status", "git_diff"])
    def test_safe(self, name):
        assert is_safe_tool(name)
        assert not is_dangerous_tool(name)

    @pytest.mark.parametrize("name", ["write_file", "delete_file", "run_command", "git_commit"])
    def test_dangerous(self, name):
        assert is_dangerous_tool(name)

    def test_fingerprint_ignores_key_order(self):
        assert fingerprint("w", {"a": 1, "b": 2}) == fingerprint("w", {"b": 2, "a": 1})


class TestCheckPermission:
    def test_safe_tool_never_prompts(self):
        confirm = FakeConfirm()
        decision = _check("read_file", {"path": "a"}, PermissionState(), confirm)
        assert decision.approved
        assert confirm.prompts == []

    def test_auto_approve_skips_prompt(self):
        confirm = FakeConfirm(answer=False)
        state = PermissionState(auto_approve=True)
        assert _check("delete_file", {"path": "a"}, state, confirm).approved
        assert confirm.prompts == []

    def test_approval_is_remembered(self):
        confirm = FakeConfirm()
        state = PermissionState()
        args = {"path": "a.txt", "content": "x"}
        assert _check("write_file", args, state, confirm).approved
        assert _check("write_file", dict(reversed(list(args.items()))), state, confirm).approved
        assert len(confirm.prompts) == 1

    def test_different_args_prompt_again(self):
        confirm = FakeConfirm()
        state = PermissionState()
        _check("write_file", {"path": "a"}, state, confirm)
        _check("write_file", {"path": "b"}, state, confirm)
        assert len(confirm.prompts) == 2

    def test_denial(self):
        confirm = FakeConfirm(answer=False)
        state = PermissionState()
        decision = _check("delete_file", {"path": "a"}, state, confirm)
        assert not decision.approved
        assert decision.reason == DENIED_REASON
        assert state.approved == set()

    def test_unlisted_tool_allowed(self):
        confirm = FakeConfirm(answer=False)
        assert _check("fs__lookup", {}, PermissionState(), confirm).approved
        assert confirm.prompts == []

    def test_toggle(self):
        state = PermissionState()
        assert toggle_auto_approve(state) is True
        assert toggle_auto_approve(state) is False


class TestDescribeAction:
    def test_write(self):
        assert describe_action("write_file", {"path": "a.py"}) == "Write to: a.py"

    def test_delete(self):
        assert describe_action("delete_file", {"path": "a.py"}) == "DELETE: a.py"

    def test_run(self):
        assert describe_action("run_command", {"command": "ls"}) == "Run: ls"

    def test_rename(self):
        assert describe_action("rename_file", {"from": "a", "to": "b"}) == "Rename: a -> b"

    def test_generic_truncated(self):
        text = describe_action("custom", {"x": "y" * 200})
        assert text.startswith("custom: ")
        assert len(text) == len("custom: ") + 50
