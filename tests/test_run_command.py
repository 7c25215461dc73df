"""Tests for the run_command tool."""

import asyncio
import sys
import time

import pytest

from helios.tools import run_command

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell required")


def _run(base_dir, command, **kwargs):
    return asyncio.run(run_command(str(base_dir), command, **kwargs))


class TestRunCommand:
    def test_output(self, tmp_path):
        assert _run(tmp_path, "echo hello") == "hello\n"

    def test_runs_in_base_dir(self, tmp_path):
        (tmp_path / "marker.txt").write_text("")
        assert "marker.txt" in _run(tmp_path, "ls")

    def test_stderr_merged(self, tmp_path):
        assert "oops" in _run(tmp_path, "echo oops >&2")

    def test_exit_code_reported(self, tmp_path):
        out = _run(tmp_path, "echo bad; exit 3")
        assert out.startswith("Exit code: 3")
        assert "bad" in out

    def test_no_output(self, tmp_path):
        assert _run(tmp_path, "true") == "(no output)"

    def test_timeout_kills_process(self, tmp_path):
        start = time.monotonic()
        out = _run(tmp_path, "sleep 30", timeout=1)
        assert out == "error: command timed out after 1s"
        assert time.monotonic() - start < 10

    def test_cancellation_kills_process(self, tmp_path):
        async def scenario():
            task = asyncio.ensure_future(run_command(str(tmp_path), "sleep 30"))
            await asyncio.sleep(0.3)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        start = time.monotonic()
        asyncio.run(scenario())
        assert time.monotonic() - start < 10
