"""Tests for the append-only JSONL audit log."""

import json
from io import StringIO

import pytest
from rich.console import Console

from helios import fmt
from helios.audit import AuditLogger, default_audit_path


@pytest.fixture
def audit(tmp_path):
    return AuditLogger(tmp_path / "sub" / "audit.jsonl")


class TestLog:
    def test_appends_one_line_per_entry(self, audit):
        audit.log("read_file", {"path": "a"}, "success")
        audit.log("write_file", {"path": "b"}, "blocked", {"reason": "nope"})
        lines = audit.path.read_text().splitlines()
        assert len(lines) == 2
        second = json.loads(lines[1])
        assert second["action"] == "write_file"
        assert second["result"] == "blocked"
        assert second["supervision"] == {"reason": "nope"}
        assert "timestamp" in second

    def test_existing_lines_untouched(self, audit):
        audit.log("a", {}, "success")
        first = audit.path.read_text()
        audit.log("b", {}, "error")
        assert audit.path.read_text().startswith(first)

    def test_session_counters(self, audit):
        audit.log("a", {}, "success")
        audit.log("b", {}, "blocked")
        audit.log("c", {}, "error")
        assert audit.session == {"total": 3, "blocked": 1, "errors": 1}

    def test_rejects_unknown_result(self, audit):
        with pytest.raises(ValueError):
            audit.log("a", {}, "maybe")

    def test_none_args_recorded_as_empty(self, audit):
        entry = audit.log("a", None, "error")
        assert entry["args"] == {}

    def test_unwritable_path_warns_once(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x")
        audit = AuditLogger(blocker / "audit.jsonl")
        buf = StringIO()
        old = fmt._console
        fmt._console = Console(file=buf, no_color=True, width=200)
        try:
            audit.log("a", {}, "success")
            audit.log("b", {}, "success")
        finally:
            fmt._console = old
        assert buf.getvalue().count("failed to write audit log") == 1
        assert audit.session["total"] == 2


class TestReading:
    def test_recent_newest_first(self, audit):
        for name in ("a", "b", "c"):
            audit.log(name, {}, "success")
        recent = audit.get_recent(2)
        assert [e["action"] for e in recent] == ["c", "b"]

    def test_recent_skips_malformed(self, audit):
        audit.log("a", {}, "success")
        with open(audit.path, "a") as f:
            f.write("not json\n")
        assert [e["action"] for e in audit.get_recent()] == ["a"]

    def test_missing_file(self, audit):
        assert audit.get_recent() == []
        assert audit.lifetime_stats() == {"total": 0, "blocked": 0, "errors": 0}

    def test_lifetime_total_matches_line_count(self, audit):
        audit.log("a", {}, "success")
        audit.log("b", {}, "blocked")
        other = AuditLogger(audit.path)
        other.log("c", {}, "error")
        stats = other.lifetime_stats()
        assert stats["total"] == len(audit.path.read_text().splitlines()) == 3
        assert stats["blocked"] == 1
        assert stats["errors"] == 1


def test_default_path():
    assert default_audit_path().parts[-2:] == (".helios", "audit.jsonl")
