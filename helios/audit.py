"""Append-only JSONL audit trail of supervised tool actions."""

import json
from datetime import datetime, timezone
from pathlib import Path

from . import fmt

RESULTS = ("success", "error", "blocked")


def default_audit_path() -> Path:
    return Path.home() / ".helios" / "audit.jsonl"


class AuditLogger:
    """Records one JSON object per line for every executed or blocked action.

    Lines are only ever appended. Session counters cover this process;
    lifetime figures come from scanning the file.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser() if path else default_audit_path()
        self.session = {"total": 0, "blocked": 0, "errors": 0}
        self._warned = False

    def log(
        self,
        action: str,
        args: dict | None,
        result: str,
        supervision: dict | None = None,
    ) -> dict:
        if result not in RESULTS:
            raise ValueError(f"unknown audit result {result!r}")
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "action": action,
            "args": args if args is not None else {},
            "result": result,
        }
        if supervision:
            entry["supervision"] = supervision

        self.session["total"] += 1
        if result == "blocked":
            self.session["blocked"] += 1
        elif result == "error":
            self.session["errors"] += 1

        line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            if not self._warned:
                fmt.warning(f"failed to write audit log {self.path}: {e}")
                self._warned = True
        return entry

    def _read_lines(self) -> list[str]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            fmt.warning(f"failed to read audit log {self.path}: {e}")
            return []
        return [line for line in text.splitlines() if line.strip()]

    def get_recent(self, limit: int = 50) -> list[dict]:
        """Return up to *limit* entries, newest first. Malformed lines are skipped."""
        entries = []
        for line in reversed(self._read_lines()):
            if len(entries) >= limit:
                break
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(entry, dict):
                entries.append(entry)
        return entries

    def lifetime_stats(self) -> dict[str, int]:
        lines = self._read_lines()
        blocked = errors = 0
        for line in lines:
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict):
                continue
            if entry.get("result") == "blocked":
                blocked += 1
            elif entry.get("result") == "error":
                errors += 1
        return {"total": len(lines), "blocked": blocked, "errors": errors}
