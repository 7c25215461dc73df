"""Static checks on code and shell commands before they are executed or written.

Both entry points are pure: the same input always yields the same
ScanResult, and nothing is recorded between calls.
"""

import re
from dataclasses import dataclass, field

SEVERITY_ORDER = {"critical": 0, "high": 1, "medium": 2, "low": 3}
BLOCKING_SEVERITIES = frozenset({"critical", "high"})


@dataclass(frozen=True)
class SecurityIssue:
    severity: str
    pattern: str  # the matched text
    message: str
    suggestion: str


@dataclass
class ScanResult:
    approved: bool
    issues: list[SecurityIssue] = field(default_factory=list)

    @property
    def top(self) -> SecurityIssue | None:
        return self.issues[0] if self.issues else None


_I = re.IGNORECASE

# (regex, severity, message, suggestion)
_CODE_RULES: list[tuple[re.Pattern, str, str, str]] = [
    # Dynamic execution
    (
        re.compile(r"\beval\s*\(", _I),
        "critical",
        "eval() can execute arbitrary code",
        "Parse the data explicitly (json.loads, ast.literal_eval, JSON.parse)",
    ),
    (
        re.compile(r"(?<![.\w])exec\s*\("),
        "critical",
        "exec() can execute arbitrary code",
        "Avoid executing dynamically built source code",
    ),
    (
        re.compile(r"child_process\.exec\s*\([^)]*\$\{", _I),
        "critical",
        "Command injection vulnerability",
        "Use execFile or spawn with an argument array",
    ),
    (
        re.compile(r"\bos\.system\s*\(\s*(?:f[\"']|[^)]*(?:\+|%\s*[(\w]|\.format\s*\())"),
        "critical",
        "Command injection vulnerability",
        "Use subprocess.run with an argument list",
    ),
    (
        re.compile(r"innerHTML\s*=\s*[^;]*\+", _I),
        "critical",
        "XSS vulnerability via innerHTML",
        "Use textContent or sanitize the markup first",
    ),
    # Injection-prone sinks
    (
        re.compile(r"SELECT\s+.*\s+FROM\s+.*\s+WHERE\s+.*\+", _I),
        "high",
        "Potential SQL injection",
        "Use parameterized queries",
    ),
    (
        re.compile(
            r"(?:execute|query)\s*\(\s*f[\"']\s*(?:SELECT|INSERT|UPDATE|DELETE)\b", _I
        ),
        "high",
        "Potential SQL injection",
        "Use parameterized queries",
    ),
    (
        re.compile(r"subprocess\.\w+\s*\([^)]*shell\s*=\s*True"),
        "high",
        "Shell execution with shell=True",
        "Pass an argument list and leave shell=False",
    ),
    (
        re.compile(r"document\.write\s*\(", _I),
        "high",
        "document.write can introduce XSS",
        "Build DOM nodes instead",
    ),
    (
        re.compile(r"new\s+Function\s*\(", _I),
        "high",
        "new Function() can execute arbitrary code",
        "Avoid constructing functions from strings",
    ),
    (
        re.compile(r"\bpickle\.loads?\s*\("),
        "high",
        "Unpickling untrusted data can execute arbitrary code",
        "Use a data-only format such as JSON",
    ),
    # Hardcoded credentials
    (
        re.compile(r"password\s*[:=]\s*[\"'][^\"']+[\"']", _I),
        "high",
        "Hardcoded password detected",
        "Read secrets from the environment or a secret store",
    ),
    (
        re.compile(r"api[_-]?key\s*[:=]\s*[\"'][^\"']+[\"']", _I),
        "high",
        "Hardcoded API key detected",
        "Read secrets from the environment or a secret store",
    ),
    (
        re.compile(r"\b(?:sk-[A-Za-z0-9_-]{32,}|ghp_[A-Za-z0-9]{36}|AKIA[0-9A-Z]{16})\b"),
        "high",
        "Credential-shaped token detected",
        "Read secrets from the environment or a secret store",
    ),
    # Unsanitized output and unsafe loading
    (
        re.compile(r"dangerouslySetInnerHTML"),
        "medium",
        "dangerouslySetInnerHTML bypasses React escaping",
        "Sanitize the HTML before rendering it",
    ),
    (
        re.compile(r"\bmark_safe\s*\("),
        "medium",
        "mark_safe disables template escaping",
        "Escape user-controlled values before marking them safe",
    ),
    (
        re.compile(r"\byaml\.load\s*\((?![^)]*Loader)"),
        "medium",
        "yaml.load without a Loader can construct arbitrary objects",
        "Use yaml.safe_load",
    ),
    # Debug leftovers
    (
        re.compile(r"console\.(?:log|debug)\s*\(", _I),
        "low",
        "Debug logging left in code",
        "Remove it or route it through a logger",
    ),
    (
        re.compile(r"\bbreakpoint\s*\(\s*\)|\bpdb\.set_trace\s*\("),
        "low",
        "Debugger breakpoint left in code",
        "Remove the breakpoint",
    ),
    (
        re.compile(r"\b(?:TODO|FIXME|HACK|XXX)\b"),
        "low",
        "Unresolved marker comment",
        "Resolve or track it",
    ),
]

_COMMAND_RULES: list[tuple[re.Pattern, str]] = [
    (
        re.compile(
            r"\brm(?:\s+-{1,2}[a-z-]+)*\s+(?:-[a-z]*r[a-z]*|--recursive)"
            r"(?:\s+-{1,2}[a-z-]+)*\s+[\"']?(?:/|~|\$HOME\b|\$\{HOME\})",
            _I,
        ),
        "Recursive delete of an absolute or home path",
    ),
    (re.compile(r"\brm\s+-(?:rf|fr)\s+\*", _I), "Recursive delete of everything in cwd"),
    (re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "Fork bomb"),
    (re.compile(r"\bmkfs\b", _I), "Filesystem format"),
    (re.compile(r"\bdd\s+if=.*of=/dev/", _I), "Raw write to a device with dd"),
    (
        re.compile(r">\s*/dev/(?:sd[a-z]|hd[a-z]|nvme\d|disk\d|xvd[a-z])", _I),
        "Redirect onto a raw disk device",
    ),
    (re.compile(r"\bchmod\s+-R\s+0?777\b", _I), "Recursive world-writable permissions"),
    (
        re.compile(r"\bchmod\s+0?777\s+/(?=\s|$)", _I),
        "World-writable permissions on the filesystem root",
    ),
]

COMMAND_BLOCKED_SUGGESTION = "This command is blocked for safety"


def _sort(issues: list[SecurityIssue]) -> list[SecurityIssue]:
    return sorted(issues, key=lambda i: SEVERITY_ORDER[i.severity])


def scan(code: str) -> ScanResult:
    """Scan source text for risky constructs.

    Every rule contributes at most one issue (its first match). The result
    is approved unless a critical or high issue was found.
    """
    issues = []
    for regex, severity, message, suggestion in _CODE_RULES:
        m = regex.search(code)
        if m:
            issues.append(SecurityIssue(severity, m.group(0), message, suggestion))
    issues = _sort(issues)
    approved = not any(i.severity in BLOCKING_SEVERITIES for i in issues)
    return ScanResult(approved=approved, issues=issues)


def scan_command(command: str) -> ScanResult:
    """Match a shell command against known destructive signatures."""
    issues = [
        SecurityIssue("critical", command, message, COMMAND_BLOCKED_SUGGESTION)
        for regex, message in _COMMAND_RULES
        if regex.search(command)
    ]
    return ScanResult(approved=not issues, issues=issues)


# Tools whose arguments carry code or commands worth scanning.
CONTENT_ARGS = {
    "write_file": "content",
    "append_file": "content",
    "edit_file": "replace",
}
COMMAND_ARGS = {
    "run_command": "command",
}


def scan_tool_call(name: str, args: dict) -> ScanResult | None:
    """Scan the content-bearing argument of a tool call, if it has one."""
    if name in COMMAND_ARGS:
        value = args.get(COMMAND_ARGS[name])
        if isinstance(value, str):
            return scan_command(value)
        return None
    if name in CONTENT_ARGS:
        value = args.get(CONTENT_ARGS[name])
        if isinstance(value, str):
            return scan(value)
    return None
