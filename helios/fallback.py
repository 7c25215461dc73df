"""Recover tool calls from models that answer in plain text.

Some models (or endpoints that had tools stripped) describe the call they
want instead of emitting structured tool calls. The parsers below run in
order; the first one that finds at least one call for a known tool wins.
"""

import ast
import html
import json
import re
from typing import Callable

from .provider import ToolCall, new_call_id
from .registry import ToolDescriptor

_NAME_KEYS = ("action", "tool", "name", "tool_name")
_ARG_KEYS = ("arguments", "args", "parameters", "input")

_XML_TAG_RE = re.compile(
    r"<([A-Za-z_][\w-]*)((?:\s+[\w-]+\s*=\s*(?:\"[^\"]*\"|'[^']*'))*)\s*/>"
)
_XML_ATTR_RE = re.compile(r"([\w-]+)\s*=\s*(?:\"([^\"]*)\"|'([^']*)')")


def _coerce(descriptor: ToolDescriptor, key: str, value):
    """Convert a string value to the schema type of *key* when unambiguous."""
    if not isinstance(value, str):
        return value
    spec = descriptor.parameters.get("properties", {}).get(key, {})
    kind = spec.get("type")
    if kind == "integer" and re.fullmatch(r"-?\d+", value.strip()):
        return int(value)
    if kind == "number":
        try:
            return float(value)
        except ValueError:
            return value
    if kind == "boolean" and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return value


def _make_call(descriptor: ToolDescriptor, args: dict) -> ToolCall:
    args = {k: _coerce(descriptor, k, v) for k, v in args.items()}
    return ToolCall(id=new_call_id(), name=descriptor.name, arguments=json.dumps(args))


# -- Function-call text: read_file("a.txt") ----------------------------------


def _closing_paren(text: str, start: int) -> int:
    """Index of the parenthesis closing the one before *start*, or -1."""
    depth = 1
    quote = None
    i = start
    while i < len(text):
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 1
            elif ch == quote:
                quote = None
        elif ch in "\"'":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def _split_raw(inner: str) -> list[str]:
    """Comma split outside quotes, with surrounding quotes stripped."""
    parts, buf, quote = [], [], None
    for ch in inner:
        if quote:
            if ch == quote:
                quote = None
            buf.append(ch)
        elif ch in "\"'":
            quote = ch
            buf.append(ch)
        elif ch == ",":
            parts.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
    parts.append("".join(buf))
    out = []
    for part in parts:
        part = part.strip()
        if len(part) >= 2 and part[0] == part[-1] and part[0] in "\"'":
            part = part[1:-1]
        if part:
            out.append(part)
    return out


def _call_arguments(descriptor: ToolDescriptor, inner: str) -> dict | None:
    order = descriptor.param_order
    try:
        node = ast.parse(f"_({inner})", mode="eval").body
        positional = [ast.literal_eval(a) for a in node.args]
        keywords = {kw.arg: ast.literal_eval(kw.value) for kw in node.keywords if kw.arg}
    except (SyntaxError, ValueError, TypeError):
        positional, keywords = None, {}
        pieces = _split_raw(inner)
        if any(re.match(r"^[\w-]+\s*=", p) for p in pieces):
            for p in pieces:
                key, _, value = p.partition("=")
                keywords[key.strip()] = value.strip().strip("\"'")
            positional = []
        else:
            positional = pieces

    if len(positional) > len(order):
        return None
    args = dict(zip(order, positional))
    args.update(keywords)
    return args


def parse_function_calls(text: str, known: dict[str, ToolDescriptor]) -> list[ToolCall]:
    if not known:
        return []
    names = "|".join(re.escape(n) for n in sorted(known, key=len, reverse=True))
    pattern = re.compile(rf"(?<![\w.])({names})\s*\(")
    # A call mentioned inside an embedded JSON object is part of its payload.
    spans = [(start, end) for start, end, _ in _json_objects(text)]
    calls = []
    pos = 0
    while True:
        m = pattern.search(text, pos)
        if not m:
            break
        inside = next((e for s, e in spans if s <= m.start() < e), None)
        if inside is not None:
            pos = inside
            continue
        end = _closing_paren(text, m.end())
        if end < 0:
            break
        descriptor = known[m.group(1)]
        args = _call_arguments(descriptor, text[m.end() : end])
        if args is not None:
            calls.append(_make_call(descriptor, args))
        pos = end + 1
    return calls


# -- Embedded JSON: {"action": "write_file", "path": "a.txt"} -----------------


def _json_call(obj: dict, known: dict[str, ToolDescriptor]) -> ToolCall | None:
    fn = obj.get("function")
    if isinstance(fn, dict) and "name" in fn:
        obj = fn

    name_key = next((k for k in _NAME_KEYS if isinstance(obj.get(k), str)), None)
    if name_key is None or obj[name_key] not in known:
        return None
    descriptor = known[obj[name_key]]

    args = None
    for key in _ARG_KEYS:
        value = obj.get(key)
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                continue
        if isinstance(value, dict):
            args = value
            break
    if args is None:
        args = {k: v for k, v in obj.items() if k != name_key}
    return _make_call(descriptor, args)


def _json_objects(text: str):
    """Yield (start, end, value) for each JSON object embedded in *text*."""
    decoder = json.JSONDecoder()
    pos = text.find("{")
    while pos >= 0:
        try:
            obj, end = decoder.raw_decode(text, pos)
        except json.JSONDecodeError:
            pos = text.find("{", pos + 1)
            continue
        yield pos, end, obj
        pos = text.find("{", end)


def parse_json_calls(text: str, known: dict[str, ToolDescriptor]) -> list[ToolCall]:
    calls = []
    for _, _, obj in _json_objects(text):
        candidates = obj if isinstance(obj, list) else [obj]
        for item in candidates:
            if isinstance(item, dict):
                call = _json_call(item, known)
                if call is not None:
                    calls.append(call)
    return calls


# -- Self-closing tags: <read_file path="a.txt"/> -----------------------------


def parse_xml_tags(text: str, known: dict[str, ToolDescriptor]) -> list[ToolCall]:
    calls = []
    for m in _XML_TAG_RE.finditer(text):
        descriptor = known.get(m.group(1))
        if descriptor is None:
            continue
        args = {
            am.group(1): html.unescape(am.group(2) if am.group(2) is not None else am.group(3))
            for am in _XML_ATTR_RE.finditer(m.group(2))
        }
        calls.append(_make_call(descriptor, args))
    return calls


Parser = Callable[[str, dict[str, ToolDescriptor]], list[ToolCall]]

FALLBACK_PARSERS: list[tuple[str, Parser]] = [
    ("function-call", parse_function_calls),
    ("json", parse_json_calls),
    ("xml", parse_xml_tags),
]


def recover_tool_calls(
    text: str, descriptors: list[ToolDescriptor]
) -> tuple[list[ToolCall], str | None]:
    """Run the parser chain; return (calls, parser_name) of the first hit."""
    if not text or not text.strip():
        return [], None
    known = {d.name: d for d in descriptors}
    for label, parser in FALLBACK_PARSERS:
        calls = parser(text, known)
        if calls:
            return calls, label
    return [], None
