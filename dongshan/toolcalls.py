"""Extraction of structured tool calls from free-form model responses.

The model requests execution by embedding a JSON object of the form::

    {"tool_calls": [{"tool": "shell", "command": "ls -la"}]}

anywhere in its reply, bare or inside a ```json fence. Everything else in
the response is commentary.
"""

import enum
import json
import logging
import re
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

TOOL_CALLS_KEY = "tool_calls"

_FENCE_RE = re.compile(r"```json[ \t]*\r?\n?(.*?)```", re.DOTALL | re.IGNORECASE)
_HINT_RE = re.compile(r"tool_calls|\"tool\"\s*:|```json", re.IGNORECASE)


class ToolKind(enum.Enum):
    SHELL = "shell"


@dataclass(frozen=True)
class ToolCall:
    kind: ToolKind
    command: str


@dataclass
class ParseResult:
    calls: list[ToolCall] = field(default_factory=list)
    malformed: bool = False

    def __bool__(self) -> bool:
        return bool(self.calls)

    def __len__(self) -> int:
        return len(self.calls)


def _find_matching_brace(text: str, start: int) -> int | None:
    """Return the index of the brace closing the object opened at ``start``."""
    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _decode(candidate: str):
    """The decoded JSON value, or None if ``candidate`` is not valid JSON."""
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError, RecursionError):
        return None


def _candidates(text: str):
    """Yield decoded JSON values in the order they appear in ``text``."""
    decoded: list[tuple[int, object]] = []
    for m in _FENCE_RE.finditer(text):
        value = _decode(m.group(1).strip())
        if value is not None:
            decoded.append((m.start(), value))

    i = 0
    while True:
        start = text.find("{", i)
        if start < 0:
            break
        end = _find_matching_brace(text, start)
        if end is None:
            i = start + 1
            continue
        value = _decode(text[start : end + 1])
        if value is None:
            # Prose braces around a payload: look inside the span too.
            i = start + 1
            continue
        decoded.append((start, value))
        i = end + 1

    decoded.sort(key=lambda s: s[0])
    for _, value in decoded:
        yield value


def _calls_from_payload(entries: list) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for idx, entry in enumerate(entries):
        if not isinstance(entry, dict):
            logger.debug("tool_calls[%d] is not an object, skipped", idx)
            continue
        tool = entry.get("tool")
        command = entry.get("command")
        if not isinstance(tool, str) or not isinstance(command, str):
            logger.debug("tool_calls[%d] lacks string tool/command, skipped", idx)
            continue
        command = command.strip()
        if not command:
            continue
        try:
            kind = ToolKind(tool.strip().lower())
        except ValueError:
            logger.warning("unrecognized tool %r in tool_calls, dropped", tool)
            continue
        calls.append(ToolCall(kind=kind, command=command))
    return calls


def parse_tool_calls(raw_text: str | None) -> ParseResult:
    """Parse the first valid ``{"tool_calls": [...]}`` object in ``raw_text``.

    Never raises: text without a valid payload gives an empty result, with
    ``malformed`` set when it looked like an attempted tool call.
    """
    if not raw_text:
        return ParseResult()

    for value in _candidates(raw_text):
        if not isinstance(value, dict):
            continue
        entries = value.get(TOOL_CALLS_KEY)
        if not isinstance(entries, list):
            continue
        calls = _calls_from_payload(entries)
        return ParseResult(calls=calls, malformed=bool(entries) and not calls)

    return ParseResult(malformed=bool(_HINT_RE.search(raw_text)))
