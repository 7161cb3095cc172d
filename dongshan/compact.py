"""Bound session history to a message count and character budget."""

import logging
from dataclasses import dataclass

from .session import Message, Session

logger = logging.getLogger(__name__)

SUMMARY_TAG = "[session-summary]"
SUMMARY_HEADER = "Compressed earlier context:"
SUMMARY_MAX_LINES = 20
SUMMARY_LINE_CHARS = 220
SUMMARY_MAX_CHARS = 4000
_SUMMARY_TRUNCATED = "...\n[summary truncated]"
# Smallest summary worth keeping: tag, header and one short line.
_MIN_SUMMARY_CHARS = len(SUMMARY_TAG) + len(SUMMARY_HEADER) + 24


@dataclass(frozen=True)
class HistoryLimits:
    max_messages: int = 40
    max_chars: int = 24000
    summarize: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "HistoryLimits":
        return cls(
            max_messages=config.get("history_max_messages", cls.max_messages),
            max_chars=config.get("history_max_chars", cls.max_chars),
            summarize=config.get("history_summarize", cls.summarize),
        )


def _content_chars(messages: list[Message]) -> int:
    return sum(len(m.content) for m in messages if m.role != "system")


def within_budget(messages: list[Message], max_messages: int, max_chars: int) -> bool:
    return len(messages) <= max_messages and _content_chars(messages) <= max_chars


def _truncate(text: str, limit: int, suffix: str) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(suffix):
        return text[:limit]
    return text[: limit - len(suffix)] + suffix


def group_into_exchanges(messages: list[Message]) -> list[list[Message]]:
    """Group non-system messages into atomic exchanges.

    An exchange starts at a user message, or at an assistant message that
    does not directly answer a user message (a summary, or a follow-up
    after tool output). Tool messages always join the open exchange.
    """
    exchanges: list[list[Message]] = []
    prev_role = None
    for msg in messages:
        if msg.role == "system":
            continue
        starts = msg.role == "user" or (msg.role == "assistant" and prev_role != "user")
        if starts or not exchanges:
            exchanges.append([msg])
        else:
            exchanges[-1].append(msg)
        prev_role = msg.role
    return exchanges


def summarize_history(messages: list[Message], limit: int = SUMMARY_MAX_CHARS) -> str:
    """One-line-per-message digest of ``messages`` (the newest 20)."""
    lines = []
    for m in messages:
        if m.role == "assistant" and m.content.startswith(SUMMARY_TAG):
            # Fold an earlier summary in line by line.
            for line in m.content.splitlines():
                if line.startswith("- "):
                    lines.append(line)
            continue
        short = _truncate(m.content.strip(), SUMMARY_LINE_CHARS, "...")
        lines.append(f"- {m.role}: {short.replace(chr(10), ' ')}")
    lines = lines[-SUMMARY_MAX_LINES:]
    body = f"{SUMMARY_TAG}\n{SUMMARY_HEADER}\n" + "\n".join(lines)
    return _truncate(body, min(limit, SUMMARY_MAX_CHARS), _SUMMARY_TRUNCATED)


def compact_history(
    messages: list[Message],
    max_messages: int,
    max_chars: int,
    summarize: bool = True,
) -> list[Message]:
    """Return a history that fits both budgets.

    ``max_messages`` counts the system message, ``max_chars`` does not. The
    system message is always kept. Whole exchanges are evicted oldest
    first; evicted content may be replaced by a single summary message
    when there is room left for it.
    """
    if max_messages < 1 or max_chars < 1:
        raise ValueError("history budgets must be >= 1")
    if within_budget(messages, max_messages, max_chars):
        return list(messages)

    head = [m for m in messages[:1] if m.role == "system"]
    exchanges = group_into_exchanges(messages[len(head):])

    evicted: list[Message] = []
    while exchanges and not within_budget(
        head + [m for ex in exchanges for m in ex], max_messages, max_chars
    ):
        evicted.extend(exchanges.pop(0))
    kept = [m for ex in exchanges for m in ex]

    result = head + kept
    if summarize and evicted:
        room_messages = max_messages - len(result)
        room_chars = max_chars - _content_chars(kept)
        if room_messages >= 1 and room_chars >= _MIN_SUMMARY_CHARS:
            summary = summarize_history(evicted, limit=room_chars)
            result = head + [Message(role="assistant", content=summary)] + kept

    logger.debug(
        "compacted history: %d -> %d messages (%d evicted)",
        len(messages),
        len(result),
        len(evicted),
    )
    return result


def compact_session(
    session: Session, max_messages: int, max_chars: int, summarize: bool = True
) -> bool:
    """Compact ``session`` in place. Returns True if anything changed."""
    compacted = compact_history(session.messages, max_messages, max_chars, summarize)
    if len(compacted) == len(session.messages) and all(
        a is b for a, b in zip(compacted, session.messages)
    ):
        return False
    session.messages[:] = compacted
    return True
