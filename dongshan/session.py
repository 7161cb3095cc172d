"""Conversation sessions and their on-disk store.

A session holds the ordered messages of one workspace (or one explicitly
named conversation). Sessions are JSON files under
``<config_dir>/sessions/<key>.json`` and are only ever removed explicitly.
"""

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from .errors import SessionError
from .storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

ROLES = ("system", "user", "assistant", "tool")
TOOL_WIRE_PREFIX = "tool output:\n"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Message:
    role: str
    content: str
    timestamp: str = field(default_factory=_now)

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"invalid message role {self.role!r}")

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            timestamp=data.get("timestamp") or _now(),
        )

    def to_wire(self) -> dict:
        """Chat-completion message dict. Tool results travel as user messages."""
        if self.role == "tool":
            return {"role": "user", "content": TOOL_WIRE_PREFIX + self.content}
        return {"role": self.role, "content": self.content}


@dataclass
class Session:
    id: str
    messages: list[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_now)
    last_active_at: str = field(default_factory=_now)

    @property
    def system_message(self) -> Message | None:
        if self.messages and self.messages[0].role == "system":
            return self.messages[0]
        return None

    def append(self, message: Message) -> None:
        if message.role == "system" and self.messages:
            raise ValueError("system message may only head the session")
        self.messages.append(message)
        self.touch()

    def add(self, role: str, content: str) -> Message:
        msg = Message(role=role, content=content)
        self.append(msg)
        return msg

    def set_system(self, content: str) -> None:
        """Install or replace the leading system message."""
        if self.system_message is not None:
            self.messages[0] = Message(role="system", content=content)
        else:
            self.messages.insert(0, Message(role="system", content=content))

    def clear(self) -> int:
        """Drop every non-system message. Returns how many were removed."""
        head = [self.system_message] if self.system_message else []
        dropped = len(self.messages) - len(head)
        self.messages[:] = head
        self.touch()
        return dropped

    def touch(self) -> None:
        self.last_active_at = _now()

    def total_chars(self) -> int:
        return sum(len(m.content) for m in self.messages if m.role != "system")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "messages": [m.to_dict() for m in self.messages],
        }

    @classmethod
    def from_dict(cls, data, key: str) -> "Session":
        # Older session files are a bare list of {role, content}.
        if isinstance(data, list):
            return cls(id=key, messages=[Message.from_dict(m) for m in data])
        return cls(
            id=data.get("id") or key,
            messages=[Message.from_dict(m) for m in data.get("messages", [])],
            created_at=data.get("created_at") or _now(),
            last_active_at=data.get("last_active_at") or _now(),
        )


# ---------------------------------------------------------------------------
# Session keys
# ---------------------------------------------------------------------------


def sanitize_session_name(name: str) -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name)
    return cleaned or "session"


def workspace_session_key(path: str | Path) -> str:
    """Deterministic key for a workspace directory: ``ws-<leaf>-<hash>``."""
    resolved = Path(path).expanduser().resolve()
    digest = hashlib.sha256(str(resolved).encode("utf-8")).hexdigest()[:16]
    leaf = resolved.name or "workspace"
    return sanitize_session_name(f"ws-{leaf}-{digest}")


def resolve_session_name(requested: str, base_dir: str | Path) -> str:
    if requested in ("default", "auto", ""):
        return workspace_session_key(base_dir)
    return sanitize_session_name(requested)


def fresh_session_name(base_dir: str | Path) -> str:
    return f"{workspace_session_key(base_dir)}-{int(time.time())}"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """JSON-file backed persistence for sessions."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / f"{sanitize_session_name(key)}.json"

    def exists(self, key: str) -> bool:
        return self.path_for(key).is_file()

    def load(self, key: str) -> Session:
        """Load a session, or return a fresh empty one if none is stored."""
        path = self.path_for(key)
        try:
            data = read_json(path)
        except (OSError, json.JSONDecodeError) as e:
            raise SessionError(f"{path}: unreadable session: {e}") from e
        if data is None:
            return Session(id=key)
        try:
            return Session.from_dict(data, key)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SessionError(f"{path}: invalid session data: {e}") from e

    def save(self, key: str, session: Session) -> None:
        path = self.path_for(key)
        try:
            atomic_write_json(path, session.to_dict())
        except OSError as e:
            raise SessionError(f"{path}: failed to write session: {e}") from e
        logger.debug("saved session %s (%d messages)", key, len(session.messages))

    def append(
        self,
        key: str,
        message: Message,
        *,
        max_messages: int | None = None,
        max_chars: int | None = None,
        summarize: bool = True,
    ) -> Session:
        """Append ``message`` to the stored session, compact it, save it."""
        from .compact import compact_session

        session = self.load(key)
        session.append(message)
        if max_messages is not None and max_chars is not None:
            compact_session(session, max_messages, max_chars, summarize=summarize)
        self.save(key, session)
        return session

    def list(self) -> list[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.stem for p in self.root.glob("*.json") if p.is_file())

    def delete(self, key: str) -> bool:
        path = self.path_for(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise SessionError(f"{path}: failed to remove session: {e}") from e
        return True
