"""Auto-exec policy: decides whether a proposed shell command may run.

``decide`` is a pure function of the command and a ``PolicyConfig``
snapshot. Runtime changes to the policy sets (the "always trust" answer,
``/trust``, ``dongshan policy ...``) go through ``PolicyStore``, which
serializes writers and persists an overlay next to the TOML config.
"""

import enum
import json
import logging
import threading
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import ConfigError
from .storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

POLICY_STATE_FILE = "policy.json"

# Read-only commands eligible in safe mode (compared case-insensitively so the
# PowerShell cmdlets match however the model spells them).
SAFE_COMMANDS = frozenset(
    {
        "ls",
        "dir",
        "pwd",
        "cat",
        "type",
        "head",
        "tail",
        "wc",
        "rg",
        "grep",
        "findstr",
        "tree",
        "find",
        "get-childitem",
        "get-content",
        "get-location",
    }
)
SAFE_GIT_SUBCOMMANDS = frozenset({"status", "diff", "log", "show", "branch"})
_UNSAFE_FIND_FLAGS = frozenset({"-exec", "-execdir", "-ok", "-okdir", "-delete", "-fprint"})


class AutoExecMode(enum.Enum):
    SAFE = "safe"
    ALL = "all"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: str) -> "AutoExecMode":
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(m.value for m in cls)
            raise ConfigError(f"invalid auto_exec_mode {value!r}, expected one of: {valid}")


class Verdict(enum.Enum):
    ALLOW = "allow"
    DENY = "deny"
    ASK_CONFIRM = "ask_confirm"


@dataclass(frozen=True)
class PolicyDecision:
    verdict: Verdict
    rule: str
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict is Verdict.ALLOW


@dataclass(frozen=True)
class PolicyConfig:
    mode: AutoExecMode = AutoExecMode.SAFE
    allow: frozenset[str] = field(default_factory=frozenset)
    deny: frozenset[str] = field(default_factory=frozenset)
    trusted: frozenset[str] = field(default_factory=frozenset)
    auto_confirm_exec: bool = True

    @classmethod
    def from_config(cls, config: dict) -> "PolicyConfig":
        """Build from a merged config dict (``auto_exec_*`` keys)."""
        mode = config.get("auto_exec_mode", AutoExecMode.SAFE)
        if isinstance(mode, str):
            mode = AutoExecMode.parse(mode)
        return cls(
            mode=mode,
            allow=_clean(config.get("auto_exec_allow", ())),
            deny=_clean(config.get("auto_exec_deny", ())),
            trusted=_clean(config.get("auto_exec_trusted", ())),
            auto_confirm_exec=bool(config.get("auto_confirm_exec", True)),
        )


def _clean(entries) -> frozenset[str]:
    return frozenset(" ".join(e.split()) for e in entries if e and e.strip())


# ---------------------------------------------------------------------------
# Command inspection
# ---------------------------------------------------------------------------


@dataclass
class _Scan:
    segments: list[str]
    redirects: bool = False
    substitution: bool = False


def _scan(command: str) -> _Scan:
    """Split on ``;``, ``&``, ``&&``, ``||``, ``|`` and newlines outside quotes."""
    segments: list[str] = []
    buf: list[str] = []
    redirects = substitution = False
    quote: str | None = None
    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        if ch == "\\" and quote != "'" and i + 1 < n:
            buf.append(command[i : i + 2])
            i += 2
            continue
        if quote:
            buf.append(ch)
            if ch == quote:
                quote = None
            elif quote == '"' and (ch == "`" or command.startswith("$(", i)):
                substitution = True
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            buf.append(ch)
        elif ch == "`" or command.startswith("$(", i):
            substitution = True
            buf.append(ch)
        elif ch == ">":
            redirects = True
            buf.append(ch)
        elif ch == "&" and (
            (buf and buf[-1] in ("<", ">")) or command.startswith("&>", i)
        ):
            # 2>&1, &>file
            buf.append(ch)
        elif command.startswith("&&", i) or command.startswith("||", i):
            segments.append("".join(buf))
            buf = []
            i += 2
            continue
        elif ch in (";", "\n", "&", "|"):
            segments.append("".join(buf))
            buf = []
        else:
            buf.append(ch)
        i += 1
    segments.append("".join(buf))
    return _Scan(
        segments=[s.strip() for s in segments if s.strip()],
        redirects=redirects,
        substitution=substitution,
    )


_MAX_NESTING = 16


def _matching_paren(command: str, start: int) -> int:
    """Index of the ``)`` closing the ``(`` at ``start``, or len(command)."""
    depth = 0
    quote: str | None = None
    for i in range(start, len(command)):
        ch = command[i]
        if quote:
            if ch == quote:
                quote = None
            continue
        if ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return len(command)


def _nested_bodies(command: str) -> list[str]:
    """Bodies of ``$(...)``, backquote and ``( ... )`` subshell groups."""
    bodies: list[str] = []
    quote: str | None = None
    i = 0
    n = len(command)
    while i < n:
        ch = command[i]
        if ch == "\\" and quote != "'" and i + 1 < n:
            i += 2
            continue
        if quote == "'":
            if ch == "'":
                quote = None
            i += 1
            continue
        if ch == "`":
            end = command.find("`", i + 1)
            if end < 0:
                end = n
            bodies.append(command[i + 1 : end])
            i = end + 1
            continue
        # Inside double quotes only $( starts a command.
        if ch == "(" and (quote is None or command[i - 1] == "$"):
            end = _matching_paren(command, i)
            bodies.append(command[i + 1 : end])
            i = end + 1
            continue
        if quote == '"':
            if ch == '"':
                quote = None
        elif ch in ("'", '"'):
            quote = ch
        i += 1
    return bodies


def _deny_parts(command: str, depth: int = 0) -> list[str]:
    """Every command text a deny entry is matched against."""
    parts = [command]
    for segment in _scan(command).segments:
        parts.append(segment)
        # { ...; } groups
        unwrapped = segment.lstrip("{(").strip()
        if unwrapped and unwrapped != segment:
            parts.append(unwrapped)
    if depth < _MAX_NESTING:
        for body in _nested_bodies(command):
            if body.strip():
                parts.extend(_deny_parts(body.strip(), depth + 1))
    return parts


def matches_prefix(entry: str, command: str) -> bool:
    """True if ``entry`` is a whole-token, case-sensitive prefix of ``command``."""
    entry_tokens = entry.split()
    if not entry_tokens:
        return False
    return command.split()[: len(entry_tokens)] == entry_tokens


def _first_match(entries: frozenset[str], command: str) -> str | None:
    # Longest entry first so the reported rule is the most specific one.
    for entry in sorted(entries, key=lambda e: (-len(e.split()), e)):
        if matches_prefix(entry, command):
            return entry
    return None


def _is_safe_segment(segment: str) -> bool:
    tokens = segment.split()
    if not tokens:
        return False
    first = tokens[0].lower()
    if first == "git":
        return len(tokens) > 1 and tokens[1].lower() in SAFE_GIT_SUBCOMMANDS
    if first not in SAFE_COMMANDS:
        return False
    if first == "find" and any(t.lower() in _UNSAFE_FIND_FLAGS for t in tokens[1:]):
        return False
    return True


def command_prefix(command: str) -> str:
    """Prefix remembered when the operator chooses "always trust"."""
    tokens = command.split()
    if not tokens:
        return ""
    if tokens[0].lower() == "git" and len(tokens) > 1:
        return f"{tokens[0]} {tokens[1]}"
    return tokens[0]


MAX_BASE64_COMMAND_CHARS = 700
MAX_PYTHON_C_CHARS = 360
_PYTHON_NAMES = ("python", "python3")


def precheck_command(command: str, base_dir: str) -> str | None:
    """Reason to skip a command that cannot work as written, or None.

    Relative paths are checked against ``base_dir``, where commands run.
    """
    tokens = command.split()
    if not tokens:
        return "empty command"
    first = tokens[0].lower()
    lower = command.lower()

    if "base64" in lower and len(command) > MAX_BASE64_COMMAND_CHARS:
        return "base64 payload too long; use small script file workflow instead"

    if first in _PYTHON_NAMES and " -c " in lower:
        if "\n" in command or len(command) > MAX_PYTHON_C_CHARS:
            return "python -c is too long/multiline; write .py file then run it"

    if first in _PYTHON_NAMES and len(tokens) >= 2:
        script = tokens[1].strip("\"'")
        if script.endswith(".py") and not (Path(base_dir) / script).exists():
            return f"script not found: {script}"

    if first == "pip":
        for i, tok in enumerate(tokens[:-1]):
            if tok == "-r":
                req = tokens[i + 1].strip("\"'")
                if not (Path(base_dir) / req).exists():
                    return f"requirements file not found: {req}"
    return None


def decide(command: str, policy: PolicyConfig) -> PolicyDecision:
    """Return the policy verdict for ``command``. First matching rule wins."""
    command = command.strip()
    if not command:
        return PolicyDecision(Verdict.DENY, "empty", "empty command")

    scan = _scan(command)
    if not scan.segments:
        return PolicyDecision(Verdict.DENY, "empty", "no command to run")
    parts = _deny_parts(command)

    for part in parts:
        hit = _first_match(policy.deny, part)
        if hit is not None:
            return PolicyDecision(Verdict.DENY, f"deny:{hit}", f"matches deny-list entry {hit!r}")

    if policy.mode is AutoExecMode.SAFE:
        if scan.redirects or scan.substitution:
            return PolicyDecision(
                Verdict.DENY,
                "safe-whitelist",
                "safe mode does not allow redirection or command substitution",
            )
        for segment in scan.segments:
            if not _is_safe_segment(segment):
                leading = segment.split()[0]
                return PolicyDecision(
                    Verdict.DENY,
                    "safe-whitelist",
                    f"{leading!r} is not a read-only command allowed in safe mode",
                )

    if policy.mode is AutoExecMode.CUSTOM:
        for segment in scan.segments:
            if _first_match(policy.allow, segment) is None:
                return PolicyDecision(
                    Verdict.DENY,
                    "allow-list",
                    f"{segment!r} matches no allow-list entry in custom mode",
                )

    if not policy.auto_confirm_exec:
        return PolicyDecision(Verdict.ALLOW, "auto_confirm_exec=false")

    trusted_hits = [_first_match(policy.trusted, s) for s in scan.segments]
    if all(hit is not None for hit in trusted_hits):
        return PolicyDecision(Verdict.ALLOW, f"trusted:{trusted_hits[0]}")

    return PolicyDecision(Verdict.ASK_CONFIRM, f"mode:{policy.mode.value}", "needs confirmation")


# ---------------------------------------------------------------------------
# Persistent store
# ---------------------------------------------------------------------------

_OVERLAY_LIST_KEYS = {"allow", "deny", "trusted"}


class PolicyStore:
    """Holds the live policy and serializes every mutation.

    ``base`` comes from the TOML config. Mutations are recorded in a JSON
    overlay at ``state_path`` whose keys replace the corresponding base
    values. Each write re-reads the overlay under the lock, so stores in
    other sessions of the same process never lose each other's updates.
    A ``mode_override`` (the --mode flag) wins over both for this process.
    """

    def __init__(
        self,
        base: PolicyConfig,
        state_path: Path | None = None,
        *,
        mode_override: AutoExecMode | None = None,
    ):
        self._base = base
        self._mode_override = mode_override
        self._state_path = Path(state_path) if state_path is not None else None
        self._lock = threading.Lock()
        with self._lock:
            self._current = self._merge(self._read_overlay())

    @property
    def state_path(self) -> Path | None:
        return self._state_path

    def snapshot(self) -> PolicyConfig:
        with self._lock:
            return self._current

    # -- overlay I/O ---------------------------------------------------------

    def _read_overlay(self) -> dict:
        if self._state_path is None:
            return {}
        try:
            data = read_json(self._state_path)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"{self._state_path}: unreadable policy state: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"{self._state_path}: expected a JSON object")
        for key in _OVERLAY_LIST_KEYS:
            if key in data and not (
                isinstance(data[key], list) and all(isinstance(x, str) for x in data[key])
            ):
                raise ConfigError(f"{self._state_path}: {key!r} must be a list of strings")
        return data

    def _merge(self, overlay: dict) -> PolicyConfig:
        cfg = self._base
        if "mode" in overlay:
            cfg = replace(cfg, mode=AutoExecMode.parse(overlay["mode"]))
        for key in _OVERLAY_LIST_KEYS:
            if key in overlay:
                cfg = replace(cfg, **{key: _clean(overlay[key])})
        if self._mode_override is not None:
            cfg = replace(cfg, mode=self._mode_override)
        return cfg

    def _mutate(self, apply) -> PolicyConfig:
        with self._lock:
            overlay = self._read_overlay()
            effective = self._merge(overlay)
            apply(overlay, effective)
            if self._state_path is not None:
                atomic_write_json(self._state_path, overlay)
            self._current = self._merge(overlay)
            return self._current

    def _edit_list(self, key: str, entry: str, add: bool) -> PolicyConfig:
        entry = " ".join(entry.split())
        if not entry:
            raise ValueError(f"empty {key} entry")

        def apply(overlay: dict, effective: PolicyConfig) -> None:
            values = set(getattr(effective, key))
            if add:
                values.add(entry)
            else:
                values.discard(entry)
            overlay[key] = sorted(values)

        logger.info("policy %s %s %r", "add" if add else "remove", key, entry)
        return self._mutate(apply)

    # -- public mutations ----------------------------------------------------

    def trust(self, prefix: str) -> PolicyConfig:
        return self._edit_list("trusted", prefix, add=True)

    def untrust(self, prefix: str) -> PolicyConfig:
        return self._edit_list("trusted", prefix, add=False)

    def allow(self, prefix: str) -> PolicyConfig:
        return self._edit_list("allow", prefix, add=True)

    def remove_allow(self, prefix: str) -> PolicyConfig:
        return self._edit_list("allow", prefix, add=False)

    def deny(self, prefix: str) -> PolicyConfig:
        return self._edit_list("deny", prefix, add=True)

    def remove_deny(self, prefix: str) -> PolicyConfig:
        return self._edit_list("deny", prefix, add=False)

    def set_mode(self, mode: AutoExecMode | str) -> PolicyConfig:
        if isinstance(mode, str):
            mode = AutoExecMode.parse(mode)

        def apply(overlay: dict, effective: PolicyConfig) -> None:
            overlay["mode"] = mode.value

        logger.info("policy mode -> %s", mode.value)
        return self._mutate(apply)

    def describe(self) -> str:
        cfg = self.snapshot()

        def _fmt(values: frozenset[str]) -> str:
            return ", ".join(sorted(values)) or "(none)"

        return "\n".join(
            [
                f"mode: {cfg.mode.value}",
                f"auto_confirm_exec: {str(cfg.auto_confirm_exec).lower()}",
                f"allow: {_fmt(cfg.allow)}",
                f"deny: {_fmt(cfg.deny)}",
                f"trusted: {_fmt(cfg.trusted)}",
            ]
        )
