"""Configuration file loading and merging for dongshan.

Reads TOML config from ~/.config/dongshan/config.toml (global) and
<base_dir>/dongshan.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError
from .executor import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT, MAX_TIMEOUT
from .llm import DEFAULT_API_KEY_ENV, DEFAULT_BASE_URL, DEFAULT_LLM_TIMEOUT, DEFAULT_MODEL
from .policy import AutoExecMode

_UNSET = object()  # Sentinel for "not set by CLI"

PROJECT_CONFIG_NAME = "dongshan.toml"
EXECUTION_MODES = ("chat", "agent-auto", "agent-force")


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "base_url": str,
    "model": str,
    "api_key_env": str,
    "api_key": str,
    "system_prompt": str,
    "temperature": (int, float),
    "llm_timeout": int,
    "stream": bool,
    "auto_exec_mode": str,
    "auto_exec_allow": list,
    "auto_exec_deny": list,
    "auto_exec_trusted": list,
    "auto_confirm_exec": bool,
    "history_max_messages": int,
    "history_max_chars": int,
    "history_summarize": bool,
    "max_steps": int,
    "command_timeout": int,
    "max_output_bytes": int,
    "verify": bool,
    "execution_mode": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"auto_exec_allow", "auto_exec_deny", "auto_exec_trusted"}

_POSITIVE_INT_KEYS = {
    "history_max_messages",
    "history_max_chars",
    "max_steps",
    "llm_timeout",
    "command_timeout",
    "max_output_bytes",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "base_url": DEFAULT_BASE_URL,
    "model": DEFAULT_MODEL,
    "api_key_env": DEFAULT_API_KEY_ENV,
    "api_key": None,
    "system_prompt": None,
    "temperature": 0.2,
    "llm_timeout": DEFAULT_LLM_TIMEOUT,
    "stream": True,
    "auto_exec_mode": AutoExecMode.SAFE.value,
    "auto_exec_allow": [],
    "auto_exec_deny": [],
    "auto_exec_trusted": [],
    "auto_confirm_exec": True,
    "history_max_messages": 40,
    "history_max_chars": 24000,
    "history_summarize": True,
    "max_steps": 3,
    "command_timeout": DEFAULT_TIMEOUT,
    "max_output_bytes": DEFAULT_MAX_OUTPUT_BYTES,
    "verify": True,
    "execution_mode": "agent-auto",
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "dongshan"
    return Path.home() / ".config" / "dongshan"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _POSITIVE_INT_KEYS and value < 1:
            raise ConfigError(f"{source}: {key!r} must be >= 1, got {value}")

    if "command_timeout" in config and config["command_timeout"] > MAX_TIMEOUT:
        raise ConfigError(
            f"{source}: 'command_timeout' must be <= {MAX_TIMEOUT}, got {config['command_timeout']}"
        )
    if "auto_exec_mode" in config:
        try:
            AutoExecMode.parse(config["auto_exec_mode"])
        except ConfigError as e:
            raise ConfigError(f"{source}: {e}") from e
    if "execution_mode" in config and config["execution_mode"] not in EXECUTION_MODES:
        raise ConfigError(
            f"{source}: invalid execution_mode {config['execution_mode']!r}, "
            f"expected one of: {', '.join(EXECUTION_MODES)}"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).

    The returned dict also contains ``config_dir`` (a ``Path``) pointing
    to the resolved global config directory (e.g. ``~/.config/dongshan``).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / PROJECT_CONFIG_NAME
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}
    merged["config_dir"] = config_dir
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the argparse value is still _UNSET. If
    so, applies the config value. Remaining sentinels are then replaced
    with the hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key in ("color", "config_dir"):
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def effective_config(args: argparse.Namespace) -> dict:
    """The merged settings as a config-canonical dict (after apply_config_to_args)."""
    out = {}
    for key in CONFIG_KEYS:
        if key == "api_key":
            continue
        out[key] = getattr(args, key, None)
    out["api_key"] = "(set)" if getattr(args, "api_key", None) else None
    return out


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# dongshan configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/dongshan.toml' if project else '~/.config/dongshan/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Endpoint / model ---",
        '# base_url = "https://api.openai.com/v1"',
        '# model = "gpt-4o-mini"',
        '# api_key_env = "OPENAI_API_KEY"   # environment variable holding the key',
        '# api_key = "sk-..."                # fallback; prefer the env var',
        "# temperature = 0.2",
        "# llm_timeout = 120",
        "# stream = true",
        "",
        "# --- Agent behaviour ---",
        '# system_prompt = "You are a terse coding assistant."',
        '# execution_mode = "agent-auto"     # "chat" | "agent-auto" | "agent-force"',
        "# max_steps = 3",
        "# command_timeout = 60",
        "# max_output_bytes = 65536",
        "# verify = true",
        "",
        "# --- Auto-exec policy ---",
        '# auto_exec_mode = "safe"           # "safe" | "all" | "custom"',
        '# auto_exec_allow = ["cargo test", "npm run"]',
        '# auto_exec_deny = ["rm", "git push"]',
        '# auto_exec_trusted = ["git diff"]',
        "# auto_confirm_exec = true",
        "",
        "# --- History ---",
        "# history_max_messages = 40",
        "# history_max_chars = 24000",
        "# history_summarize = true",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
