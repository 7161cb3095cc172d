"""Command-line entry point for dongshan."""

import argparse
import sys
from importlib import metadata
from pathlib import Path

from . import fmt
from .agent import build_system_prompt, run_agent_turn
from .compact import HistoryLimits
from .config import (
    _UNSET,
    EXECUTION_MODES,
    apply_config_to_args,
    effective_config,
    generate_config,
    load_config,
)
from .errors import AgentError, ConfigError
from .llm import normalize_base_url, resolve_api_key
from .policy import POLICY_STATE_FILE, AutoExecMode, PolicyConfig, PolicyStore
from .repl import ReplContext, prompt_confirm, repl_loop
from .session import SessionStore, resolve_session_name, workspace_session_key
from .workspace import augment_user_input

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STEP_LIMIT = 2


def _common_options() -> argparse.ArgumentParser:
    """Options shared by every subcommand. Unset values stay _UNSET until config is applied."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--base-dir",
        default=".",
        help="Workspace directory commands run in (default: current directory).",
    )
    common.add_argument("--model", default=_UNSET, help="Model name (default: gpt-4o-mini).")
    common.add_argument(
        "--base-url",
        default=_UNSET,
        help="OpenAI-compatible endpoint (default: https://api.openai.com/v1).",
    )
    common.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key (default: $OPENAI_API_KEY, or the variable named by api_key_env).",
    )
    common.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum tool-execution steps per request (default: 3).",
    )
    common.add_argument(
        "--mode",
        dest="auto_exec_mode",
        choices=[m.value for m in AutoExecMode],
        default=_UNSET,
        help="Auto-exec policy mode for this run (default: safe).",
    )
    common.add_argument(
        "--yes",
        dest="auto_confirm_exec",
        action="store_const",
        const=False,
        default=_UNSET,
        help="Run permitted commands without asking for confirmation.",
    )
    common.add_argument(
        "--no-verify",
        dest="verify",
        action="store_const",
        const=False,
        default=_UNSET,
        help="Skip the project check after commands ran.",
    )
    common.add_argument(
        "--no-stream",
        dest="stream",
        action="store_const",
        const=False,
        default=_UNSET,
        help="Wait for whole responses instead of streaming them.",
    )
    color_group = common.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    common.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Only print errors and final answers.",
    )
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Print debug logging.",
    )
    return common


def build_parser():
    """Build and return the argument parser."""
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="dongshan",
        description="A terminal coding assistant that can run shell commands under a local auto-exec policy.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    sub = parser.add_subparsers(dest="command")

    chat = sub.add_parser("chat", parents=[common], help="Start an interactive session.")
    chat.add_argument(
        "--session",
        default="default",
        help="Session name (default: one session per workspace).",
    )

    agent = sub.add_parser("agent", parents=[common], help="Run a single request and exit.")
    agent.add_argument("task", nargs="+", help="The request for the assistant.")
    agent.add_argument("--session", default="default", help="Session name.")

    config = sub.add_parser("config", help="Show or generate configuration.")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    init = config_sub.add_parser(
        "init", parents=[common], help="Print a commented config template."
    )
    init.add_argument(
        "--project",
        action="store_true",
        help="Template for <project>/dongshan.toml instead of the global file.",
    )
    config_sub.add_parser("show", parents=[common], help="Print the effective settings.")

    policy = sub.add_parser("policy", parents=[common], help="Inspect or edit the auto-exec policy.")
    policy.add_argument(
        "action",
        choices=["show", "mode", "allow", "unallow", "deny", "undeny", "trust", "untrust"],
    )
    policy.add_argument("value", nargs="?", default=None)

    session = sub.add_parser("session", parents=[common], help="List or remove stored sessions.")
    session.add_argument("action", choices=["list", "rm"])
    session.add_argument("name", nargs="?", default=None)

    return parser


def _cli_mode_override(args) -> AutoExecMode | None:
    mode = getattr(args, "auto_exec_mode", _UNSET)
    if mode is _UNSET:
        return None
    return AutoExecMode.parse(mode)


def _policy_store(args, config_dir: Path, mode_override: AutoExecMode | None) -> PolicyStore:
    base = PolicyConfig.from_config(
        {
            "auto_exec_mode": args.auto_exec_mode,
            "auto_exec_allow": args.auto_exec_allow,
            "auto_exec_deny": args.auto_exec_deny,
            "auto_exec_trusted": args.auto_exec_trusted,
            "auto_confirm_exec": args.auto_confirm_exec,
        }
    )
    return PolicyStore(
        base, config_dir / POLICY_STATE_FILE, mode_override=mode_override
    )


def _llm_kwargs(args) -> dict:
    return dict(
        model=args.model,
        base_url=normalize_base_url(args.base_url),
        api_key=resolve_api_key({"api_key_env": args.api_key_env, "api_key": args.api_key}),
        temperature=args.temperature,
        timeout=args.llm_timeout,
        stream=bool(args.stream) and not args.quiet,
    )


def _history_limits(args) -> HistoryLimits:
    return HistoryLimits(
        max_messages=args.history_max_messages,
        max_chars=args.history_max_chars,
        summarize=args.history_summarize,
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        try:
            version = metadata.version("dongshan")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.command is None:
        args = parser.parse_args(["chat"])

    try:
        sys.exit(_run_main(args, parser))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)


def _run_main(args, parser) -> int:
    base_dir = Path(args.base_dir).expanduser().resolve()
    if not base_dir.is_dir():
        raise ConfigError(f"base directory does not exist: {args.base_dir}")
    args.base_dir = str(base_dir)

    mode_override = _cli_mode_override(args)
    config = load_config(base_dir)
    config_dir = config["config_dir"]
    apply_config_to_args(args, config)

    fmt.init(
        color=args.color,
        no_color=args.no_color,
        verbose=args.verbose,
        quiet=args.quiet,
    )

    if args.max_steps < 1:
        parser.error("--max-steps must be >= 1")
    if args.execution_mode not in EXECUTION_MODES:
        raise ConfigError(f"invalid execution_mode {args.execution_mode!r}")

    if args.command == "config":
        return _cmd_config(args, config_dir)
    if args.command == "policy":
        return _cmd_policy(args, _policy_store(args, config_dir, mode_override))
    if args.command == "session":
        return _cmd_session(args, SessionStore(config_dir / "sessions"))

    policy_store = _policy_store(args, config_dir, mode_override)
    store = SessionStore(config_dir / "sessions")
    key = resolve_session_name(args.session, base_dir)

    if args.command == "agent":
        return _cmd_agent(args, store, key, policy_store)

    ctx = ReplContext(
        store=store,
        session_key=key,
        session=store.load(key),
        policy_store=policy_store,
        base_dir=args.base_dir,
        llm_kwargs=_llm_kwargs(args),
        system_prompt=args.system_prompt,
        execution_mode=args.execution_mode,
        max_steps=args.max_steps,
        history_limits=_history_limits(args),
        command_timeout=args.command_timeout,
        max_output_bytes=args.max_output_bytes,
        verify=args.verify,
        verbose=not args.quiet,
    )
    repl_loop(ctx)
    return EXIT_OK


def _cmd_agent(args, store: SessionStore, key: str, policy_store: PolicyStore) -> int:
    task = " ".join(args.task)
    llm_kwargs = _llm_kwargs(args)
    session = store.load(key)
    session.set_system(build_system_prompt(args.system_prompt, "agent"))
    session.add("user", augment_user_input(task, args.base_dir))
    confirm = prompt_confirm if sys.stdin.isatty() else None
    try:
        result = run_agent_turn(
            session,
            llm_kwargs=llm_kwargs,
            policy_store=policy_store,
            max_steps=args.max_steps,
            base_dir=args.base_dir,
            history_limits=_history_limits(args),
            command_timeout=args.command_timeout,
            max_output_bytes=args.max_output_bytes,
            verify=args.verify,
            confirm=confirm,
            verbose=not args.quiet,
        )
    finally:
        store.save(key, session)

    if result.reply:
        print(result.reply)
    if result.stop_reason == "final":
        return EXIT_OK
    if result.stop_reason == "step_limit":
        fmt.warning("max tool steps reached for this request.")
        return EXIT_STEP_LIMIT
    return EXIT_ERROR


def _cmd_config(args, config_dir: Path) -> int:
    if args.config_command == "init":
        print(generate_config(project=args.project))
        return EXIT_OK
    for key, value in effective_config(args).items():
        print(f"{key} = {value!r}")
    print(f"# config_dir = {str(config_dir)!r}")
    return EXIT_OK


def _cmd_policy(args, policy_store: PolicyStore) -> int:
    action, value = args.action, args.value
    if action == "show":
        print(policy_store.describe())
        return EXIT_OK
    if not value:
        raise ConfigError(f"'policy {action}' requires a value")
    if action == "mode":
        policy_store.set_mode(value)
    else:
        edit = {
            "allow": policy_store.allow,
            "unallow": policy_store.remove_allow,
            "deny": policy_store.deny,
            "undeny": policy_store.remove_deny,
            "trust": policy_store.trust,
            "untrust": policy_store.untrust,
        }[action]
        edit(value)
    print(policy_store.describe())
    return EXIT_OK


def _cmd_session(args, store: SessionStore) -> int:
    if args.action == "list":
        workspace_key = workspace_session_key(args.base_dir)
        for name in store.list():
            marker = "*" if name == workspace_key else " "
            print(f"{marker} {name}")
        return EXIT_OK
    if not args.name:
        raise ConfigError("'session rm' requires a session name")
    key = resolve_session_name(args.name, args.base_dir)
    if not store.delete(key):
        fmt.warning(f"no such session: {key}")
        return EXIT_ERROR
    fmt.info(f"removed session {key}")
    return EXIT_OK


if __name__ == "__main__":
    main()
