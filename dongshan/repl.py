"""Interactive chat REPL with slash commands."""

import sys
from dataclasses import dataclass, field

from . import fmt
from .agent import (
    ConfirmChoice,
    TurnResult,
    build_system_prompt,
    run_agent_turn,
    run_chat_turn,
    should_use_agent,
)
from .compact import HistoryLimits, compact_session
from .config import EXECUTION_MODES
from .policy import PolicyStore
from .session import (
    Session,
    SessionStore,
    fresh_session_name,
    resolve_session_name,
)
from .workspace import augment_user_input, changed_files, changed_files_delta


@dataclass
class ReplContext:
    """Everything a turn or a slash command needs; mutated by slash commands."""

    store: SessionStore
    session_key: str
    session: Session
    policy_store: PolicyStore
    base_dir: str
    llm_kwargs: dict
    system_prompt: str | None = None
    execution_mode: str = "agent-auto"
    max_steps: int = 3
    history_limits: HistoryLimits = field(default_factory=HistoryLimits)
    command_timeout: int = 60
    max_output_bytes: int = 64 * 1024
    verify: bool = True
    verbose: bool = True

    def save(self) -> None:
        self.store.save(self.session_key, self.session)


# -- Confirmation prompt -----------------------------------------------------

_CONFIRM_ANSWERS = {
    "y": ConfirmChoice.YES,
    "yes": ConfirmChoice.YES,
    "n": ConfirmChoice.NO,
    "no": ConfirmChoice.NO,
    "": ConfirmChoice.NO,
    "a": ConfirmChoice.ALWAYS,
    "always": ConfirmChoice.ALWAYS,
    "q": ConfirmChoice.STOP,
    "quit": ConfirmChoice.STOP,
}


def prompt_confirm(command: str, prefix: str, ask=None) -> ConfirmChoice:
    """Ask whether to run ``command``. EOF on the prompt stops the turn."""
    if ask is None:
        from prompt_toolkit import prompt as ask

    question = f"run `{command}`? [y]es / [N]o / [a]lways trust '{prefix}' / [q]uit: "
    while True:
        try:
            answer = ask(question)
        except EOFError:
            return ConfirmChoice.STOP
        choice = _CONFIRM_ANSWERS.get(answer.strip().lower())
        if choice is not None:
            return choice
        fmt.warning(f"unrecognized answer {answer.strip()!r}, expected y, n, a or q")


# -- Turns -------------------------------------------------------------------


def run_turn(ctx: ReplContext, text: str, confirm=prompt_confirm) -> TurnResult:
    """Run one user request in the active session, then persist it."""
    before = changed_files(ctx.base_dir)
    use_agent = should_use_agent(text, ctx.execution_mode)
    ctx.session.set_system(
        build_system_prompt(ctx.system_prompt, "agent" if use_agent else "chat")
    )
    ctx.session.add("user", augment_user_input(text, ctx.base_dir))
    try:
        if use_agent:
            result = run_agent_turn(
                ctx.session,
                llm_kwargs=ctx.llm_kwargs,
                policy_store=ctx.policy_store,
                max_steps=ctx.max_steps,
                base_dir=ctx.base_dir,
                history_limits=ctx.history_limits,
                command_timeout=ctx.command_timeout,
                max_output_bytes=ctx.max_output_bytes,
                verify=ctx.verify,
                confirm=confirm,
                verbose=ctx.verbose,
            )
        else:
            result = run_chat_turn(
                ctx.session,
                llm_kwargs=ctx.llm_kwargs,
                history_limits=ctx.history_limits,
                verbose=ctx.verbose,
            )
    finally:
        ctx.save()
    fmt.changed_files(*changed_files_delta(before, changed_files(ctx.base_dir)))
    return result


# -- Slash commands ----------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                     Show this help message\n"
        "  /new [name]               Start a new session (fresh name if omitted)\n"
        "  /clear                    Drop all messages of the current session\n"
        "  /session list             List stored sessions\n"
        "  /session use <name>       Switch to another session\n"
        "  /session rm <name>        Delete a stored session\n"
        "  /mode [show|chat|agent-auto|agent-force]\n"
        "                            Show or change the execution mode\n"
        "  /compact                  Compact history to the configured limits\n"
        "  /policy                   Show the auto-exec policy\n"
        "  /trust <prefix>           Always run commands starting with prefix\n"
        "  /untrust <prefix>         Remove a trusted prefix\n"
        "  /steps [N]                Show or set the max tool steps per turn\n"
        "  /exit, /quit              Exit the REPL"
    )


def _switch_session(ctx: ReplContext, key: str) -> None:
    ctx.save()
    ctx.session_key = key
    ctx.session = ctx.store.load(key)
    fmt.info(f"session: {key} ({len(ctx.session.messages)} messages)")


def _repl_new(ctx: ReplContext, arg: str) -> None:
    key = resolve_session_name(arg, ctx.base_dir) if arg else fresh_session_name(ctx.base_dir)
    if ctx.store.exists(key):
        fmt.warning(f"session {key!r} already exists, switching to it")
    _switch_session(ctx, key)
    ctx.save()


def _repl_clear(ctx: ReplContext) -> None:
    dropped = ctx.session.clear()
    ctx.save()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_session(ctx: ReplContext, arg: str) -> None:
    parts = arg.split(None, 1)
    sub = parts[0].lower() if parts else "list"
    name = parts[1].strip() if len(parts) > 1 else ""

    if sub == "list":
        names = ctx.store.list()
        if ctx.session_key not in names:
            names = sorted([*names, ctx.session_key])
        lines = [f"{'*' if n == ctx.session_key else ' '} {n}" for n in names]
        fmt.info("sessions:\n" + "\n".join(lines))
    elif sub == "use":
        if not name:
            fmt.warning("/session use requires a session name")
            return
        _switch_session(ctx, resolve_session_name(name, ctx.base_dir))
    elif sub == "rm":
        if not name:
            fmt.warning("/session rm requires a session name")
            return
        key = resolve_session_name(name, ctx.base_dir)
        if key == ctx.session_key:
            fmt.warning("cannot remove the active session")
            return
        if ctx.store.delete(key):
            fmt.info(f"removed session {key}")
        else:
            fmt.warning(f"no such session: {key}")
    else:
        fmt.warning(f"unknown /session subcommand {sub!r} (list, use, rm)")


def _repl_mode(ctx: ReplContext, arg: str) -> None:
    arg = arg.strip().lower()
    if arg in ("", "show"):
        fmt.info(f"execution mode: {ctx.execution_mode}")
        return
    if arg not in EXECUTION_MODES:
        fmt.warning(f"invalid mode {arg!r}, expected one of: {', '.join(EXECUTION_MODES)}")
        return
    ctx.execution_mode = arg
    fmt.info(f"execution mode set to {arg}")


def _repl_compact(ctx: ReplContext) -> None:
    before = len(ctx.session.messages)
    chars_before = ctx.session.total_chars()
    limits = ctx.history_limits
    if compact_session(
        ctx.session, limits.max_messages, limits.max_chars, summarize=limits.summarize
    ):
        ctx.save()
        fmt.info(
            f"compacted: {before} -> {len(ctx.session.messages)} messages, "
            f"{chars_before} -> {ctx.session.total_chars()} chars"
        )
    else:
        fmt.context_stats("already within limits", before, chars_before)


def _repl_trust(ctx: ReplContext, arg: str, add: bool) -> None:
    prefix = arg.strip()
    if not prefix:
        fmt.warning(f"/{'trust' if add else 'untrust'} requires a command prefix")
        return
    if add:
        ctx.policy_store.trust(prefix)
        fmt.info(f"trusted: {prefix}")
    else:
        ctx.policy_store.untrust(prefix)
        fmt.info(f"untrusted: {prefix}")


def _repl_steps(ctx: ReplContext, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"max steps: {ctx.max_steps}")
        return
    try:
        n = int(arg)
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    if n < 1:
        fmt.warning("max steps must be at least 1")
        return
    ctx.max_steps = n
    fmt.info(f"max steps set to {n}")


def handle_command(ctx: ReplContext, line: str) -> bool:
    """Run a slash command. Returns True when the REPL should exit."""
    cmd_parts = line.split(None, 1)
    cmd = cmd_parts[0].lower()
    cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

    if cmd in ("/exit", "/quit"):
        return True
    if cmd == "/help":
        _repl_help()
    elif cmd == "/new":
        _repl_new(ctx, cmd_arg.strip())
    elif cmd == "/clear":
        _repl_clear(ctx)
    elif cmd == "/session":
        _repl_session(ctx, cmd_arg)
    elif cmd == "/mode":
        _repl_mode(ctx, cmd_arg)
    elif cmd == "/compact":
        _repl_compact(ctx)
    elif cmd == "/policy":
        fmt.info(ctx.policy_store.describe())
    elif cmd == "/trust":
        _repl_trust(ctx, cmd_arg, add=True)
    elif cmd == "/untrust":
        _repl_trust(ctx, cmd_arg, add=False)
    elif cmd == "/steps":
        _repl_steps(ctx, cmd_arg)
    else:
        fmt.warning(f"unknown command {cmd}, type /help for the list")
    return False


def repl_loop(ctx: ReplContext) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = ctx.store.root.parent / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "dongshan> ")])

    fmt.repl_banner(ctx.session_key, ctx.execution_mode)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except KeyboardInterrupt:
            continue
        except EOFError:
            print(file=sys.stderr)  # newline after ^D
            break

        line = line.strip()
        if not line:
            continue

        if line.startswith("/"):
            if handle_command(ctx, line):
                break
            continue

        result = run_turn(ctx, line)
        streamed = ctx.llm_kwargs.get("stream") and result.stop_reason == "final"
        if result.reply and not streamed:
            print(result.reply)
        if result.stop_reason == "step_limit":
            fmt.warning("max tool steps reached for this request.")
