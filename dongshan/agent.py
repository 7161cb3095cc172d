"""Bounded reason -> execute -> verify loop for one user turn."""

import enum
import time
from dataclasses import dataclass, field
from datetime import datetime

from . import fmt
from .compact import HistoryLimits, compact_session
from .errors import NetworkFailure
from .executor import DEFAULT_MAX_OUTPUT_BYTES, DEFAULT_TIMEOUT, run_command
from .llm import call_llm, estimate_tokens
from .policy import PolicyStore, Verdict, command_prefix, decide, precheck_command
from .session import Session
from .toolcalls import ToolCall, parse_tool_calls
from .verify import run_verification

MAX_AUTO_TOOL_STEPS = 3
MAX_COMMANDS_PER_RESPONSE = 8
MAX_FAILED_COMMANDS_PER_RESPONSE = 2
_PREVIEW_CHARS = 2000

DEFAULT_SYSTEM_PROMPT = (
    "You are dongshan, a terminal coding assistant working inside the user's "
    "project directory. Be concise and concrete. Prefer inspecting files and "
    "running checks over guessing."
)

TOOL_PROTOCOL = """\
To run shell commands in the workspace, include exactly one JSON object in
your reply, preferably inside a ```json fence:

    {"tool_calls": [{"tool": "shell", "command": "rg --files"}]}

Rules:
- "shell" is the only tool. Each command runs in a fresh shell in the workspace root.
- Emit at most 8 commands per reply; keep them small and read before you write.
- Commands may be denied by the local auto-exec policy or declined by the user;
  you will see that in the tool output.
- When no more commands are needed, answer directly without any tool_calls."""

CONTINUE_INSTRUCTION = (
    "Continue based on tool outputs above. If more execution is needed, emit "
    "JSON tool_calls. If complete, give final answer directly with short "
    "summary, changed files, and verification result."
)
FAILURE_HINT = (
    "Some commands failed. Prefer narrower retries: check file/path existence "
    "first, then rerun minimal commands."
)

_AGENT_KEYWORDS_EN = (
    "fix ",
    "implement",
    "refactor",
    "edit ",
    "change ",
    "update ",
    "patch ",
    "apply ",
    "add feature",
    "write code",
    "run tests",
    "build ",
    "compile ",
)
_AGENT_KEYWORDS_ZH = (
    "修复",
    "实现",
    "重构",
    "修改",
    "编辑",
    "补丁",
    "写代码",
    "跑测试",
    "编译",
    "构建",
)


class Phase(enum.Enum):
    REASONING = "reasoning"
    TOOL_EXECUTION = "tool execution"
    VERIFICATION = "verification"
    FINAL = "final"


class ConfirmChoice(enum.Enum):
    YES = "y"
    NO = "n"
    ALWAYS = "a"
    STOP = "q"


@dataclass
class TurnState:
    phase: Phase = Phase.REASONING
    step_count: int = 0
    calls: list[ToolCall] = field(default_factory=list)
    tool_outputs: list[str] = field(default_factory=list)
    response: str = ""
    notice: str | None = None
    stop_reason: str = "final"
    executed: int = 0
    executed_this_step: int = 0
    failed_this_step: int = 0


@dataclass
class TurnResult:
    reply: str
    stop_reason: str  # final | step_limit | network_error | interrupted | stopped_by_user
    steps: int = 0
    executed: int = 0


def looks_like_agent_task(text: str) -> bool:
    lower = text.lower()
    return any(k in lower for k in _AGENT_KEYWORDS_EN) or any(
        k in text for k in _AGENT_KEYWORDS_ZH
    )


def should_use_agent(text: str, execution_mode: str) -> bool:
    if execution_mode == "agent-force":
        return True
    if execution_mode == "chat":
        return False
    return looks_like_agent_task(text)


def build_system_prompt(base_prompt: str | None, mode: str) -> str:
    """Persona plus, outside chat mode, the tool-call protocol and today's date."""
    prompt = (base_prompt or DEFAULT_SYSTEM_PROMPT).rstrip()
    if mode == "chat":
        prompt += "\nYou are in terminal coding assistant chat mode."
    else:
        prompt += "\n\n" + TOOL_PROTOCOL
    prompt += f"\n\nCurrent date: {datetime.now().strftime('%Y-%m-%d')}"
    return prompt


def _compact(session: Session, history_limits: HistoryLimits) -> None:
    compact_session(
        session,
        history_limits.max_messages,
        history_limits.max_chars,
        summarize=history_limits.summarize,
    )


def _call_model(session: Session, llm_kwargs: dict) -> str:
    """Call the model with the session history, streaming or behind a spinner."""
    if llm_kwargs.get("stream"):
        try:
            return call_llm(session.messages, on_delta=fmt.stream_delta, **llm_kwargs)
        finally:
            fmt.stream_end()
    with fmt.llm_spinner():
        return call_llm(session.messages, **llm_kwargs)


def _reason(
    state: TurnState,
    session: Session,
    *,
    llm_kwargs: dict,
    history_limits: HistoryLimits,
    max_steps: int,
    verbose: bool,
) -> None:
    _compact(session, history_limits)
    if verbose:
        fmt.phase(
            Phase.REASONING.value,
            state.step_count + 1,
            max_steps,
            estimate_tokens(session.messages),
        )

    t0 = time.monotonic()
    try:
        text = _call_model(session, llm_kwargs)
    except NetworkFailure as e:
        fmt.error(f"request failed: {e}")
        state.response = f"Request failed: {e}"
        state.stop_reason = "network_error"
        state.phase = Phase.FINAL
        return
    if verbose:
        fmt.llm_timing(time.monotonic() - t0)

    session.add("assistant", text)
    state.response = text

    parsed = parse_tool_calls(text)
    if not parsed:
        if parsed.malformed:
            fmt.warning("response mentions tool_calls but no valid payload was found")
        state.stop_reason = "final"
        state.phase = Phase.FINAL
        return
    state.calls = parsed.calls
    state.phase = Phase.TOOL_EXECUTION


def _execute_tools(
    state: TurnState,
    session: Session,
    *,
    policy_store: PolicyStore,
    base_dir: str,
    command_timeout: int,
    max_output_bytes: int,
    confirm,
    verbose: bool,
) -> None:
    calls = state.calls
    state.tool_outputs = []
    state.executed_this_step = 0
    state.failed_this_step = 0
    if verbose:
        fmt.info(f"phase: {Phase.TOOL_EXECUTION.value} ({len(calls)} calls)")

    def record(output: str) -> None:
        # Appended as soon as it exists so an interrupt keeps finished results.
        state.tool_outputs.append(output)
        session.add("tool", output)

    if len(calls) > MAX_COMMANDS_PER_RESPONSE:
        dropped = len(calls) - MAX_COMMANDS_PER_RESPONSE
        calls = calls[:MAX_COMMANDS_PER_RESPONSE]
        notice = (
            f"{dropped} extra commands dropped "
            f"(max {MAX_COMMANDS_PER_RESPONSE} per response)"
        )
        fmt.warning(notice)
        record(notice)

    for i, call in enumerate(calls):
        if state.failed_this_step >= MAX_FAILED_COMMANDS_PER_RESPONSE:
            notice = (
                f"{len(calls) - i} remaining commands skipped after "
                f"{state.failed_this_step} failures"
            )
            fmt.warning(notice)
            record(notice)
            break

        command = call.command
        skip_reason = precheck_command(command, base_dir)
        if skip_reason:
            fmt.tool_skipped(command, skip_reason)
            record(f"Skipped command: {command} ({skip_reason})")
            continue

        decision = decide(command, policy_store.snapshot())
        if decision.verdict is Verdict.DENY:
            fmt.tool_skipped(command, decision.rule)
            record(f"$ {command}\ncommand denied by policy: {decision.reason or decision.rule}")
            continue

        if decision.verdict is Verdict.ASK_CONFIRM:
            prefix = command_prefix(command)
            choice = confirm(command, prefix) if confirm else ConfirmChoice.NO
            if choice is ConfirmChoice.STOP:
                record(f"user stopped execution at: {command}")
                notice = "execution stopped by user"
                session.add("assistant", notice)
                state.response = notice
                state.stop_reason = "stopped_by_user"
                state.phase = Phase.FINAL
                return
            if choice is ConfirmChoice.NO:
                fmt.tool_skipped(command, "declined")
                record(f"user declined: {command}")
                continue
            if choice is ConfirmChoice.ALWAYS:
                policy_store.trust(prefix)
                fmt.info(f"trusted prefix {prefix!r} for future commands")

        fmt.tool_call(command)
        result = run_command(command, base_dir, command_timeout, max_output_bytes)
        preview = result.output[:_PREVIEW_CHARS] if verbose else ""
        fmt.tool_result(result.elapsed, result.exit_code, preview)
        record(result.format())
        state.executed += 1
        state.executed_this_step += 1
        if result.failed:
            state.failed_this_step += 1

    state.phase = Phase.VERIFICATION


def _verify(
    state: TurnState,
    session: Session,
    *,
    policy_store: PolicyStore,
    base_dir: str,
    max_steps: int,
    max_output_bytes: int,
    verify: bool,
    confirm,
    verbose: bool,
) -> None:
    def confirm_checker(command: str) -> bool:
        if confirm is None:
            return False
        prefix = command_prefix(command)
        choice = confirm(command, prefix)
        if choice is ConfirmChoice.ALWAYS:
            policy_store.trust(prefix)
            fmt.info(f"trusted prefix {prefix!r} for future commands")
        return choice in (ConfirmChoice.YES, ConfirmChoice.ALWAYS)

    parts = []
    if verify and state.executed_this_step:
        if verbose:
            fmt.info(f"phase: {Phase.VERIFICATION.value}")
        result = run_verification(
            base_dir,
            policy_store.snapshot(),
            max_output_bytes=max_output_bytes,
            confirm=confirm_checker,
        )
        fmt.verification(result.status, result.label, result.reason)
        parts.append(result.format())
    if state.failed_this_step:
        parts.append(FAILURE_HINT)
    parts.append(CONTINUE_INSTRUCTION)
    session.add("tool", "\n".join(parts))

    state.step_count += 1
    if state.step_count >= max_steps:
        state.notice = (
            f"stopped after {state.step_count} steps (auto tool step limit). "
            "Continue by describing the next action."
        )
        session.add("assistant", state.notice)
        state.response = state.notice
        state.stop_reason = "step_limit"
        state.phase = Phase.FINAL
        return
    state.phase = Phase.REASONING


def run_agent_turn(
    session: Session,
    *,
    llm_kwargs: dict,
    policy_store: PolicyStore,
    max_steps: int = MAX_AUTO_TOOL_STEPS,
    base_dir: str,
    history_limits: HistoryLimits | None = None,
    command_timeout: int = DEFAULT_TIMEOUT,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    verify: bool = True,
    confirm=None,
    verbose: bool = False,
) -> TurnResult:
    """Run one user turn; the user message must already be in ``session``.

    ``confirm(command, prefix)`` is asked whenever the policy wants a
    confirmation and must return a ConfirmChoice. Without it such commands
    are declined. Messages appended before an interruption stay in the
    session.
    """
    if max_steps < 1:
        raise ValueError("max_steps must be >= 1")
    history_limits = history_limits or HistoryLimits()
    state = TurnState()

    try:
        while state.phase is not Phase.FINAL:
            if state.phase is Phase.REASONING:
                _reason(
                    state,
                    session,
                    llm_kwargs=llm_kwargs,
                    history_limits=history_limits,
                    max_steps=max_steps,
                    verbose=verbose,
                )
            elif state.phase is Phase.TOOL_EXECUTION:
                _execute_tools(
                    state,
                    session,
                    policy_store=policy_store,
                    base_dir=base_dir,
                    command_timeout=command_timeout,
                    max_output_bytes=max_output_bytes,
                    confirm=confirm,
                    verbose=verbose,
                )
            elif state.phase is Phase.VERIFICATION:
                _verify(
                    state,
                    session,
                    policy_store=policy_store,
                    base_dir=base_dir,
                    max_steps=max_steps,
                    max_output_bytes=max_output_bytes,
                    verify=verify,
                    confirm=confirm,
                    verbose=verbose,
                )
    except KeyboardInterrupt:
        fmt.warning("interrupted, turn aborted.")
        state.stop_reason = "interrupted"
        state.response = "interrupted"

    _compact(session, history_limits)
    if verbose:
        fmt.completion(state.step_count, state.stop_reason)
    return TurnResult(
        reply=state.response,
        stop_reason=state.stop_reason,
        steps=state.step_count,
        executed=state.executed,
    )


def run_chat_turn(
    session: Session,
    *,
    llm_kwargs: dict,
    history_limits: HistoryLimits | None = None,
    verbose: bool = False,
) -> TurnResult:
    """One plain LLM exchange; tool calls in the reply are not acted on."""
    history_limits = history_limits or HistoryLimits()
    _compact(session, history_limits)
    t0 = time.monotonic()
    try:
        text = _call_model(session, llm_kwargs)
    except NetworkFailure as e:
        fmt.error(f"request failed: {e}")
        return TurnResult(reply=f"Request failed: {e}", stop_reason="network_error")
    except KeyboardInterrupt:
        fmt.warning("interrupted, turn aborted.")
        return TurnResult(reply="interrupted", stop_reason="interrupted")
    if verbose:
        fmt.llm_timing(time.monotonic() - t0)
    session.add("assistant", text)
    _compact(session, history_limits)
    return TurnResult(reply=text, stop_reason="final")
