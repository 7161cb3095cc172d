"""Tests for the agent loop: phases, step bound, policy gating, confirmation."""

import json
import sys
from unittest.mock import patch

import pytest

from dongshan.agent import (
    CONTINUE_INSTRUCTION,
    FAILURE_HINT,
    ConfirmChoice,
    build_system_prompt,
    looks_like_agent_task,
    run_agent_turn,
    run_chat_turn,
    should_use_agent,
)
from dongshan.compact import HistoryLimits, within_budget
from dongshan.errors import NetworkFailure
from dongshan.executor import CommandResult
from dongshan.policy import AutoExecMode, PolicyConfig, PolicyStore
from dongshan.session import Session
from dongshan.verify import VerificationResult

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _tool_response(*commands, prose="Running:"):
    payload = {"tool_calls": [{"tool": "shell", "command": c} for c in commands]}
    return f"{prose}\n```json\n{json.dumps(payload)}\n```"


def _session(text="do the thing"):
    session = Session(id="test")
    session.set_system(build_system_prompt(None, "agent"))
    session.add("user", text)
    return session


def _store(**overrides):
    fields = dict(mode=AutoExecMode.ALL, auto_confirm_exec=False)
    fields.update(overrides)
    return PolicyStore(PolicyConfig(**fields))


def _turn_kwargs(tmp_path, **overrides):
    """Build minimal kwargs for run_agent_turn."""
    defaults = dict(
        llm_kwargs={"model": "test-model", "base_url": "http://fake/v1", "api_key": "k"},
        policy_store=_store(),
        max_steps=3,
        base_dir=str(tmp_path),
        history_limits=HistoryLimits(),
        command_timeout=10,
        max_output_bytes=4096,
        verify=False,
        confirm=None,
        verbose=False,
    )
    defaults.update(overrides)
    return defaults


def _ok(command, stdout="ok"):
    return CommandResult(command=command, stdout=stdout, exit_code=0)


def _fail(command):
    return CommandResult(command=command, stderr="boom", exit_code=1)


def _roles(session):
    return [m.role for m in session.messages]


# ---------------------------------------------------------------------------
# Phase transitions
# ---------------------------------------------------------------------------


class TestFinalAnswer:
    def test_plain_answer_ends_turn(self, tmp_path):
        session = _session()
        with patch("dongshan.agent.call_llm", return_value="All done.") as llm:
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert llm.call_count == 1
        assert result.reply == "All done."
        assert result.stop_reason == "final"
        assert result.steps == 0
        assert _roles(session) == ["system", "user", "assistant"]

    def test_llm_receives_session_messages_and_kwargs(self, tmp_path):
        session = _session()
        with patch("dongshan.agent.call_llm", return_value="hi") as llm:
            run_agent_turn(session, **_turn_kwargs(tmp_path))
        args, kwargs = llm.call_args
        assert args[0] is session.messages
        assert kwargs["model"] == "test-model"

    def test_malformed_tool_calls_are_terminal(self, tmp_path):
        session = _session()
        text = '```json\n{"tool_calls": [{"tool": "shell", "command": "ls"\n```'
        with (
            patch("dongshan.agent.call_llm", return_value=text) as llm,
            patch("dongshan.agent.run_command") as run,
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert llm.call_count == 1
        run.assert_not_called()
        assert result.stop_reason == "final"


class TestToolExecution:
    def test_execute_then_answer(self, tmp_path):
        session = _session()
        responses = [_tool_response("ls"), "Found 3 files."]
        with (
            patch("dongshan.agent.call_llm", side_effect=responses),
            patch("dongshan.agent.run_command", return_value=_ok("ls", "a b c")) as run,
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        run.assert_called_once()
        assert run.call_args[0][0] == "ls"
        assert run.call_args[0][1] == str(tmp_path)
        assert result.reply == "Found 3 files."
        assert result.steps == 1
        assert result.executed == 1
        assert _roles(session) == ["system", "user", "assistant", "tool", "tool", "assistant"]
        assert "a b c" in session.messages[3].content
        assert CONTINUE_INSTRUCTION in session.messages[4].content

    def test_tool_result_precedes_next_reasoning(self, tmp_path):
        session = _session()
        seen = []

        def fake_llm(messages, **kwargs):
            seen.append([m.role for m in messages])
            return _tool_response("ls") if len(seen) == 1 else "done"

        with (
            patch("dongshan.agent.call_llm", side_effect=fake_llm),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert seen[1][-1] == "tool"

    def test_commands_run_in_order(self, tmp_path):
        session = _session()
        order = []

        def fake_run(command, *args, **kwargs):
            order.append(command)
            return _ok(command)

        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("pwd", "ls", "git status"), "done"],
            ),
            patch("dongshan.agent.run_command", side_effect=fake_run),
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert order == ["pwd", "ls", "git status"]

    def test_extra_commands_dropped(self, tmp_path):
        session = _session()
        commands = [f"echo {i}" for i in range(11)]
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response(*commands), "done"]),
            patch("dongshan.agent.run_command", side_effect=lambda c, *a, **k: _ok(c)) as run,
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert run.call_count == 8
        assert result.executed == 8
        assert any("3 extra commands dropped" in m.content for m in session.messages)

    def test_stop_after_two_failures(self, tmp_path):
        session = _session()
        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("a", "b", "c", "d"), "gave up"],
            ),
            patch("dongshan.agent.run_command", side_effect=lambda c, *a, **k: _fail(c)) as run,
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert run.call_count == 2
        contents = "\n".join(m.content for m in session.messages)
        assert "2 remaining commands skipped" in contents
        assert FAILURE_HINT in contents

    @posix_only
    def test_real_command(self, tmp_path):
        (tmp_path / "hello.txt").write_text("hi there")
        session = _session()
        with patch(
            "dongshan.agent.call_llm",
            side_effect=[_tool_response("cat hello.txt"), "It says hi."],
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert result.executed == 1
        assert "hi there" in session.messages[3].content
        assert "Exit code: 0" in session.messages[3].content


class TestStepLimit:
    def test_loop_is_bounded(self, tmp_path):
        session = _session()
        with (
            patch("dongshan.agent.call_llm", return_value=_tool_response("ls")) as llm,
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path, max_steps=3))
        assert llm.call_count == 3
        assert result.stop_reason == "step_limit"
        assert result.steps == 3
        assert result.reply.startswith("stopped after 3 steps")
        assert session.messages[-1].role == "assistant"
        assert session.messages[-1].content == result.reply

    def test_single_step(self, tmp_path):
        session = _session()
        with (
            patch("dongshan.agent.call_llm", return_value=_tool_response("ls")) as llm,
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path, max_steps=1))
        assert llm.call_count == 1
        assert result.stop_reason == "step_limit"

    def test_invalid_max_steps(self, tmp_path):
        with pytest.raises(ValueError):
            run_agent_turn(_session(), **_turn_kwargs(tmp_path, max_steps=0))


# ---------------------------------------------------------------------------
# Policy and confirmation
# ---------------------------------------------------------------------------


class TestPolicyGating:
    def test_denied_command_never_runs(self, tmp_path):
        session = _session()
        store = _store(deny=frozenset({"rm"}))
        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("rm -rf build"), "ok, I won't"],
            ),
            patch("dongshan.agent.run_command") as run,
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path, policy_store=store))
        run.assert_not_called()
        assert result.executed == 0
        assert "command denied by policy" in session.messages[3].content

    def test_safe_mode_denies_writes(self, tmp_path):
        session = _session()
        store = _store(mode=AutoExecMode.SAFE)
        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("touch x", "ls"), "done"],
            ),
            patch("dongshan.agent.run_command", return_value=_ok("ls")) as run,
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path, policy_store=store))
        assert [c[0][0] for c in run.call_args_list] == ["ls"]

    def test_precheck_skips_before_policy(self, tmp_path):
        session = _session()
        store = _store(auto_confirm_exec=True)
        asked = []

        def confirm(command, prefix):
            asked.append(command)
            return ConfirmChoice.YES

        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("python missing.py", "ls"), "ok"],
            ),
            patch("dongshan.agent.run_command", return_value=_ok("ls")) as run,
        ):
            result = run_agent_turn(
                session, **_turn_kwargs(tmp_path, policy_store=store, confirm=confirm)
            )
        assert [c[0][0] for c in run.call_args_list] == ["ls"]
        assert asked == ["ls"]
        assert result.executed == 1
        assert (
            session.messages[3].content
            == "Skipped command: python missing.py (script not found: missing.py)"
        )

    def test_confirm_no_declines(self, tmp_path):
        session = _session()
        store = _store(auto_confirm_exec=True)
        asked = []

        def confirm(command, prefix):
            asked.append((command, prefix))
            return ConfirmChoice.NO

        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("make"), "ok"]),
            patch("dongshan.agent.run_command") as run,
        ):
            run_agent_turn(
                session, **_turn_kwargs(tmp_path, policy_store=store, confirm=confirm)
            )
        run.assert_not_called()
        assert asked == [("make", "make")]
        assert "user declined: make" in session.messages[3].content

    def test_no_confirm_callback_declines(self, tmp_path):
        session = _session()
        store = _store(auto_confirm_exec=True)
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("make"), "ok"]),
            patch("dongshan.agent.run_command") as run,
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path, policy_store=store))
        run.assert_not_called()

    def test_confirm_yes_runs_once(self, tmp_path):
        session = _session()
        store = _store(auto_confirm_exec=True)
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("make"), "ok"]),
            patch("dongshan.agent.run_command", return_value=_ok("make")) as run,
        ):
            run_agent_turn(
                session,
                **_turn_kwargs(
                    tmp_path, policy_store=store, confirm=lambda c, p: ConfirmChoice.YES
                ),
            )
        run.assert_called_once()
        assert store.snapshot().trusted == frozenset()

    def test_always_trusts_prefix_for_later_commands(self, tmp_path):
        session = _session()
        store = _store(auto_confirm_exec=True)
        asked = []

        def confirm(command, prefix):
            asked.append(command)
            return ConfirmChoice.ALWAYS

        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("git commit -m a", "git commit -m b"), "ok"],
            ),
            patch("dongshan.agent.run_command", side_effect=lambda c, *a, **k: _ok(c)) as run,
        ):
            run_agent_turn(
                session, **_turn_kwargs(tmp_path, policy_store=store, confirm=confirm)
            )
        assert run.call_count == 2
        assert asked == ["git commit -m a"]
        assert "git commit" in store.snapshot().trusted

    def test_stop_ends_turn(self, tmp_path):
        session = _session()
        store = _store(auto_confirm_exec=True)
        with (
            patch(
                "dongshan.agent.call_llm", side_effect=[_tool_response("make", "ls"), "x"]
            ) as llm,
            patch("dongshan.agent.run_command") as run,
        ):
            result = run_agent_turn(
                session,
                **_turn_kwargs(
                    tmp_path, policy_store=store, confirm=lambda c, p: ConfirmChoice.STOP
                ),
            )
        run.assert_not_called()
        assert llm.call_count == 1
        assert result.stop_reason == "stopped_by_user"


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestVerification:
    def test_verification_after_execution(self, tmp_path):
        session = _session()
        failed = VerificationResult(
            status="failed", label="rust", command="cargo check", output="error", reason="exit code 1"
        )
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("ls"), "fixed"]),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
            patch("dongshan.agent.run_verification", return_value=failed) as verify,
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path, verify=True))
        verify.assert_called_once()
        assert "verification[rust] failed" in session.messages[4].content

    def test_no_verification_when_nothing_ran(self, tmp_path):
        session = _session()
        store = _store(deny=frozenset({"rm"}))
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("rm x"), "ok"]),
            patch("dongshan.agent.run_verification") as verify,
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path, policy_store=store, verify=True))
        verify.assert_not_called()
        assert session.messages[4].content == CONTINUE_INSTRUCTION

    def test_checker_confirmed_like_other_commands(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("")
        session = _session()
        store = _store(auto_confirm_exec=True)
        asked = []

        def confirm(command, prefix):
            asked.append(command)
            return ConfirmChoice.YES

        checked = CommandResult(command="cargo check", stdout="Finished dev", exit_code=0)
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("ls"), "ok"]),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
            patch("dongshan.verify.run_command", return_value=checked) as checker,
        ):
            run_agent_turn(
                session,
                **_turn_kwargs(tmp_path, policy_store=store, confirm=confirm, verify=True),
            )
        assert asked == ["ls", "cargo check"]
        checker.assert_called_once()
        assert "verification[rust] ok" in session.messages[4].content

    def test_declined_checker_reported_skipped(self, tmp_path):
        (tmp_path / "Cargo.toml").write_text("")
        session = _session()
        store = _store(auto_confirm_exec=True)

        def confirm(command, prefix):
            return ConfirmChoice.NO if command == "cargo check" else ConfirmChoice.YES

        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("ls"), "ok"]),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
            patch("dongshan.verify.run_command") as checker,
        ):
            run_agent_turn(
                session,
                **_turn_kwargs(tmp_path, policy_store=store, confirm=confirm, verify=True),
            )
        checker.assert_not_called()
        assert "verification: skipped" in session.messages[4].content

    def test_verification_disabled(self, tmp_path):
        session = _session()
        with (
            patch("dongshan.agent.call_llm", side_effect=[_tool_response("ls"), "ok"]),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
            patch("dongshan.agent.run_verification") as verify,
        ):
            run_agent_turn(session, **_turn_kwargs(tmp_path, verify=False))
        verify.assert_not_called()


# ---------------------------------------------------------------------------
# Failures and interruption
# ---------------------------------------------------------------------------


class TestFailures:
    def test_network_failure_is_visible_reply(self, tmp_path):
        session = _session()
        with patch(
            "dongshan.agent.call_llm", side_effect=NetworkFailure("connection refused")
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert result.stop_reason == "network_error"
        assert "connection refused" in result.reply
        assert _roles(session) == ["system", "user"]

    def test_network_failure_mid_turn_keeps_earlier_messages(self, tmp_path):
        session = _session()
        with (
            patch(
                "dongshan.agent.call_llm",
                side_effect=[_tool_response("ls"), NetworkFailure("timeout")],
            ),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert result.stop_reason == "network_error"
        assert _roles(session) == ["system", "user", "assistant", "tool", "tool"]

    def test_keyboard_interrupt(self, tmp_path):
        session = _session()
        with (
            patch("dongshan.agent.call_llm", return_value=_tool_response("sleep 100")),
            patch("dongshan.agent.run_command", side_effect=KeyboardInterrupt),
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert result.stop_reason == "interrupted"
        assert _roles(session) == ["system", "user", "assistant"]

    def test_history_compacted_before_each_call(self, tmp_path):
        session = _session()
        for i in range(30):
            session.add("user", f"old {i}")
            session.add("assistant", f"reply {i}")
        seen = []

        def fake_llm(messages, **kwargs):
            seen.append(len(messages))
            return "done"

        with patch("dongshan.agent.call_llm", side_effect=fake_llm):
            run_agent_turn(
                session,
                **_turn_kwargs(tmp_path, history_limits=HistoryLimits(max_messages=10)),
            )
        assert seen[0] <= 10

    def test_interrupt_keeps_finished_command_output(self, tmp_path):
        session = _session()
        with (
            patch("dongshan.agent.call_llm", return_value=_tool_response("pwd", "sleep 100")),
            patch(
                "dongshan.agent.run_command",
                side_effect=[_ok("pwd", "/work/one"), KeyboardInterrupt],
            ),
        ):
            result = run_agent_turn(session, **_turn_kwargs(tmp_path))
        assert result.stop_reason == "interrupted"
        assert _roles(session) == ["system", "user", "assistant", "tool"]
        assert "/work/one" in session.messages[3].content

    def test_history_within_budget_after_turn(self, tmp_path):
        session = _session()
        for i in range(10):
            session.add("user", f"old {i}")
            session.add("assistant", f"reply {i}")
        limits = HistoryLimits(max_messages=6, max_chars=10_000)
        with (
            patch("dongshan.agent.call_llm", return_value=_tool_response("ls")),
            patch("dongshan.agent.run_command", return_value=_ok("ls")),
        ):
            result = run_agent_turn(
                session, **_turn_kwargs(tmp_path, max_steps=1, history_limits=limits)
            )
        assert result.stop_reason == "step_limit"
        assert within_budget(session.messages, 6, 10_000)
        assert session.messages[0].role == "system"
        assert session.messages[-1].content == result.reply

    def test_chat_history_within_budget_after_turn(self):
        session = _session()
        for i in range(10):
            session.add("user", f"old {i}")
            session.add("assistant", f"reply {i}")
        session.add("user", "and now?")
        limits = HistoryLimits(max_messages=4, max_chars=10_000)
        with patch("dongshan.agent.call_llm", return_value="answer"):
            run_chat_turn(session, llm_kwargs={}, history_limits=limits)
        assert within_budget(session.messages, 4, 10_000)
        assert session.messages[-1].content == "answer"


class TestStreaming:
    def test_stream_passes_delta_callback(self, tmp_path):
        session = _session()
        kwargs = _turn_kwargs(tmp_path)
        kwargs["llm_kwargs"] = dict(kwargs["llm_kwargs"], stream=True)

        def fake_llm(messages, on_delta=None, **kw):
            assert kw["stream"] is True
            on_delta("par")
            on_delta("tial")
            return "partial"

        with (
            patch("dongshan.agent.call_llm", side_effect=fake_llm),
            patch("dongshan.agent.fmt.stream_delta") as delta,
        ):
            result = run_agent_turn(session, **kwargs)
        assert result.reply == "partial"
        assert [c[0][0] for c in delta.call_args_list] == ["par", "tial"]


# ---------------------------------------------------------------------------
# Chat mode and routing
# ---------------------------------------------------------------------------


class TestChatTurn:
    def test_tool_calls_not_executed(self, tmp_path):
        session = _session()
        with (
            patch("dongshan.agent.call_llm", return_value=_tool_response("rm -rf /")),
            patch("dongshan.agent.run_command") as run,
        ):
            result = run_chat_turn(session, llm_kwargs={})
        run.assert_not_called()
        assert result.stop_reason == "final"
        assert session.messages[-1].role == "assistant"

    def test_network_failure(self):
        session = _session()
        with patch("dongshan.agent.call_llm", side_effect=NetworkFailure("down")):
            result = run_chat_turn(session, llm_kwargs={})
        assert result.stop_reason == "network_error"


class TestRouting:
    def test_forced_and_chat_modes(self):
        assert should_use_agent("hello", "agent-force") is True
        assert should_use_agent("please fix the bug", "chat") is False

    @pytest.mark.parametrize(
        "text",
        ["Please fix the parser", "implement caching", "run tests please", "修复这个错误"],
    )
    def test_task_keywords(self, text):
        assert looks_like_agent_task(text)
        assert should_use_agent(text, "agent-auto")

    def test_question_stays_chat(self):
        assert not should_use_agent("what does this function do?", "agent-auto")


class TestSystemPrompt:
    def test_agent_prompt_describes_protocol(self):
        prompt = build_system_prompt("Be terse.", "agent")
        assert prompt.startswith("Be terse.")
        assert '"tool_calls"' in prompt
        assert "Current date:" in prompt

    def test_chat_prompt_has_no_protocol(self):
        prompt = build_system_prompt(None, "chat")
        assert "tool_calls" not in prompt
