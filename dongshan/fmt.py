"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

_console = Console(stderr=True)


def init(
    *,
    color: bool = False,
    no_color: bool = False,
    verbose: bool = False,
    quiet: bool = False,
) -> None:
    """Reconfigure the module-level console and logging from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)

    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING
    root = logging.getLogger("dongshan")
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(
        RichHandler(console=_console, show_time=False, show_path=False, markup=False)
    )
    root.setLevel(level)


# -- Turn structure ----------------------------------------------------------


def phase(name: str, step: int, max_steps: int, token_est: int | None = None) -> None:
    title = f"{name} (step {step}/{max_steps})"
    if token_est is not None:
        title += f" ~{token_est} tokens"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float) -> None:
    _console.print(Text(f"  LLM responded in {elapsed:.1f}s", style="green"))


def llm_spinner(label: str = "Waiting for LLM"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def stream_delta(text: str) -> None:
    _console.print(text, end="", markup=False, highlight=False, soft_wrap=True)


def stream_end() -> None:
    _console.print()


def completion(steps: int, stop_reason: str) -> None:
    if stop_reason == "final":
        _console.print(
            Text(f"  ✓ Turn finished: {steps} tool steps", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Turn finished: {steps} tool steps, stop={stop_reason}",
                style="bold yellow",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(command: str) -> None:
    line = Text()
    line.append("  ▶ shell ", style="bold magenta")
    line.append(command, style="magenta")
    _console.print(line)


def tool_result(elapsed: float, exit_code: int | None, preview: str) -> None:
    header = Text()
    ok = exit_code == 0
    header.append(
        f"  {'✓' if ok else '✗'} exit={exit_code}",
        style="green" if ok else "red",
    )
    header.append(f"  {elapsed:.1f}s", style="green" if ok else "red")
    _console.print(header)
    if preview:
        for line in preview.splitlines()[:20]:
            _console.print(Text(f"    {line}", style="dim"))


def tool_skipped(command: str, reason: str) -> None:
    line = Text()
    line.append("  ✗ skipped ", style="bold red")
    line.append(f"{command}  ({reason})", style="red")
    _console.print(line)


def verification(status: str, label: str | None, summary: str) -> None:
    style = {"ok": "green", "failed": "bold red"}.get(status, "dim")
    line = Text()
    line.append(f"  [verify{':' + label if label else ''}] {status}", style=style)
    if summary:
        line.append(f"  {summary}", style="dim")
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, count: int, chars: int) -> None:
    _console.print(Text(f"  {label}: {count} messages, {chars} chars", style="dim"))


def changed_files(added: list[str], still: list[str], reverted: list[str]) -> None:
    if not (added or still or reverted):
        return
    _console.print(Text("changed files:", style="bold"))
    for p in added:
        _console.print(Text(f"+ {p}", style="green"))
    for p in still:
        _console.print(Text(f"~ {p}", style="yellow"))
    for p in reverted:
        _console.print(Text(f"- {p}", style="red"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(session: str, mode: str) -> None:
    _console.print(Rule(f"dongshan chat ({escape(session)})", style="cyan"))
    _console.print(
        Text(
            f"Execution mode: {mode}. Type /help for commands, /exit or Ctrl-D to quit.",
            style="dim",
        )
    )
