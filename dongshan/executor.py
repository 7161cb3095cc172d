"""Shell command execution with output caps and mandatory timeouts.

Only commands that the auto-exec policy allowed are passed here.
"""

import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path

DEFAULT_TIMEOUT = 60
MAX_TIMEOUT = 3600
DEFAULT_MAX_OUTPUT_BYTES = 64 * 1024
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_READER_JOIN_TIMEOUT = 2


@dataclass
class CommandResult:
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    truncated: bool = False
    elapsed: float = 0.0
    timeout: int = DEFAULT_TIMEOUT

    @property
    def failed(self) -> bool:
        return self.timed_out or self.exit_code != 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, for previews and failure heuristics."""
        parts = [p for p in (self.stdout, self.stderr) if p.strip()]
        return "\n".join(parts)

    def format(self) -> str:
        """Render the result as the tool-result text fed back to the model."""
        lines = [f"$ {self.command}"]
        if self.timed_out:
            lines.append(f"[timed out after {self.timeout}s, process killed]")
        else:
            lines.append(f"Exit code: {self.exit_code}")
        if self.stdout.strip():
            lines.append(self.stdout.rstrip("\n"))
        if self.stderr.strip():
            lines.append("[stderr]")
            lines.append(self.stderr.rstrip("\n"))
        if not self.stdout.strip() and not self.stderr.strip():
            lines.append("(no output)")
        return "\n".join(lines)


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # give up, process is unkillable


class _StreamReader:
    """Drain one pipe on a daemon thread, keeping at most ``limit`` bytes."""

    def __init__(self, stream, limit: int):
        self._stream = stream
        self._limit = limit
        self._chunks: list[bytes] = []
        self._total = 0
        self.truncated = False
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self) -> None:
        try:
            while True:
                chunk = self._stream.read(4096)
                if not chunk:
                    break
                if self.truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = self._limit - self._total
                self._chunks.append(chunk[:remaining])
                self._total += len(self._chunks[-1])
                if len(chunk) > remaining:
                    self.truncated = True
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill

    def finish(self) -> str:
        self._thread.join(timeout=_READER_JOIN_TIMEOUT)
        try:
            self._stream.close()
        except OSError:
            pass
        text = b"".join(self._chunks).decode("utf-8", errors="replace")
        if self.truncated:
            text += f"\n[output truncated at {self._limit} bytes]"
        return text


def normalize_windows_shell_command(command: str) -> str:
    """Rewrite ``&&`` outside quotes to ``;`` for Windows PowerShell 5.1."""
    out: list[str] = []
    in_single = in_double = False
    i = 0
    while i < len(command):
        ch = command[i]
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        elif (
            ch == "&"
            and not in_single
            and not in_double
            and command.startswith("&&", i)
        ):
            out.append("; ")
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        wrapped = (
            "$OutputEncoding = [Console]::OutputEncoding = "
            "[System.Text.UTF8Encoding]::new($false); "
            + normalize_windows_shell_command(command)
        )
        return ["powershell", "-NoProfile", "-Command", wrapped]
    return ["/bin/sh", "-c", command]


def run_command(
    command: str,
    working_dir: str,
    timeout: int = DEFAULT_TIMEOUT,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
) -> CommandResult:
    """Run ``command`` through the platform shell inside ``working_dir``.

    Timeouts kill the whole process tree and are reported in the result.
    A KeyboardInterrupt while waiting also kills the tree, then propagates.
    """
    timeout = max(1, min(int(timeout), MAX_TIMEOUT))
    result = CommandResult(command=command, timeout=timeout)

    base_path = Path(working_dir)
    if not base_path.is_dir():
        result.exit_code = 127
        result.stderr = f"working directory does not exist: {working_dir}"
        return result

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=working_dir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    t0 = time.monotonic()
    try:
        proc = subprocess.Popen(_shell_argv(command), **popen_kwargs)
    except OSError as e:
        result.exit_code = 127
        result.stderr = f"failed to start shell: {e}"
        return result

    out_reader = _StreamReader(proc.stdout, max_output_bytes)
    err_reader = _StreamReader(proc.stderr, max_output_bytes)

    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        result.timed_out = True
        _kill_process_tree(proc)
    except KeyboardInterrupt:
        _kill_process_tree(proc)
        out_reader.finish()
        err_reader.finish()
        raise

    result.stdout = out_reader.finish()
    result.stderr = err_reader.finish()
    result.truncated = out_reader.truncated or err_reader.truncated
    result.exit_code = None if result.timed_out else proc.returncode
    result.elapsed = time.monotonic() - t0
    return result
