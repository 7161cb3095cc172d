"""Post-execution project health check (type-check or test run)."""

from dataclasses import dataclass
from pathlib import Path

from .executor import DEFAULT_MAX_OUTPUT_BYTES, run_command
from .policy import PolicyConfig, Verdict, decide

MAX_VERIFY_OUTPUT_CHARS = 5000
DEFAULT_VERIFY_TIMEOUT = 300

_FAILURE_SIGNATURES = (
    "commandnotfoundexception",
    "can't open file",
    "no such file",
    "module not found",
    "modulenotfounderror",
    "traceback",
    "is not recognized",
    "command not found",
)


@dataclass
class VerificationResult:
    status: str  # "ok" | "failed" | "skipped"
    label: str | None = None
    command: str | None = None
    output: str = ""
    reason: str = ""

    def format(self) -> str:
        if self.status == "skipped":
            return f"verification: skipped ({self.reason})"
        head = f"verification[{self.label}] {self.status}"
        if self.reason:
            head += f" ({self.reason})"
        return f"{head}\n$ {self.command}\n{self.output}".rstrip("\n")


def looks_like_command_failure(output: str) -> bool:
    s = output.lower()
    return any(sig in s for sig in _FAILURE_SIGNATURES)


def detect_verification_command(base_dir: str) -> tuple[str, str] | None:
    """Pick the checker for the project rooted at ``base_dir``, if any."""
    root = Path(base_dir)

    def has(name: str) -> bool:
        return (root / name).exists()

    if has("Cargo.toml"):
        return "rust", "cargo check"
    if has("pnpm-lock.yaml") and has("tsconfig.json"):
        return "typescript", "pnpm -s tsc --noEmit"
    if has("package.json") and has("tsconfig.json"):
        return "typescript", "npm exec -y tsc --noEmit"
    if has("pyproject.toml") or has("pytest.ini"):
        return "python", "pytest -q"
    return None


def _clip(text: str, limit: int = MAX_VERIFY_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "...\n[truncated]"


def run_verification(
    base_dir: str,
    policy: PolicyConfig,
    timeout: int = DEFAULT_VERIFY_TIMEOUT,
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    confirm=None,
) -> VerificationResult:
    """Run the detected checker once, if the auto-exec policy allows it.

    When the policy wants confirmation, ``confirm(command)`` decides; it
    returns True to run the checker. "No checker", "checker not permitted"
    and "declined" are reported as skipped. A checker that ran and failed is
    always reported as failed.
    """
    detected = detect_verification_command(base_dir)
    if detected is None:
        return VerificationResult(
            status="skipped", reason="no supported project checker detected"
        )
    label, command = detected

    decision = decide(command, policy)
    if decision.verdict is Verdict.ASK_CONFIRM:
        if confirm is None or not confirm(command):
            return VerificationResult(
                status="skipped",
                label=label,
                command=command,
                reason=f"{command!r} declined by user",
            )
    elif not decision.allowed:
        return VerificationResult(
            status="skipped",
            label=label,
            command=command,
            reason=f"{command!r} not permitted by auto-exec policy ({decision.rule})",
        )

    result = run_command(command, base_dir, timeout, max_output_bytes)
    output = result.output or "(no output)"
    if result.timed_out:
        status, reason = "failed", f"timed out after {result.timeout}s"
    elif result.exit_code != 0:
        status, reason = "failed", f"exit code {result.exit_code}"
    elif looks_like_command_failure(output):
        status, reason = "failed", "failure reported in output"
    else:
        status, reason = "ok", ""
    return VerificationResult(
        status=status,
        label=label,
        command=command,
        output=_clip(output),
        reason=reason,
    )
