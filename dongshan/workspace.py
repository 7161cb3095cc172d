"""Workspace context attached to user requests, and changed-file tracking."""

import logging
import os
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

IGNORED_NAMES = frozenset({".git", "node_modules", "target", ".idea", ".vscode"})
MANIFESTS = (
    "Cargo.toml",
    "package.json",
    "pyproject.toml",
    "requirements.txt",
    "go.mod",
    "pom.xml",
)
MAX_ROOT_ENTRIES = 80
MAX_LISTED_FILES = 120
MANIFEST_PREVIEW_LINES = 80
_GIT_TIMEOUT = 10
_RG_TIMEOUT = 20

_ANALYSIS_KEYS = (
    "分析这个项目",
    "分析项目",
    "审查这个项目",
    "看看这个项目",
    "analyze this project",
    "analyze the project",
    "review this project",
    "review the project",
    "look at this project",
)


def is_project_analysis_request(text: str) -> bool:
    lower = text.lower()
    return any(k in lower for k in _ANALYSIS_KEYS)


def _root_entries(root: Path) -> list[str]:
    out = []
    for entry in root.iterdir():
        if entry.name in IGNORED_NAMES:
            continue
        out.append(entry.name + "/" if entry.is_dir() else entry.name)
    return sorted(out)


def _files_by_rg(root: Path) -> list[str] | None:
    if shutil.which("rg") is None:
        return None
    try:
        proc = subprocess.run(
            ["rg", "--files"],
            cwd=root,
            capture_output=True,
            text=True,
            timeout=_RG_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if proc.returncode != 0:
        return None
    out = []
    for line in proc.stdout.splitlines():
        path = line.strip().replace("\\", "/")
        if path and not IGNORED_NAMES.intersection(path.split("/")):
            out.append(path)
    return sorted(out)


def _files_by_walk(root: Path) -> list[str]:
    out = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if d not in IGNORED_NAMES]
        for name in filenames:
            if name in IGNORED_NAMES:
                continue
            out.append(Path(dirpath, name).relative_to(root).as_posix())
    return sorted(out)


def list_files(root: Path) -> list[str]:
    files = _files_by_rg(root)
    if files is None:
        files = _files_by_walk(root)
    return files


def build_project_snapshot(base_dir: str) -> str:
    """Summary of the workspace layout for project-analysis requests."""
    root = Path(base_dir)
    lines = ["Root entries:"]
    entries = _root_entries(root)
    if not entries:
        lines.append("- (empty)")
    for entry in entries[:MAX_ROOT_ENTRIES]:
        lines.append(f"- {entry}")
    if len(entries) > MAX_ROOT_ENTRIES:
        lines.append(f"- ... ({len(entries) - MAX_ROOT_ENTRIES} more)")

    files = list_files(root)
    lines.append(f"Total indexed files: {len(files)}")
    lines.append("Sample files:")
    for path in files[:MAX_LISTED_FILES]:
        lines.append(f"- {path}")
    if len(files) > MAX_LISTED_FILES:
        lines.append(f"- ... ({len(files) - MAX_LISTED_FILES} more)")

    lines.append("Manifest previews:")
    found = False
    for name in MANIFESTS:
        p = root / name
        if not p.is_file():
            continue
        found = True
        try:
            text = p.read_text(encoding="utf-8", errors="replace")
        except OSError:
            text = "<unreadable>"
        preview = "\n".join(text.splitlines()[:MANIFEST_PREVIEW_LINES])
        lines.append(f"--- {name} ---\n{preview}")
    if not found:
        lines.append("- none found in workspace root")
    return "\n".join(lines)


def augment_user_input(text: str, base_dir: str) -> str:
    """Prefix the request with the workspace path (and a snapshot if asked)."""
    cwd = str(Path(base_dir).resolve())
    if is_project_analysis_request(text):
        snapshot = build_project_snapshot(cwd)
        return (
            f"Workspace CWD: {cwd}\nAuto project snapshot:\n{snapshot}\n\n"
            f"User request: {text}"
        )
    return f"Workspace CWD: {cwd}\nUser request: {text}"


def changed_files(base_dir: str) -> set[str]:
    """Paths reported by ``git status --porcelain``. Empty outside a repo."""
    try:
        proc = subprocess.run(
            ["git", "status", "--porcelain"],
            cwd=base_dir,
            capture_output=True,
            text=True,
            timeout=_GIT_TIMEOUT,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("git status failed: %s", e)
        return set()
    if proc.returncode != 0:
        return set()
    files = set()
    for line in proc.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:].strip()
        if path:
            files.add(path)
    return files


def changed_files_delta(
    before: set[str], after: set[str]
) -> tuple[list[str], list[str], list[str]]:
    """Split into (newly changed, still changed, reverted) sorted lists."""
    added = sorted(after - before)
    still = sorted(after & before)
    reverted = sorted(before - after)
    return added, still, reverted
