"""Provide small git helpers used by the executors."""

from __future__ import annotations

import fnmatch
import subprocess
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import STATE_DIR_NAME


def _git(project_dir: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(["git", *args], cwd=project_dir, capture_output=True, text=True, check=False)


def _ensure_gitignore(project_dir: Path) -> None:
    """Keep the runner's state directory out of task commits."""
    gitignore_path = project_dir / ".gitignore"
    entry = f"{STATE_DIR_NAME}/"
    try:
        contents = gitignore_path.read_text() if gitignore_path.exists() else ""
        existing = {line.strip().rstrip("/") for line in contents.splitlines() if not line.startswith("#")}
        if STATE_DIR_NAME in existing:
            return
        if contents and not contents.endswith("\n"):
            contents += "\n"
        gitignore_path.write_text(contents + entry + "\n")
    except OSError as exc:
        logger.warning("Unable to update .gitignore: {}", exc)


def _git_is_repo(project_dir: Path) -> bool:
    result = _git(project_dir, "rev-parse", "--is-inside-work-tree")
    return result.returncode == 0 and result.stdout.strip() == "true"


def _git_head_sha(project_dir: Path) -> Optional[str]:
    result = _git(project_dir, "rev-parse", "HEAD")
    return result.stdout.strip() if result.returncode == 0 else None


def _normalize_repo_path(path: str) -> str:
    value = str(path).strip().replace("\\", "/")
    while value.startswith("./"):
        value = value[2:]
    return value


def _path_is_allowed(project_dir: Path, path: str, allowed_patterns: list[str]) -> bool:
    """Match `path` against a task's declared files.

    A pattern is a glob when it contains `*?[`, a directory prefix when it ends
    with `/` or names an existing directory, and an exact file path otherwise.
    """
    path = _normalize_repo_path(path)
    for raw in allowed_patterns or []:
        pattern = _normalize_repo_path(raw)
        if not pattern:
            continue
        if any(ch in pattern for ch in "*?["):
            if fnmatch.fnmatch(path, pattern):
                return True
            continue
        base = pattern.rstrip("/")
        if path == base:
            return True
        is_dir = pattern.endswith("/") or (project_dir / base).is_dir()
        if is_dir and path.startswith(base + "/"):
            return True
    return False


def _files_outside_scope(project_dir: Path, files: list[str], allowed_patterns: list[str]) -> list[str]:
    return sorted(
        {_normalize_repo_path(f) for f in files if not _path_is_allowed(project_dir, f, allowed_patterns)}
    )


def _git_changed_files(project_dir: Path, ignore_prefixes: Optional[list[str]] = None) -> list[str]:
    """List modified, staged and untracked files from `git status --porcelain`."""
    result = _git(project_dir, "status", "--porcelain", "--untracked-files=all")
    if result.returncode != 0:
        return []
    prefixes = [p.rstrip("/") for p in (ignore_prefixes if ignore_prefixes is not None else [STATE_DIR_NAME])]
    changed: set[str] = set()
    for line in result.stdout.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        # Renames are reported as "old -> new".
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        path = _normalize_repo_path(path.strip('"'))
        if any(path == p or path.startswith(p + "/") for p in prefixes):
            continue
        changed.add(path)
    return sorted(changed)


def _diff_file_sets(before: list[str], after: list[str]) -> list[str]:
    """Return files changed after a run that were not already dirty before it."""
    before_set = set(before)
    return sorted(path for path in after if path not in before_set)


def _git_add(project_dir: Path, files: list[str]) -> None:
    if not files:
        return
    subprocess.run(["git", "add", "--", *files], cwd=project_dir, check=True)


def _git_commit(project_dir: Path, message: str) -> Optional[str]:
    subprocess.run(["git", "commit", "-m", message], cwd=project_dir, check=True)
    return _git_head_sha(project_dir)
