"""Parse implementation plans and persist per-story task progress."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional

from .constants import LOCK_FILE, STATE_DIR_NAME, STORIES_DIR, TASK_PROGRESS_FILE
from .errors import StoryStateError
from .io_utils import FileLock, _load_data_with_error, _save_data
from .models import ImplementationTask, TaskProgressEntry, TaskStatus
from .story import sanitize_story_id
from .utils import _now_iso

IMPLEMENTATION_TASKS_HEADING = "Implementation Tasks"

_TASK_LINE_RE = re.compile(r"^\s*-\s*\[[ xX]\]\s*\*\*(?P<id>[A-Za-z0-9_.-]+)\*\*\s*:?\s*(?P<desc>.*)$")
_FILES_LINE_RE = re.compile(r"^\s+-\s*Files?\s*:\s*(?P<value>.*)$", re.I)
_DEPS_LINE_RE = re.compile(r"^\s+-\s*Dependencies\s*:\s*(?P<value>.*)$", re.I)
_BACKTICK_RE = re.compile(r"`([^`]+)`")


def extract_section(content: str, heading: str) -> Optional[str]:
    """Return the body of the `## <heading>` section, or None when absent.

    The section ends at the next heading of the same or higher level.
    """
    lines = (content or "").splitlines()
    start: Optional[int] = None
    level = 0
    for index, line in enumerate(lines):
        match = re.match(r"^(#{1,6})\s+(.*?)\s*#*\s*$", line)
        if not match:
            continue
        if start is None:
            if match.group(2).strip().lower() == heading.lower():
                start = index + 1
                level = len(match.group(1))
            continue
        if len(match.group(1)) <= level:
            return "\n".join(lines[start:index]).strip("\n")
    if start is None:
        return None
    return "\n".join(lines[start:]).strip("\n")


def replace_section(content: str, heading: str, body: str) -> str:
    """Replace (or append) the `## <heading>` section of a markdown document."""
    new_block = f"## {heading}\n\n{body.strip()}\n"
    lines = (content or "").splitlines()
    start: Optional[int] = None
    end = len(lines)
    for index, line in enumerate(lines):
        match = re.match(r"^(#{1,6})\s+(.*?)\s*#*\s*$", line)
        if not match:
            continue
        if start is None:
            if match.group(2).strip().lower() == heading.lower():
                start = index
            continue
        if len(match.group(1)) <= 2:
            end = index
            break
    if start is None:
        prefix = (content or "").rstrip()
        return (prefix + "\n\n" if prefix else "") + new_block
    head = "\n".join(lines[:start]).rstrip()
    tail = "\n".join(lines[end:]).strip()
    parts = [p for p in (head, new_block.rstrip(), tail) if p]
    return "\n\n".join(parts) + "\n"


def _split_list(value: str) -> list[str]:
    quoted = _BACKTICK_RE.findall(value)
    if quoted:
        return [item.strip() for item in quoted if item.strip()]
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_implementation_tasks(content: str) -> list[ImplementationTask]:
    """Parse the `## Implementation Tasks` section of a story.

    Task lines look like ``- [ ] **T1**: Add the parser`` and may be followed by
    indented ``- Files: `a.py`, `b.py` `` and ``- Dependencies: T1, T2`` (or
    ``none``) bullets.

    Returns:
        Tasks in document order; an empty list when the section is missing.
    """
    section = extract_section(content, IMPLEMENTATION_TASKS_HEADING)
    if not section:
        return []

    tasks: list[ImplementationTask] = []
    current: Optional[ImplementationTask] = None
    for line in section.splitlines():
        task_match = _TASK_LINE_RE.match(line)
        if task_match:
            current = ImplementationTask(
                id=task_match.group("id"),
                description=task_match.group("desc").strip(),
            )
            tasks.append(current)
            continue
        if current is None:
            continue
        files_match = _FILES_LINE_RE.match(line)
        if files_match:
            current.files.extend(_split_list(files_match.group("value")))
            continue
        deps_match = _DEPS_LINE_RE.match(line)
        if deps_match:
            value = deps_match.group("value").strip()
            if value.lower() not in {"", "none", "n/a", "-"}:
                current.dependencies.extend(_split_list(value))
    return tasks


def detect_circular_dependencies(tasks: list[ImplementationTask]) -> list[list[str]]:
    """Return each dependency cycle found among `tasks` as a list of task ids."""
    graph = {task.id: [dep for dep in task.dependencies] for task in tasks}
    cycles: list[list[str]] = []
    seen_cycles: set[frozenset[str]] = set()
    visited: set[str] = set()

    def _visit(node: str, stack: list[str], on_stack: set[str]) -> None:
        visited.add(node)
        stack.append(node)
        on_stack.add(node)
        for dep in graph.get(node, []):
            if dep not in graph:
                continue
            if dep in on_stack:
                cycle = stack[stack.index(dep):] + [dep]
                key = frozenset(cycle)
                if key not in seen_cycles:
                    seen_cycles.add(key)
                    cycles.append(cycle)
            elif dep not in visited:
                _visit(dep, stack, on_stack)
        stack.pop()
        on_stack.discard(node)

    for task_id in graph:
        if task_id not in visited:
            _visit(task_id, [], set())
    return cycles


def validate_task_format(tasks: list[ImplementationTask]) -> tuple[list[str], list[str]]:
    """Check a parsed plan for structural problems.

    Returns:
        `(errors, warnings)`. Duplicate ids, unknown or self dependencies and
        cycles are errors; tasks without declared files are warnings.
    """
    errors: list[str] = []
    warnings: list[str] = []
    ids: set[str] = set()
    for task in tasks:
        if task.id in ids:
            errors.append(f"Duplicate task id: {task.id}")
        ids.add(task.id)

    for task in tasks:
        if not task.description:
            warnings.append(f"Task {task.id} has no description")
        if not task.files:
            warnings.append(f"Task {task.id} declares no files")
        for dep in task.dependencies:
            if dep == task.id:
                errors.append(f"Task {task.id} depends on itself")
            elif dep not in ids:
                errors.append(f"Task {task.id} depends on unknown task {dep}")

    for cycle in detect_circular_dependencies(tasks):
        if len(cycle) > 2:
            errors.append("Circular dependency: " + " -> ".join(cycle))
    return errors, warnings


class TaskProgressStore:
    """Task progress records in `.sdlc/stories/<id>/task_progress.yaml`."""

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir.resolve()

    def _path(self, story_id: str) -> Path:
        return (
            self.project_dir
            / STATE_DIR_NAME
            / STORIES_DIR
            / sanitize_story_id(story_id)
            / TASK_PROGRESS_FILE
        )

    def _read(self, story_id: str) -> list[TaskProgressEntry]:
        data, err = _load_data_with_error(self._path(story_id), {})
        if err:
            raise StoryStateError(err)
        raw = data.get("tasks") or []
        return [TaskProgressEntry.from_dict(item) for item in raw if isinstance(item, dict)]

    def _write(self, story_id: str, entries: list[TaskProgressEntry]) -> None:
        _save_data(
            self._path(story_id),
            {"updated_at": _now_iso(), "tasks": [entry.to_dict() for entry in entries]},
        )

    def get_progress(self, story_id: str) -> list[TaskProgressEntry]:
        return self._read(story_id)

    def init_progress(self, story_id: str, task_ids: list[str]) -> list[TaskProgressEntry]:
        """Create pending records for tasks not yet tracked; existing records are kept."""
        path = self._path(story_id)
        with FileLock(path.parent / LOCK_FILE):
            entries = self._read(story_id)
            known = {entry.task_id for entry in entries}
            for task_id in task_ids:
                if task_id not in known:
                    entries.append(TaskProgressEntry(task_id=task_id))
                    known.add(task_id)
            self._write(story_id, entries)
        return entries

    def update_progress(
        self,
        story_id: str,
        task_id: str,
        status: TaskStatus,
        error: Optional[str] = None,
    ) -> TaskProgressEntry:
        """Set a task's status, stamping `started_at`/`completed_at` as it moves."""
        path = self._path(story_id)
        with FileLock(path.parent / LOCK_FILE):
            entries = self._read(story_id)
            entry = next((e for e in entries if e.task_id == task_id), None)
            if entry is None:
                entry = TaskProgressEntry(task_id=task_id)
                entries.append(entry)
            now = _now_iso()
            if status == TaskStatus.IN_PROGRESS and not entry.started_at:
                entry.started_at = now
            if status in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
                entry.completed_at = now
            entry.status = status
            entry.error = error
            self._write(story_id, entries)
        return entry

    def reset_progress(self, story_id: str) -> None:
        path = self._path(story_id)
        if path.exists():
            path.unlink()

    def reset_failed(self, story_id: str) -> list[str]:
        """Put failed tasks back to `pending` so the next run retries them."""
        path = self._path(story_id)
        if not path.exists():
            return []
        with FileLock(path.parent / LOCK_FILE):
            entries = self._read(story_id)
            reset = []
            for entry in entries:
                if entry.status == TaskStatus.FAILED:
                    entry.status = TaskStatus.PENDING
                    entry.error = None
                    entry.completed_at = None
                    reset.append(entry.task_id)
            if reset:
                self._write(story_id, entries)
        return reset
