"""Test implementation plan parsing and task progress persistence."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.models import ImplementationTask, TaskStatus
from sdlc_runner.tasks import (
    TaskProgressStore,
    detect_circular_dependencies,
    extract_section,
    parse_implementation_tasks,
    replace_section,
    validate_task_format,
)

PLAN = """# Story

## Implementation Tasks

- [ ] **T1**: Add parser
  - Files: `src/parser.py`, `tests/test_parser.py`
  - Dependencies: none
- [x] **T2** Wire CLI
  - File: src/cli.py, src/__main__.py
  - Dependencies: T1
- [ ] **T3**: Docs
  - Dependencies: `T1`, `T2`

## Notes
Not a task.
- [ ] **T9**: ignored
"""


def test_parse_tasks_with_files_and_dependencies() -> None:
    tasks = parse_implementation_tasks(PLAN)
    assert [task.id for task in tasks] == ["T1", "T2", "T3"]
    assert tasks[0].files == ["src/parser.py", "tests/test_parser.py"]
    assert tasks[0].dependencies == []
    assert tasks[1].description == "Wire CLI"
    assert tasks[1].files == ["src/cli.py", "src/__main__.py"]
    assert tasks[2].dependencies == ["T1", "T2"]


def test_missing_section_yields_no_tasks() -> None:
    assert parse_implementation_tasks("# Story\n\nNothing planned.\n") == []


def test_extract_section_stops_at_same_level_heading() -> None:
    assert extract_section(PLAN, "Notes") == "Not a task.\n- [ ] **T9**: ignored"
    assert extract_section(PLAN, "Missing") is None


def test_replace_section_in_place_and_append() -> None:
    replaced = replace_section(PLAN, "Notes", "Fresh notes.")
    assert "## Notes\n\nFresh notes." in replaced
    assert "T9" not in replaced
    appended = replace_section("# Story\n", "Research Notes", "Found it.")
    assert appended == "# Story\n\n## Research Notes\n\nFound it.\n"


def test_validate_task_format_reports_errors_and_warnings() -> None:
    tasks = [
        ImplementationTask(id="T1", description="a", files=["a.py"], dependencies=["T1"]),
        ImplementationTask(id="T2", description="b", files=[], dependencies=["T7"]),
        ImplementationTask(id="T2", description="", files=["c.py"]),
    ]
    errors, warnings = validate_task_format(tasks)
    assert "Duplicate task id: T2" in errors
    assert "Task T1 depends on itself" in errors
    assert "Task T2 depends on unknown task T7" in errors
    assert "Task T2 declares no files" in warnings
    assert "Task T2 has no description" in warnings


def test_cycles_are_detected() -> None:
    tasks = [
        ImplementationTask(id="A", description="a", dependencies=["C"]),
        ImplementationTask(id="B", description="b", dependencies=["A"]),
        ImplementationTask(id="C", description="c", dependencies=["B"]),
    ]
    cycles = detect_circular_dependencies(tasks)
    assert len(cycles) == 1
    assert set(cycles[0]) == {"A", "B", "C"}
    errors, _ = validate_task_format(tasks)
    assert any(error.startswith("Circular dependency: ") for error in errors)


def test_progress_store_lifecycle(tmp_path: Path) -> None:
    """Ensure progress survives reloads, keeps existing entries and resets failures."""
    store = TaskProgressStore(tmp_path)
    store.init_progress("story-1", ["T1", "T2"])
    store.update_progress("story-1", "T1", TaskStatus.IN_PROGRESS)
    store.update_progress("story-1", "T1", TaskStatus.COMPLETED)
    store.update_progress("story-1", "T2", TaskStatus.FAILED, "tests failed")

    reloaded = TaskProgressStore(tmp_path)
    reloaded.init_progress("story-1", ["T1", "T2", "T3"])
    entries = {entry.task_id: entry for entry in reloaded.get_progress("story-1")}
    assert entries["T1"].status == TaskStatus.COMPLETED
    assert entries["T1"].started_at and entries["T1"].completed_at
    assert entries["T2"].error == "tests failed"
    assert entries["T3"].status == TaskStatus.PENDING

    assert reloaded.reset_failed("story-1") == ["T2"]
    entry = next(e for e in reloaded.get_progress("story-1") if e.task_id == "T2")
    assert entry.status == TaskStatus.PENDING
    assert entry.error is None

    reloaded.reset_progress("story-1")
    assert reloaded.get_progress("story-1") == []
    assert reloaded.reset_failed("story-1") == []
