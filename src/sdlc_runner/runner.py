#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for SDLC Runner.

Drives stories through refine, research, plan, implement and review by asking
the scheduler for the next action and executing it.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .app import DEFAULT_MAX_ITERATIONS, Runtime
from .config import get_review_config, load_runner_config
from .constants import STATE_DIR_NAME
from .errors import SdlcRunnerError, StoryNotFoundError, StoryStateError, WorkflowConfigError
from .fingerprint import get_most_common_error
from .io_utils import _load_data_with_error
from .logging_utils import pretty
from .scheduler import assess_state
from .story import StoryStore, get_effective_max_retries, get_retry_count, unblock_story
from .tasks import TaskProgressStore, parse_implementation_tasks, validate_task_format
from .workflow_config import validate_workflow_config, workflow_config_path

COMMANDS = ("status", "next", "run", "tasks", "validate-workflow", "unblock", "add")


def _configure_logging(level: str = "INFO") -> None:
    """Configure loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


# Initialize with default level; will be reconfigured in main() based on CLI args
_configure_logging()


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def _base_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print machine-readable JSON",
    )
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    return _base_parser("SDLC Runner - show every story and its next action")


def _build_next_parser() -> argparse.ArgumentParser:
    parser = _base_parser("SDLC Runner - show the next recommended action")
    parser.add_argument("--story", dest="story_id", help="Only consider this story")
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = _base_parser("SDLC Runner - execute scheduled actions until no work remains")
    parser.add_argument("--story", dest="story_id", help="Only work on this story")
    parser.add_argument(
        "--max-iterations",
        type=int,
        default=DEFAULT_MAX_ITERATIONS,
        help=f"Maximum actions to execute (default: {DEFAULT_MAX_ITERATIONS})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the dry-run provider; no agents run and nothing is committed",
    )
    return parser


def _build_tasks_parser() -> argparse.ArgumentParser:
    parser = _base_parser("SDLC Runner - show a story's implementation tasks and progress")
    parser.add_argument("story_id", help="Story id")
    return parser


def _build_validate_workflow_parser() -> argparse.ArgumentParser:
    return _base_parser("SDLC Runner - validate .sdlc/workflow.yaml")


def _build_unblock_parser() -> argparse.ArgumentParser:
    parser = _base_parser("SDLC Runner - return a blocked story to the board")
    parser.add_argument("story_id", help="Story id")
    parser.add_argument(
        "--reset-retries",
        action="store_true",
        help="Reset the review retry counter and error history",
    )
    return parser


def _build_add_parser() -> argparse.ArgumentParser:
    parser = _base_parser("SDLC Runner - add a story to the backlog")
    parser.add_argument("title", help="Story title")
    parser.add_argument("--priority", type=int, default=None, help="Priority (lower runs sooner)")
    parser.add_argument("--id", dest="story_id", default=None, help="Explicit story id")
    parser.add_argument(
        "--content-file",
        type=Path,
        default=None,
        help="Markdown file used as the story body",
    )
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _status_command(project_dir: Path, *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    if not state_dir.exists():
        if as_json:
            _write_json({"status": "missing_state_dir", "state_dir": str(state_dir)})
        else:
            sys.stdout.write(f"No state directory found at {state_dir}\n")
        return 0

    config, config_err = load_runner_config(project_dir)
    review_config = get_review_config(config)
    store = StoryStore(project_dir)
    stories = store.list_stories()
    assessment = assess_state(store, review_config, enforce_circuit_breaker=False)
    actions = {a.story_id: a for a in assessment.recommended_actions}
    errors = [config_err] if config_err else []

    rows = []
    for story in stories:
        action = actions.get(story.id)
        rows.append(
            {
                "id": story.id,
                "title": story.title,
                "status": story.status.value,
                "priority": story.priority,
                "retries": f"{get_retry_count(story)}/{get_effective_max_retries(story, review_config)}",
                "next_action": action.type.value if action else None,
                "blocked_reason": story.blocked_reason,
            }
        )

    if as_json:
        _write_json({"project_dir": str(project_dir), "state_dir": str(state_dir), "errors": errors, "stories": rows})
        return 2 if errors else 0

    console = Console()
    console.print(f"Project: {project_dir}")
    console.print(f"State:   {state_dir}")
    for err in errors:
        console.print(f"[red]Config error:[/red] {err}")
    table = Table(title="Stories", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Status", style="bold")
    table.add_column("Priority", justify="right")
    table.add_column("Retries", justify="right")
    table.add_column("Next")
    table.add_column("Blocked reason", style="red")
    for row in rows:
        table.add_row(
            row["id"],
            row["title"] or "",
            row["status"],
            str(row["priority"]),
            row["retries"],
            row["next_action"] or "-",
            row["blocked_reason"] or "",
        )
    console.print(table)
    return 2 if errors else 0


def _next_command(project_dir: Path, story_id: Optional[str], *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    config, config_err = load_runner_config(project_dir)
    if config_err:
        sys.stderr.write(f"{config_err}\n")
        return 2
    assessment = assess_state(
        StoryStore(project_dir), get_review_config(config), story_id=story_id, enforce_circuit_breaker=False
    )
    action = assessment.next_action
    if as_json:
        _write_json({"next_action": action.to_dict() if action else None})
        return 0
    if action is None:
        sys.stdout.write("No work remaining.\n")
        return 0
    sys.stdout.write(f"Next: {action.type.value} {action.story_id} (priority {action.priority})\n")
    sys.stdout.write(f"Reason: {action.reason}\n")
    return 0


def _run_command(
    project_dir: Path,
    *,
    story_id: Optional[str],
    max_iterations: int,
    dry_run: bool,
    as_json: bool = False,
) -> int:
    try:
        runtime = Runtime(project_dir, dry_run=dry_run)
        summary = runtime.run(max_iterations=max_iterations, story_id=story_id)
    except WorkflowConfigError as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    except SdlcRunnerError as exc:
        logger.error("Run aborted: {}", exc)
        return 1

    if as_json:
        _write_json(summary.to_dict())
    else:
        console = Console()
        table = Table(title=f"Run: {summary.stopped_reason}", show_header=True)
        table.add_column("#", justify="right")
        table.add_column("Action", style="cyan")
        table.add_column("Story")
        table.add_column("Result", style="bold")
        for index, entry in enumerate(summary.actions, start=1):
            ok = entry.get("success")
            table.add_row(
                str(index),
                str(entry.get("type") or entry.get("event")),
                str(entry.get("story_id") or ""),
                "[green]✓ ok[/green]" if ok else "[red]✗ failed[/red]",
            )
        console.print(table)
    return 0 if summary.success else 1


def _tasks_command(project_dir: Path, story_id: str, *, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    store = StoryStore(project_dir)
    try:
        story = store.load(story_id)
        progress = TaskProgressStore(project_dir).get_progress(story.id)
    except (StoryNotFoundError, StoryStateError, ValueError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 2

    tasks = parse_implementation_tasks(story.content)
    errors, warnings = validate_task_format(tasks)
    by_id = {entry.task_id: entry for entry in progress}
    rows = []
    for task in tasks:
        entry = by_id.get(task.id)
        rows.append(
            {
                "id": task.id,
                "description": task.description,
                "files": task.files,
                "dependencies": task.dependencies,
                "status": entry.status.value if entry else "pending",
                "error": entry.error if entry else None,
            }
        )

    repeated = get_most_common_error(story.error_history)
    repeated_error = None
    if repeated is not None and repeated.consecutive_count > 1:
        repeated_error = {"preview": repeated.preview, "count": repeated.consecutive_count}

    if as_json:
        _write_json(
            {
                "story_id": story.id,
                "tasks": rows,
                "errors": errors,
                "warnings": warnings,
                "repeated_error": repeated_error,
            }
        )
        return 2 if errors else 0

    console = Console()
    table = Table(title=f"Tasks for {story.id}", show_header=True)
    table.add_column("Task", style="cyan")
    table.add_column("Status", style="bold")
    table.add_column("Depends on")
    table.add_column("Files")
    table.add_column("Description")
    table.add_column("Error", style="red")
    for row in rows:
        table.add_row(
            row["id"],
            row["status"],
            ", ".join(row["dependencies"]) or "-",
            ", ".join(row["files"]) or "-",
            row["description"],
            row["error"] or "",
        )
    console.print(table)
    if repeated_error:
        console.print(f"[yellow]Repeated error ({repeated_error['count']}x):[/yellow] {repeated_error['preview']}")
    for err in errors:
        console.print(f"[red]error:[/red] {err}")
    for warning in warnings:
        console.print(f"[yellow]warning:[/yellow] {warning}")
    return 2 if errors else 0


def _validate_workflow_command(project_dir: Path, *, as_json: bool = False) -> int:
    path = workflow_config_path(project_dir)
    if not path.exists():
        if as_json:
            _write_json({"path": str(path), "exists": False, "errors": [], "warnings": []})
        else:
            sys.stdout.write(f"No workflow file at {path}; default agents will be used.\n")
        return 0
    raw, err = _load_data_with_error(path, {})
    if err:
        errors, warnings = [err], []
    else:
        result = validate_workflow_config(raw)
        errors, warnings = result.errors, result.warnings

    if as_json:
        _write_json({"path": str(path), "exists": True, "errors": errors, "warnings": warnings})
    else:
        for item in errors:
            sys.stdout.write(f"error: {item}\n")
        for item in warnings:
            sys.stdout.write(f"warning: {item}\n")
        if not errors:
            sys.stdout.write(f"{path}: OK\n")
    return 2 if errors else 0


def _unblock_command(project_dir: Path, story_id: str, *, reset_retries: bool, as_json: bool = False) -> int:
    project_dir = project_dir.resolve()
    store = StoryStore(project_dir)
    try:
        story = unblock_story(store, store.load(story_id), reset_retries=reset_retries)
    except (StoryNotFoundError, StoryStateError, ValueError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    reset_tasks = TaskProgressStore(project_dir).reset_failed(story.id)
    if as_json:
        _write_json({"story_id": story.id, "status": story.status.value, "reset_tasks": reset_tasks})
    else:
        sys.stdout.write(f"Story {story.id} is now {story.status.value}\n")
        if reset_tasks:
            sys.stdout.write(f"Failed tasks reset to pending: {', '.join(reset_tasks)}\n")
    return 0


def _add_command(
    project_dir: Path,
    title: str,
    *,
    priority: Optional[int],
    story_id: Optional[str],
    content_file: Optional[Path],
    as_json: bool = False,
) -> int:
    content = content_file.read_text(encoding="utf-8") if content_file else f"# {title}\n"
    try:
        story = StoryStore(project_dir.resolve()).create(
            title,
            priority=priority,
            content=content,
            story_id=story_id,
        )
    except (StoryStateError, ValueError) as exc:
        sys.stderr.write(f"{exc}\n")
        return 2
    if as_json:
        _write_json(story.to_dict())
    else:
        sys.stdout.write(f"Created {story.id} (priority {story.priority})\n")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Run the `sdlc-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS:
        sys.stderr.write("usage: sdlc-runner {" + ",".join(COMMANDS) + "} [options]\n")
        raise SystemExit(2)

    command, rest = argv[0], argv[1:]
    if command == "status":
        args = _build_status_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_status_command(args.project_dir, as_json=bool(args.json)))
    if command == "next":
        args = _build_next_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_next_command(args.project_dir, args.story_id, as_json=bool(args.json)))
    if command == "run":
        args = _build_run_parser().parse_args(rest)
        _configure_logging(args.log_level)
        logger.debug("Run arguments: {}", pretty(vars(args)))
        raise SystemExit(
            _run_command(
                args.project_dir,
                story_id=args.story_id,
                max_iterations=args.max_iterations,
                dry_run=bool(args.dry_run),
                as_json=bool(args.json),
            )
        )
    if command == "tasks":
        args = _build_tasks_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_tasks_command(args.project_dir, args.story_id, as_json=bool(args.json)))
    if command == "validate-workflow":
        args = _build_validate_workflow_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(_validate_workflow_command(args.project_dir, as_json=bool(args.json)))
    if command == "unblock":
        args = _build_unblock_parser().parse_args(rest)
        _configure_logging(args.log_level)
        raise SystemExit(
            _unblock_command(
                args.project_dir,
                args.story_id,
                reset_retries=bool(args.reset_retries),
                as_json=bool(args.json),
            )
        )
    args = _build_add_parser().parse_args(rest)
    _configure_logging(args.log_level)
    raise SystemExit(
        _add_command(
            args.project_dir,
            args.title,
            priority=args.priority,
            story_id=args.story_id,
            content_file=args.content_file,
            as_json=bool(args.json),
        )
    )


if __name__ == "__main__":
    main()
