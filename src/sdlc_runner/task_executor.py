"""Run a story's implementation plan as a dependency graph of isolated agent calls.

Each task gets a fresh agent invocation with a minimal context (related
acceptance criteria, current file contents, project conventions). Results are
classified as success, recoverable or unrecoverable; recoverable failures are
retried up to `max_retries_per_task`, successful tasks are committed one by one,
and progress is persisted after every step so an interrupted run resumes where
it stopped.
"""

from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional, Sequence, Union

from loguru import logger

from .agents.base import AgentInvoker, AgentRequest
from .agents.errors import classify_api_error
from .config import ImplementationConfig
from .constants import (
    DEFAULT_COMMIT_AFTER_EACH_TASK,
    DEFAULT_IDENTICAL_ERROR_THRESHOLD,
    DEFAULT_MAX_RETRIES_PER_TASK,
    DEFAULT_STOP_ON_FIRST_FAILURE,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
    GENERIC_CRITERIA_FALLBACK,
    PROJECT_PATTERNS_MAX_CHARS,
    TRUNCATION_MARKER,
)
from .errors import CircularDependencyError, ScopeViolationError
from .fingerprint import check_for_identical_errors, create_error_preview, update_error_history
from .git_utils import _files_outside_scope, _git_add, _git_commit
from .io_utils import _read_text_for_prompt
from .models import (
    AgentInvocationResult,
    ErrorFingerprint,
    FailedTaskInfo,
    ImplementationTask,
    OrchestratorResult,
    Story,
    TaskContext,
    TaskProgressEntry,
    TaskResultType,
    TaskStatus,
)
from .prompts import build_task_prompt
from .story import StoryStore
from .tasks import TaskProgressStore, extract_section, parse_implementation_tasks, validate_task_format

ProgressLike = Union[Sequence[TaskProgressEntry], dict[str, TaskStatus]]

_DEPENDENCY_MARKERS = ("dependency", "depends on", "prerequisite")
_IMPOSSIBLE_MARKERS = ("impossible", "cannot be done", "design flaw")
_TIMEOUT_MARKERS = ("timeout", "timed out")
_TRANSIENT_MARKERS = ("rate limit", "network", "connection", "api error")
_VERIFICATION_MARKERS = ("test", "lint", "build")
_NEED_MARKERS = ("unclear", "need", "missing file")
_MISSING_DEPENDENCY_MARKERS = ("need", "missing file", "not provided", "required file", "cannot find")
_MISSING_PATH_RE = re.compile(r"[\w./-]+\.(?:json|toml|ya?ml|pyi?|cfg|ini|md|txt|tsx|jsx|ts|js)\b")
_VERIFY_TIMEOUT_EXIT_CODE = 124

_CRITERION_PREFIXES = ("- [ ]", "- [x]", "- [X]", "* [ ]", "* [x]", "-", "*")
_MAX_FILE_CHARS = 20000


@dataclass
class TaskExecutorOptions:
    max_retries_per_task: int = DEFAULT_MAX_RETRIES_PER_TASK
    commit_after_each_task: bool = DEFAULT_COMMIT_AFTER_EACH_TASK
    stop_on_first_failure: bool = DEFAULT_STOP_ON_FIRST_FAILURE
    dry_run: bool = False
    unknown_failure_policy: str = "recoverable"
    identical_error_threshold: int = DEFAULT_IDENTICAL_ERROR_THRESHOLD
    verify_command: Optional[str] = None
    verify_timeout_seconds: int = DEFAULT_VERIFY_TIMEOUT_SECONDS
    require_changes: bool = False

    @classmethod
    def from_config(
        cls,
        config: ImplementationConfig,
        identical_error_threshold: int = DEFAULT_IDENTICAL_ERROR_THRESHOLD,
    ) -> "TaskExecutorOptions":
        return cls(
            max_retries_per_task=config.max_retries_per_task,
            commit_after_each_task=config.commit_after_each_task,
            stop_on_first_failure=config.stop_on_first_failure,
            dry_run=config.dry_run,
            unknown_failure_policy=config.unknown_failure_policy,
            identical_error_threshold=identical_error_threshold,
            verify_command=config.verify_command,
            verify_timeout_seconds=config.verify_timeout_seconds,
            require_changes=config.require_changes,
        )


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

def _status_map(tasks: Sequence[ImplementationTask], progress: ProgressLike) -> dict[str, TaskStatus]:
    if isinstance(progress, dict):
        known = dict(progress)
    else:
        known = {entry.task_id: entry.status for entry in progress}
    return {task.id: known.get(task.id, TaskStatus.PENDING) for task in tasks}


def find_stranded_tasks(
    tasks: Sequence[ImplementationTask],
    progress: ProgressLike,
) -> dict[str, str]:
    """Return incomplete tasks that can never run because a dependency failed or is unknown.

    Returns:
        Mapping of task id to a human-readable reason.
    """
    statuses = _status_map(tasks, progress)
    by_id = {task.id: task for task in tasks}
    stranded: dict[str, str] = {}

    changed = True
    while changed:
        changed = False
        for task in tasks:
            if task.id in stranded or statuses[task.id] in {TaskStatus.COMPLETED, TaskStatus.FAILED}:
                continue
            for dep in task.dependencies:
                if dep not in by_id:
                    stranded[task.id] = f"Depends on unknown task {dep}"
                elif statuses[dep] == TaskStatus.FAILED:
                    stranded[task.id] = f"Blocked by failed dependency {dep}"
                elif dep in stranded:
                    stranded[task.id] = f"Blocked by failed dependency chain via {dep}"
                else:
                    continue
                changed = True
                break
    return stranded


def get_next_task(
    tasks: Sequence[ImplementationTask],
    progress: ProgressLike,
) -> Optional[ImplementationTask]:
    """Select the next runnable task.

    In-progress tasks are resumed before pending tasks are started; a task is
    runnable only when all of its dependencies are completed.

    Args:
        tasks: Tasks in plan order.
        progress: Persisted progress entries (or a task id -> status mapping).

    Returns:
        The task to run, or None when nothing is left to run.

    Raises:
        CircularDependencyError: If incomplete tasks remain, none is runnable,
            and they are not simply waiting on a failed dependency.
    """
    statuses = _status_map(tasks, progress)

    def _deps_done(task: ImplementationTask) -> bool:
        return all(statuses.get(dep) == TaskStatus.COMPLETED for dep in task.dependencies)

    eligible = [
        task
        for task in tasks
        if statuses[task.id] in {TaskStatus.PENDING, TaskStatus.IN_PROGRESS} and _deps_done(task)
    ]
    for task in eligible:
        if statuses[task.id] == TaskStatus.IN_PROGRESS:
            return task
    if eligible:
        return eligible[0]

    incomplete = [
        task.id
        for task in tasks
        if statuses[task.id] not in {TaskStatus.COMPLETED, TaskStatus.FAILED}
    ]
    if not incomplete:
        return None
    stranded = find_stranded_tasks(tasks, statuses)
    cyclic = [task_id for task_id in incomplete if task_id not in stranded]
    if cyclic:
        raise CircularDependencyError(cyclic)
    return None


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

def _strip_criterion(line: str) -> str:
    text = line.strip()
    for prefix in _CRITERION_PREFIXES:
        if text.startswith(prefix):
            return text[len(prefix):].strip()
    return text


def extract_acceptance_criteria(content: str) -> list[str]:
    section = extract_section(content, "Acceptance Criteria") or ""
    criteria = []
    for line in section.splitlines():
        stripped = line.strip()
        if not stripped or not stripped.startswith(("-", "*")):
            continue
        criterion = _strip_criterion(stripped)
        if criterion:
            criteria.append(criterion)
    return criteria


def _criterion_mentions_files(criterion: str, files: Sequence[str]) -> bool:
    lowered = criterion.lower()
    for file_path in files:
        path = Path(file_path)
        candidates = {file_path.lower(), path.name.lower()}
        if len(path.stem) >= 3:
            candidates.add(path.stem.lower())
        if any(candidate and candidate in lowered for candidate in candidates):
            return True
    return False


def _truncate_patterns(text: str) -> str:
    if len(text) <= PROJECT_PATTERNS_MAX_CHARS:
        return text
    return text[:PROJECT_PATTERNS_MAX_CHARS] + TRUNCATION_MARKER


def build_task_context(
    task: ImplementationTask,
    story_content: str,
    working_directory: Path,
    previous_error: Optional[str] = None,
) -> TaskContext:
    """Build the minimal context for one task.

    Only acceptance criteria that mention one of the task's files are included
    (falling back to the first few criteria), plus the current contents of the
    task's files that already exist and a bounded excerpt of project conventions.
    """
    criteria = extract_acceptance_criteria(story_content)
    related = [c for c in criteria if _criterion_mentions_files(c, task.files)]
    if not related:
        related = criteria[:GENERIC_CRITERIA_FALLBACK]

    root = working_directory.resolve()
    existing: dict[str, str] = {}
    for file_path in task.files:
        candidate = (root / file_path).resolve()
        if not candidate.is_relative_to(root) or not candidate.is_file():
            continue
        text, truncated = _read_text_for_prompt(candidate, max_chars=_MAX_FILE_CHARS)
        existing[file_path] = text + (TRUNCATION_MARKER if truncated else "")

    patterns = (
        extract_section(story_content, "Technical Specification")
        or extract_section(story_content, "Project Conventions")
        or ""
    )
    return TaskContext(
        task=task,
        acceptance_criteria=related,
        existing_files=existing,
        project_patterns=_truncate_patterns(patterns.strip()),
        previous_error=previous_error,
    )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def evaluate_task_result(
    task: ImplementationTask,
    result: AgentInvocationResult,
    attempt: int,
    options: Optional[TaskExecutorOptions] = None,
) -> TaskResultType:
    """Classify one attempt as success, recoverable or unrecoverable.

    Args:
        task: The task that was attempted.
        result: What the agent reported.
        attempt: 1-based attempt number for this task.
        options: Executor options (retry ceiling, unknown-failure policy).

    Returns:
        The classification. Failures that match no known pattern follow
        `options.unknown_failure_policy` (recoverable by default).
    """
    options = options or TaskExecutorOptions()
    if result.success:
        return TaskResultType.SUCCESS
    if attempt > options.max_retries_per_task:
        return TaskResultType.UNRECOVERABLE

    error = (result.error or "").lower()
    if any(marker in error for marker in _DEPENDENCY_MARKERS):
        return TaskResultType.UNRECOVERABLE
    if any(marker in error for marker in _IMPOSSIBLE_MARKERS):
        return TaskResultType.UNRECOVERABLE
    if result.scope_violation:
        return TaskResultType.UNRECOVERABLE

    if any(marker in error for marker in _TIMEOUT_MARKERS):
        return TaskResultType.RECOVERABLE
    if result.transient or any(marker in error for marker in _TRANSIENT_MARKERS):
        return TaskResultType.RECOVERABLE
    if result.verification_passed is False or any(marker in error for marker in _VERIFICATION_MARKERS):
        return TaskResultType.RECOVERABLE
    if result.missing_dependencies or any(marker in error for marker in _NEED_MARKERS):
        return TaskResultType.RECOVERABLE

    if options.unknown_failure_policy == "unrecoverable":
        return TaskResultType.UNRECOVERABLE
    return TaskResultType.RECOVERABLE


def detect_missing_dependencies(text: str) -> list[str]:
    """Return file paths mentioned on lines where the agent says something is missing."""
    found: list[str] = []
    for line in (text or "").splitlines():
        lowered = line.lower()
        if not any(marker in lowered for marker in _MISSING_DEPENDENCY_MARKERS):
            continue
        found.extend(match.group(0) for match in _MISSING_PATH_RE.finditer(line))
    return list(dict.fromkeys(found))


def inspect_task_result(
    task: ImplementationTask,
    result: AgentInvocationResult,
    working_directory: Path,
) -> AgentInvocationResult:
    """Fill in the out-of-scope files and missing inputs the agent did not report.

    Returns a copy; the invoker's result is not modified.
    """
    scope_violation = list(result.scope_violation)
    if not scope_violation and task.files and result.files_changed:
        scope_violation = _files_outside_scope(working_directory, list(result.files_changed), list(task.files))
    missing = list(result.missing_dependencies)
    if not missing and not result.success:
        missing = detect_missing_dependencies("\n".join(part for part in (result.output, result.error) if part))
    return replace(result, scope_violation=scope_violation, missing_dependencies=missing)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------

def run_verify_command(command: str, working_directory: Path, timeout_seconds: int) -> tuple[int, str]:
    """Run the verification command through the shell.

    Returns:
        `(exit_code, output)` with stdout and stderr combined. A timeout reports exit code 124.
    """
    try:
        completed = subprocess.run(
            command,
            cwd=working_directory,
            shell=True,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired:
        return _VERIFY_TIMEOUT_EXIT_CODE, f"Command timed out after {timeout_seconds}s"
    return completed.returncode, (completed.stdout or "") + (completed.stderr or "")


def verify_task_result(
    task: ImplementationTask,
    result: AgentInvocationResult,
    working_directory: Path,
    options: TaskExecutorOptions,
) -> AgentInvocationResult:
    """Check a reported success before it is accepted.

    With `require_changes` a success that touched no files fails with
    "No files were modified". With a `verify_command` the command must exit 0.
    Failed results are returned unchanged.
    """
    if not result.success:
        return result
    if options.require_changes and not result.files_changed:
        return replace(result, success=False, error="No files were modified")
    if not options.verify_command:
        return result

    logger.info("[Task {}] Verifying: {}", task.id, options.verify_command)
    exit_code, output = run_verify_command(options.verify_command, working_directory, options.verify_timeout_seconds)
    if exit_code == 0:
        return replace(result, verification_passed=True)
    error = f"Verification failed (exit {exit_code})"
    preview = create_error_preview(output)
    if preview:
        error = f"{error}: {preview}"
    return replace(result, success=False, verification_passed=False, error=error)


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------

def task_commit_message(story_id: str, task: ImplementationTask) -> str:
    return f"feat({story_id}): Complete task {task.id} - {task.description}"


def commit_task_completion(
    task: ImplementationTask,
    story_id: str,
    changed_files: Sequence[str],
    working_directory: Path,
) -> Optional[str]:
    """Stage and commit exactly the files a task changed.

    Returns:
        The new commit sha, or None when there was nothing to commit.

    Raises:
        ScopeViolationError: If any changed file lies outside the task's declared files.
        subprocess.CalledProcessError: If `git add`/`git commit` fails.
    """
    files = sorted(set(changed_files))
    if not files:
        logger.info("[Task {}] No changes to commit", task.id)
        return None
    outside = _files_outside_scope(working_directory, files, task.files)
    if outside:
        raise ScopeViolationError(task.id, outside)
    _git_add(working_directory, files)
    sha = _git_commit(working_directory, task_commit_message(story_id, task))
    logger.info("[Task {}] Committed {} file(s) as {}", task.id, len(files), sha or "?")
    return sha


# ---------------------------------------------------------------------------
# Run loop
# ---------------------------------------------------------------------------

def _invoke(invoker: AgentInvoker, request: AgentRequest) -> AgentInvocationResult:
    try:
        return invoker.invoke(request)
    except Exception as exc:
        logger.warning("[Task {}] Agent invocation raised: {}", request.task_id, exc)
        return AgentInvocationResult(
            success=False,
            error=str(exc) or exc.__class__.__name__,
            transient=classify_api_error(exc) == "transient",
        )


def _record_failure_fingerprint(
    story: Story,
    story_store: Optional[StoryStore],
    task: ImplementationTask,
    error: str,
    threshold: int,
    streams: dict[str, list[ErrorFingerprint]],
) -> bool:
    """Track the failure and return True when this task keeps failing the same way.

    Repeats are counted per task within one run (`streams`); the story's
    `error_history` is updated as well so the failure stays visible afterwards.
    """
    history = streams.get(task.id, [])
    check = check_for_identical_errors(error, history, threshold=threshold)
    streams[task.id] = update_error_history(history, error)
    story.error_history = update_error_history(story.error_history, error)
    story.last_error = f"{task.id}: {check.preview}" if check.preview else task.id
    if story_store is not None:
        story_store.save(story)
    if check.is_identical:
        logger.warning(
            "[Task {}] Identical error seen {} times in a row: {}",
            task.id,
            check.consecutive_count,
            check.preview,
        )
    return check.is_identical


def _summarize(
    tasks: Sequence[ImplementationTask],
    progress: Sequence[TaskProgressEntry],
    failed_tasks: list[FailedTaskInfo],
    invocations: int,
    error: Optional[str] = None,
) -> OrchestratorResult:
    statuses = _status_map(tasks, progress)
    completed = sum(1 for s in statuses.values() if s == TaskStatus.COMPLETED)
    failed = sum(1 for s in statuses.values() if s == TaskStatus.FAILED)
    remaining = len(tasks) - completed - failed
    return OrchestratorResult(
        success=error is None and failed == 0 and remaining == 0,
        tasks_completed=completed,
        tasks_failed=failed,
        tasks_remaining=remaining,
        failed_tasks=failed_tasks,
        total_agent_invocations=invocations,
        error=error,
    )


def run_implementation_tasks(
    story: Story,
    *,
    working_directory: Path,
    invoker: AgentInvoker,
    progress_store: TaskProgressStore,
    story_store: Optional[StoryStore] = None,
    options: Optional[TaskExecutorOptions] = None,
    tasks: Optional[list[ImplementationTask]] = None,
) -> OrchestratorResult:
    """Execute the story's implementation tasks until done, failed, or halted.

    Never raises for task failures: the outcome is reported in the returned
    `OrchestratorResult`. A circular dependency stops the run with
    `success=False` and no further commits.
    """
    options = options or TaskExecutorOptions()
    if tasks is None:
        tasks = parse_implementation_tasks(story.content)
    if not tasks:
        logger.error("[Story {}] No implementation tasks found", story.id)
        return OrchestratorResult(success=False, error="No implementation tasks found in story")

    errors, warnings = validate_task_format(tasks)
    for message in warnings:
        logger.warning("[Story {}] Task plan: {}", story.id, message)
    for message in errors:
        logger.error("[Story {}] Task plan: {}", story.id, message)

    progress_store.init_progress(story.id, [task.id for task in tasks])
    progress = progress_store.get_progress(story.id)
    already_done = sum(1 for entry in progress if entry.status == TaskStatus.COMPLETED)
    if already_done:
        logger.info("[Story {}] Resuming: {}/{} tasks already completed", story.id, already_done, len(tasks))

    attempts: dict[str, int] = {}
    last_errors: dict[str, str] = {}
    streams: dict[str, list[ErrorFingerprint]] = {}
    failed_tasks: list[FailedTaskInfo] = []
    invocations = 0

    while True:
        try:
            task = get_next_task(tasks, progress)
        except CircularDependencyError as exc:
            logger.error("[Story {}] {}", story.id, exc)
            return _summarize(tasks, progress, failed_tasks, invocations, error=str(exc))

        if task is None:
            stranded = find_stranded_tasks(tasks, progress)
            if stranded and not (failed_tasks and options.stop_on_first_failure):
                for task_id, reason in stranded.items():
                    progress_store.update_progress(story.id, task_id, TaskStatus.FAILED, reason)
                    failed_tasks.append(FailedTaskInfo(task_id=task_id, error=reason, attempts=0))
                    logger.warning("[Task {}] {}", task_id, reason)
                progress = progress_store.get_progress(story.id)
            break

        progress_store.update_progress(story.id, task.id, TaskStatus.IN_PROGRESS)
        context = build_task_context(task, story.content, working_directory, last_errors.get(task.id))
        attempts[task.id] = attempts.get(task.id, 0) + 1
        attempt = attempts[task.id]
        logger.info("[Task {}] Attempt {}: {}", task.id, attempt, task.description)

        if options.dry_run:
            result = AgentInvocationResult(success=True, output="dry run")
        else:
            invocations += 1
            request = AgentRequest(
                prompt=build_task_prompt(story, context),
                working_directory=working_directory,
                story_id=story.id,
                phase="implement",
                role="implementer",
                task_id=task.id,
                metadata={"attempt": attempt, "files": list(task.files)},
            )
            result = inspect_task_result(task, _invoke(invoker, request), working_directory)
            result = verify_task_result(task, result, working_directory, options)

        classification = evaluate_task_result(task, result, attempt, options)
        if classification == TaskResultType.SUCCESS:
            progress_store.update_progress(story.id, task.id, TaskStatus.COMPLETED)
            logger.info("[Task {}] Completed", task.id)
            if options.commit_after_each_task and not options.dry_run:
                try:
                    commit_task_completion(task, story.id, result.files_changed, working_directory)
                except ScopeViolationError as exc:
                    logger.error("[Task {}] Commit aborted: {}", task.id, exc)
                except (subprocess.CalledProcessError, OSError) as exc:
                    logger.error("[Task {}] Commit failed: {}", task.id, exc)
        else:
            error = result.error or "Unknown error"
            if result.scope_violation:
                error = f"{error} (out of scope: {', '.join(result.scope_violation)})"
            if result.missing_dependencies:
                error = f"{error} (missing: {', '.join(result.missing_dependencies)})"
            looping = _record_failure_fingerprint(
                story, story_store, task, error, options.identical_error_threshold, streams
            )
            if looping:
                classification = TaskResultType.UNRECOVERABLE
            if classification == TaskResultType.RECOVERABLE:
                logger.warning("[Task {}] Recoverable failure (attempt {}): {}", task.id, attempt, error)
                last_errors[task.id] = error
                progress_store.update_progress(story.id, task.id, TaskStatus.IN_PROGRESS, error)
            else:
                logger.error("[Task {}] Failed after {} attempt(s): {}", task.id, attempt, error)
                progress_store.update_progress(story.id, task.id, TaskStatus.FAILED, error)
                failed_tasks.append(FailedTaskInfo(task_id=task.id, error=error, attempts=attempt))
                if options.stop_on_first_failure:
                    progress = progress_store.get_progress(story.id)
                    break

        progress = progress_store.get_progress(story.id)

    result_summary = _summarize(tasks, progress, failed_tasks, invocations)
    logger.info(
        "[Story {}] Tasks: {} completed, {} failed, {} remaining ({} agent invocations)",
        story.id,
        result_summary.tasks_completed,
        result_summary.tasks_failed,
        result_summary.tasks_remaining,
        result_summary.total_agent_invocations,
    )
    return result_summary
