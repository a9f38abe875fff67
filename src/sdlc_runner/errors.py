"""Exception hierarchy raised by the orchestration core."""

from __future__ import annotations

from typing import Iterable, Optional


class SdlcRunnerError(Exception):
    """Base class for runner errors."""


class CircularDependencyError(SdlcRunnerError):
    """Raised when incomplete tasks remain but none of them can run."""

    def __init__(self, task_ids: Iterable[str]):
        self.task_ids = sorted(task_ids)
        super().__init__(
            "Circular dependency detected: no runnable task among " + ", ".join(self.task_ids)
        )


class ScopeViolationError(SdlcRunnerError):
    """Raised when a commit would include files outside a task's declared scope."""

    def __init__(self, task_id: str, files: Iterable[str]):
        self.task_id = task_id
        self.files = sorted(files)
        super().__init__(
            f"Task {task_id} modified files outside its declared scope: " + ", ".join(self.files)
        )


class StoryNotFoundError(SdlcRunnerError):
    """Raised when a story id has no persisted state."""


class StoryStateError(SdlcRunnerError):
    """Raised for unreadable story files or invalid status transitions."""


class WorkflowConfigError(SdlcRunnerError):
    """Raised when `workflow.yaml` fails validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("Invalid workflow configuration:\n- " + "\n- ".join(self.errors))


class UnknownProviderError(SdlcRunnerError, KeyError):
    """Raised when an agent provider name is not registered."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "Unknown provider"


class AgentTimeoutError(SdlcRunnerError, TimeoutError):
    """Raised by an agent invoker when the agent exceeded its time budget."""

    def __init__(self, timeout_seconds: float, message: Optional[str] = None):
        self.timeout_seconds = timeout_seconds
        super().__init__(message or f"Agent timed out after {timeout_seconds}s")


class AuthenticationError(SdlcRunnerError):
    """Raised when an agent provider rejects its credentials."""
