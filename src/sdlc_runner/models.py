"""Define durable story state and the value types exchanged by the orchestration core."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .utils import _now_iso


class StoryStatus(str, Enum):
    """Kanban column a story currently sits in."""

    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    DONE = "done"


class Phase(str, Enum):
    """Lifecycle phases, in execution order."""

    REFINE = "refine"
    RESEARCH = "research"
    PLAN = "plan"
    PLAN_REVIEW = "plan_review"
    IMPLEMENT = "implement"
    REVIEW = "review"


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskResultType(str, Enum):
    """Classification of a single task attempt."""

    SUCCESS = "success"
    RECOVERABLE = "recoverable"
    UNRECOVERABLE = "unrecoverable"


class AgentRole(str, Enum):
    """Closed set of agent roles; anything else parses to `UNSUPPORTED`."""

    STORY_REFINER = "story_refiner"
    TECH_LEAD_REVIEWER = "tech_lead_reviewer"
    SECURITY_REVIEWER = "security_reviewer"
    PRODUCT_OWNER_REVIEWER = "product_owner_reviewer"
    RESEARCHER = "researcher"
    PLANNER = "planner"
    PLAN_REVIEWER = "plan_reviewer"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    UNSUPPORTED = "unsupported"


SUPPORTED_ROLES: frozenset[str] = frozenset(
    role.value for role in AgentRole if role is not AgentRole.UNSUPPORTED
)

DEFAULT_ROLE_FOR_PHASE: dict[Phase, AgentRole] = {
    Phase.REFINE: AgentRole.STORY_REFINER,
    Phase.RESEARCH: AgentRole.RESEARCHER,
    Phase.PLAN: AgentRole.PLANNER,
    Phase.PLAN_REVIEW: AgentRole.PLAN_REVIEWER,
    Phase.IMPLEMENT: AgentRole.IMPLEMENTER,
    Phase.REVIEW: AgentRole.REVIEWER,
}


def parse_role(value: Any) -> AgentRole:
    """Map a role string onto `AgentRole`, returning `UNSUPPORTED` for unknown values."""
    if isinstance(value, AgentRole):
        return value
    if isinstance(value, str) and value in SUPPORTED_ROLES:
        return AgentRole(value)
    return AgentRole.UNSUPPORTED


class ConcernSeverity(str, Enum):
    BLOCKER = "blocker"
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        """Lower rank is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    ConcernSeverity.BLOCKER: 0,
    ConcernSeverity.CRITICAL: 1,
    ConcernSeverity.MAJOR: 2,
    ConcernSeverity.MINOR: 3,
}


def parse_severity(value: Any, default: ConcernSeverity = ConcernSeverity.MAJOR) -> ConcernSeverity:
    if isinstance(value, ConcernSeverity):
        return value
    try:
        return ConcernSeverity(str(value).strip().lower())
    except ValueError:
        return default


class Composition(str, Enum):
    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class ConsensusMode(str, Enum):
    NONE = "none"
    OPTIONAL = "optional"
    REQUIRED = "required"


class ReviewDecision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class ActionType(str, Enum):
    REFINE = "refine"
    RESEARCH = "research"
    PLAN = "plan"
    IMPLEMENT = "implement"
    REVIEW = "review"
    CREATE_PR = "create_pr"


# ---------------------------------------------------------------------------
# Agent outputs
# ---------------------------------------------------------------------------

@dataclass
class Concern:
    severity: ConcernSeverity
    category: str
    description: str
    agent_id: Optional[str] = None
    file: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity.value,
            "category": self.category,
            "description": self.description,
        }
        if self.agent_id:
            data["agent_id"] = self.agent_id
        if self.file:
            data["file"] = self.file
        return data


@dataclass
class AgentOutput:
    """Result of one agent invocation inside a phase."""

    agent_id: str
    role: AgentRole
    content: str = ""
    concerns: list[Concern] = field(default_factory=list)
    approved: bool = False
    iteration: int = 1
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_blockers(self) -> bool:
        return any(c.severity == ConcernSeverity.BLOCKER for c in self.concerns)


# ---------------------------------------------------------------------------
# Review history
# ---------------------------------------------------------------------------

@dataclass
class ReviewIssue:
    severity: str
    category: str
    description: str
    file: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReviewIssue":
        return cls(
            severity=str(data.get("severity", "major")),
            category=str(data.get("category", "general")),
            description=str(data.get("description", "")),
            file=data.get("file"),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "severity": self.severity,
            "category": self.category,
            "description": self.description,
        }
        if self.file:
            data["file"] = self.file
        return data


@dataclass
class ReviewAttempt:
    """One verdict appended to a story's review history."""

    decision: ReviewDecision
    feedback: str = ""
    severity: Optional[str] = None
    issues: list[ReviewIssue] = field(default_factory=list)
    blockers: list[str] = field(default_factory=list)
    timestamp: str = field(default_factory=_now_iso)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReviewAttempt":
        try:
            decision = ReviewDecision(str(data.get("decision", "FAILED")).upper())
        except ValueError:
            decision = ReviewDecision.FAILED
        issues = [ReviewIssue.from_dict(i) for i in data.get("issues") or [] if isinstance(i, dict)]
        return cls(
            decision=decision,
            feedback=str(data.get("feedback") or ""),
            severity=data.get("severity"),
            issues=issues,
            blockers=[str(b) for b in data.get("blockers") or []],
            timestamp=str(data.get("timestamp") or _now_iso()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "decision": self.decision.value,
            "severity": self.severity,
            "feedback": self.feedback,
            "blockers": list(self.blockers),
            "issues": [issue.to_dict() for issue in self.issues],
        }


# ---------------------------------------------------------------------------
# Error fingerprints
# ---------------------------------------------------------------------------

@dataclass
class ErrorFingerprint:
    hash: str
    first_seen: str
    last_seen: str
    consecutive_count: int
    preview: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ErrorFingerprint":
        return cls(
            hash=str(data.get("hash", "")),
            first_seen=str(data.get("first_seen", "")),
            last_seen=str(data.get("last_seen", "")),
            consecutive_count=int(data.get("consecutive_count", 1) or 1),
            preview=str(data.get("preview", "")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "hash": self.hash,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "consecutive_count": self.consecutive_count,
            "preview": self.preview,
        }


# ---------------------------------------------------------------------------
# Story
# ---------------------------------------------------------------------------

@dataclass
class Story:
    """Store durable per-story state used by the scheduler and the executors."""

    id: str
    title: str = ""
    status: StoryStatus = StoryStatus.BACKLOG
    priority: int = 0
    type: str = "feature"
    labels: list[str] = field(default_factory=list)

    research_complete: bool = False
    plan_complete: bool = False
    plan_review_complete: bool = False
    implementation_complete: bool = False
    reviews_complete: bool = False

    # Raw persisted values; read through story.get_retry_count() and friends.
    retry_count: Any = 0
    max_retries: Any = None

    review_history: list[ReviewAttempt] = field(default_factory=list)
    error_history: list[ErrorFingerprint] = field(default_factory=list)

    blocked_reason: Optional[str] = None
    blocked_at: Optional[str] = None
    last_error: Optional[str] = None

    content: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Story":
        """Create a `Story` from a persisted dictionary.

        Args:
            data: Raw story payload from `story.yaml`.

        Returns:
            A `Story` with unknown keys preserved in `extra`.
        """
        extra = dict(data)

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        try:
            status = StoryStatus(str(_pop("status", StoryStatus.BACKLOG.value)))
        except ValueError:
            status = StoryStatus.BACKLOG

        try:
            priority = int(_pop("priority", 0) or 0)
        except (TypeError, ValueError):
            priority = 0

        history = [
            ReviewAttempt.from_dict(item)
            for item in _pop("review_history", []) or []
            if isinstance(item, dict)
        ]
        errors = [
            ErrorFingerprint.from_dict(item)
            for item in _pop("error_history", []) or []
            if isinstance(item, dict)
        ]

        return cls(
            id=str(_pop("id", "")),
            title=str(_pop("title", "") or ""),
            status=status,
            priority=priority,
            type=str(_pop("type", "feature") or "feature"),
            labels=[str(label) for label in _pop("labels", []) or []],
            research_complete=bool(_pop("research_complete", False)),
            plan_complete=bool(_pop("plan_complete", False)),
            plan_review_complete=bool(_pop("plan_review_complete", False)),
            implementation_complete=bool(_pop("implementation_complete", False)),
            reviews_complete=bool(_pop("reviews_complete", False)),
            retry_count=_pop("retry_count", 0),
            max_retries=_pop("max_retries", None),
            review_history=history,
            error_history=errors,
            blocked_reason=_pop("blocked_reason", None),
            blocked_at=_pop("blocked_at", None),
            last_error=_pop("last_error", None),
            content=str(_pop("content", "") or ""),
            created_at=_pop("created_at", None),
            updated_at=_pop("updated_at", None),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize the story for `story.yaml`."""
        data = dict(self.extra)
        data.update(
            {
                "id": self.id,
                "title": self.title,
                "status": self.status.value,
                "priority": self.priority,
                "type": self.type,
                "labels": list(self.labels),
                "research_complete": self.research_complete,
                "plan_complete": self.plan_complete,
                "plan_review_complete": self.plan_review_complete,
                "implementation_complete": self.implementation_complete,
                "reviews_complete": self.reviews_complete,
                "retry_count": self.retry_count,
                "max_retries": self.max_retries,
                "review_history": [attempt.to_dict() for attempt in self.review_history],
                "error_history": [record.to_dict() for record in self.error_history],
                "blocked_reason": self.blocked_reason,
                "blocked_at": self.blocked_at,
                "last_error": self.last_error,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
                "content": self.content,
            }
        )
        return data


# ---------------------------------------------------------------------------
# Implementation tasks
# ---------------------------------------------------------------------------

@dataclass
class ImplementationTask:
    id: str
    description: str
    files: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING


@dataclass
class TaskProgressEntry:
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskProgressEntry":
        try:
            status = TaskStatus(str(data.get("status", TaskStatus.PENDING.value)))
        except ValueError:
            status = TaskStatus.PENDING
        return cls(
            task_id=str(data.get("task_id", "")),
            status=status,
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
        }


@dataclass
class TaskContext:
    """Minimal context handed to the implementer for one task."""

    task: ImplementationTask
    acceptance_criteria: list[str] = field(default_factory=list)
    existing_files: dict[str, str] = field(default_factory=dict)
    project_patterns: str = ""
    previous_error: Optional[str] = None


@dataclass
class AgentInvocationResult:
    """What an agent invoker reports back for one call."""

    success: bool
    output: str = ""
    error: Optional[str] = None
    files_changed: list[str] = field(default_factory=list)
    transient: bool = False
    verification_passed: Optional[bool] = None
    scope_violation: list[str] = field(default_factory=list)
    missing_dependencies: list[str] = field(default_factory=list)


@dataclass
class FailedTaskInfo:
    task_id: str
    error: str
    attempts: int

    def to_dict(self) -> dict[str, Any]:
        return {"task_id": self.task_id, "error": self.error, "attempts": self.attempts}


@dataclass
class OrchestratorResult:
    """Structured summary returned by one implementation run."""

    success: bool
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_remaining: int = 0
    failed_tasks: list[FailedTaskInfo] = field(default_factory=list)
    total_agent_invocations: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tasks_completed": self.tasks_completed,
            "tasks_failed": self.tasks_failed,
            "tasks_remaining": self.tasks_remaining,
            "failed_tasks": [f.to_dict() for f in self.failed_tasks],
            "total_agent_invocations": self.total_agent_invocations,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Scheduler actions
# ---------------------------------------------------------------------------

@dataclass
class Action:
    type: ActionType
    story_id: str
    priority: int
    reason: str = ""
    story_title: str = ""
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "story_id": self.story_id,
            "story_title": self.story_title,
            "priority": self.priority,
            "reason": self.reason,
            "context": dict(self.context),
        }
