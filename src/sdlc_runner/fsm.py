"""Story phase state machine: flag-gated, linear phase order plus status transitions."""

from __future__ import annotations

from typing import Optional

from .errors import StoryStateError
from .models import PHASE_ORDER, Phase, Story, StoryStatus

PHASE_FLAGS: dict[Phase, Optional[str]] = {
    Phase.REFINE: None,  # tracked by leaving the backlog
    Phase.RESEARCH: "research_complete",
    Phase.PLAN: "plan_complete",
    Phase.PLAN_REVIEW: "plan_review_complete",
    Phase.IMPLEMENT: "implementation_complete",
    Phase.REVIEW: "reviews_complete",
}

REWORK_FLAGS = ("plan_complete", "plan_review_complete", "implementation_complete", "reviews_complete")

_VALID_TRANSITIONS: dict[StoryStatus, set[StoryStatus]] = {
    StoryStatus.BACKLOG: {StoryStatus.READY, StoryStatus.BLOCKED},
    StoryStatus.READY: {StoryStatus.IN_PROGRESS, StoryStatus.BLOCKED, StoryStatus.BACKLOG},
    StoryStatus.IN_PROGRESS: {StoryStatus.DONE, StoryStatus.BLOCKED, StoryStatus.READY},
    StoryStatus.BLOCKED: {StoryStatus.READY, StoryStatus.IN_PROGRESS, StoryStatus.BACKLOG},
    StoryStatus.DONE: {StoryStatus.READY},  # allow reopening
}


def is_phase_complete(story: Story, phase: Phase) -> bool:
    flag = PHASE_FLAGS[phase]
    if flag is None:
        return story.status != StoryStatus.BACKLOG
    return bool(getattr(story, flag))


def next_phase(story: Story) -> Optional[Phase]:
    """Return the first incomplete phase, or None when every phase is done."""
    for phase in PHASE_ORDER:
        if not is_phase_complete(story, phase):
            return phase
    return None


def can_run_phase(story: Story, phase: Phase) -> bool:
    """A phase may run when every earlier phase is complete and it is not."""
    if story.status in {StoryStatus.BLOCKED, StoryStatus.DONE}:
        return False
    for earlier in PHASE_ORDER[: PHASE_ORDER.index(phase)]:
        if not is_phase_complete(story, earlier):
            return False
    return not is_phase_complete(story, phase)


def transition_status(story: Story, target: StoryStatus) -> None:
    """Move `story` to `target`, enforcing the kanban transition table.

    Raises:
        StoryStateError: If the transition is not allowed.
    """
    if story.status == target:
        return
    valid = _VALID_TRANSITIONS.get(story.status, set())
    if target not in valid:
        raise StoryStateError(
            f"Cannot transition {story.id} from {story.status.value} to {target.value}. "
            f"Valid targets: {sorted(s.value for s in valid)}"
        )
    story.status = target


def complete_phase(story: Story, phase: Phase) -> None:
    """Record a successful phase on the story."""
    if phase == Phase.REFINE:
        if story.status == StoryStatus.BACKLOG:
            transition_status(story, StoryStatus.READY)
        return
    flag = PHASE_FLAGS[phase]
    setattr(story, flag, True)
    if phase == Phase.PLAN:
        # A fresh plan must pass plan review again.
        story.plan_review_complete = False


def reset_for_rework(story: Story) -> None:
    """Clear the plan/implement/review flags after a rejected review."""
    for flag in REWORK_FLAGS:
        setattr(story, flag, False)


def validate_story_state(story: Story) -> list[str]:
    """Report flag/status combinations the state machine cannot produce."""
    problems: list[str] = []
    seen_incomplete: Optional[Phase] = None
    for phase in PHASE_ORDER:
        if PHASE_FLAGS[phase] is None:
            continue
        done = is_phase_complete(story, phase)
        if not done and seen_incomplete is None:
            seen_incomplete = phase
        elif done and seen_incomplete is not None:
            problems.append(
                f"{PHASE_FLAGS[phase]} is set but {PHASE_FLAGS[seen_incomplete]} is not"
            )
    if story.status == StoryStatus.BACKLOG and any(
        getattr(story, flag) for flag in PHASE_FLAGS.values() if flag
    ):
        problems.append("backlog story has phase flags set")
    if story.status == StoryStatus.DONE and not story.reviews_complete:
        problems.append("done story has reviews_complete unset")
    if story.status == StoryStatus.BLOCKED and not story.blocked_reason:
        problems.append("blocked story has no blocked_reason")
    return problems
