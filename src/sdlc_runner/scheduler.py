"""Assess every story on the board and pick the next action to run.

Each active story yields at most one recommended action. Actions are ordered by
an effective priority (lower runs sooner) combining the action's urgency, the
story's own priority and how far along the story already is. Stories that keep
failing review are force-blocked by the circuit breaker before more work is
scheduled for them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Union

from loguru import logger

from .config import ReviewConfig
from .constants import (
    ACTION_BASE_PRIORITY,
    COMPLETION_SCORE_POINTS,
    ESCALATION_PRIORITY_OFFSET,
    FEEDBACK_EXCERPT_MAX_CHARS,
)
from .errors import SdlcRunnerError
from .fsm import next_phase
from .models import Action, ActionType, Phase, Story, StoryStatus
from .story import (
    StoryStore,
    get_effective_max_retries,
    get_retry_count,
    latest_review_feedback,
    move_to_blocked,
    sanitize_reason_text,
)

BLOCKED = "blocked"

_ACTION_FOR_PHASE: dict[Phase, ActionType] = {
    Phase.REFINE: ActionType.REFINE,
    Phase.RESEARCH: ActionType.RESEARCH,
    Phase.PLAN: ActionType.PLAN,
    # plan review runs as the tail of the plan action
    Phase.PLAN_REVIEW: ActionType.PLAN,
    Phase.IMPLEMENT: ActionType.IMPLEMENT,
    Phase.REVIEW: ActionType.REVIEW,
}

_REASONS: dict[ActionType, str] = {
    ActionType.REFINE: 'Story "{title}" needs refinement',
    ActionType.RESEARCH: 'Story "{title}" needs research',
    ActionType.PLAN: 'Story "{title}" needs an implementation plan',
    ActionType.IMPLEMENT: 'Story "{title}" is ready for implementation',
    ActionType.REVIEW: 'Story "{title}" needs review',
    ActionType.CREATE_PR: 'Story "{title}" is ready for PR',
}


@dataclass
class StateAssessment:
    recommended_actions: list[Action] = field(default_factory=list)
    next_action: Optional[Action] = None
    blocked_stories: list[Story] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)
    newly_blocked: list[str] = field(default_factory=list)


def calculate_completion_score(story: Story) -> int:
    """Sum the fixed points of every completed phase flag."""
    return sum(points for flag, points in COMPLETION_SCORE_POINTS.items() if getattr(story, flag, False))


def action_priority(action_type: ActionType, story: Story) -> int:
    return ACTION_BASE_PRIORITY[action_type.value] + int(story.priority or 0) - calculate_completion_score(story)


def _make_action(action_type: ActionType, story: Story) -> Action:
    return Action(
        type=action_type,
        story_id=story.id,
        priority=action_priority(action_type, story),
        reason=_REASONS[action_type].format(title=story.title or story.id),
        story_title=story.title,
    )


def _block_reason(story: Story, retry_count: int, ceiling: int) -> str:
    excerpt = sanitize_reason_text(latest_review_feedback(story), max_chars=FEEDBACK_EXCERPT_MAX_CHARS)
    return f"Max review retries ({retry_count}/{ceiling}) reached - last failure: {excerpt or 'unknown'}"


def check_circuit_breaker(
    store: StoryStore,
    story: Story,
    review_config: ReviewConfig,
) -> Union[Action, str, None]:
    """Block a story whose retry counter has reached its ceiling.

    Args:
        store: Story persistence used to record the block.
        story: Story to check.
        review_config: Global retry defaults.

    Returns:
        None when the story is below its ceiling, `BLOCKED` when it was moved to
        blocked, or an escalation `Action` when persisting the block failed.
    """
    retry_count = get_retry_count(story)
    ceiling = get_effective_max_retries(story, review_config)
    if retry_count < ceiling:
        return None

    reason = _block_reason(story, retry_count, ceiling)
    try:
        move_to_blocked(store, story, reason)
    except (OSError, SdlcRunnerError) as err:
        logger.error("Failed to move story {} to blocked: {}", story.id, err)
        return Action(
            type=ActionType.REVIEW,
            story_id=story.id,
            priority=int(story.priority or 0) + ESCALATION_PRIORITY_OFFSET,
            reason=f"{reason} (could not block story automatically; human attention required)",
            story_title=story.title,
            context={"blockedByMaxRetries": True},
        )
    logger.warning("Story {} blocked: {}", story.id, story.blocked_reason)
    return BLOCKED


def recommend_action(
    store: StoryStore,
    story: Story,
    review_config: ReviewConfig,
    enforce_circuit_breaker: bool = True,
) -> Union[Action, str, None]:
    """Return the story's next action, `BLOCKED` if the breaker tripped, or None.

    With `enforce_circuit_breaker=False` nothing is persisted; a story at its
    retry ceiling simply gets no action.
    """
    if story.status in {StoryStatus.DONE, StoryStatus.BLOCKED}:
        return None
    if story.status == StoryStatus.BACKLOG:
        return _make_action(ActionType.REFINE, story)
    if story.status == StoryStatus.IN_PROGRESS:
        if not enforce_circuit_breaker:
            if get_retry_count(story) >= get_effective_max_retries(story, review_config):
                return None
        else:
            tripped = check_circuit_breaker(store, story, review_config)
            if tripped is not None:
                return tripped
    phase = next_phase(story)
    if phase is None:
        return _make_action(ActionType.CREATE_PR, story)
    return _make_action(_ACTION_FOR_PHASE[phase], story)


def assess_state(
    store: StoryStore,
    review_config: ReviewConfig,
    story_id: Optional[str] = None,
    enforce_circuit_breaker: bool = True,
) -> StateAssessment:
    """Scan the board and rank one recommended action per story.

    Args:
        store: Story persistence.
        review_config: Global retry defaults for the circuit breaker.
        story_id: Restrict the scan to one story.
        enforce_circuit_breaker: Block stories at their retry ceiling. Read-only
            callers (status displays) pass False.

    Returns:
        A `StateAssessment` whose `recommended_actions` are sorted by effective
        priority (ties broken by story id).
    """
    assessment = StateAssessment()
    stories = store.list_stories()
    if story_id is not None:
        stories = [s for s in stories if s.id == story_id]

    for story in stories:
        outcome = recommend_action(store, story, review_config, enforce_circuit_breaker)
        if outcome == BLOCKED:
            assessment.newly_blocked.append(story.id)
        elif isinstance(outcome, Action):
            assessment.recommended_actions.append(outcome)
        if story.status == StoryStatus.BLOCKED:
            assessment.blocked_stories.append(story)
        assessment.counts[story.status.value] = assessment.counts.get(story.status.value, 0) + 1

    assessment.recommended_actions.sort(key=lambda a: (a.priority, a.story_id))
    if assessment.recommended_actions:
        assessment.next_action = assessment.recommended_actions[0]
    return assessment


def get_next_action(
    store: StoryStore,
    review_config: ReviewConfig,
    story_id: Optional[str] = None,
) -> Optional[Action]:
    return assess_state(store, review_config, story_id=story_id).next_action
