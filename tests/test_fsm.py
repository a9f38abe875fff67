"""Test the story phase state machine and status transitions."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.errors import StoryStateError
from sdlc_runner.fsm import (
    can_run_phase,
    complete_phase,
    next_phase,
    reset_for_rework,
    transition_status,
    validate_story_state,
)
from sdlc_runner.models import Phase, Story, StoryStatus


def test_phases_advance_in_order() -> None:
    """Ensure completing each phase exposes the next one until none remain."""
    story = Story(id="s")
    seen = []
    phase = next_phase(story)
    while phase is not None:
        seen.append(phase)
        complete_phase(story, phase)
        phase = next_phase(story)
    assert seen == list(Phase)
    assert story.status == StoryStatus.READY
    assert story.reviews_complete is True


def test_new_plan_requires_fresh_plan_review() -> None:
    story = Story(id="s", status=StoryStatus.IN_PROGRESS, research_complete=True, plan_complete=True, plan_review_complete=True)
    complete_phase(story, Phase.PLAN)
    assert story.plan_review_complete is False
    assert next_phase(story) == Phase.PLAN_REVIEW


def test_can_run_phase_requires_earlier_phases() -> None:
    story = Story(id="s", status=StoryStatus.IN_PROGRESS, research_complete=True)
    assert can_run_phase(story, Phase.PLAN) is True
    assert can_run_phase(story, Phase.IMPLEMENT) is False
    assert can_run_phase(story, Phase.RESEARCH) is False
    story.status = StoryStatus.BLOCKED
    assert can_run_phase(story, Phase.PLAN) is False


def test_rework_clears_downstream_flags_only() -> None:
    story = Story(
        id="s",
        research_complete=True,
        plan_complete=True,
        plan_review_complete=True,
        implementation_complete=True,
        reviews_complete=True,
    )
    reset_for_rework(story)
    assert story.research_complete is True
    assert not any([story.plan_complete, story.plan_review_complete, story.implementation_complete, story.reviews_complete])


@pytest.mark.parametrize(
    "source, target",
    [
        (StoryStatus.BACKLOG, StoryStatus.READY),
        (StoryStatus.READY, StoryStatus.IN_PROGRESS),
        (StoryStatus.IN_PROGRESS, StoryStatus.DONE),
        (StoryStatus.IN_PROGRESS, StoryStatus.BLOCKED),
        (StoryStatus.BLOCKED, StoryStatus.IN_PROGRESS),
        (StoryStatus.DONE, StoryStatus.READY),
    ],
)
def test_valid_transitions(source: StoryStatus, target: StoryStatus) -> None:
    story = Story(id="s", status=source)
    transition_status(story, target)
    assert story.status == target


@pytest.mark.parametrize(
    "source, target",
    [
        (StoryStatus.BACKLOG, StoryStatus.DONE),
        (StoryStatus.READY, StoryStatus.DONE),
        (StoryStatus.DONE, StoryStatus.IN_PROGRESS),
    ],
)
def test_invalid_transitions_raise(source: StoryStatus, target: StoryStatus) -> None:
    with pytest.raises(StoryStateError):
        transition_status(Story(id="s", status=source), target)


def test_validate_story_state_reports_gaps() -> None:
    story = Story(id="s", status=StoryStatus.DONE, plan_complete=True)
    problems = validate_story_state(story)
    assert "plan_complete is set but research_complete is not" in problems
    assert "done story has reviews_complete unset" in problems
    assert validate_story_state(Story(id="ok", status=StoryStatus.READY)) == []
