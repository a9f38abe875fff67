"""Test the runtime loop end to end with scripted agent providers."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.agents.base import AgentRequest
from sdlc_runner.app import Runtime
from sdlc_runner.errors import SdlcRunnerError
from sdlc_runner.models import AgentInvocationResult, ReviewDecision, Story, StoryStatus

STORY_BODY = """# Greeting

## Acceptance Criteria
- [ ] greet.py prints hello

## Implementation Tasks
- [ ] **T1**: Create greet module
  - Files: `greet.py`
  - Dependencies: none
"""

APPROVE = json.dumps({"approved": True, "summary": "ok", "concerns": []})
REJECT = json.dumps(
    {
        "approved": False,
        "summary": "needs tests",
        "concerns": [{"severity": "blocker", "category": "tests", "description": "No tests"}],
    }
)


class RoleScriptedInvoker:
    """Answer by agent role; implementer calls succeed unless scripted otherwise."""

    def __init__(self, outputs: dict[str, Any]):
        self.outputs = outputs
        self.requests: list[AgentRequest] = []

    def invoke(self, request: AgentRequest) -> AgentInvocationResult:
        self.requests.append(request)
        answer = self.outputs.get(request.role, APPROVE)
        if isinstance(answer, AgentInvocationResult):
            return answer
        return AgentInvocationResult(success=True, output=answer)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SDLC_PROVIDER", raising=False)
    monkeypatch.delenv("SDLC_MAX_RETRIES", raising=False)


def _write_config(project_dir: Path, text: str) -> None:
    state = project_dir / ".sdlc"
    state.mkdir(exist_ok=True)
    (state / "config.yaml").write_text(text)


def _runtime(project_dir: Path, invoker: RoleScriptedInvoker, config: str = "") -> Runtime:
    _write_config(project_dir, "agents:\n  provider: scripted\n" + config)
    return Runtime(project_dir, providers={"scripted": lambda cfg: invoker})


def test_repeated_review_rejections_trip_circuit_breaker(tmp_path: Path) -> None:
    """Ensure a story rejected on every review is blocked after max_retries reviews."""
    invoker = RoleScriptedInvoker({"reviewer": REJECT, "implementer": AgentInvocationResult(success=True)})
    runtime = _runtime(tmp_path, invoker)
    runtime.story_store.create("Greeting", story_id="greet", content=STORY_BODY)

    summary = runtime.run()

    assert summary.success is False
    assert summary.stopped_reason == "no work remaining"
    types = [entry.get("type") for entry in summary.actions if "type" in entry]
    assert types[:2] == ["refine", "research"]
    assert types.count("review") == 3
    assert summary.actions[-1] == {"event": "StoryBlocked", "story_id": "greet", "success": False}

    story = runtime.story_store.load("greet")
    assert story.status == StoryStatus.BLOCKED
    assert story.retry_count == 3
    assert [attempt.decision for attempt in story.review_history] == [ReviewDecision.REJECTED] * 3
    assert story.blocked_reason == "Max review retries (3/3) reached - last failure: [blocker] tests: No tests"


def test_failed_implementation_blocks_story_and_stops(tmp_path: Path) -> None:
    invoker = RoleScriptedInvoker(
        {"implementer": AgentInvocationResult(success=False, error="cannot be done: missing API")}
    )
    runtime = _runtime(tmp_path, invoker)
    runtime.story_store.create("Greeting", story_id="greet", content=STORY_BODY)

    summary = runtime.run()

    assert summary.stopped_reason == "implement failed for story greet"
    story = runtime.story_store.load("greet")
    assert story.status == StoryStatus.BLOCKED
    assert story.blocked_reason.startswith("Implementation failed - 1 task(s) failed; T1: cannot be done")


def test_failed_phase_stops_the_loop(tmp_path: Path) -> None:
    invoker = RoleScriptedInvoker({"researcher": REJECT})
    runtime = _runtime(tmp_path, invoker)
    runtime.story_store.create("Greeting", story_id="greet", content=STORY_BODY)

    summary = runtime.run()

    assert summary.stopped_reason == "research failed for story greet"
    story = runtime.story_store.load("greet")
    assert story.research_complete is False
    assert story.last_error == "No tests"


def test_plan_review_agents_run_after_plan(tmp_path: Path) -> None:
    invoker = RoleScriptedInvoker({})
    runtime_dir = tmp_path
    (runtime_dir / ".sdlc").mkdir()
    (runtime_dir / ".sdlc" / "workflow.yaml").write_text(
        'version: "1.0"\nphases:\n  plan_review:\n    agents:\n      - {id: checker, role: plan_reviewer}\n'
    )
    runtime = _runtime(runtime_dir, invoker)
    runtime.story_store.save(
        Story(id="greet", title="Greeting", status=StoryStatus.IN_PROGRESS, research_complete=True, content=STORY_BODY)
    )

    summary = runtime.run(max_iterations=1)

    assert summary.actions[0]["type"] == "plan"
    assert [request.role for request in invoker.requests] == ["planner", "plan_reviewer"]
    story = runtime.story_store.load("greet")
    assert story.plan_complete is True
    assert story.plan_review_complete is True


def test_create_pr_runs_configured_command(tmp_path: Path) -> None:
    invoker = RoleScriptedInvoker({})
    runtime = _runtime(tmp_path, invoker, "pr:\n  command: touch pr-{story_id}.txt\n")
    runtime.story_store.save(
        Story(
            id="greet",
            title="Greeting",
            status=StoryStatus.IN_PROGRESS,
            research_complete=True,
            plan_complete=True,
            plan_review_complete=True,
            implementation_complete=True,
            reviews_complete=True,
        )
    )

    summary = runtime.run()

    assert summary.success is True
    assert (tmp_path / "pr-greet.txt").exists()
    assert runtime.story_store.load("greet").status == StoryStatus.DONE


def test_failing_pr_command_keeps_story_open(tmp_path: Path) -> None:
    runtime = _runtime(tmp_path, RoleScriptedInvoker({}), "pr:\n  command: 'false'\n")
    runtime.story_store.save(
        Story(
            id="greet",
            status=StoryStatus.IN_PROGRESS,
            research_complete=True,
            plan_complete=True,
            plan_review_complete=True,
            implementation_complete=True,
            reviews_complete=True,
        )
    )

    summary = runtime.run()

    assert summary.stopped_reason == "create_pr failed for story greet"
    story = runtime.story_store.load("greet")
    assert story.status == StoryStatus.IN_PROGRESS
    assert story.last_error.startswith("PR command exited 1")


def test_unreadable_config_is_an_error(tmp_path: Path) -> None:
    _write_config(tmp_path, "agents: [oops\n")
    with pytest.raises(SdlcRunnerError):
        Runtime(tmp_path)


def test_events_are_recorded_per_story(tmp_path: Path) -> None:
    runtime = Runtime(tmp_path, dry_run=True)
    runtime.story_store.create("Greeting", story_id="greet", content=STORY_BODY)
    runtime.run()
    lines = runtime.story_store.events_path("greet").read_text().splitlines()
    events = [json.loads(line)["event"] for line in lines]
    assert events[0] == "story_created"
    assert "OrchestratorResult" in events
    assert events[-1] == "story_done"
