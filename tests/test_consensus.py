"""Test agent output merging and the consensus loop."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.consensus import (
    ConsensusManager,
    ConsensusOptions,
    IterationContext,
    check_consensus,
    format_concerns_for_iteration,
)
from sdlc_runner.models import AgentOutput, AgentRole, Concern, ConcernSeverity
from sdlc_runner.result_merger import (
    deduplicate_concerns,
    find_shared_concerns,
    merge_agent_outputs,
)


def _concern(severity: str, description: str, category: str = "design") -> Concern:
    return Concern(severity=ConcernSeverity(severity), category=category, description=description)


def _output(agent_id: str, approved: bool = True, concerns=None) -> AgentOutput:
    return AgentOutput(
        agent_id=agent_id,
        role=AgentRole.TECH_LEAD_REVIEWER,
        approved=approved,
        concerns=list(concerns or []),
    )


# ---------------------------------------------------------------------------
# Merging
# ---------------------------------------------------------------------------

def test_merge_of_nothing_is_approved() -> None:
    merged = merge_agent_outputs([])
    assert merged.all_approved is True
    assert merged.has_blockers is False
    assert merged.concerns == []


def test_merge_reports_dissent_and_sorts_by_severity() -> None:
    merged = merge_agent_outputs(
        [
            _output("a", concerns=[_concern("minor", "Rename helper")]),
            _output("b", approved=False, concerns=[_concern("blocker", "No input validation", "security")]),
        ]
    )
    assert merged.all_approved is False
    assert merged.has_blockers is True
    assert merged.dissenting_agents == ["b"]
    assert [c.severity for c in merged.concerns] == [ConcernSeverity.BLOCKER, ConcernSeverity.MINOR]
    assert list(merged.concerns_by_category) == ["security", "design"]
    assert merged.summary == "1/2 agents approved. Concerns: 1 blocker, 1 minor. Dissenting: b."


def test_deduplication_keeps_most_severe_copy() -> None:
    concerns = deduplicate_concerns(
        [
            _concern("minor", "Missing tests!"),
            _concern("critical", "missing   tests"),
            _concern("major", "Slow query"),
        ]
    )
    assert [(c.severity.value, c.description) for c in concerns] == [
        ("critical", "missing   tests"),
        ("major", "Slow query"),
    ]


def test_shared_concerns_need_two_agents() -> None:
    outputs = [
        _output("a", concerns=[_concern("major", "Missing tests"), _concern("minor", "Typo")]),
        _output("b", concerns=[_concern("blocker", "missing tests.")]),
        _output("c", concerns=[_concern("minor", "Typo")]),
        _output("c2", concerns=[]),
    ]
    shared = find_shared_concerns(outputs)
    assert [c.description for c in shared] == ["missing tests.", "Typo"]
    assert shared[0].severity == ConcernSeverity.BLOCKER


def test_same_agent_repeating_a_concern_is_not_shared() -> None:
    outputs = [_output("a", concerns=[_concern("major", "X"), _concern("major", "x")])]
    assert find_shared_concerns(outputs) == []


# ---------------------------------------------------------------------------
# Consensus
# ---------------------------------------------------------------------------

def test_check_consensus_rules() -> None:
    assert check_consensus([_output("a"), _output("b")]) is True
    assert check_consensus([_output("a"), _output("b", approved=False)]) is False
    assert check_consensus([_output("a"), _output("b", approved=False)], require_unanimous=False, min_approval_ratio=0.5)
    assert check_consensus([_output("a", concerns=[_concern("blocker", "No")])], require_unanimous=False, min_approval_ratio=0.0) is False


def test_already_agreeing_outputs_need_one_iteration() -> None:
    calls = []
    result = ConsensusManager().seek_consensus([_output("a"), _output("b")], lambda ctx: calls.append(ctx) or [])
    assert result.reached is True
    assert result.iterations == 1
    assert calls == []


def test_blocker_resolved_on_second_iteration() -> None:
    """Ensure three agents with one blocker converge after one re-execution."""
    first_round = [
        _output("tech", approved=False, concerns=[_concern("blocker", "Schema migration missing")]),
        _output("security"),
        _output("product"),
    ]
    contexts: list[IterationContext] = []

    def rerun(context: IterationContext) -> list[AgentOutput]:
        contexts.append(context)
        return [_output("tech"), _output("security"), _output("product")]

    result = ConsensusManager().seek_consensus(first_round, rerun)
    assert result.reached is True
    assert result.iterations == 2
    assert all(output.iteration == 2 for output in result.final_outputs)
    assert len(contexts) == 1
    assert contexts[0].iteration == 2
    assert "[BLOCKER] design: Schema migration missing" in contexts[0].feedback
    assert "### tech (tech_lead_reviewer)" in contexts[0].feedback


def test_unresolved_blockers_after_max_iterations_need_human_review() -> None:
    stubborn = [_output("tech", approved=False, concerns=[_concern("blocker", "Unsafe")])]
    calls = []

    def rerun(context: IterationContext) -> list[AgentOutput]:
        calls.append(context.iteration)
        return [_output("tech", approved=False, concerns=[_concern("blocker", "Unsafe")])]

    result = ConsensusManager(ConsensusOptions(max_iterations=3)).seek_consensus(stubborn, rerun)
    assert result.reached is False
    assert result.iterations == 3
    assert calls == [2, 3]
    assert result.requires_human_review is True
    assert [c.description for c in result.unresolved_concerns] == ["Unsafe"]


def test_executor_exception_requires_human_review() -> None:
    def rerun(context: IterationContext) -> list[AgentOutput]:
        raise RuntimeError("agent crashed")

    result = ConsensusManager().seek_consensus([_output("a", approved=False)], rerun)
    assert result.reached is False
    assert result.requires_human_review is True
    assert result.iterations == 2
    assert "agent crashed" in (result.error or "")


def test_format_concerns_skips_agents_without_concerns() -> None:
    text = format_concerns_for_iteration(
        [_output("quiet"), _output("loud", concerns=[Concern(ConcernSeverity.MAJOR, "api", "Bad name", file="api.py")])]
    )
    assert "quiet" not in text
    assert "- [major] api [api.py]: Bad name" in text
