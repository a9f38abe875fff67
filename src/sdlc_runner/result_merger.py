"""Merge the outputs of several agents into one phase verdict."""

from __future__ import annotations

import re
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any

from .models import AgentOutput, Concern, ConcernSeverity


@dataclass
class MergedResult:
    all_approved: bool
    has_blockers: bool
    concerns: list[Concern] = field(default_factory=list)
    concerns_by_category: dict[str, list[Concern]] = field(default_factory=dict)
    concerns_by_severity: dict[str, list[Concern]] = field(default_factory=dict)
    dissenting_agents: list[str] = field(default_factory=list)
    summary: str = ""

    @property
    def blockers(self) -> list[Concern]:
        return [c for c in self.concerns if c.severity == ConcernSeverity.BLOCKER]

    def to_dict(self) -> dict[str, Any]:
        return {
            "all_approved": self.all_approved,
            "has_blockers": self.has_blockers,
            "dissenting_agents": list(self.dissenting_agents),
            "concerns": [c.to_dict() for c in self.concerns],
            "summary": self.summary,
        }


def _normalize_description(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^\w\s]", "", text.lower())).strip()


def deduplicate_concerns(concerns: list[Concern]) -> list[Concern]:
    """Collapse concerns with the same normalized description, keeping the most severe."""
    kept: dict[str, Concern] = {}
    order: list[str] = []
    for concern in concerns:
        key = _normalize_description(concern.description)
        existing = kept.get(key)
        if existing is None:
            kept[key] = concern
            order.append(key)
        elif concern.severity.rank < existing.severity.rank:
            kept[key] = concern
    return [kept[key] for key in order]


def _summarize(outputs: list[AgentOutput], concerns: list[Concern], dissenting: list[str]) -> str:
    approved = len(outputs) - len(dissenting)
    parts = [f"{approved}/{len(outputs)} agents approved."]
    counts: dict[str, int] = defaultdict(int)
    for concern in concerns:
        counts[concern.severity.value] += 1
    if counts:
        detail = ", ".join(
            f"{counts[s.value]} {s.value}" for s in ConcernSeverity if counts.get(s.value)
        )
        parts.append(f"Concerns: {detail}.")
    if dissenting:
        parts.append("Dissenting: " + ", ".join(dissenting) + ".")
    return " ".join(parts)


def merge_agent_outputs(outputs: list[AgentOutput]) -> MergedResult:
    """Combine agent outputs into a single verdict.

    Args:
        outputs: Outputs collected for one phase (any order).

    Returns:
        A `MergedResult`. An empty list counts as approved with no concerns.
    """
    if not outputs:
        return MergedResult(all_approved=True, has_blockers=False, summary="No agent outputs.")

    all_concerns = [c for output in outputs for c in output.concerns]
    concerns = sorted(deduplicate_concerns(all_concerns), key=lambda c: c.severity.rank)

    by_category: dict[str, list[Concern]] = defaultdict(list)
    by_severity: dict[str, list[Concern]] = defaultdict(list)
    for concern in concerns:
        by_category[concern.category].append(concern)
        by_severity[concern.severity.value].append(concern)

    dissenting = [output.agent_id for output in outputs if not output.approved]
    return MergedResult(
        all_approved=not dissenting,
        has_blockers=any(c.severity == ConcernSeverity.BLOCKER for c in concerns),
        concerns=concerns,
        concerns_by_category=dict(by_category),
        concerns_by_severity=dict(by_severity),
        dissenting_agents=dissenting,
        summary=_summarize(outputs, concerns, dissenting),
    )


def find_shared_concerns(outputs: list[AgentOutput]) -> list[Concern]:
    """Return concerns raised (by normalized description) by two or more agents."""
    raised_by: dict[str, set[str]] = defaultdict(set)
    first: dict[str, Concern] = {}
    for output in outputs:
        for concern in output.concerns:
            key = _normalize_description(concern.description)
            raised_by[key].add(output.agent_id)
            current = first.get(key)
            if current is None or concern.severity.rank < current.severity.rank:
                first[key] = concern
    shared = [first[key] for key, agents in raised_by.items() if len(agents) >= 2]
    return sorted(shared, key=lambda c: c.severity.rank)
