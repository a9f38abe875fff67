"""Iterate a group of agent outputs toward agreement."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from loguru import logger

from .constants import DEFAULT_MAX_CONSENSUS_ITERATIONS
from .models import AgentOutput, Concern, ConcernSeverity
from .result_merger import find_shared_concerns, merge_agent_outputs


@dataclass
class ConsensusOptions:
    max_iterations: int = DEFAULT_MAX_CONSENSUS_ITERATIONS
    require_unanimous: bool = True
    # Only used when unanimity is not required.
    min_approval_ratio: float = 1.0


@dataclass
class IterationContext:
    """What the re-execution callback learns about the previous round."""

    iteration: int
    previous_outputs: list[AgentOutput]
    all_concerns: list[Concern]
    shared_concerns: list[Concern]
    previous_summary: str
    feedback: str


@dataclass
class ConsensusResult:
    reached: bool
    iterations: int
    final_outputs: list[AgentOutput] = field(default_factory=list)
    unresolved_concerns: list[Concern] = field(default_factory=list)
    requires_human_review: bool = False
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "reached": self.reached,
            "iterations": self.iterations,
            "unresolved_concerns": [c.to_dict() for c in self.unresolved_concerns],
            "requires_human_review": self.requires_human_review,
            "error": self.error,
        }


ConsensusExecutor = Callable[[IterationContext], list[AgentOutput]]


def check_consensus(
    outputs: list[AgentOutput],
    require_unanimous: bool = True,
    min_approval_ratio: float = 1.0,
) -> bool:
    """Return True when no output blocks and the approval rule is satisfied."""
    if any(output.has_blockers for output in outputs):
        return False
    if not outputs:
        return True
    approvals = sum(1 for output in outputs if output.approved)
    if require_unanimous:
        return approvals == len(outputs)
    return approvals / len(outputs) >= min_approval_ratio


def format_concerns_for_iteration(outputs: list[AgentOutput]) -> str:
    """Render unresolved concerns grouped by the agent that raised them."""
    grouped: "OrderedDict[str, list[Concern]]" = OrderedDict()
    roles: dict[str, str] = {}
    for output in outputs:
        if not output.concerns:
            continue
        grouped.setdefault(output.agent_id, []).extend(output.concerns)
        roles[output.agent_id] = output.role.value
    if not grouped:
        return ""
    blocks = []
    for agent_id, concerns in grouped.items():
        lines = [f"### {agent_id} ({roles[agent_id]})"]
        for concern in sorted(concerns, key=lambda c: c.severity.rank):
            marker = "BLOCKER" if concern.severity == ConcernSeverity.BLOCKER else concern.severity.value
            location = f" [{concern.file}]" if concern.file else ""
            lines.append(f"- [{marker}] {concern.category}{location}: {concern.description}")
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


class ConsensusManager:
    """Re-run a group of agents until they agree or the iteration budget runs out."""

    def __init__(self, options: Optional[ConsensusOptions] = None):
        self.options = options or ConsensusOptions()

    def _reached(self, outputs: list[AgentOutput]) -> bool:
        return check_consensus(
            outputs,
            require_unanimous=self.options.require_unanimous,
            min_approval_ratio=self.options.min_approval_ratio,
        )

    def seek_consensus(
        self,
        initial_outputs: list[AgentOutput],
        executor: ConsensusExecutor,
    ) -> ConsensusResult:
        """Iterate toward agreement.

        Args:
            initial_outputs: Outputs of the first round (iteration 1).
            executor: Callback that re-runs the same agents given the previous
                round's context and returns their new outputs.

        Returns:
            A `ConsensusResult`. Iterations are strictly sequential and bounded
            by `max_iterations`; an exception from `executor` ends the loop with
            `requires_human_review=True`.
        """
        outputs = list(initial_outputs)
        iteration = 1
        if self._reached(outputs):
            return ConsensusResult(reached=True, iterations=iteration, final_outputs=outputs)

        max_iterations = max(1, int(self.options.max_iterations))
        while iteration < max_iterations:
            iteration += 1
            merged = merge_agent_outputs(outputs)
            context = IterationContext(
                iteration=iteration,
                previous_outputs=outputs,
                all_concerns=merged.concerns,
                shared_concerns=find_shared_concerns(outputs),
                previous_summary=merged.summary,
                feedback=format_concerns_for_iteration(outputs),
            )
            logger.info(
                "[Consensus] iteration {}/{}: {} unresolved concern(s)",
                iteration,
                max_iterations,
                len(merged.concerns),
            )
            try:
                new_outputs = executor(context)
            except Exception as exc:
                logger.exception("[Consensus] re-execution failed on iteration {}: {}", iteration, exc)
                return ConsensusResult(
                    reached=False,
                    iterations=iteration,
                    final_outputs=outputs,
                    unresolved_concerns=merge_agent_outputs(outputs).blockers,
                    requires_human_review=True,
                    error=f"Consensus iteration {iteration} failed: {exc}",
                )
            for output in new_outputs:
                output.iteration = iteration
            outputs = list(new_outputs)
            if self._reached(outputs):
                logger.info("[Consensus] reached after {} iteration(s)", iteration)
                return ConsensusResult(reached=True, iterations=iteration, final_outputs=outputs)

        unresolved = merge_agent_outputs(outputs).blockers
        logger.warning(
            "[Consensus] not reached after {} iteration(s); {} blocker(s) unresolved",
            iteration,
            len(unresolved),
        )
        return ConsensusResult(
            reached=False,
            iterations=iteration,
            final_outputs=outputs,
            unresolved_concerns=unresolved,
            requires_human_review=bool(unresolved),
        )
