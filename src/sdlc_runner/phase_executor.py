"""Run the agents configured for one story phase and write the verdict back.

A phase is executed by the agents listed for it in `workflow.yaml`, or by a
single default agent for the phase when nothing is configured. Agent groups run
their members in order or concurrently, and groups with a consensus mode are
iterated through the `ConsensusManager` until they agree.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .agents.registry import AgentRegistry, AgentRunContext
from .consensus import ConsensusManager, ConsensusOptions, ConsensusResult, IterationContext
from .fsm import complete_phase, reset_for_rework
from .logging_utils import summarize_event
from .models import (
    DEFAULT_ROLE_FOR_PHASE,
    AgentOutput,
    AgentRole,
    Concern,
    ConcernSeverity,
    Composition,
    ConsensusMode,
    Phase,
    ReviewAttempt,
    ReviewDecision,
    ReviewIssue,
    Story,
)
from .result_merger import MergedResult, merge_agent_outputs
from .story import StoryStore, append_review_history, increment_retry_count, sanitize_reason_text
from .tasks import (
    IMPLEMENTATION_TASKS_HEADING,
    TaskProgressStore,
    extract_section,
    parse_implementation_tasks,
    replace_section,
)
from .workflow_config import AgentGroup, AgentNode, AgentSpec, WorkflowConfig

CONSENSUS_FAILED_MESSAGE = "Consensus not reached - human review required"
RESEARCH_HEADING = "Research Notes"


@dataclass
class PhaseExecutionResult:
    phase: Phase
    success: bool
    outputs: list[AgentOutput] = field(default_factory=list)
    merged: Optional[MergedResult] = None
    consensus: Optional[ConsensusResult] = None
    summary: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "success": self.success,
            "agents": [output.agent_id for output in self.outputs],
            "merged": self.merged.to_dict() if self.merged else None,
            "consensus": self.consensus.to_dict() if self.consensus else None,
            "summary": self.summary,
            "error": self.error,
        }


@dataclass
class _NodeRun:
    outputs: list[AgentOutput] = field(default_factory=list)
    consensus: list[tuple[ConsensusMode, ConsensusResult]] = field(default_factory=list)
    # Outputs whose approval is not required (optional-consensus groups).
    advisory_ids: set[str] = field(default_factory=set)


def _blocker_output(agent_id: str, role: AgentRole, message: str, iteration: int = 1) -> AgentOutput:
    return AgentOutput(
        agent_id=agent_id,
        role=role,
        content=message,
        concerns=[
            Concern(
                severity=ConcernSeverity.BLOCKER,
                category="execution",
                description=message,
                agent_id=agent_id,
            )
        ],
        approved=False,
        iteration=iteration,
    )


class PhaseExecutor:
    """Execute one lifecycle phase for a story."""

    def __init__(
        self,
        agent_registry: AgentRegistry,
        workflow_config: Optional[WorkflowConfig] = None,
        project_dir: Optional[Path] = None,
        max_workers: int = 4,
    ):
        self.agent_registry = agent_registry
        self.workflow_config = workflow_config or WorkflowConfig()
        self.project_dir = (project_dir or Path.cwd()).resolve()
        self.max_workers = max(1, int(max_workers))

    def agents_for(self, phase: Phase) -> list[AgentNode]:
        configured = self.workflow_config.agents_for(phase)
        if configured:
            return configured
        role = DEFAULT_ROLE_FOR_PHASE[phase]
        return [AgentSpec(id=f"default-{phase.value}", role=role, role_name=role.value)]

    def execute_phase(
        self,
        phase: Phase,
        story: Story,
        feedback: Optional[str] = None,
    ) -> PhaseExecutionResult:
        """Run every configured agent node for `phase` and merge the outputs.

        Top-level nodes run in order; a node that reports a blocking concern
        stops the remaining nodes since the phase cannot pass anyway.

        Returns:
            A `PhaseExecutionResult`. Agent exceptions are turned into blocking
            concerns, so this never raises for agent failures.
        """
        logger.info("[Story {}] Executing phase {}", story.id, phase.value)
        run = _NodeRun()
        for node in self.agents_for(phase):
            node_run = self._run_node(node, phase, story, feedback, iteration=1)
            run.outputs.extend(node_run.outputs)
            run.consensus.extend(node_run.consensus)
            run.advisory_ids.update(node_run.advisory_ids)
            if any(output.has_blockers for output in node_run.outputs):
                logger.info("[Story {}] Phase {} stopped at node {}: blocking concern", story.id, phase.value, node.id)
                break
        return self._finalize(phase, story, run)

    # ------------------------------------------------------------------
    # Node execution
    # ------------------------------------------------------------------

    def _run_node(
        self,
        node: AgentNode,
        phase: Phase,
        story: Story,
        feedback: Optional[str],
        iteration: int,
    ) -> _NodeRun:
        if isinstance(node, AgentGroup):
            return self._run_group(node, phase, story, feedback, iteration)
        return _NodeRun(outputs=[self._run_agent(node, phase, story, feedback, iteration)])

    def _run_agent(
        self,
        spec: AgentSpec,
        phase: Phase,
        story: Story,
        feedback: Optional[str],
        iteration: int,
    ) -> AgentOutput:
        if not spec.role_name and spec.role is AgentRole.UNSUPPORTED:
            return _blocker_output(spec.id, spec.role, f"Agent {spec.id} has no role configured", iteration)
        agent = self.agent_registry.create(
            spec.role,
            spec.id,
            requested_role=spec.role_name or spec.role.value,
            options=spec.options,
        )
        context = AgentRunContext(
            story=story,
            phase=phase,
            working_directory=self.project_dir,
            iteration=iteration,
            feedback=feedback,
            options=dict(spec.options),
        )
        try:
            output = agent.run(context)
        except Exception as exc:
            logger.exception("[Story {}] Agent {} raised during {}: {}", story.id, spec.id, phase.value, exc)
            return _blocker_output(spec.id, spec.role, f"Agent {spec.id} failed: {exc}", iteration)
        output.iteration = iteration
        logger.debug(
            "[Story {}] Agent {} ({}) approved={} concerns={}",
            story.id,
            output.agent_id,
            output.role.value,
            output.approved,
            len(output.concerns),
        )
        return output

    def _run_members(
        self,
        group: AgentGroup,
        phase: Phase,
        story: Story,
        feedback: Optional[str],
        iteration: int,
    ) -> _NodeRun:
        run = _NodeRun()
        if group.composition == Composition.PARALLEL and len(group.agents) > 1:
            results: dict[int, _NodeRun] = {}
            max_workers = min(self.max_workers, len(group.agents))
            with concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(self._run_node, member, phase, story, feedback, iteration): index
                    for index, member in enumerate(group.agents)
                }
                for future in concurrent.futures.as_completed(futures):
                    index = futures[future]
                    member = group.agents[index]
                    try:
                        results[index] = future.result()
                    except Exception as e:
                        logger.exception("Failed to get result for agent {}: {}", member.id, e)
                        role = member.role if isinstance(member, AgentSpec) else AgentRole.UNSUPPORTED
                        results[index] = _NodeRun(
                            outputs=[_blocker_output(member.id, role, f"Execution error: {e}", iteration)]
                        )
            # Keep configuration order regardless of completion order.
            for index in sorted(results):
                run.outputs.extend(results[index].outputs)
                run.consensus.extend(results[index].consensus)
                run.advisory_ids.update(results[index].advisory_ids)
            return run

        for member in group.agents:
            member_run = self._run_node(member, phase, story, feedback, iteration)
            run.outputs.extend(member_run.outputs)
            run.consensus.extend(member_run.consensus)
            run.advisory_ids.update(member_run.advisory_ids)
            if group.consensus != ConsensusMode.NONE and any(o.has_blockers for o in member_run.outputs):
                logger.info("[Group {}] Stopping early: {} reported a blocker", group.id, member.id)
                break
        return run

    def _run_group(
        self,
        group: AgentGroup,
        phase: Phase,
        story: Story,
        feedback: Optional[str],
        iteration: int,
    ) -> _NodeRun:
        run = self._run_members(group, phase, story, feedback, iteration)
        if group.consensus == ConsensusMode.NONE:
            return run

        manager = ConsensusManager(
            ConsensusOptions(
                max_iterations=group.max_iterations,
                require_unanimous=group.require_unanimous,
                min_approval_ratio=group.min_approval_ratio,
            )
        )

        def _reexecute(context: IterationContext) -> list[AgentOutput]:
            combined = context.feedback if not feedback else f"{feedback}\n\n{context.feedback}"
            return self._run_members(group, phase, story, combined, context.iteration).outputs

        consensus = manager.seek_consensus(run.outputs, _reexecute)
        logger.info(
            "[Group {}] consensus={} reached={} iterations={}",
            group.id,
            group.consensus.value,
            consensus.reached,
            consensus.iterations,
        )
        result = _NodeRun(outputs=list(consensus.final_outputs), consensus=run.consensus + [(group.consensus, consensus)])
        if group.consensus == ConsensusMode.OPTIONAL:
            result.advisory_ids = {output.agent_id for output in consensus.final_outputs}
        return result

    # ------------------------------------------------------------------
    # Verdict
    # ------------------------------------------------------------------

    def _finalize(self, phase: Phase, story: Story, run: _NodeRun) -> PhaseExecutionResult:
        merged = merge_agent_outputs(run.outputs)
        required_outputs = [o for o in run.outputs if o.agent_id not in run.advisory_ids]
        approved = all(output.approved for output in required_outputs)
        success = approved and not merged.has_blockers
        error: Optional[str] = None

        consensus: Optional[ConsensusResult] = None
        for mode, result in run.consensus:
            consensus = result
            if mode == ConsensusMode.REQUIRED and not result.reached:
                success = False
                error = CONSENSUS_FAILED_MESSAGE

        summary_parts = [merged.summary]
        if consensus is not None:
            if consensus.reached:
                summary_parts.append(f"Consensus reached after {consensus.iterations} iteration(s).")
            if consensus.requires_human_review:
                summary_parts.append("Human review required.")
        summary = " ".join(part for part in summary_parts if part)

        if not success and error is None:
            if merged.blockers:
                error = "; ".join(c.description for c in merged.blockers[:3])
            elif merged.dissenting_agents:
                error = "Not approved by: " + ", ".join(merged.dissenting_agents)
            else:
                error = f"Phase {phase.value} failed"

        logger.info("[Story {}] Phase {} success={}: {}", story.id, phase.value, success, summary)
        return PhaseExecutionResult(
            phase=phase,
            success=success,
            outputs=run.outputs,
            merged=merged,
            consensus=consensus,
            summary=summary,
            error=error,
        )


# ---------------------------------------------------------------------------
# Write-back
# ---------------------------------------------------------------------------

def _producer_content(result: PhaseExecutionResult) -> str:
    for output in result.outputs:
        if output.content and output.content.strip():
            return output.content.strip()
    return ""


def _plan_tasks_section(result: PhaseExecutionResult) -> Optional[str]:
    for output in result.outputs:
        content = output.content or ""
        section = extract_section(content, IMPLEMENTATION_TASKS_HEADING)
        if section is not None and parse_implementation_tasks(
            f"## {IMPLEMENTATION_TASKS_HEADING}\n\n{section}"
        ):
            return section
        if parse_implementation_tasks(f"## {IMPLEMENTATION_TASKS_HEADING}\n\n{content}"):
            return content
    return None


def _review_feedback(result: PhaseExecutionResult) -> str:
    merged = result.merged
    if merged is None or not merged.concerns:
        return result.error or result.summary
    lines = [f"[{c.severity.value}] {c.category}: {c.description}" for c in merged.concerns]
    return "\n".join(lines)


def _review_attempt(result: PhaseExecutionResult, decision: ReviewDecision) -> ReviewAttempt:
    merged = result.merged
    concerns = merged.concerns if merged else []
    return ReviewAttempt(
        decision=decision,
        feedback=_review_feedback(result) if decision != ReviewDecision.APPROVED else result.summary,
        severity=concerns[0].severity.value if concerns else None,
        issues=[
            ReviewIssue(severity=c.severity.value, category=c.category, description=c.description, file=c.file)
            for c in concerns
        ],
        blockers=[c.description for c in concerns if c.severity == ConcernSeverity.BLOCKER],
    )


def apply_phase_result(
    store: StoryStore,
    story: Story,
    phase: Phase,
    result: PhaseExecutionResult,
    progress_store: Optional[TaskProgressStore] = None,
) -> Story:
    """Persist the outcome of a phase on the story.

    Successful phases set their completion flag (refine moves the story out of
    the backlog). A rejected review records the verdict, bumps the retry
    counter and sends the story back to planning.
    """
    if phase == Phase.REVIEW:
        if result.success:
            append_review_history(story, _review_attempt(result, ReviewDecision.APPROVED))
            complete_phase(story, phase)
            story.last_error = None
        else:
            append_review_history(story, _review_attempt(result, ReviewDecision.REJECTED))
            retries = increment_retry_count(story)
            reset_for_rework(story)
            if progress_store is not None:
                progress_store.reset_progress(story.id)
            story.last_error = sanitize_reason_text(result.error or "Review rejected")
            logger.warning("[Story {}] Review rejected (retry {}): {}", story.id, retries, story.last_error)
    elif result.success:
        content = _producer_content(result)
        if phase == Phase.REFINE and content and "## " in content:
            story.content = content
        elif phase == Phase.RESEARCH and content:
            story.content = replace_section(story.content, RESEARCH_HEADING, content)
        elif phase == Phase.PLAN:
            section = _plan_tasks_section(result)
            if section is not None:
                story.content = replace_section(story.content, IMPLEMENTATION_TASKS_HEADING, section)
                if progress_store is not None:
                    progress_store.reset_progress(story.id)
            elif not parse_implementation_tasks(story.content):
                result.success = False
                result.error = "Plan produced no implementation tasks"
        if result.success:
            complete_phase(story, phase)
            story.last_error = None
    elif phase == Phase.PLAN_REVIEW:
        # The plan must be redone before it can be reviewed again.
        story.plan_complete = False
        story.plan_review_complete = False

    if not result.success and phase != Phase.REVIEW:
        story.last_error = sanitize_reason_text(result.error or f"Phase {phase.value} failed")
        logger.warning("[Story {}] Phase {} failed: {}", story.id, phase.value, story.last_error)

    store.save(story)
    store.append_event(story.id, summarize_event(result))
    return story
