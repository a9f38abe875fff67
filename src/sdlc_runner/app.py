"""Composition root: wire configuration, registries and executors, then run the board."""

from __future__ import annotations

import dataclasses
import shlex
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .agents.base import AgentInvoker
from .agents.providers import ProviderFactory, ProviderRegistry, build_provider_registry
from .agents.registry import AgentRegistry
from .config import (
    get_agent_config,
    get_fingerprint_threshold,
    get_implementation_config,
    get_pr_command,
    get_review_config,
    load_runner_config,
)
from .errors import SdlcRunnerError
from .fsm import complete_phase, transition_status
from .git_utils import _ensure_gitignore, _git_is_repo
from .logging_utils import summarize_event
from .models import Action, ActionType, Phase, Story, StoryStatus
from .phase_executor import PhaseExecutor, apply_phase_result
from .scheduler import StateAssessment, assess_state
from .story import StoryStore, move_to_blocked, sanitize_reason_text
from .task_executor import TaskExecutorOptions, run_implementation_tasks
from .tasks import TaskProgressStore
from .workflow_config import load_workflow_config

DEFAULT_MAX_ITERATIONS = 50


@dataclass
class RunSummary:
    iterations: int = 0
    actions: list[dict[str, Any]] = field(default_factory=list)
    stopped_reason: str = ""

    @property
    def success(self) -> bool:
        return all(entry.get("success") for entry in self.actions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "iterations": self.iterations,
            "actions": list(self.actions),
            "stopped_reason": self.stopped_reason,
            "success": self.success,
        }


class Runtime:
    """Own every registry and store for one project directory.

    Args:
        project_dir: Repository the stories belong to.
        dry_run: Use the `dry-run` provider and skip commits and PR hooks.
        providers: Extra provider factories registered on top of the built-ins.
    """

    def __init__(
        self,
        project_dir: Path,
        *,
        dry_run: bool = False,
        providers: Optional[dict[str, ProviderFactory]] = None,
    ):
        self.project_dir = project_dir.resolve()
        config, err = load_runner_config(self.project_dir)
        if err:
            raise SdlcRunnerError(f"Unable to read runner config: {err}")
        self.config = config
        self.dry_run = dry_run
        self.review_config = get_review_config(config)
        self.implementation_config = get_implementation_config(config)
        self.identical_error_threshold = get_fingerprint_threshold(config)
        self.agent_config = get_agent_config(config)
        self.pr_command = get_pr_command(config)

        self.workflow_config = load_workflow_config(self.project_dir)
        self.providers: ProviderRegistry = build_provider_registry(self.agent_config, providers)
        self.agent_registry = AgentRegistry(self.invoker)
        self.phase_executor = PhaseExecutor(self.agent_registry, self.workflow_config, self.project_dir)
        self.story_store = StoryStore(self.project_dir)
        self.progress_store = TaskProgressStore(self.project_dir)

    def invoker(self) -> AgentInvoker:
        if self.dry_run:
            return self.providers.get("dry-run")
        return self.providers.get_default()

    def assess(self, story_id: Optional[str] = None) -> StateAssessment:
        return assess_state(self.story_store, self.review_config, story_id=story_id)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def run(self, max_iterations: int = DEFAULT_MAX_ITERATIONS, story_id: Optional[str] = None) -> RunSummary:
        """Repeatedly pick and execute the next action.

        Stops when no work remains, the iteration cap is reached, an action
        escalates to a human, or a non-review action fails. A rejected review is
        normal rework and does not stop the loop.
        """
        summary = RunSummary()
        if not self.dry_run and _git_is_repo(self.project_dir):
            _ensure_gitignore(self.project_dir)

        while summary.iterations < max_iterations:
            assessment = self.assess(story_id)
            for blocked_id in assessment.newly_blocked:
                summary.actions.append({"event": "StoryBlocked", "story_id": blocked_id, "success": False})
            action = assessment.next_action
            if action is None:
                summary.stopped_reason = "no work remaining"
                break
            summary.iterations += 1
            logger.info(
                "[Iteration {}] {} {} (priority {}): {}",
                summary.iterations,
                action.type.value,
                action.story_id,
                action.priority,
                action.reason,
            )
            ok = self.execute_action(action)
            summary.actions.append(summarize_event(action, success=ok))
            if action.context.get("blockedByMaxRetries"):
                summary.stopped_reason = f"story {action.story_id} needs human attention"
                break
            if not ok and action.type != ActionType.REVIEW:
                summary.stopped_reason = f"{action.type.value} failed for story {action.story_id}"
                break
        else:
            summary.stopped_reason = f"reached max iterations ({max_iterations})"

        logger.info("Run finished after {} iteration(s): {}", summary.iterations, summary.stopped_reason)
        return summary

    def execute_action(self, action: Action) -> bool:
        """Execute one scheduled action and persist its outcome."""
        story = self.story_store.load(action.story_id)
        self.story_store.append_event(story.id, summarize_event(action))

        if action.context.get("blockedByMaxRetries"):
            logger.error("[Story {}] {}", story.id, action.reason)
            return False

        if story.status == StoryStatus.READY and action.type != ActionType.REFINE:
            transition_status(story, StoryStatus.IN_PROGRESS)
            self.story_store.save(story)

        if action.type == ActionType.PLAN:
            return self._run_plan(story)
        if action.type == ActionType.IMPLEMENT:
            return self._run_implement(story)
        if action.type == ActionType.CREATE_PR:
            return self._create_pr(story)
        return self._run_phase(story, Phase(action.type.value))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _run_phase(self, story: Story, phase: Phase) -> bool:
        result = self.phase_executor.execute_phase(phase, story)
        apply_phase_result(self.story_store, story, phase, result, self.progress_store)
        return result.success

    def _run_plan(self, story: Story) -> bool:
        if not story.plan_complete and not self._run_phase(story, Phase.PLAN):
            return False
        if self.workflow_config.has_agents(Phase.PLAN_REVIEW):
            return self._run_phase(story, Phase.PLAN_REVIEW)
        complete_phase(story, Phase.PLAN_REVIEW)
        self.story_store.save(story)
        return True

    def _run_implement(self, story: Story) -> bool:
        options = TaskExecutorOptions.from_config(self.implementation_config, self.identical_error_threshold)
        if self.dry_run:
            options = dataclasses.replace(options, dry_run=True)
        result = run_implementation_tasks(
            story,
            working_directory=self.project_dir,
            invoker=self.invoker(),
            progress_store=self.progress_store,
            story_store=self.story_store,
            options=options,
        )
        self.story_store.append_event(story.id, summarize_event(result))
        if result.success:
            complete_phase(story, Phase.IMPLEMENT)
            story.last_error = None
            self.story_store.save(story)
            return True

        if result.error:
            detail = result.error
        elif result.failed_tasks:
            first = result.failed_tasks[0]
            detail = f"{result.tasks_failed} task(s) failed; {first.task_id}: {first.error}"
        else:
            detail = f"{result.tasks_remaining} task(s) could not run"
        move_to_blocked(self.story_store, story, f"Implementation failed - {detail}")
        logger.warning("Story {} blocked: {}", story.id, story.blocked_reason)
        return False

    def _create_pr(self, story: Story) -> bool:
        if self.pr_command and not self.dry_run:
            command = self.pr_command.format(story_id=story.id, title=story.title)
            logger.info("[Story {}] Running PR command: {}", story.id, command)
            result = subprocess.run(
                shlex.split(command),
                cwd=self.project_dir,
                capture_output=True,
                text=True,
                check=False,
            )
            if result.returncode != 0:
                story.last_error = sanitize_reason_text(
                    f"PR command exited {result.returncode}: {result.stderr.strip() or result.stdout.strip()}"
                )
                self.story_store.save(story)
                logger.error("[Story {}] {}", story.id, story.last_error)
                return False
        transition_status(story, StoryStatus.DONE)
        story.last_error = None
        self.story_store.save(story)
        self.story_store.append_event(story.id, {"event": "story_done"})
        logger.info("[Story {}] Done", story.id)
        return True
