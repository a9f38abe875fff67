"""Agent role registry: maps each `AgentRole` to the agent that plays it.

Roles form a closed set. Every supported role has a built-in kind (a producer
that writes content, or a reviewer that issues a verdict); `UNSUPPORTED`
resolves to an agent that always reports a blocking concern, so an unknown
role in `workflow.yaml` fails loudly instead of silently passing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from ..models import (
    AgentOutput,
    AgentRole,
    Concern,
    ConcernSeverity,
    Phase,
    Story,
    parse_severity,
)
from ..prompts import build_phase_prompt
from .base import AgentInvoker, AgentRequest, invoke_with_retry
from .response_parser import parse_agent_response

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Agent contract
# ---------------------------------------------------------------------------

@dataclass
class AgentRunContext:
    story: Story
    phase: Phase
    working_directory: Path
    iteration: int = 1
    feedback: Optional[str] = None
    options: dict[str, Any] = field(default_factory=dict)


class PhaseAgent(Protocol):
    agent_id: str
    role: AgentRole

    def run(self, context: AgentRunContext) -> AgentOutput:
        ...


AgentFactory = Callable[[str, dict[str, Any]], PhaseAgent]


# ---------------------------------------------------------------------------
# Built-in agents
# ---------------------------------------------------------------------------

PRODUCER = "producer"
REVIEWER = "reviewer"
UNSUPPORTED = "unsupported"

ROLE_KINDS: dict[AgentRole, str] = {
    AgentRole.STORY_REFINER: PRODUCER,
    AgentRole.TECH_LEAD_REVIEWER: REVIEWER,
    AgentRole.SECURITY_REVIEWER: REVIEWER,
    AgentRole.PRODUCT_OWNER_REVIEWER: REVIEWER,
    AgentRole.RESEARCHER: PRODUCER,
    AgentRole.PLANNER: PRODUCER,
    AgentRole.PLAN_REVIEWER: REVIEWER,
    AgentRole.IMPLEMENTER: PRODUCER,
    AgentRole.REVIEWER: REVIEWER,
    AgentRole.UNSUPPORTED: UNSUPPORTED,
}

_missing_kinds = set(AgentRole) - set(ROLE_KINDS)
if _missing_kinds:  # pragma: no cover - guards edits to AgentRole
    raise RuntimeError(f"ROLE_KINDS is missing roles: {sorted(r.value for r in _missing_kinds)}")


class PromptAgent:
    """Agent that renders a role prompt, invokes a provider and parses the verdict."""

    def __init__(
        self,
        agent_id: str,
        role: AgentRole,
        invoker: AgentInvoker,
        *,
        max_attempts: int = 3,
    ):
        self.agent_id = agent_id
        self.role = role
        self.invoker = invoker
        self.max_attempts = max_attempts

    def run(self, context: AgentRunContext) -> AgentOutput:
        prompt = build_phase_prompt(
            self.role,
            context.story,
            context.phase,
            feedback=context.feedback,
            iteration=context.iteration,
        )
        request = AgentRequest(
            prompt=prompt,
            working_directory=context.working_directory,
            story_id=context.story.id,
            phase=context.phase.value,
            role=self.role.value,
            metadata={"agent_id": self.agent_id, "iteration": context.iteration},
        )
        result = invoke_with_retry(self.invoker, request, max_attempts=self.max_attempts)
        if not result.success:
            error = result.error or "unknown error"
            return AgentOutput(
                agent_id=self.agent_id,
                role=self.role,
                content=error,
                concerns=[
                    Concern(
                        severity=ConcernSeverity.BLOCKER,
                        category="execution",
                        description=f"Agent failed: {error}",
                        agent_id=self.agent_id,
                    )
                ],
                approved=False,
                iteration=context.iteration,
                metadata={"files_changed": list(result.files_changed)},
            )

        parsed = parse_agent_response(result.output)
        if parsed.ok and parsed.value is not None:
            response = parsed.value
            concerns = [
                Concern(
                    severity=parse_severity(item.severity),
                    category=item.category,
                    description=item.description,
                    agent_id=self.agent_id,
                    file=item.file,
                )
                for item in response.concerns
            ]
            return AgentOutput(
                agent_id=self.agent_id,
                role=self.role,
                content=response.content or response.summary or result.output,
                concerns=concerns,
                approved=response.approved,
                iteration=context.iteration,
                metadata={"parse_strategy": parsed.strategy, "files_changed": list(result.files_changed)},
            )

        logger.info("Agent %s returned unstructured output (%s)", self.agent_id, parsed.error)
        if ROLE_KINDS[self.role] == REVIEWER:
            concerns = [
                Concern(
                    severity=ConcernSeverity.MAJOR,
                    category="format",
                    description="Review response could not be parsed into a verdict",
                    agent_id=self.agent_id,
                )
            ]
            approved = False
        else:
            concerns = []
            approved = True
        return AgentOutput(
            agent_id=self.agent_id,
            role=self.role,
            content=result.output,
            concerns=concerns,
            approved=approved,
            iteration=context.iteration,
            metadata={"parse_error": parsed.error, "files_changed": list(result.files_changed)},
        )


class UnsupportedAgent:
    """Stand-in for roles the registry cannot run; always blocks."""

    role = AgentRole.UNSUPPORTED

    def __init__(self, agent_id: str, requested_role: str):
        self.agent_id = agent_id
        self.requested_role = requested_role

    def run(self, context: AgentRunContext) -> AgentOutput:
        message = f'Agent role "{self.requested_role}" is not yet implemented'
        return AgentOutput(
            agent_id=self.agent_id,
            role=AgentRole.UNSUPPORTED,
            content=message,
            concerns=[
                Concern(
                    severity=ConcernSeverity.BLOCKER,
                    category="configuration",
                    description=message,
                    agent_id=self.agent_id,
                )
            ],
            approved=False,
            iteration=context.iteration,
        )


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class AgentRegistry:
    """Role -> factory mapping owned by the composition root."""

    def __init__(self, invoker_provider: Callable[[], AgentInvoker]):
        self._invoker_provider = invoker_provider
        self._factories: dict[AgentRole, AgentFactory] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        for role, kind in ROLE_KINDS.items():
            if kind in (PRODUCER, REVIEWER):
                self._factories[role] = self._prompt_agent_factory(role)

    def _prompt_agent_factory(self, role: AgentRole) -> AgentFactory:
        def _factory(agent_id: str, options: dict[str, Any]) -> PhaseAgent:
            return PromptAgent(
                agent_id,
                role,
                self._invoker_provider(),
                max_attempts=int(options.get("max_attempts", 3)),
            )

        return _factory

    def register(self, role: AgentRole, factory: AgentFactory) -> None:
        if role is AgentRole.UNSUPPORTED:
            raise ValueError("Cannot register a factory for the unsupported role")
        self._factories[role] = factory

    def unregister(self, role: AgentRole) -> None:
        self._factories.pop(role, None)

    def has_role(self, role: AgentRole) -> bool:
        return role in self._factories

    def list_roles(self) -> list[AgentRole]:
        return [role for role in AgentRole if role in self._factories]

    def create(
        self,
        role: AgentRole,
        agent_id: str,
        *,
        requested_role: Optional[str] = None,
        options: Optional[dict[str, Any]] = None,
    ) -> PhaseAgent:
        """Build the agent for `role`; unsupported or unregistered roles get an `UnsupportedAgent`."""
        if role is AgentRole.UNSUPPORTED:
            return UnsupportedAgent(agent_id, requested_role or role.value)
        factory = self._factories.get(role)
        if factory is None:
            logger.warning("No agent registered for role %s", role.value)
            return UnsupportedAgent(agent_id, requested_role or role.value)
        return factory(agent_id, dict(options or {}))

    def reset(self) -> None:
        """Restore the built-in factories, dropping any registered overrides."""
        self._factories.clear()
        self._register_builtins()
