"""Test agent providers, the role registry and failure classification."""

from __future__ import annotations

import random
import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.agents.base import AgentRequest, DryRunInvoker, invoke_with_retry
from sdlc_runner.agents.command import CommandAgentInvoker
from sdlc_runner.agents.errors import calculate_backoff, classify_api_error, should_retry
from sdlc_runner.agents.providers import build_provider_registry
from sdlc_runner.agents.registry import AgentRegistry, AgentRunContext, PromptAgent, UnsupportedAgent
from sdlc_runner.config import AgentConfig
from sdlc_runner.errors import AgentTimeoutError, AuthenticationError, UnknownProviderError
from sdlc_runner.models import AgentInvocationResult, AgentRole, ConcernSeverity, Phase, Story


class ScriptedInvoker:
    def __init__(self, *results):
        self.results = list(results)
        self.requests: list[AgentRequest] = []

    def invoke(self, request: AgentRequest) -> AgentInvocationResult:
        self.requests.append(request)
        item = self.results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class HttpError(Exception):
    def __init__(self, status: int):
        super().__init__(f"HTTP {status}")
        self.status = status


def _context(tmp_path: Path, phase: Phase = Phase.REVIEW) -> AgentRunContext:
    return AgentRunContext(story=Story(id="s1", title="Greeting"), phase=phase, working_directory=tmp_path)


# ---------------------------------------------------------------------------
# Failure classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "error, expected",
    [
        (HttpError(429), "transient"),
        (HttpError(503), "transient"),
        (HttpError(401), "permanent"),
        (AgentTimeoutError(30), "transient"),
        (ConnectionResetError("reset"), "transient"),
        (AuthenticationError("bad key"), "permanent"),
        ("ECONNRESET while reading", "transient"),
        ("Rate limit reached", "transient"),
        ("syntax error", "permanent"),
        (ValueError("nope"), "permanent"),
    ],
)
def test_classify_api_error(error: object, expected: str) -> None:
    assert classify_api_error(error) == expected


def test_should_retry_stops_at_budget() -> None:
    assert should_retry(HttpError(500), attempt=1, max_retries=3) is True
    assert should_retry(HttpError(500), attempt=3, max_retries=3) is False
    assert should_retry(HttpError(400), attempt=1, max_retries=3) is False


def test_backoff_grows_with_jitter_and_cap() -> None:
    rng = random.Random(7)
    for attempt, nominal in [(1, 2.0), (2, 4.0), (3, 8.0)]:
        delay = calculate_backoff(attempt, rng=rng)
        assert nominal * 0.75 <= delay <= nominal * 1.25
    assert calculate_backoff(20, rng=rng) <= 60.0


def test_invoke_with_retry_retries_transient_only(tmp_path: Path) -> None:
    request = AgentRequest(prompt="p", working_directory=tmp_path)
    sleeps: list[float] = []
    invoker = ScriptedInvoker(
        AgentInvocationResult(success=False, error="overloaded", transient=True),
        ConnectionError("reset"),
        AgentInvocationResult(success=True, output="ok"),
    )
    result = invoke_with_retry(invoker, request, max_attempts=3, sleep=sleeps.append)
    assert result.success is True
    assert len(invoker.requests) == 3
    assert len(sleeps) == 2

    permanent = ScriptedInvoker(AgentInvocationResult(success=False, error="bad prompt"))
    result = invoke_with_retry(permanent, request, sleep=sleeps.append)
    assert result.success is False
    assert len(permanent.requests) == 1


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

def test_provider_registry_builtins_and_caching() -> None:
    registry = build_provider_registry(AgentConfig())
    assert registry.list_providers() == ["command", "dry-run"]
    assert registry.get("dry-run") is registry.get("dry-run")
    assert isinstance(registry.get("command"), CommandAgentInvoker)


def test_unknown_provider_lists_available() -> None:
    registry = build_provider_registry()
    with pytest.raises(UnknownProviderError) as excinfo:
        registry.get("gpt-9")
    assert "available: command, dry-run" in str(excinfo.value)


def test_default_provider_follows_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    registry = build_provider_registry(AgentConfig(provider="command"))
    monkeypatch.setenv("SDLC_PROVIDER", "dry-run")
    assert isinstance(registry.get_default(), DryRunInvoker)
    monkeypatch.delenv("SDLC_PROVIDER")
    assert isinstance(registry.get_default(), CommandAgentInvoker)


def test_extra_providers_and_reset() -> None:
    fake = DryRunInvoker()
    registry = build_provider_registry(extra={"fake": lambda cfg: fake})
    assert registry.get("fake") is fake
    registry.reset()
    assert registry.list_providers() == []
    assert registry.has_provider("fake") is False


# ---------------------------------------------------------------------------
# Role registry
# ---------------------------------------------------------------------------

def test_registry_builds_prompt_agents_for_every_supported_role() -> None:
    registry = AgentRegistry(DryRunInvoker)
    roles = registry.list_roles()
    assert AgentRole.UNSUPPORTED not in roles
    assert len(roles) == len(AgentRole) - 1
    assert isinstance(registry.create(AgentRole.PLANNER, "p1"), PromptAgent)


def test_unsupported_role_yields_blocking_agent(tmp_path: Path) -> None:
    registry = AgentRegistry(DryRunInvoker)
    agent = registry.create(AgentRole.UNSUPPORTED, "x", requested_role="astrologer")
    assert isinstance(agent, UnsupportedAgent)
    output = agent.run(_context(tmp_path))
    assert output.approved is False
    assert output.concerns[0].severity == ConcernSeverity.BLOCKER
    assert output.content == 'Agent role "astrologer" is not yet implemented'


def test_register_rejects_unsupported_and_reset_restores_builtins() -> None:
    registry = AgentRegistry(DryRunInvoker)
    with pytest.raises(ValueError):
        registry.register(AgentRole.UNSUPPORTED, lambda agent_id, options: None)
    registry.unregister(AgentRole.REVIEWER)
    assert isinstance(registry.create(AgentRole.REVIEWER, "r"), UnsupportedAgent)
    registry.reset()
    assert isinstance(registry.create(AgentRole.REVIEWER, "r"), PromptAgent)


def test_prompt_agent_parses_verdict(tmp_path: Path) -> None:
    invoker = ScriptedInvoker(
        AgentInvocationResult(
            success=True,
            output='{"approved": false, "summary": "needs work", "concerns": [{"severity": "critical", "category": "tests", "description": "No tests"}]}',
        )
    )
    output = PromptAgent("tech", AgentRole.TECH_LEAD_REVIEWER, invoker).run(_context(tmp_path))
    assert output.approved is False
    assert output.concerns[0].severity == ConcernSeverity.CRITICAL
    assert output.concerns[0].agent_id == "tech"
    assert output.content == "needs work"
    assert invoker.requests[0].role == "tech_lead_reviewer"
    assert invoker.requests[0].phase == "review"


def test_unstructured_review_is_not_approved_but_producer_output_is(tmp_path: Path) -> None:
    review = PromptAgent("r", AgentRole.REVIEWER, ScriptedInvoker(AgentInvocationResult(success=True, output="LGTM")))
    output = review.run(_context(tmp_path))
    assert output.approved is False
    assert output.concerns[0].category == "format"

    planner = PromptAgent(
        "p", AgentRole.PLANNER, ScriptedInvoker(AgentInvocationResult(success=True, output="## Implementation Tasks\n"))
    )
    output = planner.run(_context(tmp_path, Phase.PLAN))
    assert output.approved is True
    assert output.content == "## Implementation Tasks\n"


def test_failed_invocation_becomes_blocker(tmp_path: Path) -> None:
    agent = PromptAgent(
        "r",
        AgentRole.REVIEWER,
        ScriptedInvoker(AgentInvocationResult(success=False, error="exit 2")),
        max_attempts=1,
    )
    output = agent.run(_context(tmp_path))
    assert output.has_blockers
    assert output.concerns[0].description == "Agent failed: exit 2"


# ---------------------------------------------------------------------------
# Command provider
# ---------------------------------------------------------------------------

def test_command_invoker_pipes_prompt_on_stdin(tmp_path: Path) -> None:
    invoker = CommandAgentInvoker(AgentConfig(command="cat -", timeout_seconds=30))
    result = invoker.invoke(AgentRequest(prompt="hello agent\n", working_directory=tmp_path))
    assert result.success is True
    assert result.output == "hello agent\n"
    runs = list((tmp_path / ".sdlc" / "runs").iterdir())
    assert (runs[0] / "prompt.txt").read_text() == "hello agent\n"


def test_command_invoker_reports_exit_code(tmp_path: Path) -> None:
    invoker = CommandAgentInvoker(AgentConfig(command="sh -c 'cat {prompt_file} >/dev/null; exit 3'"))
    result = invoker.invoke(AgentRequest(prompt="x", working_directory=tmp_path))
    assert result.success is False
    assert result.error == "Agent exited with code 3"


def test_command_without_prompt_input_is_rejected(tmp_path: Path) -> None:
    invoker = CommandAgentInvoker(AgentConfig(command="true"))
    with pytest.raises(ValueError):
        invoker.invoke(AgentRequest(prompt="x", working_directory=tmp_path))
