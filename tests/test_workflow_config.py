"""Test workflow.yaml validation and loading."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.errors import WorkflowConfigError
from sdlc_runner.models import AgentRole, Composition, ConsensusMode, Phase
from sdlc_runner.workflow_config import (
    AgentGroup,
    AgentSpec,
    load_workflow_config,
    validate_workflow_config,
)

WORKFLOW_YAML = """version: "1.0"
phases:
  refine:
    agents:
      - id: refiner
        role: story_refiner
  review:
    agents:
      - id: review-board
        composition: parallel
        consensus: required
        max_iterations: 2
        agents:
          - {id: tech-lead, role: tech_lead_reviewer}
          - {id: security, role: security_reviewer, options: {max_attempts: 1}}
"""


def _write(tmp_path: Path, text: str) -> None:
    state = tmp_path / ".sdlc"
    state.mkdir(exist_ok=True)
    (state / "workflow.yaml").write_text(text)


def test_missing_file_is_an_empty_configuration(tmp_path: Path) -> None:
    config = load_workflow_config(tmp_path)
    assert config.phases == {}
    assert config.has_agents(Phase.REVIEW) is False


def test_load_nested_groups(tmp_path: Path) -> None:
    _write(tmp_path, WORKFLOW_YAML)
    config = load_workflow_config(tmp_path)
    refine = config.agents_for(Phase.REFINE)
    assert isinstance(refine[0], AgentSpec)
    assert refine[0].role == AgentRole.STORY_REFINER

    (group,) = config.agents_for(Phase.REVIEW)
    assert isinstance(group, AgentGroup)
    assert group.composition == Composition.PARALLEL
    assert group.consensus == ConsensusMode.REQUIRED
    assert group.max_iterations == 2
    assert [agent.id for agent in group.agents] == ["tech-lead", "security"]
    assert group.agents[1].options == {"max_attempts": 1}


def test_unknown_role_is_a_warning(tmp_path: Path) -> None:
    _write(tmp_path, 'version: "1.0"\nphases:\n  research:\n    agents:\n      - {id: oracle, role: oracle}\n')
    config = load_workflow_config(tmp_path)
    assert config.agents_for(Phase.RESEARCH)[0].role == AgentRole.UNSUPPORTED
    assert config.agents_for(Phase.RESEARCH)[0].role_name == "oracle"
    assert any("unsupported role 'oracle'" in warning for warning in config.warnings)


def test_invalid_file_raises_with_every_error(tmp_path: Path) -> None:
    _write(
        tmp_path,
        'version: "2.0"\n'
        "phases:\n"
        "  deploy:\n    agents: []\n"
        "  review:\n    agents:\n"
        "      - {id: g, composition: diagonal, consensus: maybe, max_iterations: 0, agents: []}\n"
        "      - {id: g, role: reviewer}\n",
    )
    with pytest.raises(WorkflowConfigError) as excinfo:
        load_workflow_config(tmp_path)
    errors = excinfo.value.errors
    assert "version: unsupported version '2.0' (expected 1.0)" in errors
    assert any(error.startswith("phases.deploy: unknown phase") for error in errors)
    assert any(error.startswith("phases.review.agents[0].composition") for error in errors)
    assert any(error.startswith("phases.review.agents[0].consensus") for error in errors)
    assert "phases.review.agents[0].max_iterations: must be a positive integer" in errors
    assert "phases.review.agents[1].id: duplicate id 'g'" in errors


def test_unparseable_yaml_raises(tmp_path: Path) -> None:
    _write(tmp_path, "phases: [oops\n")
    with pytest.raises(WorkflowConfigError):
        load_workflow_config(tmp_path)


def test_validation_warnings() -> None:
    result = validate_workflow_config({"phases": {"plan": {"agents": [{"id": "p"}, {"id": "empty", "agents": []}]}}})
    assert result.valid is True
    assert "version: missing, assuming 1.0" in result.warnings
    assert any("role: missing" in warning for warning in result.warnings)
    assert "phases.plan.agents[1].agents: group has no agents" in result.warnings
