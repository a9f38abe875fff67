"""Load and validate `.sdlc/workflow.yaml`, the per-phase agent configuration.

Example::

    version: "1.0"
    phases:
      review:
        agents:
          - id: review-board
            composition: parallel
            consensus: required
            max_iterations: 3
            agents:
              - {id: tech-lead, role: tech_lead_reviewer}
              - {id: security, role: security_reviewer}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .constants import DEFAULT_MAX_CONSENSUS_ITERATIONS, STATE_DIR_NAME, WORKFLOW_FILE
from .errors import WorkflowConfigError
from .io_utils import _load_data_with_error
from .models import AgentRole, Composition, ConsensusMode, Phase, parse_role

SUPPORTED_VERSIONS = {"1.0"}
VALID_PHASES = {phase.value for phase in Phase}


@dataclass
class AgentSpec:
    """A single configured agent."""

    id: str
    role: AgentRole
    role_name: str = ""
    name: Optional[str] = None
    options: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentGroup:
    """A set of agents run sequentially or in parallel."""

    id: str
    agents: list["AgentNode"] = field(default_factory=list)
    composition: Composition = Composition.SEQUENTIAL
    consensus: ConsensusMode = ConsensusMode.NONE
    max_iterations: int = DEFAULT_MAX_CONSENSUS_ITERATIONS
    require_unanimous: bool = True
    min_approval_ratio: float = 1.0


AgentNode = Union[AgentSpec, AgentGroup]


@dataclass
class PhaseConfig:
    phase: Phase
    agents: list[AgentNode] = field(default_factory=list)


@dataclass
class WorkflowConfig:
    version: str = "1.0"
    phases: dict[Phase, PhaseConfig] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def agents_for(self, phase: Phase) -> list[AgentNode]:
        config = self.phases.get(phase)
        return list(config.agents) if config else []

    def has_agents(self, phase: Phase) -> bool:
        return bool(self.agents_for(phase))


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _phase_agents(raw_phase: Any) -> Any:
    if isinstance(raw_phase, dict):
        return raw_phase.get("agents")
    return raw_phase


def _validate_entry(entry: Any, path: str, result: ValidationResult, seen_ids: set[str]) -> None:
    if not isinstance(entry, dict):
        result.errors.append(f"{path}: expected a mapping")
        return

    entry_id = entry.get("id")
    if entry_id is not None:
        if not isinstance(entry_id, str) or not entry_id.strip():
            result.errors.append(f"{path}.id: must be a non-empty string")
        elif entry_id in seen_ids:
            result.errors.append(f"{path}.id: duplicate id '{entry_id}'")
        else:
            seen_ids.add(entry_id)

    if "agents" in entry:
        composition = entry.get("composition", Composition.SEQUENTIAL.value)
        if composition not in {c.value for c in Composition}:
            result.errors.append(
                f"{path}.composition: must be one of sequential, parallel (got {composition!r})"
            )
        consensus = entry.get("consensus", ConsensusMode.NONE.value)
        if consensus not in {m.value for m in ConsensusMode}:
            result.errors.append(
                f"{path}.consensus: must be one of required, optional, none (got {consensus!r})"
            )
        if "max_iterations" in entry:
            value = entry["max_iterations"]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                result.errors.append(f"{path}.max_iterations: must be a positive integer")
        if "min_approval_ratio" in entry:
            ratio = entry["min_approval_ratio"]
            if isinstance(ratio, bool) or not isinstance(ratio, (int, float)) or not 0 < ratio <= 1:
                result.errors.append(f"{path}.min_approval_ratio: must be in (0, 1]")
        children = entry.get("agents")
        if not isinstance(children, list):
            result.errors.append(f"{path}.agents: must be a list")
            return
        if not children:
            result.warnings.append(f"{path}.agents: group has no agents")
        for index, child in enumerate(children):
            _validate_entry(child, f"{path}.agents[{index}]", result, seen_ids)
        return

    role = entry.get("role")
    if role is None:
        result.warnings.append(f"{path}.role: missing; the agent will block the phase")
    elif parse_role(role) is AgentRole.UNSUPPORTED:
        result.warnings.append(f"{path}.role: unsupported role {role!r}; the agent will block the phase")
    options = entry.get("options")
    if options is not None and not isinstance(options, dict):
        result.errors.append(f"{path}.options: must be a mapping")


def validate_workflow_config(raw: dict[str, Any]) -> ValidationResult:
    """Validate a raw workflow mapping.

    Returns:
        Errors and warnings, each prefixed with the dotted path of the offending key.
    """
    result = ValidationResult()
    version = raw.get("version")
    if version is None:
        result.warnings.append("version: missing, assuming 1.0")
    elif str(version) not in SUPPORTED_VERSIONS:
        result.errors.append(f"version: unsupported version {version!r} (expected 1.0)")

    phases = raw.get("phases", {})
    if phases is None:
        return result
    if not isinstance(phases, dict):
        result.errors.append("phases: must be a mapping")
        return result

    seen_ids: set[str] = set()
    for phase_name, raw_phase in phases.items():
        path = f"phases.{phase_name}"
        if phase_name not in VALID_PHASES:
            result.errors.append(f"{path}: unknown phase (valid: {', '.join(p.value for p in Phase)})")
            continue
        agents = _phase_agents(raw_phase)
        if agents is None:
            continue
        if not isinstance(agents, list):
            result.errors.append(f"{path}.agents: must be a list")
            continue
        for index, entry in enumerate(agents):
            _validate_entry(entry, f"{path}.agents[{index}]", result, seen_ids)
    return result


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _build_node(entry: dict[str, Any], default_id: str) -> AgentNode:
    node_id = str(entry.get("id") or default_id)
    if "agents" in entry:
        children = entry.get("agents") or []
        return AgentGroup(
            id=node_id,
            agents=[_build_node(child, f"{node_id}-{i + 1}") for i, child in enumerate(children)],
            composition=Composition(entry.get("composition", Composition.SEQUENTIAL.value)),
            consensus=ConsensusMode(entry.get("consensus", ConsensusMode.NONE.value)),
            max_iterations=int(entry.get("max_iterations", DEFAULT_MAX_CONSENSUS_ITERATIONS)),
            require_unanimous=bool(entry.get("require_unanimous", True)),
            min_approval_ratio=float(entry.get("min_approval_ratio", 1.0)),
        )
    role_name = entry.get("role")
    return AgentSpec(
        id=node_id,
        role=parse_role(role_name),
        role_name="" if role_name is None else str(role_name),
        name=entry.get("name"),
        options=dict(entry.get("options") or {}),
    )


def parse_workflow_config(raw: dict[str, Any]) -> WorkflowConfig:
    """Validate and convert a raw mapping into a `WorkflowConfig`.

    Raises:
        WorkflowConfigError: If validation reports errors.
    """
    result = validate_workflow_config(raw)
    if not result.valid:
        raise WorkflowConfigError(result.errors)
    for warning in result.warnings:
        logger.warning("workflow.yaml: {}", warning)

    config = WorkflowConfig(version=str(raw.get("version", "1.0")), warnings=list(result.warnings))
    for phase_name, raw_phase in (raw.get("phases") or {}).items():
        agents = _phase_agents(raw_phase) or []
        phase = Phase(phase_name)
        config.phases[phase] = PhaseConfig(
            phase=phase,
            agents=[_build_node(entry, f"{phase.value}-{i + 1}") for i, entry in enumerate(agents)],
        )
    return config


def workflow_config_path(project_dir: Path) -> Path:
    return project_dir.resolve() / STATE_DIR_NAME / WORKFLOW_FILE


def load_workflow_config(project_dir: Path) -> WorkflowConfig:
    """Load `.sdlc/workflow.yaml`; a missing file yields an empty configuration.

    Raises:
        WorkflowConfigError: If the file is unreadable or invalid.
    """
    path = workflow_config_path(project_dir)
    if not path.exists():
        return WorkflowConfig()
    data, err = _load_data_with_error(path, {})
    if err:
        raise WorkflowConfigError([err])
    return parse_workflow_config(data)
