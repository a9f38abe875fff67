"""Format and summarize runner events for logs and the story event log."""

import json
from typing import Any


def _clip(text: str, limit: int = 240) -> str:
    return (text[:limit] + "…") if len(text) > limit else text


def summarize_event(event: Any, **extra: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a result object.

    Understands `OrchestratorResult`, `PhaseExecutionResult`, `Action` and
    `ConsensusResult`; anything else is reported by class name only.

    Args:
        event: Result object (or None).
        **extra: Additional keys merged into the summary.

    Returns:
        A dictionary suitable for logging or appending to `events.jsonl`.
    """
    if event is None:
        return {"event": None, **extra}

    event_name = event.__class__.__name__
    d: dict[str, Any] = {"event": event_name}

    if event_name == "OrchestratorResult":
        d["success"] = bool(event.success)
        d["completed"] = event.tasks_completed
        d["failed"] = event.tasks_failed
        d["remaining"] = event.tasks_remaining
        d["invocations"] = event.total_agent_invocations
        if event.failed_tasks:
            d["failed_tasks"] = [f.task_id for f in event.failed_tasks]
        if event.error:
            d["error"] = _clip(str(event.error))

    elif event_name == "PhaseExecutionResult":
        d["phase"] = event.phase.value
        d["success"] = bool(event.success)
        d["agents_n"] = len(event.outputs)
        if event.merged is not None:
            d["blockers_n"] = len(event.merged.blockers)
            d["dissenting"] = list(event.merged.dissenting_agents)
        if event.consensus is not None:
            d["consensus_reached"] = event.consensus.reached
            d["consensus_iterations"] = event.consensus.iterations
        if event.error:
            d["error"] = _clip(str(event.error))

    elif event_name == "Action":
        d["type"] = event.type.value
        d["story_id"] = event.story_id
        d["priority"] = event.priority
        if event.context:
            d["context"] = dict(event.context)

    elif event_name == "ConsensusResult":
        d["reached"] = event.reached
        d["iterations"] = event.iterations
        d["unresolved_n"] = len(event.unresolved_concerns)
        d["requires_human_review"] = event.requires_human_review

    d.update(extra)
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
