"""Agent invoker contract shared by every provider."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from ..models import AgentInvocationResult
from .errors import calculate_backoff, classify_api_error

logger = logging.getLogger(__name__)


@dataclass
class AgentRequest:
    """One prompt handed to an agent provider."""

    prompt: str
    working_directory: Path
    story_id: str = ""
    phase: str = ""
    role: str = ""
    task_id: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


class AgentInvoker(Protocol):
    def invoke(self, request: AgentRequest) -> AgentInvocationResult:
        ...


class DryRunInvoker:
    """Report success without running anything."""

    name = "dry-run"

    def __init__(self, config: Any = None):
        self.requests: list[AgentRequest] = []

    def invoke(self, request: AgentRequest) -> AgentInvocationResult:
        self.requests.append(request)
        logger.info("[dry-run] %s/%s story=%s task=%s", request.phase, request.role, request.story_id, request.task_id)
        return AgentInvocationResult(
            success=True,
            output='{"approved": true, "summary": "dry run", "concerns": []}',
        )


def invoke_with_retry(
    invoker: AgentInvoker,
    request: AgentRequest,
    *,
    max_attempts: int = 3,
    sleep: Callable[[float], None] = time.sleep,
) -> AgentInvocationResult:
    """Invoke an agent, retrying transient failures with exponential backoff.

    Exceptions raised by the invoker are converted into failed results; only
    failures classified as transient are retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            result = invoker.invoke(request)
        except Exception as exc:
            transient = classify_api_error(exc) == "transient"
            logger.warning("Agent invocation raised (%s, attempt %d): %s", "transient" if transient else "permanent", attempt, exc)
            result = AgentInvocationResult(success=False, error=str(exc), transient=transient)
        if result.success or not result.transient or attempt >= max_attempts:
            return result
        delay = calculate_backoff(attempt)
        logger.info("Retrying transient agent failure in %.1fs: %s", delay, result.error)
        sleep(delay)
