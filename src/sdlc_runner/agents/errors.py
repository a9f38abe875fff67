"""Classify agent/provider failures as transient or permanent."""

from __future__ import annotations

import logging
import random
from typing import Any, Optional

from ..errors import AgentTimeoutError, AuthenticationError

logger = logging.getLogger(__name__)

TRANSIENT_NETWORK_CODES = frozenset(
    {"ETIMEDOUT", "ECONNRESET", "ENOTFOUND", "ECONNREFUSED", "EHOSTUNREACH", "EPIPE"}
)

_TRANSIENT_MESSAGE_MARKERS = (
    "rate limit",
    "overloaded",
    "timed out",
    "timeout",
    "connection reset",
    "temporarily unavailable",
)


def _status_code(error: Any) -> Optional[int]:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def classify_api_error(error: Any) -> str:
    """Return ``"transient"`` or ``"permanent"`` for a provider error.

    HTTP 429 and 5xx are transient; other 4xx are permanent. Network error
    codes in ``TRANSIENT_NETWORK_CODES`` and Python timeout/connection errors
    are transient. Authentication failures are always permanent.
    """
    if isinstance(error, AuthenticationError):
        return "permanent"
    if isinstance(error, (AgentTimeoutError, TimeoutError, ConnectionError)):
        return "transient"

    status = _status_code(error)
    if status is not None:
        if status == 429 or 500 <= status < 600:
            return "transient"
        if 400 <= status < 500:
            return "permanent"

    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in TRANSIENT_NETWORK_CODES:
        return "transient"

    if isinstance(error, str):
        lowered = error.lower()
        if any(code.lower() in lowered for code in TRANSIENT_NETWORK_CODES):
            return "transient"
        if any(marker in lowered for marker in _TRANSIENT_MESSAGE_MARKERS):
            return "transient"
    return "permanent"


def should_retry(error: Any, attempt: int, max_retries: int) -> bool:
    """Retry transient errors while `attempt` (1-based) is below `max_retries`."""
    if attempt >= max_retries:
        return False
    return classify_api_error(error) == "transient"


def calculate_backoff(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 60.0,
    *,
    rng: Optional[random.Random] = None,
) -> float:
    """Exponential backoff with +/-25% jitter, capped at `max_delay`."""
    rng = rng or random
    delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))
    jitter = delay * 0.25 * (2 * rng.random() - 1)
    return max(0.0, min(max_delay, delay + jitter))
