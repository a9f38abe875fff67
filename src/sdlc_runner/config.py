"""Load optional runner configuration from `.sdlc/config.yaml`."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT_SECONDS,
    DEFAULT_COMMIT_AFTER_EACH_TASK,
    DEFAULT_IDENTICAL_ERROR_THRESHOLD,
    DEFAULT_MAX_RETRIES_PER_TASK,
    DEFAULT_MAX_RETRIES_UPPER_BOUND,
    DEFAULT_MAX_REVIEW_RETRIES,
    DEFAULT_PROVIDER,
    DEFAULT_STOP_ON_FIRST_FAILURE,
    DEFAULT_VERIFY_TIMEOUT_SECONDS,
    MAX_RETRIES_ENV_VAR,
    PROVIDER_ENV_VAR,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error
from .utils import _clamp_int

VALID_FAILURE_POLICIES = {"recoverable", "unrecoverable"}


@dataclass(frozen=True)
class ReviewConfig:
    """Global circuit-breaker settings for the review loop."""

    max_retries: int = DEFAULT_MAX_REVIEW_RETRIES
    max_retries_upper_bound: int = DEFAULT_MAX_RETRIES_UPPER_BOUND


@dataclass(frozen=True)
class ImplementationConfig:
    """Options consumed by the task dependency executor."""

    max_retries_per_task: int = DEFAULT_MAX_RETRIES_PER_TASK
    stop_on_first_failure: bool = DEFAULT_STOP_ON_FIRST_FAILURE
    commit_after_each_task: bool = DEFAULT_COMMIT_AFTER_EACH_TASK
    dry_run: bool = False
    # Failures matching no known pattern are retried unless this says otherwise.
    unknown_failure_policy: str = "recoverable"
    # Shell command run after each successful task; non-zero exit fails the attempt.
    verify_command: Optional[str] = None
    verify_timeout_seconds: int = DEFAULT_VERIFY_TIMEOUT_SECONDS
    require_changes: bool = False


@dataclass(frozen=True)
class AgentConfig:
    provider: str = DEFAULT_PROVIDER
    command: str = DEFAULT_AGENT_COMMAND
    timeout_seconds: int = DEFAULT_AGENT_TIMEOUT_SECONDS


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _section(config: dict[str, Any], name: str) -> dict[str, Any]:
    raw = _get_nested(config, name)
    return raw if isinstance(raw, dict) else {}


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return default


def _env_max_retries(upper_bound: int) -> Optional[int]:
    raw = os.environ.get(MAX_RETRIES_ENV_VAR)
    if raw is None or raw.strip() == "":
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning("Ignoring {}={!r}: not an integer", MAX_RETRIES_ENV_VAR, raw)
        return None
    if value < 0 or value > upper_bound:
        logger.warning(
            "Ignoring {}={}: must be between 0 and {}", MAX_RETRIES_ENV_VAR, value, upper_bound
        )
        return None
    return value


def get_review_config(config: dict[str, Any]) -> ReviewConfig:
    """Extract the review (circuit breaker) settings.

    Args:
        config: Runner configuration dictionary.

    Returns:
        A `ReviewConfig`. `max_retries` is clamped into `[0, max_retries_upper_bound]`
        and may be overridden by the `SDLC_MAX_RETRIES` environment variable.
    """
    raw = _section(config, "review")
    upper = _clamp_int(
        raw.get("max_retries_upper_bound"), 0, 999, default=DEFAULT_MAX_RETRIES_UPPER_BOUND
    )
    max_retries = _clamp_int(raw.get("max_retries"), 0, upper, default=DEFAULT_MAX_REVIEW_RETRIES)
    env_value = _env_max_retries(DEFAULT_MAX_RETRIES_UPPER_BOUND)
    if env_value is not None:
        max_retries = min(env_value, upper)
    return ReviewConfig(max_retries=max_retries, max_retries_upper_bound=upper)


def get_implementation_config(config: dict[str, Any]) -> ImplementationConfig:
    """Extract the task executor options.

    Args:
        config: Runner configuration dictionary.

    Returns:
        An `ImplementationConfig` with defaults for missing keys.
    """
    raw = _section(config, "implementation")
    policy = raw.get("unknown_failure_policy", "recoverable")
    if policy not in VALID_FAILURE_POLICIES:
        logger.warning("Unknown implementation.unknown_failure_policy {!r}; using 'recoverable'", policy)
        policy = "recoverable"
    verify_command = raw.get("verify_command")
    if not isinstance(verify_command, str) or not verify_command.strip():
        verify_command = None
    return ImplementationConfig(
        max_retries_per_task=_clamp_int(
            raw.get("max_retries_per_task"), 0, 999, default=DEFAULT_MAX_RETRIES_PER_TASK
        ),
        stop_on_first_failure=_as_bool(raw.get("stop_on_first_failure"), DEFAULT_STOP_ON_FIRST_FAILURE),
        commit_after_each_task=_as_bool(raw.get("commit_after_each_task"), DEFAULT_COMMIT_AFTER_EACH_TASK),
        dry_run=_as_bool(raw.get("dry_run"), False),
        unknown_failure_policy=policy,
        verify_command=verify_command,
        verify_timeout_seconds=_clamp_int(
            raw.get("verify_timeout_seconds"), 1, 24 * 3600, default=DEFAULT_VERIFY_TIMEOUT_SECONDS
        ),
        require_changes=_as_bool(raw.get("require_changes"), False),
    )


def get_fingerprint_threshold(config: dict[str, Any]) -> int:
    """Return the identical-error threshold (minimum 1)."""
    raw = _section(config, "fingerprint")
    return _clamp_int(
        raw.get("identical_error_threshold"), 1, 999, default=DEFAULT_IDENTICAL_ERROR_THRESHOLD
    )


def get_agent_config(config: dict[str, Any]) -> AgentConfig:
    """Extract agent provider settings.

    The `SDLC_PROVIDER` environment variable overrides the configured provider name.
    """
    raw = _section(config, "agents")
    provider = os.environ.get(PROVIDER_ENV_VAR) or raw.get("provider") or DEFAULT_PROVIDER
    command = raw.get("command")
    return AgentConfig(
        provider=str(provider),
        command=command if isinstance(command, str) and command.strip() else DEFAULT_AGENT_COMMAND,
        timeout_seconds=_clamp_int(
            raw.get("timeout_seconds"), 1, 24 * 3600, default=DEFAULT_AGENT_TIMEOUT_SECONDS
        ),
    )


def get_pr_command(config: dict[str, Any]) -> str | None:
    """Return the optional shell command run for `create_pr` actions."""
    raw = _get_nested(config, "pr", "command")
    if isinstance(raw, str) and raw.strip():
        return raw
    return None
