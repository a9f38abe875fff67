"""Test runner configuration loading and environment overrides."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.config import (
    get_agent_config,
    get_fingerprint_threshold,
    get_implementation_config,
    get_pr_command,
    get_review_config,
    load_runner_config,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SDLC_MAX_RETRIES", raising=False)
    monkeypatch.delenv("SDLC_PROVIDER", raising=False)


def test_missing_config_uses_defaults(tmp_path: Path) -> None:
    config, err = load_runner_config(tmp_path)
    assert (config, err) == ({}, None)
    assert get_review_config(config).max_retries == 3
    impl = get_implementation_config(config)
    assert impl.max_retries_per_task == 2
    assert impl.stop_on_first_failure is True
    assert impl.commit_after_each_task is True
    assert impl.unknown_failure_policy == "recoverable"
    assert get_fingerprint_threshold(config) == 3
    assert get_agent_config(config).provider == "command"
    assert get_pr_command(config) is None


def test_config_file_values(tmp_path: Path) -> None:
    state = tmp_path / ".sdlc"
    state.mkdir()
    (state / "config.yaml").write_text(
        "review:\n  max_retries: 5\n"
        "implementation:\n  max_retries_per_task: 4\n  stop_on_first_failure: 'no'\n  unknown_failure_policy: unrecoverable\n"
        "fingerprint:\n  identical_error_threshold: 0\n"
        "agents:\n  provider: dry-run\n  command: 'codex exec -'\n"
        "pr:\n  command: gh pr create --title '{title}'\n"
    )
    config, err = load_runner_config(tmp_path)
    assert err is None
    assert get_review_config(config).max_retries == 5
    impl = get_implementation_config(config)
    assert impl.max_retries_per_task == 4
    assert impl.stop_on_first_failure is False
    assert impl.unknown_failure_policy == "unrecoverable"
    assert get_fingerprint_threshold(config) == 1
    agents = get_agent_config(config)
    assert (agents.provider, agents.command) == ("dry-run", "codex exec -")
    assert get_pr_command(config) == "gh pr create --title '{title}'"


def test_unreadable_config_reports_error(tmp_path: Path) -> None:
    state = tmp_path / ".sdlc"
    state.mkdir()
    (state / "config.yaml").write_text("review: [broken\n")
    config, err = load_runner_config(tmp_path)
    assert config == {}
    assert err and "YAMLError" in err


def test_max_retries_is_clamped_to_upper_bound() -> None:
    assert get_review_config({"review": {"max_retries": 50}}).max_retries == 10
    assert get_review_config({"review": {"max_retries": -1}}).max_retries == 0
    assert get_review_config({"review": {"max_retries": "many"}}).max_retries == 3


@pytest.mark.parametrize("raw, expected", [("7", 7), ("0", 0), ("11", 3), ("-1", 3), ("abc", 3), ("", 3)])
def test_env_override(monkeypatch: pytest.MonkeyPatch, raw: str, expected: int) -> None:
    monkeypatch.setenv("SDLC_MAX_RETRIES", raw)
    assert get_review_config({}).max_retries == expected


def test_env_provider_overrides_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SDLC_PROVIDER", "dry-run")
    assert get_agent_config({"agents": {"provider": "command"}}).provider == "dry-run"


def test_unknown_failure_policy_falls_back() -> None:
    assert get_implementation_config({"implementation": {"unknown_failure_policy": "panic"}}).unknown_failure_policy == "recoverable"


def test_verification_settings(tmp_path: Path) -> None:
    state = tmp_path / ".sdlc"
    state.mkdir()
    (state / "config.yaml").write_text(
        "implementation:\n  verify_command: pytest -q\n  verify_timeout_seconds: 0\n  require_changes: 'yes'\n"
    )
    config, _ = load_runner_config(tmp_path)
    impl = get_implementation_config(config)
    assert impl.verify_command == "pytest -q"
    assert impl.verify_timeout_seconds == 1
    assert impl.require_changes is True

    defaults = get_implementation_config({"implementation": {"verify_command": "  "}})
    assert defaults.verify_command is None
    assert defaults.verify_timeout_seconds == 600
    assert defaults.require_changes is False
