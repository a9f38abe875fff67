"""Test error normalization, fingerprints and repeat tracking."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.fingerprint import (
    check_for_identical_errors,
    clear_error_history,
    create_error_preview,
    fingerprint_error,
    get_most_common_error,
    normalize_error,
    update_error_history,
)


def test_paths_and_timestamps_do_not_change_fingerprint() -> None:
    """Ensure volatile paths, line numbers and timestamps normalize away."""
    first = "2024-01-15T10:00:00Z Error: Cannot read property 'x' at /Users/dev/src/app.ts:123"
    second = "2024-03-02T18:45:12.120Z Error: Cannot read property 'x' at /Users/alice/work/app.ts:456"
    assert normalize_error(first) == normalize_error(second)
    assert fingerprint_error(first) == fingerprint_error(second)


def test_different_root_causes_fingerprint_differently() -> None:
    assert fingerprint_error("TypeError: foo is undefined") != fingerprint_error("SyntaxError: unexpected token")


def test_normalization_replaces_volatile_tokens() -> None:
    text = (
        "pid 4242 crashed at 0xdeadbeef in /tmp/pytest-of-root/pytest-3/test.py line 17 "
        "uuid 123e4567-e89b-12d3-a456-426614174000 at 12:30:45 on 2024-01-15 epoch 1705312800000"
    )
    normalized = normalize_error(text)
    for token in ("<PID>", "<ADDR>", "<TMP_PATH>", "line <LINE>", "<UUID>", "<TIME>", "<DATE>", "<EPOCH>"):
        assert token in normalized
    assert "4242" not in normalized
    assert "deadbeef" not in normalized


def test_windows_paths_and_line_columns_normalize() -> None:
    first = r"error at C:\Users\dev\app\main.py:10:5"
    second = r"error at D:\build\agent\main.py:99:1"
    assert normalize_error(first) == normalize_error(second)


def test_dependency_cache_paths_normalize() -> None:
    first = "failed in node_modules/lodash/index.js and /venv/lib/python3.11/site-packages/foo/bar.py"
    second = "failed in node_modules/react/cjs/react.js and /venv/lib/python3.11/site-packages/baz/qux.py"
    assert "<NODE_MODULE>" in normalize_error(first)
    assert "<SITE_PACKAGE>" in normalize_error(first)
    assert normalize_error(first) == normalize_error(second)


def test_whitespace_collapses() -> None:
    assert normalize_error("  a \n\n  b\t c  ") == "a b c"


def test_preview_prefers_failure_lines_and_is_bounded() -> None:
    error = "collecting tests\nrunning 12 tests\nAssertionError: expected 1 got 2\n  at test_x\nmore\n" + "x" * 300
    preview = create_error_preview(error)
    assert preview.startswith("AssertionError: expected 1 got 2")
    assert len(preview) <= 100


def test_preview_strips_terminal_colors() -> None:
    error = "\x1b[32m3 passed\x1b[0m\n\x1b]8;;file:///x\x07link\x1b]8;;\x07\n\x1b[31mFAILED\x1b[0m test_greet.py::test_hello"
    preview = create_error_preview(error)
    assert preview == "FAILED test_greet.py::test_hello"
    assert "\x1b" not in create_error_preview("\x1b[1mplain\x1b[0m")


def test_preview_of_empty_error() -> None:
    assert create_error_preview("") == ""


def test_consecutive_count_increments_then_resets() -> None:
    """Ensure repeats increment the counter and a new error resets it to 1."""
    history = clear_error_history()
    error = "Tests failed at 2024-01-15T10:00:00Z in /home/ci/app.py:12"
    counts = []
    for _ in range(3):
        check = check_for_identical_errors(error, history, threshold=3)
        counts.append(check.consecutive_count)
        history = update_error_history(history, error)
    assert counts == [1, 2, 3]
    assert check.is_identical is True

    different = check_for_identical_errors("Lint failed: unused import", history)
    assert different.consecutive_count == 1
    assert different.is_identical is False


def test_same_error_with_new_timestamp_counts_as_repeat() -> None:
    history = update_error_history([], "boom at 2024-01-15T10:00:00Z")
    check = check_for_identical_errors("boom at 2025-06-01T08:30:00Z", history, threshold=2)
    assert check.consecutive_count == 2
    assert check.is_identical is True


def test_history_is_bounded_and_evicts_oldest() -> None:
    history = []
    for index in range(15):
        history = update_error_history(history, f"distinct failure kind {'abcdefghijklmno'[index]}")
    assert len(history) == 10
    assert history[0].preview == "distinct failure kind f"
    assert history[-1].preview == "distinct failure kind o"


def test_history_keeps_entries_distinct() -> None:
    history = update_error_history([], "alpha failure", now="2024-01-01T00:00:00+00:00")
    history = update_error_history(history, "beta failure", now="2024-01-02T00:00:00+00:00")
    history = update_error_history(history, "alpha failure", now="2024-01-03T00:00:00+00:00")
    assert [record.preview for record in history] == ["beta failure", "alpha failure"]
    assert history[-1].first_seen == "2024-01-01T00:00:00+00:00"
    assert history[-1].last_seen == "2024-01-03T00:00:00+00:00"
    assert history[-1].consecutive_count == 1


def test_update_does_not_mutate_input() -> None:
    history = update_error_history([], "same")
    updated = update_error_history(history, "same")
    assert history[0].consecutive_count == 1
    assert updated[0].consecutive_count == 2


def test_most_common_error() -> None:
    history = update_error_history([], "a failure")
    history = update_error_history(history, "a failure")
    history = update_error_history(history, "b failure")
    top = get_most_common_error(history)
    assert top is not None
    assert top.preview == "a failure"
    assert get_most_common_error([]) is None
