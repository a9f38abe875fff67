"""Normalize failure text into stable fingerprints and track repeats.

Two failures with the same root cause rarely produce byte-identical output:
timestamps, temp directories, line numbers and memory addresses drift between
runs. The helpers here strip that noise so a retry loop can notice that it is
seeing the same failure again and stop.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Optional, Sequence

from .constants import (
    DEFAULT_IDENTICAL_ERROR_THRESHOLD,
    ERROR_PREVIEW_MAX_CHARS,
    MAX_ERROR_HISTORY,
)
from .models import ErrorFingerprint
from .utils import _now_iso

_PATH_CHARS = r"[^\s:)\"',\]]+"

# Terminal escape sequences: CSI, OSC, then any stray ESC.
_ESCAPE_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\x1B\[[0-9;?]*[A-Za-z]"), ""),
    (re.compile(r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)"), ""),
    (re.compile(r"\x1B"), ""),
)

# Applied in order; earlier rules must not be undone by later ones.
_NORMALIZATION_RULES: tuple[tuple[re.Pattern[str], str], ...] = _ESCAPE_RULES + (
    (
        re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.I),
        "<UUID>",
    ),
    (
        re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(?:\.\d+)?(?:Z|[+-]\d{2}:?\d{2})?"),
        "<TIMESTAMP>",
    ),
    (re.compile(r"\b\d{10,13}\b"), "<EPOCH>"),
    (re.compile(r"\b\d{4}[-/]\d{2}[-/]\d{2}\b"), "<DATE>"),
    (re.compile(r"\b\d{2}/\d{2}/\d{4}\b"), "<DATE>"),
    (re.compile(r"\b\d{2}:\d{2}:\d{2}(?:[.,]\d+)?\b"), "<TIME>"),
    (re.compile(r"/tmp/" + _PATH_CHARS), "<TMP_PATH>"),
    (re.compile(r"/(?:Users|home|var|private|root|opt|srv|mnt)/" + _PATH_CHARS), "<ABS_PATH>"),
    (re.compile(r"\b[A-Z]:\\" + _PATH_CHARS, re.I), "<ABS_PATH>"),
    (re.compile(r":\d+:\d+"), ":<LINE>:<COL>"),
    (re.compile(r":\d+(?=\s|$|\)|\])"), ":<LINE>"),
    (re.compile(r"\bline \d+"), "line <LINE>"),
    (re.compile(r"\b0x[0-9a-f]+\b", re.I), "<ADDR>"),
    (re.compile(r"\bpid[:=\s]+\d+", re.I), "pid: <PID>"),
    (re.compile(r"node_modules/" + _PATH_CHARS), "<NODE_MODULE>"),
    (re.compile(r"(?:site|dist)-packages/" + _PATH_CHARS), "<SITE_PACKAGE>"),
    (re.compile(r"\s+"), " "),
)

_FAILURE_MARKER_RE = re.compile(
    r"error|fail|cannot find|not found|unexpected|exception|assert|traceback",
    re.I,
)


@dataclass(frozen=True)
class IdenticalErrorCheck:
    is_identical: bool
    consecutive_count: int
    fingerprint: str
    preview: str


def normalize_error(error: str) -> str:
    """Replace volatile substrings with placeholder tokens and collapse whitespace.

    Args:
        error: Raw failure text (stderr, test output, exception message).

    Returns:
        The normalized text; identical root causes normalize identically.
    """
    text = error or ""
    for pattern, replacement in _NORMALIZATION_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def fingerprint_error(error: str) -> str:
    """Return the SHA-256 hex digest of the normalized error text."""
    return hashlib.sha256(normalize_error(error).encode("utf-8")).hexdigest()


def create_error_preview(error: str, max_chars: int = ERROR_PREVIEW_MAX_CHARS) -> str:
    """Build a short human-readable preview, preferring lines with failure markers.

    Args:
        error: Raw failure text.
        max_chars: Hard cap on the returned preview length.

    Returns:
        Up to three lines joined with `" | "`, truncated to `max_chars`.
    """
    text = error or ""
    for pattern, replacement in _ESCAPE_RULES:
        text = pattern.sub(replacement, text)
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    if not lines:
        return ""
    start = next((i for i, line in enumerate(lines) if _FAILURE_MARKER_RE.search(line)), None)
    selected = lines[start:start + 3] if start is not None else lines[:3]
    preview = " | ".join(selected)
    if len(preview) > max_chars:
        preview = preview[: max(0, max_chars - 3)] + "..."
    return preview


def check_for_identical_errors(
    error: str,
    history: Sequence[ErrorFingerprint],
    threshold: int = DEFAULT_IDENTICAL_ERROR_THRESHOLD,
) -> IdenticalErrorCheck:
    """Compare `error` against the most recent history entry.

    Args:
        error: Raw failure text of the current attempt.
        history: Prior fingerprints, oldest first.
        threshold: Consecutive occurrences at which the stream counts as looping.

    Returns:
        The consecutive count including this occurrence and whether it reached `threshold`.
    """
    digest = fingerprint_error(error)
    preview = create_error_preview(error)
    count = 1
    if history and history[-1].hash == digest:
        count = history[-1].consecutive_count + 1
    return IdenticalErrorCheck(
        is_identical=count >= threshold,
        consecutive_count=count,
        fingerprint=digest,
        preview=preview,
    )


def update_error_history(
    history: Sequence[ErrorFingerprint],
    error: str,
    *,
    now: Optional[str] = None,
    max_entries: int = MAX_ERROR_HISTORY,
) -> list[ErrorFingerprint]:
    """Return a new history with `error` recorded.

    A repeat of the latest entry bumps its counter; any other error becomes the
    newest entry with a count of 1. Entries stay distinct and the oldest are
    evicted beyond `max_entries`.
    """
    stamp = now or _now_iso()
    digest = fingerprint_error(error)
    updated = list(history)

    if updated and updated[-1].hash == digest:
        last = updated[-1]
        updated[-1] = ErrorFingerprint(
            hash=digest,
            first_seen=last.first_seen,
            last_seen=stamp,
            consecutive_count=last.consecutive_count + 1,
            preview=last.preview,
        )
        return updated

    first_seen = stamp
    for index, record in enumerate(updated):
        if record.hash == digest:
            first_seen = record.first_seen
            del updated[index]
            break

    updated.append(
        ErrorFingerprint(
            hash=digest,
            first_seen=first_seen,
            last_seen=stamp,
            consecutive_count=1,
            preview=create_error_preview(error),
        )
    )
    if len(updated) > max_entries:
        updated = updated[-max_entries:]
    return updated


def get_most_common_error(history: Sequence[ErrorFingerprint]) -> Optional[ErrorFingerprint]:
    """Return the entry with the highest consecutive count (latest wins ties)."""
    best: Optional[ErrorFingerprint] = None
    for record in history:
        if best is None or record.consecutive_count >= best.consecutive_count:
            best = record
    return best


def clear_error_history() -> list[ErrorFingerprint]:
    return []
