"""Persist stories under `.sdlc/stories/` and apply the mutations the core owns."""

from __future__ import annotations

import re
import unicodedata
import uuid
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from .config import ReviewConfig
from .constants import (
    BLOCKED_REASON_MAX_CHARS,
    EVENTS_FILE,
    LOCK_FILE,
    RETRY_VALUE_CEILING,
    STATE_DIR_NAME,
    STORIES_DIR,
    STORY_FILE,
)
from .errors import StoryNotFoundError, StoryStateError
from .fingerprint import clear_error_history
from .io_utils import FileLock, _append_event, _load_data_with_error, _save_data
from .models import ReviewAttempt, Story, StoryStatus
from .utils import _clamp_int, _now_iso

_STORY_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

_ANSI_CSI_RE = re.compile(r"\x1B\[[0-9;?]*[A-Za-z]")
_ANSI_OSC_RE = re.compile(r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)")
_WHITESPACE_CONTROL_RE = re.compile(r"[\n\r\t]")
_MARKDOWN_SPECIAL_RE = re.compile(r"[`|>]")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F-\x9F]")


def sanitize_story_id(story_id: str) -> str:
    """Validate a story id so it can be used as a directory name.

    Raises:
        ValueError: If the id is empty, contains path separators or `..`.
    """
    value = (story_id or "").strip()
    if not value or ".." in value or not _STORY_ID_RE.match(value):
        raise ValueError(f"Invalid story id: {story_id!r}")
    return value


def sanitize_reason_text(text: Optional[str], max_chars: int = BLOCKED_REASON_MAX_CHARS) -> str:
    """Make free text safe to persist as a single-line reason string.

    Terminal escapes and control characters are removed, newlines and tabs become
    spaces, and characters that break markdown tables or quotes (`` ` ``, `|`, `>`)
    are dropped. Everything else is preserved.
    """
    if not text:
        return ""
    value = _ANSI_OSC_RE.sub("", text)
    value = _ANSI_CSI_RE.sub("", value)
    value = value.replace("\x1B", "")
    value = _WHITESPACE_CONTROL_RE.sub(" ", value)
    value = _MARKDOWN_SPECIAL_RE.sub("", value)
    value = _CONTROL_CHARS_RE.sub("", value)
    value = unicodedata.normalize("NFC", value)
    if len(value) > max_chars:
        value = value[: max_chars - 3] + "..."
    return value.strip()


def get_retry_count(story: Story) -> int:
    """Return the story's retry counter clamped into `[0, 999]` (non-numeric -> 0)."""
    return _clamp_int(story.retry_count, 0, RETRY_VALUE_CEILING, default=0)


def get_effective_max_retries(story: Story, review_config: ReviewConfig) -> int:
    """Return the story's own ceiling if set, else the global default, clamped into `[0, 999]`."""
    default = _clamp_int(review_config.max_retries, 0, RETRY_VALUE_CEILING)
    override = story.max_retries
    if override is None or isinstance(override, bool):
        return default
    # Non-numeric overrides fall back to the global default.
    return _clamp_int(override, 0, RETRY_VALUE_CEILING, default=default)


def increment_retry_count(story: Story) -> int:
    story.retry_count = min(get_retry_count(story) + 1, RETRY_VALUE_CEILING)
    return story.retry_count


def append_review_history(story: Story, attempt: ReviewAttempt) -> None:
    story.review_history.append(attempt)


def latest_review_feedback(story: Story) -> Optional[str]:
    if not story.review_history:
        return None
    return story.review_history[-1].feedback or None


class StoryStore:
    """File-backed story persistence.

    Each story lives in `.sdlc/stories/<id>/story.yaml`; writes are atomic and
    serialized through a per-story `FileLock`.
    """

    def __init__(self, project_dir: Path):
        self.project_dir = project_dir.resolve()
        self.stories_dir = self.project_dir / STATE_DIR_NAME / STORIES_DIR

    def story_dir(self, story_id: str) -> Path:
        return self.stories_dir / sanitize_story_id(story_id)

    def story_path(self, story_id: str) -> Path:
        return self.story_dir(story_id) / STORY_FILE

    def events_path(self, story_id: str) -> Path:
        return self.story_dir(story_id) / EVENTS_FILE

    def exists(self, story_id: str) -> bool:
        return self.story_path(story_id).exists()

    def load(self, story_id: str) -> Story:
        """Load a story.

        Raises:
            StoryNotFoundError: If no `story.yaml` exists for the id.
            StoryStateError: If the file cannot be parsed.
        """
        path = self.story_path(story_id)
        if not path.exists():
            raise StoryNotFoundError(f"Story not found: {story_id}")
        data, err = _load_data_with_error(path, {})
        if err:
            raise StoryStateError(err)
        data.setdefault("id", story_id)
        return Story.from_dict(data)

    def save(self, story: Story) -> None:
        story.updated_at = _now_iso()
        if not story.created_at:
            story.created_at = story.updated_at
        story_dir = self.story_dir(story.id)
        with FileLock(story_dir / LOCK_FILE):
            _save_data(story_dir / STORY_FILE, story.to_dict())

    def list_stories(self) -> list[Story]:
        """Load every readable story, sorted by priority then id.

        Unreadable story files are logged and skipped so one corrupted file does
        not stop the scan.
        """
        if not self.stories_dir.exists():
            return []
        stories: list[Story] = []
        for entry in sorted(self.stories_dir.iterdir()):
            if not (entry / STORY_FILE).exists():
                continue
            try:
                stories.append(self.load(entry.name))
            except (StoryStateError, ValueError) as exc:
                logger.warning("Skipping unreadable story {}: {}", entry.name, exc)
        stories.sort(key=lambda s: (s.priority, s.id))
        return stories

    def create(
        self,
        title: str,
        *,
        priority: Optional[int] = None,
        content: str = "",
        story_id: Optional[str] = None,
        labels: Optional[list[str]] = None,
        story_type: str = "feature",
    ) -> Story:
        if story_id is None:
            story_id = f"story-{uuid.uuid4().hex[:8]}"
        story_id = sanitize_story_id(story_id)
        if self.exists(story_id):
            raise StoryStateError(f"Story already exists: {story_id}")
        if priority is None:
            existing = self.list_stories()
            priority = (max((s.priority for s in existing), default=0) + 1) if existing else 1
        story = Story(
            id=story_id,
            title=title,
            priority=priority,
            content=content,
            labels=list(labels or []),
            type=story_type,
        )
        self.save(story)
        self.append_event(story_id, {"event": "story_created", "title": title})
        return story

    def append_event(self, story_id: str, event: dict[str, Any]) -> None:
        _append_event(self.events_path(story_id), event)


def move_to_blocked(store: StoryStore, story: Story, reason: str) -> Story:
    """Move a story to `blocked` with a sanitized reason and timestamp.

    If the save fails the story is left exactly as it was and the error propagates.
    """
    previous = (story.status, story.blocked_reason, story.blocked_at, story.updated_at)
    story.status = StoryStatus.BLOCKED
    story.blocked_reason = sanitize_reason_text(reason)
    story.blocked_at = _now_iso()
    try:
        store.save(story)
    except Exception:
        story.status, story.blocked_reason, story.blocked_at, story.updated_at = previous
        raise
    store.append_event(story.id, {"event": "story_blocked", "reason": story.blocked_reason})
    return story


def unblock_story(store: StoryStore, story: Story, *, reset_retries: bool = False) -> Story:
    """Return a blocked story to the board.

    Stories with any completed phase resume `in-progress`; others go back to `ready`.
    """
    if story.status != StoryStatus.BLOCKED:
        raise StoryStateError(f"Story {story.id} is not blocked (status={story.status.value})")
    started = story.research_complete or story.plan_complete or story.implementation_complete
    story.status = StoryStatus.IN_PROGRESS if started else StoryStatus.READY
    story.blocked_reason = None
    story.blocked_at = None
    if reset_retries:
        story.retry_count = 0
        story.error_history = clear_error_history()
    store.save(story)
    store.append_event(
        story.id,
        {"event": "story_unblocked", "status": story.status.value, "reset_retries": reset_retries},
    )
    return story
