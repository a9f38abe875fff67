"""Layered parsing of structured agent responses.

LLM output is only mostly well-formed. Each layer below tries a progressively
more lenient extraction; the first candidate that validates against
`AgentResponse` wins. Nothing in this module raises on bad input: callers get
a `ParseResult` with either a value or an error string.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

_FENCED_JSON_RE = re.compile(r"```(?:json|JSON)?\s*\n(.*?)\n?```", re.S)
_FENCED_YAML_RE = re.compile(r"```(?:yaml|yml)\s*\n(.*?)\n?```", re.S)

_SEVERITY_ALIASES = {
    "blocking": "blocker",
    "high": "critical",
    "medium": "major",
    "moderate": "major",
    "low": "minor",
    "info": "minor",
    "suggestion": "minor",
}

_RECOGNIZED_KEYS = frozenset(
    {"approved", "passed", "approve", "decision", "concerns", "issues", "summary"}
)


class ConcernModel(BaseModel):
    severity: str = "major"
    category: str = "general"
    description: str
    file: Optional[str] = None

    @field_validator("severity", mode="before")
    @classmethod
    def _normalize_severity(cls, value: Any) -> str:
        text = str(value or "major").strip().lower()
        text = _SEVERITY_ALIASES.get(text, text)
        return text if text in {"blocker", "critical", "major", "minor"} else "major"

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value: Any) -> str:
        return str(value).strip() if value else "general"


class AgentResponse(BaseModel):
    """Structured verdict expected from reviewer-style agents."""

    approved: bool = False
    summary: str = ""
    concerns: list[ConcernModel] = Field(default_factory=list)
    content: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if not _RECOGNIZED_KEYS.intersection(data):
            raise ValueError("response has none of the expected fields")
        data = dict(data)
        if "concerns" not in data and isinstance(data.get("issues"), list):
            data["concerns"] = data.pop("issues")
        if "approved" not in data:
            for key in ("passed", "approve"):
                if key in data:
                    data["approved"] = data.pop(key)
                    break
            else:
                decision = str(data.get("decision", "")).strip().upper()
                if decision:
                    data["approved"] = decision in {"APPROVED", "APPROVE", "PASS", "PASSED"}
        return data


@dataclass
class ParseResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[str] = None
    strategy: Optional[str] = None


# ---------------------------------------------------------------------------
# Extraction layers
# ---------------------------------------------------------------------------

def parse_direct_json(text: str) -> Optional[Any]:
    try:
        return json.loads(text.strip())
    except (json.JSONDecodeError, ValueError):
        return None


def parse_fenced_json(text: str) -> Optional[Any]:
    for block in _FENCED_JSON_RE.findall(text):
        data = parse_direct_json(block)
        if data is not None:
            return data
    return None


def parse_braced_json(text: str) -> Optional[Any]:
    """Parse the span between the first `{` and the last `}`."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return parse_direct_json(text[start:end + 1])


def parse_yaml_fallback(text: str) -> Optional[Any]:
    blocks = _FENCED_YAML_RE.findall(text) or [text]
    for block in blocks:
        try:
            data = yaml.safe_load(block)
        except yaml.YAMLError:
            continue
        if isinstance(data, dict):
            return data
    return None


PARSE_LAYERS: tuple[tuple[str, Callable[[str], Optional[Any]]], ...] = (
    ("json", parse_direct_json),
    ("fenced_json", parse_fenced_json),
    ("braced_json", parse_braced_json),
    ("yaml", parse_yaml_fallback),
)


def parse_structured(text: Optional[str], model: type[T]) -> ParseResult[T]:
    """Run every layer in order and validate candidates against `model`."""
    if not text or not text.strip():
        return ParseResult(ok=False, error="empty response")
    errors: list[str] = []
    for name, layer in PARSE_LAYERS:
        candidate = layer(text)
        if candidate is None:
            continue
        try:
            value = model.model_validate(candidate)
        except ValidationError as exc:
            errors.append(f"{name}: {exc.error_count()} validation error(s)")
            continue
        return ParseResult(ok=True, value=value, strategy=name)
    detail = "; ".join(errors) if errors else "no structured data found"
    logger.debug("Structured parse failed: %s", detail)
    return ParseResult(ok=False, error=detail)


def parse_agent_response(text: Optional[str]) -> ParseResult[AgentResponse]:
    return parse_structured(text, AgentResponse)
