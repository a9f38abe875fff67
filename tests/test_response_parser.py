"""Test layered parsing of agent verdicts."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))

from sdlc_runner.agents.response_parser import parse_agent_response


def test_direct_json() -> None:
    parsed = parse_agent_response('{"approved": true, "summary": "ok", "concerns": []}')
    assert parsed.ok is True
    assert parsed.strategy == "json"
    assert parsed.value.approved is True
    assert parsed.value.summary == "ok"


def test_fenced_json_inside_prose() -> None:
    text = 'Here is my review:\n```json\n{"approved": false, "concerns": [{"severity": "blocker", "description": "No tests"}]}\n```\nThanks.'
    parsed = parse_agent_response(text)
    assert parsed.strategy == "fenced_json"
    assert parsed.value.approved is False
    concern = parsed.value.concerns[0]
    assert (concern.severity, concern.category, concern.description) == ("blocker", "general", "No tests")


def test_braced_json_without_fence() -> None:
    parsed = parse_agent_response('Verdict follows {"approved": true, "summary": "fine"} end')
    assert parsed.strategy == "braced_json"
    assert parsed.value.approved is True


def test_yaml_fallback() -> None:
    parsed = parse_agent_response("approved: true\nsummary: looks good\nconcerns:\n  - description: nit\n    severity: low\n")
    assert parsed.strategy == "yaml"
    assert parsed.value.concerns[0].severity == "minor"


@pytest.mark.parametrize(
    "payload, approved",
    [
        ('{"passed": true}', True),
        ('{"approve": false}', False),
        ('{"decision": "APPROVED"}', True),
        ('{"decision": "changes requested"}', False),
    ],
)
def test_approval_aliases(payload: str, approved: bool) -> None:
    parsed = parse_agent_response(payload)
    assert parsed.ok is True
    assert parsed.value.approved is approved


def test_issues_alias_and_severity_aliases() -> None:
    parsed = parse_agent_response(
        '{"approved": false, "issues": [{"severity": "HIGH", "category": "", "description": "leak"},'
        ' {"severity": "weird", "description": "odd"}]}'
    )
    severities = [concern.severity for concern in parsed.value.concerns]
    assert severities == ["critical", "major"]
    assert parsed.value.concerns[0].category == "general"


@pytest.mark.parametrize("text", ["", "   ", "just some prose", '{"unrelated": 1}', "[1, 2, 3]"])
def test_unstructured_text_fails_without_raising(text: str) -> None:
    parsed = parse_agent_response(text)
    assert parsed.ok is False
    assert parsed.value is None
    assert parsed.error
