"""Tests for strict validation of advisor outputs."""

from __future__ import annotations

import json

import pytest
from fixloop.errors import AdvisorSchemaError
from fixloop.schemas import CodeAnalysis, FixContext, FixSuggestion, parse_and_validate

VALID_FIX = {
    "is_malicious": False,
    "malicious_reason": None,
    "reasoning_steps": ["n = 0 assigns instead of comparing"],
    "fixed_code": "console.log(1);",
    "changes_made": ["use ==="],
    "confidence": "high",
}


class TestParseAndValidate:
    def test_plain_json(self):
        fix = parse_and_validate(json.dumps(VALID_FIX), FixSuggestion)
        assert fix.fixed_code == "console.log(1);"
        assert fix.confidence == "high"

    def test_markdown_wrapped_json(self):
        raw = "Here you go:\n```json\n" + json.dumps(VALID_FIX) + "\n```\nGood luck!"
        assert parse_and_validate(raw, FixSuggestion).changes_made == ["use ==="]

    def test_braces_inside_strings(self):
        payload = {**VALID_FIX, "fixed_code": "if (a) { console.log('}'); }"}
        raw = "prefix " + json.dumps(payload)
        assert parse_and_validate(raw, FixSuggestion).fixed_code == payload["fixed_code"]

    def test_no_json_at_all(self):
        with pytest.raises(AdvisorSchemaError, match="FixSuggestion"):
            parse_and_validate("I cannot help with that.", FixSuggestion)

    def test_truncated_json(self):
        with pytest.raises(AdvisorSchemaError):
            parse_and_validate('{"fixed_code": "x", "confidence": "hi', FixSuggestion)


class TestFixSuggestion:
    def test_unknown_field_rejected(self):
        with pytest.raises(AdvisorSchemaError):
            parse_and_validate(json.dumps({**VALID_FIX, "extra": 1}), FixSuggestion)

    def test_confidence_must_be_enumerated(self):
        with pytest.raises(AdvisorSchemaError):
            parse_and_validate(json.dumps({**VALID_FIX, "confidence": "very high"}), FixSuggestion)

    def test_confidence_required(self):
        payload = {k: v for k, v in VALID_FIX.items() if k != "confidence"}
        with pytest.raises(AdvisorSchemaError):
            parse_and_validate(json.dumps(payload), FixSuggestion)

    def test_fixed_code_required_unless_malicious(self):
        with pytest.raises(AdvisorSchemaError):
            parse_and_validate(json.dumps({**VALID_FIX, "fixed_code": "  "}), FixSuggestion)

    def test_malicious_without_code(self):
        payload = {
            "is_malicious": True,
            "malicious_reason": "sandbox escape via constructor chain",
            "confidence": "high",
        }
        fix = parse_and_validate(json.dumps(payload), FixSuggestion)
        assert fix.is_malicious
        assert fix.fixed_code == ""

    def test_no_type_coercion(self):
        with pytest.raises(AdvisorSchemaError):
            parse_and_validate(json.dumps({**VALID_FIX, "is_malicious": "false"}), FixSuggestion)


class TestCodeAnalysis:
    def test_unsafe_clears_bug_fields(self):
        analysis = CodeAnalysis(
            is_safe=False,
            safety_issues=["uses require"],
            has_bugs=True,
            bug_description="irrelevant",
            suggested_fix="irrelevant",
        )
        assert analysis.has_bugs is False
        assert analysis.bug_description is None
        assert analysis.suggested_fix is None
        assert analysis.verdict.is_safe is False
        assert analysis.verdict.issues == ["uses require"]


def test_empty_fix_context():
    assert FixContext().is_empty()
    assert not FixContext(previous_error="TypeError: x").is_empty()
