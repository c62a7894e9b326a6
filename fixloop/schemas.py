"""JSON schema validation for advisor outputs.

Validates LLM responses before anything downstream trusts them. Malformed
JSON or a non-conforming structure is a hard AdvisorSchemaError: there is no
repair pass and no best-effort coercion.
"""

from __future__ import annotations

import json
import logging
from typing import Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import AdvisorSchemaError

logger = logging.getLogger("fixloop.schemas")

T = TypeVar("T", bound=BaseModel)


def _extract_json(raw: str) -> str:
    """Return the first balanced {...} object in a model reply, ignoring fences and prose around it."""
    content = raw.strip()
    try:
        json.loads(content)
        return content
    except json.JSONDecodeError:
        pass

    start = content.find("{")
    if start < 0:
        raise ValueError("No JSON object found in response")

    depth = 0
    in_string = False
    escape = False
    for i in range(start, len(content)):
        c = content[i]
        if escape:
            escape = False
        elif in_string:
            if c == "\\":
                escape = True
            elif c == '"':
                in_string = False
        elif c == '"':
            in_string = True
        elif c == "{":
            depth += 1
        elif c == "}":
            depth -= 1
            if depth == 0:
                return content[start : i + 1]

    raise ValueError("Unbalanced braces in JSON object")


def parse_and_validate(raw: str, model: type[T]) -> T:
    """Extract JSON, validate against schema, return validated model or raise AdvisorSchemaError."""
    try:
        data = json.loads(_extract_json(raw))
        return model.model_validate(data)
    except (ValueError, ValidationError) as e:
        # ValidationError subclasses ValueError; both mean the provider broke the contract
        logger.warning(
            "advisor_schema_violation",
            extra={"schema": model.__name__, "error": str(e)[:300], "raw_excerpt": raw[:200]},
        )
        raise AdvisorSchemaError(f"Advisor returned a response that does not match {model.__name__}") from e


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", strict=True)


# ---------------------------------------------------------------------------
# Safety + bug analysis
# ---------------------------------------------------------------------------


class SafetyVerdict(BaseModel):
    is_safe: bool
    issues: list[str] = Field(default_factory=list)


class CodeAnalysis(_StrictModel):
    """Combined safety-then-bug analysis. Bug fields are meaningless when unsafe."""

    is_safe: bool
    safety_issues: list[str] = Field(default_factory=list)
    has_bugs: bool
    bug_description: str | None = None
    bug_location: str | None = None
    suggested_fix: str | None = None
    explanation: str | None = None
    test_case: str | None = None

    @model_validator(mode="after")
    def drop_bug_fields_when_unsafe(self) -> CodeAnalysis:
        if not self.is_safe:
            self.has_bugs = False
            self.bug_description = None
            self.bug_location = None
            self.suggested_fix = None
            self.explanation = None
            self.test_case = None
        return self

    @property
    def verdict(self) -> SafetyVerdict:
        return SafetyVerdict(is_safe=self.is_safe, issues=list(self.safety_issues))


# ---------------------------------------------------------------------------
# Fix suggestion
# ---------------------------------------------------------------------------


class FixContext(BaseModel):
    """Known bug details handed to a follow-up fix request to skip re-diagnosis."""

    bug_description: str | None = None
    bug_location: str | None = None
    suggested_fix: str | None = None
    previous_error: str | None = None

    def is_empty(self) -> bool:
        return not any((self.bug_description, self.bug_location, self.suggested_fix, self.previous_error))


class FixSuggestion(_StrictModel):
    is_malicious: bool = False
    malicious_reason: str | None = None
    reasoning_steps: list[str] = Field(default_factory=list)
    fixed_code: str = ""
    changes_made: list[str] = Field(default_factory=list)
    confidence: Literal["high", "medium", "low"]

    @model_validator(mode="after")
    def require_code_unless_malicious(self) -> FixSuggestion:
        if not self.is_malicious and not self.fixed_code.strip():
            raise ValueError("fixed_code is required when is_malicious is false")
        return self
