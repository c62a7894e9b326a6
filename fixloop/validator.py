"""Size/shape validation for submitted code.

Runs before any expensive work. Enforces resource bounds only: there is no
keyword denylist here. Keyword lists are trivially evaded and reject
legitimate code; the V8 isolate is the trust boundary.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .errors import ValidationError

logger = logging.getLogger("fixloop.validator")

_HEX_ESCAPE = re.compile(r"\\x[0-9a-fA-F]{2}")
_HEX_LITERAL = re.compile(r"0x[0-9a-fA-F]{8,}")


@dataclass(frozen=True)
class CodeLimits:
    max_length: int = 10_000
    max_lines: int = 500
    long_line_threshold: int = 200
    base64_run_threshold: int = 50

    @classmethod
    def from_settings(cls, settings) -> CodeLimits:
        return cls(
            max_length=settings.max_code_length,
            max_lines=settings.max_code_lines,
            long_line_threshold=settings.long_line_threshold,
            base64_run_threshold=settings.base64_run_threshold,
        )


@dataclass
class ValidationResult:
    is_valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def raise_for_errors(self) -> None:
        if not self.is_valid:
            raise ValidationError(self.errors)


def _size_errors(code: str, limits: CodeLimits) -> list[str]:
    errors: list[str] = []
    if len(code) > limits.max_length:
        errors.append(f"Code exceeds maximum length of {limits.max_length} characters (got {len(code)})")
    line_count = code.count("\n") + 1
    if line_count > limits.max_lines:
        errors.append(f"Code exceeds maximum of {limits.max_lines} lines (got {line_count})")
    return errors


def _shape_warnings(code: str, limits: CodeLimits) -> list[str]:
    warnings: list[str] = []

    long_lines = sum(1 for line in code.split("\n") if len(line) > limits.long_line_threshold)
    if long_lines:
        warnings.append(f"Found {long_lines} unusually long lines (potential obfuscation)")

    base64_run = re.compile(r"[A-Za-z0-9+/]{%d,}={0,2}" % limits.base64_run_threshold)
    if base64_run.search(code):
        warnings.append("Found base64-like strings (potential encoded payload)")

    if _HEX_ESCAPE.search(code) or _HEX_LITERAL.search(code):
        warnings.append("Found hex-encoded strings (potential shellcode)")

    return warnings


def validate_code(code: str, limits: CodeLimits | None = None) -> ValidationResult:
    """Validate submitted code. Errors block; warnings never do."""
    limits = limits or CodeLimits()

    if not code or not code.strip():
        return ValidationResult(is_valid=False, errors=["Code cannot be empty"])

    errors = _size_errors(code, limits)
    warnings = _shape_warnings(code, limits)

    if warnings:
        logger.info("validation_warnings", extra={"warnings": warnings})

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)
