"""Error taxonomy.

User-correctable errors (validation, rate limit) map to 4xx. Sandbox errors are
never fatal to a pipeline: they trigger the repair path. Advisor errors are
kept distinct so a provider quota problem reads as "retry later" and a
malformed provider response is not confused with a network failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .state import RateLimitStatus


class FixloopError(Exception):
    """Base class for all fixloop errors."""


class ValidationError(FixloopError):
    """Submitted code violates size/shape limits."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(f"Code validation failed: {', '.join(self.errors)}")


class RateLimitExceeded(FixloopError):
    """Caller exhausted the quota for the current window."""

    def __init__(self, status: RateLimitStatus, message: str | None = None):
        self.status = status
        super().__init__(message or "Rate limit exceeded")


class SandboxError(FixloopError):
    """Execution failed inside the sandbox."""


class SandboxTimeout(SandboxError):
    pass


class SandboxResourceExceeded(SandboxError):
    pass


class SandboxRuntimeError(SandboxError):
    pass


class AdvisorError(FixloopError):
    """The reasoning provider could not produce a usable answer."""


class AdvisorSchemaError(AdvisorError):
    """Provider output did not parse or did not match the expected schema."""


class AdvisorQuotaError(AdvisorError):
    """Provider-side throttling. Retry later."""

    def __init__(self, message: str = "Repair service is busy, retry later", retry_after_seconds: int = 60):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(message)


class MaliciousCodeRejected(FixloopError):
    """The advisor or a guardrail refused the code. A refusal, not a failure."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Code appears to be malicious: {reason}")
