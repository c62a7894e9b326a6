"""fixloop state model -- the typed contract shared by the pipelines.

Pydantic enforces strict validation so malformed data crashes fast rather
than silently propagating garbage. HTTP bodies use camelCase aliases.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def now_ms() -> int:
    return int(time.time() * 1000)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ErrorKind(str, Enum):
    EMPTY = "empty"
    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    MEMORY = "memory"
    INTERNAL = "internal"


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class OutcomeStatus(str, Enum):
    WORKS = "works"
    FIXED = "fixed"
    UNFIXED = "unfixed"
    REJECTED = "rejected"
    INVALID = "invalid"
    RATE_LIMITED = "rate_limited"
    ADVISOR_BUSY = "advisor_busy"
    ADVISOR_FAILED = "advisor_failed"
    ERROR = "error"


class ExecutionResult(_CamelModel):
    """One sandbox invocation. Produced exactly once per run, never mutated."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    ok: bool
    stdout: str = ""
    stderr: str = ""
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    timed_out: bool = False
    duration_ms: int = 0

    @property
    def reason(self) -> str:
        """One-line human-readable failure reason."""
        if self.ok:
            return ""
        if self.timed_out:
            return "Execution timed out"
        if self.error_message:
            return self.error_message
        lines = self.stderr.strip().splitlines()
        return lines[-1] if lines else "Unknown execution error"


class RateLimitStatus(_CamelModel):
    allowed: bool
    limit: int
    remaining: int
    reset_at_epoch_ms: int
    reset_in_seconds: int


class StepRecord(_CamelModel):
    name: str
    status: StepStatus
    message: str | None = None
    payload: Any = None
    timestamp_ms: int = Field(default_factory=now_ms)


class StepLog:
    """Append-only audit log of pipeline progress.

    A step name recurs when its status is re-emitted (pending -> success).
    ``latest()`` is the display view: one record per name, the latest
    timestamp winning, log position breaking ties.
    """

    def __init__(self, records: list[StepRecord] | None = None):
        self._records: list[StepRecord] = list(records or [])

    def record(
        self,
        name: str,
        status: StepStatus,
        message: str | None = None,
        payload: Any = None,
    ) -> StepRecord:
        rec = StepRecord(name=name, status=status, message=message, payload=payload)
        self._records.append(rec)
        return rec

    @property
    def records(self) -> list[StepRecord]:
        return list(self._records)

    def latest(self) -> dict[str, StepRecord]:
        view: dict[str, StepRecord] = {}
        for rec in self._records:
            current = view.get(rec.name)
            if current is None or rec.timestamp_ms >= current.timestamp_ms:
                view[rec.name] = rec
        return view


class DebugOutcome(_CamelModel):
    """Terminal result of the buffered pipeline."""

    success: bool
    steps: list[StepRecord] = Field(default_factory=list)
    step_summary: list[StepRecord] = Field(default_factory=list)
    original_code: str = ""
    fixed_code: str | None = None
    execution_output: str | None = None
    error_message: str | None = None
    rate_limit: RateLimitStatus | None = None
    status: OutcomeStatus = Field(default=OutcomeStatus.ERROR, exclude=True)
    retry_after_seconds: int | None = Field(default=None, exclude=True)

    @classmethod
    def from_log(cls, log: StepLog, **fields: Any) -> DebugOutcome:
        return cls(steps=log.records, step_summary=list(log.latest().values()), **fields)
