"""Shared test fixtures for fixloop tests.

Sets FIXLOOP_ env vars to safe defaults BEFORE any fixloop module is imported,
so Settings() never reaches a real provider or Redis during collection.
"""

from __future__ import annotations

import os

import pytest

# Tests that need specific values should monkeypatch or set env themselves.
_TEST_ENV = {
    "FIXLOOP_ADVISOR_MODEL_URL": "http://localhost:9999/v1",
    "FIXLOOP_ADVISOR_API_KEY": "test-key",
    "FIXLOOP_ADVISOR_QUOTA_BACKOFF_SECONDS": "0",
    "FIXLOOP_REDIS_URL": "",
    "FIXLOOP_ADMIN_TOKEN": "test-admin-token",
    "FIXLOOP_LOG_LEVEL": "warning",
}

for k, v in _TEST_ENV.items():
    os.environ.setdefault(k, v)

from fixloop.errors import AdvisorError  # noqa: E402
from fixloop.ratelimit import MemoryCounterStore, RateLimiter  # noqa: E402
from fixloop.schemas import CodeAnalysis, FixSuggestion  # noqa: E402
from fixloop.state import ErrorKind, ExecutionResult  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ok_result(stdout: str = "") -> ExecutionResult:
    return ExecutionResult(ok=True, stdout=stdout, duration_ms=3)


def fail_result(message: str = "ReferenceError: x is not defined") -> ExecutionResult:
    return ExecutionResult(
        ok=False,
        stderr=message,
        error_kind=ErrorKind.RUNTIME,
        error_message=message,
        duration_ms=3,
    )


def fix(code: str, confidence: str = "high") -> FixSuggestion:
    return FixSuggestion(fixed_code=code, changes_made=["fixed the bug"], confidence=confidence)


class FakeSandbox:
    """Scripted sandbox: results keyed by exact code, failure otherwise."""

    def __init__(self, results: dict[str, ExecutionResult] | None = None):
        self.results = dict(results or {})
        self.runs: list[str] = []

    async def run(self, code: str) -> ExecutionResult:
        self.runs.append(code)
        return self.results.get(code, fail_result())


class FakeAdvisor:
    """Replays queued answers; an Exception in a queue is raised instead."""

    def __init__(self, fixes=None, analysis=None, chunks=None):
        self.fixes = list(fixes or [])
        self.analysis = analysis
        self.chunks = list(chunks or [])
        self.calls: list[tuple] = []

    async def propose_fix(self, code, context=None) -> FixSuggestion:
        self.calls.append(("propose_fix", code, context))
        if not self.fixes:
            raise AdvisorError("no scripted fix left")
        item = self.fixes.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def analyze_safety_and_bugs(self, code) -> CodeAnalysis:
        self.calls.append(("analyze", code))
        if isinstance(self.analysis, Exception):
            raise self.analysis
        return self.analysis

    async def stream_fix_reasoning(self, code, error_message):
        self.calls.append(("stream", code, error_message))
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            yield chunk

    @property
    def fix_calls(self) -> int:
        return sum(1 for call in self.calls if call[0] == "propose_fix")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryCounterStore(clock=clock)


@pytest.fixture
def limiter(store, clock):
    return RateLimiter(store, limit=3, window_seconds=3600, clock=clock)
