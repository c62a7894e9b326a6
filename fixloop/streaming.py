"""Streaming repair pipeline -- the repair loop as a server-sent event stream.

Runs the same front half as the buffered graph (parse, rate limit, validate,
execute original) and then forwards the advisor's reasoning to the caller as
it arrives. Only the prose before the first code fence is forwarded; the
fenced code is pulled from the full text, re-scanned by the guardrails and
executed once.

A producer task runs the pipeline and pushes events into a bounded
EventChannel; the HTTP response consumes them. Closing the consumer cancels
the producer. A consumer that stops reading for longer than the flush timeout
aborts the producer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import aclosing, suppress
from typing import Any

from pydantic import BaseModel, Field

from .advisor import RepairAdvisor
from .errors import AdvisorError, AdvisorQuotaError, FixloopError, RateLimitExceeded, ValidationError
from .fences import FenceSplitter, extract_fenced_code, narrative_of
from .graph import (
    EXECUTE_FIXED,
    EXECUTE_ORIGINAL,
    GENERATE_FIX,
    PARSE_REQUEST,
    PIPELINE_OUTCOMES,
    RATE_LIMIT_CHECK,
    VALIDATE_SIZE,
)
from .guardrails import Guardrails
from .ratelimit import RateLimiter
from .sandbox import SandboxExecutor, sandbox_error
from .state import ExecutionResult, OutcomeStatus, StepStatus
from .validator import CodeLimits, validate_code

logger = logging.getLogger("fixloop.streaming")


class CallerStalled(FixloopError):
    """The consumer did not take an event within the flush timeout."""


class StreamEvent(BaseModel):
    type: str
    data: dict[str, Any] = Field(default_factory=dict)

    def to_sse(self) -> str:
        """Format as one SSE data line."""
        return f"data: {json.dumps({'type': self.type, **self.data})}\n\n"


_CLOSED = object()


class EventChannel:
    """Bounded single-producer single-consumer event queue."""

    def __init__(self, maxsize: int = 64, flush_timeout_seconds: float = 10.0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._flush_timeout = flush_timeout_seconds
        self._closed = False

    async def send(self, event: StreamEvent) -> None:
        if self._closed:
            raise CallerStalled("Event channel is closed")
        try:
            await asyncio.wait_for(self._queue.put(event), timeout=self._flush_timeout)
        except asyncio.TimeoutError as e:
            raise CallerStalled(f"Caller did not read an event within {self._flush_timeout}s") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # receive() notices the flag once the backlog drains
            pass

    async def receive(self) -> StreamEvent | None:
        """Next event, or None once the producer has closed and the backlog is drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        return None if item is _CLOSED else item


Emit = Callable[[StreamEvent], Awaitable[None]]


def _step(name: str, status: StepStatus, message: str | None = None) -> StreamEvent:
    return StreamEvent(type="step", data={"name": name, "status": status.value, "message": message})


def _output(result: ExecutionResult) -> StreamEvent:
    return StreamEvent(type="output", data={"stdout": result.stdout, "executionTime": result.duration_ms})


def _error(message: str, **fields: Any) -> StreamEvent:
    return StreamEvent(type="error", data={"message": message, **fields})


def _complete(success: bool, **fields: Any) -> StreamEvent:
    return StreamEvent(type="complete", data={"success": success, **fields})


class StreamingRepairPipeline:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        sandbox: SandboxExecutor,
        advisor: RepairAdvisor,
        guardrails: Guardrails | None = None,
        limits: CodeLimits | None = None,
        queue_size: int = 64,
        flush_timeout_seconds: float = 10.0,
    ):
        self._limiter = rate_limiter
        self._sandbox = sandbox
        self._advisor = advisor
        self._guardrails = guardrails or Guardrails.profile("strict")
        self._limits = limits or CodeLimits()
        self._queue_size = queue_size
        self._flush_timeout = flush_timeout_seconds

    async def stream(self, code: Any, identity: str) -> AsyncIterator[StreamEvent]:
        channel = EventChannel(self._queue_size, self._flush_timeout)
        producer = asyncio.create_task(self._produce(code, identity, channel))
        try:
            while (event := await channel.receive()) is not None:
                yield event
        finally:
            if not producer.done():
                logger.info("stream_consumer_closed", extra={"identity": identity})
                producer.cancel()
            with suppress(asyncio.CancelledError):
                await producer

    async def _produce(self, code: Any, identity: str, channel: EventChannel) -> None:
        start = time.monotonic()
        status = OutcomeStatus.ERROR
        try:
            status = await self._run(code, identity, channel.send)
        except CallerStalled:
            logger.warning("stream_caller_stalled", extra={"identity": identity})
        except Exception:
            logger.exception("stream_pipeline_error")
            try:
                await channel.send(_error("Internal error while repairing code"))
            except CallerStalled:
                logger.warning("stream_caller_stalled", extra={"identity": identity})
        finally:
            channel.close()
        PIPELINE_OUTCOMES.labels(variant="streaming", status=status.value).inc()
        logger.info(
            "stream_completed",
            extra={"status": status.value, "latency_ms": (time.monotonic() - start) * 1000},
        )

    async def _run(self, code: Any, identity: str, emit: Emit) -> OutcomeStatus:
        await emit(_step(PARSE_REQUEST, StepStatus.PENDING))
        if not isinstance(code, str) or not code:
            await emit(_step(PARSE_REQUEST, StepStatus.ERROR, "Missing or invalid code field"))
            await emit(_error("Missing or invalid code field"))
            return OutcomeStatus.INVALID
        await emit(_step(PARSE_REQUEST, StepStatus.SUCCESS, f"Received {len(code)} characters"))

        await emit(_step(RATE_LIMIT_CHECK, StepStatus.PENDING))
        try:
            rate_limit = await self._limiter.check_or_reject(identity)
        except RateLimitExceeded as e:
            await emit(_step(RATE_LIMIT_CHECK, StepStatus.ERROR, str(e)))
            await emit(_error(str(e), rateLimit=e.status.model_dump(by_alias=True)))
            return OutcomeStatus.RATE_LIMITED
        await emit(
            _step(RATE_LIMIT_CHECK, StepStatus.SUCCESS, f"Rate limit OK ({rate_limit.remaining} requests remaining)")
        )

        await emit(_step(VALIDATE_SIZE, StepStatus.PENDING))
        validation = validate_code(code, self._limits)
        if not validation.is_valid:
            message = str(ValidationError(validation.errors))
            await emit(_step(VALIDATE_SIZE, StepStatus.ERROR, message))
            await emit(_error(message, errors=validation.errors))
            return OutcomeStatus.INVALID
        await emit(_step(VALIDATE_SIZE, StepStatus.SUCCESS, f"Code size OK ({len(code)} characters)"))

        await emit(_step(EXECUTE_ORIGINAL, StepStatus.PENDING))
        original = await self._sandbox.run(code)
        if original.ok:
            await emit(_step(EXECUTE_ORIGINAL, StepStatus.SUCCESS, "Code executed successfully"))
            await emit(_output(original))
            await emit(_complete(True, alreadyWorking=True))
            return OutcomeStatus.WORKS
        await emit(_step(EXECUTE_ORIGINAL, StepStatus.ERROR, f"Execution failed: {sandbox_error(original)}"))

        return await self._repair(code, original, emit)

    async def _repair(self, code: str, original: ExecutionResult, emit: Emit) -> OutcomeStatus:
        await emit(_step(GENERATE_FIX, StepStatus.PENDING))
        await emit(StreamEvent(type="reasoning-start", data={"message": "Analyzing your code..."}))

        splitter = FenceSplitter()
        try:
            async with aclosing(self._advisor.stream_fix_reasoning(code, original.reason)) as chunks:
                async for chunk in chunks:
                    text = splitter.feed(chunk)
                    if text:
                        await emit(StreamEvent(type="reasoning-chunk", data={"text": text}))
        except AdvisorQuotaError as e:
            await emit(_step(GENERATE_FIX, StepStatus.ERROR, str(e)))
            await emit(_error(str(e), retryAfter=e.retry_after_seconds))
            return OutcomeStatus.ADVISOR_BUSY
        except AdvisorError:
            await emit(_step(GENERATE_FIX, StepStatus.ERROR, "Advisor unavailable"))
            await emit(_error("Fix generation failed: advisor unavailable"))
            return OutcomeStatus.ADVISOR_FAILED

        tail = splitter.finish()
        if tail:
            await emit(StreamEvent(type="reasoning-chunk", data={"text": tail}))
        full_text = splitter.full_text
        await emit(StreamEvent(type="reasoning-complete", data={"fullText": narrative_of(full_text)}))

        fixed_code = extract_fenced_code(full_text)
        if not fixed_code or fixed_code == code.strip():
            await emit(_step(GENERATE_FIX, StepStatus.ERROR, "No usable code block in the response"))
            await emit(_complete(False, message="Could not extract fixed code from the response"))
            return OutcomeStatus.UNFIXED
        await emit(_step(GENERATE_FIX, StepStatus.SUCCESS, "Fix generated"))

        verdict = self._guardrails.scan(fixed_code)
        if not verdict.passed:
            await emit(_error(verdict.reason, rejected=True, matched=verdict.matched))
            await emit(StreamEvent(type="fixed-code", data={"code": fixed_code}))
            await emit(_complete(False))
            return OutcomeStatus.REJECTED

        await emit(_step(EXECUTE_FIXED, StepStatus.PENDING))
        fixed = await self._sandbox.run(fixed_code)
        if fixed.ok:
            await emit(_step(EXECUTE_FIXED, StepStatus.SUCCESS, "Fixed code executed successfully"))
            await emit(_output(fixed))
            await emit(StreamEvent(type="fixed-code", data={"code": fixed_code}))
            await emit(_complete(True))
            return OutcomeStatus.FIXED

        await emit(_step(EXECUTE_FIXED, StepStatus.ERROR, "Fixed code still fails"))
        await emit(_error(str(sandbox_error(fixed))))
        await emit(StreamEvent(type="fixed-code", data={"code": fixed_code}))
        await emit(_complete(False))
        return OutcomeStatus.UNFIXED
