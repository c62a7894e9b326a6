"""Repair advisor -- client for the external reasoning provider.

Three operations, all carrying the submitted code: a combined safety/bug
analysis, a structured fix proposal, and a token stream of fix reasoning that
ends in one fenced code block. Single-shot answers are validated strictly
(schemas.py). Provider throttling is retried with backoff and then surfaced
as AdvisorQuotaError; anything else the provider does wrong is AdvisorError.

The chat model is injected, so tests substitute a double for it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator

import openai
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from prometheus_client import Counter

from .errors import AdvisorError, AdvisorQuotaError, AdvisorSchemaError
from .schemas import CodeAnalysis, FixContext, FixSuggestion, parse_and_validate

logger = logging.getLogger("fixloop.advisor")

ADVISOR_CALLS = Counter(
    "fixloop_advisor_calls_total",
    "Advisor calls by operation and outcome",
    ["operation", "outcome"],
)

ANALYZE_SYSTEM_PROMPT = """\
You are a security-aware JavaScript debugging assistant. Your PRIMARY job is to validate code safety BEFORE analyzing bugs.

STEP 1 - SAFETY: Decide whether the code is safe to run in an isolated V8 sandbox with no Node.js APIs. Look for:
- Attempts to reach Node.js APIs (require, import, Buffer, process, fs)
- Dynamic code evaluation (eval, Function constructor, string timers)
- Constructor or prototype tricks aimed at escaping the sandbox (constructor.constructor, __proto__)
- Obfuscation hiding any of the above (base64, hex escapes, string concatenation)
- Deliberate resource exhaustion (memory bombs)

STEP 2 - BUGS (only if safe): syntax errors, type errors, reference errors, logic errors, runtime errors.

Respond ONLY with valid JSON, no markdown:
{
  "is_safe": true,
  "safety_issues": [],
  "has_bugs": true,
  "bug_description": "clear description",
  "bug_location": "line number or function",
  "suggested_fix": "specific fix",
  "explanation": "why this is a bug and how the fix works",
  "test_case": "optional test"
}
If is_safe is false, list every issue in safety_issues, set has_bugs to false and omit the bug fields.
"""

FIX_SYSTEM_PROMPT = """\
You are a JavaScript debugging assistant. Fix the buggy JavaScript code you are given.
The fixed code runs in an isolated V8 sandbox with only console.log available: no Node.js APIs, no modules, no timers.

If the code is clearly malicious (sandbox escape attempts, obfuscated payloads), do not fix it: set is_malicious to true and explain in malicious_reason.

Respond ONLY with valid JSON, no markdown:
{
  "is_malicious": false,
  "malicious_reason": null,
  "reasoning_steps": ["step 1", "step 2"],
  "fixed_code": "complete corrected JavaScript code",
  "changes_made": ["change 1", "change 2"],
  "confidence": "high" | "medium" | "low"
}
"""

STREAM_SYSTEM_PROMPT = """\
You are a JavaScript debugging assistant explaining your reasoning to a learner.
Think out loud in plain prose: what the error means, where the bug is, and how to fix it.
Then give the complete fixed program in exactly one fenced code block:
```javascript
// fixed code
```
Write nothing after the code block. Do not use code fences anywhere in the prose.
The fixed code runs in an isolated V8 sandbox with only console.log available.
"""


def _code_block(code: str) -> str:
    return f"```javascript\n{code}\n```"


def _content_text(message: BaseMessage) -> str:
    content = message.content
    if isinstance(content, str):
        return content
    return "".join(
        part.get("text", "") if isinstance(part, dict) else str(part)
        for part in content
    )


def _retry_after(err: openai.RateLimitError, default: int) -> int:
    response = getattr(err, "response", None)
    header = response.headers.get("retry-after") if response is not None else None
    try:
        return max(1, int(float(header))) if header else default
    except ValueError:
        return default


class RepairAdvisor:
    def __init__(
        self,
        llm: BaseChatModel,
        quota_retries: int = 2,
        quota_backoff_seconds: float = 1.0,
    ):
        self._llm = llm
        self._quota_retries = quota_retries
        self._quota_backoff = quota_backoff_seconds

    def _backoff(self, attempt: int) -> float:
        return self._quota_backoff * (2**attempt)

    async def _invoke(self, operation: str, messages: list[BaseMessage]) -> str:
        start = time.monotonic()
        for attempt in range(self._quota_retries + 1):
            try:
                response = await self._llm.ainvoke(messages)
            except openai.RateLimitError as e:
                if attempt < self._quota_retries:
                    delay = self._backoff(attempt)
                    logger.warning(
                        "advisor_quota_retry",
                        extra={"operation": operation, "attempt": attempt + 1, "delay_s": delay},
                    )
                    await asyncio.sleep(delay)
                    continue
                ADVISOR_CALLS.labels(operation=operation, outcome="quota").inc()
                raise AdvisorQuotaError(retry_after_seconds=_retry_after(e, 60)) from e
            except Exception as e:
                ADVISOR_CALLS.labels(operation=operation, outcome="error").inc()
                logger.exception("advisor_call_failed", extra={"operation": operation})
                raise AdvisorError(f"Advisor call failed during {operation}") from e

            logger.info(
                "advisor_call_completed",
                extra={"operation": operation, "latency_ms": (time.monotonic() - start) * 1000},
            )
            return _content_text(response)
        raise AdvisorError(f"Advisor call failed during {operation}")  # unreachable

    def _validated(self, operation: str, raw: str, model):
        try:
            parsed = parse_and_validate(raw, model)
        except AdvisorSchemaError:
            ADVISOR_CALLS.labels(operation=operation, outcome="schema_error").inc()
            raise
        ADVISOR_CALLS.labels(operation=operation, outcome="success").inc()
        return parsed

    async def analyze_safety_and_bugs(self, code: str) -> CodeAnalysis:
        messages = [
            SystemMessage(content=ANALYZE_SYSTEM_PROMPT),
            HumanMessage(content=f"CODE TO ANALYZE:\n{_code_block(code)}"),
        ]
        raw = await self._invoke("analyze", messages)
        analysis = self._validated("analyze", raw, CodeAnalysis)
        if not analysis.is_safe:
            logger.warning("advisor_flagged_unsafe", extra={"issues": analysis.safety_issues[:5]})
        return analysis

    async def propose_fix(self, code: str, context: FixContext | None = None) -> FixSuggestion:
        prompt = f"ORIGINAL CODE:\n{_code_block(code)}"
        if context is not None and not context.is_empty():
            known = ["", "KNOWN ISSUE:"]
            if context.bug_description:
                known.append(f"- Bug: {context.bug_description}")
            if context.bug_location:
                known.append(f"- Location: {context.bug_location}")
            if context.suggested_fix:
                known.append(f"- Suggested fix: {context.suggested_fix}")
            if context.previous_error:
                known.append(f"- Error when run: {context.previous_error}")
            prompt += "\n".join(known)

        messages = [SystemMessage(content=FIX_SYSTEM_PROMPT), HumanMessage(content=prompt)]
        raw = await self._invoke("propose_fix", messages)
        return self._validated("propose_fix", raw, FixSuggestion)

    async def stream_fix_reasoning(self, code: str, error_message: str) -> AsyncIterator[str]:
        """Yield reasoning chunks as they arrive. Finite and not restartable."""
        messages = [
            SystemMessage(content=STREAM_SYSTEM_PROMPT),
            HumanMessage(content=f"CODE:\n{_code_block(code)}\n\nERROR WHEN RUN:\n{error_message}"),
        ]
        yielded = False
        attempt = 0
        while True:
            try:
                async for chunk in self._llm.astream(messages):
                    text = _content_text(chunk)
                    if text:
                        yielded = True
                        yield text
                break
            except openai.RateLimitError as e:
                # Once text has reached the caller the stream cannot be replayed
                if not yielded and attempt < self._quota_retries:
                    delay = self._backoff(attempt)
                    attempt += 1
                    logger.warning("advisor_stream_quota_retry", extra={"attempt": attempt, "delay_s": delay})
                    await asyncio.sleep(delay)
                    continue
                ADVISOR_CALLS.labels(operation="stream", outcome="quota").inc()
                raise AdvisorQuotaError(retry_after_seconds=_retry_after(e, 60)) from e
            except Exception as e:
                ADVISOR_CALLS.labels(operation="stream", outcome="error").inc()
                logger.exception("advisor_stream_failed")
                raise AdvisorError("Advisor stream failed") from e
        ADVISOR_CALLS.labels(operation="stream", outcome="success").inc()


def build_advisor(settings) -> RepairAdvisor:
    """Construct the production advisor from settings."""
    from langchain_openai import ChatOpenAI

    llm = ChatOpenAI(
        base_url=settings.advisor_model_url,
        api_key=settings.advisor_api_key or "not-needed",
        model=settings.advisor_model_name,
        temperature=settings.advisor_temperature,
        max_tokens=settings.advisor_max_tokens,
        timeout=settings.advisor_timeout_seconds,
        max_retries=0,
    )
    return RepairAdvisor(
        llm,
        quota_retries=settings.advisor_quota_retries,
        quota_backoff_seconds=settings.advisor_quota_backoff_seconds,
    )


def is_configured(settings) -> bool:
    return bool(settings.advisor_api_key and settings.advisor_model_url)
