"""fixloop LangGraph -- the buffered repair loop.

  [Parse Request] -> [Rate Limit Check] -> [Validate Code Size] -> [Execute Original Code]
                                                                          | (fail)
                                                                          v
                        [Execute Fixed Code] <- (fix) -- [Generate Fix] --+
                              | (fail)                      | (advisor error)
                              v                             v
                         [Retry Fix] <----------------------+
                              |
                              v
                      [Execute Retry Fix] -> END

Any terminal decision (rate limited, invalid, works, fixed, rejected, advisor
busy/failed, unfixed) sets ``outcome`` and routes straight to END. At most two
fix attempts are ever generated. Every node records a pending StepRecord and
then its final one; an exception inside a node becomes an Error step and an
``error`` outcome instead of propagating.
"""

from __future__ import annotations

import logging
import operator
import time
from functools import wraps
from typing import Annotated, Any, TypedDict

from langgraph.graph import END, StateGraph
from prometheus_client import Counter

from .advisor import RepairAdvisor
from .errors import (
    AdvisorError,
    AdvisorQuotaError,
    AdvisorSchemaError,
    MaliciousCodeRejected,
    RateLimitExceeded,
    ValidationError,
)
from .ratelimit import RateLimiter
from .sandbox import SandboxExecutor, sandbox_error
from .schemas import FixContext
from .state import (
    DebugOutcome,
    ExecutionResult,
    OutcomeStatus,
    RateLimitStatus,
    StepLog,
    StepRecord,
    StepStatus,
)
from .validator import CodeLimits, validate_code

logger = logging.getLogger("fixloop.graph")

PIPELINE_OUTCOMES = Counter(
    "fixloop_pipeline_outcomes_total",
    "Terminal pipeline outcomes",
    ["variant", "status"],
)

PARSE_REQUEST = "Parse Request"
RATE_LIMIT_CHECK = "Rate Limit Check"
VALIDATE_SIZE = "Validate Code Size"
EXECUTE_ORIGINAL = "Execute Original Code"
GENERATE_FIX = "Generate Fix"
EXECUTE_FIXED = "Execute Fixed Code"
RETRY_FIX = "Retry Fix"
EXECUTE_RETRY_FIXED = "Execute Retry Fix"
ERROR_STEP = "Error"

MAX_FIX_ATTEMPTS = 2

_FIX_STEPS = {1: (GENERATE_FIX, EXECUTE_FIXED), 2: (RETRY_FIX, EXECUTE_RETRY_FIXED)}


class PipelineState(TypedDict, total=False):
    code: Any
    identity: str
    original_code: str
    current_code: str
    steps: Annotated[list[StepRecord], operator.add]
    rate_limit: RateLimitStatus | None
    fix_context: FixContext | None
    fixed_code: str | None
    fix_ready: bool
    fix_attempts: int
    outcome: OutcomeStatus | None
    error_message: str | None
    execution_output: str | None
    retry_after: int | None


def _rec(name: str, status: StepStatus, message: str | None = None, payload: Any = None) -> StepRecord:
    return StepRecord(name=name, status=status, message=message, payload=payload)


def _execution_payload(result: ExecutionResult) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "stdout": result.stdout,
        "stderr": result.stderr,
        "executionTime": result.duration_ms,
    }
    if not result.ok:
        payload["error"] = result.reason
    return payload


def step(name: str):
    """Record a pending StepRecord before the node runs; turn exceptions into an Error step."""

    def decorator(func):
        @wraps(func)
        async def wrapper(self, state: PipelineState) -> dict[str, Any]:
            pending = _rec(name, StepStatus.PENDING)
            try:
                update = await func(self, state)
            except Exception as e:
                logger.exception("pipeline_step_error", extra={"step": name})
                return {
                    "steps": [
                        pending,
                        _rec(name, StepStatus.ERROR, "Unexpected error"),
                        _rec(ERROR_STEP, StepStatus.ERROR, f"Internal error: {type(e).__name__}"),
                    ],
                    "outcome": OutcomeStatus.ERROR,
                    "error_message": f"Internal error during {name}",
                }
            update["steps"] = [pending, *update.get("steps", [])]
            return update

        return wrapper

    return decorator


def _route(next_node: str):
    def router(state: PipelineState) -> str:
        return END if state.get("outcome") else next_node

    return router


def _route_after_fix(execute_node: str, fallback: str):
    def router(state: PipelineState) -> str:
        if state.get("outcome"):
            return END
        return execute_node if state.get("fix_ready") else fallback

    return router


class RepairPipeline:
    """Buffered variant: runs the whole state machine and returns a DebugOutcome."""

    def __init__(
        self,
        rate_limiter: RateLimiter,
        sandbox: SandboxExecutor,
        advisor: RepairAdvisor,
        limits: CodeLimits | None = None,
    ):
        self._limiter = rate_limiter
        self._sandbox = sandbox
        self._advisor = advisor
        self._limits = limits or CodeLimits()
        self._graph = self._build()

    def _build(self):
        builder = StateGraph(PipelineState)
        builder.add_node("parse_request", self._parse_request)
        builder.add_node("rate_limit_check", self._rate_limit_check)
        builder.add_node("validate_size", self._validate_size)
        builder.add_node("execute_original", self._execute_original)
        builder.add_node("generate_fix", self._generate_fix)
        builder.add_node("execute_fixed", self._execute_fixed)
        builder.add_node("retry_fix", self._retry_fix)
        builder.add_node("execute_retry_fixed", self._execute_retry_fixed)

        builder.set_entry_point("parse_request")
        builder.add_conditional_edges("parse_request", _route("rate_limit_check"))
        builder.add_conditional_edges("rate_limit_check", _route("validate_size"))
        builder.add_conditional_edges("validate_size", _route("execute_original"))
        builder.add_conditional_edges("execute_original", _route("generate_fix"))
        builder.add_conditional_edges("generate_fix", _route_after_fix("execute_fixed", "retry_fix"))
        builder.add_conditional_edges("execute_fixed", _route("retry_fix"))
        builder.add_conditional_edges("retry_fix", _route_after_fix("execute_retry_fixed", END))
        builder.add_edge("execute_retry_fixed", END)
        return builder.compile()

    # -- nodes -------------------------------------------------------------

    @step(PARSE_REQUEST)
    async def _parse_request(self, state: PipelineState) -> dict[str, Any]:
        code = state.get("code")
        if not isinstance(code, str) or not code:
            return {
                "steps": [_rec(PARSE_REQUEST, StepStatus.ERROR, "Missing or invalid code field")],
                "original_code": "",
                "outcome": OutcomeStatus.INVALID,
                "error_message": 'Request body must contain a "code" field with JavaScript code',
            }
        return {
            "steps": [_rec(PARSE_REQUEST, StepStatus.SUCCESS, f"Received {len(code)} characters")],
            "original_code": code,
            "current_code": code,
        }

    @step(RATE_LIMIT_CHECK)
    async def _rate_limit_check(self, state: PipelineState) -> dict[str, Any]:
        try:
            status = await self._limiter.check_or_reject(state.get("identity", "unknown"))
        except RateLimitExceeded as e:
            return {
                "steps": [
                    _rec(RATE_LIMIT_CHECK, StepStatus.ERROR, str(e), e.status.model_dump(by_alias=True)),
                ],
                "rate_limit": e.status,
                "outcome": OutcomeStatus.RATE_LIMITED,
                "error_message": str(e),
            }
        return {
            "steps": [_rec(RATE_LIMIT_CHECK, StepStatus.SUCCESS, f"{status.remaining} requests remaining")],
            "rate_limit": status,
        }

    @step(VALIDATE_SIZE)
    async def _validate_size(self, state: PipelineState) -> dict[str, Any]:
        code = state["original_code"]
        result = validate_code(code, self._limits)
        if not result.is_valid:
            return {
                "steps": [
                    _rec(VALIDATE_SIZE, StepStatus.ERROR, "Code exceeds size limits", {"errors": result.errors}),
                ],
                "outcome": OutcomeStatus.INVALID,
                "error_message": str(ValidationError(result.errors)),
            }
        return {
            "steps": [
                _rec(
                    VALIDATE_SIZE,
                    StepStatus.SUCCESS,
                    f"Code size OK ({len(code)} chars)",
                    {"warnings": result.warnings},
                ),
            ],
        }

    @step(EXECUTE_ORIGINAL)
    async def _execute_original(self, state: PipelineState) -> dict[str, Any]:
        result = await self._sandbox.run(state["original_code"])
        if result.ok:
            return {
                "steps": [
                    _rec(EXECUTE_ORIGINAL, StepStatus.SUCCESS, "Code executed successfully", _execution_payload(result)),
                ],
                "outcome": OutcomeStatus.WORKS,
                "execution_output": result.stdout,
            }
        message = "Execution timed out" if result.timed_out else f"Execution failed: {sandbox_error(result)}"
        return {
            "steps": [_rec(EXECUTE_ORIGINAL, StepStatus.ERROR, message, _execution_payload(result))],
            "fix_context": FixContext(previous_error=result.reason),
        }

    async def _fix(self, state: PipelineState, attempt: int) -> dict[str, Any]:
        name, execute_name = _FIX_STEPS[attempt]
        source = state["current_code"]
        try:
            suggestion = await self._advisor.propose_fix(source, state.get("fix_context"))
        except AdvisorQuotaError as e:
            return {
                "steps": [_rec(name, StepStatus.ERROR, str(e), {"retryAfter": e.retry_after_seconds})],
                "fix_ready": False,
                "outcome": OutcomeStatus.ADVISOR_BUSY,
                "error_message": str(e),
                "retry_after": e.retry_after_seconds,
            }
        except AdvisorError as e:
            reason = "Advisor returned an invalid fix" if isinstance(e, AdvisorSchemaError) else "Advisor unavailable"
            if attempt < MAX_FIX_ATTEMPTS:
                logger.warning("fix_generation_failed_advancing", extra={"attempt": attempt, "reason": reason})
                return {
                    "steps": [
                        _rec(name, StepStatus.ERROR, reason),
                        _rec(execute_name, StepStatus.SKIPPED, "No fix to execute"),
                    ],
                    "fix_ready": False,
                }
            return {
                "steps": [_rec(name, StepStatus.ERROR, reason)],
                "fix_ready": False,
                "outcome": OutcomeStatus.ADVISOR_FAILED,
                "error_message": f"Fix generation failed: {reason.lower()}",
            }

        if suggestion.is_malicious:
            reason = suggestion.malicious_reason or "no reason given"
            message = "Malicious code detected" if attempt == 1 else "Malicious code detected on retry"
            return {
                "steps": [_rec(name, StepStatus.ERROR, message, {"reason": reason})],
                "fix_ready": False,
                "outcome": OutcomeStatus.REJECTED,
                "error_message": str(MaliciousCodeRejected(reason)),
            }

        message = (
            f"Fix generated with {suggestion.confidence} confidence"
            if attempt == 1
            else "Generated second fix attempt"
        )
        return {
            "steps": [
                _rec(
                    name,
                    StepStatus.SUCCESS,
                    message,
                    {
                        "changesMade": suggestion.changes_made,
                        "confidence": suggestion.confidence,
                        "reasoningSteps": suggestion.reasoning_steps,
                    },
                ),
            ],
            "fixed_code": suggestion.fixed_code,
            "fix_ready": True,
            "fix_attempts": attempt,
        }

    async def _execute_fix(self, state: PipelineState, attempt: int) -> dict[str, Any]:
        _, name = _FIX_STEPS[attempt]
        fixed_code = state["fixed_code"]
        result = await self._sandbox.run(fixed_code)
        if result.ok:
            message = "Fixed code executed successfully" if attempt == 1 else "Retry fix executed successfully"
            return {
                "steps": [_rec(name, StepStatus.SUCCESS, message, _execution_payload(result))],
                "outcome": OutcomeStatus.FIXED,
                "execution_output": result.stdout,
            }

        if attempt < MAX_FIX_ATTEMPTS:
            return {
                "steps": [_rec(name, StepStatus.ERROR, "Fixed code still fails", _execution_payload(result))],
                "current_code": fixed_code,
                "fix_context": FixContext(previous_error=result.reason),
            }
        return {
            "steps": [_rec(name, StepStatus.ERROR, "Retry fix also failed", _execution_payload(result))],
            "outcome": OutcomeStatus.UNFIXED,
            "error_message": f"Unable to fix code after {MAX_FIX_ATTEMPTS} attempts",
        }

    @step(GENERATE_FIX)
    async def _generate_fix(self, state: PipelineState) -> dict[str, Any]:
        return await self._fix(state, 1)

    @step(EXECUTE_FIXED)
    async def _execute_fixed(self, state: PipelineState) -> dict[str, Any]:
        return await self._execute_fix(state, 1)

    @step(RETRY_FIX)
    async def _retry_fix(self, state: PipelineState) -> dict[str, Any]:
        return await self._fix(state, 2)

    @step(EXECUTE_RETRY_FIXED)
    async def _execute_retry_fixed(self, state: PipelineState) -> dict[str, Any]:
        return await self._execute_fix(state, 2)

    # -- entry point -------------------------------------------------------

    async def run(self, code: Any, identity: str) -> DebugOutcome:
        start = time.monotonic()
        initial: PipelineState = {"code": code, "identity": identity, "steps": [], "fix_attempts": 0}
        try:
            final = await self._graph.ainvoke(initial)
        except Exception as e:
            logger.exception("pipeline_error")
            log = StepLog()
            log.record(ERROR_STEP, StepStatus.ERROR, f"Internal error: {type(e).__name__}")
            PIPELINE_OUTCOMES.labels(variant="buffered", status=OutcomeStatus.ERROR.value).inc()
            return DebugOutcome.from_log(
                log,
                success=False,
                original_code=code if isinstance(code, str) else "",
                error_message="Internal error",
                status=OutcomeStatus.ERROR,
            )

        status = final.get("outcome") or OutcomeStatus.ERROR
        success = status in (OutcomeStatus.WORKS, OutcomeStatus.FIXED)
        PIPELINE_OUTCOMES.labels(variant="buffered", status=status.value).inc()
        logger.info(
            "pipeline_completed",
            extra={
                "status": status.value,
                "fix_attempts": final.get("fix_attempts", 0),
                "latency_ms": (time.monotonic() - start) * 1000,
            },
        )
        return DebugOutcome.from_log(
            StepLog(final.get("steps", [])),
            success=success,
            original_code=final.get("original_code", ""),
            fixed_code=final.get("fixed_code"),
            execution_output=final.get("execution_output"),
            error_message=None if success else final.get("error_message"),
            rate_limit=final.get("rate_limit"),
            retry_after_seconds=final.get("retry_after"),
            status=status,
        )
