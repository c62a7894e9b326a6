"""fixloop -- FastAPI entrypoint for the JavaScript repair loop.

Exposes the buffered pipeline at /api/debug and the streaming pipeline at
/api/debug/stream (server-sent events), plus the standalone safety/bug
analysis, rate-limit status, health and Prometheus metrics.
"""

from __future__ import annotations

import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel
from starlette.responses import Response

from .advisor import RepairAdvisor, build_advisor, is_configured
from .config import Settings, settings
from .errors import AdvisorError, AdvisorQuotaError, RateLimitExceeded
from .graph import RepairPipeline
from .guardrails import Guardrails
from .ratelimit import CounterStore, MemoryCounterStore, RateLimiter, RedisCounterStore
from .sandbox import SandboxExecutor
from .state import DebugOutcome, OutcomeStatus, RateLimitStatus
from .streaming import StreamingRepairPipeline
from .validator import CodeLimits, validate_code

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger("fixloop.api")

_HTTP_STATUS = {
    OutcomeStatus.WORKS: 200,
    OutcomeStatus.FIXED: 200,
    OutcomeStatus.UNFIXED: 200,
    OutcomeStatus.INVALID: 400,
    OutcomeStatus.REJECTED: 400,
    OutcomeStatus.RATE_LIMITED: 429,
    OutcomeStatus.ADVISOR_FAILED: 502,
    OutcomeStatus.ADVISOR_BUSY: 503,
    OutcomeStatus.ERROR: 500,
}


@dataclass
class Services:
    """Everything a request needs, built once per process."""

    settings: Settings
    store: CounterStore
    limiter: RateLimiter
    sandbox: SandboxExecutor
    advisor: RepairAdvisor
    pipeline: RepairPipeline
    streaming: StreamingRepairPipeline
    limits: CodeLimits


def build_services(cfg: Settings) -> Services:
    if cfg.redis_url:
        store: CounterStore = RedisCounterStore.from_url(cfg.redis_url, cfg.redis_socket_timeout_seconds)
    else:
        logger.warning("ratelimit_memory_store", extra={"detail": "counters are per-process"})
        store = MemoryCounterStore()
    limiter = RateLimiter(store, limit=cfg.rate_limit_max_requests, window_seconds=cfg.rate_limit_window_seconds)
    sandbox = SandboxExecutor.from_settings(cfg)
    advisor = build_advisor(cfg)
    limits = CodeLimits.from_settings(cfg)
    return Services(
        settings=cfg,
        store=store,
        limiter=limiter,
        sandbox=sandbox,
        advisor=advisor,
        pipeline=RepairPipeline(limiter, sandbox, advisor, limits),
        streaming=StreamingRepairPipeline(
            limiter,
            sandbox,
            advisor,
            guardrails=Guardrails.profile(cfg.guardrail_profile),
            limits=limits,
            queue_size=cfg.stream_queue_size,
            flush_timeout_seconds=cfg.stream_flush_timeout_seconds,
        ),
        limits=limits,
    )


services: Services | None = None


def _services() -> Services:
    global services
    if services is None:
        services = build_services(settings)
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    svc = _services()
    logger.info(
        "fixloop_starting",
        extra={
            "port": settings.port,
            "build": settings.build_version,
            "store": type(svc.store).__name__,
            "advisor_configured": is_configured(settings),
        },
    )
    yield
    if isinstance(svc.store, RedisCounterStore):
        await svc.store.close()
    logger.info("fixloop_shutting_down")


app = FastAPI(
    title="fixloop",
    description="Sandboxed JavaScript execution with an LLM repair loop",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


class AnalyzeRequest(BaseModel):
    code: str


class ResetRequest(BaseModel):
    identity: str


def _resolve_identity(request: Request, trust_forwarded: bool = True) -> str:
    """Resolve caller identity: X-Forwarded-For > X-Real-IP > socket peer > unknown."""
    if trust_forwarded:
        forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
        if forwarded:
            return forwarded
        real_ip = request.headers.get("x-real-ip", "").strip()
        if real_ip:
            return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _rate_limit_headers(status: RateLimitStatus | None) -> dict[str, str]:
    if status is None:
        return {}
    headers = {
        "X-RateLimit-Limit": str(status.limit),
        "X-RateLimit-Remaining": str(status.remaining),
        "X-RateLimit-Reset": str(status.reset_at_epoch_ms),
    }
    if not status.allowed:
        headers["Retry-After"] = str(max(1, status.reset_in_seconds))
    return headers


async def _read_code(request: Request) -> Any:
    """Return the raw ``code`` field; shape checks belong to the pipeline."""
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("request_body_unparseable")
        raise HTTPException(status_code=500, detail="Could not parse request body") from e
    return body.get("code") if isinstance(body, dict) else None


@app.post("/api/debug")
async def debug(request: Request):
    svc = _services()
    code = await _read_code(request)
    identity = _resolve_identity(request, svc.settings.trust_forwarded_headers)

    outcome: DebugOutcome = await svc.pipeline.run(code, identity)

    headers = _rate_limit_headers(outcome.rate_limit)
    if outcome.retry_after_seconds is not None:
        headers["Retry-After"] = str(outcome.retry_after_seconds)
    logger.info("debug_request_completed", extra={"identity": identity, "status": outcome.status.value})
    return JSONResponse(
        content=outcome.model_dump(by_alias=True, mode="json"),
        status_code=_HTTP_STATUS[outcome.status],
        headers=headers,
    )


@app.post("/api/debug/stream")
async def debug_stream(request: Request):
    svc = _services()
    code = await _read_code(request)
    identity = _resolve_identity(request, svc.settings.trust_forwarded_headers)

    async def sse_generator():
        events = svc.streaming.stream(code, identity)
        try:
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(
        sse_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@app.post("/api/analyze")
async def analyze(body: AnalyzeRequest, request: Request):
    svc = _services()
    identity = _resolve_identity(request, svc.settings.trust_forwarded_headers)
    try:
        rate_limit = await svc.limiter.check_or_reject(identity)
    except RateLimitExceeded as e:
        raise HTTPException(status_code=429, detail=str(e), headers=_rate_limit_headers(e.status)) from e

    validation = validate_code(body.code, svc.limits)
    if not validation.is_valid:
        raise HTTPException(status_code=400, detail={"errors": validation.errors})

    try:
        analysis = await svc.advisor.analyze_safety_and_bugs(body.code)
    except AdvisorQuotaError as e:
        raise HTTPException(
            status_code=503,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after_seconds)},
        ) from e
    except AdvisorError as e:
        raise HTTPException(status_code=502, detail="Analysis failed: advisor unavailable") from e

    return JSONResponse(
        content={**analysis.model_dump(), "warnings": validation.warnings},
        headers=_rate_limit_headers(rate_limit),
    )


@app.get("/api/ratelimit")
async def rate_limit_status(request: Request):
    svc = _services()
    identity = _resolve_identity(request, svc.settings.trust_forwarded_headers)
    status = await svc.limiter.status(identity)
    return JSONResponse(content=status.model_dump(by_alias=True), headers=_rate_limit_headers(status))


@app.post("/api/ratelimit/reset")
async def rate_limit_reset(body: ResetRequest, x_admin_token: str | None = Header(default=None)):
    svc = _services()
    expected = svc.settings.admin_token
    if not expected:
        raise HTTPException(status_code=404, detail="Not found")
    if not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise HTTPException(status_code=403, detail="Invalid admin token")
    await svc.limiter.reset(body.identity)
    return {"status": "reset", "identity": body.identity}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/readiness")
async def readiness():
    svc = _services()
    return {
        "status": "ready",
        "advisor_configured": is_configured(svc.settings),
        "counter_store": type(svc.store).__name__,
    }


@app.get("/metrics")
async def metrics():
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
