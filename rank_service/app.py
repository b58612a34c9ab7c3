"""FastAPI entry point for the rank tracker trigger service.

An external scheduler (Cloud Scheduler, cron) drives the two-phase mode by
calling the trigger endpoints on an interval.

Endpoints:
- POST /v1/keywords/expand   Expand templates x niche rows x locations
- POST /v1/rankings/submit   One submit phase over RANK_JOBS_PATH
- POST /v1/rankings/fetch    One fetch phase over open tasks
- GET  /v1/rankings/summary  Outcome counts by status
- GET  /liveness             Health check
- GET  /readiness            Sink and provider reachability
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated, cast

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from rank_service.auth import Identity, get_identity, is_public_path, require_auth_on_cloud_run
from rank_service.config import (
    RANK_CORS_ALLOW_CREDENTIALS,
    RANK_CORS_ALLOW_ORIGINS,
    RANK_JOBS_PATH,
    RANK_TRIGGER_RATE_LIMIT,
)
from rank_service.errors import ConfigurationError, ValidationError
from rank_service.keywords.expander import expand_keywords, filter_niche_by_service
from rank_service.logging_config import generate_request_id, log_context, setup_logging
from rank_service.models import (
    ExpandedKeywordOut,
    ExpandRequest,
    ExpandResponse,
    HealthResponse,
    PhaseResponse,
    SummaryResponse,
)
from rank_service.ranking.client import RankingClient
from rank_service.ranking.config import RankConfig
from rank_service.ranking.incremental import IncrementalRunner
from rank_service.ranking.planner import load_jobs
from rank_service.sinks.base import OutcomeSink
from rank_service.sinks.factory import build_sink

logger = logging.getLogger(__name__)

# one phase at a time per process; phases share the sink cursor and ledger
_phase_lock = asyncio.Lock()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: open the sink and provider client, close on shutdown."""
    setup_logging()
    require_auth_on_cloud_run()

    sink = build_sink()
    await sink.setup()
    app.state.sink = sink
    app.state.cfg = RankConfig.from_env()
    try:
        app.state.client = RankingClient.from_env(
            target_domain=app.state.cfg.target_domain,
            max_tasks_per_post=app.state.cfg.max_tasks_per_post,
        )
    except ConfigurationError as e:
        logger.warning("Provider client unavailable: %s", e)
        app.state.client = None
    logger.info("Rank tracker service started")
    yield
    if app.state.client is not None:
        await app.state.client.aclose()
    await sink.close()
    logger.info("Rank tracker service stopped")


app = FastAPI(
    title="Rank Tracker API",
    version="0.1.0",
    lifespan=lifespan,
)

# -- Rate limiting ------------------------------------------------------------

limiter = Limiter(key_func=get_remote_address, default_limits=["60/minute"])
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def _rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content={"detail": "Rate limit exceeded"})


@app.exception_handler(ValidationError)
async def _validation_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def _configuration_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error("Configuration error: %s", exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


if RANK_CORS_ALLOW_CREDENTIALS and "*" in RANK_CORS_ALLOW_ORIGINS:
    raise RuntimeError("Invalid CORS config: wildcard origin cannot be combined with credentials=true")

app.add_middleware(
    CORSMiddleware,
    allow_origins=RANK_CORS_ALLOW_ORIGINS,
    allow_credentials=RANK_CORS_ALLOW_CREDENTIALS,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)


# -- Auth middleware ----------------------------------------------------------


@app.middleware("http")
async def auth_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Enforce authentication on all non-public paths."""
    if request.method == "OPTIONS" or is_public_path(request.url.path):
        return await call_next(request)

    try:
        identity = await get_identity(request)
        request.state.identity = identity
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    except Exception as e:
        logger.warning("Auth middleware error: %s", e)
        return JSONResponse(status_code=401, content={"detail": "Authentication failed"})

    return await call_next(request)


# -- Request ID middleware ----------------------------------------------------


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Attach a unique request ID for trace correlation."""
    request_id = request.headers.get("x-request-id") or generate_request_id()
    request.state.request_id = request_id
    with log_context(request_id=request_id):
        response = await call_next(request)
    response.headers["x-request-id"] = request_id
    return response


# -- Dependencies -------------------------------------------------------------


def _get_identity(request: Request) -> Identity:
    """Dependency: extract identity from request state (set by middleware)."""
    identity = getattr(request.state, "identity", None)
    if identity is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return cast(Identity, identity)


def _get_sink(request: Request) -> OutcomeSink:
    sink = getattr(request.app.state, "sink", None)
    if sink is None:
        raise HTTPException(status_code=503, detail="Outcome sink not initialised")
    return cast(OutcomeSink, sink)


def _get_runner(request: Request) -> IncrementalRunner:
    client = getattr(request.app.state, "client", None)
    if client is None:
        raise ConfigurationError("DataForSEO credentials are not configured")
    cfg = cast(RankConfig, request.app.state.cfg)
    cfg.validate()
    return IncrementalRunner(client=client, sink=_get_sink(request), cfg=cfg)


# -- Health -------------------------------------------------------------------


@app.get("/liveness", response_model=HealthResponse)
async def liveness() -> HealthResponse:
    return HealthResponse(status="ok")


@app.get("/readiness", response_model=HealthResponse)
async def readiness(request: Request) -> HealthResponse:
    sink = _get_sink(request)
    if not await sink.check():
        raise HTTPException(status_code=503, detail="Outcome sink unavailable")
    client = getattr(request.app.state, "client", None)
    if client is None:
        return HealthResponse(status="degraded", error="DataForSEO credentials missing")
    if not await client.check_connection():
        return HealthResponse(status="degraded", error="DataForSEO unreachable")
    return HealthResponse(status="ok")


# -- Keywords -----------------------------------------------------------------


@app.post("/v1/keywords/expand", response_model=ExpandResponse)
async def expand(
    body: ExpandRequest,
    identity: Annotated[Identity, Depends(_get_identity)],
) -> ExpandResponse:
    niche: list[list[str]] | list[tuple[str, str]] = body.niche
    if body.service:
        niche = filter_niche_by_service(niche, body.service)

    expanded = expand_keywords(
        body.templates,
        niche,
        body.locations,
        body.niche_placeholder,
        body.location_placeholder,
        extra_placeholders=body.extra_placeholders,
    )
    return ExpandResponse(
        keywords=[
            ExpandedKeywordOut(
                service=ek.service,
                location=ek.location,
                core_keyword=ek.core_keyword,
                keyword=ek.keyword,
            )
            for ek in expanded
        ],
        total=len(expanded),
    )


# -- Rankings -----------------------------------------------------------------


@app.post("/v1/rankings/submit", response_model=PhaseResponse)
@limiter.limit(RANK_TRIGGER_RATE_LIMIT)
async def submit_phase(
    request: Request,
    identity: Annotated[Identity, Depends(_get_identity)],
) -> PhaseResponse:
    """Submit the next batch of jobs without an outcome or task."""
    runner = _get_runner(request)
    if not RANK_JOBS_PATH:
        raise ConfigurationError("RANK_JOBS_PATH is not set")
    if _phase_lock.locked():
        raise HTTPException(status_code=409, detail="Another phase is running")

    async with _phase_lock:
        with log_context(phase="submit"):
            jobs = await asyncio.to_thread(load_jobs, RANK_JOBS_PATH)
            logger.info("Submit phase triggered by %s", identity.principal)
            stats = await runner.submit_phase(jobs)
    return PhaseResponse.from_stats(stats)


@app.post("/v1/rankings/fetch", response_model=PhaseResponse)
@limiter.limit(RANK_TRIGGER_RATE_LIMIT)
async def fetch_phase(
    request: Request,
    identity: Annotated[Identity, Depends(_get_identity)],
) -> PhaseResponse:
    """Poll every open task once."""
    runner = _get_runner(request)
    if _phase_lock.locked():
        raise HTTPException(status_code=409, detail="Another phase is running")

    async with _phase_lock:
        with log_context(phase="fetch"):
            logger.info("Fetch phase triggered by %s", identity.principal)
            stats = await runner.fetch_phase()
    return PhaseResponse.from_stats(stats)


@app.get("/v1/rankings/summary", response_model=SummaryResponse)
async def summary(
    request: Request,
    identity: Annotated[Identity, Depends(_get_identity)],
) -> SummaryResponse:
    sink = _get_sink(request)
    counts = await sink.count_by_status()
    open_tasks = await sink.open_tasks()
    return SummaryResponse(counts=counts, total=sum(counts.values()), open_tasks=len(open_tasks))
