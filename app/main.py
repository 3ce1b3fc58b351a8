import logging
import os
import uuid
from typing import Optional

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from app.api import admin, download, health, info, stream
from app.config.settings import CONFIG_PATH, config
from app.core.errors import BackendUnavailable, StreamError
from app.core.logging import log_error, log_warning, setup_logging
from app.core.state import state
from app.i18n import i18n
from app.infra.concurrency import MemoryConcurrencyGate, RedisConcurrencyGate
from app.infra.redis import close_redis, init_redis
from app.infra.token_store import MemoryTokenStore, RedisTokenStore
from app.models.response import ErrorResponse
from app.services.download import DownloadOrchestrator
from app.services.info import InfoResolver
from app.services.stream_token import StreamTokenService
from app.services.ytdlp import ProcessRunner
from app.utils.locale import get_locale

logger = logging.getLogger(__name__)

app = FastAPI(
    title=config.api.title,
    description=config.api.description,
    version=config.api.version,
    docs_url="/docs" if config.api.debug else None,
    redoc_url=None
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition", "X-Request-ID"],
)

# Routes
app.include_router(health.router, tags=["Health"])
app.include_router(info.router, tags=["Info"])
app.include_router(stream.router, prefix="/stream", tags=["Stream"])
app.include_router(download.router, tags=["Download"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:12]
    request.state.request_id = request_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def error_response(request: Request, error: StreamError) -> JSONResponse:
    locale = get_locale(request.headers.get("accept-language"))
    return JSONResponse(
        status_code=error.status_code,
        content=ErrorResponse(
            error=error.kind,
            detail=i18n.get(error.message_key, locale=locale, **error.params)
        ).model_dump()
    )


@app.exception_handler(StreamError)
async def stream_error_handler(request: Request, exc: StreamError):
    if exc.status_code >= 500:
        log_warning(request, f"{exc.kind}: {exc}")
    return error_response(request, exc)


@app.exception_handler(RedisError)
async def redis_error_handler(request: Request, exc: RedisError):
    log_error(request, f"Redis error while handling {request.url.path}: {exc}")
    return error_response(request, BackendUnavailable())


async def init_services(redis: Optional[aioredis.Redis]) -> None:
    """Build the service graph; in-memory stores when Redis is unavailable"""
    download_config = config.download

    if redis is not None:
        token_store = RedisTokenStore(redis, index_ttl=config.tokens.ttl_seconds + config.tokens.retention_seconds)
        gate = RedisConcurrencyGate(
            redis,
            global_limit=download_config.max_concurrent,
            tier_limits=download_config.tier_limits,
            default_tier=download_config.default_tier,
            # Running jobs refresh their slot every reverify_after seconds
            slot_ttl=int(max(download_config.timeout_seconds, download_config.reverify_after_seconds * 2)) + 60,
        )
        await gate.recover()
    else:
        logger.warning("Redis unavailable: tokens and download slots are kept in memory (single process only)")
        token_store = MemoryTokenStore()
        gate = MemoryConcurrencyGate(
            global_limit=download_config.max_concurrent,
            tier_limits=download_config.tier_limits,
            default_tier=download_config.default_tier,
        )

    runner = ProcessRunner(
        config.ytdlp.command,
        timeout=download_config.timeout_seconds,
        info_timeout=download_config.info_timeout_seconds,
        kill_grace=download_config.kill_grace_seconds,
    )
    tokens = StreamTokenService(token_store, config.tokens)
    orchestrator = DownloadOrchestrator(
        tokens,
        gate,
        runner,
        temp_dir=download_config.temp_dir,
        chunk_size=download_config.chunk_size,
        poll_interval=download_config.poll_interval_seconds,
        reverify_after=download_config.reverify_after_seconds,
        single_use=config.tokens.single_use,
    )
    orchestrator.prepare_temp_dir(max_age=download_config.timeout_seconds)

    state.token_store = token_store
    state.tokens = tokens
    state.gate = gate
    state.runner = runner
    state.resolver = InfoResolver(runner)
    state.orchestrator = orchestrator


@app.on_event("startup")
async def startup_event():
    # Ensure config directory exists and file is created if missing
    config_dir = os.path.dirname(CONFIG_PATH)
    if config_dir and not os.path.exists(config_dir):
        os.makedirs(config_dir, exist_ok=True)

    if not os.path.exists(CONFIG_PATH):
        config.save_to_file(CONFIG_PATH)

    setup_logging(config.logging)
    state.redis = await init_redis()
    await init_services(state.redis)
    logger.info(f"{config.api.title} {config.api.version} started")


@app.on_event("shutdown")
async def shutdown_event():
    if state.orchestrator is not None:
        await state.orchestrator.shutdown()
    state.clear()
    await close_redis()
