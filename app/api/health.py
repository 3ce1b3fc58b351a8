from fastapi import APIRouter

from app.config.settings import config
from app.core.state import state
from app.i18n import i18n

router = APIRouter()


async def _redis_status() -> str:
    if not state.redis:
        return i18n.get("response.redis_disabled")
    try:
        await state.redis.ping()
    except Exception:
        return i18n.get("response.redis_disconnected")
    return i18n.get("response.redis_connected")


@router.get("/")
async def root():
    """Root endpoint"""
    return {
        "status": i18n.get("response.status_running"),
        "service": config.api.title,
        "version": config.api.version,
        "redis_enabled": state.redis is not None
    }


@router.get("/health")
async def health_check():
    """Lightweight health check"""
    return {
        "status": i18n.get("health.status"),
        "redis": await _redis_status()
    }


@router.get("/health/full")
async def health_check_full():
    """Detailed health check"""
    active_downloads = 0
    if state.gate is not None:
        try:
            active_downloads = await state.gate.active_count()
        except Exception:
            active_downloads = -1

    jobs = {}
    in_flight = 0
    if state.orchestrator is not None:
        jobs = dict(state.orchestrator.stats)
        in_flight = len(state.orchestrator.jobs)

    return {
        "status": i18n.get("health.status"),
        "redis_status": await _redis_status(),
        "js_runtime": config.ytdlp.js_runtime,
        "max_concurrent": config.download.max_concurrent,
        "active_downloads": active_downloads,
        "jobs_in_flight": in_flight,
        "jobs": jobs
    }
