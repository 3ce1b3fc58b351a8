import secrets
import time
from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.security.api_key import APIKeyHeader
from pydantic import BaseModel, Field, ValidationError

from app.config.settings import config
from app.core.errors import BackendUnavailable
from app.infra.redis import get_redis
from app.models.internal import Principal

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
API_KEY_PREFIX = "apikey:"


class ApiKeyRecord(BaseModel):
    """Stored under ``apikey:<key>``; the key identifies one owner"""
    key: str
    owner_id: str
    tier: Optional[str] = None
    description: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=403, detail=detail)


async def get_principal(
    request: Request,
    api_key: Optional[str] = Security(API_KEY_HEADER),
) -> Principal:
    """
    Resolve the calling owner.
    With API keys disabled the client address stands in for the owner.
    """
    if not config.auth.api_key_enabled:
        host = request.client.host if request.client else "unknown"
        return Principal(owner_id=f"ip:{host}", tier=config.download.default_tier)

    if not api_key:
        raise _forbidden("Could not validate credentials")

    redis = get_redis()
    if redis is None:
        # Keys live in Redis only; refuse rather than let everyone in
        raise BackendUnavailable("api key store unavailable")

    raw = await redis.get(f"{API_KEY_PREFIX}{api_key}")
    if not raw:
        raise _forbidden("Invalid API Key")

    try:
        record = ApiKeyRecord.model_validate_json(raw)
    except ValidationError:
        raise _forbidden("Invalid API Key")
    return Principal(owner_id=record.owner_id, tier=record.tier)


async def create_api_key(owner_id: str, tier: Optional[str] = None, description: Optional[str] = None) -> dict:
    redis = get_redis()
    if redis is None:
        raise BackendUnavailable("api key store unavailable")

    record = ApiKeyRecord(
        key=secrets.token_urlsafe(32),
        owner_id=owner_id,
        tier=tier or config.download.default_tier,
        description=description,
    )
    await redis.set(f"{API_KEY_PREFIX}{record.key}", record.model_dump_json())
    return record.model_dump()


async def verify_issuance_permission(request: Request) -> bool:
    """Only configured origins may create API keys ("*" allows any)"""
    allowed = config.auth.issue_allowed_origins
    if "*" in allowed:
        return True

    if request.headers.get("origin") not in allowed:
        raise _forbidden("Origin not allowed to issue API keys")
    return True
