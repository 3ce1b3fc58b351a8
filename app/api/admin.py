import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from app.config.settings import config
from app.core.auth import create_api_key, verify_issuance_permission
from app.core.logging import log_info
from app.core.state import state
from app.i18n import i18n
from app.utils.locale import get_locale

router = APIRouter()

api_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def verify_admin_key(api_key: str = Security(api_key_header)):
    """Verify admin key; admin endpoints are closed when ADMIN_API_KEY is unset"""
    expected_key = os.getenv("ADMIN_API_KEY")
    if not expected_key:
        raise HTTPException(status_code=403, detail="Admin API disabled")

    if api_key != expected_key:
        raise HTTPException(status_code=403, detail="Invalid admin key")
    return api_key


class ApiKeyCreateRequest(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=128)
    tier: Optional[str] = Field(None, description="Tier name from download.tier_limits")
    description: Optional[str] = Field(None, max_length=200)


@router.get("/config", dependencies=[Depends(verify_admin_key)])
async def get_config():
    """Get current configuration (admin only)"""
    return config.model_dump(include={"rate_limit", "download", "tokens", "security", "ytdlp", "i18n"})


@router.post("/keys", dependencies=[Depends(verify_admin_key), Depends(verify_issuance_permission)])
async def create_key(request: Request, key_request: ApiKeyCreateRequest):
    if key_request.tier is not None and key_request.tier not in config.download.tier_limits:
        raise HTTPException(status_code=400, detail=f"Unknown tier: {key_request.tier}")

    key_data = await create_api_key(key_request.owner_id, key_request.tier, key_request.description)
    log_info(request, f"API key created for owner {key_request.owner_id}")
    return key_data


@router.post("/owners/{owner_id}/revoke-tokens", dependencies=[Depends(verify_admin_key)])
async def revoke_owner_tokens(request: Request, owner_id: str):
    """Revoke every token of an owner; running downloads stop at their next check"""
    locale = get_locale(request.headers.get("accept-language"))
    count = await state.require("tokens").revoke_all(owner_id)
    log_info(request, f"Revoked {count} tokens of owner {owner_id}")
    return {
        "status": i18n.get("response.tokens_revoked", locale=locale, count=count),
        "revoked": count
    }
