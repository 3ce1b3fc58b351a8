import functools
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request

from app.core.auth import get_principal
from app.core.logging import log_info
from app.core.security import SecurityValidator
from app.core.state import state
from app.i18n import i18n
from app.infra.rate_limit import rate_limiter
from app.models.internal import Principal, StreamToken
from app.models.request import TokenIssueRequest, TokenRequest
from app.models.response import (
    StatusResponse,
    TokenListResponse,
    TokenResponse,
    TokenSummary,
)
from app.utils.locale import get_locale, safe_url_for_log

router = APIRouter()

DEFAULT_TITLE = "video"


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _token_response(request: Request, token: StreamToken) -> TokenResponse:
    base_url = str(request.base_url).rstrip("/")
    return TokenResponse(
        token=token.id,
        expires_at=_timestamp(token.expires_at),
        stream_url=f"{base_url}/download/{token.id}",
    )


@router.post("/token", response_model=TokenResponse, dependencies=[Depends(rate_limiter)])
async def issue_token(
    request: Request,
    token_request: TokenIssueRequest,
    principal: Principal = Depends(get_principal),
):
    """Bind a source URL and format to a short-lived download token"""
    locale = get_locale(request.headers.get("accept-language"))
    _ = functools.partial(i18n.get, locale=locale)

    url = str(token_request.url)
    await SecurityValidator.ensure_allowed(url)

    token = await state.require("tokens").issue(
        owner_id=principal.owner_id,
        source_url=url,
        format_id=token_request.format_id,
        display_title=token_request.title or DEFAULT_TITLE,
        owner_tier=principal.tier,
    )
    log_info(request, _("log.token_issued", url=safe_url_for_log(url)))
    return _token_response(request, token)


@router.post("/token/refresh", response_model=TokenResponse)
async def refresh_token(
    request: Request,
    token_request: TokenRequest,
    principal: Principal = Depends(get_principal),
):
    """Extend a token's lifetime; works on expired tokens too"""
    token = await state.require("tokens").refresh(token_request.token, owner_id=principal.owner_id)
    return _token_response(request, token)


@router.post("/token/revoke", response_model=StatusResponse)
async def revoke_token(
    request: Request,
    token_request: TokenRequest,
    principal: Principal = Depends(get_principal),
):
    locale = get_locale(request.headers.get("accept-language"))
    await state.require("tokens").revoke(token_request.token, owner_id=principal.owner_id)
    return StatusResponse(status=i18n.get("response.token_revoked", locale=locale))


@router.get("/tokens", response_model=TokenListResponse)
async def list_tokens(principal: Principal = Depends(get_principal)):
    """Active tokens of the caller, newest first"""
    tokens = await state.require("tokens").list_active(principal.owner_id)
    summaries = [
        TokenSummary(
            token=t.id,
            format_id=t.format_id,
            title=t.display_title,
            issued_at=_timestamp(t.issued_at),
            expires_at=_timestamp(t.expires_at),
            refresh_count=t.refresh_count,
        )
        for t in tokens
    ]
    return TokenListResponse(tokens=summaries, count=len(summaries))
