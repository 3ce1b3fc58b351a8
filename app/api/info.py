import functools

from fastapi import APIRouter, Depends, Request

from app.core.logging import log_info
from app.core.security import SecurityValidator
from app.core.state import state
from app.i18n import i18n
from app.infra.rate_limit import rate_limiter
from app.models.request import InfoRequest
from app.models.response import VideoInfo
from app.services.info import resolve_cached
from app.utils.locale import get_locale, safe_url_for_log

router = APIRouter()


@router.post("/info", response_model=VideoInfo, dependencies=[Depends(rate_limiter)])
async def get_video_info(request: Request, video_request: InfoRequest):
    """List the downloadable formats of a video (cached for a few minutes)"""
    locale = get_locale(request.headers.get("accept-language"))
    _ = functools.partial(i18n.get, locale=locale)

    url = str(video_request.url)
    await SecurityValidator.ensure_allowed(url)

    log_info(request, _("log.fetching_info", url=safe_url_for_log(url)))
    video_info = await resolve_cached(state.require("resolver"), url, state.redis)
    log_info(request, _("log.info_retrieved", title=video_info.title))
    return video_info
