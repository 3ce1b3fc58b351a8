import functools
import logging

from fastapi import Depends, HTTPException, Request

from app.config.settings import config
from app.core.auth import get_principal
from app.i18n import i18n
from app.infra.redis import get_redis
from app.models.internal import Principal
from app.utils.locale import get_locale

logger = logging.getLogger(__name__)


class RedisRateLimiter:
    """Fixed-window limiter per owner and endpoint, with a Lua script"""

    lua_script = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])

    local current = redis.call('INCR', key)
    if current == 1 then
        redis.call('EXPIRE', key, window)
    end

    if current > limit then
        local ttl = redis.call('TTL', key)
        return {0, ttl}
    end

    return {1, 0}
    """

    async def __call__(self, request: Request, principal: Principal = Depends(get_principal)):
        if not config.rate_limit.enabled:
            return True

        redis = get_redis()
        if not redis:
            return True

        key = f"rate:{principal.owner_id}:{request.url.path}"

        try:
            allowed, ttl = await redis.eval(
                self.lua_script,
                1,
                key,
                config.rate_limit.max_requests,
                config.rate_limit.window_seconds
            )
        except Exception as e:
            # Fail open: the limiter protects capacity, it is not an auth check
            logger.warning(f"Rate limiter unavailable: {e}")
            return True

        if not allowed:
            locale = get_locale(request.headers.get("accept-language"))
            _ = functools.partial(i18n.get, locale=locale)
            raise HTTPException(
                status_code=429,
                detail=_("error.rate_limit", seconds=ttl),
                headers={"Retry-After": str(ttl)}
            )

        return True


rate_limiter = RedisRateLimiter()
