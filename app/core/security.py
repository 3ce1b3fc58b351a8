import asyncio
import ipaddress
import logging
import socket
from enum import Enum, auto
from typing import List
from urllib.parse import urlparse

from app.config.settings import config
from app.core.errors import InvalidUrl, UrlBlocked
from app.infra.redis import get_redis
from app.utils.hash import cache_key

logger = logging.getLogger(__name__)

SSRF_CACHE_TTL = 300


class UrlValidationResult(Enum):
    """URL validation result without throwing exceptions"""
    OK = auto()
    BLOCKED = auto()
    INVALID = auto()


def _is_forbidden(ip: ipaddress._BaseAddress) -> bool:
    if ip.is_loopback:
        return not config.security.allow_localhost
    if ip.is_link_local or ip.is_multicast or ip.is_unspecified or ip.is_reserved:
        return True
    if ip.is_private:
        return not config.security.allow_private_ips
    return False


async def _resolve(hostname: str) -> List[str]:
    addr_info = await asyncio.to_thread(socket.getaddrinfo, hostname, None)
    return [info[4][0] for info in addr_info]


class SecurityValidator:
    """
    Keep source URLs away from the host's own network.
    The extractor fetches whatever it is given, so every URL that can end up
    on its command line is checked here first.
    """

    @staticmethod
    async def validate_url(url: str) -> UrlValidationResult:
        """Validate URL against SSRF. Uses async DNS resolution and Redis caching."""
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            return UrlValidationResult.INVALID

        if not config.security.enable_ssrf_protection:
            return UrlValidationResult.OK

        hostname = parsed.hostname
        redis = get_redis()
        key = cache_key("ssrf", hostname)

        if redis:
            try:
                cached = await redis.get(key)
                if cached == "ok":
                    return UrlValidationResult.OK
                if cached == "blocked":
                    return UrlValidationResult.BLOCKED
            except Exception as e:
                logger.debug(f"SSRF cache read failed: {e}")

        try:
            ips = [ipaddress.ip_address(ip.split("%", 1)[0]) for ip in await _resolve(hostname)]
        except socket.gaierror:
            # Unresolvable here; the extractor will fail on it just the same
            return UrlValidationResult.OK
        except ValueError:
            return UrlValidationResult.INVALID

        is_blocked = any(_is_forbidden(ip) for ip in ips)

        if redis:
            try:
                await redis.setex(key, SSRF_CACHE_TTL, "blocked" if is_blocked else "ok")
            except Exception as e:
                logger.debug(f"SSRF cache write failed: {e}")

        return UrlValidationResult.BLOCKED if is_blocked else UrlValidationResult.OK

    @staticmethod
    async def ensure_allowed(url: str) -> None:
        result = await SecurityValidator.validate_url(url)
        if result == UrlValidationResult.BLOCKED:
            raise UrlBlocked()
        if result == UrlValidationResult.INVALID:
            raise InvalidUrl(reason="Invalid format")
