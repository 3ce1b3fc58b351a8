import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as aioredis

from app.core.errors import ExecutionFailed, ProcessError, ResolutionFailed
from app.models.response import Format, VideoInfo
from app.services.ytdlp import ProcessRunner, YTDLPCommandBuilder
from app.utils.hash import cache_key
from app.utils.locale import safe_url_for_log

logger = logging.getLogger(__name__)

INFO_CACHE_TTL = 300

# Coarse, client-safe classification of extractor failures
FAILURE_PATTERNS = (
    ("private", ("Private video", "is private")),
    ("unavailable", ("Video unavailable", "has been removed", "not available")),
    ("unsupported", ("Unsupported URL",)),
)


def classify_failure(stderr_tail: str) -> str:
    for reason, needles in FAILURE_PATTERNS:
        if any(needle in stderr_tail for needle in needles):
            return reason
    return "generic"


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _none_codec(value: Optional[str]) -> Optional[str]:
    return None if value in (None, "none") else value


def normalize_format(raw: Dict[str, Any]) -> Optional[Format]:
    format_id = raw.get("format_id")
    ext = raw.get("ext")
    if not format_id or not ext:
        return None

    vcodec = raw.get("vcodec")
    acodec = raw.get("acodec")
    # Storyboards and other image-only entries carry neither track
    if vcodec == "none" and acodec == "none":
        return None

    return Format(
        format_id=str(format_id),
        extension=ext,
        resolution=raw.get("resolution"),
        fps=raw.get("fps"),
        audio_codec=_none_codec(acodec),
        video_codec=_none_codec(vcodec),
        size_bytes=_int_or_none(raw.get("filesize") or raw.get("filesize_approx")),
        note=raw.get("format_note"),
    )


def parse_video_info(info: Dict[str, Any]) -> VideoInfo:
    """Turn a yt-dlp ``--dump-json`` document into a VideoInfo"""
    formats: List[Format] = []
    for raw in info.get("formats") or []:
        if not isinstance(raw, dict):
            continue
        fmt = normalize_format(raw)
        if fmt is not None:
            formats.append(fmt)

    # Single-format extractors put the format fields at the top level
    if not formats and info.get("format_id"):
        fmt = normalize_format(info)
        if fmt is not None:
            formats.append(fmt)

    return VideoInfo(
        title=info.get("title") or "Unknown",
        thumbnail_url=info.get("thumbnail"),
        formats=formats,
        duration=info.get("duration"),
        uploader=info.get("uploader") or info.get("channel"),
        webpage_url=info.get("webpage_url"),
    )


class InfoResolver:
    """Resolve a source URL into its downloadable formats. Performs no caching."""

    def __init__(self, runner: ProcessRunner):
        self.runner = runner

    async def resolve_formats(self, url: str) -> VideoInfo:
        args = YTDLPCommandBuilder.build_info_command(url)
        safe_url = safe_url_for_log(url)

        try:
            info = await self.runner.run_capturing_json(args)
        except ExecutionFailed as e:
            reason = classify_failure(e.stderr_tail)
            logger.warning(
                f"Format resolution failed for {safe_url}: exit {e.exit_code} ({reason}): {e.stderr_tail}"
            )
            raise ResolutionFailed(reason=reason) from e
        except ProcessError as e:
            logger.warning(f"Format resolution failed for {safe_url}: {e.kind}")
            raise ResolutionFailed(reason=e.kind) from e

        if not isinstance(info, dict):
            logger.warning(f"Unexpected metadata document for {safe_url}")
            raise ResolutionFailed(reason="MalformedOutput")

        return parse_video_info(info)


async def resolve_cached(
    resolver: InfoResolver,
    url: str,
    redis: Optional[aioredis.Redis],
) -> VideoInfo:
    """
    Resolve through a short Redis cache.
    Reduces load from repeated requests for same URL.
    """
    key = cache_key("info", url)

    if redis:
        try:
            cached = await redis.get(key)
            if cached:
                return VideoInfo.model_validate_json(cached)
        except Exception as e:
            logger.debug(f"Info cache read failed: {e}")

    video_info = await resolver.resolve_formats(url)

    if redis:
        try:
            await redis.setex(key, INFO_CACHE_TTL, video_info.model_dump_json())
        except Exception as e:
            logger.debug(f"Info cache write failed: {e}")

    return video_info
