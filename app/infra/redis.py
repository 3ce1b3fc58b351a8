import logging
from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from rich.console import Console

from app.config.settings import RedisConfig, config
from app.core.state import state

console = Console()
logger = logging.getLogger(__name__)


def create_client(redis_config: RedisConfig) -> aioredis.Redis:
    return aioredis.from_url(
        redis_config.url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=redis_config.socket_timeout,
    )


async def init_redis(redis_config: Optional[RedisConfig] = None) -> Optional[aioredis.Redis]:
    """
    Connect and ping. Returns None when Redis is unreachable; callers then
    fall back to in-process stores.
    """
    client = create_client(redis_config or config.redis)
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        console.print(f"[yellow]⚠ Redis connection failed: {e}[/yellow]")
        logger.warning(f"Redis unavailable: {e}")
        await client.aclose()
        return None

    console.print("[green]✓ Redis connected[/green]")
    return client


def get_redis() -> Optional[aioredis.Redis]:
    return state.redis


async def close_redis() -> None:
    client, state.redis = state.redis, None
    if client is None:
        return
    await client.aclose()
    console.print("[dim]✓ Redis connection closed[/dim]")
