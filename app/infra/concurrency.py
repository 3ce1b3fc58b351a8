import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

import redis.asyncio as aioredis
from rich.console import Console

console = Console()
logger = logging.getLogger(__name__)

GLOBAL_COUNTER_KEY = "active_downloads_count"
OWNER_COUNTER_PREFIX = "active_downloads_count:"
SLOT_PREFIX = "active_download:"


class LimitExceeded(Exception):
    """Raised by acquire() when a ceiling is reached"""

    def __init__(self, scope: str, limit: int):
        self.scope = scope
        self.limit = limit
        super().__init__(f"{scope} download limit of {limit} reached")


@dataclass
class Slot:
    owner_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    acquired_at: float = field(default_factory=time.time)
    released: bool = False


class ConcurrencyGate:
    """
    Admission control for downloads: one global ceiling plus a per-owner
    ceiling that depends on the owner's tier. Never queues; acquire either
    returns a slot or raises LimitExceeded. release() is idempotent.
    """

    def __init__(self, global_limit: int, tier_limits: Dict[str, int], default_tier: str):
        self.global_limit = global_limit
        self.tier_limits = dict(tier_limits)
        self.default_tier = default_tier

    def limit_for(self, tier: Optional[str]) -> int:
        tier = tier or self.default_tier
        if tier in self.tier_limits:
            return self.tier_limits[tier]
        return self.tier_limits.get(self.default_tier, 1)

    async def acquire(self, owner_id: str, tier: Optional[str] = None) -> Slot:
        raise NotImplementedError

    async def release(self, slot: Slot) -> None:
        raise NotImplementedError

    async def active_count(self, owner_id: Optional[str] = None) -> int:
        raise NotImplementedError

    async def refresh(self, slot: Slot) -> None:
        """Keep a long-running slot alive; only gates with expiring slots need it"""
        return None


class MemoryConcurrencyGate(ConcurrencyGate):
    """In-process gate. Check and increment run without an await in between."""

    def __init__(self, global_limit: int, tier_limits: Dict[str, int], default_tier: str):
        super().__init__(global_limit, tier_limits, default_tier)
        self._total = 0
        self._per_owner: Dict[str, int] = {}

    async def acquire(self, owner_id: str, tier: Optional[str] = None) -> Slot:
        owner_limit = self.limit_for(tier)
        if self._total >= self.global_limit:
            raise LimitExceeded("global", self.global_limit)
        if self._per_owner.get(owner_id, 0) >= owner_limit:
            raise LimitExceeded("owner", owner_limit)

        self._total += 1
        self._per_owner[owner_id] = self._per_owner.get(owner_id, 0) + 1
        return Slot(owner_id=owner_id)

    async def release(self, slot: Slot) -> None:
        if slot.released:
            return
        slot.released = True
        self._total = max(0, self._total - 1)
        remaining = self._per_owner.get(slot.owner_id, 0) - 1
        if remaining > 0:
            self._per_owner[slot.owner_id] = remaining
        else:
            self._per_owner.pop(slot.owner_id, None)

    async def active_count(self, owner_id: Optional[str] = None) -> int:
        if owner_id is None:
            return self._total
        return self._per_owner.get(owner_id, 0)


class RedisConcurrencyGate(ConcurrencyGate):
    """Gate shared by all workers, with atomic Lua check-and-increment"""

    ACQUIRE_SCRIPT = """
    local global_key = KEYS[1]
    local owner_key = KEYS[2]
    local slot_key = KEYS[3]
    local global_limit = tonumber(ARGV[1])
    local owner_limit = tonumber(ARGV[2])
    local slot_ttl = tonumber(ARGV[3])
    local counter_ttl = tonumber(ARGV[4])

    if tonumber(redis.call('GET', global_key) or "0") >= global_limit then
        return -1
    end
    if tonumber(redis.call('GET', owner_key) or "0") >= owner_limit then
        return -2
    end

    redis.call('INCR', global_key)
    redis.call('EXPIRE', global_key, counter_ttl)
    redis.call('INCR', owner_key)
    redis.call('EXPIRE', owner_key, counter_ttl)
    redis.call('SETEX', slot_key, slot_ttl, ARGV[5])

    return 1
    """

    # The caller still holds the slot, so the counters drop even if the slot key expired
    RELEASE_SCRIPT = """
    redis.call('DEL', KEYS[1])
    for i = 2, 3 do
        if tonumber(redis.call('GET', KEYS[i]) or "0") > 0 then
            redis.call('DECR', KEYS[i])
        end
    end
    return 1
    """

    REFRESH_SCRIPT = """
    redis.call('SETEX', KEYS[1], ARGV[1], ARGV[3])
    redis.call('EXPIRE', KEYS[2], ARGV[2])
    redis.call('EXPIRE', KEYS[3], ARGV[2])
    return 1
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        global_limit: int,
        tier_limits: Dict[str, int],
        default_tier: str,
        slot_ttl: int,
    ):
        super().__init__(global_limit, tier_limits, default_tier)
        self.redis = redis
        self.slot_ttl = slot_ttl

    async def acquire(self, owner_id: str, tier: Optional[str] = None) -> Slot:
        slot = Slot(owner_id=owner_id)
        owner_limit = self.limit_for(tier)

        result = await self.redis.eval(
            self.ACQUIRE_SCRIPT,
            3,
            GLOBAL_COUNTER_KEY,
            f"{OWNER_COUNTER_PREFIX}{owner_id}",
            f"{SLOT_PREFIX}{slot.id}",
            self.global_limit,
            owner_limit,
            self.slot_ttl,
            self.slot_ttl * 2,
            owner_id,
        )

        if int(result) == -1:
            raise LimitExceeded("global", self.global_limit)
        if int(result) == -2:
            raise LimitExceeded("owner", owner_limit)
        return slot

    async def release(self, slot: Slot) -> None:
        if slot.released:
            return
        slot.released = True
        await self.redis.eval(
            self.RELEASE_SCRIPT,
            3,
            f"{SLOT_PREFIX}{slot.id}",
            GLOBAL_COUNTER_KEY,
            f"{OWNER_COUNTER_PREFIX}{slot.owner_id}",
        )

    async def refresh(self, slot: Slot) -> None:
        if slot.released:
            return
        await self.redis.eval(
            self.REFRESH_SCRIPT,
            3,
            f"{SLOT_PREFIX}{slot.id}",
            GLOBAL_COUNTER_KEY,
            f"{OWNER_COUNTER_PREFIX}{slot.owner_id}",
            self.slot_ttl,
            self.slot_ttl * 2,
            slot.owner_id,
        )

    async def active_count(self, owner_id: Optional[str] = None) -> int:
        key = GLOBAL_COUNTER_KEY if owner_id is None else f"{OWNER_COUNTER_PREFIX}{owner_id}"
        return int(await self.redis.get(key) or 0)

    async def recover(self) -> int:
        """Rebuild counters from live slot keys after a restart"""
        owners: Dict[str, int] = {}
        total = 0
        async for key in self.redis.scan_iter(match=f"{SLOT_PREFIX}*", count=100):
            owner_id = await self.redis.get(key)
            if owner_id is None:
                continue
            owners[owner_id] = owners.get(owner_id, 0) + 1
            total += 1

        stale_counters = [
            key async for key in self.redis.scan_iter(match=f"{OWNER_COUNTER_PREFIX}*", count=100)
        ]

        async with self.redis.pipeline(transaction=True) as pipe:
            if stale_counters:
                pipe.delete(*stale_counters)
            pipe.set(GLOBAL_COUNTER_KEY, total, ex=self.slot_ttl * 2)
            for owner_id, count in owners.items():
                pipe.set(f"{OWNER_COUNTER_PREFIX}{owner_id}", count, ex=self.slot_ttl * 2)
            await pipe.execute()

        if total > 0:
            console.print(f"[yellow]✓ Recovered {total} active download slots[/yellow]")
        return total
