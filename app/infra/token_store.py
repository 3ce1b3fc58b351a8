import asyncio
import time
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from app.models.internal import StreamToken

# mutate(current) -> None (leave untouched) or (new record, store ttl seconds).
# It may raise to abort the update.
Mutation = Callable[[StreamToken], Optional[Tuple[StreamToken, int]]]


class TokenStore:
    """Key-value registry of stream tokens with per-record TTL"""

    async def put(self, token: StreamToken, ttl: int) -> None:
        raise NotImplementedError

    async def get(self, token_id: str) -> Optional[StreamToken]:
        raise NotImplementedError

    async def update(self, token_id: str, mutate: Mutation) -> Optional[StreamToken]:
        """
        Atomically read-modify-write one record.
        Returns None when the record does not exist, otherwise the stored record
        after the mutation. When the mutation changes ``id`` the record moves
        to the new key and the old key disappears in the same step.
        """
        raise NotImplementedError

    async def delete(self, token_id: str) -> None:
        raise NotImplementedError

    async def list_owner(self, owner_id: str) -> List[StreamToken]:
        raise NotImplementedError


class MemoryTokenStore(TokenStore):
    """Single-process store used when Redis is unavailable (and in tests)"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._records: Dict[str, Tuple[StreamToken, float]] = {}
        self._lock = asyncio.Lock()

    def _live(self, token_id: str) -> Optional[StreamToken]:
        entry = self._records.get(token_id)
        if entry is None:
            return None
        token, deadline = entry
        if self._clock() >= deadline:
            del self._records[token_id]
            return None
        return token

    async def put(self, token: StreamToken, ttl: int) -> None:
        async with self._lock:
            self._records[token.id] = (token, self._clock() + ttl)

    async def get(self, token_id: str) -> Optional[StreamToken]:
        return self._live(token_id)

    async def update(self, token_id: str, mutate: Mutation) -> Optional[StreamToken]:
        async with self._lock:
            current = self._live(token_id)
            if current is None:
                return None
            result = mutate(current)
            if result is None:
                return current
            updated, ttl = result
            if updated.id != token_id:
                del self._records[token_id]
            self._records[updated.id] = (updated, self._clock() + ttl)
            return updated

    async def delete(self, token_id: str) -> None:
        async with self._lock:
            self._records.pop(token_id, None)

    async def list_owner(self, owner_id: str) -> List[StreamToken]:
        tokens = []
        for token_id in list(self._records):
            token = self._live(token_id)
            if token is not None and token.owner_id == owner_id:
                tokens.append(token)
        return tokens


class RedisTokenStore(TokenStore):
    """
    Redis-backed store.
    Records live at ``stream_token:<id>`` as JSON with a Redis TTL; an owner
    index set ``stream_tokens:owner:<owner>`` is pruned lazily on listing.
    Updates use WATCH/MULTI so concurrent refresh/revoke never lose a write.
    """

    KEY_PREFIX = "stream_token:"
    OWNER_PREFIX = "stream_tokens:owner:"

    def __init__(self, redis: aioredis.Redis, index_ttl: int = 86400):
        self.redis = redis
        self.index_ttl = index_ttl

    def _key(self, token_id: str) -> str:
        return f"{self.KEY_PREFIX}{token_id}"

    def _owner_key(self, owner_id: str) -> str:
        return f"{self.OWNER_PREFIX}{owner_id}"

    async def put(self, token: StreamToken, ttl: int) -> None:
        owner_key = self._owner_key(token.owner_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(self._key(token.id), token.model_dump_json(), ex=ttl)
            pipe.sadd(owner_key, token.id)
            pipe.expire(owner_key, max(ttl, self.index_ttl))
            await pipe.execute()

    async def get(self, token_id: str) -> Optional[StreamToken]:
        raw = await self.redis.get(self._key(token_id))
        if raw is None:
            return None
        return StreamToken.model_validate_json(raw)

    async def update(self, token_id: str, mutate: Mutation) -> Optional[StreamToken]:
        key = self._key(token_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None:
                        await pipe.reset()
                        return None

                    current = StreamToken.model_validate_json(raw)
                    result = mutate(current)
                    if result is None:
                        await pipe.reset()
                        return current

                    updated, ttl = result
                    owner_key = self._owner_key(updated.owner_id)
                    pipe.multi()
                    if updated.id != token_id:
                        pipe.delete(key)
                        pipe.srem(owner_key, token_id)
                        pipe.sadd(owner_key, updated.id)
                        pipe.expire(owner_key, max(ttl, self.index_ttl))
                    pipe.set(self._key(updated.id), updated.model_dump_json(), ex=ttl)
                    await pipe.execute()
                    return updated
                except WatchError:
                    continue

    async def delete(self, token_id: str) -> None:
        token = await self.get(token_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._key(token_id))
            if token is not None:
                pipe.srem(self._owner_key(token.owner_id), token_id)
            await pipe.execute()

    async def list_owner(self, owner_id: str) -> List[StreamToken]:
        owner_key = self._owner_key(owner_id)
        token_ids = sorted(await self.redis.smembers(owner_key))
        if not token_ids:
            return []

        raws = await self.redis.mget([self._key(t) for t in token_ids])
        tokens = []
        stale = []
        for token_id, raw in zip(token_ids, raws):
            if raw is None:
                stale.append(token_id)
            else:
                tokens.append(StreamToken.model_validate_json(raw))

        if stale:
            await self.redis.srem(owner_key, *stale)
        return tokens
