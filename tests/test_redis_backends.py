import asyncio
import time

import fakeredis
import pytest
from fakeredis import aioredis as fake_aioredis

from app.config.settings import TokenConfig
from app.core.errors import TokenNotFound, TokenRevoked
from app.infra.concurrency import (
    GLOBAL_COUNTER_KEY,
    OWNER_COUNTER_PREFIX,
    SLOT_PREFIX,
    LimitExceeded,
    RedisConcurrencyGate,
)
from app.infra.token_store import RedisTokenStore
from app.models.internal import StreamToken, TokenState
from app.services.stream_token import StreamTokenService
from helpers import SOURCE_URL


@pytest.fixture
def server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis(server):
    return fake_aioredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def store(redis):
    return RedisTokenStore(redis, index_ttl=600)


def make_gate(redis, global_limit=3, slot_ttl=60):
    return RedisConcurrencyGate(
        redis,
        global_limit=global_limit,
        tier_limits={"basic": 1, "premium": 2},
        default_tier="basic",
        slot_ttl=slot_ttl,
    )


def make_token(token_id="tok-1", owner="alice", **overrides) -> StreamToken:
    now = time.time()
    fields = {
        "id": token_id,
        "owner_id": owner,
        "source_url": SOURCE_URL,
        "format_id": "137",
        "display_title": "clip",
        "issued_at": now,
        "expires_at": now + 60,
    }
    fields.update(overrides)
    return StreamToken(**fields)


@pytest.mark.asyncio
async def test_store_put_get_delete(store, redis):
    await store.put(make_token(), ttl=60)

    token = await store.get("tok-1")
    assert token.display_title == "clip"
    assert 0 < await redis.ttl("stream_token:tok-1") <= 60
    assert await redis.smembers("stream_tokens:owner:alice") == {"tok-1"}

    await store.delete("tok-1")
    assert await store.get("tok-1") is None
    assert await redis.smembers("stream_tokens:owner:alice") == set()


@pytest.mark.asyncio
async def test_store_update_moves_record_on_new_id(store, redis):
    await store.put(make_token(), ttl=60)

    updated = await store.update("tok-1", lambda current: (current.model_copy(update={"id": "tok-2"}), 120))

    assert updated.id == "tok-2"
    assert await store.get("tok-1") is None
    assert (await store.get("tok-2")).source_url == SOURCE_URL
    assert await redis.smembers("stream_tokens:owner:alice") == {"tok-2"}
    assert await redis.ttl("stream_token:tok-2") > 60


@pytest.mark.asyncio
async def test_store_update_retries_after_concurrent_write(store, server):
    await store.put(make_token(), ttl=60)
    other_client = fakeredis.FakeRedis(server=server, decode_responses=True)
    calls = []

    def mutate(current):
        calls.append(current.refresh_count)
        if len(calls) == 1:
            # Another worker writes between WATCH and EXEC
            other_client.set("stream_token:tok-1", current.model_copy(update={"refresh_count": 5}).model_dump_json())
        return current.model_copy(update={"refresh_count": current.refresh_count + 1}), 60

    updated = await store.update("tok-1", mutate)

    assert calls == [0, 5]
    assert updated.refresh_count == 6
    assert (await store.get("tok-1")).refresh_count == 6


@pytest.mark.asyncio
async def test_store_update_missing_and_untouched(store):
    assert await store.update("missing", lambda current: (current, 60)) is None

    await store.put(make_token(), ttl=60)
    assert (await store.update("tok-1", lambda current: None)).id == "tok-1"


@pytest.mark.asyncio
async def test_store_list_owner_prunes_expired_ids(store, redis):
    await store.put(make_token("short"), ttl=1)
    await store.put(make_token("long"), ttl=60)
    await store.put(make_token("other", owner="bob"), ttl=60)

    await asyncio.sleep(1.5)

    assert [t.id for t in await store.list_owner("alice")] == ["long"]
    assert await redis.smembers("stream_tokens:owner:alice") == {"long"}


@pytest.mark.asyncio
async def test_token_service_on_redis(store):
    tokens = StreamTokenService(store, TokenConfig(ttl_seconds=60, retention_seconds=60, rotate_on_refresh=True))
    token = await tokens.issue("alice", SOURCE_URL, "137", "clip")

    assert (await tokens.verify(token.id)).id == token.id

    refreshed = await tokens.refresh(token.id)
    assert refreshed.id != token.id
    with pytest.raises(TokenNotFound):
        await tokens.verify(token.id)

    await tokens.revoke(refreshed.id)
    await tokens.revoke(refreshed.id)
    with pytest.raises(TokenRevoked):
        await tokens.verify(refreshed.id)
    assert (await store.get(refreshed.id)).state == TokenState.REVOKED


@pytest.mark.asyncio
async def test_gate_acquire_and_release(redis):
    gate = make_gate(redis)

    slot = await gate.acquire("alice", "premium")
    assert await gate.active_count() == 1
    assert await gate.active_count("alice") == 1
    assert await redis.get(f"{SLOT_PREFIX}{slot.id}") == "alice"

    await gate.release(slot)
    await gate.release(slot)

    assert await gate.active_count() == 0
    assert await gate.active_count("alice") == 0
    assert await redis.exists(f"{SLOT_PREFIX}{slot.id}") == 0


@pytest.mark.asyncio
async def test_gate_global_limit(redis):
    gate = make_gate(redis, global_limit=2)
    await gate.acquire("alice")
    await gate.acquire("bob")

    with pytest.raises(LimitExceeded) as exc_info:
        await gate.acquire("carol")
    assert exc_info.value.scope == "global"


@pytest.mark.asyncio
async def test_gate_owner_limit_under_concurrent_acquire(redis):
    gate = make_gate(redis, global_limit=10)

    results = await asyncio.gather(
        *(gate.acquire("alice", "premium") for _ in range(3)),
        return_exceptions=True,
    )

    refused = [r for r in results if isinstance(r, LimitExceeded)]
    assert len(refused) == 1
    assert refused[0].scope == "owner"
    assert refused[0].limit == 2
    assert await gate.active_count("alice") == 2


@pytest.mark.asyncio
async def test_gate_release_after_slot_key_expired(redis):
    gate = make_gate(redis, slot_ttl=1)
    slot = await gate.acquire("alice", "basic")

    await asyncio.sleep(1.5)
    assert await redis.exists(f"{SLOT_PREFIX}{slot.id}") == 0
    await gate.release(slot)

    assert await gate.active_count() == 0
    assert await gate.active_count("alice") == 0
    await gate.acquire("alice", "basic")


@pytest.mark.asyncio
async def test_gate_refresh_keeps_slot_alive(redis):
    gate = make_gate(redis, slot_ttl=1)
    slot = await gate.acquire("alice", "basic")

    for _ in range(3):
        await asyncio.sleep(0.6)
        await gate.refresh(slot)

    assert await redis.get(f"{SLOT_PREFIX}{slot.id}") == "alice"
    assert await gate.active_count("alice") == 1


@pytest.mark.asyncio
async def test_gate_recover_rebuilds_counters(redis):
    gate = make_gate(redis)
    await gate.acquire("alice", "premium")
    await gate.acquire("alice", "premium")
    # Leftovers from a crashed worker
    await redis.set(GLOBAL_COUNTER_KEY, 7)
    await redis.set(f"{OWNER_COUNTER_PREFIX}ghost", 3)

    assert await gate.recover() == 2

    assert await gate.active_count() == 2
    assert await gate.active_count("alice") == 2
    assert await gate.active_count("ghost") == 0
