import logging
import re
import secrets
import time
from typing import Callable, List, Optional, Tuple

from app.config.settings import TokenConfig
from app.core.errors import (
    TokenAlreadyConsumed,
    TokenExpired,
    TokenNotFound,
    TokenRevoked,
)
from app.infra.token_store import TokenStore
from app.models.internal import StreamToken, TokenState

logger = logging.getLogger(__name__)

# secrets.token_urlsafe(32): 256 bits, 43 url-safe characters
TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")
MIN_TOMBSTONE_SECONDS = 60


def new_token_id() -> str:
    return secrets.token_urlsafe(32)


def is_valid_token_format(token_id: str) -> bool:
    return bool(token_id) and TOKEN_PATTERN.match(token_id) is not None


class StreamTokenService:
    """
    Issue, verify, refresh and revoke stream tokens.

    A token is usable iff ``state == active`` and ``now < expires_at``.
    Expired tokens stay in the store for ``retention_seconds`` so they can be
    reported as expired and refreshed; after that they are simply gone.
    Revoked tokens are kept as tombstones until they would have expired.
    """

    def __init__(
        self,
        store: TokenStore,
        config: TokenConfig,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config
        self.clock = clock

    def is_expired(self, token: StreamToken, now: Optional[float] = None) -> bool:
        if now is None:
            now = self.clock()
        return now >= token.expires_at

    def _store_ttl(self, token: StreamToken, now: float) -> int:
        remaining = max(0, int(token.expires_at - now))
        if token.state == TokenState.ACTIVE:
            return max(1, remaining + self.config.retention_seconds)
        return max(MIN_TOMBSTONE_SECONDS, remaining)

    async def _load(self, token_id: str) -> StreamToken:
        if not is_valid_token_format(token_id):
            raise TokenNotFound()
        token = await self.store.get(token_id)
        if token is None:
            raise TokenNotFound()
        return token

    def _check_usable(self, token: StreamToken, now: float) -> None:
        if token.state == TokenState.REVOKED:
            raise TokenRevoked()
        if token.state == TokenState.CONSUMED:
            raise TokenAlreadyConsumed()
        if self.is_expired(token, now):
            raise TokenExpired()

    async def issue(
        self,
        owner_id: str,
        source_url: str,
        format_id: str,
        display_title: str,
        owner_tier: Optional[str] = None,
    ) -> StreamToken:
        now = self.clock()
        token = StreamToken(
            id=new_token_id(),
            owner_id=owner_id,
            owner_tier=owner_tier,
            source_url=source_url,
            format_id=format_id,
            display_title=display_title,
            issued_at=now,
            expires_at=now + self.config.ttl_seconds,
        )
        await self.store.put(token, self._store_ttl(token, now))
        logger.info(f"Issued stream token for owner {owner_id} (format {format_id})")
        return token

    async def verify(self, token_id: str) -> StreamToken:
        token = await self._load(token_id)
        self._check_usable(token, self.clock())
        return token

    async def consume(self, token_id: str) -> StreamToken:
        """Single-use policy: verify and mark consumed in one atomic step"""
        if not is_valid_token_format(token_id):
            raise TokenNotFound()

        def mutate(current: StreamToken) -> Tuple[StreamToken, int]:
            now = self.clock()
            self._check_usable(current, now)
            consumed = current.model_copy(update={"state": TokenState.CONSUMED})
            return consumed, self._store_ttl(consumed, now)

        token = await self.store.update(token_id, mutate)
        if token is None:
            raise TokenNotFound()
        return token

    async def refresh(self, token_id: str, owner_id: Optional[str] = None) -> StreamToken:
        """
        Extend the lifetime of a token, even if it already expired.
        Only the expiry (and, with rotation, the id) changes; the bound
        request parameters are copied from the stored record.
        """
        if not is_valid_token_format(token_id):
            raise TokenNotFound()

        def mutate(current: StreamToken) -> Tuple[StreamToken, int]:
            if owner_id is not None and current.owner_id != owner_id:
                raise TokenNotFound()
            if current.state == TokenState.REVOKED:
                raise TokenRevoked()
            if current.state == TokenState.CONSUMED:
                raise TokenAlreadyConsumed()

            now = self.clock()
            changes = {
                "expires_at": now + self.config.ttl_seconds,
                "refresh_count": current.refresh_count + 1,
            }
            if self.config.rotate_on_refresh:
                changes["id"] = new_token_id()
            refreshed = current.model_copy(update=changes)
            return refreshed, self._store_ttl(refreshed, now)

        token = await self.store.update(token_id, mutate)
        if token is None:
            raise TokenNotFound()
        return token

    async def revoke(self, token_id: str, owner_id: Optional[str] = None) -> None:
        """Idempotent: revoking a revoked token succeeds without change"""
        if not is_valid_token_format(token_id):
            raise TokenNotFound()

        def mutate(current: StreamToken) -> Optional[Tuple[StreamToken, int]]:
            if owner_id is not None and current.owner_id != owner_id:
                raise TokenNotFound()
            if current.state == TokenState.REVOKED:
                return None
            revoked = current.model_copy(update={"state": TokenState.REVOKED})
            return revoked, self._store_ttl(revoked, self.clock())

        token = await self.store.update(token_id, mutate)
        if token is None:
            raise TokenNotFound()
        logger.info(f"Revoked stream token for owner {token.owner_id}")

    async def is_revoked(self, token_id: str) -> bool:
        """
        Used to re-check long transfers. A missing record is not treated as
        revoked: with rotation enabled a refresh moves the record to a new id.
        """
        token = await self.store.get(token_id)
        return token is not None and token.state == TokenState.REVOKED

    async def list_active(self, owner_id: str) -> List[StreamToken]:
        now = self.clock()
        tokens = await self.store.list_owner(owner_id)
        active = [
            t for t in tokens
            if t.state == TokenState.ACTIVE and not self.is_expired(t, now)
        ]
        return sorted(active, key=lambda t: t.issued_at, reverse=True)

    async def revoke_all(self, owner_id: str) -> int:
        count = 0
        for token in await self.store.list_owner(owner_id):
            if token.state == TokenState.REVOKED:
                continue
            try:
                await self.revoke(token.id)
            except TokenNotFound:
                continue
            count += 1
        return count
