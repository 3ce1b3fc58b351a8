from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from redis.asyncio import Redis

from app.core.errors import BackendUnavailable

if TYPE_CHECKING:
    from app.infra.concurrency import ConcurrencyGate
    from app.infra.token_store import TokenStore
    from app.services.download import DownloadOrchestrator
    from app.services.info import InfoResolver
    from app.services.stream_token import StreamTokenService
    from app.services.ytdlp import ProcessRunner


@dataclass
class RuntimeState:
    """Centralized runtime state, filled at startup and cleared at shutdown"""
    redis: Optional[Redis] = None
    token_store: Optional["TokenStore"] = None
    tokens: Optional["StreamTokenService"] = None
    gate: Optional["ConcurrencyGate"] = None
    runner: Optional["ProcessRunner"] = None
    resolver: Optional["InfoResolver"] = None
    orchestrator: Optional["DownloadOrchestrator"] = None

    def require(self, name: str) -> Any:
        """Service by attribute name; 503 before startup finished"""
        service = getattr(self, name)
        if service is None:
            raise BackendUnavailable(f"{name} not initialized")
        return service

    def clear(self) -> None:
        self.token_store = None
        self.tokens = None
        self.gate = None
        self.runner = None
        self.resolver = None
        self.orchestrator = None


state = RuntimeState()
