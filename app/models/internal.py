from enum import Enum
from typing import Optional

from pydantic import BaseModel


class TokenState(str, Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    CONSUMED = "consumed"


class StreamToken(BaseModel):
    """Stored stream token record. Bound parameters never change after issue."""
    id: str
    owner_id: str
    owner_tier: Optional[str] = None
    source_url: str
    format_id: str
    display_title: str
    issued_at: float
    expires_at: float
    state: TokenState = TokenState.ACTIVE
    refresh_count: int = 0


class Principal(BaseModel):
    """Authenticated caller"""
    owner_id: str
    tier: Optional[str] = None
