from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class Format(BaseModel):
    """One downloadable format"""
    format_id: str
    extension: str
    resolution: Optional[str] = None
    fps: Optional[float] = None
    audio_codec: Optional[str] = None
    video_codec: Optional[str] = None
    size_bytes: Optional[int] = None
    note: Optional[str] = None


class VideoInfo(BaseModel):
    """Video information response"""
    title: str
    thumbnail_url: Optional[str] = None
    formats: List[Format] = []
    duration: Optional[float] = None
    uploader: Optional[str] = None
    webpage_url: Optional[str] = None


class TokenResponse(BaseModel):
    token: str
    expires_at: datetime
    stream_url: str


class TokenSummary(BaseModel):
    """Active token as shown to its owner (the source URL stays server-side)"""
    token: str
    format_id: str
    title: str
    issued_at: datetime
    expires_at: datetime
    refresh_count: int


class TokenListResponse(BaseModel):
    tokens: List[TokenSummary]
    count: int


class StatusResponse(BaseModel):
    status: str


class ErrorResponse(BaseModel):
    error: str
    detail: str
