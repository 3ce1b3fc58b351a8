from typing import Optional
from urllib.parse import urlparse

from pydantic import BaseModel, Field, HttpUrl, field_validator

from app.services.format import FormatDecision


class InfoRequest(BaseModel):
    url: HttpUrl = Field(..., description="Video URL")

    @field_validator('url')
    @classmethod
    def validate_url_syntax(cls, v):
        """Validate URL syntax only (SSRF check done at endpoint)"""
        parsed = urlparse(str(v))
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("Invalid URL format")
        if len(str(v)) > 2000:
            raise ValueError("URL too long")
        return v


class TokenIssueRequest(InfoRequest):
    format_id: str = Field(..., description="Format id chosen from /info")
    title: Optional[str] = Field(None, max_length=200, description="Title used for the download filename")

    @field_validator('format_id')
    @classmethod
    def validate_format_id(cls, v):
        if not FormatDecision.is_valid_format_id(v):
            raise ValueError("Invalid format id")
        return v


class TokenRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=128, description="Stream token")
