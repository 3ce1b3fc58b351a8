from .internal import Principal, StreamToken, TokenState
from .request import InfoRequest, TokenIssueRequest, TokenRequest
from .response import Format, TokenResponse, VideoInfo

__all__ = [
    "Format",
    "InfoRequest",
    "Principal",
    "StreamToken",
    "TokenIssueRequest",
    "TokenRequest",
    "TokenResponse",
    "TokenState",
    "VideoInfo",
]
