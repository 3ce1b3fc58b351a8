from typing import List, Optional, Tuple
from urllib.parse import urlparse

from app.config.settings import config


def _parse_accept_language(header: str) -> List[str]:
    """Language prefixes from an Accept-Language header, highest weight first"""
    weighted: List[Tuple[float, int, str]] = []
    for position, item in enumerate(header.split(",")):
        tag, _, params = item.strip().partition(";")
        if not tag:
            continue
        weight = 1.0
        params = params.strip()
        if params.startswith("q="):
            try:
                weight = float(params[2:])
            except ValueError:
                weight = 0.0
        if weight > 0:
            weighted.append((-weight, position, tag.split("-")[0].lower()))
    return [lang for _, _, lang in sorted(weighted)]


def get_locale(accept_language: Optional[str] = None) -> str:
    """Best supported locale for the request, else the configured default"""
    if accept_language:
        for lang in _parse_accept_language(accept_language):
            if lang in config.i18n.supported_locales:
                return lang
    return config.i18n.default_locale


def safe_url_for_log(url: str) -> str:
    """Source URL without its query string (query strings often carry signatures)"""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "invalid_url"

    stripped = f"{parsed.scheme}://{parsed.netloc}{parsed.path}"
    return f"{stripped}?..." if parsed.query else stripped
