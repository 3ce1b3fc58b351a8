from .filename import build_download_filename, content_disposition, sanitize_filename
from .hash import cache_key, stable_digest

__all__ = ["build_download_filename", "cache_key", "content_disposition", "sanitize_filename", "stable_digest"]
