import hashlib


def stable_digest(data: str, length: int = 16) -> str:
    """Short SHA256 hex digest; same input, same output across processes"""
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:length]


def cache_key(namespace: str, value: str) -> str:
    return f"{namespace}:{stable_digest(value)}"
