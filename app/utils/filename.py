import re
import unicodedata
from typing import Optional
from urllib.parse import quote

DEFAULT_BASENAME = "download"


def sanitize_filename(name: str, max_length: int = 200) -> str:
    """Sanitize filename for cross-platform compatibility"""
    name = unicodedata.normalize("NFKC", name)
    name = re.sub(r'[\\/:*?"<>|\x00-\x1f\x7f]', '_', name)

    windows_reserved = {
        'CON', 'PRN', 'AUX', 'NUL',
        'COM1', 'COM2', 'COM3', 'COM4', 'COM5', 'COM6', 'COM7', 'COM8', 'COM9',
        'LPT1', 'LPT2', 'LPT3', 'LPT4', 'LPT5', 'LPT6', 'LPT7', 'LPT8', 'LPT9'
    }
    if name.upper() in windows_reserved:
        name = f"_{name}"

    return name[:max_length].strip().strip(".")


def build_download_filename(title: str, extension: str, hint: Optional[str] = None) -> str:
    """
    Filename offered to the client: the hint if given, else the stored title,
    always ending in the extension of the file actually produced.
    """
    extension = extension.lstrip(".")
    base = sanitize_filename(hint or "") or sanitize_filename(title or "") or DEFAULT_BASENAME
    if extension and base.lower().endswith(f".{extension.lower()}"):
        base = base[: -(len(extension) + 1)] or DEFAULT_BASENAME
    return f"{base}.{extension}" if extension else base


def content_disposition(filename: str) -> str:
    """attachment header with an ASCII fallback plus the RFC 5987 UTF-8 form"""
    ascii_name = filename.encode("ascii", "ignore").decode().replace('"', "'").strip()
    if not ascii_name or ascii_name.startswith("."):
        ascii_name = f"{DEFAULT_BASENAME}{ascii_name}"
    return f"attachment; filename=\"{ascii_name}\"; filename*=UTF-8''{quote(filename)}"
