import pytest

from app.i18n import i18n
from app.services.format import FormatDecision
from app.utils.filename import build_download_filename, content_disposition, sanitize_filename
from app.utils.hash import cache_key
from app.utils.locale import get_locale, safe_url_for_log


@pytest.mark.parametrize("header, expected", [
    (None, "en"),
    ("ja", "ja"),
    ("ja-JP,ja;q=0.9", "ja"),
    ("fr-FR,ja;q=0.8,en;q=0.9", "en"),
    ("en;q=0,ja;q=0.5", "ja"),
    ("de", "en"),
])
def test_get_locale(header, expected):
    assert get_locale(header) == expected


def test_safe_url_for_log_strips_query():
    assert safe_url_for_log("https://cdn.example.com/v.mp4?sig=secret") == "https://cdn.example.com/v.mp4?..."
    assert safe_url_for_log("https://example.com/watch") == "https://example.com/watch"


def test_sanitize_filename():
    assert sanitize_filename('a/b\\c:d*e?"f<g>h|i') == "a_b_c_d_e__f_g_h_i"
    assert sanitize_filename("CON") == "_CON"
    assert sanitize_filename("..hidden..") == "hidden"
    assert sanitize_filename("tab\there") == "tab_here"


@pytest.mark.parametrize("title, extension, hint, expected", [
    ("My Video", "mp4", None, "My Video.mp4"),
    ("My Video.mp4", "mp4", None, "My Video.mp4"),
    ("My Video", "webm", "custom", "custom.webm"),
    ("", "mp4", None, "download.mp4"),
    ("///", "mp4", "", "___.mp4"),
])
def test_build_download_filename(title, extension, hint, expected):
    assert build_download_filename(title, extension, hint) == expected


def test_content_disposition_non_ascii():
    header = content_disposition("動画 clip.mp4")
    assert header == "attachment; filename=\"clip.mp4\"; filename*=UTF-8''%E5%8B%95%E7%94%BB%20clip.mp4"


def test_format_selector_prefers_muxed_then_merges():
    assert FormatDecision.decide("137") == "137[acodec!=none]/137+bestaudio/137"


@pytest.mark.parametrize("format_id, valid", [
    ("137", True),
    ("hls-1080p", True),
    ("dash-video=1000", True),
    ("best/worst", False),
    ("137+140", False),
    ("bv*[height<=720]", False),
    ("", False),
    ("x" * 51, False),
])
def test_format_id_validation(format_id, valid):
    assert FormatDecision.is_valid_format_id(format_id) is valid


def test_cache_key_is_stable():
    assert cache_key("info", "https://a") == cache_key("info", "https://a")
    assert cache_key("info", "https://a") != cache_key("info", "https://b")
    assert cache_key("info", "https://a").startswith("info:")


def test_i18n_interpolation_and_fallback():
    assert i18n.get("error.too_many_downloads", locale="en", scope="owner", limit=1) == (
        "Too many concurrent downloads (owner limit: 1)"
    )
    assert i18n.get("error.token_expired", locale="xx") == "Stream token has expired"
    assert i18n.get("error.no_such_key") == "error.no_such_key"
