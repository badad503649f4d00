"""
Shared utility functions for bilinote.

URL parsing for Bilibili video links and subtitle download URLs, plus small
helpers used across modules.
"""

import re

# Ordered: the first pattern that matches wins
BVID_PATTERNS = [
    re.compile(r"bilibili\.com/video/(BV[0-9A-Za-z]+)"),
    re.compile(r"b23\.tv/([0-9A-Za-z]+)"),
    re.compile(r"BV[0-9A-Za-z]+"),
]

SHORT_LINK_HOST = "b23.tv"


def extract_bvid(url: str) -> str | None:
    """
    Extract the video identifier from a Bilibili URL.

    This function handles the link formats users paste:
    - https://www.bilibili.com/video/BVxxxxxxxxxx (with or without ?p=, /, ...)
    - https://m.bilibili.com/video/BVxxxxxxxxxx
    - https://b23.tv/SHORTCODE share links
    - Any text containing a bare BV code

    Args:
        url: Bilibili URL or text containing a BV code

    Returns:
        The BV code, the b23.tv short code, or None if nothing matched.
        Short codes that are not BV codes must be resolved through the
        short-link redirect before they can be used upstream.

    Examples:
        >>> extract_bvid("https://www.bilibili.com/video/BV1GJ411x7h7?p=2")
        'BV1GJ411x7h7'
        >>> extract_bvid("https://b23.tv/aBc123")
        'aBc123'
        >>> extract_bvid("看看这个 BV1GJ411x7h7")
        'BV1GJ411x7h7'
        >>> extract_bvid("https://example.com/video/123") is None
        True
    """
    if not url:
        return None

    for pattern in BVID_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1) if pattern.groups else match.group(0)

    return None


def is_bvid(identifier: str) -> bool:
    """Return True for a canonical BV code (as opposed to a b23.tv short code)."""
    return identifier.startswith("BV") and len(identifier) > 2


def is_well_formed_track_url(url: str) -> bool:
    """
    Check that a subtitle download URL is usable.

    Accepts absolute URLs (``https://...``) and protocol-relative URLs
    (``//aisubtitle.hdslb.com/...``). Empty or whitespace-only strings and
    bare paths are rejected.
    """
    if not url or not url.strip():
        return False
    return "://" in url or url.startswith("//")


def normalize_subtitle_url(url: str) -> str:
    """
    Turn a subtitle URL into an absolute https URL.

    Examples:
        >>> normalize_subtitle_url("//aisubtitle.hdslb.com/bfs/ai_subtitle/x.json")
        'https://aisubtitle.hdslb.com/bfs/ai_subtitle/x.json'
        >>> normalize_subtitle_url("http://i0.hdslb.com/bfs/subtitle/x.json")
        'http://i0.hdslb.com/bfs/subtitle/x.json'
    """
    url = url.strip()
    if url.startswith("http"):
        return url
    return f"https:{url}"


def sanitize_for_log(input_str: str) -> str:
    """
    Sanitize user input for logging to prevent log injection attacks.

    Replaces newlines, carriage returns, and tabs with their escaped
    representations.
    """
    return input_str.replace("\n", "\\n").replace("\r", "\\r").replace("\t", "\\t")


def preview(text: str, limit: int = 80) -> str:
    """Single-line prefix of ``text`` for log messages."""
    text = sanitize_for_log(text)
    return text if len(text) <= limit else text[:limit] + "..."
