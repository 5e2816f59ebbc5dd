"""URL normalization and crawl-boundary checks.

A crawl never leaves the host of the source's base URL, and an optional
source pattern further restricts which same-host URLs are followed.

Examples:
    >>> same_host("https://example.com/a", "https://EXAMPLE.com:443/b")
    True
    >>> matches_pattern("https://example.com/exam/1", r"/exam/")
    True
"""

from __future__ import annotations

import re
from functools import lru_cache
from typing import NamedTuple
from urllib.parse import urlparse, urlunparse


class ParsedURL(NamedTuple):
    """Parsed URL components."""
    scheme: str
    host: str
    port: str
    path: str
    query: str
    fragment: str


def parse_url(url: str) -> ParsedURL:
    """Parse a URL into lowercased scheme/host with a guaranteed path."""
    parsed = urlparse(url)

    host = parsed.netloc
    port = ""
    if "@" in host:
        host = host.rsplit("@", 1)[1]
    if ":" in host:
        if host.startswith("["):
            # IPv6: [::1]:8080
            bracket_end = host.find("]")
            if bracket_end != -1 and bracket_end + 1 < len(host) and host[bracket_end + 1] == ":":
                port = host[bracket_end + 2:]
                host = host[:bracket_end + 1]
        else:
            host, port = host.rsplit(":", 1)

    return ParsedURL(
        scheme=parsed.scheme.lower(),
        host=host.lower(),
        port=port,
        path=parsed.path or "/",
        query=parsed.query,
        fragment=parsed.fragment,
    )


def normalize_url(url: str, strip_fragment: bool = True, strip_query: bool = False) -> str:
    """Normalize a URL for consistent comparison.

    Lowercases scheme and host, drops default ports, ensures a leading
    slash and optionally strips fragment and query.
    """
    parsed = parse_url(url)

    port = parsed.port
    if (parsed.scheme == "http" and port == "80") or (parsed.scheme == "https" and port == "443"):
        port = ""

    netloc = f"{parsed.host}:{port}" if port else parsed.host
    fragment = "" if strip_fragment else parsed.fragment
    query = "" if strip_query else parsed.query

    return urlunparse((parsed.scheme, netloc, parsed.path, "", query, fragment))


def extract_host(url_or_host: str) -> str:
    """Return the lowercased ``host[:port]`` key used for politeness state.

    Accepts either a URL or a bare host name.
    """
    if "://" not in url_or_host:
        return url_or_host.strip().lower().rstrip("/")
    parsed = parse_url(normalize_url(url_or_host))
    return f"{parsed.host}:{parsed.port}" if parsed.port else parsed.host


def same_host(url1: str, url2: str) -> bool:
    return extract_host(url1) == extract_host(url2)


def url_path(url: str) -> str:
    """Path plus query, as matched by robots rules."""
    parsed = urlparse(url)
    path = parsed.path or "/"
    if parsed.query:
        path = f"{path}?{parsed.query}"
    return path


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern)


def matches_pattern(url: str, pattern: str | None) -> bool:
    """True if no pattern is configured or the pattern is found in ``url``."""
    if not pattern:
        return True
    return _compile(pattern).search(url) is not None


def is_valid_http_url(url: str) -> bool:
    """Check if a URL is a valid HTTP/HTTPS URL."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# Media and web assets are never crawl targets; document and archive
# extensions are kept because sources collect them as files.
_SKIP_EXTENSIONS = (
    ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico",
    ".mp4", ".webm", ".avi", ".mov", ".wmv",
    ".mp3", ".wav", ".ogg", ".flac",
    ".exe", ".dmg", ".msi", ".deb", ".rpm",
    ".css", ".js", ".woff", ".woff2", ".ttf", ".eot",
)


def should_skip_url(url: str) -> tuple[bool, str]:
    """Check if a URL should be skipped during crawling.

    Returns:
        Tuple of (should_skip, reason)
    """
    if not url:
        return True, "Empty URL"

    parsed = urlparse(url)

    if parsed.scheme in ("javascript", "mailto", "tel", "data", "file"):
        return True, f"Non-HTTP scheme: {parsed.scheme}"

    if url.startswith("#"):
        return True, "Fragment-only URL"

    path_lower = parsed.path.lower()
    for ext in _SKIP_EXTENSIONS:
        if path_lower.endswith(ext):
            return True, f"Skipped extension: {ext}"

    return False, ""


def file_extension(url: str) -> str | None:
    """Lowercased extension of the URL path without the dot, if any."""
    path = urlparse(url).path
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return None
    return name.rsplit(".", 1)[-1].lower() or None
