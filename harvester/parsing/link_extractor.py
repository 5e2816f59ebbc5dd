"""Link extraction from HTML content.

Extracts and normalizes hyperlinks for the crawl executor, and separates
out links to downloadable documents (PDF, HWP, ...) that become items.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from html.parser import HTMLParser
from typing import Iterable, List, Set
from urllib.parse import unquote, urljoin, urlparse

from harvester.parsing.url_scope import (
    file_extension,
    is_valid_http_url,
    normalize_url,
    should_skip_url,
)

DEFAULT_FILE_TYPES = ("pdf", "hwp", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "zip")


@dataclass
class ExtractedLink:
    """A link extracted from HTML content.

    Attributes:
        url: The absolute, normalized URL
        anchor_text: The text content of the link (if available)
        rel: The rel attribute value
        tag: The HTML tag the link came from
    """
    url: str
    anchor_text: str = ""
    rel: str = ""
    tag: str = "a"

    @property
    def is_nofollow(self) -> bool:
        return "nofollow" in self.rel.lower()


@dataclass
class FileLink:
    """A link to a downloadable document."""
    url: str
    file_type: str
    name: str

    def to_dict(self) -> dict[str, str]:
        return {"url": self.url, "type": self.file_type, "name": self.name}


class LinkExtractor(HTMLParser):
    """HTML parser that collects links in document order.

    Usage:
        extractor = LinkExtractor("https://example.com/page")
        extractor.feed(html_content)
        links = extractor.get_links()
    """

    LINK_ATTRS = {
        "a": "href",
        "area": "href",
    }

    def __init__(self, base_url: str):
        super().__init__()
        self.base_url = base_url
        self._links: List[ExtractedLink] = []
        self._seen_urls: Set[str] = set()
        self._current_anchor_text: List[str] = []
        self._current_link_url: str | None = None
        self._current_link_rel: str = ""
        self._in_anchor = False

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        attrs_dict = {k: v or "" for k, v in attrs}

        if tag == "a":
            href = attrs_dict.get("href", "")
            if href:
                self._in_anchor = True
                self._current_link_url = href
                self._current_link_rel = attrs_dict.get("rel", "")
                self._current_anchor_text = []

        elif tag == "base":
            href = attrs_dict.get("href", "")
            if href:
                self.base_url = urljoin(self.base_url, href)

        elif tag in self.LINK_ATTRS:
            href = attrs_dict.get(self.LINK_ATTRS[tag], "")
            if href:
                self._add_link(href, tag=tag, rel=attrs_dict.get("rel", ""))

    def handle_endtag(self, tag: str) -> None:
        if tag == "a" and self._in_anchor:
            if self._current_link_url:
                anchor_text = " ".join(" ".join(self._current_anchor_text).split())
                self._add_link(
                    self._current_link_url,
                    anchor_text=anchor_text,
                    tag="a",
                    rel=self._current_link_rel,
                )
            self._in_anchor = False
            self._current_link_url = None
            self._current_link_rel = ""
            self._current_anchor_text = []

    def handle_data(self, data: str) -> None:
        if self._in_anchor:
            self._current_anchor_text.append(data)

    def _add_link(self, href: str, anchor_text: str = "", tag: str = "a", rel: str = "") -> None:
        href = href.strip()
        if not href:
            return

        skip, _reason = should_skip_url(href)
        if skip:
            return

        try:
            absolute_url = urljoin(self.base_url, href)
        except ValueError:
            return

        if not is_valid_http_url(absolute_url):
            return

        normalized = normalize_url(absolute_url, strip_fragment=True)
        if normalized in self._seen_urls:
            return

        self._seen_urls.add(normalized)
        self._links.append(ExtractedLink(url=normalized, anchor_text=anchor_text, rel=rel, tag=tag))

    def get_links(self) -> List[ExtractedLink]:
        return self._links.copy()


def extract_links(html: str, base_url: str) -> List[ExtractedLink]:
    """Extract all unique links from HTML content, in document order.

    Example:
        >>> html = '<html><body><a href="/page">Link</a></body></html>'
        >>> extract_links(html, "https://example.com/")[0].url
        'https://example.com/page'
    """
    extractor = LinkExtractor(base_url)
    extractor.feed(html)
    extractor.close()
    return extractor.get_links()


def extract_title(html: str) -> str | None:
    """Extract the page title from HTML content."""
    match = re.search(r"<title[^>]*>([^<]+)</title>", html, re.IGNORECASE)
    if match:
        return match.group(1).strip()
    return None


def _file_name(link: ExtractedLink) -> str:
    if link.anchor_text:
        return link.anchor_text
    name = urlparse(link.url).path.rsplit("/", 1)[-1]
    return unquote(name) or link.url


def extract_file_links(
    links: Iterable[ExtractedLink],
    file_types: Iterable[str] = DEFAULT_FILE_TYPES,
) -> List[FileLink]:
    """Select links whose path extension is one of ``file_types``.

    Matching is case-insensitive and ignores a leading dot in the
    configured types (".PDF" and "pdf" are equivalent).
    """
    wanted = {t.strip().lower().lstrip(".") for t in file_types if t and t.strip()}
    files: List[FileLink] = []
    for link in links:
        ext = file_extension(link.url)
        if ext and ext in wanted:
            files.append(FileLink(url=link.url, file_type=ext, name=_file_name(link)))
    return files
