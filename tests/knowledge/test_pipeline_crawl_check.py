"""Tests for the synchronous test crawl."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from harvester.errors import NotFoundError, UpstreamFetchError, ValidationError
from harvester.knowledge.pipeline.crawl_check import test_crawl as check_url
from harvester.knowledge.storage import open_stores
from harvester.parsing.fetch import FetchedPage
from harvester.parsing.robots import PolicyCache, RobotsPolicyResolver

ROBOTS = "User-agent: *\nDisallow: /private/\n"

LISTING = """
<html><head><title>Past papers</title></head><body>
<a href="/papers/2023.pdf">2023</a>
<a href="/papers/2024.hwp">2024</a>
<a href="/papers/notes.txt">Notes</a>
<a href="/about">About</a>
</body></html>
"""


def _resolver(robots_txt: str = ROBOTS) -> RobotsPolicyResolver:
    session = MagicMock()
    response = MagicMock(status_code=200, text=robots_txt, headers={"Content-Type": "text/plain"})
    session.get.return_value = response
    return RobotsPolicyResolver(PolicyCache(), session=session, user_agent="HarvesterBot/1.0")


def _fetcher(html: str = LISTING) -> MagicMock:
    fetcher = MagicMock()
    fetcher.fetch.side_effect = lambda url, retries=None: FetchedPage(
        url=url, final_url=url, status_code=200, content_type="text/html", content=html.encode("utf-8"),
    )
    return fetcher


class TestProbe:
    """Tests for test_crawl."""

    def test_disallowed_address_is_not_fetched(self) -> None:
        stores = open_stores(None)
        stores.sources.create(
            name="School", source_type="website", base_url="https://school.example.com", crawl_delay_ms=1000,
        )
        fetcher = _fetcher()

        report = check_url(stores, _resolver(), fetcher, url="https://school.example.com/private/page")

        assert report["robots"]["isAllowed"] is False
        assert report["robots"]["exists"] is True
        assert report["robots"]["disallowedPaths"] == ["/private/"]
        assert report["success"] is False
        assert report["page"] is None
        assert report["error"] == "Disallowed by robots.txt"
        fetcher.fetch.assert_not_called()

    def test_source_check_uses_source_file_types(self) -> None:
        stores = open_stores(None)
        source = stores.sources.create(
            name="Papers", source_type="pdf_archive", base_url="https://papers.example.com", file_types=["pdf"],
        )
        fetcher = _fetcher()

        report = check_url(stores, _resolver(), fetcher, source_id=source.id)

        fetcher.fetch.assert_called_once_with("https://papers.example.com/", retries=0)
        assert report["success"] is True
        assert report["url"] == "https://papers.example.com/"
        assert report["page"]["title"] == "Past papers"
        assert report["page"]["linksFound"] == 4
        assert report["page"]["fileLinksFound"] == 1
        assert report["page"]["fileLinks"] == [
            {"url": "https://papers.example.com/papers/2023.pdf", "type": "pdf", "name": "2023"},
        ]
        assert report["robots"]["crawlDelay"] is None

    def test_crawl_delay_reported_in_milliseconds(self) -> None:
        report = check_url(
            open_stores(None),
            _resolver("User-agent: *\nCrawl-delay: 2.5\n"),
            _fetcher(),
            url="https://school.example.com",
        )

        assert report["robots"]["crawlDelay"] == 2500

    def test_fetch_failure_is_reported(self) -> None:
        fetcher = MagicMock()
        fetcher.fetch.side_effect = UpstreamFetchError("https://school.example.com/", "TIMEOUT", "Timed out after 30.0s")

        report = check_url(open_stores(None), _resolver(), fetcher, url="https://school.example.com")

        assert report["success"] is False
        assert report["error"] == "TIMEOUT: Timed out after 30.0s"

    def test_requires_target(self) -> None:
        with pytest.raises(ValidationError):
            check_url(open_stores(None), _resolver(), _fetcher())

    def test_rejects_non_http(self) -> None:
        with pytest.raises(ValidationError):
            check_url(open_stores(None), _resolver(), _fetcher(), url="ftp://files.example.com/")

    def test_unknown_source(self) -> None:
        with pytest.raises(NotFoundError):
            check_url(open_stores(None), _resolver(), _fetcher(), source_id="src_missing")
