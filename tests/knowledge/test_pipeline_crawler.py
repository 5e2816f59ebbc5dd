"""Tests for harvester/knowledge/pipeline/crawler.py."""

from __future__ import annotations

from contextlib import contextmanager
from unittest.mock import patch

import pytest

from harvester.errors import UpstreamFetchError
from harvester.knowledge.models import JOB_FAILED, JOB_SUCCESS
from harvester.knowledge.pipeline.config import PipelineConfig
from harvester.knowledge.pipeline.crawler import CrawlJobExecutor
from harvester.knowledge.pipeline.throttle import HostThrottle
from harvester.knowledge.storage import open_stores
from harvester.parsing.fetch import FetchedPage
from harvester.parsing.robots import RobotsPolicy, parse_robots_txt
from harvester.parsing.url_scope import normalize_url

BASE = "https://school.example.com/"

SEED_HTML = """
<html><head><title>Exam board</title></head><body>
<a href="/exams/2024.pdf">2024 exam</a>
<a href="/exams/2024.pdf">2024 exam (mirror)</a>
<a href="/board/1">Post 1</a>
<a href="/private/x">Hidden</a>
<a href="/login" rel="nofollow">Log in</a>
<a href="https://other.example.org/">Elsewhere</a>
</body></html>
"""

POST_HTML = """
<html><head><title>Post 1</title></head><body>
<p>Answer sheets for the spring exam.</p>
<a href="/exams/2024.pdf">Again</a>
<a href="/exams/answers.HWP">Answers</a>
<a href="/board/2">Post 2</a>
</body></html>
"""


class FakeFetcher:
    """Serves canned pages; unknown addresses answer 404."""

    def __init__(self, pages: dict[str, str | Exception]) -> None:
        self.pages = {normalize_url(url): body for url, body in pages.items()}
        self.fetched: list[str] = []

    def fetch(self, url: str, retries: int | None = None) -> FetchedPage:
        self.fetched.append(url)
        body = self.pages.get(normalize_url(url))
        if body is None:
            raise UpstreamFetchError(url, "HTTP_4XX", "HTTP 404", status_code=404)
        if isinstance(body, Exception):
            raise body
        return FetchedPage(
            url=url,
            final_url=url,
            status_code=200,
            content_type="text/html; charset=utf-8",
            content=body.encode("utf-8"),
        )


class FakeResolver:
    def __init__(self, robots_txt: str = "") -> None:
        ruleset = parse_robots_txt(robots_txt).get_ruleset("HarvesterBot") if robots_txt else None
        self.policy = RobotsPolicy(host="school.example.com", ruleset=ruleset, exists=bool(robots_txt))

    def resolve(self, url: str) -> RobotsPolicy:
        return self.policy


class RecordingThrottle(HostThrottle):
    """Records requested spacing without sleeping."""

    def __init__(self) -> None:
        super().__init__(sleep=lambda seconds: None)
        self.intervals: list[tuple[str, float]] = []

    @contextmanager
    def slot(self, host: str, min_interval: float):
        self.intervals.append((host, min_interval))
        yield 0.0


def _executor(pages, robots_txt: str = "", **config):
    stores = open_stores(None)
    fetcher = FakeFetcher(pages)
    executor = CrawlJobExecutor(
        stores,
        FakeResolver(robots_txt),
        fetcher,
        RecordingThrottle(),
        PipelineConfig(**config),
    )
    return executor, stores, fetcher


def _source(stores, **fields):
    values = {"name": "School", "source_type": "website", "base_url": BASE, "max_depth": 1}
    values.update(fields)
    return stores.sources.create(**values)


@pytest.fixture(autouse=True)
def plain_text():
    with patch("harvester.knowledge.pipeline.crawler.html_to_text", side_effect=lambda html, url=None: "text"):
        yield


class TestRunJob:
    """Tests for CrawlJobExecutor.run_job."""

    def test_breadth_first_crawl(self) -> None:
        executor, stores, fetcher = _executor(
            {BASE: SEED_HTML, "https://school.example.com/board/1": POST_HTML},
            robots_txt="User-agent: *\nDisallow: /private/\n",
        )
        source = _source(stores)

        job = executor.run_job(source)

        assert job.status == JOB_SUCCESS
        assert fetcher.fetched == [BASE, "https://school.example.com/board/1"]
        assert job.pages_visited == 2
        items = stores.items.list(job_id=job.id).items
        assert sorted((i.url, i.file_type) for i in items) == [
            ("https://school.example.com/exams/2024.pdf", "pdf"),
            ("https://school.example.com/exams/answers.HWP", "hwp"),
        ]
        assert job.items_found == 2
        actions = [e.action for e in stores.logs.page(job_id=job.id).items]
        assert actions[0] == "START"
        assert "ROBOTS_BLOCKED" in actions
        assert actions[-1] == "COMPLETE"

    def test_depth_zero_fetches_only_the_seed(self) -> None:
        executor, stores, fetcher = _executor({BASE: SEED_HTML})
        source = _source(stores, max_depth=0)

        job = executor.run_job(source)

        assert fetcher.fetched == [BASE]
        assert job.items_found == 1

    def test_page_items_follow_crawl_pattern(self) -> None:
        executor, stores, _ = _executor({BASE: SEED_HTML, "https://school.example.com/board/1": POST_HTML})
        source = _source(stores, crawl_pattern=r"/board/", file_types=["zip"])

        job = executor.run_job(source)

        [item] = stores.items.list(job_id=job.id).items
        assert item.kind == "page"
        assert item.url == "https://school.example.com/board/1"
        assert item.title == "Post 1"
        assert item.captured_text == "text"

    def test_seed_failure_fails_job(self) -> None:
        executor, stores, _ = _executor({BASE: UpstreamFetchError(BASE, "TIMEOUT", "Timed out after 30.0s")})
        source = _source(stores)

        job = executor.run_job(source)

        assert job.status == JOB_FAILED
        assert job.error == "Timed out after 30.0s"
        assert job.completed_at is not None
        [entry] = stores.logs.recent(level="ERROR")
        assert entry.action == "TIMEOUT"
        assert entry.url == BASE

    def test_page_failure_within_tolerance(self) -> None:
        broken = "https://school.example.com/board/1"
        pages = {
            BASE: SEED_HTML,
            broken: UpstreamFetchError(broken, "HTTP_5XX", "HTTP 503", status_code=503),
            "https://school.example.com/private/x": "<html></html>",
        }
        executor, stores, _ = _executor(pages, max_page_failures=1)

        job = executor.run_job(_source(stores))

        assert job.status == JOB_SUCCESS
        entry = stores.logs.recent(level="ERROR")[0]
        assert entry.action == "HTTP_5XX"
        assert entry.details["status_code"] == 503

    def test_page_failure_beyond_tolerance(self) -> None:
        broken = "https://school.example.com/board/1"
        pages = {BASE: SEED_HTML, broken: UpstreamFetchError(broken, "HTTP_5XX", "HTTP 503", status_code=503)}
        executor, stores, _ = _executor(pages)

        job = executor.run_job(_source(stores))

        assert job.status == JOB_FAILED
        assert job.error == "HTTP 503"

    def test_page_cap(self) -> None:
        executor, stores, fetcher = _executor(
            {BASE: SEED_HTML, "https://school.example.com/board/1": POST_HTML},
            max_pages_per_job=1,
        )

        executor.run_job(_source(stores))

        assert fetcher.fetched == [BASE]

    def test_spacing_uses_larger_of_source_and_robots_delay(self) -> None:
        executor, stores, _ = _executor({BASE: "<html></html>"}, robots_txt="User-agent: *\nCrawl-delay: 3\n")

        executor.run_job(_source(stores, crawl_delay_ms=500))

        assert executor.throttle.intervals == [("school.example.com", 3.0)]

    def test_unexpected_error_is_recorded(self) -> None:
        executor, stores, _ = _executor({BASE: SEED_HTML})
        source = _source(stores)

        with patch("harvester.knowledge.pipeline.crawler.extract_links", side_effect=RuntimeError("parser broke")):
            job = executor.run_job(source)

        assert job.status == JOB_FAILED
        assert stores.logs.recent(level="ERROR")[0].action == "INTERNAL_ERROR"


class TestRunSources:
    def test_results_keep_input_order(self) -> None:
        executor, stores, _ = _executor({BASE: "<html></html>"})
        first = _source(stores, name="First")
        second = _source(stores, name="Second", base_url="https://missing.example.com/")

        jobs = executor.run_sources([first, second], batch_id="batch_1")

        assert [job.source_id for job in jobs] == [first.id, second.id]
        assert [job.status for job in jobs] == [JOB_SUCCESS, JOB_FAILED]
        assert all(job.batch_id == "batch_1" for job in jobs)

    def test_no_sources(self) -> None:
        executor, _, _ = _executor({})

        assert executor.run_sources([]) == []
