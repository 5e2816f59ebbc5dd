"""Crawl job execution for a single source.

A job walks the source breadth-first from its base URL, never leaving the
base host and never following links past ``max_depth``. Before every
fetch the host's robots policy is consulted, and requests to one host are
serialized through the shared :class:`HostThrottle` with a spacing of
``max(source delay, robots Crawl-delay)``.

Items are emitted for every unique link whose extension is one of the
source's file types, and for every fetched page matching the source's
crawl pattern. Fetch failures never escape the executor: they are logged
with their failure category and decide the job's final status.
"""

from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, List

from harvester.errors import UpstreamFetchError
from harvester.knowledge.models import (
    ITEM_NEW,
    JOB_FAILED,
    JOB_PENDING,
    JOB_RUNNING,
    JOB_SUCCESS,
    Item,
    Job,
    Source,
    utcnow,
)
from harvester.knowledge.storage import Stores
from harvester.parsing.extraction import html_to_text
from harvester.parsing.fetch import PageFetcher
from harvester.parsing.link_extractor import extract_file_links, extract_links, extract_title
from harvester.parsing.robots import RobotsPolicyResolver
from harvester.parsing.url_scope import (
    extract_host,
    file_extension,
    matches_pattern,
    normalize_url,
    same_host,
)

from .config import PipelineConfig
from .throttle import HostThrottle

logger = logging.getLogger(__name__)


class _JobAborted(Exception):
    """Internal signal: the failure budget is spent."""

    def __init__(self, error: UpstreamFetchError) -> None:
        super().__init__(error.message)
        self.error = error


@dataclass
class _CrawlProgress:
    pages_visited: int = 0
    items_found: int = 0
    failures: int = 0
    blocked: int = 0


class CrawlJobExecutor:
    """Runs crawl jobs and records jobs, items and crawl-log entries.

    Args:
        stores: Store bundle (jobs, items and logs are written).
        resolver: Shared robots policy resolver.
        fetcher: Page fetcher with retry policy.
        throttle: Shared per-host throttle.
        config: Worker sizing, page cap and failure tolerance.
    """

    def __init__(
        self,
        stores: Stores,
        resolver: RobotsPolicyResolver,
        fetcher: PageFetcher,
        throttle: HostThrottle | None = None,
        config: PipelineConfig | None = None,
    ) -> None:
        self.stores = stores
        self.resolver = resolver
        self.fetcher = fetcher
        self.throttle = throttle or HostThrottle()
        self.config = config or PipelineConfig()

    def _log(self, job: Job, level: str, action: str, message: str, url: str | None = None, **details) -> None:
        self.stores.logs.append(job.id, level, action, message, details=details or None, url=url)

    def create_job(self, source: Source, batch_id: str | None = None) -> Job:
        with self.stores.jobs.transaction():
            job = Job(id=self.stores.jobs.new_id(), source_id=source.id, batch_id=batch_id, status=JOB_PENDING)
            self.stores.jobs.put(job)
        return job

    def run_job(self, source: Source, batch_id: str | None = None) -> Job:
        """Crawl ``source`` and return the finished job (SUCCESS or FAILED)."""
        job = self.create_job(source, batch_id)
        job.status = JOB_RUNNING
        job.started_at = utcnow()
        self.stores.jobs.put(job)
        self._log(job, "INFO", "START", f"Crawl started for {source.name}", url=source.base_url)
        logger.info("Job %s: crawling %s (max depth %d)", job.id, source.base_url, source.max_depth)

        progress = _CrawlProgress()
        try:
            self._crawl(job, source, progress)
        except _JobAborted as exc:
            self._finish(job, progress, JOB_FAILED, exc.error.message)
            logger.warning("Job %s failed: %s", job.id, exc.error.message)
            return job
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            self._log(job, "ERROR", "INTERNAL_ERROR", f"Unexpected error: {exc}", url=source.base_url)
            self._finish(job, progress, JOB_FAILED, str(exc))
            return job

        self._finish(job, progress, JOB_SUCCESS)
        self._log(
            job, "INFO", "COMPLETE",
            f"Crawl finished: {progress.pages_visited} pages, {progress.items_found} items",
            pages_visited=progress.pages_visited,
            items_found=progress.items_found,
            failures=progress.failures,
            robots_blocked=progress.blocked,
        )
        logger.info("Job %s: %d pages, %d items", job.id, progress.pages_visited, progress.items_found)
        return job

    def _finish(self, job: Job, progress: _CrawlProgress, status: str, error: str | None = None) -> None:
        job.status = status
        job.error = error
        job.pages_visited = progress.pages_visited
        job.items_found = progress.items_found
        job.completed_at = utcnow()
        self.stores.jobs.put(job)

    def _emit_item(self, job: Job, source: Source, url: str, kind: str, **fields) -> None:
        with self.stores.items.transaction():
            item = Item(
                id=self.stores.items.new_id(),
                job_id=job.id,
                source_id=source.id,
                url=url,
                kind=kind,
                status=ITEM_NEW,
                **fields,
            )
            self.stores.items.put(item)

    def _crawl(self, job: Job, source: Source, progress: _CrawlProgress) -> None:
        seed = normalize_url(source.base_url)
        file_types = {t.lower() for t in source.file_types}
        politeness = self.config.politeness

        queue: deque[tuple[str, int]] = deque([(seed, 0)])
        visited = {seed}
        seen_files: set[str] = set()

        while queue and progress.pages_visited < self.config.max_pages_per_job:
            url, depth = queue.popleft()

            policy = self.resolver.resolve(url)
            if not policy.is_allowed(url):
                progress.blocked += 1
                self._log(job, "INFO", "ROBOTS_BLOCKED", f"Disallowed by robots.txt: {url}", url=url)
                continue

            delay = source.crawl_delay_seconds
            if politeness.respect_robots_crawl_delay:
                delay = max(delay, policy.crawl_delay())

            try:
                with self.throttle.slot(extract_host(url), delay):
                    page = self.fetcher.fetch(url)
            except UpstreamFetchError as exc:
                progress.failures += 1
                self._log(
                    job, "ERROR", exc.category, f"Fetch failed for {url}: {exc.message}",
                    url=url, status_code=exc.status_code, depth=depth,
                )
                if url == seed or progress.failures > self.config.max_page_failures:
                    raise _JobAborted(exc) from exc
                continue

            progress.pages_visited += 1
            if not page.is_html:
                logger.debug("Job %s: %s is not HTML (%s)", job.id, url, page.content_type)
                continue

            html = page.text
            links = extract_links(html, page.final_url)

            for file_link in extract_file_links(links, file_types):
                if file_link.url in seen_files:
                    continue
                seen_files.add(file_link.url)
                self._emit_item(
                    job, source, file_link.url, "file",
                    file_type=file_link.file_type, title=file_link.name,
                )
                progress.items_found += 1

            if source.crawl_pattern and matches_pattern(url, source.crawl_pattern):
                self._emit_item(
                    job, source, url, "page",
                    file_type="html", title=extract_title(html),
                    captured_text=html_to_text(html, url=url),
                )
                progress.items_found += 1

            if depth >= source.max_depth:
                continue
            for link in links:
                if link.url in visited or link.is_nofollow:
                    continue
                if file_extension(link.url) in file_types:
                    continue
                if not same_host(link.url, seed) or not matches_pattern(link.url, source.crawl_pattern):
                    continue
                visited.add(link.url)
                queue.append((link.url, depth + 1))

    def run_sources(self, sources: Iterable[Source], batch_id: str | None = None) -> List[Job]:
        """Run one job per source on a bounded worker pool.

        Jobs for different hosts run in parallel; requests to a shared host
        are still serialized by the throttle. Results keep input order.
        """
        sources = list(sources)
        if not sources:
            return []
        with ThreadPoolExecutor(max_workers=self.config.worker_count) as pool:
            futures = [pool.submit(self.run_job, source, batch_id) for source in sources]
            return [future.result() for future in futures]
