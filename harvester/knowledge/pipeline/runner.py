"""Scheduler loop: claim a batch, crawl its sources, release it.

``run_tick`` is one scheduling step. ``run_loop`` repeats it on an
interval for long-running service use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List

import requests

from harvester.knowledge.models import JOB_FAILED, JOB_SUCCESS, Job
from harvester.knowledge.storage import Stores
from harvester.parsing.fetch import PageFetcher
from harvester.parsing.robots import PolicyCache, RobotsPolicyResolver

from .config import PipelineConfig
from .crawler import CrawlJobExecutor
from .scheduler import BatchScheduler
from .throttle import HostThrottle

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Outcome of one scheduler tick that claimed a batch."""

    batch_id: str
    batch_name: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = None
    jobs: List[Job] = field(default_factory=list)
    batch_status: str | None = None
    next_run_at: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    @property
    def succeeded(self) -> int:
        return sum(1 for job in self.jobs if job.status == JOB_SUCCESS)

    @property
    def failed(self) -> int:
        return sum(1 for job in self.jobs if job.status == JOB_FAILED)

    @property
    def items_found(self) -> int:
        return sum(job.items_found for job in self.jobs)

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "batch_name": self.batch_name,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "jobs": [job.to_dict() for job in self.jobs],
            "succeeded": self.succeeded,
            "failed": self.failed,
            "items_found": self.items_found,
            "batch_status": self.batch_status,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
        }

    def summary(self) -> str:
        lines = [
            f"Batch {self.batch_name} ({self.batch_id}) finished in {self.duration_seconds:.1f}s",
            f"  Jobs: {len(self.jobs)} ({self.succeeded} succeeded, {self.failed} failed)",
            f"  Items found: {self.items_found}",
            f"  Batch status: {self.batch_status}",
        ]
        if self.next_run_at:
            lines.append(f"  Next run: {self.next_run_at.isoformat()}")
        return "\n".join(lines)


@dataclass
class PipelineRuntime:
    """Wired-up collaborators for one data root."""

    stores: Stores
    config: PipelineConfig
    scheduler: BatchScheduler
    resolver: RobotsPolicyResolver
    fetcher: PageFetcher
    executor: CrawlJobExecutor


def build_runtime(
    stores: Stores,
    config: PipelineConfig | None = None,
    session: requests.Session | None = None,
) -> PipelineRuntime:
    config = config or PipelineConfig()
    politeness = config.politeness
    session = session or requests.Session()
    throttle = HostThrottle()
    resolver = RobotsPolicyResolver(
        PolicyCache(),
        session=session,
        user_agent=politeness.user_agent,
        timeout=politeness.robots_timeout,
        ttl=politeness.robots_ttl,
        failure_ttl=politeness.robots_failure_ttl,
        throttle=throttle,
    )
    fetcher = PageFetcher(
        session=session,
        user_agent=politeness.user_agent,
        timeout=politeness.page_timeout,
        max_retries=politeness.max_fetch_retries,
        initial_backoff=politeness.initial_backoff_seconds,
        max_backoff=politeness.max_backoff_seconds,
    )
    executor = CrawlJobExecutor(stores, resolver, fetcher, throttle, config)
    return PipelineRuntime(
        stores=stores,
        config=config,
        scheduler=BatchScheduler(stores),
        resolver=resolver,
        fetcher=fetcher,
        executor=executor,
    )


def run_tick(
    scheduler: BatchScheduler,
    executor: CrawlJobExecutor,
    now: datetime | None = None,
) -> TickResult | None:
    """Claim the next due batch and crawl its sources.

    Returns None when no batch is due. The batch is always released,
    even if execution raises.
    """
    claim = scheduler.tick(now)
    if claim is None:
        logger.debug("No batch due")
        return None

    result = TickResult(batch_id=claim.batch.id, batch_name=claim.batch.name)
    try:
        result.jobs = executor.run_sources(claim.sources, batch_id=claim.batch.id)
    finally:
        batch = scheduler.complete(claim.batch.id)
        result.completed_at = datetime.now(timezone.utc)
        result.batch_status = batch.status
        result.next_run_at = batch.next_run_at

    logger.info("%s", result.summary())
    return result


def run_loop(
    scheduler: BatchScheduler,
    executor: CrawlJobExecutor,
    interval_seconds: float = 60.0,
    max_ticks: int | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[TickResult]:
    """Tick repeatedly; sleep ``interval_seconds`` only when nothing was due."""
    results: List[TickResult] = []
    ticks = 0
    while max_ticks is None or ticks < max_ticks:
        ticks += 1
        result = run_tick(scheduler, executor)
        if result is not None:
            results.append(result)
            continue
        sleep(interval_seconds)
    return results


def run_source(executor: CrawlJobExecutor, stores: Stores, source_id: str) -> Job:
    """Run one manual job for a source, outside any batch."""
    source = stores.sources.require(source_id)
    return executor.run_job(source)
