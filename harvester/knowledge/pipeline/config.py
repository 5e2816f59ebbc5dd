"""Configuration for crawl execution.

Politeness settings bound how hard any one host is hit; the pipeline
config adds worker sizing and failure tolerance.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from harvester.config import DEFAULT_USER_AGENT

if TYPE_CHECKING:
    from harvester.config import ProjectConfig


@dataclass(frozen=True)
class PipelinePoliteness:
    """Rate limiting and politeness configuration.

    Attributes:
        user_agent: Agent string sent with requests and matched in robots.txt.
        page_timeout: Timeout in seconds for every page fetch.
        robots_timeout: Shorter, independent timeout for robots.txt.
        robots_ttl: How long a resolved robots policy is cached.
        robots_failure_ttl: How long an allow-all fallback is cached.
        max_fetch_retries: Retries after the first attempt for transient
            page failures.
        initial_backoff_seconds: First retry wait; doubles each attempt.
        max_backoff_seconds: Retry wait ceiling.
        respect_robots_crawl_delay: If True, use Crawl-delay from robots.txt
            when it exceeds the source's delay.
    """

    user_agent: str = DEFAULT_USER_AGENT
    page_timeout: float = 30.0
    robots_timeout: float = 5.0
    robots_ttl: timedelta = field(default_factory=lambda: timedelta(hours=24))
    robots_failure_ttl: timedelta = field(default_factory=lambda: timedelta(hours=1))
    max_fetch_retries: int = 3
    initial_backoff_seconds: float = 1.0
    max_backoff_seconds: float = 30.0
    respect_robots_crawl_delay: bool = True


@dataclass
class PipelineConfig:
    """Configuration for crawl execution.

    Attributes:
        politeness: Rate limiting and politeness settings.
        worker_count: Thread pool size; bounds concurrent jobs and
            therefore in-flight fetches.
        max_pages_per_job: Safety cap on pages fetched by one job.
        max_page_failures: Page failures a job tolerates before it is
            marked FAILED. A failing seed page always fails the job.
    """

    politeness: PipelinePoliteness = field(default_factory=PipelinePoliteness)
    worker_count: int = 4
    max_pages_per_job: int = 200
    max_page_failures: int = 0

    def __post_init__(self) -> None:
        if self.worker_count < 1:
            raise ValueError(f"Invalid worker_count: {self.worker_count}. Must be >= 1")
        if self.max_pages_per_job < 1:
            raise ValueError(f"Invalid max_pages_per_job: {self.max_pages_per_job}. Must be >= 1")
        if self.max_page_failures < 0:
            raise ValueError(f"Invalid max_page_failures: {self.max_page_failures}. Must be >= 0")

    @classmethod
    def from_project_config(cls, config: "ProjectConfig", **overrides) -> "PipelineConfig":
        politeness = PipelinePoliteness(
            user_agent=config.user_agent,
            page_timeout=config.page_timeout_seconds,
            robots_timeout=config.robots_timeout_seconds,
            robots_ttl=timedelta(hours=config.robots_ttl_hours),
            robots_failure_ttl=timedelta(minutes=config.robots_failure_ttl_minutes),
            max_fetch_retries=config.max_fetch_retries,
        )
        values = {
            "politeness": politeness,
            "worker_count": config.worker_count,
            "max_pages_per_job": config.max_pages_per_job,
            "max_page_failures": config.max_page_failures,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


# Re-run intervals for scheduled batches
SCHEDULE_INTERVALS: dict[str, timedelta] = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def get_schedule_interval(schedule: str) -> timedelta:
    """Interval for a schedule key.

    Raises:
        KeyError: Unknown schedule.
    """
    return SCHEDULE_INTERVALS[schedule]
