"""Crawl pipeline: batch scheduling, politeness and job execution.

Usage:
    from harvester.knowledge.pipeline import build_runtime, run_tick

    runtime = build_runtime(open_stores(root))
    result = run_tick(runtime.scheduler, runtime.executor)
"""

from .config import PipelineConfig, PipelinePoliteness, SCHEDULE_INTERVALS
from .crawler import CrawlJobExecutor
from .monitor import DashboardBuilder, DashboardReport, build_dashboard
from .crawl_check import test_crawl
from .runner import PipelineRuntime, TickResult, build_runtime, run_loop, run_source, run_tick
from .scheduler import (
    NIGHT_RUN_HOUR,
    RUN_NOW_PRIORITY,
    BatchClaim,
    BatchScheduler,
    local_timezone,
    next_night_run,
)
from .throttle import HostThrottle

__all__ = [
    # Config
    "PipelineConfig",
    "PipelinePoliteness",
    "SCHEDULE_INTERVALS",
    # Scheduler
    "BatchScheduler",
    "BatchClaim",
    "RUN_NOW_PRIORITY",
    "NIGHT_RUN_HOUR",
    "next_night_run",
    "local_timezone",
    # Execution
    "CrawlJobExecutor",
    "HostThrottle",
    "test_crawl",
    # Runner
    "PipelineRuntime",
    "TickResult",
    "build_runtime",
    "run_tick",
    "run_loop",
    "run_source",
    # Dashboard
    "DashboardBuilder",
    "DashboardReport",
    "build_dashboard",
]
