"""Dashboard aggregation over jobs, items, problems and the crawl log.

Every metric is computed on its own. If one metric's data cannot be read,
that metric falls back to a neutral value (zero or empty), its name is
listed in ``degraded``, and the rest of the report is still returned.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, TypeVar

from harvester.errors import AggregationDegraded
from harvester.knowledge.models import (
    ITEM_FAILED,
    ITEM_IMPORTED,
    JOB_RUNNING,
    PROBLEM_PENDING,
)
from harvester.knowledge.storage import Stores

from .scheduler import local_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

HEALTH_NORMAL = "NORMAL"
HEALTH_WARNING = "WARNING"
HEALTH_BLOCKED = "BLOCKED"


@dataclass
class DashboardReport:
    """Dashboard KPIs plus the lists behind them."""

    generated_at: datetime
    window_start: datetime
    items_today: int = 0
    problems_today: int = 0
    success_rate: float = 0.0
    avg_ocr_confidence: float = 0.0
    pending_review: int = 0
    top_errors: List[dict[str, Any]] = field(default_factory=list)
    source_stats: List[dict[str, Any]] = field(default_factory=list)
    running_jobs: List[dict[str, Any]] = field(default_factory=list)
    recent_jobs: List[dict[str, Any]] = field(default_factory=list)
    degraded: List[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "window_start": self.window_start.isoformat(),
            "kpi": {
                "items_today": self.items_today,
                "problems_today": self.problems_today,
                "success_rate": self.success_rate,
                "avg_ocr_confidence": self.avg_ocr_confidence,
                "pending_review": self.pending_review,
                "running_jobs": len(self.running_jobs),
            },
            "top_errors": self.top_errors,
            "source_stats": self.source_stats,
            "running_jobs": self.running_jobs,
            "recent_jobs": self.recent_jobs,
            "degraded": self.degraded,
        }


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def top_error_categories(entries, top_n: int = 5) -> List[dict[str, Any]]:
    """Group ERROR entries by ``action`` and rank by count (ties by name)."""
    counts = Counter(entry.action or "UNKNOWN" for entry in entries)
    ranked = sorted(counts.items(), key=lambda pair: (-pair[1], pair[0]))
    return [{"type": action, "count": count} for action, count in ranked[:top_n]]


def classify_source_health(is_active: bool, recent_errors: int, warning_threshold: int = 5) -> str:
    if not is_active:
        return HEALTH_BLOCKED
    if recent_errors > warning_threshold:
        return HEALTH_WARNING
    return HEALTH_NORMAL


class DashboardBuilder:
    """Computes a :class:`DashboardReport` from the stores.

    Args:
        stores: Store bundle.
        error_sample: Number of most recent ERROR entries considered.
        top_n: Length of the error ranking.
        warning_threshold: Errors in the sample above which an active
            source is reported as WARNING.
    """

    def __init__(
        self,
        stores: Stores,
        error_sample: int = 100,
        top_n: int = 5,
        warning_threshold: int = 5,
        recent_jobs: int = 10,
    ) -> None:
        self.stores = stores
        self.error_sample = error_sample
        self.top_n = top_n
        self.warning_threshold = warning_threshold
        self.recent_jobs = recent_jobs

    def _safe(self, report: DashboardReport, metric: str, compute: Callable[[], T], default: T) -> T:
        try:
            return compute()
        except Exception as exc:
            degraded = AggregationDegraded(metric, str(exc))
            logger.warning("%s", degraded.message)
            report.degraded.append(metric)
            return default

    def build(self, now: datetime | None = None) -> DashboardReport:
        now = now or local_now()
        window_start = start_of_day(now)
        report = DashboardReport(generated_at=now, window_start=window_start)

        window_items = self._safe(
            report, "window_items",
            lambda: [i for i in self.stores.items.all() if i.created_at >= window_start],
            None,
        )
        if window_items is None:
            report.degraded.extend(["items_today", "problems_today", "success_rate", "avg_ocr_confidence"])
        else:
            report.items_today = self._safe(report, "items_today", lambda: len(window_items), 0)
            report.problems_today = self._safe(
                report, "problems_today",
                lambda: sum(i.problem_count or 0 for i in window_items), 0,
            )
            report.success_rate = self._safe(report, "success_rate", lambda: self._success_rate(window_items), 0.0)
            report.avg_ocr_confidence = self._safe(
                report, "avg_ocr_confidence", lambda: self._avg_ocr(window_items), 0.0,
            )

        report.pending_review = self._safe(
            report, "pending_review",
            lambda: sum(1 for p in self.stores.problems.all() if p.status == PROBLEM_PENDING and not p.is_archived),
            0,
        )

        recent_errors = self._safe(
            report, "recent_errors",
            lambda: self.stores.logs.recent(level="ERROR", limit=self.error_sample),
            [],
        )
        report.top_errors = self._safe(
            report, "top_errors", lambda: top_error_categories(recent_errors, self.top_n), [],
        )
        report.source_stats = self._safe(report, "source_stats", lambda: self._source_stats(recent_errors), [])
        report.running_jobs = self._safe(report, "running_jobs", self._running_jobs, [])
        report.recent_jobs = self._safe(report, "recent_jobs", self._recent_jobs, [])
        return report

    @staticmethod
    def _success_rate(items) -> float:
        success = sum(1 for i in items if i.status == ITEM_IMPORTED)
        failed = sum(1 for i in items if i.status == ITEM_FAILED)
        if success + failed == 0:
            return 0.0
        return round(success / (success + failed), 4)

    @staticmethod
    def _avg_ocr(items) -> float:
        values = [i.ocr_confidence for i in items if i.ocr_confidence is not None]
        if not values:
            return 0.0
        return round(sum(values) / len(values), 4)

    def _source_stats(self, recent_errors) -> List[dict[str, Any]]:
        job_sources = {job.id: job.source_id for job in self.stores.jobs.all()}
        errors_by_source = Counter(job_sources.get(entry.job_id) for entry in recent_errors)
        item_counts = Counter(item.source_id for item in self.stores.items.all())
        job_counts = Counter(job_sources.values())

        stats = []
        for source in self.stores.sources.list():
            errors = errors_by_source.get(source.id, 0)
            stats.append({
                "id": source.id,
                "name": source.name,
                "type": source.source_type,
                "grade": source.grade,
                "is_active": source.is_active,
                "item_count": item_counts.get(source.id, 0),
                "job_count": job_counts.get(source.id, 0),
                "recent_errors": errors,
                "status": classify_source_health(source.is_active, errors, self.warning_threshold),
            })
        return stats

    def _job_summary(self, job) -> dict[str, Any]:
        source = self.stores.sources.get(job.source_id)
        summary = job.to_dict()
        summary["source_name"] = source.name if source else None
        return summary

    def _running_jobs(self) -> List[dict[str, Any]]:
        jobs = self.stores.jobs.list(status=JOB_RUNNING)
        jobs.sort(key=lambda j: (j.started_at or j.created_at, j.id), reverse=True)
        return [self._job_summary(job) for job in jobs]

    def _recent_jobs(self) -> List[dict[str, Any]]:
        return [self._job_summary(job) for job in self.stores.jobs.list()[: self.recent_jobs]]


def build_dashboard(stores: Stores, now: datetime | None = None, **options) -> DashboardReport:
    """Convenience wrapper around :class:`DashboardBuilder`."""
    return DashboardBuilder(stores, **options).build(now)
