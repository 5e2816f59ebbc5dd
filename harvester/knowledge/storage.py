"""Storage for harvester entities.

Each collection is held in memory behind a re-entrant lock and, when a
root directory is given, persisted to ``<root>/<collection>.json`` with an
atomic write-then-replace. Several processes may share one data root: reads
reload the file and writes hold a per-collection ``filelock.FileLock``.
Callers that need a read-modify-write to be atomic (for example the
scheduler's claim step) wrap it in ``store.transaction()``.
"""

from __future__ import annotations

import json
import logging
import math
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Generic, Iterable, Iterator, List, TypeVar

from filelock import FileLock

from harvester.errors import NotFoundError, ValidationError
from harvester.knowledge.models import (
    ITEM_STATUSES,
    LOG_LEVELS,
    PROBLEM_PENDING,
    REVIEW_STAGES,
    SOURCE_GRADES,
    STAGE_NONE,
    Batch,
    CrawlLogEntry,
    Item,
    Job,
    Problem,
    ReviewRecord,
    Source,
    utcnow,
)
from harvester.parsing.url_scope import is_valid_http_url
from harvester.retry import new_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_PAGE_SIZE = 500


@dataclass
class Page(Generic[T]):
    """One page of a listing."""

    items: List[T]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "pagination": {
                "page": self.page,
                "limit": self.limit,
                "total": self.total,
                "total_pages": self.total_pages,
            },
        }


def paginate(records: List[T], page: int = 1, limit: int = 20) -> Page[T]:
    if page < 1:
        raise ValidationError("page must be >= 1", page=page)
    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", limit=limit)
    start = (page - 1) * limit
    return Page(items=records[start:start + limit], page=page, limit=limit, total=len(records))


class RecordStore(Generic[T]):
    """Lock-guarded id -> record map with optional JSON persistence.

    A persisted store never trusts its in-memory copy between operations:
    reads reload ``<collection>.json`` and writes run inside
    ``transaction()``, which also holds ``<collection>.json.lock`` so that
    separate processes sharing one data root serialize their writes.
    """

    name = "records"
    kind = "record"
    id_prefix = "rec"
    model: Any = None

    def __init__(self, root: Path | None = None) -> None:
        self.lock = threading.RLock()
        self._records: dict[str, T] = {}
        self._depth = 0
        self._path = (root / f"{self.name}.json") if root is not None else None
        self._file_lock: FileLock | None = None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._file_lock = FileLock(str(self._path) + ".lock")
            self._load()

    def _load(self) -> None:
        if self._path is None:
            return
        records: dict[str, T] = {}
        data: dict[str, Any] = {}
        if self._path.exists():
            data = json.loads(self._path.read_text(encoding="utf-8"))
            for payload in data.get("records", []):
                record = self.model.from_dict(payload)
                records[record.id] = record
        self._records = records
        self._restore(data)
        logger.debug("Loaded %d %s records from %s", len(records), self.kind, self._path)

    def _restore(self, data: dict[str, Any]) -> None:
        """Hook for collection-level fields stored beside the records."""

    def _header(self) -> dict[str, Any]:
        return {}

    def _save(self) -> None:
        if self._path is None:
            return
        data = {
            "version": 1,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            **self._header(),
            "records": [record.to_dict() for record in self._records.values()],
        }
        tmp_path = self._path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        tmp_path.replace(self._path)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Hold the store exclusively, across threads and processes.

        The outermost entry reloads the on-disk state, so a read-modify-write
        inside the block (a compare-and-set such as the scheduler's claim)
        sees every write committed by another handle. Nested entries reuse
        the held locks.
        """
        with self.lock:
            if self._depth or self._file_lock is None:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return
            with self._file_lock:
                self._load()
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1

    def _fresh(self) -> dict[str, T]:
        # Caller holds self.lock
        if not self._depth:
            self._load()
        return self._records

    def new_id(self) -> str:
        return new_id(self.id_prefix, lambda candidate: candidate in self._records)

    def get(self, record_id: str) -> T | None:
        with self.lock:
            return self._fresh().get(record_id)

    def require(self, record_id: str) -> T:
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(self.kind, record_id)
        return record

    def exists(self, record_id: str) -> bool:
        with self.lock:
            return record_id in self._fresh()

    def all(self) -> List[T]:
        with self.lock:
            return list(self._fresh().values())

    def put(self, record: T) -> T:
        with self.transaction():
            self._records[record.id] = record
            self._save()
        return record

    def put_many(self, records: Iterable[T]) -> None:
        with self.transaction():
            for record in records:
                self._records[record.id] = record
            self._save()

    def remove(self, record_id: str) -> bool:
        with self.transaction():
            if self._records.pop(record_id, None) is None:
                return False
            self._save()
            return True

    def __len__(self) -> int:
        with self.lock:
            return len(self._fresh())


_SOURCE_FIELDS = {
    "name", "source_type", "base_url", "crawl_pattern", "file_types",
    "max_depth", "crawl_delay_ms", "grade", "is_active", "description",
}


def _normalize_file_types(value: Any) -> List[str]:
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValidationError("file_types must be a list or comma-separated string")
    return [str(v).strip().lower().lstrip(".") for v in value if str(v).strip()]


def _validate_source(source: Source) -> None:
    for name in ("name", "source_type", "base_url"):
        value = getattr(source, name)
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"'{name}' is required", field=name)
    if not is_valid_http_url(source.base_url):
        raise ValidationError("base_url must be an http(s) URL", field="base_url")
    if not isinstance(source.max_depth, int) or source.max_depth < 0:
        raise ValidationError("max_depth must be a non-negative integer", field="max_depth")
    if not isinstance(source.crawl_delay_ms, int) or source.crawl_delay_ms < 0:
        raise ValidationError("crawl_delay_ms must be a non-negative integer", field="crawl_delay_ms")
    if source.grade not in SOURCE_GRADES:
        raise ValidationError(f"grade must be one of {SOURCE_GRADES}", field="grade")
    if source.crawl_pattern:
        try:
            re.compile(source.crawl_pattern)
        except re.error as exc:
            raise ValidationError(f"crawl_pattern is not a valid regex: {exc}", field="crawl_pattern") from exc


class SourceRegistry(RecordStore[Source]):
    """Crawl-target configuration: CRUD plus validation.

    Deleting or deactivating a source never touches its historical jobs or
    items; it only drops the source from future batch resolution.
    """

    name = "sources"
    kind = "source"
    id_prefix = "src"
    model = Source

    def create(self, **fields: Any) -> Source:
        unknown = set(fields) - _SOURCE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown source fields: {sorted(unknown)}")
        for name in ("name", "source_type", "base_url"):
            if name not in fields:
                raise ValidationError(f"'{name}' is required", field=name)
        if "file_types" in fields and fields["file_types"] is not None:
            fields["file_types"] = _normalize_file_types(fields["file_types"])
        else:
            fields.pop("file_types", None)

        with self.transaction():
            source = Source(id=self.new_id(), **fields)
            _validate_source(source)
            self.put(source)
        logger.info("Registered source %s (%s)", source.id, source.name)
        return source

    def update(self, source_id: str, **fields: Any) -> Source:
        unknown = set(fields) - _SOURCE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown source fields: {sorted(unknown)}")
        if "file_types" in fields:
            fields["file_types"] = _normalize_file_types(fields["file_types"])

        with self.transaction():
            current = self.require(source_id)
            candidate = Source.from_dict({**current.to_dict(), **fields})
            candidate.updated_at = utcnow()
            _validate_source(candidate)
            return self.put(candidate)

    def deactivate(self, source_id: str) -> Source:
        return self.update(source_id, is_active=False)

    def delete(self, source_id: str) -> None:
        with self.transaction():
            self.require(source_id)
            self.remove(source_id)
        logger.info("Deleted source %s", source_id)

    def list(self, active: bool | None = None) -> List[Source]:
        sources = [s for s in self.all() if active is None or s.is_active == active]
        return sorted(sources, key=lambda s: s.created_at)


class BatchStore(RecordStore[Batch]):
    name = "batches"
    kind = "batch"
    id_prefix = "batch"
    model = Batch


class JobStore(RecordStore[Job]):
    name = "jobs"
    kind = "job"
    id_prefix = "job"
    model = Job

    def list(self, source_id: str | None = None, status: str | None = None) -> List[Job]:
        jobs = [
            job for job in self.all()
            if (source_id is None or job.source_id == source_id)
            and (status is None or job.status == status)
        ]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)


class ItemStore(RecordStore[Item]):
    name = "items"
    kind = "item"
    id_prefix = "item"
    model = Item

    def list(
        self,
        source_id: str | None = None,
        job_id: str | None = None,
        status: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[Item]:
        if status is not None and status not in ITEM_STATUSES:
            raise ValidationError(f"Unknown item status: {status}")
        items = [
            item for item in self.all()
            if (source_id is None or item.source_id == source_id)
            and (job_id is None or item.job_id == job_id)
            and (status is None or item.status == status)
        ]
        items.sort(key=lambda i: i.created_at, reverse=True)
        return paginate(items, page, limit)


class CrawlLogStore(RecordStore[CrawlLogEntry]):
    """Append-only crawl log.

    Entries are never updated; the only deletion path is the age-based
    ``purge``. Reads select newest-first and return each page oldest-first.
    """

    name = "logs"
    kind = "log"
    id_prefix = "log"
    model = CrawlLogEntry

    def __init__(self, root: Path | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self._seq = 0
        super().__init__(root)
        self._clock = clock

    def _restore(self, data: dict[str, Any]) -> None:
        # The high-water mark survives a purge that empties the log
        newest = max((entry.seq for entry in self._records.values()), default=0)
        self._seq = max(int(data.get("last_seq", 0)), newest)

    def _header(self) -> dict[str, Any]:
        return {"last_seq": self._seq}

    def append(
        self,
        job_id: str,
        level: str,
        action: str,
        message: str,
        details: dict[str, Any] | None = None,
        url: str | None = None,
    ) -> CrawlLogEntry:
        for name, value in (("job_id", job_id), ("level", level), ("action", action), ("message", message)):
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"'{name}' is required", field=name)
        level = level.upper()
        if level not in LOG_LEVELS:
            raise ValidationError(f"level must be one of {LOG_LEVELS}", field="level")

        with self.transaction():
            self._seq += 1
            entry = CrawlLogEntry(
                id=self.new_id(),
                seq=self._seq,
                job_id=job_id,
                level=level,
                action=action,
                message=message,
                details=details,
                url=url,
                created_at=self._clock(),
            )
            self.put(entry)
        return entry

    def _newest_first(
        self,
        level: str | None = None,
        action: str | None = None,
        job_id: str | None = None,
    ) -> List[CrawlLogEntry]:
        entries = [
            e for e in self.all()
            if (level is None or e.level == level.upper())
            and (action is None or e.action == action)
            and (job_id is None or e.job_id == job_id)
        ]
        entries.sort(key=lambda e: (e.created_at, e.seq), reverse=True)
        return entries

    def page(
        self,
        page: int = 1,
        limit: int = 100,
        level: str | None = None,
        action: str | None = None,
        job_id: str | None = None,
    ) -> Page[CrawlLogEntry]:
        result = paginate(self._newest_first(level, action, job_id), page, limit)
        result.items.reverse()
        return result

    def recent(self, level: str | None = None, limit: int = 100) -> List[CrawlLogEntry]:
        """The ``limit`` newest entries, newest first."""
        return self._newest_first(level=level)[:limit]

    def purge(self, days_old: int = 30, now: datetime | None = None) -> int:
        if not isinstance(days_old, int) or days_old < 0:
            raise ValidationError("days_old must be a non-negative integer", field="days_old")
        cutoff = (now or self._clock()) - timedelta(days=days_old)
        with self.transaction():
            stale = [entry_id for entry_id, e in self._records.items() if e.created_at < cutoff]
            for entry_id in stale:
                del self._records[entry_id]
            if stale:
                self._save()
        logger.info("Purged %d log entries older than %d days", len(stale), days_old)
        return len(stale)


class ProblemStore(RecordStore[Problem]):
    name = "problems"
    kind = "problem"
    id_prefix = "prob"
    model = Problem

    def sample_recent(self, limit: int = 500) -> List[Problem]:
        """Most recent non-archived problems, newest first, at most ``limit`` (<= 500)."""
        limit = max(0, min(limit, 500))
        problems = [p for p in self.all() if not p.is_archived]
        problems.sort(key=lambda p: p.created_at, reverse=True)
        return problems[:limit]

    def pending(self, stage: str | None = None) -> List[Problem]:
        """PENDING problems awaiting review; ``stage`` filters by the stage awaited."""
        if stage is not None and stage not in (STAGE_NONE,) + REVIEW_STAGES:
            raise ValidationError(f"Unknown review stage: {stage}")
        problems = [
            p for p in self.all()
            if p.status == PROBLEM_PENDING and not p.is_archived
            and (stage is None or p.review_stage == stage)
        ]
        return sorted(problems, key=lambda p: p.created_at)


class ReviewStore(RecordStore[ReviewRecord]):
    name = "reviews"
    kind = "review"
    id_prefix = "rev"
    model = ReviewRecord

    def for_problem(self, problem_id: str) -> List[ReviewRecord]:
        records = [r for r in self.all() if r.problem_id == problem_id]
        return sorted(records, key=lambda r: r.created_at)


@dataclass
class Stores:
    """All collections for one data root."""

    sources: SourceRegistry = field(default_factory=SourceRegistry)
    batches: BatchStore = field(default_factory=BatchStore)
    jobs: JobStore = field(default_factory=JobStore)
    items: ItemStore = field(default_factory=ItemStore)
    logs: CrawlLogStore = field(default_factory=CrawlLogStore)
    problems: ProblemStore = field(default_factory=ProblemStore)
    reviews: ReviewStore = field(default_factory=ReviewStore)


def open_stores(root: Path | None = None) -> Stores:
    """Open every collection under ``root`` (in memory when None)."""
    if root is None:
        return Stores()
    root = root if root.is_absolute() else root.resolve()
    return Stores(
        sources=SourceRegistry(root),
        batches=BatchStore(root),
        jobs=JobStore(root),
        items=ItemStore(root),
        logs=CrawlLogStore(root),
        problems=ProblemStore(root),
        reviews=ReviewStore(root),
    )
