"""Batch scheduling with single-flight execution per batch.

Batches are ordered by ``(priority desc, created_at asc)``. ``tick`` picks
the first QUEUED batch that is due and flips it to RUNNING inside a batch
store transaction, which reloads the on-disk state under an inter-process
file lock. That compare-and-set is the mutual-exclusion mechanism: a
RUNNING batch is invisible to later ticks, from this process or any other
sharing the data root, until ``complete`` moves it on.

Pausing is cooperative. Pausing a QUEUED batch takes effect at once;
pausing a RUNNING batch is recorded and applied when the run completes,
never interrupting jobs already in flight.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, tzinfo
from functools import lru_cache
from typing import Any, Callable, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from harvester.config import get_config
from harvester.errors import InvalidTransition, ValidationError
from harvester.knowledge.models import (
    BATCH_DONE,
    BATCH_PAUSED,
    BATCH_QUEUED,
    BATCH_RUNNING,
    BATCH_STATUSES,
    Batch,
    Source,
)
from harvester.knowledge.storage import Page, Stores, paginate

from .config import SCHEDULE_INTERVALS, get_schedule_interval

logger = logging.getLogger(__name__)

# Priority given by the "run" action. It is also the highest priority an
# operator may assign, so a run-now batch is never behind an ordinary one.
RUN_NOW_PRIORITY = 100
MIN_PRIORITY = 0

# Local wall-clock hour at which night-mode batches start
NIGHT_RUN_HOUR = 22

BATCH_ACTIONS = ("pause", "resume", "run")
FILTER_KEYS = ("source_types", "grades")

SYSTEM_ZONE_FILE = "/etc/localtime"


@lru_cache(maxsize=None)
def _load_zone(name: str | None) -> tzinfo:
    if name:
        try:
            return ZoneInfo(name.lstrip(":"))
        except (ZoneInfoNotFoundError, ValueError) as exc:
            logger.warning("Unknown timezone %r (%s), using the system zone", name, exc)
    try:
        with open(SYSTEM_ZONE_FILE, "rb") as handle:
            return ZoneInfo.from_file(handle, key="localtime")
    except (OSError, ValueError):
        logger.warning("No system zone file at %s, using a fixed UTC offset", SYSTEM_ZONE_FILE)
        return datetime.now().astimezone().tzinfo


def local_timezone(name: str | None = None) -> tzinfo:
    """Zone whose wall clock anchors night runs and the dashboard day.

    Resolution order: ``name``, the ``timezone`` config key, ``TZ``, then
    the system zone file. The result carries DST rules, so wall-clock
    arithmetic such as "tomorrow at 22:00" stays at 22:00 across a switch.
    """
    return _load_zone(name or get_config().timezone or os.environ.get("TZ") or None)


def local_now() -> datetime:
    return datetime.now(local_timezone())


def next_night_run(now: datetime) -> datetime:
    """Next 22:00:00 local to ``now``'s timezone, at or after ``now``.

    Today's 22:00 if it has not passed yet, otherwise tomorrow's. The day
    is added on the wall clock, so with a zone-aware ``now`` (see
    ``local_timezone``) the result is 22:00:00 even across a DST switch.
    """
    target = now.replace(hour=NIGHT_RUN_HOUR, minute=0, second=0, microsecond=0)
    if target < now:
        target = target + timedelta(days=1)
    return target


def batch_sort_key(batch: Batch) -> tuple:
    return (-batch.priority, batch.created_at, batch.id)


@dataclass
class BatchClaim:
    """A batch claimed by ``tick`` together with its resolved sources."""

    batch: Batch
    sources: List[Source] = field(default_factory=list)


def _validate_priority(priority: Any) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority must be an integer", field="priority")
    if not MIN_PRIORITY <= priority <= RUN_NOW_PRIORITY:
        raise ValidationError(
            f"priority must be between {MIN_PRIORITY} and {RUN_NOW_PRIORITY}",
            field="priority",
        )
    return priority


def _validate_filters(filters: Any) -> dict[str, list[str]]:
    if filters is None:
        return {}
    if not isinstance(filters, dict):
        raise ValidationError("filters must be an object", field="filters")
    unknown = set(filters) - set(FILTER_KEYS)
    if unknown:
        raise ValidationError(f"Unknown filter keys: {sorted(unknown)}", field="filters")
    cleaned: dict[str, list[str]] = {}
    for key, values in filters.items():
        if not isinstance(values, (list, tuple)) or not all(isinstance(v, str) for v in values):
            raise ValidationError(f"filter '{key}' must be a list of strings", field="filters")
        if values:
            cleaned[key] = list(values)
    return cleaned


class BatchScheduler:
    """Creates, mutates and dispatches batches.

    Args:
        stores: Store bundle (batches and sources are used).
        clock: Returns the current timezone-aware local time.
    """

    def __init__(self, stores: Stores, clock: Callable[[], datetime] = local_now) -> None:
        self.stores = stores
        self.clock = clock

    def create(
        self,
        name: str,
        source_ids: List[str],
        schedule: str | None = None,
        is_night_mode: bool = False,
        priority: int = 0,
        filters: dict | None = None,
        description: str = "",
    ) -> Batch:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("'name' is required", field="name")
        if not source_ids:
            raise ValidationError("'source_ids' must not be empty", field="source_ids")
        if schedule is not None and schedule not in SCHEDULE_INTERVALS:
            raise ValidationError(
                f"schedule must be one of {sorted(SCHEDULE_INTERVALS)}",
                field="schedule",
            )
        priority = _validate_priority(priority)
        filters = _validate_filters(filters)

        unique_ids = list(dict.fromkeys(source_ids))
        for source_id in unique_ids:
            self.stores.sources.require(source_id)

        now = self.clock()
        if is_night_mode:
            next_run_at = next_night_run(now)
        elif schedule:
            next_run_at = now
        else:
            next_run_at = None

        with self.stores.batches.transaction():
            batch = Batch(
                id=self.stores.batches.new_id(),
                name=name.strip(),
                source_ids=unique_ids,
                schedule=schedule,
                is_night_mode=bool(is_night_mode),
                priority=priority,
                filters=filters,
                description=description,
                created_at=now,
                next_run_at=next_run_at,
            )
            self.stores.batches.put(batch)

        logger.info("Created batch %s (%s) with %d sources", batch.id, batch.name, len(unique_ids))
        return batch

    def get(self, batch_id: str) -> Batch:
        return self.stores.batches.require(batch_id)

    def list(self, status: str | None = None, page: int = 1, limit: int = 20) -> Page[Batch]:
        if status is not None and status not in BATCH_STATUSES:
            raise ValidationError(f"status must be one of {BATCH_STATUSES}", field="status")
        batches = [b for b in self.stores.batches.all() if status is None or b.status == status]
        batches.sort(key=batch_sort_key)
        return paginate(batches, page, limit)

    def mutate(
        self,
        batch_id: str,
        status: str | None = None,
        priority: int | None = None,
        action: str | None = None,
    ) -> Batch:
        """Apply a status edit, a priority edit, or an action.

        Only ``tick`` may set RUNNING. While a batch is RUNNING its status
        cannot be edited: ``pause`` is deferred to completion, ``resume``
        withdraws a deferred pause, and ``run`` is refused.
        """
        if status is None and priority is None and action is None:
            raise ValidationError("Nothing to change: give status, priority or action")
        if action is not None and status is not None:
            raise ValidationError("Give either status or action, not both")
        if action is not None and action not in BATCH_ACTIONS:
            raise ValidationError(f"action must be one of {BATCH_ACTIONS}", field="action")
        if action == "run" and priority is not None:
            raise ValidationError("'run' sets the priority itself", field="priority")
        if status is not None:
            if status not in BATCH_STATUSES:
                raise ValidationError(f"status must be one of {BATCH_STATUSES}", field="status")
            if status == BATCH_RUNNING:
                raise InvalidTransition("RUNNING is set by the scheduler only", field="status")
        if priority is not None:
            priority = _validate_priority(priority)

        with self.stores.batches.transaction():
            batch = self.stores.batches.require(batch_id)
            if batch.status == BATCH_RUNNING:
                self._mutate_running(batch, status, action)
            else:
                self._mutate_idle(batch, status, action)
            if priority is not None:
                batch.priority = priority
            self.stores.batches.put(batch)

        logger.info(
            "Batch %s mutated (status=%s priority=%s action=%s) -> %s",
            batch.id, status, priority, action, batch.status,
        )
        return batch

    def _mutate_running(self, batch: Batch, status: str | None, action: str | None) -> None:
        if status is not None:
            raise InvalidTransition(f"Batch {batch.id} is RUNNING; its status cannot be edited")
        if action == "pause":
            batch.pause_requested = True
        elif action == "resume":
            batch.pause_requested = False
        elif action == "run":
            raise InvalidTransition(f"Batch {batch.id} is already RUNNING")

    def _mutate_idle(self, batch: Batch, status: str | None, action: str | None) -> None:
        if action == "pause":
            if batch.status == BATCH_DONE:
                raise InvalidTransition(f"Batch {batch.id} is DONE and cannot be paused")
            batch.status = BATCH_PAUSED
        elif action == "resume":
            batch.status = BATCH_QUEUED
        elif action == "run":
            batch.status = BATCH_QUEUED
            batch.priority = RUN_NOW_PRIORITY
            if batch.next_run_at is not None:
                batch.next_run_at = min(batch.next_run_at, self.clock())
        elif status is not None:
            batch.status = status
        batch.pause_requested = False

    def delete(self, batch_id: str) -> None:
        with self.stores.batches.transaction():
            batch = self.stores.batches.require(batch_id)
            if batch.status == BATCH_RUNNING:
                raise InvalidTransition(f"Batch {batch.id} is RUNNING and cannot be deleted")
            self.stores.batches.remove(batch_id)
        logger.info("Deleted batch %s", batch_id)

    def resolve_sources(self, batch: Batch) -> List[Source]:
        """Active member sources that pass the batch filters, in member order."""
        types = set(batch.filters.get("source_types", []))
        grades = set(batch.filters.get("grades", []))
        resolved = []
        for source_id in batch.source_ids:
            source = self.stores.sources.get(source_id)
            if source is None or not source.is_active:
                continue
            if types and source.source_type not in types:
                continue
            if grades and source.grade not in grades:
                continue
            resolved.append(source)
        return resolved

    def due_batches(self, now: datetime | None = None) -> List[Batch]:
        now = now or self.clock()
        due = [
            b for b in self.stores.batches.all()
            if b.status == BATCH_QUEUED and (b.next_run_at is None or b.next_run_at <= now)
        ]
        return sorted(due, key=batch_sort_key)

    def tick(self, now: datetime | None = None) -> BatchClaim | None:
        """Claim the highest-priority due batch, or return None.

        The QUEUED -> RUNNING flip is a compare-and-set against the stored
        state, so two concurrent ticks (threads or processes) can never
        claim the same batch.
        """
        now = now or self.clock()
        with self.stores.batches.transaction():
            due = self.due_batches(now)
            if not due:
                return None
            batch = due[0]
            batch.status = BATCH_RUNNING
            batch.last_run_at = now
            batch.pause_requested = False
            self.stores.batches.put(batch)

        sources = self.resolve_sources(batch)
        logger.info("Tick claimed batch %s (priority %d, %d sources)", batch.id, batch.priority, len(sources))
        return BatchClaim(batch=batch, sources=sources)

    def complete(self, batch_id: str, now: datetime | None = None) -> Batch:
        """Release a RUNNING batch and compute its next run."""
        now = now or self.clock()
        with self.stores.batches.transaction():
            batch = self.stores.batches.require(batch_id)
            if batch.status != BATCH_RUNNING:
                raise InvalidTransition(f"Batch {batch.id} is {batch.status}, not RUNNING")

            if batch.is_night_mode:
                batch.next_run_at = next_night_run(now)
            elif batch.schedule:
                batch.next_run_at = now + get_schedule_interval(batch.schedule)
            else:
                batch.next_run_at = None

            if batch.pause_requested:
                batch.status = BATCH_PAUSED
                batch.pause_requested = False
            elif batch.is_repeating:
                batch.status = BATCH_QUEUED
            else:
                batch.status = BATCH_DONE
            self.stores.batches.put(batch)

        logger.info("Batch %s completed -> %s (next run %s)", batch.id, batch.status, batch.next_run_at)
        return batch
