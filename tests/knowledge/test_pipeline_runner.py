"""Tests for the scheduler loop in harvester/knowledge/pipeline/runner.py."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from harvester.errors import NotFoundError
from harvester.knowledge.models import BATCH_DONE, BATCH_QUEUED, JOB_FAILED, JOB_SUCCESS, Job
from harvester.knowledge.pipeline.config import PipelineConfig
from harvester.knowledge.pipeline.runner import (
    TickResult,
    build_runtime,
    run_loop,
    run_source,
    run_tick,
)
from harvester.knowledge.pipeline.scheduler import BatchScheduler
from harvester.knowledge.storage import open_stores

NOW = datetime(2026, 5, 4, 9, 30, tzinfo=timezone(timedelta(hours=9)))


def _setup():
    stores = open_stores(None)
    scheduler = BatchScheduler(stores, clock=lambda: NOW)
    source = stores.sources.create(name="Archive", source_type="pdf_archive", base_url="https://files.example.com")
    executor = MagicMock()
    executor.run_sources.side_effect = lambda sources, batch_id=None: [
        Job(id=f"job_{i}", source_id=s.id, batch_id=batch_id, status=JOB_SUCCESS, items_found=3)
        for i, s in enumerate(sources)
    ]
    return stores, scheduler, executor, source


class TestRunTick:
    """Tests for run_tick."""

    def test_nothing_due(self) -> None:
        _, scheduler, executor, _ = _setup()

        assert run_tick(scheduler, executor) is None
        executor.run_sources.assert_not_called()

    def test_claims_runs_and_releases(self) -> None:
        _, scheduler, executor, source = _setup()
        batch = scheduler.create("Daily", [source.id], schedule="daily")

        result = run_tick(scheduler, executor)

        executor.run_sources.assert_called_once()
        assert [s.id for s in executor.run_sources.call_args.args[0]] == [source.id]
        assert result.batch_id == batch.id
        assert result.succeeded == 1
        assert result.items_found == 3
        assert result.batch_status == BATCH_QUEUED
        assert result.next_run_at == NOW + timedelta(days=1)

    def test_batch_released_when_execution_raises(self) -> None:
        _, scheduler, executor, source = _setup()
        batch = scheduler.create("Once", [source.id])
        executor.run_sources.side_effect = RuntimeError("pool died")

        with pytest.raises(RuntimeError):
            run_tick(scheduler, executor)

        assert scheduler.get(batch.id).status == BATCH_DONE


class TestRunLoop:
    def test_sleeps_only_when_idle(self) -> None:
        _, scheduler, executor, source = _setup()
        scheduler.create("Once", [source.id])
        sleeps: list[float] = []

        results = run_loop(scheduler, executor, interval_seconds=5, max_ticks=3, sleep=sleeps.append)

        assert len(results) == 1
        assert sleeps == [5, 5]


class TestTickResult:
    def test_summary_and_dict(self) -> None:
        started = datetime(2026, 5, 4, 0, 0, tzinfo=timezone.utc)
        result = TickResult(
            batch_id="batch_1",
            batch_name="Nightly",
            started_at=started,
            completed_at=started + timedelta(seconds=12),
            jobs=[
                Job(id="job_1", source_id="src_1", status=JOB_SUCCESS, items_found=2),
                Job(id="job_2", source_id="src_2", status=JOB_FAILED),
            ],
            batch_status=BATCH_QUEUED,
        )

        assert result.duration_seconds == 12.0
        assert result.to_dict()["failed"] == 1
        assert "Jobs: 2 (1 succeeded, 1 failed)" in result.summary()


class TestRunSource:
    def test_runs_single_job(self) -> None:
        stores, _, executor, source = _setup()
        executor.run_job.return_value = Job(id="job_x", source_id=source.id, status=JOB_SUCCESS)

        job = run_source(executor, stores, source.id)

        executor.run_job.assert_called_once_with(source)
        assert job.id == "job_x"

    def test_unknown_source(self) -> None:
        stores, _, executor, _ = _setup()

        with pytest.raises(NotFoundError):
            run_source(executor, stores, "src_missing")


class TestBuildRuntime:
    def test_wires_shared_session_and_politeness(self) -> None:
        stores = open_stores(None)
        session = MagicMock()
        config = PipelineConfig(worker_count=2)

        runtime = build_runtime(stores, config, session=session)

        assert runtime.resolver.session is session
        assert runtime.fetcher.session is session
        assert runtime.fetcher.timeout == config.politeness.page_timeout
        assert runtime.resolver.timeout == config.politeness.robots_timeout
        assert runtime.executor.resolver is runtime.resolver
        assert runtime.resolver.throttle is runtime.executor.throttle
        assert runtime.executor.config.worker_count == 2
        assert runtime.scheduler.stores is stores
