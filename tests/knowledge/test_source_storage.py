"""Tests for the source registry and JSON-backed record stores."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from harvester.errors import NotFoundError, ValidationError
from harvester.knowledge.models import ITEM_PARSED, Item, Job
from harvester.knowledge.storage import MAX_PAGE_SIZE, SourceRegistry, open_stores, paginate


def _registry() -> SourceRegistry:
    return SourceRegistry()


class TestSourceRegistry:
    """Tests for SourceRegistry CRUD and validation."""

    def test_create_applies_defaults(self) -> None:
        source = _registry().create(name="Board", source_type="board", base_url="https://board.example.com")

        assert source.id.startswith("src_")
        assert source.file_types == ["pdf", "hwp"]
        assert source.max_depth == 2
        assert source.crawl_delay_ms == 1000
        assert source.grade == "D"
        assert source.is_active

    def test_file_types_are_normalized(self) -> None:
        source = _registry().create(
            name="Board", source_type="board", base_url="https://board.example.com", file_types=".PDF, Hwp",
        )

        assert source.file_types == ["pdf", "hwp"]

    @pytest.mark.parametrize(
        "fields",
        [
            {"name": ""},
            {"base_url": "ftp://files.example.com"},
            {"max_depth": -1},
            {"crawl_delay_ms": 1.5},
            {"grade": "F"},
            {"crawl_pattern": "(unclosed"},
            {"colour": "blue"},
        ],
    )
    def test_create_validation(self, fields: dict) -> None:
        values = {"name": "Board", "source_type": "board", "base_url": "https://board.example.com"}
        values.update(fields)

        with pytest.raises(ValidationError):
            _registry().create(**values)

    def test_missing_required_field(self) -> None:
        with pytest.raises(ValidationError):
            _registry().create(name="Board", source_type="board")

    def test_update_validates_before_writing(self) -> None:
        registry = _registry()
        source = registry.create(name="Board", source_type="board", base_url="https://board.example.com")

        with pytest.raises(ValidationError):
            registry.update(source.id, max_depth=-3)

        assert registry.require(source.id).max_depth == 2

    def test_update(self) -> None:
        registry = _registry()
        source = registry.create(name="Board", source_type="board", base_url="https://board.example.com")

        updated = registry.update(source.id, grade="A", crawl_delay_ms=2500)

        assert updated.grade == "A"
        assert updated.crawl_delay_seconds == 2.5
        assert updated.updated_at >= source.updated_at

    def test_deactivate_and_list(self) -> None:
        registry = _registry()
        first = registry.create(name="One", source_type="board", base_url="https://one.example.com")
        second = registry.create(name="Two", source_type="board", base_url="https://two.example.com")

        registry.deactivate(first.id)

        assert [s.id for s in registry.list()] == [first.id, second.id]
        assert [s.id for s in registry.list(active=True)] == [second.id]
        assert [s.id for s in registry.list(active=False)] == [first.id]

    def test_delete(self) -> None:
        registry = _registry()
        source = registry.create(name="Board", source_type="board", base_url="https://board.example.com")

        registry.delete(source.id)

        with pytest.raises(NotFoundError):
            registry.delete(source.id)


class TestPersistence:
    def test_round_trip_through_data_root(self, tmp_path: Path) -> None:
        stores = open_stores(tmp_path)
        source = stores.sources.create(name="Board", source_type="board", base_url="https://board.example.com")
        stores.jobs.put(Job(id="job_1", source_id=source.id))

        reopened = open_stores(tmp_path)

        assert reopened.sources.require(source.id).name == "Board"
        assert reopened.jobs.require("job_1").source_id == source.id

    def test_file_layout(self, tmp_path: Path) -> None:
        stores = open_stores(tmp_path)
        stores.sources.create(name="Board", source_type="board", base_url="https://board.example.com")

        payload = json.loads((tmp_path / "sources.json").read_text(encoding="utf-8"))

        assert payload["version"] == 1
        assert len(payload["records"]) == 1
        assert not (tmp_path / "sources.json.tmp").exists()

    def test_log_sequence_continues_after_reopen(self, tmp_path: Path) -> None:
        open_stores(tmp_path).logs.append("job_1", "INFO", "START", "first")

        entry = open_stores(tmp_path).logs.append("job_1", "INFO", "COMPLETE", "second")

        assert entry.seq == 2

    def test_write_from_another_handle_survives_a_save(self, tmp_path: Path) -> None:
        serve = open_stores(tmp_path)
        cli = open_stores(tmp_path)
        source = cli.sources.create(name="Board", source_type="board", base_url="https://board.example.com")

        serve.jobs.put(Job(id="job_1", source_id=source.id))
        cli.sources.deactivate(source.id)
        serve.sources.create(name="Other", source_type="board", base_url="https://other.example.com")

        reopened = open_stores(tmp_path)
        assert reopened.sources.require(source.id).is_active is False
        assert len(reopened.sources) == 2
        assert serve.sources.require(source.id).is_active is False

    def test_log_sequence_survives_a_full_purge(self, tmp_path: Path) -> None:
        logs = open_stores(tmp_path).logs
        logs.append("job_1", "INFO", "START", "first")
        logs.append("job_1", "INFO", "COMPLETE", "second")
        logs.purge(days_old=0, now=datetime.now(timezone.utc) + timedelta(days=1))

        entry = open_stores(tmp_path).logs.append("job_2", "INFO", "START", "third")

        assert entry.seq == 3


class TestPagination:
    def test_pages(self) -> None:
        page = paginate(list(range(45)), page=3, limit=20)

        assert page.items == list(range(40, 45))
        assert page.total_pages == 3

    @pytest.mark.parametrize("page,limit", [(0, 20), (1, 0), (1, MAX_PAGE_SIZE + 1)])
    def test_bounds(self, page: int, limit: int) -> None:
        with pytest.raises(ValidationError):
            paginate([], page, limit)

    def test_item_listing_filters(self) -> None:
        stores = open_stores(None)
        stores.items.put(Item(id="i1", job_id="j1", source_id="s1", url="https://a.example.com/1.pdf"))
        stores.items.put(Item(id="i2", job_id="j2", source_id="s1", url="https://a.example.com/2.pdf", status=ITEM_PARSED))

        assert [i.id for i in stores.items.list(status=ITEM_PARSED).items] == ["i2"]
        assert stores.items.list(source_id="s1").total == 2
        assert stores.items.list(job_id="j1").to_dict()["pagination"]["total"] == 1
        with pytest.raises(ValidationError):
            stores.items.list(status="LOST")
