"""Tests for the harvester CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from unittest.mock import patch

import pytest

import main
from harvester.knowledge.models import ITEM_IMPORTED, ITEM_PARSED, Item
from harvester.knowledge.storage import open_stores


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("HARVESTER_ACTOR", "HARVESTER_ROLE", "HARVESTER_CONFIG", "HARVESTER_DATA_ROOT"):
        monkeypatch.delenv(name, raising=False)


def _run(tmp_path: Path, *argv: str) -> int:
    group, sub, *rest = argv
    return main.main([group, sub, "--data-root", str(tmp_path), *rest])


def _json_out(capsys: pytest.CaptureFixture[str]):
    return json.loads(capsys.readouterr().out)


def _error(capsys: pytest.CaptureFixture[str]) -> dict:
    err = capsys.readouterr().err.strip().splitlines()
    return json.loads(err[-1])


def _add_source(tmp_path: Path, capsys, name: str = "Board") -> dict:
    exit_code = _run(
        tmp_path, "sources", "add", "--json",
        "--name", name, "--type", "board", "--url", "https://board.example.com",
        "--file-types", "pdf,hwp", "--grade", "b",
    )
    assert exit_code == 0
    return _json_out(capsys)


class TestSourceCommands:
    """Tests for sources subcommands."""

    def test_add_and_list(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)

        assert source["grade"] == "B"
        assert (tmp_path / "sources.json").exists()

        assert _run(tmp_path, "sources", "list") == 0
        out = capsys.readouterr().out
        assert source["id"] in out
        assert "[B] Board (active)" in out

    def test_update_and_deactivate(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)

        assert _run(tmp_path, "sources", "update", source["id"], "--json", "--max-depth", "4", "--deactivate") == 0

        updated = _json_out(capsys)
        assert updated["max_depth"] == 4
        assert updated["is_active"] is False

    def test_remove(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)

        assert _run(tmp_path, "sources", "remove", source["id"]) == 0
        assert _run(tmp_path, "sources", "remove", source["id"]) == 1
        assert _error(capsys)["code"] == "NOT_FOUND"

    def test_validation_error_is_reported(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = _run(tmp_path, "sources", "add", "--name", "Bad", "--type", "board", "--url", "ftp://x.example.com")

        assert exit_code == 1
        assert _error(capsys)["code"] == "VALIDATION_ERROR"

    def test_operator_cannot_add_sources(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = _run(
            tmp_path, "sources", "add", "--role", "operator",
            "--name", "Board", "--type", "board", "--url", "https://board.example.com",
        )

        assert exit_code == 1
        error = _error(capsys)
        assert error["code"] == "FORBIDDEN"
        assert error["details"]["permission"] == "manage_source"
        assert not (tmp_path / "sources.json").exists()

    def test_role_from_environment(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("HARVESTER_ROLE", "QUALITY_MANAGER")

        assert _run(tmp_path, "sources", "add", "--name", "B", "--type", "board", "--url", "https://b.example.com") == 1
        assert _error(capsys)["code"] == "FORBIDDEN"

    def test_test_crawl_command(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        report = {
            "success": False,
            "url": "https://board.example.com/private/page",
            "elapsedMs": 3,
            "robots": {"exists": True, "isAllowed": False, "crawlDelay": None, "disallowedPaths": ["/private/"]},
            "page": None,
            "error": "Disallowed by robots.txt",
        }
        with patch("harvester.knowledge.pipeline.crawl_check.test_crawl", return_value=report) as crawl:
            exit_code = _run(tmp_path, "sources", "test", "--url", "https://board.example.com/private/page")

        assert exit_code == 0
        assert crawl.call_args.kwargs["url"] == "https://board.example.com/private/page"
        out = capsys.readouterr().out
        assert "allowed=False" in out
        assert "Disallowed by robots.txt" in out


class TestBatchCommands:
    def test_create_run_and_list(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)

        assert _run(tmp_path, "batches", "create", "--json", "--name", "Nightly", "--source", source["id"], "--night") == 0
        batch = _json_out(capsys)
        assert batch["is_night_mode"] is True

        assert _run(tmp_path, "batches", "run", batch["id"], "--json") == 0
        assert _json_out(capsys)["priority"] == 100

        assert _run(tmp_path, "batches", "list", "--json", "--status", "queued") == 0
        listing = _json_out(capsys)
        assert [b["id"] for b in listing["items"]] == [batch["id"]]
        assert listing["pagination"]["total"] == 1

    def test_priority_out_of_range(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)
        _run(tmp_path, "batches", "create", "--json", "--name", "Once", "--source", source["id"])
        batch = _json_out(capsys)

        assert _run(tmp_path, "batches", "priority", batch["id"], "101") == 1
        assert _error(capsys)["code"] == "VALIDATION_ERROR"

    def test_unknown_member_source(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(tmp_path, "batches", "create", "--name", "X", "--source", "src_missing") == 1
        assert _error(capsys)["code"] == "NOT_FOUND"


class TestPipelineCommands:
    def test_tick_with_nothing_due(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(tmp_path, "pipeline", "tick", "--json") == 0
        assert _json_out(capsys) == {"claimed": False}

    def test_operator_cannot_crawl(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(tmp_path, "pipeline", "tick", "--role", "OPERATOR") == 1
        assert _error(capsys)["code"] == "FORBIDDEN"


class TestItemAndReviewCommands:
    """Import, automatic review and manual review through the CLI."""

    def _seed_item(self, tmp_path: Path, source_id: str) -> None:
        stores = open_stores(tmp_path)
        stores.items.put(Item(
            id="item_1",
            job_id="job_1",
            source_id=source_id,
            url="https://board.example.com/exam.pdf",
            status=ITEM_PARSED,
            parsed_data={
                "problems": [{"content": "What is 2 + 2? Explain briefly.", "answer": "4"}],
                "metadata": {},
            },
        ))

    def test_import_then_review(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)
        self._seed_item(tmp_path, source["id"])

        assert _run(tmp_path, "items", "import", "item_1", "--json", "--subject-id", "math") == 0
        [problem_id] = _json_out(capsys)["imported"]["item_1"]
        assert open_stores(tmp_path).items.require("item_1").status == ITEM_IMPORTED

        assert _run(tmp_path, "review", "auto", "--json") == 0
        [record] = _json_out(capsys)
        assert record["outcome"] == "APPROVED"

        assert _run(tmp_path, "review", "pending", "--json", "--stage", "AI") == 0
        pending = _json_out(capsys)
        assert [p["id"] for p in pending["items"]] == [problem_id]
        assert pending["stats"]["awaiting"]["AI"] == 1

        exit_code = _run(
            tmp_path, "review", "submit", problem_id, "--json",
            "--stage", "AI", "--outcome", "REJECTED", "--issue", "AMBIGUOUS",
        )
        assert exit_code == 0
        assert _json_out(capsys)["problem"]["status"] == "REJECTED"

        assert _run(tmp_path, "review", "history", problem_id, "--json") == 0
        assert [r["stage"] for r in _json_out(capsys)] == ["AUTO", "AI"]

    def test_operator_cannot_reject(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code = _run(
            tmp_path, "review", "submit", "prob_x", "--role", "OPERATOR",
            "--stage", "AUTO", "--outcome", "REJECTED",
        )

        assert exit_code == 1
        assert _error(capsys)["details"]["permission"] == "reject_items"

    def test_wrong_stage_is_an_invalid_transition(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        source = _add_source(tmp_path, capsys)
        self._seed_item(tmp_path, source["id"])
        _run(tmp_path, "items", "import", "item_1", "--json")
        [problem_id] = _json_out(capsys)["imported"]["item_1"]

        exit_code = _run(tmp_path, "review", "submit", problem_id, "--stage", "MANUAL", "--outcome", "APPROVED")

        assert exit_code == 1
        assert _error(capsys)["code"] == "INVALID_TRANSITION"

    def test_import_failure_exit_code(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(tmp_path, "items", "import", "item_missing", "--json") == 1
        assert "item_missing" in _json_out(capsys)["failed"]


class TestLogAndDashboardCommands:
    def test_logs_list(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        logs = open_stores(tmp_path).logs
        logs.append("job_1", "ERROR", "TIMEOUT", "timed out")
        logs.append("job_1", "INFO", "COMPLETE", "done")

        assert _run(tmp_path, "logs", "list", "--json", "--level", "error") == 0
        listing = _json_out(capsys)
        assert [e["action"] for e in listing["items"]] == ["TIMEOUT"]

    def test_purge_requires_settings_permission(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert _run(tmp_path, "logs", "purge", "--role", "DATA_MANAGER") == 1
        assert _error(capsys)["code"] == "FORBIDDEN"

        assert _run(tmp_path, "logs", "purge", "--json", "--days-old", "7") == 0
        assert _json_out(capsys) == {"deleted": 0, "days_old": 7}

    def test_dashboard(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        _add_source(tmp_path, capsys)

        assert _run(tmp_path, "dashboard", "show", "--json") == 0
        report = _json_out(capsys)
        assert report["kpi"]["items_today"] == 0
        assert report["source_stats"][0]["status"] == "NORMAL"
        assert report["degraded"] == []
