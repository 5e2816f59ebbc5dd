"""Tests for importing parsed items into the problem corpus."""

from __future__ import annotations

import pytest

from harvester.errors import NotFoundError, ValidationError
from harvester.knowledge.importer import (
    DUPLICATE_REVIEWER,
    REASON_LOW_OCR_CONFIDENCE,
    REASON_POSSIBLE_DUPLICATE,
    ItemImporter,
)
from harvester.knowledge.models import (
    ITEM_IMPORTED,
    ITEM_NEW,
    ITEM_PARSED,
    OUTCOME_APPROVED,
    PROBLEM_APPROVED,
    PROBLEM_PENDING,
    PROBLEM_REJECTED,
    STAGE_AI,
    STAGE_AUTO,
    STAGE_MANUAL,
    Item,
    Problem,
)
from harvester.knowledge.review import ReviewPipeline
from harvester.knowledge.similarity import DuplicateGate
from harvester.knowledge.storage import open_stores

TRAIN = "A train travels 60 km in 2 hours. What is its speed?"
TRAIN_VARIANT = "A train travels 90 km in 2 hours. What is its speed?"
PHOTOSYNTHESIS = "광합성의 과정을 단계별로 서술하시오."


def _parsed(*contents: str) -> dict:
    return {
        "problems": [
            {"content": content, "answer": "45", "question_number": number}
            for number, content in enumerate(contents, start=1)
        ],
        "metadata": {"subject": "수학"},
    }


def _importer(gate: DuplicateGate | None = None, require_manual: bool = True):
    stores = open_stores(None)
    source = stores.sources.create(name="Exam archive", source_type="pdf_archive", base_url="https://exams.example.com", grade="B")
    pipeline = ReviewPipeline(stores, require_manual=require_manual)
    return ItemImporter(stores, gate or DuplicateGate(), pipeline), stores, source


def _add_item(stores, source, item_id: str = "item_1", **fields) -> Item:
    values = {
        "id": item_id,
        "job_id": "job_1",
        "source_id": source.id,
        "url": f"https://exams.example.com/{item_id}.pdf",
        "status": ITEM_PARSED,
        "parsed_data": _parsed(TRAIN),
    }
    values.update(fields)
    item = Item(**values)
    stores.items.put(item)
    return item


class TestImportItem:
    """Tests for ItemImporter.import_item."""

    def test_one_problem_per_candidate(self) -> None:
        importer, stores, source = _importer()
        item = _add_item(stores, source, parsed_data=_parsed(TRAIN, PHOTOSYNTHESIS))

        created = importer.import_item(item.id, subject_id="math", actor_id="kim")

        assert len(created) == 2
        problems = [stores.problems.require(pid) for pid in created]
        assert [p.content for p in problems] == [TRAIN, PHOTOSYNTHESIS]
        assert all(p.status == PROBLEM_PENDING for p in problems)
        assert problems[0].source_grade == "B"
        assert problems[0].subject_id == "math"
        assert problems[0].created_by == "kim"
        assert problems[1].source_detail == "https://exams.example.com/item_1.pdf#2"
        assert item.status == ITEM_IMPORTED
        assert item.imported_problem_ids == created
        assert stores.logs.recent()[0].action == "IMPORT"

    def test_duplicate_is_rejected_with_audit_record(self) -> None:
        importer, stores, source = _importer()
        stores.problems.put(Problem(id="prob_existing", content=TRAIN))
        item = _add_item(stores, source)

        [problem_id] = importer.import_item(item.id)

        problem = stores.problems.require(problem_id)
        assert problem.status == PROBLEM_REJECTED
        assert problem.review_stage == STAGE_AUTO
        [record] = stores.reviews.for_problem(problem_id)
        assert record.reviewer_id == DUPLICATE_REVIEWER
        assert record.issues == ("DUPLICATE",)
        assert "prob_existing" in record.comments

    def test_possible_duplicate_requires_manual_review(self) -> None:
        importer, stores, source = _importer(gate=DuplicateGate(duplicate_threshold=0.99, review_threshold=0.5))
        stores.problems.put(Problem(id="prob_existing", content=TRAIN))
        item = _add_item(stores, source, parsed_data=_parsed(TRAIN_VARIANT))

        [problem_id] = importer.import_item(item.id)

        problem = stores.problems.require(problem_id)
        assert problem.status == PROBLEM_PENDING
        assert problem.requires_manual_review
        assert problem.manual_review_reasons == [REASON_POSSIBLE_DUPLICATE]

    def test_low_ocr_item_flags_every_problem(self) -> None:
        importer, stores, source = _importer(require_manual=False)
        item = _add_item(stores, source, ocr_confidence=0.4, requires_manual_review=True)

        [problem_id] = importer.import_item(item.id)

        problem = stores.problems.require(problem_id)
        assert problem.ocr_confidence == 0.4
        assert problem.manual_review_reasons == [REASON_LOW_OCR_CONFIDENCE]

        # AI approval is not final for a flagged problem
        importer.pipeline.submit(problem_id, STAGE_AUTO, OUTCOME_APPROVED, "auto-rules")
        importer.pipeline.submit(problem_id, STAGE_AI, OUTCOME_APPROVED, "model")
        assert problem.status == PROBLEM_PENDING
        assert problem.review_stage == STAGE_MANUAL

        importer.pipeline.submit(problem_id, STAGE_MANUAL, OUTCOME_APPROVED, "kim")
        assert problem.status == PROBLEM_APPROVED

    def test_already_imported(self) -> None:
        importer, stores, source = _importer()
        item = _add_item(stores, source)
        importer.import_item(item.id)

        with pytest.raises(ValidationError, match="already imported"):
            importer.import_item(item.id)
        assert len(stores.problems) == 1

    def test_not_parsed(self) -> None:
        importer, stores, source = _importer()
        item = _add_item(stores, source, status=ITEM_NEW, parsed_data=None)

        with pytest.raises(ValidationError, match="no parsed data"):
            importer.import_item(item.id)

    def test_unknown_item(self) -> None:
        importer, _, _ = _importer()

        with pytest.raises(NotFoundError):
            importer.import_item("item_missing")

    def test_malformed_payload_is_logged(self) -> None:
        importer, stores, source = _importer()
        item = _add_item(stores, source, parsed_data={"problems": [{"content": ""}]})

        with pytest.raises(ValidationError):
            importer.import_item(item.id)

        entry = stores.logs.recent(level="ERROR")[0]
        assert entry.action == "IMPORT_FAIL"
        assert entry.details == {"item_id": item.id}
        assert item.status == ITEM_PARSED
        assert len(stores.problems) == 0


class TestImportItems:
    def test_failures_are_isolated(self) -> None:
        importer, stores, source = _importer()
        _add_item(stores, source, "item_ok")
        _add_item(stores, source, "item_bad", parsed_data={"problems": "nope"})

        report = importer.import_items(["item_bad", "item_missing", "item_ok"])

        assert list(report.imported) == ["item_ok"]
        assert set(report.failed) == {"item_bad", "item_missing"}
        assert report.to_dict()["imported"]["item_ok"] == stores.items.require("item_ok").imported_problem_ids
