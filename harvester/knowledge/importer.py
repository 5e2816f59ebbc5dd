"""Import of parsed items into the problem corpus.

Each candidate on a parsed item becomes one corpus problem, screened by
the duplicate gate against a sample of recent problems first. Two
independent gates can force MANUAL review: a possible-duplicate verdict
and the item's low OCR confidence. Duplicates are recorded as AUTO-stage
rejections so the audit trail shows why they never reach the corpus.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from harvester.errors import HarvesterError, ValidationError
from harvester.knowledge.models import (
    ITEM_IMPORTED,
    ITEM_PARSED,
    OUTCOME_REJECTED,
    STAGE_AUTO,
    ParsedPayload,
    Problem,
)
from harvester.knowledge.review import ReviewPipeline
from harvester.knowledge.similarity import VERDICT_DUPLICATE, VERDICT_REVIEW, DuplicateGate
from harvester.knowledge.storage import Stores

logger = logging.getLogger(__name__)

DUPLICATE_REVIEWER = "duplicate-gate"
REASON_POSSIBLE_DUPLICATE = "POSSIBLE_DUPLICATE"
REASON_LOW_OCR_CONFIDENCE = "LOW_OCR_CONFIDENCE"


@dataclass
class ImportReport:
    """Outcome of importing several items."""

    imported: dict[str, List[str]] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"imported": self.imported, "failed": self.failed}


class ItemImporter:
    def __init__(self, stores: Stores, gate: DuplicateGate, pipeline: ReviewPipeline) -> None:
        self.stores = stores
        self.gate = gate
        self.pipeline = pipeline

    def _load_payload(self, item) -> ParsedPayload:
        try:
            return ParsedPayload.from_dict(item.parsed_data)
        except ValidationError as exc:
            self.stores.logs.append(
                item.job_id, "ERROR", "IMPORT_FAIL",
                f"Malformed parsed data on item {item.id}: {exc.message}",
                details={"item_id": item.id},
                url=item.url,
            )
            logger.error("Item %s has malformed parsed data: %s", item.id, exc.message)
            raise

    def import_item(self, item_id: str, subject_id: str | None = None, actor_id: str | None = None) -> List[str]:
        """Create one problem per candidate on the item.

        Returns:
            Ids of the created problems, in candidate order.

        Raises:
            NotFoundError: Unknown item.
            ValidationError: The item has no parsed data, is already
                imported, or its parsed data is malformed.
        """
        items = self.stores.items
        with items.transaction():
            item = items.require(item_id)
            if item.status == ITEM_IMPORTED:
                raise ValidationError(f"Item {item.id} is already imported", item_id=item.id)
            if item.status != ITEM_PARSED or item.parsed_data is None:
                raise ValidationError(f"Item {item.id} has no parsed data", item_id=item.id)
            payload = self._load_payload(item)
            source = self.stores.sources.get(item.source_id)

            created: List[str] = []
            for index, candidate in enumerate(payload.problems):
                decision = self.gate.screen(
                    candidate.content,
                    self.stores.problems.sample_recent(self.gate.sample_size),
                )
                reasons = []
                if decision.verdict == VERDICT_REVIEW:
                    reasons.append(REASON_POSSIBLE_DUPLICATE)
                if item.requires_manual_review:
                    reasons.append(REASON_LOW_OCR_CONFIDENCE)

                problem = Problem(
                    id=self.stores.problems.new_id(),
                    content=candidate.content,
                    problem_type=candidate.problem_type,
                    options=list(candidate.options),
                    answer=candidate.answer,
                    explanation=candidate.explanation,
                    subject_id=subject_id,
                    source_item_id=item.id,
                    source_detail=f"{item.url}#{candidate.question_number or index + 1}",
                    source_grade=source.grade if source else None,
                    ocr_confidence=item.ocr_confidence,
                    requires_manual_review=bool(reasons),
                    manual_review_reasons=reasons,
                    created_by=actor_id,
                )
                self.stores.problems.put(problem)
                created.append(problem.id)

                if decision.verdict == VERDICT_DUPLICATE:
                    best = decision.best_match
                    self.pipeline.submit(
                        problem.id,
                        STAGE_AUTO,
                        OUTCOME_REJECTED,
                        DUPLICATE_REVIEWER,
                        comments=f"Duplicate of {best.problem_id} (score {best.score})",
                        issues=("DUPLICATE",),
                    )

            item.status = ITEM_IMPORTED
            item.imported_problem_ids = created
            items.put(item)

        self.stores.logs.append(
            item.job_id, "INFO", "IMPORT",
            f"Imported {len(created)} problems from item {item.id}",
            details={"item_id": item.id, "problem_ids": created},
            url=item.url,
        )
        logger.info("Imported item %s -> %d problems", item.id, len(created))
        return created

    def import_items(
        self,
        item_ids: Iterable[str],
        subject_id: str | None = None,
        actor_id: str | None = None,
    ) -> ImportReport:
        """Import several items; a failing item never affects its siblings."""
        report = ImportReport()
        for item_id in item_ids:
            try:
                report.imported[item_id] = self.import_item(item_id, subject_id, actor_id)
            except HarvesterError as exc:
                report.failed[item_id] = exc.message
        return report
