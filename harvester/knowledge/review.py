"""Multi-stage review state machine: NONE -> AUTO -> AI -> MANUAL.

The pipeline does not care who reviews a stage (rule engine, model, or a
person). Each submission is checked against the problem's current state,
appended to the immutable review history, and applied:

* APPROVED advances ``review_stage``; APPROVED at MANUAL sets status
  APPROVED and leaves the stage at MANUAL.
* REJECTED at any stage sets status REJECTED, which is terminal.
* ``quality_score`` takes the most recent submission's score.

Problems flagged ``requires_manual_review`` (low OCR confidence or a
possible duplicate) always pass through MANUAL, even when the pipeline is
configured to accept AI approval as final.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List

from harvester.errors import InvalidTransition, ValidationError
from harvester.knowledge.models import (
    OUTCOME_APPROVED,
    OUTCOME_REJECTED,
    PROBLEM_APPROVED,
    PROBLEM_REJECTED,
    PROBLEM_STATUSES,
    REVIEW_OUTCOMES,
    REVIEW_STAGES,
    STAGE_AI,
    STAGE_AUTO,
    STAGE_MANUAL,
    STAGE_NONE,
    Problem,
    ReviewRecord,
    utcnow,
)
from harvester.knowledge.storage import Page, Stores, paginate

logger = logging.getLogger(__name__)

_NEXT_STAGE = {STAGE_AUTO: STAGE_AI, STAGE_AI: STAGE_MANUAL}


def expected_stage(problem: Problem) -> str:
    """The stage whose review the problem is waiting for."""
    return STAGE_AUTO if problem.review_stage == STAGE_NONE else problem.review_stage


class ReviewPipeline:
    """Applies review submissions to problems.

    Args:
        stores: Store bundle (problems and reviews are used).
        require_manual: When False, AI approval is final unless the
            problem is flagged for manual review.
    """

    def __init__(self, stores: Stores, require_manual: bool = True) -> None:
        self.stores = stores
        self.require_manual = require_manual

    def submit(
        self,
        problem_id: str,
        stage: str,
        outcome: str,
        reviewer_id: str,
        score: float | None = None,
        comments: str | None = None,
        issues: Iterable[str] = (),
    ) -> ReviewRecord:
        """Record one review attempt and apply the transition.

        Raises:
            ValidationError: Unknown stage/outcome, missing reviewer or bad score.
            NotFoundError: Unknown problem.
            InvalidTransition: The problem is already APPROVED/REJECTED or is
                not waiting for ``stage``. Nothing is written in that case.
        """
        if stage not in REVIEW_STAGES:
            raise ValidationError(f"stage must be one of {REVIEW_STAGES}", field="stage")
        if outcome not in REVIEW_OUTCOMES:
            raise ValidationError(f"status must be one of {REVIEW_OUTCOMES}", field="status")
        if not reviewer_id:
            raise ValidationError("reviewer is required", field="reviewer_id")
        if score is not None and not 0 <= score <= 100:
            raise ValidationError("score must be within [0, 100]", field="score")

        problems = self.stores.problems
        with problems.transaction():
            problem = problems.require(problem_id)
            if problem.is_terminal:
                raise InvalidTransition(
                    f"Problem {problem.id} is already {problem.status}",
                    problem_id=problem.id,
                    status=problem.status,
                )
            awaited = expected_stage(problem)
            if stage != awaited:
                raise InvalidTransition(
                    f"Problem {problem.id} awaits {awaited} review, not {stage}",
                    problem_id=problem.id,
                    expected=awaited,
                    submitted=stage,
                )

            record = ReviewRecord(
                id=self.stores.reviews.new_id(),
                problem_id=problem.id,
                stage=stage,
                outcome=outcome,
                reviewer_id=reviewer_id,
                comments=comments,
                score=score,
                issues=tuple(issues),
            )
            self.stores.reviews.put(record)

            self._apply(problem, record)
            problems.put(problem)

        logger.info(
            "Review %s on %s by %s: %s (stage now %s, status %s)",
            stage, problem.id, reviewer_id, outcome, problem.review_stage, problem.status,
        )
        return record

    def _apply(self, problem: Problem, record: ReviewRecord) -> None:
        # Last write wins; averaging across stages is a product decision not taken here
        if record.score is not None:
            problem.quality_score = record.score
        problem.updated_at = utcnow()

        if record.outcome == OUTCOME_REJECTED:
            problem.status = PROBLEM_REJECTED
            problem.review_stage = record.stage
            return

        if record.stage == STAGE_MANUAL:
            problem.status = PROBLEM_APPROVED
            problem.review_stage = STAGE_MANUAL
            return

        if record.stage == STAGE_AI and not self.require_manual and not problem.requires_manual_review:
            problem.status = PROBLEM_APPROVED
            problem.review_stage = STAGE_AI
            return

        problem.review_stage = _NEXT_STAGE[record.stage]

    def pending(self, stage: str | None = None, page: int = 1, limit: int = 20) -> Page[Problem]:
        """Problems still PENDING, optionally only those awaiting ``stage``.

        ``stage=AUTO`` also includes problems that have not been reviewed yet.
        """
        if stage is None:
            problems = self.stores.problems.pending()
        elif stage == STAGE_AUTO:
            problems = self.stores.problems.pending(STAGE_NONE) + self.stores.problems.pending(STAGE_AUTO)
            problems.sort(key=lambda p: p.created_at)
        else:
            problems = self.stores.problems.pending(stage)
        return paginate(problems, page, limit)

    def history(self, problem_id: str) -> List[ReviewRecord]:
        self.stores.problems.require(problem_id)
        return self.stores.reviews.for_problem(problem_id)

    def stats(self) -> dict:
        problems = self.stores.problems.all()
        by_status = {status: 0 for status in PROBLEM_STATUSES}
        awaiting = {stage: 0 for stage in REVIEW_STAGES}
        for problem in problems:
            by_status[problem.status] = by_status.get(problem.status, 0) + 1
            if not problem.is_terminal:
                awaiting[expected_stage(problem)] += 1
        return {
            "by_status": by_status,
            "awaiting": awaiting,
            "manual_required": sum(1 for p in problems if p.requires_manual_review and not p.is_terminal),
        }


# Source trust by grade
GRADE_TRUST_SCORES = {"A": 100, "B": 80, "C": 60, "D": 40, "E": 20}

SCORE_WEIGHTS = {
    "accuracy": 0.3,
    "clarity": 0.2,
    "difficulty_fit": 0.15,
    "trust": 0.2,
    "usage": 0.15,
}

# New problems have no difficulty data or usage history yet
_NEUTRAL_DIFFICULTY_FIT = 70
_NEW_PROBLEM_USAGE = 30


@dataclass(frozen=True)
class QualityScores:
    accuracy: float
    clarity: float
    difficulty_fit: float
    trust: float
    usage: float

    @property
    def overall(self) -> float:
        total = sum(getattr(self, name) * weight for name, weight in SCORE_WEIGHTS.items())
        return round(total, 1)


def accuracy_score(problem: Problem) -> float:
    score = 60
    if problem.answer and problem.answer.strip():
        score += 15
    if problem.explanation and len(problem.explanation.strip()) > 10:
        score += 15
    if problem.problem_type == "MULTIPLE_CHOICE" and len(problem.options) >= 2:
        score += 10
    return min(100, score)


def clarity_score(problem: Problem) -> float:
    score = 50
    content = problem.content.strip()
    if len(content) >= 20:
        score += 10
    if 50 <= len(content) <= 500:
        score += 15
    elif len(content) > 500:
        score += 5
    if re.search(r"[.?!。？！]\s*$", content):
        score += 10
    if "?" in content or "？" in content:
        score += 10
    if content:
        special = len(re.findall(r"[^\w\s.,?!:;'\"()]", content))
        if special / len(content) < 0.1:
            score += 5
    return min(100, score)


def score_problem(problem: Problem) -> QualityScores:
    return QualityScores(
        accuracy=accuracy_score(problem),
        clarity=clarity_score(problem),
        difficulty_fit=_NEUTRAL_DIFFICULTY_FIT,
        trust=GRADE_TRUST_SCORES.get(problem.source_grade or "", 40),
        usage=_NEW_PROBLEM_USAGE,
    )


class AutoReviewer:
    """Rule-engine reviewer for the AUTO stage."""

    reviewer_id = "auto-rules"

    def __init__(self, pipeline: ReviewPipeline, min_score: float = 50.0) -> None:
        self.pipeline = pipeline
        self.min_score = min_score

    def evaluate(self, problem: Problem) -> tuple[str, float, list[str]]:
        scores = score_problem(problem)
        issues = []
        if not problem.answer:
            issues.append("MISSING_ANSWER")
        if problem.problem_type == "MULTIPLE_CHOICE" and len(problem.options) < 2:
            issues.append("MISSING_OPTIONS")
        if len(problem.content.strip()) < 20:
            issues.append("CONTENT_TOO_SHORT")
        outcome = OUTCOME_APPROVED if scores.overall >= self.min_score else OUTCOME_REJECTED
        return outcome, scores.overall, issues

    def run(self, limit: int | None = None) -> List[ReviewRecord]:
        """Review every problem awaiting AUTO, oldest first."""
        queue = self.pipeline.pending(STAGE_AUTO, page=1, limit=500).items
        if limit is not None:
            queue = queue[:limit]
        records = []
        for problem in queue:
            outcome, score, issues = self.evaluate(problem)
            records.append(self.pipeline.submit(
                problem.id,
                STAGE_AUTO,
                outcome,
                self.reviewer_id,
                score=score,
                comments=f"Rule score {score}",
                issues=issues,
            ))
        return records
