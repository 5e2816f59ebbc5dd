"""Entities shared by the registry, scheduler, executor and review pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List

from harvester.errors import ValidationError

# Batch statuses
BATCH_QUEUED = "QUEUED"
BATCH_RUNNING = "RUNNING"
BATCH_PAUSED = "PAUSED"
BATCH_DONE = "DONE"
BATCH_STATUSES = (BATCH_QUEUED, BATCH_RUNNING, BATCH_PAUSED, BATCH_DONE)

# Job statuses
JOB_PENDING = "PENDING"
JOB_RUNNING = "RUNNING"
JOB_SUCCESS = "SUCCESS"
JOB_FAILED = "FAILED"
JOB_STATUSES = (JOB_PENDING, JOB_RUNNING, JOB_SUCCESS, JOB_FAILED)

# Item statuses
ITEM_NEW = "NEW"
ITEM_PARSED = "PARSED"
ITEM_FAILED = "FAILED"
ITEM_IMPORTED = "IMPORTED"
ITEM_STATUSES = (ITEM_NEW, ITEM_PARSED, ITEM_FAILED, ITEM_IMPORTED)

ITEM_KINDS = ("page", "file")

# Log levels
LOG_LEVELS = ("DEBUG", "INFO", "WARN", "ERROR")

# Problem statuses and review stages
PROBLEM_PENDING = "PENDING"
PROBLEM_APPROVED = "APPROVED"
PROBLEM_REJECTED = "REJECTED"
PROBLEM_STATUSES = (PROBLEM_PENDING, PROBLEM_APPROVED, PROBLEM_REJECTED)

STAGE_NONE = "NONE"
STAGE_AUTO = "AUTO"
STAGE_AI = "AI"
STAGE_MANUAL = "MANUAL"
REVIEW_STAGES = (STAGE_AUTO, STAGE_AI, STAGE_MANUAL)

OUTCOME_APPROVED = "APPROVED"
OUTCOME_REJECTED = "REJECTED"
REVIEW_OUTCOMES = (OUTCOME_APPROVED, OUTCOME_REJECTED)

PROBLEM_TYPES = ("MULTIPLE_CHOICE", "SHORT_ANSWER", "TRUE_FALSE", "ESSAY")

SOURCE_GRADES = ("A", "B", "C", "D", "E")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass(slots=True)
class Source:
    """A registered crawl target."""

    id: str
    name: str
    source_type: str  # "website" | "pdf_archive" | "board" | ...
    base_url: str
    crawl_pattern: str | None = None  # regex applied to followed/captured URLs
    file_types: List[str] = field(default_factory=lambda: ["pdf", "hwp"])
    max_depth: int = 2
    crawl_delay_ms: int = 1000
    grade: str = "D"  # source trust, A (highest) to E
    is_active: bool = True
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def crawl_delay_seconds(self) -> float:
        return self.crawl_delay_ms / 1000.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source_type": self.source_type,
            "base_url": self.base_url,
            "crawl_pattern": self.crawl_pattern,
            "file_types": list(self.file_types),
            "max_depth": self.max_depth,
            "crawl_delay_ms": self.crawl_delay_ms,
            "grade": self.grade,
            "is_active": self.is_active,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Source":
        return cls(
            id=payload["id"],
            name=payload["name"],
            source_type=payload["source_type"],
            base_url=payload["base_url"],
            crawl_pattern=payload.get("crawl_pattern"),
            file_types=payload.get("file_types", ["pdf", "hwp"]),
            max_depth=payload.get("max_depth", 2),
            crawl_delay_ms=payload.get("crawl_delay_ms", 1000),
            grade=payload.get("grade", "D"),
            is_active=payload.get("is_active", True),
            description=payload.get("description", ""),
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )


@dataclass(slots=True)
class Batch:
    """A scheduled group of sources executed together."""

    id: str
    name: str
    source_ids: List[str]
    schedule: str | None = None  # key of SCHEDULE_INTERVALS
    is_night_mode: bool = False
    priority: int = 0
    filters: dict[str, Any] = field(default_factory=dict)
    status: str = BATCH_QUEUED
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)
    last_run_at: datetime | None = None
    # Only meaningful when schedule or night mode is set
    next_run_at: datetime | None = None
    # Pause received while RUNNING; honored when the run completes
    pause_requested: bool = False

    @property
    def is_repeating(self) -> bool:
        return self.is_night_mode or bool(self.schedule)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "source_ids": list(self.source_ids),
            "schedule": self.schedule,
            "is_night_mode": self.is_night_mode,
            "priority": self.priority,
            "filters": self.filters,
            "status": self.status,
            "description": self.description,
            "created_at": self.created_at.isoformat(),
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "pause_requested": self.pause_requested,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Batch":
        return cls(
            id=payload["id"],
            name=payload["name"],
            source_ids=payload.get("source_ids", []),
            schedule=payload.get("schedule"),
            is_night_mode=payload.get("is_night_mode", False),
            priority=payload.get("priority", 0),
            filters=payload.get("filters", {}),
            status=payload.get("status", BATCH_QUEUED),
            description=payload.get("description", ""),
            created_at=datetime.fromisoformat(payload["created_at"]),
            last_run_at=_parse_dt(payload.get("last_run_at")),
            next_run_at=_parse_dt(payload.get("next_run_at")),
            pause_requested=payload.get("pause_requested", False),
        )


@dataclass(slots=True)
class Job:
    """One execution attempt of crawling a single source."""

    id: str
    source_id: str
    batch_id: str | None = None
    status: str = JOB_PENDING
    pages_visited: int = 0
    items_found: int = 0
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "batch_id": self.batch_id,
            "status": self.status,
            "pages_visited": self.pages_visited,
            "items_found": self.items_found,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Job":
        return cls(
            id=payload["id"],
            source_id=payload["source_id"],
            batch_id=payload.get("batch_id"),
            status=payload.get("status", JOB_PENDING),
            pages_visited=payload.get("pages_visited", 0),
            items_found=payload.get("items_found", 0),
            error=payload.get("error"),
            created_at=datetime.fromisoformat(payload["created_at"]),
            started_at=_parse_dt(payload.get("started_at")),
            completed_at=_parse_dt(payload.get("completed_at")),
        )


@dataclass(slots=True)
class CandidateProblem:
    """A problem extracted from captured content, not yet in the corpus."""

    content: str
    problem_type: str = "SHORT_ANSWER"
    options: List[str] = field(default_factory=list)
    answer: str | None = None
    explanation: str | None = None
    question_number: int | None = None
    confidence: float = 0.5

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "problem_type": self.problem_type,
            "options": list(self.options),
            "answer": self.answer,
            "explanation": self.explanation,
            "question_number": self.question_number,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "CandidateProblem":
        if not isinstance(payload, dict):
            raise ValidationError("Candidate problem must be an object")
        content = payload.get("content")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Candidate problem requires non-empty content")
        problem_type = payload.get("problem_type", "SHORT_ANSWER")
        if problem_type not in PROBLEM_TYPES:
            raise ValidationError(f"Unknown problem type: {problem_type}")
        options = payload.get("options") or []
        if not isinstance(options, list) or not all(isinstance(o, str) for o in options):
            raise ValidationError("Candidate options must be a list of strings")
        confidence = payload.get("confidence", 0.5)
        if not isinstance(confidence, (int, float)) or not 0.0 <= confidence <= 1.0:
            raise ValidationError("Candidate confidence must be within [0, 1]")
        return cls(
            content=content,
            problem_type=problem_type,
            options=options,
            answer=payload.get("answer"),
            explanation=payload.get("explanation"),
            question_number=payload.get("question_number"),
            confidence=float(confidence),
        )


@dataclass(slots=True)
class ParsedPayload:
    """Tagged parse result stored on an item: ``{problems, metadata}``."""

    problems: List[CandidateProblem] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "problems": [p.to_dict() for p in self.problems],
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "ParsedPayload":
        """Validate and build a payload; malformed input raises ValidationError."""
        if not isinstance(payload, dict):
            raise ValidationError("Parsed data must be an object")
        problems = payload.get("problems")
        if not isinstance(problems, list):
            raise ValidationError("Parsed data requires a 'problems' list")
        metadata = payload.get("metadata", {})
        if not isinstance(metadata, dict):
            raise ValidationError("Parsed metadata must be an object")
        return cls(
            problems=[CandidateProblem.from_dict(p) for p in problems],
            metadata=metadata,
        )


@dataclass(slots=True)
class Item:
    """A captured page or file produced by a job."""

    id: str
    job_id: str
    source_id: str
    url: str
    kind: str = "file"
    file_type: str | None = None
    title: str | None = None
    captured_text: str | None = None
    parsed_data: dict[str, Any] | None = None
    ocr_confidence: float | None = None
    problem_count: int = 0
    status: str = ITEM_NEW
    requires_manual_review: bool = False
    imported_problem_ids: List[str] = field(default_factory=list)
    error: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "job_id": self.job_id,
            "source_id": self.source_id,
            "url": self.url,
            "kind": self.kind,
            "file_type": self.file_type,
            "title": self.title,
            "captured_text": self.captured_text,
            "parsed_data": self.parsed_data,
            "ocr_confidence": self.ocr_confidence,
            "problem_count": self.problem_count,
            "status": self.status,
            "requires_manual_review": self.requires_manual_review,
            "imported_problem_ids": list(self.imported_problem_ids),
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Item":
        return cls(
            id=payload["id"],
            job_id=payload["job_id"],
            source_id=payload["source_id"],
            url=payload["url"],
            kind=payload.get("kind", "file"),
            file_type=payload.get("file_type"),
            title=payload.get("title"),
            captured_text=payload.get("captured_text"),
            parsed_data=payload.get("parsed_data"),
            ocr_confidence=payload.get("ocr_confidence"),
            problem_count=payload.get("problem_count", 0),
            status=payload.get("status", ITEM_NEW),
            requires_manual_review=payload.get("requires_manual_review", False),
            imported_problem_ids=payload.get("imported_problem_ids", []),
            error=payload.get("error"),
            created_at=datetime.fromisoformat(payload["created_at"]),
        )


@dataclass(frozen=True, slots=True)
class CrawlLogEntry:
    """Append-only crawl log row. ``seq`` breaks ties between equal timestamps."""

    id: str
    seq: int
    job_id: str
    level: str
    action: str
    message: str
    details: dict[str, Any] | None = None
    url: str | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "seq": self.seq,
            "job_id": self.job_id,
            "level": self.level,
            "action": self.action,
            "message": self.message,
            "details": self.details,
            "url": self.url,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CrawlLogEntry":
        return cls(
            id=payload["id"],
            seq=payload["seq"],
            job_id=payload["job_id"],
            level=payload["level"],
            action=payload["action"],
            message=payload["message"],
            details=payload.get("details"),
            url=payload.get("url"),
            created_at=datetime.fromisoformat(payload["created_at"]),
        )


@dataclass(slots=True)
class Problem:
    """A corpus problem and its current review state."""

    id: str
    content: str
    problem_type: str = "SHORT_ANSWER"
    options: List[str] = field(default_factory=list)
    answer: str | None = None
    explanation: str | None = None
    subject_id: str | None = None
    source_item_id: str | None = None
    source_detail: str | None = None
    source_grade: str | None = None
    status: str = PROBLEM_PENDING
    review_stage: str = STAGE_NONE
    quality_score: float | None = None
    ocr_confidence: float | None = None
    requires_manual_review: bool = False
    manual_review_reasons: List[str] = field(default_factory=list)
    is_archived: bool = False
    created_by: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (PROBLEM_APPROVED, PROBLEM_REJECTED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "problem_type": self.problem_type,
            "options": list(self.options),
            "answer": self.answer,
            "explanation": self.explanation,
            "subject_id": self.subject_id,
            "source_item_id": self.source_item_id,
            "source_detail": self.source_detail,
            "source_grade": self.source_grade,
            "status": self.status,
            "review_stage": self.review_stage,
            "quality_score": self.quality_score,
            "ocr_confidence": self.ocr_confidence,
            "requires_manual_review": self.requires_manual_review,
            "manual_review_reasons": list(self.manual_review_reasons),
            "is_archived": self.is_archived,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "Problem":
        return cls(
            id=payload["id"],
            content=payload["content"],
            problem_type=payload.get("problem_type", "SHORT_ANSWER"),
            options=payload.get("options", []),
            answer=payload.get("answer"),
            explanation=payload.get("explanation"),
            subject_id=payload.get("subject_id"),
            source_item_id=payload.get("source_item_id"),
            source_detail=payload.get("source_detail"),
            source_grade=payload.get("source_grade"),
            status=payload.get("status", PROBLEM_PENDING),
            review_stage=payload.get("review_stage", STAGE_NONE),
            quality_score=payload.get("quality_score"),
            ocr_confidence=payload.get("ocr_confidence"),
            requires_manual_review=payload.get("requires_manual_review", False),
            manual_review_reasons=payload.get("manual_review_reasons", []),
            is_archived=payload.get("is_archived", False),
            created_by=payload.get("created_by"),
            created_at=datetime.fromisoformat(payload["created_at"]),
            updated_at=datetime.fromisoformat(payload["updated_at"]),
        )


@dataclass(frozen=True, slots=True)
class ReviewRecord:
    """One immutable review attempt."""

    id: str
    problem_id: str
    stage: str
    outcome: str
    reviewer_id: str
    comments: str | None = None
    score: float | None = None
    issues: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "problem_id": self.problem_id,
            "stage": self.stage,
            "outcome": self.outcome,
            "reviewer_id": self.reviewer_id,
            "comments": self.comments,
            "score": self.score,
            "issues": list(self.issues),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ReviewRecord":
        return cls(
            id=payload["id"],
            problem_id=payload["problem_id"],
            stage=payload["stage"],
            outcome=payload["outcome"],
            reviewer_id=payload["reviewer_id"],
            comments=payload.get("comments"),
            score=payload.get("score"),
            issues=tuple(payload.get("issues", [])),
            created_at=datetime.fromisoformat(payload["created_at"]),
        )
