"""Candidate-problem extraction from captured pages and files.

Text is pulled from HTML with trafilatura (BeautifulSoup as the fallback)
and split into numbered question blocks. Optical extraction for scanned
documents is an injected :class:`Extractor`; whatever it returns, the
parser applies the OCR confidence gate: below the threshold, the item is
flagged so every problem it produces must pass an explicit MANUAL review.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Protocol

import trafilatura
from bs4 import BeautifulSoup

from harvester.errors import HarvesterError, ValidationError
from harvester.knowledge.models import (
    ITEM_FAILED,
    ITEM_NEW,
    ITEM_PARSED,
    CandidateProblem,
    Item,
    ParsedPayload,
)

logger = logging.getLogger(__name__)

_QUESTION_NUMBER_PATTERNS = (
    re.compile(r"^\s*(\d{1,3})\s*[.．)）]\s*", re.M),
    re.compile(r"^\s*\[(\d{1,3})\]\s*", re.M),
    re.compile(r"^\s*【(\d{1,3})】\s*", re.M),
    re.compile(r"^\s*문\s*(\d{1,3})\s*[.．:]\s*", re.M),
    re.compile(r"^\s*제\s*(\d{1,3})\s*문\s*", re.M),
)
_BLOCK_SPLIT = re.compile(r"(?:^|\n)\s*\d{1,3}\s*[.．)）]\s*")
_CIRCLED = "①②③④⑤"
_CIRCLED_OPTION = re.compile(r"[①②③④⑤][^①②③④⑤]*")
_PAREN_OPTION = re.compile(r"\(([1-5])\)\s*([^()]+?)(?=\s*\([1-5]\)|$)", re.S)

_ANSWER_PATTERNS = (
    re.compile(r"\[정답\]\s*([①②③④⑤\d]+)"),
    re.compile(r"정답\s*[:：]?\s*([①②③④⑤\d]+)"),
    re.compile(r"(?<![가-힣])답\s*[:：]\s*([①②③④⑤\d]+)"),
    re.compile(r"\bAnswer\s*[:：]\s*(\S+)", re.I),
)
_EXPLANATION_PATTERNS = (
    re.compile(r"\[해설\]\s*(.+)", re.S),
    re.compile(r"해설\s*[:：]?\s*(.+)", re.S),
    re.compile(r"풀이\s*[:：]?\s*(.+)", re.S),
    re.compile(r"\bExplanation\s*[:：]\s*(.+)", re.S | re.I),
)
# Start of the answer/explanation tail of a block
_TAIL_MARKER = re.compile(
    r"\[정답\]|정답\s*[:：]?\s*(?=[①②③④⑤\d])|\[해설\]|해설\s*[:：]|풀이\s*[:：]"
    r"|(?<![가-힣])답\s*[:：]|\bAnswer\s*[:：]|\bExplanation\s*[:：]",
    re.I,
)

_METADATA_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "year": (re.compile(r"(\d{4})\s*학년도"), re.compile(r"(\d{4})년\s*(?:수능|모의|학력)")),
    "month": (re.compile(r"(\d{1,2})월\s*(?:모의|학력)"),),
    "exam_name": (
        re.compile(r"(대학수학능력시험|수능)"),
        re.compile(r"(모의고사|모의평가)"),
        re.compile(r"(학력평가)"),
        re.compile(r"(전국연합|전국모의)"),
        re.compile(r"(중간고사|기말고사)"),
    ),
    "subject": (
        re.compile(r"(국어|영어|수학|과학|사회|한국사|제2외국어)"),
        re.compile(r"(물리|화학|생명과학|지구과학)"),
        re.compile(r"(한국지리|세계지리|동아시아사|세계사)"),
        re.compile(r"(생활과윤리|윤리와사상|정치와법|경제)"),
    ),
    "grade_level": (
        re.compile(r"(고\s*\d)\s*학년"),
        re.compile(r"(중\s*\d)\s*학년"),
        re.compile(r"(고[123])"),
        re.compile(r"(중[123])"),
    ),
}

# Average characters per page below which a PDF is treated as scanned
IMAGE_PDF_CHARS_PER_PAGE = 100


@dataclass
class ExtractionResult:
    """Output of an extractor.

    ``ocr_confidence`` is only set when optical extraction produced the text.
    """
    problems: List[CandidateProblem] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    ocr_confidence: float | None = None

    def to_payload(self) -> ParsedPayload:
        return ParsedPayload(problems=list(self.problems), metadata=dict(self.metadata))


def html_to_text(html: str, url: str | None = None) -> str:
    """Main-content text of an HTML page."""
    extracted = trafilatura.extract(html, url=url)
    if extracted:
        return extracted.strip()
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript"]):
        tag.decompose()
    return soup.get_text("\n", strip=True)


def is_image_based_pdf(text: str, page_count: int) -> bool:
    return len(text) / max(page_count, 1) < IMAGE_PDF_CHARS_PER_PAGE


def extract_metadata(text: str) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    for key, patterns in _METADATA_PATTERNS.items():
        for pattern in patterns:
            match = pattern.search(text)
            if match:
                value = match.group(1)
                if key in ("year", "month"):
                    metadata[key] = int(value)
                else:
                    metadata[key] = re.sub(r"\s+", "", value)
                break
    return metadata


def _split_blocks(text: str) -> List[str]:
    starts = [m.start() for m in _BLOCK_SPLIT.finditer(text)]
    if len(starts) >= 2:
        bounds = starts + [len(text)]
        blocks = [text[bounds[i]:bounds[i + 1]].strip() for i in range(len(starts))]
    else:
        blocks = [part.strip() for part in re.split(r"\n\s*\n", text) if len(part.strip()) > 30]
    return [b for b in blocks if len(b) > 20]


def _squash(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


def parse_block(block: str) -> CandidateProblem | None:
    """Parse one question block; returns None when too little text remains."""
    confidence = 0.5

    question_number = None
    for pattern in _QUESTION_NUMBER_PATTERNS:
        match = pattern.search(block)
        if match and match.start() == 0:
            question_number = int(match.group(1))
            confidence += 0.1
            break

    tail_match = _TAIL_MARKER.search(block)
    body = block[:tail_match.start()] if tail_match else block
    tail = block[tail_match.start():] if tail_match else ""

    problem_type = "SHORT_ANSWER"
    options: List[str] = []
    circled = _CIRCLED_OPTION.findall(body)
    if len(circled) >= 2:
        problem_type = "MULTIPLE_CHOICE"
        confidence += 0.2
        options = [_squash(m[1:]) for m in circled if 0 < len(_squash(m[1:])) < 500]
    else:
        numbered = _PAREN_OPTION.findall(body)
        if len(numbered) >= 2:
            problem_type = "MULTIPLE_CHOICE"
            confidence += 0.2
            options = [_squash(text) for _, text in numbered]

    if "O/X" in block or "참/거짓" in block or re.search(r"\(O\)\s*\(X\)", block):
        problem_type = "TRUE_FALSE"
        confidence += 0.1

    if any(marker in block for marker in ("서술하시오", "논술하시오", "설명하시오")):
        problem_type = "ESSAY"
        confidence += 0.1

    answer = None
    for pattern in _ANSWER_PATTERNS:
        match = pattern.search(tail)
        if match:
            answer = match.group(1).strip()
            confidence += 0.15
            break

    explanation = None
    for pattern in _EXPLANATION_PATTERNS:
        match = pattern.search(tail)
        if match:
            explanation = _squash(match.group(1))
            confidence += 0.1
            break

    content = body
    for pattern in _QUESTION_NUMBER_PATTERNS:
        content = pattern.sub("", content, count=1).strip()
    if problem_type == "MULTIPLE_CHOICE":
        first_option = re.search(r"[①②③④⑤]|\([1-5]\)", content)
        if first_option and first_option.start() > 0:
            content = content[:first_option.start()]
    content = _squash(content)

    if len(content) < 10:
        return None

    return CandidateProblem(
        content=content,
        problem_type=problem_type,
        options=options,
        answer=answer,
        explanation=explanation,
        question_number=question_number,
        confidence=round(min(1.0, confidence), 2),
    )


def extract_problems(text: str) -> ExtractionResult:
    """Split ``text`` into question blocks and parse each into a candidate."""
    problems = [p for p in (parse_block(b) for b in _split_blocks(text)) if p is not None]
    average = sum(p.confidence for p in problems) / len(problems) if problems else 0.0
    return ExtractionResult(
        problems=problems,
        metadata=extract_metadata(text),
        confidence=round(average, 2),
    )


class Extractor(Protocol):
    """Turns captured content into candidates (plus OCR confidence if optical)."""

    def extract(self, item: Item, content: str | bytes) -> ExtractionResult: ...


class TextExtractor:
    """Extractor for text and HTML content."""

    def extract(self, item: Item, content: str | bytes) -> ExtractionResult:
        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValidationError(
                    f"Binary {item.file_type or 'file'} content needs an optical extractor"
                ) from exc
        if content.lstrip().startswith("<"):
            content = html_to_text(content, url=item.url)
        return extract_problems(content)


class ItemParser:
    """Turns captured items into validated parse payloads.

    Args:
        stores: Store bundle (items and logs are used).
        extractor: Content extractor; :class:`TextExtractor` by default.
        ocr_threshold: OCR confidence below which MANUAL review is forced.
        fetcher: Optional page fetcher for file items without captured text.
    """

    def __init__(self, stores, extractor: Extractor | None = None, ocr_threshold: float = 0.6, fetcher=None) -> None:
        self.stores = stores
        self.extractor = extractor or TextExtractor()
        self.ocr_threshold = ocr_threshold
        self.fetcher = fetcher

    def _content_for(self, item: Item) -> str | bytes:
        if item.captured_text:
            return item.captured_text
        if self.fetcher is None:
            raise ValidationError(f"Item {item.id} has no captured content")
        return self.fetcher.fetch(item.url).content

    def _fail(self, item: Item, message: str, **details) -> Item:
        item.status = ITEM_FAILED
        item.error = message
        self.stores.items.put(item)
        self.stores.logs.append(
            item.job_id, "ERROR", "PARSE_FAIL",
            f"Failed to parse item {item.id}: {message}",
            details={"item_id": item.id, **details}, url=item.url,
        )
        return item

    def parse(self, item_id: str, content: str | bytes | None = None) -> Item:
        """Parse one item. Failures mark the item FAILED and are logged, not raised."""
        item = self.stores.items.require(item_id)
        if item.status not in (ITEM_NEW, ITEM_FAILED):
            raise ValidationError(f"Item {item.id} is {item.status}; only NEW or FAILED items can be parsed")

        try:
            raw = content if content is not None else self._content_for(item)
            result = self.extractor.extract(item, raw)
            payload = ParsedPayload.from_dict(result.to_payload().to_dict())
            if result.ocr_confidence is not None and not 0.0 <= result.ocr_confidence <= 1.0:
                raise ValidationError(f"OCR confidence out of range: {result.ocr_confidence}")
        except HarvesterError as exc:
            logger.warning("Parse failed for item %s: %s", item.id, exc.message)
            return self._fail(item, exc.message)
        except Exception as exc:
            logger.exception("Extractor crashed on item %s", item.id)
            return self._fail(item, f"Unexpected extractor error: {exc}", error_type=type(exc).__name__)

        payload.metadata.setdefault("confidence", result.confidence)
        item.parsed_data = payload.to_dict()
        item.problem_count = len(payload.problems)
        item.ocr_confidence = result.ocr_confidence
        item.requires_manual_review = (
            result.ocr_confidence is not None and result.ocr_confidence < self.ocr_threshold
        )
        item.status = ITEM_PARSED
        item.error = None
        self.stores.items.put(item)

        self.stores.logs.append(
            item.job_id, "INFO", "PARSE",
            f"Parsed {item.problem_count} candidates from item {item.id}",
            details={
                "item_id": item.id,
                "ocr_confidence": item.ocr_confidence,
                "requires_manual_review": item.requires_manual_review,
            },
            url=item.url,
        )
        if item.requires_manual_review:
            logger.info(
                "Item %s OCR confidence %.2f below %.2f; forcing manual review",
                item.id, item.ocr_confidence, self.ocr_threshold,
            )
        return item
