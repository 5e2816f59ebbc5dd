"""Duplicate and near-duplicate detection for candidate problems.

The score combines normalized-text overlap (token Jaccard and cosine) with
structural features that survive number and variable substitution: an
edit similarity over number-masked text and a comparison of formula
shapes. Every feature is symmetric and equals 1.0 for identical inputs, so
``similarity(a, b) == similarity(b, a)`` and ``similarity(x, x) == 1.0``.

Nothing here touches shared state; screening is a read-only scan.
"""

from __future__ import annotations

import math
import re
import unicodedata
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

MAX_SCORE = 1.0

# Long texts are compared on their prefix to bound the O(n*m) edit distance
MAX_EDIT_LENGTH = 2000

FEATURE_WEIGHTS = {
    "text": 0.35,
    "semantic": 0.25,
    "structure": 0.25,
    "formula": 0.15,
}

VERDICT_DUPLICATE = "DUPLICATE"
VERDICT_REVIEW = "REVIEW"
VERDICT_PASS = "PASS"

_NUMBER = re.compile(r"-?\d+(?:\.\d+)?")
_LATEX = re.compile(r"\$[^$]+\$")
_FUNCTION = re.compile(r"[a-zA-Z]\s*\([^)]*\)\s*=\s*[^\n,]+")
_ARITHMETIC = re.compile(r"\d+\s*[+\-×÷*/]\s*\d+\s*=\s*\d+")


def normalize_text(text: str) -> str:
    text = unicodedata.normalize("NFKC", text).lower()
    return " ".join(text.split())


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens longer than one character."""
    cleaned = re.sub(r"[^\w\s]", " ", normalize_text(text))
    return [token for token in cleaned.split() if len(token) > 1]


def jaccard_similarity(tokens1: Sequence[str], tokens2: Sequence[str]) -> float:
    set1, set2 = set(tokens1), set(tokens2)
    union = set1 | set2
    if not union:
        return MAX_SCORE
    return len(set1 & set2) / len(union)


def cosine_similarity(tokens1: Sequence[str], tokens2: Sequence[str]) -> float:
    """Term-frequency cosine. Integer arithmetic keeps it exactly symmetric."""
    if not tokens1 and not tokens2:
        return MAX_SCORE
    freq1, freq2 = Counter(tokens1), Counter(tokens2)
    vocabulary = sorted(set(freq1) | set(freq2))
    dot = sum(freq1[t] * freq2[t] for t in vocabulary)
    norm1 = sum(v * v for v in freq1.values())
    norm2 = sum(v * v for v in freq2.values())
    if norm1 == 0 or norm2 == 0:
        return 0.0
    return dot / math.sqrt(norm1 * norm2)


def levenshtein_distance(s1: str, s2: str) -> int:
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    previous = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1, start=1):
        current = [i]
        for j, c2 in enumerate(s2, start=1):
            if c1 == c2:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def edit_similarity(s1: str, s2: str) -> float:
    s1, s2 = s1[:MAX_EDIT_LENGTH], s2[:MAX_EDIT_LENGTH]
    longest = max(len(s1), len(s2))
    if longest == 0:
        return MAX_SCORE
    return 1 - levenshtein_distance(s1, s2) / longest


def mask_numbers(text: str) -> str:
    return _NUMBER.sub("#", normalize_text(text))


def structure_similarity(text1: str, text2: str) -> float:
    """Edit similarity with every number replaced by a placeholder."""
    return edit_similarity(mask_numbers(text1), mask_numbers(text2))


def extract_formulas(text: str) -> List[str]:
    return _LATEX.findall(text) + _FUNCTION.findall(text) + _ARITHMETIC.findall(text)


def normalize_formula(formula: str) -> str:
    """Collapse a formula to its shape: variables -> x, numbers -> N."""
    shape = re.sub(r"\s+", "", formula)
    shape = re.sub(r"[a-zA-Z]", "x", shape)
    return re.sub(r"\d+", "N", shape)


def _directed_formula_similarity(shapes1: Sequence[str], shapes2: Sequence[str]) -> float:
    return sum(max(edit_similarity(f1, f2) for f2 in shapes2) for f1 in shapes1) / len(shapes1)


def formula_similarity(text1: str, text2: str) -> float | None:
    """Mean best-match formula-shape similarity in both directions.

    Returns None when neither text contains a formula, so the feature is
    left out of the combined score.
    """
    shapes1 = [normalize_formula(f) for f in extract_formulas(text1)]
    shapes2 = [normalize_formula(f) for f in extract_formulas(text2)]
    if not shapes1 and not shapes2:
        return None
    if not shapes1 or not shapes2:
        return 0.0
    return (_directed_formula_similarity(shapes1, shapes2) + _directed_formula_similarity(shapes2, shapes1)) / 2


@dataclass(frozen=True)
class NumericSubstitution:
    """Whether two texts differ only in some of their numbers."""

    is_variant: bool
    changed: tuple[tuple[str, str], ...] = ()
    confidence: float = 0.0


def detect_numeric_substitution(text1: str, text2: str) -> NumericSubstitution:
    stripped = edit_similarity(mask_numbers(text1), mask_numbers(text2))
    if stripped < 0.9:
        return NumericSubstitution(False)

    numbers1 = _NUMBER.findall(text1)
    numbers2 = _NUMBER.findall(text2)
    if not numbers1 or len(numbers1) != len(numbers2):
        return NumericSubstitution(False)

    changed = tuple((a, b) for a, b in zip(numbers1, numbers2) if float(a) != float(b))
    same = len(numbers1) - len(changed)
    is_variant = 0 < len(changed) <= len(numbers1) * 0.5
    confidence = min(1.0, stripped * (same / len(numbers1) + 0.5)) if is_variant else 0.0
    return NumericSubstitution(is_variant, changed, round(confidence, 4))


@dataclass(frozen=True)
class SimilarityResult:
    """Feature breakdown for one comparison."""

    text: float
    semantic: float
    structure: float
    formula: float | None
    overall: float
    numeric_substitution: NumericSubstitution

    def to_dict(self) -> dict:
        return {
            "text": round(self.text, 4),
            "semantic": round(self.semantic, 4),
            "structure": round(self.structure, 4),
            "formula": None if self.formula is None else round(self.formula, 4),
            "overall": self.overall,
            "numeric_variant": self.numeric_substitution.is_variant,
        }


def compare(text1: str, text2: str) -> SimilarityResult:
    tokens1, tokens2 = tokenize(text1), tokenize(text2)
    features = {
        "text": jaccard_similarity(tokens1, tokens2),
        "semantic": cosine_similarity(tokens1, tokens2),
        "structure": structure_similarity(text1, text2),
        "formula": formula_similarity(text1, text2),
    }
    included = [(FEATURE_WEIGHTS[name], value) for name, value in features.items() if value is not None]
    total_weight = sum(weight for weight, _ in included)
    overall = sum(weight * value for weight, value in included) / total_weight

    return SimilarityResult(
        text=features["text"],
        semantic=features["semantic"],
        structure=features["structure"],
        formula=features["formula"],
        overall=round(min(MAX_SCORE, overall), 4),
        numeric_substitution=detect_numeric_substitution(text1, text2),
    )


def similarity(text1: str, text2: str) -> float:
    """Combined score in [0, 1]; symmetric, and 1.0 for identical texts."""
    return compare(text1, text2).overall


@dataclass(frozen=True)
class SimilarityMatch:
    problem_id: str
    score: float
    result: SimilarityResult

    def to_dict(self) -> dict:
        return {"problem_id": self.problem_id, "score": self.score, **self.result.to_dict()}


@dataclass(frozen=True)
class GateDecision:
    """Outcome of screening one candidate against the corpus sample."""

    verdict: str
    score: float
    matches: tuple[SimilarityMatch, ...] = field(default_factory=tuple)

    @property
    def best_match(self) -> SimilarityMatch | None:
        return self.matches[0] if self.matches else None

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict,
            "score": self.score,
            "matches": [m.to_dict() for m in self.matches],
        }


class DuplicateGate:
    """Screens candidate content against a bounded corpus sample.

    Scores at or above ``duplicate_threshold`` are duplicates; scores at or
    above ``review_threshold`` require manual confirmation; the rest pass.
    """

    def __init__(
        self,
        duplicate_threshold: float = 0.8,
        review_threshold: float = 0.5,
        sample_size: int = 500,
        max_matches: int = 10,
    ) -> None:
        if not 0.0 <= review_threshold <= duplicate_threshold <= 1.0:
            raise ValueError("Require 0 <= review_threshold <= duplicate_threshold <= 1")
        self.duplicate_threshold = duplicate_threshold
        self.review_threshold = review_threshold
        self.sample_size = min(sample_size, 500)
        self.max_matches = max_matches

    def classify(self, score: float) -> str:
        if score >= self.duplicate_threshold:
            return VERDICT_DUPLICATE
        if score >= self.review_threshold:
            return VERDICT_REVIEW
        return VERDICT_PASS

    def screen(self, content: str, corpus: Iterable) -> GateDecision:
        """Compare ``content`` with each corpus entry (objects with ``id`` and ``content``)."""
        scored = []
        for entry in list(corpus)[: self.sample_size]:
            result = compare(content, entry.content)
            scored.append(SimilarityMatch(entry.id, result.overall, result))
        scored.sort(key=lambda m: (-m.score, m.problem_id))

        best = scored[0].score if scored else 0.0
        ranked = tuple(m for m in scored if m.score >= self.review_threshold)[: self.max_matches]
        return GateDecision(verdict=self.classify(best), score=best, matches=ranked)
