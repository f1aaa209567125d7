"""
Semantic Normalizer

Maps raw tokens and phrases to canonical business vocabulary.

Matching order, first hit wins:
1. Exact canonical name (1.0) or exact synonym (0.9), categories in
   priority order, canonical names before synonyms within a category
2. Bidirectional substring against synonyms (0.7)
3. Keyword/regex heuristics per category (0.3), value kept as-is
4. Unknown (0.0)

The normalizer is read-only after construction and is shared by
reference across requests.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..common.semantic_dictionary import (
    CATEGORY_PRIORITY,
    CanonicalTerm,
    SemanticDictionary,
    TermCategory,
)

logger = logging.getLogger("ledgerlens.retriever.normalizer")

CONFIDENCE_CANONICAL = 1.0
CONFIDENCE_SYNONYM = 0.9
CONFIDENCE_SUBSTRING = 0.7
CONFIDENCE_HEURISTIC = 0.3
CONFIDENCE_NONE = 0.0

# Shorter strings match inside too many unrelated words ("it" in "profit")
MIN_SUBSTRING_LENGTH = 4

MONTHS = (
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
)

_TOKEN_RE = re.compile(r"[a-z0-9]+(?:['.][a-z0-9]+)*|%")
_YEAR_RE = re.compile(r"(?<!\d)((?:19|20)\d{2})(?!\d)")
_QUARTER_RE = re.compile(r"(?<![a-z])q([1-4])(?!\d)", re.IGNORECASE)
_MONTH_RE = re.compile(
    r"\b(jan(?:uary)?|feb(?:ruary)?|mar(?:ch)?|apr(?:il)?|may|june?|july?|"
    r"aug(?:ust)?|sep(?:t(?:ember)?)?|oct(?:ober)?|nov(?:ember)?|dec(?:ember)?)\b",
    re.IGNORECASE,
)


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens; keeps "%" as its own token"""
    if not text:
        return []
    return _TOKEN_RE.findall(text.lower())


def month_name(text: str) -> Optional[str]:
    """Canonical month name for a full or abbreviated month, else None"""
    if not text:
        return None
    prefix = text.strip().lower()[:3]
    for name in MONTHS:
        if name.lower().startswith(prefix) and len(prefix) == 3:
            return name
    return None


@dataclass(frozen=True)
class NormalizedTerm:
    """Result of normalizing one token"""
    original: str
    normalized: str
    category: TermCategory
    confidence: float

    @property
    def is_match(self) -> bool:
        return self.confidence > CONFIDENCE_NONE


@dataclass(frozen=True)
class TimeFilters:
    """Optional year / quarter / month constraints"""
    year: Optional[int] = None
    quarter: Optional[str] = None  # "Q1".."Q4"
    month: Optional[str] = None  # "January".."December"

    @property
    def is_empty(self) -> bool:
        return self.year is None and self.quarter is None and self.month is None

    def merge(self, other: "TimeFilters") -> "TimeFilters":
        """Fill unset fields from other; fields already set are kept"""
        return TimeFilters(
            year=self.year if self.year is not None else other.year,
            quarter=self.quarter if self.quarter is not None else other.quarter,
            month=self.month if self.month is not None else other.month,
        )

    def with_inferred_quarter(self) -> "TimeFilters":
        """Derive the quarter from the month when only the month is known"""
        if self.quarter is not None or self.month is None:
            return self
        quarter = f"Q{MONTHS.index(self.month) // 3 + 1}"
        return TimeFilters(year=self.year, quarter=quarter, month=self.month)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.year is not None:
            data["year"] = self.year
        if self.quarter is not None:
            data["quarter"] = self.quarter
        if self.month is not None:
            data["month"] = self.month
        return data


class SemanticNormalizer:
    """
    Normalizes tokens against a SemanticDictionary.

    Responsibilities:
    1. Token normalization with graded confidence
    2. Time hint extraction (year, quarter, month)
    3. Row identifier detection
    4. Row-side semantic string construction
    """

    # Keyword heuristics, checked in this order
    HEURISTIC_PATTERNS: List[Tuple[TermCategory, List[str]]] = [
        (TermCategory.TIME, [
            r"^(19|20)\d{2}$",
            r"^q[1-4]$",
            r"\bfy\b|year|fiscal|quarter",
            r"^(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)",
            r"month",
        ]),
        (TermCategory.METRIC, [
            r"revenue|sales|profit|income|margin|ebit|ebitda|roi|roe|roa",
            r"cost|expense|depreciation|amortization|tax|interest",
        ]),
        (TermCategory.DIMENSION, [
            r"customer|client|region|product|department|channel|category",
        ]),
        (TermCategory.STATUS, [
            r"open|closed|active|pending|completed|cancel",
        ]),
        (TermCategory.PRIORITY, [
            r"high|medium|low|critical|urgent|normal",
        ]),
        (TermCategory.OPERATION, [
            r"marketing|finance|operations|\bhr\b",
        ]),
        (TermCategory.PERFORMANCE, [
            r"efficiency|quality|speed|volume|performance",
        ]),
    ]

    # Short coded tokens (TKT0032, Customer123, hex ids, SKU codes)
    IDENTIFIER_PATTERNS = [
        r"^[a-z]{2,4}\d{3,6}$",
        r"^[a-z]+\d+$",
        r"^(?=[a-f]*\d)[a-f0-9]{8,}$",
        r"^(?=[a-z]*\d)[a-z0-9]{4,8}$",
    ]

    def __init__(self, dictionary: SemanticDictionary):
        self._dictionary = dictionary

        # Exact lookup: first registration wins, so category priority and
        # canonical-before-synonym are both encoded in build order
        self._exact: Dict[str, Tuple[CanonicalTerm, float]] = {}
        for category in CATEGORY_PRIORITY:
            entries = dictionary.terms(category)
            for term in entries:
                self._exact.setdefault(term.canonical_name.lower(), (term, CONFIDENCE_CANONICAL))
            for term in entries:
                for synonym in sorted(term.synonyms):
                    self._exact.setdefault(synonym, (term, CONFIDENCE_SYNONYM))

        self._substring_candidates: List[Tuple[str, CanonicalTerm]] = []
        for term in dictionary.terms():
            for synonym in sorted(term.synonyms | {term.canonical_name.lower()}):
                if len(synonym) >= MIN_SUBSTRING_LENGTH:
                    self._substring_candidates.append((synonym, term))

        self._heuristics = [
            (category, [re.compile(p) for p in patterns])
            for category, patterns in self.HEURISTIC_PATTERNS
        ]
        self._identifier_patterns = [re.compile(p, re.IGNORECASE) for p in self.IDENTIFIER_PATTERNS]

        phrases = {
            key for key in self._exact
            if len(tokenize(key)) > 1
        }
        self._phrases = tuple(sorted(phrases, key=lambda p: (-len(tokenize(p)), -len(p), p)))

        logger.debug(
            "Normalizer ready: %d exact keys, %d substring candidates, %d phrases",
            len(self._exact), len(self._substring_candidates), len(self._phrases),
        )

    @property
    def dictionary(self) -> SemanticDictionary:
        return self._dictionary

    def normalize(self, token: Optional[str]) -> NormalizedTerm:
        """
        Normalize a single token or phrase.

        Args:
            token: Raw text (any case)

        Returns:
            NormalizedTerm; never raises
        """
        original = token if isinstance(token, str) else ""
        key = original.strip().lower()
        if not key:
            return NormalizedTerm(original, original, TermCategory.UNKNOWN, CONFIDENCE_NONE)

        exact = self._exact.get(key)
        if exact is not None:
            term, confidence = exact
            return NormalizedTerm(original, term.canonical_name, term.category, confidence)

        if len(key) >= MIN_SUBSTRING_LENGTH:
            for synonym, term in self._substring_candidates:
                if synonym in key or key in synonym:
                    return NormalizedTerm(original, term.canonical_name, term.category, CONFIDENCE_SUBSTRING)

        category = self._infer_category(key)
        if category is not TermCategory.UNKNOWN:
            return NormalizedTerm(original, original, category, CONFIDENCE_HEURISTIC)

        return NormalizedTerm(original, original, TermCategory.UNKNOWN, CONFIDENCE_NONE)

    def _infer_category(self, key: str) -> TermCategory:
        for category, patterns in self._heuristics:
            if any(p.search(key) for p in patterns):
                return category
        return TermCategory.UNKNOWN

    def normalize_metric(self, value: Optional[str]) -> str:
        """Canonical metric name, or the value unchanged"""
        result = self.normalize(value)
        if result.category is TermCategory.METRIC and result.confidence >= CONFIDENCE_SUBSTRING:
            return result.normalized
        return value or ""

    def extract_time_hints(self, text: Optional[str], infer_quarter: bool = True) -> TimeFilters:
        """
        Pull year, quarter and month out of free text.

        The first occurrence of each wins. Unless infer_quarter is False,
        a month without a quarter implies the quarter containing that month.
        """
        if not text:
            return TimeFilters()

        year = None
        match = _YEAR_RE.search(text)
        if match:
            year = int(match.group(1))

        quarter = None
        match = _QUARTER_RE.search(text)
        if match:
            quarter = f"Q{match.group(1)}"

        month = None
        match = _MONTH_RE.search(text)
        if match:
            month = month_name(match.group(1))

        hints = TimeFilters(year=year, quarter=quarter, month=month)
        return hints.with_inferred_quarter() if infer_quarter else hints

    def is_unique_identifier(self, text: Optional[str]) -> bool:
        """True for coded values such as TKT0032, Customer123 or hex ids"""
        if not text or not isinstance(text, str):
            return False
        value = text.strip()
        return any(p.match(value) for p in self._identifier_patterns)

    def build_semantic_string(
        self,
        sheet_name: str,
        metric: str,
        dimensions: Optional[Dict[str, Any]] = None,
        time: Optional[TimeFilters] = None,
    ) -> str:
        """
        Build the canonical string embedded for one data row.

        Format: sheet | metric | dimension values | year | quarter | month.
        Identifier-like dimension values are left out.
        """
        parts = [sheet_name, self.normalize_metric(metric)]

        for value in (dimensions or {}).values():
            if value is None:
                continue
            text = str(value).strip()
            if not text or self.is_unique_identifier(text):
                continue
            parts.append(self.normalize(text).normalized)

        if time is not None:
            if time.year is not None:
                parts.append(str(time.year))
            if time.quarter:
                parts.append(time.quarter)
            if time.month:
                parts.append(time.month)

        return " | ".join(p for p in parts if p)

    def available_terms(self, category: TermCategory) -> List[str]:
        return [t.canonical_name for t in self._dictionary.terms(category)]

    def synonyms_for(self, category: TermCategory, term: str) -> List[str]:
        entry = self._dictionary.get(category, term)
        return sorted(entry.synonyms) if entry else []

    def multi_word_phrases(self) -> Tuple[str, ...]:
        """Known multi-token phrases, longest first"""
        return self._phrases
