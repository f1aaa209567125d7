"""
Semantic Dictionary

Business vocabulary used to normalize query tokens and row labels.
Loaded once from data/semantic_dictionary.json and read-only afterwards.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional, Tuple

logger = logging.getLogger("ledgerlens.common.semantic_dictionary")

DATA_DIR = Path(__file__).parent / "data"
DEFAULT_DICTIONARY_PATH = DATA_DIR / "semantic_dictionary.json"


class TermCategory(str, Enum):
    """Vocabulary categories, in match-priority order"""
    METRIC = "metric"
    DIMENSION = "dimension"
    TIME = "time"
    STATUS = "status"
    PRIORITY = "priority"
    OPERATION = "operation"
    PERFORMANCE = "performance"
    UNKNOWN = "unknown"


# Section names used in the JSON file
SECTION_CATEGORIES = {
    "metrics": TermCategory.METRIC,
    "dimensions": TermCategory.DIMENSION,
    "time": TermCategory.TIME,
    "status": TermCategory.STATUS,
    "priority": TermCategory.PRIORITY,
    "operations": TermCategory.OPERATION,
    "performance": TermCategory.PERFORMANCE,
}

# Cross-category synonym collisions resolve in this order
CATEGORY_PRIORITY: Tuple[TermCategory, ...] = (
    TermCategory.METRIC,
    TermCategory.DIMENSION,
    TermCategory.TIME,
    TermCategory.STATUS,
    TermCategory.PRIORITY,
    TermCategory.OPERATION,
    TermCategory.PERFORMANCE,
)


@dataclass(frozen=True)
class CanonicalTerm:
    """A business vocabulary entry"""
    category: TermCategory
    canonical_name: str
    synonyms: FrozenSet[str]


class SemanticDictionary:
    """
    Immutable collection of canonical terms.

    Entries keep their file order within a category; categories are
    always iterated in CATEGORY_PRIORITY order.
    """

    def __init__(self, terms: List[CanonicalTerm]):
        by_category: Dict[TermCategory, List[CanonicalTerm]] = {c: [] for c in CATEGORY_PRIORITY}
        for term in terms:
            if term.category not in by_category:
                raise ValueError(f"Unsupported term category: {term.category}")
            by_category[term.category].append(term)

        self._terms: Dict[TermCategory, Tuple[CanonicalTerm, ...]] = {
            c: tuple(entries) for c, entries in by_category.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Dict[str, List[str]]]) -> "SemanticDictionary":
        """Build from the {section: {canonical: [synonyms]}} layout"""
        terms = []
        for section, mappings in data.items():
            category = SECTION_CATEGORIES.get(section)
            if category is None:
                logger.warning("Skipping unknown dictionary section: %s", section)
                continue
            for canonical, synonyms in mappings.items():
                terms.append(CanonicalTerm(
                    category=category,
                    canonical_name=canonical,
                    synonyms=frozenset(s.strip().lower() for s in synonyms if s and s.strip()),
                ))
        return cls(terms)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SemanticDictionary":
        """Load the dictionary from a JSON file (bundled file by default)"""
        path = Path(path) if path else DEFAULT_DICTIONARY_PATH
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        dictionary = cls.from_dict(data)
        logger.info("Loaded semantic dictionary from %s (%d terms)", path, len(dictionary))
        return dictionary

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._terms.values())

    def terms(self, category: Optional[TermCategory] = None) -> Tuple[CanonicalTerm, ...]:
        """Terms of one category, or all terms in priority order"""
        if category is not None:
            return self._terms.get(category, ())
        return tuple(t for c in CATEGORY_PRIORITY for t in self._terms[c])

    def get(self, category: TermCategory, canonical_name: str) -> Optional[CanonicalTerm]:
        for term in self._terms.get(category, ()):
            if term.canonical_name.lower() == canonical_name.lower():
                return term
        return None
