"""Data models for the linksmith suggestion engine."""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import List, Dict, Any, Optional, Tuple


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation used throughout the store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class EntityCategory(str, Enum):
    """Entity categories known to the catalog."""
    PEOPLE = "people"
    PROJECTS = "projects"
    ORGANIZATIONS = "organizations"
    LOCATIONS = "locations"
    CONCEPTS = "concepts"
    TECHNOLOGIES = "technologies"
    ACRONYMS = "acronyms"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Optional[str]) -> "EntityCategory":
        try:
            return cls((value or "other").lower())
        except ValueError:
            return cls.OTHER


class NoteContext(str, Enum):
    """Note type inferred from its vault path."""
    DAILY = "daily"
    PROJECT = "project"
    TECH = "tech"
    GENERAL = "general"


class StrictnessMode(str, Enum):
    """Named precision/recall trade-offs."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class StrictnessConfig:
    """Every threshold a strictness mode controls."""
    min_word_length: int
    min_suggestion_score: int
    min_match_ratio: float
    require_exact_single_word: bool
    exact_match_bonus: int
    stem_match_bonus: int
    semantic_multiplier: float

    def adaptive_min_score(self, content_length: int) -> int:
        """
        Scale the minimum score by content length.

        Short fragments (<50 chars) get a lower bar so they are not starved;
        long documents (>200 chars) need stronger matches.
        """
        base = self.min_suggestion_score
        if content_length < 50:
            return max(5, int(base * 0.6))
        if content_length > 200:
            return int(base * 1.2)
        return base


STRICTNESS_PROFILES: Dict[StrictnessMode, StrictnessConfig] = {
    StrictnessMode.CONSERVATIVE: StrictnessConfig(
        min_word_length=3,
        min_suggestion_score=15,
        min_match_ratio=0.6,
        require_exact_single_word=True,
        exact_match_bonus=10,
        stem_match_bonus=3,
        semantic_multiplier=0.6,
    ),
    StrictnessMode.BALANCED: StrictnessConfig(
        min_word_length=3,
        min_suggestion_score=8,
        min_match_ratio=0.4,
        require_exact_single_word=False,
        exact_match_bonus=10,
        stem_match_bonus=5,
        semantic_multiplier=1.0,
    ),
    StrictnessMode.AGGRESSIVE: StrictnessConfig(
        min_word_length=3,
        min_suggestion_score=5,
        min_match_ratio=0.3,
        require_exact_single_word=False,
        exact_match_bonus=10,
        stem_match_bonus=6,
        semantic_multiplier=1.3,
    ),
}


@dataclass(frozen=True)
class Entity:
    """A linkable entity from the catalog."""
    name: str
    category: EntityCategory = EntityCategory.OTHER
    aliases: Tuple[str, ...] = ()
    source_path: str = ""
    hub_score: float = 0

    @property
    def name_lower(self) -> str:
        return self.name.lower()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category.value,
            "aliases": list(self.aliases),
            "source_path": self.source_path,
            "hub_score": self.hub_score,
        }


# Layer names in attribution order
LAYER_NAMES = (
    ("content_match", "content_match"),
    ("cooccurrence_boost", "cooccurrence"),
    ("type_boost", "type_boost"),
    ("context_boost", "context_boost"),
    ("recency_boost", "recency"),
    ("cross_folder_boost", "cross_folder"),
    ("hub_boost", "hub_boost"),
    ("feedback_adjustment", "feedback"),
    ("semantic_boost", "semantic"),
)


@dataclass
class ScoreBreakdown:
    """Per-layer contributions; the total is their sum."""
    content_match: float = 0
    cooccurrence_boost: float = 0
    type_boost: float = 0
    context_boost: float = 0
    recency_boost: float = 0
    cross_folder_boost: float = 0
    hub_boost: float = 0
    feedback_adjustment: float = 0
    semantic_boost: Optional[float] = None

    @property
    def total(self) -> float:
        return sum(value for _, value in self.layers())

    @property
    def has_relevance(self) -> bool:
        """True when content, co-occurrence or semantic evidence exists."""
        return (
            self.content_match > 0
            or self.cooccurrence_boost > 0
            or (self.semantic_boost or 0) > 0
        )

    def layers(self) -> List[Tuple[str, float]]:
        result = []
        for attr, label in LAYER_NAMES:
            value = getattr(self, attr)
            if value is None:
                continue
            result.append((label, value))
        return result

    def top_contributing_layer(self) -> str:
        """Largest-magnitude layer, e.g. ``content_match (+20.0)``."""
        ranked = sorted(self.layers(), key=lambda item: abs(item[1]), reverse=True)
        if not ranked or ranked[0][1] == 0:
            return "none"
        label, value = ranked[0]
        sign = "+" if value > 0 else ""
        return f"{label} ({sign}{value:.1f})"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if data["semantic_boost"] is None:
            del data["semantic_boost"]
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScoreBreakdown":
        if not isinstance(data, dict):
            return cls()
        kwargs = {}
        for attr, _ in LAYER_NAMES:
            value = data.get(attr)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                kwargs[attr] = value
        return cls(**kwargs)


@dataclass
class SuggestionEvent:
    """Audit record for one scored candidate in one suggestion call."""
    entity: str
    note_path: str
    timestamp: datetime
    total_score: float
    breakdown: ScoreBreakdown
    threshold: float
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "note_path": self.note_path,
            "timestamp": self.timestamp.isoformat(),
            "total_score": self.total_score,
            "breakdown": self.breakdown.to_dict(),
            "threshold": self.threshold,
            "passed": self.passed,
            "top_contributing_layer": self.breakdown.top_contributing_layer(),
        }


@dataclass
class FeedbackEntry:
    """One accept/reject judgment for a suggested entity."""
    id: int
    entity: str
    context: str
    note_path: str
    correct: bool
    created_at: datetime

    @property
    def is_implicit(self) -> bool:
        return self.context.startswith("implicit:")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity": self.entity,
            "context": self.context,
            "note_path": self.note_path,
            "correct": self.correct,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class FeedbackReport:
    """Outcome of recording one judgment."""
    entry: FeedbackEntry
    suppressed: bool
    suppression_updated: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry": self.entry.to_dict(),
            "suppressed": self.suppressed,
            "suppression_updated": self.suppression_updated,
        }


@dataclass
class Application:
    """A wikilink inserted into a note, tracked for removal detection."""
    entity: str
    note_path: str
    status: str  # applied|removed
    applied_at: datetime


@dataclass
class Suppression:
    """An entity excluded from suggestions for its false-positive rate."""
    entity: str
    false_positive_rate: float
    updated_at: datetime


@dataclass
class EntityStats:
    """Aggregate feedback accuracy for one entity."""
    entity: str
    total: int
    correct: int
    incorrect: int
    accuracy: float
    suppressed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScoredSuggestion:
    """Detailed view of a returned suggestion."""
    entity: str
    path: str
    total_score: float
    breakdown: ScoreBreakdown
    confidence: str  # high|medium|low
    feedback_count: int = 0
    accuracy: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "path": self.path,
            "total_score": self.total_score,
            "breakdown": self.breakdown.to_dict(),
            "confidence": self.confidence,
            "feedback_count": self.feedback_count,
            "accuracy": self.accuracy,
        }


@dataclass
class SuggestResult:
    """Ranked suggestions plus the formatted suffix."""
    suggestions: List[str] = field(default_factory=list)
    suffix: str = ""
    detailed: Optional[List[ScoredSuggestion]] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"suggestions": self.suggestions, "suffix": self.suffix}
        if self.detailed is not None:
            data["detailed"] = [d.to_dict() for d in self.detailed]
        return data
