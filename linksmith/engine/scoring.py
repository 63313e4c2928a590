"""Multi-layer entity scoring.

Each candidate entity is scored against note content by independent
layers whose contributions are summed:
- Content match: exact and stemmed token overlap with name or aliases
- Type boost: fixed per entity category
- Context boost: note type (daily, project, tech) favours categories
- Recency boost: time since the entity was last mentioned
- Cross-folder boost: entity lives in a different top-level folder
- Hub boost: tiered by backlink count
- Feedback adjustment: learned from accept/reject history
- Semantic boost: embedding similarity, when a provider is available
"""

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Set, Tuple

from .indexers.recency import RecencyIndex, recency_boost
from .models import (
    Entity, EntityCategory, NoteContext, ScoreBreakdown, StrictnessConfig,
)
from .tokenizer import tokenize, stem

MAX_ENTITY_LENGTH = 25
MAX_ENTITY_WORDS = 3
FULL_ALIAS_MATCH_BONUS = 8
CROSS_FOLDER_BOOST = 3
SEMANTIC_MIN_SIMILARITY = 0.30
SEMANTIC_MAX_BOOST = 12
MIN_SEMANTIC_CONTENT_LENGTH = 20

ARTICLE_PATTERNS = [
    re.compile(r"\bguide\s+to\b", re.IGNORECASE),
    re.compile(r"\bhow\s+to\b", re.IGNORECASE),
    re.compile(r"\bcomplete\s+", re.IGNORECASE),
    re.compile(r"\bultimate\s+", re.IGNORECASE),
    re.compile(r"\bchecklist\b", re.IGNORECASE),
    re.compile(r"\bcheatsheet\b", re.IGNORECASE),
    re.compile(r"\bcheat\s+sheet\b", re.IGNORECASE),
    re.compile(r"\bbest\s+practices\b", re.IGNORECASE),
    re.compile(r"\bintroduction\s+to\b", re.IGNORECASE),
    re.compile(r"\btutorial\b", re.IGNORECASE),
    re.compile(r"\bworksheet\b", re.IGNORECASE),
]

TYPE_BOOST: Dict[EntityCategory, int] = {
    EntityCategory.PEOPLE: 5,
    EntityCategory.PROJECTS: 3,
    EntityCategory.ORGANIZATIONS: 2,
    EntityCategory.LOCATIONS: 1,
    EntityCategory.CONCEPTS: 1,
    EntityCategory.TECHNOLOGIES: 0,
    EntityCategory.ACRONYMS: 0,
    EntityCategory.OTHER: 0,
}

CONTEXT_BOOST: Dict[NoteContext, Dict[EntityCategory, int]] = {
    NoteContext.DAILY: {
        EntityCategory.PEOPLE: 5,
        EntityCategory.PROJECTS: 2,
    },
    NoteContext.PROJECT: {
        EntityCategory.PROJECTS: 5,
        EntityCategory.TECHNOLOGIES: 2,
    },
    NoteContext.TECH: {
        EntityCategory.TECHNOLOGIES: 5,
        EntityCategory.ACRONYMS: 3,
    },
    NoteContext.GENERAL: {},
}

# Path substrings per note context, checked in this order
CONTEXT_MARKERS = (
    (NoteContext.DAILY, ("daily-notes", "daily/", "journal", "logs/", "/log/")),
    (NoteContext.PROJECT, ("projects/", "project/", "systems/", "initiatives/")),
    (NoteContext.TECH, ("tech/", "code/", "engineering/", "docs/", "documentation/")),
)

HUB_TIERS = (
    (100, 8),
    (50, 5),
    (20, 3),
    (5, 1),
)


def is_likely_article_title(name: str) -> bool:
    """Names matching title patterns or longer than three words are articles, not concepts."""
    if any(pattern.search(name) for pattern in ARTICLE_PATTERNS):
        return True
    return len(name.split()) > MAX_ENTITY_WORDS


def is_suggestible_name(name: str) -> bool:
    return bool(name) and len(name) <= MAX_ENTITY_LENGTH and not is_likely_article_title(name)


def note_context(note_path: Optional[str]) -> NoteContext:
    if not note_path:
        return NoteContext.GENERAL
    lower = note_path.lower()
    for context, markers in CONTEXT_MARKERS:
        if any(marker in lower for marker in markers):
            return context
    return NoteContext.GENERAL


def type_boost(category: EntityCategory) -> int:
    return TYPE_BOOST.get(category, 0)


def context_boost(context: NoteContext, category: EntityCategory) -> int:
    return CONTEXT_BOOST[context].get(category, 0)


def cross_folder_boost(entity_path: str, note_path: Optional[str]) -> int:
    if not entity_path or not note_path:
        return 0
    entity_folder = entity_path.split("/")[0]
    note_folder = note_path.split("/")[0]
    if entity_folder and note_folder and entity_folder != note_folder:
        return CROSS_FOLDER_BOOST
    return 0


def hub_boost(hub_score: float) -> int:
    for threshold, boost in HUB_TIERS:
        if hub_score >= threshold:
            return boost
    return 0


def semantic_boost(similarity: float, config: StrictnessConfig) -> float:
    """Boost for an embedding similarity; 0 below the similarity floor."""
    if similarity < SEMANTIC_MIN_SIMILARITY:
        return 0.0
    return similarity * SEMANTIC_MAX_BOOST * config.semantic_multiplier


def confidence_level(score: float) -> str:
    if score >= 20:
        return "high"
    if score >= 12:
        return "medium"
    return "low"


@dataclass
class NameMatch:
    score: int = 0
    matched_words: int = 0
    exact_matches: int = 0
    total_tokens: int = 0


def score_name(name: str, tokens: Set[str], stems: Set[str], config: StrictnessConfig) -> NameMatch:
    """Exact then stemmed overlap of one name or alias with content."""
    name_tokens = tokenize(name)
    result = NameMatch(total_tokens=len(name_tokens))
    for token in name_tokens:
        if token in tokens:
            result.score += config.exact_match_bonus
            result.matched_words += 1
            result.exact_matches += 1
        elif stem(token) in stems:
            result.score += config.stem_match_bonus
            result.matched_words += 1
    return result


def content_match_score(entity: Entity, tokens: Set[str], stems: Set[str],
                        config: StrictnessConfig) -> int:
    """
    Content layer for one entity.

    The better of the primary name and the best alias counts. Multi-word
    names below the match ratio and, in strict modes, single-word names
    without an exact hit score 0.
    """
    best = score_name(entity.name, tokens, stems, config)
    best_alias = NameMatch()
    for alias in entity.aliases:
        candidate = score_name(alias, tokens, stems, config)
        if candidate.score > best_alias.score:
            best_alias = candidate
    if best_alias.score > best.score:
        best = best_alias

    if best.total_tokens == 0:
        return 0

    score = best.score
    for alias in entity.aliases:
        alias_lower = alias.lower()
        if len(alias_lower) >= 4 and not any(c.isspace() for c in alias_lower) and alias_lower in tokens:
            score += FULL_ALIAS_MATCH_BONUS
            break

    if best.total_tokens > 1 and best.matched_words / best.total_tokens < config.min_match_ratio:
        return 0

    if config.require_exact_single_word and best.total_tokens == 1 and best.exact_matches == 0:
        return 0

    return score


def name_overlaps_content(entity: Entity, tokens: Set[str], stems: Set[str]) -> bool:
    """True when any name or alias token appears in content, literally or stemmed."""
    for name in (entity.name,) + tuple(entity.aliases):
        for token in tokenize(name):
            if token in tokens or stem(token) in stems:
                return True
    return False


class EntityScorer:
    """
    Scores catalog entities against one piece of content.

    Built once per suggestion call from the content terms and read-only
    snapshots; holds no mutable shared state.
    """

    def __init__(self,
                 config: StrictnessConfig,
                 tokens: Set[str],
                 stems: Set[str],
                 note_path: Optional[str] = None,
                 recency: Optional[RecencyIndex] = None,
                 feedback_boosts: Optional[Dict[str, int]] = None,
                 now: Optional[datetime] = None):
        self.config = config
        self.tokens = tokens
        self.stems = stems
        self.note_path = note_path
        self.context = note_context(note_path)
        self.recency = recency
        self.feedback_boosts = feedback_boosts or {}
        self.now = now

    def score(self, entity: Entity) -> ScoreBreakdown:
        """Every non-semantic layer for one entity."""
        return ScoreBreakdown(
            content_match=content_match_score(entity, self.tokens, self.stems, self.config),
            type_boost=type_boost(entity.category),
            context_boost=context_boost(self.context, entity.category),
            recency_boost=recency_boost(entity.name, self.recency, self.now) if self.now else 0,
            cross_folder_boost=cross_folder_boost(entity.source_path, self.note_path),
            hub_boost=hub_boost(entity.hub_score),
            feedback_adjustment=self.feedback_boosts.get(entity.name_lower, 0),
        )

    def overlaps(self, entity: Entity) -> bool:
        return name_overlaps_content(entity, self.tokens, self.stems)


def score_entity(entity: Entity,
                 content_terms: Tuple[Set[str], Set[str]],
                 config: StrictnessConfig,
                 note_path: Optional[str] = None,
                 recency: Optional[RecencyIndex] = None,
                 feedback_adjustment: int = 0,
                 now: Optional[datetime] = None) -> ScoreBreakdown:
    """Score a single entity without building a scorer by hand."""
    tokens, stems = content_terms
    scorer = EntityScorer(
        config, tokens, stems,
        note_path=note_path,
        recency=recency,
        feedback_boosts={entity.name_lower: feedback_adjustment},
        now=now,
    )
    return scorer.score(entity)
