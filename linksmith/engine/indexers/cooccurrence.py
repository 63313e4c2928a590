"""Entity co-occurrence mining and association boosts.

Entities that keep appearing in the same notes are associated. Pair
weights use the Adamic-Adar index so that crowded notes (daily logs
mentioning dozens of entities) count less than focused ones, and the
boost is the normalized PMI of the pair, which discounts entities that
appear everywhere.
"""

import json
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set, Tuple, Any

from loguru import logger

from ..models import utcnow
from ..storage import StateStore
from ..tokenizer import tokenize
from .recency import RecencyIndex, recency_boost

DEFAULT_MIN_COOCCURRENCE = 0.5
MAX_ENTITY_NAME_LENGTH = 30
PMI_SCALE = 12
MAX_COOCCURRENCE_BOOST = 12
CACHE_MAX_AGE = timedelta(hours=1)
CACHE_ROW_ID = 1


@dataclass
class CooccurrenceIndex:
    """Immutable association snapshot, keyed by lowercase entity name."""
    associations: Dict[str, Dict[str, float]] = field(default_factory=dict)
    document_frequency: Dict[str, int] = field(default_factory=dict)
    total_notes_scanned: int = 0
    min_count: float = DEFAULT_MIN_COOCCURRENCE
    generated_at: Optional[datetime] = None

    @property
    def total_associations(self) -> int:
        return sum(
            1 for related in self.associations.values()
            for weight in related.values() if weight >= self.min_count
        )


def note_contains_entity(content_tokens: Set[str], entity_name: str) -> bool:
    """Single-word names need their token; longer names need half of theirs."""
    entity_tokens = tokenize(entity_name)
    if not entity_tokens:
        return False
    matched = sum(1 for token in entity_tokens if token in content_tokens)
    if len(entity_tokens) == 1:
        return matched == 1
    return matched / len(entity_tokens) >= 0.5


def mine_cooccurrences(notes: Iterable[Tuple[str, str]],
                       entity_names: Iterable[str],
                       min_count: float = DEFAULT_MIN_COOCCURRENCE) -> CooccurrenceIndex:
    """
    Build a co-occurrence index from ``(path, content)`` pairs.

    Args:
        notes: Note paths and bodies
        entity_names: Catalog entity names to track
        min_count: Minimum pair weight for an association to boost

    Returns:
        CooccurrenceIndex with pair weights and document frequencies
    """
    valid = sorted({
        name.lower() for name in entity_names
        if name and len(name) <= MAX_ENTITY_NAME_LENGTH
    })
    associations: Dict[str, Dict[str, float]] = defaultdict(dict)
    document_frequency: Dict[str, int] = defaultdict(int)
    notes_scanned = 0

    for path, content in notes:
        notes_scanned += 1
        content_tokens = set(tokenize(content))
        mentioned = [name for name in valid if note_contains_entity(content_tokens, name)]

        for name in mentioned:
            document_frequency[name] += 1

        degree = len(mentioned)
        weight = 1 / math.log(degree) if degree >= 3 else 1.0
        for a in mentioned:
            for b in mentioned:
                if a != b:
                    associations[a][b] = associations[a].get(b, 0.0) + weight

    index = CooccurrenceIndex(
        associations=dict(associations),
        document_frequency=dict(document_frequency),
        total_notes_scanned=notes_scanned,
        min_count=min_count,
        generated_at=utcnow(),
    )
    logger.info(
        f"Co-occurrence index mined: {notes_scanned} notes, "
        f"{index.total_associations} associations"
    )
    return index


def compute_npmi(cooc_count: float, df_entity: int, df_seed: int, total_notes: int) -> float:
    """Normalized PMI of a pair, clamped to [0, 1]."""
    if cooc_count <= 0 or df_entity <= 0 or df_seed <= 0 or total_notes <= 0:
        return 0.0

    pxy = cooc_count / total_notes
    px = df_entity / total_notes
    py = df_seed / total_notes

    pmi = math.log(pxy / (px * py))
    neg_log_pxy = -math.log(pxy)
    if neg_log_pxy == 0:
        return 1.0

    return max(0.0, min(1.0, pmi / neg_log_pxy))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def cooccurrence_boost(entity_name: str,
                       matched_entities: Iterable[str],
                       index: Optional[CooccurrenceIndex],
                       recency: Optional[RecencyIndex] = None,
                       now: Optional[datetime] = None) -> int:
    """
    Boost for ``entity_name`` from its strongest association with any
    directly matched entity.

    Recently mentioned entities get 1.5x, stale ones 0.5x, when a
    recency index is supplied.
    """
    if index is None:
        return 0

    name = entity_name.lower()
    df_entity = index.document_frequency.get(name, 0)
    if df_entity == 0 or index.total_notes_scanned == 0:
        return 0

    best = 0.0
    for seed in matched_entities:
        seed = seed.lower()
        related = index.associations.get(seed)
        if not related:
            continue
        count = related.get(name, 0.0)
        if count < index.min_count:
            continue
        df_seed = index.document_frequency.get(seed, 0)
        best = max(best, compute_npmi(count, df_entity, df_seed, index.total_notes_scanned))

    if best == 0:
        return 0

    boost = best * PMI_SCALE
    if recency is not None:
        recent = recency_boost(name, recency, now or utcnow()) > 0
        boost *= 1.5 if recent else 0.5

    return min(round_half_up(boost), MAX_COOCCURRENCE_BOOST)


def serialize_index(index: CooccurrenceIndex) -> Dict[str, Any]:
    return {
        "associations": index.associations,
        "document_frequency": index.document_frequency,
        "total_notes_scanned": index.total_notes_scanned,
        "min_count": index.min_count,
        "generated_at": index.generated_at.isoformat() if index.generated_at else None,
    }


def deserialize_index(data: Any) -> Optional[CooccurrenceIndex]:
    """Rebuild an index from serialized data; None when the shape is wrong."""
    if not isinstance(data, dict) or not isinstance(data.get("associations"), dict):
        return None
    try:
        associations = {
            str(entity): {str(k): float(v) for k, v in related.items()}
            for entity, related in data["associations"].items()
        }
        document_frequency = {
            str(k): int(v) for k, v in (data.get("document_frequency") or {}).items()
        }
        generated_raw = data.get("generated_at")
        return CooccurrenceIndex(
            associations=associations,
            document_frequency=document_frequency,
            total_notes_scanned=int(data.get("total_notes_scanned") or 0),
            min_count=float(data.get("min_count") or DEFAULT_MIN_COOCCURRENCE),
            generated_at=datetime.fromisoformat(generated_raw) if generated_raw else None,
        )
    except (AttributeError, TypeError, ValueError) as e:
        logger.debug(f"Discarding malformed co-occurrence data: {e}")
        return None


def save_cooccurrence(store: StateStore, index: CooccurrenceIndex,
                      built_at: Optional[datetime] = None) -> None:
    data = json.dumps(serialize_index(index))
    built_at = built_at or utcnow()
    values = [data, built_at, len(index.associations), index.total_associations]

    with store.transaction() as conn:
        existing = conn.execute(
            "SELECT 1 FROM cooccurrence_cache WHERE id = ?", [CACHE_ROW_ID]
        ).fetchone()
        if existing:
            conn.execute(
                """
                UPDATE cooccurrence_cache
                SET data = ?, built_at = ?, entity_count = ?, association_count = ?
                WHERE id = ?
                """,
                values + [CACHE_ROW_ID]
            )
        else:
            conn.execute(
                """
                INSERT INTO cooccurrence_cache (data, built_at, entity_count, association_count, id)
                VALUES (?, ?, ?, ?, ?)
                """,
                values + [CACHE_ROW_ID]
            )


def load_cooccurrence(store: StateStore,
                      max_age: Optional[timedelta] = CACHE_MAX_AGE,
                      now: Optional[datetime] = None) -> Optional[CooccurrenceIndex]:
    """Load the cached index unless it is missing, stale or unreadable."""
    row = store.conn.execute(
        "SELECT data, built_at FROM cooccurrence_cache WHERE id = ?", [CACHE_ROW_ID]
    ).fetchone()
    if row is None:
        return None

    data, built_at = row
    if max_age is not None and built_at is not None and (now or utcnow()) - built_at > max_age:
        logger.debug("Cached co-occurrence index is stale")
        return None

    try:
        parsed = json.loads(data)
    except (TypeError, ValueError) as e:
        logger.debug(f"Cached co-occurrence index is unreadable: {e}")
        return None
    return deserialize_index(parsed)


def top_associations(index: CooccurrenceIndex, entity_name: str, limit: int = 10) -> List[Tuple[str, float]]:
    """Strongest associations of one entity, for journey and CLI views."""
    related = index.associations.get(entity_name.lower(), {})
    ranked = sorted(related.items(), key=lambda item: (-item[1], item[0]))
    return ranked[:limit]
