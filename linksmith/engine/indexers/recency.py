"""Last-mention tracking for time-decayed boosting.

File modification time stands in for "when the entity was mentioned":
the newest note containing an entity name dates that entity.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, Optional

from loguru import logger

from ..models import Entity, utcnow
from ..storage import StateStore
from .vault import iter_notes

BUILT_AT_KEY = "recency_built_at"
MIN_ENTITY_NAME_LENGTH = 3

# (max age in hours, boost), checked in order
RECENCY_TIERS = (
    (1, 8),
    (24, 5),
    (72, 3),
    (168, 1),
)


@dataclass
class RecencyIndex:
    """Lowercase entity name -> newest mention timestamp (naive UTC)."""
    last_mentioned: Dict[str, datetime] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def get(self, entity_name: str) -> Optional[datetime]:
        return self.last_mentioned.get(entity_name.lower())

    def __len__(self) -> int:
        return len(self.last_mentioned)


def recency_boost(entity_name: str, index: Optional[RecencyIndex], now: datetime) -> int:
    """Boost for an entity by time since its last mention; 0 when unknown."""
    if index is None:
        return 0
    last = index.get(entity_name)
    if last is None:
        return 0

    age_hours = (now - last).total_seconds() / 3600
    for max_hours, boost in RECENCY_TIERS:
        if age_hours < max_hours:
            return boost
    return 0


def build_recency_index(vault_path: Path,
                        entities: Iterable[Entity],
                        excluded_folders: Optional[Iterable[str]] = None) -> RecencyIndex:
    """Scan the vault and date every entity by its newest mentioning note."""
    names = {
        entity.name_lower for entity in entities
        if len(entity.name_lower) >= MIN_ENTITY_NAME_LENGTH
    }
    last_mentioned: Dict[str, datetime] = {}

    if names:
        for note in iter_notes(vault_path, excluded_folders):
            content_lower = note.content.lower()
            for name in names:
                if name in content_lower:
                    existing = last_mentioned.get(name)
                    if existing is None or note.modified > existing:
                        last_mentioned[name] = note.modified

    logger.info(f"Recency index built: {len(last_mentioned)} of {len(names)} entities mentioned")
    return RecencyIndex(last_mentioned=last_mentioned, last_updated=utcnow())


def save_recency(store: StateStore, index: RecencyIndex) -> None:
    """Replace the persisted recency table with ``index``."""
    built_at = index.last_updated or utcnow()
    with store.transaction() as conn:
        existing = {
            row[0] for row in conn.execute("SELECT entity_lower FROM entity_recency").fetchall()
        }
        for name, timestamp in index.last_mentioned.items():
            if name in existing:
                conn.execute(
                    "UPDATE entity_recency SET last_mentioned_at = ? WHERE entity_lower = ?",
                    [timestamp, name]
                )
            else:
                conn.execute(
                    "INSERT INTO entity_recency (entity_lower, last_mentioned_at) VALUES (?, ?)",
                    [name, timestamp]
                )
        for name in existing - set(index.last_mentioned):
            conn.execute("DELETE FROM entity_recency WHERE entity_lower = ?", [name])
        store.set_metadata(BUILT_AT_KEY, built_at.isoformat())

    logger.debug(f"Saved {len(index)} recency entries")


def load_recency(store: StateStore,
                 max_age: Optional[timedelta] = None,
                 now: Optional[datetime] = None) -> Optional[RecencyIndex]:
    """
    Load the persisted recency index.

    Returns None when nothing has been saved or the saved index is older
    than ``max_age``.
    """
    built_raw = store.get_metadata(BUILT_AT_KEY)
    if not built_raw:
        return None
    try:
        built_at = datetime.fromisoformat(built_raw)
    except ValueError:
        logger.warning(f"Unreadable recency build timestamp: {built_raw!r}")
        return None

    if max_age is not None and (now or utcnow()) - built_at > max_age:
        logger.debug("Persisted recency index is stale")
        return None

    rows = store.conn.execute(
        "SELECT entity_lower, last_mentioned_at FROM entity_recency"
    ).fetchall()
    return RecencyIndex(
        last_mentioned={name: ts for name, ts in rows},
        last_updated=built_at,
    )
