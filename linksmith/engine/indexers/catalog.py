"""Entity catalog store and the in-memory snapshot the scorer reads.

This module provides:
- The catalog provider protocol consumed by the suggestion engine
- A DuckDB-backed catalog with prefix, alias and pattern search
- Import of hand-maintained catalogs from YAML or JSON files
- A snapshot holder that refreshes only when the store has a newer build
"""

import json
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Protocol, Tuple, Union, Iterable, Any, Dict

import duckdb
import yaml
from loguru import logger

from ..errors import InvalidQueryError, CatalogUnavailableError
from ..models import Entity, EntityCategory, utcnow
from ..storage import StateStore

BUILT_AT_KEY = "entities_built_at"


class EntityCatalogProvider(Protocol):
    """Read-only view of the entity catalog."""

    def list_entities(self) -> List[Entity]: ...

    def catalog_built_at(self) -> Optional[datetime]: ...

    def search_by_prefix(self, prefix: str, limit: int = 20) -> List[Entity]: ...

    def get_by_alias(self, alias: str) -> List[Entity]: ...


def _parse_aliases(raw: Any, entity_name: str) -> Tuple[str, ...]:
    """Decode the aliases column; anything malformed becomes no aliases."""
    if raw is None or raw == "":
        return ()
    try:
        decoded = json.loads(raw) if isinstance(raw, str) else raw
    except (TypeError, ValueError) as e:
        logger.debug(f"Skipping malformed aliases for {entity_name}: {e}")
        return ()
    if not isinstance(decoded, list):
        logger.debug(f"Aliases for {entity_name} are not a list, ignoring")
        return ()
    return tuple(a for a in decoded if isinstance(a, str) and a.strip())


class DuckDBEntityCatalog:
    """Entity catalog persisted in the ``entities`` table."""

    _COLUMNS = "name, category, path, aliases_json, hub_score"

    def __init__(self, store: StateStore):
        self.store = store

    def _row_to_entity(self, row) -> Optional[Entity]:
        name, category, path, aliases_json, hub_score = row
        if not isinstance(name, str) or not name.strip():
            return None
        try:
            hub = float(hub_score or 0)
        except (TypeError, ValueError):
            hub = 0.0
        return Entity(
            name=name,
            category=EntityCategory.parse(category),
            aliases=_parse_aliases(aliases_json, name),
            source_path=path or "",
            hub_score=max(0.0, hub),
        )

    def _rows_to_entities(self, rows) -> List[Entity]:
        entities = []
        for row in rows:
            try:
                entity = self._row_to_entity(row)
            except Exception as e:
                logger.debug(f"Skipping malformed catalog row {row!r}: {e}")
                continue
            if entity is not None:
                entities.append(entity)
        return entities

    def list_entities(self) -> List[Entity]:
        rows = self.store.conn.execute(
            f"SELECT {self._COLUMNS} FROM entities ORDER BY name_lower"
        ).fetchall()
        return self._rows_to_entities(rows)

    def catalog_built_at(self) -> Optional[datetime]:
        value = self.store.get_metadata(BUILT_AT_KEY)
        if not value:
            return None
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            logger.warning(f"Unreadable catalog build timestamp: {value!r}")
            return None

    def search_by_prefix(self, prefix: str, limit: int = 20) -> List[Entity]:
        """Entities whose name starts with ``prefix``, case-insensitive."""
        rows = self.store.conn.execute(
            f"""
            SELECT {self._COLUMNS} FROM entities
            WHERE starts_with(name_lower, ?)
            ORDER BY hub_score DESC, name_lower
            LIMIT ?
            """,
            [prefix.lower(), limit]
        ).fetchall()
        return self._rows_to_entities(rows)

    def get_by_alias(self, alias: str) -> List[Entity]:
        """Entities carrying ``alias`` (case-insensitive exact match)."""
        target = alias.strip().lower()
        return [
            entity for entity in self.list_entities()
            if any(a.lower() == target for a in entity.aliases)
        ]

    def get_by_name(self, name: str) -> Optional[Entity]:
        rows = self.store.conn.execute(
            f"SELECT {self._COLUMNS} FROM entities WHERE name_lower = ? LIMIT 1",
            [name.strip().lower()]
        ).fetchall()
        entities = self._rows_to_entities(rows)
        return entities[0] if entities else None

    def search(self, pattern: str, limit: int = 20) -> List[Entity]:
        """
        Case-insensitive regular-expression search over names and aliases.

        Raises:
            InvalidQueryError: the pattern is not a valid expression
        """
        try:
            rows = self.store.conn.execute(
                f"""
                SELECT {self._COLUMNS} FROM entities
                WHERE regexp_matches(name, ?, 'i')
                   OR regexp_matches(coalesce(aliases_json, ''), ?, 'i')
                ORDER BY (name_lower = lower(?)) DESC, hub_score DESC, name_lower
                LIMIT ?
                """,
                [pattern, pattern, pattern, limit]
            ).fetchall()
        except duckdb.Error as e:
            raise InvalidQueryError(pattern, str(e)) from e
        return self._rows_to_entities(rows)

    def replace_all_entities(self, entities: Iterable[Entity],
                             built_at: Optional[datetime] = None) -> int:
        """Atomically swap the whole catalog and bump its build timestamp."""
        built_at = built_at or utcnow()
        seen = set()
        rows = []
        for entity in entities:
            if entity.name_lower in seen:
                logger.debug(f"Duplicate catalog entity ignored: {entity.name}")
                continue
            seen.add(entity.name_lower)
            rows.append([
                entity.name_lower,
                entity.name,
                entity.category.value,
                entity.source_path,
                json.dumps(list(entity.aliases)),
                entity.hub_score,
            ])

        with self.store.transaction() as conn:
            conn.execute("DELETE FROM entities")
            if rows:
                conn.executemany(
                    """
                    INSERT INTO entities (name_lower, name, category, path, aliases_json, hub_score)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows
                )
            self.store.set_metadata(BUILT_AT_KEY, built_at.isoformat())

        logger.info(f"Catalog rebuilt with {len(rows)} entities")
        return len(rows)


def _entity_from_record(record: Dict[str, Any]) -> Optional[Entity]:
    name = record.get("name")
    if not isinstance(name, str) or not name.strip():
        return None
    aliases = record.get("aliases") or []
    if not isinstance(aliases, list):
        aliases = []
    try:
        hub = max(0.0, float(record.get("hub_score", 0) or 0))
    except (TypeError, ValueError):
        hub = 0.0
    return Entity(
        name=name.strip(),
        category=EntityCategory.parse(record.get("category")),
        aliases=tuple(a for a in aliases if isinstance(a, str) and a.strip()),
        source_path=str(record.get("path") or record.get("source_path") or ""),
        hub_score=hub,
    )


def load_catalog_file(path: Union[str, Path]) -> List[Entity]:
    """
    Read entities from a YAML or JSON file.

    The file holds a list of mappings with ``name`` and optional
    ``category``, ``aliases``, ``path`` and ``hub_score``. Invalid
    records are skipped.
    """
    path = Path(path)
    with open(path, 'r') as f:
        if path.suffix.lower() == ".json":
            data = json.load(f)
        else:
            data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("entities", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} does not contain a list of entities")

    entities = []
    for record in data:
        entity = _entity_from_record(record) if isinstance(record, dict) else None
        if entity is None:
            logger.warning(f"Skipping invalid catalog record in {path}: {record!r}")
            continue
        entities.append(entity)
    return entities


class CatalogIndex:
    """
    Immutable catalog snapshot with stale-check refresh.

    A refresh builds a new tuple and swaps the reference; readers that
    captured the previous snapshot keep using it.
    """

    def __init__(self, provider: EntityCatalogProvider):
        self.provider = provider
        self._entities: Optional[Tuple[Entity, ...]] = None
        self._built_at: Optional[datetime] = None

    @property
    def is_loaded(self) -> bool:
        return self._entities is not None

    @property
    def built_at(self) -> Optional[datetime]:
        return self._built_at

    def snapshot(self) -> Tuple[Entity, ...]:
        if self._entities is None:
            raise CatalogUnavailableError("Entity catalog has not been loaded")
        return self._entities

    def replace(self, entities: Iterable[Entity], built_at: Optional[datetime] = None) -> None:
        self._entities = tuple(entities)
        self._built_at = built_at

    def refresh_if_stale(self) -> bool:
        """
        Reload when the provider reports a newer build than the snapshot.

        Returns True when a new snapshot was installed. Failures keep the
        previous snapshot; with no snapshot at all they raise
        CatalogUnavailableError.
        """
        try:
            built_at = self.provider.catalog_built_at()
            if self._entities is not None:
                if built_at is None or (self._built_at is not None and built_at <= self._built_at):
                    return False
            entities = self.provider.list_entities()
        except Exception as e:
            if self._entities is None:
                raise CatalogUnavailableError(f"Entity catalog unavailable: {e}") from e
            logger.warning(f"Catalog refresh failed, keeping previous snapshot: {e}")
            return False

        if self._entities is not None:
            logger.info(f"Catalog is stale ({self._built_at} < {built_at}), reloading")
        self.replace(entities, built_at)
        logger.debug(f"Catalog snapshot loaded: {len(self._entities)} entities")
        return True
