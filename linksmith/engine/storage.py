"""DuckDB state store for the catalog, feedback, applications and audit events."""

from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

import duckdb
from loguru import logger

SCHEMA_VERSION = 1


class StateStore:
    """
    Owns the DuckDB connection and the schema.

    Tables:
    - entities / catalog_metadata: the entity catalog snapshot
    - wikilink_feedback: append-only accept/reject log
    - wikilink_suppressions: entities with a high false-positive rate
    - wikilink_applications: links inserted into notes
    - suggestion_events: per-candidate scoring audit trail
    - entity_recency / cooccurrence_cache: persisted secondary indexes
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        if db_path is None or str(db_path) == ":memory:":
            self.db_path = ":memory:"
        else:
            path = Path(db_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)

        self.conn = duckdb.connect(self.db_path)
        self._tx_depth = 0
        self._create_tables()
        logger.debug(f"State store opened at {self.db_path}")

    def _create_tables(self) -> None:
        """Create all required tables if they don't exist."""

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS entities (
                name_lower TEXT NOT NULL,   -- unique per catalog build
                name TEXT NOT NULL,
                category TEXT,
                path TEXT,
                aliases_json TEXT,      -- JSON array
                hub_score DOUBLE DEFAULT 0
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS catalog_metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)

        self.conn.execute("CREATE SEQUENCE IF NOT EXISTS wikilink_feedback_id_seq START 1")
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS wikilink_feedback (
                id BIGINT PRIMARY KEY DEFAULT nextval('wikilink_feedback_id_seq'),
                entity TEXT NOT NULL,
                context TEXT NOT NULL,
                note_path TEXT NOT NULL,
                correct BOOLEAN NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS wikilink_suppressions (
                entity TEXT PRIMARY KEY,    -- lowercase entity name
                false_positive_rate DOUBLE NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS wikilink_applications (
                entity_lower TEXT NOT NULL,
                entity TEXT NOT NULL,
                note_path TEXT NOT NULL,
                status TEXT NOT NULL,       -- applied|removed
                applied_at TIMESTAMP NOT NULL,
                PRIMARY KEY (entity_lower, note_path)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS suggestion_events (
                entity TEXT NOT NULL,
                note_path TEXT,
                timestamp TIMESTAMP NOT NULL,
                total_score DOUBLE,
                breakdown_json TEXT,        -- JSON object, one key per layer
                threshold DOUBLE,
                passed BOOLEAN
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS entity_recency (
                entity_lower TEXT PRIMARY KEY,
                last_mentioned_at TIMESTAMP NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS cooccurrence_cache (
                id INTEGER PRIMARY KEY,
                data TEXT,                  -- serialized index
                built_at TIMESTAMP,
                entity_count INTEGER,
                association_count INTEGER
            )
        """)

        existing = self.conn.execute(
            "SELECT value FROM catalog_metadata WHERE key = 'schema_version'"
        ).fetchone()
        if existing is None:
            self.conn.execute(
                "INSERT INTO catalog_metadata (key, value) VALUES ('schema_version', ?)",
                [str(SCHEMA_VERSION)]
            )

    @contextmanager
    def transaction(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        All-or-nothing block.

        Commits on success, rolls back and re-raises on any error.
        Nested blocks join the outermost transaction.
        """
        if self._tx_depth > 0:
            self._tx_depth += 1
            try:
                yield self.conn
            finally:
                self._tx_depth -= 1
            return

        self.conn.begin()
        self._tx_depth = 1
        try:
            yield self.conn
        except BaseException as e:
            self._tx_depth = 0
            logger.error(f"Transaction rolled back: {e}")
            self.conn.rollback()
            raise
        self._tx_depth = 0
        self.conn.commit()

    def get_metadata(self, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT value FROM catalog_metadata WHERE key = ?", [key]
        ).fetchone()
        return row[0] if row else None

    def set_metadata(self, key: str, value: str) -> None:
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT 1 FROM catalog_metadata WHERE key = ?", [key]
            ).fetchone()
            if existing:
                conn.execute("UPDATE catalog_metadata SET value = ? WHERE key = ?", [value, key])
            else:
                conn.execute("INSERT INTO catalog_metadata (key, value) VALUES (?, ?)", [key, value])

    def close(self) -> None:
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
        logger.debug("State store closed")
