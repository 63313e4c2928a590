"""Feedback aggregation, suppression and implicit feedback.

This module implements the learning half of the suggestion loop:
- Append-only accept/reject log with per-entity and per-folder accuracy
- Accuracy-tiered score adjustments
- Suppression of entities with a sustained false-positive rate
- Application tracking and removal detection for implicit feedback
- The aggregate dashboard view
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Any

from loguru import logger

from .models import (
    Application, EntityStats, FeedbackEntry, Suppression, utcnow,
)
from .storage import StateStore
from .tokenizer import extract_linked_entities

MIN_SUPPRESSION_SAMPLES = 10
SUPPRESSION_THRESHOLD = 0.30
FEEDBACK_BOOST_MIN_SAMPLES = 5
FOLDER_MIN_SAMPLES = 5

EXPLICIT_CONTEXT = "explicit"
IMPLICIT_REMOVED_CONTEXT = "implicit:removed"

# (min accuracy, min samples, boost), first match wins
FEEDBACK_BOOST_TIERS: Tuple[Tuple[float, int, int], ...] = (
    (0.95, 20, 5),
    (0.80, 5, 2),
    (0.60, 5, 0),
    (0.40, 5, -2),
    (0.00, 5, -4),
)

TIER_LABELS: Tuple[Tuple[str, int, float, int], ...] = (
    ("Champion (+5)", 5, 0.95, 20),
    ("Strong (+2)", 2, 0.80, 5),
    ("Neutral (0)", 0, 0.60, 5),
    ("Weak (-2)", -2, 0.40, 5),
    ("Poor (-4)", -4, 0.00, 5),
)


def compute_boost(accuracy: float, sample_count: int) -> int:
    """Score adjustment for an accuracy; 0 below the minimum sample count."""
    if sample_count < FEEDBACK_BOOST_MIN_SAMPLES:
        return 0
    for min_accuracy, min_samples, boost in FEEDBACK_BOOST_TIERS:
        if accuracy >= min_accuracy and sample_count >= min_samples:
            return boost
    return 0


def extract_folder(note_path: str) -> str:
    """Top-level folder of a note path; '' for notes at the vault root."""
    parts = note_path.split("/")
    return parts[0] if len(parts) > 1 else ""


def _folder_clause(folder: str) -> Tuple[str, List[Any]]:
    if folder == "":
        return "NOT contains(note_path, '/')", []
    return "starts_with(note_path, ?)", [folder + "/"]


class FeedbackAggregator:
    """Feedback store and every aggregate derived from it."""

    def __init__(self, store: StateStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    @property
    def conn(self):
        return self.store.conn

    # ------------------------------------------------------------------
    # Explicit feedback
    # ------------------------------------------------------------------

    def record_feedback(self, entity: str, context: str, note_path: str, correct: bool) -> FeedbackEntry:
        """Append one judgment and refresh the suppression list atomically."""
        entity = entity.strip()
        if not entity:
            raise ValueError("entity must not be empty")

        with self.store.transaction():
            entry = self._insert_feedback(entity, context, note_path, correct)
            self.update_suppression_list()

        logger.debug(f"Recorded {'positive' if correct else 'negative'} feedback for {entity} ({context})")
        return entry

    def _insert_feedback(self, entity: str, context: str, note_path: str, correct: bool) -> FeedbackEntry:
        created_at = self._clock()
        row = self.conn.execute(
            """
            INSERT INTO wikilink_feedback (entity, context, note_path, correct, created_at)
            VALUES (?, ?, ?, ?, ?)
            RETURNING id
            """,
            [entity, context, note_path, bool(correct), created_at]
        ).fetchone()
        return FeedbackEntry(
            id=row[0],
            entity=entity,
            context=context,
            note_path=note_path,
            correct=bool(correct),
            created_at=created_at,
        )

    def get_feedback(self, entity: Optional[str] = None, limit: int = 20) -> List[FeedbackEntry]:
        """Most recent feedback, optionally for one entity."""
        query = "SELECT id, entity, context, note_path, correct, created_at FROM wikilink_feedback"
        params: List[Any] = []
        if entity:
            query += " WHERE lower(entity) = ?"
            params.append(entity.strip().lower())
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)

        return [
            FeedbackEntry(
                id=r[0], entity=r[1], context=r[2], note_path=r[3],
                correct=bool(r[4]), created_at=r[5],
            )
            for r in self.conn.execute(query, params).fetchall()
        ]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def _aggregate(self, folder: Optional[str] = None,
                   entity: Optional[str] = None) -> Dict[str, Tuple[str, int, int]]:
        """lowercase entity -> (display name, total, correct)"""
        clauses = []
        params: List[Any] = []
        if folder is not None:
            clause, folder_params = _folder_clause(folder)
            clauses.append(clause)
            params.extend(folder_params)
        if entity is not None:
            clauses.append("lower(entity) = ?")
            params.append(entity.strip().lower())

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"""
            SELECT
                lower(entity) AS entity_lower,
                arg_max(entity, created_at) AS display,
                COUNT(*) AS total,
                SUM(CASE WHEN correct THEN 1 ELSE 0 END) AS correct_count
            FROM wikilink_feedback
            {where}
            GROUP BY lower(entity)
            """,
            params
        ).fetchall()
        return {r[0]: (r[1], int(r[2]), int(r[3] or 0)) for r in rows}

    def entity_stats(self) -> List[EntityStats]:
        """Per-entity accuracy, most-judged first."""
        suppressed = {s.entity for s in self.suppressed_entities()}
        stats = []
        for key, (display, total, correct) in self._aggregate().items():
            stats.append(EntityStats(
                entity=display,
                total=total,
                correct=correct,
                incorrect=total - correct,
                accuracy=round(correct / total, 3) if total else 0.0,
                suppressed=key in suppressed,
            ))
        stats.sort(key=lambda s: (-s.total, s.entity.lower()))
        return stats

    def entity_counts(self, entity: str, folder: Optional[str] = None) -> Tuple[int, int]:
        """(total, correct) judgments globally or within one folder."""
        aggregate = self._aggregate(folder=folder, entity=entity)
        if not aggregate:
            return 0, 0
        _, total, correct = next(iter(aggregate.values()))
        return total, correct

    def entity_accuracy(self, entity: str, folder: Optional[str] = None) -> Tuple[float, int]:
        """(accuracy, sample count) globally or within one folder."""
        total, correct = self.entity_counts(entity, folder)
        return (correct / total if total else 0.0), total

    def entity_folder_accuracy(self) -> Dict[str, Dict[str, Dict[str, float]]]:
        """lowercase entity -> folder -> {accuracy, count}"""
        rows = self.conn.execute(
            "SELECT lower(entity), note_path, correct FROM wikilink_feedback"
        ).fetchall()

        counts: Dict[str, Dict[str, List[int]]] = {}
        for entity, note_path, correct in rows:
            folder_counts = counts.setdefault(entity, {}).setdefault(extract_folder(note_path), [0, 0])
            folder_counts[0] += 1
            if correct:
                folder_counts[1] += 1

        return {
            entity: {
                folder: {"accuracy": c / t if t else 0.0, "count": t}
                for folder, (t, c) in folders.items()
            }
            for entity, folders in counts.items()
        }

    # ------------------------------------------------------------------
    # Boosts
    # ------------------------------------------------------------------

    def feedback_boosts(self, folder: Optional[str] = None) -> Dict[str, int]:
        """
        Nonzero adjustments keyed by lowercase entity.

        With a folder, entities having at least FOLDER_MIN_SAMPLES
        judgments inside it use their folder-local accuracy.
        """
        global_stats = self._aggregate()
        folder_stats = self._aggregate(folder=folder) if folder is not None else {}

        boosts = {}
        for key, (_, total, correct) in global_stats.items():
            local = folder_stats.get(key)
            if local is not None and local[1] >= FOLDER_MIN_SAMPLES:
                _, total, correct = local
            boost = compute_boost(correct / total, total) if total else 0
            if boost != 0:
                boosts[key] = boost
        return boosts

    def feedback_boost(self, entity: str, folder: Optional[str] = None) -> int:
        if folder is not None:
            accuracy, count = self.entity_accuracy(entity, folder)
            if count >= FOLDER_MIN_SAMPLES:
                return compute_boost(accuracy, count)
        accuracy, count = self.entity_accuracy(entity)
        return compute_boost(accuracy, count)

    # ------------------------------------------------------------------
    # Suppression
    # ------------------------------------------------------------------

    def update_suppression_list(self) -> int:
        """
        Recompute global suppression for every entity with enough samples.

        Returns the number of entities suppressed after the update.
        """
        stats = self._aggregate()
        now = self._clock()
        suppressed = 0

        with self.store.transaction() as conn:
            existing = {
                row[0] for row in conn.execute("SELECT entity FROM wikilink_suppressions").fetchall()
            }
            for key, (display, total, correct) in stats.items():
                if total < MIN_SUPPRESSION_SAMPLES:
                    continue
                fp_rate = (total - correct) / total
                if fp_rate >= SUPPRESSION_THRESHOLD:
                    suppressed += 1
                    if key in existing:
                        conn.execute(
                            "UPDATE wikilink_suppressions SET false_positive_rate = ?, updated_at = ? WHERE entity = ?",
                            [fp_rate, now, key]
                        )
                    else:
                        conn.execute(
                            "INSERT INTO wikilink_suppressions (entity, false_positive_rate, updated_at) VALUES (?, ?, ?)",
                            [key, fp_rate, now]
                        )
                        logger.info(f"Suppressing {display}: false positive rate {fp_rate:.0%}")
                elif key in existing:
                    conn.execute("DELETE FROM wikilink_suppressions WHERE entity = ?", [key])
                    logger.info(f"Lifting suppression of {display}: false positive rate {fp_rate:.0%}")

        return suppressed

    def suppressed_entities(self) -> List[Suppression]:
        rows = self.conn.execute(
            """
            SELECT entity, false_positive_rate, updated_at
            FROM wikilink_suppressions
            ORDER BY false_positive_rate DESC, entity
            """
        ).fetchall()
        return [Suppression(entity=r[0], false_positive_rate=r[1], updated_at=r[2]) for r in rows]

    def _folder_suppression(self, folder: str) -> Dict[str, bool]:
        """lowercase entity -> suppressed, for entities with enough folder samples"""
        decisions = {}
        for key, (_, total, correct) in self._aggregate(folder=folder).items():
            if total >= FOLDER_MIN_SAMPLES:
                decisions[key] = (total - correct) / total >= SUPPRESSION_THRESHOLD
        return decisions

    def suppressed_names(self, folder: Optional[str] = None) -> Set[str]:
        """
        Lowercase names excluded from suggestions.

        Folder-local decisions take precedence over global suppression
        wherever the folder has enough samples.
        """
        names = {s.entity for s in self.suppressed_entities()}
        if folder is None:
            return names
        for key, suppressed in self._folder_suppression(folder).items():
            if suppressed:
                names.add(key)
            else:
                names.discard(key)
        return names

    def is_suppressed(self, entity: str, folder: Optional[str] = None) -> bool:
        key = entity.strip().lower()
        if folder is not None:
            local = self._aggregate(folder=folder, entity=key).get(key)
            if local is not None and local[1] >= FOLDER_MIN_SAMPLES:
                _, total, correct = local
                return (total - correct) / total >= SUPPRESSION_THRESHOLD
        row = self.conn.execute(
            "SELECT 1 FROM wikilink_suppressions WHERE entity = ?", [key]
        ).fetchone()
        return row is not None

    def suppression_for(self, entity: str) -> Optional[Suppression]:
        row = self.conn.execute(
            "SELECT entity, false_positive_rate, updated_at FROM wikilink_suppressions WHERE entity = ?",
            [entity.strip().lower()]
        ).fetchone()
        if row is None:
            return None
        return Suppression(entity=row[0], false_positive_rate=row[1], updated_at=row[2])

    # ------------------------------------------------------------------
    # Applications and implicit feedback
    # ------------------------------------------------------------------

    def track_applications(self, note_path: str, entities: Iterable[str]) -> int:
        """Mark each entity as applied to ``note_path``; returns rows touched."""
        now = self._clock()
        names = []
        seen = set()
        for entity in entities:
            entity = entity.strip()
            if entity and entity.lower() not in seen:
                seen.add(entity.lower())
                names.append(entity)

        with self.store.transaction() as conn:
            for entity in names:
                key = entity.lower()
                existing = conn.execute(
                    "SELECT 1 FROM wikilink_applications WHERE entity_lower = ? AND note_path = ?",
                    [key, note_path]
                ).fetchone()
                if existing:
                    conn.execute(
                        """
                        UPDATE wikilink_applications
                        SET entity = ?, status = 'applied', applied_at = ?
                        WHERE entity_lower = ? AND note_path = ?
                        """,
                        [entity, now, key, note_path]
                    )
                else:
                    conn.execute(
                        """
                        INSERT INTO wikilink_applications (entity_lower, entity, note_path, status, applied_at)
                        VALUES (?, ?, ?, 'applied', ?)
                        """,
                        [key, entity, note_path, now]
                    )

        return len(names)

    def tracked_applications(self, note_path: str) -> List[Application]:
        """Applications on a note still believed to be present."""
        rows = self.conn.execute(
            """
            SELECT entity, note_path, status, applied_at
            FROM wikilink_applications
            WHERE note_path = ? AND status = 'applied'
            ORDER BY entity_lower
            """,
            [note_path]
        ).fetchall()
        return [Application(entity=r[0], note_path=r[1], status=r[2], applied_at=r[3]) for r in rows]

    def applications_for(self, entity: str) -> List[Application]:
        rows = self.conn.execute(
            """
            SELECT entity, note_path, status, applied_at
            FROM wikilink_applications
            WHERE entity_lower = ?
            ORDER BY applied_at DESC
            """,
            [entity.strip().lower()]
        ).fetchall()
        return [Application(entity=r[0], note_path=r[1], status=r[2], applied_at=r[3]) for r in rows]

    def detect_removals(self, note_path: str, current_content: str) -> List[str]:
        """
        Turn removed auto-applied links into implicit negative feedback.

        Every tracked application whose wikilink is gone from
        ``current_content`` gets one ``implicit:removed`` entry and moves
        to status ``removed``, so repeated calls do not double count.
        """
        tracked = self.tracked_applications(note_path)
        if not tracked:
            return []

        current_links = extract_linked_entities(current_content)
        removed = [app.entity for app in tracked if app.entity.lower() not in current_links]
        if not removed:
            return []

        with self.store.transaction() as conn:
            for entity in removed:
                self._insert_feedback(entity, IMPLICIT_REMOVED_CONTEXT, note_path, False)
                conn.execute(
                    "UPDATE wikilink_applications SET status = 'removed' WHERE entity_lower = ? AND note_path = ?",
                    [entity.lower(), note_path]
                )
            self.update_suppression_list()

        logger.info(f"Detected {len(removed)} removed link(s) in {note_path}: {', '.join(removed)}")
        return removed

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    def dashboard(self, recent_limit: int = 50, timeline_days: int = 30) -> Dict[str, Any]:
        """Aggregate view over feedback, tiers, applications and suppression."""
        stats = self.entity_stats()

        boost_tiers = [
            {"label": label, "boost": boost, "min_accuracy": min_acc, "min_samples": min_samples, "entities": []}
            for label, boost, min_acc, min_samples in TIER_LABELS
        ]
        learning = []
        for s in stats:
            summary = {"entity": s.entity, "accuracy": s.accuracy, "total": s.total}
            if s.total < FEEDBACK_BOOST_MIN_SAMPLES:
                learning.append(summary)
                continue
            boost = compute_boost(s.correct / s.total, s.total)
            for tier in boost_tiers:
                if tier["boost"] == boost:
                    tier["entities"].append(summary)
                    break

        sources = {"explicit": {"count": 0, "correct": 0}, "implicit": {"count": 0, "correct": 0}}
        for source, count, correct in self.conn.execute(
            """
            SELECT
                CASE WHEN starts_with(context, 'implicit:') THEN 'implicit' ELSE 'explicit' END AS source,
                COUNT(*),
                SUM(CASE WHEN correct THEN 1 ELSE 0 END)
            FROM wikilink_feedback
            GROUP BY source
            """
        ).fetchall():
            sources[source] = {"count": int(count), "correct": int(correct or 0)}

        applications = {"applied": 0, "removed": 0}
        for status, count in self.conn.execute(
            "SELECT status, COUNT(*) FROM wikilink_applications GROUP BY status"
        ).fetchall():
            applications[status] = int(count)

        cutoff = self._clock() - timedelta(days=timeline_days)
        timeline = [
            {
                "day": day.isoformat(),
                "count": int(count),
                "correct": int(correct or 0),
                "incorrect": int(count) - int(correct or 0),
            }
            for day, count, correct in self.conn.execute(
                """
                SELECT
                    CAST(created_at AS DATE) AS day,
                    COUNT(*),
                    SUM(CASE WHEN correct THEN 1 ELSE 0 END)
                FROM wikilink_feedback
                WHERE created_at >= ?
                GROUP BY day
                ORDER BY day
                """,
                [cutoff]
            ).fetchall()
        ]

        total = sources["explicit"]["count"] + sources["implicit"]["count"]
        total_correct = sources["explicit"]["correct"] + sources["implicit"]["correct"]
        suppressed = self.suppressed_entities()

        return {
            "total_feedback": total,
            "total_correct": total_correct,
            "total_incorrect": total - total_correct,
            "overall_accuracy": round(total_correct / total, 3) if total else 0.0,
            "total_suppressed": len(suppressed),
            "feedback_sources": sources,
            "applications": applications,
            "boost_tiers": boost_tiers,
            "learning": learning,
            "suppressed": [
                {"entity": s.entity, "false_positive_rate": s.false_positive_rate} for s in suppressed
            ],
            "recent": [entry.to_dict() for entry in self.get_feedback(limit=recent_limit)],
            "timeline": timeline,
        }
