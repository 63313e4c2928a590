"""Suggestion engine: the Discover -> Suggest -> Apply -> Learn -> Adapt loop.

The engine owns every snapshot the scorer reads (catalog, co-occurrence,
recency) and the feedback aggregator that closes the loop. Snapshots are
swapped wholesale; a suggestion call captures the references it starts
with and never observes a half-built index.
"""

import asyncio
import json
import re
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple, Any

from loguru import logger

from .config import Config, SuggestOptions
from .errors import CircuitBreaker
from .feedback import FeedbackAggregator, extract_folder
from .indexers.catalog import CatalogIndex, DuckDBEntityCatalog, EntityCatalogProvider
from .indexers.cooccurrence import (
    CooccurrenceIndex, cooccurrence_boost, load_cooccurrence, mine_cooccurrences, save_cooccurrence,
)
from .indexers.recency import RecencyIndex, build_recency_index, load_recency, save_recency
from .indexers.vault import iter_notes
from .journey import entity_journey
from .models import (
    Entity, FeedbackReport, ScoreBreakdown, ScoredSuggestion, SuggestResult,
    STRICTNESS_PROFILES, utcnow,
)
from .scoring import (
    EntityScorer, MIN_SEMANTIC_CONTENT_LENGTH, confidence_level, is_suggestible_name, semantic_boost,
)
from .semantic import EmbeddingSemanticProvider, SemanticSimilarityProvider
from .storage import StateStore
from .tokenizer import content_terms, extract_linked_entities

SUGGESTION_PATTERN = re.compile(r"→\s*\[\[.+$")


def format_suffix(names: List[str]) -> str:
    if not names:
        return ""
    return "→ " + ", ".join(f"[[{name}]]" for name in names)


class SuggestionEngine:
    """Entity suggestion engine with an adaptive feedback loop."""

    def __init__(self,
                 store: StateStore,
                 catalog: Optional[EntityCatalogProvider] = None,
                 semantic: Optional[SemanticSimilarityProvider] = None,
                 semantic_timeout: Optional[float] = 5.0,
                 breaker: Optional[CircuitBreaker] = None,
                 record_events: bool = True,
                 clock=utcnow):
        """
        Initialize the engine.

        Args:
            store: State store holding feedback, applications and events
            catalog: Entity catalog provider, defaults to the store's own catalog
            semantic: Optional semantic similarity provider
            semantic_timeout: Seconds allowed per semantic call
            breaker: Circuit breaker guarding the semantic provider
            record_events: Write per-candidate audit events
            clock: Source of "now", replaceable in tests
        """
        self.store = store
        self.catalog_provider = catalog or DuckDBEntityCatalog(store)
        self.catalog = CatalogIndex(self.catalog_provider)
        self.feedback = FeedbackAggregator(store, clock=clock)
        self.semantic = semantic
        self.breaker = breaker or CircuitBreaker("semantic", call_timeout=semantic_timeout)
        self.record_events = record_events
        self._clock = clock

        self._cooccurrence: Optional[CooccurrenceIndex] = None
        self._recency: Optional[RecencyIndex] = None
        self._semantic_built_at: Optional[datetime] = None
        self._semantic_task: Optional["asyncio.Task"] = None

    @classmethod
    def from_config(cls, config: Config) -> "SuggestionEngine":
        """Build an engine from configuration, loading any cached indexes."""
        semantic = None
        if config.semantic.enabled:
            semantic = EmbeddingSemanticProvider(model_name=config.semantic.model)

        engine = cls(
            StateStore(config.resolved_state_path),
            semantic=semantic,
            breaker=CircuitBreaker(
                "semantic",
                failure_threshold=config.semantic.failure_threshold,
                recovery_timeout=config.semantic.recovery_timeout,
                call_timeout=config.semantic.timeout_seconds,
            ),
            record_events=config.suggestions.record_events,
        )
        engine.load_cached_indexes(recency_max_age=timedelta(minutes=config.indexes.recency_refresh_minutes))
        return engine

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    @property
    def cooccurrence_index(self) -> Optional[CooccurrenceIndex]:
        return self._cooccurrence

    @property
    def recency_index(self) -> Optional[RecencyIndex]:
        return self._recency

    def set_cooccurrence_index(self, index: Optional[CooccurrenceIndex]) -> None:
        self._cooccurrence = index

    def set_recency_index(self, index: Optional[RecencyIndex]) -> None:
        self._recency = index

    def replace_catalog(self, entities: Iterable[Entity], built_at: Optional[datetime] = None) -> int:
        """Persist a new catalog; the snapshot refreshes on the next call."""
        catalog = self.catalog_provider
        if not isinstance(catalog, DuckDBEntityCatalog):
            raise TypeError("replace_catalog requires the built-in DuckDB catalog")
        return catalog.replace_all_entities(entities, built_at=built_at)

    def load_cached_indexes(self, recency_max_age: Optional[timedelta] = None) -> None:
        now = self._clock()
        cooccurrence = load_cooccurrence(self.store, now=now)
        if cooccurrence is not None:
            self._cooccurrence = cooccurrence
            logger.info(f"Loaded cached co-occurrence index ({len(cooccurrence.associations)} entities)")
        recency = load_recency(self.store, max_age=recency_max_age, now=now)
        if recency is not None:
            self._recency = recency
            logger.info(f"Loaded cached recency index ({len(recency)} entities)")

    def rebuild_indexes(self,
                        vault_path: Path,
                        excluded_folders: Optional[Iterable[str]] = None,
                        min_count: Optional[float] = None) -> Tuple[CooccurrenceIndex, RecencyIndex]:
        """Mine both secondary indexes from the vault, persist and swap them in."""
        self.catalog.refresh_if_stale()
        entities = self.catalog.snapshot()
        excluded = list(excluded_folders) if excluded_folders is not None else None

        notes = [(note.path, note.content) for note in iter_notes(vault_path, excluded)]
        kwargs = {"min_count": min_count} if min_count is not None else {}
        cooccurrence = mine_cooccurrences(notes, [e.name for e in entities], **kwargs)
        recency = build_recency_index(vault_path, entities, excluded)

        save_cooccurrence(self.store, cooccurrence)
        save_recency(self.store, recency)
        self._cooccurrence = cooccurrence
        self._recency = recency
        return cooccurrence, recency

    async def _build_semantic_index(self, entities: Tuple[Entity, ...], built_at: Optional[datetime]) -> None:
        try:
            await self.semantic.index_entities(entities)
        except Exception as e:
            logger.warning(f"Semantic index build failed: {e}")
            return
        self._semantic_built_at = built_at

    async def _ensure_semantic_index(self, entities: Tuple[Entity, ...]) -> None:
        """
        Keep the entity embeddings in step with the catalog snapshot.

        Indexing is not bounded by the per-call timeout and at most one
        build runs at a time. A call with no usable index waits for the
        build; a stale index keeps serving while the rebuild runs.
        """
        if getattr(self.semantic, "index_entities", None) is None:
            return
        built_at = self.catalog.built_at
        if self._semantic_built_at == built_at and self.semantic.is_ready:
            return

        loop = asyncio.get_running_loop()
        task = self._semantic_task
        # A task left pending by a closed loop never completes
        if task is None or task.done() or task.get_loop() is not loop:
            task = loop.create_task(self._build_semantic_index(entities, built_at))
            self._semantic_task = task
        if not self.semantic.is_ready:
            await asyncio.shield(task)

    # ------------------------------------------------------------------
    # Suggest
    # ------------------------------------------------------------------

    async def suggest(self, content: str,
                      options: Optional[SuggestOptions] = None,
                      now: Optional[datetime] = None) -> SuggestResult:
        """
        Rank catalog entities for ``content``.

        Never mutates learning state. Audit events for scored candidates
        are written afterwards and a failure to write them is only logged.
        """
        options = options or SuggestOptions()
        now = now or self._clock()

        if SUGGESTION_PATTERN.search(content):
            return SuggestResult()

        self.catalog.refresh_if_stale()
        entities = self.catalog.snapshot()
        cooccurrence = self._cooccurrence
        recency = self._recency
        if not entities:
            return SuggestResult()

        config = STRICTNESS_PROFILES[options.strictness]
        threshold = config.adaptive_min_score(len(content))

        tokens, stems = content_terms(content, config.min_word_length)
        if not tokens:
            return SuggestResult()

        linked = extract_linked_entities(content) if options.exclude_linked else set()
        folder = extract_folder(options.note_path) if options.note_path else None
        suppressed = self.feedback.suppressed_names(folder)
        scorer = EntityScorer(
            config, tokens, stems,
            note_path=options.note_path,
            recency=recency,
            feedback_boosts=self.feedback.feedback_boosts(folder),
            now=now,
        )

        # Sweep A: direct scoring of every eligible entity
        candidates: Dict[str, Entity] = {}
        breakdowns: Dict[str, ScoreBreakdown] = {}
        for entity in entities:
            key = entity.name_lower
            if key in candidates or not is_suggestible_name(entity.name):
                continue
            if key in linked or key in suppressed:
                continue
            candidates[key] = entity
            breakdowns[key] = scorer.score(entity)

        directly_matched = [candidates[k].name for k, b in breakdowns.items() if b.total > 0]
        scored: Set[str] = {k for k, b in breakdowns.items() if b.total >= threshold}
        relevant: Set[str] = {k for k, b in breakdowns.items() if b.content_match > 0}

        # Sweep B: co-occurrence with the directly matched set
        if cooccurrence is not None and directly_matched:
            for key, entity in candidates.items():
                boost = cooccurrence_boost(entity.name, directly_matched, cooccurrence, recency, now)
                if boost <= 0:
                    continue
                breakdown = breakdowns[key]
                overlaps = scorer.overlaps(entity)
                if key not in scored and not overlaps:
                    continue
                breakdown.cooccurrence_boost += boost
                if overlaps or breakdown.content_match > 0:
                    relevant.add(key)
                if breakdown.total >= threshold:
                    scored.add(key)

        # Sweep C: semantic similarity
        if self.semantic is not None and len(content) >= MIN_SEMANTIC_CONTENT_LENGTH:
            for name, similarity in await self._semantic_matches(content, entities, options, linked):
                key = name.lower()
                if key not in candidates:
                    continue
                boost = semantic_boost(similarity, config)
                if boost <= 0:
                    continue
                breakdown = breakdowns[key]
                breakdown.semantic_boost = boost
                if key in scored or breakdown.total >= threshold:
                    scored.add(key)
                    relevant.add(key)

        survivors = [key for key in breakdowns if key in scored and key in relevant]
        survivors.sort(key=lambda k: (-breakdowns[k].total, -self._recency_rank(candidates[k], recency)))
        top = survivors[:options.max_suggestions]

        if self.record_events:
            self._record_events(breakdowns, candidates, set(survivors), threshold, options.note_path, now)

        names = [candidates[k].name for k in top]
        result = SuggestResult(suggestions=names, suffix=format_suffix(names))
        if options.detail:
            result.detailed = self._detail(top, candidates, breakdowns)
        return result

    async def _semantic_matches(self, content: str,
                                entities: Tuple[Entity, ...],
                                options: SuggestOptions,
                                linked: Set[str]) -> List[Tuple[str, float]]:
        try:
            await self._ensure_semantic_index(entities)
            if not self.semantic.is_ready:
                return []
            vector = await self.breaker.call(self.semantic.embed, content)
            return await self.breaker.call(
                self.semantic.top_similar, vector, options.max_suggestions * 3, linked
            )
        except Exception as e:
            logger.warning(f"Semantic layer skipped: {e}")
            return []

    @staticmethod
    def _recency_rank(entity: Entity, recency: Optional[RecencyIndex]) -> float:
        if recency is None:
            return 0.0
        last = recency.get(entity.name)
        if last is None:
            return 0.0
        return (last - datetime.min).total_seconds()

    def _record_events(self, breakdowns: Dict[str, ScoreBreakdown],
                       candidates: Dict[str, Entity],
                       passed: Set[str],
                       threshold: float,
                       note_path: Optional[str],
                       now: datetime) -> None:
        """
        Write one audit event per candidate that had evidence of relevance.

        Candidates carried only by type, context, recency or hub boosts are
        not recorded, so a journey's suggestion count covers entities the
        content actually pointed at.
        """
        rows = [
            [
                candidates[key].name,
                note_path or "",
                now,
                breakdown.total,
                json.dumps(breakdown.to_dict()),
                threshold,
                key in passed,
            ]
            for key, breakdown in breakdowns.items()
            if breakdown.has_relevance
        ]
        if not rows:
            return
        try:
            with self.store.transaction() as conn:
                conn.executemany(
                    """
                    INSERT INTO suggestion_events
                        (entity, note_path, timestamp, total_score, breakdown_json, threshold, passed)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows
                )
        except Exception as e:
            logger.warning(f"Failed to record {len(rows)} suggestion events: {e}")

    def _detail(self, keys: List[str], candidates: Dict[str, Entity],
                breakdowns: Dict[str, ScoreBreakdown]) -> List[ScoredSuggestion]:
        stats = {s.entity.lower(): s for s in self.feedback.entity_stats()}
        detailed = []
        for key in keys:
            breakdown = breakdowns[key]
            entity_stats = stats.get(key)
            detailed.append(ScoredSuggestion(
                entity=candidates[key].name,
                path=candidates[key].source_path,
                total_score=breakdown.total,
                breakdown=breakdown,
                confidence=confidence_level(breakdown.total),
                feedback_count=entity_stats.total if entity_stats else 0,
                accuracy=entity_stats.accuracy if entity_stats else None,
            ))
        return detailed

    # ------------------------------------------------------------------
    # Apply, Learn, Adapt
    # ------------------------------------------------------------------

    def record_feedback(self, entity: str, context: str, note_path: str, correct: bool) -> FeedbackReport:
        was_suppressed = self.feedback.is_suppressed(entity)
        entry = self.feedback.record_feedback(entity, context, note_path, correct)
        suppressed = self.feedback.is_suppressed(entity)
        return FeedbackReport(
            entry=entry,
            suppressed=suppressed,
            suppression_updated=suppressed != was_suppressed,
        )

    def track_applications(self, note_path: str, entities: Iterable[str]) -> int:
        return self.feedback.track_applications(note_path, entities)

    def detect_removals(self, note_path: str, content: str) -> List[str]:
        return self.feedback.detect_removals(note_path, content)

    def entity_journey(self, entity: str, days_back: int = 30) -> Dict[str, Any]:
        return entity_journey(
            self.store, self.feedback, entity,
            days_back=days_back,
            now=self._clock(),
            catalog=self.catalog_provider,
            cooccurrence=self._cooccurrence,
            recency=self._recency,
        )

    def dashboard(self) -> Dict[str, Any]:
        return self.feedback.dashboard()

    def close(self) -> None:
        self.store.close()
