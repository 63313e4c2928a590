"""Read-only reconstruction of one entity's path through the suggestion loop."""

import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from .feedback import (
    FEEDBACK_BOOST_MIN_SAMPLES, SUPPRESSION_THRESHOLD, FeedbackAggregator, compute_boost,
)
from .indexers.catalog import EntityCatalogProvider
from .indexers.cooccurrence import CooccurrenceIndex, top_associations
from .indexers.recency import RecencyIndex
from .models import Entity, ScoreBreakdown, utcnow
from .storage import StateStore

RECENT_LIMIT = 20


def boost_tier_label(accuracy: float, sample_count: int) -> str:
    if sample_count < FEEDBACK_BOOST_MIN_SAMPLES:
        return "learning"
    if accuracy >= 0.95 and sample_count >= 20:
        return "champion"
    if accuracy >= 0.80:
        return "strong"
    if accuracy >= 0.60:
        return "neutral"
    if accuracy >= 0.40:
        return "weak"
    return "poor"


def _signed(value: float) -> str:
    return f"+{value:g}" if value > 0 else f"{value:g}"


def describe_action(action: str, **details: Any) -> str:
    """Human-readable attribution for one step of the loop."""
    breakdown: Optional[ScoreBreakdown] = details.get("breakdown")
    threshold = details.get("threshold")
    strictness = details.get("strictness")
    score = details.get("score") or 0.0

    if action == "discovered":
        aliases = details.get("aliases") or []
        alias_text = f", aliases: [{', '.join(repr(a) for a in aliases)}]" if aliases else ""
        return f"Scanned from `{details.get('source_path')}` (type: {details.get('category')}{alias_text})"

    if action == "suggested":
        parts: List[str] = []
        if breakdown is not None:
            for label, value in breakdown.layers():
                if label == "feedback":
                    if value != 0:
                        parts.append(f"feedback {_signed(value)}")
                elif label == "semantic":
                    if value > 0:
                        parts.append(f"semantic +{value:.1f}")
                elif value > 0:
                    parts.append(f"{label} {_signed(value)}")
        return f"Score {score:.1f} (threshold {threshold}, {strictness}): {', '.join(parts)}"

    if action == "filtered":
        top = breakdown.top_contributing_layer() if breakdown is not None else "unknown"
        return f"Score {score:.1f} below threshold {threshold} ({strictness}). Top layer: {top}"

    if action == "applied":
        return f"Applied wikilink [[{details.get('entity')}]] to `{details.get('note_path')}`"

    if action == "feedback_positive":
        return f"Link retained in `{details.get('note_path')}` -> positive feedback"

    if action == "feedback_negative":
        return f"Link [[{details.get('entity')}]] removed from `{details.get('note_path')}` -> implicit negative feedback"

    if action == "boosted":
        accuracy = details.get("accuracy") or 0.0
        boost = details.get("boost", 0)
        return (
            f"Entity accuracy {accuracy * 100:.0f}% over {details.get('sample_count')} samples "
            f"-> {details.get('tier')} tier -> {_signed(boost)} boost"
        )

    if action == "suppressed":
        accuracy = details.get("accuracy") or 0.0
        fp_rate = details.get("false_positive_rate") or 0.0
        return (
            f"Entity accuracy {accuracy * 100:.0f}% -> suppressed "
            f"(false_positive_rate {fp_rate * 100:.0f}% >= {SUPPRESSION_THRESHOLD * 100:.0f}%)"
        )

    return f"Unknown action: {action}"


def _find_entity(catalog: Optional[EntityCatalogProvider], name: str) -> Optional[Entity]:
    if catalog is None:
        return None
    key = name.strip().lower()
    try:
        get_by_name = getattr(catalog, "get_by_name", None)
        if get_by_name is not None:
            return get_by_name(key)
        for entity in catalog.search_by_prefix(key, limit=50):
            if entity.name_lower == key:
                return entity
    except Exception as e:
        logger.warning(f"Catalog lookup failed for {name}: {e}")
    return None


def _load_breakdown(raw: Optional[str]) -> ScoreBreakdown:
    try:
        return ScoreBreakdown.from_dict(json.loads(raw) if raw else None)
    except (TypeError, ValueError) as e:
        logger.debug(f"Unreadable breakdown in suggestion event: {e}")
        return ScoreBreakdown()


def entity_journey(store: StateStore,
                   feedback: FeedbackAggregator,
                   entity: str,
                   days_back: int = 30,
                   now: Optional[datetime] = None,
                   catalog: Optional[EntityCatalogProvider] = None,
                   cooccurrence: Optional[CooccurrenceIndex] = None,
                   recency: Optional[RecencyIndex] = None) -> Dict[str, Any]:
    """
    Assemble discover, suggest, apply, learn and adapt views for ``entity``.

    Reads only; nothing is written.
    """
    key = entity.strip().lower()
    cutoff = (now or utcnow()) - timedelta(days=days_back)

    # Discover
    catalog_entity = _find_entity(catalog, entity)
    last_mentioned = recency.get(key) if recency is not None else None
    discover = {
        "found": catalog_entity is not None,
        "source_notes": [catalog_entity.source_path] if catalog_entity and catalog_entity.source_path else [],
        "category": catalog_entity.category.value if catalog_entity else "unknown",
        "aliases": list(catalog_entity.aliases) if catalog_entity else [],
        "hub_score": catalog_entity.hub_score if catalog_entity else 0,
        "last_mentioned": last_mentioned.isoformat() if last_mentioned else None,
        "related": [
            {"entity": name, "weight": round(weight, 3)}
            for name, weight in (top_associations(cooccurrence, key, limit=5) if cooccurrence else [])
        ],
    }
    if catalog_entity is not None:
        discover["reason"] = describe_action(
            "discovered",
            source_path=catalog_entity.source_path,
            category=catalog_entity.category.value,
            aliases=list(catalog_entity.aliases),
        )

    # Suggest
    event_rows = store.conn.execute(
        """
        SELECT note_path, timestamp, total_score, breakdown_json, threshold, passed
        FROM suggestion_events
        WHERE lower(entity) = ? AND timestamp >= ?
        ORDER BY timestamp DESC
        LIMIT ?
        """,
        [key, cutoff, RECENT_LIMIT]
    ).fetchall()
    total_events = store.conn.execute(
        "SELECT COUNT(*) FROM suggestion_events WHERE lower(entity) = ?", [key]
    ).fetchone()[0]

    recent_events = []
    for note_path, timestamp, total_score, breakdown_json, threshold, passed in event_rows:
        breakdown = _load_breakdown(breakdown_json)
        recent_events.append({
            "note_path": note_path,
            "timestamp": timestamp.isoformat() if timestamp else None,
            "total_score": total_score,
            "breakdown": breakdown.to_dict(),
            "threshold": threshold,
            "passed": bool(passed),
            "top_contributing_layer": breakdown.top_contributing_layer(),
        })
    suggest = {"total_suggestions": int(total_events), "recent": recent_events}

    # Apply
    applications = feedback.applications_for(key)
    apply = {
        "applied_count": sum(1 for a in applications if a.status == "applied"),
        "removed_count": sum(1 for a in applications if a.status == "removed"),
        "active": [
            {"note_path": a.note_path, "applied_at": a.applied_at.isoformat()}
            for a in applications if a.status == "applied"
        ],
        "removed": [
            {"note_path": a.note_path, "applied_at": a.applied_at.isoformat()}
            for a in applications if a.status == "removed"
        ],
    }

    # Learn
    total, correct = feedback.entity_counts(key)
    accuracy = correct / total if total else 0.0
    learn = {
        "total_feedback": total,
        "correct": correct,
        "incorrect": total - correct,
        "accuracy": round(accuracy, 3),
        "recent": [
            {
                "note_path": e.note_path,
                "correct": e.correct,
                "context": e.context,
                "timestamp": e.created_at.isoformat() if e.created_at else None,
            }
            for e in feedback.get_feedback(key, limit=RECENT_LIMIT)
            if e.created_at is None or e.created_at >= cutoff
        ],
    }

    # Adapt
    boost = compute_boost(accuracy, total)
    tier = boost_tier_label(accuracy, total)
    suppression = feedback.suppression_for(key)
    adapt: Dict[str, Any] = {
        "boost_tier": tier,
        "current_boost": boost,
        "suppressed": suppression is not None,
        "suppression_reason": None,
    }
    if suppression is not None:
        adapt["suppression_reason"] = (
            f"false_positive_rate {suppression.false_positive_rate * 100:.0f}% exceeds "
            f"{SUPPRESSION_THRESHOLD * 100:.0f}% threshold"
        )
        adapt["reason"] = describe_action(
            "suppressed", accuracy=accuracy, false_positive_rate=suppression.false_positive_rate,
        )
    elif total >= FEEDBACK_BOOST_MIN_SAMPLES:
        adapt["reason"] = describe_action(
            "boosted", accuracy=accuracy, sample_count=total, tier=tier, boost=boost,
        )

    return {
        "entity": catalog_entity.name if catalog_entity else entity,
        "stages": {
            "discover": discover,
            "suggest": suggest,
            "apply": apply,
            "learn": learn,
            "adapt": adapt,
        },
    }
