"""
Haven — Transcript & History Policies

Pure functions shared by the write path and the read path of session
history:

  • prune_for_persistence — bound the transcript list sent with a write,
    never dropping safety-annotated utterances.
  • merge_transcripts     — reconcile local and remote transcripts by id.
  • normalize_* / map_history_document — tolerant parsing of stored
    documents (columns may hold JSON strings or native lists).
"""

from __future__ import annotations

import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..core.config import TRANSCRIPT_PERSIST_WINDOW
from ..core.models import (
    GuardrailFlags,
    InterventionRecommendation,
    MoodInferenceResult,
    SessionHistoryRecord,
    SessionHistorySummary,
    TranscriptItem,
    parse_timestamp,
)

logger = logging.getLogger("haven.transcripts")

SAFETY_ANNOTATION = re.compile(r"guardrail|safety|crisis", re.IGNORECASE)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(item: TranscriptItem) -> datetime:
    # Unparseable timestamps sort first rather than breaking the ordering
    return parse_timestamp(item.timestamp) or _EPOCH


def sort_by_timestamp(items: Iterable[TranscriptItem]) -> List[TranscriptItem]:
    """Stable ascending sort on the parsed timestamp."""
    return sorted(items, key=_sort_key)


def is_safety_relevant(item: TranscriptItem) -> bool:
    return any(SAFETY_ANNOTATION.search(note) for note in item.annotations or ())


# ---------------------------------------------------------------------------
# Write path
# ---------------------------------------------------------------------------

def prune_for_persistence(
    items: Sequence[TranscriptItem],
    window: int = TRANSCRIPT_PERSIST_WINDOW,
) -> List[TranscriptItem]:
    """
    Transcripts to send with a history write.

    Up to `window` entries go through untouched.  Beyond that, keep the
    last `window` by arrival order plus every safety-annotated entry,
    deduplicated by id and re-sorted by timestamp.
    """
    if len(items) <= window:
        return sort_by_timestamp(items)

    flagged = [item for item in items if is_safety_relevant(item)]
    recent = list(items[-window:])

    selected: Dict[str, TranscriptItem] = {}
    for item in (*flagged, *recent):
        selected.setdefault(item.id, item)
    return sort_by_timestamp(selected.values())


# ---------------------------------------------------------------------------
# Read path
# ---------------------------------------------------------------------------

def merge_transcripts(
    local: Iterable[TranscriptItem],
    remote: Iterable[TranscriptItem],
) -> List[TranscriptItem]:
    """Union by id; the remote copy wins on conflict; sorted by timestamp."""
    merged: Dict[str, TranscriptItem] = {}
    for item in local:
        merged[item.id] = item
    for item in remote:
        merged[item.id] = item
    return sort_by_timestamp(merged.values())


def _parse_json(raw: Any, expected: type, label: str) -> Any:
    if isinstance(raw, expected):
        return raw
    if not isinstance(raw, str) or not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning(f"Failed to parse {label}: {e}")
        return None
    return parsed if isinstance(parsed, expected) else None


def normalize_transcripts(raw: Any) -> List[TranscriptItem]:
    """Parse stored transcripts, dropping empty content and repeated ids."""
    source = _parse_json(raw, list, "transcripts") or []
    seen = set()
    items = []
    for entry in source:
        if not isinstance(entry, Mapping):
            continue
        item = TranscriptItem.from_dict(entry)
        if not item.content or item.id in seen:
            continue
        seen.add(item.id)
        items.append(item)
    return items


def normalize_guardrails(raw: Any) -> Optional[GuardrailFlags]:
    data = _parse_json(raw, dict, "guardrail snapshot")
    if data is None:
        return None
    return GuardrailFlags.from_dict(data)


def _normalize_list(raw: Any, label: str) -> List[Mapping[str, Any]]:
    source = _parse_json(raw, list, label) or []
    return [entry for entry in source if isinstance(entry, Mapping)]


def map_history_document(doc: Mapping[str, Any]) -> SessionHistoryRecord:
    """Stored document → SessionHistoryRecord."""
    transcripts = normalize_transcripts(doc.get("transcripts"))
    metadata = dict(_parse_json(doc.get("metadata"), dict, "session metadata") or {})

    summary = metadata.pop("summary", None)
    if not isinstance(summary, str):
        summary = None
    guardrail_source = metadata.pop("guardrails", None) or doc.get("guardrails")

    recommendations = (
        InterventionRecommendation.from_dict(r)
        for r in _normalize_list(doc.get("recommendedInterventions"), "recommendations")
    )
    timeline = []
    for entry in _normalize_list(doc.get("moodInferenceTimeline"), "mood timeline"):
        try:
            timeline.append(MoodInferenceResult.from_dict(entry))
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed mood timeline entry: {e}")

    duration = doc.get("durationMs")
    return SessionHistoryRecord(
        history_id=str(doc.get("historyId") or doc.get("$id") or ""),
        session_id=doc.get("sessionId"),
        transcripts=transcripts,
        recommended_interventions=[r for r in recommendations if r is not None],
        guardrails=normalize_guardrails(guardrail_source),
        mood_inference_timeline=timeline,
        duration_ms=int(duration) if isinstance(duration, (int, float)) and not isinstance(duration, bool) else None,
        started_at=doc.get("startedAt"),
        ended_at=doc.get("endedAt"),
        transport=doc.get("transport"),
        locale=doc.get("locale"),
        voice=doc.get("voice"),
        metadata=metadata,
        summary=summary,
        total_transcript_count=len(transcripts),
        created_at=doc.get("createdAt") or doc.get("$createdAt"),
        updated_at=doc.get("updatedAt") or doc.get("$updatedAt"),
    )


def map_history_summary(doc: Mapping[str, Any]) -> SessionHistorySummary:
    transcripts = normalize_transcripts(doc.get("transcripts"))
    total = doc.get("totalTranscriptCount")
    return SessionHistorySummary(
        history_id=str(doc.get("historyId") or doc.get("$id") or ""),
        session_id=doc.get("sessionId"),
        transcripts=transcripts,
        total_transcript_count=int(total) if isinstance(total, int) else len(transcripts),
        created_at=doc.get("createdAt") or doc.get("$createdAt"),
        updated_at=doc.get("updatedAt") or doc.get("$updatedAt"),
    )


# ---------------------------------------------------------------------------
# Timing
# ---------------------------------------------------------------------------

def compute_duration_ms(started_at: Optional[str], ended_at: Optional[str]) -> Optional[int]:
    """Milliseconds between two ISO instants; None if either is missing or unparseable."""
    start = parse_timestamp(started_at)
    end = parse_timestamp(ended_at)
    if start is None or end is None:
        return None
    return int(round((end - start).total_seconds() * 1000))
