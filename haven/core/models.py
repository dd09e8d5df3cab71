"""
Haven — Data Models

Dataclasses for every piece of data flowing through the companion core.
`to_dict()` produces the camelCase wire shape exchanged with the app
backend; `from_dict()` is tolerant of partial or loosely-typed payloads.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 instant; None when missing or unparseable."""
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class TransportType(str, Enum):
    WEBRTC = "webrtc"
    WEBSOCKET = "websocket"

    @classmethod
    def coerce(cls, value: Any) -> "TransportType":
        try:
            return cls(value)
        except ValueError:
            return cls.WEBRTC


class MicrophoneState(str, Enum):
    MUTED = "muted"
    UNMUTED = "unmuted"
    HELD = "held"


class Priority(str, Enum):
    """Recommendation priority; `rank` is the sort key (high first)."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    @classmethod
    def from_rank(cls, rank: int) -> "Priority":
        rank = min(2, max(0, int(rank)))
        return [cls.HIGH, cls.MEDIUM, cls.LOW][rank]

    @classmethod
    def coerce(cls, value: Any) -> "Priority":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return cls.from_rank(int(value))
        try:
            return cls(value)
        except ValueError:
            return cls.MEDIUM


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class InterventionType(str, Enum):
    BREATHING = "breathing"
    MEDITATION = "meditation"
    JOURNALING = "journaling"
    PHYSICAL_ACTIVITY = "physical-activity"
    GROUNDING = "grounding"
    COGNITIVE_REFRAMING = "cognitive-reframing"
    DISTRACTION = "distraction"
    SOCIAL_SUPPORT = "social-support"
    SAFETY_RESOURCES = "safety-resources"


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

SPEAKERS = ("user", "companion", "system")


@dataclass(frozen=True)
class TranscriptItem:
    """One utterance. Immutable once created."""
    id: str = field(default_factory=new_id)
    speaker: str = "user"               # "user" | "companion" | "system"
    content: str = ""
    timestamp: str = field(default_factory=utc_now_iso)
    confidence: Optional[float] = None
    annotations: Optional[Tuple[str, ...]] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "speaker": self.speaker,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.confidence is not None:
            d["confidence"] = self.confidence
        if self.annotations is not None:
            d["annotations"] = list(self.annotations)
        return d

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "TranscriptItem":
        speaker = data.get("speaker")
        annotations = data.get("annotations")
        confidence = data.get("confidence")
        return cls(
            id=data["id"] if isinstance(data.get("id"), str) else new_id(),
            speaker=speaker if speaker in SPEAKERS else "user",
            content=data.get("content") if isinstance(data.get("content"), str) else "",
            timestamp=data["timestamp"] if isinstance(data.get("timestamp"), str) else utc_now_iso(),
            confidence=float(confidence) if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) else None,
            annotations=(
                tuple(a for a in annotations if isinstance(a, str))
                if isinstance(annotations, (list, tuple)) else None
            ),
        )


# ---------------------------------------------------------------------------
# Guardrails
# ---------------------------------------------------------------------------

_GUARDRAIL_KEYS = {
    "crisisDetected": "crisis_detected",
    "escalationSuggested": "escalation_suggested",
    "policyViolation": "policy_violation",
}


@dataclass(frozen=True)
class GuardrailFlags:
    """
    Externally asserted safety signals.

    Flags only ever get raised during a session: `merge` ORs the three
    booleans, so clearing one requires a session reset.
    """
    crisis_detected: bool = False
    escalation_suggested: bool = False
    policy_violation: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def escalation_active(self) -> bool:
        return self.crisis_detected or self.escalation_suggested

    def merge(self, flags: "GuardrailFlags | Mapping[str, Any]") -> "GuardrailFlags":
        incoming = flags.to_dict() if isinstance(flags, GuardrailFlags) else dict(flags)
        raised = {attr: getattr(self, attr) for attr in _GUARDRAIL_KEYS.values()}
        extras = dict(self.extras)
        for key, value in incoming.items():
            attr = _GUARDRAIL_KEYS.get(key) or (key if key in raised else None)
            if attr:
                raised[attr] = raised[attr] or bool(value)
            else:
                extras[key] = value
        return GuardrailFlags(extras=extras, **raised)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.extras,
            "crisisDetected": self.crisis_detected,
            "escalationSuggested": self.escalation_suggested,
            "policyViolation": self.policy_violation,
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "GuardrailFlags":
        if not data:
            return cls()
        return cls().merge(data)


# ---------------------------------------------------------------------------
# Mood inference
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MoodCue:
    term: str
    polarity: str        # "positive" | "negative" | "escalation"
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {"term": self.term, "polarity": self.polarity, "weight": self.weight}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["MoodCue"]:
        term = data.get("term")
        polarity = data.get("polarity")
        weight = data.get("weight", 1.0)
        if not isinstance(term, str) or polarity not in ("positive", "negative", "escalation"):
            return None
        try:
            return cls(term=term, polarity=polarity, weight=float(weight))
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class PatternDetection:
    name: str
    weight: float
    evidence: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "weight": self.weight, "evidence": list(self.evidence)}


@dataclass(frozen=True)
class ExplainabilityTag:
    label: str
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "weight": self.weight}


@dataclass(frozen=True)
class MoodInferenceResult:
    sentiment: str                      # "positive" | "neutral" | "negative"
    arousal: str                        # "low" | "medium" | "high"
    confidence: float
    cues: Tuple[MoodCue, ...]
    supporting_transcript_id: str
    crisis_likely: bool
    recommended_action: str             # "monitor" | "de-escalate" | "escalate"
    patterns: Tuple[PatternDetection, ...] = ()
    explainability_tags: Tuple[ExplainabilityTag, ...] = ()
    intervention_hints: Tuple[str, ...] = ()
    created_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sentiment": self.sentiment,
            "arousal": self.arousal,
            "confidence": self.confidence,
            "cues": [c.to_dict() for c in self.cues],
            "supportingTranscriptId": self.supporting_transcript_id,
            "crisisLikely": self.crisis_likely,
            "recommendedAction": self.recommended_action,
            "patterns": [p.to_dict() for p in self.patterns],
            "explainabilityTags": [t.to_dict() for t in self.explainability_tags],
            "interventionHints": list(self.intervention_hints),
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MoodInferenceResult":
        cues = tuple(
            cue for cue in (MoodCue.from_dict(c) for c in data.get("cues") or [] if isinstance(c, Mapping))
            if cue is not None
        )
        patterns = tuple(
            PatternDetection(
                name=str(p.get("name", "")),
                weight=float(p.get("weight", 0.0)),
                evidence=tuple(p.get("evidence") or ()),
            )
            for p in data.get("patterns") or [] if isinstance(p, Mapping)
        )
        tags = tuple(
            ExplainabilityTag(label=str(t.get("label", "")), weight=float(t.get("weight", 0.0)))
            for t in data.get("explainabilityTags") or [] if isinstance(t, Mapping)
        )
        return cls(
            sentiment=data.get("sentiment", "neutral"),
            arousal=data.get("arousal", "low"),
            confidence=float(data.get("confidence", 0.0)),
            cues=cues,
            supporting_transcript_id=str(data.get("supportingTranscriptId", "")),
            crisis_likely=bool(data.get("crisisLikely", False)),
            recommended_action=data.get("recommendedAction", "monitor"),
            patterns=patterns,
            explainability_tags=tags,
            intervention_hints=tuple(data.get("interventionHints") or ()),
            created_at=data.get("createdAt") or utc_now_iso(),
        )


@dataclass(frozen=True)
class MoodTrend:
    trend: str = "stable"               # "improving" | "stable" | "declining"
    delta: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {"trend": self.trend, "delta": self.delta}


# ---------------------------------------------------------------------------
# Check-ins (read-only input)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MoodCheckIn:
    id: str
    mood: int                           # 1-5
    intensity: int                      # 1-10
    timestamp: str
    crisis_detected: bool = False
    notes: Optional[str] = None
    triggers: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "mood": self.mood,
            "intensity": self.intensity,
            "timestamp": self.timestamp,
            "crisisDetected": self.crisis_detected,
            "notes": self.notes,
            "triggers": list(self.triggers),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "MoodCheckIn":
        return cls(
            id=str(data.get("id") or data.get("$id") or new_id()),
            mood=int(data.get("mood", 3)),
            intensity=int(data.get("intensity", 5)),
            timestamp=data.get("timestamp") or utc_now_iso(),
            crisis_detected=bool(data.get("crisisDetected", False)),
            notes=data.get("notes"),
            triggers=tuple(t for t in data.get("triggers") or () if isinstance(t, str)),
        )


# ---------------------------------------------------------------------------
# Interventions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class InterventionRecommendation:
    type: InterventionType
    title: str
    description: str
    reasoning: str
    priority: Priority = Priority.MEDIUM
    estimated_duration: int = 90        # seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "reasoning": self.reasoning,
            "priority": self.priority.value,
            "priorityRank": self.priority.rank,
            "estimatedDuration": self.estimated_duration,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Optional["InterventionRecommendation"]:
        try:
            kind = InterventionType(data.get("type"))
        except ValueError:
            return None
        return cls(
            type=kind,
            title=str(data.get("title", "")),
            description=str(data.get("description", "")),
            reasoning=str(data.get("reasoning") or data.get("reason") or ""),
            priority=Priority.coerce(data.get("priority", "medium")),
            estimated_duration=int(data.get("estimatedDuration", 90)),
        )


# ---------------------------------------------------------------------------
# Live telemetry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AudioBufferMeta:
    id: str
    direction: str                      # "incoming" | "outgoing"
    size: int
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "direction": self.direction, "size": self.size, "timestamp": self.timestamp}


@dataclass(frozen=True)
class ToolCallMeta:
    id: str
    name: str
    status: str = "pending"             # "pending" | "approved" | "rejected"
    created_at: str = field(default_factory=utc_now_iso)
    resolved_at: Optional[str] = None
    payload: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status,
            "createdAt": self.created_at,
            "resolvedAt": self.resolved_at,
            "payload": self.payload,
        }


# ---------------------------------------------------------------------------
# Gateway payloads
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BootstrapPayload:
    session_id: str
    client_secret: Optional[str]
    transport: TransportType
    locale: str
    voice: str
    connection_state: str = "connecting"
    recommended_interventions: Tuple[InterventionRecommendation, ...] = ()
    guardrails: GuardrailFlags = field(default_factory=GuardrailFlags)
    mood_context: Tuple[TranscriptItem, ...] = ()
    check_ins: Tuple[MoodCheckIn, ...] = ()
    instructions: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BootstrapPayload":
        recommendations = (
            InterventionRecommendation.from_dict(r)
            for r in data.get("recommendedInterventions") or [] if isinstance(r, Mapping)
        )
        return cls(
            session_id=str(data["sessionId"]),
            client_secret=data.get("clientSecret"),
            transport=TransportType.coerce(data.get("transport")),
            locale=data.get("locale") or "en-US",
            voice=data.get("voice") or "alloy",
            connection_state=data.get("connectionState") or "connecting",
            recommended_interventions=tuple(r for r in recommendations if r is not None),
            guardrails=GuardrailFlags.from_dict(data.get("guardrails")),
            mood_context=tuple(
                TranscriptItem.from_dict(t) for t in data.get("moodContext") or [] if isinstance(t, Mapping)
            ),
            check_ins=tuple(
                MoodCheckIn.from_dict(c) for c in data.get("checkIns") or [] if isinstance(c, Mapping)
            ),
            instructions=data.get("instructions"),
        )


@dataclass(frozen=True)
class RelayResult:
    success: bool
    attempts: int = 0
    status: Optional[int] = None
    relayed_at: Optional[str] = None
    event_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RelayResult":
        return cls(
            success=bool(data.get("success", False)),
            attempts=int(data.get("attempts") or 0),
            status=data.get("status"),
            relayed_at=data.get("relayedAt"),
            event_type=data.get("eventType"),
        )


@dataclass(frozen=True)
class PersistResult:
    history_id: str
    stored_at: Optional[str] = None


# ---------------------------------------------------------------------------
# Session history
# ---------------------------------------------------------------------------

@dataclass
class SessionHistoryRecord:
    """Durable unit of one conversation, owned by the user who created it."""
    history_id: str
    session_id: Optional[str] = None
    transcripts: List[TranscriptItem] = field(default_factory=list)
    recommended_interventions: List[InterventionRecommendation] = field(default_factory=list)
    guardrails: Optional[GuardrailFlags] = None
    mood_inference_timeline: List[MoodInferenceResult] = field(default_factory=list)
    duration_ms: Optional[int] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    transport: Optional[str] = None
    locale: Optional[str] = None
    voice: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    summary: Optional[str] = None
    total_transcript_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class SessionHistorySummary:
    history_id: str
    session_id: Optional[str] = None
    transcripts: List[TranscriptItem] = field(default_factory=list)
    total_transcript_count: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
