"""
Haven — Mood Signal Extractor

Turns the live conversation into a structured mood estimate.

Inputs:  transcript log, audio energy, background noise, recent check-ins,
         active guardrail flags.
Output:  MoodInferenceResult (or None when the user has not spoken yet).

Everything here is deterministic and side-effect free except the optional
remote cue lookup, which is best-effort: a failure is logged and treated
as "no extra cues".
"""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.interfaces import CueServiceProtocol
from ..core.models import (
    ExplainabilityTag,
    GuardrailFlags,
    MoodCheckIn,
    MoodCue,
    MoodInferenceResult,
    MoodTrend,
    PatternDetection,
    TranscriptItem,
)

logger = logging.getLogger("haven.mood")


# ---------------------------------------------------------------------------
# Lexical catalogues
# ---------------------------------------------------------------------------

POSITIVE_TERMS: Tuple[MoodCue, ...] = (
    MoodCue("grateful", "positive", 1.1),
    MoodCue("hope", "positive", 0.9),
    MoodCue("calm", "positive", 1.0),
    MoodCue("better", "positive", 0.8),
    MoodCue("relaxed", "positive", 1.0),
    MoodCue("grounded", "positive", 1.0),
)

NEGATIVE_TERMS: Tuple[MoodCue, ...] = (
    MoodCue("anxious", "negative", 1.0),
    MoodCue("panic", "negative", 1.2),
    MoodCue("tired", "negative", 0.7),
    MoodCue("overwhelmed", "negative", 1.2),
    MoodCue("worried", "negative", 1.0),
    MoodCue("angry", "negative", 0.9),
    MoodCue("scared", "negative", 1.1),
    MoodCue("numb", "negative", 0.8),
)

ESCALATION_TERMS: Tuple[MoodCue, ...] = (
    MoodCue("end it", "escalation", 2.0),
    MoodCue("suicide", "escalation", 2.0),
    MoodCue("harm myself", "escalation", 1.8),
    MoodCue("give up", "escalation", 1.4),
    MoodCue("can't go on", "escalation", 1.6),
)

# Escalation cues weigh this much more than their nominal weight
ESCALATION_SEVERITY = 1.5

# Check-in mood scale midpoint and how strongly self-reports nudge the score
CHECK_IN_NEUTRAL_MOOD = 3.0
CHECK_IN_INFLUENCE = 0.3

SENTIMENT_POSITIVE_ABOVE = 1.5
SENTIMENT_NEGATIVE_BELOW = -1.5

AROUSAL_HIGH_ABOVE = 0.75
AROUSAL_MEDIUM_ABOVE = 0.35

CONFIDENCE_BASE = 0.55
CONFIDENCE_PER_POINT = 0.08
CONFIDENCE_SCORE_CAP = 4.0
CONFIDENCE_AROUSAL_BONUS = 0.08
CONFIDENCE_MAX = 0.95


@dataclass(frozen=True)
class PatternRule:
    name: str
    phrases: Tuple[str, ...]
    weight: float


PATTERN_RULES: Tuple[PatternRule, ...] = (
    PatternRule("catastrophizing", ("worst case", "everything will fall apart", "nothing will work"), 1.1),
    PatternRule("all-or-nothing", ("always", "never", "completely ruined", "total failure"), 0.9),
    PatternRule("self-blame", ("it's my fault", "i messed up", "i should have known"), 0.8),
    PatternRule("hopelessness", ("no way out", "can't go on", "there's no point"), 1.3),
)

PATTERN_HINTS: Dict[str, str] = {
    "catastrophizing": "reframe-cognitive",
    "all-or-nothing": "grounding-balance",
    "self-blame": "self-compassion",
    "hopelessness": "crisis-support",
}

CRISIS_HINT = "crisis-support"

SENTIMENT_DEFAULT_HINTS: Dict[str, str] = {
    "negative": "grounding-breathing",
    "neutral": "gentle-check-in",
}

EXPLAINABILITY_BASE: Tuple[ExplainabilityTag, ...] = (
    ExplainabilityTag("transcript", 0.6),
    ExplainabilityTag("audio-arousal", 0.2),
    ExplainabilityTag("history", 0.2),
)

_SENTIMENT_VALUE = {"positive": 1, "neutral": 0, "negative": -1}


# ---------------------------------------------------------------------------
# Text normalisation
# ---------------------------------------------------------------------------

_NON_LETTERS = re.compile(r"[^a-z\s]")
_WHITESPACE = re.compile(r"\s+")


def normalise(text: str) -> str:
    """Lowercase, strip diacritics, drop non-letters, collapse whitespace."""
    decomposed = unicodedata.normalize("NFKD", text.lower())
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    letters_only = _NON_LETTERS.sub(" ", stripped)
    return _WHITESPACE.sub(" ", letters_only).strip()


def _phrase_pattern(phrase: str) -> re.Pattern:
    # Catalogue phrases go through the same normalisation as the utterance,
    # so "can't go on" matches the normalised "can t go on".
    return re.compile(rf"(?<![a-z]){re.escape(normalise(phrase))}(?![a-z])")


_CATALOGUE: Tuple[Tuple[MoodCue, re.Pattern], ...] = tuple(
    (cue, _phrase_pattern(cue.term))
    for cue in (*POSITIVE_TERMS, *NEGATIVE_TERMS, *ESCALATION_TERMS)
)

_PATTERN_MATCHERS: Tuple[Tuple[PatternRule, Tuple[Tuple[str, re.Pattern], ...]], ...] = tuple(
    (rule, tuple((phrase, _phrase_pattern(phrase)) for phrase in rule.phrases))
    for rule in PATTERN_RULES
)


# ---------------------------------------------------------------------------
# Pipeline steps
# ---------------------------------------------------------------------------

def latest_user_transcript(transcripts: Iterable[TranscriptItem]) -> Optional[TranscriptItem]:
    latest = None
    for item in transcripts:
        if item.speaker == "user":
            latest = item
    return latest


def accumulate_cues(normalised_text: str) -> List[MoodCue]:
    return [cue for cue, pattern in _CATALOGUE if pattern.search(normalised_text)]


def merge_cues(local: Sequence[MoodCue], remote: Sequence[MoodCue]) -> List[MoodCue]:
    seen = {(c.term, c.polarity) for c in local}
    merged = list(local)
    for cue in remote:
        key = (cue.term, cue.polarity)
        if key not in seen:
            seen.add(key)
            merged.append(cue)
    return merged


def compute_score(cues: Iterable[MoodCue]) -> float:
    score = 0.0
    for cue in cues:
        if cue.polarity == "positive":
            score += cue.weight
        elif cue.polarity == "negative":
            score -= cue.weight
        else:
            score -= cue.weight * ESCALATION_SEVERITY
    return score


def adjust_score_with_check_ins(score: float, check_ins: Optional[Sequence[MoodCheckIn]]) -> float:
    if not check_ins:
        return score
    average = sum(c.mood for c in check_ins) / len(check_ins)
    return score + (average - CHECK_IN_NEUTRAL_MOOD) * CHECK_IN_INFLUENCE


def derive_arousal(audio_energy: float = 0.0, background_noise: float = 0.0) -> str:
    effective = max(audio_energy - background_noise, 0.0)
    if effective > AROUSAL_HIGH_ABOVE:
        return "high"
    if effective > AROUSAL_MEDIUM_ABOVE:
        return "medium"
    return "low"


def derive_sentiment(score: float) -> str:
    if score > SENTIMENT_POSITIVE_ABOVE:
        return "positive"
    if score < SENTIMENT_NEGATIVE_BELOW:
        return "negative"
    return "neutral"


def compute_confidence(score: float, arousal: str) -> float:
    base = CONFIDENCE_BASE + min(abs(score), CONFIDENCE_SCORE_CAP) * CONFIDENCE_PER_POINT
    bonus = CONFIDENCE_AROUSAL_BONUS if arousal == "high" else 0.0
    return min(CONFIDENCE_MAX, base + bonus)


def detect_crisis(cues: Iterable[MoodCue], guardrails: Optional[GuardrailFlags]) -> bool:
    if any(c.polarity == "escalation" for c in cues):
        return True
    return bool(guardrails and guardrails.escalation_active)


def choose_action(sentiment: str, arousal: str, crisis_likely: bool) -> str:
    if crisis_likely:
        return "escalate"
    if sentiment == "negative" and arousal == "high":
        return "de-escalate"
    return "monitor"


def detect_patterns(normalised_text: str) -> List[PatternDetection]:
    detections = []
    for rule, matchers in _PATTERN_MATCHERS:
        evidence = tuple(phrase for phrase, pattern in matchers if pattern.search(normalised_text))
        if evidence:
            detections.append(PatternDetection(rule.name, rule.weight * len(evidence), evidence))
    return detections


def build_explainability_tags(
    patterns: Sequence[PatternDetection],
    cues: Sequence[MoodCue],
    arousal: str,
) -> List[ExplainabilityTag]:
    pattern_weight = sum(p.weight for p in patterns)
    cue_weight = min(len(cues) * 0.1, 0.3) if cues else 0.0
    arousal_weight = 0.1 if arousal == "high" else 0.05
    return [
        *EXPLAINABILITY_BASE,
        ExplainabilityTag("patterns", round(pattern_weight, 2)),
        ExplainabilityTag("lexical-cues", round(cue_weight, 2)),
        ExplainabilityTag("arousal", round(arousal_weight, 2)),
    ]


def derive_intervention_hints(
    patterns: Sequence[PatternDetection],
    crisis_likely: bool,
    sentiment: str,
) -> List[str]:
    if crisis_likely:
        return [CRISIS_HINT]

    hints: List[str] = []
    for pattern in patterns:
        hint = PATTERN_HINTS.get(pattern.name)
        if hint and hint not in hints:
            hints.append(hint)

    if not hints and sentiment in SENTIMENT_DEFAULT_HINTS:
        hints.append(SENTIMENT_DEFAULT_HINTS[sentiment])
    return hints


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

@dataclass
class MoodInferenceRequest:
    """Snapshot of everything inference looks at."""
    transcripts: Sequence[TranscriptItem] = ()
    audio_energy: float = 0.0
    background_noise_level: float = 0.0
    recent_check_ins: Sequence[MoodCheckIn] = ()
    guardrails: GuardrailFlags = field(default_factory=GuardrailFlags)
    fallback_to_edge_model: bool = False


def analyse_text(
    request: MoodInferenceRequest,
    latest: TranscriptItem,
    normalised_text: str,
    cues: Sequence[MoodCue],
) -> MoodInferenceResult:
    """Synchronous half of inference, once the cue set is known."""
    arousal = derive_arousal(request.audio_energy, request.background_noise_level)
    score = adjust_score_with_check_ins(compute_score(cues), request.recent_check_ins)
    sentiment = derive_sentiment(score)
    crisis_likely = detect_crisis(cues, request.guardrails)
    patterns = detect_patterns(normalised_text)

    return MoodInferenceResult(
        sentiment=sentiment,
        arousal=arousal,
        confidence=compute_confidence(score, arousal),
        cues=tuple(cues),
        supporting_transcript_id=latest.id,
        crisis_likely=crisis_likely,
        recommended_action=choose_action(sentiment, arousal, crisis_likely),
        patterns=tuple(patterns),
        explainability_tags=tuple(build_explainability_tags(patterns, cues, arousal)),
        intervention_hints=tuple(derive_intervention_hints(patterns, crisis_likely, sentiment)),
    )


async def infer_mood(
    request: MoodInferenceRequest,
    cue_service: Optional[CueServiceProtocol] = None,
) -> Optional[MoodInferenceResult]:
    """Infer mood from the latest user utterance. None if the user has not spoken."""
    latest = latest_user_transcript(request.transcripts)
    if latest is None:
        return None

    normalised_text = normalise(latest.content)
    cues = accumulate_cues(normalised_text)

    if request.fallback_to_edge_model and cue_service is not None:
        try:
            remote = await cue_service.extract_cues(
                normalised_text,
                {
                    "transcripts": [t.to_dict() for t in request.transcripts],
                    "audioEnergy": request.audio_energy,
                    "backgroundNoiseLevel": request.background_noise_level,
                },
            )
        except Exception as e:
            logger.warning(f"Edge mood inference failed: {e}")
            remote = []
        if remote:
            cues = merge_cues(cues, remote)

    return analyse_text(request, latest, normalised_text, cues)


def evaluate_against_history(
    result: Optional[MoodInferenceResult],
    history: Sequence[MoodInferenceResult],
) -> MoodTrend:
    """Compare a result with the newest entry of the timeline."""
    if result is None or not history:
        return MoodTrend()

    delta = _SENTIMENT_VALUE[result.sentiment] - _SENTIMENT_VALUE[history[-1].sentiment]
    if delta > 0:
        return MoodTrend("improving", delta)
    if delta < 0:
        return MoodTrend("declining", delta)
    return MoodTrend("stable", 0)


def score_effectiveness(
    rating: Optional[float],
    calmness_delta: Optional[float],
    mood_trend_delta: float,
) -> float:
    """Blend a completed intervention's rating, calmness change and mood trend into one score."""
    normalised_rating = rating / 5 if rating is not None else 0.5
    calmness = max(min(calmness_delta / 10, 1.0), -1.0) if calmness_delta is not None else 0.0
    return round(normalised_rating * 0.6 + calmness * 0.3 + mood_trend_delta * 0.1, 3)

