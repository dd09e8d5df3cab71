"""
Haven — Intervention Recommender

Maps a mood inference (or, before the user has spoken, the latest mood
check-in) to a short, prioritised list of exercises.

Recommendations are informational: they are rendered as suggestions and
never start an exercise on their own.  Every public function returns a
normalised list, deduplicated by type and stably sorted high → low.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.models import (
    InterventionRecommendation,
    InterventionType,
    MoodCheckIn,
    MoodInferenceResult,
    Priority,
)

logger = logging.getLogger("haven.recommender")


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LibraryEntry:
    title: str
    description: str
    estimated_duration: int    # seconds


INTERVENTION_LIBRARY: Dict[InterventionType, LibraryEntry] = {
    InterventionType.BREATHING: LibraryEntry(
        "Box Breathing (4x4x4x4)",
        "Guided breathing to regulate high arousal and panic cues.", 90),
    InterventionType.MEDITATION: LibraryEntry(
        "Mindful Reset",
        "Short grounding meditation focused on sensory awareness.", 180),
    InterventionType.JOURNALING: LibraryEntry(
        "Guided Reflection",
        "Prompt-based journaling to reframe anxious thoughts.", 300),
    InterventionType.PHYSICAL_ACTIVITY: LibraryEntry(
        "Movement Break",
        "Gentle movement prompts to release stored tension.", 180),
    InterventionType.GROUNDING: LibraryEntry(
        "5-4-3-2-1 Grounding",
        "Sensory grounding to bring attention back to the present.", 60),
    InterventionType.COGNITIVE_REFRAMING: LibraryEntry(
        "Thought Reframe",
        "Quick exercise to challenge all-or-nothing thinking.", 180),
    InterventionType.DISTRACTION: LibraryEntry(
        "Gentle Distraction",
        "Light activities to shift focus when feeling overwhelmed.", 240),
    InterventionType.SOCIAL_SUPPORT: LibraryEntry(
        "Reach Out",
        "Encouragement to connect with trusted support contact.", 120),
    InterventionType.SAFETY_RESOURCES: LibraryEntry(
        "Safety Resources",
        "Crisis lines and immediate support options, available right now.", 60),
}

_FALLBACK_ENTRY = LibraryEntry("Supportive Pause", "Take a brief pause guided by the companion.", 90)

HINT_TO_INTERVENTION: Dict[str, Tuple[InterventionType, ...]] = {
    "grounding-breathing": (InterventionType.BREATHING, InterventionType.GROUNDING),
    "gentle-check-in": (InterventionType.JOURNALING, InterventionType.GROUNDING),
    "self-compassion": (InterventionType.COGNITIVE_REFRAMING, InterventionType.MEDITATION),
    "reframe-cognitive": (InterventionType.COGNITIVE_REFRAMING, InterventionType.JOURNALING),
    "grounding-balance": (InterventionType.GROUNDING, InterventionType.MEDITATION),
    "crisis-support": (InterventionType.GROUNDING, InterventionType.SOCIAL_SUPPORT),
}

TYPE_BASE_REASON: Dict[InterventionType, str] = {
    InterventionType.BREATHING: "Elevated arousal suggests breathing regulation.",
    InterventionType.GROUNDING: "Grounding can stabilize mood swings noted in session.",
    InterventionType.COGNITIVE_REFRAMING: "Reframing may help challenge rigid thought patterns.",
    InterventionType.JOURNALING: "Journaling can surface nuanced feelings for processing.",
    InterventionType.MEDITATION: "Mindfulness helps maintain balanced affect.",
    InterventionType.SOCIAL_SUPPORT: "Encouraging connection with trusted support network.",
    InterventionType.PHYSICAL_ACTIVITY: "Movement can release residual stress and tension.",
    InterventionType.DISTRACTION: "Light distraction offers relief when thoughts loop.",
    InterventionType.SAFETY_RESOURCES: "Safety cues detected; surfacing immediate support options.",
}

# Check-in rule thresholds (mood 1-5, intensity 1-10)
LOW_MOOD_MAX = 2
HIGH_INTENSITY_MIN = 7
MILD_LOW_MOOD_MAX = 3
MODERATE_INTENSITY_MAX = 6

# A completed run rated at least this well counts as having helped
HELPED_RATING_MIN = 4


# ---------------------------------------------------------------------------
# Context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CompletedIntervention:
    type: InterventionType
    completed_at: str
    rating: Optional[int] = None            # 1-5
    calmness_delta: Optional[float] = None


@dataclass
class RecommendationContext:
    check_ins: Sequence[MoodCheckIn] = ()
    recently_completed: Sequence[CompletedIntervention] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def build_recommendation(
    kind: InterventionType,
    reasoning: str,
    priority: Priority,
) -> InterventionRecommendation:
    entry = INTERVENTION_LIBRARY.get(kind, _FALLBACK_ENTRY)
    return InterventionRecommendation(
        type=kind,
        title=entry.title,
        description=entry.description,
        reasoning=reasoning,
        priority=priority,
        estimated_duration=entry.estimated_duration,
    )


def normalize_recommendations(
    items: Iterable[InterventionRecommendation],
) -> List[InterventionRecommendation]:
    """Drop repeated types (first wins) and stable-sort by priority rank."""
    seen = set()
    unique = []
    for item in items:
        if item.type in seen:
            continue
        seen.add(item.type)
        unique.append(item)
    return sorted(unique, key=lambda r: r.priority.rank)


def history_adjustment(kind: InterventionType, context: RecommendationContext) -> int:
    """
    +1 rank step if the latest run of the same exercise was rated well,
    else -1 if calmness dropped during it, else 0. The rating wins when
    both signals are present.
    """
    latest = next((c for c in context.recently_completed if c.type == kind), None)
    if latest is None:
        return 0
    if latest.rating is not None and latest.rating >= HELPED_RATING_MIN:
        return 1
    if latest.calmness_delta is not None and latest.calmness_delta < 0:
        return -1
    return 0


def _adjust(priority: Priority, steps: int) -> Priority:
    # A positive step raises priority, which lowers the rank
    return Priority.from_rank(priority.rank - steps)


def pick_intervention_types(result: MoodInferenceResult) -> List[InterventionType]:
    direct: List[InterventionType] = []
    for hint in result.intervention_hints:
        for kind in HINT_TO_INTERVENTION.get(hint, ()):
            if kind not in direct:
                direct.append(kind)
    if direct:
        return direct

    if result.sentiment == "negative" and result.arousal == "high":
        return [InterventionType.BREATHING, InterventionType.GROUNDING]
    if result.sentiment == "negative":
        return [InterventionType.GROUNDING, InterventionType.COGNITIVE_REFRAMING]
    if result.sentiment == "neutral":
        return [InterventionType.JOURNALING, InterventionType.MEDITATION]
    return [InterventionType.MEDITATION]


def reason_for(kind: InterventionType, result: MoodInferenceResult) -> str:
    if result.crisis_likely:
        return "Crisis cues detected; focusing on grounding and safety."
    if result.patterns:
        dominant = result.patterns[0]
        return f"Detected {dominant.name.replace('-', ' ')} cues in conversation."
    return TYPE_BASE_REASON.get(kind, "Supportive follow-up to sustain emotional balance.")


def _safety_resources(reasoning: str) -> InterventionRecommendation:
    return build_recommendation(InterventionType.SAFETY_RESOURCES, reasoning, Priority.HIGH)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def recommend_interventions(
    result: Optional[MoodInferenceResult],
    context: Optional[RecommendationContext] = None,
) -> List[InterventionRecommendation]:
    """
    Recommendations for a live mood inference; check-in rules when there is
    none.  Crisis cues in the conversation or on the latest check-in put
    safety resources first.
    """
    context = context or RecommendationContext()
    if result is None:
        return recommend_from_check_ins(context.check_ins)

    recommendations: List[InterventionRecommendation] = []
    if result.crisis_likely:
        recommendations.append(_safety_resources(
            "Crisis cues detected in conversation; keep support pathways in view."
        ))
    elif context.check_ins and context.check_ins[0].crisis_detected:
        recommendations.append(_safety_resources(
            "Last check-in flagged crisis indicators; surface support pathways."
        ))

    for index, kind in enumerate(pick_intervention_types(result)):
        base = Priority.HIGH if index == 0 else Priority.MEDIUM
        priority = _adjust(base, history_adjustment(kind, context))
        recommendations.append(build_recommendation(kind, reason_for(kind, result), priority))

    return normalize_recommendations(recommendations)


def recommend_from_check_ins(check_ins: Sequence[MoodCheckIn]) -> List[InterventionRecommendation]:
    """
    Rules over the latest check-in, evaluated independently:

      crisis flagged               → safety resources, ahead of everything
      mood ≤ 2 and intensity ≥ 7   → breathing
      mood ≤ 3 and intensity ≤ 6   → grounding
      nothing matched              → low-priority guided reflection

    `check_ins` is newest-first, as the check-in source delivers it.
    """
    if not check_ins:
        return normalize_recommendations([
            build_recommendation(
                InterventionType.MEDITATION,
                "Open the session with a mindful reset to ease into conversation.",
                Priority.MEDIUM,
            ),
            build_recommendation(
                InterventionType.GROUNDING,
                "Offer light grounding in case latent stress surfaces early.",
                Priority.MEDIUM,
            ),
        ])

    latest = check_ins[0]
    picks: List[InterventionRecommendation] = []

    if latest.mood <= LOW_MOOD_MAX and latest.intensity >= HIGH_INTENSITY_MIN:
        picks.append(build_recommendation(
            InterventionType.BREATHING,
            "Low mood with high intensity benefits from paced breathing.",
            Priority.HIGH,
        ))

    if latest.mood <= MILD_LOW_MOOD_MAX and latest.intensity <= MODERATE_INTENSITY_MAX:
        picks.append(build_recommendation(
            InterventionType.GROUNDING,
            "Grounding can ease lingering stress noted in recent check-ins.",
            Priority.MEDIUM,
        ))

    if not picks and not latest.crisis_detected:
        picks.append(build_recommendation(
            InterventionType.JOURNALING,
            "Maintain positive momentum with a brief gratitude reflection.",
            Priority.LOW,
        ))

    if latest.crisis_detected:
        logger.info(f"Check-in {latest.id} flagged crisis; surfacing safety resources")
        picks.insert(0, _safety_resources(
            "Last check-in flagged crisis indicators; surface support pathways."
        ))

    return normalize_recommendations(picks)
