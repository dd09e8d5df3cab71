"""
Haven — Realtime Session Store

================================================================================
THE ORCHESTRATOR — SINGLE SOURCE OF TRUTH FOR ONE COMPANION CONVERSATION
================================================================================

`RealtimeSessionStore` holds an immutable `RealtimeSessionState` and replaces
it on every operation.  Each operation applies its patch synchronously and
returns the new state; network work runs in tasks spawned on the injected
Scheduler and patches state again when it resolves.

  1. start_session — bootstrap a remote voice session (at most one in flight),
     reset per-session state, resume a prior history record if one is known.
  2. Live signal   — transcripts, audio energy / noise jumps, guardrails,
     recommendations and check-ins each spawn a mood inference and arm the
     debounced history write.  Whichever inference resolves last wins.
  3. end_session   — best-effort relay ping, immediate finalize write, then a
     full reset regardless of how the write went.
  4. relay_event   — forward one event, flagging the agent as responding.

Listeners registered with `subscribe` see every new state; an optional
local cache receives a bounded subset after every change.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from ..core.config import SessionConfig, session_cfg
from ..core.errors import HistoryNotFound, NoActiveSession
from ..core.interfaces import (
    BootstrapGatewayProtocol,
    CueServiceProtocol,
    HistoryGatewayProtocol,
    RelayGatewayProtocol,
    StateCacheProtocol,
)
from ..core.models import (
    AudioBufferMeta,
    GuardrailFlags,
    InterventionRecommendation,
    InterventionType,
    MicrophoneState,
    MoodCheckIn,
    MoodInferenceResult,
    PersistResult,
    RelayResult,
    SessionHistoryRecord,
    ToolCallMeta,
    TranscriptItem,
    TransportType,
    new_id,
)
from ..core.scheduler import AsyncioScheduler, Scheduler
from ..core.state_machine import ConnectionState, ConnectionStateMachine
from ..processing.mood_inference import (
    MoodInferenceRequest,
    evaluate_against_history,
    infer_mood,
    score_effectiveness,
)
from ..processing.recommender import (
    CompletedIntervention,
    RecommendationContext,
    normalize_recommendations,
    recommend_from_check_ins,
    recommend_interventions,
)
from ..processing.transcripts import (
    compute_duration_ms,
    normalize_transcripts,
    prune_for_persistence,
)
from .persistence import ERROR, IDLE, SAVED, HistoryPersister

logger = logging.getLogger("haven.session")

# Completed interventions remembered for priority adjustment
COMPLETED_INTERVENTION_LIMIT = 10

Listener = Callable[["RealtimeSessionState"], Any]


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RealtimeSessionState:
    """Everything the UI renders from.  Replaced, never mutated."""
    session_id: Optional[str] = None
    client_secret: Optional[str] = None
    transport: TransportType = TransportType.WEBRTC
    connection_state: ConnectionState = ConnectionState.DISCONNECTED
    locale: str = session_cfg.default_locale
    voice: str = session_cfg.default_voice
    is_initializing: bool = False
    microphone_state: MicrophoneState = MicrophoneState.MUTED

    # ── live signal ──
    audio_energy: float = 0.0
    background_noise_level: float = 0.0
    transcripts: Tuple[TranscriptItem, ...] = ()
    audio_buffers: Tuple[AudioBufferMeta, ...] = ()
    tool_calls: Tuple[ToolCallMeta, ...] = ()
    guardrails: GuardrailFlags = field(default_factory=GuardrailFlags)

    # ── derived ──
    recommended_interventions: Tuple[InterventionRecommendation, ...] = ()
    mood_timeline: Tuple[MoodInferenceResult, ...] = ()
    mood_trend: str = "stable"
    mood_delta: int = 0
    recent_check_ins: Tuple[MoodCheckIn, ...] = ()
    completed_interventions: Tuple[CompletedIntervention, ...] = ()

    # ── persistence ──
    session_started_at: Optional[str] = None
    history_id: Optional[str] = None
    last_persisted_at: Optional[str] = None
    persistence_status: str = IDLE
    persistence_error: Optional[str] = None
    auto_persist_enabled: bool = True
    last_error: Optional[str] = None

    # ── UI toggles ──
    captions_enabled: bool = True
    is_agent_typing: bool = False
    interruption_requested: bool = False

    @property
    def active(self) -> bool:
        return self.session_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "clientSecret": self.client_secret,
            "transport": self.transport.value,
            "connectionState": self.connection_state.value,
            "locale": self.locale,
            "voice": self.voice,
            "isInitializing": self.is_initializing,
            "microphoneState": self.microphone_state.value,
            "audioEnergy": self.audio_energy,
            "backgroundNoiseLevel": self.background_noise_level,
            "transcripts": [t.to_dict() for t in self.transcripts],
            "audioBuffers": [b.to_dict() for b in self.audio_buffers],
            "toolCalls": [c.to_dict() for c in self.tool_calls],
            "guardrails": self.guardrails.to_dict(),
            "recommendedInterventions": [r.to_dict() for r in self.recommended_interventions],
            "moodTimeline": [m.to_dict() for m in self.mood_timeline],
            "moodTrend": self.mood_trend,
            "moodDelta": self.mood_delta,
            "recentCheckIns": [c.to_dict() for c in self.recent_check_ins],
            "sessionStartedAt": self.session_started_at,
            "historyId": self.history_id,
            "lastPersistedAt": self.last_persisted_at,
            "persistenceStatus": self.persistence_status,
            "persistenceError": self.persistence_error,
            "autoPersistEnabled": self.auto_persist_enabled,
            "lastError": self.last_error,
            "captionsEnabled": self.captions_enabled,
            "isAgentTyping": self.is_agent_typing,
            "interruptionRequested": self.interruption_requested,
        }


def _session_defaults(**overrides: Any) -> Dict[str, Any]:
    """Per-session fields at their reset values, with `overrides` applied.
    Preferences, check-ins and history pointers survive a reset."""
    defaults = dict(
        session_id=None,
        client_secret=None,
        is_initializing=False,
        microphone_state=MicrophoneState.MUTED,
        audio_energy=0.0,
        background_noise_level=0.0,
        transcripts=(),
        audio_buffers=(),
        tool_calls=(),
        guardrails=GuardrailFlags(),
        recommended_interventions=(),
        mood_timeline=(),
        mood_trend="stable",
        mood_delta=0,
        session_started_at=None,
        persistence_status=IDLE,
        persistence_error=None,
        auto_persist_enabled=True,
        last_error=None,
        captions_enabled=True,
        is_agent_typing=False,
        interruption_requested=False,
    )
    defaults.update(overrides)
    return defaults


def _dedupe_transcripts(items: Iterable[TranscriptItem]) -> Tuple[TranscriptItem, ...]:
    seen: Set[str] = set()
    unique = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        unique.append(item)
    return tuple(unique)


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


# ═══════════════════════════════════════════════════════════════════════════
# Store
# ═══════════════════════════════════════════════════════════════════════════

class RealtimeSessionStore:
    """
    Injectable orchestrator for one companion conversation.

    Lifecycle:
        store = RealtimeSessionStore(bootstrap=gw, relay=gw, history=history_gw)
        await store.start_session(locale="en-US")
        store.push_transcript(TranscriptItem(speaker="user", content="..."))
        await store.relay_event({"type": "response.create"})
        await store.end_session()
        await store.aclose()
    """

    def __init__(
        self,
        bootstrap: BootstrapGatewayProtocol,
        relay: RelayGatewayProtocol,
        history: HistoryGatewayProtocol,
        scheduler: Optional[Scheduler] = None,
        cue_service: Optional[CueServiceProtocol] = None,
        cache: Optional[StateCacheProtocol] = None,
        config: SessionConfig = session_cfg,
    ) -> None:
        self.bootstrap_gateway = bootstrap
        self.relay_gateway = relay
        self.scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.cue_service = cue_service
        self.cache = cache
        self.config = config

        self._state = RealtimeSessionState(
            transport=TransportType.coerce(config.default_transport),
            locale=config.default_locale,
            voice=config.default_voice,
        )
        self._listeners: List[Listener] = []
        self._tasks: Set[asyncio.Task] = set()

        # Levels at the last audio-driven trigger
        self._energy_baseline = 0.0
        self._noise_baseline = 0.0

        self.connection = ConnectionStateMachine(on_transition=self._on_connection_change)
        self.persister = HistoryPersister(
            gateway=history,
            scheduler=self.scheduler,
            build_payload=self.persistence_payload,
            on_status=self._on_persistence_status,
            debounce_seconds=config.persist_debounce_seconds,
        )

        if cache is not None:
            self._restore(cache.load())

    # ── state plumbing ──

    @property
    def state(self) -> RealtimeSessionState:
        return self._state

    @property
    def label(self) -> str:
        return self._state.session_id or "-"

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for every new state. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> RealtimeSessionState:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"[{self.label}] State listener error: {e}")
        if self.cache is not None:
            self.cache.save(self._state.to_dict())
        return self._state

    def _spawn(self, coro: Any, name: str) -> None:
        task = self.scheduler.spawn(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_connection_change(self, prev: ConnectionState, new: ConnectionState, reason: str) -> None:
        self._set(connection_state=new)

    def _restore(self, cached: Optional[Mapping[str, Any]]) -> None:
        """
        Bring back preferences, the last view and the history pointer.  The
        cached session id is not reactivated; nothing is written until
        start_session bootstraps afresh and hydrates the full record.
        """
        if not cached:
            return
        timeline = []
        for entry in cached.get("moodTimeline") or []:
            if isinstance(entry, Mapping):
                try:
                    timeline.append(MoodInferenceResult.from_dict(entry))
                except (TypeError, ValueError):
                    continue
        recommendations = (
            InterventionRecommendation.from_dict(r)
            for r in cached.get("recommendedInterventions") or [] if isinstance(r, Mapping)
        )
        check_ins = []
        for entry in cached.get("recentCheckIns") or []:
            if isinstance(entry, Mapping):
                try:
                    check_ins.append(MoodCheckIn.from_dict(entry))
                except (TypeError, ValueError):
                    continue

        history_id = cached.get("historyId")
        self._state = replace(
            self._state,
            transport=TransportType.coerce(cached.get("transport")),
            locale=cached.get("locale") or self._state.locale,
            voice=cached.get("voice") or self._state.voice,
            captions_enabled=bool(cached.get("captionsEnabled", True)),
            transcripts=tuple(normalize_transcripts(cached.get("transcripts"))),
            mood_timeline=tuple(timeline),
            recent_check_ins=tuple(check_ins),
            guardrails=GuardrailFlags.from_dict(cached.get("guardrails")),
            recommended_interventions=tuple(r for r in recommendations if r is not None),
            history_id=history_id,
            last_persisted_at=cached.get("lastPersistedAt"),
        )
        self.persister.history_id = history_id
        logger.info(
            f"[{cached.get('sessionId') or '-'}] Restored cached state "
            f"({len(self._state.transcripts)} transcripts, resume={history_id or '-'})"
        )

    # ═══════════════════════════════════════════════════════════════════
    # Lifecycle
    # ═══════════════════════════════════════════════════════════════════

    async def start_session(
        self,
        transport: Optional[str] = None,
        locale: Optional[str] = None,
        voice: Optional[str] = None,
    ) -> RealtimeSessionState:
        """Bootstrap a remote session.  A call while one is in flight is a no-op."""
        if self._state.is_initializing:
            logger.info(f"[{self.label}] start_session ignored: bootstrap already in flight")
            return self._state

        self._set(is_initializing=True, last_error=None)
        if self.connection.state == ConnectionState.DISCONNECTED:
            self.connection.transition(ConnectionState.CONNECTING, "bootstrap")
        else:
            self.connection.reflect(ConnectionState.CONNECTING, "restart")

        try:
            payload = await self.bootstrap_gateway.bootstrap(
                transport=transport or self._state.transport.value,
                locale=locale or self._state.locale,
                voice=voice or self._state.voice,
            )
        except Exception as e:
            message = str(e) or "Failed to start realtime session"
            logger.error(f"[{self.label}] Bootstrap failed: {message}")
            self.connection.reset()
            self._set(is_initializing=False, last_error=message)
            raise

        prior_history = self._state.history_id
        check_ins = payload.check_ins or self._state.recent_check_ins
        recommendations = normalize_recommendations(payload.recommended_interventions)
        if not recommendations:
            recommendations = recommend_from_check_ins(check_ins)

        self.persister.reset(history_id=prior_history)
        self.persister.session_label = payload.session_id
        self.connection.session_label = payload.session_id
        self._energy_baseline = self._noise_baseline = 0.0

        self._set(**_session_defaults(
            session_id=payload.session_id,
            client_secret=payload.client_secret,
            transport=payload.transport,
            locale=payload.locale,
            voice=payload.voice,
            transcripts=_dedupe_transcripts(payload.mood_context),
            guardrails=payload.guardrails,
            recommended_interventions=tuple(recommendations),
            recent_check_ins=tuple(check_ins),
            session_started_at=self.scheduler.now().isoformat(),
            history_id=prior_history,
        ))
        self.connection.reflect(ConnectionState.coerce(payload.connection_state), "bootstrap")
        logger.info(
            f"[{self.label}] Session started ({payload.transport.value}, "
            f"{len(payload.mood_context)} context items, resume={prior_history or '-'})"
        )

        if prior_history:
            self.persister.hold_writes()
            self._spawn(self._hydrate(prior_history, payload.session_id), name=f"hydrate-{payload.session_id}")
        self._signal_changed("session_start")
        return self._state

    async def _hydrate(self, history_id: str, session_id: str) -> None:
        def apply(record: SessionHistoryRecord, merged: List[TranscriptItem]) -> None:
            if self._state.session_id != session_id:
                return
            guardrails = self._state.guardrails
            if record.guardrails is not None:
                guardrails = guardrails.merge(record.guardrails)
            self._set(transcripts=tuple(merged), guardrails=guardrails)
            logger.info(f"[{session_id}] Hydrated history {history_id} ({len(merged)} transcripts)")

        try:
            await self.persister.hydrate(history_id, lambda: self._state.transcripts, apply)
        except Exception as e:
            logger.warning(f"[{session_id}] History hydration failed for {history_id}: {e}")
            if isinstance(e, HistoryNotFound) and self._state.history_id == history_id:
                self._set(history_id=None)

    async def end_session(self) -> RealtimeSessionState:
        """Finalize and tear down.  Never raises; a failed final write lands in last_error."""
        state = self._state
        if not state.session_id:
            return state
        session_id = state.session_id

        try:
            await self.relay_gateway.relay(session_id, {"type": "session.end"})
        except Exception as e:
            logger.warning(f"[{session_id}] Session end relay failed: {e}")

        finalize_error: Optional[str] = None
        self._set(auto_persist_enabled=False)
        try:
            await self.persister.persist_now(finalize=True)
        except Exception as e:
            finalize_error = str(e) or "Failed to finalize session history"
            logger.error(f"[{session_id}] Final history write failed: {finalize_error}")
        self.persister.cancel()

        self.connection.reset()
        after = self._state
        self._set(**_session_defaults(
            history_id=self.persister.history_id or after.history_id,
            persistence_status=after.persistence_status,
            persistence_error=after.persistence_error,
            auto_persist_enabled=False,
            last_error=finalize_error,
        ))
        logger.info(f"[{session_id}] Session ended (history={self._state.history_id or '-'})")
        return self._state

    def clear_session(self) -> RealtimeSessionState:
        """Drop everything, history pointers included.  No network calls."""
        self.persister.reset()
        self.connection.reset()
        state = self._set(**_session_defaults(history_id=None, last_persisted_at=None))
        if self.cache is not None:
            self.cache.clear()
        return state

    async def aclose(self) -> None:
        self.persister.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ═══════════════════════════════════════════════════════════════════
    # Relay & persistence
    # ═══════════════════════════════════════════════════════════════════

    async def relay_event(self, event: Any) -> RelayResult:
        session_id = self._state.session_id
        if not session_id:
            raise NoActiveSession()

        self._set(is_agent_typing=True)
        try:
            result = await self.relay_gateway.relay(session_id, event)
        except Exception as e:
            self._set(is_agent_typing=False, last_error=str(e) or "Relay failed")
            raise
        self._set(is_agent_typing=False)
        return result

    async def persist_history(self, finalize: bool = False) -> Optional[PersistResult]:
        """Explicit write, bypassing the debounce.  Errors propagate."""
        if not self._state.session_id:
            raise NoActiveSession()
        if finalize:
            self._set(auto_persist_enabled=False)
        return await self.persister.persist_now(finalize=finalize)

    def persistence_payload(self, finalize: bool = False) -> Optional[Dict[str, Any]]:
        """History write body for the current state; None without a session."""
        s = self._state
        if not s.session_id:
            return None

        payload: Dict[str, Any] = {
            "sessionId": s.session_id,
            "transcripts": [
                t.to_dict() for t in prune_for_persistence(s.transcripts, self.config.transcript_persist_window)
            ],
            "recommendedInterventions": [
                r.to_dict() for r in s.recommended_interventions[:self.config.persisted_intervention_limit]
            ],
            "guardrails": s.guardrails.to_dict(),
            "moodInferenceTimeline": [
                m.to_dict() for m in s.mood_timeline[-self.config.persisted_mood_timeline_limit:]
            ],
            "startedAt": s.session_started_at,
            "transport": s.transport.value,
            "locale": s.locale,
            "voice": s.voice,
            "metadata": {
                "moodTrend": s.mood_trend,
                "moodDelta": s.mood_delta,
                "totalTranscriptCount": len(s.transcripts),
                "captionsEnabled": s.captions_enabled,
            },
        }
        if finalize:
            ended_at = self.scheduler.now().isoformat()
            payload["endedAt"] = ended_at
            payload["durationMs"] = compute_duration_ms(s.session_started_at, ended_at)
        return payload

    def _on_persistence_status(
        self,
        status: str,
        error: Optional[str],
        result: Optional[PersistResult],
    ) -> None:
        changes: Dict[str, Any] = {"persistence_status": status}
        if status == ERROR:
            changes["persistence_error"] = error
        elif status == SAVED and result is not None:
            changes.update(
                persistence_error=None,
                history_id=result.history_id,
                last_persisted_at=result.stored_at or self.scheduler.now().isoformat(),
            )
        self._set(**changes)

    # ═══════════════════════════════════════════════════════════════════
    # Signal mutations (inference + debounced persist)
    # ═══════════════════════════════════════════════════════════════════

    def _signal_changed(self, reason: str) -> None:
        s = self._state
        request = MoodInferenceRequest(
            transcripts=s.transcripts,
            audio_energy=s.audio_energy,
            background_noise_level=s.background_noise_level,
            recent_check_ins=s.recent_check_ins,
            guardrails=s.guardrails,
            fallback_to_edge_model=self.config.edge_mood_fallback and self.cue_service is not None,
        )
        self._spawn(self._run_inference(request, s.session_id, reason), name=f"infer-{reason}")
        if s.session_id and s.auto_persist_enabled:
            self.persister.schedule()

    async def _run_inference(self, request: MoodInferenceRequest, session_id: Optional[str], reason: str) -> None:
        try:
            result = await infer_mood(request, self.cue_service)
        except Exception as e:
            logger.error(f"[{session_id or '-'}] Mood inference failed ({reason}): {e}", exc_info=True)
            return
        if result is None:
            return
        if self._state.session_id != session_id:
            logger.debug(f"[{session_id or '-'}] Dropping inference for a finished session")
            return
        self._apply_inference(result)

    def _apply_inference(self, result: MoodInferenceResult) -> None:
        s = self._state
        trend = evaluate_against_history(result, s.mood_timeline)
        timeline = (s.mood_timeline + (result,))[-self.config.mood_timeline_limit:]
        recommendations = recommend_interventions(
            result,
            RecommendationContext(check_ins=s.recent_check_ins, recently_completed=s.completed_interventions),
        )

        changes: Dict[str, Any] = dict(mood_timeline=timeline, mood_trend=trend.trend, mood_delta=trend.delta)
        if recommendations:
            changes["recommended_interventions"] = tuple(recommendations)
        self._set(**changes)

        if result.crisis_likely:
            logger.warning(f"[{self.label}] Crisis cues detected; recommended action {result.recommended_action}")
        else:
            logger.debug(
                f"[{self.label}] Mood {result.sentiment}/{result.arousal} "
                f"(conf {result.confidence:.2f}, trend {trend.trend})"
            )

    def push_transcript(self, item: TranscriptItem | Mapping[str, Any]) -> RealtimeSessionState:
        if not isinstance(item, TranscriptItem):
            item = TranscriptItem.from_dict(item)
        if any(t.id == item.id for t in self._state.transcripts):
            logger.debug(f"[{self.label}] Ignoring duplicate transcript {item.id}")
            return self._state
        self._set(transcripts=self._state.transcripts + (item,))
        self._signal_changed("transcript")
        return self._state

    def replace_transcripts(self, items: Iterable[TranscriptItem]) -> RealtimeSessionState:
        self._set(transcripts=_dedupe_transcripts(items))
        self._signal_changed("transcripts_replaced")
        return self._state

    def set_audio_energy(self, energy: float) -> RealtimeSessionState:
        energy = _clamp_unit(energy)
        self._set(audio_energy=energy)
        if abs(energy - self._energy_baseline) > self.config.signal_change_threshold:
            self._energy_baseline = energy
            self._signal_changed("audio_energy")
        return self._state

    def set_background_noise_level(self, level: float) -> RealtimeSessionState:
        level = _clamp_unit(level)
        self._set(background_noise_level=level)
        if abs(level - self._noise_baseline) > self.config.signal_change_threshold:
            self._noise_baseline = level
            self._signal_changed("background_noise")
        return self._state

    def update_guardrails(self, flags: GuardrailFlags | Mapping[str, Any]) -> RealtimeSessionState:
        merged = self._state.guardrails.merge(flags)
        if merged.crisis_detected and not self._state.guardrails.crisis_detected:
            logger.warning(f"[{self.label}] Guardrail raised crisisDetected")
        self._set(guardrails=merged)
        self._signal_changed("guardrails")
        return self._state

    def set_recommended_interventions(self, items: Iterable[InterventionRecommendation]) -> RealtimeSessionState:
        self._set(recommended_interventions=tuple(normalize_recommendations(items)))
        self._signal_changed("recommendations")
        return self._state

    def set_recent_check_ins(self, check_ins: Iterable[MoodCheckIn]) -> RealtimeSessionState:
        """Replace the check-in cache (newest first).  Before any live inference
        exists, recommendations follow the check-ins directly."""
        check_ins = tuple(check_ins)
        changes: Dict[str, Any] = {"recent_check_ins": check_ins}
        if not self._state.mood_timeline:
            changes["recommended_interventions"] = tuple(recommend_from_check_ins(check_ins))
        self._set(**changes)
        self._signal_changed("check_ins")
        return self._state

    def complete_intervention(
        self,
        kind: InterventionType | str,
        rating: Optional[int] = None,
        calmness_delta: Optional[float] = None,
    ) -> float:
        """Record a finished exercise; returns its effectiveness score."""
        kind = InterventionType(kind)
        completed = CompletedIntervention(
            type=kind,
            completed_at=self.scheduler.now().isoformat(),
            rating=rating,
            calmness_delta=calmness_delta,
        )
        history = (completed,) + self._state.completed_interventions
        self._set(completed_interventions=history[:COMPLETED_INTERVENTION_LIMIT])
        score = score_effectiveness(rating, calmness_delta, self._state.mood_delta)
        logger.info(f"[{self.label}] Completed {kind.value} (effectiveness {score})")
        return score

    # ═══════════════════════════════════════════════════════════════════
    # Non-signal mutations
    # ═══════════════════════════════════════════════════════════════════

    def set_connection_state(self, state: ConnectionState | str) -> RealtimeSessionState:
        """Reflect a transport-reported connection state."""
        self.connection.reflect(ConnectionState.coerce(state), "transport")
        return self._state

    def set_transport(self, transport: TransportType | str) -> RealtimeSessionState:
        return self._set(transport=TransportType.coerce(transport))

    def set_microphone_state(self, state: MicrophoneState | str) -> RealtimeSessionState:
        return self._set(microphone_state=MicrophoneState(state))

    def append_audio_buffer(self, buffer: AudioBufferMeta | Mapping[str, Any]) -> RealtimeSessionState:
        if not isinstance(buffer, AudioBufferMeta):
            buffer = AudioBufferMeta(
                id=str(buffer.get("id") or new_id()),
                direction=buffer.get("direction", "incoming"),
                size=int(buffer.get("size", 0)),
                timestamp=buffer.get("timestamp") or self.scheduler.now().isoformat(),
            )
        buffers = (self._state.audio_buffers + (buffer,))[-self.config.audio_buffer_limit:]
        return self._set(audio_buffers=buffers)

    def clear_audio_buffers(self) -> RealtimeSessionState:
        return self._set(audio_buffers=())

    def register_tool_call(self, call_id: str, name: str, payload: Any = None) -> RealtimeSessionState:
        call = ToolCallMeta(
            id=call_id,
            name=name,
            created_at=self.scheduler.now().isoformat(),
            payload=payload,
        )
        calls = tuple(c for c in self._state.tool_calls if c.id != call_id) + (call,)
        return self._set(tool_calls=calls)

    def update_tool_call_status(self, call_id: str, status: str, payload: Any = None) -> RealtimeSessionState:
        if status not in ("pending", "approved", "rejected"):
            raise ValueError(f"Unknown tool call status: {status}")
        resolved_at = self.scheduler.now().isoformat() if status != "pending" else None
        calls = tuple(
            replace(
                c,
                status=status,
                resolved_at=resolved_at or c.resolved_at,
                payload=payload if payload is not None else c.payload,
            ) if c.id == call_id else c
            for c in self._state.tool_calls
        )
        return self._set(tool_calls=calls)

    def set_agent_typing(self, value: bool) -> RealtimeSessionState:
        return self._set(is_agent_typing=bool(value))

    def toggle_captions(self, enabled: Optional[bool] = None) -> RealtimeSessionState:
        value = (not self._state.captions_enabled) if enabled is None else bool(enabled)
        return self._set(captions_enabled=value)

    def request_interruption(self) -> RealtimeSessionState:
        return self._set(interruption_requested=True)

    def resolve_interruption(self) -> RealtimeSessionState:
        return self._set(interruption_requested=False)

    # ═══════════════════════════════════════════════════════════════════
    # Queries
    # ═══════════════════════════════════════════════════════════════════

    def current_mood_inference(self) -> Optional[MoodInferenceResult]:
        timeline = self._state.mood_timeline
        return timeline[-1] if timeline else None

    def top_recommended_intervention(self) -> Optional[InterventionRecommendation]:
        recommendations = self._state.recommended_interventions
        return recommendations[0] if recommendations else None

    def summary(self) -> Dict[str, Any]:
        s = self._state
        current = self.current_mood_inference()
        return {
            "sessionId": s.session_id,
            "connectionState": s.connection_state.value,
            "transcripts": len(s.transcripts),
            "moodTrend": s.mood_trend,
            "sentiment": current.sentiment if current else None,
            "crisisLikely": bool(current and current.crisis_likely) or s.guardrails.escalation_active,
            "historyId": s.history_id,
            "persistenceStatus": s.persistence_status,
        }
