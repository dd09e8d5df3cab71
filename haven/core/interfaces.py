"""
Haven — Collaborator Interfaces

Protocol definitions for everything the session store talks to:
  1. Realtime  — bootstrap a voice session, relay events into it
  2. History   — durable session-history records
  3. Signals   — optional remote lexical cue service
  4. Cache     — client-side convenience cache of state

The store only sees these protocols, never a concrete HTTP client, so
tests can hand it in-memory fakes.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, runtime_checkable

from .models import (
    BootstrapPayload,
    MoodCue,
    PersistResult,
    RelayResult,
    SessionHistoryRecord,
    SessionHistorySummary,
)


# ═══════════════════════════════════════════════════════════════════════════
# Realtime Layer — bootstrap + relay
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class BootstrapGatewayProtocol(Protocol):
    """Starts a remote voice session."""

    async def bootstrap(
        self,
        transport: Optional[str] = None,
        locale: Optional[str] = None,
        voice: Optional[str] = None,
    ) -> BootstrapPayload:
        """Obtain session id, transport secret and initial context."""
        ...


@runtime_checkable
class RelayGatewayProtocol(Protocol):
    """Forwards one event into a live remote session."""

    async def relay(self, session_id: str, event: Any) -> RelayResult:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# History Layer — durable records
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class HistoryGatewayProtocol(Protocol):

    async def create(self, payload: Mapping[str, Any]) -> PersistResult:
        """Create a record; the store assigns the history id."""
        ...

    async def update(self, history_id: str, payload: Mapping[str, Any]) -> PersistResult:
        """Overwrite an existing record (last writer wins)."""
        ...

    async def fetch(self, history_id: str) -> SessionHistoryRecord:
        ...

    async def list_recent(self, limit: int = 10) -> List[SessionHistorySummary]:
        ...

    async def delete(self, history_id: str) -> List[str]:
        ...

    async def purge(self) -> List[str]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Signal Layer — optional remote cue extraction
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class CueServiceProtocol(Protocol):

    async def extract_cues(self, text: str, context: Mapping[str, Any]) -> List[MoodCue]:
        """Return extra cues for `text`. Must not raise on network failure."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Cache Layer — client-side convenience cache
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class StateCacheProtocol(Protocol):

    def load(self) -> Optional[Dict[str, Any]]:
        ...

    def save(self, snapshot: Mapping[str, Any]) -> None:
        ...

    def clear(self) -> None:
        ...
