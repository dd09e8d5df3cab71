from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest

from haven.core.errors import HistoryNotFound
from haven.core.models import (
    BootstrapPayload,
    PersistResult,
    RelayResult,
    SessionHistorySummary,
    TranscriptItem,
)
from haven.core.scheduler import AsyncioScheduler, TimerHandle
from haven.processing.transcripts import map_history_document
from haven.services.session_store import RealtimeSessionStore

BASE_TIME = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


def make_transcript(
    content: str,
    speaker: str = "user",
    id: Optional[str] = None,
    offset: float = 0.0,
    annotations: Optional[List[str]] = None,
) -> TranscriptItem:
    return TranscriptItem(
        id=id or f"t-{content[:12].replace(' ', '-')}-{offset}",
        speaker=speaker,
        content=content,
        timestamp=(BASE_TIME + timedelta(seconds=offset)).isoformat(),
        annotations=tuple(annotations) if annotations is not None else None,
    )


# ---------------------------------------------------------------------------
# Virtual clock
# ---------------------------------------------------------------------------

class _ManualTimer:
    __slots__ = ("due", "callback", "cancelled", "seq")

    def __init__(self, due: float, callback: Callable[[], Any], seq: int) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False
        self.seq = seq

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(AsyncioScheduler):
    """
    Scheduler with a virtual clock.

    Background tasks still run on the real loop; delayed callbacks only
    fire when `advance()` moves the virtual clock past their due time.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        super().__init__()
        self._start = start or datetime(2024, 1, 1, tzinfo=timezone.utc)
        self._elapsed = 0.0
        self._timers: list[_ManualTimer] = []
        self._seq = 0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._elapsed)

    def call_later(self, delay: float, callback: Callable[[], Any]) -> TimerHandle:
        self._seq += 1
        timer = _ManualTimer(self._elapsed + max(0.0, delay), callback, self._seq)
        self._timers.append(timer)
        return timer

    @property
    def pending_timers(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    async def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers and settling spawned tasks."""
        target = self._elapsed + seconds
        while True:
            await self.drain()
            due = sorted(
                (t for t in self._timers if not t.cancelled and t.due <= target),
                key=lambda t: (t.due, t.seq),
            )
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self._elapsed = max(self._elapsed, timer.due)
            timer.callback()
        self._elapsed = target
        self._timers = [t for t in self._timers if not t.cancelled]
        await self.drain()


class FakeRealtimeGateway:
    """In-memory bootstrap + relay collaborator."""

    def __init__(self, bootstrap_body: Optional[Dict[str, Any]] = None) -> None:
        self.bootstrap_body = bootstrap_body or {}
        self.bootstrap_calls: List[Dict[str, Any]] = []
        self.relay_calls: List[Any] = []
        self.bootstrap_error: Optional[Exception] = None
        self.relay_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None

    async def bootstrap(self, transport=None, locale=None, voice=None) -> BootstrapPayload:
        self.bootstrap_calls.append({"transport": transport, "locale": locale, "voice": voice})
        if self.gate is not None:
            await self.gate.wait()
        if self.bootstrap_error is not None:
            raise self.bootstrap_error
        body = {
            "sessionId": f"sess-{len(self.bootstrap_calls)}",
            "clientSecret": "secret",
            "transport": transport or "webrtc",
            "locale": locale or "en-US",
            "voice": voice or "alloy",
            "connectionState": "connecting",
            **self.bootstrap_body,
        }
        return BootstrapPayload.from_dict(body)

    async def relay(self, session_id: str, event: Any) -> RelayResult:
        self.relay_calls.append((session_id, event))
        if self.relay_error is not None:
            raise self.relay_error
        event_type = event.get("type") if isinstance(event, dict) else None
        return RelayResult(success=True, attempts=1, status=200, event_type=event_type)


class FakeHistoryGateway:
    """In-memory history store recording every write."""

    def __init__(self) -> None:
        self.writes: List[Dict[str, Any]] = []
        self.documents: Dict[str, Dict[str, Any]] = {}
        self.error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.active = 0
        self.max_active = 0

    @property
    def creates(self) -> List[Dict[str, Any]]:
        return [w for w in self.writes if w["op"] == "create"]

    @property
    def updates(self) -> List[Dict[str, Any]]:
        return [w for w in self.writes if w["op"] == "update"]

    async def _store(self, op: str, history_id: str, payload: Dict[str, Any]) -> PersistResult:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            self.writes.append({"op": op, "id": history_id, "payload": payload})
            self.documents[history_id] = {"$id": history_id, **payload}
            return PersistResult(history_id=history_id, stored_at="2024-01-01T09:00:00+00:00")
        finally:
            self.active -= 1

    async def create(self, payload):
        return await self._store("create", f"hist-{len(self.creates) + 1}", dict(payload))

    async def update(self, history_id, payload):
        return await self._store("update", history_id, dict(payload))

    async def fetch(self, history_id):
        if history_id not in self.documents:
            raise HistoryNotFound(history_id)
        return map_history_document(self.documents[history_id])

    async def list_recent(self, limit=10):
        return [SessionHistorySummary(history_id=k) for k in list(self.documents)[:limit]]

    async def delete(self, history_id):
        self.documents.pop(history_id, None)
        return [history_id]

    async def purge(self):
        ids = list(self.documents)
        self.documents.clear()
        return ids


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def realtime() -> FakeRealtimeGateway:
    return FakeRealtimeGateway()


@pytest.fixture
def history() -> FakeHistoryGateway:
    return FakeHistoryGateway()


@pytest.fixture
def make_store(scheduler, realtime, history):
    def factory(**kwargs: Any) -> RealtimeSessionStore:
        kwargs.setdefault("scheduler", scheduler)
        return RealtimeSessionStore(bootstrap=realtime, relay=realtime, history=history, **kwargs)

    return factory
