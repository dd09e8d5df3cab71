"""
Haven — History Persistence Scheduling

Owns the write side of one session's history record:

  • id tracking  — the first write creates the record, every later write
                   updates that same id
  • debounce     — bursts of triggers collapse into one write, fired
                   PERSIST_DEBOUNCE_SECONDS after the last trigger, with the
                   payload built at fire time
  • single write — an asyncio.Lock keeps at most one write outstanding;
                   a timer that fires mid-write is deferred and re-armed
                   once the write settles
  • finalize     — immediate write that cancels the pending timer and
                   disables further auto-persist

Background writes log and record failures; explicit writes re-raise them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ..core.config import session_cfg
from ..core.errors import HistoryNotFound
from ..core.interfaces import HistoryGatewayProtocol
from ..core.models import PersistResult, SessionHistoryRecord, TranscriptItem
from ..core.scheduler import Scheduler, TimerHandle
from ..processing.transcripts import merge_transcripts

logger = logging.getLogger("haven.persistence")

# Persistence status values mirrored into session state
IDLE = "idle"
SCHEDULED = "scheduled"
SAVING = "saving"
SAVED = "saved"
ERROR = "error"

PayloadBuilder = Callable[[bool], Optional[Dict[str, Any]]]
StatusCallback = Callable[[str, Optional[str], Optional[PersistResult]], None]


class HistoryPersister:
    """Debounced, single-flight writer for one session-history record."""

    def __init__(
        self,
        gateway: HistoryGatewayProtocol,
        scheduler: Scheduler,
        build_payload: PayloadBuilder,
        on_status: Optional[StatusCallback] = None,
        debounce_seconds: float = session_cfg.persist_debounce_seconds,
        session_label: str = "",
    ) -> None:
        self.gateway = gateway
        self.scheduler = scheduler
        self.debounce_seconds = debounce_seconds
        self.session_label = session_label
        self._build_payload = build_payload
        self._on_status = on_status

        self.history_id: Optional[str] = None
        self.auto_persist_enabled = True
        self.write_count = 0

        self._timer: Optional[TimerHandle] = None
        self._lock = asyncio.Lock()
        self._deferred = False
        # Cleared while a resumed record is being merged into the local log
        self._hydrated = asyncio.Event()
        self._hydrated.set()

    # ── state ──

    @property
    def pending(self) -> bool:
        return self._timer is not None

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    def reset(self, history_id: Optional[str] = None) -> None:
        """Start tracking a new session, optionally resuming an existing record."""
        self.cancel()
        self.history_id = history_id
        self.auto_persist_enabled = True
        self._deferred = False
        self._hydrated.set()

    def hold_writes(self) -> None:
        """Make writes wait until the next `hydrate` settles."""
        self._hydrated.clear()

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _emit(self, status: str, error: Optional[str] = None, result: Optional[PersistResult] = None) -> None:
        if self._on_status is None:
            return
        try:
            self._on_status(status, error, result)
        except Exception as e:
            logger.error(f"[{self.session_label}] Persistence status callback error: {e}")

    # ── debounce ──

    def schedule(self) -> bool:
        """
        (Re)arm the debounce timer.  Returns False when auto-persist is off.
        A request that arrives mid-write is deferred until the write settles.
        """
        if not self.auto_persist_enabled:
            return False
        if self.in_flight:
            self._deferred = True
            return True

        self.cancel()
        self._timer = self.scheduler.call_later(self.debounce_seconds, self._on_timer)
        self._emit(SCHEDULED)
        return True

    def _on_timer(self) -> None:
        self._timer = None
        if not self.auto_persist_enabled:
            return
        if self.in_flight:
            self._deferred = True
            return
        self.scheduler.spawn(self._background_write(), name=f"persist-{self.session_label}")

    async def _background_write(self) -> None:
        try:
            await self._write(finalize=False)
        except Exception as e:
            # Recorded via the status callback; the next trigger retries
            logger.warning(f"[{self.session_label}] Background history write failed: {e}")

    # ── writes ──

    async def persist_now(self, finalize: bool = False) -> Optional[PersistResult]:
        """
        Write immediately, after any in-flight write.  Finalize also stops
        auto-persist.  Failures are recorded and re-raised.
        """
        self.cancel()
        if finalize:
            self.auto_persist_enabled = False
            self._deferred = False
        return await self._write(finalize=finalize)

    async def _write(self, finalize: bool) -> Optional[PersistResult]:
        await self._hydrated.wait()
        try:
            async with self._lock:
                payload = self._build_payload(finalize)
                if payload is None:
                    return None

                self._emit(SAVING)
                try:
                    if self.history_id:
                        result = await self.gateway.update(self.history_id, payload)
                    else:
                        result = await self.gateway.create(payload)
                except Exception as e:
                    self._emit(ERROR, str(e) or type(e).__name__)
                    raise

                self.write_count += 1
                self.history_id = result.history_id
                logger.info(
                    f"[{self.session_label}] History {result.history_id} saved "
                    f"({len(payload.get('transcripts') or [])} transcripts{', final' if finalize else ''})"
                )
                self._emit(SAVED, None, result)
                return result
        finally:
            if self._deferred and not self.in_flight:
                self._deferred = False
                self.schedule()

    # ── read side ──

    async def hydrate(
        self,
        history_id: str,
        local: Callable[[], Sequence[TranscriptItem]],
        apply: Optional[Callable[[SessionHistoryRecord, List[TranscriptItem]], Any]] = None,
    ) -> Tuple[SessionHistoryRecord, List[TranscriptItem]]:
        """
        Fetch a stored record and merge its transcripts into the local log
        as it stands when the record arrives.  A record that no longer
        exists stops being tracked.

        Writes held by `hold_writes` resume once `apply` has seen the merge,
        whether or not the fetch succeeded.
        """
        try:
            try:
                record = await self.gateway.fetch(history_id)
            except HistoryNotFound:
                if self.history_id == history_id:
                    self.history_id = None
                raise
            merged = merge_transcripts(local(), record.transcripts)
            if apply is not None:
                apply(record, merged)
            return record, merged
        finally:
            self._hydrated.set()
