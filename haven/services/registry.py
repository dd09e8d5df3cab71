"""
Haven — Store Registry

Maps connection_id → RealtimeSessionStore.  One store per WebSocket
connection; the HTTP gateways are shared by every store and closed with
the registry.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..core.config import gateway_cfg
from .cue_service import EdgeCueService
from .history_gateway import HistoryGateway
from .local_cache import cache_from_config
from .realtime_gateway import RealtimeGateway
from .session_store import RealtimeSessionStore

logger = logging.getLogger("haven.registry")

StoreFactory = Callable[[], RealtimeSessionStore]


class StoreRegistry:
    """Maps connection_id → RealtimeSessionStore."""

    def __init__(self, store_factory: Optional[StoreFactory] = None) -> None:
        self._stores: Dict[str, RealtimeSessionStore] = {}
        self._factory = store_factory or self._default_factory
        self._realtime: Optional[RealtimeGateway] = None
        self._history: Optional[HistoryGateway] = None
        self._cue_service: Optional[EdgeCueService] = None

    def _default_factory(self) -> RealtimeSessionStore:
        if self._realtime is None:
            self._realtime = RealtimeGateway()
            self._history = HistoryGateway()
            if gateway_cfg.has_mood_function:
                self._cue_service = EdgeCueService()
        return RealtimeSessionStore(
            bootstrap=self._realtime,
            relay=self._realtime,
            history=self._history,
            cue_service=self._cue_service,
            cache=cache_from_config(),
        )

    def create(self, connection_id: str) -> RealtimeSessionStore:
        store = self._factory()
        self._stores[connection_id] = store
        logger.info(f"StoreRegistry: created {connection_id} (total: {len(self._stores)})")
        return store

    async def stop(self, connection_id: str) -> Optional[Dict[str, Any]]:
        """End the store's session (finalizing history) and release it."""
        store = self._stores.pop(connection_id, None)
        if store is None:
            return None
        await store.end_session()
        await store.aclose()
        logger.info(f"StoreRegistry: removed {connection_id} (total: {len(self._stores)})")
        return store.summary()

    async def stop_all(self) -> None:
        for connection_id in list(self._stores.keys()):
            await self.stop(connection_id)
        for client in (self._realtime, self._history, self._cue_service):
            if client is not None:
                await client.aclose()
        self._realtime = self._history = self._cue_service = None

    def get(self, connection_id: str) -> Optional[RealtimeSessionStore]:
        return self._stores.get(connection_id)

    @property
    def active_count(self) -> int:
        return len(self._stores)

    @property
    def all_stores(self) -> Dict[str, RealtimeSessionStore]:
        return dict(self._stores)
