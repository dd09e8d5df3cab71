"""
Haven — Session History Gateway

CRUD over the durable session-history record, via the app backend.

Bodies are validated before they leave the process so malformed writes
fail fast with a field-specific ValidationFailure.  Ownership mismatches
(403) are reported exactly like missing records (404) so callers cannot
probe for other users' history ids.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

import httpx

from ..core.config import gateway_cfg
from ..core.errors import (
    HistoryNotFound,
    PersistenceFailure,
    UnauthorizedError,
    ValidationFailure,
)
from ..core.models import PersistResult, SessionHistoryRecord, SessionHistorySummary
from ..processing.transcripts import map_history_document, map_history_summary
from .api_client import ApiClient, error_detail

logger = logging.getLogger("haven.persistence")

DEFAULT_LIST_LIMIT = 10


def validate_history_payload(payload: Mapping[str, Any]) -> None:
    session_id = payload.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        raise ValidationFailure("sessionId is required", field="sessionId")
    if not isinstance(payload.get("transcripts"), list):
        raise ValidationFailure("transcripts must be an array", field="transcripts")
    duration = payload.get("durationMs")
    if duration is not None and (isinstance(duration, bool) or not isinstance(duration, (int, float))):
        raise ValidationFailure("durationMs must be a number", field="durationMs")


class HistoryGateway(ApiClient):
    """HTTP implementation of HistoryGatewayProtocol."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(base_url=base_url, headers=headers, transport=transport)
        self.path = gateway_cfg.history_path

    async def _call(
        self,
        method: str,
        path: str,
        history_id: Optional[str] = None,
        **kwargs: Any,
    ) -> Any:
        try:
            response = await self.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise PersistenceFailure(f"History {method} failed: {e}") from e

        if response.is_success:
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as e:
                raise PersistenceFailure(
                    f"History {method} returned a non-JSON body", status=response.status_code
                ) from e

        detail = error_detail(response)
        status = response.status_code
        if status == 401:
            raise UnauthorizedError()
        if status == 400:
            raise ValidationFailure(str(detail["error"]), field=detail.get("field"))
        if status in (403, 404) and history_id:
            raise HistoryNotFound(history_id)
        raise PersistenceFailure(f"History {method} returned {status}: {detail['error']}", status=status)

    @staticmethod
    def _persist_result(data: Any, fallback_id: Optional[str] = None) -> PersistResult:
        history_id = data.get("historyId") if isinstance(data, Mapping) else None
        history_id = history_id or fallback_id
        if not history_id:
            raise PersistenceFailure("History write response missing historyId")
        return PersistResult(history_id=str(history_id), stored_at=data.get("storedAt"))

    # ── writes ──

    async def create(self, payload: Mapping[str, Any]) -> PersistResult:
        validate_history_payload(payload)
        data = await self._call("POST", self.path, json=dict(payload))
        result = self._persist_result(data)
        logger.info(f"[{payload['sessionId']}] Created history {result.history_id}")
        return result

    async def update(self, history_id: str, payload: Mapping[str, Any]) -> PersistResult:
        validate_history_payload(payload)
        data = await self._call("PATCH", f"{self.path}/{history_id}", history_id, json=dict(payload))
        return self._persist_result(data, fallback_id=history_id)

    # ── reads ──

    async def fetch(self, history_id: str) -> SessionHistoryRecord:
        data = await self._call("GET", f"{self.path}/{history_id}", history_id)
        if not isinstance(data, Mapping):
            raise PersistenceFailure(f"History {history_id} returned a malformed document")
        document = data.get("history") if isinstance(data.get("history"), Mapping) else data
        record = map_history_document(document)
        record.history_id = record.history_id or history_id
        return record

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[SessionHistorySummary]:
        data = await self._call("GET", self.path, params={"limit": max(1, int(limit))})
        items = data.get("items") if isinstance(data, Mapping) else data
        return [map_history_summary(doc) for doc in items or [] if isinstance(doc, Mapping)]

    # ── deletes ──

    async def delete(self, history_id: str) -> List[str]:
        data = await self._call("DELETE", f"{self.path}/{history_id}", history_id)
        deleted = data.get("deleted") if isinstance(data, Mapping) else None
        return [str(i) for i in deleted] if isinstance(deleted, list) else [history_id]

    async def purge(self) -> List[str]:
        data = await self._call("DELETE", self.path)
        deleted = data.get("deleted") if isinstance(data, Mapping) else None
        ids = [str(i) for i in deleted] if isinstance(deleted, list) else []
        logger.info(f"Purged {len(ids)} history record(s)")
        return ids
