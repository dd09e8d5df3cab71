"""
Haven — Remote Mood Cue Service

Optional lexical fallback: a hosted function that returns extra weighted
cues for an utterance.  It only ever adds signal, so every failure mode
(unconfigured, network error, non-2xx, malformed body) yields no cues.
"""

from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional

import httpx

from ..core.config import gateway_cfg
from ..core.models import MoodCue

logger = logging.getLogger("haven.mood")


class EdgeCueService:
    """HTTP implementation of CueServiceProtocol."""

    def __init__(
        self,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint = endpoint if endpoint is not None else gateway_cfg.mood_function_endpoint
        self.api_key = api_key if api_key is not None else gateway_cfg.mood_function_api_key
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or gateway_cfg.http_timeout),
            transport=transport,
        )

    @property
    def configured(self) -> bool:
        return bool(self.endpoint and self.api_key)

    async def extract_cues(self, text: str, context: Mapping[str, Any]) -> List[MoodCue]:
        if not self.configured:
            return []
        try:
            response = await self._client.post(
                self.endpoint,
                headers={"Content-Type": "application/json", "X-Appwrite-Key": self.api_key},
                json={**context, "text": text},
            )
        except httpx.HTTPError as e:
            logger.warning(f"Edge mood inference failed: {e}")
            return []

        if not response.is_success:
            logger.warning(f"Edge mood inference returned {response.status_code}")
            return []
        try:
            payload = response.json()
        except ValueError:
            logger.warning("Edge mood inference returned a non-JSON body")
            return []

        raw = payload.get("cues") if isinstance(payload, Mapping) else None
        cues = [MoodCue.from_dict(c) for c in raw or [] if isinstance(c, Mapping)]
        return [c for c in cues if c is not None]

    async def aclose(self) -> None:
        await self._client.aclose()
