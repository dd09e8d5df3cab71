"""
Haven — Backend HTTP Client

Thin httpx wrapper shared by every gateway: base URL, auth headers,
timeout, and a helper to pull an error message out of a failed response.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from ..core.config import gateway_cfg

logger = logging.getLogger("haven.gateway")


def error_detail(response: httpx.Response) -> Dict[str, Any]:
    """Best-effort `{error, field, code}` from a JSON error body."""
    try:
        data = response.json()
    except ValueError:
        return {"error": response.text[:200] or response.reason_phrase}
    if not isinstance(data, Mapping):
        return {"error": str(data)[:200]}
    return {
        "error": data.get("error") or data.get("message") or response.reason_phrase,
        "field": data.get("field"),
        "code": data.get("code"),
    }


class ApiClient:
    """One `httpx.AsyncClient` bound to the app backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        merged = {"content-type": "application/json", **gateway_cfg.auth_headers()}
        merged.update(headers or {})
        self.base_url = (base_url or gateway_cfg.api_base_url).rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=merged,
            timeout=httpx.Timeout(timeout or gateway_cfg.http_timeout),
            transport=transport,
        )

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> httpx.Response:
        return await self._client.request(method, path, json=json, params=params)

    async def aclose(self) -> None:
        await self._client.aclose()
