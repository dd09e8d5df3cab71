"""
Haven — Realtime Bootstrap / Relay Gateway

Two request/response calls against the app backend, which proxies the
external voice provider:

  • bootstrap — start a remote voice session, get its id, transport secret
                and initial context
  • relay     — forward one opaque event into that live session

Both retry transient failures (network errors, 5xx, 429) with capped
exponential backoff plus jitter.  401 and 400 fail fast.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

import httpx

from ..core.config import RetryConfig, gateway_cfg, retry_cfg, session_cfg
from ..core.errors import UnauthorizedError, UpstreamFailure, ValidationFailure
from ..core.models import BootstrapPayload, RelayResult
from .api_client import ApiClient, error_detail

logger = logging.getLogger("haven.gateway")

_TOO_MANY_REQUESTS = 429


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 2.0
    jitter: float = 0.25

    @classmethod
    def from_config(cls, cfg: RetryConfig = retry_cfg) -> "RetryPolicy":
        return cls(cfg.max_attempts, cfg.base_delay, cfg.max_delay, cfg.jitter)

    def backoff(self, attempt: int) -> float:
        """Delay after failed attempt `attempt` (1-based), before jitter."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def delay_for(self, attempt: int, rand: Callable[[], float] = random.random) -> float:
        backoff = self.backoff(attempt)
        return backoff + backoff * self.jitter * rand()


def _is_retryable(status: int) -> bool:
    return status >= 500 or status == _TOO_MANY_REQUESTS


class RealtimeGateway(ApiClient):
    """Bootstrap and relay calls with bounded retry."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        retry: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        super().__init__(base_url=base_url, headers=headers, transport=transport)
        self.retry = retry or RetryPolicy.from_config()
        self._sleep = sleep

    async def _post_with_retry(self, path: str, body: Dict[str, Any], label: str) -> Tuple[int, Any]:
        """POST until success or attempts run out. Returns (attempts, json body)."""
        last_status: Optional[int] = None
        last_error = "no response"
        attempt = 0

        while attempt < self.retry.max_attempts:
            attempt += 1
            try:
                response = await self.request("POST", path, json=body)
            except httpx.HTTPError as e:
                last_status, last_error = None, str(e) or type(e).__name__
                logger.warning(f"{label}: attempt {attempt} failed: {last_error}")
            else:
                if response.is_success:
                    try:
                        return attempt, response.json()
                    except ValueError as e:
                        raise UpstreamFailure(
                            f"{label} returned a non-JSON body",
                            attempts=attempt,
                            status=response.status_code,
                        ) from e

                detail = error_detail(response)
                if response.status_code == 401:
                    raise UnauthorizedError()
                if response.status_code == 400:
                    raise ValidationFailure(str(detail["error"]), field=detail.get("field"))

                last_status, last_error = response.status_code, str(detail["error"])
                logger.warning(f"{label}: attempt {attempt} returned {last_status}: {last_error}")
                if not _is_retryable(response.status_code):
                    break

            if attempt < self.retry.max_attempts:
                await self._sleep(self.retry.delay_for(attempt))

        raise UpstreamFailure(
            f"{label} failed after {attempt} attempt(s): {last_error}",
            attempts=attempt,
            status=last_status,
        )

    # ── bootstrap ──

    async def bootstrap(
        self,
        transport: Optional[str] = None,
        locale: Optional[str] = None,
        voice: Optional[str] = None,
    ) -> BootstrapPayload:
        body = {
            "transport": transport or session_cfg.default_transport,
            "locale": locale or session_cfg.default_locale,
            "voice": voice or session_cfg.default_voice,
        }
        attempts, data = await self._post_with_retry(gateway_cfg.bootstrap_path, body, "Bootstrap")
        if not isinstance(data, Mapping) or not data.get("sessionId"):
            raise UpstreamFailure("Bootstrap response missing sessionId", attempts=attempts)

        payload = BootstrapPayload.from_dict(data)
        logger.info(
            f"[{payload.session_id}] Bootstrapped {payload.transport.value} session "
            f"({payload.locale}/{payload.voice}, {len(payload.mood_context)} context items)"
        )
        return payload

    # ── relay ──

    async def relay(self, session_id: str, event: Any) -> RelayResult:
        if not session_id:
            raise ValidationFailure("sessionId is required", field="sessionId")
        body = {"sessionId": session_id, "event": event}
        attempts, data = await self._post_with_retry(gateway_cfg.relay_path, body, "Relay")
        if not isinstance(data, Mapping):
            raise UpstreamFailure("Relay returned a malformed response", attempts=attempts)

        result = RelayResult.from_dict(data)
        if not result.success:
            raise UpstreamFailure(
                f"Relay reported failure for {result.event_type or 'event'}",
                attempts=result.attempts or attempts,
                status=result.status,
            )
        logger.debug(f"[{session_id}] Relayed {result.event_type or 'event'} in {result.attempts or attempts} attempt(s)")
        return result
