"""
Haven — Configuration

Centralised settings from environment variables.
All tuneable constants live here — zero magic numbers in other files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# ---------------------------------------------------------------------------
# Ring-buffer bounds and signal thresholds
# ---------------------------------------------------------------------------

# Audio buffer telemetry retained in live state
AUDIO_BUFFER_LIMIT: int = 24
# Mood inference snapshots kept in the live timeline
MOOD_TIMELINE_LIMIT: int = 24
# Mood inference snapshots sent with a history write
PERSISTED_MOOD_TIMELINE_LIMIT: int = 24
# Most recent transcripts sent with a history write (safety-annotated overflow is kept too)
TRANSCRIPT_PERSIST_WINDOW: int = 50
# Recommendations snapshotted into a history record
PERSISTED_INTERVENTION_LIMIT: int = 5
# Absolute change in audio energy / background noise that counts as a new signal
SIGNAL_CHANGE_THRESHOLD: float = 0.18
# Quiet period before a debounced history write fires
PERSIST_DEBOUNCE_SECONDS: float = 4.0


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    )


# ---------------------------------------------------------------------------
# Backend collaborators (bootstrap, relay, history, mood cue function)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class GatewayConfig:
    """Where the app backend lives and how the core authenticates to it."""
    api_base_url: str = os.getenv("HAVEN_API_BASE_URL", "http://localhost:3000")
    auth_token: str = os.getenv("HAVEN_AUTH_TOKEN", "")
    http_timeout: float = float(os.getenv("HAVEN_HTTP_TIMEOUT", "15.0"))

    bootstrap_path: str = "/api/realtime/session"
    relay_path: str = "/api/realtime/events"
    history_path: str = "/api/realtime/history"

    # Optional remote lexical cue service used as a mood-inference fallback
    mood_function_endpoint: str = os.getenv("HAVEN_MOOD_FUNCTION_ENDPOINT", "")
    mood_function_api_key: str = os.getenv("HAVEN_MOOD_FUNCTION_API_KEY", "")

    @property
    def has_mood_function(self) -> bool:
        return bool(self.mood_function_endpoint and self.mood_function_api_key)

    def auth_headers(self) -> dict[str, str]:
        if not self.auth_token:
            return {}
        return {"Authorization": f"Bearer {self.auth_token}"}


@dataclass(frozen=True)
class RetryConfig:
    # Attempts per bootstrap / relay call, including the first one
    max_attempts: int = 3
    # Delay before the second attempt; doubles per attempt
    base_delay: float = 0.5
    # Ceiling on a single backoff delay
    max_delay: float = 2.0
    # Extra random delay as a fraction of the backoff
    jitter: float = 0.25


# ---------------------------------------------------------------------------
# Session tunables
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionConfig:
    default_transport: str = "webrtc"
    default_locale: str = "en-US"
    default_voice: str = "alloy"

    persist_debounce_seconds: float = PERSIST_DEBOUNCE_SECONDS
    signal_change_threshold: float = SIGNAL_CHANGE_THRESHOLD
    audio_buffer_limit: int = AUDIO_BUFFER_LIMIT
    mood_timeline_limit: int = MOOD_TIMELINE_LIMIT
    persisted_mood_timeline_limit: int = PERSISTED_MOOD_TIMELINE_LIMIT
    transcript_persist_window: int = TRANSCRIPT_PERSIST_WINDOW
    persisted_intervention_limit: int = PERSISTED_INTERVENTION_LIMIT

    # Ask the remote cue service for extra lexical cues during inference
    edge_mood_fallback: bool = _env_bool("HAVEN_EDGE_MOOD_FALLBACK", False)


# ---------------------------------------------------------------------------
# Local state cache
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CacheConfig:
    # Empty path disables the cache
    path: str = os.getenv("HAVEN_STATE_CACHE_PATH", "")
    transcript_limit: int = 20
    mood_timeline_limit: int = 10
    check_in_limit: int = 5


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
gateway_cfg = GatewayConfig()
retry_cfg = RetryConfig()
session_cfg = SessionConfig()
cache_cfg = CacheConfig()
