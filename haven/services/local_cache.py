"""
Haven — Local State Cache

Keeps a bounded subset of session state on disk so a restarted client can
pick up where it left off.  Convenience only: the history store remains
the source of truth, and a missing or corrupt cache file reads as empty.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from ..core.config import CacheConfig, cache_cfg

logger = logging.getLogger("haven.cache")

CACHED_KEYS = (
    "sessionId",
    "transport",
    "locale",
    "voice",
    "captionsEnabled",
    "transcripts",
    "moodTimeline",
    "recentCheckIns",
    "guardrails",
    "recommendedInterventions",
    "historyId",
    "lastPersistedAt",
)


def partialize(snapshot: Mapping[str, Any], cfg: CacheConfig = cache_cfg) -> Dict[str, Any]:
    """
    Reduce a full state snapshot to what is worth caching: the newest
    transcripts and mood entries, the newest check-ins (already
    newest-first), and the history pointers.
    """
    subset = {key: snapshot.get(key) for key in CACHED_KEYS if key in snapshot}
    subset["transcripts"] = list(snapshot.get("transcripts") or [])[-cfg.transcript_limit:]
    subset["moodTimeline"] = list(snapshot.get("moodTimeline") or [])[-cfg.mood_timeline_limit:]
    subset["recentCheckIns"] = list(snapshot.get("recentCheckIns") or [])[:cfg.check_in_limit]
    return subset


class LocalStateCache:
    """JSON file implementation of StateCacheProtocol."""

    def __init__(self, path: str | os.PathLike[str], cfg: CacheConfig = cache_cfg) -> None:
        self.path = Path(path)
        self.cfg = cfg

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable state cache {self.path}: {e}")
            return None
        return data if isinstance(data, dict) else None

    def save(self, snapshot: Mapping[str, Any]) -> None:
        payload = partialize(snapshot, self.cfg)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a half-written cache
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp, self.path)
        except OSError as e:
            logger.warning(f"Failed to write state cache {self.path}: {e}")

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to clear state cache {self.path}: {e}")


def cache_from_config(cfg: CacheConfig = cache_cfg) -> Optional[LocalStateCache]:
    """The configured cache, or None when HAVEN_STATE_CACHE_PATH is unset."""
    return LocalStateCache(cfg.path, cfg) if cfg.path else None
