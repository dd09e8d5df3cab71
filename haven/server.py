"""
Haven — FastAPI Server

================================================================================
Architecture:
  • One RealtimeSessionStore per WebSocket connection, kept in StoreRegistry
  • The UI forwards transport events (transcripts, audio levels, connection
    changes) as JSON messages; the store runs mood inference, recommendations
    and debounced history writes on its own
  • Every new store state is pushed back as a `state` snapshot (coalesced:
    a slow client only ever receives the newest state)
================================================================================

Endpoints:
  WS  /ws/session           — companion session stream
  GET /health               — server health
  GET /sessions             — list active stores with a summary

Client → Server messages:
  { type: "start_session", transport?, locale?, voice? }
  { type: "end_session" }
  { type: "transcript", data: {id?, speaker, content, timestamp?, ...} }
  { type: "audio_energy", value: 0-1 }
  { type: "background_noise", value: 0-1 }
  { type: "guardrails", data: {crisisDetected?, ...} }
  { type: "check_ins", data: [{mood, intensity, timestamp, ...}] }
  { type: "connection_state", state: "connected" | ... }
  { type: "microphone", state: "muted" | "unmuted" | "held" }
  { type: "relay_event", event: {...} }
  { type: "persist", finalize?: bool }
  { type: "toggle_captions", enabled?: bool }
  { type: "interrupt", resolve?: bool }
  { type: "ping" }

Server → Client messages:
  { type: "state", data: {...} }             → full state snapshot
  { type: "session_started", data: {...} }   → ack
  { type: "session_ended", data: {...} }     → ack + summary
  { type: "relayed", data: {...} }           → relay ack
  { type: "persisted", data: {...} }         → explicit persist ack
  { type: "pong" }                           → keepalive ack
  { type: "error", kind: "...", message: "..." }
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from .core.config import gateway_cfg, server_cfg
from .core.errors import HavenError
from .core.models import MoodCheckIn
from .services.registry import StoreRegistry
from .services.session_store import RealtimeSessionState, RealtimeSessionStore

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("haven.server")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Store Registry
# ---------------------------------------------------------------------------

registry = StoreRegistry()

# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Haven companion core starting...")
    logger.info(f"   Backend: {gateway_cfg.api_base_url}")
    logger.info(f"   Mood cue function configured: {gateway_cfg.has_mood_function}")
    yield
    logger.info("Shutting down — finalizing all sessions...")
    await registry.stop_all()
    logger.info("Haven companion core stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Haven — Realtime Companion Core",
    version=VERSION,
    description=(
        "Session orchestrator for the realtime voice companion: mood inference, "
        "intervention recommendations and debounced session-history persistence."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "auth_configured": bool(gateway_cfg.auth_token),
        "active_sessions": registry.active_count,
    }


@app.get("/sessions")
async def list_sessions():
    return {cid: store.summary() for cid, store in registry.all_stores.items()}


# ---------------------------------------------------------------------------
# Message handling
# ---------------------------------------------------------------------------

def _error(e: Exception) -> Dict[str, Any]:
    return {"type": "error", "kind": type(e).__name__, "message": str(e)[:200]}


def apply_message(store: RealtimeSessionStore, message: Dict[str, Any]) -> Optional[Awaitable[Dict[str, Any]]]:
    """
    Apply one client message.  Synchronous mutations return None; network
    operations return an awaitable resolving to the ack to send.
    Raises ValueError / KeyError on malformed messages.
    """
    msg_type = message.get("type", "")

    if msg_type == "start_session":
        return _start(store, message)
    if msg_type == "end_session":
        return _end(store)
    if msg_type == "relay_event":
        return _relay(store, message.get("event"))
    if msg_type == "persist":
        return _persist(store, bool(message.get("finalize", False)))

    if msg_type == "transcript":
        store.push_transcript(message.get("data") or {})
    elif msg_type == "audio_energy":
        store.set_audio_energy(float(message["value"]))
    elif msg_type == "background_noise":
        store.set_background_noise_level(float(message["value"]))
    elif msg_type == "guardrails":
        store.update_guardrails(message.get("data") or {})
    elif msg_type == "check_ins":
        store.set_recent_check_ins(MoodCheckIn.from_dict(c) for c in message.get("data") or [])
    elif msg_type == "connection_state":
        store.set_connection_state(message["state"])
    elif msg_type == "microphone":
        store.set_microphone_state(message["state"])
    elif msg_type == "toggle_captions":
        store.toggle_captions(message.get("enabled"))
    elif msg_type == "interrupt":
        if message.get("resolve"):
            store.resolve_interruption()
        else:
            store.request_interruption()
    else:
        raise ValueError(f"Unknown message type: {msg_type or '<missing>'}")
    return None


async def _start(store: RealtimeSessionStore, message: Dict[str, Any]) -> Dict[str, Any]:
    state = await store.start_session(
        transport=message.get("transport"),
        locale=message.get("locale"),
        voice=message.get("voice"),
    )
    return {"type": "session_started", "data": {
        "sessionId": state.session_id,
        "transport": state.transport.value,
        "locale": state.locale,
        "voice": state.voice,
        "clientSecret": state.client_secret,
        "historyId": state.history_id,
    }}


async def _end(store: RealtimeSessionStore) -> Dict[str, Any]:
    state = await store.end_session()
    return {"type": "session_ended", "data": {
        "historyId": state.history_id,
        "lastError": state.last_error,
        "persistenceStatus": state.persistence_status,
    }}


async def _relay(store: RealtimeSessionStore, event: Any) -> Dict[str, Any]:
    result = await store.relay_event(event)
    return {"type": "relayed", "data": {
        "attempts": result.attempts,
        "eventType": result.event_type,
        "relayedAt": result.relayed_at,
    }}


async def _persist(store: RealtimeSessionStore, finalize: bool) -> Dict[str, Any]:
    result = await store.persist_history(finalize=finalize)
    return {"type": "persisted", "data": {
        "historyId": result.history_id if result else None,
        "storedAt": result.stored_at if result else None,
    }}


# ---------------------------------------------------------------------------
# WebSocket: Per-Connection Session Store
# ---------------------------------------------------------------------------

@app.websocket("/ws/session")
async def websocket_session(ws: WebSocket):
    """
    WebSocket endpoint — one RealtimeSessionStore per connection.
    Network operations run as tasks so the receive loop keeps draining
    transport events while a bootstrap or relay is in flight.
    """
    await ws.accept()

    connection_id = uuid.uuid4().hex[:12]
    store = registry.create(connection_id)
    pending: set[asyncio.Task] = set()
    latest_state: asyncio.Queue[RealtimeSessionState] = asyncio.Queue(maxsize=1)

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data))
        except Exception as e:
            logger.debug(f"[{connection_id}] Send failed: {e}")

    def on_state(state: RealtimeSessionState) -> None:
        # Keep only the newest snapshot queued
        if latest_state.full():
            latest_state.get_nowait()
        latest_state.put_nowait(state)

    async def push_states() -> None:
        while True:
            state = await latest_state.get()
            await send({"type": "state", "data": state.to_dict()})

    async def run_operation(operation: Awaitable[Dict[str, Any]]) -> None:
        try:
            await send(await operation)
        except HavenError as e:
            logger.warning(f"[{connection_id}] {type(e).__name__}: {e}")
            await send(_error(e))
        except Exception as e:
            logger.error(f"[{connection_id}] Operation failed: {e}", exc_info=True)
            await send(_error(e))

    unsubscribe = store.subscribe(on_state)
    pusher = asyncio.create_task(push_states())
    on_state(store.state)

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue

            if message.get("type") == "ping":
                await send({"type": "pong"})
                continue

            try:
                operation = apply_message(store, message)
            except (KeyError, TypeError, ValueError) as e:
                await send(_error(e))
                continue

            if operation is not None:
                task = asyncio.create_task(run_operation(operation))
                pending.add(task)
                task.add_done_callback(pending.discard)

    except WebSocketDisconnect:
        logger.info(f"[{connection_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{connection_id}] WebSocket error: {e}", exc_info=True)
    finally:
        unsubscribe()
        for task in list(pending):
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        pusher.cancel()
        await asyncio.gather(pusher, return_exceptions=True)
        await registry.stop(connection_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "haven.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )
