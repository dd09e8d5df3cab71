import asyncio

import pytest
from fastapi.testclient import TestClient

from haven.server import app, apply_message
from haven.services.registry import StoreRegistry


def test_health_endpoint():
    client = TestClient(app)
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["active_sessions"] == 0


def test_messages_drive_the_store(make_store, scheduler, realtime, history):
    async def scenario():
        store = make_store()

        started = await apply_message(store, {"type": "start_session", "locale": "de-DE"})
        assert started["type"] == "session_started"
        assert started["data"]["sessionId"] == "sess-1"

        assert apply_message(store, {
            "type": "transcript",
            "data": {"id": "u1", "speaker": "user", "content": "I feel overwhelmed"},
        }) is None
        apply_message(store, {"type": "audio_energy", "value": 0.9})
        apply_message(store, {"type": "guardrails", "data": {"escalationSuggested": True}})
        apply_message(store, {"type": "check_ins", "data": [{"id": "c1", "mood": 2, "intensity": 5}]})
        apply_message(store, {"type": "connection_state", "state": "connected"})
        apply_message(store, {"type": "microphone", "state": "unmuted"})
        apply_message(store, {"type": "toggle_captions"})
        apply_message(store, {"type": "interrupt"})
        await scheduler.advance(0)

        relayed = await apply_message(store, {"type": "relay_event", "event": {"type": "response.create"}})
        persisted = await apply_message(store, {"type": "persist"})
        ended = await apply_message(store, {"type": "end_session"})
        return store, relayed, persisted, ended

    store, relayed, persisted, ended = asyncio.run(scenario())

    assert relayed == {"type": "relayed", "data": {"attempts": 1, "eventType": "response.create", "relayedAt": None}}
    assert persisted["data"]["historyId"] == "hist-1"
    assert ended["type"] == "session_ended"
    assert ended["data"]["historyId"] == "hist-1"
    assert realtime.bootstrap_calls[0]["locale"] == "de-DE"

    snapshot = history.writes[0]["payload"]
    assert snapshot["guardrails"]["escalationSuggested"] is True
    assert snapshot["metadata"]["captionsEnabled"] is False
    assert [t["id"] for t in snapshot["transcripts"]] == ["u1"]


def test_malformed_messages_raise():
    store = None
    with pytest.raises(ValueError):
        apply_message(store, {"type": "dance"})
    with pytest.raises(ValueError):
        apply_message(store, {})


def test_registry_stop_finalizes(make_store, history):
    registry = StoreRegistry(store_factory=make_store)

    async def scenario():
        store = registry.create("conn-1")
        await store.start_session()
        assert registry.active_count == 1
        summary = await registry.stop("conn-1")
        missing = await registry.stop("conn-1")
        return summary, missing

    summary, missing = asyncio.run(scenario())

    assert summary["historyId"] == "hist-1"
    assert summary["sessionId"] is None
    assert missing is None
    assert registry.active_count == 0
    assert "endedAt" in history.writes[-1]["payload"]
