from haven.core.models import (
    BootstrapPayload,
    GuardrailFlags,
    MoodCheckIn,
    Priority,
    TranscriptItem,
    TransportType,
    parse_timestamp,
)
from haven.services.session_store import RealtimeSessionState


def test_priority_coercion():
    assert Priority.coerce("high") == Priority.HIGH
    assert Priority.coerce(2) == Priority.LOW
    assert Priority.coerce(-4) == Priority.HIGH
    assert Priority.coerce("urgent") == Priority.MEDIUM
    assert Priority.from_rank(Priority.LOW.rank + 1) == Priority.LOW


def test_transport_defaults_to_webrtc():
    assert TransportType.coerce("websocket") == TransportType.WEBSOCKET
    assert TransportType.coerce(None) == TransportType.WEBRTC


def test_timestamps():
    assert parse_timestamp("2024-01-01T09:00:00Z").utcoffset().total_seconds() == 0
    assert parse_timestamp("2024-01-01T09:00:00").tzinfo is not None
    assert parse_timestamp("") is None
    assert parse_timestamp(12) is None


def test_transcript_from_loose_dict():
    item = TranscriptItem.from_dict({"speaker": "bot", "content": 5, "confidence": True, "annotations": ["a", 1]})
    assert item.speaker == "user"
    assert item.content == ""
    assert item.confidence is None
    assert item.annotations == ("a",)
    assert item.id


def test_guardrail_merge_is_an_or():
    flags = GuardrailFlags(crisis_detected=True)
    merged = flags.merge({"crisisDetected": False, "escalationSuggested": 1})
    assert merged.crisis_detected is True
    assert merged.escalation_suggested is True
    assert merged.escalation_active is True
    assert GuardrailFlags.from_dict(None) == GuardrailFlags()


def test_bootstrap_payload_tolerates_partial_body():
    payload = BootstrapPayload.from_dict({
        "sessionId": 17,
        "transport": "carrier-pigeon",
        "recommendedInterventions": [{"type": "breathing"}, {"type": "??"}, "junk"],
    })
    assert payload.session_id == "17"
    assert payload.transport == TransportType.WEBRTC
    assert payload.locale == "en-US"
    assert len(payload.recommended_interventions) == 1
    assert payload.guardrails == GuardrailFlags()


def test_check_in_round_trip_keys():
    check_in = MoodCheckIn.from_dict({"$id": "doc-1", "mood": "2", "intensity": 9, "crisisDetected": True})
    assert check_in.id == "doc-1"
    assert check_in.mood == 2
    assert check_in.to_dict()["crisisDetected"] is True


def test_session_state_wire_shape():
    data = RealtimeSessionState().to_dict()
    assert data["connectionState"] == "disconnected"
    assert data["microphoneState"] == "muted"
    assert data["persistenceStatus"] == "idle"
    assert data["transcripts"] == []
    assert data["captionsEnabled"] is True
