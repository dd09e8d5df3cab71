import json

from haven.processing.transcripts import (
    compute_duration_ms,
    map_history_document,
    map_history_summary,
    merge_transcripts,
    normalize_guardrails,
    normalize_transcripts,
    prune_for_persistence,
)

from conftest import make_transcript


def _log(count, flagged=None, annotation="safety-flag"):
    flagged = flagged or set()
    return [
        make_transcript(
            f"utterance {i}",
            id=f"t-{i:02d}",
            offset=i,
            annotations=[annotation] if i in flagged else None,
        )
        for i in range(1, count + 1)
    ]


def test_short_log_is_sent_whole_and_sorted():
    items = _log(5)
    shuffled = [items[3], items[0], items[4], items[1], items[2]]
    assert [t.id for t in prune_for_persistence(shuffled)] == [t.id for t in items]


def test_safety_entry_survives_truncation():
    items = _log(60, flagged={3})
    pruned = prune_for_persistence(items)
    ids = [t.id for t in pruned]

    assert "t-03" in ids
    assert ids[-50:] == [f"t-{i:02d}" for i in range(11, 61)]
    assert len(ids) == 51
    assert len(set(ids)) == len(ids)


def test_safety_match_is_case_insensitive():
    for note in ("GUARDRAIL triggered", "Crisis language", "flagged for Safety review"):
        pruned = prune_for_persistence(_log(70, flagged={1}, annotation=note))
        assert pruned[0].id == "t-01"


def test_unflagged_overflow_is_dropped():
    pruned = prune_for_persistence(_log(55))
    assert len(pruned) == 50
    assert pruned[0].id == "t-06"


def test_flagged_entry_inside_window_is_not_duplicated():
    pruned = prune_for_persistence(_log(60, flagged={59}))
    assert len(pruned) == 50


def test_merge_prefers_remote_and_sorts():
    local = [
        make_transcript("local only", id="a", offset=3),
        make_transcript("stale text", id="b", offset=1),
    ]
    remote = [
        make_transcript("fresh text", id="b", offset=1),
        make_transcript("remote only", id="c", offset=2),
    ]
    merged = merge_transcripts(local, remote)

    assert [t.id for t in merged] == ["b", "c", "a"]
    assert merged[0].content == "fresh text"


def test_merge_is_idempotent():
    a = _log(6)[:4]
    b = _log(6)[2:]
    once = merge_transcripts(a, b)
    assert merge_transcripts(once, b) == once
    assert merge_transcripts(once, once) == once


def test_normalize_transcripts_accepts_json_strings():
    raw = json.dumps([
        {"id": "1", "speaker": "user", "content": "hi", "timestamp": "2024-01-01T09:00:00Z"},
        {"id": "1", "speaker": "user", "content": "dup", "timestamp": "2024-01-01T09:00:01Z"},
        {"id": "2", "speaker": "robot", "content": "who?", "timestamp": "2024-01-01T09:00:02Z"},
        {"id": "3", "speaker": "user", "content": "", "timestamp": "2024-01-01T09:00:03Z"},
        "garbage",
    ])
    items = normalize_transcripts(raw)

    assert [t.id for t in items] == ["1", "2"]
    assert items[0].content == "hi"
    assert items[1].speaker == "user"
    assert normalize_transcripts("{not json") == []
    assert normalize_transcripts(None) == []


def test_normalize_guardrails_keeps_extras():
    flags = normalize_guardrails('{"crisisDetected": true, "reviewer": "ops"}')
    assert flags.crisis_detected is True
    assert flags.escalation_suggested is False
    assert flags.extras == {"reviewer": "ops"}
    assert normalize_guardrails("[]") is None


def test_map_history_document_extracts_metadata():
    doc = {
        "$id": "hist-9",
        "sessionId": "sess-1",
        "transcripts": [{"id": "x", "speaker": "companion", "content": "hello", "timestamp": "2024-01-01T09:00:00Z"}],
        "recommendedInterventions": json.dumps([
            {"type": "breathing", "title": "Box", "description": "d", "reasoning": "r", "priority": "high"},
            {"type": "nonsense"},
        ]),
        "metadata": json.dumps({"summary": "Talked about work", "guardrails": {"escalationSuggested": True}, "mood": "ok"}),
        "durationMs": 120000,
        "$createdAt": "2024-01-01T09:02:00Z",
    }
    record = map_history_document(doc)

    assert record.history_id == "hist-9"
    assert record.summary == "Talked about work"
    assert record.guardrails.escalation_suggested is True
    assert record.metadata == {"mood": "ok"}
    assert len(record.recommended_interventions) == 1
    assert record.duration_ms == 120000
    assert record.total_transcript_count == 1
    assert record.created_at == "2024-01-01T09:02:00Z"


def test_map_history_summary_counts():
    summary = map_history_summary({"historyId": "h1", "transcripts": [], "totalTranscriptCount": 42})
    assert summary.history_id == "h1"
    assert summary.total_transcript_count == 42


def test_duration_requires_both_boundaries():
    assert compute_duration_ms("2024-01-01T09:00:00Z", "2024-01-01T09:01:30Z") == 90000
    assert compute_duration_ms(None, "2024-01-01T09:01:30Z") is None
    assert compute_duration_ms("2024-01-01T09:00:00Z", "yesterday") is None
