import asyncio

import pytest

from haven.core.config import CacheConfig
from haven.core.errors import NoActiveSession
from haven.services.local_cache import LocalStateCache, partialize

from conftest import make_transcript


def _snapshot():
    return {
        "sessionId": "sess-1",
        "clientSecret": "never cached",
        "transcripts": [{"id": str(i)} for i in range(30)],
        "moodTimeline": [{"sentiment": "neutral", "n": i} for i in range(15)],
        "recentCheckIns": [{"id": f"c{i}"} for i in range(8)],
        "historyId": "hist-1",
        "audioBuffers": [{"id": "b"}],
    }


def test_partialize_keeps_bounded_subset():
    cached = partialize(_snapshot(), CacheConfig(path="", transcript_limit=20, mood_timeline_limit=10, check_in_limit=5))

    assert "clientSecret" not in cached
    assert "audioBuffers" not in cached
    assert [t["id"] for t in cached["transcripts"]] == [str(i) for i in range(10, 30)]
    assert cached["moodTimeline"][0]["n"] == 5
    assert [c["id"] for c in cached["recentCheckIns"]] == ["c0", "c1", "c2", "c3", "c4"]
    assert cached["historyId"] == "hist-1"


def test_save_load_clear(tmp_path):
    cache = LocalStateCache(tmp_path / "nested" / "state.json")
    assert cache.load() is None

    cache.save(_snapshot())
    loaded = cache.load()
    assert loaded["sessionId"] == "sess-1"
    assert len(loaded["transcripts"]) == 20

    cache.clear()
    assert cache.load() is None
    cache.clear()


def test_corrupt_cache_reads_as_empty(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{half written", encoding="utf-8")
    assert LocalStateCache(path).load() is None

    path.write_text("[1, 2, 3]", encoding="utf-8")
    assert LocalStateCache(path).load() is None


def test_store_restores_view_and_pointer_but_not_the_session(make_store, tmp_path):
    path = tmp_path / "state.json"

    async def first_run():
        store = make_store(cache=LocalStateCache(path))
        await store.start_session(locale="fr-FR")
        store.push_transcript(make_transcript("I feel calm", id="keep-me"))
        await store.persist_history()

    asyncio.run(first_run())

    restored = make_store(cache=LocalStateCache(path))
    assert restored.state.session_id is None
    assert restored.state.locale == "fr-FR"
    assert [t.id for t in restored.state.transcripts] == ["keep-me"]
    assert restored.state.history_id == "hist-1"
    assert restored.persister.history_id == "hist-1"


def test_restored_store_never_overwrites_the_record_with_its_cached_tail(make_store, scheduler, history, tmp_path):
    path = tmp_path / "state.json"
    items = [
        make_transcript(
            f"utterance {i}",
            id=f"t-{i:02d}",
            offset=i,
            annotations=["safety-flag"] if i == 3 else None,
        )
        for i in range(1, 61)
    ]

    async def first_run():
        store = make_store(cache=LocalStateCache(path))
        await store.start_session()
        store.replace_transcripts(items)
        await scheduler.advance(0)
        await store.persist_history()

    asyncio.run(first_run())
    assert len(history.writes) == 1

    async def second_run():
        store = make_store(cache=LocalStateCache(path))
        assert len(store.state.transcripts) == 20

        ended = await store.end_session()
        assert ended.history_id == "hist-1"
        with pytest.raises(NoActiveSession):
            await store.persist_history()
        assert len(history.writes) == 1

        await store.start_session()
        # Issued before the resumed record has been merged in
        await store.persist_history()
        return store

    store = asyncio.run(second_run())

    assert store.state.session_id == "sess-2"
    assert len(history.writes) == 2
    update = history.writes[-1]
    assert update["op"] == "update"
    assert update["id"] == "hist-1"
    sent = [t["id"] for t in update["payload"]["transcripts"]]
    assert sent == ["t-03"] + [f"t-{i:02d}" for i in range(11, 61)]
