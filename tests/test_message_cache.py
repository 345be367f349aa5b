import json

from gotify_companion.message_cache import MessageCache, MessageCacheFile, sort_messages
from gotify_companion.models import Message


def make_message(message_id: int, ts: str = "", body: str = "", priority: int = 5) -> Message:
    return Message(
        id=message_id,
        app_id=1,
        title=f"t{message_id}",
        body=body or f"body {message_id}",
        priority=priority,
        app_name="app:1",
        app_icon_url=None,
        timestamp=ts or f"2024-01-01T00:00:{message_id:02d}Z",
    )


def test_merge_respects_limit_and_dedupes():
    cache = MessageCache(limit=3)
    result = cache.merge([make_message(i) for i in range(1, 6)] + [make_message(5)])

    assert len(cache) == 3
    assert [m.id for m in result.snapshot] == [5, 4, 3]
    assert result.evicted == (1, 2)
    assert len({m.id for m in cache.snapshot()}) == len(cache)


def test_eviction_follows_arrival_not_timestamp():
    cache = MessageCache(limit=2)
    # Arrives first but carries the newest timestamp.
    cache.merge([make_message(1, ts="2030-01-01T00:00:00Z")])
    cache.merge([make_message(2)])
    cache.merge([make_message(3)])

    assert 1 not in cache
    assert {m.id for m in cache.snapshot()} == {2, 3}


def test_empty_merge_is_noop():
    cache = MessageCache(limit=5, messages=[make_message(1)])
    result = cache.merge([])
    assert result.changed is False
    assert [m.id for m in result.snapshot] == [1]


def test_identical_merge_keeps_identity_and_reports_unchanged():
    original = make_message(1)
    cache = MessageCache(limit=5)
    cache.merge([original])

    result = cache.merge([make_message(1)])
    assert result.changed is False
    assert cache.get(1) is original


def test_changed_content_replaces_entry():
    cache = MessageCache(limit=5)
    cache.merge([make_message(1), make_message(2)])
    result = cache.merge([make_message(1, body="edited")])

    assert result.changed is True
    assert cache.get(1).body == "edited"
    assert cache.arrival_order() == [2, 1]


def test_snapshot_order_newest_first_with_unparseable_last():
    messages = [
        make_message(1, ts="2024-01-01T00:00:00Z"),
        make_message(2, ts="garbage"),
        make_message(3, ts="2024-01-02T00:00:00Z"),
        make_message(4, ts="2024-01-02T00:00:00Z"),
        make_message(5, ts="also garbage"),
    ]
    assert [m.id for m in sort_messages(messages)] == [4, 3, 1, 5, 2]


def test_snapshot_orders_short_fraction_timestamps_by_time():
    messages = [
        make_message(2, ts="2024-03-01T10:00:00Z"),
        make_message(1, ts="2024-03-01T10:00:05.5Z"),
    ]
    assert [m.id for m in sort_messages(messages)] == [1, 2]


def test_reconcile_drops_entries_missing_from_server():
    cache = MessageCache(limit=10)
    cache.merge([make_message(1), make_message(2), make_message(3)])
    kept = cache.get(2)

    result = cache.reconcile([make_message(2), make_message(3), make_message(4)])
    assert result.changed is True
    assert [m.id for m in result.snapshot] == [4, 3, 2]
    assert result.inserted == (4,)
    assert 1 in result.evicted
    assert cache.get(2) is kept


def test_reconcile_keeps_entries_that_arrived_during_fetch():
    cache = MessageCache(limit=10, messages=[make_message(1)])
    known = set(cache.arrival_order())
    cache.upsert(make_message(2))

    result = cache.reconcile([make_message(1)], known_ids=known)
    assert result.changed is False
    assert cache.arrival_order() == [1, 2]

    result = cache.reconcile([make_message(2)], known_ids={1, 2})
    assert result.evicted == (1,)
    assert cache.arrival_order() == [2]


def test_reconcile_with_empty_snapshot_keeps_cache():
    cache = MessageCache(limit=10, messages=[make_message(1)])
    result = cache.reconcile([])
    assert result.changed is False
    assert len(cache) == 1


def test_upsert_reports_existing_ids():
    cache = MessageCache(limit=10)
    assert cache.upsert(make_message(1)) is False
    assert cache.upsert(make_message(1)) is True
    assert len(cache) == 1


def test_set_limit_evicts_oldest_arrivals():
    cache = MessageCache(limit=10)
    cache.merge([make_message(i) for i in range(1, 6)])
    assert cache.set_limit(2) == [1, 2, 3]
    assert cache.arrival_order() == [4, 5]


def test_cache_file_round_trip_and_quarantine(tmp_path):
    path = tmp_path / "messages.json"
    store = MessageCacheFile(path)
    assert store.load() == []

    store.save([make_message(2), make_message(1)])
    restored = store.load()
    assert [m.id for m in restored] == [2, 1]
    assert json.loads(path.read_text(encoding="utf-8"))[0]["id"] == 2

    path.write_text("[{\"broken\": ", encoding="utf-8")
    assert store.load() == []
    assert not path.exists()
    assert list(tmp_path.glob("messages.corrupt-*.json"))


def test_restored_cache_evicts_oldest_first():
    cache = MessageCache(limit=2, messages=[make_message(1), make_message(3), make_message(2)])
    assert {m.id for m in cache.snapshot()} == {2, 3}
