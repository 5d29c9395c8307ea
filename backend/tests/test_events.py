import pytest

from app.client.events import DedupCache, ListenerRegistry


async def test_dispatch_reaches_listeners_in_order():
    registry = ListenerRegistry()
    calls = []
    registry.add("ev", lambda value: calls.append(("sync", value)))

    async def async_listener(value):
        calls.append(("async", value))

    registry.add("ev", async_listener)

    assert await registry.dispatch("ev", 1) == 2
    assert calls == [("sync", 1), ("async", 1)]


async def test_unsubscribe_inside_callback_is_safe():
    registry = ListenerRegistry()
    calls = []

    def first(value):
        calls.append("first")
        unsubscribe_first()
        unsubscribe_second()

    unsubscribe_first = registry.add("ev", first)
    unsubscribe_second = registry.add("ev", lambda value: calls.append("second"))
    registry.add("ev", lambda value: calls.append("third"))

    await registry.dispatch("ev", None)
    await registry.dispatch("ev", None)

    # second was removed mid-round and is skipped even in that round
    assert calls == ["first", "third", "third"]
    assert registry.count("ev") == 1


async def test_unsubscribe_twice_is_harmless():
    registry = ListenerRegistry()
    unsubscribe = registry.add("ev", lambda value: None)

    unsubscribe()
    unsubscribe()

    assert registry.count() == 0


async def test_failing_listener_does_not_block_the_others():
    registry = ListenerRegistry()
    calls = []

    def broken(value):
        raise RuntimeError("boom")

    registry.add("ev", broken)
    registry.add("ev", calls.append)

    await registry.dispatch("ev", "payload")

    assert calls == ["payload"]


def test_same_handler_registered_twice_gets_two_slots():
    registry = ListenerRegistry()
    handler = lambda value: None

    first = registry.add("ev", handler)
    registry.add("ev", handler)
    first()
    assert registry.count("ev") == 1

    registry.remove("ev", handler)
    assert registry.count("ev") == 0


def test_dedup_cache_reports_repeats():
    cache = DedupCache(maxsize=10)

    assert cache.seen("m1") is False
    assert cache.seen("m1") is True
    assert "m1" in cache


def test_dedup_cache_evicts_least_recently_seen():
    cache = DedupCache(maxsize=2)
    cache.seen("a")
    cache.seen("b")
    cache.seen("a")
    cache.seen("c")

    assert "a" in cache
    assert "b" not in cache
    assert len(cache) == 2


def test_dedup_cache_rejects_non_positive_size():
    with pytest.raises(ValueError):
        DedupCache(maxsize=0)
