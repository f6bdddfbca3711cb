from app.services.cache_service import CacheService, make_cache_key


def test_entry_expires_after_ttl(clock):
    cache = CacheService(default_ttl=300, clock=clock)
    cache.set("slots.available:{}", ["a"])

    clock.advance(299)
    assert cache.get("slots.available:{}") == ["a"]

    clock.advance(1)
    assert cache.get("slots.available:{}") is None


def test_per_entry_ttl_overrides_default(clock):
    cache = CacheService(default_ttl=300, clock=clock)
    cache.set("k", 1, ttl=10)
    clock.advance(11)
    assert cache.lookup("k") == (False, None)


def test_lookup_distinguishes_cached_none_from_miss(clock):
    cache = CacheService(clock=clock)
    cache.set("k", None)
    assert cache.lookup("k") == (True, None)
    assert cache.lookup("missing") == (False, None)


def test_invalidate_drops_keys_containing_tag(clock):
    cache = CacheService(clock=clock)
    cache.set(make_cache_key("slots.available", {"page": 1}), 1)
    cache.set(make_cache_key("slots.stats"), 2)
    cache.set(make_cache_key("bookings.user", {"user": "u1"}), 3)

    dropped = cache.invalidate(["slot"])

    assert dropped == 2
    assert cache.stats()["keys"] == [make_cache_key("bookings.user", {"user": "u1"})]


def test_invalidate_ignores_empty_tags(clock):
    cache = CacheService(clock=clock)
    cache.set("k", 1)
    assert cache.invalidate(["", None]) == 0
    assert cache.get("k") == 1


def test_cache_key_is_stable_across_param_order():
    assert make_cache_key("op", {"a": 1, "b": 2}) == make_cache_key("op", {"b": 2, "a": 1})


def test_purge_expired_and_stats(clock):
    cache = CacheService(default_ttl=60, clock=clock)
    cache.set("old", 1)
    clock.advance(30)
    cache.set("new", 2)
    clock.advance(31)

    assert cache.purge_expired() == 1
    cache.get("new")
    cache.get("old")
    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["hits"] == 1
    assert stats["misses"] == 1
