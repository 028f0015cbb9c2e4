"""Tests for the key-value stores, search cache keys and the rate limiter."""

import pytest

from gallery.errors import RateLimitExceededError
from gallery.kvstore import MemoryKeyValueStore, RedisKeyValueStore
from gallery.ratelimit import RateLimiter
from gallery.search.cache import SearchCache, fingerprint_image, fingerprint_text, fingerprint_vector


class _FakeRedisPipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def set(self, *args, **kwargs):
        self.ops.append(("set", args, kwargs))

    def incr(self, key):
        self.ops.append(("incr", (key,), {}))

    def ttl(self, key):
        self.ops.append(("ttl", (key,), {}))

    def execute(self):
        return [getattr(self.client, name)(*args, **kwargs) for name, args, kwargs in self.ops]


class _FakeRedis:
    """Just enough of redis.Redis for RedisKeyValueStore."""

    def __init__(self):
        self.values = {}
        self.expiry = {}

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex is not None:
            self.expiry[key] = ex
        return True

    def delete(self, key):
        self.values.pop(key, None)
        self.expiry.pop(key, None)

    def incr(self, key):
        self.values[key] = str(int(self.values.get(key, 0)) + 1)
        return int(self.values[key])

    def ttl(self, key):
        return self.expiry.get(key, -1)

    def pipeline(self, transaction=True):
        return _FakeRedisPipeline(self)


class TestMemoryKeyValueStore:
    """Tests for MemoryKeyValueStore."""

    def test_values_expire(self, fake_clock):
        store = MemoryKeyValueStore(clock=fake_clock)
        store.set("k", {"a": [1, 2]}, ttl=10)

        assert store.get("k") == {"a": [1, 2]}
        fake_clock.advance(10)
        assert store.get("k") is None

    def test_counter_expiry_fixed_at_creation(self, fake_clock):
        """Test that later increments do not extend the window."""
        store = MemoryKeyValueStore(clock=fake_clock)

        assert store.increment_with_expiry("c", 60) == (1, 60)
        fake_clock.advance(45)
        assert store.increment_with_expiry("c", 60) == (2, 15)
        fake_clock.advance(15)
        assert store.increment_with_expiry("c", 60) == (1, 60)

    def test_expired_entries_are_swept_on_write(self, fake_clock):
        """Test that counters and values for keys never seen again are dropped."""
        store = MemoryKeyValueStore(clock=fake_clock)
        for index in range(1000):
            store.increment_with_expiry(f"client-{index}", 60)
            store.set(f"query-{index}", {"results": []}, ttl=300)
        assert len(store) == 2000

        fake_clock.advance(3600)
        store.increment_with_expiry("client-new", 60)

        assert len(store) == 1

    def test_sweep_keeps_live_entries(self, fake_clock):
        store = MemoryKeyValueStore(clock=fake_clock, sweep_interval=10)
        store.set("short", 1, ttl=5)
        store.set("long", 2, ttl=600)

        fake_clock.advance(30)
        store.increment_with_expiry("c", 60)

        assert len(store) == 2
        assert store.get("long") == 2

    def test_delete(self, fake_clock):
        store = MemoryKeyValueStore(clock=fake_clock)
        store.set("k", 1, ttl=10)
        store.delete("k")
        assert store.get("k") is None


class TestRedisKeyValueStore:
    """Tests for RedisKeyValueStore against an in-memory double."""

    def test_json_roundtrip_with_prefix(self):
        client = _FakeRedis()
        store = RedisKeyValueStore(client=client, prefix="t:")

        store.set("k", {"results": []}, ttl=300)

        assert client.expiry["t:k"] == 300
        assert store.get("k") == {"results": []}

    def test_increment_creates_counter_once(self):
        """Test that SET NX keeps the first window and INCR counts."""
        client = _FakeRedis()
        store = RedisKeyValueStore(client=client, prefix="t:")

        assert store.increment_with_expiry("c", 60) == (1, 60)
        client.expiry["t:c"] = 42
        assert store.increment_with_expiry("c", 60) == (2, 42)


class TestRateLimiter:
    """Tests for RateLimiter.hit."""

    def test_limit_then_reset(self, fake_clock):
        limiter = RateLimiter(MemoryKeyValueStore(clock=fake_clock), limit=10, window=60)

        for expected in range(1, 11):
            assert limiter.hit("10.0.0.1") == expected
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.hit("10.0.0.1")
        assert exc_info.value.limit == 10
        assert exc_info.value.client_id == "10.0.0.1"

        fake_clock.advance(60)
        assert limiter.hit("10.0.0.1") == 1

    def test_invalid_configuration(self, fake_clock):
        with pytest.raises(ValueError):
            RateLimiter(MemoryKeyValueStore(clock=fake_clock), limit=0, window=60)


class TestSearchCacheKeys:
    """Tests for fingerprinting."""

    def test_text_fingerprint_normalizes(self):
        assert fingerprint_text("  Red   Barn ") == fingerprint_text("red barn")
        assert fingerprint_text("red barn") != fingerprint_text("red barns")

    def test_kind_and_page_separate_keys(self, fake_clock):
        cache = SearchCache(MemoryKeyValueStore(clock=fake_clock), ttl=300)
        fp = fingerprint_image(b"\x89PNG")

        keys = {
            cache.key("image", fp, 1, 12),
            cache.key("image", fp, 2, 12),
            cache.key("text", fp, 1, 12),
            cache.key("image", fp, 1, 20),
        }
        assert len(keys) == 4

    def test_vector_fingerprint_matches_query_precision(self):
        """Test that vectors the search would rank differently never share a key."""
        assert fingerprint_vector([1, 0, 0]) == fingerprint_vector([1.0, 0.0, 0.0])
        assert fingerprint_vector([1.0, 0.0, 0.0]) != fingerprint_vector([1.0 + 1e-9, 0.0, 0.0])
