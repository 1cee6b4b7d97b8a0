"""Tests for RegistryCache key layout and eviction."""

import fnmatch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from vsxregistry.storage.memory import MemoryStore
from vsxregistry.storage.redis_cache import RegistryCache


class FakeRedis:
    """In-process stand-in for the handful of Redis commands the cache issues."""

    def __init__(self):
        self.values = {}
        self.expiry = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("redis unavailable")

    def ping(self):
        self._check()
        return True

    def get(self, key):
        self._check()
        return self.values.get(key)

    def set(self, key, value, ex=None):
        self._check()
        self.values[key] = value
        self.expiry[key] = ex

    def scan_iter(self, match=None):
        self._check()
        for key in list(self.values):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def delete(self, *keys):
        self._check()
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    def close(self):
        pass


@pytest.fixture
def published():
    store = MemoryStore()
    alice = store.create_user("alice", auth_id="1")
    token = store.create_access_token(alice.id, "token-a")
    namespace = store.create_namespace("bar")
    foo = store.create_extension(namespace, "foo")
    store.create_extension_version(foo, "1.0.0", active=True, published_with=token)
    other = store.create_extension(namespace, "other")
    store.create_extension_version(other, "1.0.0", active=True)
    return store, alice


class TestRegistryCache:
    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RegistryCache()

    def test_key_layout(self):
        assert RegistryCache.extension_json_key("bar", "foo", "universal", "1.0.0") == (
            "extension_json:bar:foo:universal:1.0.0"
        )
        assert RegistryCache.namespace_details_key("bar") == "namespace_details_json:bar"

    def test_put_and_get_json_with_ttl(self):
        client = FakeRedis()
        cache = RegistryCache(client=client, ttl_seconds=60)

        cache.put_namespace_details("bar", {"name": "bar"})

        assert cache.get_namespace_details("bar") == {"name": "bar"}
        assert client.expiry["namespace_details_json:bar"] == 60
        assert cache.get_extension_json("bar", "foo", "universal", "1.0.0") is None

    def test_evict_extension_jsons_for_published_extensions(self, published):
        store, alice = published
        client = FakeRedis()
        cache = RegistryCache(client=client, store=store)
        cache.put_extension_json("bar", "foo", "universal", "1.0.0", {"v": 1})
        cache.put_extension_json("bar", "foo", "linux-x64", "latest", {"v": 2})
        cache.put_extension_json("bar", "other", "universal", "1.0.0", {"v": 3})

        evicted = cache.evict_extension_jsons(alice)

        assert evicted == 2
        assert list(client.values) == ["extension_json:bar:other:universal:1.0.0"]

    def test_evict_without_store_is_a_no_op(self, published):
        _, alice = published
        client = FakeRedis()
        cache = RegistryCache(client=client)
        cache.put_extension_json("bar", "foo", "universal", "1.0.0", {"v": 1})

        assert cache.evict_extension_jsons(alice) == 0
        assert len(client.values) == 1

    def test_evict_namespace_details(self):
        client = FakeRedis()
        cache = RegistryCache(client=client)
        cache.put_namespace_details("bar", {"name": "bar"})

        assert cache.evict_namespace_details("bar") == 1
        assert cache.evict_namespace_details("bar") == 0

    def test_redis_failures_do_not_propagate_from_eviction(self, published):
        store, alice = published
        client = FakeRedis()
        client.fail = True
        cache = RegistryCache(client=client, store=store)

        assert cache.evict_extension_jsons(alice) == 0
        assert cache.evict_namespace_details("bar") == 0
