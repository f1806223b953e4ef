"""Tests for the retrieval cache and tenant settings."""
import json

import pytest

from kb_engine.exceptions import ValidationError
from kb_engine.models.retrieval import RetrievalResult, RetrievalStats
from kb_engine.services.retrieval_cache import RetrievalCache
from kb_engine.services.tenant_settings import TenantRagSettings, TenantSettingsProvider


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return RetrievalCache(ttl_seconds=180, clock=clock)


class TestRetrievalCache:
    def test_key_normalizes_query(self):
        assert RetrievalCache.make_key("t1", "  Account   NUMBER ", 8, False) == ("t1", "account number", 8, False)

    def test_key_distinguishes_k_and_rerank(self):
        keys = {
            RetrievalCache.make_key("t1", "q", 8, False),
            RetrievalCache.make_key("t1", "q", 5, False),
            RetrievalCache.make_key("t1", "q", 8, True),
            RetrievalCache.make_key("t2", "q", 8, False),
        }
        assert len(keys) == 4

    def test_entry_expires_after_ttl(self, cache, clock):
        key = RetrievalCache.make_key("t1", "q", 8, False)
        result = RetrievalResult(chunks=[], stats=RetrievalStats(vector_ms=1.0))
        cache.set(key, result)

        clock.now += 180
        assert cache.get(key) is result

        clock.now += 1
        assert cache.get(key) is None
        assert len(cache) == 0

    def test_set_sweeps_expired_entries(self, cache, clock):
        for i in range(1000):
            cache.set(RetrievalCache.make_key("t1", f"query {i}", 8, False), RetrievalResult())
        assert len(cache) == 1000

        clock.now += 10000
        cache.set(RetrievalCache.make_key("t1", "fresh", 8, False), RetrievalResult())

        assert len(cache) == 1
        assert cache.get(RetrievalCache.make_key("t1", "fresh", 8, False)) is not None

    def test_sweep_keeps_live_entries(self, cache, clock):
        cache.set(RetrievalCache.make_key("t1", "old", 8, False), RetrievalResult())
        clock.now += 100
        cache.set(RetrievalCache.make_key("t1", "newer", 8, False), RetrievalResult())
        clock.now += 100
        cache.set(RetrievalCache.make_key("t1", "newest", 8, False), RetrievalResult())

        assert len(cache) == 2
        assert cache.get(RetrievalCache.make_key("t1", "old", 8, False)) is None
        assert cache.get(RetrievalCache.make_key("t1", "newer", 8, False)) is not None

    def test_max_entries_evicts_oldest(self, clock):
        cache = RetrievalCache(ttl_seconds=180, max_entries=3, clock=clock)
        keys = [RetrievalCache.make_key("t1", f"q{i}", 8, False) for i in range(5)]
        for key in keys:
            cache.set(key, RetrievalResult())

        assert len(cache) == 3
        assert cache.get(keys[0]) is None
        assert cache.get(keys[1]) is None
        assert cache.get(keys[4]) is not None

    def test_reset_key_moves_to_newest(self, clock):
        cache = RetrievalCache(ttl_seconds=180, max_entries=2, clock=clock)
        first = RetrievalCache.make_key("t1", "first", 8, False)
        second = RetrievalCache.make_key("t1", "second", 8, False)
        cache.set(first, RetrievalResult())
        cache.set(second, RetrievalResult())
        cache.set(first, RetrievalResult())
        cache.set(RetrievalCache.make_key("t1", "third", 8, False), RetrievalResult())

        assert cache.get(second) is None
        assert cache.get(first) is not None

    def test_invalidate_tenant(self, cache):
        cache.set(RetrievalCache.make_key("t1", "a", 8, False), RetrievalResult())
        cache.set(RetrievalCache.make_key("t1", "b", 8, True), RetrievalResult())
        cache.set(RetrievalCache.make_key("t2", "a", 8, False), RetrievalResult())

        assert cache.invalidate_tenant("t1") == 2
        assert len(cache) == 1
        assert cache.get(RetrievalCache.make_key("t2", "a", 8, False)) is not None


class TestTenantSettings:
    def test_defaults_apply_to_unknown_tenant(self):
        provider = TenantSettingsProvider()
        settings = provider.get("anyone")
        assert settings.hybrid_enabled is True
        assert settings.rerank_trigger == 0.6
        assert settings.doc_cap == 2

    def test_update_invalidates_tenant_cache(self, cache):
        cache.set(RetrievalCache.make_key("t1", "q", 8, False), RetrievalResult())
        cache.set(RetrievalCache.make_key("t2", "q", 8, False), RetrievalResult())
        provider = TenantSettingsProvider(cache=cache)

        updated = provider.update("t1", doc_cap=3)

        assert updated.doc_cap == 3
        assert provider.get("t1").doc_cap == 3
        assert provider.get("t2").doc_cap == 2
        assert len(cache) == 1

    def test_update_rejects_out_of_range(self):
        provider = TenantSettingsProvider()
        with pytest.raises(ValidationError):
            provider.update("t1", rerank_trigger=1.5)
        assert provider.get("t1") == provider.defaults

    def test_settings_are_frozen(self):
        with pytest.raises(Exception):
            TenantRagSettings().doc_cap = 5

    def test_overrides_file(self, tmp_path, cache):
        path = tmp_path / "tenants.json"
        path.write_text(json.dumps({"acme": {"rerank_enabled": True, "rerank_trigger": 0.4}}), encoding="utf-8")
        cache.set(RetrievalCache.make_key("acme", "q", 8, False), RetrievalResult())

        provider = TenantSettingsProvider(cache=cache, overrides_path=str(path))

        assert provider.get("acme").rerank_enabled is True
        assert provider.get("acme").rerank_trigger == 0.4
        assert provider.get("other").rerank_enabled is False
        assert len(cache) == 0
