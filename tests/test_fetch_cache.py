"""Tests for the TTL-tiered fetch cache."""

import json
from unittest.mock import patch

import pytest

from amzpilot.fetch_cache import (
    AI_TTL,
    CONTENT_TTL,
    SITEMAP_TTL,
    CacheClass,
    FetchCache,
    generate_hash,
)


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


# ===================================================================
# TTL classes
# ===================================================================

@pytest.mark.unit
class TestCacheClass:

    def test_prefix_selects_ttl(self):
        assert CacheClass.for_key("wp_page_abc").ttl == CONTENT_TTL
        assert CacheClass.for_key("ai_gemini_x_y").ttl == AI_TTL
        assert CacheClass.for_key("sitemap_abc").ttl == SITEMAP_TTL

    def test_unknown_prefix_defaults_to_sitemap(self):
        assert CacheClass.for_key("scrape_123") == CacheClass.SITEMAP

    def test_make_key_hashes_urls(self):
        key = FetchCache.make_key(CacheClass.CONTENT, "page", "https://site.com/a/")
        assert key == "wp_page_" + generate_hash("https://site.com/a/")

    def test_make_key_keeps_short_parts(self):
        assert FetchCache.make_key(CacheClass.AI, "gemini", "B000000001") == "ai_gemini_B000000001"


# ===================================================================
# get / set
# ===================================================================

@pytest.mark.unit
class TestGetSet:

    def test_roundtrip(self, memory_cache):
        memory_cache.set("wp_x", {"html": "<p>hi</p>"})
        assert memory_cache.get("wp_x") == {"html": "<p>hi</p>"}

    def test_missing_key(self, memory_cache):
        assert memory_cache.get("wp_missing") is None

    def test_expires_after_class_ttl(self):
        clock = FakeClock()
        cache = FetchCache(clock=clock)
        cache.set("wp_page", "body")
        clock.advance(CONTENT_TTL)
        assert cache.get("wp_page") == "body"
        clock.advance(1)
        assert cache.get("wp_page") is None
        assert len(cache) == 0

    def test_ai_entries_outlive_content_entries(self):
        clock = FakeClock()
        cache = FetchCache(clock=clock)
        cache.set("wp_page", "body")
        cache.set("ai_result", {"asin": "B000000001"})
        clock.advance(CONTENT_TTL + 60)
        assert cache.get("wp_page") is None
        assert cache.get("ai_result") == {"asin": "B000000001"}

    def test_set_resets_age(self):
        clock = FakeClock()
        cache = FetchCache(clock=clock)
        cache.set("sitemap_a", "<xml/>")
        clock.advance(SITEMAP_TTL - 10)
        cache.set("sitemap_a", "<xml2/>")
        clock.advance(SITEMAP_TTL - 10)
        assert cache.get("sitemap_a") == "<xml2/>"

    def test_contains_and_delete(self, memory_cache):
        memory_cache.set("wp_a", 1)
        assert "wp_a" in memory_cache
        memory_cache.delete("wp_a")
        assert "wp_a" not in memory_cache

    def test_stats(self, memory_cache):
        memory_cache.set("wp_a", 1)
        memory_cache.set("ai_b", 2)
        memory_cache.set("other", 3)
        assert memory_cache.stats() == {"content": 1, "ai": 1, "sitemap": 1, "total": 3}


# ===================================================================
# Bounded size and persistence
# ===================================================================

@pytest.mark.unit
class TestEvictionAndPersistence:

    def test_oldest_entries_evicted_first(self):
        clock = FakeClock()
        cache = FetchCache(max_entries=2, clock=clock)
        cache.set("wp_a", 1)
        clock.advance(1)
        cache.set("wp_b", 2)
        clock.advance(1)
        cache.set("wp_c", 3)
        assert cache.get("wp_a") is None
        assert cache.get("wp_b") == 2
        assert cache.get("wp_c") == 3

    def test_persists_and_reloads(self, tmp_path):
        path = tmp_path / "cache.json"
        FetchCache(path=path).set("ai_x", {"title": "Grinder"})
        assert FetchCache(path=path).get("ai_x") == {"title": "Grinder"}

    def test_unreadable_file_is_ignored(self, tmp_path):
        path = tmp_path / "cache.json"
        path.write_text("{not json", encoding="utf-8")
        cache = FetchCache(path=path)
        assert len(cache) == 0

    def test_writes_are_coalesced_until_flush(self, tmp_path):
        clock = FakeClock()
        path = tmp_path / "cache.json"
        cache = FetchCache(path=path, persist_interval=5.0, clock=clock)
        cache.set("wp_a", 1)
        cache.set("wp_b", 2)
        cache.get("wp_a")
        assert set(json.loads(path.read_text(encoding="utf-8"))) == {"wp_a"}

        cache.flush()
        assert set(json.loads(path.read_text(encoding="utf-8"))) == {"wp_a", "wp_b"}

    def test_write_due_after_interval(self, tmp_path):
        clock = FakeClock()
        path = tmp_path / "cache.json"
        cache = FetchCache(path=path, persist_interval=5.0, clock=clock)
        cache.set("wp_a", 1)
        clock.advance(5)
        cache.set("wp_b", 2)
        assert set(json.loads(path.read_text(encoding="utf-8"))) == {"wp_a", "wp_b"}

    def test_expiry_on_read_does_not_write(self, tmp_path):
        clock = FakeClock()
        cache = FetchCache(path=tmp_path / "cache.json", persist_interval=0, clock=clock)
        cache.set("wp_a", 1)
        clock.advance(CONTENT_TTL + 1)
        with patch.object(FetchCache, "_persist", return_value=True) as persist:
            assert cache.get("wp_a") is None
            persist.assert_not_called()
            cache.flush()
            persist.assert_called_once()

    def test_persist_failure_clears_and_retries_once(self, tmp_path):
        cache = FetchCache(path=tmp_path / "cache.json", persist_interval=0)
        cache.set("wp_old", "old")
        with patch.object(FetchCache, "_persist", side_effect=[False, True]) as persist:
            cache.set("wp_new", "new")
        assert persist.call_count == 2
        assert cache.get("wp_new") == "new"
        assert cache.get("wp_old") is None

    def test_persist_failure_never_raises(self, tmp_path):
        cache = FetchCache(path=tmp_path / "cache.json")
        with patch.object(FetchCache, "_persist", return_value=False):
            cache.set("wp_new", "new")
        assert cache.get("wp_new") == "new"

    def test_clear(self, tmp_path):
        path = tmp_path / "cache.json"
        cache = FetchCache(path=path)
        cache.set("wp_a", 1)
        cache.clear()
        assert len(cache) == 0
        assert json.loads(path.read_text(encoding="utf-8")) == {}
