"""Tests for HandleCache and ResultCache — expiry, eviction, handles, and the sweeper."""

import re

import pytest

from msgraph_mcp.config import CacheConfig
from msgraph_mcp.graph.types import MailMessage, RetrievalExtract, RetrievalHit
from msgraph_mcp.storage.cache import HandleCache, ResultCache


def _hit(url: str, score: float = 0.5) -> RetrievalHit:
    return RetrievalHit(
        web_url=url,
        resource_type="listItem",
        extracts=[RetrievalExtract(text=f"text for {url}", relevance_score=score)],
    )


# ── HandleCache ────────────────────────────────────────────────────────────────


class TestHandleCacheConstruction:
    @pytest.mark.parametrize("ttl_ms", [0, -1])
    def test_rejects_non_positive_ttl(self, ttl_ms: int) -> None:
        with pytest.raises(ValueError, match="ttl_ms"):
            HandleCache(ttl_ms=ttl_ms, max_entries=10)

    @pytest.mark.parametrize("max_entries", [0, -5])
    def test_rejects_non_positive_capacity(self, max_entries: int) -> None:
        with pytest.raises(ValueError, match="max_entries"):
            HandleCache(ttl_ms=1000, max_entries=max_entries)

    def test_result_cache_propagates_bad_config(self) -> None:
        with pytest.raises(ValueError):
            ResultCache(CacheConfig(max_entries=0, sweep_interval_ms=0))
        with pytest.raises(ValueError):
            ResultCache(CacheConfig(max_attachment_entries=0, sweep_interval_ms=0))


class TestHandleCacheLookups:
    def test_get_returns_stored_value(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        assert store.get("a") == "alpha"

    def test_get_missing_is_none_not_error(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        assert store.get("nope") is None

    def test_remove_is_idempotent(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        assert store.remove("a") is True
        assert store.remove("a") is False
        assert store.get("a") is None

    def test_contains(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        assert "a" in store
        assert "b" not in store


class TestHandleCacheExpiry:
    def test_hit_just_before_ttl(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        clock.advance(999)
        assert store.get("a") == "alpha"

    def test_hit_exactly_at_ttl(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        clock.advance(1000)
        assert store.get("a") == "alpha"

    def test_miss_just_after_ttl(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        clock.advance(1001)
        assert store.get("a") is None

    def test_expired_get_removes_entry(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        clock.advance(1001)
        store.get("a")
        assert len(store) == 0

    def test_expired_entry_stays_gone(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        clock.advance(1001)
        assert store.get("a") is None
        clock.now -= 5000
        assert store.get("a") is None

    def test_handles_exclude_expired_before_sweep(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("old", "x")
        clock.advance(600)
        store.put("new", "y")
        clock.advance(500)
        assert store.handles() == ["new"]
        # Nothing was physically removed yet.
        assert len(store) == 2

    def test_sweep_removes_only_expired(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("old", "x")
        clock.advance(600)
        store.put("new", "y")
        clock.advance(500)
        assert store.sweep() == 1
        assert len(store) == 1
        assert store.get("new") == "y"

    def test_sweep_and_get_agree_at_boundary(self, clock) -> None:
        store: HandleCache[str] = HandleCache(1000, 10, clock)
        store.put("a", "alpha")
        clock.advance(1000)
        assert store.sweep() == 0
        assert store.get("a") == "alpha"
        clock.advance(1)
        assert store.sweep() == 1
        assert store.get("a") is None


class TestHandleCacheEviction:
    def test_eviction_order_a_b_c(self, clock) -> None:
        store: HandleCache[str] = HandleCache(10_000, 2, clock)
        store.put("A", "a")
        clock.advance(1)
        store.put("B", "b")
        clock.advance(1)
        store.put("C", "c")
        assert set(store.handles()) == {"B", "C"}
        assert store.get("A") is None

    def test_eviction_with_identical_timestamps_uses_insertion_order(self, clock) -> None:
        store: HandleCache[str] = HandleCache(10_000, 2, clock)
        store.put("A", "a")
        store.put("B", "b")
        store.put("C", "c")
        assert store.handles() == ["B", "C"]

    def test_capacity_plus_k(self, clock) -> None:
        store: HandleCache[int] = HandleCache(10_000, 5, clock)
        for i in range(8):
            store.put(f"h{i}", i)
            clock.advance(1)
        assert len(store.handles()) == 5
        for i in range(3):
            assert store.get(f"h{i}") is None
        assert store.handles() == ["h3", "h4", "h5", "h6", "h7"]

    def test_reads_do_not_refresh_eviction_priority(self, clock) -> None:
        store: HandleCache[str] = HandleCache(10_000, 2, clock)
        store.put("A", "a")
        clock.advance(1)
        store.put("B", "b")
        clock.advance(1)
        store.get("A")
        store.put("C", "c")
        assert store.get("A") is None
        assert store.get("B") == "b"

    def test_re_put_replaces_without_evicting(self, clock) -> None:
        store: HandleCache[str] = HandleCache(10_000, 2, clock)
        store.put("A", "a")
        store.put("B", "b")
        store.put("B", "b2")
        assert set(store.handles()) == {"A", "B"}
        assert store.get("B") == "b2"

    def test_clear(self, clock) -> None:
        store: HandleCache[str] = HandleCache(10_000, 2, clock)
        store.put("A", "a")
        store.clear()
        assert store.handles() == []


# ── ResultCache ────────────────────────────────────────────────────────────────


class TestSearchHandles:
    def test_format(self, cache: ResultCache) -> None:
        assert re.fullmatch(r"\d+-[a-z0-9]{7}", cache.generate_search_id())

    def test_thousand_handles_are_distinct(self, cache: ResultCache) -> None:
        handles = {cache.generate_search_id() for _ in range(1000)}
        assert len(handles) == 1000

    def test_timestamp_prefix_comes_from_clock(self, cache: ResultCache, clock) -> None:
        assert cache.generate_search_id().startswith(f"{int(clock.now)}-")


class TestSearchEntries:
    def test_get_result_by_index(self, cache: ResultCache) -> None:
        hits = [_hit("https://x/1"), _hit("https://x/2"), _hit("https://x/3")]
        cache.set_search("s1", "budget", hits)
        assert cache.get_result("s1", 1) is hits[1]

    @pytest.mark.parametrize("index", [3, 10, -1])
    def test_out_of_range_index_is_miss(self, cache: ResultCache, index: int) -> None:
        cache.set_search("s1", "budget", [_hit("https://x/1"), _hit("https://x/2"), _hit("https://x/3")])
        assert cache.get_result(index=index, search_id="s1") is None

    def test_unknown_search_is_miss(self, cache: ResultCache) -> None:
        assert cache.get_search("missing") is None
        assert cache.get_result("missing", 0) is None

    def test_entry_keeps_query(self, cache: ResultCache) -> None:
        cache.set_search("s1", "budget", [])
        entry = cache.get_search("s1")
        assert entry is not None
        assert entry.query == "budget"
        assert entry.records == []

    def test_stored_records_are_a_copy(self, cache: ResultCache) -> None:
        records = [_hit("https://x/1")]
        cache.set_search("s1", "q", records)
        records.append(_hit("https://x/2"))
        assert cache.get_result("s1", 1) is None

    def test_search_expires(self, cache: ResultCache, clock) -> None:
        cache.set_search("s1", "q", [_hit("https://x/1")])
        clock.advance(60_001)
        assert cache.get_result("s1", 0) is None
        assert cache.list_search_ids() == []

    def test_clear_search(self, cache: ResultCache) -> None:
        cache.set_search("s1", "q", [])
        assert cache.clear_search("s1") is True
        assert cache.clear_search("s1") is False

    def test_search_capacity(self, cache: ResultCache, clock) -> None:
        for i in range(7):
            cache.set_search(f"s{i}", "q", [])
            clock.advance(1)
        assert cache.list_search_ids() == ["s2", "s3", "s4", "s5", "s6"]


class TestAttachments:
    def test_handle_is_deterministic(self, cache: ResultCache) -> None:
        first = cache.set_attachment("m1", "a1", "a.pdf", "application/pdf", b"one")
        second = cache.set_attachment("m1", "a1", "a.pdf", "application/pdf", b"two")
        assert first == second == "m1:a1"
        assert cache.get_attachment(first).content == b"two"

    def test_generate_attachment_id(self) -> None:
        assert ResultCache.generate_attachment_id("m1", "a1") == "m1:a1"

    def test_metadata_preserved(self, cache: ResultCache) -> None:
        handle = cache.set_attachment("m1", "a1", "a.pdf", "application/pdf", b"%PDF-1.7")
        cached = cache.get_attachment(handle)
        assert cached.name == "a.pdf"
        assert cached.content_type == "application/pdf"
        assert cached.size == 8
        assert cached.message_id == "m1"
        assert cached.attachment_id == "a1"

    def test_stores_are_sized_independently(self, clock) -> None:
        c = ResultCache(
            CacheConfig(ttl_ms=60_000, max_entries=1, max_attachment_entries=3, sweep_interval_ms=0),
            clock=clock,
        )
        c.set_search("s1", "q", [])
        for i in range(3):
            c.set_attachment("m", f"a{i}", "f", "text/plain", b"x")
        assert c.list_search_ids() == ["s1"]
        assert len(c.list_attachment_ids()) == 3

    def test_clear_attachment(self, cache: ResultCache) -> None:
        handle = cache.set_attachment("m1", "a1", "a.txt", "text/plain", b"x")
        assert cache.clear_attachment(handle) is True
        assert cache.get_attachment(handle) is None


class TestMaintenance:
    def test_stats(self, cache: ResultCache) -> None:
        cache.set_search("s1", "q", [_hit("https://x/1"), _hit("https://x/2")])
        cache.set_search("s2", "q", [MailMessage(id="m")])
        cache.set_attachment("m1", "a1", "a.txt", "text/plain", b"12345")
        assert cache.stats().to_dict() == {
            "searchEntries": 2,
            "totalResults": 3,
            "attachmentEntries": 1,
            "attachmentBytes": 5,
        }

    def test_stats_ignore_expired(self, cache: ResultCache, clock) -> None:
        cache.set_search("s1", "q", [_hit("https://x/1")])
        clock.advance(60_001)
        assert cache.stats().search_entries == 0

    def test_clear_all(self, cache: ResultCache) -> None:
        cache.set_search("s1", "q", [])
        cache.set_attachment("m1", "a1", "a.txt", "text/plain", b"x")
        cache.clear_all()
        assert cache.list_search_ids() == []
        assert cache.list_attachment_ids() == []

    def test_cleanup_expired_covers_both_stores(self, cache: ResultCache, clock) -> None:
        cache.set_search("s1", "q", [])
        cache.set_attachment("m1", "a1", "a.txt", "text/plain", b"x")
        clock.advance(60_001)
        assert cache.cleanup_expired() == 2


class TestSweeper:
    def test_disabled_when_interval_is_zero(self, cache: ResultCache) -> None:
        assert cache.sweeper_running is False

    def test_started_at_construction_and_stopped_by_close(self) -> None:
        c = ResultCache(CacheConfig(sweep_interval_ms=60_000))
        try:
            assert c.sweeper_running is True
        finally:
            c.close()
        assert c.sweeper_running is False

    def test_close_is_idempotent_and_cache_stays_usable(self) -> None:
        c = ResultCache(CacheConfig(sweep_interval_ms=60_000))
        c.close()
        c.close()
        c.set_search("s1", "q", [])
        assert c.get_search("s1") is not None
