"""Tests for the invalidate-on-write cache."""

from cache import ADMIN_FILE_LIST, ANALYTICS_SUMMARY, FILE_LIST, InvalidatingCache
from tests.conftest import FakeClock


class TestInvalidatingCache:

    def test_remember_computes_once(self):
        cache = InvalidatingCache()
        calls = []

        def producer():
            calls.append(1)
            return ["a"]

        assert cache.remember(FILE_LIST, producer) == ["a"]
        assert cache.remember(FILE_LIST, producer) == ["a"]
        assert len(calls) == 1

    def test_empty_results_are_cached(self):
        cache = InvalidatingCache()
        calls = []
        cache.remember(FILE_LIST, lambda: calls.append(1) or [])
        cache.remember(FILE_LIST, lambda: calls.append(1) or [])
        assert len(calls) == 1

    def test_invalidate_named_keys_only(self):
        cache = InvalidatingCache()
        cache.set(FILE_LIST, 1)
        cache.set(ANALYTICS_SUMMARY, 2)

        cache.invalidate(FILE_LIST)

        assert cache.get(FILE_LIST) is None
        assert cache.get(ANALYTICS_SUMMARY) == 2

    def test_invalidate_without_keys_clears_all(self):
        cache = InvalidatingCache()
        for key in (FILE_LIST, ADMIN_FILE_LIST, ANALYTICS_SUMMARY):
            cache.set(key, key)
        cache.invalidate()
        assert all(cache.get(key) is None for key in (FILE_LIST, ADMIN_FILE_LIST, ANALYTICS_SUMMARY))

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = InvalidatingCache(ttl_seconds=10, clock=clock)
        cache.set(FILE_LIST, "value")

        clock.advance(9)
        assert cache.get(FILE_LIST) == "value"
        clock.advance(1)
        assert cache.get(FILE_LIST) is None


class TestCacheWiring:

    def test_upload_invalidates_listing(self, core, store):
        assert core.files.list_files() == []
        store()
        assert len(core.files.list_files()) == 1

    def test_download_refreshes_analytics(self, core, store):
        file = store()
        grant = core.mint_share_token(file.external_id)
        assert core.files.analytics()["total_downloads"] == 0

        b"".join(core.redeem_share_token(grant.token).chunks)

        assert core.files.analytics()["total_downloads"] == 1
