"""Availability cache tests with plain loader callables and a controllable clock."""

import threading
import time
from datetime import timedelta

from django.core.cache import cache as django_cache
from django.test import SimpleTestCase

from telehealth_backend.scheduling.exceptions import AvailabilityUnavailableError, NotFoundError
from telehealth_backend.scheduling.services.cache import AvailabilityCache, ProviderGenerations
from telehealth_backend.scheduling.services.clock import FixedClock

from .base import FIXED_MONDAY, utc

DAY = FIXED_MONDAY
NEXT_DAY = FIXED_MONDAY + timedelta(days=1)


class RecordingLoader:
    """Returns queued values (or raises queued exceptions) and counts calls."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = []
        self.gate = None
        self.entered = threading.Event()
        self.on_call = None

    def __call__(self, provider_id, date_from, date_to, slot_duration, *, should_stop=None):
        self.calls.append((provider_id, date_from, date_to, slot_duration))
        self.entered.set()
        if self.on_call is not None:
            self.on_call()
        if self.gate is not None:
            self.gate.wait(5)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FlakyGenerations(ProviderGenerations):
    """Raises on the listed (1-based) calls to ``current()``."""

    def __init__(self, *failing_calls):
        super().__init__()
        self.failing_calls = set(failing_calls)
        self.calls = 0

    def current(self, provider_id):
        self.calls += 1
        if self.calls in self.failing_calls:
            raise ConnectionError("cache backend unreachable")
        return super().current(provider_id)


class _CacheTestCase(SimpleTestCase):
    def setUp(self):
        django_cache.clear()
        self.clock = FixedClock(utc(DAY, 0))

    def _cache(self, loader, **kwargs):
        kwargs.setdefault("ttl", 60)
        kwargs.setdefault("idle", 600)
        kwargs.setdefault("timeout", 2)
        kwargs.setdefault("background", False)
        kwargs.setdefault("generations", ProviderGenerations())
        cache = AvailabilityCache(loader, clock=self.clock, **kwargs)
        self.addCleanup(cache.shutdown)
        return cache


class InlineCacheTest(_CacheTestCase):
    def test_fresh_entry_is_served_without_reloading(self):
        loader = RecordingLoader("v1")
        cache = self._cache(loader)

        self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")
        self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")
        self.assertEqual(len(loader.calls), 1)

    def test_key_includes_range_and_duration(self):
        loader = RecordingLoader("v")
        cache = self._cache(loader)

        cache.get(1, DAY, DAY, 30)
        cache.get(1, DAY, DAY, 15)
        cache.get(1, DAY, NEXT_DAY, 30)
        cache.get(2, DAY, DAY, 30)

        self.assertEqual(len(loader.calls), 4)
        self.assertEqual(len(cache), 4)

    def test_stale_entry_is_refreshed(self):
        loader = RecordingLoader("v1", "v2")
        cache = self._cache(loader, ttl=10)

        cache.get(1, DAY, DAY, 30)
        self.clock.advance(seconds=11)

        self.assertEqual(cache.get(1, DAY, DAY, 30), "v2")
        self.assertEqual(len(loader.calls), 2)

    def test_failed_refresh_falls_back_to_stale_value(self):
        loader = RecordingLoader("v1", RuntimeError("database down"))
        cache = self._cache(loader, ttl=10)

        cache.get(1, DAY, DAY, 30)
        self.clock.advance(seconds=11)

        with self.assertLogs("telehealth_backend.scheduling.services.cache", level="WARNING"):
            self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")

    def test_failure_without_stale_value_is_unavailable(self):
        cache = self._cache(RecordingLoader(RuntimeError("database down")))

        with self.assertLogs("telehealth_backend.scheduling.services.cache", level="WARNING"):
            with self.assertRaises(AvailabilityUnavailableError):
                cache.get(1, DAY, DAY, 30)
        self.assertEqual(len(cache), 0)

    def test_scheduling_errors_propagate(self):
        cache = self._cache(RecordingLoader(NotFoundError("no schedule", provider_id=1)))

        with self.assertRaises(NotFoundError):
            cache.get(1, DAY, DAY, 30)

    def test_invalidate_drops_only_that_provider(self):
        loader = RecordingLoader("v1", "v1-other", "v2")
        cache = self._cache(loader)

        cache.get(1, DAY, DAY, 30)
        cache.get(2, DAY, DAY, 30)
        cache.invalidate(1)

        self.assertEqual(len(cache), 1)
        self.assertEqual(cache.get(1, DAY, DAY, 30), "v2")
        self.assertEqual(cache.get(2, DAY, DAY, 30), "v1-other")
        self.assertEqual(len(loader.calls), 3)

    def test_invalidation_from_another_instance_is_honoured(self):
        loader = RecordingLoader("v1", "v2")
        first = self._cache(loader)
        second = self._cache(RecordingLoader("unused"))

        first.get(1, DAY, DAY, 30)
        second.invalidate(1)

        self.assertEqual(first.get(1, DAY, DAY, 30), "v2")

    def test_invalidate_all(self):
        loader = RecordingLoader("v")
        cache = self._cache(loader)

        cache.get(1, DAY, DAY, 30)
        cache.get(2, DAY, DAY, 30)
        cache.invalidate_all()
        cache.get(1, DAY, DAY, 30)

        self.assertEqual(len(loader.calls), 3)

    def test_load_superseded_by_invalidation_is_not_stored(self):
        loader = RecordingLoader("old", "new")
        cache = self._cache(loader)
        loader.on_call = lambda: (cache.invalidate(1), setattr(loader, "on_call", None))

        self.assertEqual(cache.get(1, DAY, DAY, 30), "old")
        self.assertEqual(len(cache), 0)
        self.assertEqual(cache.get(1, DAY, DAY, 30), "new")

    def test_sweep_evicts_idle_entries(self):
        cache = self._cache(RecordingLoader("v"), idle=100)

        cache.get(1, DAY, DAY, 30)
        self.clock.advance(seconds=50)
        cache.get(2, DAY, DAY, 30)
        self.clock.advance(seconds=60)

        self.assertEqual(cache.sweep(), 1)
        self.assertEqual(len(cache), 1)

    def test_reads_keep_entries_alive(self):
        cache = self._cache(RecordingLoader("v"), idle=100, ttl=1000)

        cache.get(1, DAY, DAY, 30)
        self.clock.advance(seconds=90)
        cache.get(1, DAY, DAY, 30)
        self.clock.advance(seconds=90)

        self.assertEqual(cache.sweep(), 0)


class BackgroundCacheTest(_CacheTestCase):
    def _wait_for(self, predicate, timeout=5):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(0.01)
        return False

    def test_concurrent_misses_share_one_load(self):
        loader = RecordingLoader("v1")
        loader.gate = threading.Event()
        cache = self._cache(loader, background=True, timeout=5)

        results = []
        threads = [
            threading.Thread(target=lambda: results.append(cache.get(1, DAY, DAY, 30)))
            for _ in range(5)
        ]
        for thread in threads:
            thread.start()
        self.assertTrue(loader.entered.wait(5))
        loader.gate.set()
        for thread in threads:
            thread.join(5)

        self.assertEqual(results, ["v1"] * 5)
        self.assertEqual(len(loader.calls), 1)

    def test_stale_value_served_while_refreshing(self):
        loader = RecordingLoader("v1", "v2")
        cache = self._cache(loader, background=True, ttl=10)

        self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")
        loader.gate = threading.Event()
        self.clock.advance(seconds=11)

        self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")
        self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")
        loader.gate.set()

        self.assertTrue(self._wait_for(lambda: cache.get(1, DAY, DAY, 30) == "v2"))
        self.assertEqual(len(loader.calls), 2)

    def test_slow_load_times_out(self):
        loader = RecordingLoader("v1")
        loader.gate = threading.Event()
        cache = self._cache(loader, background=True, timeout=0.05)

        with self.assertLogs("telehealth_backend.scheduling.services.cache", level="WARNING"):
            with self.assertRaises(AvailabilityUnavailableError):
                cache.get(1, DAY, DAY, 30)
        loader.gate.set()

        # The load keeps running and fills the cache once it completes.
        self.assertTrue(self._wait_for(lambda: len(cache) == 1))
        self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")

    def test_per_call_timeout_overrides_cache_default(self):
        loader = RecordingLoader("v1")
        loader.gate = threading.Event()
        cache = self._cache(loader, background=True, timeout=5)

        started = time.monotonic()
        with self.assertLogs("telehealth_backend.scheduling.services.cache", level="WARNING"):
            with self.assertRaises(AvailabilityUnavailableError):
                cache.get(1, DAY, DAY, 30, timeout=0.05)
        self.assertLess(time.monotonic() - started, 2)
        loader.gate.set()

    def test_failed_generation_lookup_after_load_does_not_wedge_the_key(self):
        # Call 1 is the first get(); call 2 is the post-load store check.
        loader = RecordingLoader("v1", "v2")
        cache = self._cache(loader, background=True, timeout=2, generations=FlakyGenerations(2))

        with self.assertLogs("telehealth_backend.scheduling.services.cache", level="WARNING"):
            self.assertEqual(cache.get(1, DAY, DAY, 30), "v1")
        self.assertEqual(len(cache), 0)

        self.assertEqual(cache.get(1, DAY, DAY, 30), "v2")
        self.assertEqual(len(loader.calls), 2)
        self.assertEqual(len(cache), 1)
