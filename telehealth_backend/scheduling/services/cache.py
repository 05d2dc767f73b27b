"""
Availability Cache.

In-process cache of generated slots keyed by
``(provider_id, date_from, date_to, slot_duration)``.

Policy:
- Fresh entries (younger than ``ttl``) are served directly.
- Stale entries are served immediately while one background load refreshes
  them (stale-while-revalidate). If that load fails the stale value stays.
- Misses wait for the load, at most ``timeout`` seconds. Concurrent callers of
  the same key share one load (single-flight).
- A load only stores its result if it completed and the provider's generation
  is unchanged since it started, so a cancelled or superseded load never
  overwrites the cache.
- ``invalidate(provider_id)`` bumps the provider's generation in Django's cache
  framework (shared between processes when that is Redis) and drops local
  entries. Entries from an older generation are never served.
- Entries not read for ``idle`` seconds are evicted by ``sweep()``, which also
  runs opportunistically from ``get()``.

With ``background=False`` loads run in the calling thread: a stale read then
refreshes synchronously and still falls back to the stale value on failure.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable

from django.core.cache import caches
from django.db import connections

from telehealth_backend.scheduling.conf import scheduling_setting
from telehealth_backend.scheduling.exceptions import (
    AvailabilityUnavailableError,
    GenerationCancelled,
    SchedulingError,
)

from .clock import SystemClock

logger = logging.getLogger(__name__)

Loader = Callable[..., Any]


@dataclass(frozen=True)
class CacheKey:
    provider_id: int
    date_from: date
    date_to: date
    slot_duration: int


class ProviderGenerations:
    """Per-provider invalidation counters stored in a Django cache."""

    prefix = 'availability:generation'

    def __init__(self, alias: str = 'default'):
        self.alias = alias

    @property
    def _cache(self):
        return caches[self.alias]

    def _key(self, provider_id: int | str) -> str:
        return f'{self.prefix}:{provider_id}'

    def current(self, provider_id: int) -> tuple[int, int]:
        values = self._cache.get_many([self._key('all'), self._key(provider_id)])
        return values.get(self._key('all'), 0), values.get(self._key(provider_id), 0)

    def _bump(self, key: str) -> None:
        if not self._cache.add(key, 1, timeout=None):
            try:
                self._cache.incr(key)
            except ValueError:
                # Evicted between add() and incr().
                self._cache.set(key, 1, timeout=None)

    def bump(self, provider_id: int) -> None:
        self._bump(self._key(provider_id))

    def bump_all(self) -> None:
        self._bump(self._key('all'))


class _Entry:
    __slots__ = ('value', 'generation', 'loaded_at', 'last_access')

    def __init__(self, value, generation, loaded_at: float):
        self.value = value
        self.generation = generation
        self.loaded_at = loaded_at
        self.last_access = loaded_at


class _Load:
    __slots__ = ('future', 'generation', 'cancelled')

    def __init__(self, generation):
        self.future: Future = Future()
        self.generation = generation
        self.cancelled = threading.Event()


class AvailabilityCache:
    """
    Args:
        loader: ``loader(provider_id, date_from, date_to, slot_duration,
            should_stop=callable)`` returning the slots to cache
        ttl: Seconds an entry is fresh
        idle: Seconds without reads before an entry is evicted
        timeout: Seconds a miss waits for its load
        background: Run loads on a worker pool (True) or in the caller (False)
        max_workers: Worker pool size
        clock: Provides ``monotonic()``
        generations: Invalidation counters; defaults to the ``default`` cache
    """

    def __init__(
        self,
        loader: Loader,
        *,
        ttl: float = 300,
        idle: float = 1800,
        timeout: float = 3,
        background: bool = True,
        max_workers: int = 4,
        clock=None,
        generations: ProviderGenerations | None = None,
    ):
        self._loader = loader
        self.ttl = ttl
        self.idle = idle
        self.timeout = timeout
        self._clock = clock or SystemClock()
        self._generations = generations or ProviderGenerations()
        self._executor = (
            ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='availability')
            if background else None
        )
        self._lock = threading.Lock()
        self._entries: dict[CacheKey, _Entry] = {}
        self._loads: dict[CacheKey, _Load] = {}
        self._last_sweep = self._clock.monotonic()

    @classmethod
    def from_settings(cls, loader: Loader, **kwargs) -> AvailabilityCache:
        options = {
            'ttl': scheduling_setting('CACHE_TTL_SECONDS'),
            'idle': scheduling_setting('CACHE_IDLE_SECONDS'),
            'timeout': scheduling_setting('CACHE_TIMEOUT_SECONDS'),
            'background': scheduling_setting('CACHE_BACKGROUND_REFRESH'),
            'max_workers': scheduling_setting('CACHE_MAX_WORKERS'),
        }
        options.update(kwargs)
        return cls(loader, **options)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(
        self,
        provider_id: int,
        date_from: date,
        date_to: date,
        slot_duration: int,
        *,
        timeout: float | None = None,
    ):
        """
        Cached slots for the key. ``timeout`` caps how long a miss waits for
        its load, in seconds; it defaults to the cache-wide ``timeout``.
        """
        key = CacheKey(provider_id, date_from, date_to, slot_duration)
        self._maybe_sweep()
        generation = self._generations.current(provider_id)
        now = self._clock.monotonic()

        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.generation != generation:
                logger.debug("availability cache drop (invalidated): %s", key)
                del self._entries[key]
                entry = None

            if entry is not None:
                entry.last_access = now
                if now - entry.loaded_at < self.ttl:
                    logger.debug("availability cache hit: %s", key)
                    return entry.value
                load, owner = self._start_load(key, generation)
                stale_value = entry.value
            else:
                load, owner = self._start_load(key, generation)
                stale_value = None

        if entry is not None:
            logger.debug("availability cache stale, refreshing: %s", key)
            if self._executor is None and owner:
                self._run_load(key, load)
                try:
                    return load.future.result()
                except Exception:
                    logger.warning("availability refresh failed, serving stale value: %s", key)
                    return stale_value
            return stale_value

        logger.debug("availability cache miss: %s", key)
        if self._executor is None and owner:
            self._run_load(key, load)
        return self._wait(key, load, timeout)

    def _start_load(self, key: CacheKey, generation) -> tuple[_Load, bool]:
        """Join the in-flight load for ``key`` or register a new one. Caller holds the lock."""
        load = self._loads.get(key)
        if load is not None and load.generation == generation:
            return load, False
        if load is not None:
            load.cancelled.set()

        load = _Load(generation)
        self._loads[key] = load
        if self._executor is not None:
            self._executor.submit(self._run_load, key, load)
        return load, True

    def _run_load(self, key: CacheKey, load: _Load) -> None:
        try:
            value = self._loader(
                key.provider_id,
                key.date_from,
                key.date_to,
                key.slot_duration,
                should_stop=load.cancelled.is_set,
            )
        except Exception as exc:
            with self._lock:
                if self._loads.get(key) is load:
                    del self._loads[key]
            if isinstance(exc, SchedulingError):
                logger.debug("availability load for %s ended: %s", key, exc)
            else:
                logger.warning("availability load failed: %s", key, exc_info=True)
            load.future.set_exception(exc)
            return
        finally:
            if self._executor is not None:
                connections.close_all()

        try:
            current = self._generations.current(key.provider_id)
        except Exception:
            logger.warning("availability generation lookup failed, result not stored: %s", key, exc_info=True)
            current = None

        try:
            now = self._clock.monotonic()
            with self._lock:
                if current is None or load.cancelled.is_set() or current != load.generation:
                    logger.debug("availability load superseded, not stored: %s", key)
                else:
                    previous = self._entries.get(key)
                    entry = _Entry(value, load.generation, now)
                    if previous is not None:
                        entry.last_access = previous.last_access
                    self._entries[key] = entry
        finally:
            with self._lock:
                if self._loads.get(key) is load:
                    del self._loads[key]
            load.future.set_result(value)

    def _wait(self, key: CacheKey, load: _Load, timeout: float | None = None):
        if timeout is None:
            timeout = self.timeout
        try:
            return load.future.result(timeout=timeout)
        except FutureTimeout:
            logger.warning("availability load timed out after %ss: %s", timeout, key)
            raise AvailabilityUnavailableError(key.provider_id)
        except GenerationCancelled:
            # Superseded by an invalidation while we waited.
            return self.get(key.provider_id, key.date_from, key.date_to, key.slot_duration, timeout=timeout)
        except SchedulingError:
            raise
        except Exception as exc:
            raise AvailabilityUnavailableError(key.provider_id) from exc

    # ------------------------------------------------------------------
    # Invalidation and eviction
    # ------------------------------------------------------------------

    def invalidate(self, provider_id: int) -> None:
        self._generations.bump(provider_id)
        with self._lock:
            for key in [k for k in self._entries if k.provider_id == provider_id]:
                del self._entries[key]
            for key, load in self._loads.items():
                if key.provider_id == provider_id:
                    load.cancelled.set()
        logger.debug("availability cache invalidated: provider_id=%s", provider_id)

    def invalidate_all(self) -> None:
        self._generations.bump_all()
        with self._lock:
            self._entries.clear()
            for load in self._loads.values():
                load.cancelled.set()
        logger.info("availability cache flushed")

    def sweep(self) -> int:
        """Evict entries idle for longer than ``idle``. Returns the count."""
        now = self._clock.monotonic()
        with self._lock:
            self._last_sweep = now
            idle_keys = [k for k, e in self._entries.items() if now - e.last_access >= self.idle]
            for key in idle_keys:
                del self._entries[key]
        if idle_keys:
            logger.debug("availability cache swept %s idle entries", len(idle_keys))
        return len(idle_keys)

    def _maybe_sweep(self) -> None:
        if self._clock.monotonic() - self._last_sweep >= min(self.idle, 60):
            self.sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def shutdown(self) -> None:
        if self._executor is not None:
            with self._lock:
                for load in self._loads.values():
                    load.cancelled.set()
            self._executor.shutdown(wait=False)
