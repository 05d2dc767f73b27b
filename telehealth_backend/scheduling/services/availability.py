"""
Public entry points of the availability engine.

- ``get_availability``: cached slot listing for calendar browsing
- ``check_conflict``: fresh conflict verdict for a proposed booking
- ``invalidate_availability``: drop cached slots after a committed write

The process-wide ``AvailabilityCache`` and ``SystemClock`` are built in
``SchedulingConfig.ready()``; callers may pass their own for tests.
"""

from __future__ import annotations

from datetime import date
from functools import partial

from django.apps import apps
from django.db import transaction

from telehealth_backend.scheduling.conf import scheduling_setting
from telehealth_backend.scheduling.exceptions import InvalidRangeError

from . import store
from .conflicts import ConflictCheckResult, check_conflict as _check_conflict
from .slots import DaySlots, MalformedScheduleData, generate_slots, local_day_window, schedule_zone


def _app_config():
    return apps.get_app_config('scheduling')


def get_cache():
    return _app_config().availability_cache


def get_clock():
    return _app_config().clock


def validate_range(date_from: date, date_to: date, slot_duration: int) -> None:
    """
    Raises:
        InvalidRangeError: non-positive duration, reversed range, or a range
            longer than ``MAX_RANGE_DAYS``.
    """
    if isinstance(slot_duration, bool) or not isinstance(slot_duration, int) or slot_duration <= 0:
        raise InvalidRangeError("slot_duration must be a positive number of minutes", field='slot_duration')
    if date_from > date_to:
        raise InvalidRangeError("date_from must be on or before date_to", field='date_from')
    max_days = scheduling_setting('MAX_RANGE_DAYS')
    if (date_to - date_from).days + 1 > max_days:
        raise InvalidRangeError(f"Date range may span at most {max_days} days", field='date_to')


def load_availability(
    provider_id: int,
    date_from: date,
    date_to: date,
    slot_duration: int,
    *,
    should_stop=None,
    clock=None,
) -> tuple[DaySlots, ...]:
    """Read the store and generate slots. This is the cache's loader."""
    clock = clock or get_clock()
    schedule = store.get_active_schedule(provider_id)
    try:
        start, end = local_day_window(schedule_zone(schedule), date_from, date_to)
    except MalformedScheduleData:
        # Every day will come back empty; no appointments needed.
        appointments = []
    else:
        appointments = store.get_appointments(provider_id, start, end)
    days = generate_slots(
        schedule,
        appointments,
        date_from,
        date_to,
        slot_duration,
        now=clock.now(),
        should_stop=should_stop,
    )
    return tuple(days)


def get_availability(
    *,
    provider_id: int,
    date_from: date,
    date_to: date,
    slot_duration: int | None = None,
    cache=None,
    timeout: float | None = None,
) -> tuple[DaySlots, ...]:
    """
    Bookable slots for ``provider_id`` per date in ``[date_from, date_to]``.

    ``timeout`` is the caller's deadline in seconds for a cache miss; it
    defaults to ``CACHE_TIMEOUT_SECONDS``. A stale entry is always served
    immediately.

    Raises:
        InvalidRangeError: see ``validate_range``
        NotFoundError: the provider has no active schedule
        AvailabilityUnavailableError: load failed or timed out and nothing
            usable is cached
    """
    if slot_duration is None:
        slot_duration = scheduling_setting('DEFAULT_SLOT_MINUTES')
    validate_range(date_from, date_to, slot_duration)
    cache = cache or get_cache()
    return cache.get(provider_id, date_from, date_to, slot_duration, timeout=timeout)


def check_conflict(
    *,
    provider_id: int,
    proposed_start,
    duration: int,
    patient_id: int | None = None,
    exclude_appointment_id: int | None = None,
    clock=None,
    should_stop=None,
) -> ConflictCheckResult:
    """Fresh conflict check; never consults the availability cache."""
    return _check_conflict(
        provider_id=provider_id,
        proposed_start=proposed_start,
        duration=duration,
        patient_id=patient_id,
        exclude_appointment_id=exclude_appointment_id,
        clock=clock or get_clock(),
        should_stop=should_stop,
    )


def invalidate_availability(provider_id: int, *, cache=None) -> None:
    cache = cache or get_cache()
    cache.invalidate(provider_id)


def invalidate_on_commit(provider_id: int, *, cache=None) -> None:
    """Invalidate once the surrounding transaction commits (immediately if none)."""
    transaction.on_commit(partial(invalidate_availability, provider_id, cache=cache))
