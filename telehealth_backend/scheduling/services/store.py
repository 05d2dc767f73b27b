"""
Schedule Store for the availability engine.

Read side: builds immutable snapshots of a provider's active schedule and of
the appointments in a time window. The slot generator and the conflict
detector only ever see these snapshots, never model instances.

Write side: schedule CRUD. Every write runs in a transaction holding a row lock
on the provider; writes that could produce a second default+active schedule
for a provider are rejected with ScheduleConflictError.

Architecture Rules:
- No caching at this layer; it is the consistency source of truth.
- No availability policy here (that lives in slots.py / conflicts.py).
- Cache invalidation after a write is the caller's job.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone as dt_timezone
from typing import Any, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from django.contrib.auth import get_user_model
from django.db import transaction
from django.db.models import Prefetch

from telehealth_backend.scheduling.conf import scheduling_setting
from telehealth_backend.scheduling.exceptions import (
    InvalidScheduleData,
    NotFoundError,
    ScheduleConflictError,
)
from telehealth_backend.scheduling.models import (
    Appointment,
    BreakPeriod,
    Schedule,
    ScheduleException,
    WeeklyAvailability,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class WeeklyEntry:
    day_of_week: int
    start_time: time
    end_time: time
    is_available: bool = True


@dataclass(frozen=True)
class BreakEntry:
    start_time: time
    end_time: time
    is_recurring: bool = True
    day_of_week: int | None = None
    date: date | None = None  # one-off breaks: date of the bound exception
    title: str = ''
    id: int | None = None

    def applies_to(self, day: date) -> bool:
        if self.is_recurring:
            return self.day_of_week is None or self.day_of_week == day.weekday()
        return self.date == day


@dataclass(frozen=True)
class ExceptionEntry:
    date: date
    type: str
    start_time: time | None = None
    end_time: time | None = None
    title: str = ''
    id: int | None = None


@dataclass(frozen=True)
class ScheduleSnapshot:
    """Everything the engine needs to know about one schedule."""
    provider_id: int
    timezone: str
    weekly: tuple[WeeklyEntry, ...] = ()
    breaks: tuple[BreakEntry, ...] = ()
    exceptions: tuple[ExceptionEntry, ...] = ()
    buffer_minutes: int = 0
    buffer_mandatory: bool = False
    id: int | None = None

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def weekly_for(self, weekday: int) -> WeeklyEntry | None:
        for entry in self.weekly:
            if entry.day_of_week == weekday:
                return entry
        return None

    def exceptions_on(self, day: date) -> list[ExceptionEntry]:
        return [e for e in self.exceptions if e.date == day]

    def breaks_on(self, day: date) -> list[BreakEntry]:
        return [b for b in self.breaks if b.applies_to(day)]


@dataclass(frozen=True)
class AppointmentSnapshot:
    provider_id: int
    start: datetime
    end: datetime
    patient_id: int | None = None
    status: str = Appointment.STATUS_SCHEDULED
    title: str = ''
    id: int | None = None


def snapshot_schedule(schedule: Schedule) -> ScheduleSnapshot:
    """Build a snapshot from a schedule with its related rows prefetched."""
    buffer_minutes = schedule.buffer_minutes
    if buffer_minutes is None:
        buffer_minutes = scheduling_setting('BUFFER_MINUTES')
    buffer_mandatory = schedule.buffer_mandatory
    if buffer_mandatory is None:
        buffer_mandatory = scheduling_setting('BUFFER_MANDATORY')

    weekly = tuple(
        WeeklyEntry(
            day_of_week=w.day_of_week,
            start_time=w.start_time,
            end_time=w.end_time,
            is_available=w.is_available,
        )
        for w in schedule.weekly_availability.all()
    )
    breaks = tuple(
        BreakEntry(
            id=b.id,
            start_time=b.start_time,
            end_time=b.end_time,
            is_recurring=b.is_recurring,
            day_of_week=b.day_of_week,
            date=b.exception.date if (not b.is_recurring and b.exception_id) else None,
            title=b.title,
        )
        for b in schedule.breaks.all()
    )
    exceptions = tuple(
        ExceptionEntry(
            id=e.id,
            date=e.date,
            type=e.type,
            start_time=e.start_time,
            end_time=e.end_time,
            title=e.title,
        )
        for e in schedule.exceptions.all()
    )
    return ScheduleSnapshot(
        id=schedule.id,
        provider_id=schedule.provider_id,
        timezone=schedule.timezone,
        weekly=weekly,
        breaks=breaks,
        exceptions=exceptions,
        buffer_minutes=int(buffer_minutes or 0),
        buffer_mandatory=bool(buffer_mandatory),
    )


def snapshot_appointment(appointment: Appointment) -> AppointmentSnapshot:
    return AppointmentSnapshot(
        id=appointment.id,
        provider_id=appointment.provider_id,
        patient_id=appointment.patient_id,
        start=appointment.appointment_date.astimezone(dt_timezone.utc),
        end=appointment.end_date.astimezone(dt_timezone.utc),
        status=appointment.status,
        title=appointment.reason or f"Appointment #{appointment.id}",
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------

def _schedule_queryset():
    return Schedule.objects.prefetch_related(
        'weekly_availability',
        Prefetch('breaks', queryset=BreakPeriod.objects.select_related('exception')),
        'exceptions',
    )


def get_active_schedule(provider_id: int, schedule_id: int | None = None) -> ScheduleSnapshot:
    """
    Return the provider's default+active schedule as a snapshot.

    If ``schedule_id`` is given, that schedule is used instead, provided it
    belongs to the provider and is active.

    Raises:
        NotFoundError: The provider is not bookable.
    """
    qs = _schedule_queryset().filter(provider_id=provider_id, is_active=True)
    if schedule_id is not None:
        qs = qs.filter(id=schedule_id)
    else:
        qs = qs.filter(is_default=True)

    schedule = qs.first()
    if schedule is None:
        raise NotFoundError(f"Provider {provider_id} has no active schedule", provider_id=provider_id)
    return snapshot_schedule(schedule)


def get_schedule_snapshot(schedule_id: int) -> ScheduleSnapshot:
    """Snapshot of any schedule by id, active or not."""
    schedule = _schedule_queryset().filter(id=schedule_id).first()
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found")
    return snapshot_schedule(schedule)


def get_appointments(
    provider_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> list[AppointmentSnapshot]:
    """
    Non-cancelled appointments of a provider whose interval intersects
    ``[start, end)``, ascending by start.
    """
    qs = Appointment.objects.filter(
        provider_id=provider_id,
        appointment_date__lt=end,
        end_date__gt=start,
    ).exclude(status=Appointment.STATUS_CANCELLED)
    if exclude_appointment_id is not None:
        qs = qs.exclude(id=exclude_appointment_id)
    return [snapshot_appointment(a) for a in qs.order_by('appointment_date', 'id')]


def get_patient_appointments(
    patient_id: int,
    start: datetime,
    end: datetime,
    exclude_appointment_id: int | None = None,
) -> list[AppointmentSnapshot]:
    """Same as ``get_appointments`` but across all providers for one patient."""
    qs = Appointment.objects.filter(
        patient_id=patient_id,
        appointment_date__lt=end,
        end_date__gt=start,
    ).exclude(status=Appointment.STATUS_CANCELLED)
    if exclude_appointment_id is not None:
        qs = qs.exclude(id=exclude_appointment_id)
    return [snapshot_appointment(a) for a in qs.order_by('appointment_date', 'id')]


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------

def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise InvalidScheduleData(f"Unknown timezone: {name}", field='timezone')
    return name


def _validate_day_of_week(value: int | None, *, allow_none: bool = False) -> None:
    if value is None and allow_none:
        return
    if value is None or not 0 <= int(value) <= 6:
        raise InvalidScheduleData("day_of_week must be between 0 (Monday) and 6 (Sunday)", field='day_of_week')


def _validate_times(start_time: time | None, end_time: time | None) -> None:
    if start_time is None or end_time is None:
        raise InvalidScheduleData("start_time and end_time are required", field='start_time')
    if start_time >= end_time:
        raise InvalidScheduleData("end_time must be after start_time", field='end_time')


def lock_provider(provider_id: int):
    """Take a row lock on the provider. Must run inside ``transaction.atomic``."""
    User = get_user_model()
    provider = User.objects.select_for_update().filter(pk=provider_id).first()
    if provider is None:
        raise NotFoundError(f"Provider {provider_id} not found", provider_id=provider_id)
    return provider


def _locked_schedule(schedule_id: int) -> Schedule:
    schedule = Schedule.objects.filter(id=schedule_id).first()
    if schedule is None:
        raise NotFoundError(f"Schedule {schedule_id} not found")
    lock_provider(schedule.provider_id)
    # Re-read under the lock.
    return Schedule.objects.select_for_update().get(id=schedule_id)


def _ensure_default_slot_free(provider_id: int, exclude_schedule_id: int | None = None) -> None:
    qs = Schedule.objects.filter(provider_id=provider_id, is_default=True, is_active=True)
    if exclude_schedule_id is not None:
        qs = qs.exclude(id=exclude_schedule_id)
    if qs.exists():
        raise ScheduleConflictError(
            "Provider already has a default active schedule",
            provider_id=provider_id,
            reason='duplicate_default',
        )


# ---------------------------------------------------------------------------
# Writes
# ---------------------------------------------------------------------------

SCHEDULE_UPDATABLE_FIELDS = (
    'name',
    'timezone',
    'is_default',
    'is_active',
    'buffer_minutes',
    'buffer_mandatory',
)


def create_schedule(
    *,
    provider_id: int,
    name: str = 'Default',
    timezone: str = 'UTC',
    is_default: bool = False,
    is_active: bool = True,
    buffer_minutes: int | None = None,
    buffer_mandatory: bool | None = None,
    weekly: Iterable[dict[str, Any]] = (),
) -> Schedule:
    """
    Create a schedule, optionally with its weekly pattern.

    Raises:
        ScheduleConflictError: A second default+active schedule, or two weekly
            entries for the same weekday.
        InvalidScheduleData: Unknown timezone or malformed weekly entry.
    """
    validate_timezone(timezone)
    weekly = list(weekly)
    seen_days: set[int] = set()
    for entry in weekly:
        _validate_day_of_week(entry.get('day_of_week'))
        _validate_times(entry.get('start_time'), entry.get('end_time'))
        day = int(entry['day_of_week'])
        if day in seen_days:
            raise ScheduleConflictError(
                f"Duplicate weekly entry for day_of_week={day}",
                provider_id=provider_id,
                reason='duplicate_weekday',
            )
        seen_days.add(day)

    with transaction.atomic():
        lock_provider(provider_id)
        if is_default and is_active:
            _ensure_default_slot_free(provider_id)
        schedule = Schedule.objects.create(
            provider_id=provider_id,
            name=name,
            timezone=timezone,
            is_default=is_default,
            is_active=is_active,
            buffer_minutes=buffer_minutes,
            buffer_mandatory=buffer_mandatory,
        )
        WeeklyAvailability.objects.bulk_create([
            WeeklyAvailability(
                schedule=schedule,
                day_of_week=int(entry['day_of_week']),
                start_time=entry['start_time'],
                end_time=entry['end_time'],
                is_available=entry.get('is_available', True),
            )
            for entry in weekly
        ])

    logger.info("schedule created: id=%s provider_id=%s default=%s", schedule.id, provider_id, is_default)
    return schedule


def update_schedule(*, schedule_id: int, **changes: Any) -> Schedule:
    """Apply ``changes`` (see ``SCHEDULE_UPDATABLE_FIELDS``) to a schedule."""
    unknown = set(changes) - set(SCHEDULE_UPDATABLE_FIELDS)
    if unknown:
        raise InvalidScheduleData(f"Cannot update field(s): {', '.join(sorted(unknown))}", field=sorted(unknown)[0])
    if 'timezone' in changes:
        validate_timezone(changes['timezone'])

    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        for field_name, value in changes.items():
            setattr(schedule, field_name, value)
        if schedule.is_default and schedule.is_active:
            _ensure_default_slot_free(schedule.provider_id, exclude_schedule_id=schedule.id)
        schedule.save()
    return schedule


def delete_schedule(*, schedule_id: int) -> int:
    """Delete a schedule with its nested rows. Returns the provider id."""
    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        provider_id = schedule.provider_id
        schedule.delete()
    logger.info("schedule deleted: id=%s provider_id=%s", schedule_id, provider_id)
    return provider_id


def set_weekly_availability(
    *,
    schedule_id: int,
    day_of_week: int,
    start_time: time,
    end_time: time,
    is_available: bool = True,
) -> WeeklyAvailability:
    """Create or replace the weekly entry for one weekday."""
    _validate_day_of_week(day_of_week)
    _validate_times(start_time, end_time)

    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        entry, _ = WeeklyAvailability.objects.update_or_create(
            schedule=schedule,
            day_of_week=day_of_week,
            defaults={
                'start_time': start_time,
                'end_time': end_time,
                'is_available': is_available,
            },
        )
    return entry


def add_break(
    *,
    schedule_id: int,
    start_time: time,
    end_time: time,
    is_recurring: bool = True,
    day_of_week: int | None = None,
    exception_id: int | None = None,
    title: str = '',
) -> BreakPeriod:
    """
    Add a break. Recurring breaks with no ``day_of_week`` apply every day;
    one-off breaks must be bound to an exception of the same schedule.
    """
    _validate_times(start_time, end_time)
    _validate_day_of_week(day_of_week, allow_none=True)
    if not is_recurring and exception_id is None:
        raise InvalidScheduleData("One-off breaks need an exception", field='exception')

    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        if exception_id is not None and not ScheduleException.objects.filter(id=exception_id, schedule=schedule).exists():
            raise NotFoundError(f"Exception {exception_id} not found on schedule {schedule_id}")
        brk = BreakPeriod.objects.create(
            schedule=schedule,
            start_time=start_time,
            end_time=end_time,
            is_recurring=is_recurring,
            day_of_week=day_of_week if is_recurring else None,
            exception_id=exception_id,
            title=title,
        )
    return brk


def remove_break(*, schedule_id: int, break_id: int) -> int:
    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        deleted, _ = BreakPeriod.objects.filter(id=break_id, schedule=schedule).delete()
        if not deleted:
            raise NotFoundError(f"Break {break_id} not found on schedule {schedule_id}")
    return schedule.provider_id


def add_exception(
    *,
    schedule_id: int,
    date: date,
    type: str = ScheduleException.TYPE_DAY_OFF,
    start_time: time | None = None,
    end_time: time | None = None,
    title: str = '',
    notes: str = '',
) -> ScheduleException:
    """Add a date-specific override. Hour-carrying types need start/end."""
    valid_types = {choice for choice, _ in ScheduleException.TYPE_CHOICES}
    if type not in valid_types:
        raise InvalidScheduleData(f"Unknown exception type: {type}", field='type')
    if type == ScheduleException.TYPE_DAY_OFF:
        start_time = end_time = None
    else:
        _validate_times(start_time, end_time)

    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        exc = ScheduleException.objects.create(
            schedule=schedule,
            date=date,
            type=type,
            start_time=start_time,
            end_time=end_time,
            title=title,
            notes=notes,
        )
    return exc


def remove_exception(*, schedule_id: int, exception_id: int) -> int:
    with transaction.atomic():
        schedule = _locked_schedule(schedule_id)
        deleted, _ = ScheduleException.objects.filter(id=exception_id, schedule=schedule).delete()
        if not deleted:
            raise NotFoundError(f"Exception {exception_id} not found on schedule {schedule_id}")
    return schedule.provider_id
