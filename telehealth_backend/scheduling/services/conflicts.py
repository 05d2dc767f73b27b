"""
Conflict Detector for proposed appointments.

``check_conflict`` reads fresh data from the store (never the availability
cache) and returns a ``ConflictCheckResult``. Conflicts are data: the
function only raises for malformed input or an unbookable provider.

Checks, in order:
1. proposed start in the past (reject)
2. day off / outside working hours (reject; skips 4-6)
3. overlap with a break
4. overlap with another non-cancelled appointment of the provider
5. buffer rule against the temporal neighbours (warning, or error if mandatory)
6. same-patient same-day appointment (warning)
7. if any error: up to MAX_SUGGESTIONS nearest open same-duration slots

``validate_schedule_changes`` re-uses steps 2-3 to find upcoming
appointments that a proposed schedule edit would strand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone as dt_timezone
from typing import Any, Callable, Iterable
from zoneinfo import ZoneInfo

from django.utils import timezone

from telehealth_backend.scheduling.conf import scheduling_setting
from telehealth_backend.scheduling.exceptions import GenerationCancelled, InvalidRangeError
from telehealth_backend.scheduling.models import Appointment

from . import store
from .clock import SystemClock
from .slots import (
    MalformedScheduleData,
    TimeSlot,
    available_slots,
    break_intervals,
    generate_slots,
    iso_z,
    local_day_window,
    overlaps,
    resolve_day,
    schedule_zone,
    working_intervals,
)
from .store import AppointmentSnapshot, BreakEntry, ExceptionEntry, ScheduleSnapshot, WeeklyEntry

logger = logging.getLogger(__name__)

TYPE_APPOINTMENT = 'appointment'
TYPE_BREAK = 'break'
TYPE_UNAVAILABLE = 'unavailable'
TYPE_OUTSIDE_HOURS = 'outside_hours'
TYPE_BUFFER_VIOLATION = 'buffer_violation'

SEVERITY_ERROR = 'error'
SEVERITY_WARNING = 'warning'
SEVERITY_INFO = 'info'

ITEM_APPOINTMENT = 'appointment'
ITEM_BREAK = 'break'
ITEM_EXCEPTION = 'exception'


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConflictingItem:
    """The thing a proposed appointment collides with."""
    type: str  # 'appointment', 'break', 'exception'
    start: datetime
    end: datetime
    id: int | None = None
    title: str = ''

    def to_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'type': self.type,
            'start': iso_z(self.start),
            'end': iso_z(self.end),
        }


@dataclass(frozen=True)
class ConflictDetails:
    type: str
    severity: str
    message: str
    conflicting_item: ConflictingItem | None = None
    suggested_alternatives: tuple[TimeSlot, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        result = {
            'type': self.type,
            'severity': self.severity,
            'message': self.message,
        }
        if self.conflicting_item is not None:
            result['conflicting_item'] = self.conflicting_item.to_dict()
        if self.suggested_alternatives:
            result['suggested_alternatives'] = [s.to_dict() for s in self.suggested_alternatives]
        return result


@dataclass(frozen=True)
class ConflictCheckResult:
    """
    ``conflicts`` holds error-severity entries, ``warnings`` the soft ones and
    ``suggestions`` at most one info entry carrying alternative slots.
    """
    is_valid: bool
    conflicts: tuple[ConflictDetails, ...] = ()
    warnings: tuple[ConflictDetails, ...] = ()
    suggestions: tuple[ConflictDetails, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'conflicts': [c.to_dict() for c in self.conflicts],
            'warnings': [w.to_dict() for w in self.warnings],
            'suggestions': [s.to_dict() for s in self.suggestions],
        }


@dataclass(frozen=True)
class ScheduleValidationResult:
    is_valid: bool
    affected_appointments: tuple[AppointmentSnapshot, ...] = ()
    conflicts: tuple[ConflictDetails, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            'is_valid': self.is_valid,
            'affected_appointments': [
                {
                    'id': a.id,
                    'patient_id': a.patient_id,
                    'title': a.title,
                    'start': iso_z(a.start),
                    'end': iso_z(a.end),
                    'status': a.status,
                }
                for a in self.affected_appointments
            ],
            'conflicts': [c.to_dict() for c in self.conflicts],
        }


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def zone_or_utc(schedule: ScheduleSnapshot) -> ZoneInfo | dt_timezone:
    try:
        return schedule_zone(schedule)
    except MalformedScheduleData:
        logger.warning("Invalid timezone on schedule %s, using UTC", schedule.id)
        return dt_timezone.utc


def as_utc(value: datetime) -> datetime:
    """Ensure datetime is timezone-aware and in UTC."""
    if timezone.is_naive(value):
        value = timezone.make_aware(value, timezone.get_default_timezone())
    return value.astimezone(dt_timezone.utc)


def validate_duration(duration: int) -> None:
    if isinstance(duration, bool) or not isinstance(duration, int) or duration <= 0:
        raise InvalidRangeError("duration must be a positive number of minutes", field='duration')


def _raise_if_stopped(should_stop: Callable[[], bool] | None) -> None:
    if should_stop is not None and should_stop():
        raise GenerationCancelled("conflict check cancelled")


def _appointment_item(appointment: AppointmentSnapshot) -> ConflictingItem:
    return ConflictingItem(
        type=ITEM_APPOINTMENT,
        id=appointment.id,
        title=appointment.title,
        start=appointment.start,
        end=appointment.end,
    )


def _day_off_item(exc: ExceptionEntry, tz) -> ConflictingItem:
    start, end = local_day_window(tz, exc.date, exc.date)
    return ConflictingItem(type=ITEM_EXCEPTION, id=exc.id, title=exc.title or 'Day off', start=start, end=end)


def _availability_conflicts(
    schedule: ScheduleSnapshot,
    start: datetime,
    end: datetime,
) -> list[ConflictDetails]:
    """
    Steps 2-3: day off, containment in working hours, breaks. A failed
    containment stops further checks.
    """
    tz = zone_or_utc(schedule)
    local_day = start.astimezone(tz).date()

    try:
        day = resolve_day(schedule, local_day)
        intervals = working_intervals(schedule, local_day)
        breaks = break_intervals(schedule, local_day)
    except MalformedScheduleData as exc:
        logger.warning("Malformed schedule data (schedule_id=%s, date=%s): %s", schedule.id, local_day, exc)
        return [ConflictDetails(
            type=TYPE_OUTSIDE_HOURS,
            severity=SEVERITY_ERROR,
            message="No usable working hours on this date",
        )]

    if day.day_off is not None:
        return [ConflictDetails(
            type=TYPE_UNAVAILABLE,
            severity=SEVERITY_ERROR,
            message=f"Provider is unavailable on {local_day.isoformat()}",
            conflicting_item=_day_off_item(day.day_off, tz),
        )]

    if not any(w_start <= start and end <= w_end for w_start, w_end in intervals):
        return [ConflictDetails(
            type=TYPE_OUTSIDE_HOURS,
            severity=SEVERITY_ERROR,
            message="Requested time is outside working hours",
        )]

    result = []
    for b_start, b_end, brk in breaks:
        if overlaps(start, end, b_start, b_end):
            result.append(ConflictDetails(
                type=TYPE_BREAK,
                severity=SEVERITY_ERROR,
                message=f"Requested time overlaps with {brk.title or 'a break'}",
                conflicting_item=ConflictingItem(
                    type=ITEM_BREAK,
                    id=brk.id,
                    title=brk.title or 'Break',
                    start=b_start,
                    end=b_end,
                ),
            ))
    return result


def _buffer_conflicts(
    schedule: ScheduleSnapshot,
    start: datetime,
    end: datetime,
    others: list[AppointmentSnapshot],
) -> list[ConflictDetails]:
    """Gap to the nearest appointment before and after must be >= buffer."""
    if schedule.buffer_minutes <= 0:
        return []
    buffer = timedelta(minutes=schedule.buffer_minutes)
    severity = SEVERITY_ERROR if schedule.buffer_mandatory else SEVERITY_WARNING

    previous = max((a for a in others if a.end <= start), key=lambda a: a.end, default=None)
    following = min((a for a in others if a.start >= end), key=lambda a: a.start, default=None)

    result = []
    for neighbour, gap in (
        (previous, start - previous.end if previous else None),
        (following, following.start - end if following else None),
    ):
        if neighbour is not None and gap < buffer:
            result.append(ConflictDetails(
                type=TYPE_BUFFER_VIOLATION,
                severity=severity,
                message=(
                    f"Only {int(gap.total_seconds() // 60)} minutes between this appointment and "
                    f"'{neighbour.title}' (minimum {schedule.buffer_minutes})"
                ),
                conflicting_item=_appointment_item(neighbour),
            ))
    return result


def find_alternatives(
    schedule: ScheduleSnapshot,
    appointments: Iterable[AppointmentSnapshot],
    proposed_start: datetime,
    duration: int,
    *,
    now: datetime,
    window_days: int,
    limit: int,
    should_stop: Callable[[], bool] | None = None,
) -> list[TimeSlot]:
    """
    Nearest open slots of ``duration`` minutes within ``window_days`` of the
    proposed date, by absolute distance; earlier slot wins ties.

    Raises:
        GenerationCancelled: ``should_stop()`` returned True mid-search
    """
    tz = zone_or_utc(schedule)
    local_day = proposed_start.astimezone(tz).date()
    others = list(appointments)
    days = generate_slots(
        schedule,
        others,
        local_day - timedelta(days=window_days),
        local_day + timedelta(days=window_days),
        duration,
        now=now,
        should_stop=should_stop,
    )
    candidates = [s for s in available_slots(days) if s.start != proposed_start]
    if schedule.buffer_mandatory:
        candidates = [s for s in candidates if not _buffer_conflicts(schedule, s.start, s.end, others)]
    candidates.sort(key=lambda s: (abs(s.start - proposed_start), s.start))
    return candidates[:limit]


# ---------------------------------------------------------------------------
# Pure evaluation
# ---------------------------------------------------------------------------

def evaluate_conflict(
    schedule: ScheduleSnapshot,
    appointments: Iterable[AppointmentSnapshot],
    proposed_start: datetime,
    duration: int,
    *,
    now: datetime,
    patient_appointments: Iterable[AppointmentSnapshot] = (),
    exclude_appointment_id: int | None = None,
    window_days: int | None = None,
    max_suggestions: int | None = None,
    should_stop: Callable[[], bool] | None = None,
) -> ConflictCheckResult:
    """
    Evaluate a proposed appointment against snapshots.

    ``appointments`` should cover the suggestion window around the proposed
    date; ``patient_appointments`` at least the proposed local day.
    ``should_stop`` is polled before the checks and between suggestion days;
    once it returns True the evaluation raises ``GenerationCancelled``.
    """
    validate_duration(duration)
    _raise_if_stopped(should_stop)
    if window_days is None:
        window_days = scheduling_setting('SUGGESTION_WINDOW_DAYS')
    if max_suggestions is None:
        max_suggestions = scheduling_setting('MAX_SUGGESTIONS')

    start = as_utc(proposed_start)
    end = start + timedelta(minutes=duration)
    others = [
        a for a in appointments
        if a.status != Appointment.STATUS_CANCELLED
        and (exclude_appointment_id is None or a.id != exclude_appointment_id)
    ]

    errors: list[ConflictDetails] = []
    warnings: list[ConflictDetails] = []

    if start < now:
        errors.append(ConflictDetails(
            type=TYPE_UNAVAILABLE,
            severity=SEVERITY_ERROR,
            message="Requested time is in the past",
        ))

    availability = _availability_conflicts(schedule, start, end)
    rejected = any(c.type in (TYPE_OUTSIDE_HOURS, TYPE_UNAVAILABLE) for c in availability)
    errors.extend(availability)

    if not rejected:
        for appointment in others:
            if overlaps(start, end, appointment.start, appointment.end):
                errors.append(ConflictDetails(
                    type=TYPE_APPOINTMENT,
                    severity=SEVERITY_ERROR,
                    message=f"Provider already has '{appointment.title}' at this time",
                    conflicting_item=_appointment_item(appointment),
                ))

        for conflict in _buffer_conflicts(schedule, start, end, others):
            (errors if conflict.severity == SEVERITY_ERROR else warnings).append(conflict)

        tz = zone_or_utc(schedule)
        local_day = start.astimezone(tz).date()
        day_start, day_end = local_day_window(tz, local_day, local_day)
        for appointment in patient_appointments:
            if appointment.status == Appointment.STATUS_CANCELLED:
                continue
            if exclude_appointment_id is not None and appointment.id == exclude_appointment_id:
                continue
            if overlaps(appointment.start, appointment.end, day_start, day_end):
                warnings.append(ConflictDetails(
                    type=TYPE_APPOINTMENT,
                    severity=SEVERITY_WARNING,
                    message=f"Patient already has an appointment on {local_day.isoformat()}",
                    conflicting_item=_appointment_item(appointment),
                ))

    suggestions: list[ConflictDetails] = []
    if errors and max_suggestions > 0:
        alternatives = find_alternatives(
            schedule,
            others,
            start,
            duration,
            now=now,
            window_days=window_days,
            limit=max_suggestions,
            should_stop=should_stop,
        )
        if alternatives:
            suggestions.append(ConflictDetails(
                type=TYPE_APPOINTMENT,
                severity=SEVERITY_INFO,
                message=f"{len(alternatives)} alternative time(s) available",
                suggested_alternatives=tuple(alternatives),
            ))

    return ConflictCheckResult(
        is_valid=not errors,
        conflicts=tuple(errors),
        warnings=tuple(warnings),
        suggestions=tuple(suggestions),
    )


def evaluate_schedule_changes(
    schedule: ScheduleSnapshot,
    appointments: Iterable[AppointmentSnapshot],
    *,
    now: datetime,
) -> ScheduleValidationResult:
    """Upcoming SCHEDULED/CONFIRMED appointments that ``schedule`` would strand."""
    affected: list[AppointmentSnapshot] = []
    conflicts: list[ConflictDetails] = []
    for appointment in appointments:
        if appointment.status not in (Appointment.STATUS_SCHEDULED, Appointment.STATUS_CONFIRMED):
            continue
        if appointment.start < now:
            continue
        problems = _availability_conflicts(schedule, appointment.start, appointment.end)
        if not problems:
            continue
        affected.append(appointment)
        for problem in problems:
            conflicts.append(replace(
                problem,
                message=f"Appointment '{appointment.title}': {problem.message}",
                conflicting_item=_appointment_item(appointment),
            ))
    return ScheduleValidationResult(
        is_valid=not affected,
        affected_appointments=tuple(affected),
        conflicts=tuple(conflicts),
    )


# ---------------------------------------------------------------------------
# Store-backed entry points
# ---------------------------------------------------------------------------

def check_conflict(
    *,
    provider_id: int,
    proposed_start: datetime,
    duration: int,
    patient_id: int | None = None,
    exclude_appointment_id: int | None = None,
    clock=None,
    should_stop: Callable[[], bool] | None = None,
) -> ConflictCheckResult:
    """
    Check a proposed appointment against fresh store data.

    Args:
        provider_id: The provider to book
        proposed_start: Start instant (naive values are read in the default
            time zone, see ``as_utc``)
        duration: Length in minutes
        patient_id: Enables the same-patient same-day warning
        exclude_appointment_id: Ignore this appointment (reschedule in place)
        clock: Supplies "now"; defaults to the system clock
        should_stop: Polled between steps; True abandons the check

    Returns:
        ConflictCheckResult with ``is_valid`` False if any error was found.

    Raises:
        InvalidRangeError: duration <= 0
        NotFoundError: provider has no active schedule
        GenerationCancelled: ``should_stop()`` returned True
    """
    validate_duration(duration)
    clock = clock or SystemClock()
    _raise_if_stopped(should_stop)
    schedule = store.get_active_schedule(provider_id)

    start = as_utc(proposed_start)
    end = start + timedelta(minutes=duration)
    tz = zone_or_utc(schedule)
    local_day = start.astimezone(tz).date()
    window_days = scheduling_setting('SUGGESTION_WINDOW_DAYS')

    window_start, window_end = local_day_window(
        tz,
        local_day - timedelta(days=window_days),
        local_day + timedelta(days=window_days),
    )
    appointments = store.get_appointments(provider_id, min(window_start, start), max(window_end, end))

    patient_appointments: list[AppointmentSnapshot] = []
    if patient_id is not None:
        day_start, day_end = local_day_window(tz, local_day, local_day)
        patient_appointments = store.get_patient_appointments(patient_id, day_start, day_end)

    result = evaluate_conflict(
        schedule,
        appointments,
        start,
        duration,
        now=clock.now(),
        patient_appointments=patient_appointments,
        exclude_appointment_id=exclude_appointment_id,
        window_days=window_days,
        should_stop=should_stop,
    )
    logger.debug(
        "conflict check provider_id=%s start=%s duration=%s valid=%s errors=%s warnings=%s",
        provider_id, iso_z(start), duration, result.is_valid, len(result.conflicts), len(result.warnings),
    )
    return result


def validate_schedule_changes(
    *,
    schedule_id: int,
    weekly: Iterable[WeeklyEntry] | None = None,
    breaks: Iterable[BreakEntry] | None = None,
    exceptions: Iterable[ExceptionEntry] | None = None,
    clock=None,
) -> ScheduleValidationResult:
    """
    Check upcoming appointments against a proposed replacement of a schedule's
    weekly pattern, breaks and/or exceptions. Collections left as None keep
    their current value. Nothing is written.
    """
    clock = clock or SystemClock()
    current = store.get_schedule_snapshot(schedule_id)
    changes = {}
    if weekly is not None:
        changes['weekly'] = tuple(weekly)
    if breaks is not None:
        changes['breaks'] = tuple(breaks)
    if exceptions is not None:
        changes['exceptions'] = tuple(exceptions)
    proposed = replace(current, **changes)

    now = clock.now()
    horizon = now + timedelta(days=scheduling_setting('VALIDATION_HORIZON_DAYS'))
    appointments = store.get_appointments(current.provider_id, now, horizon)
    return evaluate_schedule_changes(proposed, appointments, now=now)
