"""
Booking Orchestrator.

The conflict check a client sees before booking is advisory. The write path
here is the correctness guarantee: inside one transaction it locks the
provider row, re-runs the conflict check against fresh data, and only then
inserts or moves the appointment. Two concurrent bookings for the same
provider serialize on that lock, so the second one sees the first one's row.

After commit, cached availability for the provider is invalidated.

Recurring series are booked in one transaction under the same lock: every
occurrence is re-checked on its own, conflicting ones are skipped and
reported, the rest are inserted.
"""

from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone as dt_timezone, tzinfo
from typing import TYPE_CHECKING

from django.db import transaction

from telehealth_backend.core.utils import log_action
from telehealth_backend.scheduling.conf import scheduling_setting
from telehealth_backend.scheduling.exceptions import (
    BookingConflictError,
    InvalidRangeError,
    InvalidStatusTransition,
    NotFoundError,
)
from telehealth_backend.scheduling.models import Appointment

from . import store
from .availability import check_conflict, invalidate_on_commit
from .conflicts import ConflictCheckResult, ConflictDetails, as_utc, validate_duration, zone_or_utc
from .slots import iso_z
from .store import lock_provider

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractUser

logger = logging.getLogger(__name__)

RESCHEDULABLE_STATUSES = (Appointment.STATUS_SCHEDULED, Appointment.STATUS_CONFIRMED)

RECURRENCE_DAILY = 'DAILY'
RECURRENCE_WEEKLY = 'WEEKLY'
RECURRENCE_MONTHLY = 'MONTHLY'
RECURRENCE_PATTERNS = (RECURRENCE_DAILY, RECURRENCE_WEEKLY, RECURRENCE_MONTHLY)


def _locked_appointment(appointment_id: int) -> Appointment:
    appointment = Appointment.objects.select_for_update().filter(id=appointment_id).first()
    if appointment is None:
        raise NotFoundError(f"Appointment {appointment_id} not found")
    return appointment


def book_appointment(
    *,
    provider_id: int,
    patient_id: int,
    appointment_date: datetime,
    duration: int,
    reason: str = '',
    notes: str = '',
    user: 'AbstractUser | None' = None,
    clock=None,
) -> tuple[Appointment, ConflictCheckResult]:
    """
    Book an appointment after a transactional re-check.

    Returns:
        The created appointment and the conflict check it passed (which may
        carry warnings).

    Raises:
        InvalidRangeError: duration <= 0
        NotFoundError: unknown provider or no active schedule
        BookingConflictError: the re-check found error-severity conflicts
    """
    validate_duration(duration)
    start = as_utc(appointment_date)

    with transaction.atomic():
        lock_provider(provider_id)
        result = check_conflict(
            provider_id=provider_id,
            proposed_start=start,
            duration=duration,
            patient_id=patient_id,
            clock=clock,
        )
        if not result.is_valid:
            logger.info(
                "booking rejected provider_id=%s start=%s: %s",
                provider_id, start.isoformat(), [c.type for c in result.conflicts],
            )
            raise BookingConflictError(list(result.conflicts), list(result.suggestions))

        appointment = Appointment.objects.create(
            provider_id=provider_id,
            patient_id=patient_id,
            appointment_date=start,
            duration=duration,
            reason=reason,
            notes=notes,
        )
        invalidate_on_commit(provider_id)

    log_action(
        user,
        'appointment_book',
        patient_id=patient_id,
        meta={'appointment_id': appointment.id, 'provider_id': provider_id},
    )
    return appointment, result


def reschedule_appointment(
    *,
    appointment_id: int,
    appointment_date: datetime,
    duration: int | None = None,
    user: 'AbstractUser | None' = None,
    clock=None,
) -> tuple[Appointment, ConflictCheckResult]:
    """
    Move an appointment. The appointment itself is excluded from the re-check,
    so moving it within its own time window is allowed.
    """
    start = as_utc(appointment_date)

    with transaction.atomic():
        appointment = Appointment.objects.filter(id=appointment_id).first()
        if appointment is None:
            raise NotFoundError(f"Appointment {appointment_id} not found")
        lock_provider(appointment.provider_id)
        appointment = _locked_appointment(appointment_id)

        if appointment.status not in RESCHEDULABLE_STATUSES:
            raise InvalidStatusTransition(
                current=appointment.status,
                requested=appointment.status,
                message=f"Cannot reschedule an appointment with status {appointment.status}",
            )

        new_duration = appointment.duration if duration is None else duration
        validate_duration(new_duration)
        result = check_conflict(
            provider_id=appointment.provider_id,
            proposed_start=start,
            duration=new_duration,
            patient_id=appointment.patient_id,
            exclude_appointment_id=appointment.id,
            clock=clock,
        )
        if not result.is_valid:
            raise BookingConflictError(list(result.conflicts), list(result.suggestions))

        previous_start = appointment.appointment_date
        appointment.appointment_date = start
        appointment.duration = new_duration
        appointment.save()
        invalidate_on_commit(appointment.provider_id)

    log_action(
        user,
        'appointment_reschedule',
        patient_id=appointment.patient_id,
        meta={
            'appointment_id': appointment.id,
            'from': previous_start.isoformat(),
            'to': start.isoformat(),
        },
    )
    return appointment, result


def transition_status(
    *,
    appointment_id: int,
    status: str,
    user: 'AbstractUser | None' = None,
) -> Appointment:
    """
    Move an appointment along its lifecycle (see ``Appointment.TRANSITIONS``).
    Cancelling frees the slot, so it invalidates cached availability.
    """
    with transaction.atomic():
        appointment = _locked_appointment(appointment_id)
        current = appointment.status
        if status not in Appointment.TRANSITIONS.get(current, set()):
            raise InvalidStatusTransition(current=current, requested=status)

        appointment.status = status
        appointment.save(update_fields=['status', 'updated_at'])
        if status == Appointment.STATUS_CANCELLED:
            invalidate_on_commit(appointment.provider_id)

    log_action(
        user,
        'appointment_cancel' if status == Appointment.STATUS_CANCELLED else 'appointment_status',
        patient_id=appointment.patient_id,
        meta={'appointment_id': appointment.id, 'from': current, 'to': status},
    )
    return appointment


def cancel_appointment(*, appointment_id: int, user: 'AbstractUser | None' = None) -> Appointment:
    return transition_status(appointment_id=appointment_id, status=Appointment.STATUS_CANCELLED, user=user)


# ---------------------------------------------------------------------------
# Recurring series
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SkippedOccurrence:
    start: datetime
    conflicts: tuple[ConflictDetails, ...]

    def to_dict(self):
        return {
            'start': iso_z(self.start),
            'conflicts': [c.to_dict() for c in self.conflicts],
        }


@dataclass(frozen=True)
class RecurringBookingResult:
    appointments: tuple[Appointment, ...]
    skipped: tuple[SkippedOccurrence, ...]


def _add_months(value: date, months: int) -> date:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return value.replace(year=year, month=month, day=min(value.day, calendar.monthrange(year, month)[1]))


def recurrence_starts(
    first_start: datetime,
    pattern: str,
    tz: tzinfo,
    *,
    count: int,
    until: date | None = None,
) -> list[datetime]:
    """
    UTC start instants of a series.

    Every occurrence keeps the local wall-clock time of ``first_start`` in
    ``tz``, so a weekly 09:00 stays 09:00 across a DST change. A monthly
    series anchored on the 31st falls on the last day of shorter months.
    ``until`` is an inclusive local date.
    """
    local = as_utc(first_start).astimezone(tz)
    first_day, wall_time = local.date(), local.time()

    starts = []
    for index in range(count):
        if pattern == RECURRENCE_DAILY:
            day = first_day + timedelta(days=index)
        elif pattern == RECURRENCE_WEEKLY:
            day = first_day + timedelta(weeks=index)
        else:
            day = _add_months(first_day, index)
        if until is not None and day > until:
            break
        starts.append(datetime.combine(day, wall_time, tzinfo=tz).astimezone(dt_timezone.utc))
    return starts


def book_recurring_appointments(
    *,
    provider_id: int,
    patient_id: int,
    first_start: datetime,
    duration: int,
    pattern: str,
    count: int | None = None,
    until: date | None = None,
    reason: str = '',
    notes: str = '',
    user: 'AbstractUser | None' = None,
    clock=None,
) -> RecurringBookingResult:
    """
    Book a DAILY, WEEKLY or MONTHLY series of appointments.

    The series ends after ``count`` occurrences (default and upper bound:
    ``MAX_RECURRING_OCCURRENCES``) or on the local date ``until``, whichever
    comes first. Occurrences with error-severity conflicts are skipped; the
    others are committed together.

    Raises:
        InvalidRangeError: bad duration, pattern or count
        NotFoundError: unknown provider or no active schedule
        BookingConflictError: no occurrence could be booked
    """
    validate_duration(duration)
    if pattern not in RECURRENCE_PATTERNS:
        raise InvalidRangeError(f"pattern must be one of {', '.join(RECURRENCE_PATTERNS)}", field='pattern')
    max_count = scheduling_setting('MAX_RECURRING_OCCURRENCES')
    if count is None:
        count = max_count
    if isinstance(count, bool) or not isinstance(count, int) or not 1 <= count <= max_count:
        raise InvalidRangeError(f"count must be between 1 and {max_count}", field='count')

    with transaction.atomic():
        lock_provider(provider_id)
        schedule = store.get_active_schedule(provider_id)
        starts = recurrence_starts(first_start, pattern, zone_or_utc(schedule), count=count, until=until)

        created: list[Appointment] = []
        skipped: list[SkippedOccurrence] = []
        for start in starts:
            result = check_conflict(
                provider_id=provider_id,
                proposed_start=start,
                duration=duration,
                patient_id=patient_id,
                clock=clock,
            )
            if not result.is_valid:
                logger.warning(
                    "recurring booking skipped provider_id=%s start=%s: %s",
                    provider_id, iso_z(start), [c.type for c in result.conflicts],
                )
                skipped.append(SkippedOccurrence(start, result.conflicts))
                continue
            created.append(Appointment.objects.create(
                provider_id=provider_id,
                patient_id=patient_id,
                appointment_date=start,
                duration=duration,
                reason=reason,
                notes=notes,
            ))

        if not created:
            raise BookingConflictError(
                list(skipped[0].conflicts) if skipped else [],
                message="No occurrence of the series is available",
            )
        invalidate_on_commit(provider_id)

    logger.info(
        "recurring booking provider_id=%s patient_id=%s pattern=%s created=%s skipped=%s",
        provider_id, patient_id, pattern, len(created), len(skipped),
    )
    log_action(
        user,
        'appointment_book_recurring',
        patient_id=patient_id,
        meta={
            'provider_id': provider_id,
            'pattern': pattern,
            'appointment_ids': [a.id for a in created],
            'skipped': [iso_z(s.start) for s in skipped],
        },
    )
    return RecurringBookingResult(tuple(created), tuple(skipped))
