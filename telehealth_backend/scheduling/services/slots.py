"""Slot generation for provider schedules.

Pure functions over ``ScheduleSnapshot`` / ``AppointmentSnapshot``: no
database access, no clock reads ("now" is passed in). Running the generator
twice on the same inputs gives the same output.

All arithmetic is done on UTC instants. Wall-clock times from the schedule are
turned into instants with the schedule's IANA zone for each date, so DST
transition days have the right number of slots.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from typing import Callable, Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from telehealth_backend.scheduling.exceptions import GenerationCancelled, InvalidRangeError
from telehealth_backend.scheduling.models import Appointment, ScheduleException

from .store import AppointmentSnapshot, BreakEntry, ExceptionEntry, ScheduleSnapshot

logger = logging.getLogger(__name__)

REASON_BREAK = 'break'
REASON_BOOKED = 'booked'
REASON_PAST = 'past'


class MalformedScheduleData(ValueError):
	"""A day's schedule data cannot be turned into intervals."""


def iso_z(dt: datetime) -> str:
	value = dt.isoformat()
	return value.replace('+00:00', 'Z')


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
	"""Half-open interval intersection; touching endpoints do not overlap."""
	return a_start < b_end and b_start < a_end


def schedule_zone(schedule: ScheduleSnapshot) -> ZoneInfo:
	try:
		return schedule.tzinfo
	except (ZoneInfoNotFoundError, ValueError) as exc:
		raise MalformedScheduleData(f"invalid timezone {schedule.timezone!r}") from exc


def to_instant(day: date, wall: time, tz: ZoneInfo) -> datetime:
	return datetime.combine(day, wall, tzinfo=tz).astimezone(dt_timezone.utc)


def local_day_window(tz: ZoneInfo, date_from: date, date_to: date) -> tuple[datetime, datetime]:
	"""UTC ``[start, end)`` covering the local calendar days ``date_from..date_to``."""
	return to_instant(date_from, time.min, tz), to_instant(date_to + timedelta(days=1), time.min, tz)


@dataclass(frozen=True)
class TimeSlot:
	date: date
	start: datetime  # UTC
	end: datetime  # UTC
	start_time: str  # local wall clock, HH:MM
	end_time: str
	is_available: bool
	reason: str | None = None

	def to_dict(self) -> dict:
		return {
			'date': self.date.isoformat(),
			'start_time': self.start_time,
			'end_time': self.end_time,
			'start': iso_z(self.start),
			'end': iso_z(self.end),
			'is_available': self.is_available,
			'reason': self.reason,
		}


@dataclass(frozen=True)
class DaySlots:
	date: date
	slots: tuple[TimeSlot, ...] = ()

	def to_dict(self) -> dict:
		return {
			'date': self.date.isoformat(),
			'slots': [s.to_dict() for s in self.slots],
		}


@dataclass(frozen=True)
class DayDefinition:
	"""Effective working hours of one date after exceptions are applied."""
	date: date
	intervals: tuple[tuple[time, time], ...] = ()
	day_off: ExceptionEntry | None = None
	modified: ExceptionEntry | None = None


def _checked(start: time | None, end: time | None, what: str) -> tuple[time, time]:
	if start is None or end is None:
		raise MalformedScheduleData(f"{what} is missing start/end")
	if start >= end:
		raise MalformedScheduleData(f"{what} ends before it starts ({start}-{end})")
	return start, end


def merge_intervals(intervals: Iterable[tuple[time, time]]) -> tuple[tuple[time, time], ...]:
	"""Sort and merge intervals that overlap or touch."""
	merged: list[list[time]] = []
	for start, end in sorted(intervals):
		if merged and start <= merged[-1][1]:
			merged[-1][1] = max(merged[-1][1], end)
		else:
			merged.append([start, end])
	return tuple((s, e) for s, e in merged)


def resolve_day(schedule: ScheduleSnapshot, day: date) -> DayDefinition:
	"""
	Effective working intervals for ``day``.

	Precedence is by exception type, never by storage order:
	1. any DAY_OFF exception: no intervals
	2. MODIFIED_HOURS exceptions replace the weekly pattern
	3. otherwise the weekly entry (if available) plus EXTRA_AVAILABILITY

	Raises:
		MalformedScheduleData: an interval that applies to this day is unusable.
	"""
	exceptions = schedule.exceptions_on(day)

	day_off = next((e for e in exceptions if e.type == ScheduleException.TYPE_DAY_OFF), None)
	if day_off is not None:
		return DayDefinition(date=day, day_off=day_off)

	modified = [e for e in exceptions if e.type == ScheduleException.TYPE_MODIFIED_HOURS]
	if modified:
		intervals = [_checked(e.start_time, e.end_time, f"exception {e.id}") for e in modified]
		return DayDefinition(date=day, intervals=merge_intervals(intervals), modified=modified[0])

	intervals = []
	weekly = schedule.weekly_for(day.weekday())
	if weekly is not None and weekly.is_available:
		intervals.append(_checked(weekly.start_time, weekly.end_time, f"weekly day {weekly.day_of_week}"))
	for extra in exceptions:
		if extra.type == ScheduleException.TYPE_EXTRA_AVAILABILITY:
			intervals.append(_checked(extra.start_time, extra.end_time, f"exception {extra.id}"))
	return DayDefinition(date=day, intervals=merge_intervals(intervals))


def working_intervals(schedule: ScheduleSnapshot, day: date) -> list[tuple[datetime, datetime]]:
	"""Effective working intervals of ``day`` as UTC instants."""
	tz = schedule_zone(schedule)
	result = []
	for start, end in resolve_day(schedule, day).intervals:
		start_at = to_instant(day, start, tz)
		end_at = to_instant(day, end, tz)
		if start_at < end_at:
			result.append((start_at, end_at))
	return result


def break_intervals(schedule: ScheduleSnapshot, day: date) -> list[tuple[datetime, datetime, BreakEntry]]:
	tz = schedule_zone(schedule)
	result = []
	for brk in schedule.breaks_on(day):
		start, end = _checked(brk.start_time, brk.end_time, f"break {brk.id}")
		result.append((to_instant(day, start, tz), to_instant(day, end, tz), brk))
	return result


def generate_day(
	schedule: ScheduleSnapshot,
	day: date,
	appointments: Iterable[AppointmentSnapshot],
	slot_minutes: int,
	*,
	now: datetime,
) -> DaySlots:
	tz = schedule_zone(schedule)
	intervals = working_intervals(schedule, day)
	if not intervals:
		return DaySlots(date=day)

	breaks = break_intervals(schedule, day)
	day_start, day_end = intervals[0][0], intervals[-1][1]
	booked = [
		a for a in appointments
		if a.status != Appointment.STATUS_CANCELLED and overlaps(a.start, a.end, day_start, day_end)
	]

	step = timedelta(minutes=slot_minutes)
	slots = []
	for start, end in intervals:
		cursor = start
		while cursor + step <= end:
			slot_end = cursor + step
			reason = None
			if any(overlaps(cursor, slot_end, b_start, b_end) for b_start, b_end, _ in breaks):
				reason = REASON_BREAK
			elif any(overlaps(cursor, slot_end, a.start, a.end) for a in booked):
				reason = REASON_BOOKED
			elif cursor < now:
				reason = REASON_PAST
			slots.append(TimeSlot(
				date=day,
				start=cursor,
				end=slot_end,
				start_time=cursor.astimezone(tz).strftime('%H:%M'),
				end_time=slot_end.astimezone(tz).strftime('%H:%M'),
				is_available=reason is None,
				reason=reason,
			))
			cursor = slot_end
	return DaySlots(date=day, slots=tuple(slots))


def generate_slots(
	schedule: ScheduleSnapshot,
	appointments: Iterable[AppointmentSnapshot],
	date_from: date,
	date_to: date,
	slot_duration: int,
	*,
	now: datetime,
	should_stop: Callable[[], bool] | None = None,
) -> list[DaySlots]:
	"""
	Slots for every calendar date in ``[date_from, date_to]``, one ``DaySlots``
	per date in order.

	A slot is unavailable when it overlaps an applicable break (``break``), a
	non-cancelled appointment (``booked``) or starts before ``now`` (``past``);
	the first matching reason in that order is reported.

	A date whose schedule data is malformed yields an empty ``DaySlots`` and a
	warning; other dates are unaffected.

	Raises:
		InvalidRangeError: ``slot_duration <= 0`` or ``date_from > date_to``.
		GenerationCancelled: ``should_stop()`` returned True between dates.
	"""
	if isinstance(slot_duration, bool) or not isinstance(slot_duration, int) or slot_duration <= 0:
		raise InvalidRangeError("slot_duration must be a positive number of minutes", field='slot_duration')
	if date_from > date_to:
		raise InvalidRangeError("date_from must be on or before date_to", field='date_from')

	appointments = list(appointments)
	days = []
	day = date_from
	while day <= date_to:
		if should_stop is not None and should_stop():
			raise GenerationCancelled("slot generation cancelled")
		try:
			days.append(generate_day(schedule, day, appointments, slot_duration, now=now))
		except MalformedScheduleData as exc:
			logger.warning(
				"Malformed schedule data, no slots for day (schedule_id=%s, date=%s): %s",
				schedule.id, day, exc,
			)
			days.append(DaySlots(date=day))
		day += timedelta(days=1)
	return days


def available_slots(days: Iterable[DaySlots]) -> list[TimeSlot]:
	return [slot for d in days for slot in d.slots if slot.is_available]
