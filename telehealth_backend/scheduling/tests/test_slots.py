from __future__ import annotations

from datetime import date, time, timedelta

from django.test import SimpleTestCase

from telehealth_backend.scheduling.exceptions import GenerationCancelled, InvalidRangeError
from telehealth_backend.scheduling.models import Appointment, ScheduleException
from telehealth_backend.scheduling.services.slots import (
	REASON_BOOKED,
	REASON_BREAK,
	REASON_PAST,
	available_slots,
	generate_slots,
)
from telehealth_backend.scheduling.services.store import (
	AppointmentSnapshot,
	BreakEntry,
	ExceptionEntry,
	WeeklyEntry,
)

from .base import FIXED_MONDAY, make_schedule, utc

LONG_AGO = utc(FIXED_MONDAY - timedelta(days=30), 0)


def _one_day(schedule, appointments=(), day=FIXED_MONDAY, slot_duration=30, now=LONG_AGO):
	return generate_slots(schedule, appointments, day, day, slot_duration, now=now)[0].slots


class SlotGenerationTest(SimpleTestCase):
	def test_weekday_yields_half_hour_slots_across_working_hours(self):
		slots = _one_day(make_schedule())

		self.assertEqual(len(slots), 16)
		self.assertEqual((slots[0].start_time, slots[0].end_time), ("09:00", "09:30"))
		self.assertEqual((slots[-1].start_time, slots[-1].end_time), ("16:30", "17:00"))
		self.assertTrue(all(s.is_available for s in slots))
		self.assertEqual(slots[0].start, utc(FIXED_MONDAY, 9))

	def test_break_blocks_overlapping_slots(self):
		schedule = make_schedule(breaks=(
			BreakEntry(start_time=time(12), end_time=time(13), day_of_week=0, title="Lunch"),
		))
		slots = _one_day(schedule)

		unavailable = [s for s in slots if not s.is_available]
		self.assertEqual(len(slots) - len(unavailable), 14)
		self.assertEqual([s.start_time for s in unavailable], ["12:00", "12:30"])
		self.assertTrue(all(s.reason == REASON_BREAK for s in unavailable))

	def test_recurring_break_without_weekday_applies_every_day(self):
		schedule = make_schedule(breaks=(BreakEntry(start_time=time(12), end_time=time(12, 30)),))
		days = generate_slots(schedule, [], FIXED_MONDAY, FIXED_MONDAY + timedelta(days=4), 30, now=LONG_AGO)

		for day in days:
			self.assertEqual(len([s for s in day.slots if not s.is_available]), 1)

	def test_one_off_break_only_applies_on_its_date(self):
		schedule = make_schedule(breaks=(
			BreakEntry(start_time=time(15), end_time=time(16), is_recurring=False, date=FIXED_MONDAY),
		))

		self.assertEqual(len(available_slots([_slots_day(schedule, FIXED_MONDAY)])), 14)
		self.assertEqual(len(available_slots([_slots_day(schedule, FIXED_MONDAY + timedelta(days=7))])), 16)

	def test_day_off_exception_yields_no_slots(self):
		schedule = make_schedule(exceptions=(
			ExceptionEntry(date=FIXED_MONDAY, type=ScheduleException.TYPE_DAY_OFF, title="Conference"),
		))

		self.assertEqual(_one_day(schedule), ())
		self.assertEqual(len(_one_day(schedule, day=FIXED_MONDAY + timedelta(days=1))), 16)

	def test_booked_slot_and_touching_neighbours(self):
		appointments = [
			AppointmentSnapshot(provider_id=1, id=7, start=utc(FIXED_MONDAY, 10), end=utc(FIXED_MONDAY, 10, 30)),
		]
		slots = {s.start_time: s for s in _one_day(make_schedule(), appointments)}

		self.assertFalse(slots["10:00"].is_available)
		self.assertEqual(slots["10:00"].reason, REASON_BOOKED)
		# Half-open intervals: touching endpoints are not an overlap.
		self.assertTrue(slots["09:30"].is_available)
		self.assertTrue(slots["10:30"].is_available)

	def test_cancelled_appointment_does_not_block(self):
		appointments = [
			AppointmentSnapshot(
				provider_id=1,
				start=utc(FIXED_MONDAY, 10),
				end=utc(FIXED_MONDAY, 10, 30),
				status=Appointment.STATUS_CANCELLED,
			),
		]
		self.assertTrue(all(s.is_available for s in _one_day(make_schedule(), appointments)))

	def test_break_reason_wins_over_booked(self):
		schedule = make_schedule(breaks=(BreakEntry(start_time=time(12), end_time=time(13), day_of_week=0),))
		appointments = [
			AppointmentSnapshot(provider_id=1, start=utc(FIXED_MONDAY, 12), end=utc(FIXED_MONDAY, 12, 30)),
		]
		slots = {s.start_time: s for s in _one_day(schedule, appointments)}

		self.assertEqual(slots["12:00"].reason, REASON_BREAK)

	def test_slots_before_now_are_past(self):
		slots = _one_day(make_schedule(), now=utc(FIXED_MONDAY, 12))

		past = [s for s in slots if s.reason == REASON_PAST]
		self.assertEqual([s.start_time for s in past], ["09:00", "09:30", "10:00", "10:30", "11:00", "11:30"])
		self.assertEqual(len(available_slots([_slots_day(make_schedule(), FIXED_MONDAY, now=utc(FIXED_MONDAY, 12))])), 10)

	def test_partial_trailing_slot_is_dropped(self):
		slots = _one_day(make_schedule(), slot_duration=45)

		self.assertEqual(len(slots), 10)
		self.assertEqual(slots[-1].end_time, "16:30")

	def test_one_entry_per_date_including_days_without_hours(self):
		days = generate_slots(make_schedule(), [], FIXED_MONDAY, FIXED_MONDAY + timedelta(days=6), 30, now=LONG_AGO)

		self.assertEqual([d.date for d in days], [FIXED_MONDAY + timedelta(days=i) for i in range(7)])
		self.assertEqual(days[5].slots, ())
		self.assertEqual(days[6].slots, ())

	def test_generation_is_deterministic(self):
		schedule = make_schedule(breaks=(BreakEntry(start_time=time(12), end_time=time(13)),))
		appointments = [
			AppointmentSnapshot(provider_id=1, start=utc(FIXED_MONDAY, 10), end=utc(FIXED_MONDAY, 11)),
		]
		first = generate_slots(schedule, appointments, FIXED_MONDAY, FIXED_MONDAY + timedelta(days=2), 30, now=LONG_AGO)
		second = generate_slots(schedule, appointments, FIXED_MONDAY, FIXED_MONDAY + timedelta(days=2), 30, now=LONG_AGO)

		self.assertEqual(first, second)

	def test_invalid_ranges_raise(self):
		with self.assertRaises(InvalidRangeError):
			generate_slots(make_schedule(), [], FIXED_MONDAY, FIXED_MONDAY, 0, now=LONG_AGO)
		with self.assertRaises(InvalidRangeError):
			generate_slots(make_schedule(), [], FIXED_MONDAY, FIXED_MONDAY - timedelta(days=1), 30, now=LONG_AGO)

	def test_should_stop_cancels_generation(self):
		with self.assertRaises(GenerationCancelled):
			generate_slots(make_schedule(), [], FIXED_MONDAY, FIXED_MONDAY, 30, now=LONG_AGO, should_stop=lambda: True)


def _slots_day(schedule, day, now=LONG_AGO):
	return generate_slots(schedule, [], day, day, 30, now=now)[0]


class ExceptionPrecedenceTest(SimpleTestCase):
	def test_modified_hours_replace_weekly_pattern(self):
		schedule = make_schedule(exceptions=(
			ExceptionEntry(
				date=FIXED_MONDAY,
				type=ScheduleException.TYPE_MODIFIED_HOURS,
				start_time=time(10),
				end_time=time(12),
			),
		))
		slots = _one_day(schedule)

		self.assertEqual([s.start_time for s in slots], ["10:00", "10:30", "11:00", "11:30"])

	def test_extra_availability_adds_hours(self):
		saturday = FIXED_MONDAY + timedelta(days=5)
		schedule = make_schedule(exceptions=(
			ExceptionEntry(
				date=saturday,
				type=ScheduleException.TYPE_EXTRA_AVAILABILITY,
				start_time=time(10),
				end_time=time(11),
			),
			ExceptionEntry(
				date=FIXED_MONDAY,
				type=ScheduleException.TYPE_EXTRA_AVAILABILITY,
				start_time=time(17),
				end_time=time(18),
			),
		))

		self.assertEqual([s.start_time for s in _one_day(schedule, day=saturday)], ["10:00", "10:30"])
		# Touching the weekly hours merges into one 09:00-18:00 interval.
		self.assertEqual(len(_one_day(schedule)), 18)

	def test_day_off_wins_regardless_of_order(self):
		day_off = ExceptionEntry(date=FIXED_MONDAY, type=ScheduleException.TYPE_DAY_OFF)
		modified = ExceptionEntry(
			date=FIXED_MONDAY,
			type=ScheduleException.TYPE_MODIFIED_HOURS,
			start_time=time(10),
			end_time=time(12),
		)

		self.assertEqual(_one_day(make_schedule(exceptions=(day_off, modified))), ())
		self.assertEqual(_one_day(make_schedule(exceptions=(modified, day_off))), ())

	def test_modified_hours_ignore_extra_availability_on_same_date(self):
		schedule = make_schedule(exceptions=(
			ExceptionEntry(
				date=FIXED_MONDAY,
				type=ScheduleException.TYPE_EXTRA_AVAILABILITY,
				start_time=time(18),
				end_time=time(19),
			),
			ExceptionEntry(
				date=FIXED_MONDAY,
				type=ScheduleException.TYPE_MODIFIED_HOURS,
				start_time=time(10),
				end_time=time(11),
			),
		))

		self.assertEqual([s.start_time for s in _one_day(schedule)], ["10:00", "10:30"])


class TimezoneTest(SimpleTestCase):
	def _sunday_schedule(self):
		return make_schedule(
			timezone="America/New_York",
			weekly=(WeeklyEntry(day_of_week=6, start_time=time(0), end_time=time(6)),),
		)

	def test_spring_forward_day_has_fewer_slots(self):
		slots = _one_day(self._sunday_schedule(), day=date(2026, 3, 8))

		# 00:00 EST -> 06:00 EDT is five real hours.
		self.assertEqual(len(slots), 10)
		self.assertEqual(slots[0].start, utc(date(2026, 3, 8), 5))
		self.assertEqual(slots[-1].end, utc(date(2026, 3, 8), 10))

	def test_fall_back_day_has_more_slots(self):
		slots = _one_day(self._sunday_schedule(), day=date(2026, 11, 1))

		# 00:00 EDT -> 06:00 EST is seven real hours.
		self.assertEqual(len(slots), 14)
		self.assertEqual(slots[0].start, utc(date(2026, 11, 1), 4))
		self.assertEqual(slots[-1].end, utc(date(2026, 11, 1), 11))

	def test_slots_span_exactly_one_duration_and_never_overlap(self):
		cases = (
			(self._sunday_schedule(), date(2026, 3, 8)),
			(self._sunday_schedule(), date(2026, 11, 1)),
			(make_schedule(), FIXED_MONDAY),
			(make_schedule(timezone="Europe/Berlin"), FIXED_MONDAY),
		)
		for schedule, day in cases:
			for duration in (7, 15, 25, 30, 45, 60, 90):
				with self.subTest(timezone=schedule.timezone, day=day, duration=duration):
					slots = _one_day(schedule, day=day, slot_duration=duration)

					self.assertTrue(slots)
					for slot in slots:
						self.assertEqual(slot.end - slot.start, timedelta(minutes=duration))
					for previous, following in zip(slots, slots[1:]):
						self.assertLessEqual(previous.end, following.start)

	def test_wall_clock_labels_use_schedule_zone(self):
		schedule = make_schedule(timezone="Europe/Berlin")
		slots = _one_day(schedule)

		self.assertEqual(slots[0].start_time, "09:00")
		self.assertEqual(slots[0].start, utc(FIXED_MONDAY, 8))


class MalformedScheduleTest(SimpleTestCase):
	def test_malformed_weekly_entry_empties_only_that_day(self):
		schedule = make_schedule(weekly=(
			WeeklyEntry(day_of_week=0, start_time=time(17), end_time=time(9)),
			WeeklyEntry(day_of_week=1, start_time=time(9), end_time=time(17)),
		))

		with self.assertLogs("telehealth_backend.scheduling.services.slots", level="WARNING"):
			days = generate_slots(schedule, [], FIXED_MONDAY, FIXED_MONDAY + timedelta(days=1), 30, now=LONG_AGO)

		self.assertEqual(days[0].slots, ())
		self.assertEqual(len(days[1].slots), 16)

	def test_unknown_timezone_yields_empty_days(self):
		schedule = make_schedule(timezone="Not/AZone")

		with self.assertLogs("telehealth_backend.scheduling.services.slots", level="WARNING"):
			days = generate_slots(schedule, [], FIXED_MONDAY, FIXED_MONDAY + timedelta(days=1), 30, now=LONG_AGO)

		self.assertEqual([d.slots for d in days], [(), ()])
