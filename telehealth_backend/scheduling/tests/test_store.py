from datetime import time, timedelta

from django.test import TestCase, override_settings

from telehealth_backend.scheduling.exceptions import (
    InvalidScheduleData,
    NotFoundError,
    ScheduleConflictError,
)
from telehealth_backend.scheduling.models import Appointment, Schedule, ScheduleException
from telehealth_backend.scheduling.services import store

from .base import SchedulingTestMixin


class DefaultScheduleInvariantTest(SchedulingTestMixin, TestCase):
    def test_second_default_active_schedule_is_rejected(self):
        with self.assertRaises(ScheduleConflictError) as ctx:
            store.create_schedule(provider_id=self.provider.id, name="Evening", is_default=True, is_active=True)

        self.assertEqual(ctx.exception.reason, "duplicate_default")
        self.assertEqual(Schedule.objects.filter(provider=self.provider).count(), 1)

    def test_inactive_or_non_default_schedules_are_allowed(self):
        store.create_schedule(provider_id=self.provider.id, name="Draft", is_default=True, is_active=False)
        store.create_schedule(provider_id=self.provider.id, name="Alt", is_default=False, is_active=True)

        self.assertEqual(Schedule.objects.filter(provider=self.provider).count(), 3)

    def test_promoting_second_schedule_to_default_is_rejected(self):
        alt = store.create_schedule(provider_id=self.provider.id, name="Alt", is_default=False, is_active=True)

        with self.assertRaises(ScheduleConflictError):
            store.update_schedule(schedule_id=alt.id, is_default=True)

    def test_promotion_allowed_after_deactivating_current_default(self):
        alt = store.create_schedule(provider_id=self.provider.id, name="Alt", is_default=False, is_active=True)
        store.update_schedule(schedule_id=self.schedule.id, is_active=False)
        store.update_schedule(schedule_id=alt.id, is_default=True)

        self.assertEqual(store.get_active_schedule(self.provider.id).id, alt.id)

    def test_updating_the_default_itself_is_fine(self):
        store.update_schedule(schedule_id=self.schedule.id, name="Renamed", buffer_minutes=10)

        self.schedule.refresh_from_db()
        self.assertEqual(self.schedule.name, "Renamed")


class ScheduleWriteValidationTest(SchedulingTestMixin, TestCase):
    def test_duplicate_weekday_is_rejected(self):
        with self.assertRaises(ScheduleConflictError) as ctx:
            store.create_schedule(
                provider_id=self.other_provider.id,
                weekly=[
                    {"day_of_week": 0, "start_time": time(9), "end_time": time(12)},
                    {"day_of_week": 0, "start_time": time(13), "end_time": time(17)},
                ],
            )
        self.assertEqual(ctx.exception.reason, "duplicate_weekday")

    def test_unknown_timezone_is_rejected(self):
        with self.assertRaises(InvalidScheduleData):
            store.create_schedule(provider_id=self.other_provider.id, timezone="Mars/Olympus")

    def test_unknown_update_field_is_rejected(self):
        with self.assertRaises(InvalidScheduleData):
            store.update_schedule(schedule_id=self.schedule.id, provider_id=self.other_provider.id)

    def test_set_weekly_availability_replaces_day(self):
        store.set_weekly_availability(
            schedule_id=self.schedule.id,
            day_of_week=0,
            start_time=time(10),
            end_time=time(14),
        )

        entries = self.schedule.weekly_availability.filter(day_of_week=0)
        self.assertEqual(entries.count(), 1)
        self.assertEqual(entries.get().start_time, time(10))

    def test_one_off_break_needs_exception(self):
        with self.assertRaises(InvalidScheduleData):
            store.add_break(
                schedule_id=self.schedule.id,
                start_time=time(12),
                end_time=time(13),
                is_recurring=False,
            )

    def test_one_off_break_takes_exception_date(self):
        exc = store.add_exception(
            schedule_id=self.schedule.id,
            date=self.monday,
            type=ScheduleException.TYPE_MODIFIED_HOURS,
            start_time=time(8),
            end_time=time(12),
        )
        store.add_break(
            schedule_id=self.schedule.id,
            start_time=time(10),
            end_time=time(10, 30),
            is_recurring=False,
            exception_id=exc.id,
        )

        snapshot = store.get_active_schedule(self.provider.id)
        self.assertEqual(len(snapshot.breaks_on(self.monday)), 1)
        self.assertEqual(snapshot.breaks_on(self.monday + timedelta(days=7)), [])

    def test_day_off_exception_drops_hours(self):
        exc = store.add_exception(
            schedule_id=self.schedule.id,
            date=self.monday,
            start_time=time(9),
            end_time=time(10),
        )
        self.assertEqual(exc.type, ScheduleException.TYPE_DAY_OFF)
        self.assertIsNone(exc.start_time)

    def test_removing_unknown_rows_is_not_found(self):
        with self.assertRaises(NotFoundError):
            store.remove_exception(schedule_id=self.schedule.id, exception_id=999999)
        with self.assertRaises(NotFoundError):
            store.remove_break(schedule_id=self.schedule.id, break_id=999999)

    def test_delete_schedule_returns_provider(self):
        self.assertEqual(store.delete_schedule(schedule_id=self.schedule.id), self.provider.id)
        with self.assertRaises(NotFoundError):
            store.get_active_schedule(self.provider.id)


class StoreReadTest(SchedulingTestMixin, TestCase):
    def test_provider_without_active_schedule_is_not_found(self):
        with self.assertRaises(NotFoundError) as ctx:
            store.get_active_schedule(self.other_provider.id)
        self.assertEqual(ctx.exception.provider_id, self.other_provider.id)

    def test_snapshot_carries_weekly_pattern(self):
        snapshot = store.get_active_schedule(self.provider.id)

        self.assertEqual(snapshot.timezone, "UTC")
        self.assertEqual(sorted(w.day_of_week for w in snapshot.weekly), [0, 1, 2, 3, 4])
        self.assertEqual(snapshot.buffer_minutes, 0)

    @override_settings(SCHEDULING={"BUFFER_MINUTES": 10, "BUFFER_MANDATORY": True})
    def test_buffer_falls_back_to_system_default(self):
        snapshot = store.get_active_schedule(self.provider.id)

        self.assertEqual(snapshot.buffer_minutes, 10)
        self.assertTrue(snapshot.buffer_mandatory)

    def test_appointments_intersecting_window(self):
        early = self._appointment(9, 45, duration=30)
        inside = self._appointment(10, 15)
        self._appointment(11)  # starts at window end
        self._appointment(10, 30, status=Appointment.STATUS_CANCELLED)
        self._appointment(10, provider=self.other_provider)

        result = store.get_appointments(self.provider.id, self._dt(10), self._dt(11))

        self.assertEqual([a.id for a in result], [early.id, inside.id])
        self.assertEqual(result[0].end, self._dt(10, 15))

    def test_appointment_title_falls_back_to_id(self):
        appointment = self._appointment(10)
        snapshot = store.get_appointments(self.provider.id, self._dt(9), self._dt(12))[0]

        self.assertEqual(snapshot.title, f"Appointment #{appointment.id}")

    def test_end_date_follows_duration(self):
        appointment = self._appointment(10, duration=45)
        self.assertEqual(appointment.end_date, self._dt(10, 45))

        appointment.duration = 60
        appointment.save(update_fields=["duration"])
        appointment.refresh_from_db()
        self.assertEqual(appointment.end_date, self._dt(11))
