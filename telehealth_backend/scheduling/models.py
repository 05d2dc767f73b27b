"""Domain models for provider schedules and appointments.

A provider (a ``core.User`` with role ``provider``) owns one or more
``Schedule`` rows. Each schedule carries its weekly pattern, recurring or
one-off breaks, and date-specific exceptions. The slot generator and conflict
detector read exactly one schedule per provider: the one that is both default
and active.

Appointments are an independent aggregate referencing both provider and
patient. They are never deleted through the API, only status-transitioned.
"""

from datetime import timedelta

from django.conf import settings
from django.db import models
from django.db.models import Q


class Schedule(models.Model):
	"""A provider's weekly availability plus its breaks and exceptions.

	Invariant: at most one schedule per provider is ``is_default`` *and*
	``is_active`` at any time (enforced by the store and by a partial unique
	constraint).
	"""
	provider = models.ForeignKey(
		settings.AUTH_USER_MODEL,
		on_delete=models.CASCADE,
		related_name='schedules',
	)
	name = models.CharField(max_length=100, default='Default')
	timezone = models.CharField(max_length=64, default='UTC')
	is_default = models.BooleanField(default=False)
	is_active = models.BooleanField(default=True)
	# null => system default from settings.SCHEDULING
	buffer_minutes = models.PositiveIntegerField(null=True, blank=True)
	buffer_mandatory = models.BooleanField(null=True, blank=True)
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		ordering = ["provider_id", "-is_default", "name", "id"]
		constraints = [
			models.UniqueConstraint(
				fields=["provider"],
				condition=Q(is_default=True, is_active=True),
				name="one_default_active_schedule_per_provider",
			),
		]

	def __str__(self) -> str:
		return f"Schedule #{self.id} provider_id={self.provider_id} ({self.name})"


class WeeklyAvailability(models.Model):
	"""Recurring working hours for one weekday of a schedule.

	If ``is_available`` is False the times are kept for display only.
	"""
	schedule = models.ForeignKey(
		Schedule,
		on_delete=models.CASCADE,
		related_name='weekly_availability',
	)
	day_of_week = models.IntegerField()  # 0=Monday ... 6=Sunday
	is_available = models.BooleanField(default=True)
	start_time = models.TimeField()
	end_time = models.TimeField()

	class Meta:
		ordering = ["schedule_id", "day_of_week"]
		constraints = [
			models.UniqueConstraint(
				fields=["schedule", "day_of_week"],
				name="one_weekly_entry_per_day",
			),
		]

	def __str__(self) -> str:
		return f"WeeklyAvailability schedule_id={self.schedule_id} day={self.day_of_week} {self.start_time}-{self.end_time}"


class ScheduleException(models.Model):
	"""Date-specific override of the weekly pattern.

	- ``DAY_OFF``: no working hours on that date.
	- ``MODIFIED_HOURS``: ``start_time``-``end_time`` replaces the weekly hours.
	- ``EXTRA_AVAILABILITY``: ``start_time``-``end_time`` is added to the day.
	"""
	TYPE_DAY_OFF = 'DAY_OFF'
	TYPE_MODIFIED_HOURS = 'MODIFIED_HOURS'
	TYPE_EXTRA_AVAILABILITY = 'EXTRA_AVAILABILITY'

	TYPE_CHOICES = (
		(TYPE_DAY_OFF, 'Day off'),
		(TYPE_MODIFIED_HOURS, 'Modified hours'),
		(TYPE_EXTRA_AVAILABILITY, 'Extra availability'),
	)

	schedule = models.ForeignKey(
		Schedule,
		on_delete=models.CASCADE,
		related_name='exceptions',
	)
	date = models.DateField()
	type = models.CharField(max_length=20, choices=TYPE_CHOICES, default=TYPE_DAY_OFF)
	start_time = models.TimeField(null=True, blank=True)
	end_time = models.TimeField(null=True, blank=True)
	title = models.CharField(max_length=255, blank=True, default='')
	notes = models.TextField(blank=True, default='')
	created_at = models.DateTimeField(auto_now_add=True)

	class Meta:
		ordering = ["schedule_id", "date", "id"]

	def __str__(self) -> str:
		return f"ScheduleException schedule_id={self.schedule_id} {self.date} {self.type}"


class BreakPeriod(models.Model):
	"""Blocked time inside working hours.

	- recurring with ``day_of_week`` set: that weekday every week
	- recurring with ``day_of_week`` NULL: every day
	- non-recurring: bound to the date of ``exception``

	Breaks outside the working interval of a day have no effect.
	"""
	schedule = models.ForeignKey(
		Schedule,
		on_delete=models.CASCADE,
		related_name='breaks',
	)
	is_recurring = models.BooleanField(default=True)
	day_of_week = models.IntegerField(null=True, blank=True)
	exception = models.ForeignKey(
		ScheduleException,
		null=True,
		blank=True,
		on_delete=models.CASCADE,
		related_name='breaks',
	)
	start_time = models.TimeField()
	end_time = models.TimeField()
	title = models.CharField(max_length=255, blank=True, default='')

	class Meta:
		ordering = ["schedule_id", "day_of_week", "start_time", "id"]

	def __str__(self) -> str:
		return f"BreakPeriod schedule_id={self.schedule_id} day={self.day_of_week} {self.start_time}-{self.end_time}"


class Appointment(models.Model):
	"""A booked consultation between a provider and a patient.

	``end_date`` is derived from ``appointment_date + duration`` on save so the
	overlap query stays a plain two-column range filter.
	"""
	STATUS_SCHEDULED = 'SCHEDULED'
	STATUS_CONFIRMED = 'CONFIRMED'
	STATUS_IN_PROGRESS = 'IN_PROGRESS'
	STATUS_COMPLETED = 'COMPLETED'
	STATUS_CANCELLED = 'CANCELLED'

	STATUS_CHOICES = (
		(STATUS_SCHEDULED, STATUS_SCHEDULED),
		(STATUS_CONFIRMED, STATUS_CONFIRMED),
		(STATUS_IN_PROGRESS, STATUS_IN_PROGRESS),
		(STATUS_COMPLETED, STATUS_COMPLETED),
		(STATUS_CANCELLED, STATUS_CANCELLED),
	)

	# from-status -> allowed to-statuses
	TRANSITIONS = {
		STATUS_SCHEDULED: {STATUS_CONFIRMED, STATUS_IN_PROGRESS, STATUS_CANCELLED},
		STATUS_CONFIRMED: {STATUS_IN_PROGRESS, STATUS_CANCELLED},
		STATUS_IN_PROGRESS: {STATUS_COMPLETED},
		STATUS_COMPLETED: set(),
		STATUS_CANCELLED: set(),
	}

	provider = models.ForeignKey(
		settings.AUTH_USER_MODEL,
		on_delete=models.PROTECT,
		related_name='provider_appointments',
	)
	patient = models.ForeignKey(
		settings.AUTH_USER_MODEL,
		on_delete=models.PROTECT,
		related_name='patient_appointments',
	)
	appointment_date = models.DateTimeField()
	duration = models.PositiveIntegerField(default=30)  # minutes
	end_date = models.DateTimeField(editable=False)
	status = models.CharField(
		max_length=20,
		choices=STATUS_CHOICES,
		default=STATUS_SCHEDULED,
	)
	reason = models.CharField(max_length=255, blank=True, default='')
	notes = models.TextField(blank=True, default='')
	created_at = models.DateTimeField(auto_now_add=True)
	updated_at = models.DateTimeField(auto_now=True)

	class Meta:
		ordering = ['appointment_date', 'id']
		indexes = [
			models.Index(fields=['provider', 'appointment_date', 'end_date'], name='sched_appt_provider_range_idx'),
			models.Index(fields=['patient', 'appointment_date'], name='sched_appt_patient_date_idx'),
		]

	def save(self, *args, **kwargs):
		self.end_date = self.appointment_date + timedelta(minutes=self.duration)
		update_fields = kwargs.get('update_fields')
		if update_fields is not None and ('appointment_date' in update_fields or 'duration' in update_fields):
			kwargs['update_fields'] = {*update_fields, 'end_date'}
		super().save(*args, **kwargs)

	def __str__(self) -> str:
		return f"Appointment #{self.id} (provider_id={self.provider_id}, patient_id={self.patient_id})"
