from django.apps import apps

from rest_framework import generics, status
from rest_framework.response import Response

from telehealth_backend.core.utils import log_action

from .exceptions import SchedulingError
from .models import Appointment, Schedule, ScheduleException
from .permissions import (
	AppointmentPermission,
	AvailabilityInvalidatePermission,
	AvailabilityPermission,
	SchedulePermission,
)
from .serializers import (
	AppointmentCreateSerializer,
	AppointmentRescheduleSerializer,
	AppointmentSerializer,
	AppointmentStatusSerializer,
	AvailabilityQuerySerializer,
	BreakPeriodCreateSerializer,
	BreakPeriodSerializer,
	ConflictCheckSerializer,
	RecurringAppointmentCreateSerializer,
	ScheduleChangeValidationSerializer,
	ScheduleCreateSerializer,
	ScheduleExceptionSerializer,
	ScheduleSerializer,
	ScheduleUpdateSerializer,
	WeeklyAvailabilitySerializer,
)
from .services import booking, store
from .services.availability import (
	check_conflict,
	get_availability,
	invalidate_availability,
	invalidate_on_commit,
)
from .services.conflicts import validate_schedule_changes


def _error_response(exc: SchedulingError):
	return Response(exc.to_dict(), status=exc.status_code)


def _role_name(request):
	return getattr(request.user, 'role_name', None)


def _scheduling_config():
	return apps.get_app_config('scheduling')


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------

class ProviderAvailabilityView(generics.GenericAPIView):
	"""GET /api/providers/<provider_id>/availability/ - bookable slots per day."""
	permission_classes = [AvailabilityPermission]
	serializer_class = AvailabilityQuerySerializer

	def get(self, request, *args, **kwargs):
		provider_id = int(kwargs['provider_id'])
		query = self.get_serializer(data=request.query_params)
		query.is_valid(raise_exception=True)
		params = query.validated_data

		try:
			days = get_availability(
				provider_id=provider_id,
				date_from=params['date_from'],
				date_to=params['date_to'],
				slot_duration=params['slot_duration'],
				cache=_scheduling_config().availability_cache,
			)
		except SchedulingError as e:
			return _error_response(e)

		payload = {
			'provider_id': provider_id,
			'date_from': params['date_from'].isoformat(),
			'date_to': params['date_to'].isoformat(),
			'slot_duration': params['slot_duration'],
			'days': [day.to_dict() for day in days],
		}
		return Response(payload, status=status.HTTP_200_OK)


class ProviderConflictCheckView(generics.GenericAPIView):
	"""POST /api/providers/<provider_id>/check-conflict/ - advisory verdict, writes nothing."""
	permission_classes = [AvailabilityPermission]
	serializer_class = ConflictCheckSerializer

	def post(self, request, *args, **kwargs):
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)
		data = ser.validated_data

		patient_id = data.get('patient_id')
		if _role_name(request) == 'patient':
			patient_id = request.user.id

		try:
			result = check_conflict(
				provider_id=int(kwargs['provider_id']),
				proposed_start=data['proposed_start'],
				duration=data['duration'],
				patient_id=patient_id,
				exclude_appointment_id=data.get('exclude_appointment_id'),
				clock=_scheduling_config().clock,
			)
		except SchedulingError as e:
			return _error_response(e)

		return Response(result.to_dict(), status=status.HTTP_200_OK)


class ProviderAvailabilityInvalidateView(generics.GenericAPIView):
	"""POST /api/providers/<provider_id>/availability/invalidate/"""
	permission_classes = [AvailabilityInvalidatePermission]

	def post(self, request, *args, **kwargs):
		provider_id = int(kwargs['provider_id'])
		invalidate_availability(provider_id, cache=_scheduling_config().availability_cache)
		log_action(request.user, 'availability_invalidate', meta={'provider_id': provider_id})
		return Response({'provider_id': provider_id, 'invalidated': True}, status=status.HTTP_200_OK)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

class _ScheduleScopedMixin:
	"""Schedules visible to the requesting user; providers only see their own."""

	def get_queryset(self):
		qs = Schedule.objects.select_related('provider').prefetch_related(
			'weekly_availability', 'breaks', 'exceptions'
		).order_by('provider_id', 'id')
		if _role_name(self.request) == 'provider':
			qs = qs.filter(provider=self.request.user)
		return qs

	def _invalidate(self, provider_id):
		invalidate_on_commit(provider_id, cache=_scheduling_config().availability_cache)


class ScheduleListCreateView(_ScheduleScopedMixin, generics.ListCreateAPIView):
	permission_classes = [SchedulePermission]

	def get_serializer_class(self):
		if self.request.method == 'POST':
			return ScheduleCreateSerializer
		return ScheduleSerializer

	def create(self, request, *args, **kwargs):
		serializer = self.get_serializer(data=request.data)
		serializer.is_valid(raise_exception=True)
		data = dict(serializer.validated_data)

		if _role_name(request) == 'provider':
			provider_id = request.user.id
		elif data.get('provider') is not None:
			provider_id = data['provider'].id
		else:
			return Response({'provider': ['This field is required.']}, status=status.HTTP_400_BAD_REQUEST)

		try:
			schedule = store.create_schedule(
				provider_id=provider_id,
				name=data['name'],
				timezone=data['timezone'],
				is_default=data['is_default'],
				is_active=data['is_active'],
				buffer_minutes=data.get('buffer_minutes'),
				buffer_mandatory=data.get('buffer_mandatory'),
				weekly=data.get('weekly', []),
			)
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(provider_id)
		log_action(request.user, 'schedule_create', meta={'schedule_id': schedule.id, 'provider_id': provider_id})
		schedule = self.get_queryset().get(pk=schedule.pk)
		out = ScheduleSerializer(schedule, context={'request': request}).data
		headers = self.get_success_headers(out)
		return Response(out, status=status.HTTP_201_CREATED, headers=headers)


class ScheduleDetailView(_ScheduleScopedMixin, generics.RetrieveUpdateDestroyAPIView):
	permission_classes = [SchedulePermission]

	def get_serializer_class(self):
		if self.request.method in ('PUT', 'PATCH'):
			return ScheduleUpdateSerializer
		return ScheduleSerializer

	def update(self, request, *args, **kwargs):
		obj = self.get_object()
		ser = self.get_serializer(data=request.data, partial=True)
		ser.is_valid(raise_exception=True)

		try:
			store.update_schedule(schedule_id=obj.id, **ser.validated_data)
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(obj.provider_id)
		log_action(
			request.user,
			'schedule_update',
			meta={'schedule_id': obj.id, 'fields': sorted(ser.validated_data)},
		)
		obj = self.get_queryset().get(pk=obj.pk)
		return Response(ScheduleSerializer(obj, context={'request': request}).data, status=status.HTTP_200_OK)

	def partial_update(self, request, *args, **kwargs):
		return self.update(request, *args, **kwargs)

	def destroy(self, request, *args, **kwargs):
		obj = self.get_object()
		try:
			provider_id = store.delete_schedule(schedule_id=obj.id)
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(provider_id)
		log_action(request.user, 'schedule_delete', meta={'schedule_id': kwargs['pk'], 'provider_id': provider_id})
		return Response(status=status.HTTP_204_NO_CONTENT)


class ScheduleWeeklyView(_ScheduleScopedMixin, generics.GenericAPIView):
	"""PUT /api/schedules/<pk>/weekly/ - create or replace one weekday."""
	permission_classes = [SchedulePermission]
	serializer_class = WeeklyAvailabilitySerializer

	def put(self, request, *args, **kwargs):
		schedule = self.get_object()
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)
		data = ser.validated_data

		try:
			entry = store.set_weekly_availability(
				schedule_id=schedule.id,
				day_of_week=data['day_of_week'],
				start_time=data['start_time'],
				end_time=data['end_time'],
				is_available=data.get('is_available', True),
			)
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(schedule.provider_id)
		log_action(
			request.user,
			'schedule_weekly_set',
			meta={'schedule_id': schedule.id, 'day_of_week': entry.day_of_week},
		)
		return Response(WeeklyAvailabilitySerializer(entry).data, status=status.HTTP_200_OK)


class ScheduleBreakCreateView(_ScheduleScopedMixin, generics.GenericAPIView):
	permission_classes = [SchedulePermission]
	serializer_class = BreakPeriodCreateSerializer

	def post(self, request, *args, **kwargs):
		schedule = self.get_object()
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)
		data = ser.validated_data

		try:
			brk = store.add_break(
				schedule_id=schedule.id,
				start_time=data['start_time'],
				end_time=data['end_time'],
				is_recurring=data.get('is_recurring', True),
				day_of_week=data.get('day_of_week'),
				exception_id=data.get('exception_id'),
				title=data.get('title', ''),
			)
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(schedule.provider_id)
		log_action(request.user, 'schedule_break_add', meta={'schedule_id': schedule.id, 'break_id': brk.id})
		return Response(BreakPeriodSerializer(brk).data, status=status.HTTP_201_CREATED)


class ScheduleBreakDetailView(_ScheduleScopedMixin, generics.GenericAPIView):
	permission_classes = [SchedulePermission]

	def delete(self, request, *args, **kwargs):
		schedule = self.get_object()
		try:
			provider_id = store.remove_break(schedule_id=schedule.id, break_id=int(kwargs['break_id']))
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(provider_id)
		log_action(request.user, 'schedule_break_remove', meta={'schedule_id': schedule.id, 'break_id': kwargs['break_id']})
		return Response(status=status.HTTP_204_NO_CONTENT)


class ScheduleExceptionCreateView(_ScheduleScopedMixin, generics.GenericAPIView):
	permission_classes = [SchedulePermission]
	serializer_class = ScheduleExceptionSerializer

	def post(self, request, *args, **kwargs):
		schedule = self.get_object()
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)
		data = ser.validated_data

		try:
			exc = store.add_exception(
				schedule_id=schedule.id,
				date=data['date'],
				type=data.get('type', ScheduleException.TYPE_DAY_OFF),
				start_time=data.get('start_time'),
				end_time=data.get('end_time'),
				title=data.get('title', ''),
				notes=data.get('notes', ''),
			)
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(schedule.provider_id)
		log_action(
			request.user,
			'schedule_exception_add',
			meta={'schedule_id': schedule.id, 'exception_id': exc.id, 'date': exc.date.isoformat()},
		)
		return Response(ScheduleExceptionSerializer(exc).data, status=status.HTTP_201_CREATED)


class ScheduleExceptionDetailView(_ScheduleScopedMixin, generics.GenericAPIView):
	permission_classes = [SchedulePermission]

	def delete(self, request, *args, **kwargs):
		schedule = self.get_object()
		try:
			provider_id = store.remove_exception(schedule_id=schedule.id, exception_id=int(kwargs['exception_id']))
		except SchedulingError as e:
			return _error_response(e)

		self._invalidate(provider_id)
		log_action(
			request.user,
			'schedule_exception_remove',
			meta={'schedule_id': schedule.id, 'exception_id': kwargs['exception_id']},
		)
		return Response(status=status.HTTP_204_NO_CONTENT)


class ScheduleValidateChangesView(_ScheduleScopedMixin, generics.GenericAPIView):
	"""POST /api/schedules/<pk>/validate-changes/ - which upcoming appointments a change would strand."""
	permission_classes = [SchedulePermission]
	serializer_class = ScheduleChangeValidationSerializer

	def post(self, request, *args, **kwargs):
		schedule = self.get_object()
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)

		try:
			result = validate_schedule_changes(
				schedule_id=schedule.id,
				clock=_scheduling_config().clock,
				**ser.to_entries(),
			)
		except SchedulingError as e:
			return _error_response(e)

		return Response(result.to_dict(), status=status.HTTP_200_OK)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class _AppointmentScopedMixin:

	def get_queryset(self):
		qs = Appointment.objects.select_related('provider', 'patient').order_by('appointment_date', 'id')
		role_name = _role_name(self.request)
		if role_name == 'provider':
			qs = qs.filter(provider=self.request.user)
		elif role_name == 'patient':
			qs = qs.filter(patient=self.request.user)
		return qs


def _booking_parties(request, data):
	"""Provider and patient of a booking request, or an error response."""
	role_name = _role_name(request)
	provider = data['provider']
	patient = data.get('patient')
	if role_name == 'patient':
		patient = request.user
	elif role_name == 'provider' and provider.id != request.user.id:
		return provider, patient, Response(
			{'detail': 'Providers can only book their own appointments.'},
			status=status.HTTP_403_FORBIDDEN,
		)
	if patient is None:
		return provider, patient, Response({'patient': ['This field is required.']}, status=status.HTTP_400_BAD_REQUEST)
	return provider, patient, None


class AppointmentListCreateView(_AppointmentScopedMixin, generics.ListCreateAPIView):
	permission_classes = [AppointmentPermission]

	def get_serializer_class(self):
		if self.request.method == 'POST':
			return AppointmentCreateSerializer
		return AppointmentSerializer

	def get_queryset(self):
		qs = super().get_queryset()
		params = self.request.query_params
		if params.get('provider_id'):
			qs = qs.filter(provider_id=params['provider_id'])
		if params.get('patient_id'):
			qs = qs.filter(patient_id=params['patient_id'])
		if params.get('status'):
			qs = qs.filter(status=params['status'])
		if params.get('date'):
			qs = qs.filter(appointment_date__date=params['date'])
		return qs

	def create(self, request, *args, **kwargs):
		serializer = self.get_serializer(data=request.data)
		serializer.is_valid(raise_exception=True)
		data = serializer.validated_data

		provider, patient, denied = _booking_parties(request, data)
		if denied is not None:
			return denied

		try:
			appointment, result = booking.book_appointment(
				provider_id=provider.id,
				patient_id=patient.id,
				appointment_date=data['appointment_date'],
				duration=data['duration'],
				reason=data.get('reason', ''),
				notes=data.get('notes', ''),
				user=request.user,
				clock=_scheduling_config().clock,
			)
		except SchedulingError as e:
			return _error_response(e)

		out = AppointmentSerializer(appointment, context={'request': request}).data
		out['warnings'] = [w.to_dict() for w in result.warnings]
		headers = self.get_success_headers(out)
		return Response(out, status=status.HTTP_201_CREATED, headers=headers)


class AppointmentRecurringCreateView(generics.GenericAPIView):
	"""POST /api/appointments/recurring/ - book a DAILY, WEEKLY or MONTHLY series."""
	permission_classes = [AppointmentPermission]
	serializer_class = RecurringAppointmentCreateSerializer

	def post(self, request, *args, **kwargs):
		serializer = self.get_serializer(data=request.data)
		serializer.is_valid(raise_exception=True)
		data = serializer.validated_data

		provider, patient, denied = _booking_parties(request, data)
		if denied is not None:
			return denied

		try:
			result = booking.book_recurring_appointments(
				provider_id=provider.id,
				patient_id=patient.id,
				first_start=data['appointment_date'],
				duration=data['duration'],
				pattern=data['pattern'],
				count=data.get('count'),
				until=data.get('until'),
				reason=data.get('reason', ''),
				notes=data.get('notes', ''),
				user=request.user,
				clock=_scheduling_config().clock,
			)
		except SchedulingError as e:
			return _error_response(e)

		return Response(
			{
				'appointments': AppointmentSerializer(
					result.appointments, many=True, context={'request': request}
				).data,
				'skipped': [s.to_dict() for s in result.skipped],
			},
			status=status.HTTP_201_CREATED,
		)


class AppointmentDetailView(_AppointmentScopedMixin, generics.RetrieveAPIView):
	permission_classes = [AppointmentPermission]
	serializer_class = AppointmentSerializer


class AppointmentRescheduleView(_AppointmentScopedMixin, generics.GenericAPIView):
	permission_classes = [AppointmentPermission]
	serializer_class = AppointmentRescheduleSerializer

	def post(self, request, *args, **kwargs):
		obj = self.get_object()
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)
		data = ser.validated_data

		try:
			appointment, result = booking.reschedule_appointment(
				appointment_id=obj.id,
				appointment_date=data['appointment_date'],
				duration=data.get('duration'),
				user=request.user,
				clock=_scheduling_config().clock,
			)
		except SchedulingError as e:
			return _error_response(e)

		out = AppointmentSerializer(appointment, context={'request': request}).data
		out['warnings'] = [w.to_dict() for w in result.warnings]
		return Response(out, status=status.HTTP_200_OK)


class AppointmentStatusView(_AppointmentScopedMixin, generics.GenericAPIView):
	"""POST /api/appointments/<pk>/status/ - lifecycle transition; patients may only cancel."""
	permission_classes = [AppointmentPermission]
	serializer_class = AppointmentStatusSerializer

	def post(self, request, *args, **kwargs):
		obj = self.get_object()
		ser = self.get_serializer(data=request.data)
		ser.is_valid(raise_exception=True)
		new_status = ser.validated_data['status']

		if _role_name(request) == 'patient' and new_status != Appointment.STATUS_CANCELLED:
			return Response(
				{'detail': 'Patients can only cancel appointments.'},
				status=status.HTTP_403_FORBIDDEN,
			)

		try:
			appointment = booking.transition_status(appointment_id=obj.id, status=new_status, user=request.user)
		except SchedulingError as e:
			return _error_response(e)

		return Response(AppointmentSerializer(appointment, context={'request': request}).data, status=status.HTTP_200_OK)
