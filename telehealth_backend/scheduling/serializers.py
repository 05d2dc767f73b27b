from rest_framework import serializers

from telehealth_backend.core.models import Role, User

from .conf import scheduling_setting
from .models import (
    Appointment,
    BreakPeriod,
    Schedule,
    ScheduleException,
    WeeklyAvailability,
)
from .services.booking import RECURRENCE_PATTERNS
from .services.store import BreakEntry, ExceptionEntry, WeeklyEntry, validate_timezone
from .exceptions import InvalidScheduleData


def _validate_day_of_week(value):
    if value is None or not (0 <= int(value) <= 6):
        raise serializers.ValidationError('day_of_week must be between 0 (Monday) and 6 (Sunday).')
    return value


def _validate_time_range(attrs):
    start_time = attrs.get('start_time')
    end_time = attrs.get('end_time')
    if start_time is not None and end_time is not None and start_time >= end_time:
        raise serializers.ValidationError({'end_time': 'end_time must be after start_time.'})
    return attrs


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------

class WeeklyAvailabilitySerializer(serializers.ModelSerializer):
    class Meta:
        model = WeeklyAvailability
        fields = [
            'id',
            'day_of_week',
            'is_available',
            'start_time',
            'end_time',
        ]

    def validate_day_of_week(self, value):
        return _validate_day_of_week(value)

    def validate(self, attrs):
        return _validate_time_range(attrs)


class BreakPeriodSerializer(serializers.ModelSerializer):
    class Meta:
        model = BreakPeriod
        fields = [
            'id',
            'is_recurring',
            'day_of_week',
            'exception',
            'start_time',
            'end_time',
            'title',
        ]
        read_only_fields = ['exception']

    def validate_day_of_week(self, value):
        if value is None:
            return value
        return _validate_day_of_week(value)

    def validate(self, attrs):
        return _validate_time_range(attrs)


class BreakPeriodCreateSerializer(BreakPeriodSerializer):
    exception_id = serializers.IntegerField(required=False, allow_null=True)

    class Meta(BreakPeriodSerializer.Meta):
        fields = BreakPeriodSerializer.Meta.fields + ['exception_id']

    def validate(self, attrs):
        attrs = super().validate(attrs)
        if not attrs.get('is_recurring', True) and attrs.get('exception_id') is None:
            raise serializers.ValidationError({'exception_id': 'One-off breaks must reference an exception.'})
        return attrs


class ScheduleExceptionSerializer(serializers.ModelSerializer):
    class Meta:
        model = ScheduleException
        fields = [
            'id',
            'date',
            'type',
            'start_time',
            'end_time',
            'title',
            'notes',
            'created_at',
        ]
        read_only_fields = ['created_at']

    def validate(self, attrs):
        attrs = _validate_time_range(attrs)
        exc_type = attrs.get('type', ScheduleException.TYPE_DAY_OFF)
        if exc_type != ScheduleException.TYPE_DAY_OFF:
            if attrs.get('start_time') is None or attrs.get('end_time') is None:
                raise serializers.ValidationError(
                    {'start_time': 'start_time and end_time are required for this exception type.'}
                )
        return attrs


class ScheduleSerializer(serializers.ModelSerializer):
    weekly_availability = WeeklyAvailabilitySerializer(many=True, read_only=True)
    breaks = BreakPeriodSerializer(many=True, read_only=True)
    exceptions = ScheduleExceptionSerializer(many=True, read_only=True)

    class Meta:
        model = Schedule
        fields = [
            'id',
            'provider',
            'name',
            'timezone',
            'is_default',
            'is_active',
            'buffer_minutes',
            'buffer_mandatory',
            'weekly_availability',
            'breaks',
            'exceptions',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields


def _validate_timezone_field(value):
    try:
        return validate_timezone(value)
    except InvalidScheduleData as exc:
        raise serializers.ValidationError(str(exc))


class ScheduleCreateSerializer(serializers.Serializer):
    provider = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(role__name=Role.PROVIDER),
        required=False,
    )
    name = serializers.CharField(max_length=100, default='Default')
    timezone = serializers.CharField(max_length=64, default='UTC')
    is_default = serializers.BooleanField(default=False)
    is_active = serializers.BooleanField(default=True)
    buffer_minutes = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    buffer_mandatory = serializers.BooleanField(required=False, allow_null=True)
    weekly = WeeklyAvailabilitySerializer(many=True, required=False)

    def validate_timezone(self, value):
        return _validate_timezone_field(value)


class ScheduleUpdateSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100, required=False)
    timezone = serializers.CharField(max_length=64, required=False)
    is_default = serializers.BooleanField(required=False)
    is_active = serializers.BooleanField(required=False)
    buffer_minutes = serializers.IntegerField(min_value=0, required=False, allow_null=True)
    buffer_mandatory = serializers.BooleanField(required=False, allow_null=True)

    def validate_timezone(self, value):
        return _validate_timezone_field(value)


class ProposedBreakSerializer(serializers.Serializer):
    is_recurring = serializers.BooleanField(default=True)
    day_of_week = serializers.IntegerField(required=False, allow_null=True)
    date = serializers.DateField(required=False, allow_null=True)
    start_time = serializers.TimeField()
    end_time = serializers.TimeField()
    title = serializers.CharField(required=False, allow_blank=True, default='')

    def validate_day_of_week(self, value):
        if value is None:
            return value
        return _validate_day_of_week(value)

    def validate(self, attrs):
        attrs = _validate_time_range(attrs)
        if not attrs.get('is_recurring', True) and attrs.get('date') is None:
            raise serializers.ValidationError({'date': 'One-off breaks need a date.'})
        return attrs


class ScheduleChangeValidationSerializer(serializers.Serializer):
    """Proposed replacement collections; omitted ones keep their current value."""
    weekly = WeeklyAvailabilitySerializer(many=True, required=False)
    breaks = ProposedBreakSerializer(many=True, required=False)
    exceptions = ScheduleExceptionSerializer(many=True, required=False)

    def validate_weekly(self, value):
        days = [entry['day_of_week'] for entry in value]
        if len(days) != len(set(days)):
            raise serializers.ValidationError('Only one entry per day_of_week is allowed.')
        return value

    def to_entries(self) -> dict:
        data = self.validated_data
        entries = {}
        if 'weekly' in data:
            entries['weekly'] = [
                WeeklyEntry(
                    day_of_week=w['day_of_week'],
                    start_time=w['start_time'],
                    end_time=w['end_time'],
                    is_available=w.get('is_available', True),
                )
                for w in data['weekly']
            ]
        if 'breaks' in data:
            entries['breaks'] = [
                BreakEntry(
                    start_time=b['start_time'],
                    end_time=b['end_time'],
                    is_recurring=b.get('is_recurring', True),
                    day_of_week=b.get('day_of_week'),
                    date=b.get('date'),
                    title=b.get('title', ''),
                )
                for b in data['breaks']
            ]
        if 'exceptions' in data:
            entries['exceptions'] = [
                ExceptionEntry(
                    date=e['date'],
                    type=e.get('type', ScheduleException.TYPE_DAY_OFF),
                    start_time=e.get('start_time'),
                    end_time=e.get('end_time'),
                    title=e.get('title', ''),
                )
                for e in data['exceptions']
            ]
        return entries


# ---------------------------------------------------------------------------
# Availability and conflicts
# ---------------------------------------------------------------------------

class AvailabilityQuerySerializer(serializers.Serializer):
    date_from = serializers.DateField()
    date_to = serializers.DateField()
    slot_duration = serializers.IntegerField(required=False)

    def validate(self, attrs):
        attrs.setdefault('slot_duration', scheduling_setting('DEFAULT_SLOT_MINUTES'))
        return attrs


class ConflictCheckSerializer(serializers.Serializer):
    proposed_start = serializers.DateTimeField()
    duration = serializers.IntegerField()
    patient_id = serializers.IntegerField(required=False, allow_null=True)
    exclude_appointment_id = serializers.IntegerField(required=False, allow_null=True)


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class AppointmentSerializer(serializers.ModelSerializer):
    provider_name = serializers.SerializerMethodField()
    patient_name = serializers.SerializerMethodField()

    class Meta:
        model = Appointment
        fields = [
            'id',
            'provider',
            'provider_name',
            'patient',
            'patient_name',
            'appointment_date',
            'duration',
            'end_date',
            'status',
            'reason',
            'notes',
            'created_at',
            'updated_at',
        ]
        read_only_fields = fields

    def get_provider_name(self, obj) -> str:
        return obj.provider.display_name()

    def get_patient_name(self, obj) -> str:
        return obj.patient.display_name()


class AppointmentCreateSerializer(serializers.Serializer):
    provider = serializers.PrimaryKeyRelatedField(queryset=User.objects.filter(role__name=Role.PROVIDER))
    patient = serializers.PrimaryKeyRelatedField(
        queryset=User.objects.filter(role__name=Role.PATIENT),
        required=False,
    )
    appointment_date = serializers.DateTimeField()
    duration = serializers.IntegerField(required=False)
    reason = serializers.CharField(max_length=255, required=False, allow_blank=True, default='')
    notes = serializers.CharField(required=False, allow_blank=True, default='')

    def validate(self, attrs):
        attrs.setdefault('duration', scheduling_setting('DEFAULT_SLOT_MINUTES'))
        return attrs


class RecurringAppointmentCreateSerializer(AppointmentCreateSerializer):
    pattern = serializers.ChoiceField(choices=RECURRENCE_PATTERNS)
    count = serializers.IntegerField(required=False, min_value=1)
    until = serializers.DateField(required=False)

    def validate(self, attrs):
        attrs = super().validate(attrs)
        until = attrs.get('until')
        if until is not None and until < attrs['appointment_date'].date():
            raise serializers.ValidationError({'until': 'until must not be before appointment_date.'})
        return attrs


class AppointmentRescheduleSerializer(serializers.Serializer):
    appointment_date = serializers.DateTimeField()
    duration = serializers.IntegerField(required=False)


class AppointmentStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Appointment.STATUS_CHOICES)
