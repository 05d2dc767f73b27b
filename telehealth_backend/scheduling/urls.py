"""Scheduling App URLs.

Prefix: /api/
Routes:
    /api/providers/<provider_id>/availability/             - bookable slots
    /api/providers/<provider_id>/availability/invalidate/  - drop cached slots
    /api/providers/<provider_id>/check-conflict/           - advisory conflict check
    /api/schedules/                                        - provider schedules
    /api/appointments/                                     - booking
    /api/appointments/recurring/                           - book a recurring series
"""

from django.urls import path

from telehealth_backend.scheduling.views import (
    AppointmentDetailView,
    AppointmentListCreateView,
    AppointmentRecurringCreateView,
    AppointmentRescheduleView,
    AppointmentStatusView,
    ProviderAvailabilityInvalidateView,
    ProviderAvailabilityView,
    ProviderConflictCheckView,
    ScheduleBreakCreateView,
    ScheduleBreakDetailView,
    ScheduleDetailView,
    ScheduleExceptionCreateView,
    ScheduleExceptionDetailView,
    ScheduleListCreateView,
    ScheduleValidateChangesView,
    ScheduleWeeklyView,
)

app_name = 'scheduling'

urlpatterns = [
    # Availability
    path('providers/<int:provider_id>/availability/', ProviderAvailabilityView.as_view(), name='provider_availability'),
    path(
        'providers/<int:provider_id>/availability/invalidate/',
        ProviderAvailabilityInvalidateView.as_view(),
        name='provider_availability_invalidate',
    ),
    path('providers/<int:provider_id>/check-conflict/', ProviderConflictCheckView.as_view(), name='provider_check_conflict'),

    # Schedules
    path('schedules/', ScheduleListCreateView.as_view(), name='schedule_list'),
    path('schedules/<int:pk>/', ScheduleDetailView.as_view(), name='schedule_detail'),
    path('schedules/<int:pk>/weekly/', ScheduleWeeklyView.as_view(), name='schedule_weekly'),
    path('schedules/<int:pk>/breaks/', ScheduleBreakCreateView.as_view(), name='schedule_breaks'),
    path('schedules/<int:pk>/breaks/<int:break_id>/', ScheduleBreakDetailView.as_view(), name='schedule_break_detail'),
    path('schedules/<int:pk>/exceptions/', ScheduleExceptionCreateView.as_view(), name='schedule_exceptions'),
    path(
        'schedules/<int:pk>/exceptions/<int:exception_id>/',
        ScheduleExceptionDetailView.as_view(),
        name='schedule_exception_detail',
    ),
    path('schedules/<int:pk>/validate-changes/', ScheduleValidateChangesView.as_view(), name='schedule_validate_changes'),

    # Appointments
    path('appointments/', AppointmentListCreateView.as_view(), name='appointment_list'),
    path('appointments/recurring/', AppointmentRecurringCreateView.as_view(), name='appointment_recurring'),
    path('appointments/<int:pk>/', AppointmentDetailView.as_view(), name='appointment_detail'),
    path('appointments/<int:pk>/reschedule/', AppointmentRescheduleView.as_view(), name='appointment_reschedule'),
    path('appointments/<int:pk>/status/', AppointmentStatusView.as_view(), name='appointment_status'),
]
