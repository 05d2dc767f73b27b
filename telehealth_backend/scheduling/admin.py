"""
Scheduling admin. Edits made here bypass the service layer, so every save and
delete invalidates the provider's cached availability after commit.
"""

from django.contrib import admin

from .models import (
    Appointment,
    BreakPeriod,
    Schedule,
    ScheduleException,
    WeeklyAvailability,
)
from .services.availability import invalidate_on_commit


class _InvalidatingAdmin(admin.ModelAdmin):
    def _provider_id(self, obj):
        return obj.provider_id

    def save_model(self, request, obj, form, change):
        super().save_model(request, obj, form, change)
        invalidate_on_commit(self._provider_id(obj))

    def delete_model(self, request, obj):
        provider_id = self._provider_id(obj)
        super().delete_model(request, obj)
        invalidate_on_commit(provider_id)

    def delete_queryset(self, request, queryset):
        provider_ids = {self._provider_id(obj) for obj in queryset}
        super().delete_queryset(request, queryset)
        for provider_id in provider_ids:
            invalidate_on_commit(provider_id)


class WeeklyAvailabilityInline(admin.TabularInline):
    model = WeeklyAvailability
    extra = 0
    fields = ("day_of_week", "is_available", "start_time", "end_time")


class ScheduleExceptionInline(admin.TabularInline):
    model = ScheduleException
    extra = 0
    fields = ("date", "type", "start_time", "end_time", "title")


class BreakPeriodInline(admin.TabularInline):
    model = BreakPeriod
    extra = 0
    fields = ("is_recurring", "day_of_week", "exception", "start_time", "end_time", "title")


@admin.register(Schedule)
class ScheduleAdmin(_InvalidatingAdmin):
    list_display = ("id", "provider", "name", "timezone", "is_default", "is_active")
    list_filter = ("is_default", "is_active", "timezone")
    search_fields = ("name", "provider__username", "provider__last_name")
    inlines = [WeeklyAvailabilityInline, BreakPeriodInline, ScheduleExceptionInline]

    def save_related(self, request, form, formsets, change):
        super().save_related(request, form, formsets, change)
        invalidate_on_commit(form.instance.provider_id)


@admin.register(ScheduleException)
class ScheduleExceptionAdmin(_InvalidatingAdmin):
    list_display = ("schedule", "date", "type", "start_time", "end_time", "title")
    list_filter = ("type",)
    date_hierarchy = "date"

    def _provider_id(self, obj):
        return obj.schedule.provider_id


@admin.register(Appointment)
class AppointmentAdmin(_InvalidatingAdmin):
    list_display = ("id", "provider", "patient", "appointment_date", "duration", "status")
    list_filter = ("status",)
    search_fields = ("reason", "provider__username", "patient__username")
    readonly_fields = ("end_date", "created_at", "updated_at")
    date_hierarchy = "appointment_date"
