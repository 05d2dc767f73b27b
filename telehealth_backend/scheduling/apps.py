"""
Scheduling App Configuration
"""

from django.apps import AppConfig


class SchedulingConfig(AppConfig):
    """Provider schedules, availability and booking.

    ``ready()`` builds the process-wide availability cache and clock; views
    and services reach them through this app config.
    """
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'telehealth_backend.scheduling'
    label = 'scheduling'
    verbose_name = 'Scheduling (Availability & Booking)'

    availability_cache = None
    clock = None

    def ready(self):
        from .services.availability import load_availability
        from .services.cache import AvailabilityCache
        from .services.clock import SystemClock

        self.clock = SystemClock()
        self.availability_cache = AvailabilityCache.from_settings(load_availability, clock=self.clock)
