"""
Management Command: availability_report

Prints the slots generated for one provider, straight from the store (the
availability cache is not consulted).

Usage:
    python manage.py availability_report 12
    python manage.py availability_report 12 --date-from 2026-03-09 --days 5
    python manage.py availability_report 12 --slot-duration 45 --json
"""

import json
from datetime import date, timedelta

from django.core.management.base import BaseCommand, CommandError

from telehealth_backend.scheduling.conf import scheduling_setting
from telehealth_backend.scheduling.exceptions import SchedulingError
from telehealth_backend.scheduling.services.availability import load_availability, validate_range
from telehealth_backend.scheduling.services.clock import SystemClock


class Command(BaseCommand):
    help = "Print generated availability slots for a provider."

    def add_arguments(self, parser):
        parser.add_argument("provider_id", type=int)
        parser.add_argument(
            "--date-from",
            type=date.fromisoformat,
            default=None,
            help="First date (YYYY-MM-DD, default: today)",
        )
        parser.add_argument(
            "--days",
            type=int,
            default=7,
            help="Number of days to report (default: 7)",
        )
        parser.add_argument(
            "--slot-duration",
            type=int,
            default=None,
            help="Slot length in minutes (default: SCHEDULING['DEFAULT_SLOT_MINUTES'])",
        )
        parser.add_argument(
            "--json",
            action="store_true",
            help="Output as JSON instead of text",
        )

    def handle(self, *args, **options):
        provider_id = options["provider_id"]
        clock = SystemClock()
        date_from = options["date_from"] or clock.now().date()
        days = options["days"]
        if days < 1:
            raise CommandError("--days must be at least 1")
        date_to = date_from + timedelta(days=days - 1)
        slot_duration = options["slot_duration"] or scheduling_setting("DEFAULT_SLOT_MINUTES")

        try:
            validate_range(date_from, date_to, slot_duration)
            result = load_availability(provider_id, date_from, date_to, slot_duration, clock=clock)
        except SchedulingError as exc:
            raise CommandError(str(exc))

        if options["json"]:
            self.stdout.write(json.dumps([day.to_dict() for day in result], indent=2))
            return

        self.stdout.write(
            self.style.NOTICE(
                f"Availability for provider {provider_id}: {date_from} .. {date_to} ({slot_duration} min slots)"
            )
        )
        total_free = 0
        for day in result:
            free = [s for s in day.slots if s.is_available]
            total_free += len(free)
            self.stdout.write(f"\n{day.date.isoformat()} ({day.date.strftime('%A')}): {len(free)}/{len(day.slots)} free")
            for slot in day.slots:
                marker = "free" if slot.is_available else (slot.reason or "unavailable")
                self.stdout.write(f"  {slot.start_time}-{slot.end_time}  {marker}")

        self.stdout.write(self.style.SUCCESS(f"\n{total_free} bookable slot(s)"))
