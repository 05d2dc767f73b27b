"""Access to the ``SCHEDULING`` settings dict with defaults filled in."""

from django.conf import settings

DEFAULTS = {
    'DEFAULT_SLOT_MINUTES': 30,
    'MAX_RANGE_DAYS': 62,
    'BUFFER_MINUTES': 0,
    'BUFFER_MANDATORY': False,
    'SUGGESTION_WINDOW_DAYS': 3,
    'MAX_SUGGESTIONS': 3,
    'VALIDATION_HORIZON_DAYS': 90,
    'MAX_RECURRING_OCCURRENCES': 52,
    'CACHE_TTL_SECONDS': 300,
    'CACHE_IDLE_SECONDS': 1800,
    'CACHE_TIMEOUT_SECONDS': 3,
    'CACHE_BACKGROUND_REFRESH': True,
    'CACHE_MAX_WORKERS': 4,
}


def scheduling_setting(name: str):
    if name not in DEFAULTS:
        raise KeyError(f"Unknown SCHEDULING setting: {name}")
    return getattr(settings, 'SCHEDULING', {}).get(name, DEFAULTS[name])
