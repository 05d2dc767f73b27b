"""
Core App Configuration
"""

from django.apps import AppConfig


class CoreConfig(AppConfig):
    """Users, roles and audit trail."""
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'telehealth_backend.core'
    verbose_name = 'Core (Users & Roles)'
