import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def log_action(user, action, patient_id=None, meta=None):
    """Write a booking/schedule action to the audit trail.

    A failed audit write is logged and swallowed; it must never fail the
    request that triggered it.
    """

    role_name = ''
    try:
        role = getattr(user, 'role', None)
        if role is not None:
            role_name = getattr(role, 'name', '') or ''
    except Exception:
        role_name = ''

    try:
        AuditLog.objects.create(
            user=user if getattr(user, 'is_authenticated', False) else None,
            role_name=role_name,
            action=action,
            patient_id=patient_id,
            meta=meta,
        )
    except Exception:
        logger.exception('AuditLog write failed (action=%s, patient_id=%s)', action, patient_id)
