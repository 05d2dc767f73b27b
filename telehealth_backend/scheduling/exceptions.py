"""
Exceptions raised by the availability engine.

Services raise these; views translate them to DRF responses using
``to_dict()`` and ``status_code``. Conflicts found by ``check_conflict`` are
returned as data, not raised.
"""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from telehealth_backend.scheduling.services.conflicts import ConflictDetails


class SchedulingError(Exception):
    """Base exception for all scheduling-related errors."""
    status_code = 400

    def to_dict(self) -> dict[str, Any]:
        return {'detail': str(self)}


class InvalidRangeError(SchedulingError):
    """
    Raised for malformed range or duration input.

    Examples: ``slot_duration <= 0``, ``date_from > date_to``, a range longer
    than ``MAX_RANGE_DAYS``, an appointment ``duration <= 0``.
    """
    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = {'detail': str(self)}
        if self.field:
            result['field'] = self.field
        return result


class InvalidScheduleData(SchedulingError):
    """
    Raised when schedule data is invalid (e.g., end_time before start_time,
    unknown timezone).
    """
    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = {'detail': str(self)}
        if self.field:
            result['field'] = self.field
        return result


class GenerationCancelled(SchedulingError):
    """Raised inside a slot generation run whose result is no longer wanted."""
    status_code = 503


class NotFoundError(SchedulingError):
    """
    Raised when a provider has no active schedule, or a schedule/appointment
    id does not exist.
    """
    status_code = 404

    def __init__(self, message: str, *, provider_id: int | None = None):
        self.provider_id = provider_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = {'detail': str(self)}
        if self.provider_id is not None:
            result['provider_id'] = self.provider_id
        return result


class ScheduleConflictError(SchedulingError):
    """
    Raised when a schedule write would break a store invariant.

    Attributes:
        provider_id: The provider whose schedules are affected
        reason: 'duplicate_default' or 'duplicate_weekday'
    """
    status_code = 409

    def __init__(self, message: str, *, provider_id: int | None = None, reason: str | None = None):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = {'detail': str(self)}
        if self.provider_id is not None:
            result['provider_id'] = self.provider_id
        if self.reason:
            result['reason'] = self.reason
        return result


class AvailabilityUnavailableError(SchedulingError):
    """Raised when availability could not be computed and nothing stale is cached."""
    status_code = 503

    def __init__(self, provider_id: int, message: str = "Availability is temporarily unavailable"):
        self.provider_id = provider_id
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {'detail': str(self), 'provider_id': self.provider_id}


class BookingConflictError(SchedulingError):
    """
    Raised by the booking orchestrator when the transactional re-check finds
    error-severity conflicts.

    Contains the ``ConflictDetails`` that blocked the write.
    """
    status_code = 409

    def __init__(
        self,
        conflicts: list[ConflictDetails],
        suggestions: list[ConflictDetails] | None = None,
        message: str = "Requested time is no longer available",
    ):
        self.conflicts = conflicts
        self.suggestions = suggestions or []
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        result = {
            'detail': str(self),
            'conflicts': [c.to_dict() for c in self.conflicts],
        }
        if self.suggestions:
            result['suggestions'] = [s.to_dict() for s in self.suggestions]
        return result


class InvalidStatusTransition(SchedulingError):
    """Raised when an appointment status change is not allowed."""

    def __init__(self, *, current: str, requested: str, message: str | None = None):
        self.current = current
        self.requested = requested
        super().__init__(message or f"Cannot change status from {current} to {requested}")

    def to_dict(self) -> dict[str, Any]:
        return {
            'detail': str(self),
            'current': self.current,
            'requested': self.requested,
        }
