from rest_framework.permissions import BasePermission, SAFE_METHODS


class _RolePermission(BasePermission):
    read_roles: set[str] = set()
    write_roles: set[str] = set()

    def _role_name(self, request):
        return getattr(getattr(request, "user", None), "role_name", None)

    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if not user or not user.is_authenticated:
            return False

        role_name = self._role_name(request)
        if not role_name:
            return False

        if request.method in SAFE_METHODS:
            return role_name in self.read_roles

        return role_name in self.write_roles


class AvailabilityPermission(_RolePermission):
    """RBAC for availability reads and conflict checks.

    - admin, provider, patient: GET availability, POST check-conflict
      (a conflict check writes nothing)
    """

    read_roles = {"admin", "provider", "patient"}
    write_roles = {"admin", "provider", "patient"}


class AvailabilityInvalidatePermission(_RolePermission):
    """RBAC for dropping cached availability.

    - admin: any provider
    - provider: only themselves
    """

    read_roles = set()
    write_roles = {"admin", "provider"}

    def has_permission(self, request, view):
        if not super().has_permission(request, view):
            return False
        if self._role_name(request) == "provider":
            return int(view.kwargs.get("provider_id", 0)) == getattr(request.user, "id", None)
        return True


class SchedulePermission(_RolePermission):
    """RBAC for schedules and their breaks/exceptions.

    - admin: everything
    - provider: own schedules only (read/write)
    - patient: no access (patients read availability instead)
    """

    read_roles = {"admin", "provider"}
    write_roles = {"admin", "provider"}

    def has_object_permission(self, request, view, obj):
        role_name = self._role_name(request)
        if not role_name:
            return False

        if role_name == "provider":
            return getattr(obj, "provider_id", None) == getattr(request.user, "id", None)

        return True


class AppointmentPermission(_RolePermission):
    """RBAC for appointments.

    - admin: everything
    - provider: own appointments (read/write)
    - patient: own appointments (book, reschedule, cancel)
    """

    read_roles = {"admin", "provider", "patient"}
    write_roles = {"admin", "provider", "patient"}

    def has_object_permission(self, request, view, obj):
        role_name = self._role_name(request)
        if not role_name:
            return False

        user_id = getattr(request.user, "id", None)
        if role_name == "provider":
            return getattr(obj, "provider_id", None) == user_id
        if role_name == "patient":
            return getattr(obj, "patient_id", None) == user_id

        return True
