"""Telehealth backend URL configuration.

API routes:
    /api/health/, /api/auth/  - health check and JWT (core)
    /api/providers/           - availability and conflict checks (scheduling)
    /api/schedules/           - provider schedules (scheduling)
    /api/appointments/        - booking orchestrator (scheduling)
"""

from django.contrib import admin
from django.http import HttpResponse
from django.urls import include, path


def root(request):
    return HttpResponse("Telehealth backend is running.")


urlpatterns = [
    path("", root, name="root"),
    path("admin/", admin.site.urls),

    path("api/", include("telehealth_backend.core.urls")),
    path("api/", include("telehealth_backend.scheduling.urls")),
]
