from unittest import mock

from django.test import TestCase

from rest_framework.test import APIClient

from telehealth_backend.core.models import AuditLog, Role, User
from telehealth_backend.core.utils import log_action


class HealthTest(TestCase):
    databases = {"default"}

    def test_health_is_public(self):
        client = APIClient()
        r = client.get("/api/health/")

        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"status": "ok"})


class AuditLogTest(TestCase):
    databases = {"default"}

    def setUp(self):
        role, _ = Role.objects.get_or_create(name=Role.PROVIDER, defaults={"label": "Provider"})
        self.user = User.objects.create_user(
            username="audit_provider",
            email="audit_provider@example.com",
            password="DummyPass123!",
            role=role,
        )

    def test_log_action_records_role(self):
        log_action(self.user, "schedule_update", meta={"schedule_id": 1})

        log = AuditLog.objects.get()
        self.assertEqual(log.role_name, "provider")
        self.assertEqual(log.user, self.user)
        self.assertEqual(log.meta, {"schedule_id": 1})

    def test_anonymous_user_is_stored_as_null(self):
        log_action(None, "availability_invalidate", patient_id=5)

        log = AuditLog.objects.get()
        self.assertIsNone(log.user)
        self.assertEqual(log.role_name, "")
        self.assertEqual(log.patient_id, 5)

    def test_failed_write_is_logged_not_raised(self):
        with mock.patch.object(AuditLog.objects, "create", side_effect=RuntimeError("db gone")):
            with self.assertLogs("telehealth_backend.core.utils", level="ERROR"):
                log_action(self.user, "appointment_book")


class LoginTest(TestCase):
    databases = {"default"}

    def test_jwt_login(self):
        User.objects.create_user(username="jwt_user", email="jwt@example.com", password="DummyPass123!")
        client = APIClient()

        r = client.post("/api/auth/login/", {"username": "jwt_user", "password": "DummyPass123!"}, format="json")
        self.assertEqual(r.status_code, 200)
        self.assertIn("access", r.data)
        self.assertIn("refresh", r.data)


class UserRoleNameTest(TestCase):
    databases = {"default"}

    def test_role_name_follows_role(self):
        role, _ = Role.objects.get_or_create(name=Role.PATIENT, defaults={"label": "Patient"})
        patient = User.objects.create_user(username="rn_patient", password="DummyPass123!", role=role)
        no_role = User.objects.create_user(username="rn_none", password="DummyPass123!")

        self.assertEqual(patient.role_name, "patient")
        self.assertIsNone(no_role.role_name)

    def test_user_without_role_is_denied_by_scheduling_endpoints(self):
        user = User.objects.create_user(username="rn_denied", password="DummyPass123!")
        client = APIClient()
        client.force_authenticate(user=user)

        r = client.get("/api/appointments/")
        self.assertEqual(r.status_code, 403)
