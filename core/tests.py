from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.exceptions import DomainValidationError, NotFoundError
from core.models import AuditLog
from core.services import create_user_profile, get_all_users, update_user_role


class UserServiceTests(TestCase):
    def setUp(self):
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(username="service-user", password="pass1234", role="admin")

    def test_create_user_profile_forces_default_role(self):
        user = create_user_profile(uid=self.user.id, name="  Sara  ", email="Sara@Example.com")

        self.assertEqual(user.role, self.user_model.Role.DEPLOY)
        self.assertEqual(user.name, "Sara")
        self.assertEqual(user.email, "sara@example.com")

    def test_get_all_users_orders_by_name(self):
        self.user_model.objects.create_user(username="b-user", password="pass1234", name="Bassem")
        self.user_model.objects.create_user(username="a-user", password="pass1234", name="Amr")

        names = [user.name for user in get_all_users()]

        self.assertEqual(names, ["", "Amr", "Bassem"])

    def test_update_user_role_rejects_unknown_role(self):
        with self.assertRaises(DomainValidationError) as ctx:
            update_user_role(self.user.id, "owner")

        self.assertIn("role", ctx.exception.errors)

    def test_update_user_role_rejects_unknown_user(self):
        with self.assertRaises(NotFoundError):
            update_user_role("00000000-0000-0000-0000-000000000000", "admin")

        with self.assertRaises(NotFoundError):
            update_user_role("not-a-uuid", "admin")

    def test_service_does_not_block_self_role_change(self):
        # The calling layer is expected to reject this before invoking the service.
        user = update_user_role(self.user.id, self.user_model.Role.DEPLOY)

        self.assertEqual(user.role, self.user_model.Role.DEPLOY)


class RegistrationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user_model.objects.create_user(
            username="existing-user",
            email="existing@example.com",
            password="pass1234",
        )

    def test_registration_creates_deploy_user_and_audit_log(self):
        response = self.client.post(
            "/api/v1/register/",
            {"username": "new-user", "name": "New User", "email": "new@example.com", "password": "pass12345"},
            format="json",
            HTTP_X_REQUEST_ID="req-register",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["role"], "deploy")
        self.assertEqual(payload["name"], "New User")
        self.assertTrue(
            AuditLog.objects.filter(action="user.create", entity_id=payload["uid"], request_id="req-register").exists()
        )

    def test_registration_rejects_case_insensitive_duplicate_email(self):
        response = self.client.post(
            "/api/v1/register/",
            {"username": "new-user", "name": "New", "email": "EXISTING@example.com", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["errors"], {"email": ["A user with this email already exists."]})

    def test_token_can_be_obtained_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "EXISTING@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())


class AdminUserApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="admin", password="pass1234", role="admin")
        self.deploy = self.user_model.objects.create_user(username="deploy", password="pass1234", role="deploy")

    def test_deploy_user_cannot_list_users_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.deploy)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/users/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_lists_users(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/users/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual({item["username"] for item in payload["results"]}, {"admin", "deploy"})

    def test_admin_creates_user_with_default_role(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/admin/users/",
            {"username": "clerk", "name": "Clerk", "email": "clerk@example.com", "password": "pass12345"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["role"], "deploy")

    def test_admin_changes_other_user_role(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/admin/users/{self.deploy.id}/role/", {"role": "admin"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.deploy.refresh_from_db()
        self.assertEqual(self.deploy.role, "admin")
        self.assertTrue(AuditLog.objects.filter(action="user.role_update", entity_id=str(self.deploy.id)).exists())

    def test_admin_cannot_change_own_role(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/admin/users/{self.admin.id}/role/", {"role": "deploy"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("role", response.json()["errors"])
        self.admin.refresh_from_db()
        self.assertEqual(self.admin.role, "admin")

    def test_role_change_for_unknown_user_is_not_found(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/admin/users/00000000-0000-0000-0000-000000000000/role/",
            {"role": "admin"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_invalid_role_is_rejected(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/admin/users/{self.deploy.id}/role/", {"role": "owner"}, format="json")

        self.assertEqual(response.status_code, 400)


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.client.force_authenticate(user=self.admin)

    def test_audit_logs_are_read_only(self):
        log = AuditLog.objects.create(actor=self.admin, action="invoice.create", entity="invoice", entity_id="abc")

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_audit_logs_filter_by_entity_id_and_export(self):
        AuditLog.objects.create(actor=self.admin, action="invoice.create", entity="invoice", entity_id="abc")
        AuditLog.objects.create(actor=self.admin, action="invoice.create", entity="invoice", entity_id="xyz")

        response = self.client.get("/api/v1/admin/audit-logs/", {"entity_id": "abc"})
        export = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["entity_id"] for item in response.json()["results"]], ["abc"])
        self.assertEqual(export.status_code, 200)
        self.assertIn("invoice.create", export.content.decode())


class ErrorEnvelopeTests(TestCase):
    def test_unauthenticated_request_uses_envelope(self):
        response = APIClient().get("/api/v1/me/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertEqual(payload["status"], 401)
        self.assertIsNone(payload["errors"])

    def test_healthz_echoes_request_id(self):
        response = APIClient().get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-health")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["request_id"], "req-health")
        self.assertEqual(response["X-Request-ID"], "req-health")
