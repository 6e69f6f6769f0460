from django.test import TestCase, override_settings
from rest_framework.test import APIClient
from unittest.mock import patch

from api import rbac
from api.authentication import Principal


class HealthEndpointTests(TestCase):
    def test_health(self) -> None:
        client = APIClient()
        response = client.get("/api/v1/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok"})


_JWT_SETTINGS = dict(
    AUTH_ENABLED=True,
    DEV_AUTH_ENABLED=False,
    AUTH_ISSUER="https://issuer.example",
    AUTH_AUDIENCE="oversight-api",
    AUTH_JWKS_URL="https://issuer.example/.well-known/jwks.json",
    AUTH_USER_ID_CLAIM="sub",
    AUTH_USERNAME_CLAIM="preferred_username",
    AUTH_ROLES_CLAIM="roles",
    AUTH_DEPARTMENT_CLAIM="department",
    AUTH_NAME_CLAIM="name",
    AUTH_EMAIL_CLAIM="email",
)


class AuthWhoAmITests(TestCase):
    def setUp(self) -> None:
        self.client = APIClient()

    @override_settings(**_JWT_SETTINGS)
    def test_whoami_requires_auth(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 401)

    @override_settings(**_JWT_SETTINGS)
    @patch(
        "api.authentication._verify_jwt_with_jwks",
        return_value={
            "sub": "u-42",
            "preferred_username": "thandi",
            "roles": "HOD,Employee",
            "department": "IT",
            "name": "Thandi M",
            "email": "thandi@example.com",
        },
    )
    def test_whoami_reads_claims_from_bearer_token(self, mock_verify) -> None:
        response = self.client.get("/api/v1/auth/whoami/", HTTP_AUTHORIZATION="Bearer token-123")

        self.assertEqual(response.status_code, 200)
        mock_verify.assert_called_once_with("token-123", "https://issuer.example/.well-known/jwks.json")
        body = response.json()
        self.assertEqual(body["user_id"], "u-42")
        self.assertEqual(body["username"], "thandi")
        self.assertEqual(body["department"], "IT")
        self.assertEqual(body["roles"], ["HOD", "Employee"])
        self.assertEqual(body["primary_role"], "HOD")
        self.assertIn(rbac.PERM_PR_APPROVE_HOD, body["permissions"])
        self.assertNotIn(rbac.PERM_PR_APPROVE_FINANCE, body["permissions"])

    @override_settings(**_JWT_SETTINGS)
    @patch("api.authentication._verify_jwt_with_jwks", return_value={"roles": ["Employee"]})
    def test_token_without_user_id_is_rejected(self, _mock_verify) -> None:
        response = self.client.get("/api/v1/auth/whoami/", HTTP_AUTHORIZATION="Bearer token-123")

        self.assertEqual(response.status_code, 401)

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["VISITOR"],
        DEV_AUTH_DEPARTMENT=None,
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_with_unknown_role_has_no_permissions(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["user_id"], "dev-user")
        self.assertEqual(body["roles"], ["VISITOR"])
        self.assertIsNone(body["primary_role"])
        self.assertEqual(body["permissions"], [])

    @override_settings(
        AUTH_ENABLED=False,
        DEV_AUTH_ENABLED=True,
        DEV_AUTH_USER_ID="dev-user",
        DEV_AUTH_ROLES=["finance"],
        DEV_AUTH_DEPARTMENT="Finance",
        DEV_AUTH_PERMISSIONS=[],
        DEBUG=True,
    )
    def test_whoami_maps_role_permissions(self) -> None:
        response = self.client.get("/api/v1/auth/whoami/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["primary_role"], "Finance")
        self.assertEqual(body["department"], "Finance")
        self.assertIn(rbac.PERM_PR_APPROVE_FINANCE, body["permissions"])
        self.assertIn(rbac.PERM_PR_VIEW, body["permissions"])


class RbacResolutionTests(TestCase):
    def test_canonical_role_aliases(self) -> None:
        self.assertEqual(rbac.canonical_role("hod"), rbac.ROLE_HOD)
        self.assertEqual(rbac.canonical_role("Head of Department"), rbac.ROLE_HOD)
        self.assertEqual(rbac.canonical_role("super-user"), rbac.ROLE_SUPERUSER)
        self.assertIsNone(rbac.canonical_role("Visitor"))
        self.assertIsNone(rbac.canonical_role(None))

    def test_primary_role_prefers_highest_privilege(self) -> None:
        self.assertEqual(rbac.primary_role(["Employee", "HOD"]), rbac.ROLE_HOD)
        self.assertEqual(rbac.primary_role(["HOD", "Admin"]), rbac.ROLE_ADMIN)
        self.assertIsNone(rbac.primary_role([]))

    def test_explicit_permissions_override_role_map(self) -> None:
        request = type("Request", (), {})()
        principal = Principal(
            user_id="u1",
            username="u1",
            roles=["Admin"],
            permissions=[rbac.PERM_PR_VIEW],
        )

        roles, permissions = rbac.resolve_roles_and_permissions(request, principal)

        self.assertEqual(roles, ["Admin"])
        self.assertEqual(permissions, [rbac.PERM_PR_VIEW])

    def test_resolution_is_cached_per_request(self) -> None:
        request = type("Request", (), {})()
        first = Principal(user_id="u1", username="u1", roles=["Employee"])
        second = Principal(user_id="u1", username="u1", roles=["Admin"])

        _, permissions = rbac.resolve_roles_and_permissions(request, first)
        _, cached = rbac.resolve_roles_and_permissions(request, second)

        self.assertNotIn(rbac.PERM_PR_APPROVE_HOD, permissions)
        self.assertEqual(cached, permissions)

    def test_only_approvers_may_split(self) -> None:
        request = type("Request", (), {})()
        employee = Principal(user_id="u1", username="u1", roles=["Employee"])

        _, permissions = rbac.resolve_roles_and_permissions(request, employee)

        self.assertIn(rbac.PERM_PR_CREATE, permissions)
        self.assertNotIn(rbac.PERM_PR_SPLIT, permissions)
        for role in ("HOD", "Finance", "Admin", "SuperUser"):
            with self.subTest(role=role):
                _, approver = rbac.resolve_roles_and_permissions(
                    type("Request", (), {})(), Principal(user_id="u2", username="u2", roles=[role])
                )
                self.assertIn(rbac.PERM_PR_SPLIT, approver)
