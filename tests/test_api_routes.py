"""
tests/test_api_routes.py -- Integration tests for the guard and the API routes.

These tests exercise the full stack: guard middleware -> token service ->
session registry / user store -> route handlers -> response serialization.

Coverage:
  - Denial bodies: 401 login required, 403 with the required key, 401 token errors
  - Public, login-only and permission routes behind the guard
  - Login / me / logout
  - Self-registration
  - Role administration and the permission catalog
  - User privilege administration and forced logout
  - Session registry / user store outages during authentication (500)
  - Permission request workflow over HTTP, end to end

Fixtures used (from conftest.py):
  - api_client: ApiContext with a super admin token and make_user() helper
"""

from __future__ import annotations

from sqlalchemy.exc import OperationalError

from conftest import ApiContext

LOGIN_REQUIRED = {"msg": "Unauthorized: Login required"}


def _forbidden(key):
    return {"msg": "Permission Denied", "required": key}


# ---------------------------------------------------------------------------
# Guard denials
# ---------------------------------------------------------------------------


class TestGuardDenials:
    def test_guest_on_private_route(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/posts")
        assert resp.status_code == 401
        assert resp.json() == LOGIN_REQUIRED

    def test_user_missing_permission(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user()
        resp = api_client.client.post("/api/v1/posts", headers=api_client.headers(token))
        assert resp.status_code == 403
        assert resp.json() == _forbidden("BLOG:MANAGE")

    def test_invalid_token(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/posts", headers={"Authorization": "Bearer not-a-token"})
        assert resp.status_code == 401
        assert resp.json() == {"message": "Token Invalid"}

    def test_custom_header_takes_precedence(self, api_client: ApiContext) -> None:
        headers = {"x-auth-token": "garbage", "Authorization": f"Bearer {api_client.admin_token}"}
        resp = api_client.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 401
        assert resp.json() == {"message": "Token Invalid"}

    def test_custom_header_alone_authenticates(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers={"x-auth-token": api_client.admin_token})
        assert resp.status_code == 200

    def test_handler_level_permission(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user(extra=("FITNESS:USE",))
        headers = api_client.headers(token)
        assert api_client.client.get("/api/v1/fitness/records", headers=headers).status_code == 200
        resp = api_client.client.get("/api/v1/fitness/stats", headers=headers)
        assert resp.status_code == 403
        assert resp.json() == _forbidden("FITNESS:READ_ALL")


class TestGuardAllows:
    def test_guest_on_public_route(self, api_client: ApiContext) -> None:
        assert api_client.client.get("/api/v1/posts").status_code == 200

    def test_unmapped_route_is_open(self, api_client: ApiContext) -> None:
        assert api_client.client.get("/api/v1/unmapped/ping").json() == {"pong": True}

    def test_super_admin_on_private_posts(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/posts/private/posts", headers=api_client.admin_headers)
        assert resp.status_code == 200

    def test_role_permission_route(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user(role="admin")
        resp = api_client.client.get("/api/v1/fitness/stats", headers=api_client.headers(token))
        assert resp.status_code == 200


# ---------------------------------------------------------------------------
# Auth routes
# ---------------------------------------------------------------------------


class TestAuthRoutes:
    def test_login_and_me(self, api_client: ApiContext) -> None:
        client = api_client.client
        resp = client.post("/api/v1/auth/login", json={"username": "rootadmin", "password": "rootpass123"})
        assert resp.status_code == 200, resp.text
        assert resp.headers["Cache-Control"] == "no-store"
        body = resp.json()
        assert body["role"] == "super_admin"

        me = client.get("/api/v1/auth/me", headers=api_client.headers(body["access_token"]))
        assert me.status_code == 200
        assert me.json()["permissions"] == ["*"]

    def test_login_bad_credentials(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"username": "rootadmin", "password": "wrong"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"

    def test_login_validation_error(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={})
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_me_requires_login(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json() == LOGIN_REQUIRED

    def test_me_lists_effective_permissions(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user(extra=("TODO:USE",))
        data = api_client.client.get("/api/v1/auth/me", headers=api_client.headers(token)).json()
        assert data["role"] == "user"
        assert data["extra_permissions"] == ["TODO:USE"]
        assert set(data["permissions"]) == {"BLOG:INTERACT", "TODO:USE", "USER:UPDATE_SELF"}

    def test_logout_revokes_only_this_session(self, api_client: ApiContext) -> None:
        user_id, token = api_client.make_user()
        second = api_client.state.token_service.issue(api_client.state.user_store.get_by_id(user_id)).token

        resp = api_client.client.post("/api/v1/auth/logout", headers=api_client.headers(token))

        assert resp.status_code == 200
        assert resp.json()["revoked"] is True
        remaining = api_client.state.registry.list_for_user(str(user_id))
        assert len(remaining) == 1
        assert api_client.client.get("/api/v1/auth/me", headers=api_client.headers(second)).status_code == 200


class TestRegistration:
    def test_register_creates_plain_user(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/v1/users", json={"username": "newcomer", "password": "password123", "display_name": "New"}
        )
        assert resp.status_code == 201, resp.text
        assert resp.json()["role"] == "user"
        login = api_client.client.post("/api/v1/auth/login", json={"username": "newcomer", "password": "password123"})
        assert login.status_code == 200

    def test_register_duplicate_conflicts(self, api_client: ApiContext) -> None:
        body = {"username": "twice", "password": "password123"}
        assert api_client.client.post("/api/v1/users", json=body).status_code == 201
        resp = api_client.client.post("/api/v1/users", json=body)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_list_users_is_admin_only(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user()
        assert api_client.client.get("/api/v1/users", headers=api_client.headers(token)).status_code == 403
        assert api_client.client.get("/api/v1/users", headers=api_client.admin_headers).status_code == 200


# ---------------------------------------------------------------------------
# Roles and catalog
# ---------------------------------------------------------------------------


class TestRoleAdministration:
    def test_catalog(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/v1/permissions", headers=api_client.admin_headers)
        assert resp.status_code == 200
        keys = {entry["key"] for entry in resp.json()}
        assert {"BLOG:MANAGE", "FITNESS:READ_ALL"} <= keys

    def test_roles_require_wildcard(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user(role="admin")
        resp = api_client.client.get("/api/v1/roles", headers=api_client.headers(token))
        assert resp.status_code == 403
        assert resp.json() == _forbidden("*")

    def test_role_lifecycle_reaches_guard(self, api_client: ApiContext) -> None:
        client, headers = api_client.client, api_client.admin_headers

        created = client.post(
            "/api/v1/roles",
            json={"name": "editor", "permissions": ["blog:manage", "BLOG:MANAGE"], "description": "Writers"},
            headers=headers,
        )
        assert created.status_code == 201, created.text
        assert created.json()["permissions"] == ["BLOG:MANAGE"]

        _, token = api_client.make_user(role="editor")
        assert client.post("/api/v1/posts", headers=api_client.headers(token)).status_code == 201

        updated = client.put("/api/v1/roles/editor", json={"permissions": ["BLOG:INTERACT"]}, headers=headers)
        assert updated.status_code == 200
        assert client.post("/api/v1/posts", headers=api_client.headers(token)).status_code == 403

        assert client.delete("/api/v1/roles/editor", headers=headers).status_code == 409

    def test_delete_unused_role(self, api_client: ApiContext) -> None:
        client, headers = api_client.client, api_client.admin_headers
        client.post("/api/v1/roles", json={"name": "temp_role", "permissions": []}, headers=headers)
        assert client.delete("/api/v1/roles/temp_role", headers=headers).status_code == 204
        assert client.delete("/api/v1/roles/temp_role", headers=headers).status_code == 404

    def test_create_role_rejects_unknown_keys(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/v1/roles", json={"name": "broken", "permissions": ["NOPE:KEY"]}, headers=api_client.admin_headers
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["detail"] == "NOPE:KEY"

    def test_duplicate_role_conflicts(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/roles", json={"name": "user"}, headers=api_client.admin_headers)
        assert resp.status_code == 409

    def test_super_admin_role_protected(self, api_client: ApiContext) -> None:
        client, headers = api_client.client, api_client.admin_headers
        resp = client.put("/api/v1/roles/super_admin", json={"permissions": ["BLOG:MANAGE"]}, headers=headers)
        assert resp.status_code == 400
        assert client.delete("/api/v1/roles/super_admin", headers=headers).status_code == 400

    def test_reload(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/roles/reload", headers=api_client.admin_headers)
        assert resp.status_code == 200
        assert resp.json()["roles"] >= 4


# ---------------------------------------------------------------------------
# User privilege administration
# ---------------------------------------------------------------------------


class TestUserAdministration:
    def test_role_change_applies_without_relogin(self, api_client: ApiContext) -> None:
        user_id, token = api_client.make_user()
        headers = api_client.headers(token)
        assert api_client.client.get("/api/v1/fitness/records", headers=headers).status_code == 403

        resp = api_client.client.put(
            f"/api/v1/users/{user_id}/role", json={"role": "admin"}, headers=api_client.admin_headers
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "admin"
        assert api_client.client.get("/api/v1/fitness/records", headers=headers).status_code == 200

    def test_role_change_to_unknown_role(self, api_client: ApiContext) -> None:
        user_id, _ = api_client.make_user()
        resp = api_client.client.put(
            f"/api/v1/users/{user_id}/role", json={"role": "wizard"}, headers=api_client.admin_headers
        )
        assert resp.status_code == 400

    def test_cannot_change_own_role(self, api_client: ApiContext) -> None:
        resp = api_client.client.put(
            f"/api/v1/users/{api_client.admin_id}/role", json={"role": "user"}, headers=api_client.admin_headers
        )
        assert resp.status_code == 400

    def test_set_extra_permissions(self, api_client: ApiContext) -> None:
        user_id, token = api_client.make_user()
        resp = api_client.client.put(
            f"/api/v1/users/{user_id}/permissions",
            json={"permissions": ["todo:use", "TODO:USE"]},
            headers=api_client.admin_headers,
        )
        assert resp.status_code == 200
        assert resp.json()["extra_permissions"] == ["TODO:USE"]

    def test_unknown_user(self, api_client: ApiContext) -> None:
        resp = api_client.client.put(
            "/api/v1/users/99999/permissions", json={"permissions": []}, headers=api_client.admin_headers
        )
        assert resp.status_code == 404

    def test_forced_logout_counts_sessions(self, api_client: ApiContext) -> None:
        user_id, _ = api_client.make_user()
        api_client.state.token_service.issue(api_client.state.user_store.get_by_id(user_id))
        resp = api_client.client.delete(f"/api/v1/users/{user_id}/sessions", headers=api_client.admin_headers)
        assert resp.status_code == 200
        assert resp.json() == {"user_id": user_id, "revoked": 2}

    def test_demotion_survives_forced_logout(self, api_client: ApiContext) -> None:
        user_id, token = api_client.make_user(role="admin")
        headers = api_client.headers(token)
        assert api_client.client.get("/api/v1/fitness/records", headers=headers).status_code == 200

        api_client.client.put(f"/api/v1/users/{user_id}/role", json={"role": "user"}, headers=api_client.admin_headers)
        assert api_client.client.get("/api/v1/fitness/records", headers=headers).status_code == 403

        resp = api_client.client.delete(f"/api/v1/users/{user_id}/sessions", headers=api_client.admin_headers)
        assert resp.json()["revoked"] == 1

        resp = api_client.client.get("/api/v1/fitness/records", headers=headers)
        assert resp.status_code == 403
        assert resp.json() == _forbidden("FITNESS:USE")
        assert api_client.client.get("/api/v1/auth/me", headers=headers).json()["role"] == "user"

    def test_deactivated_user_after_forced_logout_is_guest(self, api_client: ApiContext) -> None:
        user_id, token = api_client.make_user(extra=("TODO:USE",))
        api_client.state.user_store.set_active(user_id, False)
        api_client.client.delete(f"/api/v1/users/{user_id}/sessions", headers=api_client.admin_headers)

        resp = api_client.client.get("/api/v1/auth/me", headers=api_client.headers(token))
        assert resp.status_code == 401
        assert resp.json() == LOGIN_REQUIRED


# ---------------------------------------------------------------------------
# Backend failures during authentication
# ---------------------------------------------------------------------------


def _unavailable(*args, **kwargs):
    raise OperationalError("SELECT", {}, Exception("database is locked"))


class TestAuthenticationBackendFailures:
    def test_registry_failure_is_500_and_handler_never_runs(self, api_client: ApiContext, monkeypatch) -> None:
        user_id, token = api_client.make_user()
        monkeypatch.setattr(api_client.state.registry, "get", _unavailable)

        resp = api_client.client.post("/api/v1/auth/logout", headers=api_client.headers(token))

        assert resp.status_code == 500
        assert resp.json() == {"error": {"code": "server_error", "message": "Session registry unavailable."}}
        monkeypatch.undo()
        assert len(api_client.state.registry.list_for_user(str(user_id))) == 1

    def test_user_store_failure_is_500_and_handler_never_runs(self, api_client: ApiContext, monkeypatch) -> None:
        user_id, token = api_client.make_user()
        api_client.state.principal_cache.invalidate(str(user_id))
        monkeypatch.setattr(api_client.state.user_store, "get_by_id", _unavailable)

        resp = api_client.client.post("/api/v1/auth/logout", headers=api_client.headers(token))

        assert resp.status_code == 500
        assert resp.json() == {"error": {"code": "server_error", "message": "User store unavailable."}}
        monkeypatch.undo()
        assert len(api_client.state.registry.list_for_user(str(user_id))) == 1


# ---------------------------------------------------------------------------
# Permission request workflow
# ---------------------------------------------------------------------------


class TestPermissionRequests:
    def test_request_approve_then_access(self, api_client: ApiContext) -> None:
        client = api_client.client
        _, token = api_client.make_user(extra=("FITNESS:USE",))
        headers = api_client.headers(token)
        assert client.get("/api/v1/fitness/stats", headers=headers).status_code == 403

        created = client.post(
            "/api/v1/permission-requests", json={"permission": "fitness:read_all", "reason": "coach"}, headers=headers
        )
        assert created.status_code == 201, created.text
        request_id = created.json()["id"]
        assert created.json()["status"] == "pending"

        dup = client.post("/api/v1/permission-requests", json={"permission": "FITNESS:READ_ALL"}, headers=headers)
        assert dup.status_code == 409

        mine = client.get("/api/v1/permission-requests/mine", headers=headers)
        assert [r["id"] for r in mine.json()] == [request_id]

        assert client.put(f"/api/v1/permission-requests/{request_id}/approve", headers=headers).status_code == 403

        approved = client.put(f"/api/v1/permission-requests/{request_id}/approve", headers=api_client.admin_headers)
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"

        assert client.get("/api/v1/fitness/stats", headers=headers).status_code == 200

        again = client.put(f"/api/v1/permission-requests/{request_id}/reject", headers=api_client.admin_headers)
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "invalid_state"

    def test_role_request_and_reject(self, api_client: ApiContext) -> None:
        client = api_client.client
        _, token = api_client.make_user()
        created = client.post(
            "/api/v1/permission-requests/role", json={"role": "bot"}, headers=api_client.headers(token)
        )
        assert created.status_code == 201
        request_id = created.json()["id"]

        rejected = client.put(f"/api/v1/permission-requests/{request_id}/reject", headers=api_client.admin_headers)
        assert rejected.json()["status"] == "rejected"

        listed = client.get("/api/v1/permission-requests?status=rejected", headers=api_client.admin_headers)
        assert request_id in [r["id"] for r in listed.json()]

    def test_unrequestable_role_fails_validation(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user()
        resp = api_client.client.post(
            "/api/v1/permission-requests/role", json={"role": "super_admin"}, headers=api_client.headers(token)
        )
        assert resp.status_code == 422

    def test_already_held_permission(self, api_client: ApiContext) -> None:
        _, token = api_client.make_user()
        resp = api_client.client.post(
            "/api/v1/permission-requests", json={"permission": "BLOG:INTERACT"}, headers=api_client.headers(token)
        )
        assert resp.status_code == 400

    def test_review_unknown_request(self, api_client: ApiContext) -> None:
        resp = api_client.client.put("/api/v1/permission-requests/424242/approve", headers=api_client.admin_headers)
        assert resp.status_code == 404

    def test_guest_cannot_submit(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/v1/permission-requests", json={"permission": "TODO:USE"})
        assert resp.status_code == 401
        assert resp.json() == LOGIN_REQUIRED
