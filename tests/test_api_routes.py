"""
tests/test_api_routes.py -- Integration tests for the /api/v1/auth routes.

These tests exercise the full stack: FastAPI routing -> auth dependency injection
-> AuthService -> SQLAlchemy stores -> response model serialization. Unit testing
individual route functions would miss middleware, exception handlers, and
response model validation -- integration tests are the right tool here.

Coverage:
  - Register: 201 happy path, 409 duplicate, 400 weak password with every rule,
    422 validation envelope that never echoes the password
  - Login: 200, identical 401 for wrong password and unknown email
  - /me: 401 envelope with WWW-Authenticate, 200 with live record, opt-in
    ?token= honoured on GET only, PATCH profile update
  - Refresh / logout: new access token, revoked after logout, wrong type
  - /users: moderator gate, pagination and search, GET one (self or
    moderator), live-role promotion, admin PATCH guards
  - change-password: current device kept, other devices revoked
  - Password reset redemption

Fixtures used (from conftest.py):
  - api_client: (client, service) -- module-scoped TestClient on a shared
    in-memory database seeded with ADMIN_EMAIL (admin) and USER_EMAIL (user).
"""

from __future__ import annotations

from fastapi.testclient import TestClient

from auth.service import AuthService
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, USER_EMAIL, USER_PASSWORD, bearer
from core.config import get_settings

STRONG = "Str0ng!Pass"


def _login(client: TestClient, email: str, password: str) -> dict:
    resp = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, f"Expected 200, got {resp.status_code}: {resp.text}"
    return resp.json()


def _register(client: TestClient, email: str, password: str = STRONG, **extra) -> dict:
    resp = client.post("/api/v1/auth/register", json={"email": email, "password": password, **extra})
    assert resp.status_code == 201, f"Expected 201, got {resp.status_code}: {resp.text}"
    return resp.json()


class TestRegister:
    def test_register_returns_session(self, api_client: tuple[TestClient, AuthService]) -> None:
        """POST /register must return 201 with a user-role principal and both tokens."""
        client, _service = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "new@haven.test", "password": STRONG})
        assert resp.status_code == 201
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["user"]["email"] == "new@haven.test"
        assert data["user"]["role"] == "user"
        assert data["user"]["is_verified"] is False
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["refresh_revocable"] is True
        assert data["access_token"] and data["refresh_token"]
        assert "password_hash" not in data["user"]

    def test_duplicate_email(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.post("/api/v1/auth/register", json={"email": USER_EMAIL, "password": STRONG})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_weak_password_lists_every_rule(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "weak@haven.test", "password": "weak"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "weak_password"
        assert isinstance(error["detail"], list)
        assert len(error["detail"]) == 4

    def test_validation_error_does_not_echo_password(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.post("/api/v1/auth/register", json={"email": "not-an-email", "password": "Secr3t!Value"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert any("email" in problem for problem in error["detail"])
        assert "Secr3t!Value" not in resp.text


class TestLogin:
    def test_login_success(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        data = _login(client, USER_EMAIL, USER_PASSWORD)
        assert data["user"]["email"] == USER_EMAIL
        assert data["user"]["last_login"]

    def test_login_failures_are_indistinguishable(self, api_client: tuple[TestClient, AuthService]) -> None:
        """Wrong password and unknown email must produce byte-identical error bodies."""
        client, _service = api_client
        wrong = client.post("/api/v1/auth/login", json={"email": USER_EMAIL, "password": "Wr0ng!Pass"})
        unknown = client.post("/api/v1/auth/login", json={"email": "ghost@haven.test", "password": "Wr0ng!Pass"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()
        assert wrong.json()["error"]["code"] == "bad_credentials"
        assert wrong.headers["www-authenticate"] == "Bearer"


class TestMe:
    def test_me_unauthenticated(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_me_with_bearer(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/me", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["email"] == USER_EMAIL
        assert resp.json()["role"] == "user"

    def test_scheme_is_case_insensitive(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"bearer {token}"})
        assert resp.status_code == 200

    def test_refresh_token_is_not_a_bearer(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        refresh_token = _login(client, USER_EMAIL, USER_PASSWORD)["refresh_token"]
        resp = client.get("/api/v1/auth/me", headers=bearer(refresh_token))
        assert resp.status_code == 401

    def test_query_token_disabled_by_default(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/me", params={"token": token})
        assert resp.status_code == 401

    def test_query_token_accepted_on_get_when_enabled(
        self, api_client: tuple[TestClient, AuthService], monkeypatch
    ) -> None:
        client, _service = api_client
        enabled = get_settings().model_copy(update={"allow_query_token": True})
        monkeypatch.setattr("auth.dependencies.get_settings", lambda: enabled)
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/me", params={"token": token})
        assert resp.status_code == 200
        assert resp.json()["email"] == USER_EMAIL

    def test_query_token_ignored_on_post_when_enabled(
        self, api_client: tuple[TestClient, AuthService], monkeypatch
    ) -> None:
        """Only GET/HEAD read ?token=; a state-changing request must carry the header."""
        client, _service = api_client
        enabled = get_settings().model_copy(update={"allow_query_token": True})
        monkeypatch.setattr("auth.dependencies.get_settings", lambda: enabled)
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        resp = client.post(
            "/api/v1/auth/change-password",
            params={"token": token},
            json={"current_password": USER_PASSWORD, "new_password": "N3w!Password"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"
        assert _login(client, USER_EMAIL, USER_PASSWORD)["user"]["email"] == USER_EMAIL

    def test_update_profile(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _register(client, "profile@haven.test")["access_token"]
        resp = client.patch(
            "/api/v1/auth/me",
            json={"username": "profiled", "full_name": "Pro File"},
            headers=bearer(token),
        )
        assert resp.status_code == 200
        assert resp.json()["username"] == "profiled"
        assert resp.json()["full_name"] == "Pro File"
        assert client.get("/api/v1/auth/me", headers=bearer(token)).json()["username"] == "profiled"

        # Re-sending one's own username is not a conflict
        resp = client.patch("/api/v1/auth/me", json={"username": "profiled"}, headers=bearer(token))
        assert resp.status_code == 200

    def test_update_profile_rejections(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _register(client, "profile2@haven.test")["access_token"]

        resp = client.patch("/api/v1/auth/me", json={"username": "admin"}, headers=bearer(token))
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

        resp = client.patch("/api/v1/auth/me", json={}, headers=bearer(token))
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

        resp = client.patch("/api/v1/auth/me", json={"username": "has space"}, headers=bearer(token))
        assert resp.status_code == 422

        resp = client.patch("/api/v1/auth/me", json={"full_name": "Anon"})
        assert resp.status_code == 401

    def test_email_and_role_not_self_editable(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _register(client, "profile3@haven.test")["access_token"]
        resp = client.patch(
            "/api/v1/auth/me",
            json={"full_name": "Three", "role": "admin", "email": "boss@haven.test"},
            headers=bearer(token),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "user"
        assert resp.json()["email"] == "profile3@haven.test"


class TestRefreshAndLogout:
    def test_refresh(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        session = _login(client, USER_EMAIL, USER_PASSWORD)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["refresh_token"] is None
        assert data["refresh_revocable"] is True
        assert client.get("/api/v1/auth/me", headers=bearer(data["access_token"])).status_code == 200

    def test_access_token_rejected_by_refresh(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        session = _login(client, USER_EMAIL, USER_PASSWORD)
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": session["access_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "wrong_token_type"

    def test_logout_revokes(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        session = _login(client, USER_EMAIL, USER_PASSWORD)
        resp = client.post("/api/v1/auth/logout", json={"refresh_token": session["refresh_token"]})
        assert resp.status_code == 200
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "revoked_token"

    def test_logout_always_acknowledges(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        assert client.post("/api/v1/auth/logout", json={"refresh_token": "garbage"}).status_code == 200
        assert client.post("/api/v1/auth/logout", json={}).status_code == 200

    def test_garbage_refresh_token(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": "a.b.c"})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "malformed_token"


class TestUserManagement:
    def test_member_cannot_list_users(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/users", headers=bearer(token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_admin_lists_users_by_role(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.get("/api/v1/auth/users", params={"role": "admin"}, headers=bearer(token))
        assert resp.status_code == 200
        data = resp.json()
        assert [u["email"] for u in data["users"]] == [ADMIN_EMAIL]
        assert data["pagination"] == {"page": 1, "limit": 20, "total": 1, "total_pages": 1}

    def test_listing_is_paginated(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        for i in range(3):
            _register(client, f"pager{i}@haven.test")
        token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]

        resp = client.get("/api/v1/auth/users", params={"search": "PAGER", "limit": 2}, headers=bearer(token))
        assert resp.status_code == 200
        data = resp.json()
        assert [u["email"] for u in data["users"]] == ["pager0@haven.test", "pager1@haven.test"]
        assert data["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}

        resp = client.get(
            "/api/v1/auth/users",
            params={"search": "pager", "limit": 2, "page": 2},
            headers=bearer(token),
        )
        assert [u["email"] for u in resp.json()["users"]] == ["pager2@haven.test"]

    def test_listing_includes_deactivated_unless_active_only(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, service = api_client
        gone = _register(client, "dormant@haven.test")
        service.set_active(gone["user"]["id"], False)
        token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]

        resp = client.get("/api/v1/auth/users", params={"search": "dormant"}, headers=bearer(token))
        assert [u["is_active"] for u in resp.json()["users"]] == [False]
        resp = client.get(
            "/api/v1/auth/users",
            params={"search": "dormant", "active_only": "true"},
            headers=bearer(token),
        )
        assert resp.json()["users"] == []
        assert resp.json()["pagination"]["total"] == 0

    def test_listing_paging_bounds(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        for params in ({"limit": 0}, {"limit": 101}, {"page": 0}):
            resp = client.get("/api/v1/auth/users", params=params, headers=bearer(token))
            assert resp.status_code == 422, params

    def test_get_user(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, service = api_client
        admin = service.principals.get_by_email(ADMIN_EMAIL)
        member = service.principals.get_by_email(USER_EMAIL)
        member_token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        admin_token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]

        resp = client.get(f"/api/v1/auth/users/{member.id}", headers=bearer(member_token))
        assert resp.status_code == 200
        assert resp.json()["email"] == USER_EMAIL

        resp = client.get(f"/api/v1/auth/users/{admin.id}", headers=bearer(member_token))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

        resp = client.get(f"/api/v1/auth/users/{member.id}", headers=bearer(admin_token))
        assert resp.status_code == 200
        assert "password_hash" not in resp.json()

        resp = client.get("/api/v1/auth/users/999999", headers=bearer(admin_token))
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

        assert client.get(f"/api/v1/auth/users/{member.id}").status_code == 401

    def test_promotion_applies_to_existing_token(self, api_client: tuple[TestClient, AuthService]) -> None:
        """A token issued before promotion is authorized by the live role, not its claim."""
        client, _service = api_client
        session = _register(client, "promote@haven.test")
        user_token = session["access_token"]
        assert client.get("/api/v1/auth/users", headers=bearer(user_token)).status_code == 403

        admin_token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.patch(
            f"/api/v1/auth/users/{session['user']['id']}",
            json={"role": "moderator"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 200
        assert resp.json()["role"] == "moderator"

        assert client.get("/api/v1/auth/users", headers=bearer(user_token)).status_code == 200

    def test_deactivation_blocks_token(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        session = _register(client, "leaver@haven.test")
        admin_token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        resp = client.patch(
            f"/api/v1/auth/users/{session['user']['id']}",
            json={"is_active": False},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 200
        assert resp.json()["is_active"] is False
        assert client.get("/api/v1/auth/me", headers=bearer(session["access_token"])).status_code == 401
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": session["refresh_token"]})
        assert resp.status_code == 401

    def test_patch_requires_admin(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, service = api_client
        token = _login(client, USER_EMAIL, USER_PASSWORD)["access_token"]
        member = service.principals.get_by_email(USER_EMAIL)
        resp = client.patch(f"/api/v1/auth/users/{member.id}", json={"role": "admin"}, headers=bearer(token))
        assert resp.status_code == 403

    def test_patch_guards(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, service = api_client
        admin_token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        admin_id = service.principals.get_by_email(ADMIN_EMAIL).id
        headers = bearer(admin_token)

        resp = client.patch(f"/api/v1/auth/users/{admin_id}", json={}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "no_changes"

        resp = client.patch("/api/v1/auth/users/999999", json={"role": "user"}, headers=headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

        resp = client.patch(f"/api/v1/auth/users/{admin_id}", json={"is_active": False}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "self_deactivation"

        resp = client.patch(f"/api/v1/auth/users/{admin_id}", json={"role": "user"}, headers=headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "last_admin"

    def test_unknown_role_is_validation_error(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, service = api_client
        admin_token = _login(client, ADMIN_EMAIL, ADMIN_PASSWORD)["access_token"]
        member = service.principals.get_by_email(USER_EMAIL)
        resp = client.patch(
            f"/api/v1/auth/users/{member.id}",
            json={"role": "superuser"},
            headers=bearer(admin_token),
        )
        assert resp.status_code == 422


class TestChangePassword:
    def test_change_password_keeps_current_device(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        laptop = _register(client, "changer@haven.test")
        phone = _login(client, "changer@haven.test", STRONG)

        resp = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": STRONG, "new_password": "N3w!Password", "refresh_token": laptop["refresh_token"]},
            headers=bearer(laptop["access_token"]),
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Password updated."

        assert client.post("/api/v1/auth/refresh", json={"refresh_token": laptop["refresh_token"]}).status_code == 200
        resp = client.post("/api/v1/auth/refresh", json={"refresh_token": phone["refresh_token"]})
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "revoked_token"
        assert _login(client, "changer@haven.test", "N3w!Password")["user"]["email"] == "changer@haven.test"

    def test_wrong_current_password(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _register(client, "changer2@haven.test")["access_token"]
        resp = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": "Wr0ng!Pass", "new_password": "N3w!Password"},
            headers=bearer(token),
        )
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "bad_credentials"
        assert resp.json()["error"]["message"] == "Current password is incorrect."

    def test_weak_new_password(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        token = _register(client, "changer3@haven.test")["access_token"]
        resp = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": STRONG, "new_password": "weak"},
            headers=bearer(token),
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "weak_password"
        assert resp.json()["error"]["detail"]

    def test_requires_authentication(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.post(
            "/api/v1/auth/change-password",
            json={"current_password": STRONG, "new_password": "N3w!Password"},
        )
        assert resp.status_code == 401


class TestPasswordReset:
    def test_reset_flow(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, service = api_client
        _register(client, "forgetful@haven.test")
        token = service.request_password_reset("forgetful@haven.test")

        resp = client.post("/api/v1/auth/password-reset", json={"token": token, "new_password": "N3w!Password"})
        assert resp.status_code == 200
        assert _login(client, "forgetful@haven.test", "N3w!Password")["user"]["email"] == "forgetful@haven.test"

        resp = client.post("/api/v1/auth/password-reset", json={"token": token, "new_password": "An0ther!Pass"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_reset_token"


class TestTrustedHost:
    def test_unknown_host_rejected(self, api_client: tuple[TestClient, AuthService]) -> None:
        client, _service = api_client
        resp = client.get("/api/v1/health", headers={"host": "evil.example.com"})
        assert resp.status_code == 400
