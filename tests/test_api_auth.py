"""
tests/test_api_auth.py -- Integration tests for the /api/v1/auth routes.

Uses the module-scoped api_client fixture from conftest.py: the real app
with an in-memory store, a challenge verifier that accepts "pass" and a
fake OAuth provider whose callback always carries code=granted. Each test
starts with an empty cookie jar so cookie sessions never leak between
tests; the super admin talks over a Bearer header.

Covers:
- Attempt / challenge / login happy path, cookie + no-store
- Failed login ends the attempt; failed challenge hands out a fresh token
- A second login delivers CONFLICT to the first client exactly once
- Logout leaves no signal; locking and deleting leave LOCKED / DELETED
- Federated login: returning user, provisioning, mismatch, cancel
- Admin account routes and their rank checks
- Self-registration, username availability and password change
"""

import pytest
from conftest import PASSING_RESPONSE, github_identity, make_account

from api.main import app
from auth.models import Role

PASSWORD = "Correct#Horse1"


@pytest.fixture
def client(api_client):
    c, token, admin_id = api_client
    c.cookies.clear()
    return c


@pytest.fixture
def admin_headers(api_client):
    return {"Authorization": f"Bearer {api_client[1]}"}


def _store():
    return app.state.store


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _begin(client):
    r = client.post("/api/v1/auth/attempts")
    assert r.status_code == 201
    return r.json()["attempt_id"]


def _login(client, username, password=PASSWORD, challenge_response=PASSING_RESPONSE):
    attempt_id = _begin(client)
    body = {"username": username, "password": password}
    if challenge_response is not None:
        body["challenge_response"] = challenge_response
    return client.post(f"/api/v1/auth/attempts/{attempt_id}/login", json=body)


def _token_for(client, username):
    r = _login(client, username)
    assert r.status_code == 200, r.text
    return r.json()["access_token"]


def _boundary(client, token=None):
    client.cookies.clear()
    r = client.get("/api/v1/auth/boundary", headers=_bearer(token) if token else {})
    assert r.status_code == 200
    return r.json()


def _federated_start(client):
    attempt_id = _begin(client)
    r = client.post(f"/api/v1/auth/attempts/{attempt_id}/challenge", json={"response": PASSING_RESPONSE})
    assert r.status_code == 200
    return attempt_id, client.get(f"/api/v1/auth/oauth/github?attempt_id={attempt_id}")


# ---------------------------------------------------------------------------
# Attempts and the challenge gate
# ---------------------------------------------------------------------------


class TestAttempts:
    def test_begin_returns_challenge_token(self, client):
        r = client.post("/api/v1/auth/attempts")
        assert r.status_code == 201
        data = r.json()
        assert data["phase"] == "challenge_issued"
        assert data["challenge_token"]

    def test_unknown_attempt(self, client):
        r = client.get("/api/v1/auth/attempts/nope")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "attempt_not_found"

    def test_failed_challenge_reissues_token(self, client):
        attempt_id = _begin(client)
        first = client.get(f"/api/v1/auth/attempts/{attempt_id}").json()["challenge_token"]

        r = client.post(f"/api/v1/auth/attempts/{attempt_id}/challenge", json={"response": "bot"})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "challenge_invalid"

        state = client.get(f"/api/v1/auth/attempts/{attempt_id}").json()
        assert state["phase"] == "challenge_issued"
        assert state["challenge_token"] != first

        r = client.post(f"/api/v1/auth/attempts/{attempt_id}/challenge", json={"response": PASSING_RESPONSE})
        assert r.status_code == 200
        assert r.json()["phase"] == "challenge_verified"

    def test_expire_swaps_token(self, client):
        attempt_id = _begin(client)
        first = client.get(f"/api/v1/auth/attempts/{attempt_id}").json()["challenge_token"]
        r = client.post(f"/api/v1/auth/attempts/{attempt_id}/challenge/expire")
        assert r.status_code == 200
        assert r.json()["challenge_token"] != first


# ---------------------------------------------------------------------------
# Credential login and the session boundary
# ---------------------------------------------------------------------------


class TestCredentialLogin:
    def test_login_sets_cookie_and_no_store(self, client):
        make_account(_store(), "apialice")
        r = _login(client, "apialice")
        assert r.status_code == 200
        data = r.json()
        assert data["username"] == "apialice"
        assert data["token_type"] == "bearer"
        assert "access_token" in r.cookies
        assert r.headers["cache-control"] == "no-store"

        me = client.get("/api/v1/auth/me")
        assert me.status_code == 200
        assert me.json()["username"] == "apialice"

    def test_login_after_separate_challenge(self, client):
        make_account(_store(), "apicarol")
        attempt_id = _begin(client)
        client.post(f"/api/v1/auth/attempts/{attempt_id}/challenge", json={"response": PASSING_RESPONSE})
        r = client.post(
            f"/api/v1/auth/attempts/{attempt_id}/login",
            json={"username": "apicarol", "password": PASSWORD},
        )
        assert r.status_code == 200

    def test_wrong_password_ends_attempt(self, client):
        make_account(_store(), "apibobby")
        attempt_id = _begin(client)
        url = f"/api/v1/auth/attempts/{attempt_id}/login"
        r = client.post(url, json={"username": "apibobby", "password": "wrong", "challenge_response": "pass"})
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "invalid_credentials"

        retry = client.post(url, json={"username": "apibobby", "password": PASSWORD, "challenge_response": "pass"})
        assert retry.status_code == 400
        assert retry.json()["error"]["code"] == "challenge_invalid"

    def test_login_without_challenge(self, client):
        make_account(_store(), "apidave1")
        r = _login(client, "apidave1", challenge_response=None)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "challenge_required"

    def test_me_requires_session(self, client):
        r = client.get("/api/v1/auth/me")
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "unauthorized"


class TestBoundary:
    def test_nothing_to_report(self, client):
        assert _boundary(client) == {"authenticated": False, "signal": None, "message": None}

    def test_conflict_delivered_once(self, client):
        make_account(_store(), "apierin1")
        first = _token_for(client, "apierin1")
        second = _token_for(client, "apierin1")
        client.cookies.clear()

        r = client.get("/api/v1/auth/me", headers=_bearer(first))
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "session_terminated"

        report = _boundary(client, first)
        assert report["authenticated"] is False
        assert report["signal"] == "conflict"
        assert "another browser" in report["message"]
        assert _boundary(client, first)["signal"] is None

        live = _boundary(client, second)
        assert live == {"authenticated": True, "signal": None, "message": None}

    def test_logout_leaves_no_signal(self, client):
        make_account(_store(), "apifrank")
        token = _token_for(client, "apifrank")
        r = client.post("/api/v1/auth/logout")
        assert r.status_code == 200

        assert _boundary(client, token) == {"authenticated": False, "signal": None, "message": None}
        assert client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 401

    def test_lock_delivers_locked(self, client, admin_headers):
        account = make_account(_store(), "apigreta")
        token = _token_for(client, "apigreta")
        client.cookies.clear()

        r = client.patch(f"/api/v1/auth/users/{account.id}", json={"status": "locked"}, headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["status"] == "locked"

        assert _boundary(client, token)["signal"] == "locked"
        assert _boundary(client, token)["signal"] is None

        again = _login(client, "apigreta")
        assert again.status_code == 403
        assert again.json()["error"]["code"] == "account_locked"

    def test_delete_delivers_deleted(self, client, admin_headers):
        account = make_account(_store(), "apihenry")
        token = _token_for(client, "apihenry")
        client.cookies.clear()

        r = client.delete(f"/api/v1/auth/users/{account.id}", headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["status"] == "deleted"
        assert _boundary(client, token)["signal"] == "deleted"

        again = _login(client, "apihenry")
        assert again.json()["error"]["code"] == "account_deleted"


# ---------------------------------------------------------------------------
# Federated login
# ---------------------------------------------------------------------------


class TestFederated:
    def test_precreated_account_logs_in(self, client, admin_headers, identity_provider):
        r = client.post("/api/v1/auth/users", json={"username": "fed.known@example.com"}, headers=admin_headers)
        assert r.status_code == 201
        identity_provider.identities["granted"] = github_identity("fed.known@example.com", "gh-api-1")

        _, r = _federated_start(client)
        assert r.status_code == 200, r.text
        assert r.json()["username"] == "fed.known@example.com"
        assert _store().get_by_oauth("github", "gh-api-1") is not None

    def test_new_identity_is_provisioned(self, client, identity_provider):
        identity_provider.identities["granted"] = github_identity("fed.new@example.com", "gh-api-2", "Fed New")

        attempt_id, r = _federated_start(client)
        assert r.status_code == 202
        body = r.json()
        assert body["phase"] == "provisioning"
        assert body["email"] == "fed.new@example.com"
        assert body["display_name"] == "Fed New"

        url = f"/api/v1/auth/attempts/{attempt_id}/provisioning"
        mismatch = client.post(url, json={"password": "p@ss1", "confirm": "p@ss2"})
        assert mismatch.status_code == 422
        assert mismatch.json()["error"]["code"] == "policy_violation"

        r = client.post(url, json={"password": "p@ss1", "confirm": "p@ss1"})
        assert r.status_code == 200, r.text
        assert r.json()["username"] == "fed.new@example.com"
        assert client.get("/api/v1/auth/me").json()["oauth_provider"] == "github"

    def test_password_past_bcrypt_limit_keeps_request_pending(self, client, identity_provider):
        identity_provider.identities["granted"] = github_identity("fed.euro@example.com", "gh-api-5")

        attempt_id, r = _federated_start(client)
        assert r.status_code == 202

        url = f"/api/v1/auth/attempts/{attempt_id}/provisioning"
        euros = "\u20ac" * 30
        r = client.post(url, json={"password": euros, "confirm": euros})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "validation_error"
        assert client.get(f"/api/v1/auth/attempts/{attempt_id}").json()["phase"] == "provisioning"

        r = client.post(url, json={"password": "\u20ac" * 10, "confirm": "\u20ac" * 10})
        assert r.status_code == 200, r.text

    def test_cancel_creates_nothing(self, client, identity_provider):
        identity_provider.identities["granted"] = github_identity("fed.cancel@example.com", "gh-api-3")

        attempt_id, r = _federated_start(client)
        assert r.status_code == 202

        url = f"/api/v1/auth/attempts/{attempt_id}/provisioning"
        r = client.post(url, json={})
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "provisioning_aborted"
        assert _store().get_by_email("fed.cancel@example.com") is None
        again = client.post(url, json={})
        assert again.status_code == 400
        assert again.json()["error"]["code"] == "challenge_invalid"

    def test_unverified_challenge(self, client, identity_provider):
        identity_provider.identities["granted"] = github_identity("fed.bot@example.com", "gh-api-4")
        attempt_id = _begin(client)
        r = client.get(f"/api/v1/auth/oauth/github?attempt_id={attempt_id}")
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "challenge_required"

    def test_unknown_provider_hides_detail(self, client):
        attempt_id = _begin(client)
        r = client.get(f"/api/v1/auth/oauth/myspace?attempt_id={attempt_id}")
        assert r.status_code == 502
        error = r.json()["error"]
        assert error["code"] == "provider_exchange_failed"
        assert error["detail"] is None
        assert "myspace" not in error["message"]

    def test_callback_without_attempt(self, client):
        r = client.get("/api/v1/auth/callback/github?code=granted")
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "attempt_not_found"

    def test_providers_is_public(self, client):
        r = client.get("/api/v1/auth/providers")
        assert r.status_code == 200
        assert isinstance(r.json(), list)


# ---------------------------------------------------------------------------
# Account administration
# ---------------------------------------------------------------------------


class TestAdminRoutes:
    def test_list_requires_auth(self, client):
        assert client.get("/api/v1/auth/users").status_code == 401

    def test_list_requires_admin(self, client):
        make_account(_store(), "apiplain1")
        token = _token_for(client, "apiplain1")
        client.cookies.clear()
        r = client.get("/api/v1/auth/users", headers=_bearer(token))
        assert r.status_code == 403

    def test_list_and_get(self, client, admin_headers, api_client):
        admin_id = api_client[2]
        r = client.get("/api/v1/auth/users", headers=admin_headers)
        assert r.status_code == 200
        assert "testadmin" in [a["username"] for a in r.json()]
        one = client.get(f"/api/v1/auth/users/{admin_id}", headers=admin_headers)
        assert one.json()["role"] == "super_admin"

    def test_get_unknown(self, client, admin_headers):
        r = client.get("/api/v1/auth/users/99999", headers=admin_headers)
        assert r.status_code == 404
        assert r.json()["error"]["code"] == "not_found"

    def test_create_and_duplicate(self, client, admin_headers):
        body = {"username": "apimade1", "password": "Valid#Pass1", "role": "admin"}
        r = client.post("/api/v1/auth/users", json=body, headers=admin_headers)
        assert r.status_code == 201
        assert r.json()["role"] == "admin"
        dup = client.post("/api/v1/auth/users", json=body, headers=admin_headers)
        assert dup.status_code == 409

    def test_create_rejects_password_past_bcrypt_limit(self, client, admin_headers):
        body = {"username": "apieuro01", "password": "\u20ac" * 30}
        r = client.post("/api/v1/auth/users", json=body, headers=admin_headers)
        assert r.status_code == 422
        assert _store().get_by_username("apieuro01") is None

    def test_patch_without_fields(self, client, admin_headers, api_client):
        r = client.patch(f"/api/v1/auth/users/{api_client[2]}", json={}, headers=admin_headers)
        assert r.status_code == 400
        assert r.json()["error"]["code"] == "no_changes"

    def test_cannot_lock_self(self, client, admin_headers, api_client):
        r = client.patch(f"/api/v1/auth/users/{api_client[2]}", json={"status": "locked"}, headers=admin_headers)
        assert r.status_code == 403
        assert r.json()["error"]["code"] == "forbidden"

    def test_admin_cannot_manage_admin(self, client):
        make_account(_store(), "apiadmin1", role=Role.ADMIN)
        peer = make_account(_store(), "apiadmin2", role=Role.ADMIN)
        token = _token_for(client, "apiadmin1")
        client.cookies.clear()
        r = client.patch(f"/api/v1/auth/users/{peer.id}", json={"status": "locked"}, headers=_bearer(token))
        assert r.status_code == 403

    def test_role_change(self, client, admin_headers):
        target = make_account(_store(), "apipromo1")
        r = client.patch(f"/api/v1/auth/users/{target.id}", json={"role": "admin"}, headers=admin_headers)
        assert r.status_code == 200
        assert r.json()["role"] == "admin"


# ---------------------------------------------------------------------------
# Self-registration
# ---------------------------------------------------------------------------


class TestRegister:
    def test_register_then_login(self, client):
        r = client.post(
            "/api/v1/auth/register",
            json={"username": "apinewbie", "password": "Valid#Pass1", "confirm": "Valid#Pass1"},
        )
        assert r.status_code == 201
        assert r.json()["role"] == "user"
        assert _login(client, "apinewbie", "Valid#Pass1").status_code == 200

    def test_duplicate(self, client):
        body = {"username": "apitwice1", "password": "Valid#Pass1"}
        assert client.post("/api/v1/auth/register", json=body).status_code == 201
        r = client.post("/api/v1/auth/register", json=body)
        assert r.status_code == 409
        assert r.json()["error"]["code"] == "username_taken"

    def test_weak_password(self, client):
        r = client.post("/api/v1/auth/register", json={"username": "apiweak01", "password": "weak"})
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "policy_violation"
        assert "between 8 and 16" in r.json()["error"]["message"]


# ---------------------------------------------------------------------------
# Username availability and password change
# ---------------------------------------------------------------------------


class TestSelfService:
    def test_username_availability(self, client):
        make_account(_store(), "apitaken1")
        assert client.get("/api/v1/auth/usernames/apitaken1").json() == {"username": "apitaken1", "available": False}
        assert client.get("/api/v1/auth/usernames/apifree01").json() == {"username": "apifree01", "available": True}

    def test_username_availability_rejects_invalid_names(self, client):
        r = client.get("/api/v1/auth/usernames/ab")
        assert r.status_code == 422
        assert r.json()["error"]["code"] == "policy_violation"

    def test_change_password(self, client):
        make_account(_store(), "apichange")
        token = _token_for(client, "apichange")
        client.cookies.clear()

        r = client.post(
            "/api/v1/auth/password",
            json={"current": PASSWORD, "password": "New#Horse22", "confirm": "New#Horse22"},
            headers=_bearer(token),
        )
        assert r.status_code == 200, r.text
        assert r.headers["cache-control"] == "no-store"
        assert client.get("/api/v1/auth/me", headers=_bearer(token)).status_code == 200

        assert _login(client, "apichange").json()["error"]["code"] == "invalid_credentials"
        assert _login(client, "apichange", "New#Horse22").status_code == 200

    def test_change_password_must_differ(self, client):
        make_account(_store(), "apisame01")
        token = _token_for(client, "apisame01")
        client.cookies.clear()
        r = client.post(
            "/api/v1/auth/password",
            json={"current": PASSWORD, "password": PASSWORD},
            headers=_bearer(token),
        )
        assert r.status_code == 422
        assert "different" in r.json()["error"]["message"]

    def test_change_password_wrong_current(self, client):
        make_account(_store(), "apiwrong1")
        token = _token_for(client, "apiwrong1")
        client.cookies.clear()
        r = client.post(
            "/api/v1/auth/password",
            json={"current": "Not#Mine11", "password": "New#Horse22"},
            headers=_bearer(token),
        )
        assert r.status_code == 401
        assert r.json()["error"]["code"] == "invalid_credentials"

    def test_change_password_requires_session(self, client):
        r = client.post("/api/v1/auth/password", json={"current": PASSWORD, "password": "New#Horse22"})
        assert r.status_code == 401
