"""Integration tests for the server-rendered account web client.

Covers:
- protected pages redirect to /login?next=<path> without a session
- password and OTP login set the session cookie and honour a relative ?next
- ?next= values pointing off-site fall back to /
- ?error= / ?msg= values outside the whitelist are never rendered
- signup, profile, password and user administration forms
- the HTMX OTP fragment
"""

import json

import pytest

from accounts import otp as otp_mod
from conftest import ADMIN_EMAIL, ADMIN_PASSWORD, OTP_TEST_CODE
from core.crypto import verify_password

PASSWORD = "User#Pass1"


def _web_login(env, identity, password=PASSWORD, next_url=None):
    url = "/login" if next_url is None else f"/login?next={next_url}"
    return env.client.post(url, data={"identity": identity, "password": password})


# ---------------------------------------------------------------------------
# Auth redirects
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("path", ["/", "/profile", "/password", "/users"])
def test_protected_pages_redirect_to_login(env, path):
    resp = env.client.get(path)
    assert resp.status_code == 302
    assert resp.headers["location"] == f"/login?next={path}"


def test_web_pages_need_no_signature(env):
    assert env.client.get("/login").status_code == 200


def test_login_page_redirects_when_logged_in(env):
    _web_login(env, ADMIN_EMAIL, ADMIN_PASSWORD)
    resp = env.client.get("/login")
    assert resp.status_code == 302
    assert resp.headers["location"] == "/"


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class TestLogin:
    def test_password_login(self, env, make_user):
        make_user(email="web1@example.com")
        resp = _web_login(env, "web1@example.com")
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"
        assert "token" in resp.cookies
        assert "web1@example.com" in env.client.get("/").text

    def test_login_follows_relative_next(self, env, make_user):
        make_user(email="web2@example.com")
        resp = _web_login(env, "web2@example.com", next_url="/profile")
        assert resp.headers["location"] == "/profile"

    @pytest.mark.parametrize("target", ["https://evil.example", "//evil.example"])
    def test_login_ignores_offsite_next(self, env, make_user, target):
        make_user(email=f"web3-{len(target)}@example.com")
        resp = _web_login(env, f"web3-{len(target)}@example.com", next_url=target)
        assert resp.headers["location"] == "/"

    def test_bad_password(self, env, make_user):
        make_user(email="web4@example.com")
        resp = _web_login(env, "web4@example.com", password="Wrong#Pass1")
        assert resp.headers["location"] == "/login?error=bad_credentials"
        page = env.client.get("/login?error=bad_credentials")
        assert "Invalid email, phone or password." in page.text

    def test_bad_password_keeps_next(self, env, make_user):
        make_user(email="web5@example.com")
        resp = _web_login(env, "web5@example.com", password="Wrong#Pass1", next_url="/profile")
        assert resp.headers["location"] == "/login?error=bad_credentials&next=%2Fprofile"
        retry = _web_login(env, "web5@example.com", next_url="/profile")
        assert retry.headers["location"] == "/profile"

    def test_bad_code_keeps_next(self, env, make_user):
        make_user(phone="+15550303")
        resp = env.client.post(
            "/login?next=/password", data={"identity": "+15550303", "type": "otp", "code": "1"}
        )
        assert resp.headers["location"] == "/login?type=otp&error=bad_code&next=%2Fpassword"

    def test_otp_login(self, env, make_user):
        make_user(phone="+15550301")
        resp = env.client.post("/login", data={"identity": "+15550301", "type": "otp", "code": OTP_TEST_CODE})
        assert resp.status_code == 302
        assert resp.headers["location"] == "/"

    def test_otp_login_bad_code(self, env, make_user):
        make_user(phone="+15550302")
        resp = env.client.post("/login", data={"identity": "+15550302", "type": "otp", "code": "1"})
        assert resp.headers["location"] == "/login?type=otp&error=bad_code"

    def test_unknown_error_key_not_rendered(self, env):
        resp = env.client.get("/login?error=<script>alert(1)</script>")
        assert "<script>alert(1)</script>" not in resp.text
        assert 'class="error"' not in resp.text

    def test_logout(self, env):
        _web_login(env, ADMIN_EMAIL, ADMIN_PASSWORD)
        resp = env.client.post("/logout")
        assert resp.headers["location"] == "/login"
        assert env.client.get("/").status_code == 302


# ---------------------------------------------------------------------------
# Signup and OTP fragment
# ---------------------------------------------------------------------------


class TestSignup:
    def _form(self, **overrides):
        form = {
            "identity": "websignup@example.com",
            "code": OTP_TEST_CODE,
            "password": PASSWORD,
            "confirm_password": PASSWORD,
            "username": "Web Signup",
        }
        form.update(overrides)
        return form

    def test_signup_logs_in(self, env):
        resp = env.client.post("/signup", data=self._form())
        assert resp.status_code == 302
        assert resp.headers["location"] == "/?msg=signed_up"
        user = env.user_store.get_by_email("websignup@example.com")
        assert user.username == "Web Signup"
        assert "Your account is ready." in env.client.get("/?msg=signed_up").text

    def test_signup_with_phone(self, env):
        resp = env.client.post("/signup", data=self._form(identity="+15550311"))
        assert resp.status_code == 302
        assert env.user_store.get_by_phone("+15550311") is not None

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"identity": "nobody"}, "Enter a valid email address or phone number."),
            ({"password": "weak", "confirm_password": "weak"}, "8-20 characters"),
            ({"confirm_password": "Other#Pass1"}, "Passwords do not match."),
            ({"code": "1"}, "Invalid or expired verification code."),
        ],
    )
    def test_signup_errors(self, env, overrides, message):
        form = self._form(identity="websignup2@example.com")
        form.update(overrides)
        resp = env.client.post("/signup", data=form)
        assert resp.status_code == 400
        assert message in resp.text

    def test_duplicate_identity(self, env, make_user):
        make_user(email="webdupe@example.com")
        resp = env.client.post("/signup", data=self._form(identity="webdupe@example.com"))
        assert resp.status_code == 400
        assert "already exists" in resp.text

    def test_otp_fragment(self, env, monkeypatch):
        monkeypatch.setattr(otp_mod.notifier, "send_email", lambda to, subject, text: True)
        resp = env.client.post("/otp/send", data={"identity": "fragment@example.com"})
        assert resp.status_code == 200
        assert 'class="notice"' in resp.text
        assert "Code sent" in resp.text

    def test_otp_fragment_invalid_identity(self, env):
        resp = env.client.post("/otp/send", data={"identity": "???"})
        assert 'class="error"' in resp.text


# ---------------------------------------------------------------------------
# Profile and password
# ---------------------------------------------------------------------------


class TestAccountForms:
    def test_profile_save(self, env, make_user):
        user = make_user(email="webprofile@example.com")
        _web_login(env, "webprofile@example.com")
        resp = env.client.post(
            "/profile", data={"username": "Renamed", "profile_json": json.dumps({"city": "Bergen"})}
        )
        assert resp.headers["location"] == "/?msg=profile_saved"
        stored = env.user_store.get_by_id(user.id)
        assert stored.username == "Renamed"
        assert stored.profile == {"city": "Bergen"}

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]"])
    def test_profile_must_be_object(self, env, make_user, raw):
        make_user(email=f"webprofile-{len(raw)}@example.com")
        _web_login(env, f"webprofile-{len(raw)}@example.com")
        resp = env.client.post("/profile", data={"username": "", "profile_json": raw})
        assert resp.status_code == 400
        assert "Profile must be a JSON object." in resp.text

    def test_profile_form_shows_json(self, env, make_user):
        user = make_user(email="webprofile2@example.com")
        env.user_store.update_user(user.id, profile={"lang": "nb"})
        _web_login(env, "webprofile2@example.com")
        assert "lang" in env.client.get("/profile").text

    def test_change_password(self, env, make_user):
        user = make_user(email="webpass@example.com")
        _web_login(env, "webpass@example.com")
        resp = env.client.post(
            "/password",
            data={"old_password": PASSWORD, "new_password": "Fresh#Pass2", "confirm_password": "Fresh#Pass2"},
        )
        assert resp.headers["location"] == "/?msg=password_changed"
        assert verify_password("Fresh#Pass2", env.user_store.get_by_id(user.id).password)

    def test_change_password_wrong_old(self, env, make_user):
        make_user(email="webpass2@example.com")
        _web_login(env, "webpass2@example.com")
        resp = env.client.post(
            "/password",
            data={"old_password": "Wrong#Pass1", "new_password": "Fresh#Pass2", "confirm_password": "Fresh#Pass2"},
        )
        assert resp.status_code == 400
        assert "Current password is incorrect." in resp.text


# ---------------------------------------------------------------------------
# User administration
# ---------------------------------------------------------------------------


class TestUsersPage:
    def test_admin_sees_users(self, env):
        _web_login(env, ADMIN_EMAIL, ADMIN_PASSWORD)
        resp = env.client.get("/users")
        assert resp.status_code == 200
        assert ADMIN_EMAIL in resp.text

    def test_non_admin_forbidden(self, env, make_user):
        make_user(email="webplain@example.com")
        _web_login(env, "webplain@example.com")
        resp = env.client.get("/users")
        assert resp.headers["location"] == "/?error=forbidden"

    def test_admin_deletes_user(self, env, make_user):
        victim = make_user(email="webvictim@example.com")
        _web_login(env, ADMIN_EMAIL, ADMIN_PASSWORD)
        resp = env.client.post(f"/users/{victim.id}/delete")
        assert resp.headers["location"] == "/users?msg=user_deleted"
        assert env.user_store.get_by_id(victim.id) is None

    def test_admin_cannot_delete_self(self, env):
        _web_login(env, ADMIN_EMAIL, ADMIN_PASSWORD)
        env.client.post(f"/users/{env.admin.id}/delete")
        assert env.user_store.get_by_id(env.admin.id) is not None

    def test_setup_page_after_setup(self, env):
        resp = env.client.get("/setup")
        assert resp.headers["location"] == "/login?error=setup_complete"
