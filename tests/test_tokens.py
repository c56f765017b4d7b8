"""Unit tests for accounts/tokens.py -- session JWTs, tickets, password login."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from accounts.models import Ticket, User
from accounts.store import UserStore
from accounts.tokens import (
    authenticate_user,
    create_access_token,
    decode_access_token,
    hash_secret,
    issue_ticket,
    redeem_ticket,
)
from core.crypto import hash_password


@pytest.fixture
def store():
    s = UserStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def user(store):
    uid = store.create_user(User(email="t@example.com", phone="+15550100", password=hash_password("Token#Pass1")))
    return store.get_by_id(uid)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------


class TestAccessToken:
    def test_roundtrip(self):
        payload = decode_access_token(create_access_token(7, "admin"))
        assert payload["user_id"] == 7
        assert payload["role"] == "admin"
        assert payload["sub"] == "7"

    def test_tampered_token_rejected(self):
        token = create_access_token(7, "user")
        assert decode_access_token(token[:-2] + ("AA" if token[-2:] != "AA" else "BB")) is None

    def test_foreign_key_rejected(self):
        forged = jwt.encode({"user_id": 1, "role": "admin"}, "x" * 32, algorithm="HS256")
        assert decode_access_token(forged) is None

    def test_missing_claims_rejected(self):
        from accounts.tokens import _settings

        token = jwt.encode({"sub": "1"}, _settings.secret_key, algorithm="HS256")
        assert decode_access_token(token) is None

    def test_garbage_rejected(self):
        assert decode_access_token("not-a-jwt") is None


# ---------------------------------------------------------------------------
# Password login
# ---------------------------------------------------------------------------


class TestAuthenticateUser:
    def test_by_email(self, store, user):
        assert authenticate_user(store, "T@Example.com", "Token#Pass1").id == user.id

    def test_by_phone(self, store, user):
        assert authenticate_user(store, "+15550100", "Token#Pass1").id == user.id

    def test_wrong_password(self, store, user):
        assert authenticate_user(store, "t@example.com", "Token#Pass2") is None

    def test_unknown_identity(self, store):
        assert authenticate_user(store, "nobody@example.com", "Token#Pass1") is None

    def test_inactive_user(self, store, user):
        store.update_user(user.id, is_active=False)
        assert authenticate_user(store, "t@example.com", "Token#Pass1") is None

    def test_user_without_password(self, store):
        store.create_user(User(email="nopass@example.com"))
        assert authenticate_user(store, "nopass@example.com", "") is None


# ---------------------------------------------------------------------------
# Tickets
# ---------------------------------------------------------------------------


class TestTickets:
    def test_issue_and_redeem_once(self, store, user):
        raw = issue_ticket(store, user.id)
        assert raw.startswith("ST-")
        assert redeem_ticket(store, raw).id == user.id
        assert redeem_ticket(store, raw) is None

    def test_raw_ticket_is_not_stored(self, store, user):
        raw = issue_ticket(store, user.id)
        assert store.consume_ticket(raw) is None
        assert store.consume_ticket(hash_secret(raw)) is not None

    def test_unknown_or_empty_ticket(self, store):
        assert redeem_ticket(store, "ST-unknown") is None
        assert redeem_ticket(store, "") is None

    def test_expired_ticket(self, store, user):
        expired = (datetime.now(timezone.utc) - timedelta(seconds=1)).isoformat()
        store.create_ticket(Ticket(user_id=user.id, ticket_hash=hash_secret("ST-old"), expires_at=expired))
        assert redeem_ticket(store, "ST-old") is None

    def test_service_bound_ticket(self, store, user):
        raw = issue_ticket(store, user.id, service="https://app.example.com/")
        assert redeem_ticket(store, raw, service="https://other.example.com/") is None
        # A failed attempt still burns the ticket.
        assert redeem_ticket(store, raw, service="https://app.example.com/") is None

    def test_service_bound_ticket_matching_service(self, store, user):
        raw = issue_ticket(store, user.id, service="https://app.example.com/")
        assert redeem_ticket(store, raw, service="https://app.example.com/").id == user.id

    def test_deactivated_user_cannot_redeem(self, store, user):
        raw = issue_ticket(store, user.id)
        store.update_user(user.id, is_active=False)
        assert redeem_ticket(store, raw) is None

    def test_deleted_user_cannot_redeem(self, store, user):
        raw = issue_ticket(store, user.id)
        store.delete_user(user.id)
        assert redeem_ticket(store, raw) is None
