"""Integration tests for /api/sms, /api/email and their /verify pre-checks."""

import re

import pytest

from accounts import otp as otp_mod
from conftest import OTP_TEST_CODE


@pytest.fixture
def outbox(monkeypatch):
    sent: list[tuple[str, str]] = []
    monkeypatch.setattr(otp_mod.notifier, "send_sms", lambda phone, text: sent.append((phone, text)) or True)
    monkeypatch.setattr(
        otp_mod.notifier, "send_email", lambda address, subject, text: sent.append((address, text)) or True
    )
    return sent


def _code(text: str) -> str:
    return re.search(r"code is (\d+)", text).group(1)


def test_send_sms(env, outbox):
    resp = env.api("POST", "/api/sms", json={"phone": "+15550201"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["head"]["message"] == "Code sent."
    assert body["data"]["expiresIn"] > 0
    assert outbox[0][0] == "+15550201"


def test_send_email_normalizes_address(env, outbox):
    env.api("POST", "/api/email", json={"email": " OTP1@Example.com "})
    assert outbox[0][0] == "otp1@example.com"


def test_resend_is_throttled(env, outbox):
    env.api("POST", "/api/email", json={"email": "otp2@example.com"})
    resp = env.api("POST", "/api/email", json={"email": "otp2@example.com"})
    assert resp.status_code == 429
    assert resp.json()["head"]["code"] == 1008
    assert int(resp.headers["retry-after"]) > 0


def test_delivery_failure(env, monkeypatch):
    monkeypatch.setattr(otp_mod.notifier, "send_sms", lambda phone, text: False)
    resp = env.api("POST", "/api/sms", json={"phone": "+15550202"})
    assert resp.status_code == 502
    assert resp.json()["head"]["code"] == 1009


def test_invalid_phone(env, outbox):
    resp = env.api("POST", "/api/sms", json={"phone": "call me"})
    assert resp.status_code == 422
    assert outbox == []


def test_invalid_email(env, outbox):
    assert env.api("POST", "/api/email", json={"email": "nope"}).status_code == 422


def test_verify_does_not_consume(env, outbox):
    env.api("POST", "/api/email", json={"email": "otp3@example.com"})
    code = _code(outbox[0][1])
    body = {"email": "otp3@example.com", "code": code}
    for _ in range(2):
        resp = env.api("POST", "/api/email/verify", json=body)
        assert resp.status_code == 200
        assert resp.json()["data"] == {"valid": True}


def test_verify_wrong_code(env, outbox):
    env.api("POST", "/api/sms", json={"phone": "+15550203"})
    wrong = "000000" if _code(outbox[0][1]) != "000000" else "111111"
    resp = env.api("POST", "/api/sms/verify", json={"phone": "+15550203", "code": wrong})
    assert resp.status_code == 400
    assert resp.json()["head"]["code"] == 1007


def test_verify_test_code(env):
    resp = env.api("POST", "/api/sms/verify", json={"phone": "+15550204", "code": OTP_TEST_CODE})
    assert resp.status_code == 200
