"""Tests for the management command line in main.py."""

import pytest

from accounts.store import UserStore
from core.config import get_settings
from core.crypto import derive_key, generate_api_key, verify_password
from main import main

RFC7914_KEY = (
    "7023bdcb3afd7348461c06cd81fd38ebfda8fbba904f8e3ea9b543f6545da1f2"
    "d5432955613f0fcf62d49705242a9af9e61e85dc0d651e40dfcf017b45575887"
)


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(get_settings(), "database_url", url)
    return url


def test_derive(capsys):
    assert main(["derive", "pleaseletmein", "SodiumChloride"]) == 0
    assert capsys.readouterr().out.strip() == RFC7914_KEY


def test_api_key_with_fixed_timestamp(capsys):
    assert main(["api-key", "/api/user", "--timestamp", "1700000000000"]) == 0
    out = capsys.readouterr().out.splitlines()
    assert out == ["timestamp: 1700000000000", f"api-key: {generate_api_key(1700000000000, '/api/user')}"]


def test_api_key_with_salt(capsys):
    main(["api-key", "/api/nav", "--timestamp", "5", "--salt", "pepper"])
    assert f"api-key: {derive_key('/api/nav:5', 'pepper')}" in capsys.readouterr().out


def test_no_command_prints_help(capsys):
    assert main([]) == 0
    assert "create-admin" in capsys.readouterr().out


def test_create_admin(db_url, capsys):
    rc = main(["create-admin", "--email", "Boss@Example.com", "--password", "Boss#Pass1", "--username", "Boss"])
    assert rc == 0
    assert "Admin account created" in capsys.readouterr().out
    store = UserStore(db_url)
    try:
        admin = store.get_by_email("boss@example.com")
        assert admin.role == "admin"
        assert admin.username == "Boss"
        assert verify_password("Boss#Pass1", admin.password)
    finally:
        store.close()


def test_create_admin_prompts_for_password(db_url, monkeypatch):
    answers = iter(["Boss#Pass1", "Boss#Pass1"])
    monkeypatch.setattr("getpass.getpass", lambda prompt="": next(answers))
    assert main(["create-admin", "--phone", "+15550500"]) == 0


def test_create_admin_prompt_mismatch(db_url, monkeypatch, capsys):
    answers = iter(["Boss#Pass1", "Boss#Pass2"])
    monkeypatch.setattr("getpass.getpass", lambda prompt="": next(answers))
    assert main(["create-admin", "--phone", "+15550501"]) == 2
    assert "do not match" in capsys.readouterr().out


def test_create_admin_duplicate(db_url, capsys):
    args = ["create-admin", "--email", "dup@example.com", "--password", "Boss#Pass1"]
    assert main(args) == 0
    assert main(args) == 1
    assert "already exists" in capsys.readouterr().out


@pytest.mark.parametrize(
    "args",
    [
        ["create-admin", "--password", "Boss#Pass1"],
        ["create-admin", "--email", "a@example.com", "--phone", "+15550502", "--password", "Boss#Pass1"],
        ["create-admin", "--email", "not-an-email", "--password", "Boss#Pass1"],
        ["create-admin", "--email", "weak@example.com", "--password", "weak"],
    ],
)
def test_create_admin_rejects_bad_input(db_url, capsys, args):
    assert main(args) == 2
    assert "[!]" in capsys.readouterr().out
