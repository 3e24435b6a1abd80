"""Tests for main.py -- management commands."""

import pytest

import main
from auth.store import UserStore


@pytest.fixture
def db_url(tmp_path, monkeypatch) -> str:
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setattr(main.get_settings(), "database_url", url)
    return url


def _answers(monkeypatch, *values: str) -> None:
    replies = iter(values)
    monkeypatch.setattr(main.getpass, "getpass", lambda prompt="": next(replies))


def test_permissions_lists_catalog(capsys):
    assert main.main(["permissions"]) == 0
    out = capsys.readouterr().out
    assert "BOOKS_READ" in out
    assert "SYSTEM_ADMIN" in out


def test_permissions_for_module(capsys):
    assert main.main(["permissions", "--module", "borrow"]) == 0
    out = capsys.readouterr().out
    assert "BORROW_APPROVE" in out
    assert "BOOKS_READ" not in out


def test_permissions_unknown_module(capsys):
    assert main.main(["permissions", "--module", "nope"]) == 1
    assert "Unknown module" in capsys.readouterr().out


def test_create_admin(db_url, monkeypatch, capsys):
    _answers(monkeypatch, "Adm1n!Passw0rd", "Adm1n!Passw0rd")
    assert main.main(["create-admin", "Head", "head@library.test"]) == 0
    assert "created" in capsys.readouterr().out

    store = UserStore(db_url)
    try:
        user = store.get_by_username("head")
        assert user.user_type == "admin"
        assert user.role_name == "admin"
        assert store.count_active_admins() == 1
    finally:
        store.close()


def test_create_admin_rejects_weak_password(db_url, monkeypatch, capsys):
    _answers(monkeypatch, "weak")
    assert main.main(["create-admin", "head", "head@library.test"]) == 1
    assert "at least" in capsys.readouterr().out


def test_create_admin_rejects_mismatch(db_url, monkeypatch, capsys):
    _answers(monkeypatch, "Adm1n!Passw0rd", "Adm1n!Passw0rX")
    assert main.main(["create-admin", "head", "head@library.test"]) == 1
    assert "do not match" in capsys.readouterr().out


def test_create_admin_duplicate(db_url, monkeypatch):
    _answers(monkeypatch, "Adm1n!Passw0rd", "Adm1n!Passw0rd")
    assert main.main(["create-admin", "head", "head@library.test"]) == 0
    assert main.main(["create-admin", "head", "other@library.test"]) == 1


def test_unlock(db_url, monkeypatch, capsys):
    _answers(monkeypatch, "Adm1n!Passw0rd", "Adm1n!Passw0rd")
    main.main(["create-admin", "head", "head@library.test"])
    store = UserStore(db_url)
    try:
        uid = store.get_by_username("head").id
        store.record_failed_attempt(uid, 1, "2999-01-01T00:00:00.000000+00:00")
    finally:
        store.close()

    assert main.main(["unlock", str(uid)]) == 0
    assert main.main(["unlock", "9999"]) == 1


def test_role(db_url, capsys):
    assert main.main(["role", "student"]) == 0
    out = capsys.readouterr().out
    assert "BORROW_CREATE" in out
    assert "SYSTEM_ADMIN" not in out
    assert main.main(["role", "nope"]) == 1


def test_no_command_prints_help(capsys):
    assert main.main([]) == 1
