"""Tests for main.py -- the operator command line.

The service factory is patched so commands run against the test fixtures'
isolated stores instead of the configured database.
"""

from __future__ import annotations

import pytest

import main as cli


@pytest.fixture
def run(service, monkeypatch, capsys):
    monkeypatch.setattr(cli, "build_auth_service", lambda settings: service)

    def _run(*argv: str) -> tuple[int, str]:
        code = cli.main(list(argv))
        return code, capsys.readouterr().out

    return _run


def test_bootstrap_admin_reads_password_from_env(run, service, monkeypatch):
    monkeypatch.setenv("DOORPRO_ADMIN_PASSWORD", "cli-admin-pass")
    code, out = run("bootstrap-admin", "--username", "root", "--email", "root@doorpro.test", "--full-name", "Root")
    assert code == 0
    assert "Created admin 'root'" in out
    assert service.login("root", "cli-admin-pass").user.role == "admin"


def test_bootstrap_admin_twice_fails(run, monkeypatch):
    monkeypatch.setenv("DOORPRO_ADMIN_PASSWORD", "cli-admin-pass")
    args = ("bootstrap-admin", "--username", "root", "--email", "root@doorpro.test", "--full-name", "Root")
    run(*args)
    code, out = run(*args)
    assert code == 1
    assert "An admin account already exists." in out


def test_token_count_and_revoke_user(run, service):
    identity = service.register_user("rep9", "rep9@doorpro.test", "rep9-password", "Rep Nine")
    service.login("rep9", "rep9-password")

    code, out = run("token-count")
    assert code == 0
    assert "2 token record(s)" in out

    code, out = run("revoke-user", str(identity.id))
    assert code == 0
    assert "Revoked 2 token(s)" in out

    code, out = run("sweep")
    assert code == 0
    assert "removed 2" in out


def test_unknown_command_exits():
    with pytest.raises(SystemExit):
        cli.main(["launch-rockets"])
