import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from tabreload import __version__, cli
from tabreload.store import Credential, Rule, RuleStore
from tabreload.sync.remote_client import RemoteClient

runner = CliRunner()

FAR_FUTURE_MS = 4_102_444_800_000


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    return str(tmp_path / "cli.sqlite")


def _rules(db_path: str) -> list[Rule]:
    store = RuleStore(db_path)
    try:
        return store.get_rules()
    finally:
        store.close()


def _login(db_path: str) -> None:
    store = RuleStore(db_path)
    try:
        store.set_credential(Credential("access-1", "refresh-1", FAR_FUTURE_MS))
    finally:
        store.close()


@pytest.fixture
def fake_remote(monkeypatch: pytest.MonkeyPatch, remote, sleeps):
    monkeypatch.setenv("TABRELOAD_REQUEST_PAUSE_MS", "0")
    monkeypatch.setattr(
        cli,
        "RemoteClient",
        lambda store, config: RemoteClient(store, config, transport=remote, sleep=sleeps),
    )
    return remote


def test_version() -> None:
    result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_rules_add_list_update_remove(db_path: str) -> None:
    assert runner.invoke(cli.app, ["rules", "add", "example.com", "5", "--db-path", db_path]).exit_code == 0
    assert runner.invoke(cli.app, ["rules", "add", "news", "2", "--db-path", db_path]).exit_code == 0

    listed = runner.invoke(cli.app, ["rules", "list", "--db-path", db_path])
    assert listed.exit_code == 0
    assert "0|example.com|5m" in listed.stdout
    assert "1|news|2m" in listed.stdout

    updated = runner.invoke(cli.app, ["rules", "update", "1", "news.site", "3", "--db-path", db_path])
    assert updated.exit_code == 0
    assert _rules(db_path) == [Rule("example.com", 5), Rule("news.site", 3)]

    removed = runner.invoke(cli.app, ["rules", "remove", "0", "--db-path", db_path])
    assert removed.exit_code == 0
    assert _rules(db_path) == [Rule("news.site", 3)]

    as_json = runner.invoke(cli.app, ["rules", "list", "--json", "--db-path", db_path])
    assert json.loads(as_json.stdout) == [{"urlPattern": "news.site", "intervalMinutes": 3}]


def test_rules_add_rejects_invalid_and_duplicate(db_path: str) -> None:
    zero = runner.invoke(cli.app, ["rules", "add", "example.com", "0", "--db-path", db_path])
    assert zero.exit_code == 1

    runner.invoke(cli.app, ["rules", "add", "example.com", "5", "--db-path", db_path])
    duplicate = runner.invoke(cli.app, ["rules", "add", "example.com", "9", "--db-path", db_path])
    assert duplicate.exit_code == 1
    assert _rules(db_path) == [Rule("example.com", 5)]


def test_rules_remove_out_of_range(db_path: str) -> None:
    result = runner.invoke(cli.app, ["rules", "remove", "3", "--db-path", db_path])
    assert result.exit_code == 1


def test_auth_login_status_logout(db_path: str) -> None:
    assert runner.invoke(cli.app, ["auth", "status", "--db-path", db_path]).stdout.strip() == (
        "Not logged in"
    )

    login = runner.invoke(
        cli.app,
        [
            "auth",
            "login",
            "--access-token",
            "a",
            "--refresh-token",
            "r",
            "--expires-in",
            "3600",
            "--db-path",
            db_path,
        ],
    )
    assert login.exit_code == 0
    status = runner.invoke(cli.app, ["auth", "status", "--db-path", db_path])
    assert "Logged in" in status.stdout

    assert runner.invoke(cli.app, ["auth", "logout", "--db-path", db_path]).exit_code == 0
    assert "Not logged in" in runner.invoke(cli.app, ["auth", "status", "--db-path", db_path]).stdout


def test_backup_and_restore_commands(db_path: str, fake_remote) -> None:
    _login(db_path)
    runner.invoke(cli.app, ["rules", "add", "example.com", "5", "--db-path", db_path])

    backup = runner.invoke(cli.app, ["backup", "--db-path", db_path])
    assert backup.exit_code == 0
    assert "1 created, 0 updated, 0 deleted" in backup.stdout

    runner.invoke(cli.app, ["rules", "update", "0", "other.org", "1", "--db-path", db_path])
    restore = runner.invoke(cli.app, ["restore", "--db-path", db_path])
    assert restore.exit_code == 0
    assert "1 rule(s) restored" in restore.stdout
    assert _rules(db_path) == [Rule("example.com", 5)]


def test_restore_without_login_fails(db_path: str, fake_remote) -> None:
    result = runner.invoke(cli.app, ["restore", "--db-path", db_path])
    assert result.exit_code == 1
    assert "log in" in result.stdout
    assert fake_remote.calls == []


def test_rule_edits_back_up_when_auto_backup_enabled(db_path: str, fake_remote) -> None:
    _login(db_path)
    toggle = runner.invoke(cli.app, ["auto-backup", "--enable", "--db-path", db_path])
    assert toggle.exit_code == 0

    added = runner.invoke(cli.app, ["rules", "add", "example.com", "5", "--db-path", db_path])

    assert added.exit_code == 0
    assert "Backup: 1 created" in added.stdout
    assert fake_remote.count("POST", "/raindrop") == 1


def test_config_command_prints_effective_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TABRELOAD_COLLECTION_TITLE", "CLI Tabs")
    result = runner.invoke(cli.app, ["config"])
    assert result.exit_code == 0
    assert "CLI Tabs" in result.stdout


def test_run_simulation_reports_reload_counts(db_path: str) -> None:
    runner.invoke(cli.app, ["rules", "add", "example.com", "5", "--db-path", db_path])

    result = runner.invoke(
        cli.app,
        ["run", "https://example.com", "https://other.org", "--seconds", "0.05", "--db-path", db_path],
    )

    assert result.exit_code == 0
    assert "https://example.com|reloads=0" in result.stdout
    assert "badge: 4m" in result.stdout or "badge: 5m" in result.stdout
