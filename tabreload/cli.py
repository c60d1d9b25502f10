from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field

import typer
from rich import print

from . import __version__
from .config import get_config_path, load_config
from .errors import InvalidRuleError
from .host import LoopAlarmHost, MemoryTabHost
from .runtime import Background
from .store import Credential, Rule, RuleStore
from .sync.reconcile import ReconciliationEngine, SyncResult
from .sync.remote_client import RemoteClient

app = typer.Typer(help="tabreload: reload tabs on a timer, with cloud backup of rules")
rules_app = typer.Typer(help="Manage reload rules")
auth_app = typer.Typer(help="Manage the backup service login")
app.add_typer(rules_app, name="rules")
app.add_typer(auth_app, name="auth")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _store(db_path: str | None) -> RuleStore:
    return RuleStore(db_path or load_config().db_path)


def _engine(store: RuleStore) -> ReconciliationEngine:
    config = load_config()
    return ReconciliationEngine(store, RemoteClient(store, config), config)


def _print_result(result: SyncResult) -> None:
    if result.success:
        print(f"[green]{result.message}[/green]")
    else:
        print(f"[red]{result.message}[/red]")
        raise typer.Exit(code=1)


def _backup_after_edit(store: RuleStore) -> None:
    if not store.auto_backup_enabled():
        return
    result = asyncio.run(_engine(store).backup())
    if result.success:
        print(f"- Backup: {result.message}")
    else:
        print(f"[yellow]- Backup: {result.message}[/yellow]")


@app.command("version")
def version() -> None:
    """Print the version."""

    print(__version__)


@rules_app.command("list")
def rules_list(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
    as_json: bool = typer.Option(False, "--json", help="Print rules as JSON"),
) -> None:
    """List rules in match order (later rules win on overlap)."""

    store = _store(db_path)
    try:
        rules = store.get_rules()
    finally:
        store.close()
    if as_json:
        print(json.dumps([rule.to_dict() for rule in rules], indent=2))
        return
    if not rules:
        print("No rules")
        return
    for index, rule in enumerate(rules):
        print(f"{index}|{rule.url_pattern}|{rule.interval_minutes}m")


@rules_app.command("add")
def rules_add(
    url_pattern: str = typer.Argument(..., help="Substring of the URLs to reload"),
    interval_minutes: int = typer.Argument(..., help="Reload interval in minutes"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Add a rule."""

    store = _store(db_path)
    try:
        try:
            store.add_rule(Rule(url_pattern, interval_minutes))
        except InvalidRuleError as exc:
            print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        print(f"[green]Added {url_pattern} ({interval_minutes}m)[/green]")
        _backup_after_edit(store)
    finally:
        store.close()


@rules_app.command("update")
def rules_update(
    index: int = typer.Argument(..., help="Index shown by `rules list`"),
    url_pattern: str = typer.Argument(..., help="Substring of the URLs to reload"),
    interval_minutes: int = typer.Argument(..., help="Reload interval in minutes"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Replace the rule at INDEX."""

    store = _store(db_path)
    try:
        try:
            store.update_rule(index, Rule(url_pattern, interval_minutes))
        except (InvalidRuleError, IndexError) as exc:
            print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        print(f"[green]Updated rule {index}[/green]")
        _backup_after_edit(store)
    finally:
        store.close()


@rules_app.command("remove")
def rules_remove(
    index: int = typer.Argument(..., help="Index shown by `rules list`"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete the rule at INDEX."""

    store = _store(db_path)
    try:
        try:
            removed = store.delete_rule(index)
        except IndexError as exc:
            print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        print(f"Removed {removed.url_pattern}")
        _backup_after_edit(store)
    finally:
        store.close()


@auth_app.command("login")
def auth_login(
    access_token: str = typer.Option(..., help="OAuth access token"),
    refresh_token: str = typer.Option(..., help="OAuth refresh token"),
    expires_in: int = typer.Option(1209600, help="Seconds until the access token expires"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Store an OAuth credential obtained from the login page."""

    store = _store(db_path)
    try:
        credential = Credential.from_token_response(
            {
                "access_token": access_token,
                "refresh_token": refresh_token,
                "expires_in": expires_in,
            },
            now_ms=int(time.time() * 1000),
        )
        if credential is None:
            print("[red]Incomplete credential[/red]")
            raise typer.Exit(code=1)
        store.set_credential(credential)
    finally:
        store.close()
    print("[green]Logged in[/green]")


@auth_app.command("logout")
def auth_logout(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Forget the stored credential."""

    store = _store(db_path)
    try:
        store.clear_credential()
    finally:
        store.close()
    print("Logged out")


@auth_app.command("status")
def auth_status(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Show whether a credential is stored and when it expires."""

    store = _store(db_path)
    try:
        credential = store.get_credential()
    finally:
        store.close()
    if credential is None:
        print("Not logged in")
        return
    if credential.expires_at is None:
        print("Logged in (expiry unknown)")
        return
    remaining_s = (credential.expires_at - int(time.time() * 1000)) // 1000
    print(f"Logged in (token expires in {max(0, remaining_s)}s)")


@app.command("backup")
def backup(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Mirror local rules to the remote collection."""

    store = _store(db_path)
    try:
        result = asyncio.run(_engine(store).backup())
    finally:
        store.close()
    _print_result(result)


@app.command("restore")
def restore(db_path: str = typer.Option(None, help="Path to SQLite database")) -> None:
    """Replace local rules with the remote collection."""

    store = _store(db_path)
    try:
        result = asyncio.run(_engine(store).restore())
    finally:
        store.close()
    _print_result(result)


@app.command("auto-backup")
def auto_backup(
    enable: bool = typer.Option(..., "--enable/--disable", help="Back up after every rule edit"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Turn automatic backup on or off."""

    store = _store(db_path)
    try:
        store.set_auto_backup_enabled(enable)
    finally:
        store.close()
    print(f"Auto backup {'enabled' if enable else 'disabled'}")


@app.command("config")
def config_show() -> None:
    """Show the effective configuration."""

    print(f"- Config: {get_config_path()}")
    print(json.dumps(load_config().as_dict(), indent=2))


@dataclass
class _ConsoleBadge:
    text: str = ""
    color: str = ""
    shown: list[str] = field(default_factory=list)

    def set_text(self, text: str) -> None:
        if text != self.text:
            print(f"badge: {text or '(blank)'}")
            self.shown.append(text)
        self.text = text

    def set_color(self, color: str) -> None:
        self.color = color


async def _run_simulation(store: RuleStore, urls: list[str], seconds: float) -> dict[int, int]:
    config = load_config()
    tabs = MemoryTabHost()
    for position, url in enumerate(urls):
        tabs.open(url, active=position == 0)
    background = Background(store, tabs, LoopAlarmHost(), _ConsoleBadge(), config=config)
    await background.start("cli")
    try:
        await asyncio.sleep(seconds)
    finally:
        await background.stop()
    counts: dict[int, int] = {}
    for tab_id in tabs.reloads:
        counts[tab_id] = counts.get(tab_id, 0) + 1
    return counts


@app.command("run")
def run(
    urls: list[str] = typer.Argument(..., help="URLs to open as simulated tabs"),
    seconds: float = typer.Option(60.0, help="How long to run"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Run the reload engine against simulated tabs and print the badge."""

    store = _store(db_path)
    try:
        counts = asyncio.run(_run_simulation(store, urls, seconds))
    finally:
        store.close()
    for position, url in enumerate(urls, start=1):
        print(f"{url}|reloads={counts.get(position, 0)}")
