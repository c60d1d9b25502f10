from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine
from typing import Any

from .badge import BadgePresenter
from .config import TabReloadConfig
from .host import AlarmHost, BadgeSurface, Tab, TabHost
from .store import Credential, RuleStore, StorageChange
from .store._store import CREDENTIAL_KEY, SYNC_AREA
from .sync import http_client
from .sync.auto_backup import AutoBackupScheduler
from .sync.reconcile import ReconciliationEngine, SyncResult
from .sync.remote_client import RemoteClient, Transport
from .timers import TabTimerScheduler

logger = logging.getLogger(__name__)

OAUTH_PROVIDER = "raindrop"

ACTION_RULES_CHANGED = "rules_changed"
ACTION_BACKUP_NOW = "backup_now"
ACTION_RESTORE_NOW = "restore_now"


class Background:
    """Wires the engines to a host and routes host events and messages.

    Every handler re-reads state from the store when it runs instead of
    trusting what was captured when the event was queued.
    """

    def __init__(
        self,
        store: RuleStore,
        tabs: TabHost,
        alarms: AlarmHost,
        surface: BadgeSurface,
        *,
        config: TabReloadConfig | None = None,
        transport: Transport = http_client.request_json,
        clock: Callable[[], int] | None = None,
        sleep: Callable[[float], Coroutine[Any, Any, None]] = asyncio.sleep,
    ) -> None:
        self.config = config or TabReloadConfig()
        self.store = store
        self.tabs = tabs
        clock = clock or (lambda: int(time.time() * 1000))
        self._clock = clock
        self.client = RemoteClient(
            store, self.config, transport=transport, sleep=sleep, clock=clock
        )
        self.engine = ReconciliationEngine(store, self.client, self.config, sleep=sleep)
        self.scheduler = TabTimerScheduler(
            store, tabs, alarms, clock=clock, on_change=self._timer_changed
        )
        self.badge = BadgePresenter(
            surface, self.scheduler, tabs, clock=clock, tick_ms=self.config.badge_tick_ms
        )
        self.auto_backup = AutoBackupScheduler(
            store, self.engine, self.badge, debounce_ms=self.config.backup_debounce_ms
        )
        self._restore_in_progress = False
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe = store.subscribe(self._on_storage_changed)

    def _timer_changed(self, _tab_id: int) -> None:
        self.badge.request_refresh()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any] | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            return None
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def restore_in_progress(self) -> bool:
        return self._restore_in_progress

    async def start(self, reason: str = "startup") -> SyncResult | None:
        logger.info("starting (%s)", reason)
        await self.scheduler.on_rules_changed()
        self.badge.start()
        return await self.execute_restore(source=reason, silent=True, skip_if_running=True)

    async def stop(self) -> None:
        self._unsubscribe()
        await self.badge.stop()
        await self.auto_backup.stop()
        self.scheduler.stop()
        for task in list(self._tasks):
            task.cancel()

    # Host events

    def on_tab_updated(self, tab_id: int, url: str | None) -> None:
        self.scheduler.on_tab_url_changed(tab_id, url)

    def on_tab_removed(self, tab_id: int) -> None:
        self.scheduler.on_tab_closed(tab_id)

    async def on_tab_activated(self, _tab_id: int | None = None) -> None:
        await self.badge.refresh()

    async def on_focus_changed(self) -> None:
        await self.badge.refresh()

    def on_action_clicked(self, tab: Tab) -> bool:
        if tab.url and tab.url.startswith(("http://", "https://")):
            self.store.set_prefill_url(tab.url)
            return True
        return False

    def accept_oauth_tokens(self, message: dict[str, Any]) -> dict[str, Any]:
        if message.get("type") != "oauth_success" or message.get("provider") != OAUTH_PROVIDER:
            return {"success": False, "message": "Unsupported message."}
        tokens = message.get("tokens")
        if not isinstance(tokens, dict):
            return {"success": False, "message": "Missing tokens."}
        credential = Credential.from_token_response(tokens, now_ms=self._clock())
        if credential is None:
            return {"success": False, "message": "Incomplete tokens."}
        self.store.set_credential(credential)
        logger.info("oauth login stored")
        return {"success": True}

    def _on_storage_changed(self, changes: dict[str, StorageChange], area: str) -> None:
        if area != SYNC_AREA or CREDENTIAL_KEY not in changes:
            return
        change = changes[CREDENTIAL_KEY]
        if not change["old"] and change["new"]:
            logger.info("login detected, restoring rules")
            self._spawn(self.execute_restore(source="oauth_login"))

    # Messages

    async def handle_message(self, message: dict[str, Any]) -> dict[str, Any]:
        action = message.get("action")
        if action == ACTION_RULES_CHANGED:
            await self.scheduler.on_rules_changed()
            if message.get("trigger_auto_backup"):
                self.auto_backup.schedule_backup(str(message.get("reason") or "rules_changed"))
            return {"success": True, "message": "Rules reloaded."}
        if action == ACTION_BACKUP_NOW:
            result = await self.auto_backup.force_backup()
            return result.to_dict()
        if action == ACTION_RESTORE_NOW:
            restored = await self.execute_restore(source="manual")
            if restored is None:
                return {"success": False, "message": "A restore is already running."}
            return restored.to_dict()
        return {"success": False, "message": f"Unknown action: {action}"}

    async def execute_restore(
        self,
        *,
        source: str = "unknown",
        silent: bool = False,
        skip_if_running: bool = False,
    ) -> SyncResult | None:
        """Restore rules from the remote collection, one restore at a time.

        Opportunistic callers pass ``skip_if_running`` and get None back when a
        restore is already underway; explicit callers get a failure result.
        """
        if self._restore_in_progress:
            if skip_if_running:
                logger.info("restore already in progress, skipping (%s)", source)
                return None
            return SyncResult(False, "A restore is already running.")

        self._restore_in_progress = True
        try:
            logger.info("restore started (source: %s)", source)
            try:
                result = await self.engine.restore()
            except Exception as exc:
                logger.exception("restore raised")
                return SyncResult(False, f"Restore failed: {exc}")
            if result.success:
                await self.scheduler.on_rules_changed()
                if not silent:
                    logger.info("restore completed: %s", result.stats)
            elif not silent:
                logger.warning("restore failed: %s", result.message)
            return result
        finally:
            self._restore_in_progress = False
