from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Protocol

from ..store import RuleStore
from .reconcile import ReconciliationEngine, SyncResult

logger = logging.getLogger(__name__)


class BackupStatusSink(Protocol):
    def show_backup_in_progress(self) -> None: ...

    def show_backup_success(self) -> None: ...

    def show_backup_failure(self) -> None: ...


class AutoBackupScheduler:
    """Debounces backups triggered by rule edits.

    Every ``schedule_backup`` restarts the debounce window, so a burst of edits
    produces one backup of the final state. A newer run supersedes an older one
    by bumping the run generation: the older run's network calls still finish,
    but its result no longer reaches the status sink.
    """

    def __init__(
        self,
        store: RuleStore,
        engine: ReconciliationEngine,
        status: BackupStatusSink | None = None,
        *,
        debounce_ms: int = 5000,
    ) -> None:
        self.store = store
        self.engine = engine
        self.status = status
        self.debounce_ms = debounce_ms
        self._pending: asyncio.Task[SyncResult | None] | None = None
        self._tasks: set[asyncio.Task[SyncResult | None]] = set()
        self._generation = 0
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> asyncio.Task[SyncResult | None] | None:
        return self._pending

    def _cancel_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()

    def schedule_backup(self, reason: str = "unknown") -> bool:
        if not self.store.auto_backup_enabled():
            return False
        logger.info("backup scheduled (reason: %s)", reason)
        self._cancel_pending()
        if self._running:
            self._generation += 1
        task = asyncio.get_running_loop().create_task(self._debounced(reason))
        self._pending = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _debounced(self, reason: str) -> SyncResult | None:
        await asyncio.sleep(self.debounce_ms / 1000)
        if self._pending is asyncio.current_task():
            self._pending = None
        return await self._execute(reason)

    async def force_backup(self) -> SyncResult:
        self._cancel_pending()
        return await self._execute("forced")

    async def _execute(self, reason: str) -> SyncResult:
        self._generation += 1
        generation = self._generation
        self._running = True
        logger.info("backup starting (reason: %s)", reason)
        if self.status is not None:
            self.status.show_backup_in_progress()
        try:
            result = await self.engine.backup()
        except Exception as exc:
            logger.exception("backup raised")
            result = SyncResult(False, f"Backup failed: {exc}")
        finally:
            if generation == self._generation:
                self._running = False

        if generation != self._generation:
            logger.info("backup result superseded by a newer run")
            return result
        if result.success:
            logger.info("backup completed: %s", result.message)
        else:
            logger.warning("backup failed: %s", result.message)
        if self.status is not None:
            if result.success:
                self.status.show_backup_success()
            else:
                self.status.show_backup_failure()
        return result

    async def stop(self) -> None:
        self._cancel_pending()
        for task in list(self._tasks):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._running = False
