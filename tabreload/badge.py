from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .host import BadgeSurface, TabHost
from .timers import TabTimerScheduler

logger = logging.getLogger(__name__)

NEUTRAL_COLOR = "#666666"
COUNTDOWN_COLOR = "#10b981"
IN_PROGRESS_COLOR = "#FFA500"
SUCCESS_COLOR = "#00AA00"
FAILURE_COLOR = "#FF0000"

IN_PROGRESS_TEXT = "⟳"
SUCCESS_TEXT = "✓"
FAILURE_TEXT = "✗"
RELOADING_TEXT = "0s"

SUCCESS_OVERLAY_MS = 3000
FAILURE_OVERLAY_MS = 5000


def countdown_text(remaining_ms: int | None) -> str:
    if remaining_ms is None:
        return ""
    if remaining_ms <= 0:
        return RELOADING_TEXT
    minutes = remaining_ms // 60000
    if minutes >= 1:
        return f"{minutes}m"
    seconds = (remaining_ms % 60000) // 1000
    return f"{seconds}s"


@dataclass(frozen=True)
class Overlay:
    text: str
    color: str
    # None keeps the overlay until another one replaces it.
    until_ms: int | None = None


class BadgePresenter:
    """Renders the active tab's countdown, or a backup status overlay."""

    def __init__(
        self,
        surface: BadgeSurface,
        scheduler: TabTimerScheduler,
        tabs: TabHost,
        *,
        clock: Callable[[], int] | None = None,
        tick_ms: int = 1000,
    ) -> None:
        self.surface = surface
        self.scheduler = scheduler
        self.tabs = tabs
        self.tick_ms = tick_ms
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._overlay: Overlay | None = None
        self._ticker: asyncio.Task[None] | None = None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def overlay(self) -> Overlay | None:
        if self._overlay is not None and self._overlay.until_ms is not None:
            if self._clock() >= self._overlay.until_ms:
                self._overlay = None
        return self._overlay

    def _push_overlay(self, overlay: Overlay) -> None:
        self._overlay = overlay
        self._apply(overlay.text, overlay.color)

    def show_backup_in_progress(self) -> None:
        self._push_overlay(Overlay(IN_PROGRESS_TEXT, IN_PROGRESS_COLOR))

    def show_backup_success(self) -> None:
        self._push_overlay(
            Overlay(SUCCESS_TEXT, SUCCESS_COLOR, self._clock() + SUCCESS_OVERLAY_MS)
        )

    def show_backup_failure(self) -> None:
        self._push_overlay(
            Overlay(FAILURE_TEXT, FAILURE_COLOR, self._clock() + FAILURE_OVERLAY_MS)
        )

    def render(self, active_tab_id: int | None) -> tuple[str, str]:
        overlay = self.overlay
        if overlay is not None:
            return overlay.text, overlay.color
        if active_tab_id is None:
            return "", NEUTRAL_COLOR
        remaining = self.scheduler.get_remaining(active_tab_id)
        if remaining is None:
            return "", NEUTRAL_COLOR
        return countdown_text(remaining), COUNTDOWN_COLOR

    def _apply(self, text: str, color: str) -> None:
        self.surface.set_text(text)
        self.surface.set_color(color)

    async def refresh(self) -> None:
        try:
            active_tab_id = await self.tabs.active_tab_id()
        except Exception as exc:
            logger.debug("active tab lookup failed", exc_info=exc)
            active_tab_id = None
        # Rendered after the lookup so state changed while it was pending is used.
        self._apply(*self.render(active_tab_id))

    def request_refresh(self, *_args: object) -> None:
        """Schedule a refresh from synchronous event callbacks."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.refresh())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _tick(self) -> None:
        while True:
            await self.refresh()
            await asyncio.sleep(self.tick_ms / 1000)

    def start(self) -> None:
        if self._ticker is not None and not self._ticker.done():
            self._ticker.cancel()
        self._ticker = asyncio.get_running_loop().create_task(self._tick())

    async def stop(self) -> None:
        ticker, self._ticker = self._ticker, None
        if ticker is not None:
            ticker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await ticker
        for task in list(self._pending):
            task.cancel()
