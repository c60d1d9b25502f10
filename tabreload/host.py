"""Interfaces to the browser host and in-memory stand-ins for them.

The timer and badge engines only talk to the host through these protocols,
so they run unchanged against a real browser bridge, the CLI simulator or
test fakes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Protocol

from .errors import TabNotFoundError

logger = logging.getLogger(__name__)

AlarmListener = Callable[[str], Awaitable[None]]


@dataclass
class Tab:
    id: int
    url: str
    active: bool = False


class TabHost(Protocol):
    async def query_tabs(self) -> list[Tab]: ...

    async def get_tab(self, tab_id: int) -> Tab: ...

    async def reload(self, tab_id: int) -> None: ...

    async def active_tab_id(self) -> int | None: ...


class AlarmHost(Protocol):
    def create(self, name: str, when_ms: int) -> None: ...

    def clear(self, name: str) -> None: ...

    def set_listener(self, listener: AlarmListener) -> None: ...


class BadgeSurface(Protocol):
    def set_text(self, text: str) -> None: ...

    def set_color(self, color: str) -> None: ...


@dataclass
class MemoryTabHost:
    tabs: dict[int, Tab] = field(default_factory=dict)
    reloads: list[int] = field(default_factory=list)
    # Where a reload lands, for tabs that redirect.
    redirects: dict[int, str] = field(default_factory=dict)
    _next_id: int = 1

    def open(self, url: str, *, active: bool = False) -> Tab:
        tab = Tab(id=self._next_id, url=url)
        self._next_id += 1
        self.tabs[tab.id] = tab
        if active:
            self.activate(tab.id)
        return tab

    def navigate(self, tab_id: int, url: str) -> None:
        if tab_id not in self.tabs:
            raise TabNotFoundError(tab_id)
        self.tabs[tab_id].url = url

    def close(self, tab_id: int) -> None:
        self.tabs.pop(tab_id, None)

    def activate(self, tab_id: int) -> None:
        for tab in self.tabs.values():
            tab.active = tab.id == tab_id

    async def query_tabs(self) -> list[Tab]:
        return list(self.tabs.values())

    async def get_tab(self, tab_id: int) -> Tab:
        tab = self.tabs.get(tab_id)
        if tab is None:
            raise TabNotFoundError(tab_id)
        return tab

    async def reload(self, tab_id: int) -> None:
        tab = await self.get_tab(tab_id)
        self.reloads.append(tab_id)
        redirect = self.redirects.pop(tab_id, None)
        if redirect is not None:
            tab.url = redirect

    async def active_tab_id(self) -> int | None:
        for tab in self.tabs.values():
            if tab.active:
                return tab.id
        return None


class LoopAlarmHost:
    """One-shot named alarms on the running asyncio loop."""

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._handles: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._listener: AlarmListener | None = None

    def set_listener(self, listener: AlarmListener) -> None:
        self._listener = listener

    def create(self, name: str, when_ms: int) -> None:
        self.clear(name)
        delay_s = max(0.0, (when_ms - self._clock()) / 1000)
        loop = asyncio.get_running_loop()
        self._handles[name] = loop.call_later(delay_s, self._fire, name)

    def clear(self, name: str) -> None:
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()

    def pending(self) -> list[str]:
        return sorted(self._handles)

    def _fire(self, name: str) -> None:
        self._handles.pop(name, None)
        if self._listener is None:
            return
        task = asyncio.get_running_loop().create_task(self._listener(name))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("alarm listener failed", exc_info=exc)


@dataclass
class RecordingBadge:
    text: str = ""
    color: str = ""
    history: list[tuple[str, str]] = field(default_factory=list)

    def set_text(self, text: str) -> None:
        self.text = text
        self.history.append(("text", text))

    def set_color(self, color: str) -> None:
        self.color = color
        self.history.append(("color", color))
