from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from .errors import TabNotFoundError
from .host import AlarmHost, TabHost
from .matching import match_rule
from .store import Rule, RuleStore

logger = logging.getLogger(__name__)

ALARM_PREFIX = "reload_tab_"


def alarm_name_for(tab_id: int) -> str:
    return f"{ALARM_PREFIX}{tab_id}"


def tab_id_from_alarm(name: str) -> int | None:
    if not name.startswith(ALARM_PREFIX):
        return None
    try:
        return int(name[len(ALARM_PREFIX) :])
    except ValueError:
        return None


@dataclass(frozen=True)
class TabTimer:
    tab_id: int
    rule: Rule
    interval_ms: int
    next_reload_at: int
    alarm_name: str


class TabTimerScheduler:
    """Keeps exactly one reload alarm per tab whose URL matches a rule.

    Timer state lives only in memory and is rebuilt from the stored rules and
    the open tabs. Each tab has a generation counter that every URL change or
    close bumps; handlers that suspend compare it afterwards and drop their
    work if the tab moved on in the meantime.
    """

    def __init__(
        self,
        store: RuleStore,
        tabs: TabHost,
        alarms: AlarmHost,
        *,
        clock: Callable[[], int] | None = None,
        on_change: Callable[[int], None] | None = None,
    ) -> None:
        self.store = store
        self.tabs = tabs
        self.alarms = alarms
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._on_change = on_change
        self._timers: dict[int, TabTimer] = {}
        self._generation: dict[int, int] = {}
        alarms.set_listener(self.on_alarm)

    @property
    def timers(self) -> dict[int, TabTimer]:
        return dict(self._timers)

    def get_timer(self, tab_id: int) -> TabTimer | None:
        return self._timers.get(tab_id)

    def get_remaining(self, tab_id: int) -> int | None:
        """Milliseconds until the tab reloads, or None when it has no timer."""
        timer = self._timers.get(tab_id)
        if timer is None:
            return None
        return timer.next_reload_at - self._clock()

    def _bump(self, tab_id: int) -> int:
        generation = self._generation.get(tab_id, 0) + 1
        self._generation[tab_id] = generation
        return generation

    def _notify(self, tab_id: int) -> None:
        if self._on_change is not None:
            self._on_change(tab_id)

    def _drop(self, tab_id: int) -> None:
        timer = self._timers.pop(tab_id, None)
        if timer is not None:
            self.alarms.clear(timer.alarm_name)

    def on_tab_url_changed(self, tab_id: int, url: str | None) -> TabTimer | None:
        self._bump(tab_id)
        rule = match_rule(self.store.get_rules(), url)
        self._drop(tab_id)
        if rule is None:
            self._notify(tab_id)
            return None
        now = self._clock()
        timer = TabTimer(
            tab_id=tab_id,
            rule=rule,
            interval_ms=rule.interval_ms,
            next_reload_at=now + rule.interval_ms,
            alarm_name=alarm_name_for(tab_id),
        )
        self.alarms.create(timer.alarm_name, timer.next_reload_at)
        self._timers[tab_id] = timer
        logger.debug(
            "timer set for tab %s: %s (%sm)", tab_id, rule.url_pattern, rule.interval_minutes
        )
        self._notify(tab_id)
        return timer

    def on_tab_closed(self, tab_id: int) -> None:
        self._bump(tab_id)
        self._drop(tab_id)
        self._notify(tab_id)

    async def on_rules_changed(self) -> None:
        """Re-evaluate every open tab against the current rules."""
        before = dict(self._generation)
        open_tabs = await self.tabs.query_tabs()
        seen: set[int] = set()
        for tab in open_tabs:
            seen.add(tab.id)
            self.on_tab_url_changed(tab.id, tab.url)
        for tab_id in list(self._timers):
            if tab_id in seen:
                continue
            # Only forget tabs nobody touched while the enumeration was in flight.
            if self._generation.get(tab_id) == before.get(tab_id):
                self.on_tab_closed(tab_id)

    async def on_alarm(self, name: str) -> None:
        tab_id = tab_id_from_alarm(name)
        if tab_id is None:
            return
        timer = self._timers.get(tab_id)
        if timer is None or timer.alarm_name != name:
            return
        generation = self._generation.get(tab_id, 0)
        try:
            await self.tabs.reload(tab_id)
            tab = await self.tabs.get_tab(tab_id)
        except TabNotFoundError:
            logger.debug("tab %s no longer exists, dropping timer", tab_id)
            if self._generation.get(tab_id, 0) == generation:
                self.on_tab_closed(tab_id)
            return
        except Exception as exc:
            logger.warning("reload of tab %s failed, dropping timer", tab_id, exc_info=exc)
            if self._generation.get(tab_id, 0) == generation:
                self.on_tab_closed(tab_id)
            return
        if self._generation.get(tab_id, 0) != generation:
            return
        logger.debug("reloaded tab %s", tab_id)
        self.on_tab_url_changed(tab_id, tab.url)

    def stop(self) -> None:
        for tab_id in list(self._timers):
            self._drop(tab_id)
