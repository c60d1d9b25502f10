from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

from .. import db
from ..errors import DuplicateRuleError, InvalidRuleError
from .types import Credential, Rule, StorageChange

logger = logging.getLogger(__name__)

SYNC_AREA = "sync"
LOCAL_AREA = "local"

RULES_KEY = "rules"
CREDENTIAL_KEY = "credential"
AUTO_BACKUP_KEY = "auto_backup_enabled"
PREFILL_URL_KEY = "prefill_url"

ChangeListener = Callable[[dict[str, StorageChange], str], None]


def validate_rule(rule: Rule) -> Rule:
    pattern = rule.url_pattern.strip()
    if not pattern:
        raise InvalidRuleError("url pattern must not be empty")
    if isinstance(rule.interval_minutes, bool) or not isinstance(rule.interval_minutes, int):
        raise InvalidRuleError("interval must be a whole number of minutes")
    if rule.interval_minutes < 1:
        raise InvalidRuleError("interval must be 1 or more minutes")
    if pattern != rule.url_pattern:
        return Rule(url_pattern=pattern, interval_minutes=rule.interval_minutes)
    return rule


def dedupe_rules(rules: Iterable[Rule]) -> list[Rule]:
    """Collapse rules sharing a pattern: first position, last value."""
    by_pattern: dict[str, Rule] = {}
    for rule in rules:
        by_pattern[rule.url_pattern] = rule
    return list(by_pattern.values())


class RuleStore:
    """Durable key-value record for rules, credential and flags.

    Every key is written by a single committed statement, so readers never see
    a half-written rule list or credential. Listeners registered with
    ``subscribe`` are told about each write after it commits.
    """

    def __init__(
        self,
        db_path: Path | str = db.DEFAULT_DB_PATH,
        *,
        check_same_thread: bool = True,
    ):
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path, check_same_thread=check_same_thread)
        db.initialize_schema(self.conn)
        self._listeners: list[ChangeListener] = []

    def close(self) -> None:
        self.conn.close()

    @staticmethod
    def _now_iso() -> str:
        return dt.datetime.now(dt.UTC).isoformat()

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _get(self, key: str, *, area: str = SYNC_AREA) -> Any:
        row = self.conn.execute(
            "SELECT value_json FROM kv WHERE area = ? AND key = ?",
            (area, key),
        ).fetchone()
        if row is None:
            return None
        return db.from_json(row["value_json"])

    def _set(self, key: str, value: Any, *, area: str = SYNC_AREA) -> None:
        old = self._get(key, area=area)
        if value is None:
            self.conn.execute("DELETE FROM kv WHERE area = ? AND key = ?", (area, key))
        else:
            self.conn.execute(
                """
                INSERT INTO kv(area, key, value_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(area, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (area, key, db.to_json(value), self._now_iso()),
            )
        self.conn.commit()
        if old == value:
            return
        changes: dict[str, StorageChange] = {key: {"old": old, "new": value}}
        for listener in list(self._listeners):
            try:
                listener(changes, area)
            except Exception:
                logger.exception("storage change listener failed for %s", key)

    # Rules

    def get_rules(self) -> list[Rule]:
        raw = self._get(RULES_KEY)
        if not isinstance(raw, list):
            return []
        rules: list[Rule] = []
        for entry in raw:
            if not isinstance(entry, dict):
                continue
            try:
                rules.append(validate_rule(Rule.from_dict(entry)))
            except (InvalidRuleError, TypeError, ValueError):
                logger.warning("skipping invalid stored rule: %r", entry)
        return rules

    def set_rules(self, rules: Iterable[Rule]) -> list[Rule]:
        cleaned = dedupe_rules(validate_rule(rule) for rule in rules)
        self._set(RULES_KEY, [rule.to_dict() for rule in cleaned])
        return cleaned

    def add_rule(self, rule: Rule) -> list[Rule]:
        rule = validate_rule(rule)
        rules = self.get_rules()
        if any(existing.url_pattern == rule.url_pattern for existing in rules):
            raise DuplicateRuleError(rule.url_pattern)
        rules.append(rule)
        return self.set_rules(rules)

    def update_rule(self, index: int, rule: Rule) -> list[Rule]:
        rule = validate_rule(rule)
        rules = self.get_rules()
        if index < 0 or index >= len(rules):
            raise IndexError(f"no rule at index {index}")
        for position, existing in enumerate(rules):
            if position != index and existing.url_pattern == rule.url_pattern:
                raise DuplicateRuleError(rule.url_pattern)
        rules[index] = rule
        return self.set_rules(rules)

    def delete_rule(self, index: int) -> Rule:
        rules = self.get_rules()
        if index < 0 or index >= len(rules):
            raise IndexError(f"no rule at index {index}")
        removed = rules.pop(index)
        self.set_rules(rules)
        return removed

    # Credential

    def get_credential(self) -> Credential | None:
        raw = self._get(CREDENTIAL_KEY)
        if not isinstance(raw, dict):
            return None
        credential = Credential.from_dict(raw)
        if not credential.access_token:
            return None
        return credential

    def set_credential(self, credential: Credential) -> None:
        self._set(CREDENTIAL_KEY, credential.to_dict())

    def clear_credential(self) -> None:
        self._set(CREDENTIAL_KEY, None)

    # Flags

    def auto_backup_enabled(self) -> bool:
        return self._get(AUTO_BACKUP_KEY) is True

    def set_auto_backup_enabled(self, enabled: bool) -> None:
        self._set(AUTO_BACKUP_KEY, bool(enabled))

    def set_prefill_url(self, url: str) -> None:
        self._set(PREFILL_URL_KEY, url, area=LOCAL_AREA)

    def take_prefill_url(self) -> str | None:
        value = self._get(PREFILL_URL_KEY, area=LOCAL_AREA)
        if value is None:
            return None
        self._set(PREFILL_URL_KEY, None, area=LOCAL_AREA)
        return str(value)
