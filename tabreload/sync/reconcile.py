from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote

from ..config import TabReloadConfig
from ..store import Rule, RuleStore
from .remote_client import RemoteClient

logger = logging.getLogger(__name__)

# Characters JavaScript's encodeURIComponent leaves alone, beyond alphanumerics.
_PATTERN_ID_SAFE = "-_.!~*'()"

LOGIN_REQUIRED_MESSAGE = "Please log in to the backup service first."


def pattern_id_for(url_pattern: str) -> str:
    return quote(url_pattern, safe=_PATTERN_ID_SAFE)


def pattern_link(pattern_id: str, scheme: str) -> str:
    return f"{scheme}://patterns/{pattern_id}"


def item_title(rule: Rule) -> str:
    return f"{rule.url_pattern} ({rule.interval_minutes}m)"


def extract_pattern_id(link: str | None, scheme: str) -> str | None:
    if not link:
        return None
    match = re.match(rf"^{re.escape(scheme)}://patterns/(.+)$", link)
    return match.group(1) if match else None


@dataclass
class SyncResult:
    success: bool
    message: str
    stats: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "message": self.message}
        if self.stats is not None:
            data["stats"] = dict(self.stats)
        return data


@dataclass(frozen=True)
class RemoteItem:
    remote_id: Any
    link: str
    title: str
    pattern_id: str | None
    excerpt: str

    @classmethod
    def from_api(cls, item: dict[str, Any], scheme: str) -> RemoteItem:
        link = str(item.get("link") or "")
        return cls(
            remote_id=item.get("_id"),
            link=link,
            title=str(item.get("title") or ""),
            pattern_id=extract_pattern_id(link, scheme),
            excerpt=str(item.get("excerpt") or ""),
        )

    def metadata(self) -> dict[str, Any] | None:
        """Decode the JSON metadata kept in the excerpt, or None if unreadable."""
        if not self.excerpt.strip():
            return None
        try:
            data = json.loads(self.excerpt)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def mirrors(self, rule: Rule) -> bool:
        metadata = self.metadata()
        return (
            metadata is not None
            and self.title == item_title(rule)
            and metadata.get("urlPattern") == rule.url_pattern
            and metadata.get("intervalMinutes") == rule.interval_minutes
        )


@dataclass
class BackupPlan:
    creates: list[tuple[str, Rule]] = field(default_factory=list)
    updates: list[tuple[str, Rule, RemoteItem]] = field(default_factory=list)
    deletes: list[RemoteItem] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return not (self.creates or self.updates or self.deletes)


def plan_backup(rules: list[Rule], items: list[RemoteItem]) -> BackupPlan:
    """Diff local rules against remote items keyed by pattern id.

    Items without a pattern id are left alone, and items that already mirror
    their rule are not rewritten. When several items share a pattern id the
    last one is reconciled and the others are deleted.
    """
    plan = BackupPlan()
    existing: dict[str, RemoteItem] = {}
    for item in items:
        if item.pattern_id is None:
            continue
        previous = existing.get(item.pattern_id)
        if previous is not None:
            plan.deletes.append(previous)
        existing[item.pattern_id] = item

    for rule in rules:
        pattern_id = pattern_id_for(rule.url_pattern)
        item = existing.pop(pattern_id, None)
        if item is None:
            plan.creates.append((pattern_id, rule))
        elif not item.mirrors(rule):
            plan.updates.append((pattern_id, rule, item))
    plan.deletes.extend(existing.values())
    return plan


def rule_from_item(item: RemoteItem, *, default_interval: int) -> Rule | None:
    metadata = item.metadata()
    if metadata is None:
        return None
    url_pattern = str(metadata.get("urlPattern") or "").strip()
    if not url_pattern:
        return None
    interval = metadata.get("intervalMinutes")
    if isinstance(interval, float) and interval.is_integer():
        interval = int(interval)
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        interval = default_interval
    return Rule(url_pattern=url_pattern, interval_minutes=interval)


class ReconciliationEngine:
    def __init__(
        self,
        store: RuleStore,
        client: RemoteClient,
        config: TabReloadConfig | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config or TabReloadConfig()
        self._sleep = sleep

    async def _pause(self) -> None:
        await self._sleep(self.config.request_pause_ms / 1000)

    def build_item_payload(self, pattern_id: str, rule: Rule, collection_id: Any) -> dict[str, Any]:
        metadata = {
            "id": pattern_id,
            "urlPattern": rule.url_pattern,
            "intervalMinutes": rule.interval_minutes,
        }
        return {
            "link": pattern_link(pattern_id, self.config.link_scheme),
            "title": item_title(rule),
            "excerpt": json.dumps(metadata, indent=2),
            "collection": {"$id": collection_id},
            "tags": [self.config.link_scheme, "pattern"],
        }

    async def _list_collections(self, token: str) -> list[dict[str, Any]]:
        payload = await self.client.get("/collections", token)
        items = payload.get("items")
        return [c for c in items if isinstance(c, dict)] if isinstance(items, list) else []

    async def find_collection_id(self, token: str) -> Any | None:
        for collection in await self._list_collections(token):
            if collection.get("title") == self.config.collection_title:
                return collection.get("_id")
        return None

    async def get_or_create_collection(self, token: str) -> Any:
        collection_id = await self.find_collection_id(token)
        if collection_id is not None:
            return collection_id
        logger.info("creating remote collection %r", self.config.collection_title)
        payload = await self.client.post(
            "/collection",
            token,
            {"title": self.config.collection_title, "view": "list"},
        )
        item = payload.get("item")
        if not isinstance(item, dict) or item.get("_id") is None:
            raise RuntimeError("collection create returned no id")
        return item["_id"]

    async def fetch_all_items(self, collection_id: Any, token: str) -> list[dict[str, Any]]:
        per_page = self.config.page_size
        page = 0
        items: list[dict[str, Any]] = []
        while True:
            payload = await self.client.get(
                f"/raindrops/{collection_id}?perpage={per_page}&page={page}", token
            )
            batch = payload.get("items")
            if not isinstance(batch, list) or not batch:
                break
            items.extend(item for item in batch if isinstance(item, dict))
            if len(batch) != per_page:
                break
            page += 1
            await self._pause()
        return items

    async def _fetch_remote_items(self, collection_id: Any, token: str) -> list[RemoteItem]:
        raw = await self.fetch_all_items(collection_id, token)
        return [RemoteItem.from_api(item, self.config.link_scheme) for item in raw]

    async def backup(self) -> SyncResult:
        stats = {"created": 0, "updated": 0, "deleted": 0}
        try:
            token = await self.client.get_active_token()
            if not token:
                return SyncResult(False, LOGIN_REQUIRED_MESSAGE)

            rules = self.store.get_rules()
            if not rules:
                return SyncResult(False, "No rules to back up.")

            collection_id = await self.get_or_create_collection(token)
            stats["collectionId"] = collection_id
            items = await self._fetch_remote_items(collection_id, token)
            # Re-read after the network round trips so the diff uses the latest edit.
            rules = self.store.get_rules()
            if not rules:
                return SyncResult(False, "No rules to back up.", stats)
            plan = plan_backup(rules, items)
            if plan.is_noop:
                logger.info("remote collection already matches %d rule(s)", len(rules))

            for item in plan.deletes:
                await self.client.delete(f"/raindrop/{item.remote_id}", token)
                stats["deleted"] += 1
                await self._pause()

            for pattern_id, rule, item in plan.updates:
                payload = self.build_item_payload(pattern_id, rule, collection_id)
                await self.client.put(f"/raindrop/{item.remote_id}", token, payload)
                stats["updated"] += 1
                await self._pause()

            for pattern_id, rule in plan.creates:
                payload = self.build_item_payload(pattern_id, rule, collection_id)
                await self.client.post("/raindrop", token, payload)
                stats["created"] += 1
                await self._pause()
        except Exception as exc:
            logger.exception("backup failed")
            return SyncResult(False, f"Backup failed: {exc}", stats)

        message = (
            f"{stats['created']} created, {stats['updated']} updated, {stats['deleted']} deleted"
        )
        logger.info("backup finished: %s", message)
        return SyncResult(True, message, stats)

    async def restore(self) -> SyncResult:
        try:
            token = await self.client.get_active_token()
            if not token:
                return SyncResult(False, LOGIN_REQUIRED_MESSAGE)

            collection_id = await self.find_collection_id(token)
            if collection_id is None:
                return SyncResult(
                    False,
                    f'No "{self.config.collection_title}" collection found. '
                    "Back up your rules first.",
                )

            items = await self._fetch_remote_items(collection_id, token)
            restored: list[Rule] = []
            for item in items:
                rule = rule_from_item(item, default_interval=self.config.default_interval_minutes)
                if rule is None:
                    logger.warning("skipping unreadable remote item %s", item.remote_id)
                    continue
                restored.append(rule)

            saved = self.store.set_rules(restored)
        except Exception as exc:
            logger.exception("restore failed")
            return SyncResult(False, f"Restore failed: {exc}")

        logger.info("restored %d rule(s)", len(saved))
        return SyncResult(
            True,
            f"{len(saved)} rule(s) restored",
            {"restored": len(saved), "collectionId": collection_id},
        )
