from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any
from urllib.parse import parse_qs, urlparse

import pytest

from tabreload.config import TabReloadConfig
from tabreload.store import Credential, RuleStore
from tabreload.sync.http_client import HttpResponse

API_PREFIX = "/rest/v1"
FAR_FUTURE_MS = 4_102_444_800_000


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("TABRELOAD_CONFIG", str(tmp_path / "config.json"))
    for key in (
        "TABRELOAD_DB",
        "TABRELOAD_API_BASE_URL",
        "TABRELOAD_PAGE_SIZE",
        "TABRELOAD_BACKUP_DEBOUNCE_MS",
    ):
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def store(tmp_path: Path):
    rule_store = RuleStore(tmp_path / "rules.sqlite")
    try:
        yield rule_store
    finally:
        rule_store.close()


@pytest.fixture
def logged_in_store(store: RuleStore) -> RuleStore:
    store.set_credential(Credential("access-1", "refresh-1", FAR_FUTURE_MS))
    return store


@pytest.fixture
def config() -> TabReloadConfig:
    return TabReloadConfig(request_pause_ms=0, page_size=3)


class FakeRaindrop:
    """In-memory stand-in for the bookmarking REST API, used as a transport."""

    def __init__(self) -> None:
        self.collections: list[dict[str, Any]] = []
        self.items: dict[int, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.refresh_response: tuple[int, dict[str, Any] | None] = (500, None)
        self._failures: list[tuple[str, str, int, int]] = []
        self._next_id = 100
        self._lock = threading.Lock()

    def _new_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def add_collection(self, title: str) -> int:
        collection_id = self._new_id()
        self.collections.append({"_id": collection_id, "title": title})
        return collection_id

    def add_item(self, collection_id: int, **fields: Any) -> int:
        item_id = self._new_id()
        self.items[item_id] = {"_id": item_id, "collection": {"$id": collection_id}, **fields}
        return item_id

    def items_in(self, collection_id: int) -> list[dict[str, Any]]:
        return [
            item
            for item in self.items.values()
            if item.get("collection", {}).get("$id") == collection_id
        ]

    def fail(self, method: str, path_prefix: str, status: int, times: int = 1) -> None:
        self._failures.append((method, path_prefix, status, times))

    def count(self, method: str, path_prefix: str = "") -> int:
        return sum(1 for m, p in self.calls if m == method and p.startswith(path_prefix))

    def _forced_failure(self, method: str, path: str) -> int | None:
        for index, (m, prefix, status, times) in enumerate(self._failures):
            if m == method and path.startswith(prefix):
                if times <= 1:
                    self._failures.pop(index)
                else:
                    self._failures[index] = (m, prefix, status, times - 1)
                return status
        return None

    def __call__(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
        timeout_s: float = 10.0,
    ) -> HttpResponse:
        with self._lock:
            parsed = urlparse(url)
            path = parsed.path
            if path.startswith(API_PREFIX):
                path = path[len(API_PREFIX) :]
            self.calls.append((method, path))
            forced = self._forced_failure(method, path)
            if forced is not None:
                return _response(forced, {"error": "forced"})
            if path.endswith("/refresh"):
                status, payload = self.refresh_response
                return _response(status, payload)
            return self._route(method, path, parse_qs(parsed.query), body or {})

    def _route(
        self, method: str, path: str, query: dict[str, list[str]], body: dict[str, Any]
    ) -> HttpResponse:
        parts = [part for part in path.split("/") if part]
        if method == "GET" and parts == ["collections"]:
            return _response(200, {"items": list(self.collections)})
        if method == "POST" and parts == ["collection"]:
            collection_id = self.add_collection(str(body.get("title")))
            return _response(200, {"item": {"_id": collection_id}})
        if method == "GET" and len(parts) == 2 and parts[0] == "raindrops":
            items = self.items_in(int(parts[1]))
            per_page = int(query.get("perpage", ["25"])[0])
            page = int(query.get("page", ["0"])[0])
            chunk = items[page * per_page : (page + 1) * per_page]
            return _response(200, {"items": [dict(item) for item in chunk]})
        if method == "POST" and parts == ["raindrop"]:
            collection_id = body["collection"]["$id"]
            fields = {k: v for k, v in body.items() if k != "collection"}
            item_id = self.add_item(collection_id, **fields)
            return _response(200, {"item": dict(self.items[item_id])})
        if len(parts) == 2 and parts[0] == "raindrop":
            item_id = int(parts[1])
            if item_id not in self.items:
                return _response(404, {"error": "not found"})
            if method == "PUT":
                self.items[item_id].update(body)
                return _response(200, {"item": dict(self.items[item_id])})
            if method == "DELETE":
                del self.items[item_id]
                return HttpResponse(204, "No Content", None, "")
        return _response(404, {"error": "no route"})


def _response(status: int, payload: dict[str, Any] | None) -> HttpResponse:
    text = json.dumps(payload) if payload is not None else ""
    reason = "OK" if 200 <= status < 300 else "Error"
    return HttpResponse(status, reason, payload, text)


@pytest.fixture
def remote() -> FakeRaindrop:
    return FakeRaindrop()


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()
