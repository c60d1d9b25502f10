from __future__ import annotations

import asyncio

import pytest

from tabreload.config import TabReloadConfig
from tabreload.errors import ApiError
from tabreload.store import Credential, RuleStore
from tabreload.sync.remote_client import RemoteClient

NOW_MS = 1_700_000_000_000


def _client(store: RuleStore, remote, sleeps, config: TabReloadConfig | None = None):
    return RemoteClient(
        store,
        config or TabReloadConfig(),
        transport=remote,
        sleep=sleeps,
        clock=lambda: NOW_MS,
    )


def test_rate_limited_requests_back_off_exponentially(store, remote, sleeps) -> None:
    remote.fail("GET", "/collections", 429, times=3)
    client = _client(store, remote, sleeps)

    payload = asyncio.run(client.get("/collections", "token"))

    assert payload == {"items": []}
    assert sleeps.delays == [1.0, 2.0, 4.0]
    assert remote.count("GET", "/collections") == 4


def test_rate_limit_surfaces_after_max_retries(store, remote, sleeps) -> None:
    remote.fail("GET", "/collections", 429, times=10)
    client = _client(store, remote, sleeps)

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(client.get("/collections", "token"))

    assert excinfo.value.status == 429
    assert sleeps.delays == [1.0, 2.0, 4.0, 8.0, 16.0]
    assert remote.count("GET", "/collections") == 6


def test_server_errors_are_not_retried(store, remote, sleeps) -> None:
    remote.fail("PUT", "/raindrop/1", 503)
    client = _client(store, remote, sleeps)

    with pytest.raises(ApiError) as excinfo:
        asyncio.run(client.put("/raindrop/1", "token", {"title": "x"}))

    assert excinfo.value.status == 503
    assert excinfo.value.status_text == "Error"
    assert "forced" in excinfo.value.body
    assert sleeps.delays == []
    assert remote.count("PUT") == 1


def test_network_errors_propagate_immediately(store, sleeps) -> None:
    calls: list[str] = []

    def _broken(method, url, **kwargs):
        calls.append(url)
        raise ConnectionError("offline")

    client = _client(store, _broken, sleeps)
    with pytest.raises(ConnectionError):
        asyncio.run(client.get("/collections", "token"))
    assert len(calls) == 1
    assert sleeps.delays == []


def test_delete_with_empty_body_reports_result(store, remote, sleeps) -> None:
    collection_id = remote.add_collection("c")
    item_id = remote.add_item(collection_id, link="x")
    client = _client(store, remote, sleeps)

    assert asyncio.run(client.delete(f"/raindrop/{item_id}", "token")) == {"result": True}


def test_bearer_token_is_sent(store, sleeps) -> None:
    seen: dict[str, str] = {}

    def _transport(method, url, *, headers=None, body=None, timeout_s=10.0):
        from tabreload.sync.http_client import HttpResponse

        seen.update(headers or {})
        seen["url"] = url
        return HttpResponse(200, "OK", {"ok": True}, '{"ok": true}')

    client = _client(store, _transport, sleeps)
    asyncio.run(client.get("collections", "abc"))

    assert seen["Authorization"] == "Bearer abc"
    assert seen["url"] == "https://api.raindrop.io/rest/v1/collections"


def test_active_token_empty_when_logged_out(store, remote, sleeps) -> None:
    client = _client(store, remote, sleeps)
    assert asyncio.run(client.get_active_token()) == ""


def test_fresh_token_is_used_without_refresh(store, remote, sleeps) -> None:
    store.set_credential(Credential("access", "refresh", NOW_MS + 60 * 60 * 1000))
    client = _client(store, remote, sleeps)

    assert asyncio.run(client.get_active_token()) == "access"
    assert remote.calls == []


def test_expiring_token_is_refreshed_and_persisted(store, remote, sleeps) -> None:
    store.set_credential(Credential("old", "refresh-old", NOW_MS + 5 * 60 * 1000))
    remote.refresh_response = (
        200,
        {"access_token": "new", "refresh_token": "refresh-new", "expires_in": 3600},
    )
    client = _client(store, remote, sleeps)

    assert asyncio.run(client.get_active_token()) == "new"
    assert store.get_credential() == Credential("new", "refresh-new", NOW_MS + 3_600_000)


def test_missing_expiry_counts_as_expiring(store, remote, sleeps) -> None:
    store.set_credential(Credential("old", "refresh-old", None))
    client = _client(store, remote, sleeps)

    assert asyncio.run(client.get_active_token()) == "old"
    assert remote.count("POST") == 1


def test_failed_refresh_falls_back_to_stored_token(store, remote, sleeps) -> None:
    store.set_credential(Credential("old", "refresh-old", NOW_MS + 1000))
    remote.refresh_response = (401, {"error": "invalid_grant"})
    client = _client(store, remote, sleeps)

    assert asyncio.run(client.get_active_token()) == "old"
    assert store.get_credential() == Credential("old", "refresh-old", NOW_MS + 1000)


def test_incomplete_refresh_response_falls_back(store, remote, sleeps) -> None:
    store.set_credential(Credential("old", "refresh-old", NOW_MS + 1000))
    remote.refresh_response = (200, {"access_token": "new"})
    client = _client(store, remote, sleeps)

    assert asyncio.run(client.get_active_token()) == "old"
