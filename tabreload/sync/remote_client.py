from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..config import TabReloadConfig
from ..errors import ApiError
from ..store import Credential, RuleStore
from . import http_client
from .http_client import HttpResponse

logger = logging.getLogger(__name__)

RATE_LIMITED = 429

Transport = Callable[..., HttpResponse]
Sleep = Callable[[float], Awaitable[None]]


def now_ms() -> int:
    return int(time.time() * 1000)


class RemoteClient:
    """Bearer-token JSON client for the bookmarking service.

    Only 429 responses are retried (exponential backoff from ``backoff_base_ms``);
    every other failure, including connection errors, surfaces on the first try.
    """

    def __init__(
        self,
        store: RuleStore,
        config: TabReloadConfig | None = None,
        *,
        transport: Transport = http_client.request_json,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.config = config or TabReloadConfig()
        self._transport = transport
        self._sleep = sleep
        self._clock = clock

    async def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> HttpResponse:
        return await asyncio.to_thread(
            self._transport,
            method,
            url,
            headers=headers,
            body=body,
            timeout_s=self.config.http_timeout_s,
        )

    async def _send_with_retry(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> HttpResponse:
        retries = 0
        while True:
            response = await self._send(method, url, headers=headers, body=body)
            if response.status != RATE_LIMITED or retries >= self.config.max_retries:
                return response
            backoff_ms = self.config.backoff_base_ms * 2**retries
            logger.info("rate limited on %s %s; retrying in %sms", method, url, backoff_ms)
            await self._sleep(backoff_ms / 1000)
            retries += 1

    async def request(
        self,
        method: str,
        path: str,
        token: str,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = http_client.build_url(self.config.api_base_url, path)
        headers = {"Authorization": f"Bearer {token}"}
        if method in {"POST", "PUT"} and body is None:
            body = {}
        response = await self._send_with_retry(method, url, headers=headers, body=body)
        if not response.ok:
            raise ApiError(
                f"API error {response.status} for {path}: {response.text}",
                response.status,
                response.reason,
                response.text,
            )
        if response.payload is None:
            return {"result": True}
        return response.payload

    async def get(self, path: str, token: str) -> dict[str, Any]:
        return await self.request("GET", path, token)

    async def post(self, path: str, token: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("POST", path, token, body)

    async def put(self, path: str, token: str, body: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self.request("PUT", path, token, body)

    async def delete(self, path: str, token: str) -> dict[str, Any]:
        return await self.request("DELETE", path, token)

    # Token lifecycle

    def token_expiring_soon(self, expires_at: int | None) -> bool:
        if not expires_at:
            return True
        return self._clock() + self.config.token_expiry_buffer_ms >= expires_at

    async def refresh_credential(self, refresh_token: str) -> Credential | None:
        try:
            response = await self._send(
                "POST",
                self.config.refresh_url,
                body={"refresh_token": refresh_token},
            )
        except Exception as exc:
            logger.warning("token refresh failed", exc_info=exc)
            return None
        if not response.ok or response.payload is None:
            logger.warning("token refresh rejected (%s)", response.status)
            return None
        credential = Credential.from_token_response(response.payload, now_ms=self._clock())
        if credential is None:
            logger.warning("token refresh returned an incomplete credential")
            return None
        current = self.store.get_credential()
        if current is None or current.refresh_token != refresh_token:
            # Logged out or replaced while the refresh was in flight.
            logger.info("credential changed during refresh; not persisting")
            return credential
        self.store.set_credential(credential)
        return credential

    async def get_active_token(self) -> str:
        """Return a usable access token, refreshing it when close to expiry.

        A failed refresh falls back to the stored token; an empty string means
        the user is not logged in.
        """
        credential = self.store.get_credential()
        if credential is None or not credential.refresh_token:
            return ""
        if not self.token_expiring_soon(credential.expires_at):
            return credential.access_token
        refreshed = await self.refresh_credential(credential.refresh_token)
        if refreshed is not None:
            return refreshed.access_token
        return credential.access_token
