from __future__ import annotations

from dataclasses import dataclass
from typing import Any, TypedDict


@dataclass(frozen=True)
class Rule:
    url_pattern: str
    interval_minutes: int

    @property
    def interval_ms(self) -> int:
        return self.interval_minutes * 60 * 1000

    def to_dict(self) -> dict[str, Any]:
        return {"urlPattern": self.url_pattern, "intervalMinutes": self.interval_minutes}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Rule:
        return cls(
            url_pattern=str(data.get("urlPattern") or ""),
            interval_minutes=int(data.get("intervalMinutes") or 0),
        )


@dataclass(frozen=True)
class Credential:
    access_token: str
    refresh_token: str
    expires_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Credential:
        expires = data.get("expiresAt")
        return cls(
            access_token=str(data.get("accessToken") or ""),
            refresh_token=str(data.get("refreshToken") or ""),
            expires_at=int(expires) if isinstance(expires, (int, float)) else None,
        )

    @classmethod
    def from_token_response(cls, payload: dict[str, Any], *, now_ms: int) -> Credential | None:
        """Build a credential from an OAuth token response, or None if incomplete."""
        access = payload.get("access_token")
        refresh = payload.get("refresh_token")
        expires_in = payload.get("expires_in")
        if not access or not refresh or not expires_in:
            return None
        try:
            expires_at = now_ms + int(expires_in) * 1000
        except (TypeError, ValueError):
            return None
        return cls(access_token=str(access), refresh_token=str(refresh), expires_at=expires_at)


class StorageChange(TypedDict):
    old: Any
    new: Any
