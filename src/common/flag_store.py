"""
Fast Flag Store
===============

A tiny client for a Redis REST endpoint (Upstash-compatible: the body is a
JSON command array, the reply is ``{"result": ...}``). It backs the emergency
kill switch, which must keep working while the relational datastore is slow
or down, so nothing here touches the datastore.

Every failure, including missing configuration, surfaces as
`FlagStoreUnavailable`; callers decide what "unknown" means for them.
"""

from __future__ import annotations

import requests
import structlog

from .config import Settings

log = structlog.get_logger(__name__)

KILL_FLAG_KEY = "emergency:kill_flag"
COOLDOWN_UNTIL_KEY = "backpressure:cooldown_until"
TRIGGER_REASON_KEY = "backpressure:trigger_reason"


class FlagStoreUnavailable(RuntimeError):
    """The flag store is unreachable, misconfigured, or returned an error."""


class FlagStore:
    """Redis REST client limited to the commands the kill switch needs."""

    def __init__(self, settings: Settings, timeout: float = 3.0):
        self.settings = settings
        self._url = settings.REDIS_REST_URL
        self._timeout = timeout
        self._session = requests.Session()
        if settings.REDIS_REST_TOKEN:
            self._session.headers.update(
                {"Authorization": f"Bearer {settings.REDIS_REST_TOKEN}"}
            )

    @property
    def configured(self) -> bool:
        return bool(self._url and self.settings.REDIS_REST_TOKEN)

    def close(self) -> None:
        self._session.close()

    def _command(self, *args: str):
        if not self.configured:
            raise FlagStoreUnavailable("Flag store is not configured")
        try:
            response = self._session.post(
                self._url, json=list(args), timeout=self._timeout
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            raise FlagStoreUnavailable(f"{args[0]} failed: {e}") from e
        if isinstance(payload, dict) and payload.get("error"):
            raise FlagStoreUnavailable(f"{args[0]} failed: {payload['error']}")
        return payload.get("result") if isinstance(payload, dict) else None

    def set(self, key: str, value: str, ttl_seconds: int) -> None:
        """Set *key* to *value* expiring after *ttl_seconds*."""
        self._command("SETEX", key, str(int(ttl_seconds)), str(value))

    def get(self, key: str) -> str | None:
        result = self._command("GET", key)
        return None if result is None else str(result)

    def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        result = self._command("DEL", *keys)
        return int(result or 0)
