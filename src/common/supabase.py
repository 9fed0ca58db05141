"""
Datastore API Client
====================

This module provides a client for the relational datastore, reached through
its PostgREST interface (``/rest/v1/<table>``). It encapsulates authenticated
requests, filter encoding, exact counts and the ``return=representation``
preference that makes conditional updates observable: an ``update`` whose
filters no longer match the row returns an empty list.

The `SupabaseClient` class is designed to be a reusable and testable
component that abstracts away the details of the REST API.
"""

from __future__ import annotations

from typing import Any, Iterable

import requests
import structlog

from .config import Settings
from .utils import retry

log = structlog.get_logger(__name__)

Filters = dict[str, str]


class DatastoreError(RuntimeError):
    """Raised when the datastore rejects a request or cannot be reached."""


def in_(values: Iterable[Any]) -> str:
    """Build a PostgREST ``in.(...)`` filter expression."""
    encoded = []
    for value in values:
        text = str(value)
        if any(ch in text for ch in ',()" '):
            text = '"' + text.replace('"', '\\"') + '"'
        encoded.append(text)
    return f"in.({','.join(encoded)})"


class SupabaseClient:
    """A client for the datastore's PostgREST API."""

    def __init__(self, settings: Settings):
        """Initializes the client with a session and authentication."""
        self.settings = settings
        self._base_url = f"{settings.SUPABASE_URL}/rest/v1"
        self._session = requests.Session()
        self._session.headers.update(
            {
                "apikey": settings.SUPABASE_SERVICE_KEY,
                "Authorization": f"Bearer {settings.SUPABASE_SERVICE_KEY}",
                "Content-Type": "application/json",
            }
        )

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()

    @retry(retryable_exceptions=(requests.exceptions.ConnectionError,))
    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """A retriable version of session.request."""
        kwargs.setdefault("timeout", self.settings.REQUEST_TIMEOUT)
        return self._session.request(method, url, **kwargs)

    def _call(self, method: str, table: str, **kwargs) -> requests.Response:
        url = f"{self._base_url}/{table}"
        try:
            response = self._request(method, url, **kwargs)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            log.warning("Datastore request failed", method=method, table=table, error=str(e))
            raise DatastoreError(f"{method} {table} failed: {e}") from e
        return response

    @staticmethod
    def _rows(response: requests.Response) -> list[dict]:
        if not response.content:
            return []
        payload = response.json()
        if isinstance(payload, dict):
            return [payload]
        return list(payload or [])

    def select(
        self,
        table: str,
        filters: Filters | None = None,
        columns: str = "*",
        order: str | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[dict]:
        """Return rows matching *filters*."""
        params: dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        if offset:
            params["offset"] = offset
        return self._rows(self._call("GET", table, params=params))

    def count(self, table: str, filters: Filters | None = None) -> int:
        """Return the exact number of rows matching *filters*."""
        params: dict[str, Any] = {"select": "*", "limit": 1}
        params.update(filters or {})
        response = self._call(
            "GET", table, params=params, headers={"Prefer": "count=exact"}
        )
        content_range = response.headers.get("Content-Range", "")
        total = content_range.rsplit("/", 1)[-1] if "/" in content_range else ""
        if not total.isdigit():
            raise DatastoreError(
                f"Count on {table} returned no usable Content-Range: {content_range!r}"
            )
        return int(total)

    def insert(self, table: str, rows: dict | list[dict]) -> list[dict]:
        """Insert rows and return them as stored."""
        response = self._call(
            "POST", table, json=rows, headers={"Prefer": "return=representation"}
        )
        return self._rows(response)

    def upsert(self, table: str, rows: dict | list[dict], on_conflict: str) -> list[dict]:
        """Insert rows, merging into existing ones on the *on_conflict* columns."""
        response = self._call(
            "POST",
            table,
            json=rows,
            params={"on_conflict": on_conflict},
            headers={"Prefer": "resolution=merge-duplicates,return=representation"},
        )
        return self._rows(response)

    def update(
        self,
        table: str,
        values: dict,
        filters: Filters,
        timeout: float | None = None,
    ) -> list[dict]:
        """
        Update rows matching *filters* and return the rows that changed.

        An empty result means no row matched, which callers use to detect a
        lost conditional update.
        """
        if not filters:
            raise ValueError("Refusing to update without filters")
        kwargs: dict[str, Any] = {
            "json": values,
            "params": dict(filters),
            "headers": {"Prefer": "return=representation"},
        }
        if timeout is not None:
            kwargs["timeout"] = timeout
        return self._rows(self._call("PATCH", table, **kwargs))

    def delete(self, table: str, filters: Filters) -> list[dict]:
        """Delete rows matching *filters* and return them."""
        if not filters:
            raise ValueError("Refusing to delete without filters")
        response = self._call(
            "DELETE",
            table,
            params=dict(filters),
            headers={"Prefer": "return=representation"},
        )
        return self._rows(response)
