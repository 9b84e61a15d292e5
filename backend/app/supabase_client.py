"""Async Supabase (PostgREST) client built on httpx.

Only the small slice of PostgREST the admin API needs: filtered selects,
ordering, pagination and exact head counts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Optional

import httpx

from app import config
from app.log_redact import httpx_event_hooks

logger = logging.getLogger("sugar.supabase")


class SupabaseError(Exception):
    """Raised when PostgREST answers with an error or cannot be reached."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details
        super().__init__(message)


class SupabaseNotConfiguredError(SupabaseError):
    def __init__(self) -> None:
        super().__init__("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set", status_code=503)


@dataclass
class QueryResult:
    rows: list[dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, datetime):
        return value.isoformat()
    return str(value)


def parse_content_range(header: Optional[str]) -> Optional[int]:
    """Extract the total from a ``Content-Range`` header like ``0-24/3573``."""
    if not header or "/" not in header:
        return None
    total = header.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        return None
    return int(total)


class SupabaseClient:
    def __init__(
        self,
        url: str,
        key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not url or not key:
            raise SupabaseNotConfiguredError()
        self.url = url.rstrip("/")
        self._http = httpx.AsyncClient(
            base_url=f"{self.url}/rest/v1",
            headers={
                "apikey": key,
                "Authorization": f"Bearer {key}",
                "Accept": "application/json",
            },
            timeout=httpx.Timeout(timeout=timeout),
            transport=transport,
            event_hooks=httpx_event_hooks(),
        )

    @classmethod
    def from_config(cls) -> "SupabaseClient":
        return cls(
            config.SUPABASE_URL,
            config.SUPABASE_SERVICE_ROLE_KEY,
            timeout=config.REQUEST_TIMEOUT_SECONDS,
        )

    def table(self, name: str) -> "TableQuery":
        return TableQuery(self, name)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def request(
        self,
        method: str,
        table: str,
        *,
        params: list[tuple[str, str]],
        headers: Optional[dict[str, str]] = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, f"/{table}", params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise SupabaseError(f"Supabase request to {table} failed ({exc.__class__.__name__})") from exc

        if response.status_code >= 400:
            error = _error_from_response(table, response)
            logger.debug("Supabase %s %s failed status=%d code=%s", method, table, response.status_code, error.code)
            raise error
        return response


def _error_from_response(table: str, response: httpx.Response) -> SupabaseError:
    code = None
    details = None
    message = f"Supabase returned HTTP {response.status_code} for {table}"
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        code = body.get("code")
        details = body.get("details")
        message = body.get("message") or message
    return SupabaseError(message, status_code=response.status_code, code=code, details=details)


class TableQuery:
    """Fluent query builder for one table."""

    def __init__(self, client: SupabaseClient, table: str) -> None:
        self._client = client
        self.table = table
        self._columns = "*"
        self._filters: list[tuple[str, str]] = []
        self._order: Optional[str] = None
        self._offset: Optional[int] = None
        self._limit: Optional[int] = None

    def select(self, columns: str = "*") -> "TableQuery":
        self._columns = columns
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"eq.{_format_value(value)}"))
        return self

    def gte(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"gte.{_format_value(value)}"))
        return self

    def lte(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, f"lte.{_format_value(value)}"))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "TableQuery":
        self._filters.append((column, f"in.({','.join(_format_value(value) for value in values)})"))
        return self

    def not_null(self, column: str) -> "TableQuery":
        self._filters.append((column, "not.is.null"))
        return self

    def search(self, columns: list[str], term: str) -> "TableQuery":
        """Case-insensitive substring match on any of *columns*."""
        cleaned = term.replace(",", " ").replace("(", " ").replace(")", " ").strip()
        if cleaned:
            clauses = ",".join(f"{column}.ilike.*{cleaned}*" for column in columns)
            self._filters.append(("or", f"({clauses})"))
        return self

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        self._order = f"{column}.{'desc' if desc else 'asc'}"
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        self._offset = max(0, start)
        self._limit = max(0, end - start + 1)
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = count
        return self

    def build_params(self) -> list[tuple[str, str]]:
        params = [("select", self._columns), *self._filters]
        if self._order:
            params.append(("order", self._order))
        if self._offset is not None:
            params.append(("offset", str(self._offset)))
        if self._limit is not None:
            params.append(("limit", str(self._limit)))
        return params

    async def execute(self, *, count: bool = False) -> QueryResult:
        headers = {"Prefer": "count=exact"} if count else None
        response = await self._client.request("GET", self.table, params=self.build_params(), headers=headers)
        rows = response.json()
        if not isinstance(rows, list):
            rows = []
        total = parse_content_range(response.headers.get("content-range")) if count else None
        return QueryResult(rows=rows, count=total)

    async def count(self) -> int:
        response = await self._client.request(
            "HEAD",
            self.table,
            params=self.build_params(),
            headers={"Prefer": "count=exact"},
        )
        return parse_content_range(response.headers.get("content-range")) or 0
