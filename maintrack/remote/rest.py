"""
Hosted backend speaking the PostgREST dialect.

Handles:
- Table reads and writes under /rest/v1 with equality filters
- Session lookup under /auth/v1
- Edge function invocation under /functions/v1
- Retry with exponential backoff for 5xx and transport errors
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Optional

import httpx
import structlog

from ..errors import RemoteFailure
from .base import Filters, Row

log = structlog.get_logger()

RETRY_BASE_SECONDS = 0.5


def _eq(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    return f"eq.{value}"


def _filter_params(filters: Optional[Filters]) -> dict[str, str]:
    return {col: _eq(val) for col, val in (filters or {}).items()}


class RestRemote:
    """
    HTTP client for the hosted relational store.

    The anon API key is sent with every request; the user's access token,
    when known, is sent as the bearer credential.
    """

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        access_token: str | None = None,
        request_timeout: int = 30,
        retry: int = 2,
        verify_tls: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._url = url.rstrip("/")
        self._api_key = api_key
        self._access_token = access_token
        self._request_timeout = request_timeout
        self._retry = retry
        self._verify_tls = verify_tls
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        return self._url

    @property
    def verify_tls(self) -> bool:
        return self._verify_tls

    @property
    def transport(self) -> httpx.AsyncBaseTransport | None:
        return self._transport

    @property
    def access_token(self) -> str | None:
        return self._access_token

    def set_access_token(self, token: str | None) -> None:
        self._access_token = token

    async def open(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self._url,
            timeout=httpx.Timeout(self._request_timeout),
            verify=self._verify_tls,
            transport=self._transport,
        )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        token = self._access_token or self._api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        if self._client is None:
            raise RemoteFailure("REST remote is not open")

        headers = self.auth_headers()
        if prefer:
            headers["Prefer"] = prefer

        last_exc: Exception | None = None
        for attempt in range(self._retry + 1):
            try:
                resp = await self._client.request(
                    method, path, params=params, json=json, headers=headers
                )
                resp.raise_for_status()
                return resp
            except httpx.HTTPStatusError as exc:
                if 400 <= exc.response.status_code < 500:
                    log.error(
                        "rest_remote.client_error",
                        method=method,
                        path=path,
                        status=exc.response.status_code,
                    )
                    raise RemoteFailure(
                        f"{method} {path} failed with {exc.response.status_code}: "
                        f"{exc.response.text[:200]}",
                        exc,
                    ) from exc
                last_exc = exc
            except httpx.RequestError as exc:
                last_exc = exc

            if attempt < self._retry:
                backoff = RETRY_BASE_SECONDS * (2 ** attempt)
                log.warning(
                    "rest_remote.retry",
                    method=method,
                    path=path,
                    attempt=attempt + 1,
                    backoff=backoff,
                    error=str(last_exc),
                )
                await asyncio.sleep(backoff)

        raise RemoteFailure(f"{method} {path} failed: {last_exc}", last_exc)

    # --- Tables ---

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Filters] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list[Row]:
        params = {"select": "*", **_filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        resp = await self._request("GET", f"/rest/v1/{table}", params=params)
        return resp.json()

    async def insert(self, table: str, values: Row) -> Row:
        resp = await self._request(
            "POST", f"/rest/v1/{table}", json=values, prefer="return=representation"
        )
        rows = resp.json()
        if not rows:
            raise RemoteFailure(f"insert into {table} returned no row")
        return rows[0]

    async def update(self, table: str, values: Row, *, filters: Filters) -> list[Row]:
        resp = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=_filter_params(filters),
            json=values,
            prefer="return=representation",
        )
        return resp.json()

    async def delete(self, table: str, *, filters: Filters) -> list[Row]:
        resp = await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=_filter_params(filters),
            prefer="return=representation",
        )
        return resp.json()

    # --- Auth and functions ---

    async def get_user(self) -> dict[str, Any] | None:
        """The user owning the current access token, or None without one."""
        if not self._access_token:
            return None
        resp = await self._request("GET", "/auth/v1/user")
        return resp.json()

    async def invoke_function(self, name: str, body: dict[str, Any]) -> Any:
        resp = await self._request("POST", f"/functions/v1/{name}", json=body)
        if not resp.content:
            return None
        return resp.json()
