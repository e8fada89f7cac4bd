"""
store_client.py — Async client for the relational store's REST interface.

The store speaks PostgREST: tables are resources under /rest/v1/<table>,
filters are query parameters of the form column=op.value
(e.g. status=eq.active, timestamp=lt.1700000000000).

Tables used by the simulator:
    sim_scenarios       — externally voted market scenarios (read)
    sim_price_history   — buffered price observations (insert, delete)
    trades              — trade log for the frontend (insert)
    sim_leaderboard     — weekly per-identity standings (select, insert, update)

Usage:
    store = StoreClient(url, service_key)
    rows = await store.select("sim_scenarios", filters={"status": "eq.active"}, limit=1)
    await store.insert("sim_price_history", [row, ...])
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import httpx
from loguru import logger


DEFAULT_TIMEOUT = 10.0


class StoreError(Exception):
    """Raised when a store request fails (transport error or non-2xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreClient:
    """
    Thin PostgREST client.

    Pass `http` to share one httpx.AsyncClient (and to inject a mock
    transport in tests); otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        timeout: float = DEFAULT_TIMEOUT,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._service_key = service_key
        self._timeout = timeout
        self._http = http

    # ── Helpers ───────────────────────────────────────────────────────────────

    def _headers(self, prefer: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        try:
            if self._http is not None:
                resp = await self._http.request(
                    method, self._url(table), params=params, json=json,
                    headers=self._headers(prefer),
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(
                        method, self._url(table), params=params, json=json,
                        headers=self._headers(prefer),
                    )
        except httpx.HTTPError as exc:
            raise StoreError(f"{method} {table} failed: {exc}") from exc

        if resp.status_code >= 400:
            raise StoreError(
                f"{method} {table} returned {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp

    # ── Operations ────────────────────────────────────────────────────────────

    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, str]] = None,
        order: Optional[str] = None,
        limit: Optional[int] = None,
        columns: str = "*",
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"select": columns}
        params.update(filters or {})
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = limit
        resp = await self._request("GET", table, params=params)
        data = resp.json()
        if not isinstance(data, list):
            raise StoreError(f"GET {table} returned non-list body")
        return data

    async def insert(
        self,
        table: str,
        rows: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
    ) -> None:
        payload = list(rows) if not isinstance(rows, dict) else rows
        await self._request("POST", table, json=payload, prefer="return=minimal")

    async def update(
        self,
        table: str,
        filters: Mapping[str, str],
        values: Dict[str, Any],
    ) -> None:
        if not filters:
            raise ValueError("refusing to update without filters")
        await self._request("PATCH", table, params=filters, json=values, prefer="return=minimal")

    async def delete(self, table: str, filters: Mapping[str, str]) -> None:
        if not filters:
            raise ValueError("refusing to delete without filters")
        await self._request("DELETE", table, params=filters)
        logger.debug("Deleted from {} where {}", table, dict(filters))

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
