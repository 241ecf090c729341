import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import httpx

from petmarket.services.errors import MalformedResponseError, TransportError
from petmarket.services.gateway import BackendGateway, Row, is_membership

logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_filters(filters: Optional[Mapping[str, Any]]) -> List[tuple[str, str]]:
    """Render predicates in PostgREST syntax (``eq.`` / ``in.()`` / ``is.null``)."""
    params: List[tuple[str, str]] = []
    for column, value in (filters or {}).items():
        if is_membership(value):
            joined = ",".join(f'"{_format_value(item)}"' for item in value)
            params.append((column, f"in.({joined})"))
        elif value is None:
            params.append((column, "is.null"))
        else:
            params.append((column, f"eq.{_format_value(value)}"))
    return params


class RestGateway(BackendGateway):
    """PostgREST-style HTTP client for the hosted marketplace backend."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 10.0,
        access_token: Optional[Callable[[], Optional[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url.strip():
            raise ValueError("base_url is required for the REST gateway")
        self._api_key = api_key
        self._access_token = access_token
        headers = {"Accept": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/") + "/rest/v1/",
            timeout=httpx.Timeout(timeout),
            headers=headers,
            transport=transport,
        )

    def _auth_headers(self) -> Dict[str, str]:
        token = self._access_token() if self._access_token else None
        token = token or self._api_key
        return {"Authorization": f"Bearer {token}"} if token else {}

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: Optional[List[tuple[str, str]]] = None,
        json_body: Any = None,
        prefer_representation: bool = False,
    ) -> httpx.Response:
        headers = self._auth_headers()
        if prefer_representation:
            headers["Prefer"] = "return=representation"
        try:
            response = await self._client.request(method, table, params=params, json=json_body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("Backend %s %s failed: %s", method, table, exc.__class__.__name__)
            raise TransportError(f"Could not reach the marketplace backend ({exc.__class__.__name__})") from exc

        if response.status_code >= 400:
            detail = ""
            try:
                body = response.json()
                if isinstance(body, dict):
                    detail = str(body.get("message") or body.get("error") or "")
            except ValueError:
                detail = response.text[:200]
            logger.warning("Backend %s %s returned %s", method, table, response.status_code)
            raise TransportError(detail or f"Backend returned HTTP {response.status_code}")
        return response

    def _rows(self, response: httpx.Response) -> List[Row]:
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError("Backend returned a non-JSON body") from exc
        if not isinstance(body, list) or not all(isinstance(item, dict) for item in body):
            raise MalformedResponseError("Backend returned an unexpected payload shape")
        return body

    async def query(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> List[Row]:
        params = [("select", "*"), *encode_filters(filters)]
        params.append(("order", f"{order_by}.{'desc' if descending else 'asc'}"))
        response = await self._send("GET", table, params=params)
        return self._rows(response)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> List[Row]:
        response = await self._send("POST", table, json_body=[dict(row) for row in rows], prefer_representation=True)
        return self._rows(response)

    async def update(
        self,
        table: str,
        row_id: str,
        patch: Mapping[str, Any],
        *,
        match: Optional[Mapping[str, Any]] = None,
    ) -> List[Row]:
        # PostgREST answers an unmatched conditional PATCH with an empty representation.
        response = await self._send(
            "PATCH",
            table,
            params=encode_filters({"id": row_id, **(match or {})}),
            json_body=dict(patch),
            prefer_representation=True,
        )
        return self._rows(response)

    async def delete(self, table: str, row_id: str) -> None:
        await self._send("DELETE", table, params=encode_filters({"id": row_id}))

    async def aclose(self) -> None:
        await self._client.aclose()
