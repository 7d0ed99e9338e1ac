"""Async client for the managed backend's HTTP surface.

Covers the three services the gateway talks to: PostgREST tables and
remote procedures (``/rest/v1``), the identity service (``/auth/v1``) and
edge functions (``/functions/v1``). Calls made with a user access token go
out with the anon key so row-level security applies; calls without one use
the service-role key.
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx
import structlog

logger = structlog.get_logger()

# (column, operator, value), rendered as ``column=operator.value``
Filter = Tuple[str, str, Any]

UNIQUE_VIOLATION = "23505"
UNDEFINED_COLUMN = "42703"
SCHEMA_CACHE_MISS = "PGRST204"


class BackendError(Exception):
    """Non-2xx answer (or transport failure) from the managed backend."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _parse_count(content_range: Optional[str]) -> Optional[int]:
    # "0-24/3573" or "*/0"
    if not content_range or "/" not in content_range:
        return None
    total = content_range.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else None


class BackendClient:
    def __init__(
        self,
        base_url: str,
        anon_key: str,
        service_role_key: str,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.anon_key = anon_key
        self.service_role_key = service_role_key
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    def _headers(
        self,
        token: Optional[str] = None,
        prefer: Optional[str] = None,
        accept: Optional[str] = None,
    ) -> Dict[str, str]:
        if token:
            headers = {"apikey": self.anon_key, "Authorization": f"Bearer {token}"}
        else:
            headers = {
                "apikey": self.service_role_key,
                "Authorization": f"Bearer {self.service_role_key}",
            }
        if prefer:
            headers["Prefer"] = prefer
        if accept:
            headers["Accept"] = accept
        return headers

    @staticmethod
    def _params(filters: Optional[Iterable[Filter]]) -> List[Tuple[str, str]]:
        return [(column, f"{op}.{_format_value(value)}") for column, op, value in filters or ()]

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(
                "Malformed response body",
                status_code=response.status_code,
            ) from exc

    @staticmethod
    def _error_from(response: httpx.Response) -> BackendError:
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            code = payload.get("code")
            message = (
                payload.get("message")
                or payload.get("msg")
                or payload.get("error_description")
                or payload.get("error")
                or response.reason_phrase
            )
            return BackendError(
                str(message),
                code=str(code) if code is not None else None,
                status_code=response.status_code,
                details=payload.get("details"),
            )
        return BackendError(
            response.text or response.reason_phrase,
            status_code=response.status_code,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        params: Optional[List[Tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        try:
            response = await self._http.request(
                method,
                path,
                params=params,
                json=json,
                headers=self._headers(token, prefer, accept),
            )
        except httpx.HTTPError as exc:
            logger.error("Backend request failed", method=method, path=path, error=str(exc))
            raise BackendError("BACKEND_UNAVAILABLE") from exc

        if response.status_code >= 400:
            error = self._error_from(response)
            logger.debug(
                "Backend returned an error",
                method=method,
                path=path,
                status_code=response.status_code,
                code=error.code,
            )
            raise error
        return response

    async def get_user(self, token: str) -> Dict[str, Any]:
        """Resolve an access token to the user it was issued for."""
        response = await self._request("GET", "/auth/v1/user", token=token)
        return self._json(response) or {}

    async def rpc(
        self,
        function: str,
        params: Dict[str, Any],
        *,
        token: Optional[str] = None,
        single: bool = False,
    ) -> Any:
        accept = "application/vnd.pgrst.object+json" if single else None
        response = await self._request(
            "POST", f"/rest/v1/rpc/{function}", token=token, json=params, accept=accept
        )
        return self._json(response)

    async def invoke(self, function: str, body: Dict[str, Any], *, token: Optional[str] = None) -> Any:
        response = await self._request("POST", f"/functions/v1/{function}", token=token, json=body)
        return self._json(response)

    async def select(
        self,
        table: str,
        columns: str = "*",
        *,
        filters: Optional[Iterable[Filter]] = None,
        token: Optional[str] = None,
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        count: bool = False,
        head: bool = False,
    ) -> Tuple[List[Dict[str, Any]], Optional[int]]:
        """Read rows; returns ``(rows, exact_count)`` (count is None unless requested)."""
        params = [("select", columns)] + self._params(filters)
        if order:
            params.append(("order", f"{order}.{'desc' if descending else 'asc'}"))
        if limit is not None:
            params.append(("limit", str(limit)))
        if offset:
            params.append(("offset", str(offset)))

        response = await self._request(
            "HEAD" if head else "GET",
            f"/rest/v1/{table}",
            token=token,
            params=params,
            prefer="count=exact" if count else None,
        )
        rows = [] if head else (self._json(response) or [])
        total = _parse_count(response.headers.get("content-range")) if count else None
        return rows, total

    async def insert(
        self,
        table: str,
        values: Any,
        *,
        token: Optional[str] = None,
        returning: str = "*",
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "POST",
            f"/rest/v1/{table}",
            token=token,
            params=[("select", returning)],
            json=values,
            prefer="return=representation",
        )
        return self._json(response) or []

    async def update(
        self,
        table: str,
        values: Dict[str, Any],
        *,
        filters: Iterable[Filter],
        token: Optional[str] = None,
        returning: str = "*",
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            token=token,
            params=[("select", returning)] + self._params(filters),
            json=values,
            prefer="return=representation",
        )
        return self._json(response) or []

    async def delete(
        self,
        table: str,
        *,
        filters: Iterable[Filter],
        token: Optional[str] = None,
        returning: str = "*",
    ) -> List[Dict[str, Any]]:
        response = await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            token=token,
            params=[("select", returning)] + self._params(filters),
            prefer="return=representation",
        )
        return self._json(response) or []
