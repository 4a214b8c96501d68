"""
Thin authorized client for the relational REST API (`/rest/v1/<table>`).

Every call carries the anon key and the session's bearer token. A call
rejected with 401 is retried exactly once, with the token another caller
already rotated in or else after one forced session refresh. A second 401
is returned to the caller as-is.
"""

import logging
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence
from urllib.parse import quote

import httpx

from .exceptions import (
    AuthenticationRequired,
    NotConfigured,
    RequestFailed,
    UpsertFailed,
)
from .session_store import SessionStore, parse_json_body

logger = logging.getLogger(__name__)

ReturnPolicy = Literal["minimal", "representation"]


def eq_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Turn {column: value} into PostgREST `column=eq.value` parameters."""
    return {column: f"eq.{value}" for column, value in (filters or {}).items()}


class RestGateway:
    """
    Generic read / upsert / update / delete primitives over the REST API.

    The gateway holds no session state of its own; it asks the SessionStore
    for a valid session before every call.
    """

    def __init__(
        self, session_store: SessionStore, http_client: httpx.AsyncClient
    ):
        self._session_store = session_store
        self._http = http_client

    def _rest_url(self, path: str) -> str:
        credentials = self._session_store.credentials
        if credentials is None:
            raise NotConfigured(
                "Remote backend is not configured. Set LINGUA_SUPABASE_URL "
                "and LINGUA_SUPABASE_ANON_KEY."
            )
        return f"{credentials.url}/rest/v1{path}"

    @staticmethod
    def _table_path(table: str) -> str:
        return f"/{quote(table, safe='')}"

    async def _send(
        self,
        method: str,
        path: str,
        access_token: str,
        params: Optional[Mapping[str, str]],
        json: Any,
        headers: Optional[Mapping[str, str]],
    ) -> httpx.Response:
        credentials = self._session_store.credentials
        request_headers = {
            "apikey": credentials.anon_key if credentials else "",
            "Authorization": f"Bearer {access_token}",
        }
        request_headers.update(headers or {})
        try:
            return await self._http.request(
                method,
                self._rest_url(path),
                params=params,
                json=json,
                headers=request_headers,
            )
        except httpx.HTTPError as e:
            raise RequestFailed(
                f"{method} {path} failed: {e}",
                status_code=0,
                original_exception=e,
            ) from e

    async def authorized_request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, str]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        """
        Issue a REST call with the current session's credentials.

        Parameters:
            method: HTTP method.
            path: Path below `/rest/v1`, e.g. "/user_progress".

        Returns:
            The response; non-2xx statuses are not raised here, except that a
            first 401 is retried once, with a newer token if another caller
            already replaced it, otherwise after a forced refresh.

        Raises:
            AuthenticationRequired: If there is no session, or the forced
                refresh leaves none.
            RefreshFailed: If a needed refresh fails.
            RequestFailed: On transport errors (status_code 0).
        """
        session = await self._session_store.ensure_valid_session()
        if session is None:
            raise AuthenticationRequired(
                "Sign in to reach the remote backend."
            )
        response = await self._send(
            method, path, session.access_token, params, json, headers
        )
        if response.status_code != 401:
            return response

        current = self._session_store.current_session
        if current is not None and current.access_token != session.access_token:
            # Another caller already replaced the token this request used.
            logger.info(f"{method} {path} was unauthorized; retrying with the newer session.")  # noqa: E501
            refreshed = current
        else:
            logger.info(
                f"{method} {path} was unauthorized; refreshing the session and retrying once."  # noqa: E501
            )
            refreshed = await self._session_store.force_refresh()
        if refreshed is None:
            raise AuthenticationRequired(
                "Session is no longer valid; sign in again.",
                status_code=401,
            )
        return await self._send(
            method, path, refreshed.access_token, params, json, headers
        )

    async def upsert(
        self,
        table: str,
        rows: Sequence[Mapping[str, Any]],
        *,
        on_conflict: Optional[str] = None,
        returning: ReturnPolicy = "minimal",
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Insert `rows`, updating existing rows that conflict on `on_conflict`.

        Returns:
            The written rows when `returning="representation"`, else None.

        Raises:
            ValueError: If `rows` is empty.
            UpsertFailed: On any non-2xx status; carries the raw body.
        """
        if not rows:
            raise ValueError("upsert requires at least one row")
        params = {"on_conflict": on_conflict} if on_conflict else None
        response = await self.authorized_request(
            "POST",
            self._table_path(table),
            params=params,
            json=[dict(row) for row in rows],
            headers={
                "Content-Type": "application/json",
                "Prefer": f"return={returning},resolution=merge-duplicates",
            },
        )
        if response.is_error:
            raise UpsertFailed(
                f"Upsert into '{table}' failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        if returning == "representation":
            data = parse_json_body(response)
            return data if isinstance(data, list) else []
        return None

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        filters: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Read rows matching equality `filters`, projected to `columns`.
        A 404 reads as no rows.
        """
        params = {"select": columns, **eq_filters(filters)}
        if limit is not None:
            params["limit"] = str(limit)
        response = await self.authorized_request(
            "GET",
            self._table_path(table),
            params=params,
            headers={"Accept": "application/json"},
        )
        if response.status_code == 404:
            return []
        if response.is_error:
            raise RequestFailed(
                f"Reading '{table}' failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        data = parse_json_body(response)
        return data if isinstance(data, list) else []

    async def update(
        self,
        table: str,
        values: Mapping[str, Any],
        *,
        filters: Mapping[str, Any],
    ) -> None:
        """PATCH the rows matching equality `filters` with `values`."""
        if not filters:
            raise ValueError("update requires at least one filter")
        response = await self.authorized_request(
            "PATCH",
            self._table_path(table),
            params=eq_filters(filters),
            json=dict(values),
            headers={
                "Content-Type": "application/json",
                "Prefer": "return=minimal",
            },
        )
        if response.is_error:
            raise RequestFailed(
                f"Updating '{table}' failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

    async def delete(
        self, table: str, *, filters: Mapping[str, Any]
    ) -> None:
        """DELETE the rows matching equality `filters`; 404 counts as done."""
        if not filters:
            raise ValueError("delete requires at least one filter")
        response = await self.authorized_request(
            "DELETE",
            self._table_path(table),
            params=eq_filters(filters),
            headers={"Prefer": "return=minimal"},
        )
        if response.is_error and response.status_code != 404:
            raise RequestFailed(
                f"Deleting from '{table}' failed with HTTP {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
