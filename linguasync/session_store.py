"""
Authentication session management for linguasync.

The SessionStore owns the single authentication session of the app: it signs
users up, in and out against the `/auth/v1` endpoints, persists the session in
the local store, refreshes it shortly before it expires and tells subscribers
whenever the authenticated identity changes.

State machine:

    NoSession -> Authenticated -> (near expiry) Refreshing
              -> Authenticated | NoSession (terminal refresh failure)

Concurrent refresh requests share one in-flight attempt.
"""

import asyncio
import json
import logging
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from .config import RemoteCredentials
from .constants import EXPIRY_MARGIN_SECONDS, SESSION_STORAGE_KEY
from .db import KeyValueStore
from .exceptions import (
    AuthenticationFailed,
    InvalidCredentialsFormat,
    NotConfigured,
    RefreshFailed,
    RequestFailed,
    StorageError,
)
from .models import Identity, Session

logger = logging.getLogger(__name__)

IdentityListener = Callable[[Optional[Identity]], None]


def parse_json_body(response: httpx.Response) -> Any:
    """Decode a JSON response body; empty or invalid bodies yield None."""
    if not response.content:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.warning(
            f"Response from {response.request.url.path} is not valid JSON."
        )
        return None


def error_message(
    data: Any, fallback: str, response: Optional[httpx.Response] = None
) -> str:
    """Pick the most descriptive message out of an auth/REST error payload."""
    if isinstance(data, dict):
        for key in ("error_description", "message", "msg", "error"):
            if data.get(key):
                return str(data[key])
    if fallback:
        return fallback
    if response is not None and response.reason_phrase:
        return response.reason_phrase
    return "Remote backend error"


class SessionStore:
    """
    Owns one authentication session and exposes the current identity.

    The store is constructed explicitly and passed to whatever needs it
    (REST gateway, remote backend, CLI); there is no module-level session.
    Only this class mutates the session; callers receive copies.
    """

    def __init__(
        self,
        credentials: Optional[RemoteCredentials],
        storage: KeyValueStore,
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
        expiry_margin_seconds: int = EXPIRY_MARGIN_SECONDS,
    ):
        """
        Parameters:
            credentials: Remote URL and anon key; None when the remote backend
                is not configured, in which case every remote operation is
                unavailable and the identity is always None.
            storage: Local store used to persist the session across restarts.
            http_client: Shared async HTTP client.
            clock: Returns the current epoch time in seconds.
            expiry_margin_seconds: Sessions expiring within this margin are
                refreshed before use.
        """
        self._credentials = credentials
        self._storage = storage
        self._http = http_client
        self._clock = clock
        self._expiry_margin = expiry_margin_seconds
        self._listeners: List[IdentityListener] = []
        self._refresh_task: Optional["asyncio.Task[Optional[Session]]"] = None
        self._session: Optional[Session] = self._load_stored_session()

    # --- Properties ---

    @property
    def is_configured(self) -> bool:
        return self._credentials is not None

    @property
    def credentials(self) -> Optional[RemoteCredentials]:
        return self._credentials

    @property
    def current_session(self) -> Optional[Session]:
        """A copy of the current session, without refreshing it."""
        if self._session is None:
            return None
        return self._session.model_copy(deep=True)

    @property
    def has_identity(self) -> bool:
        """True if a session with a known user is held (no network check)."""
        return self._session is not None and self._session.user is not None

    # --- Persistence and fan-out ---

    def _load_stored_session(self) -> Optional[Session]:
        try:
            raw = self._storage.get_json(SESSION_STORAGE_KEY)
        except StorageError as e:
            logger.warning(f"Could not read the stored session: {e}")
            return None
        if raw is None:
            return None
        try:
            return Session.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"Discarding unparseable stored session: {e}")
            return None

    def _set_session(self, session: Optional[Session]) -> None:
        """Replace the session, persist it and notify subscribers."""
        self._session = session
        try:
            if session is None:
                self._storage.delete(SESSION_STORAGE_KEY)
            else:
                self._storage.set_json(
                    SESSION_STORAGE_KEY, session.model_dump(mode="json")
                )
        except StorageError as e:
            logger.warning(f"Could not persist the session locally: {e}")
        self._notify()

    def _notify(self) -> None:
        identity = self._identity_copy()
        for listener in list(self._listeners):
            self._call_listener(listener, identity)

    @staticmethod
    def _call_listener(
        listener: IdentityListener, identity: Optional[Identity]
    ) -> None:
        try:
            listener(identity)
        except Exception:
            logger.exception("Identity listener raised; continuing fan-out.")

    def _identity_copy(self) -> Optional[Identity]:
        if self._session is None or self._session.user is None:
            return None
        return self._session.user.model_copy(deep=True)

    # --- HTTP helpers ---

    def _require_config(self) -> RemoteCredentials:
        if self._credentials is None:
            raise NotConfigured(
                "Remote backend is not configured. Set LINGUA_SUPABASE_URL "
                "and LINGUA_SUPABASE_ANON_KEY."
            )
        return self._credentials

    def _auth_url(self, path: str) -> str:
        return f"{self._require_config().url}/auth/v1{path}"

    def _auth_headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "apikey": self._require_config().anon_key,
            "Content-Type": "application/json",
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _auth_post(
        self,
        path: str,
        body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        access_token: Optional[str] = None,
    ) -> httpx.Response:
        url = self._auth_url(path)
        try:
            return await self._http.post(
                url,
                params=params,
                json=body,
                headers=self._auth_headers(access_token),
            )
        except httpx.HTTPError as e:
            raise RequestFailed(
                f"Could not reach the auth backend: {e}",
                status_code=0,
                original_exception=e,
            ) from e

    # --- Sign-up / sign-in / sign-out ---

    async def sign_up(self, email: str, password: str) -> Optional[Session]:
        """
        Create an account and, when the backend returns one, persist the new
        session.

        Returns:
            The new session, or None when the backend requires e-mail
            confirmation before issuing one.

        Raises:
            InvalidCredentialsFormat: If the backend rejects the payload.
            NotConfigured: If no remote credentials are configured.
            RequestFailed: If the backend cannot be reached.
        """
        response = await self._auth_post(
            "/signup", {"email": email, "password": password}
        )
        data = parse_json_body(response)
        if response.is_error:
            raise InvalidCredentialsFormat(
                error_message(data, "Could not create the account", response),
                status_code=response.status_code,
                payload=data,
            )
        try:
            session = Session.from_payload(data, self._clock())
        except ValidationError as e:
            raise InvalidCredentialsFormat(
                f"Sign-up response holds an invalid session: {e}",
                status_code=response.status_code,
                payload=data,
                original_exception=e,
            ) from e
        if session is None:
            logger.info("Account created; waiting for e-mail confirmation.")
            return None
        self._set_session(session)
        logger.info("Signed up and signed in.")
        return session.model_copy(deep=True)

    async def sign_in(self, email: str, password: str) -> Session:
        """
        Sign in with e-mail and password and persist the session.

        Raises:
            AuthenticationFailed: On bad credentials or a response without a
                usable session.
            NotConfigured: If no remote credentials are configured.
            RequestFailed: If the backend cannot be reached.
        """
        response = await self._auth_post(
            "/token",
            {"email": email, "password": password},
            params={"grant_type": "password"},
        )
        data = parse_json_body(response)
        if response.is_error:
            raise AuthenticationFailed(
                error_message(data, "Invalid credentials", response),
                status_code=response.status_code,
                payload=data,
            )
        try:
            session = Session.from_payload(data, self._clock())
        except ValidationError as e:
            session = None
            logger.warning(f"Sign-in response failed validation: {e}")
        if session is None:
            raise AuthenticationFailed(
                "The sign-in response does not contain a valid session.",
                status_code=response.status_code,
                payload=data,
            )
        self._set_session(session)
        logger.info("Signed in.")
        return session.model_copy(deep=True)

    async def sign_out(self) -> None:
        """
        Invalidate the session remotely (best effort), then always clear it
        locally and notify subscribers with None.
        """
        session = self._session
        if session is not None and self._credentials is not None:
            try:
                response = await self._auth_post(
                    "/logout", access_token=session.access_token
                )
                if response.is_error:
                    logger.warning(
                        f"Remote sign-out failed with HTTP {response.status_code}; "
                        "clearing the local session anyway."
                    )
            except RequestFailed as e:
                logger.warning(f"Remote sign-out failed: {e}")
        self._set_session(None)
        logger.info("Signed out.")

    # --- Refresh ---

    async def ensure_valid_session(self) -> Optional[Session]:
        """
        Return the current session, refreshing it first if it expires within
        the safety margin.

        Raises:
            RefreshFailed: If a needed refresh fails. On a terminal failure
                the session has already been cleared.
        """
        if self._session is None:
            return None
        if not self._session.is_expired(self._clock(), self._expiry_margin):
            return self._session.model_copy(deep=True)
        return await self._refresh_shared()

    async def force_refresh(self) -> Optional[Session]:
        """Refresh the session regardless of its expiry (coalesced)."""
        if self._session is None:
            return None
        return await self._refresh_shared()

    async def _refresh_shared(self) -> Optional[Session]:
        if self._refresh_task is None:
            self._refresh_task = asyncio.ensure_future(self._run_refresh())
        session = await asyncio.shield(self._refresh_task)
        return session.model_copy(deep=True) if session else None

    async def _run_refresh(self) -> Optional[Session]:
        try:
            return await self._refresh()
        finally:
            self._refresh_task = None

    def _is_current(self, session: Session) -> bool:
        return (
            self._session is not None
            and self._session.access_token == session.access_token
        )

    async def _refresh(self) -> Optional[Session]:
        session = self._session
        if session is None:
            return None
        if not session.refresh_token:
            logger.warning("Session expired and has no refresh token.")
            self._set_session(None)
            return None
        if self._credentials is None:
            raise RefreshFailed("Remote backend is not configured.")

        logger.debug("Refreshing session.")
        try:
            response = await self._auth_post(
                "/token",
                {"refresh_token": session.refresh_token},
                params={"grant_type": "refresh_token"},
            )
        except RequestFailed as e:
            if not self._is_current(session):
                return self._session
            # Transport failure: keep the session so a later attempt can
            # still succeed once connectivity returns.
            raise RefreshFailed(
                str(e), status_code=0, original_exception=e
            ) from e

        if not self._is_current(session):
            # Signed out or signed in as someone else while the refresh was
            # in flight; the outcome belongs to a session that is gone.
            logger.debug("Session changed during refresh; discarding result.")
            return self._session

        data = parse_json_body(response)
        if response.is_server_error:
            raise RefreshFailed(
                error_message(data, "Auth backend unavailable", response),
                status_code=response.status_code,
                payload=data,
            )
        if response.is_error:
            self._set_session(None)
            raise RefreshFailed(
                error_message(data, "Could not refresh the session", response),
                status_code=response.status_code,
                payload=data,
                terminal=True,
            )
        try:
            refreshed = Session.from_payload(
                data, self._clock(), fallback_user=session.user
            )
        except ValidationError as e:
            refreshed = None
            logger.warning(f"Refresh response failed validation: {e}")
        if refreshed is None:
            self._set_session(None)
            raise RefreshFailed(
                "The refresh response does not contain a valid session.",
                status_code=response.status_code,
                payload=data,
                terminal=True,
            )
        self._set_session(refreshed)
        logger.info("Session refreshed.")
        return refreshed

    # --- Identity ---

    async def get_current_identity(self) -> Optional[Identity]:
        """
        Return the signed-in user, refreshing the session first if needed.

        Returns None when there is no session, when the remote backend is not
        configured, or when a refresh fails; a terminal refresh failure also
        clears the session. When the session lacks a user object it is
        fetched from `/auth/v1/user`.
        """
        if self._credentials is None:
            return None
        try:
            session = await self.ensure_valid_session()
        except RefreshFailed as e:
            logger.warning(f"Could not refresh the session: {e}")
            return None
        if session is None:
            return None
        if session.user is not None:
            return session.user
        return await self._fetch_user(session)

    async def _fetch_user(self, session: Session) -> Optional[Identity]:
        try:
            response = await self._http.get(
                self._auth_url("/user"),
                headers=self._auth_headers(session.access_token),
            )
        except httpx.HTTPError as e:
            logger.warning(f"Could not look up the current user: {e}")
            return None
        if response.status_code == 401:
            if self._is_current(session):
                logger.warning("Current user lookup was rejected; signing out.")
                self._set_session(None)
            return None
        data = parse_json_body(response)
        if response.is_error or not isinstance(data, dict):
            logger.warning(
                f"Current user lookup failed with HTTP {response.status_code}."
            )
            return None
        try:
            identity = Identity.model_validate(data)
        except ValidationError as e:
            logger.warning(f"Current user payload failed validation: {e}")
            return None
        # The session may have been replaced while the lookup was in flight.
        if self._is_current(session):
            updated = self._session.model_copy(deep=True)
            updated.user = identity
            self._set_session(updated)
        return identity.model_copy(deep=True)

    async def subscribe(
        self, listener: IdentityListener
    ) -> Callable[[], None]:
        """
        Register `listener` for identity changes.

        The listener is called once right away with the current identity
        (after an attempted refresh), then on every later sign-in, sign-out,
        refresh or refresh-failure transition.

        Returns:
            A callable that unregisters the listener; calling it twice is
            harmless.
        """
        identity = await self.get_current_identity()
        self._listeners.append(listener)
        self._call_listener(listener, identity)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe
