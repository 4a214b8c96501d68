"""
Interchangeable persistence backends for the progress document.

Both variants implement the same async `load / save / clear` contract over a
JSON-compatible document, so the ProgressStore never knows where the
document lives. `create_backend` picks one at startup.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from .config import Settings
from .constants import DEFAULT_PROGRESS_TABLE, PROGRESS_STORAGE_KEY
from .db import KeyValueStore
from .exceptions import AuthenticationRequired, NotConfigured, StorageError
from .rest_gateway import RestGateway
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class ProgressBackend(ABC):
    """Capability interface: persist one identity's progress document."""

    name: str = "abstract"

    @abstractmethod
    async def load(self) -> Optional[Dict[str, Any]]:
        """Return the stored document, or None if there is none."""

    @abstractmethod
    async def save(self, document: Mapping[str, Any]) -> None:
        """Store `document`, replacing any previous one."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove the stored document; removing nothing is not an error."""


class LocalBackend(ProgressBackend):
    """
    On-device backend. Best effort: storage and serialization errors are
    logged, `load` then reports "no document" and `save`/`clear` do nothing.
    """

    name = "local"

    def __init__(
        self, storage: KeyValueStore, identity_id: Optional[str] = None
    ):
        self._storage = storage
        self.identity_id = identity_id

    @property
    def key(self) -> str:
        if self.identity_id:
            return f"{PROGRESS_STORAGE_KEY}:{self.identity_id}"
        return PROGRESS_STORAGE_KEY

    async def load(self) -> Optional[Dict[str, Any]]:
        try:
            document = self._storage.get_json(self.key)
        except StorageError as e:
            logger.warning(f"Could not read local progress: {e}")
            return None
        if document is not None and not isinstance(document, dict):
            logger.warning("Local progress is not a JSON object; ignoring it.")
            return None
        return document

    async def save(self, document: Mapping[str, Any]) -> None:
        try:
            self._storage.set_json(self.key, dict(document))
        except StorageError as e:
            logger.warning(f"Could not save local progress: {e}")

    async def clear(self) -> None:
        try:
            self._storage.delete(self.key)
        except StorageError as e:
            logger.warning(f"Could not clear local progress: {e}")


class RemoteBackend(ProgressBackend):
    """
    Remote backend: one row per user in `table`, holding the document in a
    JSON `state` column keyed by `user_id`.
    """

    name = "remote"

    def __init__(
        self,
        gateway: RestGateway,
        session_store: SessionStore,
        table: str = DEFAULT_PROGRESS_TABLE,
    ):
        self._gateway = gateway
        self._session_store = session_store
        self.table = table

    async def _user_id(self) -> str:
        identity = await self._session_store.get_current_identity()
        if identity is None:
            raise AuthenticationRequired("Sign in to sync progress.")
        return identity.id

    async def load(self) -> Optional[Dict[str, Any]]:
        """
        Raises:
            AuthenticationRequired: If nobody is signed in.
            RequestFailed: If the read is rejected.
        """
        user_id = await self._user_id()
        rows = await self._gateway.select(
            self.table,
            columns="state",
            filters={"user_id": user_id},
            limit=1,
        )
        if not rows:
            return None
        state = rows[0].get("state")
        if state is not None and not isinstance(state, dict):
            logger.warning(
                f"Remote progress for user {user_id} is not a JSON object."
            )
            return None
        return state

    async def save(self, document: Mapping[str, Any]) -> None:
        user_id = await self._user_id()
        await self._gateway.upsert(
            self.table,
            [
                {
                    "user_id": user_id,
                    "state": dict(document),
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                }
            ],
            on_conflict="user_id",
        )

    async def clear(self) -> None:
        user_id = await self._user_id()
        await self._gateway.delete(self.table, filters={"user_id": user_id})


def create_backend(
    settings: Settings,
    *,
    storage: KeyValueStore,
    session_store: Optional[SessionStore] = None,
    gateway: Optional[RestGateway] = None,
    identity_id: Optional[str] = None,
) -> ProgressBackend:
    """
    Choose the progress backend for this process.

    An explicit `data_backend` of "local" or "remote" wins. With "auto" the
    remote backend is used when credentials are configured, a gateway and
    session store are available and a user is signed in; otherwise local
    storage.

    Raises:
        NotConfigured: If "remote" is requested without credentials.
    """
    remote_ready = (
        settings.is_remote_configured
        and gateway is not None
        and session_store is not None
    )
    choice = settings.data_backend
    if choice == "remote" and not remote_ready:
        raise NotConfigured(
            "LINGUA_DATA_BACKEND=remote requires LINGUA_SUPABASE_URL and "
            "LINGUA_SUPABASE_ANON_KEY."
        )
    if choice == "auto":
        choice = (
            "remote"
            if remote_ready and session_store.has_identity
            else "local"
        )

    backend: ProgressBackend
    if choice == "remote":
        backend = RemoteBackend(
            gateway, session_store, table=settings.progress_table
        )
    else:
        backend = LocalBackend(storage, identity_id=identity_id)
    logger.info(
        f"Using the {backend.name} progress backend "
        f"(configured: {settings.data_backend})."
    )
    return backend
