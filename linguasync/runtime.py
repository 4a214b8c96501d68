"""
Explicit wiring of the synchronization engine.

SyncRuntime builds every component from one Settings object and hands them
out as attributes; nothing is kept in module globals. It is an async context
manager that flushes pending progress and releases the HTTP client and the
local store on exit.
"""

import logging
import time
from datetime import date
from typing import Callable, Optional

import httpx

from .backends import ProgressBackend, create_backend
from .config import Settings
from .db import KeyValueStore
from .exceptions import LinguaSyncError
from .progress_store import ProgressStore
from .rest_gateway import RestGateway
from .session_store import SessionStore

logger = logging.getLogger(__name__)


class SyncRuntime:
    """
    Usage:

        async with SyncRuntime(get_settings()) as runtime:
            identity = await runtime.session_store.get_current_identity()
            await runtime.progress.award_xp(10)
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
        today: Callable[[], date] = date.today,
    ):
        """
        Parameters:
            settings: Configuration to build from.
            transport: Optional httpx transport (tests pass a MockTransport).
            clock: Epoch-seconds clock for session expiry.
            today: Calendar-date provider for the progress store.
        """
        self.settings = settings
        self._transport = transport
        self._clock = clock
        self._today = today
        self.storage: Optional[KeyValueStore] = None
        self.http: Optional[httpx.AsyncClient] = None
        self.session_store: Optional[SessionStore] = None
        self.gateway: Optional[RestGateway] = None
        self.backend: Optional[ProgressBackend] = None
        self.progress: Optional[ProgressStore] = None

    async def __aenter__(self) -> "SyncRuntime":
        settings = self.settings
        self.storage = KeyValueStore(str(settings.storage_path))
        self.http = httpx.AsyncClient(
            timeout=settings.request_timeout_seconds,
            transport=self._transport,
        )
        self.session_store = SessionStore(
            settings.credentials(),
            self.storage,
            self.http,
            clock=self._clock,
            expiry_margin_seconds=settings.expiry_margin_seconds,
        )
        self.gateway = RestGateway(self.session_store, self.http)
        self.backend = create_backend(
            settings,
            storage=self.storage,
            session_store=self.session_store,
            gateway=self.gateway,
        )
        self.progress = ProgressStore(
            self.backend,
            debounce_seconds=settings.debounce_seconds,
            today=self._today,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            if self.progress is not None:
                await self.progress.close()
        except LinguaSyncError as e:
            logger.warning(f"Unsaved progress could not be written on exit: {e}")
        finally:
            if self.http is not None:
                await self.http.aclose()
            if self.storage is not None:
                self.storage.close()
