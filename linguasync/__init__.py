"""linguasync - Session management and progress synchronization for Lingua Avventura."""

from .models import Identity, Session, ProgressDocument, ProgressSettings
from .config import Settings, get_settings
from .db import KeyValueStore
from .session_store import SessionStore
from .rest_gateway import RestGateway
from .backends import LocalBackend, RemoteBackend, create_backend
from .progress_store import ProgressStore
from .runtime import SyncRuntime

__all__ = [
    "Identity",
    "Session",
    "ProgressDocument",
    "ProgressSettings",
    "Settings",
    "get_settings",
    "KeyValueStore",
    "SessionStore",
    "RestGateway",
    "LocalBackend",
    "RemoteBackend",
    "create_backend",
    "ProgressStore",
    "SyncRuntime",
]
