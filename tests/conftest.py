import json
import sys
from datetime import date
from typing import Callable, Dict, Generator, List, Optional

import httpx
import pytest

from linguasync.config import RemoteCredentials, Settings, get_settings
from linguasync.db import KeyValueStore
from linguasync.session_store import SessionStore

SUPABASE_URL = "https://demo-project.supabase.co"
ANON_KEY = "anon-test-key"


# each test runs on cwd to its temp dir
@pytest.fixture(autouse=True)
def go_to_tmpdir(request):
    """
    Temporarily change the process working directory to the test's tmpdir.

    Settings read a `.env` file from the working directory; running every test
    from an empty temp dir keeps a developer's local `.env` out of the tests.
    """
    tmpdir = request.getfixturevalue("tmpdir")
    sys.path.insert(0, str(tmpdir))
    with tmpdir.as_cwd():
        yield


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """
    Remove every configuration variable the Settings class reads and reset
    the cached settings, so each test starts from defaults.
    """
    for name in (
        "LINGUA_SUPABASE_URL",
        "LINGUA_SUPABASE_ANON_KEY",
        "SUPABASE_URL",
        "SUPABASE_ANON_KEY",
        "VITE_SUPABASE_URL",
        "VITE_SUPABASE_ANON_KEY",
        "LINGUA_PROGRESS_TABLE",
        "LINGUA_DATA_BACKEND",
        "LINGUA_STORAGE_PATH",
        "LINGUA_DEBOUNCE_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# --- Time Fixtures ---


class FakeClock:
    """Controllable epoch clock; call it to read, `advance` to move on."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeToday:
    """Controllable calendar-date provider."""

    def __init__(self, today: date = date(2024, 3, 10)):
        self.today = today

    def __call__(self) -> date:
        return self.today


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def today() -> FakeToday:
    return FakeToday()


# --- Storage Fixtures ---


@pytest.fixture
def kv_store() -> Generator[KeyValueStore, None, None]:
    """
    Provide an in-memory KeyValueStore and close it on teardown.

    Returns:
        KeyValueStore: A fresh, empty store backed by ":memory:".
    """
    store = KeyValueStore(":memory:")
    try:
        yield store
    finally:
        store.close()


# --- Remote Fixtures ---


@pytest.fixture
def credentials() -> RemoteCredentials:
    return RemoteCredentials(url=SUPABASE_URL, anon_key=ANON_KEY)


@pytest.fixture
def remote_settings(tmp_path) -> Settings:
    """Settings pointing at a fake project, with a file-backed local store."""
    return Settings(
        supabase_url=SUPABASE_URL,
        supabase_anon_key=ANON_KEY,
        storage_path=tmp_path / "lingua.duckdb",
        debounce_seconds=0.05,
    )


class FakeBackend:
    """
    Scriptable stand-in for the remote Supabase API.

    Handlers are registered per (method, path) and receive the request; each
    request is recorded in `requests` for later assertions. Unregistered
    routes answer 404.
    """

    def __init__(self):
        self.routes: Dict[tuple, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: List[httpx.Request] = []

    def route(
        self,
        method: str,
        path: str,
        handler: Optional[Callable[[httpx.Request], httpx.Response]] = None,
        *,
        status: int = 200,
        body=None,
    ) -> None:
        if handler is None:

            def handler(request: httpx.Request) -> httpx.Response:
                if body is None:
                    return httpx.Response(status)
                return httpx.Response(status, json=body)

        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method and r.url.path == path
        ]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"message": "not found"})
        return handler(request)


def request_json(request: httpx.Request):
    return json.loads(request.content) if request.content else None


def session_payload(
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: int = 3600,
    user_id: str = "user-1",
    email: str = "ada@example.com",
) -> dict:
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "expires_in": expires_in,
        "token_type": "bearer",
        "user": {"id": user_id, "email": email},
    }


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def make_session_store(kv_store, credentials, clock):
    """
    Build a SessionStore wired to a MockTransport over `fake_backend`.

    Returns a factory taking the FakeBackend (and optionally other
    credentials); the caller drives it with asyncio.run.
    """

    def factory(
        backend: FakeBackend,
        creds: Optional[RemoteCredentials] = credentials,
    ) -> SessionStore:
        client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
        return SessionStore(creds, kv_store, client, clock=clock)

    return factory
