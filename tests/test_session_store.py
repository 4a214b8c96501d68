import asyncio

import httpx
import pytest

from conftest import ANON_KEY, request_json, session_payload
from linguasync.constants import SESSION_STORAGE_KEY
from linguasync.exceptions import (
    AuthenticationFailed,
    InvalidCredentialsFormat,
    NotConfigured,
    RefreshFailed,
    RequestFailed,
)
from linguasync.models import Identity, Session

TOKEN = "/auth/v1/token"
SIGNUP = "/auth/v1/signup"
LOGOUT = "/auth/v1/logout"
USER = "/auth/v1/user"


def store_session(kv_store, clock, expires_in=3600, **overrides):
    """Persist a session so a new SessionStore starts signed in."""
    payload = session_payload(expires_in=expires_in, **overrides)
    session = Session.from_payload(payload, clock())
    kv_store.set_json(SESSION_STORAGE_KEY, session.model_dump(mode="json"))
    return session


class TestSignIn:
    def test_sign_in_persists_session_and_notifies(
        self, fake_backend, make_session_store, kv_store
    ):
        fake_backend.route("POST", TOKEN, body=session_payload())
        store = make_session_store(fake_backend)
        seen = []

        async def scenario():
            await store.subscribe(seen.append)
            return await store.sign_in("ada@example.com", "pw")

        session = asyncio.run(scenario())

        assert session.user.id == "user-1"
        assert seen == [None, Identity(id="user-1", email="ada@example.com")]
        assert kv_store.get_json(SESSION_STORAGE_KEY)["access_token"] == "access-1"
        request = fake_backend.calls("POST", TOKEN)[0]
        assert request.url.params["grant_type"] == "password"
        assert request.headers["apikey"] == ANON_KEY
        assert request_json(request) == {
            "email": "ada@example.com",
            "password": "pw",
        }

    def test_rejected_credentials_raise_with_backend_message(
        self, fake_backend, make_session_store
    ):
        fake_backend.route(
            "POST",
            TOKEN,
            status=400,
            body={"error_description": "Invalid login credentials"},
        )
        store = make_session_store(fake_backend)

        with pytest.raises(AuthenticationFailed, match="Invalid login credentials") as exc:  # noqa: E501
            asyncio.run(store.sign_in("ada@example.com", "nope"))

        assert exc.value.status_code == 400
        assert store.current_session is None

    def test_response_without_token_is_rejected(
        self, fake_backend, make_session_store
    ):
        fake_backend.route("POST", TOKEN, body={"user": {"id": "u"}})
        store = make_session_store(fake_backend)

        with pytest.raises(AuthenticationFailed):
            asyncio.run(store.sign_in("ada@example.com", "pw"))

    def test_transport_error_raises_request_failed(self, make_session_store):
        def unreachable(request):
            raise httpx.ConnectError("no route", request=request)

        store = make_session_store(unreachable)

        with pytest.raises(RequestFailed) as exc:
            asyncio.run(store.sign_in("ada@example.com", "pw"))
        assert exc.value.status_code == 0

    def test_unconfigured_store_refuses(self, fake_backend, make_session_store):
        store = make_session_store(fake_backend, creds=None)

        assert not store.is_configured
        with pytest.raises(NotConfigured):
            asyncio.run(store.sign_in("ada@example.com", "pw"))
        assert asyncio.run(store.get_current_identity()) is None
        assert fake_backend.requests == []


class TestSignUp:
    def test_sign_up_with_session(self, fake_backend, make_session_store):
        fake_backend.route("POST", SIGNUP, body={"session": session_payload()})
        store = make_session_store(fake_backend)

        session = asyncio.run(store.sign_up("ada@example.com", "pw"))

        assert session.access_token == "access-1"
        assert store.has_identity

    def test_sign_up_awaiting_confirmation_returns_none(
        self, fake_backend, make_session_store
    ):
        fake_backend.route(
            "POST", SIGNUP, body={"user": {"id": "u", "email": "a@b.c"}}
        )
        store = make_session_store(fake_backend)

        assert asyncio.run(store.sign_up("a@b.c", "pw")) is None
        assert store.current_session is None

    def test_rejected_sign_up(self, fake_backend, make_session_store):
        fake_backend.route(
            "POST",
            SIGNUP,
            status=422,
            body={"msg": "Password should be at least 6 characters"},
        )
        store = make_session_store(fake_backend)

        with pytest.raises(InvalidCredentialsFormat, match="at least 6"):
            asyncio.run(store.sign_up("a@b.c", "pw"))


class TestSignOut:
    def test_remote_failure_still_clears_locally(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock)
        fake_backend.route("POST", LOGOUT, status=500)
        store = make_session_store(fake_backend)
        seen = []

        async def scenario():
            await store.subscribe(seen.append)
            await store.sign_out()

        asyncio.run(scenario())

        assert seen[-1] is None
        assert store.current_session is None
        assert kv_store.get_json(SESSION_STORAGE_KEY) is None
        logout = fake_backend.calls("POST", LOGOUT)[0]
        assert logout.headers["authorization"] == "Bearer access-1"

    def test_transport_failure_still_clears_locally(
        self, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock)

        def unreachable(request):
            raise httpx.ConnectError("offline", request=request)

        store = make_session_store(unreachable)
        asyncio.run(store.sign_out())

        assert store.current_session is None


class TestRefresh:
    def test_valid_session_is_returned_without_refresh(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock)
        store = make_session_store(fake_backend)

        session = asyncio.run(store.ensure_valid_session())

        assert session.access_token == "access-1"
        assert fake_backend.requests == []

    def test_session_inside_margin_is_refreshed(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=20)
        fake_backend.route(
            "POST",
            TOKEN,
            body={
                "access_token": "access-2",
                "refresh_token": "refresh-2",
                "expires_in": 3600,
            },
        )
        store = make_session_store(fake_backend)

        session = asyncio.run(store.ensure_valid_session())

        assert session.access_token == "access-2"
        # The refresh response carried no user; the previous one is kept.
        assert session.user.id == "user-1"
        request = fake_backend.calls("POST", TOKEN)[0]
        assert request.url.params["grant_type"] == "refresh_token"
        assert request_json(request) == {"refresh_token": "refresh-1"}
        assert kv_store.get_json(SESSION_STORAGE_KEY)["access_token"] == "access-2"

    def test_concurrent_callers_share_one_refresh(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)

        async def slow_refresh(request):
            await asyncio.sleep(0.01)
            return httpx.Response(
                200, json=session_payload(access_token="access-2")
            )

        fake_backend.route("POST", TOKEN, slow_refresh)

        async def scenario():
            store = make_session_store(fake_backend)
            return await asyncio.gather(
                *(store.ensure_valid_session() for _ in range(5))
            )

        sessions = asyncio.run(scenario())

        assert len(fake_backend.calls("POST", TOKEN)) == 1
        assert {s.access_token for s in sessions} == {"access-2"}

    def test_rejected_refresh_clears_session(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)
        fake_backend.route(
            "POST", TOKEN, status=400, body={"error_description": "revoked"}
        )
        store = make_session_store(fake_backend)

        with pytest.raises(RefreshFailed) as exc:
            asyncio.run(store.ensure_valid_session())

        assert exc.value.terminal is True
        assert store.current_session is None
        assert kv_store.get_json(SESSION_STORAGE_KEY) is None

    def test_server_error_keeps_session(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)
        fake_backend.route("POST", TOKEN, status=503)
        store = make_session_store(fake_backend)

        with pytest.raises(RefreshFailed) as exc:
            asyncio.run(store.ensure_valid_session())

        assert exc.value.terminal is False
        assert store.current_session.access_token == "access-1"

    def test_expired_session_without_refresh_token_is_dropped(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0, refresh_token=None)
        store = make_session_store(fake_backend)

        assert asyncio.run(store.ensure_valid_session()) is None
        assert store.current_session is None
        assert fake_backend.requests == []

    def test_sign_out_during_refresh_is_not_undone(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)
        fake_backend.route("POST", LOGOUT, status=204)

        async def scenario():
            started, release = asyncio.Event(), asyncio.Event()

            async def slow_refresh(request):
                started.set()
                await release.wait()
                return httpx.Response(
                    200, json=session_payload(access_token="access-2")
                )

            fake_backend.route("POST", TOKEN, slow_refresh)
            store = make_session_store(fake_backend)
            refresh = asyncio.ensure_future(store.ensure_valid_session())
            await started.wait()
            await store.sign_out()
            release.set()
            return store, await refresh

        store, session = asyncio.run(scenario())

        assert session is None
        assert store.current_session is None
        assert kv_store.get_json(SESSION_STORAGE_KEY) is None

    @pytest.mark.parametrize(
        "refresh_status, refresh_body",
        [
            (200, session_payload(access_token="access-2")),
            (400, {"error_description": "revoked"}),
        ],
    )
    def test_sign_in_during_refresh_keeps_new_session(
        self,
        fake_backend,
        make_session_store,
        kv_store,
        clock,
        refresh_status,
        refresh_body,
    ):
        store_session(kv_store, clock, expires_in=0)

        async def scenario():
            started, release = asyncio.Event(), asyncio.Event()

            async def token(request):
                if request.url.params["grant_type"] == "password":
                    return httpx.Response(
                        200,
                        json=session_payload(
                            access_token="access-b",
                            user_id="user-2",
                            email="grace@example.com",
                        ),
                    )
                started.set()
                await release.wait()
                return httpx.Response(refresh_status, json=refresh_body)

            fake_backend.route("POST", TOKEN, token)
            store = make_session_store(fake_backend)
            refresh = asyncio.ensure_future(store.ensure_valid_session())
            await started.wait()
            await store.sign_in("grace@example.com", "pw")
            release.set()
            return store, await refresh

        store, session = asyncio.run(scenario())

        assert session.access_token == "access-b"
        assert store.current_session.user.id == "user-2"
        stored = kv_store.get_json(SESSION_STORAGE_KEY)
        assert stored["access_token"] == "access-b"


class TestIdentity:
    def test_no_session_means_no_identity(self, fake_backend, make_session_store):
        store = make_session_store(fake_backend)
        assert asyncio.run(store.get_current_identity()) is None

    def test_failed_refresh_reads_as_signed_out(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)
        fake_backend.route("POST", TOKEN, status=401, body={"msg": "bad jwt"})
        store = make_session_store(fake_backend)

        assert asyncio.run(store.get_current_identity()) is None

    def test_missing_user_is_looked_up(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        kv_store.set_json(SESSION_STORAGE_KEY, {"access_token": "access-1"})
        fake_backend.route(
            "GET", USER, body={"id": "user-7", "email": "g@example.com"}
        )
        store = make_session_store(fake_backend)

        identity = asyncio.run(store.get_current_identity())

        assert identity.id == "user-7"
        assert store.has_identity
        assert fake_backend.calls("GET", USER)[0].headers["authorization"] == (
            "Bearer access-1"
        )

    def test_rejected_user_lookup_signs_out(
        self, fake_backend, make_session_store, kv_store
    ):
        kv_store.set_json(SESSION_STORAGE_KEY, {"access_token": "access-1"})
        fake_backend.route("GET", USER, status=401)
        store = make_session_store(fake_backend)

        assert asyncio.run(store.get_current_identity()) is None
        assert store.current_session is None

    def test_unparseable_stored_session_is_ignored(
        self, fake_backend, make_session_store, kv_store
    ):
        kv_store.set_json(SESSION_STORAGE_KEY, {"access_token": ""})
        store = make_session_store(fake_backend)
        assert store.current_session is None

    def test_returned_session_is_a_copy(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock)
        store = make_session_store(fake_backend)

        copy = store.current_session
        copy.access_token = "tampered"

        assert store.current_session.access_token == "access-1"

    def test_concurrent_lookups_share_one_refresh(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)

        async def slow_refresh(request):
            await asyncio.sleep(0.01)
            return httpx.Response(
                200, json=session_payload(access_token="access-2")
            )

        fake_backend.route("POST", TOKEN, slow_refresh)

        async def scenario():
            store = make_session_store(fake_backend)
            return await asyncio.gather(
                *(store.get_current_identity() for _ in range(5))
            )

        identities = asyncio.run(scenario())

        assert len(fake_backend.calls("POST", TOKEN)) == 1
        assert {i.id for i in identities} == {"user-1"}


class TestSubscribe:
    def test_unsubscribe_stops_notifications(
        self, fake_backend, make_session_store
    ):
        fake_backend.route("POST", TOKEN, body=session_payload())
        store = make_session_store(fake_backend)
        seen = []

        async def scenario():
            unsubscribe = await store.subscribe(seen.append)
            unsubscribe()
            unsubscribe()
            await store.sign_in("ada@example.com", "pw")

        asyncio.run(scenario())

        assert seen == [None]

    def test_failing_listener_does_not_break_fan_out(
        self, fake_backend, make_session_store
    ):
        fake_backend.route("POST", TOKEN, body=session_payload())
        store = make_session_store(fake_backend)
        seen = []

        def broken(identity):
            raise RuntimeError("listener bug")

        async def scenario():
            await store.subscribe(broken)
            await store.subscribe(seen.append)
            await store.sign_in("ada@example.com", "pw")

        asyncio.run(scenario())

        assert seen[-1].id == "user-1"

    def test_first_notification_follows_refresh(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock, expires_in=0)
        fake_backend.route(
            "POST", TOKEN, body=session_payload(access_token="access-2")
        )
        store = make_session_store(fake_backend)
        seen = []

        asyncio.run(store.subscribe(seen.append))

        assert seen[0] == Identity(id="user-1", email="ada@example.com")
        assert len(fake_backend.calls("POST", TOKEN)) == 1
        assert store.current_session.access_token == "access-2"

    def test_rejected_refresh_notifies_signed_out(
        self, fake_backend, make_session_store, kv_store, clock
    ):
        store_session(kv_store, clock)
        fake_backend.route(
            "POST", TOKEN, status=400, body={"error_description": "revoked"}
        )
        store = make_session_store(fake_backend)
        seen = []

        async def scenario():
            await store.subscribe(seen.append)
            clock.advance(4000)
            return await store.get_current_identity()

        assert asyncio.run(scenario()) is None
        assert seen[0].id == "user-1"
        assert seen[-1] is None
