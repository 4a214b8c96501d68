import asyncio

import httpx

from conftest import ANON_KEY
from linguasync.config import Settings
from linguasync.diagnostics import run_connection_check


def run_check(settings, handler):
    async def scenario():
        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        ) as client:
            return await run_connection_check(settings, client)

    return asyncio.run(scenario())


def test_missing_credentials_block_connectivity(fake_backend):
    steps = run_check(Settings(), fake_backend)

    assert [(s.name, s.status) for s in steps] == [
        ("Configuration", "failed"),
        ("Connectivity", "blocked"),
    ]
    assert fake_backend.requests == []


def test_healthy_backend_passes(fake_backend, remote_settings):
    fake_backend.route("GET", "/auth/v1/health", body={"version": "v2"})

    steps = run_check(remote_settings, fake_backend)

    assert [s.status for s in steps] == ["passed", "passed"]
    request = fake_backend.calls("GET", "/auth/v1/health")[0]
    assert request.headers["apikey"] == ANON_KEY


def test_unhealthy_backend_fails(fake_backend, remote_settings):
    fake_backend.route("GET", "/auth/v1/health", status=503)

    steps = run_check(remote_settings, fake_backend)

    assert steps[1].status == "failed"
    assert "503" in steps[1].details


def test_unreachable_backend_fails(remote_settings):
    def offline(request):
        raise httpx.ConnectError("dns failure", request=request)

    steps = run_check(remote_settings, offline)

    assert steps[1].status == "failed"
    assert "Could not connect" in steps[1].details
