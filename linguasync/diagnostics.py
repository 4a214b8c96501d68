"""Configuration and connectivity checks for the remote backend."""

import logging
from dataclasses import dataclass
from typing import List, Literal

import httpx

from .config import Settings
from .session_store import parse_json_body

logger = logging.getLogger(__name__)

StepStatus = Literal["passed", "failed", "blocked"]


@dataclass
class CheckStep:
    name: str
    status: StepStatus
    details: str


async def check_health(settings: Settings, http_client: httpx.AsyncClient) -> CheckStep:
    """Call the auth health endpoint with the anon key."""
    url = f"{settings.supabase_url}/auth/v1/health"
    try:
        response = await http_client.get(
            url, headers={"apikey": settings.supabase_anon_key or ""}
        )
    except httpx.HTTPError as e:
        return CheckStep("Connectivity", "failed", f"Could not connect: {e}")
    if response.is_error:
        return CheckStep(
            "Connectivity",
            "failed",
            f"Health endpoint answered HTTP {response.status_code}.",
        )
    payload = parse_json_body(response)
    return CheckStep(
        "Connectivity",
        "passed",
        str(payload) if payload else "Health endpoint answered OK.",
    )


async def run_connection_check(
    settings: Settings, http_client: httpx.AsyncClient
) -> List[CheckStep]:
    """
    Validate the remote configuration, then check connectivity.

    Connectivity is reported as "blocked" when credentials are missing.
    """
    configured = settings.is_remote_configured
    steps = [
        CheckStep(
            "Configuration",
            "passed" if configured else "failed",
            f"URL: {settings.supabase_url or '(not set)'} | "
            f"Anon key: {'(set)' if settings.supabase_anon_key else '(not set)'} | "
            f"Progress table: {settings.progress_table} | "
            f"Backend: {settings.data_backend}",
        )
    ]
    if not configured:
        steps.append(
            CheckStep(
                "Connectivity",
                "blocked",
                "Missing credentials; connectivity was not checked.",
            )
        )
    else:
        steps.append(await check_health(settings, http_client))
    for step in steps:
        logger.info(f"Connection check - {step.name}: {step.status}")
    return steps
