"""
Centralized configuration management for linguasync.
"""
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_PROGRESS_TABLE,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    EXPIRY_MARGIN_SECONDS,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_URL_PATTERN = re.compile(r"tu-proyecto\.supabase\.co")
MALFORMED_URL_PATTERNS = (
    re.compile(r"localhost:\d+/https?"),
    re.compile(r"^https?://$"),
    re.compile(r"https?://https?:"),
)


def get_default_storage_path() -> Path:
    """Returns the default path of the on-device store."""
    return Path.home() / ".lingua_avventura" / "lingua.duckdb"


def _normalize_env_value(value: Optional[str]) -> Optional[str]:
    """Trim a raw setting; blank, "undefined" and "null" mean unset."""
    if value is None:
        return None
    trimmed = str(value).strip()
    if not trimmed or trimmed.lower() in ("undefined", "null"):
        return None
    return trimmed


@dataclass(frozen=True)
class RemoteCredentials:
    url: str
    anon_key: str


class Settings(BaseSettings):
    """
    Defines application settings, loaded from environment variables or .env files.
    """

    model_config = SettingsConfigDict(
        env_prefix="LINGUA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # --- Remote backend ---
    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "LINGUA_SUPABASE_URL", "SUPABASE_URL", "VITE_SUPABASE_URL"
        ),
    )
    supabase_anon_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "LINGUA_SUPABASE_ANON_KEY",
            "SUPABASE_ANON_KEY",
            "VITE_SUPABASE_ANON_KEY",
        ),
    )
    progress_table: str = DEFAULT_PROGRESS_TABLE

    # "auto" picks the remote backend when credentials and a signed-in
    # user are available, local storage otherwise.
    data_backend: Literal["local", "remote", "auto"] = "auto"

    # --- Local storage ---
    storage_path: Path = Field(default_factory=get_default_storage_path)

    # --- Timing ---
    debounce_seconds: float = Field(DEFAULT_DEBOUNCE_SECONDS, ge=0)
    request_timeout_seconds: float = Field(
        DEFAULT_REQUEST_TIMEOUT_SECONDS, gt=0
    )
    expiry_margin_seconds: int = Field(EXPIRY_MARGIN_SECONDS, ge=0)

    @field_validator("supabase_url", mode="before")
    @classmethod
    def _normalize_url(cls, value: Optional[str]) -> Optional[str]:
        url = _normalize_env_value(value)
        if url is None:
            return None
        if PLACEHOLDER_URL_PATTERN.search(url):
            logger.warning(
                "Supabase URL is still the 'tu-proyecto.supabase.co' "
                "placeholder; replace it with the real project URL."
            )
        if any(pattern.search(url) for pattern in MALFORMED_URL_PATTERNS):
            logger.warning(
                f"Supabase URL looks malformed: {url!r}. Expected "
                "https://<project-ref>.supabase.co"
            )
        return url.rstrip("/")

    @field_validator("supabase_anon_key", mode="before")
    @classmethod
    def _normalize_key(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_env_value(value)

    @field_validator("progress_table", mode="before")
    @classmethod
    def _normalize_table(cls, value: Optional[str]) -> str:
        return _normalize_env_value(value) or DEFAULT_PROGRESS_TABLE

    @property
    def is_remote_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_anon_key)

    def credentials(self) -> Optional[RemoteCredentials]:
        if not self.is_remote_configured:
            return None
        return RemoteCredentials(
            url=self.supabase_url, anon_key=self.supabase_anon_key
        )


@lru_cache
def get_settings() -> Settings:
    try:
        return Settings()
    except ValidationError as exc:
        raise RuntimeError(f"Invalid linguasync configuration: {exc}") from exc
