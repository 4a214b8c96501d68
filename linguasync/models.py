"""
Data models for the authentication session and the progress document.
"""

from __future__ import annotations

from datetime import date
from typing import Annotated, Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints
from pydantic.alias_generators import to_camel

from .constants import DEFAULT_COMPLETION_KINDS, EXPIRY_MARGIN_SECONDS

NonNegativeInt = Annotated[int, Field(ge=0)]
StreakInt = Annotated[int, Field(ge=1)]
WordKey = Annotated[str, StringConstraints(min_length=1)]
NarrationMode = Literal["it", "fr", "en"]
ThemeMode = Literal["light", "dark", "system"]


def default_completions() -> Dict[str, int]:
    return {kind: 0 for kind in DEFAULT_COMPLETION_KINDS}


class Identity(BaseModel):
    """
    The authenticated user as reported by the auth backend.

    Only `id` and `email` are interpreted; any other user attributes the
    backend returns are kept as extras.
    """

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., min_length=1, description="Backend user id.")
    email: Optional[str] = Field(default=None, description="Login e-mail.")


class Session(BaseModel):
    """
    Authentication credential bundle needed to reach the remote backend.

    A Session always has a non-empty access token; "no session" is
    represented by None, never by an empty Session.
    """

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(..., min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    expires_at: Optional[int] = Field(
        default=None,
        description="Absolute expiry in epoch seconds, derived from "
        "expires_in when the backend omits it.",
    )
    token_type: str = "bearer"
    user: Optional[Identity] = None

    def is_expired(
        self, now: float, margin: int = EXPIRY_MARGIN_SECONDS
    ) -> bool:
        """
        True when the session expires within `margin` seconds of `now`.
        Sessions without any expiry information never expire.
        """
        if self.expires_at is None:
            return False
        return self.expires_at <= now + margin

    @classmethod
    def from_payload(
        cls,
        payload: Optional[Mapping[str, Any]],
        now: float,
        fallback_user: Optional[Identity] = None,
    ) -> Optional["Session"]:
        """
        Normalize an auth endpoint response into a Session.

        Accepts both `{"session": {...}}` and flat `{"access_token": ...}`
        payloads. Returns None when the payload holds no access token.
        `expires_at` is recomputed from `expires_in` when missing.
        """
        if not payload:
            return None
        data: Mapping[str, Any] = payload
        nested = payload.get("session")
        if isinstance(nested, Mapping):
            data = nested
        if not data.get("access_token"):
            return None

        fields = {
            "access_token": data.get("access_token"),
            "refresh_token": data.get("refresh_token"),
            "expires_in": data.get("expires_in"),
            "expires_at": data.get("expires_at"),
            "token_type": data.get("token_type") or "bearer",
            "user": data.get("user") or payload.get("user"),
        }
        session = cls.model_validate(fields)
        if session.user is None and fallback_user is not None:
            session.user = fallback_user.model_copy(deep=True)
        if session.expires_at is None and session.expires_in is not None:
            session.expires_at = int(now) + session.expires_in
        return session


class ProgressSettings(BaseModel):
    """Per-user preferences stored inside the progress document."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="allow",
    )

    narration_mode: NarrationMode = Field(
        default="it", description="Language used for narration."
    )
    theme: ThemeMode = "system"
    activity_modes: Dict[str, str] = Field(
        default_factory=dict,
        description="Preferred mode per activity kind (e.g. quiz direction).",
    )


class ProgressDocument(BaseModel):
    """
    The single source of truth for one user's learning state.

    Serialized with the camelCase keys used by every client of the stored
    document (`createdAt`, `lastActive`, `wordsLearned`, ...). Unknown
    top-level keys are preserved so data written by newer clients survives
    a round trip.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
        extra="allow",
    )

    created_at: date = Field(default_factory=date.today)
    last_active: date = Field(
        default_factory=date.today,
        description="Last calendar day with recorded activity.",
    )
    streak: StreakInt = Field(
        default=1, description="Consecutive active days, at least 1."
    )
    xp: NonNegativeInt = 0
    words_learned: Dict[WordKey, NonNegativeInt] = Field(
        default_factory=dict,
        description="Word -> number of times it was marked as learned.",
    )
    errors: Dict[WordKey, NonNegativeInt] = Field(
        default_factory=dict,
        description="Word -> number of recorded mistakes.",
    )
    reviews: Dict[WordKey, date] = Field(
        default_factory=dict,
        description="Word -> last calendar day it was reviewed.",
    )
    completions: Dict[str, NonNegativeInt] = Field(
        default_factory=default_completions
    )
    settings: ProgressSettings = Field(default_factory=ProgressSettings)

    @classmethod
    def default(cls, today: date) -> "ProgressDocument":
        """The fresh document a new user starts with."""
        return cls(created_at=today, last_active=today)

    def to_storage(self) -> Dict[str, Any]:
        """JSON-compatible dict with stored (camelCase) keys."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_storage(cls, data: Mapping[str, Any]) -> "ProgressDocument":
        return cls.model_validate(dict(data))
