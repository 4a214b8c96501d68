from typing import Any, Optional


class LinguaSyncError(Exception):
    """Base exception for every error raised by linguasync."""

    def __init__(
        self, message: str, original_exception: Optional[Exception] = None
    ):
        super().__init__(message)
        self.original_exception = original_exception


# --- Authentication ---


class AuthError(LinguaSyncError):
    """Base exception for authentication and session errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message, original_exception=original_exception)
        self.status_code = status_code
        self.payload = payload


class AuthenticationRequired(AuthError):
    """Raised when an operation needs a valid session and none exists."""

    pass


class AuthenticationFailed(AuthError):
    """Raised when the backend rejects the supplied credentials."""

    pass


class InvalidCredentialsFormat(AuthError):
    """Raised when the backend rejects a sign-up payload."""

    pass


class RefreshFailed(AuthError):
    """Raised when a session could not be renewed.

    `terminal` is True when the backend rejected the refresh token; the
    session has then been cleared before this propagates. Transport errors
    and server errors are not terminal and leave the session in place.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Any = None,
        original_exception: Optional[Exception] = None,
        terminal: bool = False,
    ):
        super().__init__(
            message,
            status_code=status_code,
            payload=payload,
            original_exception=original_exception,
        )
        self.terminal = terminal


# --- Remote requests ---


class RequestFailed(LinguaSyncError):
    """A remote read or write was rejected. Carries the HTTP status code
    (0 for transport errors) and the raw response body."""

    def __init__(
        self,
        message: str,
        status_code: int,
        body: str = "",
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message, original_exception=original_exception)
        self.status_code = status_code
        self.body = body


class UpsertFailed(RequestFailed):
    """Raised when an insert-or-update write is rejected."""

    pass


class NotConfigured(LinguaSyncError):
    """Raised when the remote backend is selected but credentials are
    absent."""

    pass


# --- Local storage ---


class StorageError(LinguaSyncError):
    """Base exception for on-device storage errors."""

    pass


class StorageConnectionError(StorageError):
    """Raised for errors opening the local database."""

    pass


class SchemaInitializationError(StorageError):
    """Raised for errors during schema setup."""

    pass


class StorageOperationError(StorageError):
    """Raised for errors reading, writing or deleting a stored key."""

    pass


class SerializationError(StorageError):
    """Indicates a stored value could not be converted to or from JSON."""

    pass
