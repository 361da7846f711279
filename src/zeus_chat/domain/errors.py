"""Error taxonomy shared by the repository, completion and orchestration layers."""

from typing import Any, Dict, Optional


class ChatError(Exception):
    """Base class for every error raised by the chat core."""

    error_code = "CHAT_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.error_code
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class AuthenticationError(ChatError):
    """Raised when an operation needs a user identity and none is present."""

    error_code = "UNAUTHENTICATED"


class NetworkError(ChatError):
    """Raised on timeouts and unreachable hosts."""

    error_code = "NETWORK_ERROR"


class NotFoundError(ChatError):
    """Raised when the entity an operation targets does not exist."""

    error_code = "NOT_FOUND"


class ValidationError(ChatError):
    """Raised for malformed input, before anything is written."""

    error_code = "VALIDATION_ERROR"


class ProviderConfigurationError(ChatError):
    """Raised when the resolved completion provider has no API key."""

    error_code = "PROVIDER_NOT_CONFIGURED"


class UpstreamAPIError(ChatError):
    """Raised when the completion backend answers with a non-2xx status."""

    error_code = "UPSTREAM_API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(f"API Error ({status_code}): {message}", details=details)
        self.status_code = status_code
        self.upstream_message = message

    @property
    def is_rate_limited(self) -> bool:
        return self.status_code == 429

    @property
    def is_auth_failure(self) -> bool:
        return self.status_code in (401, 403)


class PersistenceError(ChatError):
    """Raised when a read or write against the document store fails."""

    error_code = "PERSISTENCE_ERROR"


class IllegalStateError(ChatError):
    """Raised when an operation is not valid in the current session state."""

    error_code = "ILLEGAL_STATE"
