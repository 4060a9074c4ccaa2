"""Provider Protocol + exception types."""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from prompt_dispatch.models import Request, Response


class FailureType(enum.Enum):
    """Classification of request failures.

    CONFIGURATION, CANCELLED and CLOSED are produced by the engine itself and
    are never retried.
    """

    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHORIZATION = "AUTHORIZATION"
    CONNECTION = "CONNECTION"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    CONFIGURATION = "CONFIGURATION"
    CANCELLED = "CANCELLED"
    CLOSED = "CLOSED"
    UNKNOWN = "UNKNOWN"


class DispatchError(Exception):
    """Base for every error raised inside the dispatch engine."""

    default_failure_type = FailureType.UNKNOWN

    def __init__(
        self,
        message: str,
        failure_type: FailureType | None = None,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.failure_type = failure_type or self.default_failure_type
        self.cause = cause


class ConfigurationError(DispatchError):
    """Unknown provider or model. Fatal to the single request, never retried."""

    default_failure_type = FailureType.CONFIGURATION


class TransientProviderError(DispatchError):
    """Timeout, 5xx, throttling or a dropped connection."""

    default_failure_type = FailureType.PROVIDER_ERROR


class PermanentProviderError(DispatchError):
    """4xx auth/validation failure."""

    default_failure_type = FailureType.PROVIDER_ERROR


class RequestCancelledError(DispatchError):
    """Raised at a suspension point once the session's token has fired."""

    default_failure_type = FailureType.CANCELLED


class EngineClosedError(DispatchError):
    """Raised when a dispatcher is used after ``close()``."""

    default_failure_type = FailureType.CLOSED


NON_RETRYABLE = frozenset(
    {FailureType.CONFIGURATION, FailureType.CANCELLED, FailureType.CLOSED}
)

_ERROR_PREFIXES = {
    FailureType.TIMEOUT: "Timeout",
    FailureType.RATE_LIMIT: "Rate Limit",
    FailureType.AUTHORIZATION: "Authorization Error",
    FailureType.CONNECTION: "Connection Error",
    FailureType.CONFIGURATION: "Configuration Error",
    FailureType.INVALID_RESPONSE: "Invalid Response",
}


def format_error(error: DispatchError) -> str:
    """Return the user-facing message stored in ``Response.error``."""
    if error.failure_type in (FailureType.CANCELLED, FailureType.CLOSED):
        return str(error)
    prefix = _ERROR_PREFIXES.get(error.failure_type, "Error")
    return f"{prefix}: {error}"


def classify_status(status_code: int, text: str = "") -> DispatchError | None:
    """Map an HTTP status to an error, or None for 2xx/3xx."""
    if status_code < 400:
        return None
    detail = f"Provider returned HTTP {status_code}: {text[:200]}"
    if status_code == 429:
        return TransientProviderError(detail, failure_type=FailureType.RATE_LIMIT)
    if status_code in (401, 403):
        return PermanentProviderError(detail, failure_type=FailureType.AUTHORIZATION)
    if status_code in (408, 504):
        return TransientProviderError(detail, failure_type=FailureType.TIMEOUT)
    if status_code >= 500:
        return TransientProviderError(detail)
    return PermanentProviderError(detail)


@runtime_checkable
class ProviderClient(Protocol):
    """Capability every provider adapter exposes to the dispatcher."""

    name: str

    async def invoke(self, request: Request) -> Response:
        """Execute one completion.

        Non-2xx statuses and transport failures come back as
        ``Response(error=...)``; they are not raised.
        """
        ...

    async def aclose(self) -> None:
        """Release pooled connections."""
        ...
