"""Request, Response and provider profile dataclasses."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from prompt_dispatch.providers.base import FailureType

CANCELLED_ERROR = "cancelled"
CLOSED_ERROR = "closed"


@dataclass(frozen=True)
class Request:
    """One expanded prompt bound for a single provider."""

    id: str
    provider_id: str
    prompt: str
    model: str = ""  # empty → provider default_model
    parameters: dict[str, Any] = field(default_factory=dict)
    system_instruction: str | None = None


@dataclass
class Response:
    """Terminal (or per-attempt) outcome of a Request."""

    request_id: str
    content: str = ""
    error: str | None = None
    failure_type: FailureType | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ProviderProfile:
    """Admission limits for one provider."""

    provider_id: str
    requests_per_minute: int = 60
    max_concurrent: int = 5
    retry_delay_ms: int = 1000

    def __post_init__(self) -> None:
        if self.requests_per_minute <= 0:
            raise ValueError(f"{self.provider_id}: requests_per_minute must be > 0")
        if self.max_concurrent <= 0:
            raise ValueError(f"{self.provider_id}: max_concurrent must be > 0")
        if self.retry_delay_ms < 0:
            raise ValueError(f"{self.provider_id}: retry_delay_ms must be >= 0")


@dataclass(frozen=True)
class ProgressEvent:
    """The (request_id, content, error) triple handed to progress observers."""

    request_id: str
    content: str
    error: str | None
