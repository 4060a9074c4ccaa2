"""Structured logger + event sink for the dispatch engine.

Event names:
    dispatch.batch.start / .complete / .cancel
    dispatch.request.start / .success / .error / .retry / .cancelled
    dispatch.request.crashed, dispatch.provider.raised
    dispatch.progress.error
    dispatch.closed, dispatch.client.close_failed
    ratelimit.wait
    config.loaded, config.env_key

Every record uses the event name as its message and carries structured
fields in ``extra``. Nothing is written to disk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, runtime_checkable

from prompt_dispatch.models import Request, Response

logger = logging.getLogger("prompt_dispatch")


@dataclass
class AttemptRecord:
    """Mutable record built up across one provider attempt."""

    request_id: str
    provider: str
    model: str
    started_at: str
    attempt: int = 1
    elapsed_ms: float | None = None
    failure_type: str | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# EventSink abstraction
# ---------------------------------------------------------------------------


@dataclass
class DispatchEvent:
    """Emitted at every significant step; consumable by external observers."""

    event: str           # e.g. "dispatch.request.start"
    request_id: str
    data: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class EventSink(Protocol):
    """Optional hook for metrics or UI integrations."""

    def emit(self, event: DispatchEvent) -> None:
        """Receive a dispatch event. Must not raise."""
        ...


# ---------------------------------------------------------------------------
# Logging helpers
# ---------------------------------------------------------------------------


def start_attempt(request: Request, attempt: int = 1) -> AttemptRecord:
    """Create an AttemptRecord and emit dispatch.request.start."""
    record = AttemptRecord(
        request_id=request.id,
        provider=request.provider_id,
        model=request.model,
        attempt=attempt,
        started_at=datetime.now(timezone.utc).isoformat(),
    )
    logger.info(
        "dispatch.request.start",
        extra={
            "event": "dispatch.request.start",
            "request_id": record.request_id,
            "provider": record.provider,
            "attempt": record.attempt,
            "model": record.model,
        },
    )
    return record


def record_success(record: AttemptRecord, elapsed_ms: float = 0.0) -> None:
    record.elapsed_ms = elapsed_ms
    logger.info(
        "dispatch.request.success",
        extra={
            "event": "dispatch.request.success",
            "request_id": record.request_id,
            "provider": record.provider,
            "attempt": record.attempt,
            "model": record.model,
            "elapsed_ms": elapsed_ms,
        },
    )


def record_error(record: AttemptRecord, response: Response, elapsed_ms: float = 0.0) -> None:
    record.elapsed_ms = elapsed_ms
    record.failure_type = response.failure_type.value if response.failure_type else None
    record.error = response.error
    logger.error(
        "dispatch.request.error",
        extra={
            "event": "dispatch.request.error",
            "request_id": record.request_id,
            "provider": record.provider,
            "attempt": record.attempt,
            "model": record.model,
            "elapsed_ms": elapsed_ms,
            "failure_type": record.failure_type,
            "error": record.error,
        },
    )


def log_event(event: str, **fields: Any) -> None:
    """Log a batch-level or lifecycle event at INFO."""
    logger.info(event, extra={"event": event, **fields})
