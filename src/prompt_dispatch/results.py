"""GenerationResult and the storage boundary the engine hands results across."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol, runtime_checkable

from prompt_dispatch.models import CANCELLED_ERROR, CLOSED_ERROR, Response

_INTERRUPTED = (CANCELLED_ERROR, CLOSED_ERROR)


@dataclass
class GenerationResult:
    """One finished (or interrupted) batch plus the inputs that produced it."""

    id: str
    template_id: str
    template_name: str
    placeholders: dict[str, Any]
    responses: dict[str, Response]
    is_complete: bool = False
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "template_id": self.template_id,
            "template_name": self.template_name,
            "placeholders": dict(self.placeholders),
            "responses": {
                rid: {
                    "request_id": r.request_id,
                    "content": r.content,
                    "error": r.error,
                    "failure_type": r.failure_type.value if r.failure_type else None,
                    "attempts": r.attempts,
                }
                for rid, r in self.responses.items()
            },
            "is_complete": self.is_complete,
        }

    @property
    def failed_ids(self) -> list[str]:
        return [rid for rid, r in self.responses.items() if not r.ok]


@runtime_checkable
class ResultStore(Protocol):
    """Persistence collaborator. The dispatcher itself never writes results."""

    def save_result(self, result: GenerationResult) -> str:
        ...

    def get_result(self, result_id: str) -> GenerationResult | None:
        ...

    def delete_result(self, result_id: str) -> bool:
        ...

    def get_all_results(self) -> Iterable[GenerationResult]:
        ...


def is_complete(responses: dict[str, Response]) -> bool:
    """False when any request was cut short by cancellation or close()."""
    return not any(r.error in _INTERRUPTED for r in responses.values())


def build_result(
    responses: dict[str, Response],
    *,
    template_id: str = "",
    template_name: str = "",
    placeholders: dict[str, Any] | None = None,
    result_id: str | None = None,
) -> GenerationResult:
    """Wrap a dispatcher response map for hand-off to a ResultStore."""
    return GenerationResult(
        id=result_id or str(uuid.uuid4()),
        template_id=template_id,
        template_name=template_name,
        placeholders=dict(placeholders or {}),
        responses=dict(responses),
        is_complete=is_complete(responses),
    )
