"""DispatchSession: run-state of one batch.

Every request id lives in exactly one of ``pending``, ``in_flight`` or
``completed``. ``completed`` only grows. All transitions take ``_lock``,
which is never held across an ``await``.
"""

from __future__ import annotations

import threading
from typing import Iterable

from prompt_dispatch.cancellation import CancelToken
from prompt_dispatch.models import CANCELLED_ERROR, Request, Response
from prompt_dispatch.providers.base import FailureType


class DispatchSession:
    """Owned by exactly one dispatcher call; discarded when it returns."""

    def __init__(self, requests: Iterable[Request], token: CancelToken) -> None:
        self.token = token
        self.requests: dict[str, Request] = {}
        for request in requests:
            if request.id in self.requests:
                raise ValueError(f"Duplicate request id in batch: {request.id!r}")
            self.requests[request.id] = request
        self.pending: dict[str, Request] = dict(self.requests)
        self.in_flight: dict[str, Request] = {}
        self.completed: dict[str, Response] = {}
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def is_done(self) -> bool:
        with self._lock:
            return len(self.completed) == len(self.requests)

    def counts(self) -> tuple[int, int, int]:
        """(pending, in_flight, completed) sizes."""
        with self._lock:
            return len(self.pending), len(self.in_flight), len(self.completed)

    def start(self, request_id: str) -> None:
        """pending → in_flight."""
        with self._lock:
            if request_id not in self.pending:
                raise RuntimeError(f"Request {request_id!r} is not pending")
            self.in_flight[request_id] = self.pending.pop(request_id)

    def requeue(self, request_id: str) -> None:
        """in_flight → pending, ahead of a retry."""
        with self._lock:
            if request_id not in self.in_flight:
                raise RuntimeError(f"Request {request_id!r} is not in flight")
            self.pending[request_id] = self.in_flight.pop(request_id)

    def resolve(self, request_id: str, response: Response) -> bool:
        """Move a request to completed. Returns False if it was already terminal."""
        with self._lock:
            if request_id in self.completed:
                return False
            if request_id not in self.requests:
                raise RuntimeError(f"Request {request_id!r} is not part of this session")
            self.pending.pop(request_id, None)
            self.in_flight.pop(request_id, None)
            self.completed[request_id] = response
            return True

    def cancel_remaining(self, error: str) -> list[Response]:
        """Force every non-terminal request to completed with ``error``."""
        failure_type = FailureType.CANCELLED if error == CANCELLED_ERROR else FailureType.CLOSED
        resolved: list[Response] = []
        with self._lock:
            for request_id in list(self.pending) + list(self.in_flight):
                response = Response(request_id=request_id, error=error, failure_type=failure_type)
                self.completed[request_id] = response
                resolved.append(response)
            self.pending.clear()
            self.in_flight.clear()
        return resolved

    def snapshot(self) -> dict[str, Response]:
        with self._lock:
            return dict(self.completed)
