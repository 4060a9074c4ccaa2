"""RequestDispatcher: drives batches of requests to terminal responses.

Per request: gate slot → rate-limit admission → provider call (raced
against the session's cancel token) → retry policy on failure → terminal.
Slots are released before a retry delay starts. Per-request failures end
up in the returned map and never escape a batch call.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import threading
import time
import weakref
from dataclasses import replace
from typing import Any, AsyncIterator, Awaitable, Callable, Coroutine, Iterable

from prompt_dispatch.cancellation import CancelToken
from prompt_dispatch.concurrency import ConcurrencyGate
from prompt_dispatch.config import DispatchConfig
from prompt_dispatch.models import (
    CANCELLED_ERROR,
    CLOSED_ERROR,
    ProgressEvent,
    ProviderProfile,
    Request,
    Response,
)
from prompt_dispatch.providers.base import (
    ConfigurationError,
    DispatchError,
    EngineClosedError,
    FailureType,
    ProviderClient,
    RequestCancelledError,
    format_error,
)
from prompt_dispatch.providers.registry import build_clients
from prompt_dispatch.rate_limiter import RateLimiter
from prompt_dispatch.retry import RetryPolicy
from prompt_dispatch.session import DispatchSession
from prompt_dispatch.telemetry import (
    DispatchEvent,
    EventSink,
    log_event,
    record_error,
    record_success,
    start_attempt,
)

logger = logging.getLogger("prompt_dispatch")

ProgressCallback = Callable[[str, str, "str | None"], "Awaitable[None] | None"]


class RequestDispatcher:
    """Fan requests out to providers within their rate and concurrency limits.

    Usage:
        dispatcher = RequestDispatcher.from_config(load_config())
        responses = await dispatcher.send_requests(requests, on_progress)
        await dispatcher.close()
    """

    def __init__(
        self,
        profiles: dict[str, ProviderProfile],
        clients: dict[str, ProviderClient],
        retry_policy: RetryPolicy | None = None,
        event_sink: EventSink | None = None,
        request_timeout: float = 300.0,
        rate_limiter: RateLimiter | None = None,
        gate: ConcurrencyGate | None = None,
        progress_buffer: int = 64,
    ) -> None:
        self._profiles = dict(profiles)
        self._clients = dict(clients)
        self._retry = retry_policy or RetryPolicy()
        self._event_sink = event_sink
        self._timeout = request_timeout
        self._limiter = rate_limiter or RateLimiter(self._profiles)
        self._gate = gate or ConcurrencyGate(self._profiles)
        self._progress_buffer = progress_buffer
        # a call whose coroutine is dropped unawaited must not pin its session
        self._sessions: weakref.WeakSet[DispatchSession] = weakref.WeakSet()
        self._sessions_lock = threading.Lock()
        self._failed: dict[str, Request] = {}
        self._closed = False

    @classmethod
    def from_config(cls, config: DispatchConfig, **kwargs: Any) -> RequestDispatcher:
        """Build profiles, provider clients and retry policy from a loaded config."""
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=config.max_attempts))
        kwargs.setdefault("request_timeout", config.request_timeout)
        return cls(config.profiles(), build_clients(config), **kwargs)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _emit(self, event: str, request_id: str, **data: Any) -> None:
        """Emit a DispatchEvent to the EventSink. Swallows all exceptions."""
        if self._event_sink is not None:
            try:
                self._event_sink.emit(DispatchEvent(event=event, request_id=request_id, data=data))
            except Exception:
                pass

    def _ensure_open(self) -> None:
        if self._closed:
            raise EngineClosedError("Dispatcher is closed")

    async def _report(self, on_progress: ProgressCallback | None, response: Response) -> None:
        if on_progress is None:
            return
        try:
            result = on_progress(response.request_id, response.content, response.error)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.warning(
                "dispatch.progress.error",
                extra={"event": "dispatch.progress.error", "request_id": response.request_id},
                exc_info=True,
            )

    def _cancelled(self, request: Request, token: CancelToken, attempts: int) -> Response:
        error = token.error()
        logger.info(
            "dispatch.request.cancelled",
            extra={
                "event": "dispatch.request.cancelled",
                "request_id": request.id,
                "provider": request.provider_id,
                "reason": str(error),
            },
        )
        self._emit("dispatch.request.cancelled", request.id, reason=str(error))
        return Response(request_id=request.id, error=str(error), failure_type=error.failure_type, attempts=attempts)

    async def _invoke(self, client: ProviderClient, request: Request) -> Response:
        """One provider call, normalised to a Response."""
        try:
            response = await asyncio.wait_for(client.invoke(request), timeout=self._timeout)
        except asyncio.TimeoutError:
            return Response(
                request_id=request.id,
                error=f"Timeout: no response within {self._timeout:g}s",
                failure_type=FailureType.TIMEOUT,
            )
        except DispatchError as exc:
            return Response(request_id=request.id, error=format_error(exc), failure_type=exc.failure_type)
        except Exception as exc:
            logger.warning(
                "dispatch.provider.raised",
                extra={"event": "dispatch.provider.raised", "request_id": request.id},
                exc_info=True,
            )
            return Response(request_id=request.id, error=f"Error: {exc}", failure_type=FailureType.UNKNOWN)

        if response.error is None and not response.content:
            return Response(
                request_id=request.id,
                error="Invalid Response: provider returned empty content",
                failure_type=FailureType.INVALID_RESPONSE,
            )
        if response.error is not None and response.failure_type is None:
            response = replace(response, failure_type=FailureType.UNKNOWN)
        return replace(response, request_id=request.id)

    async def _pipeline(self, session: DispatchSession, request: Request) -> Response:
        token = session.token
        profile = self._profiles.get(request.provider_id)
        client = self._clients.get(request.provider_id)
        if profile is None or client is None:
            if profile is None:
                exc = ConfigurationError(f"unknown provider {request.provider_id!r}")
            else:
                exc = ConfigurationError(f"no client available for provider {request.provider_id!r}")
            return Response(request_id=request.id, error=format_error(exc), failure_type=exc.failure_type)

        attempt = 0
        while True:
            attempt += 1
            if token.cancelled:
                return self._cancelled(request, token, attempt - 1)
            try:
                async with self._gate.slot(request.provider_id, token):
                    await self._limiter.acquire(request.provider_id, token)
                    session.start(request.id)
                    record = start_attempt(request, attempt)
                    self._emit("dispatch.request.start", request.id, provider=request.provider_id, attempt=attempt)
                    t0 = time.monotonic()
                    response = await token.race(self._invoke(client, request))
            except RequestCancelledError:
                return self._cancelled(request, token, attempt)
            except ConfigurationError as exc:
                return Response(request_id=request.id, error=format_error(exc), failure_type=exc.failure_type)

            elapsed_ms = (time.monotonic() - t0) * 1000
            response.attempts = attempt
            if response.ok:
                record_success(record, elapsed_ms=elapsed_ms)
                self._emit("dispatch.request.success", request.id, provider=request.provider_id, elapsed_ms=elapsed_ms)
                return response

            record_error(record, response, elapsed_ms=elapsed_ms)
            self._emit(
                "dispatch.request.error",
                request.id,
                provider=request.provider_id,
                attempt=attempt,
                failure_type=response.failure_type.value if response.failure_type else None,
            )
            decision = self._retry.should_retry(attempt, response, profile.retry_delay_ms)
            if not decision.retry:
                return response

            session.requeue(request.id)
            logger.info(
                "dispatch.request.retry",
                extra={
                    "event": "dispatch.request.retry",
                    "request_id": request.id,
                    "provider": request.provider_id,
                    "attempt": attempt,
                    "max_attempts": self._retry.max_attempts,
                    "delay": decision.delay,
                },
            )
            self._emit("dispatch.request.retry", request.id, attempt=attempt, delay=decision.delay)
            if await token.sleep(decision.delay):
                return self._cancelled(request, token, attempt)

    async def _drive(
        self, session: DispatchSession, request: Request, on_progress: ProgressCallback | None
    ) -> None:
        try:
            response = await self._pipeline(session, request)
        except Exception as exc:
            logger.exception(
                "dispatch.request.crashed",
                extra={"event": "dispatch.request.crashed", "request_id": request.id},
            )
            response = Response(request_id=request.id, error=f"Error: {exc}", failure_type=FailureType.UNKNOWN)
        if session.resolve(request.id, response):
            await self._report(on_progress, response)

    async def _run_session(
        self, session: DispatchSession, on_progress: ProgressCallback | None
    ) -> dict[str, Response]:
        token = session.token
        requests = list(session.requests.values())
        log_event(
            "dispatch.batch.start",
            count=len(requests),
            providers=sorted({r.provider_id for r in requests}),
        )
        try:
            await asyncio.gather(*(self._drive(session, r, on_progress) for r in requests))
        finally:
            with self._sessions_lock:
                self._sessions.discard(session)

        for response in session.cancel_remaining(token.reason or CANCELLED_ERROR):
            await self._report(on_progress, response)

        completed = session.snapshot()
        failed = sum(1 for r in completed.values() if not r.ok)
        log_event(
            "dispatch.batch.complete",
            count=len(completed),
            failed=failed,
            cancelled=token.cancelled,
        )
        return {r.id: completed[r.id] for r in requests}

    def _update_failed(
        self, requests: list[Request], responses: dict[str, Response], rebuild: bool = False
    ) -> None:
        """Record which requests ended in error. A closed dispatcher keeps an empty index."""
        if self._closed:
            return
        failed = {} if rebuild else dict(self._failed)
        for request in requests:
            if responses[request.id].ok:
                failed.pop(request.id, None)
            else:
                failed[request.id] = request
        self._failed = failed

    def _open_session(self, requests: Iterable[Request]) -> DispatchSession:
        """Register a session before anything is awaited.

        cancel_requests() and close() reach it from the moment the public
        call returns, even if its coroutine has not started yet.
        """
        self._ensure_open()
        session = DispatchSession(requests, CancelToken())
        with self._sessions_lock:
            self._sessions.add(session)
        return session

    async def _send(
        self,
        session: DispatchSession,
        on_progress: ProgressCallback | None,
        rebuild: bool = False,
    ) -> dict[str, Response]:
        responses = await self._run_session(session, on_progress)
        self._update_failed(list(session.requests.values()), responses, rebuild=rebuild)
        return responses

    async def _stream(self, session: DispatchSession) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._progress_buffer)

        async def on_progress(request_id: str, content: str, error: str | None) -> None:
            await queue.put(ProgressEvent(request_id, content, error))

        producer = asyncio.ensure_future(self._send(session, on_progress, rebuild=True))
        try:
            while True:
                getter = asyncio.ensure_future(queue.get())
                done, _ = await asyncio.wait({getter, producer}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                    continue
                getter.cancel()
                while not queue.empty():
                    yield queue.get_nowait()
                producer.result()
                return
        finally:
            if not producer.done():
                session.token.cancel()
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def send_requests(
        self,
        requests: Iterable[Request],
        on_progress: ProgressCallback | None = None,
    ) -> Coroutine[Any, Any, dict[str, Response]]:
        """Dispatch a batch; awaiting the result gives every request's terminal Response.

        ``on_progress(request_id, content, error)`` fires once per request as
        it resolves; it may be a plain function or a coroutine function.

        The batch is registered when this is called, so a cancel_requests()
        issued before the coroutine first runs still cancels it.

        Raises (at call time):
            EngineClosedError: the dispatcher was closed.
            ValueError: two requests share an id.
        """
        return self._send(self._open_session(requests), on_progress, rebuild=True)

    def stream_requests(self, requests: Iterable[Request]) -> AsyncIterator[ProgressEvent]:
        """Dispatch a batch and yield ProgressEvents as requests resolve.

        Events pass through a bounded queue; a slow consumer blocks the
        producers. Leaving the iteration early cancels the batch.
        """
        return self._stream(self._open_session(requests))

    def cancel_requests(self) -> None:
        """Cancel every active session. Idempotent; never blocks."""
        with self._sessions_lock:
            sessions = list(self._sessions)
        for session in sessions:
            if session.token.cancel(CANCELLED_ERROR):
                pending, in_flight, _ = session.counts()
                log_event("dispatch.batch.cancel", pending=pending, in_flight=in_flight)

    def retry_request(
        self, request: Request, on_progress: ProgressCallback | None = None
    ) -> Coroutine[Any, Any, Response]:
        """Run one request through the full pipeline outside any batch."""
        session = self._open_session([request])

        async def run() -> Response:
            responses = await self._send(session, on_progress)
            return responses[request.id]

        return run()

    def retry_failed_requests(
        self,
        requests: Iterable[Request],
        existing_responses: dict[str, Response],
        on_progress: ProgressCallback | None = None,
    ) -> Coroutine[Any, Any, dict[str, Response]]:
        """Re-dispatch the requests whose existing response errored or is missing.

        Returns ``existing_responses`` with those entries replaced; every other
        entry is passed through as the same object.
        """
        self._ensure_open()
        to_retry = [
            r for r in requests
            if r.id not in existing_responses or existing_responses[r.id].error is not None
        ]
        session = self._open_session(to_retry) if to_retry else None
        merged = dict(existing_responses)

        async def run() -> dict[str, Response]:
            if session is not None:
                merged.update(await self._send(session, on_progress))
            return merged

        return run()

    def get_failed_requests(self) -> dict[str, Request]:
        """Snapshot of requests whose last terminal Response carried an error."""
        return dict(self._failed)

    @property
    def closed(self) -> bool:
        return self._closed

    def get_status(self) -> dict:
        with self._sessions_lock:
            active = len(self._sessions)
        return {
            "active_sessions": active,
            "failed_requests": len(self._failed),
            "rate_limits": self._limiter.get_all_stats(),
            "in_flight": {pid: self._gate.in_flight(pid) for pid in self._profiles},
            "closed": self._closed,
        }

    async def close(self) -> None:
        """Fail pending work with "closed" and release provider connection pools.

        Irreversible; later dispatch calls raise EngineClosedError.
        """
        if self._closed:
            return
        self._closed = True
        with self._sessions_lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.token.cancel(CLOSED_ERROR)
        for name, client in self._clients.items():
            try:
                await client.aclose()
            except Exception:
                logger.warning(
                    "dispatch.client.close_failed",
                    extra={"event": "dispatch.client.close_failed", "provider": name},
                    exc_info=True,
                )
        self._failed = {}
        log_event("dispatch.closed", providers=sorted(self._clients))
