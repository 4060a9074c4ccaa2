"""RequestDispatcher tests: fan-out, limits, retry, cancellation, replay, close."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from pathlib import Path

import pytest

from prompt_dispatch.config import load_config, parse_config
from prompt_dispatch.dispatcher import RequestDispatcher
from prompt_dispatch.models import ProgressEvent, ProviderProfile, Request, Response
from prompt_dispatch.providers.base import EngineClosedError, FailureType, TransientProviderError
from prompt_dispatch.rate_limiter import RateLimiter
from prompt_dispatch.retry import RetryPolicy
from prompt_dispatch.telemetry import DispatchEvent

FIXTURES = Path(__file__).parent / "fixtures"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FakeClient:
    """In-memory provider.

    ``outcomes`` are consumed one per call: a string becomes content, a
    Response is returned as-is, an exception is raised. Without outcomes the
    prompt is echoed. Ids in ``failing`` always error; ids in ``hanging``
    (or every id when ``hang=True``) never answer.
    """

    def __init__(self, name="fake", *, delay=0.0, outcomes=None, failing=(), hanging=(), hang=False):
        self.name = name
        self.delay = delay
        self.outcomes = list(outcomes or [])
        self.failing = set(failing)
        self.hanging = set(hanging)
        self.hang = hang
        self.calls: list[str] = []
        self.started_at: list[float] = []
        self.finished_at: list[float] = []
        self.active = 0
        self.peak = 0
        self.closed = False

    async def invoke(self, request: Request) -> Response:
        self.calls.append(request.id)
        self.started_at.append(time.monotonic())
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self.hang or request.id in self.hanging:
                await asyncio.Event().wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            if request.id in self.failing:
                return Response(
                    request_id=request.id,
                    error="Error: provider exploded",
                    failure_type=FailureType.PROVIDER_ERROR,
                )
            if self.outcomes:
                outcome = self.outcomes.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                if isinstance(outcome, Response):
                    return outcome
                return Response(request_id=request.id, content=outcome)
            return Response(request_id=request.id, content=f"reply to {request.prompt}")
        finally:
            self.active -= 1
            self.finished_at.append(time.monotonic())

    async def aclose(self) -> None:
        self.closed = True


def make_dispatcher(*clients, rpm=600, max_concurrent=5, retry_delay_ms=0, **kwargs) -> RequestDispatcher:
    profiles = {
        c.name: ProviderProfile(
            provider_id=c.name,
            requests_per_minute=rpm,
            max_concurrent=max_concurrent,
            retry_delay_ms=retry_delay_ms,
        )
        for c in clients
    }
    return RequestDispatcher(profiles, {c.name: c for c in clients}, **kwargs)


def reqs(provider: str, *ids: str) -> list[Request]:
    return [Request(id=i, provider_id=provider, prompt=f"prompt {i}") for i in ids]


def provider_error() -> Response:
    return Response(request_id="", error="Error: upstream 500", failure_type=FailureType.PROVIDER_ERROR)


# ---------------------------------------------------------------------------
# Batch fan-out
# ---------------------------------------------------------------------------


def test_send_requests_returns_every_id_across_providers():
    async def run():
        alpha, beta = FakeClient("alpha"), FakeClient("beta")
        dispatcher = make_dispatcher(alpha, beta)
        batch = reqs("alpha", "a1", "a2", "a3") + reqs("beta", "b1", "b2", "b3")
        seen = []
        responses = await dispatcher.send_requests(batch, lambda rid, content, error: seen.append(rid))
        await dispatcher.close()
        return batch, responses, seen

    batch, responses, seen = asyncio.run(run())

    assert list(responses) == [r.id for r in batch]
    assert all(r.ok for r in responses.values())
    assert responses["b2"].content == "reply to prompt b2"
    assert responses["a1"].attempts == 1
    assert sorted(seen) == sorted(r.id for r in batch)


def test_empty_batch_returns_empty_map():
    async def run():
        dispatcher = make_dispatcher(FakeClient("alpha"))
        return await dispatcher.send_requests([])

    assert asyncio.run(run()) == {}


def test_duplicate_request_ids_rejected():
    async def run():
        dispatcher = make_dispatcher(FakeClient("alpha"))
        await dispatcher.send_requests(reqs("alpha", "same", "same"))

    with pytest.raises(ValueError, match="Duplicate"):
        asyncio.run(run())


def test_unknown_provider_resolves_with_configuration_error():
    async def run():
        client = FakeClient("alpha")
        dispatcher = make_dispatcher(client)
        batch = reqs("alpha", "ok") + reqs("nowhere", "lost")
        return await dispatcher.send_requests(batch), client

    responses, client = asyncio.run(run())

    assert responses["ok"].ok
    assert responses["lost"].failure_type == FailureType.CONFIGURATION
    assert responses["lost"].error.startswith("Configuration Error:")
    assert responses["lost"].attempts == 0
    assert client.calls == ["ok"]


def test_failure_on_one_provider_does_not_affect_another():
    async def run():
        broken = FakeClient("broken", failing={"x1", "x2"})
        healthy = FakeClient("healthy")
        dispatcher = make_dispatcher(broken, healthy)
        batch = reqs("broken", "x1", "x2") + reqs("healthy", "h1", "h2")
        return await dispatcher.send_requests(batch)

    responses = asyncio.run(run())

    assert not responses["x1"].ok and not responses["x2"].ok
    assert responses["h1"].ok and responses["h2"].ok


# ---------------------------------------------------------------------------
# Rate and concurrency limits
# ---------------------------------------------------------------------------


def test_rate_limit_spaces_admissions_within_window():
    window = 0.2

    async def run():
        client = FakeClient("slowapi")
        profiles = {"slowapi": ProviderProfile("slowapi", requests_per_minute=2, max_concurrent=5, retry_delay_ms=0)}
        limiter = RateLimiter(profiles, window_seconds=window)
        dispatcher = RequestDispatcher(profiles, {"slowapi": client}, rate_limiter=limiter)
        t0 = time.monotonic()
        responses = await dispatcher.send_requests(reqs("slowapi", "a", "b", "c", "d", "e"))
        return responses, client, time.monotonic() - t0

    responses, client, elapsed = asyncio.run(run())

    assert all(r.ok for r in responses.values())
    # 5 requests at 2 per window: the fifth cannot start before two windows pass
    assert elapsed >= 2 * window - 0.05
    starts = sorted(client.started_at)
    for i in range(len(starts) - 2):
        assert starts[i + 2] - starts[i] >= window - 0.02


def test_concurrency_gate_caps_in_flight_calls():
    async def run():
        client = FakeClient("capped", delay=0.05)
        dispatcher = make_dispatcher(client, max_concurrent=2)
        responses = await dispatcher.send_requests(reqs("capped", *[str(i) for i in range(6)]))
        return responses, client

    responses, client = asyncio.run(run())

    assert all(r.ok for r in responses.values())
    assert client.peak == 2


def test_single_slot_provider_calls_never_overlap():
    async def run():
        client = FakeClient("serial", delay=0.03)
        dispatcher = make_dispatcher(client, max_concurrent=1)
        await dispatcher.send_requests(reqs("serial", "1", "2", "3"))
        return client

    client = asyncio.run(run())

    spans = sorted(zip(client.started_at, client.finished_at))
    assert len(spans) == 3
    for (_, end), (next_start, _) in zip(spans, spans[1:]):
        assert next_start >= end


def test_providers_limited_independently():
    async def run():
        narrow = FakeClient("narrow", delay=0.05)
        wide = FakeClient("wide", delay=0.05)
        profiles = {
            "narrow": ProviderProfile("narrow", requests_per_minute=600, max_concurrent=1, retry_delay_ms=0),
            "wide": ProviderProfile("wide", requests_per_minute=600, max_concurrent=4, retry_delay_ms=0),
        }
        dispatcher = RequestDispatcher(profiles, {"narrow": narrow, "wide": wide})
        batch = reqs("narrow", "n1", "n2", "n3") + reqs("wide", "w1", "w2", "w3", "w4")
        await dispatcher.send_requests(batch)
        return narrow, wide

    narrow, wide = asyncio.run(run())

    assert narrow.peak == 1
    assert wide.peak == 4


def test_dispatcher_reused_across_event_loops():
    serial = FakeClient("serial", delay=0.01)
    throttled = FakeClient("throttled")
    profiles = {
        "serial": ProviderProfile("serial", requests_per_minute=600, max_concurrent=1, retry_delay_ms=0),
        "throttled": ProviderProfile("throttled", requests_per_minute=1, max_concurrent=3, retry_delay_ms=0),
    }
    dispatcher = RequestDispatcher(
        profiles,
        {"serial": serial, "throttled": throttled},
        rate_limiter=RateLimiter(profiles, window_seconds=0.05),
    )
    batch = reqs("serial", "s1", "s2", "s3") + reqs("throttled", "t1", "t2", "t3")

    first = asyncio.run(dispatcher.send_requests(batch))
    second = asyncio.run(dispatcher.send_requests(batch))

    assert all(r.ok for r in first.values())
    assert all(r.ok for r in second.values()), {k: r.error for k, r in second.items()}
    assert serial.peak == 1


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def test_transient_failures_retried_until_success(caplog):
    caplog.set_level(logging.INFO, logger="prompt_dispatch")

    async def run():
        client = FakeClient("api", outcomes=[provider_error(), provider_error(), "third time lucky"])
        dispatcher = make_dispatcher(client)
        return await dispatcher.send_requests(reqs("api", "r1")), client

    responses, client = asyncio.run(run())

    assert responses["r1"].content == "third time lucky"
    assert responses["r1"].attempts == 3
    assert len(client.calls) == 3
    assert caplog.messages.count("dispatch.request.retry") == 2


def test_retries_exhausted_reports_last_error():
    async def run():
        client = FakeClient("api", failing={"r1"})
        dispatcher = make_dispatcher(client)
        responses = await dispatcher.send_requests(reqs("api", "r1"))
        return responses, client, dispatcher.get_failed_requests()

    responses, client, failed = asyncio.run(run())

    assert responses["r1"].error == "Error: provider exploded"
    assert responses["r1"].attempts == 3
    assert len(client.calls) == 3
    assert list(failed) == ["r1"]


def test_max_attempts_one_disables_retry():
    async def run():
        client = FakeClient("api", failing={"r1"})
        dispatcher = make_dispatcher(client, retry_policy=RetryPolicy(max_attempts=1))
        await dispatcher.send_requests(reqs("api", "r1"))
        return client

    assert len(asyncio.run(run()).calls) == 1


def test_raised_dispatch_error_becomes_error_response():
    async def run():
        client = FakeClient("api", outcomes=[TransientProviderError("upstream slow", failure_type=FailureType.TIMEOUT)])
        dispatcher = make_dispatcher(client, retry_policy=RetryPolicy(max_attempts=1))
        return await dispatcher.send_requests(reqs("api", "r1"))

    response = asyncio.run(run())["r1"]
    assert response.error == "Timeout: upstream slow"
    assert response.failure_type == FailureType.TIMEOUT


def test_unexpected_exception_becomes_error_response():
    async def run():
        client = FakeClient("api", outcomes=[RuntimeError("kaboom")])
        dispatcher = make_dispatcher(client, retry_policy=RetryPolicy(max_attempts=1))
        return await dispatcher.send_requests(reqs("api", "r1"))

    response = asyncio.run(run())["r1"]
    assert response.error == "Error: kaboom"
    assert response.failure_type == FailureType.UNKNOWN


def test_empty_content_reported_as_invalid_response():
    async def run():
        client = FakeClient("api", outcomes=[""])
        dispatcher = make_dispatcher(client, retry_policy=RetryPolicy(max_attempts=1))
        return await dispatcher.send_requests(reqs("api", "r1"))

    response = asyncio.run(run())["r1"]
    assert response.failure_type == FailureType.INVALID_RESPONSE
    assert response.error.startswith("Invalid Response:")


def test_request_timeout_bounds_each_attempt():
    async def run():
        client = FakeClient("api", hang=True)
        dispatcher = make_dispatcher(client, request_timeout=0.05, retry_policy=RetryPolicy(max_attempts=2))
        responses = await asyncio.wait_for(dispatcher.send_requests(reqs("api", "r1")), timeout=2)
        return responses, client

    responses, client = asyncio.run(run())

    assert responses["r1"].failure_type == FailureType.TIMEOUT
    assert responses["r1"].error.startswith("Timeout:")
    assert responses["r1"].attempts == 2
    assert len(client.calls) == 2


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancel_requests_resolves_hanging_batch():
    async def run():
        client = FakeClient("stuck", hang=True)
        dispatcher = make_dispatcher(client, max_concurrent=2)
        asyncio.get_running_loop().call_later(0.05, dispatcher.cancel_requests)
        responses = await asyncio.wait_for(
            dispatcher.send_requests(reqs("stuck", "1", "2", "3", "4")), timeout=2
        )
        return responses, dispatcher.get_failed_requests()

    responses, failed = asyncio.run(run())

    assert list(responses) == ["1", "2", "3", "4"]
    assert all(r.error == "cancelled" for r in responses.values())
    assert all(r.failure_type == FailureType.CANCELLED for r in responses.values())
    assert set(failed) == {"1", "2", "3", "4"}


def test_cancel_requests_from_another_thread():
    async def run():
        client = FakeClient("stuck", hang=True)
        dispatcher = make_dispatcher(client)
        timer = threading.Timer(0.05, dispatcher.cancel_requests)
        timer.start()
        try:
            return await asyncio.wait_for(dispatcher.send_requests(reqs("stuck", "1", "2")), timeout=2)
        finally:
            timer.cancel()

    responses = asyncio.run(run())
    assert all(r.error == "cancelled" for r in responses.values())


def test_cancel_during_retry_backoff():
    async def run():
        client = FakeClient("api", failing={"r1"})
        dispatcher = make_dispatcher(client, retry_delay_ms=5000)
        asyncio.get_running_loop().call_later(0.1, dispatcher.cancel_requests)
        t0 = time.monotonic()
        responses = await dispatcher.send_requests(reqs("api", "r1"))
        return responses, time.monotonic() - t0

    responses, elapsed = asyncio.run(run())

    assert responses["r1"].error == "cancelled"
    assert responses["r1"].attempts == 1
    assert elapsed < 2


def test_cancel_requests_without_session_is_noop():
    async def run():
        dispatcher = make_dispatcher(FakeClient("alpha"))
        dispatcher.cancel_requests()
        dispatcher.cancel_requests()
        return await dispatcher.send_requests(reqs("alpha", "after"))

    assert asyncio.run(run())["after"].ok


def test_cancel_issued_right_after_send_reaches_batch():
    async def run():
        client = FakeClient("stuck", hang=True)
        dispatcher = make_dispatcher(client)
        task = asyncio.ensure_future(dispatcher.send_requests(reqs("stuck", "1", "2")))
        dispatcher.cancel_requests()
        return await asyncio.wait_for(task, timeout=2), client

    responses, client = asyncio.run(run())

    assert all(r.error == "cancelled" for r in responses.values())
    assert all(r.attempts == 0 for r in responses.values())
    assert client.calls == []


def test_close_right_after_send_fails_batch_with_closed():
    async def run():
        dispatcher = make_dispatcher(FakeClient("stuck", hang=True))
        pending = dispatcher.send_requests(reqs("stuck", "1"))
        await dispatcher.close()
        return await asyncio.wait_for(pending, timeout=2)

    assert asyncio.run(run())["1"].error == "closed"


def test_session_active_from_call_until_done():
    async def run():
        dispatcher = make_dispatcher(FakeClient("alpha"))
        pending = dispatcher.send_requests(reqs("alpha", "1"))
        registered = dispatcher.get_status()["active_sessions"]
        await pending
        return registered, dispatcher.get_status()["active_sessions"]

    assert asyncio.run(run()) == (1, 0)


# ---------------------------------------------------------------------------
# Progress reporting
# ---------------------------------------------------------------------------


def test_progress_reported_exactly_once_per_request():
    async def run():
        client = FakeClient("api", failing={"bad"}, hanging={"slow"})
        dispatcher = make_dispatcher(client)
        counts: dict[str, int] = {}

        def on_progress(request_id, content, error):
            counts[request_id] = counts.get(request_id, 0) + 1

        asyncio.get_running_loop().call_later(0.1, dispatcher.cancel_requests)
        await dispatcher.send_requests(reqs("api", "good", "bad", "slow"), on_progress)
        return counts

    assert asyncio.run(run()) == {"good": 1, "bad": 1, "slow": 1}


def test_async_progress_callback_awaited():
    async def run():
        dispatcher = make_dispatcher(FakeClient("api"))
        seen = []

        async def on_progress(request_id, content, error):
            await asyncio.sleep(0)
            seen.append((request_id, content, error))

        await dispatcher.send_requests(reqs("api", "r1"), on_progress)
        return seen

    assert asyncio.run(run()) == [("r1", "reply to prompt r1", None)]


def test_failing_progress_callback_does_not_break_batch():
    def on_progress(*_):
        raise RuntimeError("observer broke")

    async def run():
        dispatcher = make_dispatcher(FakeClient("api"))
        return await dispatcher.send_requests(reqs("api", "r1", "r2"), on_progress)

    responses = asyncio.run(run())
    assert all(r.ok for r in responses.values())


def test_event_sink_receives_lifecycle_events():
    class ListSink:
        def __init__(self):
            self.events: list[DispatchEvent] = []

        def emit(self, event: DispatchEvent) -> None:
            self.events.append(event)

    sink = ListSink()

    async def run():
        dispatcher = make_dispatcher(FakeClient("api"), event_sink=sink)
        await dispatcher.send_requests(reqs("api", "r1"))

    asyncio.run(run())

    names = [e.event for e in sink.events]
    assert names == ["dispatch.request.start", "dispatch.request.success"]
    assert sink.events[0].request_id == "r1"
    assert sink.events[0].data["provider"] == "api"


def test_broken_event_sink_is_ignored():
    class BrokenSink:
        def emit(self, event):
            raise RuntimeError("sink down")

    async def run():
        dispatcher = make_dispatcher(FakeClient("api"), event_sink=BrokenSink())
        return await dispatcher.send_requests(reqs("api", "r1"))

    assert asyncio.run(run())["r1"].ok


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def test_stream_requests_yields_one_event_per_request():
    async def run():
        dispatcher = make_dispatcher(FakeClient("api", failing={"b"}), retry_policy=RetryPolicy(max_attempts=1))
        return [e async for e in dispatcher.stream_requests(reqs("api", "a", "b", "c"))]

    events = asyncio.run(run())

    assert all(isinstance(e, ProgressEvent) for e in events)
    assert sorted(e.request_id for e in events) == ["a", "b", "c"]
    by_id = {e.request_id: e for e in events}
    assert by_id["a"].content == "reply to prompt a"
    assert by_id["b"].error == "Error: provider exploded"


def test_stream_with_small_buffer_and_slow_consumer():
    async def run():
        dispatcher = make_dispatcher(FakeClient("api"), progress_buffer=1)
        seen = []
        async for event in dispatcher.stream_requests(reqs("api", "1", "2", "3", "4", "5")):
            await asyncio.sleep(0.01)
            seen.append(event.request_id)
        return seen

    assert sorted(asyncio.run(run())) == ["1", "2", "3", "4", "5"]


def test_leaving_stream_early_cancels_batch():
    async def run():
        client = FakeClient("api", hanging={"2", "3"})
        dispatcher = make_dispatcher(client)
        async with contextlib.aclosing(dispatcher.stream_requests(reqs("api", "1", "2", "3"))) as stream:
            async for event in stream:
                first = event
                break
        return first, dispatcher.get_status()

    first, status = asyncio.run(run())

    assert first.request_id == "1"
    assert status["active_sessions"] == 0


# ---------------------------------------------------------------------------
# Failed-request replay
# ---------------------------------------------------------------------------


def test_failed_index_holds_only_failed_provider_request():
    async def run():
        gemini = FakeClient("gemini")
        ollama = FakeClient("ollama", failing={"local"})
        dispatcher = make_dispatcher(gemini, ollama)
        batch = reqs("gemini", "hosted") + reqs("ollama", "local")
        await dispatcher.send_requests(batch)
        return batch, dispatcher.get_failed_requests()

    batch, failed = asyncio.run(run())

    assert failed == {"local": batch[1]}


def test_retry_failed_requests_only_redispatches_errors():
    async def run():
        client = FakeClient("api", failing={"b", "c"})
        dispatcher = make_dispatcher(client)
        batch = reqs("api", "a", "b", "c")
        first = await dispatcher.send_requests(batch)
        client.failing = {"c"}
        calls_before = len(client.calls)
        merged = await dispatcher.retry_failed_requests(batch, first)
        return first, merged, client.calls[calls_before:], dispatcher.get_failed_requests()

    first, merged, replayed, failed = asyncio.run(run())

    assert list(merged) == ["a", "b", "c"]
    assert merged["a"] is first["a"]
    assert merged["b"].ok
    assert not merged["c"].ok
    assert "a" not in replayed
    assert set(failed) == {"c"}


def test_retry_failed_requests_dispatches_missing_entries():
    async def run():
        client = FakeClient("api")
        dispatcher = make_dispatcher(client)
        batch = reqs("api", "a", "d")
        existing = {"a": Response(request_id="a", content="kept")}
        return await dispatcher.retry_failed_requests(batch, existing), client

    merged, client = asyncio.run(run())

    assert merged["a"].content == "kept"
    assert merged["d"].content == "reply to prompt d"
    assert client.calls == ["d"]


def test_retry_failed_requests_nothing_to_do():
    async def run():
        client = FakeClient("api")
        dispatcher = make_dispatcher(client)
        existing = {"a": Response(request_id="a", content="kept")}
        return await dispatcher.retry_failed_requests(reqs("api", "a"), existing), existing, client

    merged, existing, client = asyncio.run(run())

    assert merged == existing
    assert merged["a"] is existing["a"]
    assert client.calls == []


def test_retry_request_updates_failed_index():
    async def run():
        client = FakeClient("api", failing={"b"})
        dispatcher = make_dispatcher(client)
        batch = reqs("api", "a", "b")
        await dispatcher.send_requests(batch)
        before = dispatcher.get_failed_requests()
        client.failing = set()
        response = await dispatcher.retry_request(batch[1])
        return before, response, dispatcher.get_failed_requests()

    before, response, after = asyncio.run(run())

    assert list(before) == ["b"]
    assert response.ok
    assert after == {}


def test_new_batch_replaces_failed_index():
    async def run():
        client = FakeClient("api", failing={"x"})
        dispatcher = make_dispatcher(client)
        await dispatcher.send_requests(reqs("api", "x"))
        await dispatcher.send_requests(reqs("api", "y"))
        return dispatcher.get_failed_requests()

    assert asyncio.run(run()) == {}


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


def test_close_is_idempotent_and_rejects_later_use():
    async def run():
        client = FakeClient("api", failing={"1"})
        dispatcher = make_dispatcher(client, retry_policy=RetryPolicy(max_attempts=1))
        await dispatcher.send_requests(reqs("api", "1"))
        await dispatcher.close()
        await dispatcher.close()

        with pytest.raises(EngineClosedError):
            await dispatcher.send_requests(reqs("api", "2"))
        with pytest.raises(EngineClosedError):
            await dispatcher.retry_request(reqs("api", "2")[0])
        with pytest.raises(EngineClosedError):
            await dispatcher.retry_failed_requests(reqs("api", "2"), {})
        with pytest.raises(EngineClosedError):
            async for _ in dispatcher.stream_requests(reqs("api", "2")):
                pass
        return client, dispatcher

    client, dispatcher = asyncio.run(run())

    assert client.closed
    assert dispatcher.closed
    assert dispatcher.get_failed_requests() == {}


def test_close_fails_in_flight_work_with_closed():
    async def run():
        client = FakeClient("stuck", hang=True)
        dispatcher = make_dispatcher(client)
        task = asyncio.ensure_future(dispatcher.send_requests(reqs("stuck", "1", "2")))
        await asyncio.sleep(0.05)
        await dispatcher.close()
        responses = await asyncio.wait_for(task, timeout=2)
        return responses, dispatcher.get_failed_requests()

    responses, failed = asyncio.run(run())

    assert all(r.error == "closed" for r in responses.values())
    assert all(r.failure_type == FailureType.CLOSED for r in responses.values())
    assert failed == {}


# ---------------------------------------------------------------------------
# Construction from config
# ---------------------------------------------------------------------------


def test_from_config_dispatches_through_mock_providers(clean_env):
    config = load_config(FIXTURES / "dispatch_test.yaml")

    async def run():
        dispatcher = RequestDispatcher.from_config(config)
        batch = reqs("mock", "m1") + reqs("flaky", "f1")
        try:
            return await dispatcher.send_requests(batch)
        finally:
            await dispatcher.close()

    responses = asyncio.run(run())

    assert responses["m1"].content == "fixture reply"
    assert responses["f1"].error == "Error: mock failure"
    assert responses["f1"].attempts == 2


def test_from_config_unregistered_type_fails_only_its_requests(clean_env):
    config = parse_config({
        "providers": {
            "local": {"type": "mock"},
            "weird": {"type": "carrier_pigeon", "base_url": "coop"},
        },
    })

    async def run():
        dispatcher = RequestDispatcher.from_config(config)
        try:
            return await dispatcher.send_requests(reqs("local", "ok") + reqs("weird", "lost"))
        finally:
            await dispatcher.close()

    responses = asyncio.run(run())

    assert responses["ok"].ok
    assert responses["lost"].failure_type == FailureType.CONFIGURATION
    assert "weird" in responses["lost"].error
    assert responses["lost"].attempts == 0
