"""Deterministic echo provider for tests, the doctor dry-run and CI."""

from __future__ import annotations

import asyncio
from typing import Any

from prompt_dispatch.config import ProviderConfig, RequestDefaults
from prompt_dispatch.models import Request, Response
from prompt_dispatch.providers.base import FailureType, TransientProviderError, format_error


class MockProvider:
    """Returns configurable fixed text. No I/O.

    Options are read from the provider's extra config keys:
        response_text   fixed completion (default echoes the prompt)
        fail            always return a PROVIDER_ERROR
        delay_seconds   sleep before answering
        hang            never answer
    """

    name = "mock"
    requires_api_key = False

    def __init__(
        self,
        config: ProviderConfig | None = None,
        defaults: RequestDefaults | None = None,
        system_prompt: str = "",
    ) -> None:
        self.options: dict[str, Any] = dict(config.raw) if config else {}
        self.calls: list[Request] = []
        self.closed = False

    async def invoke(self, request: Request) -> Response:
        self.calls.append(request)
        if self.options.get("hang"):
            await asyncio.Event().wait()
        delay = float(self.options.get("delay_seconds", 0))
        if delay:
            await asyncio.sleep(delay)

        if self.options.get("fail"):
            exc = TransientProviderError("mock failure", failure_type=FailureType.PROVIDER_ERROR)
            return Response(request_id=request.id, error=format_error(exc), failure_type=exc.failure_type)

        text = self.options.get("response_text", f"mock response for {request.prompt}")
        return Response(request_id=request.id, content=text)

    async def aclose(self) -> None:
        self.closed = True
