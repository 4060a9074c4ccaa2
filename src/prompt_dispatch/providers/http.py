"""HTTP provider adapters: OpenAI-compatible, Anthropic and Gemini.

Each adapter keeps one ``httpx.AsyncClient`` (and its connection pool) for
its whole life; ``aclose()`` releases it. Ollama is served by the
OpenAI-compatible adapter through its ``/v1/chat/completions`` endpoint.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from prompt_dispatch.config import ProviderConfig, RequestDefaults
from prompt_dispatch.models import Request, Response
from prompt_dispatch.providers.base import (
    ConfigurationError,
    DispatchError,
    FailureType,
    TransientProviderError,
    classify_status,
    format_error,
)

logger = logging.getLogger("prompt_dispatch")

DEFAULT_HTTP_TIMEOUT = 120.0


class HTTPProviderClient:
    """Shared request/response plumbing for JSON-over-HTTP providers."""

    name = "http"
    requires_api_key = True

    def __init__(
        self,
        config: ProviderConfig,
        defaults: RequestDefaults | None = None,
        system_prompt: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.defaults = defaults or RequestDefaults()
        self.system_prompt = system_prompt
        timeout = float(config.raw.get("timeout", DEFAULT_HTTP_TIMEOUT))
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    def build(self, request: Request, model: str, params: dict[str, Any]) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return (url, headers, payload)."""
        raise NotImplementedError

    def parse(self, data: dict[str, Any]) -> str:
        """Extract completion text from a JSON body."""
        raise NotImplementedError

    # ------------------------------------------------------------------
    # ProviderClient
    # ------------------------------------------------------------------

    def validate_config(self) -> None:
        if not self.config.base_url:
            raise ConfigurationError(f"Provider {self.config.name!r} missing 'base_url'")
        if self.requires_api_key and not self.config.api_key:
            raise ConfigurationError(f"API key missing for provider: {self.config.name}")

    def system_instruction(self, request: Request) -> str:
        return request.system_instruction or self.system_prompt

    async def invoke(self, request: Request) -> Response:
        try:
            text = await self.complete(request)
        except DispatchError as exc:
            return Response(request_id=request.id, error=format_error(exc), failure_type=exc.failure_type)
        return Response(request_id=request.id, content=text)

    async def complete(self, request: Request) -> str:
        """Send one request and return the completion text. Raises DispatchError."""
        self.validate_config()
        model = request.model or self.config.default_model
        if not model:
            raise ConfigurationError(f"No model given and no default_model for {self.config.name!r}")
        params = self.defaults.merged(request.parameters)
        url, headers, payload = self.build(request, model, params)

        try:
            resp = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransientProviderError(
                f"Request timed out: {exc}", failure_type=FailureType.TIMEOUT, cause=exc
            ) from exc
        except httpx.RequestError as exc:
            raise TransientProviderError(
                f"Could not connect to {self.config.endpoint}: {exc}",
                failure_type=FailureType.CONNECTION,
                cause=exc,
            ) from exc

        error = classify_status(resp.status_code, resp.text)
        if error is not None:
            raise error

        try:
            data = resp.json()
        except ValueError as exc:
            raise TransientProviderError(
                "Provider returned a non-JSON body",
                failure_type=FailureType.INVALID_RESPONSE,
                cause=exc,
            ) from exc

        text = self.parse(data)
        if not text:
            raise TransientProviderError(
                f"{self.name} returned an empty completion",
                failure_type=FailureType.INVALID_RESPONSE,
            )
        return text

    async def aclose(self) -> None:
        await self._client.aclose()


def _invalid(exc: Exception) -> TransientProviderError:
    return TransientProviderError(
        f"Unexpected response structure: {exc}",
        failure_type=FailureType.INVALID_RESPONSE,
        cause=exc,
    )


class OpenAIClient(HTTPProviderClient):
    """OpenAI-compatible /v1/chat/completions (OpenAI, OpenRouter, Ollama)."""

    name = "openai"

    def build(self, request, model, params):
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        messages = []
        system = self.system_instruction(request)
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": request.prompt})
        payload = {"model": model, "messages": messages, **params}
        return f"{self.config.endpoint}/v1/chat/completions", headers, payload

    def parse(self, data):
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as exc:
            raise _invalid(exc) from exc


class OllamaClient(OpenAIClient):
    """Local Ollama server; no API key required."""

    name = "ollama"
    requires_api_key = False


class AnthropicClient(HTTPProviderClient):
    """Anthropic /v1/messages."""

    name = "anthropic"
    default_version = "2023-06-01"

    def build(self, request, model, params):
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key,
            "anthropic-version": self.config.anthropic_version or self.default_version,
        }
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": params.pop("max_tokens"),
            "messages": [{"role": "user", "content": request.prompt}],
            **params,
        }
        system = self.system_instruction(request)
        if system:
            payload["system"] = system
        return f"{self.config.endpoint}/v1/messages", headers, payload

    def parse(self, data):
        try:
            blocks = data["content"]
            return "".join(b.get("text", "") for b in blocks if b.get("type") == "text")
        except (KeyError, TypeError, AttributeError) as exc:
            raise _invalid(exc) from exc


class GeminiClient(HTTPProviderClient):
    """Gemini models/{model}:generateContent."""

    name = "gemini"

    def build(self, request, model, params):
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.config.api_key}
        generation_config: dict[str, Any] = {
            "temperature": params.pop("temperature"),
            "maxOutputTokens": params.pop("max_tokens"),
            "topP": params.pop("top_p"),
        }
        generation_config.update(params)
        payload: dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            "generationConfig": generation_config,
        }
        system = self.system_instruction(request)
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        return f"{self.config.endpoint}/v1beta/models/{model}:generateContent", headers, payload

    def parse(self, data):
        block_reason = (data.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            raise TransientProviderError(
                f"Prompt blocked by Gemini: {block_reason}",
                failure_type=FailureType.INVALID_RESPONSE,
            )
        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "".join(p.get("text", "") for p in parts)
        except (KeyError, IndexError, TypeError, AttributeError) as exc:
            raise _invalid(exc) from exc
