"""Provider registration and discovery."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

logger = logging.getLogger("prompt_dispatch")

if TYPE_CHECKING:
    from prompt_dispatch.config import DispatchConfig, ProviderConfig, RequestDefaults
    from prompt_dispatch.providers.base import ProviderClient

_REGISTRY: dict[str, type] = {}
_ALIASES: dict[str, str] = {}


def register(name: str, provider_cls: type, *, aliases: Iterable[str] | None = None) -> None:
    """Register a provider class under the given name."""
    _REGISTRY[name] = provider_cls
    if aliases:
        for alias in aliases:
            _ALIASES[alias] = name


def register_alias(alias: str, target: str) -> None:
    """Register an additional lookup alias for an existing provider name."""
    _ALIASES[alias] = target


def get(name: str) -> type:
    """Retrieve a registered provider class by name or alias.

    Raises KeyError if the provider is not registered.
    """
    canonical = _ALIASES.get(name, name)
    if canonical not in _REGISTRY:
        raise KeyError(
            f"Provider {name!r} not registered. Available: {available()}"
        )
    return _REGISTRY[canonical]


def available() -> list[str]:
    """Return a list of all registered provider names and aliases."""
    return sorted(set(_REGISTRY.keys()) | set(_ALIASES.keys()))


def create_client(
    config: ProviderConfig,
    defaults: RequestDefaults | None = None,
    system_prompt: str = "",
) -> ProviderClient:
    """Instantiate the adapter registered for ``config.type``."""
    return get(config.type)(config, defaults, system_prompt)


def build_clients(config: DispatchConfig) -> dict[str, ProviderClient]:
    """One client per configured provider, keyed by provider name.

    Providers whose ``type`` has no registered adapter are skipped with a
    warning; their requests resolve to a configuration error at dispatch.
    """
    clients: dict[str, ProviderClient] = {}
    for name, pcfg in config.providers.items():
        try:
            provider_cls = get(pcfg.type)
        except KeyError:
            logger.warning(
                "provider.unregistered",
                extra={"event": "provider.unregistered", "provider": name, "type": pcfg.type},
            )
            continue
        clients[name] = provider_cls(pcfg, config.request_defaults, config.default_system_prompt)
    return clients


def _register_builtins() -> None:
    """Auto-register built-in provider adapters."""
    from prompt_dispatch.providers.http import AnthropicClient, GeminiClient, OllamaClient, OpenAIClient
    from prompt_dispatch.providers.mock import MockProvider

    register("mock", MockProvider)
    register("openai", OpenAIClient, aliases=("openai_http", "openrouter_http"))
    register("anthropic", AnthropicClient)
    register("gemini", GeminiClient)
    register("ollama", OllamaClient)


_register_builtins()
