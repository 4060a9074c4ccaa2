"""YAML config loader + dataclasses + API key resolution."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from prompt_dispatch.models import ProviderProfile

logger = logging.getLogger("prompt_dispatch")

CONFIG_PATH_ENV = "LLM_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config") / "llm-config.yaml"
DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful AI assistant tasked with generating responses based on the "
    "provided template. Respond only with the output based on the template and "
    "variables provided. Do not add any explanations, introductions, or additional "
    "text outside the template structure."
)


class ConfigError(ValueError):
    """Raised when a config file is missing, malformed, or invalid."""


@dataclass
class RateLimitConfig:
    requests_per_minute: int = 60
    max_concurrent: int = 5
    retry_delay_ms: int = 1000


@dataclass
class RequestDefaults:
    """Used when a Request omits a parameter."""

    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1.0

    def merged(self, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
            **parameters,
        }


@dataclass
class ProviderConfig:
    """Config for a single provider entry."""

    name: str                # YAML key (e.g. "ollama")
    type: str                # registry key (e.g. "openai")
    base_url: str = ""
    api_key: str = ""
    api_key_env: str | None = None
    port: int = 0
    protocol: str = "https"
    default_model: str = ""
    anthropic_version: str = ""
    rate_limiting: RateLimitConfig = field(default_factory=RateLimitConfig)
    raw: dict[str, Any] = field(default_factory=dict)  # adapter-specific extras

    @property
    def endpoint(self) -> str:
        """Absolute base URL, e.g. ``http://localhost:11434``."""
        url = self.base_url.rstrip("/")
        if "://" not in url:
            url = f"{self.protocol}://{url}"
        if self.port:
            url = f"{url}:{self.port}"
        return url

    def profile(self) -> ProviderProfile:
        return ProviderProfile(
            provider_id=self.name,
            requests_per_minute=self.rate_limiting.requests_per_minute,
            max_concurrent=self.rate_limiting.max_concurrent,
            retry_delay_ms=self.rate_limiting.retry_delay_ms,
        )


@dataclass
class DispatchConfig:
    """Top-level config object produced by load_config()."""

    default_provider: str
    providers: dict[str, ProviderConfig]
    request_defaults: RequestDefaults = field(default_factory=RequestDefaults)
    default_system_prompt: str = DEFAULT_SYSTEM_PROMPT
    request_timeout: float = 300.0
    max_attempts: int = 3

    def profiles(self) -> dict[str, ProviderProfile]:
        return {name: pcfg.profile() for name, pcfg in self.providers.items()}


def default_config() -> DispatchConfig:
    """Built-in providers used when no config file is supplied."""
    providers = {
        "openai": ProviderConfig(
            name="openai", type="openai",
            base_url="https://api.openai.com", default_model="gpt-4o",
        ),
        "anthropic": ProviderConfig(
            name="anthropic", type="anthropic",
            base_url="https://api.anthropic.com", anthropic_version="2023-06-01",
            default_model="claude-3-sonnet-20240229",
        ),
        "gemini": ProviderConfig(
            name="gemini", type="gemini",
            base_url="https://generativelanguage.googleapis.com", default_model="gemini-1.5-pro",
        ),
        "ollama": ProviderConfig(
            name="ollama", type="ollama",
            base_url="localhost", protocol="http", port=11434, default_model="llama2",
            rate_limiting=RateLimitConfig(requests_per_minute=300, max_concurrent=10, retry_delay_ms=500),
        ),
    }
    config = DispatchConfig(default_provider="gemini", providers=providers)
    apply_env_keys(config)
    return config


def load_config(path: str | Path | None = None) -> DispatchConfig:
    """Load and validate dispatch config from a YAML file.

    ``path`` defaults to ``$LLM_CONFIG_PATH``, then ``config/llm-config.yaml``.

    Config format::

        llm:
          default_provider: gemini
          providers:
            gemini:
              base_url: https://generativelanguage.googleapis.com
              api_key_env: GEMINI_API_KEY
              default_model: gemini-1.5-flash
              rate_limiting:
                requests_per_minute: 60
                max_concurrent: 5
                retry_delay_ms: 1000
          request_defaults:
            temperature: 0.7

    Raises:
        ConfigError: if the file is missing, invalid YAML, or fails validation.
    """
    if path is None:
        path = os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH
    path = Path(path)
    try:
        with open(path) as fh:
            data = yaml.safe_load(fh)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}")

    if not isinstance(data, dict) or "llm" not in data:
        raise ConfigError("Config must have a top-level 'llm' key")

    config = parse_config(data["llm"])
    logger.info(
        "config.loaded",
        extra={"event": "config.loaded", "path": str(path), "providers": sorted(config.providers)},
    )
    return config


def parse_config(llm: dict[str, Any]) -> DispatchConfig:
    """Build a DispatchConfig from the mapping under the ``llm`` key."""
    if not isinstance(llm, dict):
        raise ConfigError("'llm' must be a mapping")
    if not llm.get("providers"):
        raise ConfigError("Config missing required field: llm.providers")

    providers: dict[str, ProviderConfig] = {}
    for pname, pcfg in llm["providers"].items():
        if not isinstance(pcfg, dict):
            raise ConfigError(f"Provider {pname!r} must be a mapping")
        providers[pname] = _parse_provider(pname, pcfg)

    default_provider = llm.get("default_provider") or next(iter(providers))
    if default_provider not in providers:
        raise ConfigError(f"default_provider {default_provider!r} is not a configured provider")

    defaults = llm.get("request_defaults") or {}
    try:
        request_defaults = RequestDefaults(
            temperature=float(defaults.get("temperature", 0.7)),
            max_tokens=int(defaults.get("max_tokens", 1000)),
            top_p=float(defaults.get("top_p", 1.0)),
        )
        request_timeout = float(llm.get("request_timeout", 300.0))
        max_attempts = int(llm.get("max_attempts", 3))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid numeric value in llm settings: {exc}")
    if max_attempts < 1:
        raise ConfigError("llm.max_attempts must be >= 1")

    config = DispatchConfig(
        default_provider=default_provider,
        providers=providers,
        request_defaults=request_defaults,
        default_system_prompt=llm.get("default_system_prompt", DEFAULT_SYSTEM_PROMPT),
        request_timeout=request_timeout,
        max_attempts=max_attempts,
    )
    apply_env_keys(config)
    return config


_PROVIDER_KEYS = {
    "type", "base_url", "api_key", "api_key_env", "port", "protocol",
    "default_model", "anthropic_version", "rate_limiting",
}


def _parse_provider(pname: str, pcfg: dict[str, Any]) -> ProviderConfig:
    limits = pcfg.get("rate_limiting") or {}
    try:
        rate_limiting = RateLimitConfig(
            requests_per_minute=int(limits.get("requests_per_minute", 60)),
            max_concurrent=int(limits.get("max_concurrent", 5)),
            retry_delay_ms=int(limits.get("retry_delay_ms", 1000)),
        )
        port = int(pcfg.get("port", 0))
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Provider {pname!r} has an invalid numeric value: {exc}")

    if rate_limiting.requests_per_minute <= 0:
        raise ConfigError(f"Provider {pname!r}: requests_per_minute must be > 0")
    if rate_limiting.max_concurrent <= 0:
        raise ConfigError(f"Provider {pname!r}: max_concurrent must be > 0")
    if rate_limiting.retry_delay_ms < 0:
        raise ConfigError(f"Provider {pname!r}: retry_delay_ms must be >= 0")

    api_key_env = pcfg.get("api_key_env")
    api_key = pcfg.get("api_key") or ""
    if api_key_env and os.environ.get(api_key_env):
        api_key = os.environ[api_key_env]

    return ProviderConfig(
        name=pname,
        type=pcfg.get("type", pname),
        base_url=pcfg.get("base_url", ""),
        api_key=api_key,
        api_key_env=api_key_env,
        port=port,
        protocol=pcfg.get("protocol", "https"),
        default_model=pcfg.get("default_model", ""),
        anthropic_version=pcfg.get("anthropic_version", ""),
        rate_limiting=rate_limiting,
        raw={k: v for k, v in pcfg.items() if k not in _PROVIDER_KEYS},
    )


def apply_env_keys(config: DispatchConfig) -> None:
    """Apply ``LLM_<PROVIDER>_API_KEY`` and ``LLM_API_KEY`` overrides in place."""
    for pname, pcfg in config.providers.items():
        env_key = f"LLM_{pname.upper()}_API_KEY"
        if os.environ.get(env_key):
            pcfg.api_key = os.environ[env_key]
            logger.info(
                "config.env_key",
                extra={"event": "config.env_key", "provider": pname, "env_var": env_key},
            )
    default_key = os.environ.get("LLM_API_KEY")
    if default_key and config.default_provider in config.providers:
        config.providers[config.default_provider].api_key = default_key
