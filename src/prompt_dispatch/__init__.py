"""
Prompt Dispatch: rate-limited fan-out of prompts to AI providers.

Per-provider request-rate and concurrency ceilings, bounded retry,
per-request progress, cooperative cancellation and failed-request replay.
"""

__version__ = "0.1.0"

# Core API
from prompt_dispatch.config import DispatchConfig, ProviderConfig, load_config
from prompt_dispatch.dispatcher import RequestDispatcher
from prompt_dispatch.models import ProgressEvent, ProviderProfile, Request, Response
from prompt_dispatch.providers.base import (
    ConfigurationError,
    DispatchError,
    EngineClosedError,
    FailureType,
    ProviderClient,
)

# Building blocks (injectable into RequestDispatcher)
from prompt_dispatch.cancellation import CancelToken
from prompt_dispatch.concurrency import ConcurrencyGate
from prompt_dispatch.rate_limiter import RateLimiter
from prompt_dispatch.retry import RetryDecision, RetryPolicy
from prompt_dispatch.session import DispatchSession

# Observability and persistence boundary
from prompt_dispatch.results import GenerationResult, ResultStore, build_result
from prompt_dispatch.telemetry import DispatchEvent, EventSink

__all__ = [
    "__version__",
    # Core
    "RequestDispatcher",
    "load_config",
    "DispatchConfig",
    "ProviderConfig",
    "Request",
    "Response",
    "ProviderProfile",
    "ProgressEvent",
    "ProviderClient",
    "DispatchError",
    "ConfigurationError",
    "EngineClosedError",
    "FailureType",
    # Building blocks
    "CancelToken",
    "ConcurrencyGate",
    "RateLimiter",
    "RetryPolicy",
    "RetryDecision",
    "DispatchSession",
    # Observability / results
    "EventSink",
    "DispatchEvent",
    "GenerationResult",
    "ResultStore",
    "build_result",
]
