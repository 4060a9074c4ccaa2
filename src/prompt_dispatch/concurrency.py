"""Per-provider cap on simultaneous in-flight calls."""

from __future__ import annotations

import asyncio
import itertools
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from prompt_dispatch.cancellation import CancelToken
from prompt_dispatch.models import ProviderProfile
from prompt_dispatch.providers.base import ConfigurationError

_permit_ids = itertools.count(1)


@dataclass
class GatePermit:
    """Proof of one acquired slot. Must be released exactly once."""

    provider_id: str
    permit_id: int = field(default_factory=lambda: next(_permit_ids))
    released: bool = False
    semaphore: asyncio.Semaphore | None = field(default=None, repr=False, compare=False)


@dataclass
class _ProviderSlots:
    profile: ProviderProfile
    in_flight: int = 0
    _semaphore: asyncio.Semaphore | None = field(default=None, repr=False)
    _loop: asyncio.AbstractEventLoop | None = field(default=None, repr=False)

    def semaphore(self) -> asyncio.Semaphore:
        """The semaphore for the running loop; a new loop gets a fresh one."""
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.profile.max_concurrent)
            self._loop = loop
        return self._semaphore


class ConcurrencyGate:
    """Counted semaphore per provider.

    A gate serves one event loop at a time; reusing it from a later loop
    (a second ``asyncio.run``) starts that loop with every slot free.

    Usage:
        gate = ConcurrencyGate(profiles)
        async with gate.slot("openai", token):
            ...
    """

    def __init__(self, profiles: dict[str, ProviderProfile]) -> None:
        self._slots: dict[str, _ProviderSlots] = {
            pid: _ProviderSlots(profile=profile) for pid, profile in profiles.items()
        }

    def _get(self, provider_id: str) -> _ProviderSlots:
        try:
            return self._slots[provider_id]
        except KeyError:
            raise ConfigurationError(f"Unknown provider: {provider_id!r}") from None

    async def acquire(self, provider_id: str, token: CancelToken | None = None) -> GatePermit:
        """Suspend until a slot is free.

        Raises:
            ConfigurationError: unknown provider.
            RequestCancelledError: the token fired while waiting.
        """
        slots = self._get(provider_id)
        semaphore = slots.semaphore()
        if token is None:
            await semaphore.acquire()
        else:
            await token.race(semaphore.acquire())
        slots.in_flight += 1
        assert slots.in_flight <= slots.profile.max_concurrent
        return GatePermit(provider_id=provider_id, semaphore=semaphore)

    def release(self, provider_id: str, permit: GatePermit) -> None:
        if permit.provider_id != provider_id:
            raise ValueError(
                f"Permit {permit.permit_id} belongs to {permit.provider_id!r}, not {provider_id!r}"
            )
        if permit.released:
            raise RuntimeError(f"Permit {permit.permit_id} for {provider_id!r} released twice")
        slots = self._get(provider_id)
        permit.released = True
        slots.in_flight -= 1
        if permit.semaphore is not None:
            permit.semaphore.release()

    @asynccontextmanager
    async def slot(self, provider_id: str, token: CancelToken | None = None) -> AsyncIterator[GatePermit]:
        permit = await self.acquire(provider_id, token)
        try:
            yield permit
        finally:
            self.release(provider_id, permit)

    def in_flight(self, provider_id: str) -> int:
        return self._get(provider_id).in_flight
