"""InMemoryFlagTransport implementation."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

from .exceptions import FeatureClientError, FeatureClientErrorCodes
from .fingerprint import fingerprint
from .models import CheckEvent, EvaluationContext, FlagRecord, FlagSet, PromptEvent


class InMemoryFlagTransport:
    """Scripted transport for tests and offline hosts."""

    def __init__(self, flags: Iterable[FlagRecord] = ()) -> None:
        self._default = FlagSet(flags)
        self._by_fingerprint: dict[str, FlagSet] = {}
        self._failure: Exception | None = None
        self._gate: asyncio.Event | None = None
        self.fetch_count = 0
        self.check_events: list[CheckEvent] = []
        self.prompt_events: list[PromptEvent] = []
        self.channel: str | None = None

    def set_flags(
        self,
        flags: Iterable[FlagRecord],
        context: EvaluationContext | None = None,
    ) -> None:
        """Set the flags returned for context, or for every context."""
        if context is None:
            self._default = FlagSet(flags)
        else:
            self._by_fingerprint[fingerprint(context)] = FlagSet(flags)

    def fail_with(self, error: Exception | None) -> None:
        """Make every call raise error until cleared with None."""
        self._failure = error

    def hold(self) -> None:
        """Block fetches until release() is called."""
        self._gate = asyncio.Event()

    def release(self) -> None:
        if self._gate is not None:
            self._gate.set()
            self._gate = None

    def _raise_if_failing(self) -> None:
        if self._failure is not None:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.TRANSPORT_FAILURE,
                message=str(self._failure),
                cause=self._failure,
            )

    async def fetch_flags(self, context: EvaluationContext) -> FlagSet:
        self.fetch_count += 1
        if self._gate is not None:
            await self._gate.wait()
        self._raise_if_failing()
        return self._by_fingerprint.get(fingerprint(context), self._default)

    async def send_check_event(self, event: CheckEvent) -> None:
        self._raise_if_failing()
        self.check_events.append(event)

    async def send_prompt_event(self, event: PromptEvent) -> None:
        self._raise_if_failing()
        self.prompt_events.append(event)

    async def init_prompting(self, user_id: str) -> str | None:
        self._raise_if_failing()
        return self.channel
