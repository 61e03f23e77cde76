"""Hook bus: synchronous publish/subscribe for client events."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

logger = structlog.stdlib.get_logger(__name__)

Handler = Callable[[Any], None]


class HookEvent:
    """Hook event names."""

    CHECK: str = "check"
    FEATURES_UPDATED: str = "featuresUpdated"
    TRACK: str = "track"
    ERROR: str = "error"

    ALL: frozenset[str] = frozenset({CHECK, FEATURES_UPDATED, TRACK, ERROR})


@dataclass(frozen=True)
class HookError:
    """A handler failure collected during a dispatch."""

    event: str
    handler: Handler
    error: Exception


class HookBus:
    """Dispatches events to handlers in registration order."""

    def __init__(self, error_handler: Callable[[HookError], None] | None = None) -> None:
        self._handlers: dict[str, list[Handler]] = {name: [] for name in HookEvent.ALL}
        self._error_handler = error_handler

    def _handlers_for(self, event: str) -> list[Handler]:
        try:
            return self._handlers[event]
        except KeyError:
            raise ValueError(f"unknown hook event: {event}") from None

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a function that unregisters it."""
        self._handlers_for(event).append(handler)

        def unsubscribe() -> None:
            self.off(event, handler)

        return unsubscribe

    def off(self, event: str, handler: Handler) -> None:
        """Remove the first registration of handler, if any."""
        handlers = self._handlers_for(event)
        for i, registered in enumerate(handlers):
            if registered == handler:
                del handlers[i]
                return

    def emit(self, event: str, payload: Any) -> list[HookError]:
        """Dispatch payload to the handlers registered when the call starts.

        A failing handler does not stop the dispatch. Failures are passed to
        the bus error handler and returned.
        """
        errors: list[HookError] = []
        for handler in list(self._handlers_for(event)):
            try:
                handler(payload)
            except Exception as e:
                errors.append(HookError(event=event, handler=handler, error=e))
        for failure in errors:
            self._report(failure)
        return errors

    def _report(self, failure: HookError) -> None:
        if self._error_handler is None:
            logger.warning(
                "hook handler failed",
                hook_event=failure.event,
                error=str(failure.error),
            )
            return
        try:
            self._error_handler(failure)
        except Exception as e:
            logger.warning("hook error handler failed", error=str(e))
