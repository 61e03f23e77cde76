"""Feedback prompt scheduling."""

from __future__ import annotations

import asyncio
import json
from collections import OrderedDict
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Protocol

import structlog

from .background import BackgroundTasks
from .completion_store import CompletionStore
from .hooks import HookBus, HookEvent
from .models import (
    CompletionRecord,
    DiagnosticEvent,
    PromptAction,
    PromptEvent,
    PromptMessage,
    TrackEvent,
)

logger = structlog.stdlib.get_logger(__name__)

CompletionHandler = Callable[[], None]
DisplayHandler = Callable[[str, PromptMessage, CompletionHandler], None]


class PromptEventSink(Protocol):
    """Receives prompt lifecycle events, usually the transport."""

    async def send_prompt_event(self, event: PromptEvent) -> None: ...


class PromptOutcome(StrEnum):
    """Result of handing a message to the scheduler."""

    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    DISPLAYED = "displayed"


class PromptState(StrEnum):
    """Per-prompt state."""

    RECEIVED = "received"
    VALIDATED = "validated"
    REJECTED = "rejected"
    SCHEDULED = "scheduled"
    DISPLAYED = "displayed"
    COMPLETED = "completed"


_ACTIVE_STATES = frozenset({PromptState.SCHEDULED, PromptState.DISPLAYED, PromptState.COMPLETED})

MAX_REJECTED_HISTORY = 256


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 0


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def parse_prompt_message(raw: Any) -> PromptMessage | None:
    """Parse a pushed prompt message; None if any field is invalid.

    Timestamps are epoch milliseconds. A JSON text is decoded first.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, Mapping):
        return None

    show_after = _timestamp(raw.get("showAfter"))
    show_before = _timestamp(raw.get("showBefore"))
    if (
        not _non_empty_str(raw.get("promptId"))
        or not _non_empty_str(raw.get("featureId"))
        or not _non_empty_str(raw.get("question"))
        or show_after is None
        or show_before is None
    ):
        return None

    return PromptMessage(
        prompt_id=raw["promptId"],
        feature_id=raw["featureId"],
        question=raw["question"],
        show_after=show_after,
        show_before=show_before,
    )


class PromptScheduler:
    """Decides once per prompt message whether, when and how to show it.

    Completed prompts are vetoed through the completion store. When the
    store fails, completions are tracked in memory for the session.
    """

    def __init__(
        self,
        user_id: str,
        store: CompletionStore,
        display: DisplayHandler,
        hooks: HookBus,
        *,
        event_sink: PromptEventSink | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._user_id = user_id
        self._store = store
        self._display = display
        self._hooks = hooks
        self._event_sink = event_sink
        self._clock = clock
        self._states: dict[str, PromptState] = {}
        self._rejected: OrderedDict[str, None] = OrderedDict()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._completed: set[str] = set()
        self._background = BackgroundTasks()
        self._closed = False

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def closed(self) -> bool:
        return self._closed

    def state(self, prompt_id: str) -> PromptState | None:
        state = self._states.get(prompt_id)
        if state is None and prompt_id in self._rejected:
            return PromptState.REJECTED
        return state

    def pending(self) -> list[str]:
        """Ids of prompts waiting for their window to open."""
        return list(self._timers)

    def on_message(self, raw: Any) -> PromptOutcome:
        """Handle one pushed message."""
        if self._closed:
            return PromptOutcome.REJECTED

        message = parse_prompt_message(raw)
        if message is None:
            logger.debug("dropping invalid feedback prompt message")
            return PromptOutcome.REJECTED

        prompt_id = message.prompt_id
        if self._states.get(prompt_id) in _ACTIVE_STATES:
            logger.info(
                "feedback prompt not shown",
                prompt_id=prompt_id,
                reason="already handled in this session",
            )
            return PromptOutcome.REJECTED
        self._rejected.pop(prompt_id, None)
        self._states[prompt_id] = PromptState.VALIDATED

        now = self._clock()
        if self._is_completed(prompt_id):
            return self._reject(prompt_id, "already completed")
        if now > message.show_before:
            return self._reject(prompt_id, "prompt window has passed")
        if now < message.show_after:
            return self._schedule(message, now)

        self._show(message)
        return PromptOutcome.DISPLAYED

    def _reject(self, prompt_id: str, reason: str) -> PromptOutcome:
        # only the most recent rejections are remembered
        self._states.pop(prompt_id, None)
        self._rejected[prompt_id] = None
        self._rejected.move_to_end(prompt_id)
        while len(self._rejected) > MAX_REJECTED_HISTORY:
            self._rejected.popitem(last=False)
        logger.info("feedback prompt not shown", prompt_id=prompt_id, reason=reason)
        return PromptOutcome.REJECTED

    def _schedule(self, message: PromptMessage, now: datetime) -> PromptOutcome:
        delay = (message.show_after - now).total_seconds()
        loop = asyncio.get_running_loop()
        self._timers[message.prompt_id] = loop.call_later(delay, self._fire, message)
        self._states[message.prompt_id] = PromptState.SCHEDULED
        logger.info(
            "feedback prompt scheduled",
            prompt_id=message.prompt_id,
            delay_seconds=round(delay, 3),
        )
        return PromptOutcome.SCHEDULED

    def _fire(self, message: PromptMessage) -> None:
        self._timers.pop(message.prompt_id, None)
        if self._closed or self._states.get(message.prompt_id) == PromptState.COMPLETED:
            return
        if self._is_completed(message.prompt_id):
            self._reject(message.prompt_id, "completed while scheduled")
            return
        if self._clock() > message.show_before:
            self._reject(message.prompt_id, "prompt window has passed")
            return
        self._show(message)

    def _show(self, message: PromptMessage) -> None:
        self._states[message.prompt_id] = PromptState.DISPLAYED
        self._emit(PromptAction.RECEIVED, message)
        self._emit(PromptAction.SHOWN, message)
        try:
            self._display(self._user_id, message, self._completion_handler(message))
        except Exception as e:
            logger.error(
                "feedback prompt display failed",
                prompt_id=message.prompt_id,
                error=str(e),
            )
            self._hooks.emit(HookEvent.ERROR, DiagnosticEvent(source="display", error=e))

    def _completion_handler(self, message: PromptMessage) -> CompletionHandler:
        done = False

        def complete() -> None:
            nonlocal done
            if done:
                return
            done = True
            self.mark_completed(message)

        return complete

    def mark_completed(self, message: PromptMessage) -> None:
        """Record completion of a prompt. Later calls are no-ops."""
        prompt_id = message.prompt_id
        if prompt_id in self._completed:
            return
        self._completed.add(prompt_id)
        handle = self._timers.pop(prompt_id, None)
        if handle is not None:
            handle.cancel()

        record = CompletionRecord(
            user_id=self._user_id,
            prompt_id=prompt_id,
            completed_at=self._clock(),
            expires_at=message.show_before,
        )
        try:
            self._store.set(record)
        except Exception as e:
            logger.warning(
                "failed to persist prompt completion, tracking in memory",
                prompt_id=prompt_id,
                error=str(e),
            )
        self._states[prompt_id] = PromptState.COMPLETED
        self._emit(PromptAction.COMPLETED, message)

    def _is_completed(self, prompt_id: str) -> bool:
        if prompt_id in self._completed:
            return True
        try:
            return self._store.get(self._user_id, prompt_id) is not None
        except Exception as e:
            logger.warning(
                "failed to read prompt completion, using session state",
                prompt_id=prompt_id,
                error=str(e),
            )
            return False

    def _emit(self, action: PromptAction, message: PromptMessage) -> None:
        event = PromptEvent(
            action=action,
            user_id=self._user_id,
            prompt_id=message.prompt_id,
            feature_id=message.feature_id,
            question=message.question,
        )
        self._hooks.emit(
            HookEvent.TRACK,
            TrackEvent(
                user_id=self._user_id,
                event_name=f"prompt-{action.value}",
                attributes={
                    "promptId": message.prompt_id,
                    "featureId": message.feature_id,
                    "question": message.question,
                },
            ),
        )
        if self._event_sink is not None:
            self._background.spawn(self._send(self._event_sink, event))

    async def _send(self, sink: PromptEventSink, event: PromptEvent) -> None:
        try:
            await sink.send_prompt_event(event)
        except Exception as e:
            logger.warning(
                "failed to send prompt event",
                action=event.action.value,
                prompt_id=event.prompt_id,
                error=str(e),
            )

    def close(self) -> None:
        """Tear down: cancel pending timers; nothing is displayed afterwards."""
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._background.cancel()
