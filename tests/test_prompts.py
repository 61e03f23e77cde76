"""PromptScheduler unit tests."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from k1s0_feature_client import (
    CompletionRecord,
    CompletionStore,
    FeatureClientError,
    FeatureClientErrorCodes,
    HookBus,
    HookEvent,
    InMemoryCompletionStore,
    InMemoryFlagTransport,
    PromptAction,
    PromptMessage,
    PromptOutcome,
    PromptScheduler,
    PromptState,
    parse_prompt_message,
)
from k1s0_feature_client.prompts import MAX_REJECTED_HISTORY

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def make_message(
    prompt_id: str = "p1",
    show_after: datetime = NOW - timedelta(seconds=1),
    show_before: datetime = NOW + timedelta(hours=1),
) -> dict[str, Any]:
    return {
        "promptId": prompt_id,
        "featureId": "f1",
        "question": "How do you like the new navigation?",
        "showAfter": _ms(show_after),
        "showBefore": _ms(show_before),
    }


class Display:
    """Records display calls."""

    def __init__(self, complete_immediately: bool = False) -> None:
        self.calls: list[tuple[str, PromptMessage]] = []
        self.handlers: list[Any] = []
        self._complete_immediately = complete_immediately

    def __call__(self, user_id: str, message: PromptMessage, complete: Any) -> None:
        self.calls.append((user_id, message))
        self.handlers.append(complete)
        if self._complete_immediately:
            complete()


class CountingStore(InMemoryCompletionStore):
    def __init__(self) -> None:
        super().__init__()
        self.set_calls = 0

    def set(self, record: CompletionRecord) -> None:
        self.set_calls += 1
        super().set(record)


class FailingStore(CompletionStore):
    def _fail(self) -> FeatureClientError:
        return FeatureClientError(
            code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
            message="storage unavailable",
        )

    def get(self, user_id: str, prompt_id: str) -> CompletionRecord | None:
        raise self._fail()

    def set(self, record: CompletionRecord) -> None:
        raise self._fail()

    def delete(self, user_id: str, prompt_id: str) -> bool:
        raise self._fail()


def make_scheduler(
    store: CompletionStore | None = None,
    display: Any = None,
    *,
    event_sink: Any = None,
    clock: Any = lambda: NOW,
) -> tuple[PromptScheduler, Any, dict[str, list[Any]]]:
    hooks = HookBus()
    events: dict[str, list[Any]] = {HookEvent.TRACK: [], HookEvent.ERROR: []}
    hooks.on(HookEvent.TRACK, events[HookEvent.TRACK].append)
    hooks.on(HookEvent.ERROR, events[HookEvent.ERROR].append)
    display = display if display is not None else Display()
    scheduler = PromptScheduler(
        "u1",
        store if store is not None else InMemoryCompletionStore(),
        display,
        hooks,
        event_sink=event_sink,
        clock=clock,
    )
    return scheduler, display, events


def test_parse_prompt_message_from_json_text() -> None:
    message = parse_prompt_message(json.dumps(make_message()))
    assert message == PromptMessage(
        prompt_id="p1",
        feature_id="f1",
        question="How do you like the new navigation?",
        show_after=NOW - timedelta(seconds=1),
        show_before=NOW + timedelta(hours=1),
    )


async def test_open_window_displays_synchronously() -> None:
    """A message inside its window is displayed before on_message returns."""
    scheduler, display, events = make_scheduler()

    outcome = scheduler.on_message(make_message())

    assert outcome == PromptOutcome.DISPLAYED
    assert len(display.calls) == 1
    user_id, message = display.calls[0]
    assert user_id == "u1"
    assert message.prompt_id == "p1"
    assert scheduler.state("p1") == PromptState.DISPLAYED
    assert [e.event_name for e in events[HookEvent.TRACK]] == ["prompt-received", "prompt-shown"]
    assert events[HookEvent.TRACK][0].attributes == {
        "promptId": "p1",
        "featureId": "f1",
        "question": "How do you like the new navigation?",
    }


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        [],
        {},
        {**make_message(), "promptId": ""},
        {**make_message(), "question": None},
        {**make_message(), "showAfter": True},
        {**make_message(), "showBefore": "tomorrow"},
    ],
)
async def test_invalid_message_rejected(raw: Any) -> None:
    scheduler, display, events = make_scheduler()

    assert scheduler.on_message(raw) == PromptOutcome.REJECTED

    assert display.calls == []
    assert scheduler.pending() == []
    assert events[HookEvent.TRACK] == []
    assert events[HookEvent.ERROR] == []


async def test_passed_window_rejected() -> None:
    scheduler, display, events = make_scheduler()
    raw = make_message(
        show_after=NOW - timedelta(hours=2),
        show_before=NOW - timedelta(hours=1),
    )

    assert scheduler.on_message(raw) == PromptOutcome.REJECTED
    assert display.calls == []
    assert scheduler.state("p1") == PromptState.REJECTED
    assert events[HookEvent.TRACK] == []


async def test_already_completed_rejected() -> None:
    store = InMemoryCompletionStore()
    store.set(
        CompletionRecord(
            user_id="u1",
            prompt_id="p1",
            completed_at=NOW - timedelta(days=1),
            expires_at=NOW + timedelta(days=1),
        )
    )
    scheduler, display, _ = make_scheduler(store)

    assert scheduler.on_message(make_message()) == PromptOutcome.REJECTED
    assert display.calls == []


async def test_future_window_is_scheduled() -> None:
    scheduler, display, _ = make_scheduler()
    raw = make_message(show_after=NOW + timedelta(milliseconds=50))

    assert scheduler.on_message(raw) == PromptOutcome.SCHEDULED
    assert display.calls == []
    assert scheduler.pending() == ["p1"]
    assert scheduler.state("p1") == PromptState.SCHEDULED

    await asyncio.sleep(0.1)

    assert len(display.calls) == 1
    assert scheduler.pending() == []
    assert scheduler.state("p1") == PromptState.DISPLAYED


async def test_completion_before_timer_prevents_display() -> None:
    """A prompt completed elsewhere while scheduled is not shown."""
    store = InMemoryCompletionStore()
    scheduler, display, _ = make_scheduler(store)
    scheduler.on_message(make_message(show_after=NOW + timedelta(milliseconds=50)))

    store.set(
        CompletionRecord(
            user_id="u1",
            prompt_id="p1",
            completed_at=NOW,
            expires_at=NOW + timedelta(hours=1),
        )
    )
    await asyncio.sleep(0.1)

    assert display.calls == []
    assert scheduler.state("p1") == PromptState.REJECTED


async def test_window_closing_before_timer_prevents_display() -> None:
    now = [NOW]
    scheduler, display, _ = make_scheduler(clock=lambda: now[0])
    scheduler.on_message(
        make_message(
            show_after=NOW + timedelta(milliseconds=50),
            show_before=NOW + timedelta(minutes=1),
        )
    )

    now[0] = NOW + timedelta(hours=1)
    await asyncio.sleep(0.1)

    assert display.calls == []
    assert scheduler.state("p1") == PromptState.REJECTED


async def test_completing_scheduled_prompt_cancels_timer() -> None:
    """A prompt completed while scheduled stays completed and is not shown."""
    scheduler, display, _ = make_scheduler()
    raw = make_message(show_after=NOW + timedelta(milliseconds=50))
    assert scheduler.on_message(raw) == PromptOutcome.SCHEDULED

    message = parse_prompt_message(raw)
    assert message is not None
    scheduler.mark_completed(message)
    assert scheduler.pending() == []

    await asyncio.sleep(0.1)

    assert display.calls == []
    assert scheduler.state("p1") == PromptState.COMPLETED


async def test_rejected_history_is_bounded() -> None:
    scheduler, _, _ = make_scheduler()
    past = NOW - timedelta(minutes=1)
    for i in range(MAX_REJECTED_HISTORY + 10):
        raw = make_message(f"old-{i}", show_after=past, show_before=past)
        assert scheduler.on_message(raw) == PromptOutcome.REJECTED

    assert scheduler.state("old-0") is None
    assert scheduler.state(f"old-{MAX_REJECTED_HISTORY + 9}") == PromptState.REJECTED
    assert len(scheduler._rejected) == MAX_REJECTED_HISTORY
    assert scheduler._states == {}


async def test_completion_handler_is_idempotent() -> None:
    """Calling the completion handler twice writes one record."""
    store = CountingStore()
    scheduler, display, events = make_scheduler(store)
    scheduler.on_message(make_message())

    complete = display.handlers[0]
    complete()
    complete()

    assert store.set_calls == 1
    record = store.get("u1", "p1")
    assert record is not None
    assert record.completed_at == NOW
    assert record.expires_at == NOW + timedelta(hours=1)
    assert scheduler.state("p1") == PromptState.COMPLETED
    names = [e.event_name for e in events[HookEvent.TRACK]]
    assert names.count("prompt-completed") == 1


async def test_duplicate_message_rejected() -> None:
    scheduler, display, _ = make_scheduler()

    assert scheduler.on_message(make_message()) == PromptOutcome.DISPLAYED
    assert scheduler.on_message(make_message()) == PromptOutcome.REJECTED
    assert len(display.calls) == 1
    assert scheduler.state("p1") == PromptState.DISPLAYED


async def test_store_failure_falls_back_to_memory() -> None:
    """Completions survive in memory when the store fails."""
    scheduler, display, _ = make_scheduler(FailingStore())
    raw = make_message(show_after=NOW + timedelta(milliseconds=50))
    assert scheduler.on_message(raw) == PromptOutcome.SCHEDULED

    message = parse_prompt_message(raw)
    assert message is not None
    scheduler.mark_completed(message)
    await asyncio.sleep(0.1)

    assert display.calls == []
    assert scheduler.state("p1") == PromptState.COMPLETED
    assert scheduler.on_message(raw) == PromptOutcome.REJECTED


async def test_store_failure_still_displays() -> None:
    scheduler, display, _ = make_scheduler(FailingStore(), Display(complete_immediately=True))

    assert scheduler.on_message(make_message()) == PromptOutcome.DISPLAYED
    assert len(display.calls) == 1
    assert scheduler.state("p1") == PromptState.COMPLETED


async def test_display_failure_is_reported() -> None:
    def broken_display(user_id: str, message: PromptMessage, complete: Any) -> None:
        raise RuntimeError("widget crashed")

    scheduler, _, events = make_scheduler(display=broken_display)

    assert scheduler.on_message(make_message()) == PromptOutcome.DISPLAYED
    assert [e.source for e in events[HookEvent.ERROR]] == ["display"]


async def test_close_cancels_pending_prompts() -> None:
    scheduler, display, _ = make_scheduler()
    scheduler.on_message(make_message(show_after=NOW + timedelta(milliseconds=50)))

    scheduler.close()
    await asyncio.sleep(0.1)

    assert scheduler.closed is True
    assert display.calls == []
    assert scheduler.pending() == []
    assert scheduler.on_message(make_message("p2")) == PromptOutcome.REJECTED


async def test_prompt_events_sent_to_sink() -> None:
    sink = InMemoryFlagTransport()
    scheduler, _, _ = make_scheduler(
        display=Display(complete_immediately=True), event_sink=sink
    )

    scheduler.on_message(make_message())
    await asyncio.sleep(0.01)

    assert [e.action for e in sink.prompt_events] == [
        PromptAction.RECEIVED,
        PromptAction.SHOWN,
        PromptAction.COMPLETED,
    ]
    assert all(e.user_id == "u1" and e.prompt_id == "p1" for e in sink.prompt_events)


async def test_sink_failure_is_swallowed() -> None:
    sink = InMemoryFlagTransport()
    sink.fail_with(RuntimeError("network down"))
    scheduler, display, _ = make_scheduler(event_sink=sink)

    assert scheduler.on_message(make_message()) == PromptOutcome.DISPLAYED
    await asyncio.sleep(0.01)

    assert len(display.calls) == 1
    assert sink.prompt_events == []
