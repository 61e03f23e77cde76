"""EvaluationCache: per-context flag cache with stale-while-revalidate."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from .background import BackgroundTasks
from .fingerprint import fingerprint
from .flag_cache_store import FlagCacheStore
from .hooks import HookBus, HookEvent
from .models import (
    CacheEntry,
    CheckEvent,
    DiagnosticEvent,
    EvaluationContext,
    FlagCacheRecord,
    FlagRecord,
    FlagSet,
    FlagsUpdatedEvent,
)
from .rate_limiter import RateLimiter
from .transport import FlagTransport

logger = structlog.stdlib.get_logger(__name__)

DEFAULT_TIMEOUT_MS = 4000
DEFAULT_FRESHNESS_MS = 60_000
DEFAULT_EXPIRE_MS = 30 * 24 * 60 * 60 * 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResolveOptions:
    """Options of a single resolve call."""

    fallback: Sequence[FlagRecord] = ()
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    stale_while_revalidate: bool = True


class _InFlightFetch:
    __slots__ = ("fingerprint", "sequence", "fallback", "task", "cancelled")

    def __init__(
        self, fingerprint: str, sequence: int, fallback: Sequence[FlagRecord] = ()
    ) -> None:
        self.fingerprint = fingerprint
        self.sequence = sequence
        self.fallback = fallback
        self.task: asyncio.Task[FlagSet | None] | None = None
        self.cancelled = False


class EvaluationCache:
    """Resolves flags for evaluation contexts.

    Entries are keyed by context fingerprint and replaced wholesale by each
    successful fetch. At most one fetch per fingerprint is in flight; callers
    that need the same fingerprint share it. Fetch failures never reach the
    caller: a stale entry or the fallback flags are served instead.

    With a ``store``, fetched flags are written through to it and a context
    with no entry in memory is seeded from it, so flags survive a restart.
    Local overrides are applied to every returned flag set.
    """

    def __init__(
        self,
        transport: FlagTransport,
        hooks: HookBus,
        rate_limiter: RateLimiter,
        *,
        store: FlagCacheStore | None = None,
        freshness_ms: int = DEFAULT_FRESHNESS_MS,
        expire_ms: int = DEFAULT_EXPIRE_MS,
        offline: bool = False,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._transport = transport
        self._hooks = hooks
        self._rate_limiter = rate_limiter
        self._flag_store = store
        self._freshness_seconds = freshness_ms / 1000
        self._expire_seconds = expire_ms / 1000
        self._offline = offline
        self._clock = clock
        self._wall_clock = wall_clock
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, _InFlightFetch] = {}
        self._background = BackgroundTasks()
        self._sequence = 0
        self._active: str | None = None
        self._last: tuple[str, EvaluationContext] | None = None
        self._overrides = self._load_overrides()

    def entry(self, context: EvaluationContext) -> CacheEntry | None:
        """Return the cache entry of context, if any."""
        return self._entries.get(fingerprint(context))

    @property
    def overrides(self) -> dict[str, bool]:
        return dict(self._overrides)

    def set_context(self, context: EvaluationContext) -> None:
        """Switch the active context.

        The previous context's entry is evicted and its in-flight fetch is
        cancelled so that it can never be stored.
        """
        fp = fingerprint(context)
        if self._active is not None and self._active != fp:
            self._evict(self._active)
        self._active = fp
        self._last = (fp, context)

    def _evict(self, fp: str) -> None:
        self._entries.pop(fp, None)
        in_flight = self._in_flight.pop(fp, None)
        if in_flight is not None:
            in_flight.cancelled = True
            if in_flight.task is not None:
                in_flight.task.cancel()
        logger.debug("evicted flags", fingerprint=fp)

    async def resolve(
        self,
        context: EvaluationContext,
        options: ResolveOptions | None = None,
    ) -> FlagSet:
        """Return the flags of context with local overrides applied.

        Fresh entries are returned without network access. Stale entries
        are returned at once and revalidated in the background when
        ``stale_while_revalidate`` is set. Otherwise the fetch is raced
        against ``timeout_ms``; on timeout the fallback flags are returned
        and the fetch keeps running.
        """
        flags = await self._resolve(context, options or ResolveOptions())
        return self._apply_overrides(flags)

    async def _resolve(self, context: EvaluationContext, options: ResolveOptions) -> FlagSet:
        fp = fingerprint(context)
        self._last = (fp, context)

        entry = self._entries.get(fp) or self._load(fp, context)
        if entry is not None and not entry.is_stale(self._clock()):
            logger.debug("serving cached flags", fingerprint=fp)
            return entry.flags

        if self._offline:
            return entry.flags if entry is not None else FlagSet(options.fallback)

        task = self._ensure_fetch(fp, context, options.fallback)
        if entry is not None and options.stale_while_revalidate:
            logger.debug("serving stale flags while revalidating", fingerprint=fp)
            return entry.flags

        done, _ = await asyncio.wait({task}, timeout=options.timeout_ms / 1000)
        if task in done:
            if not task.cancelled():
                flags = task.result()
                if flags is not None:
                    return flags
        else:
            logger.info(
                "flag fetch timed out",
                fingerprint=fp,
                timeout_ms=options.timeout_ms,
            )

        current = self._entries.get(fp)
        if current is not None:
            return current.flags
        return FlagSet(options.fallback)

    def _ensure_fetch(
        self, fp: str, context: EvaluationContext, fallback: Sequence[FlagRecord]
    ) -> asyncio.Task[FlagSet | None]:
        in_flight = self._in_flight.get(fp)
        if in_flight is not None and in_flight.task is not None:
            logger.debug("joining in-flight fetch", fingerprint=fp)
            return in_flight.task

        self._sequence += 1
        in_flight = _InFlightFetch(fp, self._sequence, fallback)
        task = asyncio.create_task(self._fetch(in_flight, context))
        task.add_done_callback(lambda _: self._fetch_done(in_flight))
        in_flight.task = task
        self._in_flight[fp] = in_flight
        return task

    def _fetch_done(self, in_flight: _InFlightFetch) -> None:
        if self._in_flight.get(in_flight.fingerprint) is in_flight:
            del self._in_flight[in_flight.fingerprint]

    async def _fetch(
        self, in_flight: _InFlightFetch, context: EvaluationContext
    ) -> FlagSet | None:
        try:
            flags = await self._transport.fetch_flags(context)
        except Exception as e:
            logger.warning(
                "error fetching flags",
                fingerprint=in_flight.fingerprint,
                error=str(e),
            )
            self._hooks.emit(HookEvent.ERROR, DiagnosticEvent(source="fetch_flags", error=e))
            return None
        if in_flight.cancelled:
            return None
        return self._store(in_flight, context, flags)

    def _store(
        self, in_flight: _InFlightFetch, context: EvaluationContext, flags: FlagSet
    ) -> FlagSet:
        fp = in_flight.fingerprint
        current = self._entries.get(fp)
        if current is not None and current.sequence > in_flight.sequence:
            logger.debug(
                "discarding out-of-order fetch",
                fingerprint=fp,
                sequence=in_flight.sequence,
            )
            return current.flags

        now = self._clock()
        self._entries[fp] = CacheEntry(
            context=context,
            flags=flags,
            fetched_at=now,
            stale_at=now + self._freshness_seconds,
            sequence=in_flight.sequence,
            fallback=FlagSet(in_flight.fallback) if in_flight.fallback else None,
        )
        self._persist(fp, flags)
        self._hooks.emit(
            HookEvent.FEATURES_UPDATED,
            FlagsUpdatedEvent(fingerprint=fp, flags=self._apply_overrides(flags)),
        )
        return flags

    def _load(self, fp: str, context: EvaluationContext) -> CacheEntry | None:
        if self._flag_store is None:
            return None
        try:
            record = self._flag_store.get(fp)
        except Exception as e:
            logger.warning("error reading persisted flags", fingerprint=fp, error=str(e))
            self._hooks.emit(HookEvent.ERROR, DiagnosticEvent(source="load_flags", error=e))
            return None
        if record is None:
            return None

        # persisted times are wall clock, entries use the monotonic clock
        wall_now = self._wall_clock()
        now = self._clock()
        entry = CacheEntry(
            context=context,
            flags=record.flags,
            fetched_at=now - (wall_now - record.fetched_at).total_seconds(),
            stale_at=now + (record.stale_at - wall_now).total_seconds(),
            sequence=0,
        )
        self._entries[fp] = entry
        logger.debug("loaded persisted flags", fingerprint=fp, stale=entry.is_stale(now))
        return entry

    def _persist(self, fp: str, flags: FlagSet) -> None:
        if self._flag_store is None:
            return
        now = self._wall_clock()
        record = FlagCacheRecord(
            fingerprint=fp,
            flags=flags,
            fetched_at=now,
            stale_at=now + timedelta(seconds=self._freshness_seconds),
            expire_at=now + timedelta(seconds=self._expire_seconds),
        )
        try:
            self._flag_store.set(record)
        except Exception as e:
            logger.warning("error persisting flags", fingerprint=fp, error=str(e))
            self._hooks.emit(HookEvent.ERROR, DiagnosticEvent(source="persist_flags", error=e))

    def _load_overrides(self) -> dict[str, bool]:
        if self._flag_store is None:
            return {}
        try:
            return dict(self._flag_store.load_overrides())
        except Exception as e:
            logger.warning("error reading flag overrides", error=str(e))
            return {}

    def set_override(self, flag_key: str, enabled: bool | None) -> None:
        """Force flag_key on or off locally. None removes the override.

        Raises:
            ValueError: if enabled is neither a boolean nor None.
        """
        if enabled is not None and not isinstance(enabled, bool):
            raise ValueError("override must be a boolean or None")
        if enabled is None:
            self._overrides.pop(flag_key, None)
        else:
            self._overrides[flag_key] = enabled

        if self._flag_store is not None:
            try:
                self._flag_store.save_overrides(self._overrides)
            except Exception as e:
                logger.warning("error persisting flag overrides", error=str(e))
                self._hooks.emit(
                    HookEvent.ERROR, DiagnosticEvent(source="persist_overrides", error=e)
                )

        if self._last is not None:
            fp, _ = self._last
            entry = self._entries.get(fp)
            if entry is not None:
                self._hooks.emit(
                    HookEvent.FEATURES_UPDATED,
                    FlagsUpdatedEvent(fingerprint=fp, flags=self._apply_overrides(entry.flags)),
                )

    def _apply_overrides(self, flags: FlagSet) -> FlagSet:
        if not self._overrides:
            return flags
        records = dict(flags)
        for key, enabled in self._overrides.items():
            current = flags.get(key)
            if current is None:
                records[key] = FlagRecord(key=key, is_enabled=enabled)
            else:
                records[key] = dataclasses.replace(current, is_enabled=enabled)
        return FlagSet(records.values())

    def track(self, flag_key: str) -> None:
        """Report a check of flag_key for the last resolved context.

        Rate limited per flag key and context. Never blocks and never raises.
        """
        if self._last is None:
            context = EvaluationContext()
            fp = fingerprint(context)
        else:
            fp, context = self._last

        entry = self._entries.get(fp)
        record = entry.flags.get_flag(flag_key) if entry else FlagRecord.disabled(flag_key)
        if not self._rate_limiter.allow(f"{fp}:{flag_key}"):
            return

        event = CheckEvent(
            key=flag_key,
            value=self._overrides.get(flag_key, record.is_enabled),
            version=record.version,
            context=context,
        )
        self._hooks.emit(HookEvent.CHECK, event)
        self._background.spawn(self._send_check_event(event))

    async def _send_check_event(self, event: CheckEvent) -> None:
        try:
            await self._transport.send_check_event(event)
        except Exception as e:
            logger.warning("failed to send feature check event", key=event.key, error=str(e))
            self._hooks.emit(HookEvent.ERROR, DiagnosticEvent(source="send_check_event", error=e))

    async def close(self) -> None:
        """Cancel in-flight fetches and pending background sends."""
        tasks: list[asyncio.Task[Any]] = []
        for in_flight in self._in_flight.values():
            in_flight.cancelled = True
            if in_flight.task is not None:
                tasks.append(in_flight.task)
        self._in_flight.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._background.aclose()
