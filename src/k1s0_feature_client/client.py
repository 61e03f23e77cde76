"""FeatureClient: host-facing entry point."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog

from .completion_store import CompletionStore, FileCompletionStore, InMemoryCompletionStore
from .config import FeatureClientConfig, FlagsSection, PromptsSection, load_config
from .evaluation_cache import EvaluationCache, ResolveOptions
from .flag_cache_store import FileFlagCacheStore, FlagCacheStore
from .hooks import Handler, HookBus, HookEvent
from .logger import configure_logging
from .models import DiagnosticEvent, EvaluationContext, FlagSet
from .prompts import DisplayHandler, PromptOutcome, PromptScheduler
from .rate_limiter import RateLimiter
from .transport import FlagTransport, HttpTransport

logger = structlog.stdlib.get_logger(__name__)


def _default_store(config: PromptsSection) -> CompletionStore:
    if config.completion_store_path:
        return FileCompletionStore(config.completion_store_path)
    return InMemoryCompletionStore()


def _default_flag_cache(config: FlagsSection) -> FlagCacheStore | None:
    if config.cache_path:
        return FileFlagCacheStore(config.cache_path)
    return None


class FeatureClient:
    """Flag resolution and feedback prompting for one host application."""

    def __init__(
        self,
        config: FeatureClientConfig,
        *,
        transport: FlagTransport | None = None,
        completion_store: CompletionStore | None = None,
        flag_cache_store: FlagCacheStore | None = None,
        display: DisplayHandler | None = None,
        hooks: HookBus | None = None,
    ) -> None:
        self._config = config
        self._hooks = hooks or HookBus()
        self._transport: FlagTransport = transport or HttpTransport(config.client)
        self._cache = EvaluationCache(
            self._transport,
            self._hooks,
            RateLimiter(config.rate_limit.events_per_minute),
            store=flag_cache_store or _default_flag_cache(config.flags),
            freshness_ms=config.flags.freshness_ms,
            expire_ms=config.flags.expire_ms,
            offline=config.flags.offline,
        )
        self._completion_store = completion_store or _default_store(config.prompts)
        self._display = display
        self._scheduler: PromptScheduler | None = None
        self._context = EvaluationContext()

    @classmethod
    def from_config_file(
        cls,
        base_path: Path,
        env_path: Path | None = None,
        **kwargs: Any,
    ) -> FeatureClient:
        """Build a client from YAML configuration files."""
        config = load_config(base_path, env_path)
        if config.log is not None:
            configure_logging(config.log.level, config.log.format)
        return cls(config, **kwargs)

    @property
    def context(self) -> EvaluationContext:
        return self._context

    @property
    def cache(self) -> EvaluationCache:
        return self._cache

    @property
    def scheduler(self) -> PromptScheduler | None:
        return self._scheduler

    def default_options(self) -> ResolveOptions:
        flags = self._config.flags
        return ResolveOptions(
            fallback=flags.fallback_records(),
            timeout_ms=flags.timeout_ms,
            stale_while_revalidate=flags.stale_while_revalidate,
        )

    async def initialize(self, context: EvaluationContext) -> FlagSet:
        """Set the initial context and resolve its flags."""
        return await self.set_context(context)

    async def set_context(self, context: EvaluationContext) -> FlagSet:
        """Switch context. A different user tears down the prompt scheduler."""
        self._cache.set_context(context)
        self._context = context
        if self._scheduler is not None and self._scheduler.user_id != context.user_id:
            self._scheduler.close()
            self._scheduler = None
        return await self.resolve()

    async def resolve(
        self,
        context: EvaluationContext | None = None,
        options: ResolveOptions | None = None,
    ) -> FlagSet:
        """Resolve flags for context (default: the current context)."""
        return await self._cache.resolve(
            context if context is not None else self._context,
            options or self.default_options(),
        )

    def track(self, flag_key: str) -> None:
        """Report a flag check."""
        self._cache.track(flag_key)

    def set_override(self, flag_key: str, enabled: bool | None) -> None:
        """Force a flag on or off locally; None removes the override."""
        self._cache.set_override(flag_key, enabled)

    def on(self, event: str, handler: Handler) -> Callable[[], None]:
        return self._hooks.on(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self._hooks.off(event, handler)

    def _prompt_scheduler(self) -> PromptScheduler | None:
        if self._scheduler is not None:
            return self._scheduler
        user_id = self._context.user_id
        if not self._config.prompts.enabled or user_id is None or self._display is None:
            logger.debug(
                "feedback prompting unavailable",
                enabled=self._config.prompts.enabled,
                has_user=user_id is not None,
                has_display=self._display is not None,
            )
            return None
        self._scheduler = PromptScheduler(
            user_id,
            self._completion_store,
            self._display,
            self._hooks,
            event_sink=self._transport,
        )
        return self._scheduler

    async def start_prompting(self) -> str | None:
        """Enable prompting for the current user.

        Returns the push channel the host should subscribe to, or None when
        prompting is not available.
        """
        scheduler = self._prompt_scheduler()
        if scheduler is None:
            return None
        try:
            channel = await self._transport.init_prompting(scheduler.user_id)
        except Exception as e:
            logger.warning("error initializing feedback prompting", error=str(e))
            self._hooks.emit(HookEvent.ERROR, DiagnosticEvent(source="init_prompting", error=e))
            return None
        logger.debug("feedback prompting enabled", channel=channel)
        return channel

    def handle_prompt_message(self, raw: Any) -> PromptOutcome:
        """Entry point of the push channel."""
        scheduler = self._prompt_scheduler()
        if scheduler is None:
            return PromptOutcome.REJECTED
        return scheduler.on_message(raw)

    async def close(self) -> None:
        """Stop timers and background work."""
        if self._scheduler is not None:
            self._scheduler.close()
            self._scheduler = None
        await self._cache.close()
