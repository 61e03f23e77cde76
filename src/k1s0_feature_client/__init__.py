"""k1s0 feature client library."""

from .client import FeatureClient
from .completion_store import CompletionStore, FileCompletionStore, InMemoryCompletionStore
from .config import FeatureClientConfig, load_config
from .evaluation_cache import EvaluationCache, ResolveOptions
from .exceptions import FeatureClientError, FeatureClientErrorCodes
from .fingerprint import canonicalize, fingerprint, flatten_context
from .flag_cache_store import FileFlagCacheStore, FlagCacheStore, InMemoryFlagCacheStore
from .hooks import HookBus, HookError, HookEvent
from .logger import configure_logging
from .memory import InMemoryFlagTransport
from .models import (
    CacheEntry,
    CheckEvent,
    CompletionRecord,
    DiagnosticEvent,
    EvaluationContext,
    FlagCacheRecord,
    FlagConfig,
    FlagRecord,
    FlagSet,
    FlagsUpdatedEvent,
    PromptAction,
    PromptEvent,
    PromptMessage,
    TrackEvent,
)
from .prompts import PromptOutcome, PromptScheduler, PromptState, parse_prompt_message
from .rate_limiter import RateLimiter
from .transport import FlagTransport, HttpTransport, parse_flags_response

__all__ = [
    "CacheEntry",
    "CheckEvent",
    "CompletionRecord",
    "CompletionStore",
    "DiagnosticEvent",
    "EvaluationCache",
    "EvaluationContext",
    "FeatureClient",
    "FeatureClientConfig",
    "FeatureClientError",
    "FeatureClientErrorCodes",
    "FileCompletionStore",
    "FileFlagCacheStore",
    "FlagCacheRecord",
    "FlagCacheStore",
    "FlagConfig",
    "FlagRecord",
    "FlagSet",
    "FlagTransport",
    "FlagsUpdatedEvent",
    "HookBus",
    "HookError",
    "HookEvent",
    "HttpTransport",
    "InMemoryCompletionStore",
    "InMemoryFlagCacheStore",
    "InMemoryFlagTransport",
    "PromptAction",
    "PromptEvent",
    "PromptMessage",
    "PromptOutcome",
    "PromptScheduler",
    "PromptState",
    "RateLimiter",
    "ResolveOptions",
    "TrackEvent",
    "canonicalize",
    "configure_logging",
    "fingerprint",
    "flatten_context",
    "load_config",
    "parse_flags_response",
    "parse_prompt_message",
]
