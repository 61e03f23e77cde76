"""feature client data models."""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, Union

Scalar = Union[str, int, float, bool, None]


def _clean(attributes: Mapping[str, Scalar] | None) -> dict[str, Scalar]:
    return {k: v for k, v in (attributes or {}).items() if v is not None}


@dataclass(frozen=True)
class EvaluationContext:
    """Flag evaluation context: named actors mapped to scalar attributes."""

    user: Mapping[str, Scalar] = field(default_factory=dict)
    company: Mapping[str, Scalar] = field(default_factory=dict)
    other: Mapping[str, Scalar] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # own copies of the attribute maps
        object.__setattr__(self, "user", dict(self.user))
        object.__setattr__(self, "company", dict(self.company))
        object.__setattr__(self, "other", dict(self.other))

    @property
    def user_id(self) -> str | None:
        value = self.user.get("id")
        return None if value is None else str(value)

    def to_dict(self) -> dict[str, dict[str, Scalar]]:
        """Canonical form: None attributes and empty actors omitted."""
        result: dict[str, dict[str, Scalar]] = {}
        for name in ("user", "company", "other"):
            attributes = _clean(getattr(self, name))
            if attributes:
                result[name] = attributes
        return result

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> EvaluationContext:
        return cls(
            user=data.get("user") or {},
            company=data.get("company") or {},
            other=data.get("other") or {},
        )


@dataclass(frozen=True)
class FlagConfig:
    """Dynamic configuration attached to a flag."""

    key: str
    payload: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "payload": self.payload}


@dataclass(frozen=True)
class FlagRecord:
    """Evaluated flag as returned by the server."""

    key: str
    is_enabled: bool
    config: FlagConfig | None = None
    version: int = 0

    @classmethod
    def disabled(cls, key: str) -> FlagRecord:
        return cls(key=key, is_enabled=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], key: str | None = None) -> FlagRecord:
        """Build a record from its wire shape.

        Raises:
            ValueError: if a field is missing or has the wrong type.
        """
        if not isinstance(data, Mapping):
            raise ValueError("flag record must be an object")
        record_key = data.get("key")
        if not isinstance(record_key, str) or not record_key:
            raise ValueError("flag key must be a non-empty string")
        if key is not None and record_key != key:
            raise ValueError(f"flag key mismatch: {key} != {record_key}")

        is_enabled = data.get("isEnabled", data.get("is_enabled"))
        if not isinstance(is_enabled, bool):
            raise ValueError(f"flag {record_key}: isEnabled must be a boolean")

        version = data.get("targetingVersion", data.get("version", 0))
        if isinstance(version, bool) or not isinstance(version, int):
            raise ValueError(f"flag {record_key}: version must be an integer")

        config = None
        raw_config = data.get("config")
        if raw_config is not None:
            if not isinstance(raw_config, Mapping) or not isinstance(
                raw_config.get("key"), str
            ):
                raise ValueError(f"flag {record_key}: malformed config")
            config = FlagConfig(key=raw_config["key"], payload=raw_config.get("payload"))

        return cls(key=record_key, is_enabled=is_enabled, config=config, version=version)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "key": self.key,
            "isEnabled": self.is_enabled,
            "targetingVersion": self.version,
        }
        if self.config is not None:
            data["config"] = self.config.to_dict()
        return data


class FlagSet(Mapping[str, FlagRecord]):
    """Read-only set of flag records produced by one fetch."""

    __slots__ = ("_flags",)

    def __init__(self, records: Iterable[FlagRecord] = ()) -> None:
        self._flags: dict[str, FlagRecord] = {r.key: r for r in records}

    def __getitem__(self, key: str) -> FlagRecord:
        return self._flags[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._flags)

    def __len__(self) -> int:
        return len(self._flags)

    def __repr__(self) -> str:
        return f"FlagSet({list(self._flags.values())!r})"

    def get_flag(self, key: str) -> FlagRecord:
        """Return the record for key, or a disabled record if absent."""
        return self._flags.get(key) or FlagRecord.disabled(key)

    def is_enabled(self, key: str) -> bool:
        return self.get_flag(key).is_enabled


@dataclass(frozen=True)
class CacheEntry:
    """Cached flags for one context fingerprint."""

    context: EvaluationContext
    flags: FlagSet
    fetched_at: float
    stale_at: float
    sequence: int
    fallback: FlagSet | None = None

    def is_stale(self, now: float) -> bool:
        return now >= self.stale_at


@dataclass(frozen=True)
class FlagCacheRecord:
    """Persisted flags of one context fingerprint, timed by the wall clock."""

    fingerprint: str
    flags: FlagSet
    fetched_at: datetime
    stale_at: datetime
    expire_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expire_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "flags": [record.to_dict() for record in self.flags.values()],
            "fetched_at": self.fetched_at.isoformat(),
            "stale_at": self.stale_at.isoformat(),
            "expire_at": self.expire_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> FlagCacheRecord:
        """Raises KeyError, TypeError or ValueError on a malformed record."""
        return cls(
            fingerprint=data["fingerprint"],
            flags=FlagSet(FlagRecord.from_dict(raw) for raw in data["flags"]),
            fetched_at=datetime.fromisoformat(data["fetched_at"]),
            stale_at=datetime.fromisoformat(data["stale_at"]),
            expire_at=datetime.fromisoformat(data["expire_at"]),
        )


@dataclass(frozen=True)
class PromptMessage:
    """Validated feedback prompt invitation."""

    prompt_id: str
    feature_id: str
    question: str
    show_after: datetime
    show_before: datetime


@dataclass(frozen=True)
class CompletionRecord:
    """Marks a prompt as handled for a user."""

    user_id: str
    prompt_id: str
    completed_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "prompt_id": self.prompt_id,
            "completed_at": self.completed_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> CompletionRecord:
        return cls(
            user_id=data["user_id"],
            prompt_id=data["prompt_id"],
            completed_at=datetime.fromisoformat(data["completed_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
        )


@dataclass(frozen=True)
class CheckEvent:
    """A flag was checked by the host."""

    key: str
    value: bool
    version: int | None = None
    context: EvaluationContext | None = None


@dataclass(frozen=True)
class FlagsUpdatedEvent:
    """New flags were stored for a fingerprint."""

    fingerprint: str
    flags: FlagSet


@dataclass(frozen=True)
class TrackEvent:
    """Track-class event emitted by the client."""

    user_id: str
    event_name: str
    attributes: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DiagnosticEvent:
    """A recovered failure, reported on the error hook."""

    source: str
    error: Exception


class PromptAction(StrEnum):
    """Prompt lifecycle actions reported to the server."""

    RECEIVED = "received"
    SHOWN = "shown"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PromptEvent:
    """Prompt lifecycle event."""

    action: PromptAction
    user_id: str
    prompt_id: str
    feature_id: str
    question: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "userId": self.user_id,
            "promptId": self.prompt_id,
            "featureId": self.feature_id,
            "promptedQuestion": self.question,
        }
