"""Prompt completion persistence."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .exceptions import FeatureClientError, FeatureClientErrorCodes
from .json_file import JsonFile
from .models import CompletionRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _record_key(user_id: str, prompt_id: str) -> str:
    return f"{user_id}:{prompt_id}"


class CompletionStore(ABC):
    """Key-value store of completion records keyed by user and prompt."""

    @abstractmethod
    def get(self, user_id: str, prompt_id: str) -> CompletionRecord | None:
        """Return the completion record, or None if the prompt is not completed."""
        ...

    @abstractmethod
    def set(self, record: CompletionRecord) -> None:
        """Store a record. An existing record for the same pair is kept."""
        ...

    @abstractmethod
    def delete(self, user_id: str, prompt_id: str) -> bool:
        """Delete a record. True if one was deleted."""
        ...


class InMemoryCompletionStore(CompletionStore):
    """Session-only completion store."""

    def __init__(self) -> None:
        self._records: dict[str, CompletionRecord] = {}

    def get(self, user_id: str, prompt_id: str) -> CompletionRecord | None:
        return self._records.get(_record_key(user_id, prompt_id))

    def set(self, record: CompletionRecord) -> None:
        self._records.setdefault(_record_key(record.user_id, record.prompt_id), record)

    def delete(self, user_id: str, prompt_id: str) -> bool:
        return self._records.pop(_record_key(user_id, prompt_id), None) is not None

    def all_records(self) -> list[CompletionRecord]:
        return list(self._records.values())


class FileCompletionStore(CompletionStore):
    """Completion store backed by a local JSON file.

    Records whose ``expires_at`` has passed are dropped on every write.

    Raises:
        FeatureClientError: PERSISTENCE_FAILURE when the file cannot be
            read, parsed or written.
    """

    def __init__(
        self,
        path: Path | str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._file = JsonFile(path, "completion store")
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._file.path

    def get(self, user_id: str, prompt_id: str) -> CompletionRecord | None:
        raw = self._file.read().get(_record_key(user_id, prompt_id))
        if raw is None:
            return None
        try:
            return CompletionRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"Malformed completion record for prompt {prompt_id}",
                cause=e,
            ) from e

    def set(self, record: CompletionRecord) -> None:
        data = self._file.read()
        key = _record_key(record.user_id, record.prompt_id)
        if key not in data:
            data[key] = record.to_dict()
        now = self._clock()
        self._file.write({k: v for k, v in data.items() if not _expired(v, now)})

    def delete(self, user_id: str, prompt_id: str) -> bool:
        data = self._file.read()
        if data.pop(_record_key(user_id, prompt_id), None) is None:
            return False
        self._file.write(data)
        return True


def _expired(raw: dict[str, Any], now: datetime) -> bool:
    try:
        return datetime.fromisoformat(raw["expires_at"]) <= now
    except (KeyError, TypeError, ValueError):
        return True
