"""Persistence of fetched flags and local flag overrides."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .exceptions import FeatureClientError, FeatureClientErrorCodes
from .json_file import JsonFile
from .models import FlagCacheRecord


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FlagCacheStore(ABC):
    """Key-value store of flag cache records keyed by context fingerprint.

    Also keeps the host's flag overrides so they survive a restart.
    """

    @abstractmethod
    def get(self, fingerprint: str) -> FlagCacheRecord | None:
        """Return the record of fingerprint, or None if absent or expired."""
        ...

    @abstractmethod
    def set(self, record: FlagCacheRecord) -> None:
        """Store a record, replacing any previous one for its fingerprint."""
        ...

    @abstractmethod
    def delete(self, fingerprint: str) -> bool:
        ...

    @abstractmethod
    def load_overrides(self) -> dict[str, bool]:
        ...

    @abstractmethod
    def save_overrides(self, overrides: Mapping[str, bool]) -> None:
        ...


class InMemoryFlagCacheStore(FlagCacheStore):
    """Process-local flag cache store."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock
        self._records: dict[str, FlagCacheRecord] = {}
        self._overrides: dict[str, bool] = {}

    def get(self, fingerprint: str) -> FlagCacheRecord | None:
        record = self._records.get(fingerprint)
        if record is None or record.is_expired(self._clock()):
            return None
        return record

    def set(self, record: FlagCacheRecord) -> None:
        now = self._clock()
        self._records[record.fingerprint] = record
        self._records = {k: v for k, v in self._records.items() if not v.is_expired(now)}

    def delete(self, fingerprint: str) -> bool:
        return self._records.pop(fingerprint, None) is not None

    def load_overrides(self) -> dict[str, bool]:
        return dict(self._overrides)

    def save_overrides(self, overrides: Mapping[str, bool]) -> None:
        self._overrides = dict(overrides)


class FileFlagCacheStore(FlagCacheStore):
    """Flag cache store backed by a local JSON file.

    Layout: ``{"entries": {fingerprint: record}, "overrides": {key: bool}}``.
    Expired entries are dropped on every write.

    Raises:
        FeatureClientError: PERSISTENCE_FAILURE when the file cannot be
            read, parsed or written, or holds a malformed record.
    """

    def __init__(
        self,
        path: Path | str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._file = JsonFile(path, "flag cache")
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._file.path

    def _section(self, data: dict[str, Any], name: str) -> dict[str, Any]:
        section = data.get(name, {})
        if not isinstance(section, dict):
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"flag cache section {name} is not a JSON object: {self.path}",
            )
        return section

    def get(self, fingerprint: str) -> FlagCacheRecord | None:
        raw = self._section(self._file.read(), "entries").get(fingerprint)
        if raw is None:
            return None
        try:
            record = FlagCacheRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"Malformed flag cache record: {fingerprint}",
                cause=e,
            ) from e
        if record.is_expired(self._clock()):
            return None
        return record

    def set(self, record: FlagCacheRecord) -> None:
        data = self._file.read()
        entries = self._section(data, "entries")
        entries[record.fingerprint] = record.to_dict()
        now = self._clock()
        data["entries"] = {k: v for k, v in entries.items() if not _expired(v, now)}
        self._file.write(data)

    def delete(self, fingerprint: str) -> bool:
        data = self._file.read()
        entries = self._section(data, "entries")
        if entries.pop(fingerprint, None) is None:
            return False
        data["entries"] = entries
        self._file.write(data)
        return True

    def load_overrides(self) -> dict[str, bool]:
        overrides = self._section(self._file.read(), "overrides")
        return {k: v for k, v in overrides.items() if isinstance(v, bool)}

    def save_overrides(self, overrides: Mapping[str, bool]) -> None:
        data = self._file.read()
        data["overrides"] = dict(overrides)
        self._file.write(data)


def _expired(raw: Any, now: datetime) -> bool:
    try:
        return datetime.fromisoformat(raw["expire_at"]) <= now
    except (KeyError, TypeError, ValueError):
        return True
