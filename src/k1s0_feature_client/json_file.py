"""JSON object file used by the local stores."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from .exceptions import FeatureClientError, FeatureClientErrorCodes


class JsonFile:
    """A JSON object persisted to one local file.

    Writes go through a temporary file and a rename, so readers never see a
    partial document.

    Raises:
        FeatureClientError: PERSISTENCE_FAILURE when the file cannot be
            read, parsed or written.
    """

    def __init__(self, path: Path | str, name: str) -> None:
        self._path = Path(path).expanduser()
        self._name = name

    @property
    def path(self) -> Path:
        return self._path

    def read(self) -> dict[str, Any]:
        """Return the stored object; a missing or empty file reads as {}."""
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"Failed to read {self._name}: {self._path}",
                cause=e,
            ) from e
        try:
            data = json.loads(text) if text.strip() else {}
        except json.JSONDecodeError as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"Failed to parse {self._name}: {self._path}",
                cause=e,
            ) from e
        if not isinstance(data, dict):
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"{self._name} is not a JSON object: {self._path}",
            )
        return data

    def write(self, data: dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(data, sort_keys=True), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.PERSISTENCE_FAILURE,
                message=f"Failed to write {self._name}: {self._path}",
                cause=e,
            ) from e
