"""feature client exceptions."""

from __future__ import annotations


class FeatureClientError(Exception):
    """Base error of the feature client library."""

    def __init__(
        self,
        code: str,
        message: str,
        cause: Exception | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class FeatureClientErrorCodes:
    """FeatureClientError code constants."""

    TRANSPORT_FAILURE: str = "TRANSPORT_FAILURE"
    INVALID_RESPONSE: str = "INVALID_RESPONSE"
    PERSISTENCE_FAILURE: str = "PERSISTENCE_FAILURE"
    CONFIG_ERROR: str = "CONFIG_ERROR"
