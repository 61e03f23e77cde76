"""Flag transport protocol and httpx implementation."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

import httpx
import structlog

from .config import ClientSection
from .exceptions import FeatureClientError, FeatureClientErrorCodes
from .fingerprint import flatten_context
from .models import CheckEvent, EvaluationContext, FlagRecord, FlagSet, PromptEvent

logger = structlog.stdlib.get_logger(__name__)

SDK_VERSION_HEADER_NAME = "k1s0-sdk-version"
SDK_VERSION = "python-feature-client/0.1.0"


class FlagTransport(Protocol):
    """Network collaborator of the evaluation cache and prompt scheduler."""

    async def fetch_flags(self, context: EvaluationContext) -> FlagSet: ...

    async def send_check_event(self, event: CheckEvent) -> None: ...

    async def send_prompt_event(self, event: PromptEvent) -> None: ...

    async def init_prompting(self, user_id: str) -> str | None: ...


def parse_flags_response(body: Any) -> FlagSet:
    """Parse a flags response body.

    Accepts ``{"success": true, "features": {key: record}}`` or a JSON list
    of records.

    Raises:
        FeatureClientError: INVALID_RESPONSE if the body is malformed.
    """
    try:
        if isinstance(body, list):
            return FlagSet(FlagRecord.from_dict(item) for item in body)
        if not isinstance(body, Mapping):
            raise ValueError("response body must be an object or a list")
        if body.get("success") is not True:
            raise ValueError("response is not marked successful")
        features = body.get("features", body.get("flags"))
        if not isinstance(features, Mapping):
            raise ValueError("response has no features mapping")
        return FlagSet(FlagRecord.from_dict(raw, key=key) for key, raw in features.items())
    except ValueError as e:
        raise FeatureClientError(
            code=FeatureClientErrorCodes.INVALID_RESPONSE,
            message=f"Invalid flags response: {e}",
            cause=e,
        ) from e


class HttpTransport:
    """httpx based transport for the flag and feedback endpoints."""

    def __init__(self, config: ClientSection) -> None:
        self._config = config
        self._headers: dict[str, str] = {
            "Content-Type": "application/json",
            SDK_VERSION_HEADER_NAME: SDK_VERSION,
        }

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._config.api_base_url,
            headers=self._headers,
            timeout=self._config.request_timeout_seconds,
        )

    def _handle_error(self, resp: httpx.Response, context: str) -> None:
        if resp.status_code < 200 or resp.status_code >= 300:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.TRANSPORT_FAILURE,
                message=f"{context}: HTTP {resp.status_code}: {resp.text}",
            )

    async def _post(self, path: str, body: dict[str, Any], context: str) -> httpx.Response:
        try:
            async with self._make_client() as client:
                resp = await client.post(
                    path,
                    json=body,
                    headers={"Authorization": f"Bearer {self._config.publishable_key}"},
                )
            self._handle_error(resp, context)
            return resp
        except FeatureClientError:
            raise
        except Exception as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.TRANSPORT_FAILURE,
                message=f"{context}: {e}",
                cause=e,
            ) from e

    async def fetch_flags(self, context: EvaluationContext) -> FlagSet:
        """Fetch evaluated flags for a context."""
        params = flatten_context(context)
        params["publishableKey"] = self._config.publishable_key
        params[SDK_VERSION_HEADER_NAME] = SDK_VERSION
        try:
            async with self._make_client() as client:
                resp = await client.get("/features/evaluated", params=params)
            self._handle_error(resp, "fetch_flags")
            body = resp.json()
        except FeatureClientError:
            raise
        except ValueError as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.INVALID_RESPONSE,
                message=f"fetch_flags: response is not JSON: {e}",
                cause=e,
            ) from e
        except Exception as e:
            raise FeatureClientError(
                code=FeatureClientErrorCodes.TRANSPORT_FAILURE,
                message=f"Failed to fetch flags: {e}",
                cause=e,
            ) from e
        flags = parse_flags_response(body)
        logger.debug("fetched flags", count=len(flags))
        return flags

    async def send_check_event(self, event: CheckEvent) -> None:
        """Report a flag check."""
        payload = {
            "action": "check",
            "key": event.key,
            "targetingVersion": event.version,
            "evalContext": event.context.to_dict() if event.context else {},
            "evalResult": event.value,
        }
        await self._post("/features/events", payload, "send_check_event")
        logger.debug("sent feature event", key=event.key)

    async def send_prompt_event(self, event: PromptEvent) -> None:
        """Report a prompt lifecycle event."""
        await self._post("/feedback/prompt-events", event.to_dict(), "send_prompt_event")
        logger.debug("sent prompt event", action=event.action.value, prompt_id=event.prompt_id)

    async def init_prompting(self, user_id: str) -> str | None:
        """Ask the server whether prompting is enabled; returns the channel name."""
        resp = await self._post(
            "/feedback/prompting-init", {"userId": user_id}, "init_prompting"
        )
        try:
            body = resp.json()
        except ValueError:
            return None
        if isinstance(body, Mapping) and body.get("success") is True:
            channel = body.get("channel")
            if isinstance(channel, str) and channel:
                return channel
        return None
