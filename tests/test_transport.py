"""HttpTransport unit tests (respx mocks)."""

import json

import httpx
import pytest
import respx
from k1s0_feature_client import (
    CheckEvent,
    EvaluationContext,
    FeatureClientError,
    FeatureClientErrorCodes,
    HttpTransport,
    PromptAction,
    PromptEvent,
    parse_flags_response,
)
from k1s0_feature_client.config import ClientSection
from k1s0_feature_client.transport import SDK_VERSION, SDK_VERSION_HEADER_NAME

BASE_URL = "http://flags-server:8080"

FLAGS_BODY = {
    "success": True,
    "features": {
        "new-nav": {
            "key": "new-nav",
            "isEnabled": True,
            "targetingVersion": 2,
            "config": {"key": "blue", "payload": {"x": 1}},
        },
        "old-nav": {"key": "old-nav", "isEnabled": False, "targetingVersion": 1},
    },
}


def make_transport() -> HttpTransport:
    return HttpTransport(ClientSection(publishable_key="pub_test", api_base_url=BASE_URL))


@respx.mock
async def test_fetch_flags_success() -> None:
    """Flags are parsed and the context is sent as query parameters."""
    route = respx.get(f"{BASE_URL}/features/evaluated").mock(
        return_value=httpx.Response(200, json=FLAGS_BODY)
    )
    context = EvaluationContext(user={"id": "u1", "beta": True}, company={"id": "acme"})
    flags = await make_transport().fetch_flags(context)

    assert flags.is_enabled("new-nav") is True
    assert flags.is_enabled("old-nav") is False
    assert flags["new-nav"].version == 2
    assert flags["new-nav"].config is not None
    assert flags["new-nav"].config.payload == {"x": 1}

    request = route.calls.last.request
    assert request.url.params["context.user.id"] == "u1"
    assert request.url.params["context.user.beta"] == "true"
    assert request.url.params["context.company.id"] == "acme"
    assert request.url.params["publishableKey"] == "pub_test"
    assert request.headers[SDK_VERSION_HEADER_NAME] == SDK_VERSION


@respx.mock
async def test_fetch_flags_server_error() -> None:
    respx.get(f"{BASE_URL}/features/evaluated").mock(
        return_value=httpx.Response(500, text="Internal Server Error")
    )
    with pytest.raises(FeatureClientError) as exc_info:
        await make_transport().fetch_flags(EvaluationContext())
    assert exc_info.value.code == FeatureClientErrorCodes.TRANSPORT_FAILURE


@respx.mock
async def test_fetch_flags_connection_error() -> None:
    respx.get(f"{BASE_URL}/features/evaluated").mock(
        side_effect=httpx.ConnectError("connection refused")
    )
    with pytest.raises(FeatureClientError) as exc_info:
        await make_transport().fetch_flags(EvaluationContext())
    assert exc_info.value.code == FeatureClientErrorCodes.TRANSPORT_FAILURE
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@respx.mock
async def test_fetch_flags_not_json() -> None:
    respx.get(f"{BASE_URL}/features/evaluated").mock(
        return_value=httpx.Response(200, text="<html>oops</html>")
    )
    with pytest.raises(FeatureClientError) as exc_info:
        await make_transport().fetch_flags(EvaluationContext())
    assert exc_info.value.code == FeatureClientErrorCodes.INVALID_RESPONSE


@respx.mock
async def test_fetch_flags_malformed_record() -> None:
    body = {"success": True, "features": {"a": {"key": "a", "isEnabled": "yes"}}}
    respx.get(f"{BASE_URL}/features/evaluated").mock(
        return_value=httpx.Response(200, json=body)
    )
    with pytest.raises(FeatureClientError) as exc_info:
        await make_transport().fetch_flags(EvaluationContext())
    assert exc_info.value.code == FeatureClientErrorCodes.INVALID_RESPONSE


@respx.mock
async def test_send_check_event() -> None:
    route = respx.post(f"{BASE_URL}/features/events").mock(return_value=httpx.Response(200))
    event = CheckEvent(
        key="new-nav",
        value=True,
        version=2,
        context=EvaluationContext(user={"id": "u1"}),
    )
    await make_transport().send_check_event(event)

    request = route.calls.last.request
    assert request.headers["Authorization"] == "Bearer pub_test"
    assert json.loads(request.content) == {
        "action": "check",
        "key": "new-nav",
        "targetingVersion": 2,
        "evalContext": {"user": {"id": "u1"}},
        "evalResult": True,
    }


@respx.mock
async def test_send_check_event_failure() -> None:
    respx.post(f"{BASE_URL}/features/events").mock(return_value=httpx.Response(429))
    with pytest.raises(FeatureClientError) as exc_info:
        await make_transport().send_check_event(CheckEvent(key="a", value=False))
    assert exc_info.value.code == FeatureClientErrorCodes.TRANSPORT_FAILURE


@respx.mock
async def test_send_prompt_event() -> None:
    route = respx.post(f"{BASE_URL}/feedback/prompt-events").mock(
        return_value=httpx.Response(200)
    )
    event = PromptEvent(
        action=PromptAction.RECEIVED,
        user_id="u1",
        prompt_id="p1",
        feature_id="f1",
        question="Useful?",
    )
    await make_transport().send_prompt_event(event)
    assert json.loads(route.calls.last.request.content)["action"] == "received"


@respx.mock
async def test_init_prompting_returns_channel() -> None:
    route = respx.post(f"{BASE_URL}/feedback/prompting-init").mock(
        return_value=httpx.Response(200, json={"success": True, "channel": "prompts-u1"})
    )
    assert await make_transport().init_prompting("u1") == "prompts-u1"
    assert json.loads(route.calls.last.request.content) == {"userId": "u1"}


@respx.mock
async def test_init_prompting_disabled() -> None:
    respx.post(f"{BASE_URL}/feedback/prompting-init").mock(
        return_value=httpx.Response(200, json={"success": False})
    )
    assert await make_transport().init_prompting("u1") is None


def test_parse_flags_response_list_form() -> None:
    flags = parse_flags_response([{"key": "a", "isEnabled": True}])
    assert flags.is_enabled("a") is True


@pytest.mark.parametrize(
    "body",
    [
        None,
        "flags",
        {"success": False, "features": {}},
        {"success": True},
        {"success": True, "features": {"a": {"key": "b", "isEnabled": True}}},
    ],
)
def test_parse_flags_response_rejects(body: object) -> None:
    with pytest.raises(FeatureClientError) as exc_info:
        parse_flags_response(body)
    assert exc_info.value.code == FeatureClientErrorCodes.INVALID_RESPONSE
