import json

import httpx
import pytest

from shiftbook.notifier import LinePushClient


def _client(handler) -> LinePushClient:
    return LinePushClient(
        "token-123",
        base_url="https://line.test/",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_push_text_posts_to_push_endpoint() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={})

    outcome = await _client(handler).push_text("U-john", "Hello")

    assert outcome.success is True
    assert outcome.response == "Message sent successfully to LINE user: U-john"
    request = seen[0]
    assert request.method == "POST"
    assert str(request.url) == "https://line.test/v2/bot/message/push"
    assert request.headers["Authorization"] == "Bearer token-123"
    assert json.loads(request.content) == {
        "to": "U-john",
        "messages": [{"type": "text", "text": "Hello"}],
    }


@pytest.mark.asyncio
async def test_api_error_becomes_failed_outcome() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "The property, 'to', in the request body is invalid"})

    outcome = await _client(handler).push_text("bad", "Hello")

    assert outcome.success is False
    assert outcome.error == (
        "LINE API Error: 400 - Bad Request "
        "(The property, 'to', in the request body is invalid)"
    )
    assert outcome.text == outcome.error


@pytest.mark.asyncio
async def test_api_error_without_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="<html>bad gateway</html>")

    outcome = await _client(handler).push_text("U-john", "Hello")

    assert outcome.success is False
    assert outcome.error == "LINE API Error: 502 - Bad Gateway"


@pytest.mark.asyncio
async def test_transport_error_becomes_failed_outcome() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    outcome = await _client(handler).push_text("U-john", "Hello")

    assert outcome.success is False
    assert outcome.error == "timed out"
