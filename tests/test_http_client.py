import asyncio
import json

import httpx
import pytest

from flowbench import __version__


@pytest.mark.asyncio
async def test_json_response_is_parsed(make_invoker):
    def handler(request):
        return httpx.Response(200, json={"id": 1, "tags": ["a"]}, headers={"X-Request-Id": "r1"})

    result = await make_invoker(handler).invoke("GET", "https://api.test/items/1")

    assert result.status == 200
    assert result.status_text == "OK"
    assert result.body == {"id": 1, "tags": ["a"]}
    assert result.header("x-request-id") == "r1"
    assert not result.is_transport_failure
    assert not result.is_http_error


@pytest.mark.asyncio
async def test_malformed_json_falls_back_to_text(make_invoker):
    def handler(request):
        return httpx.Response(200, content=b"{not json", headers={"Content-Type": "application/json"})

    result = await make_invoker(handler).invoke("GET", "https://api.test/broken")

    assert result.body == "{not json"


@pytest.mark.asyncio
async def test_text_response_kept_as_text(make_invoker):
    def handler(request):
        return httpx.Response(404, text="not here")

    result = await make_invoker(handler).invoke("GET", "https://api.test/missing")

    assert result.status == 404
    assert result.body == "not here"
    assert result.is_http_error
    assert not result.is_transport_failure


@pytest.mark.asyncio
async def test_json_body_sent_for_post(make_invoker):
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        captured["headers"] = request.headers
        return httpx.Response(201, json={"ok": True})

    await make_invoker(handler).invoke(
        "post", "https://api.test/orders", headers={"X-Tenant": "t1"}, body={"sku": "A1"}
    )

    assert captured["body"] == {"sku": "A1"}
    assert captured["headers"]["x-tenant"] == "t1"
    assert captured["headers"]["user-agent"] == f"flowbench/{__version__}"


@pytest.mark.asyncio
async def test_string_body_sent_raw(make_invoker):
    captured = {}

    def handler(request):
        captured["body"] = request.content
        return httpx.Response(200)

    await make_invoker(handler).invoke("PUT", "https://api.test/raw", body="a=1&b=2")

    assert captured["body"] == b"a=1&b=2"


@pytest.mark.asyncio
async def test_body_not_sent_for_get(make_invoker):
    captured = {}

    def handler(request):
        captured["body"] = request.content
        return httpx.Response(200)

    await make_invoker(handler).invoke("GET", "https://api.test/items", body={"ignored": True})

    assert captured["body"] == b""


@pytest.mark.asyncio
async def test_timeout_returns_synthetic_result(make_invoker):
    async def handler(request):
        await asyncio.sleep(1)
        return httpx.Response(200)

    result = await make_invoker(handler).invoke("GET", "https://api.test/slow", timeout_ms=50)

    assert result.status == 0
    assert result.status_text == "Request Timeout"
    assert result.error_type == "timeout"
    assert result.is_transport_failure
    assert result.body is None


@pytest.mark.asyncio
async def test_connect_error_is_transport_failure(make_invoker):
    def handler(request):
        raise httpx.ConnectError("Connection refused", request=request)

    result = await make_invoker(handler).invoke("GET", "https://api.test/down")

    assert result.status == 0
    assert result.status_text == "Network Error"
    assert result.error_type == "transport"
    assert "Connection refused" in result.error


@pytest.mark.asyncio
async def test_large_bodies_are_truncated(make_invoker):
    def handler(request):
        return httpx.Response(200, text="hello world")

    result = await make_invoker(handler, max_body_size=5).invoke("GET", "https://api.test/big")

    assert result.body == "hello"
    assert result.size_bytes == 5
    assert result.truncated


@pytest.mark.asyncio
async def test_oversized_json_is_flagged_not_parsed(make_invoker):
    def handler(request):
        return httpx.Response(200, json={"token": "abc", "pad": "x" * 100})

    result = await make_invoker(handler, max_body_size=50).invoke("GET", "https://api.test/big.json")

    assert result.truncated
    assert isinstance(result.body, str)
    assert result.body.startswith('{"token":')
    assert result.size_bytes == 50


@pytest.mark.asyncio
async def test_body_at_the_limit_is_parsed(make_invoker):
    def handler(request):
        return httpx.Response(200, content=b'{"a": 1}', headers={"Content-Type": "application/json"})

    result = await make_invoker(handler, max_body_size=8).invoke("GET", "https://api.test/exact")

    assert not result.truncated
    assert result.body == {"a": 1}
