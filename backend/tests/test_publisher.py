"""Tests for the site generator client."""
import json

import httpx
import pytest

from sitelift.services.errors import VariantPublishError
from sitelift.services.publisher import VariantPublisher


def make_publisher(handler):
    publisher = VariantPublisher(base_url="http://generator.test/", timeout=5.0)
    publisher._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url=publisher.base_url
    )
    return publisher


@pytest.mark.asyncio
async def test_generate_variant_posts_prompt():
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(201, json={"variant_id": "var-1", "url": "/preview/var-1"})

    publisher = make_publisher(handler)

    result = await publisher.generate_variant("rest_1", "var-1", "Make the button bigger")

    assert result["url"] == "/preview/var-1"
    assert seen[0].method == "POST"
    assert seen[0].url.path == "/restaurants/rest_1/variants"
    assert json.loads(seen[0].content) == {"variant_id": "var-1", "prompt": "Make the button bigger"}
    await publisher.close()


@pytest.mark.asyncio
async def test_promote_variant_path():
    seen = []

    def handler(request: httpx.Request):
        seen.append((request.method, request.url.path))
        return httpx.Response(204)

    publisher = make_publisher(handler)

    await publisher.promote_variant("rest_1", "var-1")

    assert seen == [("POST", "/restaurants/rest_1/variants/var-1/promote")]


@pytest.mark.asyncio
async def test_server_error_raises_publish_error():
    publisher = make_publisher(lambda request: httpx.Response(500, text="boom"))

    with pytest.raises(VariantPublishError) as exc_info:
        await publisher.generate_variant("rest_1", "var-1", "prompt")

    assert "generate_variant failed" in str(exc_info.value)


@pytest.mark.asyncio
async def test_transport_error_raises_publish_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    publisher = make_publisher(handler)

    with pytest.raises(VariantPublishError):
        await publisher.promote_variant("rest_1", "var-1")


@pytest.mark.asyncio
async def test_delete_missing_variant_is_ignored():
    publisher = make_publisher(lambda request: httpx.Response(404))

    await publisher.delete_variant("rest_1", "gone")


@pytest.mark.asyncio
async def test_delete_failure_raises():
    publisher = make_publisher(lambda request: httpx.Response(503))

    with pytest.raises(VariantPublishError):
        await publisher.delete_variant("rest_1", "var-1")


@pytest.mark.asyncio
async def test_health_check():
    healthy = make_publisher(lambda request: httpx.Response(200, json={"status": "ok"}))
    unhealthy = make_publisher(lambda request: httpx.Response(503))

    assert await healthy.health_check() is True
    assert await unhealthy.health_check() is False


@pytest.mark.asyncio
async def test_non_json_success_body_raises_publish_error():
    publisher = make_publisher(lambda request: httpx.Response(200, text="<html>ok</html>"))

    with pytest.raises(VariantPublishError):
        await publisher.generate_variant("rest_1", "var-1", "prompt")


@pytest.mark.asyncio
async def test_empty_success_body_is_empty_result():
    publisher = make_publisher(lambda request: httpx.Response(202))

    assert await publisher.generate_variant("rest_1", "var-1", "prompt") == {}
