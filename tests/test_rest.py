from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer
import pytest

from tacbroker.rest import register
from tacbroker.topic import Topic


def _app(*topics):
    app = web.Application()
    register(app, topics)
    return app


@pytest.mark.asyncio
async def test_get_returns_retained_json():
    topic = Topic("/v1/value", True, False, initial={"a": 1})
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.get("/v1/value")
        assert resp.status == 200
        assert resp.content_type == "application/json"
        assert await resp.read() == b'{"a":1}'


@pytest.mark.asyncio
async def test_get_without_value_is_404():
    topic = Topic("/v1/empty", True, False)
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.get("/v1/empty")
        assert resp.status == 404
        assert "retained message" in await resp.text()


@pytest.mark.asyncio
@pytest.mark.parametrize("method", ["PUT", "POST"])
async def test_write_sets_value(method):
    topic = Topic("/v1/rw", True, True, initial=False)
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.request(method, "/v1/rw", data=b"true")
        assert resp.status == 204
        assert await topic.try_get() is True
        resp = await client.get("/v1/rw")
        assert await resp.read() == b"true"


@pytest.mark.asyncio
async def test_malformed_payload_is_400():
    topic = Topic("/v1/rw", True, True, initial=3)
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.put("/v1/rw", data=b"{not json")
        assert resp.status == 400
        assert await resp.text() == "Malformed payload"
        assert await topic.try_get() == 3


@pytest.mark.asyncio
async def test_read_only_rejects_put():
    topic = Topic("/v1/ro", True, False, initial=1)
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.put("/v1/ro", data=b"2")
        assert resp.status == 405
        assert await topic.try_get() == 1


@pytest.mark.asyncio
async def test_write_only_rejects_get():
    topic = Topic("/v1/wo", False, True, initial=1)
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.get("/v1/wo")
        assert resp.status == 405


@pytest.mark.asyncio
async def test_hidden_topic_is_not_mounted():
    topic = Topic("/hidden", False, False, initial=1)
    async with TestClient(TestServer(_app(topic))) as client:
        resp = await client.get("/hidden")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_read_only_and_write_only_share_a_path():
    ro = Topic("/v1/shared", True, False, initial=1)
    other = Topic("/v1/other", True, False, initial=2)
    wo = Topic("/v1/shared", False, True)
    async with TestClient(TestServer(_app(ro, other, wo))) as client:
        resp = await client.get("/v1/shared")
        assert await resp.read() == b"1"
        resp = await client.put("/v1/shared", data=b"7")
        assert resp.status == 204
        assert await wo.try_get() == 7
        assert await ro.try_get() == 1
        resp = await client.get("/v1/other")
        assert await resp.read() == b"2"