"""HTTP request capability and the new-http-items polling trigger."""

import json

import httpx
import pytest

from models.nodes import HttpRequestParams, NewHttpItemsParams
from services.handlers import handle_http_request, poll_new_http_items
from services.registry import PollState


def client_factory_for(handler):
    transport = httpx.MockTransport(handler)

    def factory(**kwargs):
        return httpx.AsyncClient(transport=transport, **kwargs)
    return factory


class TestHttpRequest:

    async def test_post_sends_json_body(self):
        seen = {}

        def handler(request: httpx.Request):
            seen["method"] = request.method
            seen["body"] = request.content
            seen["query"] = dict(request.url.params)
            return httpx.Response(201, json={"ok": True})

        config = HttpRequestParams(url="https://api.example.com/items", method="POST",
                                   body={"name": "x"}, query={"page": 2})
        result = await handle_http_request({}, config, client_factory=client_factory_for(handler))

        assert result["status"] == 201
        assert result["data"] == {"ok": True}
        assert seen["method"] == "POST"
        assert json.loads(seen["body"]) == {"name": "x"}
        assert seen["query"] == {"page": "2"}

    async def test_error_status_raises_by_default(self):
        config = HttpRequestParams(url="https://api.example.com/missing")
        factory = client_factory_for(lambda request: httpx.Response(404, text="nope"))

        with pytest.raises(httpx.HTTPStatusError):
            await handle_http_request({}, config, client_factory=factory)

    async def test_error_status_returned_when_fail_on_error_off(self):
        config = HttpRequestParams(url="https://api.example.com/missing", failOnError=False)
        factory = client_factory_for(lambda request: httpx.Response(500, text="down"))

        result = await handle_http_request({}, config, client_factory=factory)
        assert result["status"] == 500
        assert result["data"] == "down"


class TestNewHttpItems:

    @staticmethod
    def feed(*ids):
        payload = {"data": {"items": [{"id": i, "title": f"item {i}"} for i in ids]}}
        return client_factory_for(lambda request: httpx.Response(200, json=payload))

    async def test_first_poll_records_baseline(self):
        config = NewHttpItemsParams(url="https://feed.example.com", itemsPath="data.items")
        result = await poll_new_http_items(config, PollState(), client_factory=self.feed(1, 2, 3))

        assert result.items == []
        assert result.cursor == "3"

    async def test_first_poll_can_emit(self):
        config = NewHttpItemsParams(url="https://feed.example.com", itemsPath="data.items",
                                    emitOnFirstPoll=True)
        result = await poll_new_http_items(config, PollState(), client_factory=self.feed(2, 1))
        assert [item["id"] for item in result.items] == [1, 2]

    async def test_only_items_past_cursor_are_new(self):
        config = NewHttpItemsParams(url="https://feed.example.com", itemsPath="data.items")
        result = await poll_new_http_items(config, PollState(cursor="9"),
                                           client_factory=self.feed(8, 9, 10, 11))

        assert [item["id"] for item in result.items] == [10, 11]
        assert result.cursor == "11"

    async def test_nothing_new_keeps_cursor(self):
        config = NewHttpItemsParams(url="https://feed.example.com", itemsPath="data.items")
        result = await poll_new_http_items(config, PollState(cursor="3"),
                                           client_factory=self.feed(1, 2, 3))
        assert not result.has_new_data
        assert result.cursor == "3"

    async def test_non_list_payload_is_an_error(self):
        config = NewHttpItemsParams(url="https://feed.example.com", itemsPath="data")
        with pytest.raises(ValueError):
            await poll_new_http_items(config, PollState(), client_factory=self.feed(1))
