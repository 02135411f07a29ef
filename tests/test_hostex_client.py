"""
Unit tests for the Hostex API client: request shape, HTTP and in-body
error handling, and payload parsing.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import MagicMock

import aiohttp
import pytest

from hostex_bridge.hostex_client import (
    Conversation,
    HostexAPIError,
    HostexClient,
    HostexTransportError,
    Message,
    parse_timestamp,
)


class _FakeResponse:
    def __init__(self, status=200, body=None, json_error=None):
        self.status = status
        self._body = body
        self._json_error = json_error

    async def json(self, content_type=None):
        if self._json_error is not None:
            raise self._json_error
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


def _client_with(response=None, error=None):
    session = MagicMock()
    if error is not None:
        session.request.side_effect = error
    else:
        session.request.return_value = response
    return HostexClient("https://api.hostex.io/v3/", "tok", session=session), session


class TestParseTimestamp:
    def test_epoch_number(self):
        assert parse_timestamp(1700000000) == 1700000000
        assert parse_timestamp(1700000000.9) == 1700000000

    def test_digit_string(self):
        assert parse_timestamp("1700000000") == 1700000000

    def test_rfc3339(self):
        assert parse_timestamp("2023-11-14T22:13:20Z") == 1700000000
        assert parse_timestamp("2023-11-14T14:13:20-08:00") == 1700000000

    def test_missing_or_bad(self):
        assert parse_timestamp(None) == 0
        assert parse_timestamp("") == 0
        assert parse_timestamp("yesterday") == 0
        assert parse_timestamp(True) == 0


class TestModels:
    def test_conversation_from_json(self):
        conv = Conversation.from_json(
            {
                "id": "c1",
                "channel_type": "airbnb",
                "last_message_at": "2023-11-14T22:13:20Z",
                "guest": {"name": "Alice", "email": "a@example.com"},
                "property_title": "Beach House",
            }
        )
        assert conv.id == "c1"
        assert conv.guest.name == "Alice"
        assert conv.guest.phone == ""
        assert conv.last_message_at == 1700000000
        assert conv.property_title == "Beach House"

    def test_conversation_without_guest(self):
        conv = Conversation.from_json({"id": 7})
        assert conv.id == "7"
        assert conv.guest.name == ""

    def test_message_from_json(self):
        msg = Message.from_json(
            {"id": "m1", "content": "hi", "timestamp": 1700000000, "sender": "guest"}
        )
        assert msg == Message(id="m1", content="hi", timestamp=1700000000, sender="guest")


class TestRequests:
    @pytest.mark.asyncio
    async def test_list_conversations(self):
        body = {
            "error_code": 200,
            "error_msg": "ok",
            "data": {"conversations": [{"id": "c1"}, {"channel_type": "no id"}, "junk"]},
        }
        client, session = _client_with(_FakeResponse(body=body))

        conversations = await client.list_conversations()

        assert [c.id for c in conversations] == ["c1"]
        method, url = session.request.call_args.args
        assert (method, url) == ("GET", "https://api.hostex.io/v3/conversations")
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Hostex-Access-Token"] == "tok"
        assert headers["User-Agent"] == "HostexBridge/1.0"

    @pytest.mark.asyncio
    async def test_list_messages_params(self):
        body = {
            "error_code": 200,
            "data": {"messages": [{"id": "m1", "content": "hi", "timestamp": 1700000000}]},
        }
        client, session = _client_with(_FakeResponse(body=body))

        since = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        messages = await client.list_messages("c1", since, 10)

        assert [m.id for m in messages] == ["m1"]
        assert session.request.call_args.args[1].endswith("/conversations/c1/messages")
        assert session.request.call_args.kwargs["params"] == {
            "since": "2023-11-14T22:13:20Z",
            "limit": "10",
        }

    @pytest.mark.asyncio
    async def test_send_message_payload(self):
        client, session = _client_with(_FakeResponse(body={"error_code": 200}))

        await client.send_message("c1", "Thanks!")

        assert session.request.call_args.args[0] == "POST"
        assert session.request.call_args.kwargs["json"] == {"message": "Thanks!"}

    @pytest.mark.asyncio
    async def test_conversation_id_escaped_in_path(self):
        client, session = _client_with(_FakeResponse(body={"error_code": 200}))

        await client.send_message("a/b?c#d", "Thanks!")

        assert session.request.call_args.args[1] == (
            "https://api.hostex.io/v3/conversations/a%2Fb%3Fc%23d/messages"
        )


class TestErrors:
    @pytest.mark.asyncio
    async def test_http_status_error(self):
        client, _ = _client_with(_FakeResponse(status=503, body={}))

        with pytest.raises(HostexAPIError, match="status code: 503") as exc_info:
            await client.list_conversations()
        assert exc_info.value.status == 503

    @pytest.mark.asyncio
    async def test_in_body_error_code(self):
        body = {"error_code": 401, "error_msg": "invalid token"}
        client, _ = _client_with(_FakeResponse(body=body))

        with pytest.raises(HostexAPIError, match="invalid token") as exc_info:
            await client.send_message("c1", "hi")
        assert exc_info.value.error_code == 401

    @pytest.mark.asyncio
    async def test_transport_error(self):
        client, _ = _client_with(error=aiohttp.ClientConnectionError("refused"))

        with pytest.raises(HostexTransportError):
            await client.list_conversations()

    @pytest.mark.asyncio
    async def test_timeout_is_transport_error(self):
        client, _ = _client_with(error=asyncio.TimeoutError())

        with pytest.raises(HostexTransportError):
            await client.list_conversations()

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client, _ = _client_with(_FakeResponse(json_error=ValueError("bad")))

        with pytest.raises(HostexAPIError, match="invalid JSON"):
            await client.list_conversations()

    @pytest.mark.asyncio
    async def test_outside_context_manager(self):
        client = HostexClient("https://api.hostex.io/v3", "tok")

        with pytest.raises(HostexTransportError):
            await client.list_conversations()
