"""Tests for the Telegram transport (httpx.MockTransport) and chunked delivery."""

import asyncio
import json

import httpx
import pytest

from relaybot.exceptions import TransportError
from relaybot.transport import TelegramTransport, Update

from fakes import FakeTransport


def make_transport(handler, **kwargs) -> TelegramTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("chunk_delay", 0)
    return TelegramTransport("TOKEN", api_base="https://api.test", client=client, **kwargs)


def ok(result) -> httpx.Response:
    return httpx.Response(200, json={"ok": True, "result": result})


class TestFetchUpdates:
    """getUpdates long polling."""

    def test_requests_after_cursor_and_parses(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return ok([
                {"update_id": 8, "message": {"chat": {"id": 42}, "text": " hi ",
                                             "from": {"id": 7, "username": "alice"}}},
                {"update_id": 9, "edited_message": {"chat": {"id": 42}, "text": "edit"}},
            ])

        transport = make_transport(handler)
        updates = asyncio.run(transport.fetch_updates(since=7, timeout=30))

        assert seen["url"] == "https://api.test/botTOKEN/getUpdates"
        assert seen["body"] == {"offset": 8, "timeout": 30, "allowed_updates": ["message"]}
        assert updates[0] == Update(id=8, chat_id="42", text="hi", sender_id="7", sender_name="alice")
        assert updates[0].has_message
        # Non-message updates still carry an id for the cursor
        assert updates[1].id == 9
        assert not updates[1].has_message

    def test_api_error_raises(self):
        def handler(request):
            return httpx.Response(401, json={"ok": False, "description": "Unauthorized"})

        with pytest.raises(TransportError, match="Unauthorized"):
            asyncio.run(make_transport(handler).fetch_updates(0, 30))

    def test_network_error_raises(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransportError, match="network error"):
            asyncio.run(make_transport(handler).fetch_updates(0, 30))

    def test_timeout_raises(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        with pytest.raises(TransportError, match="timed out"):
            asyncio.run(make_transport(handler).fetch_updates(0, 1))

    def test_invalid_json_raises(self):
        def handler(request):
            return httpx.Response(502, text="<html>bad gateway</html>")

        with pytest.raises(TransportError, match="invalid JSON"):
            asyncio.run(make_transport(handler).fetch_updates(0, 30))

    def test_non_object_body_raises(self):
        def handler(request):
            return httpx.Response(200, json=["not", "an", "object"])

        with pytest.raises(TransportError, match="unexpected body"):
            asyncio.run(make_transport(handler).fetch_updates(0, 30))


class TestSend:
    """sendMessage and sendChatAction."""

    def test_send_html(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return ok({"message_id": 1})

        assert asyncio.run(make_transport(handler).send_text("42", "<b>x</b>")) is True
        assert bodies[0]["parse_mode"] == "HTML"
        assert bodies[0]["chat_id"] == "42"

    def test_plain_send_omits_parse_mode(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return ok({"message_id": 1})

        asyncio.run(make_transport(handler).send_text("42", "plain", parse_mode=None))
        assert "parse_mode" not in bodies[0]

    def test_send_failure_returns_false(self):
        def handler(request):
            return httpx.Response(400, json={"ok": False, "description": "can't parse entities"})

        assert asyncio.run(make_transport(handler).send_text("42", "<b>broken")) is False

    def test_typing_failure_is_swallowed(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        asyncio.run(make_transport(handler).send_typing("42"))

    def test_typing_odd_body_is_swallowed(self):
        def handler(request):
            return httpx.Response(200, json="ok")

        asyncio.run(make_transport(handler).send_typing("42"))


class TestDeliver:
    """Chunking and the plain-text fallback."""

    def test_long_reply_is_chunked(self):
        transport = FakeTransport()
        transport.message_limit = 100
        asyncio.run(transport.deliver("42", "word " * 50))

        assert len(transport.sent) == 3
        assert all(len(t) <= 100 for t in transport.texts)
        assert transport.texts[0].startswith("[1/3]\n")

    def test_html_rejected_falls_back_to_plain(self):
        transport = FakeTransport(fail_html=True)
        assert asyncio.run(transport.deliver("42", "<b>5 &lt; 6</b>")) is True
        assert transport.sent == [("42", "5 < 6", None)]

    def test_total_failure_returns_false(self):
        transport = FakeTransport(fail_all=True)
        assert asyncio.run(transport.deliver("42", "hello")) is False

    def test_empty_text_sends_placeholder(self):
        transport = FakeTransport()
        asyncio.run(transport.deliver("42", "  "))
        assert transport.texts == ["(Empty response)"]

    def test_fallback_against_api(self):
        """The API rejects the HTML chunk; the plain retry goes through."""
        bodies = []

        def handler(request):
            body = json.loads(request.content)
            bodies.append(body)
            if body.get("parse_mode") == "HTML":
                return httpx.Response(400, json={"ok": False, "description": "can't parse entities"})
            return ok({"message_id": 2})

        assert asyncio.run(make_transport(handler).deliver("42", "<b>hi</b>")) is True
        assert [b.get("parse_mode") for b in bodies] == ["HTML", None]
        assert bodies[1]["text"] == "hi"
