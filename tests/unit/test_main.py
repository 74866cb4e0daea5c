"""
Unit tests for the host message protocol.

Messages are a 4-byte native-order length followed by UTF-8 JSON.
"""

import io
import json
import struct
from unittest.mock import AsyncMock, MagicMock

import pytest

from sortengine.main import get_message, send_message, serve


def frame(message):
    body = json.dumps(message).encode("utf-8")
    return struct.pack("@I", len(body)) + body


def read_all(buffer):
    buffer.seek(0)
    messages = []
    while True:
        message = get_message(buffer)
        if message is None:
            return messages
        messages.append(message)


class TestFraming:
    """Tests for reading and writing framed messages."""

    def test_send_message_format(self):
        stream = io.BytesIO()
        send_message({"type": "pong"}, stream)

        raw = stream.getvalue()
        length = struct.unpack("@I", raw[:4])[0]
        assert length == len(raw) - 4
        assert json.loads(raw[4:].decode("utf-8")) == {"type": "pong"}

    def test_get_message(self):
        stream = io.BytesIO(frame({"type": "ping", "payload": {"n": 1}}))
        assert get_message(stream) == {"type": "ping", "payload": {"n": 1}}

    def test_unicode_payload(self):
        stream = io.BytesIO()
        send_message({"filename": "résumé_日本.pdf"}, stream)
        stream.seek(0)
        assert get_message(stream)["filename"] == "résumé_日本.pdf"

    def test_closed_stream_returns_none(self):
        assert get_message(io.BytesIO(b"")) is None
        assert get_message(io.BytesIO(b"\x01\x00")) is None

    def test_malformed_json_raises(self):
        body = b"{not json"
        stream = io.BytesIO(struct.pack("@I", len(body)) + body)
        with pytest.raises(ValueError):
            get_message(stream)


class TestServe:
    """Tests for the message loop."""

    def _engine(self, handler):
        engine = MagicMock()
        engine.start = AsyncMock()
        engine.stop = AsyncMock()
        engine.handle_message = AsyncMock(side_effect=handler)
        return engine

    @pytest.mark.asyncio
    async def test_answers_each_message_until_eof(self):
        engine = self._engine(lambda message: {"status": "ok", "echo": message["type"]})
        reader = io.BytesIO(frame({"type": "ping"}) + frame({"type": "stats"}))
        writer = io.BytesIO()

        await serve(engine, reader, writer)

        assert read_all(writer) == [
            {"status": "ok", "echo": "ping"},
            {"status": "ok", "echo": "stats"},
        ]
        engine.start.assert_awaited_once()
        engine.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_malformed_message_gets_error_reply(self):
        engine = self._engine(lambda message: {"status": "ok"})
        body = b"\xff\xfe garbage"
        reader = io.BytesIO(struct.pack("@I", len(body)) + body + frame({"type": "ping"}))
        writer = io.BytesIO()

        await serve(engine, reader, writer)

        replies = read_all(writer)
        assert replies[0]["status"] == "error"
        assert "Malformed message" in replies[0]["error"]
        assert replies[1] == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_handler_crash_is_reported(self):
        def explode(message):
            raise RuntimeError("kaboom")

        engine = self._engine(explode)
        writer = io.BytesIO()

        await serve(engine, io.BytesIO(frame({"type": "categorize"})), writer)

        assert read_all(writer) == [{"status": "error", "error": "kaboom"}]
        engine.stop.assert_awaited_once()
