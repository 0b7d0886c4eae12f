import asyncio

import pytest

from tutor_core.domain.exceptions import SinkClosedError
from tutor_core.domain.models import RelayEvent
from tutor_core.relay.sink import QueueSink, encode_event
from tutor_core.relay.sse import SSELineDecoder, parse_frame


def test_decoder_buffers_partial_lines():
    dec = SSELineDecoder()
    assert dec.feed('data: {"a"') == []
    assert dec.feed(': 1}\n\ndata: [DO') == ['data: {"a": 1}', ""]
    assert dec.feed("NE]\n") == ["data: [DONE]"]
    assert dec.flush() == []


def test_decoder_handles_crlf_split_between_reads():
    dec = SSELineDecoder()
    assert dec.feed("data: x\r") == []
    assert dec.feed("\ndata: y\r\n") == ["data: x", "data: y"]
    assert dec.feed("data: z\r") == []
    assert dec.flush() == ["data: z"]


def test_decoder_keeps_unicode_separators_in_content():
    dec = SSELineDecoder()
    assert dec.feed("data: a\u2028b\n") == ["data: a\u2028b"]


def test_flush_returns_unterminated_line():
    dec = SSELineDecoder()
    dec.feed("data: [DONE]")
    assert dec.flush() == ["data: [DONE]"]
    assert dec.flush() == []


@pytest.mark.parametrize(
    "line,kind,content",
    [
        ('data: {"choices": [{"delta": {"content": "hi"}}]}', "delta", "hi"),
        ('data:{"choices": [{"delta": {"content": "x"}}]}', "delta", "x"),
        ("data: [DONE]", "done", ""),
        ('data: {"choices": [{"delta": {"content": ""}}]}', "skip", ""),
        ('data: {"choices": []}', "skip", ""),
        ("data: not-json", "skip", ""),
        ("data: [1, 2]", "skip", ""),
        (": comment", "skip", ""),
        ("", "skip", ""),
        ("event: message", "skip", ""),
    ],
)
def test_parse_frame(line, kind, content):
    frame = parse_frame(line)
    assert frame.kind == kind
    assert frame.content == content


def test_parse_error_frame():
    frame = parse_frame('data: {"error": {"message": "quota exceeded"}}')
    assert frame.kind == "error"
    assert frame.error == "quota exceeded"
    assert parse_frame('data: {"error": {}}').kind == "skip"
    assert parse_frame('data: {"error": {"code": 1}}').error == "Upstream API error"


def test_encode_event():
    assert encode_event(RelayEvent.chunk("سلام")) == 'data: {"type": "chunk", "content": "سلام"}\n\n'
    assert encode_event(RelayEvent.done()) == 'data: {"type": "done"}\n\n'
    assert encode_event(RelayEvent.failure("Stream timeout")) == 'data: {"type": "error", "error": "Stream timeout"}\n\n'


def test_queue_sink_delivers_in_order_and_rejects_after_close():
    async def scenario():
        sink = QueueSink()
        await sink.send(RelayEvent.chunk("a"))
        await sink.send(RelayEvent.done())
        await sink.close()
        await sink.close()
        with pytest.raises(SinkClosedError):
            await sink.send(RelayEvent.chunk("late"))
        return [frame async for frame in sink.frames()]

    frames = asyncio.run(scenario())
    assert frames == ['data: {"type": "chunk", "content": "a"}\n\n', 'data: {"type": "done"}\n\n']
