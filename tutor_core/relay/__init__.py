"""Streaming relay: SSE decoding, output sinks and the StreamRelay state machine."""

from .sink import OutputSink, QueueSink, encode_event
from .stream_relay import SessionState, StreamRelay, StreamSession

__all__ = [
    "OutputSink",
    "QueueSink",
    "SessionState",
    "StreamRelay",
    "StreamSession",
    "encode_event",
]
