import asyncio
import json
from contextlib import asynccontextmanager

from conftest import FakeClient, SettingsStub, sse
from tutor_core.api import service
from tutor_core.domain.models import ChatMessage
from tutor_core.infrastructure.cache.memory_cache import ConversationCache
from tutor_core.relay.stream_relay import StreamRelay


class SlowClient:
    """每个文本块之间都会挂起的上游，用来模拟真实网络读取。"""

    name = "slow"

    def __init__(self, chunks, pause=0.5):
        self.chunks = list(chunks)
        self.pause = pause
        self.sent = 0
        self.cancelled = False

    @asynccontextmanager
    async def stream(self, req):
        yield self._chunks()

    async def _chunks(self):
        try:
            for i, chunk in enumerate(self.chunks):
                if i:
                    await asyncio.sleep(self.pause)
                self.sent += 1
                yield chunk
        except asyncio.CancelledError:
            self.cancelled = True
            raise


def test_response_close_cancels_relay_without_commit():
    cache = ConversationCache(window=10)
    upstream = SlowClient([sse("a"), sse("b"), "data: [DONE]\n\n"])
    relay = StreamRelay(upstream, cache, SettingsStub())
    messages = [ChatMessage(role="user", content="hi")]

    async def scenario():
        frames = service.stream_events(relay, messages, "c1")
        first = await frames.__anext__()
        # 客户端断开：响应生成器被提前关闭
        await frames.aclose()
        return first

    first = asyncio.run(scenario())

    assert json.loads(first[len("data: "):]) == {"type": "chunk", "content": "a"}
    assert upstream.cancelled is True
    assert upstream.sent == 1
    assert cache.get_turns("c1") == []


def test_stream_events_reports_rejected_request():
    relay = StreamRelay(FakeClient(), ConversationCache(window=10), SettingsStub())

    async def scenario():
        return [frame async for frame in service.stream_events(relay, [], "c1")]

    frames = asyncio.run(scenario())
    assert [json.loads(f[len("data: "):])["type"] for f in frames] == ["error"]
