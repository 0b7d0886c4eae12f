import asyncio
import json
from contextlib import asynccontextmanager
from typing import List, Optional

import pytest

from tutor_core.domain.exceptions import SinkClosedError
from tutor_core.domain.models import ChatMessage, ChatResult, RelayEvent


class SettingsStub:
    api_base_url = "https://llm.example.com/v1"
    api_key = "sk-test-1234567890"
    api_model = "test-model"
    http_timeout = 1.0
    connect_timeout = 1.0
    stream_timeout = 5.0
    max_retries = 2
    retry_base_delay = 2.0
    default_max_tokens = 8192
    default_temperature = 0.5
    top_p = 0.9
    frequency_penalty = 0.5
    presence_penalty = 0.1


class RecordingSink:
    """记录所有写入事件的 OutputSink；close_after=n 表示写入 n 个事件后模拟客户端断开。"""

    def __init__(self, close_after: Optional[int] = None):
        self.events: List[RelayEvent] = []
        self.close_calls = 0
        self._closed = False
        self._close_after = close_after

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: RelayEvent) -> None:
        if self._closed:
            raise SinkClosedError(code="SINK_CLOSED", message="output sink is closed")
        self.events.append(event)
        if self._close_after is not None and len(self.events) >= self._close_after:
            self._closed = True

    async def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    @property
    def types(self) -> List[str]:
        return [e.type for e in self.events]

    @property
    def text(self) -> str:
        return "".join(e.content or "" for e in self.events if e.type == "chunk")


def sse(content: str) -> str:
    payload = {"choices": [{"index": 0, "delta": {"content": content}}]}
    return f"data: {json.dumps(payload)}\n\n"


class FakeClient:
    """按脚本回放的上游客户端。

    script 的每一项对应一次 stream() 调用：
    - BusinessError 实例：连接阶段抛出；
    - 字符串列表：依次产出的文本块，其中的异常实例在流中途抛出。
    """

    name = "fake"

    def __init__(self, *script, hang: bool = False, result: Optional[ChatResult] = None):
        self.script = list(script)
        self.requests = []
        self.hang = hang
        self.result = result

    @asynccontextmanager
    async def stream(self, req):
        self.requests.append(req)
        step = self.script.pop(0) if self.script else []
        if isinstance(step, Exception):
            raise step
        yield self._chunks(step)

    async def _chunks(self, step):
        for item in step:
            if isinstance(item, Exception):
                raise item
            yield item
        if self.hang:
            await asyncio.sleep(3600)

    async def chat(self, req):
        self.requests.append(req)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def user_message():
    return [ChatMessage(role="user", content="hi")]
