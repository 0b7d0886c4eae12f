"""下行输出通道。

OutputSink 抽象了“能逐步写事件、能关闭”的客户端连接；QueueSink 是基于
asyncio.Queue 的实现：Relay 在一个任务里写入，HTTP 层的响应生成器在另一端
读取并编码为 `data: <json>\\n\\n` 帧。
"""

import asyncio
import json
from typing import AsyncIterator, Optional, Protocol

from tutor_core.domain.exceptions import SinkClosedError
from tutor_core.domain.models import RelayEvent


class OutputSink(Protocol):
    @property
    def closed(self) -> bool:
        ...

    async def send(self, event: RelayEvent) -> None:
        ...

    async def close(self) -> None:
        ...


def encode_event(event: RelayEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


class QueueSink:
    """asyncio.Queue 支撑的 OutputSink，close 幂等。"""

    def __init__(self) -> None:
        self._queue: "asyncio.Queue[Optional[RelayEvent]]" = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: RelayEvent) -> None:
        if self._closed:
            raise SinkClosedError(code="SINK_CLOSED", message="output sink is closed")
        await self._queue.put(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # None 作为结束标记，唤醒等待中的读取方
        self._queue.put_nowait(None)

    async def events(self) -> AsyncIterator[RelayEvent]:
        """按写入顺序读取事件，直到通道关闭。"""

        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event

    async def frames(self) -> AsyncIterator[str]:
        async for event in self.events():
            yield encode_event(event)
