"""上游客户端抽象接口。

StreamRelay 不直接依赖 httpx，而是依赖此协议：

- stream(req): 异步上下文管理器。进入时建立连接（连接阶段的错误在此抛出，
  Relay 据此决定是否重试），产出的异步迭代器逐块返回原始文本；
  退出时释放连接。
- chat(req): 非流式调用，返回统一的 ChatResult。

这样测试中可以用假的客户端替换真实 HTTP 调用。
"""

from typing import AsyncContextManager, AsyncIterator, Protocol

from tutor_core.domain.models import ChatRequest, ChatResult


class UpstreamClient(Protocol):
    name: str

    def stream(self, req: ChatRequest) -> AsyncContextManager[AsyncIterator[str]]:
        ...

    async def chat(self, req: ChatRequest) -> ChatResult:
        ...
