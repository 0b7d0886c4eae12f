"""上游 LLM 集成层。

该包下的模块负责：
- 定义上游客户端抽象接口 (base)。
- 提供 OpenAI 兼容 chat/completions 的具体实现 (chat_client)。
"""

from typing import Optional

import httpx

from tutor_core.config.settings import settings
from tutor_core.providers.base import UpstreamClient
from tutor_core.providers.chat_client import ChatCompletionsClient


def create_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> UpstreamClient:
    """根据当前配置创建上游客户端实例。"""

    return ChatCompletionsClient(settings, transport=transport)
