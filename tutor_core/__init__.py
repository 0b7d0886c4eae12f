"""Tutor Relay 顶层包。

该包提供 AI 辅导聊天后端的核心实现：上游 chat/completions 流式转发
（StreamRelay）、按会话的滑动窗口缓存、提示词变体以及 HTTP 接口。
"""

from tutor_core.domain.models import ChatMessage, ChatTurn, RelayEvent, RelayOptions
from tutor_core.infrastructure.cache.memory_cache import ConversationCache
from tutor_core.relay import QueueSink, StreamRelay, StreamSession

__all__ = [
    "ChatMessage",
    "ChatTurn",
    "ConversationCache",
    "QueueSink",
    "RelayEvent",
    "RelayOptions",
    "StreamRelay",
    "StreamSession",
]
