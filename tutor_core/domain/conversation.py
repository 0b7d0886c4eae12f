from typing import List, Protocol

from .models import ChatMessage, ChatTurn


# 不写入缓存的会话标识
NO_PERSIST = "__no_persist__"


class ConversationStore(Protocol):
    """请求处理方可见的会话上下文接口。"""

    def append(self, conversation_id: str, turn: ChatTurn) -> None:
        ...

    def get_context(self, conversation_id: str) -> List[ChatMessage]:
        ...

    def get_turns(self, conversation_id: str) -> List[ChatTurn]:
        ...

    def clear(self, conversation_id: str) -> None:
        ...


def should_persist(conversation_id: str | None) -> bool:
    return bool(conversation_id) and conversation_id != NO_PERSIST
