"""进程内滑动窗口会话缓存。

每个会话保留最近 window 条消息，超出时从最旧的一条开始淘汰。
进程重启后内容不保留。
"""

import threading
from collections import deque
from typing import Deque, Dict, List

from tutor_core.domain.conversation import ConversationStore
from tutor_core.domain.models import ChatMessage, ChatTurn


class ConversationCache(ConversationStore):
    def __init__(self, window: int = 10):
        if isinstance(window, bool) or not isinstance(window, int) or window < 1:
            raise ValueError(f"window must be a positive integer, got {window!r}")
        self._window = window
        self._conversations: Dict[str, Deque[ChatTurn]] = {}
        # 同步路由运行在线程池中，读写都需持锁
        self._lock = threading.Lock()

    @property
    def window(self) -> int:
        return self._window

    def append(self, conversation_id: str, turn: ChatTurn) -> None:
        with self._lock:
            turns = self._conversations.get(conversation_id)
            if turns is None:
                turns = deque(maxlen=self._window)
                self._conversations[conversation_id] = turns
            turns.append(turn)

    def get_context(self, conversation_id: str) -> List[ChatMessage]:
        return [turn.to_message() for turn in self.get_turns(conversation_id)]

    def get_turns(self, conversation_id: str) -> List[ChatTurn]:
        with self._lock:
            return list(self._conversations.get(conversation_id, ()))

    def clear(self, conversation_id: str) -> None:
        with self._lock:
            self._conversations.pop(conversation_id, None)

    def __contains__(self, conversation_id: object) -> bool:
        with self._lock:
            return conversation_id in self._conversations

    def __len__(self) -> int:
        with self._lock:
            return len(self._conversations)
