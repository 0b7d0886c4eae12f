"""统一的对话与结果数据模型。

本模块定义了 Relay、缓存与上游客户端之间共享的标准数据结构：

- ChatTurn: 缓存中的一条带时间戳的历史消息（不可变）。
- ChatMessage: 发给上游的一条消息（role + content）。
- ChatRequest: 发给上游 chat/completions 的完整请求。
- ChatResult: 非流式调用解析后的统一响应结果。
- RelayOptions / RelayEvent: Relay 的调用参数与下行事件。

上游客户端只依赖这些模型，并负责在 API JSON 与这些模型之间做转换。
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional


# 上游消息角色类型（与 OpenAI 兼容接口的 role 字段对应）
Role = Literal["system", "user", "assistant"]

EventType = Literal["chunk", "done", "error"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ChatMessage:
    """一条对话消息，用于构造上游请求。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChatTurn:
    """会话缓存中的一条历史消息，创建后不再修改。"""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=_utcnow)

    def to_message(self) -> ChatMessage:
        """去掉时间戳，转为可直接发给上游的 ChatMessage。"""

        return ChatMessage(role=self.role, content=self.content)

    def to_dict(self) -> Dict[str, str]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.astimezone(timezone.utc).isoformat().replace("+00:00", "Z"),
        }


@dataclass
class RelayOptions:
    """单次调用可覆盖的生成参数，未给出（或为 0）时使用配置默认值。"""

    max_tokens: Optional[int] = None
    temperature: Optional[float] = None


@dataclass
class ChatRequest:
    """一次完整的 chat/completions 请求。

    Relay 负责把消息列表与 RelayOptions 合成 ChatRequest，
    上游客户端负责把本结构转换成 API 的 JSON 请求体。
    """

    messages: List[ChatMessage]
    max_tokens: int
    temperature: float
    top_p: float = 0.9
    frequency_penalty: float = 0.5
    presence_penalty: float = 0.1
    model: Optional[str] = None  # 为空时由客户端使用配置中的 api_model


@dataclass
class ChatUsage:
    """上游返回的 token 统计信息（统一格式）。"""

    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


@dataclass
class ChatChoice:
    """单个候选回答（目前通常只用 index=0 的一条）。"""

    index: int
    message: ChatMessage
    finish_reason: Optional[str] = None


@dataclass
class ChatResult:
    """一次非流式调用的最终结果。

    - model: 上游实际使用的模型 ID。
    - choices: 一个或多个候选回答。
    - usage: 可选的 token 使用统计。
    - raw: 原始响应 JSON，用于调试或日志记录。
    """

    model: str
    choices: List[ChatChoice]
    usage: Optional[ChatUsage] = None
    raw: Optional[dict] = None

    @property
    def content(self) -> str:
        if not self.choices:
            return ""
        return self.choices[0].message.content


@dataclass
class RelayEvent:
    """发给客户端的下行事件。

    type:
        - "chunk": 内容增量，content 为本次片段。
        - "done": 正常结束。
        - "error": 异常结束，error 为可展示的错误信息。
    """

    type: EventType
    content: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def chunk(cls, content: str) -> "RelayEvent":
        return cls(type="chunk", content=content)

    @classmethod
    def done(cls) -> "RelayEvent":
        return cls(type="done")

    @classmethod
    def failure(cls, error: str) -> "RelayEvent":
        return cls(type="error", error=error)

    def to_dict(self) -> Dict[str, Any]:
        if self.type == "chunk":
            return {"type": "chunk", "content": self.content or ""}
        if self.type == "error":
            return {"type": "error", "error": self.error or ""}
        return {"type": "done"}
