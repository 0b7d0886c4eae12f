"""对外服务模块。

提供进程级单例（会话缓存、上游客户端、Relay、提示词变体）以及
HTTP 层复用的辅助函数。
"""

import asyncio
import contextlib
import json
import re
import secrets
import string
import time
from typing import Any, AsyncIterator, List, Optional, Sequence, Tuple

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import BusinessError
from tutor_core.domain.models import ChatMessage, ChatTurn, RelayEvent, RelayOptions
from tutor_core.infrastructure.cache.memory_cache import ConversationCache
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.prompts import PromptRegistry, load_prompt_registry
from tutor_core.providers import create_client
from tutor_core.providers.base import UpstreamClient
from tutor_core.relay.sink import QueueSink
from tutor_core.relay.stream_relay import StreamRelay


_cache: Optional[ConversationCache] = None
_client: Optional[UpstreamClient] = None
_relay: Optional[StreamRelay] = None
_prompts: Optional[PromptRegistry] = None

_ID_ALPHABET = string.ascii_lowercase + string.digits
OPTION_LABELS = "ABCDEFGH"
# 回复中附带的 {"helper_questions": [...]} 块
_HELPER_BLOCK = re.compile(r'\{[\s\S]*"helper_questions"[\s\S]*\}')


def get_cache() -> ConversationCache:
    """获取进程级会话缓存（单例）。"""
    global _cache
    if _cache is None:
        _cache = ConversationCache(window=settings.conversation_window)
    return _cache


def get_client() -> UpstreamClient:
    global _client
    if _client is None:
        _client = create_client()
    return _client


def get_relay() -> StreamRelay:
    """获取默认 StreamRelay 实例（单例）。"""
    global _relay
    if _relay is None:
        _relay = StreamRelay(get_client(), get_cache(), settings)
    return _relay


def get_prompts() -> PromptRegistry:
    global _prompts
    if _prompts is None:
        _prompts = load_prompt_registry()
        logger.info("Loaded prompt variants", extra={"extra": {"variants": _prompts.names()}})
    return _prompts


def new_conversation_id() -> str:
    """生成形如 conv_<毫秒时间戳>_<9 位随机串> 的会话 ID。"""

    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"conv_{int(time.time() * 1000)}_{suffix}"


def to_messages(items: Sequence[Any], limit: int) -> List[ChatMessage]:
    """把请求体中的 {role, content} 列表转成 ChatMessage，只保留最后 limit 条。"""

    messages = [ChatMessage(role=item.role, content=item.content) for item in items]
    if limit <= 0:
        return []
    return messages[-limit:]


def format_options(options: Any) -> str:
    """把选项列表或 {key: text} 映射格式化为 "A) ..." 多行文本。"""

    if isinstance(options, dict):
        values = list(options.values())
    elif isinstance(options, (list, tuple)):
        values = list(options)
    else:
        return "" if options is None else str(options)
    return "\n".join(f"{OPTION_LABELS[i % len(OPTION_LABELS)]}) {v}" for i, v in enumerate(values))


def extract_helper_questions(text: str) -> Tuple[List[str], str]:
    """从模型回复中取出 helper_questions JSON 块。

    返回 (追问列表, 去掉 JSON 块后的正文)；没有合法的块时返回 ([], 原文)。
    """

    match = _HELPER_BLOCK.search(text or "")
    if not match:
        return [], text
    block = match.group(0)
    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        logger.warning("Helper questions block is not valid JSON", extra={"extra": {"chars": len(block)}})
        return [], text
    questions = parsed.get("helper_questions") if isinstance(parsed, dict) else None
    if not isinstance(questions, list):
        return [], text
    return [str(q) for q in questions], text.replace(block, "").strip()


async def stream_events(
    relay: StreamRelay,
    messages: Sequence[ChatMessage],
    conversation_id: Optional[str],
    options: Optional[RelayOptions] = None,
    user_turn: Optional[ChatTurn] = None,
) -> AsyncIterator[str]:
    """在后台任务中运行 relay，并把事件编码为 SSE 帧逐个产出。

    响应生成器结束（包括客户端断开）时关闭通道，Relay 据此放弃上游连接。
    """

    sink = QueueSink()

    async def _run() -> None:
        try:
            await relay.relay(messages, sink, conversation_id, options, user_turn)
        except BusinessError as e:
            logger.error(
                f"Relay rejected request: {e.message}",
                extra={"extra": {"conversation_id": conversation_id, "error_code": e.code}},
            )
            if not sink.closed:
                await sink.send(RelayEvent.failure(e.message))
        finally:
            await sink.close()

    task = asyncio.create_task(_run())
    try:
        async for frame in sink.frames():
            yield frame
    finally:
        await sink.close()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
