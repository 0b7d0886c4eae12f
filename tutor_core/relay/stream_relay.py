"""流式转发核心模块。

一次 relay() 调用对应一个 StreamSession：

    INIT -> CONNECTING -> STREAMING -> COMPLETED | ERRORED | TIMED_OUT
                 |  ^
                 +--+  连接阶段瞬时错误，最多重试 max_retries 次

客户端先关闭通道时会话以 CANCELLED 结束。每个会话最多向客户端写一个终止
事件（done 或 error），之后不再写入；只有收到结束标记后才把助手回复写入
会话缓存。
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from tutor_core.config.settings import settings
from tutor_core.domain.conversation import ConversationStore, should_persist
from tutor_core.domain.exceptions import (
    BusinessError,
    ConfigurationError,
    EmptyStreamError,
    SinkClosedError,
    StreamTimeoutError,
    TransientNetworkError,
    UpstreamError,
    ValidationError,
)
from tutor_core.domain.models import ChatMessage, ChatRequest, ChatTurn, RelayEvent, RelayOptions
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.providers.base import UpstreamClient
from tutor_core.relay.sink import OutputSink
from tutor_core.relay.sse import SSELineDecoder, parse_frame


MSG_NOT_CONFIGURED = "AI service is not configured"
MSG_CONNECT_FAILED = "Failed to get AI response"
MSG_RETRIES_EXHAUSTED = "Failed to get AI response after multiple attempts"
MSG_STREAM_ERROR = "Stream error occurred"
MSG_EMPTY_STREAM = "Stream ended without data"
MSG_TIMEOUT = "Stream timeout"
MSG_INTERNAL = "Failed to process chat message"


class SessionState(str, Enum):
    INIT = "init"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    ERRORED = "errored"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.ERRORED, SessionState.TIMED_OUT, SessionState.CANCELLED}
)


@dataclass
class StreamSession:
    """单次 relay 调用的临时状态，调用结束后只读。"""

    session_id: str
    conversation_id: Optional[str]
    messages: List[ChatMessage]
    sink: OutputSink
    state: SessionState = SessionState.INIT
    attempts: int = 0
    pieces: List[str] = field(default_factory=list)
    error: Optional[BusinessError] = None
    started_at: float = field(default_factory=time.monotonic)

    @property
    def text(self) -> str:
        return "".join(self.pieces)

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES


class StreamRelay:
    """把一次“提问并流式回答”从上游转发到客户端。

    Args:
        client: 上游客户端（UpstreamClient）。
        cache: 会话缓存，完成后写入助手回复。
        cfg: 配置对象，提供生成参数默认值与重试/超时设置。
        max_retries / retry_base_delay / stream_timeout: 覆盖 cfg 中的同名设置。
        sleep: 退避等待函数，测试中可替换以观察等待时长。
    """

    def __init__(
        self,
        client: UpstreamClient,
        cache: ConversationStore,
        cfg=settings,
        *,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        stream_timeout: Optional[float] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._client = client
        self._cache = cache
        self._settings = cfg
        self._max_retries = cfg.max_retries if max_retries is None else max_retries
        self._retry_base_delay = cfg.retry_base_delay if retry_base_delay is None else retry_base_delay
        self._stream_timeout = cfg.stream_timeout if stream_timeout is None else stream_timeout
        self._sleep = sleep

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次失败（从 0 开始）后的等待秒数：base ** attempt。"""

        return self._retry_base_delay ** attempt

    async def relay(
        self,
        messages: Sequence[ChatMessage],
        sink: OutputSink,
        conversation_id: Optional[str],
        options: Optional[RelayOptions] = None,
        user_turn: Optional[ChatTurn] = None,
    ) -> StreamSession:
        """执行一次流式会话，返回结束后的 StreamSession。

        user_turn 不为空时，会在成功结束后与助手回复一起写入缓存；
        调用方已自行写入用户消息时传 None。
        """

        self._validate(messages)
        session = StreamSession(
            session_id=f"ss-{uuid4().hex}",
            conversation_id=conversation_id,
            messages=list(messages),
            sink=sink,
        )
        log_ctx: Dict[str, Any] = {
            "session_id": session.session_id,
            "conversation_id": conversation_id,
        }
        req = self.build_request(session.messages, options)
        self._log(
            logging.INFO,
            "Relay started",
            log_ctx,
            message_count=len(session.messages),
            max_tokens=req.max_tokens,
            temperature=req.temperature,
        )
        try:
            await self._run(session, req, user_turn, log_ctx)
        except Exception as e:
            logger.exception("Relay failed unexpectedly", extra={"extra": log_ctx})
            if not session.finished:
                await self._fail(
                    session,
                    SessionState.ERRORED,
                    BusinessError(code="INTERNAL_ERROR", message=str(e), http_status=500),
                    MSG_INTERNAL,
                    log_ctx,
                )
        self._log(
            logging.INFO,
            "Relay finished",
            log_ctx,
            state=session.state.value,
            attempts=session.attempts,
            chars=len(session.text),
            error_code=session.error.code if session.error else None,
            elapsed_seconds=round(time.monotonic() - session.started_at, 3),
        )
        return session

    # ---- 状态机 ----

    async def _run(
        self,
        session: StreamSession,
        req: ChatRequest,
        user_turn: Optional[ChatTurn],
        log_ctx: Dict[str, Any],
    ) -> None:
        for attempt in range(self._max_retries + 1):
            if session.sink.closed:
                self._cancel(session, log_ctx)
                return
            session.attempts = attempt + 1
            session.state = SessionState.CONNECTING
            try:
                async with self._client.stream(req) as chunks:
                    session.state = SessionState.STREAMING
                    self._log(logging.INFO, "Upstream connected", log_ctx, attempt=session.attempts)
                    try:
                        await asyncio.wait_for(
                            self._consume(session, chunks, user_turn, log_ctx),
                            timeout=self._stream_timeout,
                        )
                    except asyncio.TimeoutError:
                        await self._fail(
                            session,
                            SessionState.TIMED_OUT,
                            StreamTimeoutError(code="STREAM_TIMEOUT", message=MSG_TIMEOUT, http_status=504),
                            MSG_TIMEOUT,
                            log_ctx,
                        )
                return
            except BusinessError as e:
                if session.state is not SessionState.CONNECTING:
                    # 数据已经开始流动，任何错误都直接结束会话
                    if not session.finished:
                        await self._fail(session, SessionState.ERRORED, e, MSG_STREAM_ERROR, log_ctx)
                    return
                if isinstance(e, ConfigurationError):
                    await self._fail(session, SessionState.ERRORED, e, MSG_NOT_CONFIGURED, log_ctx)
                    return
                if not isinstance(e, TransientNetworkError):
                    await self._fail(session, SessionState.ERRORED, e, MSG_CONNECT_FAILED, log_ctx)
                    return
                if attempt >= self._max_retries:
                    await self._fail(session, SessionState.ERRORED, e, MSG_RETRIES_EXHAUSTED, log_ctx)
                    return
                delay = self.backoff_delay(attempt)
                self._log(
                    logging.WARNING,
                    "Upstream connection failed, retrying",
                    log_ctx,
                    attempt=session.attempts,
                    delay_seconds=delay,
                    error=e.message,
                )
                await self._sleep(delay)

    async def _consume(
        self,
        session: StreamSession,
        chunks,
        user_turn: Optional[ChatTurn],
        log_ctx: Dict[str, Any],
    ) -> None:
        decoder = SSELineDecoder()
        async for text in chunks:
            if session.sink.closed:
                self._cancel(session, log_ctx)
                return
            for line in decoder.feed(text):
                if await self._handle_line(session, line, user_turn, log_ctx):
                    return
        for line in decoder.flush():
            if await self._handle_line(session, line, user_turn, log_ctx):
                return

        # 上游没有发送 [DONE] 就关闭了连接
        if session.sink.closed:
            self._cancel(session, log_ctx)
        elif session.text.strip():
            await self._complete(session, user_turn, log_ctx)
        else:
            await self._fail(
                session,
                SessionState.ERRORED,
                EmptyStreamError(code="EMPTY_STREAM", message=MSG_EMPTY_STREAM, http_status=502),
                MSG_EMPTY_STREAM,
                log_ctx,
            )

    async def _handle_line(
        self,
        session: StreamSession,
        line: str,
        user_turn: Optional[ChatTurn],
        log_ctx: Dict[str, Any],
    ) -> bool:
        """处理一行数据，会话结束时返回 True。"""

        frame = parse_frame(line)
        if frame.kind == "skip":
            return False
        if session.sink.closed:
            self._cancel(session, log_ctx)
            return True
        if frame.kind == "delta":
            session.pieces.append(frame.content)
            try:
                await session.sink.send(RelayEvent.chunk(frame.content))
            except SinkClosedError:
                self._cancel(session, log_ctx)
                return True
            return False
        if frame.kind == "done":
            await self._complete(session, user_turn, log_ctx)
            return True
        await self._fail(
            session,
            SessionState.ERRORED,
            UpstreamError(code="UPSTREAM_ERROR", message=frame.error or "Upstream API error", http_status=502),
            frame.error or "Upstream API error",
            log_ctx,
        )
        return True

    # ---- 终止处理 ----

    async def _complete(
        self,
        session: StreamSession,
        user_turn: Optional[ChatTurn],
        log_ctx: Dict[str, Any],
    ) -> None:
        if session.sink.closed:
            self._cancel(session, log_ctx)
            return
        if should_persist(session.conversation_id):
            if user_turn is not None:
                self._cache.append(session.conversation_id, user_turn)
            self._cache.append(session.conversation_id, ChatTurn(role="assistant", content=session.text))
        session.state = SessionState.COMPLETED
        await self._terminate(session, RelayEvent.done())

    async def _fail(
        self,
        session: StreamSession,
        state: SessionState,
        error: BusinessError,
        client_message: str,
        log_ctx: Dict[str, Any],
    ) -> None:
        session.error = error
        session.state = state
        self._log(
            logging.ERROR,
            "Relay session failed",
            log_ctx,
            state=state.value,
            error_code=error.code,
            error=error.message,
            attempts=session.attempts,
        )
        await self._terminate(session, RelayEvent.failure(client_message))

    def _cancel(self, session: StreamSession, log_ctx: Dict[str, Any]) -> None:
        session.state = SessionState.CANCELLED
        self._log(logging.INFO, "Client closed the stream", log_ctx, chars=len(session.text))

    @staticmethod
    async def _terminate(session: StreamSession, event: RelayEvent) -> None:
        if session.sink.closed:
            return
        try:
            await session.sink.send(event)
        finally:
            await session.sink.close()

    # ---- 辅助方法 ----

    @staticmethod
    def _validate(messages: Sequence[ChatMessage]) -> None:
        if not messages:
            raise ValidationError(code="EMPTY_MESSAGES", message="messages must not be empty")
        for idx, message in enumerate(messages):
            if not getattr(message, "role", None):
                raise ValidationError(code="INVALID_MESSAGE", message=f"message {idx} has no role")

    def build_request(self, messages: Sequence[ChatMessage], options: Optional[RelayOptions] = None) -> ChatRequest:
        """合成上游请求；options 中未给出（或为 0）的参数取配置默认值。"""

        options = options or RelayOptions()
        return ChatRequest(
            messages=list(messages),
            max_tokens=options.max_tokens or self._settings.default_max_tokens,
            temperature=options.temperature or self._settings.default_temperature,
            top_p=self._settings.top_p,
            frequency_penalty=self._settings.frequency_penalty,
            presence_penalty=self._settings.presence_penalty,
        )

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
