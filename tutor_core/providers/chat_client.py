"""OpenAI 兼容 chat/completions 上游适配器。

- URL: {api_base_url}/chat/completions
- 认证: Authorization: Bearer <api_key>

本实现只依赖公共字段：model/messages/max_tokens/temperature/top_p/
frequency_penalty/presence_penalty/stream。

错误映射：
- 连接阶段的 DNS 失败、连接被拒/重置、超时 -> TransientNetworkError（可重试）。
- 其他请求错误 -> NetworkError。
- 429 -> RateLimitError；其他 >=400 -> ApiError。
- 已开始读取响应体之后的传输错误 -> StreamInterruptedError。
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import (
    ApiError,
    ConfigurationError,
    NetworkError,
    RateLimitError,
    StreamInterruptedError,
    TransientNetworkError,
)
from tutor_core.domain.models import ChatChoice, ChatMessage, ChatRequest, ChatResult, ChatUsage


# 尚未收到响应头时出现这些错误，视为瞬时连接错误
_TRANSIENT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class ChatCompletionsClient:
    """上游 chat/completions 客户端实现。"""

    name = "chat-completions"

    def __init__(self, cfg=settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = cfg
        # 测试中可注入 httpx.MockTransport
        self._transport = transport

    # ---- 流式 ----

    @asynccontextmanager
    async def stream(self, req: ChatRequest) -> AsyncIterator[AsyncIterator[str]]:
        url, headers = self._endpoint(req)
        payload = self._build_payload(req, stream=True)
        async with self._client() as client:
            request = client.build_request("POST", url, json=payload, headers=headers)
            try:
                resp = await client.send(request, stream=True)
            except _TRANSIENT_ERRORS as e:
                raise TransientNetworkError(code="CONNECT_ERROR", message=_describe(e))
            except httpx.RequestError as e:
                raise NetworkError(code="NETWORK_ERROR", message=_describe(e))
            try:
                await self._raise_for_status(resp)
                yield self._iter_text(resp)
            finally:
                await resp.aclose()

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        url, headers = self._endpoint(req)
        payload = self._build_payload(req, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(url, json=payload, headers=headers)
        except _TRANSIENT_ERRORS as e:
            raise TransientNetworkError(code="CONNECT_ERROR", message=_describe(e))
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=_describe(e))
        await self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError:
            raise ApiError(code="API_ERROR", message="Upstream returned invalid JSON", http_status=502)
        return self._parse_response(data, payload["model"])

    # ---- 辅助方法 ----

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(
            self._settings.http_timeout,
            connect=getattr(self._settings, "connect_timeout", self._settings.http_timeout),
        )
        return httpx.AsyncClient(timeout=timeout, transport=self._transport, trust_env=False)

    def _endpoint(self, req: ChatRequest) -> Tuple[str, Dict[str, str]]:
        missing = []
        if not getattr(self._settings, "api_base_url", None):
            missing.append("API_BASE_URL")
        if not getattr(self._settings, "api_key", None):
            missing.append("API_KEY")
        if not (req.model or getattr(self._settings, "api_model", None)):
            missing.append("API_MODEL")
        if missing:
            raise ConfigurationError(
                code="MISSING_CONFIG",
                message=f"{', '.join(missing)} not set",
                http_status=500,
            )
        url = f"{self._settings.api_base_url.rstrip('/')}/chat/completions"
        headers = {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
        }
        return url, headers

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        return {
            "model": req.model or self._settings.api_model,
            "messages": [m.to_payload() for m in req.messages],
            "max_tokens": req.max_tokens,
            "temperature": req.temperature,
            "top_p": req.top_p,
            "frequency_penalty": req.frequency_penalty,
            "presence_penalty": req.presence_penalty,
            "stream": stream,
        }

    @staticmethod
    async def _raise_for_status(resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        await resp.aread()
        if resp.status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message="Upstream rate limit", http_status=429)
        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)

    @staticmethod
    async def _iter_text(resp: httpx.Response) -> AsyncIterator[str]:
        try:
            async for text in resp.aiter_text():
                if text:
                    yield text
        except httpx.RequestError as e:
            raise StreamInterruptedError(code="STREAM_ERROR", message=_describe(e))

    def _parse_response(self, data: Dict[str, Any], model: str) -> ChatResult:
        choices: List[ChatChoice] = []
        for i, ch in enumerate(data.get("choices") or []):
            msg = ch.get("message") or {}
            cm = ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or "")
            choices.append(ChatChoice(index=ch.get("index", i), message=cm, finish_reason=ch.get("finish_reason")))
        usage_raw = data.get("usage") or {}
        usage = None
        if usage_raw:
            usage = ChatUsage(
                prompt_tokens=usage_raw.get("prompt_tokens", 0),
                completion_tokens=usage_raw.get("completion_tokens", 0),
                total_tokens=usage_raw.get("total_tokens", 0),
            )
        return ChatResult(model=data.get("model") or model, choices=choices, usage=usage, raw=data)


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__
