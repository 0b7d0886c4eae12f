"""HTTP 接口层（FastAPI）。

所有流式接口都通过同一个 StreamRelay 转发，不同入口之间的差异
（提示词、token 数、温度）来自 prompts/variants.yaml 中的变体配置。
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from tutor_core.api import service
from tutor_core.domain.conversation import NO_PERSIST
from tutor_core.domain.exceptions import BusinessError
from tutor_core.domain.models import ChatTurn, Role
from tutor_core.infrastructure.cache.memory_cache import ConversationCache
from tutor_core.infrastructure.logging.logger import logger
from tutor_core.prompts import PromptRegistry, PromptVariant
from tutor_core.providers.base import UpstreamClient
from tutor_core.relay.stream_relay import StreamRelay


DEFAULT_VARIANT = "tutor"
SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}

app = FastAPI(title="Tutor Relay", version="0.1.0")


class ContextMessage(BaseModel):
    role: Role
    content: str


class ChatStreamBody(BaseModel):
    message: str = ""
    conversationId: str = "default"
    context: List[ContextMessage] = Field(default_factory=list)


class VariantStreamBody(BaseModel):
    """变体流式请求。

    模板变量来自 fields，也可以直接平铺在请求体中（subject、userAnswer 等），
    两者同名时以 fields 为准。
    """

    model_config = ConfigDict(extra="allow")

    question: str = ""
    fields: Dict[str, Any] = Field(default_factory=dict)
    conversationId: Optional[str] = None
    conversationContext: List[ContextMessage] = Field(default_factory=list)


class EvaluationBody(BaseModel):
    question: str = ""
    options: Any = None
    userAnswer: str = ""
    subject: Optional[str] = None
    grade: Optional[str] = None
    chapter: Optional[str] = None


class HelpQuestionBody(BaseModel):
    question: str = ""
    subject: Optional[str] = None
    grade: Optional[str] = None
    chapter: Optional[str] = None


@app.exception_handler(BusinessError)
async def business_error_handler(request, exc: BusinessError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content={"error": exc.code, "detail": exc.message})


def _require(variant: PromptVariant, question: str, fields: Dict[str, Any]) -> None:
    missing = variant.missing_fields(question, fields)
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")


def _sse(relay: StreamRelay, messages, conversation_id, options) -> StreamingResponse:
    return StreamingResponse(
        service.stream_events(relay, messages, conversation_id, options),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/chat/stream")
async def chat_stream(
    body: ChatStreamBody,
    cache: ConversationCache = Depends(service.get_cache),
    relay: StreamRelay = Depends(service.get_relay),
    prompts: PromptRegistry = Depends(service.get_prompts),
):
    if not body.message.strip():
        raise HTTPException(status_code=400, detail="Message is required")
    variant = prompts.get(DEFAULT_VARIANT)
    conversation_id = body.conversationId or "default"

    if body.context:
        context = service.to_messages(body.context, variant.context_window)
    else:
        context = cache.get_context(conversation_id)
    # 用户消息先写入缓存；上游失败时不回滚
    cache.append(conversation_id, ChatTurn(role="user", content=body.message))

    messages = variant.build_messages(context, body.message)
    logger.info(
        "Chat stream request",
        extra={"extra": {"conversation_id": conversation_id, "message_count": len(messages)}},
    )
    return _sse(relay, messages, conversation_id, variant.options)


@app.post("/api/chat/{variant_name}/stream")
async def variant_stream(
    variant_name: str,
    body: VariantStreamBody,
    cache: ConversationCache = Depends(service.get_cache),
    relay: StreamRelay = Depends(service.get_relay),
    prompts: PromptRegistry = Depends(service.get_prompts),
):
    variant = prompts.get(variant_name)
    if not variant.stream:
        raise HTTPException(status_code=400, detail=f"Variant {variant_name!r} does not stream")
    if not body.question.strip():
        raise HTTPException(status_code=400, detail="Missing question field")

    fields: Dict[str, Any] = dict(body.model_extra or {})
    fields.update(body.fields)
    if "options" in fields:
        fields["options"] = service.format_options(fields["options"])
    _require(variant, body.question, fields)

    conversation_id = body.conversationId or NO_PERSIST
    if body.conversationContext:
        context = service.to_messages(body.conversationContext, variant.context_window)
    elif body.conversationId:
        context = cache.get_context(conversation_id)
    else:
        context = []
    if body.conversationId:
        cache.append(conversation_id, ChatTurn(role="user", content=body.question))

    messages = variant.build_messages(context, body.question, fields)
    logger.info(
        "Variant stream request",
        extra={"extra": {"variant": variant_name, "conversation_id": conversation_id, "message_count": len(messages)}},
    )
    return _sse(relay, messages, conversation_id, variant.options)


@app.post("/api/chat/result-evaluation")
async def result_evaluation(
    body: EvaluationBody,
    client: UpstreamClient = Depends(service.get_client),
    relay: StreamRelay = Depends(service.get_relay),
    prompts: PromptRegistry = Depends(service.get_prompts),
):
    variant = prompts.get("evaluation")
    fields = {
        "options": service.format_options(body.options),
        "userAnswer": body.userAnswer,
        "subject": body.subject,
    }
    _require(variant, body.question, fields)
    messages = variant.build_messages([], body.question, fields)
    try:
        result = await client.chat(relay.build_request(messages, variant.options))
    except BusinessError as e:
        logger.error(
            f"Result evaluation failed: {e.message}",
            extra={"extra": {"error_code": e.code}},
        )
        return JSONResponse(status_code=502, content={"error": "AI service error", "detail": e.message})
    return {
        "content": result.content,
        "question": body.question,
        "userAnswer": body.userAnswer,
        "subject": body.subject,
        "grade": body.grade,
        "chapter": body.chapter,
    }


@app.post("/api/chat/help-question")
async def help_question(
    body: HelpQuestionBody,
    client: UpstreamClient = Depends(service.get_client),
    relay: StreamRelay = Depends(service.get_relay),
    prompts: PromptRegistry = Depends(service.get_prompts),
):
    """非流式追问：回复正文与 helper_questions 分开返回。"""

    variant = prompts.get("help-answer")
    fields = {"subject": body.subject, "grade": body.grade, "chapter": body.chapter}
    _require(variant, body.question, fields)
    messages = variant.build_messages([], body.question, fields)
    try:
        result = await client.chat(relay.build_request(messages, variant.options))
    except BusinessError as e:
        logger.error(
            f"Help question failed: {e.message}",
            extra={"extra": {"error_code": e.code}},
        )
        return JSONResponse(status_code=500, content={"error": "Help question failed", "detail": e.message})
    questions, answer = service.extract_helper_questions(result.content)
    return {"success": True, "answer": answer, "helperQuestions": questions, "question": body.question}


@app.get("/api/chat/history/{conversation_id}")
def chat_history(conversation_id: str, cache: ConversationCache = Depends(service.get_cache)):
    turns = cache.get_turns(conversation_id)
    return {
        "conversationId": conversation_id,
        "messages": [t.to_dict() for t in turns],
        "messageCount": len(turns),
    }


@app.delete("/api/chat/clear/{conversation_id}")
def chat_clear(conversation_id: str, cache: ConversationCache = Depends(service.get_cache)):
    cache.clear(conversation_id)
    return {"message": "Conversation cleared successfully", "conversationId": conversation_id}


@app.post("/api/chat/start")
def chat_start():
    return {"conversationId": service.new_conversation_id(), "message": "New conversation started"}


@app.get("/api/health")
def health():
    return {"status": "OK", "timestamp": datetime.now(timezone.utc).isoformat()}


def main() -> None:
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)


if __name__ == "__main__":
    main()
