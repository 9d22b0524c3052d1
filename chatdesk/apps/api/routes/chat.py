from __future__ import annotations

from typing import AsyncGenerator, Literal

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, ConfigDict, Field, field_validator
from starlette.responses import StreamingResponse

from chatdesk.apps.api.deps import get_chat_service, get_tenant_context
from chatdesk.apps.api.rate_limit import RateLimitDecision, enforce_chat_rate_limit
from chatdesk.apps.api.response import get_request_id
from chatdesk.core.config import get_settings
from chatdesk.domain.state import ChatTurn, TenantContext
from chatdesk.services.chat import ChatOutcome, ChatRequest, ChatService


router = APIRouter(tags=["chat"])

_STREAM_CHUNK_CHARS = 64


class ChatMessageIn(BaseModel):
    role: Literal["user", "bot", "assistant"]
    content: str = Field(min_length=1)

    @field_validator("content")
    @classmethod
    def _bounded_content(cls, value: str) -> str:
        limit = get_settings().chat_max_content_chars
        if len(value) > limit:
            raise ValueError(f"content must be at most {limit} characters")
        return value


class ChatRequestIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    bot_id: str | None = Field(default=None, alias="botId", max_length=128)
    workspace_id: str | None = Field(default=None, alias="workspaceId", max_length=128)
    messages: list[ChatMessageIn] = Field(min_length=1)

    @field_validator("messages")
    @classmethod
    def _bounded_turns(cls, value: list[ChatMessageIn]) -> list[ChatMessageIn]:
        limit = get_settings().chat_max_turns
        if len(value) > limit:
            raise ValueError(f"at most {limit} messages are allowed")
        return value


def _stream_text(text: str) -> AsyncGenerator[bytes, None]:
    async def body() -> AsyncGenerator[bytes, None]:
        for start in range(0, len(text), _STREAM_CHUNK_CHARS):
            yield text[start:start + _STREAM_CHUNK_CHARS].encode("utf-8")

    return body()


def _bool_header(value: bool) -> str:
    return "true" if value else "false"


def _response_headers(
    outcome: ChatOutcome,
    request_id: str,
    rate_limit: RateLimitDecision | None = None,
) -> dict[str, str]:
    answer = outcome.answer
    headers = {
        "X-Knowledge-Source": answer.source_kind.value,
        "X-Used-Docs": _bool_header(answer.used_docs),
        "X-Fallback": _bool_header(answer.is_fallback),
        "X-Cached": _bool_header(outcome.cached),
        "X-Response-Time": f"{outcome.elapsed_ms}ms",
        "X-Workspace-ID": outcome.workspace_id,
        "X-Request-ID": request_id,
        "Cache-Control": "no-store",
    }
    if outcome.session_new is not None:
        headers["X-Session-New"] = _bool_header(outcome.session_new)
    if rate_limit is not None and rate_limit.degraded:
        headers["X-RateLimit-Status"] = "degraded"
    return headers


@router.post("/v1/chat")
@router.post("/chat", include_in_schema=False)
async def chat(
    request: Request,
    payload: ChatRequestIn,
    session_id: str | None = Header(default=None, alias="X-Session-Id", max_length=128),
    tenant: TenantContext = Depends(get_tenant_context),
    rate_limit: RateLimitDecision | None = Depends(enforce_chat_rate_limit),
    service: ChatService = Depends(get_chat_service),
) -> StreamingResponse:
    request_id = get_request_id(request)
    outcome = await service.handle_turn(
        tenant,
        ChatRequest(
            messages=tuple(ChatTurn(role=message.role, content=message.content) for message in payload.messages),
            bot_id=payload.bot_id,
            workspace_id=payload.workspace_id,
            session_id=session_id,
        ),
        request_id=request_id,
    )
    return StreamingResponse(
        _stream_text(outcome.answer.text),
        media_type="text/plain; charset=utf-8",
        headers=_response_headers(outcome, request_id, rate_limit),
    )
