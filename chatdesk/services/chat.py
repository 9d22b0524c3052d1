from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Sequence

from chatdesk.agent.cascade import KnowledgeCascade
from chatdesk.core.config import get_settings
from chatdesk.core.errors import ChatDeskError, ChatValidationError, ProcessingError, QuotaExceededError
from chatdesk.domain.state import BOT_ROLE, USER_ROLE, ChatContext, ChatTurn, ResolvedAnswer, TenantContext
from chatdesk.services.answer_cache import AnswerCache
from chatdesk.services.background import BackgroundDispatcher
from chatdesk.services.input_validation import sanitize_chat_text, strip_chat_text
from chatdesk.services.leads import LeadDetector
from chatdesk.services.quota import QuotaLedger
from chatdesk.services.sessions import SessionRegistry
from chatdesk.services.telemetry import increment_counter
from chatdesk.services.tenancy import TenantResolver


logger = logging.getLogger(__name__)

_ROLE_ALIASES = {"user": USER_ROLE, "bot": BOT_ROLE, "assistant": BOT_ROLE}


@dataclass(frozen=True)
class ChatRequest:
    messages: tuple[ChatTurn, ...]
    bot_id: str | None = None
    workspace_id: str | None = None
    session_id: str | None = None


@dataclass(frozen=True)
class ChatOutcome:
    answer: ResolvedAnswer
    workspace_id: str
    cached: bool
    elapsed_ms: int
    session_new: bool | None = None


def normalize_turns(turns: Sequence[ChatTurn]) -> tuple[ChatTurn, ...]:
    # Map role aliases, strip markup and drop turns left empty. Only the latest
    # user turn can reject the request; earlier turns and bot replies are stripped.
    cleaned: list[tuple[ChatTurn, str]] = []
    for turn in turns:
        role = _ROLE_ALIASES.get((turn.role or "").strip().lower())
        if role is None:
            raise ChatValidationError("Unsupported message role", code="INVALID_INPUT")
        raw = turn.content or ""
        text = strip_chat_text(raw)
        if text:
            cleaned.append((ChatTurn(role=role, content=text), raw))
    for turn, raw in reversed(cleaned):
        if turn.is_user:
            if sanitize_chat_text(raw).rejected:
                raise ChatValidationError(
                    "Invalid message content",
                    code="INVALID_INPUT",
                    details={"details": "Message contains potentially harmful content"},
                )
            break
    return tuple(turn for turn, _raw in cleaned)


def last_user_text(turns: Sequence[ChatTurn]) -> str | None:
    for turn in reversed(turns):
        if turn.is_user:
            return turn.content
    return None


class ChatService:
    def __init__(
        self,
        *,
        tenants: TenantResolver,
        cache: AnswerCache,
        quota: QuotaLedger,
        cascade: KnowledgeCascade,
        leads: LeadDetector,
        dispatcher: BackgroundDispatcher,
        sessions: SessionRegistry | None = None,
        context_window: int | None = None,
    ) -> None:
        self._tenants = tenants
        self._cache = cache
        self._quota = quota
        self._cascade = cascade
        self._leads = leads
        self._dispatcher = dispatcher
        self._sessions = sessions
        self._context_window = context_window or get_settings().chat_context_window

    @property
    def dispatcher(self) -> BackgroundDispatcher:
        return self._dispatcher

    async def handle_turn(
        self,
        tenant: TenantContext,
        request: ChatRequest,
        *,
        request_id: str | None = None,
    ) -> ChatOutcome:
        started = time.monotonic()
        try:
            return await self._handle_turn(tenant, request, request_id=request_id, started=started)
        except ChatDeskError:
            raise
        except Exception as exc:
            logger.exception("chat_turn_failed request_id=%s", request_id)
            increment_counter("chat_processing_errors_total")
            raise ProcessingError("Failed to process chat request") from exc

    async def _handle_turn(
        self,
        tenant: TenantContext,
        request: ChatRequest,
        *,
        request_id: str | None,
        started: float,
    ) -> ChatOutcome:
        # Tenant binding happens before any cache, quota or knowledge access.
        workspace_id = await self._tenants.resolve(
            tenant,
            bot_id=request.bot_id,
            workspace_id=request.workspace_id,
            request_id=request_id,
        )
        is_demo = workspace_id == self._tenants.demo_workspace_id

        turns = normalize_turns(request.messages)
        user_text = last_user_text(turns)
        if not user_text:
            raise ChatValidationError("No user message found in conversation", code="NO_USER_MESSAGE")
        window = turns[-self._context_window:]

        session_new = None
        if self._sessions is not None and request.session_id:
            session_new = self._sessions.touch(workspace_id, request.session_id)
            if session_new:
                logger.info("chat_session_started request_id=%s workspace_id=%s", request_id, workspace_id)

        cached = await self._cache_get(workspace_id, user_text, request_id)
        if cached is not None:
            logger.info("chat_cache_hit request_id=%s workspace_id=%s", request_id, workspace_id)
            return ChatOutcome(
                answer=cached,
                workspace_id=workspace_id,
                cached=True,
                elapsed_ms=_elapsed_ms(started),
                session_new=session_new,
            )

        decision = await self._quota.check_and_reserve(tenant, workspace_id)
        if not decision.allowed:
            details = {"details": decision.details} if decision.details else None
            raise QuotaExceededError(decision.error or "Monthly conversation limit reached", details=details)

        answer = await self._cascade.resolve(
            ChatContext(
                workspace_id=workspace_id,
                is_demo=is_demo,
                user_text=user_text,
                conversation_window=window,
                request_id=request_id,
            )
        )

        # Side effects run after the answer is final and never block the response.
        if not is_demo:
            self._dispatcher.dispatch(
                "lead_capture",
                self._leads.capture(workspace_id, user_text, conversation=turns, request_id=request_id),
            )
        if answer.cacheable:
            self._dispatcher.dispatch("answer_cache_put", self._cache.put(workspace_id, user_text, answer))

        elapsed_ms = _elapsed_ms(started)
        logger.info(
            "chat_turn_complete request_id=%s workspace_id=%s source=%s fallback=%s elapsed_ms=%s",
            request_id,
            workspace_id,
            answer.source_kind.value,
            answer.is_fallback,
            elapsed_ms,
        )
        return ChatOutcome(
            answer=answer,
            workspace_id=workspace_id,
            cached=False,
            elapsed_ms=elapsed_ms,
            session_new=session_new,
        )

    async def _cache_get(self, workspace_id: str, user_text: str, request_id: str | None) -> ResolvedAnswer | None:
        try:
            return await self._cache.get(workspace_id, user_text)
        except Exception as exc:  # noqa: BLE001 - a cache outage is a miss, never a failed turn
            logger.warning("chat_cache_get_failed request_id=%s", request_id, exc_info=exc)
            return None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
