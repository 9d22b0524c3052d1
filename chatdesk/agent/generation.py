from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from typing import Callable, Sequence

from chatdesk.agent.prompts import (
    GENERAL_MODE_DEMO,
    build_general_messages,
    build_grounded_messages,
    correction_note,
    indicates_no_answer,
)
from chatdesk.core.config import get_settings
from chatdesk.domain.state import ChatTurn, SourceRef
from chatdesk.knowledge.catalog import PRODUCT_PROFILE
from chatdesk.providers.llm.base import LLMProvider
from chatdesk.providers.llm.factory import get_llm_provider
from chatdesk.providers.retrieval.base import RetrievedChunk
from chatdesk.services.resilience import default_retry_policy, retry_async


logger = logging.getLogger(__name__)

LLMFactory = Callable[[str | None], LLMProvider]


async def complete(provider: LLMProvider, messages: list[dict], *, request_id: str | None = None) -> str:
    # Provider SDKs stream synchronously; drain them in a worker thread to keep the loop free.
    def run_stream() -> str:
        return "".join(provider.stream(messages))

    async def _call() -> str:
        return await asyncio.to_thread(run_stream)

    # Worker threads cannot be cancelled; providers enforce their own deadlines inside the thread.
    policy = replace(default_retry_policy(), timeout_ms=None)
    text = await retry_async(_call, policy=policy, operation="llm.complete")
    logger.debug("llm_complete request_id=%s chars=%s", request_id, len(text))
    return text.strip()


@dataclass(frozen=True)
class GroundedAnswer:
    text: str
    no_answer: bool
    sources: tuple[SourceRef, ...]


def collect_sources(
    chunks: Sequence[RetrievedChunk],
    *,
    max_sources: int,
    snippet_chars: int,
) -> tuple[SourceRef, ...]:
    # One source per document, in ranking order.
    seen: set[str] = set()
    sources: list[SourceRef] = []
    for chunk in chunks:
        if chunk.document_id in seen:
            continue
        seen.add(chunk.document_id)
        sources.append(
            SourceRef(
                snippet=chunk.content[:snippet_chars],
                ref=chunk.url or chunk.document_id,
                title=chunk.title,
            )
        )
        if len(sources) >= max_sources:
            break
    return tuple(sources)


class GroundedAnswerGenerator:
    def __init__(self, llm_factory: LLMFactory = get_llm_provider) -> None:
        self._llm_factory = llm_factory

    async def generate(
        self,
        question: str,
        chunks: Sequence[RetrievedChunk],
        window: Sequence[ChatTurn] = (),
        *,
        request_id: str | None = None,
    ) -> GroundedAnswer:
        settings = get_settings()
        messages = build_grounded_messages(
            question,
            chunks,
            window,
            context_chars=settings.retrieval_context_chars,
        )
        text = await complete(self._llm_factory(request_id), messages, request_id=request_id)
        no_answer = not text or indicates_no_answer(text)
        sources: tuple[SourceRef, ...] = ()
        if not no_answer:
            sources = collect_sources(
                chunks,
                max_sources=settings.retrieval_max_sources,
                snippet_chars=settings.retrieval_source_snippet_chars,
            )
        return GroundedAnswer(text=text, no_answer=no_answer, sources=sources)


class GeneralAnswerGenerator:
    def __init__(self, llm_factory: LLMFactory = get_llm_provider) -> None:
        self._llm_factory = llm_factory

    async def generate(
        self,
        question: str,
        window: Sequence[ChatTurn] = (),
        *,
        mode: str = GENERAL_MODE_DEMO,
        request_id: str | None = None,
    ) -> str:
        messages = build_general_messages(question, window, mode=mode)
        text = await complete(self._llm_factory(request_id), messages, request_id=request_id)
        if not text:
            text = f"I'm here to help with {PRODUCT_PROFILE.name}."
        note = correction_note(text)
        if note:
            text = f"{text}\n\n{note}"
        return text
