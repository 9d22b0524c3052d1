from __future__ import annotations

import logging
from typing import Protocol, Sequence

from chatdesk.agent.generation import GeneralAnswerGenerator, GroundedAnswerGenerator
from chatdesk.agent.prompts import GENERAL_MODE_DEMO, GENERAL_MODE_FALLBACK
from chatdesk.domain.state import ChatContext, ResolvedAnswer, SourceKind, SourceRef
from chatdesk.knowledge.static import StaticKnowledgeStore
from chatdesk.providers.retrieval.base import DocumentRetriever
from chatdesk.services.branding import BrandRules, brandify, truncate_snippet
from chatdesk.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

APOLOGY_TEXT = (
    "I apologize, but I'm having trouble processing your request right now. "
    "Please try again in a moment."
)


class ResolutionStrategy(Protocol):
    name: str

    async def try_resolve(self, context: ChatContext) -> ResolvedAnswer | None:
        ...


class StaticKnowledgeStrategy:
    name = "static_knowledge"

    def __init__(self, store: StaticKnowledgeStore) -> None:
        self._store = store

    async def try_resolve(self, context: ChatContext) -> ResolvedAnswer | None:
        match = self._store.find(context.user_text)
        if match is None:
            return None
        logger.info(
            "knowledge_match request_id=%s entry_id=%s direct=%s score=%.2f",
            context.request_id,
            match.id,
            match.direct_pattern,
            match.score,
        )
        return ResolvedAnswer(text=match.answer, source_kind=SourceKind.KB)


class DocumentRetrievalStrategy:
    name = "document_retrieval"

    def __init__(self, retriever: DocumentRetriever, generator: GroundedAnswerGenerator) -> None:
        self._retriever = retriever
        self._generator = generator

    async def try_resolve(self, context: ChatContext) -> ResolvedAnswer | None:
        # The demo workspace has no private documents to search.
        if context.is_demo:
            return None
        result = await self._retriever.retrieve(context.workspace_id, context.user_text)
        if not result.chunks or not result.quality_ok:
            logger.info(
                "retrieval_skipped request_id=%s workspace_id=%s chunks=%s best_score=%.2f",
                context.request_id,
                context.workspace_id,
                len(result.chunks),
                result.best_score,
            )
            return None
        grounded = await self._generator.generate(
            context.user_text,
            result.chunks,
            context.conversation_window,
            request_id=context.request_id,
        )
        if grounded.no_answer:
            logger.info("retrieval_no_answer request_id=%s", context.request_id)
            return None
        return ResolvedAnswer(
            text=grounded.text,
            source_kind=SourceKind.DOCS,
            sources=grounded.sources,
        )


class GeneralFallbackStrategy:
    name = "general_fallback"

    def __init__(self, generator: GeneralAnswerGenerator) -> None:
        self._generator = generator

    async def try_resolve(self, context: ChatContext) -> ResolvedAnswer | None:
        mode = GENERAL_MODE_DEMO if context.is_demo else GENERAL_MODE_FALLBACK
        text = await self._generator.generate(
            context.user_text,
            context.conversation_window,
            mode=mode,
            request_id=context.request_id,
        )
        return ResolvedAnswer(text=text, source_kind=SourceKind.GENERAL, is_fallback=True)


def apology_answer() -> ResolvedAnswer:
    return ResolvedAnswer(text=APOLOGY_TEXT, source_kind=SourceKind.ERROR, is_fallback=True)


class KnowledgeCascade:
    def __init__(
        self,
        strategies: Sequence[ResolutionStrategy],
        *,
        brand_rules: BrandRules | None = None,
        snippet_max_chars: int | None = None,
    ) -> None:
        self._strategies = tuple(strategies)
        self._brand_rules = brand_rules
        self._snippet_max_chars = snippet_max_chars

    async def resolve(self, context: ChatContext) -> ResolvedAnswer:
        # Strategies run strictly in order; the first answer wins and later phases never run.
        answer: ResolvedAnswer | None = None
        try:
            for strategy in self._strategies:
                answer = await strategy.try_resolve(context)
                if answer is not None:
                    break
        except Exception:  # noqa: BLE001 - any phase failure degrades to an apology answer
            logger.exception(
                "knowledge_cascade_failed request_id=%s workspace_id=%s",
                context.request_id,
                context.workspace_id,
            )
            increment_counter("cascade_errors_total")
            return apology_answer()
        if answer is None:
            logger.warning("knowledge_cascade_exhausted request_id=%s", context.request_id)
            return apology_answer()
        increment_counter(f"answers_{answer.source_kind.value}_total")
        return self._finalize(answer)

    def _finalize(self, answer: ResolvedAnswer) -> ResolvedAnswer:
        sources = tuple(
            SourceRef(
                snippet=truncate_snippet(brandify(source.snippet, self._brand_rules), self._snippet_max_chars),
                ref=source.ref,
                title=brandify(source.title, self._brand_rules) if source.title else source.title,
            )
            for source in answer.sources
        )
        return ResolvedAnswer(
            text=brandify(answer.text, self._brand_rules),
            source_kind=answer.source_kind,
            sources=sources,
            is_fallback=answer.is_fallback,
        )
