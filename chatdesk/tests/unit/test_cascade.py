from __future__ import annotations

import pytest

from chatdesk.agent.cascade import (
    APOLOGY_TEXT,
    DocumentRetrievalStrategy,
    GeneralFallbackStrategy,
    KnowledgeCascade,
    StaticKnowledgeStrategy,
)
from chatdesk.agent.generation import GeneralAnswerGenerator, GroundedAnswerGenerator
from chatdesk.agent.prompts import NO_ANSWER_SENTENCE
from chatdesk.domain.state import ChatContext, SourceKind
from chatdesk.knowledge.static import StaticKnowledgeBase
from chatdesk.providers.llm.fake import FakeLLMProvider
from chatdesk.services.branding import BrandRules
from chatdesk.tests.utils.fakes import FailingRetriever, StubRetriever, chunk


RETURNS_TEXT = "Items can be returned within 30 days of delivery for a full refund to the original payment method."


def _cascade(retriever, grounded: FakeLLMProvider, general: FakeLLMProvider, **kwargs) -> KnowledgeCascade:
    return KnowledgeCascade(
        [
            StaticKnowledgeStrategy(StaticKnowledgeBase()),
            DocumentRetrievalStrategy(retriever, GroundedAnswerGenerator(llm_factory=lambda _rid: grounded)),
            GeneralFallbackStrategy(GeneralAnswerGenerator(llm_factory=lambda _rid: general)),
        ],
        **kwargs,
    )


def _context(text: str, *, workspace_id: str = "ws-1", is_demo: bool = False) -> ChatContext:
    return ChatContext(workspace_id=workspace_id, is_demo=is_demo, user_text=text, request_id="req-1")


@pytest.mark.asyncio
async def test_static_match_short_circuits_retrieval() -> None:
    retriever = StubRetriever([chunk(RETURNS_TEXT)])
    grounded = FakeLLMProvider("grounded")
    general = FakeLLMProvider("general")
    answer = await _cascade(retriever, grounded, general).resolve(_context("How do I embed the widget on my site?"))

    assert answer.source_kind is SourceKind.KB
    assert answer.is_fallback is False
    assert retriever.calls == []
    assert grounded.calls == [] and general.calls == []


@pytest.mark.asyncio
async def test_quality_documents_produce_docs_answer_with_sources() -> None:
    retriever = StubRetriever(
        [
            chunk(RETURNS_TEXT, document_id="doc-1", score=0.92),
            chunk("Refunds are issued within five business days.", document_id="doc-1", score=0.88),
            chunk("Exchanges are free for sizes.", document_id="doc-2", score=0.81, title="Exchanges"),
        ]
    )
    grounded = FakeLLMProvider("You can return items within 30 days.")
    answer = await _cascade(retriever, grounded, FakeLLMProvider("general")).resolve(
        _context("What is the return window for sweaters?")
    )

    assert answer.source_kind is SourceKind.DOCS
    assert answer.used_docs is True
    assert answer.text == "You can return items within 30 days."
    assert retriever.calls == [("ws-1", "What is the return window for sweaters?")]
    # One source per document.
    assert [source.title for source in answer.sources] == ["Returns", "Exchanges"]


@pytest.mark.asyncio
async def test_low_quality_retrieval_falls_back_to_general() -> None:
    retriever = StubRetriever([chunk("short", score=0.4)], quality_ok=False)
    grounded = FakeLLMProvider("grounded")
    general = FakeLLMProvider("Happy to help with anything else.")
    answer = await _cascade(retriever, grounded, general).resolve(_context("What is the return window for sweaters?"))

    assert answer.source_kind is SourceKind.GENERAL
    assert answer.is_fallback is True
    assert grounded.calls == []
    assert len(general.calls) == 1


@pytest.mark.asyncio
async def test_grounded_no_answer_falls_through() -> None:
    retriever = StubRetriever([chunk(RETURNS_TEXT)])
    grounded = FakeLLMProvider(NO_ANSWER_SENTENCE)
    general = FakeLLMProvider("General reply.")
    answer = await _cascade(retriever, grounded, general).resolve(_context("Do you ship to Mars?"))

    assert answer.source_kind is SourceKind.GENERAL
    assert answer.sources == ()


@pytest.mark.asyncio
async def test_demo_skips_document_retrieval() -> None:
    retriever = StubRetriever([chunk(RETURNS_TEXT)])
    general = FakeLLMProvider("Demo reply.")
    answer = await _cascade(retriever, FakeLLMProvider("grounded"), general).resolve(
        _context("Do you ship to Mars?", workspace_id="demo", is_demo=True)
    )

    assert answer.source_kind is SourceKind.GENERAL
    assert retriever.calls == []
    # Demo mode is reflected in the system prompt.
    assert "public demo bot" in general.calls[0][0]["content"]


@pytest.mark.asyncio
async def test_phase_exception_becomes_apology() -> None:
    retriever = FailingRetriever()
    general = FakeLLMProvider("never used")
    answer = await _cascade(retriever, FakeLLMProvider("grounded"), general).resolve(_context("Do you ship to Mars?"))

    assert answer.source_kind is SourceKind.ERROR
    assert answer.is_fallback is True
    assert answer.text == APOLOGY_TEXT
    assert retriever.calls == 1
    assert general.calls == []


@pytest.mark.asyncio
async def test_outputs_are_brandified_and_snippets_truncated() -> None:
    long_text = "Anemo support " + "x" * 400
    retriever = StubRetriever([chunk(long_text, title="Anemo FAQ")])
    grounded = FakeLLMProvider("Visit anemo.ai or ask Anemo support.")
    rules = BrandRules(name="TrulyBot", host="trulybot.xyz", legacy_names=("Anemo",), legacy_domains=("anemo.ai",))
    answer = await _cascade(
        retriever,
        grounded,
        FakeLLMProvider("general"),
        brand_rules=rules,
        snippet_max_chars=180,
    ).resolve(_context("Tell me about the support team"))

    assert answer.text == "Visit trulybot.xyz or ask TrulyBot support."
    source = answer.sources[0]
    assert source.title == "TrulyBot FAQ"
    assert source.snippet.startswith("TrulyBot support")
    assert source.snippet.endswith("…")
    assert len(source.snippet) == 181
