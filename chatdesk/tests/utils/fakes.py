from __future__ import annotations

from collections import defaultdict
from typing import Any, Sequence

from chatdesk.agent.cascade import (
    DocumentRetrievalStrategy,
    GeneralFallbackStrategy,
    KnowledgeCascade,
    StaticKnowledgeStrategy,
)
from chatdesk.agent.generation import GeneralAnswerGenerator, GroundedAnswerGenerator
from chatdesk.knowledge.static import StaticKnowledgeBase
from chatdesk.providers.llm.fake import FakeLLMProvider
from chatdesk.providers.retrieval.base import RetrievalResult, RetrievedChunk
from chatdesk.services.answer_cache import InMemoryAnswerCache
from chatdesk.services.background import BackgroundDispatcher
from chatdesk.services.chat import ChatService
from chatdesk.services.leads import LeadDetector, LeadRecord
from chatdesk.services.quota import QuotaLedger
from chatdesk.services.sessions import SessionRegistry
from chatdesk.services.tenancy import TenantResolver


class FakeOwnershipStore:
    def __init__(self, grants: dict[str, set[str]] | None = None, *, fail: bool = False) -> None:
        self._grants = grants or {}
        self._fail = fail
        self.calls: list[tuple[str, str]] = []

    async def user_owns_workspace(self, user_id: str, workspace_id: str) -> bool:
        self.calls.append((user_id, workspace_id))
        if self._fail:
            raise RuntimeError("ownership store down")
        return workspace_id in self._grants.get(user_id, set())


class FakeAuditRecorder:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    async def __call__(self, **kwargs: Any) -> None:
        self.events.append(kwargs)


class FakeQuotaStore:
    def __init__(self, *, fail_reads: bool = False, fail_increments: bool = False) -> None:
        self.counts: dict[tuple[str, str], int] = defaultdict(int)
        self.fail_reads = fail_reads
        self.fail_increments = fail_increments
        self.reads = 0

    async def get_count(self, workspace_id: str, month_key: str) -> int:
        self.reads += 1
        if self.fail_reads:
            raise RuntimeError("usage store down")
        return self.counts[(workspace_id, month_key)]

    async def increment(self, workspace_id: str, month_key: str) -> None:
        if self.fail_increments:
            raise RuntimeError("usage store down")
        self.counts[(workspace_id, month_key)] += 1


class FakeLeadStore:
    def __init__(self, *, fail: bool = False) -> None:
        self.saved: list[LeadRecord] = []
        self.fail = fail

    async def save(self, lead: LeadRecord) -> None:
        if self.fail:
            raise RuntimeError("lead store down")
        self.saved.append(lead)


class StubRetriever:
    def __init__(self, chunks: Sequence[RetrievedChunk] = (), *, quality_ok: bool = True) -> None:
        self._chunks = tuple(chunks)
        self._quality_ok = quality_ok
        self.calls: list[tuple[str, str]] = []

    async def retrieve(self, workspace_id: str, query: str) -> RetrievalResult:
        self.calls.append((workspace_id, query))
        return RetrievalResult(chunks=self._chunks, quality_ok=self._quality_ok)


class FailingRetriever:
    def __init__(self) -> None:
        self.calls = 0

    async def retrieve(self, workspace_id: str, query: str) -> RetrievalResult:
        self.calls += 1
        raise RuntimeError("vector store unavailable")


def chunk(content: str, *, score: float = 0.9, document_id: str = "doc-1", title: str | None = "Returns") -> RetrievedChunk:
    return RetrievedChunk(content=content, score=score, document_id=document_id, title=title)


class Harness:
    """Chat service wired to in-memory collaborators with call counters."""

    def __init__(
        self,
        *,
        retriever: Any | None = None,
        grounded_reply: str = "Returns are accepted within 30 days of delivery.",
        general_reply: str = "Thanks for reaching out! How can I help you today?",
        grants: dict[str, set[str]] | None = None,
        quota_store: FakeQuotaStore | None = None,
        lead_store: FakeLeadStore | None = None,
        time_provider=None,
    ) -> None:
        self.dispatcher = BackgroundDispatcher()
        self.audit = FakeAuditRecorder()
        self.ownership = FakeOwnershipStore(grants)
        self.retriever = retriever or StubRetriever()
        self.grounded_llm = FakeLLMProvider(grounded_reply)
        self.general_llm = FakeLLMProvider(general_reply)
        self.quota_store = quota_store or FakeQuotaStore()
        self.lead_store = lead_store or FakeLeadStore()
        self.cache = InMemoryAnswerCache(ttl_s=3600, max_entries=100)
        self.sessions = SessionRegistry(idle_ttl_s=600)
        self.cascade = KnowledgeCascade(
            [
                StaticKnowledgeStrategy(StaticKnowledgeBase()),
                DocumentRetrievalStrategy(
                    self.retriever,
                    GroundedAnswerGenerator(llm_factory=lambda _request_id: self.grounded_llm),
                ),
                GeneralFallbackStrategy(
                    GeneralAnswerGenerator(llm_factory=lambda _request_id: self.general_llm)
                ),
            ]
        )
        self.service = ChatService(
            tenants=TenantResolver(
                self.ownership,
                self.dispatcher,
                audit=self.audit,
                demo_workspace_id="demo",
            ),
            cache=self.cache,
            quota=QuotaLedger(
                self.quota_store,
                self.dispatcher,
                time_provider=time_provider,
                demo_workspace_id="demo",
                fail_mode="open",
            ),
            cascade=self.cascade,
            leads=LeadDetector(self.lead_store, demo_workspace_id="demo"),
            dispatcher=self.dispatcher,
            sessions=self.sessions,
            context_window=6,
        )

    @property
    def llm_calls(self) -> int:
        return len(self.grounded_llm.calls) + len(self.general_llm.calls)
