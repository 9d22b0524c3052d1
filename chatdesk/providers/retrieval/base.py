from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, Sequence


@dataclass(frozen=True)
class RetrievedChunk:
    content: str
    score: float
    document_id: str
    title: str | None = None
    url: str | None = None


@dataclass(frozen=True)
class RetrievalResult:
    # Ranked chunks plus the verdict on whether they are good enough to ground an answer.
    chunks: tuple[RetrievedChunk, ...]
    quality_ok: bool

    @property
    def best_score(self) -> float:
        return max((chunk.score for chunk in self.chunks), default=0.0)


class DocumentRetriever(Protocol):
    async def retrieve(self, workspace_id: str, query: str) -> RetrievalResult:
        ...


def assess_quality(
    chunks: Sequence[RetrievedChunk],
    *,
    min_score: float,
    min_chars: int,
) -> bool:
    # Require a strong top hit and enough text that the model is not answering from fragments.
    if not chunks:
        return False
    best = max(chunk.score for chunk in chunks)
    if best < min_score:
        return False
    total_chars = sum(len(chunk.content.strip()) for chunk in chunks)
    return total_chars >= min_chars
