from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from chatdesk.core.config import EMBED_DIM, get_settings
from chatdesk.core.errors import RetrievalError
from chatdesk.domain.models import DocumentChunk
from chatdesk.ingestion.embeddings import embed_text
from chatdesk.persistence.guards import workspace_predicate
from chatdesk.providers.retrieval.base import RetrievalResult, RetrievedChunk, assess_quality


logger = logging.getLogger(__name__)


class LocalPgVectorRetriever:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        top_k: int | None = None,
        match_threshold: float | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self._top_k = top_k if top_k is not None else settings.retrieval_top_k
        self._match_threshold = (
            match_threshold if match_threshold is not None else settings.retrieval_match_threshold
        )

    async def retrieve(self, workspace_id: str, query: str) -> RetrievalResult:
        settings = get_settings()
        query_embedding = embed_text(query)
        if len(query_embedding) != EMBED_DIM:
            # Retrieval must fail fast if the embedding dimension doesn't match the schema.
            raise RetrievalError("query embedding dimension mismatch")

        # Clamp to a small, deterministic range to avoid unbounded queries.
        top_k = max(1, min(int(self._top_k), 20))
        # Use cosine distance from pgvector; lower is more similar.
        distance_expr = DocumentChunk.embedding.cosine_distance(query_embedding)
        stmt = (
            select(DocumentChunk, distance_expr.label("distance"))
            .where(workspace_predicate(DocumentChunk, workspace_id))
            # Secondary ordering keeps tie-breaking deterministic.
            .order_by(distance_expr.asc(), DocumentChunk.id.asc())
            .limit(top_k)
        )

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()
        except SQLAlchemyError as exc:
            raise RetrievalError("pgvector query failed") from exc

        chunks: list[RetrievedChunk] = []
        for chunk, distance in rows:
            # Convert cosine distance to similarity and clamp to a sane [0, 1] range.
            score = max(0.0, min(1.0, 1.0 - float(distance)))
            if score < self._match_threshold:
                continue
            chunks.append(
                RetrievedChunk(
                    content=chunk.content,
                    score=score,
                    document_id=chunk.document_id,
                    title=chunk.title,
                    url=chunk.url,
                )
            )
        quality_ok = assess_quality(
            chunks,
            min_score=settings.retrieval_quality_min_score,
            min_chars=settings.retrieval_quality_min_chars,
        )
        logger.debug(
            "retrieval_complete workspace_id=%s candidates=%s kept=%s quality_ok=%s",
            workspace_id,
            len(rows),
            len(chunks),
            quality_ok,
        )
        return RetrievalResult(chunks=tuple(chunks), quality_ok=quality_ok)
