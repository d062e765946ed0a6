from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
import time

import structlog

from kbase.errors import KnowledgeBaseError, SearchError, ValidationError, describe_error
from kbase.services.rag.embedding_client import EmbeddingGateway
from kbase.services.rag.fusion import FusedCandidate, ScoreNormalizer, fuse
from kbase.services.rag.reranker import RerankGateway
from kbase.services.rag.snapshot import IndexSnapshot
from kbase.services.rag.types import SearchHit

logger = structlog.get_logger(logger_name=__name__)


class RetrievalEngine:
    """Hybrid search: vector and BM25 sides, fused, then reranked.

    Each query runs against one published index snapshot, so concurrent
    ingestion never shows it a partially written document.
    """

    def __init__(
        self,
        *,
        snapshots: Callable[[], IndexSnapshot],
        embedder: EmbeddingGateway,
        reranker: RerankGateway,
        normalizer: ScoreNormalizer,
        vector_top_n: int = 50,
        lexical_top_n: int = 50,
        fusion_top_m: int = 20,
        fusion_alpha: float = 0.8,
        default_limit: int = 5,
        min_score: float = 0.0,
        max_workers: int = 4,
    ) -> None:
        self._snapshots = snapshots
        self._embedder = embedder
        self._reranker = reranker
        self._normalizer = normalizer
        self._vector_top_n = vector_top_n
        self._lexical_top_n = lexical_top_n
        self._fusion_top_m = fusion_top_m
        self._fusion_alpha = fusion_alpha
        self._default_limit = default_limit
        self._min_score = min_score
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="kbase-search")

    def search(
        self,
        query: str,
        limit: int | None = None,
        source_id: str | None = None,
    ) -> list[SearchHit]:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("query must not be empty")
        if limit is None:
            limit = self._default_limit
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        if source_id is not None and not source_id.strip():
            source_id = None

        started = time.perf_counter()
        query = query.strip()
        snapshot = self._snapshots()
        if len(snapshot) == 0:
            logger.info("search_completed", results=0, candidates=0, reason="empty_index")
            return []

        try:
            query_vector = self._embedder.embed(query)
        except KnowledgeBaseError as exc:
            raise SearchError(f"query embedding failed: {describe_error(exc)}") from exc

        try:
            vector_future = self._pool.submit(
                snapshot.vectors.search,
                query_vector,
                top_n=self._vector_top_n,
                source_id=source_id,
            )
            lexical_hits = snapshot.lexical.search(
                query,
                top_n=self._lexical_top_n,
                source_id=source_id,
            )
            vector_hits = vector_future.result()
        except Exception as exc:
            raise SearchError(f"index query failed: {describe_error(exc)}") from exc

        candidates = fuse(
            vector_hits,
            lexical_hits,
            alpha=self._fusion_alpha,
            top_m=self._fusion_top_m,
            normalizer=self._normalizer,
        )
        if self._min_score > 0.0:
            candidates = [
                candidate for candidate in candidates if candidate.fused_score >= self._min_score
            ]
        if not candidates:
            logger.info("search_completed", results=0, candidates=0)
            return []

        hits = self._rerank(query, snapshot, candidates)[:limit]
        logger.info(
            "search_completed",
            results=len(hits),
            candidates=len(candidates),
            vector_hits=len(vector_hits),
            lexical_hits=len(lexical_hits),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return hits

    def _rerank(
        self,
        query: str,
        snapshot: IndexSnapshot,
        candidates: list[FusedCandidate],
    ) -> list[SearchHit]:
        resolved = []
        for candidate in candidates:
            chunk = snapshot.chunk(candidate.chunk_id)
            if chunk is not None:
                resolved.append((candidate, chunk))

        try:
            scores = self._reranker.score_all(
                query, [chunk.record.embedding_text for _, chunk in resolved]
            )
        except KnowledgeBaseError as exc:
            raise SearchError(f"rerank failed: {describe_error(exc)}") from exc

        hits = [
            SearchHit(
                chunk_id=chunk.record.chunk_id,
                doc_id=chunk.record.doc_id,
                source_id=chunk.record.source_id,
                title=chunk.title,
                file_path=chunk.file_path,
                ordinal=chunk.record.ordinal,
                text=chunk.record.text,
                prefix=chunk.record.prefix,
                score=float(score),
                fused_score=candidate.fused_score,
                vector_score=candidate.vector_score,
                lexical_score=candidate.lexical_score,
            )
            for (candidate, chunk), score in zip(resolved, scores)
        ]
        hits.sort(key=lambda hit: (-hit.score, -hit.fused_score, hit.doc_id, hit.chunk_id))
        return hits

    def close(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)
