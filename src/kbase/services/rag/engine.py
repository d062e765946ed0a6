"""The knowledge base engine: one object owning every store, pool and table."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import structlog

from kbase.config import Settings, get_settings
from kbase.db import create_job_engine
from kbase.errors import NotFoundError, ValidationError
from kbase.services.rag.content_store import ContentStore
from kbase.services.rag.embedding_client import (
    EmbeddingClient,
    EmbeddingGateway,
    HashingEmbeddingClient,
    OllamaEmbeddingClient,
)
from kbase.services.rag.fusion import build_normalizer
from kbase.services.rag.index_writer import IndexWriter
from kbase.services.rag.job_store import JobStore
from kbase.services.rag.lexical_index import LexicalIndex
from kbase.services.rag.model_calls import ModelCallRunner
from kbase.services.rag.query import RetrievalEngine
from kbase.services.rag.reranker import CrossEncoderReranker, KeywordReranker, RerankGateway, Reranker
from kbase.services.rag.scheduler import IngestionScheduler
from kbase.services.rag.types import (
    ChunkRecord,
    DocumentInfo,
    DocumentInput,
    JobDocumentInfo,
    JobSnapshot,
    SearchHit,
    SourceStats,
)
from kbase.services.rag.vector_index import VectorIndex

logger = structlog.get_logger(logger_name=__name__)


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embedding_backend == "ollama":
        return OllamaEmbeddingClient(
            base_url=settings.ollama_base_url,
            model=settings.ollama_embed_model,
            timeout_seconds=settings.model_timeout_seconds,
        )
    return HashingEmbeddingClient(dimensions=settings.embedding_dim)


def build_reranker(settings: Settings) -> Reranker:
    if settings.reranker_backend == "cross-encoder":
        return CrossEncoderReranker(settings.reranker_model)
    return KeywordReranker()


class KnowledgeEngine:
    """Ingestion and hybrid retrieval over one data directory.

    Opening the engine opens ``content.db``, ``vectors.db``, ``lexical.db`` and
    ``jobs.db`` under ``settings.data_dir``, reconciles the indexes, and marks
    jobs left unfinished by a previous process as failed. Use it as a context
    manager, or call :meth:`close`, so background work drains before the stores
    are closed.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        embedding_client: EmbeddingClient | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._closed = False
        settings = self._settings
        data_dir = Path(settings.data_dir).expanduser()

        self._runner = ModelCallRunner(
            timeout_seconds=settings.model_timeout_seconds,
            max_workers=settings.ingest_workers + 2,
        )
        self._stores: list[ContentStore | VectorIndex | LexicalIndex] = []
        self._job_engine = None
        try:
            self._content_store = ContentStore(data_dir / "content.db")
            self._stores.append(self._content_store)
            self._vector_index = VectorIndex(data_dir / "vectors.db")
            self._stores.append(self._vector_index)
            self._lexical_index = LexicalIndex(data_dir / "lexical.db")
            self._stores.append(self._lexical_index)
            self._job_engine = create_job_engine(data_dir / "jobs.db")

            self._writer = IndexWriter(
                content_store=self._content_store,
                vector_index=self._vector_index,
                lexical_index=self._lexical_index,
            )
            snapshot = self._writer.load()
            self._jobs = JobStore(self._job_engine)
            self._jobs.recover()
        except Exception:
            self._release_stores()
            self._runner.shutdown()
            raise

        embedder = EmbeddingGateway(
            embedding_client or build_embedding_client(settings),
            runner=self._runner,
            batch_size=settings.embed_batch_size,
        )
        self._scheduler = IngestionScheduler(
            job_store=self._jobs,
            writer=self._writer,
            embedder=embedder,
            chunk_max_chars=settings.chunk_max_chars,
            chunk_min_chars=min(settings.chunk_min_chars, settings.chunk_max_chars),
            ingest_workers=settings.ingest_workers,
            max_concurrent_jobs=settings.max_concurrent_jobs,
            batch_max_docs=settings.batch_max_docs,
            batch_max_chunks=settings.batch_max_chunks,
            batch_max_memory_mb=settings.batch_max_memory_mb,
        )
        self._retrieval = RetrievalEngine(
            snapshots=lambda: self._writer.snapshot,
            embedder=embedder,
            reranker=RerankGateway(reranker or build_reranker(settings), runner=self._runner),
            normalizer=build_normalizer(settings.fusion_normalizer),
            vector_top_n=settings.vector_top_n,
            lexical_top_n=settings.lexical_top_n,
            fusion_top_m=settings.fusion_top_m,
            fusion_alpha=settings.fusion_alpha,
            default_limit=settings.search_limit,
            min_score=settings.search_min_score,
        )
        logger.info(
            "engine_started",
            data_dir=str(data_dir),
            documents=len(snapshot.document_ids()),
            chunks=len(snapshot),
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    def __enter__(self) -> KnowledgeEngine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def submit_ingest(
        self, source_id: str, documents: Sequence[DocumentInput | Mapping[str, Any]]
    ) -> str:
        return self._scheduler.submit(source_id, documents)

    def search(
        self,
        query: str,
        limit: int | None = None,
        source_id: str | None = None,
    ) -> list[SearchHit]:
        return self._retrieval.search(query, limit=limit, source_id=source_id)

    def get_job(self, job_id: str) -> JobSnapshot:
        return self._scheduler.get_job(job_id)

    def list_jobs(self) -> list[JobSnapshot]:
        return self._scheduler.list_jobs()

    def get_job_documents(self, job_id: str) -> list[JobDocumentInfo]:
        return self._scheduler.get_job_documents(job_id)

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> JobSnapshot:
        return self._scheduler.wait_for_job(job_id, timeout)

    def cleanup_jobs(self, max_age_seconds: float | None = None) -> list[str]:
        if max_age_seconds is None:
            max_age_seconds = self._settings.job_retention_seconds
        if max_age_seconds < 0:
            raise ValidationError("max_age_seconds must be >= 0")
        return self._scheduler.cleanup_jobs(max_age_seconds)

    def delete_document(self, doc_id: str) -> None:
        if not self._writer.delete_document(doc_id):
            raise NotFoundError(f"document {doc_id!r} not found")
        logger.info("document_deleted", doc_id=doc_id)

    def delete_source(self, source_id: str) -> list[str]:
        deleted = self._writer.delete_source(source_id)
        if not deleted:
            raise NotFoundError(f"source {source_id!r} not found")
        return deleted

    def reset_all(self) -> None:
        """Empty every store and forget finished jobs; running jobs keep going."""
        self._writer.reset()
        removed = self._jobs.clear_terminal()
        logger.info("engine_reset", jobs_removed=len(removed))

    def list_sources(self) -> list[SourceStats]:
        return self._content_store.list_sources()

    def list_documents(self, source_id: str) -> list[DocumentInfo]:
        documents = self._content_store.list_documents(source_id)
        if not documents:
            raise NotFoundError(f"source {source_id!r} not found")
        return documents

    def get_document(self, doc_id: str, *, include_content: bool = True) -> DocumentInfo:
        document = self._content_store.get_document(doc_id, include_content=include_content)
        if document is None:
            raise NotFoundError(f"document {doc_id!r} not found")
        return document

    def get_document_chunks(self, doc_id: str) -> list[ChunkRecord]:
        chunks = self._content_store.get_chunks(doc_id)
        if not chunks and self._content_store.get_document(doc_id, include_content=False) is None:
            raise NotFoundError(f"document {doc_id!r} not found")
        return chunks

    def stats(self) -> dict[str, int]:
        snapshot = self._writer.snapshot
        return {
            "documents": len(snapshot.document_ids()),
            "chunks": len(snapshot),
            "jobs": len(self._jobs.list_jobs()),
        }

    def _release_stores(self) -> None:
        for store in reversed(self._stores):
            store.close()
        self._stores = []
        if self._job_engine is not None:
            self._job_engine.dispose()
            self._job_engine = None

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._scheduler.shutdown(wait_for_jobs=True)
        self._retrieval.close()
        self._runner.shutdown()
        self._release_stores()
        logger.info("engine_closed")
