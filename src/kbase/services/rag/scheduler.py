"""Background ingestion: one coordinator per job, a shared pool for document work.

The coordinator keeps a bounded window of documents in flight on the document
pool (chunking and embedding), folds each outcome into the job table, and hands
prepared documents to the index writer in batches.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import hashlib
from pathlib import PurePath
import threading
from typing import Any

import structlog

from kbase.errors import KnowledgeBaseError, NotFoundError, ValidationError, describe_error
from kbase.services.rag.accumulator import BatchAccumulator
from kbase.services.rag.chunker import build_chunk_records, chunk_document
from kbase.services.rag.embedding_client import EmbeddingGateway
from kbase.services.rag.index_writer import IndexWriter
from kbase.services.rag.job_store import JobStore
from kbase.services.rag.types import (
    DocumentInput,
    JobDocumentInfo,
    JobSnapshot,
    JobStatus,
    PreparedDocument,
)

logger = structlog.get_logger(logger_name=__name__)

SHUTDOWN_BEFORE_START = "scheduler shut down before the job started"
SHUTDOWN_DURING_JOB = "scheduler shut down before the job finished"
TITLE_MAX_CHARS = 120


@dataclass(frozen=True)
class QueuedDocument:
    position: int
    doc_id: str
    title: str
    file_path: str | None
    content: str


def derive_doc_id(source_id: str, content: str, file_path: str | None) -> str:
    key = file_path if file_path else content
    return hashlib.sha256(f"{source_id}\0{key}".encode("utf-8")).hexdigest()[:16]


def _derive_title(content: str, file_path: str | None, doc_id: str) -> str:
    if file_path:
        return PurePath(file_path).name
    for line in content.splitlines():
        stripped = line.strip().lstrip("#").strip()
        if stripped:
            return stripped[:TITLE_MAX_CHARS]
    return doc_id


def _optional_str(value: Any, *, field: str, position: int) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"document {position}: {field} must be a string")
    return value.strip() or None


def normalize_documents(
    source_id: str, documents: Sequence[DocumentInput | Mapping[str, Any]]
) -> list[QueuedDocument]:
    if not isinstance(source_id, str) or not source_id.strip():
        raise ValidationError("source_id must be a non-empty string")
    if isinstance(documents, (str, bytes)) or not isinstance(documents, Sequence):
        raise ValidationError("documents must be a list")
    if not documents:
        raise ValidationError("documents must not be empty")

    queued: list[QueuedDocument] = []
    for position, document in enumerate(documents):
        if isinstance(document, DocumentInput):
            fields = {
                "content": document.content,
                "title": document.title,
                "file_path": document.file_path,
                "doc_id": document.doc_id,
            }
        elif isinstance(document, Mapping):
            fields = dict(document)
        else:
            raise ValidationError(f"document {position}: expected a mapping with content")

        content = fields.get("content")
        if not isinstance(content, str):
            raise ValidationError(f"document {position}: content must be a string")

        file_path = _optional_str(fields.get("file_path"), field="file_path", position=position)
        doc_id = _optional_str(fields.get("doc_id"), field="doc_id", position=position)
        doc_id = doc_id or derive_doc_id(source_id, content, file_path)
        title = _optional_str(fields.get("title"), field="title", position=position)
        queued.append(
            QueuedDocument(
                position=position,
                doc_id=doc_id,
                title=title or _derive_title(content, file_path, doc_id),
                file_path=file_path,
                content=content,
            )
        )
    return queued


class IngestionScheduler:
    def __init__(
        self,
        *,
        job_store: JobStore,
        writer: IndexWriter,
        embedder: EmbeddingGateway,
        chunk_max_chars: int,
        chunk_min_chars: int,
        ingest_workers: int = 4,
        max_concurrent_jobs: int = 2,
        batch_max_docs: int = 16,
        batch_max_chunks: int = 512,
        batch_max_memory_mb: int = 64,
    ) -> None:
        self._job_store = job_store
        self._writer = writer
        self._embedder = embedder
        self._chunk_max_chars = chunk_max_chars
        self._chunk_min_chars = chunk_min_chars
        self._batch_max_docs = batch_max_docs
        self._batch_max_chunks = batch_max_chunks
        self._batch_max_memory_mb = batch_max_memory_mb
        self._window = max(1, ingest_workers * 2)
        self._job_pool = ThreadPoolExecutor(
            max_workers=max_concurrent_jobs, thread_name_prefix="kbase-job"
        )
        self._document_pool = ThreadPoolExecutor(
            max_workers=ingest_workers, thread_name_prefix="kbase-doc"
        )
        self._state_lock = threading.Lock()
        self._job_futures: dict[str, Future[None]] = {}
        self._closed = False

    def submit(self, source_id: str, documents: Sequence[DocumentInput | Mapping[str, Any]]) -> str:
        queued = normalize_documents(source_id, documents)
        source_id = source_id.strip()

        with self._state_lock:
            if self._closed:
                raise KnowledgeBaseError("ingestion scheduler is shut down")
            job = self._job_store.create(
                source_id,
                [(document.doc_id, document.title, document.file_path) for document in queued],
            )
            future = self._job_pool.submit(self._run_job, job.job_id, source_id, queued)
            self._job_futures[job.job_id] = future
        future.add_done_callback(lambda _: self._forget(job.job_id))

        logger.info("job_submitted", job_id=job.job_id, source_id=source_id, total=job.total)
        return job.job_id

    def _forget(self, job_id: str) -> None:
        with self._state_lock:
            self._job_futures.pop(job_id, None)

    def get_job(self, job_id: str) -> JobSnapshot:
        job = self._job_store.get(job_id)
        if job is None:
            raise NotFoundError(f"job {job_id!r} not found")
        return job

    def list_jobs(self) -> list[JobSnapshot]:
        return self._job_store.list_jobs()

    def get_job_documents(self, job_id: str) -> list[JobDocumentInfo]:
        documents = self._job_store.documents(job_id)
        if documents is None:
            raise NotFoundError(f"job {job_id!r} not found")
        return list(documents)

    def wait_for_job(self, job_id: str, timeout: float | None = None) -> JobSnapshot:
        job = self._job_store.wait(job_id, timeout)
        if job is None:
            raise NotFoundError(f"job {job_id!r} not found")
        return job

    def cleanup_jobs(self, max_age_seconds: float) -> list[str]:
        return self._job_store.cleanup(max_age_seconds)

    def shutdown(self, *, wait_for_jobs: bool = True) -> None:
        with self._state_lock:
            if self._closed:
                return
            self._closed = True
            futures = dict(self._job_futures)

        for job_id, future in futures.items():
            if future.cancel():
                self._job_store.finish(job_id, status=JobStatus.FAILED, error=SHUTDOWN_BEFORE_START)
                logger.warning("job_cancelled", job_id=job_id, reason=SHUTDOWN_BEFORE_START)

        self._job_pool.shutdown(wait=wait_for_jobs)
        self._document_pool.shutdown(wait=wait_for_jobs, cancel_futures=True)

    def _prepare(self, job_id: str, source_id: str, document: QueuedDocument) -> PreparedDocument | None:
        self._job_store.document_processing(job_id, document.position)
        try:
            result = chunk_document(
                document.content,
                file_path=document.file_path,
                max_chars=self._chunk_max_chars,
                min_chars=self._chunk_min_chars,
            )
            chunks = build_chunk_records(
                doc_id=document.doc_id,
                source_id=source_id,
                drafts=result.chunks,
            )
            embeddings = self._embedder.embed_batch([chunk.embedding_text for chunk in chunks])
        except KnowledgeBaseError as exc:
            self._job_store.document_failed(job_id, document.position, describe_error(exc))
            logger.warning(
                "document_failed",
                job_id=job_id,
                doc_id=document.doc_id,
                stage="prepare",
                error=describe_error(exc),
            )
            return None

        warning = None
        if result.truncated:
            truncated = sum(1 for chunk in chunks if chunk.truncated)
            warning = f"{truncated} chunk(s) truncated to {self._chunk_max_chars} characters"
        self._job_store.document_embedded(job_id, document.position, warning=warning)
        return PreparedDocument(
            doc_id=document.doc_id,
            source_id=source_id,
            title=document.title,
            file_path=document.file_path,
            content=document.content,
            chunks=chunks,
            embeddings=tuple(tuple(vector) for vector in embeddings),
        )

    def _flush(
        self,
        job_id: str,
        accumulator: BatchAccumulator,
        positions: list[int],
    ) -> KnowledgeBaseError | None:
        documents = accumulator.drain()
        batch_positions = list(positions)
        positions.clear()
        if not documents:
            return None

        commit = self._writer.commit_batch(documents)
        for position, result in zip(batch_positions, commit.results):
            if result.ok:
                self._job_store.document_done(job_id, position)
            else:
                self._job_store.document_failed(job_id, position, describe_error(result.error))
        return commit.fatal_error

    def _run_job(self, job_id: str, source_id: str, documents: list[QueuedDocument]) -> None:
        log = logger.bind(job_id=job_id, source_id=source_id)
        try:
            self._job_store.start(job_id)
            log.info("job_started", total=len(documents))

            accumulator = BatchAccumulator(
                max_docs=self._batch_max_docs,
                max_chunks=self._batch_max_chunks,
                max_memory_mb=self._batch_max_memory_mb,
            )
            positions: list[int] = []
            pending = deque(documents)
            in_flight: dict[Future[PreparedDocument | None], QueuedDocument] = {}
            fatal_error: KnowledgeBaseError | None = None
            interrupted = False

            while pending or in_flight:
                while (
                    pending
                    and fatal_error is None
                    and not self._closed
                    and len(in_flight) < self._window
                ):
                    document = pending.popleft()
                    future = self._document_pool.submit(self._prepare, job_id, source_id, document)
                    in_flight[future] = document
                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in sorted(done, key=lambda item: in_flight[item].position):
                    document = in_flight.pop(future)
                    if future.cancelled():
                        interrupted = True
                        continue
                    prepared = future.result()
                    if prepared is None:
                        continue
                    if fatal_error is not None:
                        self._job_store.document_failed(
                            job_id, document.position, describe_error(fatal_error)
                        )
                        continue

                    positions.append(document.position)
                    if accumulator.add(prepared):
                        fatal_error = self._flush(job_id, accumulator, positions)

            if fatal_error is None:
                fatal_error = self._flush(job_id, accumulator, positions)

            if fatal_error is not None:
                cause = describe_error(fatal_error)
                job = self._job_store.finish(job_id, status=JobStatus.DONE, error=cause)
                log.error("job_store_failure", error=cause)
            elif self._closed and (pending or interrupted):
                job = self._job_store.finish(job_id, status=JobStatus.FAILED, error=SHUTDOWN_DURING_JOB)
            else:
                job = self._job_store.finish(job_id, status=JobStatus.DONE)
        except Exception as exc:
            job = self._job_store.finish(job_id, status=JobStatus.FAILED, error=describe_error(exc))
            log.exception("job_crashed")
            return

        if job is not None:
            log.info(
                "job_finished",
                status=job.status.value,
                completed=job.completed,
                failed=job.failed,
                total=job.total,
            )
