"""Multi-store commits and snapshot publication.

A document is written to the content store, then the vector index, then the
lexical index, each in its own SQLite transaction. Search only ever sees the
published :class:`IndexSnapshot`, and a document joins the snapshot after all
three writes succeeded, so a partially written document is never visible.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
import threading
import zlib

import numpy as np
import structlog

from kbase.errors import KnowledgeBaseError, StoreUnavailableError
from kbase.services.rag.content_store import ContentStore
from kbase.services.rag.lexical_index import LexicalIndex, LexicalRow, searchable_tokens
from kbase.services.rag.snapshot import IndexedDocument, IndexSnapshot
from kbase.services.rag.types import BatchCommit, ChunkRecord, CommitResult, PreparedDocument
from kbase.services.rag.vector_index import VectorIndex, VectorRow

logger = structlog.get_logger(logger_name=__name__)

LOCK_STRIPES = 64


def _indexed_document(document: PreparedDocument) -> IndexedDocument:
    return IndexedDocument(
        doc_id=document.doc_id,
        source_id=document.source_id,
        title=document.title,
        file_path=document.file_path,
        chunks=document.chunks,
        embeddings=np.asarray(document.embeddings, dtype=np.float32),
        tokens=tuple(searchable_tokens(chunk.text, chunk.prefix) for chunk in document.chunks),
    )


class IndexWriter:
    def __init__(
        self,
        *,
        content_store: ContentStore,
        vector_index: VectorIndex,
        lexical_index: LexicalIndex,
    ) -> None:
        self._content_store = content_store
        self._vector_index = vector_index
        self._lexical_index = lexical_index
        self._stripes = tuple(threading.Lock() for _ in range(LOCK_STRIPES))
        self._publish_lock = threading.Lock()
        self._snapshot = IndexSnapshot.empty()

    @property
    def snapshot(self) -> IndexSnapshot:
        return self._snapshot

    @contextmanager
    def _locked(self, doc_ids: Sequence[str]) -> Iterator[None]:
        # stripes are taken in ascending order so overlapping batches cannot deadlock
        stripes = sorted({zlib.crc32(doc_id.encode("utf-8")) % LOCK_STRIPES for doc_id in doc_ids})
        with ExitStack() as stack:
            for stripe in stripes:
                stack.enter_context(self._stripes[stripe])
            yield

    @contextmanager
    def _locked_all(self) -> Iterator[None]:
        with ExitStack() as stack:
            for lock in self._stripes:
                stack.enter_context(lock)
            yield

    def _publish(
        self,
        *,
        upserts: dict[str, IndexedDocument] | None = None,
        removals: set[str] | None = None,
    ) -> IndexSnapshot:
        with self._publish_lock:
            snapshot = self._snapshot.with_changes(upserts=upserts, removals=removals or ())
            self._snapshot = snapshot
        return snapshot

    def _write_document(self, document: PreparedDocument) -> None:
        self._content_store.upsert_document(document)
        self._vector_index.replace_document(document.doc_id, document.chunks, document.embeddings)
        self._lexical_index.replace_document(
            document.doc_id,
            document.chunks,
            title=document.title,
            file_path=document.file_path,
        )

    def _purge(self, doc_id: str) -> bool:
        found = False
        for store in (self._lexical_index, self._vector_index, self._content_store):
            try:
                found = bool(store.delete_document(doc_id)) or found
            except KnowledgeBaseError as exc:
                logger.warning("document_cleanup_failed", doc_id=doc_id, store=store.name, error=str(exc))
        return found

    def commit(self, document: PreparedDocument) -> CommitResult:
        return self.commit_batch([document]).results[0]

    def commit_batch(self, documents: Sequence[PreparedDocument]) -> BatchCommit:
        """Write each document to all stores, then publish the successes at once.

        A store failure on one document fails that document only. Once a store
        reports itself unusable, every remaining document of the batch is failed
        with that same error without being attempted.
        """
        if not documents:
            return BatchCommit(results=())

        results: list[CommitResult] = []
        upserts: dict[str, IndexedDocument] = {}
        removals: set[str] = set()
        fatal_error: StoreUnavailableError | None = None

        with self._locked([document.doc_id for document in documents]):
            for document in documents:
                if fatal_error is not None:
                    results.append(CommitResult(doc_id=document.doc_id, chunk_count=0, error=fatal_error))
                    continue

                try:
                    self._write_document(document)
                except KnowledgeBaseError as exc:
                    self._purge(document.doc_id)
                    upserts.pop(document.doc_id, None)
                    removals.add(document.doc_id)
                    results.append(CommitResult(doc_id=document.doc_id, chunk_count=0, error=exc))
                    if isinstance(exc, StoreUnavailableError):
                        fatal_error = exc
                        logger.error("store_unavailable", doc_id=document.doc_id, error=str(exc))
                    else:
                        logger.warning("document_write_failed", doc_id=document.doc_id, error=str(exc))
                    continue

                removals.discard(document.doc_id)
                upserts[document.doc_id] = _indexed_document(document)
                results.append(CommitResult(doc_id=document.doc_id, chunk_count=len(document.chunks)))

            snapshot = self._publish(upserts=upserts, removals=removals)

        logger.info(
            "batch_committed",
            documents=len(documents),
            committed=sum(1 for result in results if result.ok),
            failed=sum(1 for result in results if not result.ok),
            generation=snapshot.generation,
        )
        return BatchCommit(results=tuple(results), fatal_error=fatal_error)

    def delete_document(self, doc_id: str) -> bool:
        with self._locked([doc_id]):
            published = self._snapshot.has_document(doc_id)
            found = self._delete_from_stores(doc_id)
            if found or published:
                self._publish(removals={doc_id})
        return found or published

    def delete_source(self, source_id: str) -> list[str]:
        doc_ids = sorted(
            set(self._content_store.document_ids(source_id))
            | set(self._snapshot.document_ids(source_id))
        )
        if not doc_ids:
            return []

        with self._locked(doc_ids):
            for doc_id in doc_ids:
                self._delete_from_stores(doc_id)
            self._publish(removals=set(doc_ids))
        logger.info("source_deleted", source_id=source_id, documents=len(doc_ids))
        return doc_ids

    def _delete_from_stores(self, doc_id: str) -> bool:
        found = self._lexical_index.delete_document(doc_id) > 0
        found = self._vector_index.delete_document(doc_id) > 0 or found
        found = self._content_store.delete_document(doc_id) or found
        return found

    def reset(self) -> None:
        with self._locked_all():
            self._lexical_index.reset()
            self._vector_index.reset()
            self._content_store.reset()
            with self._publish_lock:
                self._snapshot = IndexSnapshot({}, generation=self._snapshot.generation + 1)
        logger.info("index_reset")

    def load(self) -> IndexSnapshot:
        """Rebuild the published snapshot from disk, purging inconsistent rows.

        A document is published only when the content store holds it and both
        indexes hold exactly its recorded number of chunks.
        """
        with self._locked_all():
            chunk_counts = self._content_store.chunk_counts()
            truncated = self._content_store.truncated_chunk_ids()
            vector_rows = {row.chunk_id: row for row in self._vector_index.load_all()}
            lexical_rows = {row.chunk_id: row for row in self._lexical_index.load_all()}

            by_document: dict[str, list[tuple[VectorRow, LexicalRow]]] = {}
            for chunk_id in vector_rows.keys() & lexical_rows.keys():
                vector_row = vector_rows[chunk_id]
                lexical_row = lexical_rows[chunk_id]
                if vector_row.doc_id != lexical_row.doc_id:
                    continue
                by_document.setdefault(vector_row.doc_id, []).append((vector_row, lexical_row))

            documents: dict[str, IndexedDocument] = {}
            incomplete: list[str] = []
            for doc_id, chunk_count in chunk_counts.items():
                rows = sorted(by_document.get(doc_id, []), key=lambda pair: pair[0].ordinal)
                if len(rows) != chunk_count:
                    incomplete.append(doc_id)
                    continue
                if not rows:
                    continue
                first = rows[0][1]
                documents[doc_id] = IndexedDocument(
                    doc_id=doc_id,
                    source_id=first.source_id,
                    title=first.title,
                    file_path=first.file_path,
                    chunks=tuple(
                        ChunkRecord(
                            chunk_id=lexical_row.chunk_id,
                            doc_id=doc_id,
                            source_id=lexical_row.source_id,
                            ordinal=lexical_row.ordinal,
                            text=lexical_row.text,
                            prefix=lexical_row.prefix,
                            truncated=lexical_row.chunk_id in truncated,
                        )
                        for _, lexical_row in rows
                    ),
                    embeddings=np.asarray(
                        [vector_row.embedding for vector_row, _ in rows], dtype=np.float32
                    ),
                    tokens=tuple(
                        searchable_tokens(lexical_row.text, lexical_row.prefix)
                        for _, lexical_row in rows
                    ),
                )

            for doc_id in incomplete:
                self._purge(doc_id)

            published = {
                chunk.chunk_id for document in documents.values() for chunk in document.chunks
            }
            orphan_vectors = sorted(
                chunk_id
                for chunk_id, row in vector_rows.items()
                if chunk_id not in published and row.doc_id not in incomplete
            )
            orphan_entries = sorted(
                chunk_id
                for chunk_id, row in lexical_rows.items()
                if chunk_id not in published and row.doc_id not in incomplete
            )
            if orphan_vectors:
                self._vector_index.delete_chunks(orphan_vectors)
            if orphan_entries:
                self._lexical_index.delete_chunks(orphan_entries)

            if incomplete or orphan_vectors or orphan_entries:
                logger.warning(
                    "index_reconciled",
                    incomplete_documents=len(incomplete),
                    orphan_vectors=len(orphan_vectors),
                    orphan_lexical_entries=len(orphan_entries),
                )

            with self._publish_lock:
                self._snapshot = IndexSnapshot(documents, generation=self._snapshot.generation + 1)
                snapshot = self._snapshot

        logger.info("index_loaded", documents=len(documents), chunks=len(snapshot))
        return snapshot
