from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
import threading

import numpy as np

from kbase.services.rag.lexical_index import LexicalSnapshot
from kbase.services.rag.types import ChunkRecord
from kbase.services.rag.vector_index import VectorSnapshot


@dataclass(frozen=True, eq=False)
class IndexedDocument:
    """One published document: its chunks, a float32 embedding matrix and BM25 tokens."""

    doc_id: str
    source_id: str
    title: str
    file_path: str | None
    chunks: tuple[ChunkRecord, ...]
    embeddings: np.ndarray
    tokens: tuple[tuple[str, ...], ...]


@dataclass(frozen=True)
class IndexedChunk:
    record: ChunkRecord
    title: str
    file_path: str | None


class IndexSnapshot:
    """Point-in-time view of every published document.

    Snapshots are never mutated; the index writer derives a new one with
    :meth:`with_changes` and swaps the reference. Deriving only copies the
    document mapping. The vector matrix, the BM25 retriever and the chunk lookup
    are built on first use and then reused by every search of this generation,
    so consecutive batch commits without a search in between build nothing.
    """

    def __init__(
        self,
        documents: Mapping[str, IndexedDocument],
        *,
        generation: int = 0,
    ) -> None:
        self._documents = dict(documents)
        self.generation = generation
        self._chunk_count = sum(len(document.chunks) for document in self._documents.values())
        self._build_lock = threading.Lock()
        self._chunks: dict[str, tuple[IndexedDocument, int]] = {}
        self._lexical: LexicalSnapshot | None = None
        self._vectors: VectorSnapshot | None = None

    @classmethod
    def empty(cls) -> IndexSnapshot:
        return cls({})

    def __len__(self) -> int:
        return self._chunk_count

    @property
    def is_built(self) -> bool:
        return self._vectors is not None

    def _build(self) -> None:
        with self._build_lock:
            if self._vectors is not None:
                return

            documents = [document for document in self._documents.values() if document.chunks]
            located = [
                (chunk.chunk_id, document, index)
                for document in documents
                for index, chunk in enumerate(document.chunks)
            ]
            order = sorted(range(len(located)), key=lambda position: located[position][0])
            ordered = [located[position] for position in order]

            if documents:
                matrix = np.concatenate([document.embeddings for document in documents])[order]
            else:
                matrix = np.zeros((0, 0), dtype=np.float32)

            chunk_ids = [chunk_id for chunk_id, _, _ in ordered]
            source_ids = [document.source_id for _, document, _ in ordered]
            self._chunks = {chunk_id: (document, index) for chunk_id, document, index in ordered}
            self._lexical = LexicalSnapshot(
                chunk_ids, source_ids, [document.tokens[index] for _, document, index in ordered]
            )
            self._vectors = VectorSnapshot(chunk_ids, source_ids, matrix)

    @property
    def vectors(self) -> VectorSnapshot:
        if self._vectors is None:
            self._build()
        return self._vectors

    @property
    def lexical(self) -> LexicalSnapshot:
        if self._vectors is None:
            self._build()
        return self._lexical

    def chunk(self, chunk_id: str) -> IndexedChunk | None:
        if self._vectors is None:
            self._build()
        located = self._chunks.get(chunk_id)
        if located is None:
            return None
        document, index = located
        return IndexedChunk(
            record=document.chunks[index],
            title=document.title,
            file_path=document.file_path,
        )

    def document(self, doc_id: str) -> IndexedDocument | None:
        return self._documents.get(doc_id)

    def has_document(self, doc_id: str) -> bool:
        return doc_id in self._documents

    def document_ids(self, source_id: str | None = None) -> list[str]:
        if source_id is None:
            return sorted(self._documents)
        return sorted(
            doc_id
            for doc_id, document in self._documents.items()
            if document.source_id == source_id
        )

    def with_changes(
        self,
        *,
        upserts: Mapping[str, IndexedDocument] | None = None,
        removals: Iterable[str] = (),
    ) -> IndexSnapshot:
        documents = dict(self._documents)
        for doc_id in removals:
            documents.pop(doc_id, None)
        for doc_id, document in (upserts or {}).items():
            documents[doc_id] = document
        return IndexSnapshot(documents, generation=self.generation + 1)
