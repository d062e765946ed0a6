from __future__ import annotations

from kbase.services.rag.types import PreparedDocument


class BatchAccumulator:
    """Collects prepared documents until a size threshold asks for a flush."""

    def __init__(self, *, max_docs: int, max_chunks: int, max_memory_mb: int) -> None:
        if max_docs <= 0 or max_chunks <= 0 or max_memory_mb <= 0:
            raise ValueError("batch thresholds must be > 0")
        self._max_docs = max_docs
        self._max_chunks = max_chunks
        self._max_bytes = max_memory_mb * 1024 * 1024
        self._documents: list[PreparedDocument] = []
        self._chunks = 0
        self._bytes = 0

    def __len__(self) -> int:
        return len(self._documents)

    @property
    def pending_chunks(self) -> int:
        return self._chunks

    @property
    def pending_bytes(self) -> int:
        return self._bytes

    def add(self, document: PreparedDocument) -> bool:
        """Queue a document; returns True when the batch should be flushed."""
        self._documents.append(document)
        self._chunks += len(document.chunks)
        self._bytes += document.estimated_bytes()
        return self.should_flush()

    def should_flush(self) -> bool:
        return (
            len(self._documents) >= self._max_docs
            or self._chunks >= self._max_chunks
            or self._bytes >= self._max_bytes
        )

    def drain(self) -> list[PreparedDocument]:
        documents = self._documents
        self._documents = []
        self._chunks = 0
        self._bytes = 0
        return documents
