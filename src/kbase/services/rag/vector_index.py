from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

from kbase.errors import StoreWriteError
from kbase.services.rag.sqlite_store import SQLiteStore, decode_embedding, encode_embedding
from kbase.services.rag.types import ChunkRecord


@dataclass(frozen=True)
class VectorRow:
    chunk_id: str
    doc_id: str
    source_id: str
    ordinal: int
    embedding: tuple[float, ...]


class VectorIndex(SQLiteStore):
    """Durable chunk embeddings (float32 blobs), one row per chunk."""

    name = "vector index"
    schema = """
        CREATE TABLE IF NOT EXISTS vectors (
            chunk_id TEXT PRIMARY KEY,
            doc_id TEXT NOT NULL,
            source_id TEXT NOT NULL,
            ordinal INTEGER NOT NULL,
            embedding BLOB NOT NULL,
            embedding_dim INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_vectors_doc_id ON vectors(doc_id);
    """

    def replace_document(
        self,
        doc_id: str,
        chunks: Sequence[ChunkRecord],
        embeddings: Sequence[Sequence[float]],
    ) -> None:
        if len(chunks) != len(embeddings):
            raise StoreWriteError(
                f"vector index replace got {len(embeddings)} vectors for {len(chunks)} chunks"
            )
        dimensions = {len(vector) for vector in embeddings}
        if len(dimensions) > 1:
            raise StoreWriteError(f"mixed embedding dimensions for {doc_id}: {sorted(dimensions)}")

        with self.connection("replace") as connection:
            existing = connection.execute(
                "SELECT embedding_dim FROM vectors WHERE doc_id != ? LIMIT 1", (doc_id,)
            ).fetchone()
            if existing is not None and dimensions and existing[0] not in dimensions:
                raise StoreWriteError(
                    f"embedding dimension {dimensions.pop()} does not match index dimension {existing[0]}"
                )

            connection.execute("DELETE FROM vectors WHERE doc_id = ?", (doc_id,))
            connection.executemany(
                """
                INSERT INTO vectors (chunk_id, doc_id, source_id, ordinal, embedding, embedding_dim)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.chunk_id,
                        chunk.doc_id,
                        chunk.source_id,
                        chunk.ordinal,
                        encode_embedding(list(vector)),
                        len(vector),
                    )
                    for chunk, vector in zip(chunks, embeddings)
                ],
            )

    def delete_document(self, doc_id: str) -> int:
        with self.connection("delete") as connection:
            cursor = connection.execute("DELETE FROM vectors WHERE doc_id = ?", (doc_id,))
        return cursor.rowcount

    def delete_chunks(self, chunk_ids: Sequence[str]) -> None:
        with self.connection("delete") as connection:
            connection.executemany(
                "DELETE FROM vectors WHERE chunk_id = ?", [(chunk_id,) for chunk_id in chunk_ids]
            )

    def reset(self) -> None:
        with self.connection("reset") as connection:
            connection.execute("DELETE FROM vectors")

    def load_all(self) -> list[VectorRow]:
        with self.connection("load") as connection:
            rows = connection.execute(
                """
                SELECT chunk_id, doc_id, source_id, ordinal, embedding
                FROM vectors ORDER BY chunk_id
                """
            ).fetchall()
        return [
            VectorRow(
                chunk_id=chunk_id,
                doc_id=doc_id,
                source_id=source_id,
                ordinal=int(ordinal),
                embedding=tuple(decode_embedding(blob)),
            )
            for chunk_id, doc_id, source_id, ordinal, blob in rows
        ]


class VectorSnapshot:
    """Immutable exact cosine search over a fixed set of chunk vectors."""

    def __init__(
        self,
        chunk_ids: Sequence[str],
        source_ids: Sequence[str],
        vectors: Sequence[Sequence[float]],
    ) -> None:
        self._chunk_ids = tuple(chunk_ids)
        self._source_ids = np.asarray(source_ids, dtype=object)
        if self._chunk_ids:
            matrix = np.asarray(vectors, dtype=np.float32)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrix = matrix / norms
        else:
            self._matrix = np.zeros((0, 0), dtype=np.float32)

    def __len__(self) -> int:
        return len(self._chunk_ids)

    @property
    def dimensions(self) -> int | None:
        if not self._chunk_ids:
            return None
        return int(self._matrix.shape[1])

    def search(
        self,
        query_vector: Sequence[float],
        *,
        top_n: int,
        source_id: str | None = None,
    ) -> list[tuple[str, float]]:
        if not self._chunk_ids or top_n <= 0:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape != (self._matrix.shape[1],):
            raise ValueError(
                f"query vector has {query.size} dimensions, index has {self._matrix.shape[1]}"
            )
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return []

        scores = self._matrix @ (query / norm)
        candidates = np.arange(len(self._chunk_ids))
        if source_id is not None:
            candidates = candidates[self._source_ids == source_id]
            if candidates.size == 0:
                return []

        candidate_scores = scores[candidates]
        # stable sort keeps chunk_id order among equal scores
        order = np.argsort(-candidate_scores, kind="stable")[:top_n]
        return [
            (self._chunk_ids[int(candidates[index])], float(candidate_scores[index]))
            for index in order
        ]
