from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import bm25s

from kbase.services.rag.sqlite_store import SQLiteStore
from kbase.services.rag.tokenizer import tokenize
from kbase.services.rag.types import ChunkRecord

EMPTY_CHUNK_TOKEN = "__empty__"


@dataclass(frozen=True)
class LexicalRow:
    chunk_id: str
    doc_id: str
    source_id: str
    ordinal: int
    title: str
    file_path: str | None
    prefix: str | None
    text: str


class LexicalIndex(SQLiteStore):
    """Durable searchable text per chunk; BM25 statistics live in snapshots."""

    name = "lexical index"
    schema = """
        CREATE TABLE IF NOT EXISTS entries (
            chunk_id TEXT PRIMARY KEY,
            doc_id TEXT NOT NULL,
            source_id TEXT NOT NULL,
            ordinal INTEGER NOT NULL,
            title TEXT NOT NULL,
            file_path TEXT,
            prefix TEXT,
            text TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_entries_doc_id ON entries(doc_id);
        CREATE INDEX IF NOT EXISTS idx_entries_source_id ON entries(source_id);
    """

    def replace_document(
        self,
        doc_id: str,
        chunks: Sequence[ChunkRecord],
        *,
        title: str,
        file_path: str | None,
    ) -> None:
        with self.connection("replace") as connection:
            connection.execute("DELETE FROM entries WHERE doc_id = ?", (doc_id,))
            connection.executemany(
                """
                INSERT INTO entries (chunk_id, doc_id, source_id, ordinal, title, file_path, prefix, text)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.chunk_id,
                        chunk.doc_id,
                        chunk.source_id,
                        chunk.ordinal,
                        title,
                        file_path,
                        chunk.prefix,
                        chunk.text,
                    )
                    for chunk in chunks
                ],
            )

    def delete_document(self, doc_id: str) -> int:
        with self.connection("delete") as connection:
            cursor = connection.execute("DELETE FROM entries WHERE doc_id = ?", (doc_id,))
        return cursor.rowcount

    def delete_chunks(self, chunk_ids: Sequence[str]) -> None:
        with self.connection("delete") as connection:
            connection.executemany(
                "DELETE FROM entries WHERE chunk_id = ?", [(chunk_id,) for chunk_id in chunk_ids]
            )

    def reset(self) -> None:
        with self.connection("reset") as connection:
            connection.execute("DELETE FROM entries")

    def load_all(self) -> list[LexicalRow]:
        with self.connection("load") as connection:
            rows = connection.execute(
                """
                SELECT chunk_id, doc_id, source_id, ordinal, title, file_path, prefix, text
                FROM entries ORDER BY chunk_id
                """
            ).fetchall()
        return [
            LexicalRow(
                chunk_id=chunk_id,
                doc_id=doc_id,
                source_id=source_id,
                ordinal=int(ordinal),
                title=title,
                file_path=file_path,
                prefix=prefix,
                text=text,
            )
            for chunk_id, doc_id, source_id, ordinal, title, file_path, prefix, text in rows
        ]


def searchable_tokens(text: str, prefix: str | None = None) -> tuple[str, ...]:
    if prefix:
        return tuple(tokenize(f"{prefix}\n\n{text}"))
    return tuple(tokenize(text))


class LexicalSnapshot:
    """Immutable BM25 retriever over a fixed set of tokenized chunks."""

    def __init__(
        self,
        chunk_ids: Sequence[str],
        source_ids: Sequence[str],
        tokens: Sequence[Sequence[str]],
    ) -> None:
        self._chunk_ids = tuple(chunk_ids)
        self._source_ids = tuple(source_ids)
        self._vocabulary = frozenset(token for chunk_tokens in tokens for token in chunk_tokens)
        self._retriever: bm25s.BM25 | None = None
        if self._chunk_ids and self._vocabulary:
            # a chunk made only of stopwords still needs a row; the filler never matches a query
            corpus = [list(chunk_tokens) or [EMPTY_CHUNK_TOKEN] for chunk_tokens in tokens]
            retriever = bm25s.BM25()
            retriever.index(corpus, show_progress=False)
            self._retriever = retriever

    def __len__(self) -> int:
        return len(self._chunk_ids)

    def search(
        self,
        query: str,
        *,
        top_n: int,
        source_id: str | None = None,
    ) -> list[tuple[str, float]]:
        if self._retriever is None or top_n <= 0:
            return []

        query_tokens = [token for token in tokenize(query) if token in self._vocabulary]
        if not query_tokens:
            return []

        corpus_size = len(self._chunk_ids)
        k = corpus_size if source_id is not None else min(top_n, corpus_size)
        results, scores = self._retriever.retrieve([query_tokens], k=k, show_progress=False)

        hits: list[tuple[str, float]] = []
        for position in range(results.shape[1]):
            score = float(scores[0, position])
            if score <= 0.0:
                continue
            index = int(results[0, position])
            if source_id is not None and self._source_ids[index] != source_id:
                continue
            hits.append((self._chunk_ids[index], score))

        hits.sort(key=lambda item: (-item[1], item[0]))
        return hits[:top_n]
