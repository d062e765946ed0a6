"""Durable document and chunk text, zlib-compressed, keyed by document id."""

from __future__ import annotations

from datetime import datetime
import zlib

from kbase.services.rag.sqlite_store import SQLiteStore, utc_now
from kbase.services.rag.types import ChunkRecord, DocumentInfo, PreparedDocument, SourceStats

COMPRESSION_LEVEL = 6


def compress(text: str) -> bytes:
    return zlib.compress(text.encode("utf-8"), COMPRESSION_LEVEL)


def decompress(blob: bytes) -> str:
    return zlib.decompress(blob).decode("utf-8")


class ContentStore(SQLiteStore):
    name = "content store"
    schema = """
        CREATE TABLE IF NOT EXISTS documents (
            id TEXT PRIMARY KEY,
            source_id TEXT NOT NULL,
            title TEXT NOT NULL,
            file_path TEXT,
            content BLOB NOT NULL,
            content_length INTEGER NOT NULL,
            chunk_count INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS chunks (
            id TEXT PRIMARY KEY,
            document_id TEXT NOT NULL,
            ordinal INTEGER NOT NULL,
            prefix TEXT,
            truncated INTEGER NOT NULL DEFAULT 0,
            content BLOB NOT NULL,
            FOREIGN KEY (document_id) REFERENCES documents(id) ON DELETE CASCADE,
            UNIQUE (document_id, ordinal)
        );

        CREATE INDEX IF NOT EXISTS idx_chunks_document_id ON chunks(document_id);
        CREATE INDEX IF NOT EXISTS idx_documents_source_id ON documents(source_id);
    """

    def upsert_document(self, document: PreparedDocument) -> None:
        now = utc_now().isoformat()
        with self.connection("upsert") as connection:
            connection.execute("DELETE FROM chunks WHERE document_id = ?", (document.doc_id,))
            connection.execute(
                """
                INSERT INTO documents (
                    id, source_id, title, file_path, content, content_length,
                    chunk_count, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    source_id = excluded.source_id,
                    title = excluded.title,
                    file_path = excluded.file_path,
                    content = excluded.content,
                    content_length = excluded.content_length,
                    chunk_count = excluded.chunk_count,
                    updated_at = excluded.updated_at
                """,
                (
                    document.doc_id,
                    document.source_id,
                    document.title,
                    document.file_path,
                    compress(document.content),
                    len(document.content),
                    len(document.chunks),
                    now,
                    now,
                ),
            )
            connection.executemany(
                """
                INSERT INTO chunks (id, document_id, ordinal, prefix, truncated, content)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.chunk_id,
                        chunk.doc_id,
                        chunk.ordinal,
                        chunk.prefix,
                        int(chunk.truncated),
                        compress(chunk.text),
                    )
                    for chunk in document.chunks
                ],
            )

    def delete_document(self, doc_id: str) -> bool:
        with self.connection("delete") as connection:
            cursor = connection.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
        return cursor.rowcount > 0

    def reset(self) -> None:
        with self.connection("reset") as connection:
            connection.execute("DELETE FROM chunks")
            connection.execute("DELETE FROM documents")

    def get_document(self, doc_id: str, *, include_content: bool = True) -> DocumentInfo | None:
        with self.connection("read") as connection:
            row = connection.execute(
                """
                SELECT id, source_id, title, file_path, content, content_length,
                       chunk_count, created_at, updated_at
                FROM documents WHERE id = ?
                """,
                (doc_id,),
            ).fetchone()
        if row is None:
            return None
        return self._to_info(row, include_content=include_content)

    def document_ids(self, source_id: str | None = None) -> list[str]:
        with self.connection("read") as connection:
            if source_id is None:
                rows = connection.execute("SELECT id FROM documents ORDER BY id").fetchall()
            else:
                rows = connection.execute(
                    "SELECT id FROM documents WHERE source_id = ? ORDER BY id",
                    (source_id,),
                ).fetchall()
        return [row[0] for row in rows]

    def chunk_counts(self) -> dict[str, int]:
        with self.connection("read") as connection:
            rows = connection.execute("SELECT id, chunk_count FROM documents").fetchall()
        return {doc_id: int(chunk_count) for doc_id, chunk_count in rows}

    def truncated_chunk_ids(self) -> set[str]:
        with self.connection("read") as connection:
            rows = connection.execute("SELECT id FROM chunks WHERE truncated = 1").fetchall()
        return {row[0] for row in rows}

    def get_chunks(self, doc_id: str) -> list[ChunkRecord]:
        with self.connection("read") as connection:
            rows = connection.execute(
                """
                SELECT chunks.id, chunks.ordinal, chunks.prefix, chunks.truncated,
                       chunks.content, documents.source_id
                FROM chunks JOIN documents ON documents.id = chunks.document_id
                WHERE chunks.document_id = ?
                ORDER BY chunks.ordinal
                """,
                (doc_id,),
            ).fetchall()
        return [
            ChunkRecord(
                chunk_id=chunk_id,
                doc_id=doc_id,
                source_id=source_id,
                ordinal=int(ordinal),
                text=decompress(content),
                prefix=prefix,
                truncated=bool(truncated),
            )
            for chunk_id, ordinal, prefix, truncated, content, source_id in rows
        ]

    def list_documents(self, source_id: str) -> list[DocumentInfo]:
        with self.connection("read") as connection:
            rows = connection.execute(
                """
                SELECT id, source_id, title, file_path, NULL, content_length,
                       chunk_count, created_at, updated_at
                FROM documents WHERE source_id = ?
                ORDER BY created_at DESC, id ASC
                """,
                (source_id,),
            ).fetchall()
        return [self._to_info(row, include_content=False) for row in rows]

    def list_sources(self) -> list[SourceStats]:
        with self.connection("read") as connection:
            rows = connection.execute(
                """
                SELECT source_id, COUNT(*), COALESCE(SUM(content_length), 0), MAX(updated_at)
                FROM documents GROUP BY source_id ORDER BY source_id
                """
            ).fetchall()
        return [
            SourceStats(
                source_id=source_id,
                doc_count=int(doc_count),
                total_size=int(total_size),
                last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
            )
            for source_id, doc_count, total_size, last_updated in rows
        ]

    def count_chunks(self, doc_id: str) -> int:
        with self.connection("read") as connection:
            row = connection.execute(
                "SELECT COUNT(*) FROM chunks WHERE document_id = ?", (doc_id,)
            ).fetchone()
        return int(row[0])

    @staticmethod
    def _to_info(row: tuple, *, include_content: bool) -> DocumentInfo:
        (
            doc_id,
            source_id,
            title,
            file_path,
            content_blob,
            content_length,
            chunk_count,
            created_at,
            updated_at,
        ) = row
        return DocumentInfo(
            doc_id=doc_id,
            source_id=source_id,
            title=title,
            file_path=file_path,
            content_length=int(content_length),
            chunk_count=int(chunk_count),
            created_at=datetime.fromisoformat(created_at),
            updated_at=datetime.fromisoformat(updated_at),
            content=decompress(content_blob) if include_content and content_blob else None,
        )
