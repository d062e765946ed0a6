from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from kbase.errors import KnowledgeBaseError


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.DONE, JobStatus.FAILED)


class DocStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (DocStatus.DONE, DocStatus.FAILED)


@dataclass(frozen=True)
class DocumentInput:
    content: str
    title: str | None = None
    file_path: str | None = None
    doc_id: str | None = None


@dataclass(frozen=True)
class ChunkDraft:
    text: str
    prefix: str | None = None
    truncated: bool = False


@dataclass(frozen=True)
class ChunkRecord:
    chunk_id: str
    doc_id: str
    source_id: str
    ordinal: int
    text: str
    prefix: str | None = None
    truncated: bool = False

    @property
    def embedding_text(self) -> str:
        if self.prefix:
            return f"{self.prefix}\n\n{self.text}"
        return self.text

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PreparedDocument:
    doc_id: str
    source_id: str
    title: str
    file_path: str | None
    content: str
    chunks: tuple[ChunkRecord, ...]
    embeddings: tuple[tuple[float, ...], ...]

    def estimated_bytes(self) -> int:
        text_bytes = len(self.content) + sum(len(chunk.text) for chunk in self.chunks)
        vector_bytes = sum(len(vector) * 4 for vector in self.embeddings)
        return text_bytes + vector_bytes + 64 * (len(self.chunks) + 1)


@dataclass(frozen=True)
class CommitResult:
    doc_id: str
    chunk_count: int
    error: KnowledgeBaseError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class BatchCommit:
    results: tuple[CommitResult, ...]
    fatal_error: KnowledgeBaseError | None = None


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


@dataclass(frozen=True)
class JobSnapshot:
    job_id: str
    source_id: str
    status: JobStatus
    total: int
    embedded: int
    completed: int
    failed: int
    current_doc: str | None
    error: str | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "source_id": self.source_id,
            "status": self.status.value,
            "total": self.total,
            "embedded": self.embedded,
            "completed": self.completed,
            "failed": self.failed,
            "current_doc": self.current_doc,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "finished_at": _iso(self.finished_at),
        }


@dataclass(frozen=True)
class JobDocumentInfo:
    position: int
    doc_id: str
    title: str
    file_path: str | None
    status: DocStatus
    error: str | None = None
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass(frozen=True)
class SearchHit:
    chunk_id: str
    doc_id: str
    source_id: str
    title: str
    file_path: str | None
    ordinal: int
    text: str
    prefix: str | None
    score: float
    fused_score: float
    vector_score: float
    lexical_score: float

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        for key in ("score", "fused_score", "vector_score", "lexical_score"):
            payload[key] = round(payload[key], 6)
        return payload


@dataclass(frozen=True)
class SourceStats:
    source_id: str
    doc_count: int
    total_size: int
    last_updated: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "doc_count": self.doc_count,
            "total_size": self.total_size,
            "last_updated": _iso(self.last_updated),
        }


@dataclass(frozen=True)
class DocumentInfo:
    doc_id: str
    source_id: str
    title: str
    file_path: str | None
    content_length: int
    chunk_count: int
    created_at: datetime
    updated_at: datetime
    content: str | None = field(default=None, repr=False)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "doc_id": self.doc_id,
            "source_id": self.source_id,
            "title": self.title,
            "file_path": self.file_path,
            "content_length": self.content_length,
            "chunk_count": self.chunk_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if self.content is not None:
            payload["content"] = self.content
        return payload
