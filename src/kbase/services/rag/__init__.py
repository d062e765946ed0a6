from kbase.services.rag.engine import KnowledgeEngine
from kbase.services.rag.types import (
    DocumentInfo,
    DocumentInput,
    JobDocumentInfo,
    JobSnapshot,
    SearchHit,
    SourceStats,
)

__all__ = [
    "DocumentInfo",
    "DocumentInput",
    "JobDocumentInfo",
    "JobSnapshot",
    "KnowledgeEngine",
    "SearchHit",
    "SourceStats",
]
