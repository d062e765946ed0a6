from __future__ import annotations


class KnowledgeBaseError(RuntimeError):
    """Base class for every error raised by the knowledge base core."""


class ValidationError(KnowledgeBaseError):
    pass


class ChunkingError(KnowledgeBaseError):
    pass


class EmbeddingError(KnowledgeBaseError):
    pass


class RerankError(KnowledgeBaseError):
    pass


class StoreWriteError(KnowledgeBaseError):
    pass


class StoreUnavailableError(StoreWriteError):
    """The store itself is unusable; remaining writes against it cannot succeed."""


class NotFoundError(KnowledgeBaseError):
    pass


class SearchError(KnowledgeBaseError):
    pass


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
