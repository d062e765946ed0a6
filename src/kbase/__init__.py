from kbase.services.rag.engine import KnowledgeEngine

__all__ = ["KnowledgeEngine"]
