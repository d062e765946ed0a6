from __future__ import annotations

import threading
from typing import Any, Protocol

from kbase.errors import RerankError
from kbase.services.rag.model_calls import ModelCallRunner
from kbase.services.rag.tokenizer import tokenize


class Reranker(Protocol):
    def score(self, query: str, text: str) -> float: ...


class KeywordReranker:
    """Fraction of distinct query terms that occur in the text."""

    def score(self, query: str, text: str) -> float:
        query_terms = set(tokenize(query))
        if not query_terms:
            return 0.0
        text_terms = set(tokenize(text))
        return len(query_terms & text_terms) / len(query_terms)


class CrossEncoderReranker:
    """sentence-transformers cross-encoder, loaded on first use.

    Requires the ``rerank`` extra.
    """

    def __init__(self, model_name: str) -> None:
        self._model_name = model_name
        self._model: Any = None
        self._lock = threading.Lock()

    def _load(self) -> Any:
        with self._lock:
            if self._model is None:
                try:
                    from sentence_transformers import CrossEncoder
                except ImportError as exc:
                    raise RerankError(
                        "cross-encoder reranking needs the 'rerank' extra (sentence-transformers)"
                    ) from exc
                self._model = CrossEncoder(self._model_name)
            return self._model

    def score(self, query: str, text: str) -> float:
        return self.score_pairs(query, [text])[0]

    def score_pairs(self, query: str, texts: list[str]) -> list[float]:
        model = self._load()
        scores = model.predict([(query, text) for text in texts])
        return [float(value) for value in scores]


class RerankGateway:
    def __init__(self, reranker: Reranker, *, runner: ModelCallRunner) -> None:
        self._reranker = reranker
        self._runner = runner

    def _score_all(self, query: str, texts: list[str]) -> list[float]:
        score_pairs = getattr(self._reranker, "score_pairs", None)
        if callable(score_pairs):
            return list(score_pairs(query, texts))
        return [float(self._reranker.score(query, text)) for text in texts]

    def score_all(self, query: str, texts: list[str]) -> list[float]:
        if not texts:
            return []
        scores = self._runner.run(
            self._score_all,
            query,
            texts,
            error_cls=RerankError,
            operation="rerank",
        )
        if len(scores) != len(texts):
            raise RerankError(f"reranker returned {len(scores)} scores for {len(texts)} texts")
        return scores
