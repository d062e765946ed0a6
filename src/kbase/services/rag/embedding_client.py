from __future__ import annotations

import hashlib
import math
from typing import Protocol

import httpx

from kbase.errors import EmbeddingError
from kbase.services.rag.model_calls import ModelCallRunner
from kbase.services.rag.tokenizer import tokenize


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class OllamaEmbeddingClient:
    def __init__(self, *, base_url: str, model: str, timeout_seconds: float = 30.0) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._timeout_seconds = timeout_seconds

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingError(str(exc)) from exc

        payload = response.json()
        data = payload.get("data")
        if not isinstance(data, list):
            raise EmbeddingError("Invalid embeddings payload: missing data")

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingError("Invalid embeddings payload: missing embedding vector")
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        return vectors


class HashingEmbeddingClient:
    """Offline embedder: signed feature hashing of word tokens and bigrams.

    Texts sharing vocabulary land close together under cosine similarity, which
    is enough for local use without a model runtime.
    """

    def __init__(self, *, dimensions: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions

    def _features(self, text: str) -> list[str]:
        tokens = tokenize(text)
        return tokens + [f"{left} {right}" for left, right in zip(tokens, tokens[1:])]

    def _embed(self, text: str) -> list[float]:
        vector = [0.0] * self._dimensions
        for feature in self._features(text):
            digest = hashlib.sha256(feature.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "little") % self._dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            weight = 0.5 if " " in feature else 1.0
            vector[bucket] += sign * weight

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            return [value / norm for value in vector]
        return vector

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [self._embed(text) for text in texts]


class EmbeddingGateway:
    """Batched, timeout-bounded access to an embedding client.

    Output is validated: one finite vector per input, all of the same length.
    """

    def __init__(
        self,
        client: EmbeddingClient,
        *,
        runner: ModelCallRunner,
        batch_size: int = 32,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self._client = client
        self._runner = runner
        self._batch_size = batch_size

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        vectors: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            result = self._runner.run(
                self._client.embed_texts,
                batch,
                error_cls=EmbeddingError,
                operation="embedding",
            )
            if not isinstance(result, list) or len(result) != len(batch):
                received = len(result) if isinstance(result, list) else type(result).__name__
                raise EmbeddingError(
                    f"embedding client returned {received} vectors for {len(batch)} texts"
                )
            vectors.extend(result)

        dimensions = len(vectors[0])
        if dimensions == 0:
            raise EmbeddingError("embedding client returned an empty vector")
        for vector in vectors:
            if len(vector) != dimensions:
                raise EmbeddingError(
                    f"embedding dimensions differ within one call ({len(vector)} != {dimensions})"
                )
            if not all(math.isfinite(value) for value in vector):
                raise EmbeddingError("embedding client returned non-finite values")

        return [[float(value) for value in vector] for vector in vectors]
