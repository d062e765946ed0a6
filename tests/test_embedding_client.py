from collections.abc import Iterator
import math
import threading

import httpx
import pytest

from kbase.errors import EmbeddingError, RerankError
from kbase.services.rag.embedding_client import (
    EmbeddingGateway,
    HashingEmbeddingClient,
    OllamaEmbeddingClient,
)
from kbase.services.rag.model_calls import ModelCallRunner
from kbase.services.rag.reranker import KeywordReranker, RerankGateway


class _FakeResponse:
    def __init__(self, payload: dict[str, object], *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://localhost:11434/v1/embeddings")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> dict[str, object]:
        return self._payload


class _RecordingClient:
    def __init__(self, dimensions: int = 3) -> None:
        self.batches: list[list[str]] = []
        self._dimensions = dimensions

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        return [[float(len(text))] * self._dimensions for text in texts]


@pytest.fixture
def runner() -> Iterator[ModelCallRunner]:
    model_runner = ModelCallRunner(timeout_seconds=2.0)
    yield model_runner
    model_runner.shutdown()


def test_ollama_embedding_client_parses_vectors(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        captured["url"] = url
        captured["json"] = json
        captured["timeout"] = timeout
        return _FakeResponse(
            {
                "data": [
                    {"embedding": [1, 2, 3]},
                    {"embedding": [4.5, 5.0, 6.25]},
                ]
            }
        )

    monkeypatch.setattr("kbase.services.rag.embedding_client.httpx.post", fake_post)

    client = OllamaEmbeddingClient(
        base_url="http://localhost:11434/v1/",
        model="nomic-embed-text",
        timeout_seconds=12,
    )
    vectors = client.embed_texts(["first", "second"])

    assert vectors == [[1.0, 2.0, 3.0], [4.5, 5.0, 6.25]]
    assert captured["url"] == "http://localhost:11434/v1/embeddings"
    assert captured["json"] == {
        "model": "nomic-embed-text",
        "input": ["first", "second"],
    }
    assert captured["timeout"] == 12


def test_ollama_embedding_client_rejects_payload_size_mismatch(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        del url, json, timeout
        return _FakeResponse({"data": [{"embedding": [1, 2, 3]}]})

    monkeypatch.setattr("kbase.services.rag.embedding_client.httpx.post", fake_post)

    client = OllamaEmbeddingClient(
        base_url="http://localhost:11434/v1",
        model="nomic-embed-text",
    )

    with pytest.raises(EmbeddingError, match="expected 2 vectors"):
        client.embed_texts(["first", "second"])


def test_ollama_embedding_client_wraps_http_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, *, json: dict[str, object], timeout: float) -> _FakeResponse:
        del url, json, timeout
        return _FakeResponse({}, status_code=503)

    monkeypatch.setattr("kbase.services.rag.embedding_client.httpx.post", fake_post)

    client = OllamaEmbeddingClient(base_url="http://localhost:11434/v1", model="nomic-embed-text")

    with pytest.raises(EmbeddingError, match="request failed"):
        client.embed_texts(["first"])


def test_hashing_client_is_deterministic_and_normalized() -> None:
    client = HashingEmbeddingClient(dimensions=32)

    first, second, other = client.embed_texts(
        ["robot arm calibration", "robot arm calibration", "quarterly revenue forecast"]
    )

    assert first == second
    assert len(first) == 32
    assert math.isclose(math.sqrt(sum(value * value for value in first)), 1.0, rel_tol=1e-9)
    assert first != other


def test_hashing_client_returns_zero_vector_for_stopwords_only() -> None:
    client = HashingEmbeddingClient(dimensions=8)

    assert client.embed_texts(["the and of"]) == [[0.0] * 8]


def test_gateway_batches_and_preserves_order(runner: ModelCallRunner) -> None:
    client = _RecordingClient()
    gateway = EmbeddingGateway(client, runner=runner, batch_size=2)

    vectors = gateway.embed_batch(["a", "bb", "ccc", "dddd", "eeeee"])

    assert client.batches == [["a", "bb"], ["ccc", "dddd"], ["eeeee"]]
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]
    assert gateway.embed("xyz") == [3.0, 3.0, 3.0]


def test_gateway_rejects_inconsistent_dimensions(runner: ModelCallRunner) -> None:
    class _RaggedClient:
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            return [[1.0] * (index + 1) for index, _ in enumerate(texts)]

    gateway = EmbeddingGateway(_RaggedClient(), runner=runner)

    with pytest.raises(EmbeddingError, match="dimensions differ"):
        gateway.embed_batch(["one", "two"])


def test_gateway_rejects_non_finite_values(runner: ModelCallRunner) -> None:
    class _NanClient:
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            return [[float("nan"), 1.0] for _ in texts]

    gateway = EmbeddingGateway(_NanClient(), runner=runner)

    with pytest.raises(EmbeddingError, match="non-finite"):
        gateway.embed("text")


def test_gateway_wraps_unexpected_client_errors(runner: ModelCallRunner) -> None:
    class _BrokenClient:
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            raise ConnectionError("socket closed")

    gateway = EmbeddingGateway(_BrokenClient(), runner=runner)

    with pytest.raises(EmbeddingError, match="socket closed"):
        gateway.embed("text")


def test_model_call_timeout_becomes_embedding_error() -> None:
    release = threading.Event()

    class _HangingClient:
        def embed_texts(self, texts: list[str]) -> list[list[float]]:
            release.wait(5)
            return [[1.0] for _ in texts]

    runner = ModelCallRunner(timeout_seconds=0.1)
    gateway = EmbeddingGateway(_HangingClient(), runner=runner)
    try:
        with pytest.raises(EmbeddingError, match="timed out"):
            gateway.embed("slow")
    finally:
        release.set()
        runner.shutdown()


def test_keyword_reranker_scores_query_term_coverage(runner: ModelCallRunner) -> None:
    reranker = KeywordReranker()

    assert reranker.score("authentication flow", "the authentication flow diagram") == 1.0
    assert reranker.score("authentication flow", "authentication tokens") == 0.5
    assert reranker.score("the of", "anything") == 0.0

    gateway = RerankGateway(reranker, runner=runner)
    assert gateway.score_all("robot", ["robot arm", "finance"]) == [1.0, 0.0]
    assert gateway.score_all("robot", []) == []


def test_rerank_gateway_rejects_wrong_score_count(runner: ModelCallRunner) -> None:
    class _ShortReranker:
        def score(self, query: str, text: str) -> float:
            return 1.0

        def score_pairs(self, query: str, texts: list[str]) -> list[float]:
            return [1.0]

    gateway = RerankGateway(_ShortReranker(), runner=runner)

    with pytest.raises(RerankError, match="returned 1 scores for 2 texts"):
        gateway.score_all("query", ["a", "b"])
