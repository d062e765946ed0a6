class ConceptEmbeddingClient:
    """Maps text onto fixed axes by the first keyword it contains."""

    def __init__(self, rules: list[tuple[str, list[float]]], default: list[float]) -> None:
        self._rules = rules
        self._default = default
        self.calls: list[list[str]] = []

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        vectors: list[list[float]] = []
        for text in texts:
            normalized = text.lower()
            for keyword, vector in self._rules:
                if keyword in normalized:
                    vectors.append(list(vector))
                    break
            else:
                vectors.append(list(self._default))
        return vectors


class FailingEmbeddingClient:
    def __init__(self, marker: str) -> None:
        self._marker = marker

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if any(self._marker in text for text in texts):
            raise RuntimeError("embedding backend unavailable")
        return [[1.0, 0.0, 0.0] for _ in texts]


class ConstantReranker:
    def score(self, query: str, text: str) -> float:
        del query, text
        return 0.5
