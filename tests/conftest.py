from collections.abc import Callable, Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from kbase.config import Settings, get_settings
from kbase.services.rag.engine import KnowledgeEngine


@pytest.fixture(autouse=True)
def reset_settings_cache() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def make_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Callable[..., Settings]:
    monkeypatch.setenv("KB_DATA_DIR", str(tmp_path / "kbase-data"))

    def factory(**overrides: object) -> Settings:
        base = replace(
            get_settings(),
            chunk_max_chars=400,
            chunk_min_chars=50,
            embedding_backend="hashing",
            embedding_dim=64,
            reranker_backend="keyword",
            model_timeout_seconds=5.0,
            ingest_workers=2,
            max_concurrent_jobs=2,
            batch_max_docs=2,
        )
        return replace(base, **overrides)

    return factory


@pytest.fixture
def engine(make_settings: Callable[..., Settings]) -> Iterator[KnowledgeEngine]:
    with KnowledgeEngine(make_settings()) as knowledge_engine:
        yield knowledge_engine
