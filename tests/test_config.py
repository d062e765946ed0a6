import pytest

from kbase.config import get_settings


def test_defaults_without_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("KB_CHUNK_MAX_CHARS", "KB_FUSION_ALPHA", "KB_EMBEDDING_BACKEND", "KB_LOG_JSON"):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.chunk_max_chars == 1000
    assert settings.fusion_alpha == 0.8
    assert settings.embedding_backend == "hashing"
    assert settings.log_json is False


def test_values_read_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KB_DATA_DIR", "data/custom-kb")
    monkeypatch.setenv("KB_CHUNK_MAX_CHARS", "1500")
    monkeypatch.setenv("KB_FUSION_NORMALIZER", " Rank ")
    monkeypatch.setenv("KB_LOG_JSON", "yes")

    settings = get_settings()

    assert settings.data_dir == "data/custom-kb"
    assert settings.chunk_max_chars == 1500
    assert settings.fusion_normalizer == "rank"
    assert settings.log_json is True


def test_out_of_range_values_are_clamped(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KB_FUSION_ALPHA", "1.7")
    monkeypatch.setenv("KB_INGEST_WORKERS", "0")
    monkeypatch.setenv("KB_CHUNK_MAX_CHARS", "5")

    settings = get_settings()

    assert settings.fusion_alpha == 1.0
    assert settings.ingest_workers == 1
    assert settings.chunk_max_chars == 100


def test_unknown_backend_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("KB_EMBEDDING_BACKEND", "openai")

    with pytest.raises(ValueError, match="unsupported value"):
        get_settings()


def test_search_min_score_is_bounded(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("KB_SEARCH_MIN_SCORE", raising=False)
    assert get_settings().search_min_score == 0.0

    get_settings.cache_clear()
    monkeypatch.setenv("KB_SEARCH_MIN_SCORE", "0.35")
    assert get_settings().search_min_score == 0.35

    get_settings.cache_clear()
    monkeypatch.setenv("KB_SEARCH_MIN_SCORE", "-2")
    assert get_settings().search_min_score == 0.0
