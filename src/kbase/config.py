from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float, maximum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return min(maximum, max(minimum, parsed))


def _to_choice(value: str | None, *, default: str, choices: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized not in choices:
        raise ValueError(f"unsupported value {value!r}; expected one of {sorted(choices)}")
    return normalized


@dataclass(frozen=True)
class Settings:
    data_dir: str
    chunk_max_chars: int
    chunk_min_chars: int
    embedding_backend: str
    embedding_dim: int
    embed_batch_size: int
    ollama_base_url: str
    ollama_embed_model: str
    model_timeout_seconds: float
    reranker_backend: str
    reranker_model: str
    ingest_workers: int
    max_concurrent_jobs: int
    batch_max_docs: int
    batch_max_chunks: int
    batch_max_memory_mb: int
    vector_top_n: int
    lexical_top_n: int
    fusion_top_m: int
    fusion_alpha: float
    fusion_normalizer: str
    search_limit: int
    search_min_score: float
    job_retention_seconds: int
    log_level: str
    log_json: bool


@lru_cache
def get_settings() -> Settings:
    return Settings(
        data_dir=os.getenv("KB_DATA_DIR", str(Path.home() / ".kbase")),
        chunk_max_chars=_to_int(os.getenv("KB_CHUNK_MAX_CHARS"), default=1000, minimum=100),
        chunk_min_chars=_to_int(os.getenv("KB_CHUNK_MIN_CHARS"), default=200, minimum=0),
        embedding_backend=_to_choice(
            os.getenv("KB_EMBEDDING_BACKEND"),
            default="hashing",
            choices={"hashing", "ollama"},
        ),
        embedding_dim=_to_int(os.getenv("KB_EMBEDDING_DIM"), default=384, minimum=8),
        embed_batch_size=_to_int(os.getenv("KB_EMBED_BATCH_SIZE"), default=32, minimum=1),
        ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434/v1"),
        ollama_embed_model=os.getenv("OLLAMA_EMBED_MODEL", "nomic-embed-text"),
        model_timeout_seconds=_to_float(
            os.getenv("KB_MODEL_TIMEOUT_SECONDS"), default=30.0, minimum=0.1, maximum=3600.0
        ),
        reranker_backend=_to_choice(
            os.getenv("KB_RERANKER_BACKEND"),
            default="keyword",
            choices={"keyword", "cross-encoder"},
        ),
        reranker_model=os.getenv("KB_RERANKER_MODEL", "cross-encoder/ms-marco-MiniLM-L-6-v2"),
        ingest_workers=_to_int(os.getenv("KB_INGEST_WORKERS"), default=4, minimum=1),
        max_concurrent_jobs=_to_int(os.getenv("KB_MAX_CONCURRENT_JOBS"), default=2, minimum=1),
        batch_max_docs=_to_int(os.getenv("KB_BATCH_MAX_DOCS"), default=16, minimum=1),
        batch_max_chunks=_to_int(os.getenv("KB_BATCH_MAX_CHUNKS"), default=512, minimum=1),
        batch_max_memory_mb=_to_int(os.getenv("KB_BATCH_MAX_MEMORY_MB"), default=64, minimum=1),
        vector_top_n=_to_int(os.getenv("KB_VECTOR_TOP_N"), default=50, minimum=1),
        lexical_top_n=_to_int(os.getenv("KB_LEXICAL_TOP_N"), default=50, minimum=1),
        fusion_top_m=_to_int(os.getenv("KB_FUSION_TOP_M"), default=20, minimum=1),
        fusion_alpha=_to_float(
            os.getenv("KB_FUSION_ALPHA"), default=0.8, minimum=0.0, maximum=1.0
        ),
        fusion_normalizer=_to_choice(
            os.getenv("KB_FUSION_NORMALIZER"),
            default="minmax",
            choices={"minmax", "rank"},
        ),
        search_limit=_to_int(os.getenv("KB_SEARCH_LIMIT"), default=5, minimum=1),
        search_min_score=_to_float(
            os.getenv("KB_SEARCH_MIN_SCORE"), default=0.0, minimum=0.0, maximum=1.0
        ),
        job_retention_seconds=_to_int(
            os.getenv("KB_JOB_RETENTION_SECONDS"), default=3600, minimum=0
        ),
        log_level=os.getenv("KB_LOG_LEVEL", "INFO").upper(),
        log_json=_to_bool(os.getenv("KB_LOG_JSON"), default=False),
    )
