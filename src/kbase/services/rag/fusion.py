from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

SCORE_EPSILON = 1e-12


class ScoreNormalizer(Protocol):
    def normalize(self, scores: Sequence[tuple[str, float]]) -> dict[str, float]: ...


def _best_per_chunk(scores: Sequence[tuple[str, float]]) -> dict[str, float]:
    best: dict[str, float] = {}
    for chunk_id, score in scores:
        if chunk_id not in best or score > best[chunk_id]:
            best[chunk_id] = float(score)
    return best


class MinMaxNormalizer:
    """Scale one side's candidate scores onto [0, 1].

    When every candidate has the same score they all map to 1.0, so a lone hit
    still counts fully.
    """

    def normalize(self, scores: Sequence[tuple[str, float]]) -> dict[str, float]:
        best = _best_per_chunk(scores)
        if not best:
            return {}
        low = min(best.values())
        high = max(best.values())
        if high - low <= SCORE_EPSILON:
            return {chunk_id: 1.0 for chunk_id in best}
        span = high - low
        return {chunk_id: (score - low) / span for chunk_id, score in best.items()}


class RankNormalizer:
    """Score by position: the best candidate gets 1.0, the n-th of n gets 1/n."""

    def normalize(self, scores: Sequence[tuple[str, float]]) -> dict[str, float]:
        best = _best_per_chunk(scores)
        ranked = sorted(best.items(), key=lambda item: (-item[1], item[0]))
        total = len(ranked)
        normalized: dict[str, float] = {}
        for rank, (chunk_id, score) in enumerate(ranked):
            if rank > 0 and score == ranked[rank - 1][1]:
                normalized[chunk_id] = normalized[ranked[rank - 1][0]]
            else:
                normalized[chunk_id] = (total - rank) / total
        return normalized


NORMALIZERS: dict[str, type[MinMaxNormalizer] | type[RankNormalizer]] = {
    "minmax": MinMaxNormalizer,
    "rank": RankNormalizer,
}


def build_normalizer(name: str) -> ScoreNormalizer:
    try:
        return NORMALIZERS[name]()
    except KeyError as exc:
        raise ValueError(f"unknown fusion normalizer {name!r}") from exc


@dataclass(frozen=True)
class FusedCandidate:
    chunk_id: str
    fused_score: float
    vector_score: float
    lexical_score: float


def fuse(
    vector_hits: Sequence[tuple[str, float]],
    lexical_hits: Sequence[tuple[str, float]],
    *,
    alpha: float = 0.8,
    top_m: int = 20,
    normalizer: ScoreNormalizer | None = None,
) -> list[FusedCandidate]:
    """Convex combination of the normalized vector and lexical scores.

    A chunk missing from one side contributes 0 for that side. Results are
    ordered by fused score, ties by chunk id, and cut to ``top_m``.
    """
    if not 0.0 <= alpha <= 1.0:
        raise ValueError("alpha must be within [0, 1]")
    if top_m <= 0:
        return []

    active = normalizer or MinMaxNormalizer()
    vector_scores = active.normalize(vector_hits)
    lexical_scores = active.normalize(lexical_hits)

    candidates = []
    for chunk_id in vector_scores.keys() | lexical_scores.keys():
        vector_score = vector_scores.get(chunk_id, 0.0)
        lexical_score = lexical_scores.get(chunk_id, 0.0)
        candidates.append(
            FusedCandidate(
                chunk_id=chunk_id,
                fused_score=alpha * vector_score + (1.0 - alpha) * lexical_score,
                vector_score=vector_score,
                lexical_score=lexical_score,
            )
        )

    candidates.sort(key=lambda candidate: (-candidate.fused_score, candidate.chunk_id))
    return candidates[:top_m]
