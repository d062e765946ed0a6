import pytest

from kbase.services.rag.fusion import MinMaxNormalizer, RankNormalizer, build_normalizer, fuse


def _by_id(candidates):
    return {candidate.chunk_id: candidate for candidate in candidates}


def test_one_sided_candidates_follow_hand_arithmetic() -> None:
    vector_hits = [("semantic", 0.92), ("keyword", 0.0)]
    lexical_hits = [("keyword", 3.4)]

    fused = _by_id(fuse(vector_hits, lexical_hits, alpha=0.8, top_m=20))

    assert fused["semantic"].fused_score == pytest.approx(0.8)
    assert fused["keyword"].fused_score == pytest.approx(0.2)
    assert fused["semantic"].lexical_score == 0.0
    assert fused["keyword"].vector_score == 0.0


def test_min_max_normalization_per_side() -> None:
    normalized = MinMaxNormalizer().normalize([("a", 10.0), ("b", 5.0), ("c", 0.0)])

    assert normalized == {"a": 1.0, "b": 0.5, "c": 0.0}


def test_min_max_equal_scores_all_count_fully() -> None:
    assert MinMaxNormalizer().normalize([("a", 2.0), ("b", 2.0)]) == {"a": 1.0, "b": 1.0}
    assert MinMaxNormalizer().normalize([]) == {}


def test_rank_normalizer_ties_share_a_rank() -> None:
    normalized = RankNormalizer().normalize([("a", 9.0), ("b", 9.0), ("c", 1.0), ("d", 0.5)])

    assert normalized["a"] == normalized["b"] == 1.0
    assert normalized["c"] == pytest.approx(0.5)
    assert normalized["d"] == pytest.approx(0.25)


def test_duplicate_chunk_ids_are_merged() -> None:
    fused = fuse([("a", 0.9), ("a", 0.3), ("b", 0.1)], [("a", 1.0)], top_m=20)

    assert [candidate.chunk_id for candidate in fused] == ["a", "b"]


def test_empty_sides_contribute_zero() -> None:
    only_vector = fuse([("a", 0.5), ("b", 0.25)], [], alpha=0.8)
    only_lexical = fuse([], [("a", 4.0), ("b", 2.0)], alpha=0.8)

    assert [candidate.fused_score for candidate in only_vector] == pytest.approx([0.8, 0.0])
    assert [candidate.fused_score for candidate in only_lexical] == pytest.approx([0.2, 0.0])
    assert fuse([], []) == []


def test_top_m_cut_and_tie_break_by_chunk_id() -> None:
    vector_hits = [(f"chunk-{index:02d}", 1.0) for index in range(30)]

    fused = fuse(vector_hits, [], top_m=20)

    assert len(fused) == 20
    assert [candidate.chunk_id for candidate in fused] == [f"chunk-{index:02d}" for index in range(20)]


@pytest.mark.parametrize("normalizer_name", ["minmax", "rank"])
def test_fusion_is_monotonic_in_each_side(normalizer_name: str) -> None:
    normalizer = build_normalizer(normalizer_name)
    others_vector = [("x", 0.6), ("y", 0.3)]
    others_lexical = [("x", 2.0), ("y", 5.0)]

    previous = None
    for vector_score in [0.0, 0.2, 0.4, 0.59, 0.6, 0.8, 1.0]:
        fused = _by_id(
            fuse(
                [*others_vector, ("target", vector_score)],
                [*others_lexical, ("target", 3.0)],
                normalizer=normalizer,
            )
        )["target"].fused_score
        if previous is not None:
            assert fused >= previous - 1e-12
        previous = fused

    previous = None
    for lexical_score in [0.5, 1.0, 2.0, 4.0, 5.0, 9.0]:
        fused = _by_id(
            fuse(
                [*others_vector, ("target", 0.5)],
                [*others_lexical, ("target", lexical_score)],
                normalizer=normalizer,
            )
        )["target"].fused_score
        if previous is not None:
            assert fused >= previous - 1e-12
        previous = fused


def test_invalid_arguments() -> None:
    with pytest.raises(ValueError, match="alpha"):
        fuse([("a", 1.0)], [], alpha=1.5)
    with pytest.raises(ValueError, match="unknown fusion normalizer"):
        build_normalizer("softmax")
    assert fuse([("a", 1.0)], [], top_m=0) == []
