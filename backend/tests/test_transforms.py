import pytest

from schemas.pipeline import Scope, TransformNode
from workflows.errors import UnknownTransformError
from workflows.transforms import (
    compute_osm_quality,
    compute_score,
    correlation,
    join_on_index,
    run_transform,
    top_n,
)


# =============================================================================
# join_on_index
# =============================================================================

def test_join_keeps_left_length_and_fills_short_arrays_with_none():
    left = {"name": ["A", "B", "C"]}
    joined = join_on_index(left, [[60, 120, 180], [0.5]], ["eta_seconds", "precip"])
    assert len(joined) == 3
    assert joined[0] == {"name": "A", "eta_seconds": 60, "precip": 0.5}
    assert joined[2] == {"name": "C", "eta_seconds": 180, "precip": None}


def test_join_treats_missing_arrays_as_empty():
    joined = join_on_index([{"name": "A"}], [None], ["eta_seconds"])
    assert joined == [{"name": "A", "eta_seconds": None}]


def test_join_does_not_mutate_left_rows():
    left = [{"name": "A"}]
    join_on_index(left, [[1]], ["x"])
    assert left == [{"name": "A"}]


# =============================================================================
# compute_osm_quality
# =============================================================================

def test_quality_bounds():
    bare = compute_osm_quality([{}])[0]["quality"]
    full = compute_osm_quality([{
        "cuisine": "thai",
        "opening_hours": "Mo-Su 10:00-20:00",
        "outdoor_seating": "yes",
        "wheelchair": "YES",
    }])[0]["quality"]
    assert bare == 3.5
    assert full == 4.9
    assert 3.5 <= bare <= full <= 5.0


def test_quality_is_monotonic_in_tags():
    tags = [
        ("cuisine", "thai"),
        ("opening_hours", "24/7"),
        ("outdoor_seating", "yes"),
        ("wheelchair", "yes"),
    ]
    row = {}
    previous = compute_osm_quality([row])[0]["quality"]
    for key, value in tags:
        row = {**row, key: value}
        current = compute_osm_quality([row])[0]["quality"]
        assert current > previous
        previous = current


def test_quality_only_counts_yes_for_flags():
    row = {"outdoor_seating": "no", "wheelchair": "limited"}
    assert compute_osm_quality([row])[0]["quality"] == 3.5


def test_quality_uses_custom_field_names():
    rows = compute_osm_quality([{"kitchen": "pizza"}], fields={"cuisine": "kitchen"})
    assert rows[0]["quality"] == 4.1


# =============================================================================
# compute_score
# =============================================================================

def test_score_formula():
    row = {"quality": 4.5, "eta_seconds": 300, "precip": 2.0}
    assert compute_score([row])[0]["score"] == pytest.approx(4.5 - 0.5 - 0.2)


def test_score_caps_rain_penalty_and_zeroes_missing_values():
    wet = compute_score([{"quality": 4.0, "eta_seconds": 0, "precip": 50}])[0]["score"]
    assert wet == pytest.approx(3.0)
    assert compute_score([{"quality": None}])[0]["score"] == 0


# =============================================================================
# top_n
# =============================================================================

ROWS = [
    {"id": "a", "score": 1.0},
    {"id": "b", "score": 3.0},
    {"id": "c", "score": 2.0},
    {"id": "d", "score": 3.0},
]


def test_top_n_length_and_order():
    top = top_n(ROWS, n=3)
    assert len(top) == 3
    scores = [row["score"] for row in top]
    assert scores == sorted(scores, reverse=True)
    excluded = [row["score"] for row in ROWS if not any(row is kept for kept in top)]
    assert min(scores) >= max(excluded)


def test_top_n_is_stable_for_ties():
    assert [row["id"] for row in top_n(ROWS, n=2)] == ["b", "d"]
    assert [row["id"] for row in top_n(ROWS, n=4, desc=False)] == ["a", "c", "b", "d"]


def test_top_n_result_comes_from_input():
    top = top_n(ROWS, n=10)
    assert len(top) == len(ROWS)
    assert all(row in ROWS for row in top)


def test_top_n_on_nothing():
    assert top_n(None, n=5) == []
    assert top_n(ROWS, n=0) == []


# =============================================================================
# correlation
# =============================================================================

def test_perfect_correlation():
    assert correlation([1, 2, 3], [2, 4, 6]) == pytest.approx(1.0)
    assert correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)


def test_correlation_is_symmetric_and_bounded():
    xs = [4.1, 3.5, 4.9, 3.9, 4.5]
    ys = [240, 280, 320, 360, 400]
    r = correlation(xs, ys)
    assert r == pytest.approx(correlation(ys, xs))
    assert -1.0 <= r <= 1.0


def test_degenerate_correlation_is_zero():
    assert correlation([1], [2]) == 0.0
    assert correlation([5, 5, 5], [1, 2, 3]) == 0.0
    assert correlation(None, [1, 2]) == 0.0


def test_correlation_drops_incomplete_pairs_together():
    # dropping by pair keeps (1,2), (3,6), (4,8): perfectly correlated
    assert correlation([1, None, 3, 4], [2, 100, 6, 8]) == pytest.approx(1.0)


# =============================================================================
# run_transform
# =============================================================================

def test_run_transform_resolves_inputs():
    scope = Scope(outputs={"t2": [{"score": 1}, {"score": 5}]})
    node = TransformNode.from_dict({
        "id": "top", "type": "transform", "fn": "top_n",
        "args": {"from": "outputs.t2", "n": 1},
    })
    assert run_transform(node, scope) == [{"score": 5}]


def test_run_transform_with_missing_upstream_yields_empty():
    node = TransformNode.from_dict({
        "id": "score", "type": "transform", "fn": "compute_score",
        "args": {"from": "outputs.never_ran"},
    })
    assert run_transform(node, Scope()) == []


def test_run_transform_correlation_from_json_paths():
    scope = Scope(outputs={"q": [{"quality": 1, "eta": 10}, {"quality": 2, "eta": 20}]})
    node = TransformNode.from_dict({
        "id": "corr", "type": "transform", "fn": "correlation",
        "args": {"xFrom": "$.outputs.q[*].quality", "yFrom": "$.outputs.q[*].eta"},
    })
    assert run_transform(node, scope) == pytest.approx(1.0)


def test_unknown_transform_raises():
    node = TransformNode.from_dict({"id": "x", "type": "transform", "fn": "pivot", "args": {}})
    with pytest.raises(UnknownTransformError, match="pivot"):
        run_transform(node, Scope())
