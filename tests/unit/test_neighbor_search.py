"""Tests for the naive, single-tree and dual-tree neighbor search engine."""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from arborsearch import (
    INVALID_INDEX,
    ChebyshevDistance,
    FurthestNeighborSort,
    LMetric,
    ManhattanDistance,
    NearestNeighborSort,
    NeighborSearch,
    NeighborSearchConfig,
    SearchState,
    SquaredEuclideanDistance,
    build_tree,
)

_MODES = ("naive", "single", "dual")
_METRICS = (
    SquaredEuclideanDistance,
    ManhattanDistance,
    ChebyshevDistance,
    LMetric(power=3.0, take_root=True),
)
_POLICIES = (NearestNeighborSort, FurthestNeighborSort)


def _sample_points(n: int, dim: int = 3, seed: int = 0) -> jnp.ndarray:
    key = jax.random.PRNGKey(seed)
    return jax.random.uniform(key, (n, dim), minval=-1.0, maxval=1.0, dtype=jnp.float64)


def _mode_kwargs(mode: str) -> dict:
    return {"naive": mode == "naive", "single_mode": mode == "single"}


def _oracle(reference, query, k, metric, policy, self_search):
    distances = np.array(metric.pairwise(query, reference), dtype=np.float64)
    if self_search:
        np.fill_diagonal(distances, policy.worst_distance())
    keys = distances if policy is NearestNeighborSort else -distances
    order = np.argsort(keys, axis=1, kind="stable")[:, :k]
    return order, np.take_along_axis(distances, order, axis=1)


def _assert_matches_oracle(result, expected_indices, expected_distances):
    np.testing.assert_allclose(result.distances, expected_distances, rtol=1e-12, atol=0.0)
    np.testing.assert_array_equal(result.neighbors, expected_indices)


@pytest.mark.parametrize("policy", _POLICIES)
@pytest.mark.parametrize("metric", _METRICS)
@pytest.mark.parametrize("mode", _MODES)
def test_strategies_match_brute_force_with_query_set(mode, metric, policy):
    reference = _sample_points(48, seed=1)
    query = _sample_points(20, seed=2)
    engine = NeighborSearch(
        reference,
        query,
        leaf_size=4,
        metric=metric,
        sort_policy=policy,
        **_mode_kwargs(mode),
    )

    result = engine.search(5)

    assert result.neighbors.shape == (20, 5)
    assert result.distances.shape == (20, 5)
    _assert_matches_oracle(result, *_oracle(reference, query, 5, metric, policy, False))


@pytest.mark.parametrize("policy", _POLICIES)
@pytest.mark.parametrize("mode", _MODES)
def test_strategies_match_brute_force_in_self_search(mode, policy):
    points = _sample_points(40, dim=2, seed=4)
    engine = NeighborSearch(points, leaf_size=3, sort_policy=policy, **_mode_kwargs(mode))

    result = engine.search(4)

    assert engine.is_self_search
    _assert_matches_oracle(
        result, *_oracle(points, points, 4, SquaredEuclideanDistance, policy, True)
    )


@pytest.mark.parametrize("leaf_size", [1, 2, 7, 64])
@pytest.mark.parametrize("split_rule", ["midpoint", "median"])
def test_tree_strategies_agree_across_leaf_sizes(leaf_size, split_rule):
    reference = _sample_points(64, dim=4, seed=5)
    query = _sample_points(24, dim=4, seed=6)
    config = NeighborSearchConfig(leaf_size=leaf_size, split_rule=split_rule)

    naive = NeighborSearch(reference, query, naive=True).search(3)
    single = NeighborSearch(reference, query, single_mode=True, config=config).search(3)
    dual = NeighborSearch(reference, query, config=config).search(3)

    for result in (single, dual):
        np.testing.assert_array_equal(result.neighbors, naive.neighbors)
        np.testing.assert_allclose(result.distances, naive.distances, rtol=1e-12)


@pytest.mark.parametrize("policy", _POLICIES)
@pytest.mark.parametrize("mode", _MODES)
def test_rows_are_sorted_best_to_worst(mode, policy):
    points = _sample_points(50, seed=8)
    result = NeighborSearch(
        points, leaf_size=5, sort_policy=policy, **_mode_kwargs(mode)
    ).search(6)

    for row in result.distances:
        for best, worse in zip(row[:-1], row[1:]):
            assert not policy.is_better(worse, best)


@pytest.mark.parametrize("mode", _MODES)
def test_self_search_never_returns_the_query_point(mode):
    points = _sample_points(33, seed=9)
    result = NeighborSearch(points, points, leaf_size=2, **_mode_kwargs(mode)).search(5)

    own = np.arange(points.shape[0])[:, None]
    assert not np.any(result.neighbors == own)


def test_separate_but_equal_query_set_is_not_self_search():
    points = _sample_points(16, seed=10)
    copy = jnp.array(points)
    engine = NeighborSearch(points, copy, leaf_size=2)
    result = engine.search(1)

    assert not engine.is_self_search
    np.testing.assert_array_equal(result.neighbors[:, 0], np.arange(16))
    np.testing.assert_allclose(result.distances[:, 0], 0.0)


@pytest.mark.parametrize("mode", _MODES)
def test_concrete_four_point_scenario(mode):
    points = jnp.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0], [5.0, 5.0]])
    result = NeighborSearch(points, leaf_size=1, **_mode_kwargs(mode)).search(1)

    assert int(result.neighbors[0, 0]) in (1, 2)
    assert float(result.distances[0, 0]) == 1.0
    # (5, 5) is 41 away from (1, 0) and (0, 1), and 50 from the origin.
    assert int(result.neighbors[3, 0]) in (1, 2)
    assert float(result.distances[3, 0]) == 41.0
    assert int(result.neighbors[1, 0]) == 0
    assert int(result.neighbors[2, 0]) == 0


@pytest.mark.parametrize("policy", _POLICIES)
@pytest.mark.parametrize("mode", _MODES)
def test_k_equal_to_reference_count_in_self_search(mode, policy):
    points = _sample_points(12, seed=11)
    n = points.shape[0]
    result = NeighborSearch(points, leaf_size=2, sort_policy=policy, **_mode_kwargs(mode)).search(n)

    expected_indices, expected_distances = _oracle(
        points, points, n - 1, SquaredEuclideanDistance, policy, True
    )
    np.testing.assert_array_equal(result.neighbors[:, :-1], expected_indices)
    np.testing.assert_allclose(result.distances[:, :-1], expected_distances, rtol=1e-12)
    assert np.all(result.neighbors[:, -1] == INVALID_INDEX)
    assert np.all(result.distances[:, -1] == policy.worst_distance())


def test_k_validation():
    points = _sample_points(8, seed=12)
    engine = NeighborSearch(points, leaf_size=2)
    with pytest.raises(ValueError, match="k must be >= 1"):
        engine.search(0)
    with pytest.raises(ValueError, match="k must be <="):
        engine.search(9)


def test_dimension_mismatch_fails_construction():
    with pytest.raises(ValueError, match="last-dimension"):
        NeighborSearch(_sample_points(8, dim=3), _sample_points(4, dim=2))


def test_invalid_point_sets_fail_construction():
    with pytest.raises(ValueError, match="shape"):
        NeighborSearch(jnp.zeros((5,)))
    with pytest.raises(ValueError, match="at least one row"):
        NeighborSearch(jnp.zeros((0, 2)))


def test_engine_builds_and_owns_trees_per_mode():
    reference = _sample_points(30, seed=13)
    query = _sample_points(10, seed=14)

    dual = NeighborSearch(reference, query, leaf_size=4)
    assert dual.mode == "dual"
    assert dual.owns_reference_tree and dual.owns_query_tree
    assert dual.query_tree is not None

    single = NeighborSearch(reference, query, single_mode=True, leaf_size=4)
    assert single.mode == "single"
    assert single.owns_reference_tree
    assert single.query_tree is None

    naive = NeighborSearch(reference, query, naive=True, single_mode=True)
    assert naive.mode == "naive"
    assert naive.reference_tree is None

    self_dual = NeighborSearch(reference, leaf_size=4)
    assert self_dual.query_tree is self_dual.reference_tree
    assert not self_dual.owns_query_tree


@pytest.mark.parametrize("mode", ["single", "dual"])
def test_borrowed_trees_report_indices_into_the_caller_sets(mode):
    reference_input = _sample_points(40, seed=15)
    query_input = _sample_points(12, seed=16)
    reference_tree, _ = build_tree(reference_input, leaf_size=3)
    query_tree, _ = build_tree(query_input, leaf_size=3)

    engine = NeighborSearch(
        reference_input,
        query_input,
        reference_tree=reference_tree,
        query_tree=query_tree,
        **_mode_kwargs(mode),
    )
    result = engine.search(4)

    assert not engine.owns_reference_tree
    assert not engine.owns_query_tree
    assert engine.reference_tree is reference_tree
    _assert_matches_oracle(
        result,
        *_oracle(
            reference_input,
            query_input,
            4,
            SquaredEuclideanDistance,
            NearestNeighborSort,
            False,
        ),
    )

    engine.close()
    # Borrowed trees stay usable after the engine is closed.
    assert reference_tree.root().bound().dimension == 3


def test_borrowed_tree_in_self_search_matches_naive():
    points = _sample_points(60, dim=2, seed=28)
    tree, _ = build_tree(points)

    result = NeighborSearch(points, reference_tree=tree).search(1)
    expected = NeighborSearch(points, naive=True).search(1)

    np.testing.assert_array_equal(result.neighbors, expected.neighbors)
    np.testing.assert_allclose(result.distances, expected.distances, rtol=1e-12)


def test_borrowed_tree_with_wrong_point_count_is_rejected():
    points = _sample_points(20, seed=17)
    tree, _ = build_tree(points[:10], leaf_size=2)
    with pytest.raises(ValueError, match="reference tree holds 10 points"):
        NeighborSearch(points, reference_tree=tree)


def test_borrowed_tree_over_other_points_is_rejected():
    points = _sample_points(20, seed=29)
    tree, old_from_new = build_tree(points, leaf_size=2)
    assert not np.array_equal(np.asarray(old_from_new), np.arange(20))

    with pytest.raises(ValueError, match="not built from the reference set"):
        NeighborSearch(tree.points, reference_tree=tree)
    with pytest.raises(ValueError, match="not built from the query set"):
        NeighborSearch(points, points + 1.0, reference_tree=tree, query_tree=tree)


def test_naive_mode_warns_about_multi_node_tree(caplog):
    points = _sample_points(24, seed=18)
    tree, _ = build_tree(points, leaf_size=2)

    with caplog.at_level(logging.WARNING, logger="arborsearch.search"):
        engine = NeighborSearch(tree.points, naive=True, reference_tree=tree)

    assert any("ignores the supplied reference tree" in rec.message for rec in caplog.records)
    result = engine.search(2)
    _assert_matches_oracle(
        result,
        *_oracle(tree.points, tree.points, 2, SquaredEuclideanDistance, NearestNeighborSort, True),
    )


def test_naive_mode_accepts_single_node_tree_silently(caplog):
    points = _sample_points(6, seed=19)
    tree, _ = build_tree(points, leaf_size=10)
    assert tree.num_nodes == 1

    with caplog.at_level(logging.WARNING, logger="arborsearch.search"):
        NeighborSearch(tree.points, naive=True, reference_tree=tree)

    assert not caplog.records


def test_lifecycle_states_and_close():
    points = _sample_points(16, seed=20)
    engine = NeighborSearch(points, leaf_size=4)
    assert engine.state is SearchState.TREES_READY

    engine.search(2)
    assert engine.state is SearchState.DONE

    engine.close()
    assert engine.state is SearchState.CLOSED
    assert engine.reference_tree is None
    with pytest.raises(RuntimeError, match="closed"):
        engine.search(2)
    engine.close()


def test_context_manager_closes_engine():
    points = _sample_points(16, seed=21)
    with NeighborSearch(points, leaf_size=4) as engine:
        engine.search(1)
    assert engine.state is SearchState.CLOSED


@pytest.mark.parametrize("mode", _MODES)
def test_repeated_search_with_different_k(mode):
    reference = _sample_points(30, seed=22)
    query = _sample_points(9, seed=23)
    engine = NeighborSearch(reference, query, leaf_size=3, **_mode_kwargs(mode))

    first = engine.search(5)
    second = engine.search(2)
    third = engine.search(5)

    np.testing.assert_array_equal(second.neighbors, first.neighbors[:, :2])
    np.testing.assert_array_equal(third.neighbors, first.neighbors)
    np.testing.assert_allclose(third.distances, first.distances)


def test_tree_strategies_prune_and_naive_does_not():
    points = _sample_points(128, seed=24)
    naive = NeighborSearch(points, naive=True)
    naive.search(1)
    assert naive.num_prunes == 0

    for single_mode in (False, True):
        engine = NeighborSearch(points, single_mode=single_mode, leaf_size=4)
        engine.search(1)
        assert engine.num_prunes > 0


def test_search_summary_is_logged(caplog):
    points = _sample_points(16, seed=25)
    engine = NeighborSearch(points, leaf_size=4)
    with caplog.at_level(logging.INFO, logger="arborsearch.search"):
        engine.search(2)

    messages = [rec.getMessage() for rec in caplog.records]
    assert any("Neighbor search dual: k=2, queries=16, references=16" in m for m in messages)


def test_score_logger_exceptions_propagate():
    points = _sample_points(16, seed=26)

    def _boom(decision):
        raise RuntimeError("stop")

    engine = NeighborSearch(points, leaf_size=4, score_logger=_boom)
    with pytest.raises(RuntimeError, match="stop"):
        engine.search(1)


def test_candidate_lists_are_exposed_in_tree_order():
    points = _sample_points(20, seed=27)
    engine = NeighborSearch(points, leaf_size=4)
    assert engine.candidate_lists is None

    result = engine.search(3)
    candidates = engine.candidate_lists
    perm = np.asarray(engine.reference_tree.old_from_new)

    np.testing.assert_allclose(candidates.distances, result.distances[perm])
    np.testing.assert_array_equal(perm[candidates.indices], result.neighbors[perm])


def test_failed_search_leaves_engine_ready_for_another_search():
    points = _sample_points(16, seed=30)
    calls = []

    def _stop_once(decision):
        calls.append(decision)
        if len(calls) == 1:
            raise RuntimeError("stop")

    engine = NeighborSearch(points, leaf_size=4, score_logger=_stop_once)
    with pytest.raises(RuntimeError, match="stop"):
        engine.search(1)
    assert engine.state is SearchState.TREES_READY

    result = engine.search(1)
    assert engine.state is SearchState.DONE
    expected = NeighborSearch(points, naive=True).search(1)
    np.testing.assert_array_equal(result.neighbors, expected.neighbors)


def _chain_points() -> jnp.ndarray:
    # Halving coordinates make every midpoint split peel off one point,
    # so the tree is a chain far deeper than the interpreter stack limit.
    xs = [2.0 ** (500 - i) for i in range(1060)]
    return jnp.asarray(xs, dtype=jnp.float64)[:, None]


def _chain_nearest(reference: np.ndarray, query: np.ndarray, self_search: bool):
    distances = np.abs(query[:, None, 0] - reference[None, :, 0])
    if self_search:
        np.fill_diagonal(distances, np.inf)
    order = np.argmin(distances, axis=1)
    return order, distances[np.arange(query.shape[0]), order]


def test_dual_tree_walks_chain_shaped_trees():
    points = _chain_points()
    engine = NeighborSearch(points, leaf_size=1, metric=ManhattanDistance)
    assert engine.reference_tree.num_nodes > 2 * 1000

    result = engine.search(1)

    host = np.asarray(points)
    expected_indices, expected_distances = _chain_nearest(host, host, True)
    np.testing.assert_array_equal(result.neighbors[:, 0], expected_indices)
    np.testing.assert_array_equal(result.distances[:, 0], expected_distances)


def test_single_tree_walks_chain_shaped_trees():
    reference = _chain_points()
    query = jnp.asarray([[2.0**-559], [2.0**-200], [0.0], [2.5], [2.0**500]])
    engine = NeighborSearch(
        reference, query, single_mode=True, leaf_size=1, metric=ManhattanDistance
    )

    result = engine.search(1)

    expected_indices, expected_distances = _chain_nearest(
        np.asarray(reference), np.asarray(query), False
    )
    np.testing.assert_array_equal(result.neighbors[:, 0], expected_indices)
    np.testing.assert_array_equal(result.distances[:, 0], expected_distances)
