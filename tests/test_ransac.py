"""Tests for the single-round RANSAC pipeline pieces."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from primitives import InvalidParameterError, Plane3D, PointCloud
from ransac import (
    BestPlaneReducer,
    CancelToken,
    Hypothesis,
    HypothesisGenerator,
    ParallelScorer,
    ScoredPlane,
    estimate_iterations,
    find_dominant_plane,
)


def _make_horizontal_plane_points(
    *,
    z: float,
    n: int,
    noise_std: float,
    rng: np.random.Generator,
) -> np.ndarray:
    xy = rng.uniform(-1.0, 1.0, size=(n, 2))
    z_vals = np.full(n, z, dtype=float) + rng.normal(scale=noise_std, size=n)
    return np.column_stack([xy, z_vals])


def _square_with_apex() -> PointCloud:
    return PointCloud([[0, 0, 0], [1, 0, 0], [1, 1, 0], [0, 1, 0], [0, 0, 5]])


def _scored(index: int, support_size: int) -> ScoredPlane:
    support = PointCloud(np.zeros((support_size, 3)))
    return ScoredPlane(plane=Plane3D(0.0, 0.0, 1.0, 0.0), support=support, support_size=support_size, index=index)


# -- iteration count ----------------------------------------------------------

def test_estimate_iterations_known_value():
    # ln(0.01) / ln(1 - 0.125) = 34.49
    assert estimate_iterations(0.99, 0.5) == 35


def test_estimate_iterations_monotonic():
    fractions = [0.05, 0.1, 0.3, 0.5, 0.8, 0.95]
    confidences = [0.5, 0.9, 0.99, 0.999, 0.999999]
    for frac in fractions:
        counts = [estimate_iterations(c, frac) for c in confidences]
        assert counts == sorted(counts)
    for conf in confidences:
        counts = [estimate_iterations(conf, f) for f in fractions]
        assert counts == sorted(counts, reverse=True)


def test_estimate_iterations_guards():
    assert estimate_iterations(0.99, 1.0) == 1
    assert estimate_iterations(1.0, 0.5) == 1
    assert estimate_iterations(0.0, 0.5) == 0
    assert estimate_iterations(0.999999, 0.01, max_iterations=1000) == 1000
    with pytest.raises(InvalidParameterError):
        estimate_iterations(0.99, 0.0)
    with pytest.raises(InvalidParameterError):
        estimate_iterations(float("nan"), 0.5)
    with pytest.raises(InvalidParameterError):
        estimate_iterations(0.99, 1e-120)


# -- hypothesis generator -----------------------------------------------------

def test_generator_yields_budget_with_sequential_indices():
    rng = np.random.default_rng(0)
    cloud = PointCloud(rng.uniform(size=(200, 3)))
    gen = HypothesisGenerator(cloud, 25, rng=np.random.default_rng(1))
    hyps = list(gen)
    assert [h.index for h in hyps] == list(range(25))
    assert gen.emitted == 25
    assert gen.skipped == 0
    assert all(not h.plane.is_degenerate() for h in hyps)


def test_generator_is_reproducible_for_a_seed():
    cloud = PointCloud(np.random.default_rng(2).uniform(size=(100, 3)))
    first = [h.plane for h in HypothesisGenerator(cloud, 10, rng=np.random.default_rng(42))]
    second = [h.plane for h in HypothesisGenerator(cloud, 10, rng=np.random.default_rng(42))]
    assert first == second


def test_generator_redraws_coincident_samples():
    # Over half of all triples from five points repeat a point.
    gen = HypothesisGenerator(_square_with_apex(), 40, rng=np.random.default_rng(0), max_retries=25)
    hyps = list(gen)
    assert [h.index for h in hyps] == list(range(40))
    assert gen.emitted == 40
    assert gen.skipped == 0
    assert gen.redrawn > 0
    assert all(not h.plane.is_degenerate() for h in hyps)
    assert all(len({tuple(p.as_array()) for p in h.sample}) == 3 for h in hyps)


def test_generator_skips_slots_on_collinear_cloud():
    cloud = PointCloud([[t, 2 * t, 3 * t] for t in range(10)])
    gen = HypothesisGenerator(cloud, 7, rng=np.random.default_rng(0), max_retries=3)
    assert list(gen) == []
    assert gen.skipped == 7


def test_generator_on_empty_cloud_completes():
    gen = HypothesisGenerator(PointCloud.empty(), 100, rng=np.random.default_rng(0))
    assert list(gen) == []
    assert gen.skipped == 0


def test_generator_stops_on_cancel():
    cloud = PointCloud(np.random.default_rng(3).uniform(size=(50, 3)))
    token = CancelToken()
    gen = HypothesisGenerator(cloud, 1000, rng=np.random.default_rng(0), cancel_token=token)
    seen = []
    for hyp in gen:
        seen.append(hyp)
        if len(seen) == 3:
            token.cancel()
    assert len(seen) == 3


def test_cancel_token_deadline():
    token = CancelToken(timeout=0.0)
    assert token.cancelled
    assert token.timed_out
    assert not CancelToken(timeout=60.0).cancelled


# -- scorer -------------------------------------------------------------------

def test_scorer_partitions_cover_range():
    scorer = ParallelScorer(0.1, partition_size=4)
    assert scorer.partitions(10) == [(0, 4), (4, 8), (8, 10)]
    assert scorer.partitions(0) == []


def test_partitioned_scoring_matches_inline():
    rng = np.random.default_rng(9)
    points = np.vstack([
        _make_horizontal_plane_points(z=0.0, n=700, noise_std=0.01, rng=rng),
        rng.uniform(-1.0, 1.0, size=(300, 3)),
    ])
    cloud = PointCloud(points)
    hyp = Hypothesis(index=0, plane=Plane3D(0.0, 0.0, 1.0, 0.0), sample=(cloud[0], cloud[1], cloud[2]))

    inline = ParallelScorer(0.02).score(cloud, hyp)
    with ThreadPoolExecutor(max_workers=4) as pool:
        fanned = ParallelScorer(0.02, partition_size=64, executor=pool).score(cloud, hyp)

    assert fanned.support_size == inline.support_size == len(inline.support)
    np.testing.assert_array_equal(fanned.support.points, inline.support.points)


# -- reducer ------------------------------------------------------------------

def test_reducer_keeps_largest_support():
    reducer = BestPlaneReducer()
    best = reducer.consume([_scored(0, 3), _scored(1, 8), _scored(2, 5)])
    assert best.index == 1
    assert reducer.observed == 3


def test_reducer_ties_go_to_earlier_hypothesis():
    reducer = BestPlaneReducer()
    # Completion order differs from generation order.
    best = reducer.consume([_scored(5, 10), _scored(2, 10), _scored(7, 10), _scored(1, 9)])
    assert best.index == 2


def test_reducer_empty_stream_is_not_found():
    best = BestPlaneReducer().consume([])
    assert not best.found
    assert best.support_size == 0
    assert len(best.support) == 0


def test_zero_support_plane_is_distinguishable_from_not_found():
    best = BestPlaneReducer().consume([_scored(0, 0)])
    assert best.found
    assert best.support_size == 0


# -- one round ----------------------------------------------------------------

def test_square_corners_win_over_apex():
    best = find_dominant_plane(_square_with_apex(), 35, 0.01, rng=np.random.default_rng(0))
    assert best.found
    assert best.support_size == 4
    unit, offset = best.plane.unit_normal()
    assert abs(unit[2]) == pytest.approx(1.0)
    assert offset == pytest.approx(0.0, abs=1e-12)


def test_winner_independent_of_workers_and_partitioning():
    rng = np.random.default_rng(21)
    points = np.vstack([
        _make_horizontal_plane_points(z=0.0, n=400, noise_std=0.005, rng=rng),
        _make_horizontal_plane_points(z=0.5, n=250, noise_std=0.005, rng=rng),
        rng.uniform(-1.0, 1.0, size=(150, 3)),
    ])
    cloud = PointCloud(points)

    single = find_dominant_plane(cloud, 60, 0.02, rng=np.random.default_rng(7), num_workers=1)
    parallel = find_dominant_plane(
        cloud, 60, 0.02, rng=np.random.default_rng(7), num_workers=4, partition_size=100, queue_size=4
    )
    assert single.index == parallel.index
    assert single.plane == parallel.plane
    assert single.support_size == parallel.support_size


def test_zero_trials_and_empty_cloud_give_not_found():
    assert not find_dominant_plane(_square_with_apex(), 0, 0.01).found
    assert not find_dominant_plane(PointCloud.empty(), 100, 0.01).found


def test_pre_cancelled_round_returns_not_found():
    token = CancelToken()
    token.cancel()
    best = find_dominant_plane(_square_with_apex(), 10_000, 0.01, cancel_token=token)
    assert not best.found


def test_cancel_after_start_completes_in_bounded_time():
    rng = np.random.default_rng(13)
    cloud = PointCloud(_make_horizontal_plane_points(z=0.0, n=2000, noise_std=0.01, rng=rng))
    token = CancelToken()
    outcome = {}

    def run():
        outcome["best"] = find_dominant_plane(
            cloud, 10**9, 0.02, rng=np.random.default_rng(0), cancel_token=token, num_workers=2
        )

    thread = threading.Thread(target=run)
    thread.start()
    time.sleep(0.05)
    token.cancel()
    thread.join(timeout=30.0)
    assert not thread.is_alive()
    assert "best" in outcome


def test_deadline_bounds_a_huge_budget():
    cloud = PointCloud(np.random.default_rng(1).uniform(size=(500, 3)))
    start = time.monotonic()
    find_dominant_plane(cloud, 10**9, 0.01, cancel_token=CancelToken(timeout=0.2), num_workers=2)
    assert time.monotonic() - start < 30.0


def test_worker_errors_propagate():
    with pytest.raises(InvalidParameterError):
        find_dominant_plane(_square_with_apex(), 20, -1.0, rng=np.random.default_rng(0), num_workers=2)


def test_invalid_worker_count():
    with pytest.raises(InvalidParameterError):
        find_dominant_plane(_square_with_apex(), 5, 0.01, num_workers=0)
