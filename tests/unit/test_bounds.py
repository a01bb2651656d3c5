"""Unit coverage for gnpx range and bound primitives."""

import math

import numpy as np
import pytest

from gnpx import (
    BallBound,
    DRange,
    HRectBound,
    bound_from_points,
    hrect_max_distance_sq,
    hrect_min_distance_sq,
    hrect_range_distance_sq,
)


def _sample_points(n: int = 16, dim: int = 3, seed: int = 0, shift: float = 0.0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(-1.0, 1.0, size=(n, dim)) + shift


def test_drange_union_intersection_and_arithmetic():
    a = DRange(0.0, 1.0)
    b = DRange(0.5, 3.0)

    assert (a | b) == DRange(0.0, 3.0)
    assert (a & b) == DRange(0.5, 1.0)
    assert (a | 5.0) == DRange(0.0, 5.0)
    assert (a + b) == DRange(0.5, 4.0)
    assert (b - 0.5) == DRange(0.0, 2.5)
    assert (2.0 * a) == DRange(0.0, 2.0)
    assert a.width == 1.0
    assert a.mid == 0.5
    assert a.contains(1.0)
    assert not a.contains(1.5)


def test_drange_empty_and_universal():
    empty = DRange.empty()
    assert empty.is_empty()
    assert not empty.contains(0.0)
    assert (empty | DRange(2.0, 3.0)) == DRange(2.0, 3.0)
    assert DRange.universal().contains(1e300)
    with pytest.raises(ValueError):
        _ = DRange(0.0, 1.0) * -1.0


def test_empty_hrect_union_with_point_is_degenerate_box():
    point = np.array([0.25, -3.0, 7.5])
    bound = HRectBound.empty(3)
    bound |= point

    np.testing.assert_array_equal(bound.lo, point)
    np.testing.assert_array_equal(bound.hi, point)
    assert bound.contains(point)


def test_hrect_union_with_itself_is_noop():
    bound = HRectBound.from_points(_sample_points())
    lo, hi = bound.lo.copy(), bound.hi.copy()

    bound |= bound

    np.testing.assert_array_equal(bound.lo, lo)
    np.testing.assert_array_equal(bound.hi, hi)


def test_hrect_union_is_monotonic():
    bound = HRectBound.from_points(_sample_points(seed=1))
    for point in _sample_points(n=10, seed=2, shift=0.5):
        lo, hi = bound.lo.copy(), bound.hi.copy()
        bound.add(point)
        assert np.all(bound.lo <= lo)
        assert np.all(bound.hi >= hi)
        assert bound.contains(point)


def test_hrect_distance_bounds_enclose_all_point_pairs():
    a_points = _sample_points(n=12, seed=3)
    b_points = _sample_points(n=15, seed=4, shift=1.5)
    a = HRectBound.from_points(a_points)
    b = HRectBound.from_points(b_points)

    d2 = np.sum((a_points[:, None, :] - b_points[None, :, :]) ** 2, axis=-1)
    lo = a.min_distance_sq(b)
    hi = a.max_distance_sq(b)
    rng = a.range_distance_sq(b)

    assert lo <= d2.min() + 1e-12
    assert d2.max() <= hi + 1e-12
    assert rng.lo == pytest.approx(lo)
    assert rng.hi == pytest.approx(hi)


def test_hrect_overlapping_boxes_have_zero_min_distance():
    a = HRectBound(np.array([0.0, 0.0]), np.array([2.0, 2.0]))
    b = HRectBound(np.array([1.0, 1.0]), np.array([3.0, 3.0]))
    assert a.min_distance_sq(b) == 0.0
    assert a.min_distance_sq(a) == 0.0
    assert a.max_distance_sq(b) == pytest.approx(18.0)


def test_hrect_known_distances():
    a = HRectBound(np.array([0.0, 0.0]), np.array([1.0, 1.0]))
    b = HRectBound(np.array([3.0, 0.0]), np.array([4.0, 1.0]))

    assert a.min_distance_sq(b) == pytest.approx(4.0)
    assert a.max_distance_sq(b) == pytest.approx(17.0)
    assert a.mid_distance_sq(b) == pytest.approx(9.0)
    assert a.min_distance_sq(np.array([1.0, 3.0])) == pytest.approx(4.0)
    assert a.diameter_sq() == pytest.approx(2.0)
    np.testing.assert_allclose(a.midpoint(), [0.5, 0.5])
    np.testing.assert_allclose(a.widths(), [1.0, 1.0])


def test_hrect_l1_metric_reports_squared_distance():
    a = HRectBound(np.array([0.0, 0.0]), np.array([1.0, 1.0]), t_pow=1)
    b = HRectBound(np.array([2.0, 3.0]), np.array([4.0, 5.0]), t_pow=1)
    # L1 gap is 1 + 2 = 3.
    assert a.min_distance_sq(b) == pytest.approx(9.0)


def test_hrect_vectorized_functions_broadcast_over_batches():
    lo_a = np.zeros((4, 2))
    hi_a = np.ones((4, 2))
    lo_b = np.array([[2.0, 0.0], [0.5, 0.5], [-3.0, 0.0], [0.0, 4.0]])
    hi_b = lo_b + 1.0

    d_min = hrect_min_distance_sq(lo_a, hi_a, lo_b, hi_b)
    d_max = hrect_max_distance_sq(lo_a, hi_a, lo_b, hi_b)
    r_lo, r_hi = hrect_range_distance_sq(lo_a, hi_a, lo_b, hi_b)

    np.testing.assert_allclose(d_min, [1.0, 0.0, 4.0, 9.0])
    np.testing.assert_allclose(r_lo, d_min)
    np.testing.assert_allclose(r_hi, d_max)


def test_hrect_average_and_reset():
    a = HRectBound(np.array([0.0]), np.array([2.0]))
    b = HRectBound(np.array([2.0]), np.array([4.0]))
    avg = HRectBound.average(a, b)
    np.testing.assert_allclose(avg.lo, [1.0])
    np.testing.assert_allclose(avg.hi, [3.0])
    assert avg[0] == DRange(1.0, 3.0)

    a.reset()
    assert np.all(np.isinf(a.lo))
    a |= np.array([5.0])
    assert a[0] == DRange(5.0, 5.0)


def test_hrect_minimax_distance():
    a = HRectBound(np.array([0.0]), np.array([1.0]))
    b = HRectBound(np.array([3.0]), np.array([5.0]))
    # Closest point of ``a`` to the far end of ``b``.
    assert a.minimax_distance_sq(b) == pytest.approx(16.0)


def test_hrect_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        HRectBound(np.zeros(2), np.zeros(3))
    with pytest.raises(ValueError):
        HRectBound.empty(2).add(np.zeros(3))
    with pytest.raises(ValueError):
        HRectBound.from_points(np.zeros((0, 2)))


def test_empty_ball_union_with_point():
    point = np.array([1.0, 2.0])
    ball = BallBound.empty(2)
    assert ball.is_empty()

    ball |= point

    np.testing.assert_array_equal(ball.center, point)
    assert ball.radius == 0.0
    assert ball.contains(point)


def test_ball_union_is_idempotent_and_monotonic():
    ball = BallBound.from_points(_sample_points(seed=5))
    radius = ball.radius
    ball |= ball
    assert ball.radius == radius

    for point in _sample_points(n=8, seed=6, shift=2.0):
        before = ball.radius
        ball.add(point)
        assert ball.radius >= before
        assert ball.contains(point)


def test_ball_from_points_contains_every_point():
    points = _sample_points(n=30, seed=7)
    ball = BallBound.from_points(points)
    np.testing.assert_allclose(ball.center, points.mean(axis=0))
    for point in points:
        assert np.linalg.norm(point - ball.center) <= ball.radius + 1e-12


def test_ball_distance_bounds_enclose_all_point_pairs():
    a_points = _sample_points(n=10, seed=8)
    b_points = _sample_points(n=10, seed=9, shift=3.0)
    a = BallBound.from_points(a_points)
    b = BallBound.from_points(b_points)

    d2 = np.sum((a_points[:, None, :] - b_points[None, :, :]) ** 2, axis=-1)
    rng = a.range_distance_sq(b)

    assert rng.lo <= d2.min() + 1e-12
    assert d2.max() <= rng.hi + 1e-12
    assert a.min_distance_sq(a) == 0.0


def test_ball_known_distances():
    a = BallBound(np.array([0.0, 0.0]), 1.0)
    b = BallBound(np.array([5.0, 0.0]), 2.0)
    assert a.min_distance_sq(b) == pytest.approx(4.0)
    assert a.max_distance_sq(b) == pytest.approx(64.0)
    assert a.mid_distance_sq(b) == pytest.approx(25.0)


def test_bound_from_points_dispatches_on_type():
    points = _sample_points(n=5)
    assert isinstance(bound_from_points(points, "hrect"), HRectBound)
    assert isinstance(bound_from_points(points, "ball"), BallBound)
    with pytest.raises(ValueError):
        bound_from_points(points, "cone")
    assert math.isinf(BallBound.empty(3).radius)
