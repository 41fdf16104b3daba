"""Tests for plane geometry primitives."""

import numpy as np
import pytest

from primitives import (
    DegenerateSampleError,
    Plane3D,
    Point3D,
    compute_normal,
    plane_from_points,
    point_to_plane_distance,
)


def test_compute_normal_is_cross_product_of_edges():
    normal = compute_normal(Point3D(0, 0, 0), Point3D(2, 0, 0), Point3D(0, 3, 0))
    np.testing.assert_allclose(normal, [0.0, 0.0, 6.0])


def test_plane_from_points_contains_defining_points():
    rng = np.random.default_rng(5)
    for _ in range(50):
        p1, p2, p3 = rng.uniform(-10.0, 10.0, size=(3, 3))
        plane = plane_from_points(p1, p2, p3)
        for p in (p1, p2, p3):
            assert point_to_plane_distance(plane, p) == pytest.approx(0.0, abs=1e-9)


def test_plane_offset_uses_first_point():
    p1 = Point3D(0.0, 0.0, 2.0)
    plane = plane_from_points(p1, Point3D(1.0, 0.0, 2.0), Point3D(0.0, 1.0, 2.0))
    assert (plane.a, plane.b, plane.c) == (0.0, 0.0, 1.0)
    assert plane.d == pytest.approx(-2.0)


def test_distance_is_scale_invariant():
    plane = Plane3D(0.0, 0.0, 10.0, -10.0)  # z = 1 with a long normal
    assert plane.distance(Point3D(3.0, -4.0, 4.0)) == pytest.approx(3.0)
    assert plane.distance((0.0, 0.0, 1.0)) == pytest.approx(0.0)


def test_vectorized_distances_match_scalar():
    rng = np.random.default_rng(11)
    plane = plane_from_points((0, 0, 0), (1, 2, 0.5), (-1, 0.3, 2))
    points = rng.normal(size=(20, 3))
    expected = [point_to_plane_distance(plane, p) for p in points]
    np.testing.assert_allclose(plane.distances(points), expected)


@pytest.mark.parametrize(
    "points",
    [
        ((0, 0, 0), (1, 1, 1), (2, 2, 2)),   # collinear
        ((1, 2, 3), (1, 2, 3), (4, 5, 6)),   # two coincident
        ((1, 1, 1), (1, 1, 1), (1, 1, 1)),   # all coincident
    ],
)
def test_degenerate_samples_are_rejected(points):
    with pytest.raises(DegenerateSampleError):
        plane_from_points(*points)


def test_tiny_triangle_still_spans_a_plane():
    scale = 1e-7
    plane = plane_from_points((0, 0, 0), (scale, 0, 0), (0, scale, 0))
    assert not plane.is_degenerate()
    unit, offset = plane.unit_normal()
    np.testing.assert_allclose(unit, [0.0, 0.0, 1.0])
    assert offset == pytest.approx(0.0, abs=1e-20)
    assert plane.distance((0.0, 0.0, 2 * scale)) == pytest.approx(2 * scale)


def test_collinear_rejection_does_not_depend_on_scale():
    for scale in (1e-7, 1.0, 1e7):
        with pytest.raises(DegenerateSampleError):
            plane_from_points((0, 0, 0), (scale, scale, 0), (2 * scale, 2 * scale, 0))


def test_distance_to_degenerate_plane_raises():
    plane = Plane3D(0.0, 0.0, 0.0, 1.0)
    assert plane.is_degenerate()
    with pytest.raises(DegenerateSampleError):
        plane.distance(Point3D(0.0, 0.0, 0.0))


def test_unit_normal_describes_same_plane():
    plane = Plane3D(0.0, 3.0, 4.0, -10.0)
    unit, offset = plane.unit_normal()
    np.testing.assert_allclose(unit, [0.0, 0.6, 0.8])
    assert offset == pytest.approx(-2.0)


def test_point_round_trips_through_array():
    p = Point3D.from_array(np.array([1.5, -2.0, 3.25]))
    assert p == Point3D(1.5, -2.0, 3.25)
    np.testing.assert_array_equal(p.as_array(), [1.5, -2.0, 3.25])
