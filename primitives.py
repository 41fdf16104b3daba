"""
primitives.py - Geometry primitives and point cloud container for plane RANSAC
"""

from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple, Union
import numpy as np

# Sine of the sampling-triangle angle below which three points count as collinear.
DEGENERATE_NORMAL_EPS = 1e-12


# =============================================================================
# Errors
# =============================================================================

class RansacError(Exception):
    """Base class for plane extraction errors."""


class InvalidParameterError(RansacError, ValueError):
    """A run parameter is outside its valid range."""


class DegenerateSampleError(RansacError):
    """Three sampled points do not span a plane."""


class EmptyCloudError(RansacError):
    """Sampling was requested from a cloud with no points."""


# =============================================================================
# Point / Plane
# =============================================================================

@dataclass(frozen=True)
class Point3D:
    """A point in 3D space."""
    x: float
    y: float
    z: float

    @classmethod
    def from_array(cls, values: Sequence[float]) -> "Point3D":
        x, y, z = (float(v) for v in values)
        return cls(x, y, z)

    def as_array(self) -> np.ndarray:
        return np.array([self.x, self.y, self.z], dtype=float)

    def __str__(self) -> str:
        return f"{self.x:f} {self.y:f} {self.z:f}"


PointLike = Union[Point3D, Sequence[float], np.ndarray]


def _as_vector(point: PointLike) -> np.ndarray:
    if isinstance(point, Point3D):
        return point.as_array()
    vec = np.asarray(point, dtype=float)
    if vec.shape != (3,):
        vec = vec.reshape(3)
    return vec


@dataclass(frozen=True)
class Plane3D:
    """
    Plane a*x + b*y + c*z + d = 0.

    (a, b, c) is the raw cross product of two edges of the sampling
    triangle, so it is generally not unit length.
    """
    a: float
    b: float
    c: float
    d: float

    @property
    def normal(self) -> np.ndarray:
        return np.array([self.a, self.b, self.c], dtype=float)

    @property
    def normal_norm(self) -> float:
        return float(np.linalg.norm(self.normal))

    def is_degenerate(self) -> bool:
        """True when the normal is zero or non-finite, so distances are undefined."""
        norm = self.normal_norm
        return not np.isfinite(norm) or norm == 0.0

    def unit_normal(self) -> Tuple[np.ndarray, float]:
        """Return (unit normal, offset) describing the same plane."""
        if self.is_degenerate():
            raise DegenerateSampleError(f"Plane has no valid normal: {self}")
        norm = self.normal_norm
        return self.normal / norm, self.d / norm

    def distance(self, point: PointLike) -> float:
        return point_to_plane_distance(self, point)

    def distances(self, points: np.ndarray) -> np.ndarray:
        """
        Unsigned distances from each row of an (N, 3) array to the plane.

        Raises:
            DegenerateSampleError: If the plane normal is (near) zero.
        """
        if self.is_degenerate():
            raise DegenerateSampleError(f"Cannot measure distance to degenerate plane {self}")
        points = np.asarray(points, dtype=float).reshape(-1, 3)
        residual = points @ self.normal + self.d
        return np.abs(residual) / self.normal_norm

    def __str__(self) -> str:
        return f"a={self.a:f}, b={self.b:f}, c={self.c:f}, d={self.d:f}"


def compute_normal(p1: PointLike, p2: PointLike, p3: PointLike) -> np.ndarray:
    """Cross product of (p2 - p1) and (p3 - p1). Not normalized."""
    v1 = _as_vector(p2) - _as_vector(p1)
    v2 = _as_vector(p3) - _as_vector(p1)
    return np.cross(v1, v2)


def plane_from_points(
    p1: PointLike,
    p2: PointLike,
    p3: PointLike,
    eps: float = DEGENERATE_NORMAL_EPS,
) -> Plane3D:
    """
    Build the plane through three points.

    Args:
        p1, p2, p3: Points spanning the plane
        eps: Minimum |normal| / (|p2 - p1| * |p3 - p1|), i.e. the sine of
            the angle at p1, accepted as non-degenerate. Independent of the
            coordinate scale.

    Returns:
        Plane3D with d = -(normal . p1)

    Raises:
        DegenerateSampleError: If the points are collinear or coincident
    """
    v0 = _as_vector(p1)
    edge1 = _as_vector(p2) - v0
    edge2 = _as_vector(p3) - v0
    normal = np.cross(edge1, edge2)
    norm = float(np.linalg.norm(normal))
    edge_product = float(np.linalg.norm(edge1) * np.linalg.norm(edge2))
    if not (np.isfinite(norm) and np.isfinite(edge_product)) or edge_product == 0.0:
        raise DegenerateSampleError("Sample points are coincident")
    if norm == 0.0 or norm < eps * edge_product:
        raise DegenerateSampleError(
            f"Sample points are collinear or coincident (|normal|={norm:.3e})"
        )
    d = -float(normal @ _as_vector(p1))
    return Plane3D(float(normal[0]), float(normal[1]), float(normal[2]), d)


def point_to_plane_distance(plane: Plane3D, point: PointLike) -> float:
    """|a*x + b*y + c*z + d| / |(a, b, c)|"""
    return float(plane.distances(_as_vector(point)[None, :])[0])


# =============================================================================
# Point Cloud
# =============================================================================

def _check_eps(eps: float) -> float:
    eps = float(eps)
    if not np.isfinite(eps) or eps < 0:
        raise InvalidParameterError(f"eps must be a finite non-negative number, got {eps}")
    return eps


class PointCloud:
    """
    Ordered, read-only collection of 3D points.

    Removing points never mutates a cloud; it returns a new one.
    """

    def __init__(self, points: Union[np.ndarray, Sequence[Sequence[float]]] = ()):
        arr = np.array(points, dtype=float)
        if arr.size == 0:
            arr = np.empty((0, 3), dtype=float)
        if arr.ndim != 2 or arr.shape[1] != 3:
            raise ValueError(f"points must be (N, 3), got shape {arr.shape}")
        arr.setflags(write=False)
        self._points = arr

    @classmethod
    def from_points(cls, points: Iterable[PointLike]) -> "PointCloud":
        rows = [_as_vector(p) for p in points]
        if not rows:
            return cls.empty()
        return cls(np.vstack(rows))

    @classmethod
    def empty(cls) -> "PointCloud":
        return cls(np.empty((0, 3), dtype=float))

    @property
    def points(self) -> np.ndarray:
        return self._points

    def __len__(self) -> int:
        return int(self._points.shape[0])

    def __iter__(self) -> Iterator[Point3D]:
        for row in self._points:
            yield Point3D.from_array(row)

    def __getitem__(self, index: int) -> Point3D:
        return Point3D.from_array(self._points[index])

    def __repr__(self) -> str:
        return f"PointCloud({len(self)} points)"

    def to_list(self) -> List[Point3D]:
        return list(self)

    # -- sampling -------------------------------------------------------------

    def random_point(self, rng: np.random.Generator) -> Point3D:
        """Uniform draw with replacement."""
        if len(self) == 0:
            raise EmptyCloudError("Cannot sample from an empty point cloud")
        return Point3D.from_array(self._points[int(rng.integers(len(self)))])

    def random_triple(self, rng: np.random.Generator) -> Tuple[Point3D, Point3D, Point3D]:
        """Three independent draws; the same point may come back more than once."""
        return self.random_point(rng), self.random_point(rng), self.random_point(rng)

    # -- support --------------------------------------------------------------

    def support_mask(
        self,
        plane: Plane3D,
        eps: float,
        start: int = 0,
        stop: Optional[int] = None,
    ) -> np.ndarray:
        """
        Boolean inlier mask (distance <= eps) for points[start:stop].

        Args:
            plane: Non-degenerate plane hypothesis
            eps: Inclusive distance tolerance
            start: First index of the range
            stop: One past the last index (defaults to the cloud size)

        Returns:
            (stop - start,) boolean array
        """
        eps = _check_eps(eps)
        chunk = self._points[start:stop]
        if len(chunk) == 0:
            return np.zeros(0, dtype=bool)
        return plane.distances(chunk) <= eps

    def subset(self, mask: np.ndarray) -> "PointCloud":
        mask = np.asarray(mask, dtype=bool)
        if mask.shape != (len(self),):
            raise ValueError(f"mask must have shape ({len(self)},), got {mask.shape}")
        return PointCloud(self._points[mask])

    def support_set(self, plane: Plane3D, eps: float) -> "PointCloud":
        """Points within eps of the plane (boundary included)."""
        return self.subset(self.support_mask(plane, eps))

    def without_support(self, plane: Plane3D, eps: float) -> "PointCloud":
        """Points strictly farther than eps from the plane."""
        return self.subset(~self.support_mask(plane, eps))

    def split(self, plane: Plane3D, eps: float) -> Tuple["PointCloud", "PointCloud"]:
        """(support_set, without_support) derived from a single mask."""
        mask = self.support_mask(plane, eps)
        return self.subset(mask), self.subset(~mask)
