"""Range and bound primitives for binary space-partitioning trees.

Bounds are host-side (numpy) objects: the dual-tree recursion compares one
node pair at a time, so the math below works on small per-dimension vectors
and never leaves the host. All distances are squared; the ``t_pow``
parameter of :class:`HRectBound` selects the L_p metric whose squared value
is reported.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Union

import numpy as np


@dataclass(frozen=True)
class DRange:
    """Closed real interval ``[lo, hi]``."""

    lo: float
    hi: float

    @classmethod
    def empty(cls) -> "DRange":
        return cls(math.inf, -math.inf)

    @classmethod
    def universal(cls) -> "DRange":
        return cls(-math.inf, math.inf)

    @property
    def width(self) -> float:
        return self.hi - self.lo

    @property
    def mid(self) -> float:
        return 0.5 * (self.hi + self.lo)

    def is_empty(self) -> bool:
        return self.lo > self.hi

    def contains(self, value: float) -> bool:
        return self.lo <= value <= self.hi

    def __or__(self, other: Union["DRange", float]) -> "DRange":
        if isinstance(other, DRange):
            return DRange(min(self.lo, other.lo), max(self.hi, other.hi))
        value = float(other)
        return DRange(min(self.lo, value), max(self.hi, value))

    def __and__(self, other: "DRange") -> "DRange":
        return DRange(max(self.lo, other.lo), min(self.hi, other.hi))

    def __add__(self, other: Union["DRange", float]) -> "DRange":
        if isinstance(other, DRange):
            return DRange(self.lo + other.lo, self.hi + other.hi)
        return DRange(self.lo + float(other), self.hi + float(other))

    def __sub__(self, other: Union["DRange", float]) -> "DRange":
        if isinstance(other, DRange):
            return DRange(self.lo - other.lo, self.hi - other.hi)
        return DRange(self.lo - float(other), self.hi - float(other))

    def __mul__(self, scale: float) -> "DRange":
        scale = float(scale)
        if scale < 0.0:
            raise ValueError("DRange can only be scaled by a non-negative factor")
        return DRange(self.lo * scale, self.hi * scale)

    __rmul__ = __mul__


def _lp_sum_to_sq(total: np.ndarray, t_pow: int) -> np.ndarray:
    if t_pow == 2:
        return total
    return total ** (2.0 / t_pow)


def _lp_sum(values: np.ndarray, t_pow: int) -> np.ndarray:
    if t_pow == 2:
        return np.sum(values * values, axis=-1)
    return np.sum(np.abs(values) ** t_pow, axis=-1)


def hrect_min_distance_sq(
    lo_a: np.ndarray,
    hi_a: np.ndarray,
    lo_b: np.ndarray,
    hi_b: np.ndarray,
    t_pow: int = 2,
) -> np.ndarray:
    """Minimum squared distance between two (batches of) rectangles."""

    # x + |x| = max(2x, 0); the factor two is squared away by the final / 4.
    v1 = lo_b - hi_a
    v2 = lo_a - hi_b
    v = (v1 + np.abs(v1)) + (v2 + np.abs(v2))
    return _lp_sum_to_sq(_lp_sum(v, t_pow), t_pow) / 4.0


def hrect_max_distance_sq(
    lo_a: np.ndarray,
    hi_a: np.ndarray,
    lo_b: np.ndarray,
    hi_b: np.ndarray,
    t_pow: int = 2,
) -> np.ndarray:
    """Maximum squared distance between two (batches of) rectangles."""

    v = np.maximum(hi_b - lo_a, hi_a - lo_b)
    return _lp_sum_to_sq(_lp_sum(v, t_pow), t_pow)


def hrect_range_distance_sq(
    lo_a: np.ndarray,
    hi_a: np.ndarray,
    lo_b: np.ndarray,
    hi_b: np.ndarray,
    t_pow: int = 2,
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(min, max)`` squared distances between rectangles."""

    v1 = lo_b - hi_a
    v2 = lo_a - hi_b
    v_lo = np.maximum(np.maximum(v1, v2), 0.0)
    v_hi = np.maximum(-v1, -v2)
    return (
        _lp_sum_to_sq(_lp_sum(v_lo, t_pow), t_pow),
        _lp_sum_to_sq(_lp_sum(v_hi, t_pow), t_pow),
    )


def hrect_mid_distance_sq(
    lo_a: np.ndarray,
    hi_a: np.ndarray,
    lo_b: np.ndarray,
    hi_b: np.ndarray,
    t_pow: int = 2,
) -> np.ndarray:
    """Squared distance between rectangle midpoints."""

    v = 0.5 * ((hi_a + lo_a) - (hi_b + lo_b))
    return _lp_sum_to_sq(_lp_sum(v, t_pow), t_pow)


def ball_range_distance_sq(
    center_a: np.ndarray,
    radius_a: np.ndarray,
    center_b: np.ndarray,
    radius_b: np.ndarray,
) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(min, max)`` squared distances between balls."""

    delta = center_a - center_b
    dist = np.sqrt(np.sum(delta * delta, axis=-1))
    reach = radius_a + radius_b
    lo = np.maximum(dist - reach, 0.0)
    hi = dist + reach
    return lo * lo, hi * hi


def _as_point(point, dim: int) -> np.ndarray:
    arr = np.asarray(point, dtype=np.float64)
    if arr.shape != (dim,):
        raise ValueError(f"point must have shape ({dim},); received {arr.shape}")
    return arr


class HRectBound:
    """Axis-aligned hyper-rectangle bound."""

    def __init__(self, lo, hi, t_pow: int = 2):
        lo_arr = np.array(lo, dtype=np.float64, copy=True)
        hi_arr = np.array(hi, dtype=np.float64, copy=True)
        if lo_arr.ndim != 1 or lo_arr.shape != hi_arr.shape:
            raise ValueError(
                "lo and hi must be 1-D arrays of equal length; "
                f"received {lo_arr.shape} and {hi_arr.shape}"
            )
        if int(t_pow) < 1:
            raise ValueError(f"t_pow must be >= 1, received {t_pow}")
        self.lo = lo_arr
        self.hi = hi_arr
        self.t_pow = int(t_pow)

    @classmethod
    def empty(cls, dim: int, t_pow: int = 2) -> "HRectBound":
        return cls(np.full((dim,), np.inf), np.full((dim,), -np.inf), t_pow=t_pow)

    @classmethod
    def from_points(cls, points, t_pow: int = 2) -> "HRectBound":
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[0] < 1:
            raise ValueError("points must have shape (n_points, dim) with n_points >= 1")
        return cls(np.min(pts, axis=0), np.max(pts, axis=0), t_pow=t_pow)

    @classmethod
    def average(cls, box1: "HRectBound", box2: "HRectBound") -> "HRectBound":
        """Box whose ranges are the range-wise mean of two boxes."""

        if box1.dim != box2.dim:
            raise ValueError("boxes must share dimensionality")
        return cls(
            0.5 * (box1.lo + box2.lo),
            0.5 * (box1.hi + box2.hi),
            t_pow=box1.t_pow,
        )

    @property
    def dim(self) -> int:
        return int(self.lo.shape[0])

    def __getitem__(self, i: int) -> DRange:
        return DRange(float(self.lo[i]), float(self.hi[i]))

    def __repr__(self) -> str:
        return f"HRectBound(lo={self.lo!r}, hi={self.hi!r}, t_pow={self.t_pow})"

    def copy(self) -> "HRectBound":
        return HRectBound(self.lo, self.hi, t_pow=self.t_pow)

    def reset(self) -> None:
        self.lo.fill(np.inf)
        self.hi.fill(-np.inf)

    def _other_extent(self, other) -> tuple[np.ndarray, np.ndarray]:
        if isinstance(other, HRectBound):
            if other.dim != self.dim:
                raise ValueError("bounds must share dimensionality")
            return other.lo, other.hi
        point = _as_point(other, self.dim)
        return point, point

    def contains(self, point) -> bool:
        p = _as_point(point, self.dim)
        return bool(np.all(self.lo <= p) and np.all(p <= self.hi))

    def widths(self) -> np.ndarray:
        return self.hi - self.lo

    def midpoint(self) -> np.ndarray:
        return 0.5 * (self.hi + self.lo)

    def diameter_sq(self) -> float:
        """Maximum squared distance between two points of the rectangle."""

        return float(_lp_sum_to_sq(_lp_sum(self.widths(), self.t_pow), self.t_pow))

    def min_distance_sq(self, other) -> float:
        lo, hi = self._other_extent(other)
        return float(hrect_min_distance_sq(self.lo, self.hi, lo, hi, self.t_pow))

    def max_distance_sq(self, other) -> float:
        lo, hi = self._other_extent(other)
        return float(hrect_max_distance_sq(self.lo, self.hi, lo, hi, self.t_pow))

    def range_distance_sq(self, other) -> DRange:
        lo, hi = self._other_extent(other)
        d_lo, d_hi = hrect_range_distance_sq(self.lo, self.hi, lo, hi, self.t_pow)
        return DRange(float(d_lo), float(d_hi))

    def mid_distance_sq(self, other) -> float:
        lo, hi = self._other_extent(other)
        return float(hrect_mid_distance_sq(self.lo, self.hi, lo, hi, self.t_pow))

    def minimax_distance_sq(self, other: "HRectBound") -> float:
        """Minimum distance to the far end of ``other`` (other avoids us)."""

        lo, hi = self._other_extent(other)
        v = np.maximum(hi - self.hi, self.lo - lo)
        v = v + np.abs(v)
        return float(_lp_sum_to_sq(_lp_sum(v, self.t_pow), self.t_pow) / 4.0)

    def __ior__(self, other) -> "HRectBound":
        lo, hi = self._other_extent(other)
        np.minimum(self.lo, lo, out=self.lo)
        np.maximum(self.hi, hi, out=self.hi)
        return self

    def add(self, other) -> "HRectBound":
        self |= other
        return self


class BallBound:
    """Euclidean ball bound; an empty ball has radius ``-inf``."""

    def __init__(self, center, radius: float):
        center_arr = np.array(center, dtype=np.float64, copy=True)
        if center_arr.ndim != 1:
            raise ValueError(f"center must be 1-D; received shape {center_arr.shape}")
        self.center = center_arr
        self.radius = float(radius)

    @classmethod
    def empty(cls, dim: int) -> "BallBound":
        return cls(np.zeros((dim,)), -math.inf)

    @classmethod
    def from_points(cls, points) -> "BallBound":
        pts = np.asarray(points, dtype=np.float64)
        if pts.ndim != 2 or pts.shape[0] < 1:
            raise ValueError("points must have shape (n_points, dim) with n_points >= 1")
        center = np.mean(pts, axis=0)
        delta = pts - center[None, :]
        radius = math.sqrt(float(np.max(np.sum(delta * delta, axis=1))))
        return cls(center, radius)

    @property
    def dim(self) -> int:
        return int(self.center.shape[0])

    def __repr__(self) -> str:
        return f"BallBound(center={self.center!r}, radius={self.radius!r})"

    def is_empty(self) -> bool:
        return self.radius < 0.0

    def copy(self) -> "BallBound":
        return BallBound(self.center, self.radius)

    def reset(self) -> None:
        self.center.fill(0.0)
        self.radius = -math.inf

    def _other_ball(self, other) -> tuple[np.ndarray, float]:
        if isinstance(other, BallBound):
            if other.dim != self.dim:
                raise ValueError("bounds must share dimensionality")
            return other.center, other.radius
        return _as_point(other, self.dim), 0.0

    def _center_distance(self, center: np.ndarray) -> float:
        delta = self.center - center
        return math.sqrt(float(np.dot(delta, delta)))

    def contains(self, point) -> bool:
        p = _as_point(point, self.dim)
        return self._center_distance(p) <= self.radius

    def min_distance_sq(self, other) -> float:
        return self.range_distance_sq(other).lo

    def max_distance_sq(self, other) -> float:
        return self.range_distance_sq(other).hi

    def range_distance_sq(self, other) -> DRange:
        center, radius = self._other_ball(other)
        d_lo, d_hi = ball_range_distance_sq(self.center, self.radius, center, radius)
        return DRange(float(d_lo), float(d_hi))

    def mid_distance_sq(self, other) -> float:
        center, _ = self._other_ball(other)
        delta = self.center - center
        return float(np.dot(delta, delta))

    def __ior__(self, other) -> "BallBound":
        center, radius = self._other_ball(other)
        if radius < 0.0:
            return self
        if self.is_empty():
            self.center = np.array(center, dtype=np.float64, copy=True)
            self.radius = radius
            return self
        self.radius = max(self.radius, self._center_distance(center) + radius)
        return self

    def add(self, other) -> "BallBound":
        self |= other
        return self


Bound = Union[HRectBound, BallBound]


def bound_from_points(points, bound_type: str = "hrect") -> Bound:
    """Build the tight bound of ``bound_type`` over a point block."""

    if bound_type == "hrect":
        return HRectBound.from_points(points)
    if bound_type == "ball":
        return BallBound.from_points(points)
    raise ValueError(f"Unknown bound_type: {bound_type}")


__all__ = [
    "BallBound",
    "Bound",
    "DRange",
    "HRectBound",
    "ball_range_distance_sq",
    "bound_from_points",
    "hrect_max_distance_sq",
    "hrect_mid_distance_sq",
    "hrect_min_distance_sq",
    "hrect_range_distance_sq",
]
