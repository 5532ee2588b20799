"""Hyper-rectangle bounding regions for tree nodes."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial

import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, ArrayLike

from .metrics import Metric


@partial(jax.jit, static_argnames=("metric",))
def _min_point_distance(lower: Array, upper: Array, point: Array, *, metric) -> Array:
    gap = jnp.maximum(lower - point, 0.0) + jnp.maximum(point - upper, 0.0)
    return metric.reduce(gap)


@partial(jax.jit, static_argnames=("metric",))
def _max_point_distance(lower: Array, upper: Array, point: Array, *, metric) -> Array:
    far = jnp.maximum(jnp.abs(point - lower), jnp.abs(upper - point))
    return metric.reduce(far)


@partial(jax.jit, static_argnames=("metric",))
def _min_bound_distance(
    lower: Array, upper: Array, other_lower: Array, other_upper: Array, *, metric
) -> Array:
    gap = jnp.maximum(other_lower - upper, 0.0) + jnp.maximum(lower - other_upper, 0.0)
    return metric.reduce(gap)


@partial(jax.jit, static_argnames=("metric",))
def _max_bound_distance(
    lower: Array, upper: Array, other_lower: Array, other_upper: Array, *, metric
) -> Array:
    far = jnp.maximum(jnp.abs(other_upper - lower), jnp.abs(upper - other_lower))
    return metric.reduce(far)


def box_min_distance_to_point(
    lower: ArrayLike, upper: ArrayLike, point: ArrayLike, metric: Metric
) -> np.ndarray:
    """Minimum distances from ``point`` to stacked boxes ``[lower, upper]``.

    All arguments broadcast like numpy arrays over their leading axes; the
    last axis is the spatial dimension.
    """

    return _to_host(
        _min_point_distance(
            jnp.asarray(lower), jnp.asarray(upper), jnp.asarray(point), metric=metric
        )
    )


def box_max_distance_to_point(
    lower: ArrayLike, upper: ArrayLike, point: ArrayLike, metric: Metric
) -> np.ndarray:
    return _to_host(
        _max_point_distance(
            jnp.asarray(lower), jnp.asarray(upper), jnp.asarray(point), metric=metric
        )
    )


def box_min_distance_to_box(
    lower: ArrayLike,
    upper: ArrayLike,
    other_lower: ArrayLike,
    other_upper: ArrayLike,
    metric: Metric,
) -> np.ndarray:
    """Minimum box-to-box distances, broadcasting over leading axes."""

    return _to_host(
        _min_bound_distance(
            jnp.asarray(lower),
            jnp.asarray(upper),
            jnp.asarray(other_lower),
            jnp.asarray(other_upper),
            metric=metric,
        )
    )


def box_max_distance_to_box(
    lower: ArrayLike,
    upper: ArrayLike,
    other_lower: ArrayLike,
    other_upper: ArrayLike,
    metric: Metric,
) -> np.ndarray:
    return _to_host(
        _max_bound_distance(
            jnp.asarray(lower),
            jnp.asarray(upper),
            jnp.asarray(other_lower),
            jnp.asarray(other_upper),
            metric=metric,
        )
    )


def _to_host(values: Array) -> np.ndarray:
    return np.asarray(values, dtype=np.float64)


@dataclass(frozen=True)
class HRectBound:
    """Axis-aligned box ``[lower, upper]`` enclosing a node's points.

    Minimum distances never exceed, and maximum distances never fall short
    of, the true distance to any point inside the box, for every metric
    whose ``reduce`` is monotone in each per-axis gap (all ``LMetric``s).
    """

    lower: Array
    upper: Array

    @classmethod
    def from_points(cls, points: ArrayLike) -> "HRectBound":
        points_arr = jnp.asarray(points)
        if points_arr.ndim != 2 or points_arr.shape[0] < 1:
            raise ValueError("points must have shape (n_points, dim) with n_points >= 1")
        return cls(
            lower=jnp.min(points_arr, axis=0),
            upper=jnp.max(points_arr, axis=0),
        )

    @property
    def dimension(self) -> int:
        return int(self.lower.shape[0])

    @property
    def width(self) -> Array:
        """Per-axis extent of the box."""

        return self.upper - self.lower

    def contains(self, point: ArrayLike) -> bool:
        point_arr = jnp.asarray(point)
        return bool(jnp.all((point_arr >= self.lower) & (point_arr <= self.upper)))

    def diameter(self, metric: Metric) -> float:
        return float(metric.reduce(self.width))

    def min_distance_to_point(self, point: ArrayLike, metric: Metric) -> float:
        return float(
            _min_point_distance(self.lower, self.upper, jnp.asarray(point), metric=metric)
        )

    def max_distance_to_point(self, point: ArrayLike, metric: Metric) -> float:
        return float(
            _max_point_distance(self.lower, self.upper, jnp.asarray(point), metric=metric)
        )

    def min_distance_to_bound(self, other: "HRectBound", metric: Metric) -> float:
        return float(
            _min_bound_distance(
                self.lower, self.upper, other.lower, other.upper, metric=metric
            )
        )

    def max_distance_to_bound(self, other: "HRectBound", metric: Metric) -> float:
        return float(
            _max_bound_distance(
                self.lower, self.upper, other.lower, other.upper, metric=metric
            )
        )


__all__ = [
    "HRectBound",
    "box_max_distance_to_box",
    "box_max_distance_to_point",
    "box_min_distance_to_box",
    "box_min_distance_to_point",
]
