"""Distance metrics consumed by the neighbor-search engine.

A metric only has to answer three questions: the distance between two
points, the block of distances between two point sets, and how to fold a
vector of per-axis coordinate gaps into a distance. The last one is what
lets :class:`arborsearch.bounds.HRectBound` turn box-to-point and box-to-box
gaps into conservative pruning bounds for the same metric.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from functools import partial
from typing import Protocol, runtime_checkable

import jax
import jax.numpy as jnp
from jaxtyping import Array, ArrayLike


@runtime_checkable
class Metric(Protocol):
    """Symmetric, non-negative distance function over points."""

    def distance(self, lhs: ArrayLike, rhs: ArrayLike) -> float:
        ...

    def pairwise(self, lhs: ArrayLike, rhs: ArrayLike) -> Array:
        ...

    def reduce(self, deltas: Array) -> Array:
        ...


@dataclass(frozen=True)
class LMetric:
    """Minkowski (L-p) distance, optionally without the final root.

    ``power=inf`` gives the Chebyshev distance. Skipping the root keeps the
    ordering of distances intact while avoiding a ``pow`` per evaluation,
    which is why the squared Euclidean distance is the default metric.
    """

    power: float = 2.0
    take_root: bool = False

    def __post_init__(self) -> None:
        if not (self.power >= 1.0):
            raise ValueError(f"power must be >= 1, received {self.power}")

    @property
    def name(self) -> str:
        if math.isinf(self.power):
            return "chebyshev"
        suffix = "" if self.take_root or self.power == 1.0 else "_unrooted"
        return f"l{self.power:g}{suffix}"

    def reduce(self, deltas: Array) -> Array:
        """Fold per-axis gaps (last axis) into a distance."""

        magnitudes = jnp.abs(deltas)
        if math.isinf(self.power):
            return jnp.max(magnitudes, axis=-1)
        if self.power == 1.0:
            return jnp.sum(magnitudes, axis=-1)
        if self.power == 2.0:
            total = jnp.sum(magnitudes * magnitudes, axis=-1)
            return jnp.sqrt(total) if self.take_root else total
        total = jnp.sum(magnitudes**self.power, axis=-1)
        return total ** (1.0 / self.power) if self.take_root else total

    def distance(self, lhs: ArrayLike, rhs: ArrayLike) -> float:
        return float(_distance_kernel(jnp.asarray(lhs), jnp.asarray(rhs), metric=self))

    def pairwise(self, lhs: ArrayLike, rhs: ArrayLike) -> Array:
        """Return distances with shape ``(n_lhs, n_rhs)``."""

        return _pairwise_kernel(jnp.asarray(lhs), jnp.asarray(rhs), metric=self)


@partial(jax.jit, static_argnames=("metric",))
def _distance_kernel(lhs: Array, rhs: Array, *, metric: LMetric) -> Array:
    return metric.reduce(lhs - rhs)


@partial(jax.jit, static_argnames=("metric",))
def _pairwise_kernel(lhs: Array, rhs: Array, *, metric: LMetric) -> Array:
    deltas = lhs[:, None, :] - rhs[None, :, :]
    return metric.reduce(deltas)


ManhattanDistance = LMetric(power=1.0, take_root=False)
EuclideanDistance = LMetric(power=2.0, take_root=True)
SquaredEuclideanDistance = LMetric(power=2.0, take_root=False)
ChebyshevDistance = LMetric(power=math.inf, take_root=True)


_METRICS: dict[str, Metric] = {
    "manhattan": ManhattanDistance,
    "euclidean": EuclideanDistance,
    "squared_euclidean": SquaredEuclideanDistance,
    "chebyshev": ChebyshevDistance,
}


def available_metrics() -> tuple[str, ...]:
    """Return registered metric identifiers."""

    return tuple(sorted(_METRICS.keys()))


def get_metric(name: str) -> Metric:
    """Return the metric registered under ``name``."""

    key = name.strip().lower()
    metric = _METRICS.get(key)
    if metric is None:
        supported = ", ".join(f"'{entry}'" for entry in available_metrics())
        raise ValueError(f"Unsupported metric '{name}'. Supported: ({supported})")
    return metric


def register_metric(name: str, metric: Metric, *, overwrite: bool = False) -> None:
    """Register a metric for lookup by name."""

    normalized = name.strip().lower()
    if not normalized:
        raise ValueError("metric name must be a non-empty string")
    if not isinstance(metric, Metric):
        raise ValueError(
            "metric must provide distance(), pairwise() and reduce()"
        )
    if (normalized in _METRICS) and (not overwrite):
        raise ValueError(
            f"metric '{normalized}' is already registered; "
            "pass overwrite=True to replace it"
        )
    _METRICS[normalized] = metric


__all__ = [
    "ChebyshevDistance",
    "EuclideanDistance",
    "LMetric",
    "ManhattanDistance",
    "Metric",
    "SquaredEuclideanDistance",
    "available_metrics",
    "get_metric",
    "register_metric",
]
