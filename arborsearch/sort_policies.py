"""Ordering policies: what "better" means for a candidate distance.

The engine never compares distances directly. Every ordering decision, the
sentinel used for empty slots and node bounds, and the conservative
point/node bounds used for pruning go through one of these policies, so
nearest-k and furthest-k searches share a single traversal.
"""

from __future__ import annotations

import math
from abc import ABC, abstractmethod

import numpy as np
from jaxtyping import ArrayLike

from .bounds import (
    HRectBound,
    box_max_distance_to_box,
    box_max_distance_to_point,
    box_min_distance_to_box,
    box_min_distance_to_point,
)
from .metrics import Metric


class SortPolicy(ABC):
    """Total order over distances plus pruning-bound primitives."""

    name: str = "abstract"

    @staticmethod
    @abstractmethod
    def worst_distance() -> float:
        """Value no real distance can be worse than."""

    @staticmethod
    @abstractmethod
    def best_distance() -> float:
        """Value no real distance can be better than."""

    @staticmethod
    @abstractmethod
    def is_better(value: float, reference: float) -> bool:
        """Return ``True`` when ``value`` ranks strictly ahead of ``reference``."""

    @staticmethod
    @abstractmethod
    def best_point_to_node_distance(
        point: ArrayLike, node_bound: HRectBound, metric: Metric
    ) -> float:
        """Best distance any point inside ``node_bound`` could achieve to ``point``."""

    @staticmethod
    @abstractmethod
    def best_node_to_node_distance(
        query_bound: HRectBound, reference_bound: HRectBound, metric: Metric
    ) -> float:
        """Best distance achievable between any two points of the two regions."""

    @staticmethod
    @abstractmethod
    def best_point_to_boxes_distance(
        point: ArrayLike, lower: ArrayLike, upper: ArrayLike, metric: Metric
    ) -> np.ndarray:
        """Vectorised :meth:`best_point_to_node_distance` over stacked boxes."""

    @staticmethod
    @abstractmethod
    def best_box_to_boxes_distance(
        query_lower: ArrayLike,
        query_upper: ArrayLike,
        reference_lower: ArrayLike,
        reference_upper: ArrayLike,
        metric: Metric,
    ) -> np.ndarray:
        """Vectorised :meth:`best_node_to_node_distance`; box arrays broadcast."""

    @classmethod
    def best_case(cls, lhs: float, rhs: float) -> float:
        return lhs if cls.is_better(lhs, rhs) else rhs

    @classmethod
    def worst_case(cls, lhs: float, rhs: float) -> float:
        return rhs if cls.is_better(lhs, rhs) else lhs

    @classmethod
    def sort_position(cls, row: np.ndarray, distance: float) -> int:
        """Insertion slot for ``distance`` in a best-to-worst sorted ``row``.

        Entries equal to ``distance`` stay ahead of it, so the returned slot
        equals ``len(row)`` when ``distance`` is not better than the last entry.
        """

        lo = 0
        hi = int(row.shape[0])
        while lo < hi:
            mid = (lo + hi) // 2
            if cls.is_better(distance, float(row[mid])):
                hi = mid
            else:
                lo = mid + 1
        return lo


class NearestNeighborSort(SortPolicy):
    """Smaller distances are better."""

    name = "nearest"

    @staticmethod
    def worst_distance() -> float:
        return math.inf

    @staticmethod
    def best_distance() -> float:
        return 0.0

    @staticmethod
    def is_better(value: float, reference: float) -> bool:
        return value < reference

    @staticmethod
    def best_point_to_node_distance(
        point: ArrayLike, node_bound: HRectBound, metric: Metric
    ) -> float:
        return node_bound.min_distance_to_point(point, metric)

    @staticmethod
    def best_node_to_node_distance(
        query_bound: HRectBound, reference_bound: HRectBound, metric: Metric
    ) -> float:
        return query_bound.min_distance_to_bound(reference_bound, metric)

    @staticmethod
    def best_point_to_boxes_distance(
        point: ArrayLike, lower: ArrayLike, upper: ArrayLike, metric: Metric
    ) -> np.ndarray:
        return box_min_distance_to_point(lower, upper, point, metric)

    @staticmethod
    def best_box_to_boxes_distance(
        query_lower: ArrayLike,
        query_upper: ArrayLike,
        reference_lower: ArrayLike,
        reference_upper: ArrayLike,
        metric: Metric,
    ) -> np.ndarray:
        return box_min_distance_to_box(
            query_lower, query_upper, reference_lower, reference_upper, metric
        )


class FurthestNeighborSort(SortPolicy):
    """Larger distances are better."""

    name = "furthest"

    @staticmethod
    def worst_distance() -> float:
        # Below zero so coincident points still enter an empty list.
        return -math.inf

    @staticmethod
    def best_distance() -> float:
        return math.inf

    @staticmethod
    def is_better(value: float, reference: float) -> bool:
        return value > reference

    @staticmethod
    def best_point_to_node_distance(
        point: ArrayLike, node_bound: HRectBound, metric: Metric
    ) -> float:
        return node_bound.max_distance_to_point(point, metric)

    @staticmethod
    def best_node_to_node_distance(
        query_bound: HRectBound, reference_bound: HRectBound, metric: Metric
    ) -> float:
        return query_bound.max_distance_to_bound(reference_bound, metric)

    @staticmethod
    def best_point_to_boxes_distance(
        point: ArrayLike, lower: ArrayLike, upper: ArrayLike, metric: Metric
    ) -> np.ndarray:
        return box_max_distance_to_point(lower, upper, point, metric)

    @staticmethod
    def best_box_to_boxes_distance(
        query_lower: ArrayLike,
        query_upper: ArrayLike,
        reference_lower: ArrayLike,
        reference_upper: ArrayLike,
        metric: Metric,
    ) -> np.ndarray:
        return box_max_distance_to_box(
            query_lower, query_upper, reference_lower, reference_upper, metric
        )


_SORT_POLICIES: dict[str, type[SortPolicy]] = {
    NearestNeighborSort.name: NearestNeighborSort,
    FurthestNeighborSort.name: FurthestNeighborSort,
}


def available_sort_policies() -> tuple[str, ...]:
    """Return registered sort-policy identifiers."""

    return tuple(sorted(_SORT_POLICIES.keys()))


def get_sort_policy(name: str) -> type[SortPolicy]:
    """Return the sort policy registered under ``name``."""

    policy = _SORT_POLICIES.get(name.strip().lower())
    if policy is None:
        supported = ", ".join(f"'{entry}'" for entry in available_sort_policies())
        raise ValueError(f"Unsupported sort policy '{name}'. Supported: ({supported})")
    return policy


__all__ = [
    "FurthestNeighborSort",
    "NearestNeighborSort",
    "SortPolicy",
    "available_sort_policies",
    "get_sort_policy",
]
