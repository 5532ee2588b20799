"""Per-query sorted candidate lists with bounded insertion."""

from __future__ import annotations

from typing import Iterable

import numpy as np

from .dtypes import HOST_DISTANCE_DTYPE, HOST_INDEX_DTYPE, INVALID_INDEX
from .sort_policies import SortPolicy


class NeighborList:
    """The ``k`` best candidates found so far for every query point.

    Row ``q`` of ``indices``/``distances`` is sorted best-to-worst under the
    sort policy and always holds exactly ``k`` entries; slots without a real
    candidate carry ``INVALID_INDEX`` and the policy's worst distance.
    Indices are whatever order the caller inserts (tree order during a
    search); remapping happens at result assembly.
    """

    def __init__(self, num_queries: int, k: int, sort_policy: type[SortPolicy]) -> None:
        if num_queries < 0:
            raise ValueError(f"num_queries must be >= 0, received {num_queries}")
        if k < 1:
            raise ValueError(f"k must be >= 1, received {k}")
        self._policy = sort_policy
        self.indices = np.full((num_queries, k), INVALID_INDEX, dtype=HOST_INDEX_DTYPE)
        self.distances = np.full(
            (num_queries, k), sort_policy.worst_distance(), dtype=HOST_DISTANCE_DTYPE
        )

    @property
    def num_queries(self) -> int:
        return int(self.indices.shape[0])

    @property
    def k(self) -> int:
        return int(self.indices.shape[1])

    @property
    def sort_policy(self) -> type[SortPolicy]:
        return self._policy

    def worst_distance(self, query_index: int) -> float:
        """Distance held in the k-th slot of ``query_index``."""

        return float(self.distances[query_index, -1])

    def worst_of(self, query_indices: Iterable[int]) -> float:
        """Worst k-th slot over ``query_indices`` (best distance if empty)."""

        policy = self._policy
        worst = policy.best_distance()
        for query_index in query_indices:
            candidate = float(self.distances[query_index, -1])
            if policy.is_better(worst, candidate):
                worst = candidate
        return worst

    def insert(self, query_index: int, candidate_index: int, distance: float) -> bool:
        """Offer a candidate; return ``True`` when it entered the list."""

        row = self.distances[query_index]
        if not self._policy.is_better(distance, float(row[-1])):
            return False
        pos = self._policy.sort_position(row, distance)
        index_row = self.indices[query_index]
        # Overlapping slice assignment is buffered by numpy.
        row[pos + 1 :] = row[pos:-1]
        index_row[pos + 1 :] = index_row[pos:-1]
        row[pos] = distance
        index_row[pos] = candidate_index
        return True


__all__ = ["NeighborList"]
