"""All-k neighbor search over a reference set with pluggable ordering.

For every query point the engine finds the ``k`` reference points that rank
best under a :class:`~arborsearch.sort_policies.SortPolicy` (nearest,
furthest, ...) for a given metric. Three strategies share one candidate
list and one result assembly:

``naive``
    Every query against every reference point. Correctness baseline.
``single``
    One walk of the reference tree per query point, pruning a node when
    the best distance it could offer is not better than the query's current
    k-th candidate.
``dual``
    A joint walk of a query tree and the reference tree. Each query node
    caches in ``tree.stat`` the worst k-th candidate over its points; a
    node pair is pruned when the best node-to-node distance is not better
    than that bound.

The cached dual-tree bound is only ever refreshed from the candidate lists
(leaves) or as the worst of the children's bounds (internal nodes).
Candidate distances only improve, so a cached bound can never be better
than the true worst k-th candidate of its subtree, and pruning never drops
a true neighbor.
"""

from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Literal, NamedTuple, Optional, Union

import numpy as np
from beartype import beartype
from jaxtyping import Array, ArrayLike, jaxtyped

from .config import NeighborSearchConfig, _resolve_search_config
from .dtypes import HOST_DISTANCE_DTYPE, as_host_index
from .metrics import Metric, SquaredEuclideanDistance
from .neighbor_list import NeighborList
from .permutation import identity_permutation, remap_neighbors, unpermute_rows
from .sort_policies import NearestNeighborSort, SortPolicy
from .tree import BinarySpaceTree, _validate_points, build_tree

logger = logging.getLogger(__name__)

SearchMode = Literal["naive", "single", "dual"]

# Stack marker: refresh a query node's bound from its children.
_BOUND_UPDATE = -1


class SearchState(enum.Enum):
    """Lifecycle of a :class:`NeighborSearch` instance."""

    CONSTRUCTED = "constructed"
    TREES_READY = "trees_ready"
    SEARCHING = "searching"
    DONE = "done"
    CLOSED = "closed"


class NeighborSearchResult(NamedTuple):
    """Search output in input order.

    Attributes:
        neighbors: ``(n_queries, k)`` reference indices, best first. Empty
            slots hold ``INVALID_INDEX``.
        distances: ``(n_queries, k)`` distances matching ``neighbors``.
    """

    neighbors: np.ndarray
    distances: np.ndarray


class PruneDecision(NamedTuple):
    """One pruning test made during a tree strategy.

    ``query`` is a query point (tree order) for the single-tree strategy and
    a query node id for the dual-tree strategy. ``bound`` is the value the
    node distance was compared against.
    """

    strategy: str
    query: int
    reference_node: int
    node_distance: float
    bound: float
    pruned: bool


class SearchSummary(NamedTuple):
    """Metadata describing one completed search."""

    mode: str
    k: int
    num_queries: int
    num_references: int
    num_prunes: int


def log_search_summary(
    summary: SearchSummary,
    *,
    level: int = logging.INFO,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Log a search summary using the provided (or module) logger."""

    target_logger = logger or logging.getLogger(__name__)
    target_logger.log(
        level,
        "Neighbor search %s: k=%d, queries=%d, references=%d, prunes=%d",
        summary.mode,
        summary.k,
        summary.num_queries,
        summary.num_references,
        summary.num_prunes,
    )


@dataclass(frozen=True, eq=False)
class OwnedTree:
    """Tree built by the engine; released when the engine closes."""

    tree: BinarySpaceTree
    old_from_new: np.ndarray

    @property
    def owned(self) -> bool:
        return True

    def release(self) -> None:
        logger.debug("Releasing engine-built tree with %d nodes", self.tree.num_nodes)


@dataclass(frozen=True, eq=False)
class BorrowedTree:
    """Caller-supplied tree; never released by the engine."""

    tree: BinarySpaceTree

    @property
    def owned(self) -> bool:
        return False

    @property
    def old_from_new(self) -> np.ndarray:
        return as_host_index(self.tree.old_from_new)

    def release(self) -> None:
        return None


TreeHandle = Union[OwnedTree, BorrowedTree]


class _TreeView(NamedTuple):
    """Host-side topology used by the tree walks."""

    start: np.ndarray
    count: np.ndarray
    left: np.ndarray
    right: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    stat: np.ndarray


def _materialise_tree_view(tree: BinarySpaceTree) -> _TreeView:
    return _TreeView(
        start=as_host_index(tree.node_start),
        count=as_host_index(tree.node_count),
        left=as_host_index(tree.left_child),
        right=as_host_index(tree.right_child),
        lower=np.asarray(tree.bbox_min, dtype=HOST_DISTANCE_DTYPE),
        upper=np.asarray(tree.bbox_max, dtype=HOST_DISTANCE_DTYPE),
        # Shared with the tree so bounds written here are visible via TreeNode.stat.
        stat=tree.stat,
    )


def _next_power_of_two(value: int) -> int:
    value = max(1, int(value))
    return 1 << (value - 1).bit_length()


def _pad_rows(block: np.ndarray, rows: int) -> np.ndarray:
    pad = rows - block.shape[0]
    if pad <= 0:
        return block
    return np.pad(block, ((0, pad), (0, 0)), mode="constant")


def _check_supplied_tree(tree: BinarySpaceTree, points: Array, label: str) -> None:
    if tree.num_points != int(points.shape[0]):
        raise ValueError(
            f"{label} tree holds {tree.num_points} points but the {label} set "
            f"has {int(points.shape[0])}"
        )
    if tree.dimension != int(points.shape[1]):
        raise ValueError(
            f"{label} tree has dim={tree.dimension} but the {label} set "
            f"has dim={int(points.shape[1])}"
        )
    reordered = np.asarray(points)[as_host_index(tree.old_from_new)]
    if not np.array_equal(reordered, np.asarray(tree.points)):
        raise ValueError(
            f"{label} tree was not built from the {label} set; pass the points "
            "given to build_tree, in their original order"
        )


class NeighborSearch:
    """Find the ``k`` best reference points for every query point.

    Args:
        reference_set: Reference points with shape ``(n_references, dim)``.
        query_set: Query points with shape ``(n_queries, dim)``. When omitted
            (or the very same object as ``reference_set``) the search runs in
            self-search mode and a point is never its own neighbor.
        naive: Use the exhaustive strategy. Overrides ``single_mode``.
        single_mode: Use the single-tree strategy instead of dual-tree.
        leaf_size: Leaf size for trees built here; overrides ``config``.
        reference_tree: Tree returned by :func:`~arborsearch.tree.build_tree`
            for ``reference_set`` (the same points, in the order passed to
            ``build_tree``). The engine borrows it, searches in its tree
            order and reports indices into ``reference_set``. A tree built
            from other points raises ``ValueError``.
        query_tree: Tree built from ``query_set`` (dual-tree only), borrowed
            under the same convention.
        metric: Distance metric; squared Euclidean by default.
        sort_policy: Ordering policy class; nearest-neighbor by default.
        config: Tree-building options; the module default when omitted.
        score_logger: Callback receiving a :class:`PruneDecision` for every
            pruning test made by a tree strategy.

    The naive strategy never walks a tree, so any pre-built tree passed
    together with ``naive=True`` is ignored.
    """

    @jaxtyped(typechecker=beartype)
    def __init__(
        self,
        reference_set: ArrayLike,
        query_set: Optional[ArrayLike] = None,
        *,
        naive: bool = False,
        single_mode: bool = False,
        leaf_size: Optional[int] = None,
        reference_tree: Optional[BinarySpaceTree] = None,
        query_tree: Optional[BinarySpaceTree] = None,
        metric: Optional[Metric] = None,
        sort_policy: Optional[type[SortPolicy]] = None,
        config: Optional[NeighborSearchConfig] = None,
        score_logger: Optional[Callable[[PruneDecision], None]] = None,
    ) -> None:
        self._state = SearchState.CONSTRUCTED
        self._self_search = query_set is None or query_set is reference_set
        reference = _validate_points(reference_set)
        query = reference if self._self_search else _validate_points(query_set)
        if query.shape[1] != reference.shape[1]:
            raise ValueError(
                "query and reference points must share last-dimension size; "
                f"received {query.shape[1]} and {reference.shape[1]}"
            )

        cfg = _resolve_search_config(config)
        if leaf_size is not None:
            cfg = replace(cfg, leaf_size=int(leaf_size))
        self._config = cfg
        self._metric = metric if metric is not None else SquaredEuclideanDistance
        self._policy = sort_policy if sort_policy is not None else NearestNeighborSort
        self._score_logger = score_logger
        self._mode: SearchMode = "naive" if naive else ("single" if single_mode else "dual")

        self._reference_handle: Optional[TreeHandle] = None
        self._query_handle: Optional[TreeHandle] = None
        if self._mode == "naive":
            self._init_naive(reference, query, reference_tree, query_tree)
        else:
            self._init_trees(reference, query, reference_tree, query_tree)

        self._reference_host = np.asarray(self._reference_points)
        self._query_host = np.asarray(self._query_points)
        self._candidates: Optional[NeighborList] = None
        self._num_prunes = 0
        self._state = SearchState.TREES_READY

    def _init_naive(
        self,
        reference: Array,
        query: Array,
        reference_tree: Optional[BinarySpaceTree],
        query_tree: Optional[BinarySpaceTree],
    ) -> None:
        for label, tree in (("reference", reference_tree), ("query", query_tree)):
            if tree is not None and tree.num_nodes > 1:
                logger.warning(
                    "naive search ignores the supplied %s tree (%d nodes)",
                    label,
                    tree.num_nodes,
                )
        if reference_tree is not None:
            self._reference_handle = BorrowedTree(reference_tree)
        if query_tree is not None and not self._self_search:
            self._query_handle = BorrowedTree(query_tree)
        self._reference_points = reference
        self._query_points = query
        self._reference_perm = identity_permutation(int(reference.shape[0]))
        self._query_perm = identity_permutation(int(query.shape[0]))
        self._reference_view: Optional[_TreeView] = None
        self._query_view: Optional[_TreeView] = None

    def _init_trees(
        self,
        reference: Array,
        query: Array,
        reference_tree: Optional[BinarySpaceTree],
        query_tree: Optional[BinarySpaceTree],
    ) -> None:
        reference_handle = self._acquire_tree(reference, reference_tree, "reference")
        self._reference_handle = reference_handle
        self._reference_points = reference_handle.tree.points
        self._reference_perm = reference_handle.old_from_new
        self._reference_view = _materialise_tree_view(reference_handle.tree)

        if self._self_search:
            # Same tree, same permutation: tree positions identify points.
            self._query_points = self._reference_points
            self._query_perm = self._reference_perm
            self._query_view = self._reference_view if self._mode == "dual" else None
            return

        if self._mode == "single":
            if query_tree is not None:
                self._query_handle = BorrowedTree(query_tree)
            self._query_points = query
            self._query_perm = identity_permutation(int(query.shape[0]))
            self._query_view = None
            return

        query_handle = self._acquire_tree(query, query_tree, "query")
        self._query_handle = query_handle
        self._query_points = query_handle.tree.points
        self._query_perm = query_handle.old_from_new
        self._query_view = _materialise_tree_view(query_handle.tree)

    def _acquire_tree(
        self,
        points: Array,
        supplied: Optional[BinarySpaceTree],
        label: str,
    ) -> TreeHandle:
        if supplied is not None:
            _check_supplied_tree(supplied, points, label)
            return BorrowedTree(supplied)
        tree, old_from_new = build_tree(
            points,
            leaf_size=self._config.leaf_size,
            split_rule=self._config.split_rule,
            tree_type=self._config.tree_type,
        )
        return OwnedTree(tree=tree, old_from_new=as_host_index(old_from_new))

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------

    @property
    def mode(self) -> SearchMode:
        return self._mode

    @property
    def state(self) -> SearchState:
        return self._state

    @property
    def num_prunes(self) -> int:
        """Node (or node-pair) visits skipped by the last search."""

        return self._num_prunes

    @property
    def metric(self) -> Metric:
        return self._metric

    @property
    def sort_policy(self) -> type[SortPolicy]:
        return self._policy

    @property
    def is_self_search(self) -> bool:
        return self._self_search

    @property
    def reference_tree(self) -> Optional[BinarySpaceTree]:
        handle = self._reference_handle
        return None if handle is None else handle.tree

    @property
    def query_tree(self) -> Optional[BinarySpaceTree]:
        if self._self_search and self._mode == "dual":
            return self.reference_tree
        handle = self._query_handle
        return None if handle is None else handle.tree

    @property
    def owns_reference_tree(self) -> bool:
        handle = self._reference_handle
        return handle is not None and handle.owned

    @property
    def owns_query_tree(self) -> bool:
        handle = self._query_handle
        return handle is not None and handle.owned

    @property
    def candidate_lists(self) -> Optional[NeighborList]:
        """Live candidate lists (tree order) of the running or last search."""

        return self._candidates

    def close(self) -> None:
        """Release owned trees; borrowed trees are left untouched."""

        if self._state is SearchState.CLOSED:
            return
        for handle in (self._reference_handle, self._query_handle):
            if handle is not None:
                handle.release()
        self._reference_handle = None
        self._query_handle = None
        self._reference_view = None
        self._query_view = None
        self._state = SearchState.CLOSED

    def __enter__(self) -> "NeighborSearch":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @jaxtyped(typechecker=beartype)
    def search(self, k: int) -> NeighborSearchResult:
        """Return the ``k`` best reference points for every query point."""

        if self._state is SearchState.CLOSED:
            raise RuntimeError("search() called on a closed NeighborSearch")
        num_references = int(self._reference_host.shape[0])
        if k < 1:
            raise ValueError(f"k must be >= 1, received {k}")
        if k > num_references:
            raise ValueError(
                f"k must be <= number of reference points={num_references}, received {k}"
            )

        self._state = SearchState.SEARCHING
        self._num_prunes = 0
        self._candidates = NeighborList(
            int(self._query_host.shape[0]), int(k), self._policy
        )
        try:
            if self._mode == "naive":
                self._run_naive()
            elif self._mode == "single":
                self._run_single_tree()
            else:
                self._run_dual_tree()
            result = self._assemble_result()
        except BaseException:
            # Trees and config are intact; only this search's lists are partial.
            self._state = SearchState.TREES_READY
            raise
        self._state = SearchState.DONE
        log_search_summary(
            SearchSummary(
                mode=self._mode,
                k=int(k),
                num_queries=int(self._query_host.shape[0]),
                num_references=num_references,
                num_prunes=self._num_prunes,
            )
        )
        return result

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _block_distances(self, lhs: np.ndarray, rhs: np.ndarray) -> np.ndarray:
        """Distances between two row blocks, padded to power-of-two shapes.

        Padding bounds the number of distinct shapes the jitted metric
        kernels see; padded rows are sliced away before returning.
        """

        num_lhs = lhs.shape[0]
        num_rhs = rhs.shape[0]
        block = self._metric.pairwise(
            _pad_rows(lhs, _next_power_of_two(num_lhs)),
            _pad_rows(rhs, _next_power_of_two(num_rhs)),
        )
        return np.asarray(block, dtype=HOST_DISTANCE_DTYPE)[:num_lhs, :num_rhs]

    def _base_case(self, query_range: range, reference_range: range) -> None:
        distances = self._block_distances(
            self._query_host[query_range.start : query_range.stop],
            self._reference_host[reference_range.start : reference_range.stop],
        )
        candidates = self._candidates
        skip_self = self._self_search
        for query_index, row in zip(query_range, distances.tolist()):
            for reference_index, distance in zip(reference_range, row):
                if skip_self and query_index == reference_index:
                    continue
                candidates.insert(query_index, reference_index, distance)

    def _run_naive(self) -> None:
        num_queries = int(self._query_host.shape[0])
        references = range(int(self._reference_host.shape[0]))
        block = self._config.naive_query_block
        for start in range(0, num_queries, block):
            self._base_case(range(start, min(start + block, num_queries)), references)

    def _record(self, decision: PruneDecision) -> None:
        if decision.pruned:
            self._num_prunes += 1
        if self._score_logger is not None:
            self._score_logger(decision)

    def _run_single_tree(self) -> None:
        view = self._reference_view
        policy = self._policy
        metric = self._metric
        candidates = self._candidates
        for query_index in range(int(self._query_host.shape[0])):
            point = self._query_host[query_index]
            root_distance = float(
                policy.best_point_to_boxes_distance(point, view.lower[0], view.upper[0], metric)
            )
            # (reference node, best distance it could offer), depth first.
            stack: list[tuple[int, float]] = [(0, root_distance)]
            while stack:
                node, node_distance = stack.pop()
                best_so_far = candidates.worst_distance(query_index)
                pruned = not policy.is_better(node_distance, best_so_far)
                self._record(
                    PruneDecision(
                        "single", query_index, node, node_distance, best_so_far, pruned
                    )
                )
                if pruned:
                    continue

                left = int(view.left[node])
                if left < 0:
                    start = int(view.start[node])
                    self._base_case(
                        range(query_index, query_index + 1),
                        range(start, start + int(view.count[node])),
                    )
                    continue

                right = int(view.right[node])
                children = [left, right]
                left_distance, right_distance = policy.best_point_to_boxes_distance(
                    point, view.lower[children], view.upper[children], metric
                ).tolist()
                # Pushed in reverse so the more promising child pops first.
                if policy.is_better(right_distance, left_distance):
                    stack.append((left, left_distance))
                    stack.append((right, right_distance))
                else:
                    stack.append((right, right_distance))
                    stack.append((left, left_distance))

    def _run_dual_tree(self) -> None:
        policy = self._policy
        metric = self._metric
        query_view = self._query_view
        reference_view = self._reference_view
        query_view.stat.fill(policy.worst_distance())
        root_distance = float(
            policy.best_box_to_boxes_distance(
                query_view.lower[0],
                query_view.upper[0],
                reference_view.lower[0],
                reference_view.upper[0],
                metric,
            )
        )

        # (query node, reference node, node distance). A reference node of
        # _BOUND_UPDATE refreshes the query node's bound from its children;
        # it sits below their pairs so it pops once they have all run.
        stack: list[tuple[int, int, float]] = [(0, 0, root_distance)]
        while stack:
            query_node, reference_node, node_distance = stack.pop()
            if reference_node == _BOUND_UPDATE:
                query_view.stat[query_node] = policy.worst_case(
                    float(query_view.stat[query_view.left[query_node]]),
                    float(query_view.stat[query_view.right[query_node]]),
                )
                continue

            bound = float(query_view.stat[query_node])
            pruned = not policy.is_better(node_distance, bound)
            self._record(
                PruneDecision(
                    "dual", query_node, reference_node, node_distance, bound, pruned
                )
            )
            if pruned:
                continue

            query_left = int(query_view.left[query_node])
            reference_left = int(reference_view.left[reference_node])
            if query_left < 0 and reference_left < 0:
                query_start = int(query_view.start[query_node])
                query_range = range(
                    query_start, query_start + int(query_view.count[query_node])
                )
                reference_start = int(reference_view.start[reference_node])
                self._base_case(
                    query_range,
                    range(
                        reference_start,
                        reference_start + int(reference_view.count[reference_node]),
                    ),
                )
                query_view.stat[query_node] = self._candidates.worst_of(query_range)
                continue

            if query_left < 0:
                pairs = self._reference_children_pairs(query_node, reference_node)
                stack.extend(reversed(pairs))
                continue

            query_children = [query_left, int(query_view.right[query_node])]
            stack.append((query_node, _BOUND_UPDATE, math.nan))
            if reference_left < 0:
                distances = policy.best_box_to_boxes_distance(
                    query_view.lower[query_children],
                    query_view.upper[query_children],
                    reference_view.lower[reference_node],
                    reference_view.upper[reference_node],
                    metric,
                ).tolist()
                pairs = [
                    (query_child, reference_node, distance)
                    for query_child, distance in zip(query_children, distances)
                ]
            else:
                pairs = []
                for query_child in query_children:
                    pairs.extend(self._reference_children_pairs(query_child, reference_node))
            stack.extend(reversed(pairs))

    def _reference_children_pairs(
        self, query_node: int, reference_node: int
    ) -> list[tuple[int, int, float]]:
        """Pair ``query_node`` with both reference children, most promising first."""

        reference_view = self._reference_view
        left = int(reference_view.left[reference_node])
        right = int(reference_view.right[reference_node])
        children = [left, right]
        left_distance, right_distance = self._policy.best_box_to_boxes_distance(
            self._query_view.lower[query_node],
            self._query_view.upper[query_node],
            reference_view.lower[children],
            reference_view.upper[children],
            self._metric,
        ).tolist()
        if self._policy.is_better(right_distance, left_distance):
            return [(query_node, right, right_distance), (query_node, left, left_distance)]
        return [(query_node, left, left_distance), (query_node, right, right_distance)]

    # ------------------------------------------------------------------
    # Result assembly
    # ------------------------------------------------------------------

    def _assemble_result(self) -> NeighborSearchResult:
        candidates = self._candidates
        neighbors = remap_neighbors(candidates.indices, self._reference_perm)
        return NeighborSearchResult(
            neighbors=unpermute_rows(neighbors, self._query_perm),
            distances=unpermute_rows(candidates.distances.copy(), self._query_perm),
        )


__all__ = [
    "BorrowedTree",
    "NeighborSearch",
    "NeighborSearchResult",
    "OwnedTree",
    "PruneDecision",
    "SearchMode",
    "SearchState",
    "SearchSummary",
    "TreeHandle",
    "log_search_summary",
]
