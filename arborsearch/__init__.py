"""Arborsearch: tree-accelerated all-k nearest and furthest neighbor search."""

from jax import config as _jax_config

# Naive and tree strategies must compare identical float64 distances.
_jax_config.update("jax_enable_x64", True)

from .allkn import (
    AllkFN,
    AllkNN,
    all_k_furthest_neighbors,
    all_k_nearest_neighbors,
)
from .bounds import HRectBound
from .config import (
    NeighborSearchConfig,
    get_default_search_config,
    set_default_search_config,
)
from .dtypes import INDEX_DTYPE, INVALID_INDEX, as_index
from .metrics import (
    ChebyshevDistance,
    EuclideanDistance,
    LMetric,
    ManhattanDistance,
    Metric,
    SquaredEuclideanDistance,
    available_metrics,
    get_metric,
    register_metric,
)
from .neighbor_list import NeighborList
from .permutation import (
    identity_permutation,
    invert_permutation,
    remap_neighbors,
    unpermute_rows,
)
from .search import (
    BorrowedTree,
    NeighborSearch,
    NeighborSearchResult,
    OwnedTree,
    PruneDecision,
    SearchState,
    SearchSummary,
    log_search_summary,
)
from .sort_policies import (
    FurthestNeighborSort,
    NearestNeighborSort,
    SortPolicy,
    available_sort_policies,
    get_sort_policy,
)
from .tree import (
    DEFAULT_LEAF_SIZE,
    BinarySpaceTree,
    TreeNode,
    available_tree_types,
    build_tree,
    register_tree_builder,
)

__all__ = [
    "AllkFN",
    "AllkNN",
    "BinarySpaceTree",
    "BorrowedTree",
    "ChebyshevDistance",
    "DEFAULT_LEAF_SIZE",
    "EuclideanDistance",
    "FurthestNeighborSort",
    "HRectBound",
    "INDEX_DTYPE",
    "INVALID_INDEX",
    "LMetric",
    "ManhattanDistance",
    "Metric",
    "NearestNeighborSort",
    "NeighborList",
    "NeighborSearch",
    "NeighborSearchConfig",
    "NeighborSearchResult",
    "OwnedTree",
    "PruneDecision",
    "SearchState",
    "SearchSummary",
    "SortPolicy",
    "SquaredEuclideanDistance",
    "TreeNode",
    "all_k_furthest_neighbors",
    "all_k_nearest_neighbors",
    "as_index",
    "available_metrics",
    "available_sort_policies",
    "available_tree_types",
    "build_tree",
    "get_default_search_config",
    "get_metric",
    "get_sort_policy",
    "identity_permutation",
    "invert_permutation",
    "log_search_summary",
    "register_metric",
    "register_tree_builder",
    "set_default_search_config",
    "unpermute_rows",
    "remap_neighbors",
]
