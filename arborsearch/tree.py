"""Binary space partitioning tree consumed by the neighbor-search engine.

Nodes live in a structure-of-arrays arena addressed by integer id, root at
id 0, children allocated in pre-order. Every node owns the contiguous range
``[node_start, node_start + node_count)`` of the reordered point buffer and
a hyper-rectangle enclosing those points. Internal nodes always have two
children. The only mutable piece is ``stat``: one float per node used as
the dual-tree query bound.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Literal

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, ArrayLike, jaxtyped

from .bounds import HRectBound
from .dtypes import HOST_DISTANCE_DTYPE, INDEX_DTYPE, as_host_index, as_index

logger = logging.getLogger(__name__)

SplitRule = Literal["midpoint", "median"]
_SPLIT_RULES = ("midpoint", "median")

DEFAULT_LEAF_SIZE = 20


@dataclass(frozen=True, eq=False)
class BinarySpaceTree:
    """Tree container plus reordered points and the permutation that produced them."""

    points: Array
    old_from_new: Array
    node_start: Array
    node_count: Array
    parent: Array
    left_child: Array
    right_child: Array
    split_dim: Array
    split_value: Array
    bbox_min: Array
    bbox_max: Array
    leaf_size: int
    node_bounds: tuple[HRectBound, ...] = field(repr=False)
    stat: np.ndarray = field(repr=False)

    @property
    def num_points(self) -> int:
        return int(self.points.shape[0])

    @property
    def dimension(self) -> int:
        return int(self.points.shape[1])

    @property
    def num_nodes(self) -> int:
        return int(self.node_start.shape[0])

    @property
    def num_leaves(self) -> int:
        return int(jnp.sum(self.left_child < 0))

    def root(self) -> "TreeNode":
        return TreeNode(self, 0)

    def node(self, index: int) -> "TreeNode":
        if not 0 <= index < self.num_nodes:
            raise ValueError(f"node index {index} out of range for {self.num_nodes} nodes")
        return TreeNode(self, int(index))

    def reset_stats(self, value: float) -> None:
        """Refill every node statistic with ``value``."""

        self.stat.fill(value)


@dataclass(frozen=True, eq=False)
class TreeNode:
    """Lightweight handle to one node of a :class:`BinarySpaceTree`."""

    tree: BinarySpaceTree
    index: int

    def is_leaf(self) -> bool:
        return int(self.tree.left_child[self.index]) < 0

    def child(self, i: int) -> "TreeNode":
        if self.is_leaf():
            raise ValueError(f"node {self.index} is a leaf and has no children")
        if i == 0:
            return TreeNode(self.tree, int(self.tree.left_child[self.index]))
        if i == 1:
            return TreeNode(self.tree, int(self.tree.right_child[self.index]))
        raise ValueError(f"child index must be 0 or 1, received {i}")

    def children(self) -> tuple["TreeNode", ...]:
        if self.is_leaf():
            return ()
        return (self.child(0), self.child(1))

    def bound(self) -> HRectBound:
        return self.tree.node_bounds[self.index]

    def point_indices(self) -> range:
        """Range of point positions (tree order) held by this node."""

        start = int(self.tree.node_start[self.index])
        return range(start, start + int(self.tree.node_count[self.index]))

    @property
    def stat(self) -> float:
        return float(self.tree.stat[self.index])

    @stat.setter
    def stat(self, value: float) -> None:
        self.tree.stat[self.index] = value


@dataclass(frozen=True)
class TreeBuildRequest:
    """Common request object passed to registered tree builders."""

    points: Array
    leaf_size: int
    split_rule: str


TreeBuilder = Callable[[TreeBuildRequest], tuple[BinarySpaceTree, Array]]


def _validate_points(points: ArrayLike) -> Array:
    points_arr = jnp.asarray(points)
    if points_arr.ndim != 2:
        raise ValueError(
            "points must have shape (n_points, dim); "
            f"received ndim={points_arr.ndim}"
        )
    if points_arr.shape[0] < 1:
        raise ValueError("points must contain at least one row")
    if points_arr.shape[1] < 1:
        raise ValueError("points must have dim >= 1")
    if not jnp.issubdtype(points_arr.dtype, jnp.floating):
        points_arr = points_arr.astype(jnp.float64)
    return points_arr


def _choose_split(
    coords: Array,
    lower: float,
    upper: float,
    split_rule: str,
) -> tuple[Array, int, float]:
    """Return a left-first ordering of ``coords``, the left count and split value."""

    count = int(coords.shape[0])
    if split_rule == "midpoint":
        split_value = 0.5 * (lower + upper)
        goes_right = jnp.where(coords < split_value, 0, 1)
        num_left = count - int(jnp.sum(goes_right))
        # Rounding can push the midpoint onto an extreme coordinate.
        if 0 < num_left < count:
            return jnp.argsort(goes_right, stable=True), num_left, split_value
    ranks = jnp.argsort(coords, stable=True)
    return ranks, count // 2, float(coords[ranks[count // 2]])


def _build_binary_space_tree(
    points: Array,
    leaf_size: int,
    split_rule: str,
) -> tuple[BinarySpaceTree, Array]:
    num_points = int(points.shape[0])
    order = np.arange(num_points, dtype=np.int64)

    node_start: list[int] = []
    node_count: list[int] = []
    parent: list[int] = []
    left_child: list[int] = []
    right_child: list[int] = []
    split_dim: list[int] = []
    split_value: list[float] = []
    lowers: list[Array] = []
    uppers: list[Array] = []

    # (start, count, parent id, is right child)
    stack: list[tuple[int, int, int, bool]] = [(0, num_points, -1, False)]
    while stack:
        start, count, parent_id, is_right = stack.pop()
        node_id = len(node_start)
        if parent_id >= 0:
            if is_right:
                right_child[parent_id] = node_id
            else:
                left_child[parent_id] = node_id

        segment = order[start : start + count]
        node_points = points[segment]
        lower = jnp.min(node_points, axis=0)
        upper = jnp.max(node_points, axis=0)

        node_start.append(start)
        node_count.append(count)
        parent.append(parent_id)
        left_child.append(-1)
        right_child.append(-1)
        split_dim.append(-1)
        split_value.append(float("nan"))
        lowers.append(lower)
        uppers.append(upper)

        if count <= leaf_size:
            continue
        widths = upper - lower
        dim = int(jnp.argmax(widths))
        if float(widths[dim]) <= 0.0:
            # All points coincide; no split can separate them.
            continue

        coords = node_points[:, dim]
        local_order, num_left, value = _choose_split(
            coords, float(lower[dim]), float(upper[dim]), split_rule
        )
        order[start : start + count] = segment[as_host_index(local_order)]

        split_dim[node_id] = dim
        split_value[node_id] = value
        stack.append((start + num_left, count - num_left, node_id, True))
        stack.append((start, num_left, node_id, False))

    old_from_new = as_index(order)
    bbox_min = jnp.stack(lowers, axis=0)
    bbox_max = jnp.stack(uppers, axis=0)
    tree = BinarySpaceTree(
        points=points[old_from_new],
        old_from_new=old_from_new,
        node_start=as_index(node_start),
        node_count=as_index(node_count),
        parent=as_index(parent),
        left_child=as_index(left_child),
        right_child=as_index(right_child),
        split_dim=as_index(split_dim),
        split_value=jnp.asarray(split_value, dtype=points.dtype),
        bbox_min=bbox_min,
        bbox_max=bbox_max,
        leaf_size=int(leaf_size),
        node_bounds=tuple(
            HRectBound(lower=lo, upper=hi) for lo, hi in zip(lowers, uppers)
        ),
        stat=np.full((len(node_start),), np.inf, dtype=HOST_DISTANCE_DTYPE),
    )
    return tree, old_from_new


def _build_kdtree_from_request(request: TreeBuildRequest) -> tuple[BinarySpaceTree, Array]:
    return _build_binary_space_tree(request.points, request.leaf_size, request.split_rule)


_TREE_BUILDERS: dict[str, TreeBuilder] = {
    "kdtree": _build_kdtree_from_request,
}


def available_tree_types() -> tuple[str, ...]:
    """Return registered tree-type identifiers."""

    return tuple(sorted(_TREE_BUILDERS.keys()))


def register_tree_builder(
    tree_type: str, builder: TreeBuilder, *, overwrite: bool = False
) -> None:
    """Register a new tree builder for ``build_tree`` dispatch."""

    normalized = tree_type.strip()
    if not normalized:
        raise ValueError("tree_type must be a non-empty string")
    if (normalized in _TREE_BUILDERS) and (not overwrite):
        raise ValueError(
            f"tree_type '{normalized}' is already registered; "
            "pass overwrite=True to replace it"
        )
    _TREE_BUILDERS[normalized] = builder


@jaxtyped(typechecker=beartype)
def build_tree(
    points: ArrayLike,
    *,
    leaf_size: int = DEFAULT_LEAF_SIZE,
    split_rule: str = "midpoint",
    tree_type: str = "kdtree",
) -> tuple[BinarySpaceTree, Array]:
    """Build a tree over ``points`` and return ``(tree, old_from_new)``.

    ``tree.points[i]`` is ``points[old_from_new[i]]``; the input is not
    modified.
    """

    points_arr = _validate_points(points)
    if leaf_size < 1:
        raise ValueError(f"leaf_size must be >= 1, received {leaf_size}")
    if split_rule not in _SPLIT_RULES:
        raise ValueError(
            f"Unsupported split_rule '{split_rule}'. Supported: {_SPLIT_RULES}"
        )
    builder = _TREE_BUILDERS.get(tree_type)
    if builder is None:
        supported = ", ".join(f"'{name}'" for name in available_tree_types())
        raise ValueError(f"Unsupported tree_type '{tree_type}'. Supported: ({supported})")

    tree, old_from_new = builder(
        TreeBuildRequest(points=points_arr, leaf_size=int(leaf_size), split_rule=split_rule)
    )
    logger.debug(
        "Built %s tree: points=%d, nodes=%d, leaves=%d, leaf_size=%d",
        tree_type,
        tree.num_points,
        tree.num_nodes,
        tree.num_leaves,
        tree.leaf_size,
    )
    return tree, old_from_new


__all__ = [
    "DEFAULT_LEAF_SIZE",
    "BinarySpaceTree",
    "SplitRule",
    "TreeBuildRequest",
    "TreeBuilder",
    "TreeNode",
    "available_tree_types",
    "build_tree",
    "register_tree_builder",
]
