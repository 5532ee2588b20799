"""Translate between input order and tree order.

Tree construction reorders points and reports ``old_from_new``:
``old_from_new[i]`` is the input position of the point stored at tree
position ``i``. Results are computed in tree order and mapped back here.
"""

from __future__ import annotations

import numpy as np
from jaxtyping import ArrayLike

from .dtypes import HOST_INDEX_DTYPE, INVALID_INDEX


def _as_permutation(old_from_new: ArrayLike) -> np.ndarray:
    perm = np.asarray(old_from_new, dtype=HOST_INDEX_DTYPE)
    if perm.ndim != 1:
        raise ValueError(f"permutation must be 1-D, received ndim={perm.ndim}")
    n = perm.shape[0]
    seen = np.zeros((n,), dtype=bool)
    in_range = (perm >= 0) & (perm < n)
    if not bool(np.all(in_range)):
        raise ValueError("permutation entries must lie in [0, n)")
    seen[perm] = True
    if not bool(np.all(seen)):
        raise ValueError("permutation must be a bijection of 0..n-1")
    return perm


def identity_permutation(n: int) -> np.ndarray:
    return np.arange(n, dtype=HOST_INDEX_DTYPE)


def invert_permutation(old_from_new: ArrayLike) -> np.ndarray:
    """Return ``new_from_old`` for an ``old_from_new`` permutation."""

    perm = _as_permutation(old_from_new)
    new_from_old = np.empty_like(perm)
    new_from_old[perm] = np.arange(perm.shape[0], dtype=HOST_INDEX_DTYPE)
    return new_from_old


def remap_neighbors(indices: np.ndarray, old_from_new: ArrayLike) -> np.ndarray:
    """Map tree-order neighbor indices to input order, keeping empty slots."""

    perm = _as_permutation(old_from_new)
    indices = np.asarray(indices, dtype=HOST_INDEX_DTYPE)
    valid = indices != INVALID_INDEX
    remapped = np.full_like(indices, INVALID_INDEX)
    remapped[valid] = perm[indices[valid]]
    return remapped


def unpermute_rows(rows: np.ndarray, old_from_new: ArrayLike) -> np.ndarray:
    """Move row ``i`` (tree order) to row ``old_from_new[i]`` (input order)."""

    perm = _as_permutation(old_from_new)
    rows = np.asarray(rows)
    if rows.shape[0] != perm.shape[0]:
        raise ValueError(
            f"rows has {rows.shape[0]} entries but permutation has {perm.shape[0]}"
        )
    out = np.empty_like(rows)
    out[perm] = rows
    return out


__all__ = [
    "identity_permutation",
    "invert_permutation",
    "remap_neighbors",
    "unpermute_rows",
]
