"""All-k-nearest and all-k-furthest neighbor front ends."""

from __future__ import annotations

from typing import Any, Optional

from beartype import beartype
from jaxtyping import ArrayLike, jaxtyped

from .search import NeighborSearch, NeighborSearchResult
from .sort_policies import FurthestNeighborSort, NearestNeighborSort


class AllkNN(NeighborSearch):
    """:class:`NeighborSearch` fixed to nearest-neighbor ordering."""

    def __init__(
        self,
        reference_set: ArrayLike,
        query_set: Optional[ArrayLike] = None,
        **kwargs: Any,
    ) -> None:
        if "sort_policy" in kwargs:
            raise ValueError("AllkNN always uses NearestNeighborSort")
        super().__init__(
            reference_set, query_set, sort_policy=NearestNeighborSort, **kwargs
        )


class AllkFN(NeighborSearch):
    """:class:`NeighborSearch` fixed to furthest-neighbor ordering."""

    def __init__(
        self,
        reference_set: ArrayLike,
        query_set: Optional[ArrayLike] = None,
        **kwargs: Any,
    ) -> None:
        if "sort_policy" in kwargs:
            raise ValueError("AllkFN always uses FurthestNeighborSort")
        super().__init__(
            reference_set, query_set, sort_policy=FurthestNeighborSort, **kwargs
        )


@jaxtyped(typechecker=beartype)
def all_k_nearest_neighbors(
    reference: ArrayLike,
    query: Optional[ArrayLike] = None,
    *,
    k: int,
    **kwargs: Any,
) -> NeighborSearchResult:
    """Build, search and release an :class:`AllkNN` in one call.

    Extra keyword arguments are forwarded to :class:`NeighborSearch`.
    Omitting ``query`` searches ``reference`` against itself.
    """

    with AllkNN(reference, query, **kwargs) as engine:
        return engine.search(k)


@jaxtyped(typechecker=beartype)
def all_k_furthest_neighbors(
    reference: ArrayLike,
    query: Optional[ArrayLike] = None,
    *,
    k: int,
    **kwargs: Any,
) -> NeighborSearchResult:
    """Furthest-neighbor counterpart of :func:`all_k_nearest_neighbors`."""

    with AllkFN(reference, query, **kwargs) as engine:
        return engine.search(k)


__all__ = [
    "AllkFN",
    "AllkNN",
    "all_k_furthest_neighbors",
    "all_k_nearest_neighbors",
]
