"""Search configuration and its module-level default."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .tree import _SPLIT_RULES, DEFAULT_LEAF_SIZE

_DEFAULT_NAIVE_QUERY_BLOCK = 256


@dataclass(frozen=True)
class NeighborSearchConfig:
    """Options that shape tree construction and the naive sweep."""

    leaf_size: int = DEFAULT_LEAF_SIZE
    split_rule: str = "midpoint"
    tree_type: str = "kdtree"
    # Query rows per distance block in naive mode.
    naive_query_block: int = _DEFAULT_NAIVE_QUERY_BLOCK

    def __post_init__(self) -> None:
        if self.leaf_size < 1:
            raise ValueError(f"leaf_size must be >= 1, received {self.leaf_size}")
        if self.split_rule not in _SPLIT_RULES:
            raise ValueError(
                f"Unsupported split_rule '{self.split_rule}'. Supported: {_SPLIT_RULES}"
            )
        if self.naive_query_block < 1:
            raise ValueError(
                f"naive_query_block must be >= 1, received {self.naive_query_block}"
            )


_GLOBAL_SEARCH_CONFIG: Optional[NeighborSearchConfig] = None


def set_default_search_config(config: Optional[NeighborSearchConfig]) -> None:
    """Set the module-level fallback configuration; ``None`` restores defaults."""

    global _GLOBAL_SEARCH_CONFIG
    _GLOBAL_SEARCH_CONFIG = config


def get_default_search_config() -> NeighborSearchConfig:
    return _GLOBAL_SEARCH_CONFIG or NeighborSearchConfig()


def _resolve_search_config(
    config: Optional[NeighborSearchConfig],
) -> NeighborSearchConfig:
    if config is not None:
        return config
    return get_default_search_config()


__all__ = [
    "NeighborSearchConfig",
    "get_default_search_config",
    "set_default_search_config",
]
