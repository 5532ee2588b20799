"""Local dtype policy for arborsearch contracts."""

import jax.numpy as jnp
import numpy as np

# Keep tree/index contracts consistent across arborsearch artifacts.
INDEX_DTYPE = jnp.int64
HOST_INDEX_DTYPE = np.int64
HOST_DISTANCE_DTYPE = np.float64

# Marks an empty candidate slot.
INVALID_INDEX = -1


def as_index(x):
    """Convert a scalar/array to arborsearch index dtype."""
    return jnp.asarray(x, dtype=INDEX_DTYPE)


def as_host_index(x) -> np.ndarray:
    """Materialise indices as a host array for mutable bookkeeping."""
    return np.asarray(x, dtype=HOST_INDEX_DTYPE)


__all__ = [
    "HOST_DISTANCE_DTYPE",
    "HOST_INDEX_DTYPE",
    "INDEX_DTYPE",
    "INVALID_INDEX",
    "as_host_index",
    "as_index",
]
