"""Local dtype policy for gnpx contracts."""

import jax.numpy as jnp
import numpy as np

# Node ids, permutation maps and point ranges share one integer dtype.
INDEX_DTYPE = jnp.int64
HOST_INDEX_DTYPE = np.int64
REAL_DTYPE = jnp.float64


__all__ = ["HOST_INDEX_DTYPE", "INDEX_DTYPE", "REAL_DTYPE"]
