"""gnpx: dual-tree generalized N-body algorithms with JAX leaf kernels."""

from jax import config as _jax_config

# Kernel sums and their error budgets are accumulated in float64.
_jax_config.update("jax_enable_x64", True)

from .bounds import (
    BallBound,
    DRange,
    HRectBound,
    ball_range_distance_sq,
    bound_from_points,
    hrect_max_distance_sq,
    hrect_mid_distance_sq,
    hrect_min_distance_sq,
    hrect_range_distance_sq,
)
from .distributed import (
    DistributedDualtreeKde,
    DistributedWorkParams,
    InProcessChannel,
    PartialResult,
    Subtable,
    WorkChannel,
    WorkRequest,
    deserialize_subtable,
    distributed_dualtree_kde,
    merge_partial_results,
    run_work_request,
    serialize_subtable,
)
from .dtypes import INDEX_DTYPE, REAL_DTYPE
from .dualtree import (
    DualtreeDfs,
    PruneStatistics,
    combine_prune_statistics,
    log_prune_statistics,
)
from .kde import (
    DualtreeKde,
    DualtreeKdeConfig,
    KdeResult,
    dualtree_kde,
    leaf_kernel_sums,
    naive_kde,
    set_default_kde_config,
)
from .kde_cv import (
    BandwidthSelection,
    lscv_score,
    naive_lscv_score,
    select_bandwidth_lscv,
)
from .kernels import EpanKernel, GaussianKernel, get_kernel, kernel_value_range
from .protocols import BoundProtocol, DualtreeProblem
from .pruning import (
    PruneDecision,
    allowed_error,
    finite_difference_prune,
    monte_carlo_prune,
)
from .statistics import KdeNodeStatistics
from .tree import (
    HostTree,
    SpaceTree,
    TreeBuildConfig,
    build_tree,
    get_subtree_frontier,
    partition_range,
    permute,
    unpermute,
)

__all__ = [
    "BallBound",
    "BandwidthSelection",
    "BoundProtocol",
    "DRange",
    "DistributedDualtreeKde",
    "DistributedWorkParams",
    "DualtreeDfs",
    "DualtreeKde",
    "DualtreeKdeConfig",
    "DualtreeProblem",
    "EpanKernel",
    "GaussianKernel",
    "HRectBound",
    "HostTree",
    "INDEX_DTYPE",
    "InProcessChannel",
    "KdeNodeStatistics",
    "KdeResult",
    "PartialResult",
    "PruneDecision",
    "PruneStatistics",
    "REAL_DTYPE",
    "SpaceTree",
    "Subtable",
    "TreeBuildConfig",
    "WorkChannel",
    "WorkRequest",
    "allowed_error",
    "ball_range_distance_sq",
    "bound_from_points",
    "build_tree",
    "combine_prune_statistics",
    "deserialize_subtable",
    "distributed_dualtree_kde",
    "dualtree_kde",
    "finite_difference_prune",
    "get_kernel",
    "get_subtree_frontier",
    "hrect_max_distance_sq",
    "hrect_mid_distance_sq",
    "hrect_min_distance_sq",
    "hrect_range_distance_sq",
    "kernel_value_range",
    "leaf_kernel_sums",
    "log_prune_statistics",
    "lscv_score",
    "merge_partial_results",
    "monte_carlo_prune",
    "naive_kde",
    "naive_lscv_score",
    "partition_range",
    "permute",
    "run_work_request",
    "select_bandwidth_lscv",
    "serialize_subtable",
    "set_default_kde_config",
    "unpermute",
]
