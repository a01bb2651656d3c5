"""Block-decomposed dual-tree KDE behind a message-passing interface.

Both trees are cut into disjoint subtrees (the frontier of nodes owning at
most ``max_subtree_size`` points). Every query/reference block pair becomes
a :class:`WorkRequest` carrying serialized subtables; a :class:`WorkChannel`
executes requests and hands back :class:`PartialResult` records whose
unnormalized sums are merged associatively. The channel is the seam where a
process pool or MPI transport would plug in; :class:`InProcessChannel` runs
each request synchronously with the single-process engine.
"""

from __future__ import annotations

import heapq
import io
import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import NamedTuple, Optional, Protocol

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import ArrayLike, jaxtyped

from .bounds import hrect_min_distance_sq
from .dtypes import HOST_INDEX_DTYPE, REAL_DTYPE
from .dualtree import (
    DualtreeDfs,
    PruneStatistics,
    combine_prune_statistics,
    log_prune_statistics,
)
from .kde import DualtreeKde, DualtreeKdeConfig, KdeResult, _resolve_kde_config
from .kernels import Kernel
from .tree import SpaceTree, build_tree, get_subtree_frontier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DistributedWorkParams:
    """How finely the trees are cut and how much work each stage dequeues."""

    leaf_size: int = 20
    max_subtree_size: int = 512
    max_work_per_stage: int = 8


def _validate_work_params(params: DistributedWorkParams) -> None:
    if params.leaf_size < 1:
        raise ValueError("leaf_size must be >= 1")
    if params.max_subtree_size < 1:
        raise ValueError("max_subtree_size must be >= 1")
    if params.max_work_per_stage < 1:
        raise ValueError("max_work_per_stage must be >= 1")


class Subtable(NamedTuple):
    """Contiguous block of a tree's points, addressable by original index."""

    block_id: int
    indices: np.ndarray
    points: np.ndarray
    weights: np.ndarray
    bbox_min: np.ndarray
    bbox_max: np.ndarray


def serialize_subtable(subtable: Subtable) -> bytes:
    buffer = io.BytesIO()
    np.savez(
        buffer,
        block_id=np.asarray(subtable.block_id, dtype=HOST_INDEX_DTYPE),
        indices=subtable.indices,
        points=subtable.points,
        weights=subtable.weights,
        bbox_min=subtable.bbox_min,
        bbox_max=subtable.bbox_max,
    )
    return buffer.getvalue()


def deserialize_subtable(payload: bytes) -> Subtable:
    with np.load(io.BytesIO(payload)) as data:
        return Subtable(
            block_id=int(data["block_id"]),
            indices=data["indices"],
            points=data["points"],
            weights=data["weights"],
            bbox_min=data["bbox_min"],
            bbox_max=data["bbox_max"],
        )


class WorkRequest(NamedTuple):
    """One query block against one reference block."""

    query: bytes
    reference: bytes
    priority: float
    query_block: int
    reference_block: int


class PartialResult(NamedTuple):
    """Unnormalized sums for a set of query points (original indices)."""

    query_indices: np.ndarray
    lower: np.ndarray
    estimate: np.ndarray
    upper: np.ndarray
    used_error: np.ndarray
    n_pruned: np.ndarray
    statistics: PruneStatistics


class WorkChannel(Protocol):
    """Transport that executes work requests and returns partial results."""

    def submit(self, request: WorkRequest) -> None: ...

    def receive(self) -> PartialResult: ...

    def pending(self) -> int: ...


def run_work_request(
    request: WorkRequest,
    kernel: Kernel,
    config: DualtreeKdeConfig,
    total_weight: float,
) -> PartialResult:
    """Run one block pair with ``total_weight`` as the error normalizer."""

    query = deserialize_subtable(request.query)
    reference = deserialize_subtable(request.reference)
    block_config = replace(config, leave_one_out=False)
    tree_config = block_config.tree_config()
    reference_tree = build_tree(reference.points, reference.weights, config=tree_config)
    query_tree = build_tree(query.points, config=tree_config)

    problem = DualtreeKde(
        query_tree,
        reference_tree,
        kernel,
        config=block_config,
        total_weight=total_weight,
    )
    stats = DualtreeDfs(query_tree, reference_tree, problem).compute(block_config.probability)
    result = problem.result(stats, normalize=False)
    return PartialResult(
        query_indices=np.asarray(query.indices, dtype=HOST_INDEX_DTYPE),
        lower=np.asarray(result.lower),
        estimate=np.asarray(result.densities),
        upper=np.asarray(result.upper),
        used_error=np.asarray(result.used_error),
        n_pruned=np.asarray(result.n_pruned),
        statistics=stats,
    )


class InProcessChannel:
    """Executes each submitted request immediately in this process."""

    def __init__(self, kernel: Kernel, config: DualtreeKdeConfig, total_weight: float):
        self.kernel = kernel
        self.config = config
        self.total_weight = float(total_weight)
        self._results: deque[PartialResult] = deque()

    def submit(self, request: WorkRequest) -> None:
        self._results.append(
            run_work_request(request, self.kernel, self.config, self.total_weight)
        )

    def receive(self) -> PartialResult:
        if not self._results:
            raise RuntimeError("receive() called with no pending results")
        return self._results.popleft()

    def pending(self) -> int:
        return len(self._results)


def merge_partial_results(a: PartialResult, b: PartialResult) -> PartialResult:
    """Sum two partial results per query index; associative and commutative."""

    indices = np.concatenate([a.query_indices, b.query_indices])
    unique, inverse = np.unique(indices, return_inverse=True)

    def combine(x: np.ndarray, y: np.ndarray) -> np.ndarray:
        out = np.zeros((unique.shape[0],), dtype=np.float64)
        np.add.at(out, inverse, np.concatenate([x, y]))
        return out

    return PartialResult(
        query_indices=unique.astype(HOST_INDEX_DTYPE),
        lower=combine(a.lower, b.lower),
        estimate=combine(a.estimate, b.estimate),
        upper=combine(a.upper, b.upper),
        used_error=combine(a.used_error, b.used_error),
        n_pruned=combine(a.n_pruned, b.n_pruned),
        statistics=combine_prune_statistics(a.statistics, b.statistics),
    )


def _subtables(tree: SpaceTree, frontier: np.ndarray) -> list[Subtable]:
    host = tree.to_host()
    blocks = []
    for block_id, node in enumerate(frontier):
        rows = host.node_slice(int(node))
        blocks.append(
            Subtable(
                block_id=block_id,
                indices=np.array(host.old_from_new[rows], dtype=HOST_INDEX_DTYPE),
                points=np.array(host.points[rows]),
                weights=np.array(host.weights[rows]),
                bbox_min=np.array(host.bbox_min[node]),
                bbox_max=np.array(host.bbox_max[node]),
            )
        )
    return blocks


class DistributedDualtreeKde:
    """Dual-tree KDE computed as a queue of independent block pairs.

    Args:
        references: Reference points ``(n_references, dim)``.
        queries: Query points, or ``None`` for the monochromatic problem.
        weights: Optional non-negative reference weights.
        kernel: Kernel evaluated on squared distances.
        config: Accuracy parameters shared by every block pair.
        work_params: Block size and per-stage dequeue limit.
        channel: Transport for work requests; defaults to in-process.
    """

    def __init__(
        self,
        references: ArrayLike,
        queries: Optional[ArrayLike] = None,
        weights: Optional[ArrayLike] = None,
        *,
        kernel: Kernel,
        config: Optional[DualtreeKdeConfig] = None,
        work_params: Optional[DistributedWorkParams] = None,
        channel: Optional[WorkChannel] = None,
    ):
        self.config = _resolve_kde_config(config)
        self.work_params = work_params or DistributedWorkParams(
            leaf_size=self.config.leaf_size
        )
        _validate_work_params(self.work_params)
        self.monochromatic = queries is None
        if self.config.leave_one_out and not self.monochromatic:
            raise ValueError("leave_one_out requires queries=None")
        self.kernel = kernel

        self.block_config = replace(self.config, leaf_size=self.work_params.leaf_size)
        tree_config = self.block_config.tree_config()
        self.reference_tree = build_tree(references, weights, config=tree_config)
        if self.monochromatic:
            self.query_tree = self.reference_tree
        else:
            self.query_tree = build_tree(queries, config=tree_config)
        if self.reference_tree.dimension != self.query_tree.dimension:
            raise ValueError(
                "queries and references must share dimensionality; "
                f"received {self.query_tree.dimension} and {self.reference_tree.dimension}"
            )
        self.total_weight = self.reference_tree.total_weight
        if not self.total_weight > 0.0:
            raise ValueError("reference weights must sum to a positive value")
        self.channel = channel or InProcessChannel(
            kernel, self.block_config, self.total_weight
        )
        self.num_stages = 0

    def _work_queue(
        self, query_blocks: list[Subtable], reference_blocks: list[Subtable]
    ) -> list[tuple[float, int, int]]:
        queue = [
            (
                float(
                    hrect_min_distance_sq(q.bbox_min, q.bbox_max, r.bbox_min, r.bbox_max)
                ),
                q.block_id,
                r.block_id,
            )
            for q in query_blocks
            for r in reference_blocks
        ]
        heapq.heapify(queue)
        return queue

    def compute(self, normalize: bool = True) -> KdeResult:
        """Dispatch every block pair in priority order and merge the results."""

        max_points = self.work_params.max_subtree_size
        query_blocks = _subtables(
            self.query_tree, np.asarray(get_subtree_frontier(self.query_tree, max_points))
        )
        if self.monochromatic:
            reference_blocks = query_blocks
        else:
            reference_blocks = _subtables(
                self.reference_tree,
                np.asarray(get_subtree_frontier(self.reference_tree, max_points)),
            )
        query_payloads = [serialize_subtable(block) for block in query_blocks]
        reference_payloads = [serialize_subtable(block) for block in reference_blocks]
        queue = self._work_queue(query_blocks, reference_blocks)
        logger.info(
            "Starting distributed dual-tree KDE: %d query blocks x %d reference blocks",
            len(query_blocks),
            len(reference_blocks),
        )

        merged: Optional[PartialResult] = None
        self.num_stages = 0
        while queue:
            stage = [
                heapq.heappop(queue)
                for _ in range(min(self.work_params.max_work_per_stage, len(queue)))
            ]
            for priority, q_block, r_block in stage:
                self.channel.submit(
                    WorkRequest(
                        query=query_payloads[q_block],
                        reference=reference_payloads[r_block],
                        priority=priority,
                        query_block=q_block,
                        reference_block=r_block,
                    )
                )
            while self.channel.pending():
                partial = self.channel.receive()
                merged = partial if merged is None else merge_partial_results(merged, partial)
            self.num_stages += 1
            logger.debug(
                "Distributed stage %d: %d requests, %d remaining",
                self.num_stages,
                len(stage),
                len(queue),
            )

        if merged is None or merged.query_indices.shape[0] != self.query_tree.num_points:
            raise RuntimeError("partial results did not cover every query point")
        log_prune_statistics(merged.statistics, logger=logger)
        return self._assemble(merged, normalize=normalize)

    def _assemble(self, merged: PartialResult, *, normalize: bool) -> KdeResult:
        order = np.argsort(merged.query_indices)
        lower = merged.lower[order]
        estimate = merged.estimate[order]
        upper = merged.upper[order]
        used_error = merged.used_error[order]
        denominator = np.full_like(lower, self.total_weight)
        if self.config.leave_one_out:
            weights = np.asarray(self.reference_tree.weights)[
                np.asarray(self.reference_tree.new_from_old)
            ]
            k_zero = float(self.kernel.eval_unnorm_on_sq_host(0.0))
            lower = np.maximum(lower - weights * k_zero, 0.0)
            estimate = estimate - weights * k_zero
            upper = upper - weights * k_zero
            denominator = denominator - weights
            if np.any(denominator <= 0.0):
                raise ValueError(
                    "leave_one_out needs positive reference weight besides each point"
                )
        if normalize:
            scale = 1.0 / (
                self.kernel.calc_norm_constant(self.query_tree.dimension) * denominator
            )
            lower = lower * scale
            estimate = estimate * scale
            upper = upper * scale
            used_error = used_error * scale
        return KdeResult(
            densities=jnp.asarray(estimate, dtype=REAL_DTYPE),
            lower=jnp.asarray(lower, dtype=REAL_DTYPE),
            upper=jnp.asarray(upper, dtype=REAL_DTYPE),
            used_error=jnp.asarray(used_error, dtype=REAL_DTYPE),
            n_pruned=jnp.asarray(merged.n_pruned[order], dtype=REAL_DTYPE),
            statistics=merged.statistics,
        )


@jaxtyped(typechecker=beartype)
def distributed_dualtree_kde(
    references: ArrayLike,
    queries: Optional[ArrayLike] = None,
    weights: Optional[ArrayLike] = None,
    *,
    kernel: Kernel,
    config: Optional[DualtreeKdeConfig] = None,
    work_params: Optional[DistributedWorkParams] = None,
    normalize: bool = True,
) -> KdeResult:
    """Convenience wrapper running :class:`DistributedDualtreeKde` in-process."""

    return DistributedDualtreeKde(
        references,
        queries,
        weights,
        kernel=kernel,
        config=config,
        work_params=work_params,
    ).compute(normalize=normalize)


__all__ = [
    "DistributedDualtreeKde",
    "DistributedWorkParams",
    "InProcessChannel",
    "PartialResult",
    "Subtable",
    "WorkChannel",
    "WorkRequest",
    "deserialize_subtable",
    "distributed_dualtree_kde",
    "merge_partial_results",
    "run_work_request",
    "serialize_subtable",
]
