"""Depth-first dual-tree traversal engine.

The engine owns only the recursion: which node pair to visit next and when
postponed corrections move down the query tree. Everything numerical lives
in the :class:`~gnpx.protocols.DualtreeProblem` it drives.
"""

from __future__ import annotations

import logging
import time
from typing import NamedTuple, Optional

from .protocols import DualtreeProblem
from .pruning import PRUNE_FINITE_DIFFERENCE, PRUNE_MONTE_CARLO
from .tree import SpaceTree

logger = logging.getLogger(__name__)


class PruneStatistics(NamedTuple):
    """Counters describing one dual-tree computation."""

    num_finite_difference_prunes: int = 0
    num_monte_carlo_prunes: int = 0
    num_base_cases: int = 0
    num_node_pairs: int = 0
    num_point_pairs: int = 0
    compute_seconds: float = 0.0


def combine_prune_statistics(a: PruneStatistics, b: PruneStatistics) -> PruneStatistics:
    """Field-wise sum of two statistics records."""

    return PruneStatistics(*(x + y for x, y in zip(a, b)))


def log_prune_statistics(
    stats: PruneStatistics,
    *,
    level: int = logging.INFO,
    logger: Optional[logging.Logger] = None,
) -> None:
    """Log prune counters using the provided (or module) logger."""

    target_logger = logger or logging.getLogger(__name__)
    target_logger.log(
        level,
        (
            "Dual-tree prunes: finite_difference=%d, monte_carlo=%d, "
            "base_cases=%d, node_pairs=%d, point_pairs=%d (%.3fs)"
        ),
        stats.num_finite_difference_prunes,
        stats.num_monte_carlo_prunes,
        stats.num_base_cases,
        stats.num_node_pairs,
        stats.num_point_pairs,
        stats.compute_seconds,
    )


def _validate_probability(probability: float) -> float:
    value = float(probability)
    if not 0.0 < value <= 1.0:
        raise ValueError(f"probability must be in (0, 1], received {probability}")
    return value


class DualtreeDfs:
    """Recursive query/reference tree walk with lazy correction push-down.

    Args:
        query_tree: Tree over the query points.
        reference_tree: Tree over the reference points.
        problem: Hooks implementing pruning, base cases and statistics.
        monochromatic: Marks the query and reference trees as one object;
            the walk then starts at ``(root, root)`` of that tree.
    """

    def __init__(
        self,
        query_tree: SpaceTree,
        reference_tree: SpaceTree,
        problem: DualtreeProblem,
        *,
        monochromatic: bool = False,
    ):
        if query_tree.dimension != reference_tree.dimension:
            raise ValueError(
                "query and reference trees must share dimensionality; "
                f"received {query_tree.dimension} and {reference_tree.dimension}"
            )
        if query_tree.bound_type != reference_tree.bound_type:
            raise ValueError(
                "query and reference trees must use the same bound type; "
                f"received {query_tree.bound_type} and {reference_tree.bound_type}"
            )
        if monochromatic and query_tree is not reference_tree:
            raise ValueError("monochromatic traversal requires a single shared tree")
        self.query_tree = query_tree
        self.reference_tree = reference_tree
        self.problem = problem
        self.monochromatic = bool(monochromatic)
        self._qhost = query_tree.to_host()
        self._rhost = reference_tree.to_host()
        self._reset_counters()

    def _reset_counters(self) -> None:
        self._counts = {
            PRUNE_FINITE_DIFFERENCE: 0,
            PRUNE_MONTE_CARLO: 0,
        }
        self._num_base_cases = 0
        self._num_node_pairs = 0
        self._num_point_pairs = 0

    def _statistics(self, seconds: float) -> PruneStatistics:
        return PruneStatistics(
            num_finite_difference_prunes=self._counts[PRUNE_FINITE_DIFFERENCE],
            num_monte_carlo_prunes=self._counts[PRUNE_MONTE_CARLO],
            num_base_cases=self._num_base_cases,
            num_node_pairs=self._num_node_pairs,
            num_point_pairs=self._num_point_pairs,
            compute_seconds=seconds,
        )

    def compute(self, probability: float = 1.0) -> PruneStatistics:
        """Reset the problem, walk from the two roots, then finalize."""

        probability = _validate_probability(probability)
        self.problem.reset()
        self._reset_counters()
        start = time.perf_counter()
        self.traverse(0, 0, probability)
        self.finalize(0)
        return self._statistics(time.perf_counter() - start)

    def _ordered_partners(self, qnode: int, rnode: int) -> tuple[int, int]:
        left = int(self._rhost.left_child[rnode])
        right = int(self._rhost.right_child[rnode])
        d_left = self.problem.partner_distance_sq(qnode, left)
        d_right = self.problem.partner_distance_sq(qnode, right)
        if d_right < d_left:
            return right, left
        return left, right

    def traverse(self, qnode: int, rnode: int, probability: float = 1.0) -> None:
        """Process the pair ``(qnode, rnode)`` and everything beneath it.

        Every ancestor of ``qnode`` must already have pushed its postponed
        corrections down; :meth:`compute` guarantees this for the roots.
        """

        self._num_node_pairs += 1
        decision = self.problem.prunable(qnode, rnode, probability)
        if decision.can_prune:
            if decision.kind not in self._counts:
                raise RuntimeError(f"Unknown prune kind: {decision.kind}")
            self.problem.apply_prune(qnode, rnode, decision)
            self._counts[decision.kind] += 1
            return

        q_leaf = self._qhost.is_leaf(qnode)
        r_leaf = self._rhost.is_leaf(rnode)
        if q_leaf and r_leaf:
            self.problem.base_case(qnode, rnode)
            self._num_base_cases += 1
            self._num_point_pairs += self._qhost.count(qnode) * self._rhost.count(rnode)
            return

        if q_leaf:
            first, second = self._ordered_partners(qnode, rnode)
            self.traverse(qnode, first, probability)
            self.traverse(qnode, second, probability)
            return

        q_left = int(self._qhost.left_child[qnode])
        q_right = int(self._qhost.right_child[qnode])
        self.problem.push_down(qnode, q_left, q_right)
        if r_leaf:
            self.traverse(q_left, rnode, probability)
            self.traverse(q_right, rnode, probability)
        else:
            for qchild in (q_left, q_right):
                first, second = self._ordered_partners(qchild, rnode)
                self.traverse(qchild, first, probability)
                self.traverse(qchild, second, probability)
        self.problem.refine(qnode, q_left, q_right)

    def finalize(self, qnode: int = 0) -> None:
        """Push every remaining postponed correction under ``qnode`` to its points."""

        pending = [qnode]
        while pending:
            node = pending.pop()
            if self._qhost.is_leaf(node):
                self.problem.finalize_leaf(node)
                continue
            left = int(self._qhost.left_child[node])
            right = int(self._qhost.right_child[node])
            self.problem.push_down(node, left, right)
            pending.append(right)
            pending.append(left)

    def statistics(self, seconds: float = 0.0) -> PruneStatistics:
        """Counters accumulated since the last :meth:`compute`."""

        return self._statistics(seconds)


__all__ = [
    "DualtreeDfs",
    "PruneStatistics",
    "combine_prune_statistics",
    "log_prune_statistics",
]
