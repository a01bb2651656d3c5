"""Per-node statistics for dual-tree kernel sums.

Statistics are stored as an arena of numpy arrays indexed by node id. Each
node carries a build-time aggregate (``weight_sum``), running bound
refinements that describe every point the node owns, and postponed
corrections that have been decided for the node but not yet pushed down to
its children. For any node, the exact refinement equals the cached value
plus the postponed corrections of all its ancestors still pending.
"""

from __future__ import annotations

from typing import Union

import numpy as np

from .tree import HostTree, SpaceTree

_POSTPONED_FIELDS = (
    "postponed_l",
    "postponed_e",
    "postponed_u",
    "postponed_used_error",
    "postponed_n_pruned",
)


class KdeNodeStatistics:
    """Bound refinements and lazy corrections for kernel density sums."""

    def __init__(self, num_nodes: int):
        if num_nodes < 1:
            raise ValueError(f"num_nodes must be >= 1, received {num_nodes}")
        self.num_nodes = int(num_nodes)
        self.weight_sum = np.zeros((num_nodes,), dtype=np.float64)
        self.mass_l = np.zeros((num_nodes,), dtype=np.float64)
        self.used_error = np.zeros((num_nodes,), dtype=np.float64)
        self.n_pruned = np.zeros((num_nodes,), dtype=np.float64)
        self.postponed_l = np.zeros((num_nodes,), dtype=np.float64)
        self.postponed_e = np.zeros((num_nodes,), dtype=np.float64)
        self.postponed_u = np.zeros((num_nodes,), dtype=np.float64)
        self.postponed_used_error = np.zeros((num_nodes,), dtype=np.float64)
        self.postponed_n_pruned = np.zeros((num_nodes,), dtype=np.float64)

    @classmethod
    def from_tree(cls, tree: Union[SpaceTree, HostTree]) -> "KdeNodeStatistics":
        """Initialize every node bottom-up from the tree's weights."""

        host = tree.to_host() if isinstance(tree, SpaceTree) else tree
        stats = cls(host.num_nodes)
        # Pre-order ids: children always come after their parent.
        for node in range(host.num_nodes - 1, -1, -1):
            if host.is_leaf(node):
                stats.init_leaf_statistic(node, host.weights[host.node_slice(node)])
            else:
                stats.init_nonleaf_statistic(
                    node, int(host.left_child[node]), int(host.right_child[node])
                )
        return stats

    def init_leaf_statistic(self, node: int, weights: np.ndarray) -> None:
        self.weight_sum[node] = float(np.sum(weights))

    def init_nonleaf_statistic(self, node: int, left: int, right: int) -> None:
        self.weight_sum[node] = self.weight_sum[left] + self.weight_sum[right]

    def reset(self) -> None:
        """Clear refinements and postponed corrections; keep ``weight_sum``."""

        self.mass_l.fill(0.0)
        self.used_error.fill(0.0)
        self.n_pruned.fill(0.0)
        for name in _POSTPONED_FIELDS:
            getattr(self, name).fill(0.0)

    def add_postponed(
        self,
        node: int,
        dl: float,
        de: float,
        du: float,
        used_error: float,
        n_pruned: float,
    ) -> None:
        self.postponed_l[node] += dl
        self.postponed_e[node] += de
        self.postponed_u[node] += du
        self.postponed_used_error[node] += used_error
        self.postponed_n_pruned[node] += n_pruned

    def clear_postponed(self, node: int) -> None:
        for name in _POSTPONED_FIELDS:
            getattr(self, name)[node] = 0.0

    def push_down(self, node: int, left: int, right: int) -> None:
        """Hand ``node``'s postponed corrections to both children."""

        for name in _POSTPONED_FIELDS:
            values = getattr(self, name)
            pending = values[node]
            values[left] += pending
            values[right] += pending
            values[node] = 0.0

    def refine_from_children(self, node: int, left: int, right: int) -> None:
        """Tighten ``node``'s refinements from its (corrected) children."""

        self.mass_l[node] = min(
            self.mass_l[left] + self.postponed_l[left],
            self.mass_l[right] + self.postponed_l[right],
        )
        self.used_error[node] = max(
            self.used_error[left] + self.postponed_used_error[left],
            self.used_error[right] + self.postponed_used_error[right],
        )
        self.n_pruned[node] = min(
            self.n_pruned[left] + self.postponed_n_pruned[left],
            self.n_pruned[right] + self.postponed_n_pruned[right],
        )

    def corrected_mass_l(self, node: int) -> float:
        return float(self.mass_l[node] + self.postponed_l[node])


__all__ = ["KdeNodeStatistics"]
