"""Structural protocols for node bounds and dual-tree problems."""

from __future__ import annotations

from typing import Protocol

from .bounds import DRange
from .pruning import PruneDecision


class BoundProtocol(Protocol):
    """Region that can be grown and compared against another region."""

    def contains(self, point) -> bool: ...

    def min_distance_sq(self, other) -> float: ...

    def max_distance_sq(self, other) -> float: ...

    def range_distance_sq(self, other) -> DRange: ...

    def mid_distance_sq(self, other) -> float: ...

    def reset(self) -> None: ...


class DualtreeProblem(Protocol):
    """Problem-specific hooks driven by :class:`gnpx.dualtree.DualtreeDfs`."""

    def reset(self) -> None: ...

    def prunable(self, qnode: int, rnode: int, probability: float) -> PruneDecision: ...

    def apply_prune(self, qnode: int, rnode: int, decision: PruneDecision) -> None: ...

    def base_case(self, qnode: int, rnode: int) -> None: ...

    def push_down(self, qnode: int, left: int, right: int) -> None: ...

    def refine(self, qnode: int, left: int, right: int) -> None: ...

    def finalize_leaf(self, qnode: int) -> None: ...

    def partner_distance_sq(self, qnode: int, rnode: int) -> float: ...


__all__ = [
    "BoundProtocol",
    "DualtreeProblem",
]
