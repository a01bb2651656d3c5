"""Radially symmetric kernels evaluated on squared distances."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Union

import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, ArrayLike, jaxtyped

from .bounds import DRange


def _validate_bandwidth(bandwidth: float) -> float:
    value = float(bandwidth)
    if not math.isfinite(value) or value <= 0.0:
        raise ValueError(f"bandwidth must be positive and finite, received {bandwidth}")
    return value


def unit_ball_volume(dim: int) -> float:
    """Volume of the unit ball in ``dim`` dimensions."""

    if dim < 1:
        raise ValueError(f"dim must be >= 1, received {dim}")
    half = 0.5 * dim
    return math.exp(half * math.log(math.pi) - math.lgamma(half + 1.0))


@dataclass(frozen=True)
class GaussianKernel:
    """``exp(-d^2 / (2 h^2))`` with normalizer ``(2 pi h^2)^(dim/2)``."""

    bandwidth: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "bandwidth", _validate_bandwidth(self.bandwidth))

    @property
    def name(self) -> str:
        return "gaussian"

    @property
    def bandwidth_sq(self) -> float:
        return self.bandwidth * self.bandwidth

    def eval_unnorm_on_sq(self, dsqd: ArrayLike) -> Array:
        return jnp.exp(jnp.asarray(dsqd) * (-0.5 / self.bandwidth_sq))

    def eval_unnorm_on_sq_host(self, dsqd):
        """Host evaluation for scalars and numpy arrays."""

        return np.exp(np.asarray(dsqd, dtype=np.float64) * (-0.5 / self.bandwidth_sq))

    def calc_norm_constant(self, dim: int) -> float:
        return (2.0 * math.pi * self.bandwidth_sq) ** (0.5 * dim)


@dataclass(frozen=True)
class EpanKernel:
    """``max(0, 1 - d^2 / h^2)``; compact support of radius ``h``."""

    bandwidth: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "bandwidth", _validate_bandwidth(self.bandwidth))

    @property
    def name(self) -> str:
        return "epanechnikov"

    @property
    def bandwidth_sq(self) -> float:
        return self.bandwidth * self.bandwidth

    def eval_unnorm_on_sq(self, dsqd: ArrayLike) -> Array:
        return jnp.maximum(1.0 - jnp.asarray(dsqd) / self.bandwidth_sq, 0.0)

    def eval_unnorm_on_sq_host(self, dsqd):
        """Host evaluation for scalars and numpy arrays."""

        return np.maximum(1.0 - np.asarray(dsqd, dtype=np.float64) / self.bandwidth_sq, 0.0)

    def calc_norm_constant(self, dim: int) -> float:
        return 2.0 * unit_ball_volume(dim) * self.bandwidth**dim / (dim + 2.0)


Kernel = Union[GaussianKernel, EpanKernel]
KERNEL_NAMES = ("gaussian", "epanechnikov")


def kernel_value_range(kernel: Kernel, dsqd_range: DRange) -> DRange:
    """Kernel values at the far and near end of a squared-distance range."""

    lo = float(kernel.eval_unnorm_on_sq_host(dsqd_range.hi))
    hi = float(kernel.eval_unnorm_on_sq_host(dsqd_range.lo))
    return DRange(lo, hi)


@jaxtyped(typechecker=beartype)
def get_kernel(name: str, bandwidth: float) -> Kernel:
    """Construct a kernel by name."""

    if name == "gaussian":
        return GaussianKernel(bandwidth)
    if name == "epanechnikov":
        return EpanKernel(bandwidth)
    raise ValueError(f"Unknown kernel: {name!r}; expected one of {KERNEL_NAMES}")


__all__ = [
    "EpanKernel",
    "KERNEL_NAMES",
    "GaussianKernel",
    "Kernel",
    "get_kernel",
    "kernel_value_range",
    "unit_ball_volume",
]
