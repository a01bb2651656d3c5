"""Kernel evaluation, normalization and factory checks."""

import math

import jax.numpy as jnp
import numpy as np
import pytest

from gnpx import DRange, EpanKernel, GaussianKernel, get_kernel, kernel_value_range


def test_gaussian_kernel_values():
    kernel = GaussianKernel(0.5)
    assert kernel.bandwidth_sq == pytest.approx(0.25)
    assert float(kernel.eval_unnorm_on_sq(0.0)) == pytest.approx(1.0)
    assert float(kernel.eval_unnorm_on_sq(0.25)) == pytest.approx(math.exp(-0.5))
    assert kernel.calc_norm_constant(2) == pytest.approx(2.0 * math.pi * 0.25)


def test_epan_kernel_has_compact_support():
    kernel = EpanKernel(2.0)
    values = kernel.eval_unnorm_on_sq(jnp.array([0.0, 1.0, 4.0, 9.0]))
    assert jnp.allclose(values, jnp.array([1.0, 0.75, 0.0, 0.0]))
    # One dimension: integral of 1 - x^2/h^2 over [-h, h] is 4h/3.
    assert kernel.calc_norm_constant(1) == pytest.approx(8.0 / 3.0)


@pytest.mark.parametrize("dim", [1, 2, 3])
def test_epan_norm_constant_matches_radial_integral(dim):
    kernel = EpanKernel(1.0)
    # S_{d-1} * int_0^1 (1 - r^2) r^{d-1} dr = S_{d-1} * 2 / (d (d + 2)).
    surface = dim * math.pi ** (dim / 2) / math.gamma(dim / 2 + 1)
    integral = surface * 2.0 / (dim * (dim + 2))
    assert kernel.calc_norm_constant(dim) == pytest.approx(integral, rel=1e-12)


@pytest.mark.parametrize("kernel", [GaussianKernel(0.3), EpanKernel(0.8)])
def test_kernels_are_monotone_and_host_matches_device(kernel):
    d2 = np.linspace(0.0, 2.0, 50)
    device = np.asarray(kernel.eval_unnorm_on_sq(jnp.asarray(d2)))
    host = kernel.eval_unnorm_on_sq_host(d2)
    np.testing.assert_allclose(device, host, rtol=1e-12)
    assert np.all(np.diff(host) <= 0.0)


def test_kernel_value_range_uses_distance_extremes():
    kernel = GaussianKernel(1.0)
    values = kernel_value_range(kernel, DRange(1.0, 4.0))
    assert values.lo == pytest.approx(math.exp(-2.0))
    assert values.hi == pytest.approx(math.exp(-0.5))


def test_kernels_are_hashable_for_static_arguments():
    assert hash(GaussianKernel(1.0)) == hash(GaussianKernel(1.0))
    assert GaussianKernel(1.0) != EpanKernel(1.0)


@pytest.mark.parametrize("bandwidth", [0.0, -1.0, float("inf"), float("nan")])
def test_kernels_reject_bad_bandwidth(bandwidth):
    with pytest.raises(ValueError):
        GaussianKernel(bandwidth)
    with pytest.raises(ValueError):
        EpanKernel(bandwidth)


def test_get_kernel_factory():
    assert isinstance(get_kernel("gaussian", 1.0), GaussianKernel)
    assert isinstance(get_kernel("epanechnikov", 1.0), EpanKernel)


@pytest.mark.parametrize("name", ["triangular", "Gaussian", ""])
def test_get_kernel_rejects_unknown_names(name):
    with pytest.raises(ValueError, match="Unknown kernel"):
        get_kernel(name, 1.0)
