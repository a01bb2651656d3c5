"""LSCV bandwidth scores computed with dual-tree sums."""

import jax
import jax.numpy as jnp
import pytest

from gnpx import DualtreeKdeConfig, lscv_score, naive_lscv_score, select_bandwidth_lscv


def _sample_points(n: int = 300, dim: int = 2, seed: int = 0) -> jnp.ndarray:
    key = jax.random.PRNGKey(seed)
    return jax.random.normal(key, (n, dim), dtype=jnp.float64)


def test_exact_lscv_matches_naive_score():
    points = _sample_points()
    config = DualtreeKdeConfig(relative_error=0.0, leaf_size=16)

    fast = lscv_score(points, bandwidth=0.4, config=config)
    slow = naive_lscv_score(points, bandwidth=0.4)

    assert fast == pytest.approx(slow, rel=1e-6)


def test_weighted_lscv_matches_naive_score():
    points = _sample_points(n=200, seed=1)
    weights = jnp.linspace(0.5, 1.5, 200)
    config = DualtreeKdeConfig(relative_error=0.0, leaf_size=16)

    fast = lscv_score(points, weights, bandwidth=0.5, config=config)
    slow = naive_lscv_score(points, weights, bandwidth=0.5)

    assert fast == pytest.approx(slow, rel=1e-6)


def test_select_bandwidth_prefers_reasonable_candidate():
    points = _sample_points(n=400, seed=2)
    candidates = jnp.array([0.02, 0.4, 5.0])
    config = DualtreeKdeConfig(relative_error=0.01, leaf_size=20)

    selection = select_bandwidth_lscv(points, candidates, config=config)

    assert selection.scores.shape == (3,)
    assert selection.bandwidth == pytest.approx(0.4)
    assert float(jnp.min(selection.scores)) == pytest.approx(float(selection.scores[1]))


def test_select_bandwidth_requires_candidates():
    with pytest.raises(ValueError):
        select_bandwidth_lscv(_sample_points(n=10), jnp.zeros((0,)))
