"""Tests for costs, geometries, the epsilon scheduler and the fixed-point loop."""

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from otsolve import costs
from otsolve import epsilon_scheduler
from otsolve import fixed_point_loop
from otsolve import geometry
from otsolve import math_utils as mu


def test_cost_functions():
    x = jnp.array([0.0, 1.0])
    y = jnp.array([3.0, 5.0])
    assert float(costs.SqEuclidean()(x, y)) == pytest.approx(25.0)
    assert float(costs.Euclidean()(x, y)) == pytest.approx(5.0)
    assert float(costs.PNorm(1.0)(x, y)) == pytest.approx(7.0)
    assert float(costs.PNorm(2.0)(x, y)) == pytest.approx(25.0)
    # Scalars are points on the real line.
    assert float(costs.SqEuclidean()(0.2, 0.5)) == pytest.approx(0.09)


def test_all_pairs_and_pairwise():
    x = jnp.array([0.0, 1.0, 2.0])
    y = jnp.array([0.5, 3.0])
    cost = costs.PNorm(1.5).all_pairs(x, y)
    np.testing.assert_allclose(
        cost, np.abs(np.asarray(x)[:, None] - np.asarray(y)[None, :]) ** 1.5
    )
    np.testing.assert_allclose(
        costs.SqEuclidean().pairwise(x[:2], y), [0.25, 4.0]
    )


def test_get_cost_fn():
    assert isinstance(costs.get_cost_fn("sqeuclidean"), costs.SqEuclidean)
    assert isinstance(costs.get_cost_fn("euclidean"), costs.Euclidean)
    assert costs.get_cost_fn("minkowski", 3.0).p == 3.0
    assert costs.get_cost_fn("cityblock").p == 1.0
    with pytest.raises(ValueError):
        costs.get_cost_fn("cosine")
    with pytest.raises(ValueError):
        costs.PNorm(0.0)


def test_euclidean_gradient_at_zero():
    grad = jax.grad(lambda x: costs.Euclidean()(x, x))(jnp.array([1.0, 2.0]))
    assert np.all(np.isfinite(grad))


def test_epsilon_scheduler():
    eps = epsilon_scheduler.Epsilon(0.1, init=10.0, decay=0.5)
    assert eps.is_scheduled
    assert float(eps(0)) == pytest.approx(1.0)
    assert float(eps(1)) == pytest.approx(0.5)
    assert float(eps(10)) == pytest.approx(0.1)
    assert eps(None) == 0.1
    assert not epsilon_scheduler.Epsilon(0.1).is_scheduled
    with pytest.raises(ValueError):
        epsilon_scheduler.Epsilon(0.1, decay=1.5)
    with pytest.raises(ValueError):
        epsilon_scheduler.Epsilon(0.1, init=0.5)


def test_geometry_from_points():
    x = jnp.array([[0.0], [1.0]])
    y = jnp.array([[0.0], [2.0], [3.0]])
    geom = geometry.Geometry.from_points(x, y, epsilon=0.5)
    assert geom.shape == (2, 3)
    assert not geom.is_square
    np.testing.assert_allclose(geom.cost_matrix, [[0, 4, 9], [1, 1, 4]])
    np.testing.assert_allclose(geom.kernel_matrix, np.exp(-geom.cost_matrix / 0.5))


def test_geometry_default_epsilon_and_scaling():
    cost = jnp.array([[0.0, 2.0], [4.0, 2.0]])
    geom = geometry.Geometry(cost)
    assert float(geom.epsilon) == pytest.approx(
        geometry.DEFAULT_EPSILON_SCALE * 2.0
    )
    scaled = geometry.Geometry(cost, scale_cost="max_cost")
    assert float(jnp.max(scaled.cost_matrix)) == pytest.approx(1.0)
    with pytest.raises(ValueError):
        _ = geometry.Geometry(cost, scale_cost="unknown").cost_matrix


def test_lse_kernel_matches_kernel(rng):
    cost = jnp.asarray(rng.uniform(size=(4, 3)))
    geom = geometry.Geometry(cost, epsilon=0.2)
    f = jnp.asarray(rng.normal(size=4))
    g = jnp.asarray(rng.normal(size=3))
    u, v = geom.scaling_from_potential(f), geom.scaling_from_potential(g)
    np.testing.assert_allclose(
        geom.transport_from_potentials(f, g), geom.transport_from_scalings(u, v)
    )
    np.testing.assert_allclose(
        geom.marginal_from_potentials(f, g, axis=0),
        geom.marginal_from_scalings(u, v, axis=0)
    )
    np.testing.assert_allclose(
        geom.marginal_from_potentials(f, g, axis=1),
        geom.marginal_from_scalings(u, v, axis=1)
    )


def test_math_utils():
    np.testing.assert_allclose(mu.xlogx(jnp.array([0.0, 1.0])), [0.0, 0.0])
    p = jnp.array([0.5, 0.5])
    assert float(mu.gen_kl(p, p)) == pytest.approx(0.0, abs=1e-15)
    assert float(mu.gen_kl(jnp.array([1.0, 0.0]), jnp.array([0.5, 0.5]))) > 0.0
    assert np.isfinite(float(mu.safe_log(jnp.array(0.0))))
    grad = jax.grad(lambda x: mu.logsumexp(x))(jnp.array([-jnp.inf, 0.0]))
    np.testing.assert_allclose(grad, [0.0, 1.0])


@pytest.mark.parametrize("min_iterations", [0, 30])
def test_fixpoint_iter_stops_on_condition(min_iterations):
    """Halving a value stops once it is below 1, in blocks of 10 steps."""

    def cond_fn(iteration, const, state):
        return state >= 1.0

    def body_fn(iteration, const, state, compute_error):
        return state / const

    n_iters, state = fixed_point_loop.fixpoint_iter(
        cond_fn, body_fn, min_iterations, 100, 10, 2.0, jnp.array(1000.0)
    )
    expected = max(10, min_iterations)
    assert int(n_iters) == expected
    assert float(state) == pytest.approx(1000.0 / 2 ** expected)


def test_fixpoint_iter_fixed_trip_count():
    def body_fn(iteration, const, state, compute_error):
        return state + jnp.where(compute_error, 1, 0)

    n_iters, state = fixed_point_loop.fixpoint_iter(
        lambda *_: True, body_fn, 50, 50, 10, None, jnp.array(0)
    )
    assert int(n_iters) == 50
    assert int(state) == 5
