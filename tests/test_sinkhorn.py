"""Tests for the balanced and unbalanced Sinkhorn solvers."""

import warnings

import jax
import jax.numpy as jnp
import numpy as np
import pytest

import otsolve
from otsolve import problem
from otsolve import sinkhorn


def _entropy(plan):
    plan = np.asarray(plan)
    positive = plan[plan > 0]
    return -np.sum(positive * np.log(positive))


def test_sinkhorn_scenario(scenario):
    """With a single target atom of mass, the plan is forced."""
    a, b, cost = scenario
    plan = otsolve.sinkhorn_plan(a, b, cost, epsilon=0.01)
    np.testing.assert_allclose(
        plan, [[0.0, 0.5], [0.0, 0.2], [0.0, 0.3]], atol=1e-8
    )
    assert otsolve.sinkhorn_cost(a, b, cost, 0.01) == pytest.approx(0.95)


def test_sinkhorn_batched_targets(scenario):
    """Targets given as columns yield one cost per column."""
    a, _, cost = scenario
    b = np.array([[0.0, 0.5], [1.0, 0.5]])
    costs = otsolve.sinkhorn_cost(a, b, cost, 0.01)
    assert costs.shape == (2,)
    np.testing.assert_allclose(costs, [0.95, 0.45], rtol=1e-5)
    # Plans are not defined for a batch; costs come back instead.
    np.testing.assert_allclose(
        otsolve.sinkhorn_plan(a, b, cost, 0.01), costs, rtol=1e-10
    )


def test_default_precision_meets_default_threshold(scenario):
    """Importing the package is enough to run in double precision."""
    a, _, cost = scenario
    b = np.array([[0.0, 0.5], [1.0, 0.5]])
    with warnings.catch_warnings():
        warnings.simplefilter("error", otsolve.ConvergenceWarning)
        costs = otsolve.sinkhorn_cost(a, b, cost, 0.01)
        out = otsolve.sinkhorn_solve(a, b[:, 0], cost, 0.01)
    assert bool(out.converged)
    assert int(out.n_iters) < 1000
    assert out.matrix.dtype == jnp.float64
    assert costs.dtype == jnp.float64
    np.testing.assert_allclose(costs, [0.95, 0.45], rtol=1e-6)
    assert otsolve.exact_plan_1d([0.2, 0.5], [0.8, 0.3]).dtype == jnp.float64


def test_sinkhorn_marginals_and_positivity(random_problem):
    a, b, cost = random_problem
    plan = otsolve.sinkhorn_plan(a, b, cost, epsilon=0.1)
    assert np.all(np.asarray(plan) > 0.0)
    np.testing.assert_allclose(jnp.sum(plan, axis=1), a, atol=1e-8)
    np.testing.assert_allclose(jnp.sum(plan, axis=0), b, atol=1e-8)


def test_sinkhorn_zero_mass_atoms(random_problem):
    """Atoms without mass get an empty row/column and no NaN."""
    a, b, cost = random_problem
    a = a.copy()
    a[2] = 0.0
    a /= a.sum()
    plan = np.asarray(otsolve.sinkhorn_plan(a, b, cost, epsilon=0.05))
    assert np.all(np.isfinite(plan))
    np.testing.assert_array_equal(plan[2], 0.0)
    np.testing.assert_allclose(plan.sum(axis=0), b, atol=1e-8)


@pytest.mark.parametrize("epsilon", [0.2, 0.1, 0.05])
def test_sinkhorn_cost_approaches_exact(random_problem, epsilon):
    r"""Entropic bias is bounded by :math:`\varepsilon \log(nm)`."""
    a, b, cost = random_problem
    exact_cost = otsolve.exact_cost(a, b, cost)
    entropic = otsolve.sinkhorn_cost(
        a, b, cost, epsilon, threshold=1e-10, max_iterations=5000
    )
    n, m = cost.shape
    assert entropic >= exact_cost - 1e-7
    assert entropic <= exact_cost + epsilon * np.log(n * m) + 1e-7


def test_sinkhorn_entropy_grows_with_epsilon(random_problem):
    a, b, cost = random_problem
    entropies = [
        _entropy(otsolve.sinkhorn_plan(a, b, cost, eps, max_iterations=5000))
        for eps in (0.02, 0.05, 0.1, 0.5)
    ]
    assert np.all(np.diff(entropies) > 0.0)


def test_sinkhorn_kernel_mode_matches_lse(random_problem):
    a, b, cost = random_problem
    plan_lse = otsolve.sinkhorn_plan(a, b, cost, 0.1, lse_mode=True)
    plan_kernel = otsolve.sinkhorn_plan(a, b, cost, 0.1, lse_mode=False)
    np.testing.assert_allclose(plan_lse, plan_kernel, atol=1e-8)


def test_sinkhorn_small_epsilon_is_stable(random_problem):
    """The log-domain path does not underflow where the kernel would."""
    a, b, cost = random_problem
    out = otsolve.sinkhorn_solve(
        a, b, 100.0 * cost, epsilon=0.01, max_iterations=5000
    )
    assert np.all(np.isfinite(out.matrix))
    assert np.isfinite(out.reg_ot_cost)


def test_sinkhorn_output_fields(random_problem):
    a, b, cost = random_problem
    out = otsolve.sinkhorn_solve(a, b, cost, epsilon=0.1)
    assert bool(out.converged)
    assert float(out.last_error) < 1e-9
    assert out.f.shape == a.shape and out.g.shape == b.shape
    assert float(out.transport_mass) == pytest.approx(1.0)
    primal = float(out.primal_cost)
    assert primal == pytest.approx(float(np.sum(out.matrix * cost)))
    # Balanced objective: transport cost minus epsilon times the entropy.
    reg = float(out.reg_ot_cost)
    assert reg == pytest.approx(primal - 0.1 * _entropy(out.matrix), rel=1e-8)
    assert float(out.ent_reg_cost) == pytest.approx(reg - primal)


def test_sinkhorn_epsilon_schedule(random_problem):
    """Decaying epsilon reaches the same solution as a fixed one."""
    a, b, cost = random_problem
    geom = otsolve.Geometry(jnp.asarray(cost), epsilon=0.05)
    geom_scheduled = otsolve.Geometry(
        jnp.asarray(cost), epsilon=otsolve.Epsilon(0.05, init=20.0, decay=0.9)
    )
    solver = otsolve.Sinkhorn(
        threshold=1e-10, min_iterations=100, max_iterations=5000
    )
    out = solver(otsolve.LinearProblem(geom, jnp.asarray(a), jnp.asarray(b)))
    out_scheduled = solver(
        otsolve.LinearProblem(geom_scheduled, jnp.asarray(a), jnp.asarray(b))
    )
    assert bool(out_scheduled.converged)
    np.testing.assert_allclose(out_scheduled.matrix, out.matrix, atol=1e-7)


def test_sinkhorn_jit(random_problem):
    a, b, cost = random_problem
    geom = otsolve.Geometry(jnp.asarray(cost), epsilon=0.1)
    solver = otsolve.Sinkhorn(threshold=1e-9)

    def reg_cost(a, b):
        return solver(otsolve.LinearProblem(geom, a, b)).reg_ot_cost

    a, b = jnp.asarray(a), jnp.asarray(b)
    np.testing.assert_allclose(
        jax.jit(reg_cost)(a, b), reg_cost(a, b), rtol=1e-10
    )


def test_sinkhorn_vmap(rng, random_problem):
    a, _, cost = random_problem
    geom = otsolve.Geometry(jnp.asarray(cost), epsilon=0.1)
    solver = otsolve.Sinkhorn(threshold=1e-9)
    targets = rng.uniform(0.1, 1.0, size=(4, cost.shape[1]))
    targets = jnp.asarray(targets / targets.sum(axis=1, keepdims=True))

    def primal_cost(b):
        return solver(otsolve.LinearProblem(geom, jnp.asarray(a), b)).primal_cost

    batched = jax.vmap(primal_cost)(targets)
    looped = jnp.stack([primal_cost(b) for b in targets])
    np.testing.assert_allclose(batched, looped, rtol=1e-10)


def test_sinkhorn_not_converged_warns(random_problem):
    a, b, cost = random_problem
    with pytest.warns(otsolve.ConvergenceWarning):
        plan = otsolve.sinkhorn_plan(
            a, b, cost, 0.01, threshold=1e-15, max_iterations=10
        )
    assert np.all(np.isfinite(plan))


def test_sinkhorn_verbose_report(random_problem, capsys):
    a, b, cost = random_problem
    otsolve.sinkhorn_cost(a, b, cost, 0.1, verbose=True)
    assert "Sinkhorn: Converged" in capsys.readouterr().out


def test_sinkhorn_input_errors(scenario):
    a, b, cost = scenario
    with pytest.raises(otsolve.ShapeMismatchError):
        otsolve.sinkhorn_plan(a, b, cost[:2], 0.1)
    with pytest.raises(otsolve.MassImbalanceError):
        otsolve.sinkhorn_plan(a, 0.5 * b, cost, 0.1)
    with pytest.raises(otsolve.MassImbalanceError):
        otsolve.sinkhorn_cost(a, np.array([[0.0, 0.5], [1.0, 0.4]]), cost, 0.1)
    with pytest.raises(ValueError):
        otsolve.sinkhorn_plan(a, b, cost, 0.0)
    with pytest.raises(ValueError):
        otsolve.sinkhorn_unbalanced_plan(a, b, cost, 0.1, reg_m=-1.0)


def test_unbalanced_scenario(scenario):
    """A large relaxation stays close to the balanced solution."""
    a, _, cost = scenario
    b = np.array([[0.0, 0.5], [1.0, 0.5]])
    # The reference values are iterates that update the source scaling first,
    # this solver updates the target potential first. Both orders share the
    # fixed point but are still about 1e-3 apart after 1000 iterations.
    costs = otsolve.sinkhorn_unbalanced_cost(a, b, cost, 0.01, reg_m=1000.0)
    np.testing.assert_allclose(costs, [0.949709, 0.449411], rtol=1e-3)

    plan = otsolve.sinkhorn_unbalanced_plan(
        a, b[:, 0], cost, 0.01, reg_m=1000.0
    )
    np.testing.assert_allclose(
        plan, [[0.0, 0.499964], [0.0, 0.200188], [0.0, 0.29983]], atol=1e-3
    )


def test_unbalanced_infinite_relaxation_is_balanced(random_problem):
    a, b, cost = random_problem
    balanced = otsolve.sinkhorn_cost(a, b, cost, 0.1)
    relaxed = otsolve.sinkhorn_unbalanced_cost(a, b, cost, 0.1, reg_m=np.inf)
    assert relaxed == pytest.approx(balanced, rel=1e-10)


def test_unbalanced_accepts_different_masses(random_problem):
    """Scaling ``b`` by ``c`` scales the relaxed mass by c ** (tau / (1 + tau))."""
    a, b, cost = random_problem
    mass = float(otsolve.sinkhorn_solve(a, b, cost, 0.1, reg_m=1.0)
                 .transport_mass)
    mass_double = float(otsolve.sinkhorn_solve(a, 2.0 * b, cost, 0.1, reg_m=1.0)
                        .transport_mass)
    tau = problem.tau_from_reg_m(1.0, 0.1)
    assert mass_double / mass == pytest.approx(2.0 ** (tau / (1.0 + tau)),
                                               rel=1e-6)


def test_unbalanced_large_relaxation_keeps_mass(random_problem):
    a, b, cost = random_problem
    out = otsolve.sinkhorn_solve(
        a, b, cost, 0.1, reg_m=1000.0, max_iterations=200_000
    )
    assert bool(out.converged)
    assert float(out.transport_mass) == pytest.approx(1.0, abs=1e-2)


def test_unbalanced_kernel_mode_matches_lse(random_problem):
    a, b, cost = random_problem
    plan_lse = otsolve.sinkhorn_unbalanced_plan(a, b, cost, 0.1, reg_m=1.0)
    plan_kernel = otsolve.sinkhorn_unbalanced_plan(
        a, b, cost, 0.1, reg_m=1.0, lse_mode=False
    )
    np.testing.assert_allclose(plan_lse, plan_kernel, atol=1e-8)


def test_tau_from_reg_m():
    assert problem.tau_from_reg_m(None, 0.1) == 1.0
    assert problem.tau_from_reg_m(np.inf, 0.1) == 1.0
    assert problem.tau_from_reg_m(1.0, 1.0) == pytest.approx(0.5)


def test_marginal_error_vanishes_at_solution(random_problem):
    a, b, cost = random_problem
    out = otsolve.sinkhorn_solve(a, b, cost, 0.1)
    err = sinkhorn.marginal_error(
        out.f, out.g, jnp.asarray(b), out.geom, axis=0
    )
    assert float(err[0]) < 1e-9


def test_sinkhorn_divergence(rng, grid_cost):
    x = rng.uniform(size=20)
    a = x / x.sum()
    y = rng.uniform(size=20)
    b = y / y.sum()
    assert otsolve.sinkhorn_divergence(a, a, grid_cost, 0.05) == pytest.approx(
        0.0, abs=1e-8
    )
    d_ab = otsolve.sinkhorn_divergence(
        a, b, grid_cost, 0.05, max_iterations=5000
    )
    d_ba = otsolve.sinkhorn_divergence(
        b, a, grid_cost, 0.05, max_iterations=5000
    )
    assert d_ab > 0.0
    assert d_ab == pytest.approx(d_ba, rel=1e-4, abs=1e-8)


def test_sinkhorn_divergence_needs_self_costs(random_problem):
    a, b, cost = random_problem
    with pytest.raises(otsolve.ShapeMismatchError):
        otsolve.sinkhorn_divergence(a, b, cost, 0.1)
