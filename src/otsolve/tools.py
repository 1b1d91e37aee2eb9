"""Functional entry points.

Each function validates and converts its inputs, builds the geometry and
problem objects, runs the matching solver and returns a plain array or
scalar. Non-convergence is reported with a
:class:`~otsolve.validation.ConvergenceWarning` (and printed when
``verbose=True``); the last iterate is still returned.
"""

from typing import Optional, Tuple, Union

import jax
import jax.numpy as jnp
import numpy as np

from . import barycenter as bar_module
from . import costs as cost_module
from . import epsilon_scheduler as eps_scheduler
from . import exact
from . import geometry as geom_module
from . import problem as prob_module
from . import sinkhorn as sinkhorn_module
from . import validation

EpsilonLike = Union[float, eps_scheduler.Epsilon]


def _report(
    name: str,
    converged: bool,
    n_iters: int,
    error: Optional[float],
    verbose: bool,
) -> None:
  if verbose:
    status = "Converged" if converged else "Max iterations reached or diverged"
    line = f"{name}: {status} after {n_iters} iterations."
    if error is not None:
      line += f" Error = {error:.2e}"
    print(line)
  if not converged:
    validation.warn_not_converged(name, n_iters, error)


def _check_epsilon(epsilon: EpsilonLike) -> None:
  target = epsilon.target if isinstance(
      epsilon, eps_scheduler.Epsilon
  ) else epsilon
  validation.check_positive(target, "epsilon")


def _prepare(
    a, b, cost_matrix, allow_batch: bool = False
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
  a = validation.as_marginal(a, "a")
  b = validation.as_marginal(b, "b", allow_batch=allow_batch)
  cost = validation.as_cost_matrix(cost_matrix, (a.shape[0], b.shape[0]))
  return a, b, cost


# Exact transport.


def exact_solve(
    a,
    b,
    cost_matrix,
    max_iterations: int = 100_000,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
    verbose: bool = False,
) -> exact.ExactOutput:
  """Solve exact OT and return the full :class:`~otsolve.exact.ExactOutput`.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal, ``[m]``, with the same mass as ``a``.
    cost_matrix: ``[n, m]``.
    max_iterations: pivot budget of the network simplex.
    mass_tolerance: largest accepted difference of total masses; ``b`` is
      then rescaled to the mass of ``a``.
    verbose: print a convergence report.

  Returns:
    The exact output.
  """
  a, b, cost = _prepare(a, b, cost_matrix)
  validation.check_mass_balance(a, b, mass_tolerance)
  if np.sum(b) > 0:
    b = b * (np.sum(a) / np.sum(b))
  out = exact.solve(a, b, cost, max_iterations=max_iterations)
  _report("Network simplex", out.converged, out.n_iters, None, verbose)
  return out


def exact_plan(a, b, cost_matrix, **kwargs) -> np.ndarray:
  r"""Optimal transport plan of the unregularized problem.

  Solves :math:`\min_{P \in \Pi(a, b)} \langle P, C \rangle`.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal, ``[m]``, with the same mass as ``a``.
    cost_matrix: ``[n, m]``.
    kwargs: see :func:`exact_solve`.

  Returns:
    The plan, ``[n, m]``.
  """
  return exact_solve(a, b, cost_matrix, **kwargs).matrix


def exact_cost(a, b, cost_matrix, **kwargs) -> float:
  """Optimal transport cost :math:`\\langle P^\\star, C \\rangle`."""
  return exact_solve(a, b, cost_matrix, **kwargs).cost


def _solve_1d(
    x_a, x_b, a, b, metric: str, p: float,
    mass_tolerance: float
) -> exact.ExactOutput:
  x_a = validation.as_support(x_a, "x_a")
  x_b = validation.as_support(x_b, "x_b")
  if a is not None:
    a = validation.as_marginal(a, "a", size=x_a.shape[0])
  if b is not None:
    b = validation.as_marginal(b, "b", size=x_b.shape[0])
  if a is not None and b is not None:
    validation.check_mass_balance(a, b, mass_tolerance)
  return exact.solve_1d(
      x_a, x_b, a=a, b=b, cost_fn=cost_module.get_cost_fn(metric, p)
  )


def exact_plan_1d(
    x_a,
    x_b,
    a=None,
    b=None,
    metric: str = "sqeuclidean",
    p: float = 1.0,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
) -> jnp.ndarray:
  """Optimal transport plan between two measures on the real line.

  Args:
    x_a: source locations, ``[n]``.
    x_b: target locations, ``[m]``.
    a: source weights, uniform if :obj:`None`.
    b: target weights, uniform if :obj:`None`.
    metric: ground cost, ``'sqeuclidean'``, ``'euclidean'``, ``'cityblock'``
      or ``'minkowski'`` (:math:`|x - y|^p`).
    p: power of the ``'minkowski'`` cost.
    mass_tolerance: largest accepted difference of total masses.

  Returns:
    The plan, ``[n, m]``, rows and columns in input order.
  """
  return _solve_1d(x_a, x_b, a, b, metric, p, mass_tolerance).matrix


def exact_cost_1d(
    x_a,
    x_b,
    a=None,
    b=None,
    metric: str = "sqeuclidean",
    p: float = 1.0,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
) -> float:
  """Optimal transport cost between two measures on the real line.

  See :func:`exact_plan_1d` for the arguments.
  """
  return _solve_1d(x_a, x_b, a, b, metric, p, mass_tolerance).cost


# Entropic transport.


def sinkhorn_solve(
    a,
    b,
    cost_matrix,
    epsilon: EpsilonLike,
    reg_m: Optional[float] = None,
    threshold: float = 1e-9,
    max_iterations: int = 1000,
    lse_mode: bool = True,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
    verbose: bool = False,
) -> sinkhorn_module.SinkhornOutput:
  """Solve entropic OT for a single target and return the full output.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal, ``[m]``.
    cost_matrix: ``[n, m]``.
    epsilon: entropic regularization, or an epsilon scheduler.
    reg_m: KL relaxation of the marginals; :obj:`None` (or ``inf``) for the
      balanced problem, whose marginals must have the same mass.
    threshold: tolerance on the marginal violation (balanced) or on the
      change between iterates (unbalanced).
    max_iterations: maximum number of Sinkhorn iterations.
    lse_mode: log-domain (stabilized) iterations if ``True``, kernel
      scaling otherwise.
    mass_tolerance: largest accepted difference of total masses.
    verbose: print a convergence report.

  Returns:
    The Sinkhorn output.
  """
  geom, ot_prob, solver = _sinkhorn_setup(
      a, b, cost_matrix, epsilon, reg_m, threshold, max_iterations, lse_mode,
      mass_tolerance, allow_batch=False
  )
  out = solver(ot_prob)
  _report(
      "Sinkhorn", bool(out.converged), int(out.n_iters),
      float(out.last_error), verbose
  )
  return out


def _sinkhorn_setup(
    a, b, cost_matrix, epsilon, reg_m, threshold, max_iterations, lse_mode,
    mass_tolerance, allow_batch
):
  a, b, cost = _prepare(a, b, cost_matrix, allow_batch=allow_batch)
  _check_epsilon(epsilon)
  if reg_m is None:
    validation.check_mass_balance(a, b, mass_tolerance)
  else:
    validation.check_positive(reg_m, "reg_m")
  geom = geom_module.Geometry(jnp.asarray(cost), epsilon=epsilon)
  ot_prob = prob_module.LinearProblem.from_reg_m(
      geom, a=jnp.asarray(a), b=jnp.asarray(b), reg_m=reg_m
  )
  solver = sinkhorn_module.Sinkhorn(
      lse_mode=lse_mode, threshold=threshold, max_iterations=max_iterations
  )
  return geom, ot_prob, solver


def _sinkhorn_batch_costs(
    ot_prob: prob_module.LinearProblem,
    solver: sinkhorn_module.Sinkhorn,
    verbose: bool,
) -> jnp.ndarray:
  """Linear costs against every column of ``ot_prob.b``, vectorized."""
  a, geom = ot_prob.a, ot_prob.geom

  def solve_one(b_col: jnp.ndarray):
    prob = prob_module.LinearProblem(
        geom, a=a, b=b_col, tau_a=ot_prob.tau_a, tau_b=ot_prob.tau_b
    )
    out = solver(prob)
    return out.primal_cost, out.converged, out.n_iters, out.last_error

  costs, converged, n_iters, errors = jax.vmap(solve_one)(ot_prob.b.T)
  _report(
      "Sinkhorn", bool(jnp.all(converged)), int(jnp.max(n_iters)),
      float(jnp.max(errors)), verbose
  )
  return costs


def _sinkhorn(
    a, b, cost_matrix, epsilon, reg_m, return_plan, threshold, max_iterations,
    lse_mode, mass_tolerance, verbose
):
  _, ot_prob, solver = _sinkhorn_setup(
      a, b, cost_matrix, epsilon, reg_m, threshold, max_iterations, lse_mode,
      mass_tolerance, allow_batch=True
  )
  if ot_prob.b.ndim == 2:
    return _sinkhorn_batch_costs(ot_prob, solver, verbose)
  out = solver(ot_prob)
  _report(
      "Sinkhorn", bool(out.converged), int(out.n_iters),
      float(out.last_error), verbose
  )
  return out.matrix if return_plan else float(out.primal_cost)


def sinkhorn_plan(
    a,
    b,
    cost_matrix,
    epsilon: EpsilonLike,
    threshold: float = 1e-9,
    max_iterations: int = 1000,
    lse_mode: bool = True,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
    verbose: bool = False,
) -> jnp.ndarray:
  r"""Transport plan of the entropic OT problem.

  Solves :math:`\min_{P \in \Pi(a, b)} \langle P, C \rangle +
  \varepsilon \sum_{ij} P_{ij} \log P_{ij}`.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal ``[m]``, or ``[m, k]`` holding ``k`` target marginals
      as columns. In the latter case the ``k`` transport costs are returned
      instead of a plan.
    cost_matrix: ``[n, m]``.
    epsilon: entropic regularization, or an epsilon scheduler.
    threshold: tolerance on the marginal violation.
    max_iterations: maximum number of Sinkhorn iterations.
    lse_mode: log-domain (stabilized) iterations if ``True``.
    mass_tolerance: largest accepted difference of total masses.
    verbose: print a convergence report.

  Returns:
    The plan ``[n, m]``, or the costs ``[k]`` for batched targets.
  """
  return _sinkhorn(
      a, b, cost_matrix, epsilon, None, True, threshold, max_iterations,
      lse_mode, mass_tolerance, verbose
  )


def sinkhorn_cost(
    a,
    b,
    cost_matrix,
    epsilon: EpsilonLike,
    threshold: float = 1e-9,
    max_iterations: int = 1000,
    lse_mode: bool = True,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
    verbose: bool = False,
) -> Union[float, jnp.ndarray]:
  """Transport cost :math:`\\langle P, C \\rangle` of the entropic plan.

  See :func:`sinkhorn_plan` for the arguments. Returns a float, or one cost
  per column of ``b`` when ``b`` is 2-D.
  """
  return _sinkhorn(
      a, b, cost_matrix, epsilon, None, False, threshold, max_iterations,
      lse_mode, mass_tolerance, verbose
  )


def sinkhorn_unbalanced_plan(
    a,
    b,
    cost_matrix,
    epsilon: EpsilonLike,
    reg_m: float,
    threshold: float = 1e-9,
    max_iterations: int = 1000,
    lse_mode: bool = True,
    verbose: bool = False,
) -> jnp.ndarray:
  r"""Transport plan of the KL-relaxed entropic OT problem.

  Solves :math:`\min_P \langle P, C \rangle + \varepsilon \sum_{ij}
  P_{ij}\log P_{ij} + \lambda \mathrm{KL}(P1 | a) + \lambda
  \mathrm{KL}(P^T 1 | b)` with :math:`\lambda` = ``reg_m``. Marginals need
  not have the same mass.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal ``[m]`` or ``[m, k]`` (costs are then returned).
    cost_matrix: ``[n, m]``.
    epsilon: entropic regularization, or an epsilon scheduler.
    reg_m: marginal relaxation :math:`\lambda > 0`; ``inf`` recovers the
      balanced problem.
    threshold: tolerance on the change between successive iterates.
    max_iterations: maximum number of Sinkhorn iterations.
    lse_mode: log-domain (stabilized) iterations if ``True``.
    verbose: print a convergence report.

  Returns:
    The plan ``[n, m]``, or the costs ``[k]`` for batched targets.
  """
  return _sinkhorn(
      a, b, cost_matrix, epsilon, reg_m, True, threshold, max_iterations,
      lse_mode, None, verbose
  )


def sinkhorn_unbalanced_cost(
    a,
    b,
    cost_matrix,
    epsilon: EpsilonLike,
    reg_m: float,
    threshold: float = 1e-9,
    max_iterations: int = 1000,
    lse_mode: bool = True,
    verbose: bool = False,
) -> Union[float, jnp.ndarray]:
  """Transport cost :math:`\\langle P, C \\rangle` of the relaxed plan.

  See :func:`sinkhorn_unbalanced_plan` for the arguments.
  """
  return _sinkhorn(
      a, b, cost_matrix, epsilon, reg_m, False, threshold, max_iterations,
      lse_mode, None, verbose
  )


def sinkhorn_divergence(
    a,
    b,
    cost_matrix,
    epsilon: EpsilonLike,
    cost_aa=None,
    cost_bb=None,
    **kwargs,
) -> float:
  r"""Debiased Sinkhorn cost between two histograms.

  :math:`S_\varepsilon(a, b) = OT_\varepsilon(a, b) - \frac12
  OT_\varepsilon(a, a) - \frac12 OT_\varepsilon(b, b)`, where
  :math:`OT_\varepsilon` is the regularized objective. It vanishes for
  ``a == b``; negative round-off is clamped to 0.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal, ``[m]``.
    cost_matrix: ``[n, m]`` cost between the two supports.
    epsilon: entropic regularization.
    cost_aa: ``[n, n]`` cost within the source support. Defaults to
      ``cost_matrix`` when both histograms share one (square) support.
    cost_bb: ``[m, m]`` cost within the target support, same default.
    kwargs: keyword arguments for :func:`sinkhorn_solve`.

  Returns:
    The divergence.
  """
  cost = validation.as_cost_matrix(cost_matrix)
  if cost_aa is None or cost_bb is None:
    if cost.shape[0] != cost.shape[1]:
      raise validation.ShapeMismatchError(
          "`cost_aa` and `cost_bb` are required when the two supports differ."
      )
    cost_aa = cost if cost_aa is None else cost_aa
    cost_bb = cost if cost_bb is None else cost_bb

  ot_ab = sinkhorn_solve(a, b, cost, epsilon, **kwargs).reg_ot_cost
  ot_aa = sinkhorn_solve(a, a, cost_aa, epsilon, **kwargs).reg_ot_cost
  ot_bb = sinkhorn_solve(b, b, cost_bb, epsilon, **kwargs).reg_ot_cost
  divergence = float(ot_ab) - 0.5 * float(ot_aa) - 0.5 * float(ot_bb)
  return max(divergence, 0.0)


# Barycenters.


def barycenter_solve(
    A,
    cost_matrix,
    epsilon: EpsilonLike,
    reg_m: Optional[float] = None,
    weights=None,
    threshold: float = 1e-6,
    max_iterations: int = 1000,
    mass_tolerance: float = validation.DEFAULT_MASS_TOLERANCE,
    verbose: bool = False,
) -> bar_module.BarycenterOutput:
  """Compute a barycenter and return the full output.

  Args:
    A: histograms as columns, ``[k, N]``.
    cost_matrix: ``[k, k]`` cost on the common support.
    epsilon: entropic regularization.
    reg_m: KL relaxation; :obj:`None` for the balanced barycenter, whose
      histograms must all have the same mass.
    weights: ``[N]`` nonnegative weights, normalized to sum 1. Uniform if
      :obj:`None`.
    threshold: tolerance on the relative change of the barycenter.
    max_iterations: maximum number of iterations.
    mass_tolerance: largest accepted difference of histogram masses.
    verbose: print a convergence report.

  Returns:
    The barycenter output.
  """
  A = validation.as_marginal(A, "A", allow_batch=True)
  if A.ndim == 1:
    A = A[:, None]
  k, num = A.shape
  cost = validation.as_cost_matrix(cost_matrix, (k, k))
  _check_epsilon(epsilon)
  if weights is not None:
    weights = validation.as_marginal(weights, "weights", size=num)
    validation.check_positive(np.sum(weights), "sum of weights")
    weights = jnp.asarray(weights / np.sum(weights))
  if reg_m is None:
    validation.check_mass_balance(A[:, 0], A, mass_tolerance)
  else:
    validation.check_positive(reg_m, "reg_m")

  geom = geom_module.Geometry(jnp.asarray(cost), epsilon=epsilon)
  bar_prob = bar_module.BarycenterProblem.from_reg_m(
      geom, jnp.asarray(A.T), weights=weights, reg_m=reg_m
  )
  solver = bar_module.FixedBarycenter(
      threshold=threshold, max_iterations=max_iterations
  )
  out = solver(bar_prob)
  _report(
      "Barycenter", bool(out.converged), int(out.n_iters),
      float(out.last_error), verbose
  )
  return out


def barycenter(
    A,
    cost_matrix,
    epsilon: EpsilonLike,
    weights=None,
    **kwargs,
) -> jnp.ndarray:
  r"""Entropic Wasserstein barycenter of histograms on a common support.

  Minimizes :math:`\sum_i w_i W_{\varepsilon, C}(b, a_i)` over histograms
  :math:`b`; the result sums to 1.

  Args:
    A: histograms as columns, ``[k, N]``.
    cost_matrix: ``[k, k]``.
    epsilon: entropic regularization.
    weights: ``[N]``, uniform if :obj:`None`.
    kwargs: see :func:`barycenter_solve`.

  Returns:
    The barycenter, ``[k]``.
  """
  return barycenter_solve(
      A, cost_matrix, epsilon, weights=weights, **kwargs
  ).histogram


def barycenter_unbalanced(
    A,
    cost_matrix,
    epsilon: EpsilonLike,
    reg_m: float,
    weights=None,
    **kwargs,
) -> jnp.ndarray:
  r"""Barycenter under KL-relaxed entropic transport.

  The barycenter minimizes :math:`\sum_i w_i W_{\varepsilon, C, \lambda}(b,
  a_i)`. Its mass is free: it generally does not sum to 1, and only
  approaches 1 as ``reg_m`` grows.

  Args:
    A: histograms as columns, ``[k, N]``.
    cost_matrix: ``[k, k]``.
    epsilon: entropic regularization.
    reg_m: marginal relaxation :math:`\lambda > 0`.
    weights: ``[N]``, uniform if :obj:`None`.
    kwargs: see :func:`barycenter_solve`.

  Returns:
    The barycenter, ``[k]``.
  """
  return barycenter_solve(
      A, cost_matrix, epsilon, reg_m=reg_m, weights=weights, **kwargs
  ).histogram
