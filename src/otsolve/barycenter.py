from typing import Any, Dict, NamedTuple, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from . import fixed_point_loop
from . import geometry as geom_module
from . import math_utils as mu
from . import problem as prob_module


@jax.tree_util.register_pytree_node_class
class BarycenterProblem:
  r"""Entropic barycenter of histograms sharing one support.

  The barycenter :math:`b` minimizes
  :math:`\sum_i w_i \, W_{\varepsilon, C}(b, a_i)`. Transport plans have the
  barycenter on their rows and the histograms on their columns.

  Args:
    geom: geometry of the common support, a square ``[k, k]`` cost.
    a: histograms, one per row, ``[N, k]``.
    weights: nonnegative weights ``[N]`` summing to 1. Uniform if
      :obj:`None`.
    tau: :math:`\lambda / (\lambda + \varepsilon)` for a KL relaxation of
      strength :math:`\lambda` on all marginals, 1 for the balanced problem.
  """

  def __init__(
      self,
      geom: geom_module.Geometry,
      a: jnp.ndarray,
      weights: Optional[jnp.ndarray] = None,
      tau: float = 1.0,
  ):
    self.geom = geom
    self.a = a
    self._weights = weights
    self.tau = tau

  @classmethod
  def from_reg_m(
      cls,
      geom: geom_module.Geometry,
      a: jnp.ndarray,
      weights: Optional[jnp.ndarray] = None,
      reg_m: Optional[float] = None,
  ) -> "BarycenterProblem":
    tau = prob_module.tau_from_reg_m(reg_m, float(geom.epsilon))
    return cls(geom, a, weights=weights, tau=tau)

  @property
  def weights(self) -> jnp.ndarray:
    if self._weights is not None:
      return self._weights
    num = self.a.shape[0]
    return jnp.full((num,), 1.0 / num, dtype=self.a.dtype)

  @property
  def is_balanced(self) -> bool:
    return self.tau == 1.0

  @property
  def epsilon(self) -> float:
    return self.geom.epsilon

  def tree_flatten(self) -> Tuple[Sequence[Any], Dict[str, Any]]:
    return [self.geom, self.a, self._weights], {"tau": self.tau}

  @classmethod
  def tree_unflatten(
      cls, aux_data: Dict[str, Any], children: Sequence[Any]
  ) -> "BarycenterProblem":
    geom, a, weights = children
    return cls(geom, a, weights=weights, **aux_data)


def geometric_mean_update(
    log_kv: jnp.ndarray, weights: jnp.ndarray
) -> jnp.ndarray:
  r"""Log of the normalized weighted geometric mean of the kernel products.

  Args:
    log_kv: :math:`\log K v_i`, one row per histogram, ``[N, k]``.
    weights: ``[N]``.

  Returns:
    :math:`\log b` with :math:`b \propto \prod_i (K v_i)^{w_i}`,
    :math:`\sum b = 1`.
  """
  log_b = jnp.sum(weights[:, None] * log_kv, axis=0)
  return log_b - mu.logsumexp(log_b)


def power_mean_update(
    log_kv: jnp.ndarray, weights: jnp.ndarray, tau: float
) -> jnp.ndarray:
  r"""Log of the weighted power mean of the kernel products.

  This is the barycenter update of the KL-relaxed problem,
  :math:`b = (\sum_i w_i (K v_i)^{1 - \tau})^{1 / (1 - \tau)}`. It is not
  normalized: the relaxed barycenter does not sum to 1 in general. For
  ``tau = 1`` it is the (unnormalized) geometric mean.

  Args:
    log_kv: :math:`\log K v_i`, one row per histogram, ``[N, k]``.
    weights: ``[N]``.
    tau: :math:`\lambda / (\lambda + \varepsilon)`.

  Returns:
    :math:`\log b`.
  """
  if tau == 1.0:
    return jnp.sum(weights[:, None] * log_kv, axis=0)
  power = 1.0 - tau
  return mu.logsumexp(power * log_kv, b=weights[:, None], axis=0) / power


class BarycenterState(NamedTuple):
  """Holds the state of the barycenter iterations."""

  potentials: Tuple[jnp.ndarray, jnp.ndarray]
  log_barycenter: jnp.ndarray
  errors: Optional[jnp.ndarray] = None

  def set(self, **kwargs: Any) -> "BarycenterState":
    return self._replace(**kwargs)


class BarycenterOutput(NamedTuple):
  """Holds the output of a barycenter solver.

  Args:
    histogram: the barycenter, ``[k]``.
    potentials: dual potentials ``(f, g)``, each ``[N, k]``, of the plans
      between the barycenter (rows) and each histogram (columns).
    errors: relative change of the barycenter, recorded every
      ``inner_iterations``; ``-1`` where not computed.
    problem: the barycenter problem.
    threshold: convergence threshold.
    converged: whether the last recorded change is below ``threshold``.
    inner_iterations: iterations between two error computations.
    n_iters: number of iterations that were run.
  """

  histogram: jnp.ndarray
  potentials: Tuple[jnp.ndarray, jnp.ndarray]
  errors: Optional[jnp.ndarray] = None
  problem: Optional[BarycenterProblem] = None
  threshold: Optional[jnp.ndarray] = None
  converged: Optional[bool] = None
  inner_iterations: Optional[int] = None
  n_iters: Optional[jnp.ndarray] = None

  @property
  def matrices(self) -> jnp.ndarray:
    """Transport plans from the barycenter to each histogram, ``[N, k, k]``."""
    geom = self.problem.geom
    return jax.vmap(geom.transport_from_potentials)(*self.potentials)

  @property
  def transport_costs(self) -> jnp.ndarray:
    """Linear costs :math:`\\langle P_i, C \\rangle`, ``[N]``."""
    cost = self.problem.geom.cost_matrix
    return jnp.sum(self.matrices * cost[None], axis=(1, 2))

  @property
  def last_error(self) -> jnp.ndarray:
    idx = jnp.maximum(self.n_iters - 1, 0) // self.inner_iterations
    return self.errors[idx]


@jax.tree_util.register_pytree_node_class
class FixedBarycenter:
  r"""Fixed-support barycenter by iterative Bregman projections.

  Each iteration runs one log-domain Sinkhorn half-step against every
  histogram (vectorized with :func:`jax.vmap`), giving
  :math:`\log K v_i`; the barycenter is then their weighted geometric mean
  (balanced problem, renormalized to sum 1) or power mean (KL-relaxed
  problem, left unnormalized), and the barycenter-side potentials are
  rescaled to match it.

  Args:
    threshold: tolerance on the relative change of the barycenter between
      two successive iterations.
    inner_iterations: the change is computed every ``inner_iterations``.
    min_iterations: minimum number of iterations.
    max_iterations: maximum number of iterations.
  """

  def __init__(
      self,
      threshold: float = 1e-6,
      inner_iterations: int = 10,
      min_iterations: int = 0,
      max_iterations: int = 1000,
  ):
    self.threshold = threshold
    self.inner_iterations = inner_iterations
    self.min_iterations = min_iterations
    self.max_iterations = max_iterations

  def __call__(self, bar_prob: BarycenterProblem) -> BarycenterOutput:
    state = self.init_state(bar_prob)

    def cond_fn(iteration, const, state):
      _, solver = const
      return solver._continue(state, iteration)

    def body_fn(iteration, const, state, compute_error):
      bar_prob, solver = const
      return solver.one_iteration(bar_prob, state, iteration, compute_error)

    n_iters, state = fixed_point_loop.fixpoint_iter(
        cond_fn, body_fn, self.min_iterations, self.max_iterations,
        self.inner_iterations, (bar_prob, self), state
    )
    return self.output_from_state(bar_prob, state, n_iters)

  def init_state(self, bar_prob: BarycenterProblem) -> BarycenterState:
    num, k = bar_prob.a.shape
    dtype = bar_prob.a.dtype
    f = jnp.zeros((num, k), dtype=dtype)
    g = jnp.where(bar_prob.a > 0.0, 0.0, -jnp.inf).astype(dtype)
    log_b = jnp.full((k,), -jnp.log(k), dtype=dtype)
    errors = -jnp.ones((self.outer_iterations,), dtype=dtype)
    return BarycenterState((f, g), log_b, errors=errors)

  def one_iteration(
      self, bar_prob: BarycenterProblem, state: BarycenterState,
      iteration: int, compute_error: bool
  ) -> BarycenterState:
    geom, tau, eps = bar_prob.geom, bar_prob.tau, bar_prob.epsilon
    f, _ = state.potentials
    log_a = jnp.log(bar_prob.a)

    g = tau * jax.vmap(
        lambda f_i, log_a_i: geom.update_potential(
            f_i, jnp.zeros_like(f_i), log_a_i, axis=0
        )
    )(f, log_a)
    g = jnp.where(bar_prob.a > 0.0, g, -jnp.inf)
    log_kv = jax.vmap(
        lambda g_i: geom.apply_lse_kernel(
            jnp.zeros_like(g_i), g_i, eps, axis=1
        )
    )(g) / eps

    if bar_prob.is_balanced:
      log_b = geometric_mean_update(log_kv, bar_prob.weights)
    else:
      log_b = power_mean_update(log_kv, bar_prob.weights, tau)
    f = tau * eps * (log_b[None, :] - log_kv)

    err = jax.lax.cond(
        jnp.logical_or(iteration == self.max_iterations - 1, compute_error),
        lambda old, new: relative_change(old, new),
        lambda *_: jnp.array(jnp.inf, dtype=log_b.dtype),
        state.log_barycenter,
        log_b,
    )
    errors = state.errors.at[iteration // self.inner_iterations].set(err)
    return BarycenterState((f, g), log_b, errors=errors)

  def _continue(self, state: BarycenterState, iteration: int) -> bool:
    err = state.errors[iteration // self.inner_iterations - 1]
    converged = jnp.logical_and(iteration > 0, err < self.threshold)
    return jnp.logical_and(jnp.isfinite(err), jnp.logical_not(converged))

  @property
  def outer_iterations(self) -> int:
    return int(np.ceil(self.max_iterations / self.inner_iterations))

  def output_from_state(
      self, bar_prob: BarycenterProblem, state: BarycenterState,
      n_iters: jnp.ndarray
  ) -> BarycenterOutput:
    last = state.errors[jnp.maximum(n_iters - 1, 0) // self.inner_iterations]
    converged = jnp.logical_and(
        jnp.isfinite(last), jnp.logical_and(last >= 0, last < self.threshold)
    )
    return BarycenterOutput(
        histogram=jnp.exp(state.log_barycenter),
        potentials=state.potentials,
        errors=state.errors,
        problem=bar_prob,
        threshold=jnp.array(self.threshold),
        converged=converged,
        inner_iterations=self.inner_iterations,
        n_iters=n_iters,
    )

  def tree_flatten(self):
    aux = vars(self).copy()
    aux.pop("threshold")
    return [self.threshold], aux

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    return cls(**aux_data, threshold=children[0])


def relative_change(log_old: jnp.ndarray, log_new: jnp.ndarray) -> jnp.ndarray:
  r""":math:`\max_j |b'_j - b_j| / \max_j b'_j` from log-histograms."""
  old, new = jnp.exp(log_old), jnp.exp(log_new)
  return jnp.max(jnp.abs(new - old)) / jnp.max(new)
