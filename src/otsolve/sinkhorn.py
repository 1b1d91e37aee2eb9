# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

from typing import Any, NamedTuple, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp
import numpy as np

from . import fixed_point_loop
from . import geometry as geom_module
from . import initializers as init_lib
from . import math_utils as mu
from . import problem as prob_module


class SinkhornState(NamedTuple):
  """Holds the state variables used to solve OT with Sinkhorn."""

  potentials: Tuple[jnp.ndarray, ...]
  errors: Optional[jnp.ndarray] = None

  def set(self, **kwargs: Any) -> "SinkhornState":
    """Return a copy of self, with potential overwrites."""
    return self._replace(**kwargs)

  @property
  def fu(self) -> jnp.ndarray:
    """The first dual potential or scaling."""
    return self.potentials[0]

  @property
  def gv(self) -> jnp.ndarray:
    """The second dual potential or scaling."""
    return self.potentials[1]


def marginal_error(
    f_u: jnp.ndarray,
    g_v: jnp.ndarray,
    target: jnp.ndarray,
    geom: geom_module.Geometry,
    axis: int = 0,
    norm_error: Sequence[int] = (1,),
    lse_mode: bool = True
) -> jnp.ndarray:
  """Output how far Sinkhorn solution is w.r.t target.

  Args:
    f_u: a vector of potentials or scalings for the first marginal.
    g_v: a vector of potentials or scalings for the second marginal.
    target: target marginal.
    geom: Geometry object.
    axis: axis (0 or 1) along which to compute marginal.
    norm_error: (tuple of int) p's to compute p-norm between marginal/target
    lse_mode: whether operating on scalings or potentials

  Returns:
    Array of floats, quantifying difference between target / marginal.
  """
  if lse_mode:
    marginal = geom.marginal_from_potentials(f_u, g_v, axis=axis)
  else:
    marginal = geom.marginal_from_scalings(f_u, g_v, axis=axis)
  norm_error = jnp.asarray(norm_error)
  return jnp.sum(
      jnp.abs(marginal - target) ** norm_error[:, jnp.newaxis], axis=1
  ) ** (1.0 / norm_error)


def iterate_change(
    old: Tuple[jnp.ndarray, jnp.ndarray],
    new: Tuple[jnp.ndarray, jnp.ndarray],
    geom: geom_module.Geometry,
    lse_mode: bool = True,
) -> jnp.ndarray:
  r"""Largest change of the log-scalings between two successive iterates.

  :math:`\max |\log u' - \log u|` over both scalings, i.e. the logarithm of the
  largest relative change of a scaling. Atoms with no mass (infinite
  log-scaling) are skipped.

  Args:
    old: potentials (``lse_mode``) or scalings before the update.
    new: potentials or scalings after the update.
    geom: Geometry object.
    lse_mode: whether operating on scalings or potentials.

  Returns:
    A scalar.
  """

  def log_scaling(x: jnp.ndarray) -> jnp.ndarray:
    if lse_mode:
      return x / geom.epsilon
    return jnp.log(jnp.where(x > 0.0, x, 0.0))

  def change(x_old: jnp.ndarray, x_new: jnp.ndarray) -> jnp.ndarray:
    x_old, x_new = log_scaling(x_old), log_scaling(x_new)
    finite = jnp.logical_and(jnp.isfinite(x_old), jnp.isfinite(x_new))
    return jnp.max(jnp.where(finite, jnp.abs(x_new - x_old), 0.0))

  return jnp.maximum(change(old[0], new[0]), change(old[1], new[1]))


class SinkhornOutput(NamedTuple):
  """Holds the output of a Sinkhorn solver applied to a problem.

  Args:
    potentials: list of optimal dual variables, two vector of size
      ``ot.prob.shape[0]`` and ``ot.prob.shape[1]`` returned by Sinkhorn
    errors: vector or errors, along iterations.
    reg_ot_cost: the regularized optimal transport cost, i.e. the transport
      cost plus the entropic term and, for unbalanced problems, the KL
      penalties on the marginals.
    ot_prob: stores the definition of the OT problem.
    threshold: convergence threshold used to control the termination of the
      algorithm.
    converged: whether the output corresponds to a solution whose error is
      below the convergence threshold.
    inner_iterations: number of iterations that were run between two
      computations of errors.
    n_iters: number of Sinkhorn iterations that were run.
  """

  potentials: Tuple[jnp.ndarray, ...]
  errors: Optional[jnp.ndarray] = None
  reg_ot_cost: Optional[jnp.ndarray] = None
  ot_prob: Optional[prob_module.LinearProblem] = None
  threshold: Optional[jnp.ndarray] = None
  converged: Optional[bool] = None
  inner_iterations: Optional[int] = None
  n_iters: Optional[jnp.ndarray] = None

  def set(self, **kwargs: Any) -> "SinkhornOutput":
    """Return a copy of self, with potential overwrites."""
    return self._replace(**kwargs)

  @property
  def f(self) -> jnp.ndarray:
    """The first dual potential."""
    return self.potentials[0]

  @property
  def g(self) -> jnp.ndarray:
    """The second dual potential."""
    return self.potentials[1]

  @property
  def geom(self) -> geom_module.Geometry:
    return self.ot_prob.geom

  @property
  def matrix(self) -> jnp.ndarray:
    """Transport matrix, :math:`\\mathrm{diag}(u) K \\mathrm{diag}(v)`."""
    return self.geom.transport_from_potentials(self.f, self.g)

  @property
  def primal_cost(self) -> jnp.ndarray:
    """Linear transport cost :math:`\\langle P, C \\rangle` of the plan."""
    return jnp.sum(self.matrix * self.geom.cost_matrix)

  @property
  def ent_reg_cost(self) -> jnp.ndarray:
    """Entropic term :math:`\\varepsilon \\sum_{ij} P_{ij} \\log P_{ij}`."""
    return self.geom.epsilon * jnp.sum(mu.xlogx(self.matrix))

  @property
  def transport_mass(self) -> jnp.ndarray:
    """Total mass moved by the plan."""
    return jnp.sum(self.matrix)

  def marginal(self, axis: int) -> jnp.ndarray:
    """Row (``axis=1``) or column (``axis=0``) sums of the plan."""
    return self.geom.marginal_from_potentials(self.f, self.g, axis=axis)

  @property
  def last_error(self) -> jnp.ndarray:
    """Error computed at the end of the last block of iterations."""
    idx = jnp.maximum(self.n_iters - 1, 0) // self.inner_iterations
    return self.errors[idx]


def compute_reg_ot_cost(
    f: jnp.ndarray, g: jnp.ndarray, ot_prob: prob_module.LinearProblem
) -> jnp.ndarray:
  r"""Regularized objective evaluated at the plan induced by ``f`` and ``g``.

  .. math::

    \langle P, C\rangle + \varepsilon \sum_{ij} P_{ij}\log P_{ij}
    + \lambda_a \mathrm{KL}(P1 | a) + \lambda_b \mathrm{KL}(P^T1 | b)

  where the KL terms only appear on relaxed marginals, with
  :math:`\lambda = \varepsilon\tau / (1 - \tau)`.

  Args:
    f: potential of size ``n``.
    g: potential of size ``m``.
    ot_prob: linear optimal transport problem.

  Returns:
    The regularized transport cost.
  """
  geom = ot_prob.geom
  matrix = geom.transport_from_potentials(f, g)
  cost = jnp.sum(matrix * geom.cost_matrix)
  cost += geom.epsilon * jnp.sum(mu.xlogx(matrix))
  if ot_prob.tau_a < 1.0:
    reg_a = geom.epsilon * ot_prob.tau_a / (1.0 - ot_prob.tau_a)
    cost += reg_a * mu.gen_kl(jnp.sum(matrix, axis=1), ot_prob.a)
  if ot_prob.tau_b < 1.0:
    reg_b = geom.epsilon * ot_prob.tau_b / (1.0 - ot_prob.tau_b)
    cost += reg_b * mu.gen_kl(jnp.sum(matrix, axis=0), ot_prob.b)
  return cost


@jax.tree_util.register_pytree_node_class
class Sinkhorn:
  r"""Sinkhorn solver.

  The Sinkhorn algorithm is a fixed point iteration that solves a
  regularized optimal transport (reg-OT) problem between two measures, by
  alternately rescaling the rows and columns of the Gibbs kernel. For
  unbalanced problems (``tau_a`` or ``tau_b`` below 1) each rescaling is
  damped by the corresponding exponent.

  Balanced problems are monitored through the violation of the second
  marginal; unbalanced ones, whose marginals are only matched approximately,
  through the change between successive iterates (see
  :func:`iterate_change`).

  Args:
    lse_mode: :obj:`True` for log-sum-exp computations, :obj:`False` for kernel
      multiplication. The log-domain path is the stable one for small
      :math:`\varepsilon`, where the kernel underflows.
    threshold: tolerance used to stop the Sinkhorn iterations.
    norm_error: power used to define the :math:`p`-norm used to quantify
      the marginal violation.
    inner_iterations: the Sinkhorn error is not recomputed at each
      iteration but every ``inner_iterations`` instead.
    min_iterations: the minimum number of Sinkhorn iterations carried
      out before the convergence test can stop the loop.
    max_iterations: the maximum number of Sinkhorn iterations.
    initializer: method to compute the initial potentials/scalings.
  """

  def __init__(
      self,
      lse_mode: bool = True,
      threshold: float = 1e-3,
      norm_error: int = 1,
      inner_iterations: int = 10,
      min_iterations: int = 0,
      max_iterations: int = 2000,
      initializer: Optional[init_lib.DefaultInitializer] = None,
  ):
    self.lse_mode = lse_mode
    self.threshold = threshold
    self.inner_iterations = inner_iterations
    self.min_iterations = min_iterations
    self.max_iterations = max_iterations
    self._norm_error = norm_error
    self.initializer = init_lib.DefaultInitializer(
    ) if initializer is None else initializer

  def __call__(
      self,
      ot_prob: prob_module.LinearProblem,
      init: Optional[Tuple[jnp.ndarray, jnp.ndarray]] = None,
  ) -> SinkhornOutput:
    """Run Sinkhorn algorithm.

    Args:
      ot_prob: Linear OT problem.
      init: Initial dual potentials/scalings ``f_u`` and ``g_v``.
        If :obj:`None`, run the initializer.

    Returns:
      The Sinkhorn output.
    """
    if init is None:
      init = self.initializer(ot_prob, lse_mode=self.lse_mode)
    return run(ot_prob, self, init)

  def lse_step(
      self, ot_prob: prob_module.LinearProblem, state: SinkhornState,
      iteration: int
  ) -> SinkhornState:
    """Sinkhorn LSE update."""
    geom = ot_prob.geom
    gv = ot_prob.tau_b * geom.update_potential(
        state.fu, state.gv, jnp.log(ot_prob.b), iteration, axis=0
    )
    fu = ot_prob.tau_a * geom.update_potential(
        state.fu, gv, jnp.log(ot_prob.a), iteration, axis=1
    )
    return state.set(potentials=(fu, gv))

  def kernel_step(
      self, ot_prob: prob_module.LinearProblem, state: SinkhornState,
      iteration: int
  ) -> SinkhornState:
    """Sinkhorn multiplicative update."""
    geom = ot_prob.geom
    gv = geom.update_scaling(
        state.fu, ot_prob.b, iteration, axis=0
    ) ** ot_prob.tau_b
    fu = geom.update_scaling(gv, ot_prob.a, iteration, axis=1) ** ot_prob.tau_a
    return state.set(potentials=(fu, gv))

  def one_iteration(
      self, ot_prob: prob_module.LinearProblem, state: SinkhornState,
      iteration: int, compute_error: bool
  ) -> SinkhornState:
    """Carries out one Sinkhorn iteration.

    Args:
      ot_prob: the transport problem definition
      state: SinkhornState named tuple.
      iteration: the current iteration of the Sinkhorn loop.
      compute_error: flag to indicate this iteration computes/stores an error

    Returns:
      The updated state.
    """
    old_potentials = state.potentials
    if self.lse_mode:
      state = self.lse_step(ot_prob, state, iteration)
    else:
      state = self.kernel_step(ot_prob, state, iteration)

    if ot_prob.is_balanced:
      error_fn = lambda state, prob: marginal_error(
          state.fu, state.gv, prob.b, prob.geom, 0, self.norm_error,
          self.lse_mode
      )[0]
    else:
      error_fn = lambda state, prob: iterate_change(
          old_potentials, state.potentials, prob.geom, self.lse_mode
      )

    err = jax.lax.cond(
        jnp.logical_or(iteration == self.max_iterations - 1, compute_error),
        error_fn,
        lambda *_: jnp.array(jnp.inf, dtype=ot_prob.dtype),
        state,
        ot_prob,
    )
    errors = state.errors.at[iteration // self.inner_iterations, :].set(err)
    return state.set(errors=errors)

  def _converged(self, state: SinkhornState, iteration: int) -> bool:
    err = state.errors[iteration // self.inner_iterations - 1, 0]
    return jnp.logical_and(iteration > 0, err < self.threshold)

  def _diverged(self, state: SinkhornState, iteration: int) -> bool:
    err = state.errors[iteration // self.inner_iterations - 1, 0]
    return jnp.logical_not(jnp.isfinite(err))

  def _continue(self, state: SinkhornState, iteration: int) -> bool:
    """Continue while not(converged) and not(diverged)."""
    return jnp.logical_and(
        jnp.logical_not(self._diverged(state, iteration)),
        jnp.logical_not(self._converged(state, iteration))
    )

  @property
  def outer_iterations(self) -> int:
    """Upper bound on number of times inner_iterations are carried out."""
    return int(np.ceil(self.max_iterations / self.inner_iterations))

  def init_state(
      self, ot_prob: prob_module.LinearProblem,
      init: Tuple[jnp.ndarray, jnp.ndarray]
  ) -> SinkhornState:
    """Return the initial state of the loop."""
    errors = -jnp.ones((self.outer_iterations, len(self.norm_error)),
                       dtype=ot_prob.dtype)
    return SinkhornState(init, errors=errors)

  def output_from_state(
      self, ot_prob: prob_module.LinearProblem, state: SinkhornState,
      n_iters: jnp.ndarray
  ) -> SinkhornOutput:
    """Create an output from a loop state.

    Args:
      ot_prob: the transport problem.
      state: a SinkhornState.
      n_iters: number of iterations that were run.

    Returns:
      A SinkhornOutput.
    """
    geom = ot_prob.geom

    f = state.fu if self.lse_mode else geom.potential_from_scaling(state.fu)
    g = state.gv if self.lse_mode else geom.potential_from_scaling(state.gv)

    last = state.errors[jnp.maximum(n_iters - 1, 0) // self.inner_iterations, 0]
    converged = jnp.logical_and(
        jnp.isfinite(last), jnp.logical_and(last >= 0, last < self.threshold)
    )

    return SinkhornOutput((f, g),
                          errors=state.errors[:, 0],
                          reg_ot_cost=compute_reg_ot_cost(f, g, ot_prob),
                          ot_prob=ot_prob,
                          threshold=jnp.array(self.threshold),
                          converged=converged,
                          inner_iterations=self.inner_iterations,
                          n_iters=n_iters)

  @property
  def norm_error(self) -> Tuple[int, ...]:
    """Powers used to compute the p-norm between marginal/target."""
    return self._norm_error,

  def tree_flatten(self):
    aux = vars(self).copy()
    aux["norm_error"] = aux.pop("_norm_error")
    aux.pop("threshold")
    return [self.threshold], aux

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    return cls(**aux_data, threshold=children[0])


def run(
    ot_prob: prob_module.LinearProblem, solver: Sinkhorn,
    init: Tuple[jnp.ndarray, ...]
) -> SinkhornOutput:
  """Jittable Sinkhorn loop, outputting a state upgraded to an output."""

  def cond_fn(
      iteration: int, const: Tuple[prob_module.LinearProblem, Sinkhorn],
      state: SinkhornState
  ) -> bool:
    _, solver = const
    return solver._continue(state, iteration)

  def body_fn(
      iteration: int, const: Tuple[prob_module.LinearProblem, Sinkhorn],
      state: SinkhornState, compute_error: bool
  ) -> SinkhornState:
    ot_prob, solver = const
    return solver.one_iteration(ot_prob, state, iteration, compute_error)

  const = ot_prob, solver
  state = solver.init_state(ot_prob, init)
  n_iters, state = fixed_point_loop.fixpoint_iter(
      cond_fn, body_fn, solver.min_iterations, solver.max_iterations,
      solver.inner_iterations, const, state
  )
  return solver.output_from_state(ot_prob, state, n_iters)
