# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

from typing import Literal, Optional, Tuple, Union

import jax
import jax.numpy as jnp
import jax.tree_util as jtu

from . import costs as cost_module
from . import epsilon_scheduler as eps_scheduler
from . import math_utils as mu

DEFAULT_EPSILON_SCALE = 0.05


@jtu.register_pytree_node_class
class Geometry:
  r"""Dense ground cost between two discrete supports.

  Holds the cost matrix :math:`C` of shape ``[n, m]`` and the entropic
  regularization :math:`\varepsilon`, and implements the two ways Sinkhorn
  applies the Gibbs kernel :math:`K = e^{-C/\varepsilon}`: directly on
  scalings (kernel mode) or through log-sum-exp reductions on dual
  potentials (log domain, stable for small :math:`\varepsilon`).

  Args:
    cost_matrix: Cost matrix of shape ``[n, m]``.
    epsilon: Regularization parameter or a scheduler. If :obj:`None`, uses
      ``0.05`` times the mean of the (rescaled) cost matrix.
    scale_cost: option to rescale the cost matrix. Implemented scalings are
      'median', 'mean' and 'max_cost'. Alternatively, a float factor can be
      given to rescale the cost such that ``cost_matrix /= scale_cost``.
  """

  def __init__(
      self,
      cost_matrix: jnp.ndarray,
      epsilon: Optional[Union[float, eps_scheduler.Epsilon]] = None,
      scale_cost: Union[float, Literal["mean", "max_cost", "median"]] = 1.0,
  ):
    self._cost_matrix = cost_matrix
    self._epsilon_init = epsilon
    self._scale_cost = scale_cost

  @classmethod
  def from_points(
      cls,
      x: jnp.ndarray,
      y: Optional[jnp.ndarray] = None,
      cost_fn: Optional[cost_module.CostFn] = None,
      **kwargs,
  ) -> "Geometry":
    """Build the geometry of two point clouds.

    Args:
      x: Array of shape ``[n, d]`` (or ``[n]`` for points on the line).
      y: Array of shape ``[m, d]``. If :obj:`None`, uses ``x``.
      cost_fn: Ground cost, :class:`~otsolve.costs.SqEuclidean` by default.
      kwargs: Keyword arguments for :class:`Geometry`.

    Returns:
      The geometry.
    """
    y = x if y is None else y
    cost_fn = cost_module.SqEuclidean() if cost_fn is None else cost_fn
    return cls(cost_fn.all_pairs(x, y), **kwargs)

  @property
  def cost_matrix(self) -> jnp.ndarray:
    """Cost matrix, after rescaling."""
    return self._cost_matrix * self.inv_scale_cost

  @property
  def kernel_matrix(self) -> jnp.ndarray:
    """Gibbs kernel :math:`e^{-C/\\varepsilon}` at the targeted epsilon."""
    return jnp.exp(-self.cost_matrix / self.epsilon)

  @property
  def mean_cost_matrix(self) -> float:
    """Mean of the :attr:`cost_matrix`."""
    return jnp.mean(self.cost_matrix)

  @property
  def epsilon_scheduler(self) -> eps_scheduler.Epsilon:
    """Epsilon scheduler."""
    if isinstance(self._epsilon_init, eps_scheduler.Epsilon):
      return self._epsilon_init
    if self._epsilon_init is not None:
      return eps_scheduler.Epsilon(self._epsilon_init)
    scale = jax.lax.stop_gradient(self.mean_cost_matrix)
    return eps_scheduler.Epsilon(target=DEFAULT_EPSILON_SCALE * scale)

  @property
  def epsilon(self) -> float:
    """Epsilon regularization value."""
    return self.epsilon_scheduler.target

  @property
  def shape(self) -> Tuple[int, int]:
    """Shape of the geometry."""
    return self._cost_matrix.shape

  @property
  def is_square(self) -> bool:
    """Whether the cost matrix is square."""
    n, m = self.shape
    return n == m

  @property
  def inv_scale_cost(self) -> jnp.ndarray:
    """Inverse of the scaling factor applied to the cost matrix."""
    if self._scale_cost == "max_cost":
      return 1.0 / jnp.max(self._cost_matrix)
    if self._scale_cost == "mean":
      return 1.0 / jnp.mean(self._cost_matrix)
    if self._scale_cost == "median":
      return 1.0 / jnp.median(self._cost_matrix)
    if isinstance(self._scale_cost, (int, float)):
      return 1.0 / self._scale_cost
    raise ValueError(f"Scaling {self._scale_cost} not implemented.")

  @property
  def dtype(self) -> jnp.dtype:
    """The data type."""
    return self._cost_matrix.dtype

  def apply_lse_kernel(
      self, f: jnp.ndarray, g: jnp.ndarray, eps: float, axis: int = 0
  ) -> jnp.ndarray:
    r"""Apply the kernel in log domain.

    For ``axis=0`` this returns, for every column :math:`j`,
    :math:`\varepsilon \log \sum_i e^{(f_i - C_{ij})/\varepsilon}`, i.e.
    :math:`\varepsilon \log (K^T e^{f/\varepsilon})_j`, computed with a
    stabilized log-sum-exp; ``axis=1`` is the row-wise counterpart using ``g``.

    Args:
      f: potential of size ``n``.
      g: potential of size ``m``.
      eps: regularization strength.
      axis: summing over axis 0 (returns a size-``m`` vector) or over axis 1
        (returns a size-``n`` vector).

    Returns:
      The log-domain kernel application.
    """
    w_res = eps * mu.logsumexp(self._center(f, g) / eps, axis=axis)
    remove = f if axis == 1 else g
    return w_res - jnp.where(jnp.isfinite(remove), remove, 0)

  def apply_kernel(
      self,
      vec: jnp.ndarray,
      eps: Optional[float] = None,
      axis: int = 0,
  ) -> jnp.ndarray:
    """Apply :attr:`kernel_matrix` on a positive scaling vector.

    Args:
      vec: scaling of size ``n`` (``axis=0``) or ``m`` (``axis=1``).
      eps: regularization to use instead of the targeted one.
      axis: standard kernel product if axis is 1, transpose if 0.

    Returns:
      The product of the kernel (or its transpose) with ``vec``.
    """
    if eps is None:
      kernel = self.kernel_matrix
    else:
      kernel = jnp.exp(-self.cost_matrix / eps)
    kernel = kernel if axis == 1 else kernel.T
    return jnp.dot(kernel, vec)

  def marginal_from_potentials(
      self,
      f: jnp.ndarray,
      g: jnp.ndarray,
      axis: int = 0,
  ) -> jnp.ndarray:
    """Output marginal of transportation matrix from potentials."""
    h = f if axis == 1 else g
    z = self.apply_lse_kernel(f, g, self.epsilon, axis=axis)
    return jnp.exp((z + h) / self.epsilon)

  def marginal_from_scalings(
      self,
      u: jnp.ndarray,
      v: jnp.ndarray,
      axis: int = 0,
  ) -> jnp.ndarray:
    """Output marginal of transportation matrix from scalings."""
    u, v = (v, u) if axis == 0 else (u, v)
    return u * self.apply_kernel(v, axis=axis)

  def transport_from_potentials(
      self, f: jnp.ndarray, g: jnp.ndarray
  ) -> jnp.ndarray:
    """Output transport matrix from potentials."""
    return jnp.exp(self._center(f, g) / self.epsilon)

  def transport_from_scalings(
      self, u: jnp.ndarray, v: jnp.ndarray
  ) -> jnp.ndarray:
    """Output transport matrix from pair of scalings."""
    return self.kernel_matrix * u[:, jnp.newaxis] * v[jnp.newaxis, :]

  def update_potential(
      self,
      f: jnp.ndarray,
      g: jnp.ndarray,
      log_marginal: jnp.ndarray,
      iteration: Optional[int] = None,
      axis: int = 0,
  ) -> jnp.ndarray:
    """Carry out one Sinkhorn update for potentials, i.e. in log space.

    Args:
      f: potential of size ``n``.
      g: potential of size ``m``.
      log_marginal: log of the targeted marginal.
      iteration: used to compute epsilon from schedule, if provided.
      axis: axis along which the update should be carried out.

    Returns:
      new potential value, g if axis=0, f if axis is 1.
    """
    eps = self.epsilon_scheduler(iteration)
    app_lse = self.apply_lse_kernel(f, g, eps, axis=axis)
    return eps * log_marginal - jnp.where(jnp.isfinite(app_lse), app_lse, 0)

  def update_scaling(
      self,
      scaling: jnp.ndarray,
      marginal: jnp.ndarray,
      iteration: Optional[int] = None,
      axis: int = 0,
  ) -> jnp.ndarray:
    """Carry out one Sinkhorn update for scalings, using kernel directly.

    Args:
      scaling: positive scaling of size ``n`` (``axis=0``) or ``m``.
      marginal: targeted marginal.
      iteration: used to compute epsilon from schedule, if provided.
      axis: axis along which the update should be carried out.

    Returns:
      new scaling vector, of size ``m`` if axis=0, ``n`` if axis is 1.
    """
    eps = self.epsilon_scheduler(iteration)
    app_kernel = self.apply_kernel(scaling, eps, axis=axis)
    return marginal / jnp.where(app_kernel > 0, app_kernel, 1.0)

  def potential_from_scaling(self, scaling: jnp.ndarray) -> jnp.ndarray:
    """Compute dual potential vector from scaling vector."""
    return self.epsilon * jnp.log(scaling)

  def scaling_from_potential(self, potential: jnp.ndarray) -> jnp.ndarray:
    """Compute scaling vector from dual potential."""
    finite = jnp.isfinite(potential)
    return jnp.where(
        finite, jnp.exp(jnp.where(finite, potential / self.epsilon, 0.0)), 0.0
    )

  def _center(self, f: jnp.ndarray, g: jnp.ndarray) -> jnp.ndarray:
    return f[:, jnp.newaxis] + g[jnp.newaxis, :] - self.cost_matrix

  def tree_flatten(self):
    return (self._cost_matrix, self._epsilon_init), {
        "scale_cost": self._scale_cost
    }

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    cost, epsilon = children
    return cls(cost, epsilon=epsilon, **aux_data)
