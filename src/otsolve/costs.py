# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

import abc

import jax
import jax.numpy as jnp
import jax.tree_util as jtu

from . import math_utils as mu


@jtu.register_pytree_node_class
class CostFn(abc.ABC):
  """Base class for all costs."""

  @abc.abstractmethod
  def __call__(self, x: jnp.ndarray, y: jnp.ndarray) -> float:
    """Compute cost between :math:`x` and :math:`y`.

    Args:
      x: Array, a point or a scalar location.
      y: Array, a point or a scalar location.

    Returns:
      The cost.
    """

  def pairwise(self, x: jnp.ndarray, y: jnp.ndarray) -> jnp.ndarray:
    """Compute costs between matched rows of ``x`` and ``y``.

    Args:
      x: Array of shape ``[n, ...]`` or ``[n]``.
      y: Array of the same shape as ``x``.

    Returns:
      Array of shape ``[n]``.
    """
    return jax.vmap(self)(x, y)

  def all_pairs(self, x: jnp.ndarray, y: jnp.ndarray) -> jnp.ndarray:
    """Compute matrix of all pairwise costs.

    Args:
      x: Array of shape ``[n, ...]`` or ``[n]``.
      y: Array of shape ``[m, ...]`` or ``[m]``.

    Returns:
      Array of shape ``[n, m]`` of cost evaluations.
    """
    return jax.vmap(lambda x_: jax.vmap(lambda y_: self(x_, y_))(y))(x)

  def tree_flatten(self):
    return (), None

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    del aux_data
    return cls(*children)


@jtu.register_pytree_node_class
class SqEuclidean(CostFn):
  r"""Squared Euclidean distance, :math:`\|x - y\|^2`."""

  def __call__(self, x: jnp.ndarray, y: jnp.ndarray) -> float:
    return jnp.sum((jnp.atleast_1d(x) - jnp.atleast_1d(y)) ** 2)


@jtu.register_pytree_node_class
class Euclidean(CostFn):
  r"""Euclidean distance, :math:`\|x - y\|_2`.

  Uses a norm whose derivative is set to 0 at the origin, so that transporting
  mass from a point onto itself does not produce NaN gradients.
  """

  def __call__(self, x: jnp.ndarray, y: jnp.ndarray) -> float:
    return mu.norm(jnp.atleast_1d(x) - jnp.atleast_1d(y))


@jtu.register_pytree_node_class
class PNorm(CostFn):
  r"""Minkowski cost raised to its power, :math:`\sum_k |x_k - y_k|^p`.

  On the real line this is :math:`|x - y|^p`, the ground cost of the
  :math:`p`-Wasserstein distance.

  Args:
    p: Power, :math:`p > 0`.
  """

  def __init__(self, p: float = 1.0):
    super().__init__()
    if p <= 0:
      raise ValueError(f"Power must be positive, found {p}.")
    self.p = p

  def __call__(self, x: jnp.ndarray, y: jnp.ndarray) -> float:
    diff = jnp.abs(jnp.atleast_1d(x) - jnp.atleast_1d(y))
    return jnp.sum(diff ** self.p)

  def tree_flatten(self):
    return (), {"p": self.p}

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    return cls(*children, **aux_data)


def get_cost_fn(metric: str, p: float = 1.0) -> CostFn:
  """Map a metric name to a cost function.

  Args:
    metric: one of ``'sqeuclidean'``, ``'euclidean'``, ``'cityblock'`` or
      ``'minkowski'``.
    p: power used by ``'minkowski'``.

  Returns:
    The cost function.
  """
  if metric == "sqeuclidean":
    return SqEuclidean()
  if metric == "euclidean":
    return Euclidean()
  if metric == "cityblock":
    return PNorm(1.0)
  if metric == "minkowski":
    return PNorm(p)
  raise ValueError(f"Metric {metric!r} not implemented.")
