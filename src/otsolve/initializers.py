# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

from typing import Tuple

import jax
import jax.numpy as jnp

from . import problem as prob_module


@jax.tree_util.register_pytree_node_class
class DefaultInitializer:
  """Zero potentials (unit scalings), masked on atoms carrying no mass.

  Atoms with zero weight get a ``-inf`` potential (a ``0`` scaling): they
  can neither send nor receive mass, and the masking keeps their ``log(0)``
  out of every log-sum-exp.
  """

  def __call__(
      self,
      ot_prob: prob_module.LinearProblem,
      lse_mode: bool,
  ) -> Tuple[jnp.ndarray, jnp.ndarray]:
    """Initialize Sinkhorn potentials/scalings f_u and g_v.

    Args:
      ot_prob: Linear OT problem.
      lse_mode: Return potentials if ``True``, scalings if ``False``.

    Returns:
      The initial potentials/scalings.
    """
    if ot_prob.init_f is not None and ot_prob.init_g is not None:
      fu, gv = ot_prob.init_f, ot_prob.init_g
      if not lse_mode:
        fu = ot_prob.geom.scaling_from_potential(fu)
        gv = ot_prob.geom.scaling_from_potential(gv)
    else:
      fill = 0.0 if lse_mode else 1.0
      fu = jnp.full_like(ot_prob.a, fill)
      gv = jnp.full_like(ot_prob.b, fill)

    mask_value = -jnp.inf if lse_mode else 0.0
    fu = jnp.where(ot_prob.a > 0.0, fu, mask_value)
    gv = jnp.where(ot_prob.b > 0.0, gv, mask_value)
    return fu, gv

  def tree_flatten(self):
    return [], {}

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    return cls(*children, **aux_data)
