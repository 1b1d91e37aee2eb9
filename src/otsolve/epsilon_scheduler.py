# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

from typing import Optional

import jax.numpy as jnp
import jax.tree_util as jtu


@jtu.register_pytree_node_class
class Epsilon:
  r"""Schedule of the entropic regularization along Sinkhorn iterations.

  At iteration ``it`` the solver uses
  :math:`\max(\text{init}\cdot\text{decay}^{\text{it}}, 1)\cdot\text{target}`,
  i.e. it starts from a blurred problem and sharpens geometrically until
  the targeted regularization is reached (epsilon scaling). With the default
  ``init=1`` the regularization is constant.

  Args:
    target: The regularization the solver ends up with, :math:`> 0`.
    init: Initial multiple of ``target``.
    decay: Geometric decay factor of the multiple, :math:`\leq 1`.
  """

  def __init__(self, target: jnp.array, init: float = 1.0, decay: float = 1.0):
    if decay > 1.0:
      raise ValueError(f"Decay must be <= 1, found {decay}.")
    if init < 1.0:
      raise ValueError(f"Initial multiple must be >= 1, found {init}.")
    self.target = target
    self.init = init
    self.decay = decay

  @property
  def is_scheduled(self) -> bool:
    """Whether the regularization changes along iterations."""
    return self.init > 1.0 and self.decay < 1.0

  def __call__(self, it: Optional[int]) -> jnp.array:
    """Regularization at iteration ``it``; :attr:`target` if ``it`` is None."""
    if it is None or not self.is_scheduled:
      return self.target
    multiple = jnp.maximum(self.init * (self.decay ** it), 1.0)
    return multiple * self.target

  def __repr__(self) -> str:
    return (
        f"{self.__class__.__name__}(target={self.target:.4g}, "
        f"init={self.init:.4g}, decay={self.decay:.4g})"
    )

  def tree_flatten(self):
    return (self.target,), {"init": self.init, "decay": self.decay}

  @classmethod
  def tree_unflatten(cls, aux_data, children):
    return cls(*children, **aux_data)
