# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

from typing import Any, Dict, Optional, Sequence, Tuple

import jax
import jax.numpy as jnp

from . import geometry as geom_module


def tau_from_reg_m(reg_m: Optional[float], epsilon: float) -> float:
  r"""Convert a marginal relaxation :math:`\lambda` to an exponent ``tau``.

  The KL-relaxed Sinkhorn update raises the balanced update to the power
  :math:`\tau = \lambda / (\lambda + \varepsilon)`; :math:`\lambda = \infty`
  (or :obj:`None`) gives :math:`\tau = 1`, the balanced problem.
  """
  if reg_m is None or reg_m == float("inf"):
    return 1.0
  return reg_m / (reg_m + epsilon)


@jax.tree_util.register_pytree_node_class
class LinearProblem:
  r"""Linear OT problem.

  Bundles a ``geom`` object (the cost matrix and regularization) with the
  probability masses ``a`` and ``b``. Unbalancedness is tracked through two
  coefficients ``tau_a`` and ``tau_b`` in :math:`(0, 1]`, 1 corresponding to
  a hard marginal constraint. A KL penalty of strength :math:`\lambda` on a
  marginal corresponds to :math:`\tau = \lambda / (\lambda + \varepsilon)`,
  see :meth:`from_reg_m`.

  Args:
    geom: The ground geometry cost of the linear problem.
    a: The first marginal. If ``None``, it will be uniform.
    b: The second marginal. If ``None``, it will be uniform.
    tau_a: If :math:`<1`, defines how much unbalanced the problem is
      on the first marginal.
    tau_b: If :math:`< 1`, defines how much unbalanced the problem is
      on the second marginal.
    init_f: Initial dual potential for the first marginal. If ``None``,
      the solver will initialize it.
    init_g: Initial dual potential for the second marginal. If ``None``,
      the solver will initialize it.
  """

  def __init__(
      self,
      geom: geom_module.Geometry,
      a: Optional[jnp.ndarray] = None,
      b: Optional[jnp.ndarray] = None,
      tau_a: float = 1.0,
      tau_b: float = 1.0,
      init_f: Optional[jnp.ndarray] = None,
      init_g: Optional[jnp.ndarray] = None
  ):
    self.geom = geom
    self._a = a
    self._b = b
    self.tau_a = tau_a
    self.tau_b = tau_b
    self.init_f = init_f
    self.init_g = init_g

  @classmethod
  def from_reg_m(
      cls,
      geom: geom_module.Geometry,
      a: Optional[jnp.ndarray] = None,
      b: Optional[jnp.ndarray] = None,
      reg_m: Optional[float] = None,
      **kwargs: Any,
  ) -> "LinearProblem":
    """Problem whose two marginals are relaxed with the same KL strength."""
    tau = tau_from_reg_m(reg_m, float(geom.epsilon))
    return cls(geom, a=a, b=b, tau_a=tau, tau_b=tau, **kwargs)

  @property
  def a(self) -> jnp.ndarray:
    """First marginal."""
    if self._a is not None:
      return self._a
    n, _ = self.geom.shape
    return jnp.full((n,), fill_value=1.0 / n, dtype=self.dtype)

  @property
  def b(self) -> jnp.ndarray:
    """Second marginal."""
    if self._b is not None:
      return self._b
    _, m = self.geom.shape
    return jnp.full((m,), fill_value=1.0 / m, dtype=self.dtype)

  @property
  def is_balanced(self) -> bool:
    """Whether the problem is balanced."""
    return self.tau_a == 1.0 and self.tau_b == 1.0

  @property
  def is_uniform(self) -> bool:
    """True if no weights ``a,b`` were passed, and have defaulted to uniform."""
    return self._a is None and self._b is None

  @property
  def epsilon(self) -> float:
    """Entropic regularization."""
    return self.geom.epsilon

  @property
  def dtype(self) -> jnp.dtype:
    """The data type of the geometry."""
    return self.geom.dtype

  def tree_flatten(self) -> Tuple[Sequence[Any], Dict[str, Any]]:
    return ([self.geom, self._a, self._b, self.init_f, self.init_g], {
        "tau_a": self.tau_a,
        "tau_b": self.tau_b
    })

  @classmethod
  def tree_unflatten(
      cls, aux_data: Dict[str, Any], children: Sequence[Any]
  ) -> "LinearProblem":
    geom, a, b, init_f, init_g = children
    return cls(geom=geom, a=a, b=b, init_f=init_f, init_g=init_g, **aux_data)
