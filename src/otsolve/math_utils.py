# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

import functools
from typing import Optional, Sequence, Union

import jax
import jax.numpy as jnp


@functools.partial(jax.custom_jvp, nondiff_argnums=[1, 2, 3])
@functools.partial(jax.jit, static_argnames=("ord", "axis", "keepdims"))
def norm(
    x: jnp.ndarray,
    ord: Union[int, str, None] = None,
    axis: Union[None, Sequence[int], int] = None,
    keepdims: bool = False
) -> jnp.ndarray:
  """Norm of ``x`` computed with :func:`jnp.linalg.norm`, with a 0 derivative at 0.

  Distances between a point and itself show up whenever a marginal is
  transported onto its own support. Their gradient is undefined, so the
  derivative is set to 0 there (double-where trick) instead of NaN.

  Args:
    x: Input array.
    ord: Order of the norm, as in :func:`jnp.linalg.norm`.
    axis: Axis or axes along which the norm is taken.
    keepdims: Whether to keep the reduced axes.

  Returns:
    The norm.
  """
  return jnp.linalg.norm(x, ord=ord, axis=axis, keepdims=keepdims)


@norm.defjvp
def norm_jvp(ord, axis, keepdims, primals, tangents):
  x, = primals
  x_is_zero = jnp.all(jnp.logical_not(x))
  clean_x = jnp.where(x_is_zero, jnp.ones_like(x), x)
  primals, tangents = jax.jvp(
      functools.partial(jnp.linalg.norm, ord=ord, axis=axis, keepdims=keepdims),
      (clean_x,), tangents
  )
  return primals, jnp.where(x_is_zero, 0.0, tangents)


@functools.partial(jax.custom_jvp, nondiff_argnums=(1, 2, 4))
def logsumexp(mat, axis=None, keepdims=False, b=None, return_sign=False):
  return jax.scipy.special.logsumexp(
      mat, axis=axis, keepdims=keepdims, b=b, return_sign=return_sign
  )


@logsumexp.defjvp
def logsumexp_jvp(axis, keepdims, return_sign, primals, tangents):
  """Derivative of logsumexp that stays finite when a slice is all ``-inf``.

  Zero entries in a marginal turn into ``-inf`` potentials, and a row of the
  log-kernel can then be entirely ``-inf``. The value of the lse is ``-inf``
  there and its derivative is 0, which the default rule computes as NaN
  through ``-inf - (-inf)``.
  """
  mat, b = primals
  tan_mat, tan_b = tangents
  lse = logsumexp(mat, axis, keepdims, b, return_sign)
  if return_sign:
    lse, sign = lse
  lse = jnp.where(jnp.isfinite(lse), lse, 0.0)

  if axis is not None:
    centered_exp = jnp.exp(mat - jnp.expand_dims(lse, axis=axis))
  else:
    centered_exp = jnp.exp(mat - lse)

  if b is None:
    res = jnp.sum(centered_exp * tan_mat, axis=axis, keepdims=keepdims)
  else:
    res = jnp.sum(b * centered_exp * tan_mat, axis=axis, keepdims=keepdims)
    res += jnp.sum(tan_b * centered_exp, axis=axis, keepdims=keepdims)
  if return_sign:
    return (lse, sign), (sign * res, jnp.zeros_like(sign))
  return lse, res


def safe_log(x: jnp.ndarray, eps: Optional[float] = None) -> jnp.ndarray:
  """Logarithm that maps non-positive entries to ``log(eps)`` instead of NaN."""
  if eps is None:
    eps = jnp.finfo(x.dtype).tiny
  return jnp.where(x > 0.0, jnp.log(jnp.where(x > 0.0, x, 1.0)), jnp.log(eps))


def xlogx(x: jnp.ndarray) -> jnp.ndarray:
  """Elementwise :math:`x \\log x`, with the convention :math:`0 \\log 0 = 0`."""
  return jnp.where(x > 0.0, x * jnp.log(jnp.where(x > 0.0, x, 1.0)), 0.0)


def gen_kl(p: jnp.ndarray, q: jnp.ndarray) -> jnp.ndarray:
  r"""Generalized Kullback-Leibler divergence between nonnegative vectors.

  :math:`\sum_i p_i \log(p_i / q_i) - p_i + q_i`, which is the relative
  entropy used to relax marginal constraints of unbalanced problems.
  """
  return jnp.sum(xlogx(p) - p * safe_log(q) - p + q)
