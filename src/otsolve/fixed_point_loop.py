# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

from typing import Any, Callable, Tuple

import jax
import jax.numpy as jnp


def fixpoint_iter(
    cond_fn: Callable[[int, Any, Any], bool],
    body_fn: Callable[[int, Any, Any, bool], Any],
    min_iterations: int,
    max_iterations: int,
    inner_iterations: int,
    constants: Any,
    state: Any,
) -> Tuple[jnp.ndarray, Any]:
  """Run a fixed point iteration with a jittable loop.

  ``body_fn(iteration, constants, state, compute_error)`` is applied in
  blocks of ``inner_iterations`` steps; only the last step of a block gets
  ``compute_error=True``, so that errors (typically a marginal violation or
  the change between successive iterates) are evaluated once per block.
  After each block the loop stops if ``max_iterations`` is reached, keeps
  going if fewer than ``min_iterations`` were run, and otherwise continues
  only while ``cond_fn(iteration, constants, state)`` holds.

  When ``min_iterations == max_iterations`` a :func:`jax.lax.scan` with a
  fixed trip count is used, which is reverse-mode differentiable.

  Args:
    cond_fn: continuation test, evaluated between blocks.
    body_fn: one step of the iteration.
    min_iterations: lower bound on the number of steps.
    max_iterations: upper bound on the number of steps.
    inner_iterations: number of steps per block.
    constants: parameters passed unchanged to both functions.
    state: initial state.

  Returns:
    The number of steps carried out and the final state.
  """
  force_scan = min_iterations == max_iterations
  compute_error_flags = jnp.arange(inner_iterations) == inner_iterations - 1

  def keep_going(carry):
    iteration, state = carry
    return jnp.logical_and(
        iteration < max_iterations,
        jnp.logical_or(
            iteration < min_iterations, cond_fn(iteration, constants, state)
        )
    )

  def run_block(carry):

    def step(carry, compute_error):
      iteration, state = carry
      state = body_fn(iteration, constants, state, compute_error)
      return (iteration + 1, state), None

    carry, _ = jax.lax.scan(step, carry, compute_error_flags)
    return carry

  carry = (jnp.array(0, dtype=jnp.int32), state)
  if force_scan:
    carry, _ = jax.lax.scan(
        lambda c, _: (run_block(c), None),
        carry,
        None,
        length=max_iterations // inner_iterations
    )
  else:
    carry = jax.lax.while_loop(keep_going, run_block, carry)
  return carry
