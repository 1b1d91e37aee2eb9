"""Checks run on user inputs before any solver is called."""

import warnings
from typing import Optional, Tuple

import numpy as np

DEFAULT_MASS_TOLERANCE = 1e-6


class ShapeMismatchError(ValueError):
  """Marginals, supports or weights disagree with the cost matrix shape."""


class MassImbalanceError(ValueError):
  """Source and target marginals carry different total masses."""


class ConvergenceWarning(UserWarning):
  """An iterative solver stopped before meeting its tolerance."""


def as_marginal(
    x, name: str, allow_batch: bool = False, size: Optional[int] = None
) -> np.ndarray:
  """Convert ``x`` to a float array holding one (or a batch of) marginal(s).

  Args:
    x: array-like of nonnegative weights, ``[n]`` or, if ``allow_batch``,
      ``[n, k]`` with one marginal per column.
    name: name used in error messages.
    allow_batch: whether a 2-D array of marginals is accepted.
    size: expected number of atoms, if known.

  Returns:
    The marginal(s) as a NumPy array.
  """
  arr = np.asarray(x, dtype=float)
  max_ndim = 2 if allow_batch else 1
  if arr.ndim == 0 or arr.ndim > max_ndim:
    raise ShapeMismatchError(
        f"`{name}` must have at most {max_ndim} dimension(s) and at least one, "
        f"found shape {arr.shape}."
    )
  if arr.size == 0:
    raise ShapeMismatchError(f"`{name}` is empty, found shape {arr.shape}.")
  if size is not None and arr.shape[0] != size:
    raise ShapeMismatchError(
        f"`{name}` has {arr.shape[0]} atoms, expected {size}."
    )
  if not np.all(np.isfinite(arr)):
    raise ValueError(f"`{name}` contains non-finite entries.")
  if np.any(arr < 0.0):
    raise ValueError(f"`{name}` must be nonnegative.")
  return arr


def as_cost_matrix(cost_matrix, shape: Optional[Tuple[int, int]] = None):
  """Convert ``cost_matrix`` to a 2-D float array and check its shape."""
  cost = np.asarray(cost_matrix, dtype=float)
  if cost.ndim != 2:
    raise ShapeMismatchError(
        f"Cost matrix must be 2-D, found shape {cost.shape}."
    )
  if shape is not None and cost.shape != tuple(shape):
    raise ShapeMismatchError(
        f"Cost matrix has shape {cost.shape}, marginals imply {tuple(shape)}."
    )
  if not np.all(np.isfinite(cost)):
    raise ValueError("Cost matrix contains non-finite entries.")
  return cost


def as_support(x, name: str) -> np.ndarray:
  """Convert 1-D atom locations to a float array."""
  arr = np.asarray(x, dtype=float)
  if arr.ndim == 2 and arr.shape[1] == 1:
    arr = arr[:, 0]
  if arr.ndim != 1 or arr.shape[0] == 0:
    raise ShapeMismatchError(
        f"`{name}` must hold locations on the real line, found shape "
        f"{arr.shape}."
    )
  return arr


def check_positive(value: float, name: str) -> None:
  if not value > 0:
    raise ValueError(f"`{name}` must be positive, found {value}.")


def check_mass_balance(
    a: np.ndarray,
    b: np.ndarray,
    tolerance: float = DEFAULT_MASS_TOLERANCE
) -> None:
  """Raise if the masses of ``a`` and ``b`` (or of each column of ``b``) differ.

  Args:
    a: source marginal, ``[n]``.
    b: target marginal ``[m]`` or marginals ``[m, k]``.
    tolerance: largest accepted absolute difference of total masses.
  """
  mass_a = np.sum(a)
  mass_b = np.atleast_1d(np.sum(b, axis=0))
  gap = np.abs(mass_b - mass_a)
  if np.any(gap > tolerance):
    raise MassImbalanceError(
        f"Source mass {mass_a:.6g} differs from target mass(es) "
        f"{np.array2string(mass_b, precision=6)} by more than {tolerance:g}."
    )


def warn_not_converged(
    solver: str, n_iters: int, error: Optional[float] = None
) -> None:
  """Emit a :class:`ConvergenceWarning`."""
  msg = f"{solver} did not converge after {n_iters} iterations"
  if error is not None:
    msg += f" (last error {error:.3e})"
  msg += ". Consider increasing `max_iterations` or `threshold`."
  warnings.warn(msg, ConvergenceWarning, stacklevel=3)
