"""Exact (unregularized) optimal transport.

:class:`NetworkSimplex` solves the transportation problem between two
discrete marginals as a min-cost flow on the complete bipartite graph with
``n + m`` nodes. A basis is a spanning tree of ``n + m - 1`` cells; each
pivot prices the tree (dual potentials), lets the cell with the most
negative reduced cost enter, pushes flow around the cycle it closes and drops
the cell that empties first.

:func:`solve_1d` handles supports on the real line by sorting them and
matching quantiles (north-west corner rule on the sorted atoms), the optimal
coupling for any convex ground cost.
"""

import collections
from typing import Dict, List, NamedTuple, Optional, Tuple

import jax.numpy as jnp
import numpy as np

from . import costs as cost_module


class ExactOutput(NamedTuple):
  """Holds the output of an exact solver.

  Args:
    matrix: optimal transport plan, ``[n, m]``.
    cost: transport cost :math:`\\langle P, C\\rangle`.
    potentials: dual potentials ``(u, v)`` with
      :math:`u_i + v_j \\leq C_{ij}` at optimality, equality on the basis.
    converged: whether optimality was certified within the pivot budget.
    n_iters: number of pivots carried out.
  """

  matrix: np.ndarray
  cost: float
  potentials: Optional[Tuple[np.ndarray, np.ndarray]] = None
  converged: bool = True
  n_iters: int = 0

  @property
  def u(self) -> np.ndarray:
    return self.potentials[0]

  @property
  def v(self) -> np.ndarray:
    return self.potentials[1]


def north_west_corner(
    a: np.ndarray, b: np.ndarray
) -> Tuple[np.ndarray, List[Tuple[int, int]]]:
  """Initial basic feasible solution of the transportation problem.

  Walks from the top-left cell, saturating a row or a column at each step.
  When both are saturated at once only the row is left, so that the next
  (zero-flow) cell keeps the basis a spanning tree of ``n + m - 1`` cells.

  Args:
    a: row marginal, ``[n]``.
    b: column marginal, ``[m]``, with the same total mass as ``a``.

  Returns:
    The flow matrix and the list of basic cells.
  """
  n, m = len(a), len(b)
  supply, demand = a.astype(float).copy(), b.astype(float).copy()
  flow = np.zeros((n, m))
  basis = []
  i, j = 0, 0
  while True:
    x = min(supply[i], demand[j])
    flow[i, j] = x
    basis.append((i, j))
    supply[i] -= x
    demand[j] -= x
    if i == n - 1 and j == m - 1:
      break
    if j == m - 1 or (i < n - 1 and supply[i] <= demand[j]):
      i += 1
    else:
      j += 1
  return flow, basis


class NetworkSimplex:
  """Transportation simplex for exact optimal transport.

  Pivoting is deterministic: the entering cell is the first (row-major) cell
  with the most negative reduced cost, and among the cells of the cycle that
  reach zero flow the one closest to the entering cell leaves.

  Args:
    max_iterations: pivot budget. When it is exhausted the current feasible
      plan is returned with ``converged=False``.
    tolerance: reduced costs above ``-tolerance`` are treated as nonnegative.
  """

  def __init__(self, max_iterations: int = 100_000, tolerance: float = 1e-12):
    self.max_iterations = max_iterations
    self.tolerance = tolerance

  def __call__(
      self, a: np.ndarray, b: np.ndarray, cost_matrix: np.ndarray
  ) -> ExactOutput:
    """Solve the transportation problem.

    Args:
      a: row marginal, ``[n]``.
      b: column marginal, ``[m]``, with the same total mass as ``a``.
      cost_matrix: ``[n, m]``.

    Returns:
      The exact output.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    cost = np.asarray(cost_matrix, dtype=float)
    n, m = cost.shape

    flow, basis = north_west_corner(a, b)
    in_basis = np.zeros((n, m), dtype=bool)
    for cell in basis:
      in_basis[cell] = True

    converged = False
    n_iters = 0
    while True:
      adjacency = self._adjacency(basis, n)
      u, v = self._potentials(adjacency, cost, n, m)
      reduced = cost - u[:, np.newaxis] - v[np.newaxis, :]
      reduced[in_basis] = 0.0
      entering = tuple(
          int(k) for k in np.unravel_index(np.argmin(reduced), reduced.shape)
      )
      if reduced[entering] >= -self.tolerance:
        converged = True
        break
      if n_iters >= self.max_iterations:
        break

      cycle = self._cycle(adjacency, entering, n)
      # Odd positions of the cycle lose flow.
      losing = cycle[1::2]
      theta = min(flow[cell] for cell in losing)
      leaving = next(cell for cell in losing if flow[cell] == theta)
      for k, cell in enumerate(cycle):
        flow[cell] += theta if k % 2 == 0 else -theta
      flow[leaving] = 0.0

      basis.remove(leaving)
      basis.append(entering)
      in_basis[leaving] = False
      in_basis[entering] = True
      n_iters += 1

    flow = np.maximum(flow, 0.0)
    return ExactOutput(
        matrix=flow,
        cost=float(np.sum(flow * cost)),
        potentials=(u, v),
        converged=converged,
        n_iters=n_iters,
    )

  @staticmethod
  def _adjacency(basis: List[Tuple[int, int]],
                 n: int) -> Dict[int, List[int]]:
    """Tree adjacency; rows are nodes ``0..n-1``, columns ``n..n+m-1``."""
    adjacency = collections.defaultdict(list)
    for i, j in basis:
      adjacency[i].append(n + j)
      adjacency[n + j].append(i)
    return adjacency

  @staticmethod
  def _potentials(
      adjacency: Dict[int, List[int]], cost: np.ndarray, n: int, m: int
  ) -> Tuple[np.ndarray, np.ndarray]:
    """Solve ``u_i + v_j = C_ij`` on the basis, with ``u_0 = 0``."""
    u = np.zeros(n)
    v = np.zeros(m)
    seen = np.zeros(n + m, dtype=bool)
    seen[0] = True
    queue = collections.deque([0])
    while queue:
      node = queue.popleft()
      for other in adjacency[node]:
        if seen[other]:
          continue
        seen[other] = True
        if node < n:
          v[other - n] = cost[node, other - n] - u[node]
        else:
          u[other] = cost[other, node - n] - v[node - n]
        queue.append(other)
    return u, v

  @staticmethod
  def _cycle(
      adjacency: Dict[int, List[int]], entering: Tuple[int, int], n: int
  ) -> List[Tuple[int, int]]:
    """Cycle closed by ``entering``, as cells starting with ``entering``.

    The tree path from the row node of ``entering`` to its column node
    alternates cells that lose and gain flow, starting with a losing one.
    """
    start, target = entering[0], n + entering[1]
    parent = {start: None}
    queue = collections.deque([start])
    while queue:
      node = queue.popleft()
      if node == target:
        break
      for other in adjacency[node]:
        if other not in parent:
          parent[other] = node
          queue.append(other)

    path = [target]
    while parent[path[-1]] is not None:
      path.append(parent[path[-1]])
    path.reverse()

    cycle = [entering]
    for node, other in zip(path[:-1], path[1:]):
      row, col = (node, other - n) if node < n else (other, node - n)
      cycle.append((row, col))
    return cycle


def solve(
    a: np.ndarray,
    b: np.ndarray,
    cost_matrix: np.ndarray,
    max_iterations: int = 100_000,
) -> ExactOutput:
  """Exact optimal transport between two balanced histograms."""
  return NetworkSimplex(max_iterations=max_iterations)(a, b, cost_matrix)


def solve_1d(
    x_a: jnp.ndarray,
    x_b: jnp.ndarray,
    a: Optional[jnp.ndarray] = None,
    b: Optional[jnp.ndarray] = None,
    cost_fn: Optional[cost_module.CostFn] = None,
) -> ExactOutput:
  """Exact optimal transport between two measures on the real line.

  Both supports are sorted; the coupling then matches the quantile functions
  of the two measures, which is optimal for convex ground costs. The
  cumulative masses of both sides are merged, and every interval between two
  consecutive breakpoints moves its length of mass between the source and
  target atoms that cover it. Runs in :math:`O((n + m)\\log(n + m))`.

  Args:
    x_a: source atom locations, ``[n]``.
    x_b: target atom locations, ``[m]``.
    a: source weights, uniform if :obj:`None`.
    b: target weights, uniform if :obj:`None`. Rescaled to the mass of ``a``.
    cost_fn: ground cost, :class:`~otsolve.costs.SqEuclidean` by default.

  Returns:
    The exact output; it carries no dual potentials.
  """
  x_a, x_b = jnp.asarray(x_a), jnp.asarray(x_b)
  n, m = x_a.shape[0], x_b.shape[0]
  a = jnp.full((n,), 1.0 / n, dtype=x_a.dtype) if a is None else jnp.asarray(a)
  b = jnp.full((m,), 1.0 / m, dtype=x_b.dtype) if b is None else jnp.asarray(b)
  b = b * (jnp.sum(a) / jnp.sum(b))
  cost_fn = cost_module.SqEuclidean() if cost_fn is None else cost_fn

  # Stable sorts keep ties in input order.
  perm_a = jnp.argsort(x_a, stable=True)
  perm_b = jnp.argsort(x_b, stable=True)
  cum_a = jnp.cumsum(a[perm_a])
  cum_b = jnp.cumsum(b[perm_b])

  breaks = jnp.sort(jnp.concatenate([cum_a, cum_b]))
  masses = jnp.diff(breaks, prepend=0.0)
  mid = breaks - 0.5 * masses
  idx_a = jnp.minimum(jnp.searchsorted(cum_a, mid, side="left"), n - 1)
  idx_b = jnp.minimum(jnp.searchsorted(cum_b, mid, side="left"), m - 1)

  rows, cols = perm_a[idx_a], perm_b[idx_b]
  matrix = jnp.zeros((n, m), dtype=masses.dtype).at[rows, cols].add(masses)
  cost = jnp.sum(masses * cost_fn.pairwise(x_a[rows], x_b[cols]))
  return ExactOutput(matrix=matrix, cost=float(cost))
