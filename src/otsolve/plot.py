"""Visualization of transport plans and histograms."""

from typing import Optional, Sequence, Tuple, Union

import jax.numpy as jnp
import matplotlib.pyplot as plt
import numpy as np

Array = Union[jnp.ndarray, np.ndarray]


def _finish(fig: plt.Figure, save_path: Optional[str]) -> None:
  if save_path:
    fig.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    print(f"Saved to {save_path}")
  else:
    plt.show()


def plot_plan(
    a: Array,
    b: Array,
    plan: Array,
    title: str = "Transport plan",
    figsize: Tuple[float, float] = (6, 6),
    cmap: str = "gray_r",
    save_path: Optional[str] = None,
) -> None:
  """Draw a transport plan as a heatmap, flanked by its two marginals.

  The source marginal is drawn on the left (one bar per row of ``plan``) and
  the target marginal on top (one bar per column).

  Args:
    a: source marginal, ``[n]``.
    b: target marginal, ``[m]``.
    plan: transport plan, ``[n, m]``.
    title: plot title.
    figsize: figure size.
    cmap: colormap name.
    save_path: if provided, save figure to this path instead of showing.
  """
  a, b, plan = np.asarray(a), np.asarray(b), np.asarray(plan)
  n, m = plan.shape

  fig = plt.figure(figsize=figsize)
  grid = fig.add_gridspec(
      2, 2, width_ratios=(1, 4), height_ratios=(1, 4), wspace=0.05,
      hspace=0.05
  )
  ax_plan = fig.add_subplot(grid[1, 1])
  ax_a = fig.add_subplot(grid[1, 0], sharey=ax_plan)
  ax_b = fig.add_subplot(grid[0, 1], sharex=ax_plan)

  ax_plan.imshow(plan, cmap=cmap, aspect="auto", interpolation="nearest")
  ax_plan.set_xlabel("target")
  ax_plan.tick_params(labelleft=False)

  ax_a.barh(np.arange(n), a, color="tab:blue")
  ax_a.invert_xaxis()
  ax_a.set_ylabel("source")

  ax_b.bar(np.arange(m), b, color="tab:red")
  ax_b.tick_params(labelbottom=False)
  ax_b.set_title(title)

  _finish(fig, save_path)


def plot_histograms(
    A: Array,
    barycenter: Optional[Array] = None,
    x: Optional[Array] = None,
    labels: Optional[Sequence[str]] = None,
    title: str = "Histograms",
    figsize: Tuple[float, float] = (8, 4),
    save_path: Optional[str] = None,
) -> None:
  """Draw a collection of histograms on a common support.

  Args:
    A: histograms as columns, ``[k, N]``.
    barycenter: optional ``[k]`` histogram drawn over the others.
    x: support locations, ``[k]``; atom indices if :obj:`None`.
    labels: one label per histogram.
    title: plot title.
    figsize: figure size.
    save_path: if provided, save figure to this path instead of showing.
  """
  A = np.asarray(A)
  if A.ndim == 1:
    A = A[:, np.newaxis]
  k, num = A.shape
  x = np.arange(k) if x is None else np.asarray(x)
  labels = [f"histogram {i}" for i in range(num)] if labels is None else labels

  fig, ax = plt.subplots(figsize=figsize)
  for i in range(num):
    ax.plot(x, A[:, i], alpha=0.6, label=labels[i])
  if barycenter is not None:
    ax.plot(x, np.asarray(barycenter), color="k", lw=2, label="barycenter")
  ax.set_title(title)
  ax.set_xlabel("x")
  ax.legend()

  _finish(fig, save_path)
