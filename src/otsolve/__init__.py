# Copyright OTT-JAX
#
# Licensed under the Apache License, Version 2.0 (the "License")

import jax

# Thresholds such as 1e-9 are below single precision resolution.
jax.config.update("jax_enable_x64", True)

from .barycenter import BarycenterOutput, BarycenterProblem, FixedBarycenter
from .costs import CostFn, Euclidean, PNorm, SqEuclidean
from .epsilon_scheduler import Epsilon
from .exact import ExactOutput, NetworkSimplex
from .geometry import Geometry
from .problem import LinearProblem
from .sinkhorn import Sinkhorn, SinkhornOutput
from .tools import (
    barycenter,
    barycenter_solve,
    barycenter_unbalanced,
    exact_cost,
    exact_cost_1d,
    exact_plan,
    exact_plan_1d,
    exact_solve,
    sinkhorn_cost,
    sinkhorn_divergence,
    sinkhorn_plan,
    sinkhorn_solve,
    sinkhorn_unbalanced_cost,
    sinkhorn_unbalanced_plan,
)
from .validation import (
    ConvergenceWarning,
    MassImbalanceError,
    ShapeMismatchError,
)

__version__ = "0.1.0"

__all__ = [
    "BarycenterOutput",
    "BarycenterProblem",
    "FixedBarycenter",
    "CostFn",
    "Euclidean",
    "PNorm",
    "SqEuclidean",
    "Epsilon",
    "ExactOutput",
    "NetworkSimplex",
    "Geometry",
    "LinearProblem",
    "Sinkhorn",
    "SinkhornOutput",
    "barycenter",
    "barycenter_solve",
    "barycenter_unbalanced",
    "exact_cost",
    "exact_cost_1d",
    "exact_plan",
    "exact_plan_1d",
    "exact_solve",
    "sinkhorn_cost",
    "sinkhorn_divergence",
    "sinkhorn_plan",
    "sinkhorn_solve",
    "sinkhorn_unbalanced_cost",
    "sinkhorn_unbalanced_plan",
    "ConvergenceWarning",
    "MassImbalanceError",
    "ShapeMismatchError",
]
