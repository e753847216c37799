from .basis import BasisLibrary, SmoothStepBasis, StepBasis, linear_step, smootherstep, smoothstep
from .builder import LibraryMatrixBuilder, SystemMatrixBuilder, reference_normal_equations
from .evaluate import FittedFunction, SolutionEvaluator
from .fit import FitConfig, LibraryFitter
from .nnls import FreeSet, median_tolerance, nnls, solve_nnls, solve_premultiplied, solve_system, solve_systems
from .sample import Sample
from .sums import RunningSums, SumSet
from .system import AugmentedSystem, EqualityConstraint

__all__ = [
    "BasisLibrary",
    "StepBasis",
    "SmoothStepBasis",
    "smoothstep",
    "smootherstep",
    "linear_step",
    "Sample",
    "SumSet",
    "RunningSums",
    "AugmentedSystem",
    "EqualityConstraint",
    "LibraryMatrixBuilder",
    "SystemMatrixBuilder",
    "reference_normal_equations",
    "FreeSet",
    "solve_nnls",
    "solve_premultiplied",
    "nnls",
    "median_tolerance",
    "solve_system",
    "solve_systems",
    "FittedFunction",
    "SolutionEvaluator",
    "FitConfig",
    "LibraryFitter",
]
