from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

import numpy as np

from .basis import BasisLibrary, SmoothStepBasis, StepBasis, linear_step, smootherstep, smoothstep
from .builder import SystemMatrixBuilder, reference_normal_equations
from .evaluate import FittedFunction, SolutionEvaluator
from .nnls import solve_systems
from .system import EqualityConstraint

import logging

logger = logging.getLogger(__name__)
if not logger.handlers:  # avoid duplicate handlers on reloads
    handler = logging.StreamHandler()
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(module)s.%(funcName)s: %(message)s"))
    logger.addHandler(handler)

STEP_FUNCTIONS = {
    "smoothstep": smoothstep,
    "smootherstep": smootherstep,
    "linear": linear_step,
}


@dataclass
class FitConfig:
    """Configuration options for :class:`LibraryFitter`."""

    resolution: int = 90  # number of library functions
    metallicity: float = 0.0  # 0 → linear (diffuse) term, 1 → squared (specular) term
    basis: str = "step"  # 'step' or 'smoothstep'
    transition_range: int = 1  # smoothstep only, in domain units
    step_function: str = "smoothstep"  # 'smoothstep', 'smootherstep' or 'linear'
    nnls_tolerance_scale: float = 1e-12  # times the median positive A'b entry
    max_iter: int | None = None  # active-set cap, None → 3 * system size
    constraint_tolerance: float = 1e-6  # relative residual that triggers a warning

    # stream handling
    presorted: bool = False  # samples already in non-decreasing domain order per system
    n_jobs: int = 1  # worker threads for accumulation and solving
    progress: bool = False  # tqdm bars
    validate: bool = False  # cross-check built systems against the explicit design matrix

    def __post_init__(self):
        if self.resolution < 1:
            raise ValueError(f"resolution must be >= 1, got {self.resolution}")
        if self.basis not in ("step", "smoothstep"):
            raise ValueError(f"unknown basis {self.basis!r}")
        if self.step_function not in STEP_FUNCTIONS:
            raise ValueError(f"unknown step function {self.step_function!r}")
        if not self.nnls_tolerance_scale > 0:
            raise ValueError("nnls_tolerance_scale must be greater than zero")
        self.n_jobs = max(1, int(self.n_jobs))

    def make_library(self) -> BasisLibrary:
        if self.basis == "step":
            return StepBasis(self.resolution, self.metallicity)
        return SmoothStepBasis(
            self.resolution,
            self.metallicity,
            transition_range=self.transition_range,
            step=STEP_FUNCTIONS[self.step_function],
        )


class LibraryFitter:
    """Build and solve one constrained library fit per system."""

    def __init__(
        self,
        system_count: int,
        instance_count: int = 1,
        observation_count: int = 1,
        config: FitConfig | None = None,
        constraints: Sequence[EqualityConstraint] = (),
    ) -> None:
        self.config = config or FitConfig()
        self.library = self.config.make_library()
        self.instance_count = instance_count
        self.observation_count = observation_count
        self.builder = SystemMatrixBuilder(
            system_count, instance_count, observation_count, self.library, constraints
        )
        self.evaluator = SolutionEvaluator(self.library, instance_count)
        self.solutions: np.ndarray | None = None
        self._fitted: Dict[Tuple[int, int, int], FittedFunction] = {}

    @property
    def systems(self):
        return self.builder.systems

    @property
    def valid(self) -> np.ndarray:
        return self.builder.valid

    def build(
        self,
        stream: Iterable[Any],
        *,
        is_valid: Callable[[Any, int], bool],
        domain_position: Callable[[Any, int], float],
        sample_weight: Callable[[Any, int], float],
        observed: Callable[[Any, int], Any],
        analytic: Callable[[Any, int], float],
        instance_weights: Callable[[Any, int], Any],
        mark_valid: Callable[[int], None] | None = None,
    ) -> np.ndarray:
        cfg = self.config
        valid = self.builder.build(
            stream,
            is_valid=is_valid,
            domain_position=domain_position,
            sample_weight=sample_weight,
            observed=observed,
            analytic=analytic,
            instance_weights=instance_weights,
            mark_valid=mark_valid,
            presorted=cfg.presorted,
            n_jobs=cfg.n_jobs,
            progress=cfg.progress,
            keep_samples=cfg.validate,
        )
        if cfg.validate:
            self.validate_systems()
        return valid

    def validate_systems(self, rtol: float = 1e-8) -> List[int]:
        """Indices of systems whose normal equations differ from the explicit products."""
        mismatched = []
        for p, system in enumerate(self.systems):
            ata, atb = reference_normal_equations(
                self.builder.samples[p], self.library, self.instance_count, self.observation_count
            )
            scale = max(1.0, np.abs(ata).max(initial=0.0), np.abs(atb).max(initial=0.0))
            if not (
                np.allclose(system.core_lhs, ata, rtol=rtol, atol=rtol * scale)
                and np.allclose(system.core_rhs, atb, rtol=rtol, atol=rtol * scale)
            ):
                mismatched.append(p)
        if mismatched:
            logger.warning("%d systems differ from the reference products: %s", len(mismatched), mismatched[:10])
        else:
            logger.info("All %d systems match the reference products", len(self.systems))
        return mismatched

    def solve(self) -> np.ndarray:
        cfg = self.config
        self._fitted.clear()
        self.solutions = solve_systems(
            self.systems,
            cfg.nnls_tolerance_scale,
            valid=self.valid,
            n_jobs=cfg.n_jobs,
            progress=cfg.progress,
            max_iter=cfg.max_iter,
        )
        self._check_constraints()
        return self.solutions

    def _check_constraints(self) -> None:
        for p in np.flatnonzero(self.valid):
            system = self.systems[p]
            if system.constraint_count == 0:
                continue
            x = self.solutions[p, : system.core_size]
            resid = system.constraint_lhs @ x - system.constraint_rhs[:, None]
            tol = self.config.constraint_tolerance * np.maximum(1.0, np.abs(system.constraint_rhs))
            if np.any(np.abs(resid) > tol[:, None]):
                logger.warning("System %d violates its constraints by %.3g", p, np.abs(resid).max())

    def solution(self, p: int, channel: int = 0) -> np.ndarray:
        if self.solutions is None:
            raise ValueError("Solve system first")
        return self.solutions[p, :, channel]

    def fitted(self, p: int, instance: int = 0, channel: int = 0) -> FittedFunction:
        """Prepared evaluator for one system, instance and channel, cached until the next solve."""
        key = (p, instance, channel)
        if key not in self._fitted:
            self._fitted[key] = self.evaluator.prepare(self.solution(p, channel), instance)
        return self._fitted[key]

    def evaluate(self, p: int, domain_value: float, instance: int = 0, channel: int = 0) -> float:
        return self.fitted(p, instance, channel)(domain_value)

    def evaluate_all(self, p: int, instance: int = 0, channel: int = 0) -> np.ndarray:
        return self.fitted(p, instance, channel).table()

    @classmethod
    def fit(
        cls,
        stream: Iterable[Any],
        system_count: int,
        instance_count: int = 1,
        observation_count: int = 1,
        config: FitConfig | None = None,
        constraints: Sequence[EqualityConstraint] = (),
        **extractors,
    ) -> "LibraryFitter":
        """Build from ``stream`` and solve in one call."""
        fitter = cls(system_count, instance_count, observation_count, config, constraints)
        fitter.build(stream, **extractors)
        fitter.solve()
        return fitter
