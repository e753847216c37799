from __future__ import annotations

import math

import numpy as np

from .basis import BasisLibrary


class FittedFunction:
    """One instance of a solution, ready for repeated point evaluation.

    The running totals are computed once; each call then only evaluates the
    active functions at the two integers around the domain value.
    """

    def __init__(self, library: BasisLibrary, coefficients: np.ndarray, constant: float) -> None:
        self.library = library
        self.coefficients = coefficients
        self.constant = constant
        self.totals = library.solution_totals(coefficients, constant)

    def at(self, value: int) -> float:
        return self.library.evaluate_with_totals(self.coefficients, self.totals, value)

    def __call__(self, domain_value: float) -> float:
        domain = self.library.optimized_domain_size
        if domain_value >= domain:
            return float(self.totals[-1])
        domain_value = max(0.0, float(domain_value))
        floor = int(math.floor(domain_value))
        t = 1.0 + floor - domain_value
        if t == 1.0:
            return self.at(floor)
        return t * self.at(floor) + (1.0 - t) * self.at(floor + 1)

    def table(self) -> np.ndarray:
        """Values at ``0..optimized_domain_size``."""
        return np.array([self.at(v) for v in range(self.library.optimized_domain_size + 1)])


class SolutionEvaluator:
    """Evaluate a solved library combination at domain values.

    ``solution`` is a solution vector in the system's variable order
    (trailing Lagrange multipliers are ignored).
    """

    def __init__(self, library: BasisLibrary, instance_count: int = 1) -> None:
        self.library = library
        self.instance_count = instance_count

    def _check(self, solution, instance: int) -> np.ndarray:
        solution = np.asarray(solution, dtype=float)
        needed = self.instance_count * (self.library.function_count + 1)
        if solution.ndim != 1 or solution.shape[0] < needed:
            raise ValueError(f"solution must be a vector of at least {needed} entries")
        if not 0 <= instance < self.instance_count:
            raise ValueError(f"instance {instance} out of range")
        return solution

    def constant(self, solution, instance: int = 0) -> float:
        return float(self._check(solution, instance)[instance])

    def coefficients(self, solution, instance: int = 0) -> np.ndarray:
        solution = self._check(solution, instance)
        b = self.instance_count
        return solution[b + instance : b * (self.library.function_count + 1) : b].copy()

    def prepare(self, solution, instance: int = 0) -> FittedFunction:
        """Precompute the running totals of one instance for repeated evaluation."""
        return FittedFunction(
            self.library, self.coefficients(solution, instance), self.constant(solution, instance)
        )

    def evaluate_all(self, solution, instance: int = 0) -> np.ndarray:
        """Values at ``0..optimized_domain_size``."""
        return self.prepare(solution, instance).table()

    def evaluate(self, solution, domain_value: float, instance: int = 0) -> float:
        """Value at ``domain_value``, interpolating linearly between integers."""
        return self.prepare(solution, instance)(domain_value)
