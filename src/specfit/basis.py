"""Monotone basis libraries and their contribution to the normal equations.

A library is a family of ``N`` functions tabulated at the integer domain
values ``0..N``. Each function starts at 1 and drops to 0; the fitted
function is ``sum_k c_k f_k(v) + metallicity * c0``.

The system layout groups variables by library function first and instance
second: index ``b`` is the constant term of instance ``b`` and index
``B * (k + 1) + b`` is library function ``k`` of instance ``b``. The
builders address the core block through the 4-D view
``[k1, b1, k2, b2]`` returned by :meth:`AugmentedSystem.lhs_blocks`.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Callable

import numpy as np

from .sums import RunningSums
from .system import AugmentedSystem

logger = logging.getLogger(__name__)


def smoothstep(x: float) -> float:
    """Cubic Hermite step, ``3x^2 - 2x^3`` on ``[0, 1]``."""
    x = min(1.0, max(0.0, x))
    return x * x * (3.0 - 2.0 * x)


def smootherstep(x: float) -> float:
    """Quintic step with zero first and second derivatives at both ends."""
    x = min(1.0, max(0.0, x))
    return x * x * x * (x * (6.0 * x - 15.0) + 10.0)


def linear_step(x: float) -> float:
    return min(1.0, max(0.0, x))


class BasisLibrary(ABC):
    """Ordered family of decreasing step-like functions on ``[0, N]``."""

    def __init__(self, metallicity: float = 0.0) -> None:
        self._metallicity = min(1.0, max(0.0, float(metallicity)))

    @property
    @abstractmethod
    def function_count(self) -> int:
        ...

    @property
    def optimized_domain_size(self) -> int:
        return self.function_count

    @property
    def metallicity(self) -> float:
        return self._metallicity

    @abstractmethod
    def evaluate(self, function_index: int, value: float) -> float:
        ...

    @abstractmethod
    def first_active_index(self, value: int) -> int:
        """Lowest function that is not identically 0 on ``[value, value + 1]``."""

    @abstractmethod
    def last_active_index(self, value: int) -> int:
        """Highest function that is not identically 1 on ``[value, value + 1]``.

        Must be non-decreasing in ``value``.
        """

    def active_range(self, value: int) -> tuple[int, int]:
        first = max(0, self.first_active_index(value))
        last = min(self.function_count - 1, self.last_active_index(value))
        return first, last

    def evaluate_table(self, indices, value: float) -> np.ndarray:
        return np.array([self.evaluate(int(k), value) for k in indices], dtype=float)

    def contribute_to_fitting_system(
        self,
        value_current: int,
        value_next: int,
        instance_count: int,
        sums: RunningSums,
        system: AugmentedSystem,
    ) -> None:
        """Flush the running sums of the bin at ``value_current``.

        Functions active on the bin get the transient sums weighted by the
        interpolated library values. Functions that were saturated for every
        sample so far but become active before ``value_next`` get the
        cumulative sums, which already include the current transient ones.
        Constant-term diagonal entries are handled by the builder.
        """
        n_fn = self.function_count
        m = self.metallicity
        lhs = system.lhs_blocks(instance_count)
        rhs = system.rhs_blocks(instance_count)
        tr = sums.transient
        cu = sums.cumulative

        first, last = self.active_range(value_current)
        if first <= last:
            ks = np.arange(first, last + 1)
            f_lo = self.evaluate_table(ks, value_current)
            f_hi = self.evaluate_table(ks, value_current + 1)
            act = slice(first + 1, last + 2)

            def lerp(blended, unblended):
                # sum over samples of (t f(v) + (1 - t) f(v + 1)) x, per active function
                return np.multiply.outer(f_lo, blended) + np.multiply.outer(f_hi, unblended - blended)

            rhs[act] += lerp(
                tr.weighted_analytic_times_observed_blended,
                tr.weighted_analytic_times_observed,
            )

            cross = lerp(
                m * tr.weighted_analytic_squared_blended + (1 - m) * tr.weighted_analytic_blended,
                m * tr.weighted_analytic_squared + (1 - m) * tr.weighted_analytic,
            )
            lhs[act, :, 0, :] += cross
            lhs[0, :, act, :] += cross.transpose(2, 0, 1)

            inner_blended = lerp(
                tr.weighted_analytic_squared_blended_squared,
                tr.weighted_analytic_squared_blended,
            )
            inner = lerp(tr.weighted_analytic_squared_blended, tr.weighted_analytic_squared)
            lhs[act, :, act, :] += np.einsum("k,jab->kajb", f_lo, inner_blended) + np.einsum(
                "k,jab->kajb", f_hi, inner - inner_blended
            )

            if last + 1 < n_fn:
                sat = slice(last + 2, n_fn + 1)
                lhs[act, :, sat, :] += inner[:, :, None, :]
                lhs[sat, :, act, :] += inner.transpose(2, 0, 1)[None]

        next_last = min(n_fn - 1, self.last_active_index(value_next))
        q = cu.weighted_analytic_squared
        cross_c = m * q + (1 - m) * cu.weighted_analytic
        for k in range(last + 1, next_last + 1):
            i = k + 1
            rhs[i] += cu.weighted_analytic_times_observed
            lhs[i, :, 0, :] += cross_c
            lhs[0, :, i, :] += cross_c.T
            lhs[i, :, i:, :] += q[:, None, :]
            lhs[i + 1 :, :, i, :] += q.T[None]

    def solution_totals(self, coefficients: np.ndarray, constant: float) -> np.ndarray:
        """Running totals ``constant * m + sum(coefficients[k:])`` for ``k = 0..N``."""
        n_fn = self.function_count
        totals = np.empty(n_fn + 1)
        totals[n_fn] = constant * self.metallicity
        # functions above the active range are saturated at 1
        totals[:n_fn] = np.cumsum(np.asarray(coefficients, dtype=float)[::-1])[::-1] + totals[n_fn]
        return totals

    def evaluate_with_totals(self, coefficients: np.ndarray, totals: np.ndarray, value: int) -> float:
        """Fitted value at integer ``value``, touching only the active functions."""
        if value >= self.optimized_domain_size:
            return float(totals[self.function_count])
        first, last = self.active_range(value)
        result = totals[max(first, last + 1)]
        for k in range(first, last + 1):
            result += coefficients[k] * self.evaluate(k, value)
        return float(result)

    def evaluate_solution(
        self, solution: np.ndarray, instance_count: int = 1, instance: int = 0
    ) -> np.ndarray:
        """Fitted function at every integer value ``0..optimized_domain_size``."""
        solution = np.asarray(solution, dtype=float)
        coeffs = solution[instance_count + instance : instance_count * (self.function_count + 1) : instance_count]
        totals = self.solution_totals(coeffs, solution[instance])
        return np.array(
            [self.evaluate_with_totals(coeffs, totals, v) for v in range(self.optimized_domain_size + 1)]
        )


class StepBasis(BasisLibrary):
    """Hard steps: ``f_i(v) = 1`` for ``v <= i`` and 0 afterwards."""

    def __init__(self, resolution: int, metallicity: float = 0.0) -> None:
        if resolution < 1:
            raise ValueError(f"resolution must be >= 1, got {resolution}")
        super().__init__(metallicity)
        self.resolution = int(resolution)

    @property
    def function_count(self) -> int:
        return self.resolution

    def evaluate(self, function_index: int, value: float) -> float:
        return 1.0 if value <= function_index else 0.0

    def first_active_index(self, value: int) -> int:
        return value

    def last_active_index(self, value: int) -> int:
        return value

    def __repr__(self) -> str:
        return f"StepBasis(resolution={self.resolution}, metallicity={self.metallicity})"


class SmoothStepBasis(BasisLibrary):
    """Steps that fall from 1 to 0 over ``transition_range`` domain units.

    Function ``i`` reaches 0 at ``i + 1``. Near the start of the domain the
    transition is shortened to ``i + 1`` so that every function is 1 at 0.
    """

    def __init__(
        self,
        resolution: int,
        metallicity: float = 0.0,
        transition_range: int = 1,
        step: Callable[[float], float] = smoothstep,
    ) -> None:
        if resolution < 1:
            raise ValueError(f"resolution must be >= 1, got {resolution}")
        super().__init__(metallicity)
        self.resolution = int(resolution)
        self.transition_range = max(1, int(transition_range))
        self.step = step

    @property
    def function_count(self) -> int:
        return self.resolution

    def evaluate(self, function_index: int, value: float) -> float:
        end = function_index + 1
        if value >= end:
            return 0.0
        effective = min(self.transition_range, end)
        if end - value < effective:
            return float(self.step((end - value) / effective))
        return 1.0

    def first_active_index(self, value: int) -> int:
        return value

    def last_active_index(self, value: int) -> int:
        return min(value + self.transition_range - 1, self.function_count - 1)

    def __repr__(self) -> str:
        return (
            f"SmoothStepBasis(resolution={self.resolution}, metallicity={self.metallicity}, "
            f"transition_range={self.transition_range})"
        )
