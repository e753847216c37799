"""Running totals used to assemble library-basis normal equations.

The quantity being fitted for each sample is::

    sum_b  w_b * f_b(p) * g(p) ~= y(p)

where ``f_b`` is the function being optimized (a combination of library
functions), ``w_b`` are fixed per-instance weights, ``g`` is a fixed
analytic factor and ``y`` the observation. Entries of ``A'WA`` and
``A'Wy`` only depend on which library functions are saturated for a
sample, so the builder accumulates weighted sums here and flushes them
into the matrix whenever the domain floor advances.
"""

from __future__ import annotations

from dataclasses import dataclass, fields

import numpy as np

from .sample import Sample


@dataclass
class SumSet:
    """Seven accumulators: five ``(B, B)`` matrices and two ``(B, O)`` tables."""

    weighted_analytic: np.ndarray
    weighted_analytic_blended: np.ndarray
    weighted_analytic_squared: np.ndarray
    weighted_analytic_squared_blended: np.ndarray
    weighted_analytic_squared_blended_squared: np.ndarray
    weighted_analytic_times_observed: np.ndarray
    weighted_analytic_times_observed_blended: np.ndarray

    @classmethod
    def zeros(cls, instance_count: int, observation_count: int) -> "SumSet":
        bb = (instance_count, instance_count)
        bo = (instance_count, observation_count)
        return cls(
            weighted_analytic=np.zeros(bb),
            weighted_analytic_blended=np.zeros(bb),
            weighted_analytic_squared=np.zeros(bb),
            weighted_analytic_squared_blended=np.zeros(bb),
            weighted_analytic_squared_blended_squared=np.zeros(bb),
            weighted_analytic_times_observed=np.zeros(bo),
            weighted_analytic_times_observed_blended=np.zeros(bo),
        )

    def zero(self) -> None:
        for f in fields(self):
            getattr(self, f.name).fill(0.0)

    def add(self, pair: np.ndarray, obs: np.ndarray, analytic: float, t: float) -> None:
        # pair[b1, b2] = a * W * w_b1 * w_b2, obs[b, o] = a * W * w_b * y_o
        squared = analytic * pair
        self.weighted_analytic += pair
        self.weighted_analytic_blended += t * pair
        self.weighted_analytic_squared += squared
        self.weighted_analytic_squared_blended += t * squared
        self.weighted_analytic_squared_blended_squared += (t * t) * squared
        self.weighted_analytic_times_observed += obs
        self.weighted_analytic_times_observed_blended += t * obs


class RunningSums:
    """Transient and cumulative running totals for one system.

    Transient totals cover samples since the last domain-floor change and
    are cleared by :meth:`clear_transient_sums`. Cumulative totals are
    never cleared, so at any point they equal the sum of every transient
    total flushed so far plus the current transient totals.
    """

    def __init__(self, instance_count: int, observation_count: int) -> None:
        self.instance_count = instance_count
        self.observation_count = observation_count
        self.transient = SumSet.zeros(instance_count, observation_count)
        self.cumulative = SumSet.zeros(instance_count, observation_count)

    def accept(self, sample: Sample) -> None:
        if sample.observed.shape != (self.observation_count,):
            raise ValueError(
                f"expected {self.observation_count} observations, got {sample.observed.shape}"
            )
        w = sample.instance_weights
        wa = sample.analytic * sample.sample_weight * w
        pair = np.outer(wa, w)
        obs = np.outer(wa, sample.observed)
        t = sample.blending_weight
        self.transient.add(pair, obs, sample.analytic, t)
        self.cumulative.add(pair, obs, sample.analytic, t)

    def clear_transient_sums(self) -> None:
        self.transient.zero()

    def _set(self, cumulative: bool) -> SumSet:
        return self.cumulative if cumulative else self.transient

    def weighted_analytic(self, row: int, col: int, cumulative: bool = False) -> float:
        return float(self._set(cumulative).weighted_analytic[row, col])

    def weighted_analytic_blended(self, row: int, col: int, cumulative: bool = False) -> float:
        return float(self._set(cumulative).weighted_analytic_blended[row, col])

    def weighted_analytic_squared(self, row: int, col: int, cumulative: bool = False) -> float:
        return float(self._set(cumulative).weighted_analytic_squared[row, col])

    def weighted_analytic_squared_blended(self, row: int, col: int, cumulative: bool = False) -> float:
        return float(self._set(cumulative).weighted_analytic_squared_blended[row, col])

    def weighted_analytic_squared_blended_squared(
        self, row: int, col: int, cumulative: bool = False
    ) -> float:
        return float(self._set(cumulative).weighted_analytic_squared_blended_squared[row, col])

    def weighted_analytic_times_observed(
        self, observation: int, instance: int, cumulative: bool = False
    ) -> float:
        return float(self._set(cumulative).weighted_analytic_times_observed[instance, observation])

    def weighted_analytic_times_observed_blended(
        self, observation: int, instance: int, cumulative: bool = False
    ) -> float:
        return float(
            self._set(cumulative).weighted_analytic_times_observed_blended[instance, observation]
        )
