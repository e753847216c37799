from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Sequence

import numpy as np

if TYPE_CHECKING:
    from .basis import BasisLibrary


@dataclass(frozen=True)
class Sample:
    """One observation contributing to a single system.

    ``floor`` and ``blending_weight`` locate ``actual`` between the two
    integer domain values the library is tabulated at: the sample sees
    ``t * f(floor) + (1 - t) * f(floor + 1)`` for every library function.
    """

    actual: float
    floor: int
    in_optimized_domain: bool
    analytic: float
    sample_weight: float
    blending_weight: float
    instance_weights: np.ndarray
    observed: np.ndarray

    @classmethod
    def from_domain_position(
        cls,
        actual: float,
        library: "BasisLibrary",
        analytic: float,
        sample_weight: float,
        instance_weights: Callable[[int], float] | Sequence[float] | np.ndarray,
        observed: Sequence[float] | np.ndarray | float,
        instance_count: int | None = None,
    ) -> "Sample":
        domain_size = library.optimized_domain_size
        actual = max(0.0, float(actual))
        floor = min(domain_size - 1, int(math.floor(actual)))
        # t = 1 at the floor, approaching 0 towards floor + 1; 0 once clamped
        t = min(1.0, max(0.0, 1.0 + floor - actual))

        if callable(instance_weights):
            if instance_count is None:
                raise ValueError("instance_count is required for callable instance weights")
            weights = np.array([float(instance_weights(b)) for b in range(instance_count)])
        else:
            weights = np.asarray(instance_weights, dtype=float).ravel()

        return cls(
            actual=actual,
            floor=floor,
            in_optimized_domain=actual < domain_size,
            analytic=float(analytic),
            sample_weight=float(sample_weight),
            blending_weight=t,
            instance_weights=weights,
            observed=np.atleast_1d(np.asarray(observed, dtype=float)),
        )

    @property
    def instance_count(self) -> int:
        return self.instance_weights.shape[0]

    def weight_by_instance(self, b: int) -> float:
        return float(self.instance_weights[b])
