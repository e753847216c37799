"""Augmented normal-equation systems with an equality-constraint block."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Sequence

import numpy as np


@dataclass(frozen=True)
class EqualityConstraint:
    """Linear equality constraint ``sum_i weights[i] * x_i = rhs``.

    ``weights`` is either a callable over core-variable indices or an
    array with one entry per core variable.
    """

    weights: Callable[[int], float] | np.ndarray | Sequence[float]
    rhs: float = 1.0

    def coefficients(self, core_size: int) -> np.ndarray:
        if callable(self.weights):
            return np.array([float(self.weights(i)) for i in range(core_size)])
        coeffs = np.asarray(self.weights, dtype=float)
        if coeffs.shape != (core_size,):
            raise ValueError(
                f"constraint weights must have shape ({core_size},), got {coeffs.shape}"
            )
        return coeffs


@dataclass
class AugmentedSystem:
    """Block storage for one least-squares system.

    The core block holds ``A'WA`` and ``A'Wy`` (one RHS column per
    observation channel). The constraint block holds the equality
    constraints appended as extra rows/columns of the KKT system::

        [ core_lhs        constraint_lhs.T ] [ x      ]   [ core_rhs       ]
        [ constraint_lhs  0                ] [ lambda ] = [ constraint_rhs ]

    The constraint block is fixed at construction and never touched by
    the builders.
    """

    core_lhs: np.ndarray
    core_rhs: np.ndarray
    constraint_lhs: np.ndarray = field(default=None)
    constraint_rhs: np.ndarray = field(default=None)

    def __post_init__(self):
        n = self.core_lhs.shape[0]
        if self.core_lhs.shape != (n, n):
            raise ValueError("core_lhs must be square")
        if self.core_rhs.ndim != 2 or self.core_rhs.shape[0] != n:
            raise ValueError("core_rhs must have shape (n, observation_count)")
        if self.constraint_lhs is None:
            self.constraint_lhs = np.zeros((0, n))
        if self.constraint_rhs is None:
            self.constraint_rhs = np.zeros(self.constraint_lhs.shape[0])
        if self.constraint_lhs.shape[1] != n:
            raise ValueError("constraint_lhs must have one column per core variable")
        if self.constraint_rhs.shape != (self.constraint_lhs.shape[0],):
            raise ValueError("constraint_rhs must have one entry per constraint")

    @classmethod
    def allocate(
        cls,
        core_size: int,
        observation_count: int,
        constraints: Sequence[EqualityConstraint] = (),
    ) -> "AugmentedSystem":
        """Zeroed core block plus the constant constraint block."""
        c_lhs = np.zeros((len(constraints), core_size))
        c_rhs = np.zeros(len(constraints))
        for i, con in enumerate(constraints):
            c_lhs[i] = con.coefficients(core_size)
            c_rhs[i] = float(con.rhs)
        return cls(
            core_lhs=np.zeros((core_size, core_size)),
            core_rhs=np.zeros((core_size, observation_count)),
            constraint_lhs=c_lhs,
            constraint_rhs=c_rhs,
        )

    @property
    def core_size(self) -> int:
        return self.core_lhs.shape[0]

    @property
    def constraint_count(self) -> int:
        return self.constraint_lhs.shape[0]

    @property
    def observation_count(self) -> int:
        return self.core_rhs.shape[1]

    @property
    def size(self) -> int:
        return self.core_size + self.constraint_count

    def add_to_lhs(self, row: int, col: int, value: float) -> None:
        self.core_lhs[row, col] += value

    def add_to_rhs(self, row: int, observation: int, value: float) -> None:
        self.core_rhs[row, observation] += value

    def zero_core(self) -> None:
        self.core_lhs.fill(0.0)
        self.core_rhs.fill(0.0)

    def lhs_blocks(self, instance_count: int) -> np.ndarray:
        """View of the core LHS indexed as ``[k1, b1, k2, b2]``.

        ``k = 0`` is the constant term and ``k = j + 1`` is library
        function ``j``; writes go straight through to ``core_lhs``.
        """
        m = self.core_size // instance_count
        return self.core_lhs.reshape(m, instance_count, m, instance_count)

    def rhs_blocks(self, instance_count: int) -> np.ndarray:
        """View of the core RHS indexed as ``[k, b, observation]``."""
        m = self.core_size // instance_count
        return self.core_rhs.reshape(m, instance_count, self.observation_count)

    @property
    def lhs(self) -> np.ndarray:
        """Augmented (KKT) matrix."""
        k = self.constraint_count
        return np.block(
            [
                [self.core_lhs, self.constraint_lhs.T],
                [self.constraint_lhs, np.zeros((k, k))],
            ]
        )

    @property
    def rhs(self) -> np.ndarray:
        """Augmented RHS, one column per observation channel."""
        c_rhs = np.repeat(self.constraint_rhs[:, None], self.observation_count, axis=1)
        return np.vstack([self.core_rhs, c_rhs])

    def is_zero(self) -> bool:
        return not (np.any(self.core_lhs) or np.any(self.core_rhs))
