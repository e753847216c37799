"""Active-set non-negative least squares with equality constraints.

Lawson-Hanson iteration on the premultiplied normal equations. Equality
constraints are appended as trailing KKT rows/columns; their multipliers
are always part of the reduced solve and are never sign-constrained.
"""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Sequence

import numpy as np
import scipy.linalg
from tqdm import tqdm

from .system import AugmentedSystem

logger = logging.getLogger(__name__)


class FreeSet:
    """Variables currently allowed to be non-zero.

    Membership is a boolean array over the core variables. :meth:`mapping`
    gives the compacted order used by the reduced solve: free core
    variables in ascending order followed by every constraint row.
    """

    def __init__(self, core_size: int, constraint_count: int = 0) -> None:
        self.mask = np.zeros(core_size, dtype=bool)
        self.constraint_count = constraint_count
        self._constraints = np.arange(core_size, core_size + constraint_count)

    def __contains__(self, index: int) -> bool:
        return bool(self.mask[index])

    def __len__(self) -> int:
        return self.size

    @property
    def core_size(self) -> int:
        return self.mask.shape[0]

    @property
    def size(self) -> int:
        return int(np.count_nonzero(self.mask))

    @property
    def indices(self) -> np.ndarray:
        return np.flatnonzero(self.mask)

    def add(self, index: int) -> None:
        self.mask[index] = True

    def remove(self, index) -> None:
        self.mask[index] = False

    def clear(self) -> None:
        self.mask[:] = False

    def mapping(self) -> np.ndarray:
        return np.concatenate([self.indices, self._constraints])


def _solve_partial(ata: np.ndarray, atb: np.ndarray, free: FreeSet) -> np.ndarray:
    """Solve the system restricted to ``free``; fixed variables stay 0."""
    s = np.zeros(atb.shape[0])
    if free.size == 0:
        return s
    idx = free.mapping()
    lhs = ata[np.ix_(idx, idx)]
    rhs = atb[idx]
    # rank-deficient but consistent (e.g. constraint rows redundant on the free set) is accepted
    sol, _, rank, _ = scipy.linalg.lstsq(lhs, rhs)
    if rank < lhs.shape[0]:
        resid = np.linalg.norm(lhs @ sol - rhs)
        if resid > 1e-9 * max(1.0, np.linalg.norm(rhs)):
            raise np.linalg.LinAlgError(
                f"reduced system is singular (rank {rank} of {lhs.shape[0]})"
            )
    s[idx] = sol
    return s


def _step_back(
    ata: np.ndarray,
    atb: np.ndarray,
    free: FreeSet,
    x: np.ndarray,
    s: np.ndarray,
    added: int | None = None,
) -> tuple[np.ndarray, bool]:
    """Move ``x`` towards ``s`` until no free variable of ``s`` is negative.

    ``x`` is updated in place. Returns the final ``s`` and whether
    ``added`` itself was the variable dropped.
    """
    stalled = False
    while np.any(s[free.indices] < 0.0):
        idx = free.indices
        cand = idx[s[idx] <= 0.0]
        denom = x[cand] - s[cand]
        ratios = np.full(cand.shape, np.inf)
        ok = denom > 0.0
        ratios[ok] = x[cand][ok] / denom[ok]
        pos = int(np.argmin(ratios))
        alpha = min(1.0, ratios[pos])
        j = int(cand[pos])

        x += alpha * (s - x)
        free.remove(j)
        x[j] = 0.0
        if j == added:
            stalled = True
        else:
            idx = free.indices
            drop = idx[x[idx] <= 0.0]
            free.remove(drop)
            x[drop] = 0.0
        s = _solve_partial(ata, atb, free)
    return s, stalled


def _feasible_start(ata: np.ndarray, atb: np.ndarray, n_core: int) -> np.ndarray:
    """Non-negative point closest to satisfying the equality constraints."""
    c = ata[n_core:, :n_core]
    d = atb[n_core:]
    ctd = c.T @ d
    x0 = solve_nnls(c.T @ c, ctd, median_tolerance(ctd))
    if np.linalg.norm(c @ x0 - d) > 1e-8 * max(1.0, np.linalg.norm(d)):
        logger.warning("Equality constraints cannot be met by non-negative variables")
    return x0


def solve_nnls(
    ata: np.ndarray,
    atb: np.ndarray,
    epsilon: float,
    constraint_count: int = 0,
    *,
    max_iter: int | None = None,
) -> np.ndarray:
    """Minimise ``||Ax - b||^2`` subject to ``x >= 0`` and the equality constraints.

    Parameters
    ----------
    ata : (n, n) array
        Augmented normal matrix. The leading ``n - constraint_count``
        rows/columns hold ``A'A``; the trailing ones hold the constraint
        coefficients (and their transpose) with a zero lower-right block.
    atb : (n,) array
        ``A'b`` followed by the constraint right-hand sides.
    epsilon : float
        Stop once no fixed variable has a gradient above this value.
    constraint_count : int
        Number of trailing constraint rows.
    max_iter : int, optional
        Cap on outer iterations, ``3 * n`` by default.

    Returns
    -------
    x : (n,) array
        Solution followed by the Lagrange multipliers.
    """
    ata = np.asarray(ata, dtype=float)
    atb = np.asarray(atb, dtype=float)
    if atb.ndim == 2 and atb.shape[1] == 1:
        atb = atb[:, 0]
    if ata.ndim != 2 or ata.shape[0] != ata.shape[1]:
        raise ValueError("A'A must be a square matrix")
    if atb.ndim != 1 or atb.shape[0] != ata.shape[0]:
        raise ValueError("A'b must be a vector with as many rows as A'A")
    if not epsilon > 0.0:
        raise ValueError("epsilon must be greater than zero")
    n = ata.shape[0]
    n_core = n - constraint_count
    if constraint_count < 0 or n_core < 0:
        raise ValueError(f"invalid constraint count {constraint_count} for a system of size {n}")
    if n_core == 0:
        return np.zeros(n)
    if max_iter is None:
        max_iter = 3 * n

    free = FreeSet(n_core, constraint_count)
    # variables whose addition made the reduced system singular, until the next successful step
    blocked = np.zeros(n_core, dtype=bool)
    x = np.zeros(n)
    w = atb.copy()
    it = 0

    if constraint_count > 0:
        # start from a feasible support so every reduced solve can impose the constraints
        x[:n_core] = _feasible_start(ata, atb, n_core)
        free.add(np.flatnonzero(x[:n_core] > 0.0))
        try:
            s = _solve_partial(ata, atb, free)
            s, _ = _step_back(ata, atb, free, x, s)
            x = s
        except np.linalg.LinAlgError:
            logger.warning("Singular reduced system at the feasible start, keeping it")
        w = atb - ata @ x

    while free.size < n_core:
        candidates = np.flatnonzero(~free.mask & ~blocked)
        if candidates.size == 0:
            break
        k = int(candidates[np.argmax(w[candidates])])
        if not (w[k] > epsilon or free.size == 0):
            break
        if it >= max_iter:
            logger.warning("Active set reached the iteration cap (%d) with %d free", max_iter, free.size)
            break
        it += 1

        stalled = False
        free.add(k)
        try:
            s = _solve_partial(ata, atb, free)
            s, stalled = _step_back(ata, atb, free, x, s, k)
            blocked[:] = False
        except np.linalg.LinAlgError:
            logger.warning("Singular reduced system adding variable %d, rolling back", k)
            free.remove(k)
            x[k] = 0.0
            blocked[k] = True
            try:
                s = _solve_partial(ata, atb, free)
                s, _ = _step_back(ata, atb, free, x, s)
            except np.linalg.LinAlgError:
                logger.warning("Rollback solve also singular, keeping previous iterate")
                s = x.copy()
        x = s
        w = atb - ata @ x
        if stalled:
            break

    logger.debug("Active set finished after %d iterations (%d free)", it, free.size)
    return x


def solve_premultiplied(ata: np.ndarray, atb: np.ndarray, epsilon: float) -> np.ndarray:
    """Unconstrained non-negative solve from ``A'A`` and ``A'b``."""
    return solve_nnls(ata, atb, epsilon, 0)


def nnls(a: np.ndarray, b: np.ndarray, epsilon: float) -> np.ndarray:
    """Non-negative solve of ``||Ax - b||^2`` forming the normal equations first."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    if b.ndim == 2 and b.shape[1] == 1:
        b = b[:, 0]
    if a.ndim != 2 or b.ndim != 1 or b.shape[0] != a.shape[0]:
        raise ValueError("b must be a vector with the same number of rows as A")
    return solve_premultiplied(a.T @ a, a.T @ b, epsilon)


def median_tolerance(atb: np.ndarray, scale: float = 1e-12) -> float:
    """``scale`` times the first positive entry in the upper half of sorted ``atb``.

    Falls back to ``scale`` when that half has no positive entry.
    """
    values = np.sort(np.ravel(atb))
    upper = values[values.shape[0] // 2 :]
    positive = upper[upper > 0.0]
    median = positive[0] if positive.size else 1.0
    return float(median * scale)


def solve_system(
    system: AugmentedSystem, tolerance_scale: float = 1e-12, max_iter: int | None = None
) -> np.ndarray:
    """Solve every observation channel of ``system``; returns ``(n + k, O)``."""
    if not tolerance_scale > 0.0:
        raise ValueError("tolerance_scale must be greater than zero")
    lhs = system.lhs
    rhs = system.rhs
    out = np.zeros(rhs.shape)
    for o in range(rhs.shape[1]):
        eps = median_tolerance(system.core_rhs[:, o], tolerance_scale)
        out[:, o] = solve_nnls(lhs, rhs[:, o], eps, system.constraint_count, max_iter=max_iter)
    return out


def solve_systems(
    systems: Sequence[AugmentedSystem],
    tolerance_scale: float = 1e-12,
    valid: np.ndarray | None = None,
    n_jobs: int = 1,
    progress: bool = False,
    max_iter: int | None = None,
) -> np.ndarray:
    """Solve independent systems; invalid ones get all-zero solutions.

    Returns an array of shape ``(len(systems), n + k, O)``.
    """
    if len(systems) == 0:
        return np.zeros((0, 0, 0))
    shape = systems[0].rhs.shape
    out = np.zeros((len(systems),) + shape)
    todo = [p for p in range(len(systems)) if valid is None or valid[p]]

    if n_jobs <= 1:
        for p in tqdm(todo, desc="Solving systems", disable=not progress):
            out[p] = solve_system(systems[p], tolerance_scale, max_iter)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=n_jobs) as executor:
            futures = {
                executor.submit(solve_system, systems[p], tolerance_scale, max_iter): p
                for p in todo
            }
            for future in tqdm(
                concurrent.futures.as_completed(futures),
                total=len(futures),
                desc="Solving systems",
                disable=not progress,
            ):
                out[futures[future]] = future.result()

    logger.info("Solved %d of %d systems", len(todo), len(systems))
    return out
