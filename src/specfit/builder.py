"""Streaming assembly of per-system normal equations over a basis library."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Sequence

import numpy as np
from tqdm import tqdm

from .basis import BasisLibrary
from .sample import Sample
from .sums import RunningSums
from .system import AugmentedSystem, EqualityConstraint

logger = logging.getLogger(__name__)

Extractor = Callable[[Any, int], Any]


class LibraryMatrixBuilder:
    """Accumulates one system from samples in non-decreasing domain order.

    State is ``(last floor, transient sums, cumulative sums)``. Whenever the
    floor advances the transient sums are flushed into the system through
    :meth:`BasisLibrary.contribute_to_fitting_system` and cleared.
    """

    def __init__(
        self,
        library: BasisLibrary,
        instance_count: int,
        observation_count: int,
        system: AugmentedSystem,
    ) -> None:
        expected = instance_count * (library.function_count + 1)
        if system.core_size != expected:
            raise ValueError(f"system core size {system.core_size} != {expected}")
        if system.observation_count != observation_count:
            raise ValueError("system has the wrong number of observation channels")
        self.library = library
        self.instance_count = instance_count
        self.observation_count = observation_count
        self.system = system
        self.sums = RunningSums(instance_count, observation_count)
        self.last_floor = 0
        self.sample_count = 0
        self.finished = False

    def accept(self, sample: Sample) -> None:
        if self.finished:
            raise ValueError("builder already finished")
        if sample.floor < self.last_floor:
            raise ValueError(
                f"samples must arrive in non-decreasing domain order "
                f"(floor {sample.floor} after {self.last_floor})"
            )
        if sample.instance_weights.shape != (self.instance_count,):
            raise ValueError(
                f"expected {self.instance_count} instance weights, got {sample.instance_weights.shape}"
            )
        if sample.observed.shape != (self.observation_count,):
            raise ValueError(
                f"expected {self.observation_count} observations, got {sample.observed.shape}"
            )

        if sample.floor > self.last_floor:
            self.library.contribute_to_fitting_system(
                self.last_floor, sample.floor, self.instance_count, self.sums, self.system
            )
            self.sums.clear_transient_sums()
            self.last_floor = sample.floor

        if sample.in_optimized_domain:
            self.sums.accept(sample)

        # constant term: every sample, inside the optimized domain or not
        m = self.library.metallicity
        c = m * sample.analytic + 1.0 - m
        wc = sample.sample_weight * c * sample.instance_weights
        self.system.lhs_blocks(self.instance_count)[0, :, 0, :] += c * np.outer(
            wc, sample.instance_weights
        )
        self.system.rhs_blocks(self.instance_count)[0] += np.outer(wc, sample.observed)
        self.sample_count += 1

    def finish(self) -> AugmentedSystem:
        """Flush what is left; every remaining saturated function becomes active."""
        if not self.finished:
            self.library.contribute_to_fitting_system(
                self.last_floor,
                self.library.optimized_domain_size - 1,
                self.instance_count,
                self.sums,
                self.system,
            )
            self.sums.clear_transient_sums()
            self.finished = True
        return self.system

    def build(self, samples: Iterable[Sample]) -> AugmentedSystem:
        for sample in sorted(samples, key=lambda s: s.actual):
            self.accept(sample)
        return self.finish()


def _chunks(n: int, n_chunks: int) -> List[range]:
    n_chunks = max(1, min(n, n_chunks))
    bounds = np.linspace(0, n, n_chunks + 1).astype(int)
    return [range(lo, hi) for lo, hi in zip(bounds[:-1], bounds[1:]) if hi > lo]


class SystemMatrixBuilder:
    """Builds one augmented system per system index from a sample stream.

    Each element of the stream is a batch; the extractor callables are
    called as ``f(batch, p)`` for every system index ``p`` and return the
    validity flag, domain position, sample weight, observation vector,
    analytic factor and per-instance weights of that system's sample.
    """

    def __init__(
        self,
        system_count: int,
        instance_count: int,
        observation_count: int,
        library: BasisLibrary,
        constraints: Sequence[EqualityConstraint] = (),
    ) -> None:
        if system_count < 0 or instance_count < 1 or observation_count < 1:
            raise ValueError("system_count must be >= 0, instance and observation counts >= 1")
        self.system_count = system_count
        self.instance_count = instance_count
        self.observation_count = observation_count
        self.library = library
        self.constraints = tuple(constraints)
        core_size = instance_count * (library.function_count + 1)
        self.systems = [
            AugmentedSystem.allocate(core_size, observation_count, self.constraints)
            for _ in range(system_count)
        ]
        self.valid = np.zeros(system_count, dtype=bool)
        self.samples: List[List[Sample]] = [[] for _ in range(system_count)]
        self.batch_count = 0

    @property
    def core_size(self) -> int:
        return self.instance_count * (self.library.function_count + 1)

    def _sample(self, batch, p, domain_position, sample_weight, observed, analytic, instance_weights):
        return Sample.from_domain_position(
            domain_position(batch, p),
            self.library,
            analytic=analytic(batch, p),
            sample_weight=sample_weight(batch, p),
            instance_weights=instance_weights(batch, p),
            observed=observed(batch, p),
            instance_count=self.instance_count,
        )

    def build(
        self,
        stream: Iterable[Any],
        *,
        is_valid: Extractor,
        domain_position: Extractor,
        sample_weight: Extractor,
        observed: Extractor,
        analytic: Extractor,
        instance_weights: Extractor,
        mark_valid: Callable[[int], None] | None = None,
        presorted: bool = False,
        n_jobs: int = 1,
        progress: bool = False,
        keep_samples: bool = False,
    ) -> np.ndarray:
        """Single pass over ``stream``; returns the per-system validity mask.

        With ``presorted`` every system's samples are accumulated as they
        arrive, which requires non-decreasing domain order per system.
        Otherwise samples are buffered per system and sorted before the
        accumulation pass. ``mark_valid(p)`` is called once per system, on
        the calling thread, the first time ``p`` receives a valid sample.
        """
        extract = (domain_position, sample_weight, observed, analytic, instance_weights)
        builders = None
        if presorted:
            builders = [
                LibraryMatrixBuilder(self.library, self.instance_count, self.observation_count, s)
                for s in self.systems
            ]
        store = not presorted or keep_samples
        chunks = _chunks(self.system_count, n_jobs)

        def update(batch, systems: range) -> List[int]:
            newly_valid = []
            for p in systems:
                if not is_valid(batch, p):
                    continue
                sample = self._sample(batch, p, *extract)
                if builders is not None:
                    builders[p].accept(sample)
                if store:
                    self.samples[p].append(sample)
                if not self.valid[p]:
                    self.valid[p] = True
                    newly_valid.append(p)
            return newly_valid

        with ThreadPoolExecutor(max_workers=max(1, n_jobs)) as executor:
            for batch in tqdm(stream, desc="Accumulating samples", disable=not progress):
                if len(chunks) > 1:
                    results = executor.map(lambda c: update(batch, c), chunks)
                else:
                    results = [update(batch, c) for c in chunks]
                for newly_valid in results:
                    if mark_valid is not None:
                        for p in newly_valid:
                            mark_valid(p)
                self.batch_count += 1

            def finish(systems: range) -> None:
                for p in systems:
                    if not self.valid[p]:
                        continue
                    if builders is not None:
                        builders[p].finish()
                    else:
                        LibraryMatrixBuilder(
                            self.library, self.instance_count, self.observation_count, self.systems[p]
                        ).build(self.samples[p])

            if len(chunks) > 1:
                list(executor.map(finish, chunks))
            else:
                for c in chunks:
                    finish(c)

        if not keep_samples:
            self.samples = [[] for _ in range(self.system_count)]
        logger.info(
            "Accumulated %d batches, %d of %d systems valid",
            self.batch_count,
            int(self.valid.sum()),
            self.system_count,
        )
        return self.valid


def design_matrix(
    samples: Sequence[Sample], library: BasisLibrary, instance_count: int
) -> np.ndarray:
    """Explicit design matrix, one row per sample, in the system's variable order."""
    n_fn = library.function_count
    m = library.metallicity
    ks = np.arange(n_fn)
    rows = np.zeros((len(samples), instance_count * (n_fn + 1)))
    for i, s in enumerate(samples):
        w = s.instance_weights
        rows[i, :instance_count] = w * (m * s.analytic + 1.0 - m)
        if s.in_optimized_domain:
            t = s.blending_weight
            g = t * library.evaluate_table(ks, s.floor) + (1 - t) * library.evaluate_table(
                ks, s.floor + 1
            )
            rows[i, instance_count:] = s.analytic * np.multiply.outer(g, w).ravel()
    return rows


def reference_normal_equations(
    samples: Sequence[Sample],
    library: BasisLibrary,
    instance_count: int,
    observation_count: int,
) -> tuple[np.ndarray, np.ndarray]:
    """``(A'WA, A'Wy)`` from the explicit design matrix."""
    n = instance_count * (library.function_count + 1)
    if len(samples) == 0:
        return np.zeros((n, n)), np.zeros((n, observation_count))
    a = design_matrix(samples, library, instance_count)
    w = np.array([s.sample_weight for s in samples])
    y = np.vstack([s.observed for s in samples])
    aw = a * w[:, None]
    return aw.T @ a, aw.T @ y
