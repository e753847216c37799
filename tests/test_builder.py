import numpy as np
import pytest

from specfit.basis import SmoothStepBasis, StepBasis
from specfit.builder import LibraryMatrixBuilder, SystemMatrixBuilder, reference_normal_equations
from specfit.sample import Sample
from specfit.system import AugmentedSystem, EqualityConstraint
from utils import EXTRACTORS, dense_normal_equations, make_batches, make_records, make_samples, to_samples


def _build(lib, samples, instance_count, observation_count):
    system = AugmentedSystem.allocate(instance_count * (lib.function_count + 1), observation_count)
    LibraryMatrixBuilder(lib, instance_count, observation_count, system).build(samples)
    return system


LIBRARIES = [
    lambda m: StepBasis(6, m),
    lambda m: SmoothStepBasis(6, m, transition_range=3),
    lambda m: SmoothStepBasis(5, m, transition_range=8),
]


@pytest.mark.parametrize("make_lib", LIBRARIES)
@pytest.mark.parametrize("metallicity", [0.0, 0.4, 1.0])
@pytest.mark.parametrize("instance_count,observation_count", [(1, 1), (2, 3)])
def test_incremental_matches_dense(make_lib, metallicity, instance_count, observation_count):
    lib = make_lib(metallicity)
    samples = make_samples(
        lib,
        n=60,
        instance_count=instance_count,
        observation_count=observation_count,
        seed=3,
        out_of_domain=5,
    )
    system = _build(lib, samples, instance_count, observation_count)
    ata, atb = dense_normal_equations(samples, lib, instance_count, observation_count)

    np.testing.assert_allclose(system.core_lhs, ata, rtol=1e-10, atol=1e-10)
    np.testing.assert_allclose(system.core_rhs, atb, rtol=1e-10, atol=1e-10)
    np.testing.assert_allclose(system.core_lhs, system.core_lhs.T, atol=1e-12)


@pytest.mark.parametrize("make_lib", LIBRARIES)
def test_skipped_floors(make_lib):
    lib = make_lib(0.3)
    samples = make_samples(lib, n=30, instance_count=2, seed=5, floors=[0, 3])
    system = _build(lib, samples, 2, 1)
    ata, atb = dense_normal_equations(samples, lib, 2, 1)
    np.testing.assert_allclose(system.core_lhs, ata, rtol=1e-10, atol=1e-10)
    np.testing.assert_allclose(system.core_rhs, atb, rtol=1e-10, atol=1e-10)


def test_reference_normal_equations_match_dense():
    lib = SmoothStepBasis(5, 0.5, transition_range=2)
    samples = make_samples(lib, n=25, instance_count=2, observation_count=2, seed=9, out_of_domain=2)
    ata, atb = reference_normal_equations(samples, lib, 2, 2)
    ref_ata, ref_atb = dense_normal_equations(samples, lib, 2, 2)
    np.testing.assert_allclose(ata, ref_ata, rtol=1e-12, atol=1e-12)
    np.testing.assert_allclose(atb, ref_atb, rtol=1e-12, atol=1e-12)


def test_out_of_order_raises():
    lib = StepBasis(4)
    late = Sample.from_domain_position(3.5, lib, 1.0, 1.0, [1.0], [0.0])
    early = Sample.from_domain_position(0.5, lib, 1.0, 1.0, [1.0], [0.0])
    builder = LibraryMatrixBuilder(lib, 1, 1, AugmentedSystem.allocate(5, 1))
    builder.accept(late)
    with pytest.raises(ValueError):
        builder.accept(early)


def test_finish_is_idempotent():
    lib = StepBasis(4)
    system = AugmentedSystem.allocate(5, 1)
    builder = LibraryMatrixBuilder(lib, 1, 1, system)
    for s in sorted(make_samples(lib, n=10, seed=2), key=lambda s: s.actual):
        builder.accept(s)
    builder.finish()
    lhs = system.core_lhs.copy()
    builder.finish()
    np.testing.assert_array_equal(system.core_lhs, lhs)
    with pytest.raises(ValueError):
        builder.accept(make_samples(lib, n=1, seed=3)[0])


def test_wrong_system_size():
    with pytest.raises(ValueError):
        LibraryMatrixBuilder(StepBasis(4), 2, 1, AugmentedSystem.allocate(5, 1))


def _records(lib, system_count, empty=(), seed=0):
    return [
        [] if p in empty else make_records(lib, n=12 + p, instance_count=2, seed=seed + p, out_of_domain=1)
        for p in range(system_count)
    ]


def test_system_builder_matches_dense_and_marks_valid():
    lib = SmoothStepBasis(5, 0.2, transition_range=2)
    records = _records(lib, 4, empty=(2,))
    constraint = EqualityConstraint(lambda i: 1.0 if i < 2 else 0.0, 1.0)
    builder = SystemMatrixBuilder(4, 2, 1, lib, [constraint])

    marked = []
    valid = builder.build(make_batches(records), mark_valid=marked.append, **EXTRACTORS)

    np.testing.assert_array_equal(valid, [True, True, False, True])
    assert sorted(marked) == [0, 1, 3]
    assert builder.batch_count == 16
    for p in (0, 1, 3):
        ata, atb = dense_normal_equations(to_samples(records[p], lib), lib, 2, 1)
        np.testing.assert_allclose(builder.systems[p].core_lhs, ata, rtol=1e-10, atol=1e-10)
        np.testing.assert_allclose(builder.systems[p].core_rhs, atb, rtol=1e-10, atol=1e-10)

    system = builder.systems[0]
    assert system.lhs.shape == (2 * 6 + 1, 2 * 6 + 1)
    np.testing.assert_array_equal(system.constraint_lhs[0, :2], [1.0, 1.0])
    np.testing.assert_array_equal(system.constraint_lhs[0, 2:], 0.0)
    assert system.constraint_rhs[0] == 1.0


def test_untouched_system_stays_zero():
    lib = StepBasis(4)
    records = _records(lib, 3, empty=(1,))
    builder = SystemMatrixBuilder(3, 2, 1, lib, [EqualityConstraint(np.ones(10), 1.0)])
    marked = []
    builder.build(make_batches(records), mark_valid=marked.append, **EXTRACTORS)

    assert 1 not in marked
    assert not builder.valid[1]
    assert builder.systems[1].is_zero()
    np.testing.assert_array_equal(builder.systems[1].constraint_lhs, np.ones((1, 10)))


@pytest.mark.parametrize("n_jobs", [1, 3])
def test_presorted_and_buffered_agree(n_jobs):
    lib = SmoothStepBasis(6, 0.5, transition_range=3)
    records = _records(lib, 5, seed=11)

    buffered = SystemMatrixBuilder(5, 2, 1, lib)
    buffered.build(make_batches(records), n_jobs=n_jobs, **EXTRACTORS)
    presorted = SystemMatrixBuilder(5, 2, 1, lib)
    presorted.build(make_batches(records, presorted=True), presorted=True, n_jobs=n_jobs, **EXTRACTORS)

    for a, b in zip(buffered.systems, presorted.systems):
        np.testing.assert_allclose(a.core_lhs, b.core_lhs, rtol=1e-12, atol=1e-12)
        np.testing.assert_allclose(a.core_rhs, b.core_rhs, rtol=1e-12, atol=1e-12)


def test_presorted_stream_out_of_order_raises():
    lib = StepBasis(4)
    records = [[dict(actual=a, analytic=1.0, sample_weight=1.0, instance_weights=[1.0], observed=[0.0])
                for a in (2.5, 0.5)]]
    builder = SystemMatrixBuilder(1, 1, 1, lib)
    with pytest.raises(ValueError):
        builder.build(make_batches(records), presorted=True, **EXTRACTORS)


def test_keep_samples():
    lib = StepBasis(4)
    records = _records(lib, 2)
    builder = SystemMatrixBuilder(2, 2, 1, lib)
    builder.build(make_batches(records), keep_samples=True, **EXTRACTORS)
    assert [len(s) for s in builder.samples] == [len(r) for r in records]

    builder = SystemMatrixBuilder(2, 2, 1, lib)
    builder.build(make_batches(records), **EXTRACTORS)
    assert all(len(s) == 0 for s in builder.samples)


def test_augmented_system_blocks():
    system = AugmentedSystem.allocate(6, 2, [EqualityConstraint(np.arange(6.0), 2.0)])
    system.add_to_lhs(1, 4, 3.0)
    system.add_to_rhs(5, 1, 1.5)
    assert system.lhs_blocks(2)[0, 1, 2, 0] == 3.0
    assert system.rhs_blocks(2)[2, 1, 1] == 1.5
    assert system.size == 7
    np.testing.assert_array_equal(system.lhs[6, :6], np.arange(6.0))
    np.testing.assert_array_equal(system.lhs[:6, 6], np.arange(6.0))
    np.testing.assert_array_equal(system.rhs[6], [2.0, 2.0])

    system.zero_core()
    assert system.is_zero()
    assert system.constraint_rhs[0] == 2.0
