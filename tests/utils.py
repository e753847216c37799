import numpy as np
from numpy.random import default_rng

from specfit.sample import Sample


def make_records(
    library,
    n: int = 40,
    instance_count: int = 1,
    observation_count: int = 1,
    seed: int = 0,
    out_of_domain: int = 0,
    floors=None,
):
    """Random per-sample records for one system.

    ``floors`` restricts the domain positions to ``floor + U[0, 1)`` for
    the given floors, which leaves the others empty.
    """
    rng = default_rng(seed)
    domain = library.optimized_domain_size
    if floors is None:
        actual = rng.uniform(0, domain, n)
    else:
        actual = rng.choice(np.asarray(floors), n) + rng.uniform(0, 1, n)
    actual = np.concatenate([actual, rng.uniform(domain, domain + 2, out_of_domain)])
    records = []
    for a in actual:
        records.append(
            dict(
                actual=float(a),
                analytic=float(rng.uniform(0.5, 2.0)),
                sample_weight=float(rng.uniform(0.2, 1.5)),
                instance_weights=rng.uniform(0.1, 1.0, instance_count),
                observed=rng.uniform(0.0, 1.0, observation_count),
            )
        )
    return records


def to_samples(records, library):
    return [
        Sample.from_domain_position(
            r["actual"],
            library,
            analytic=r["analytic"],
            sample_weight=r["sample_weight"],
            instance_weights=r["instance_weights"],
            observed=r["observed"],
        )
        for r in records
    ]


def make_samples(library, **kwargs):
    return to_samples(make_records(library, **kwargs), library)


def make_batches(records_per_system, presorted: bool = False):
    """Interleave per-system records into a stream of batches.

    Batch ``i`` holds the ``i``-th record of every system, or ``None``
    where a system has fewer records.
    """
    if presorted:
        records_per_system = [sorted(r, key=lambda x: x["actual"]) for r in records_per_system]
    n_batches = max((len(r) for r in records_per_system), default=0)
    return [
        [r[i] if i < len(r) else None for r in records_per_system] for i in range(n_batches)
    ]


EXTRACTORS = dict(
    is_valid=lambda batch, p: batch[p] is not None,
    domain_position=lambda batch, p: batch[p]["actual"],
    sample_weight=lambda batch, p: batch[p]["sample_weight"],
    observed=lambda batch, p: batch[p]["observed"],
    analytic=lambda batch, p: batch[p]["analytic"],
    instance_weights=lambda batch, p: batch[p]["instance_weights"],
)


def dense_normal_equations(samples, library, instance_count, observation_count):
    """Explicit ``A'WA`` and ``A'Wy`` built entry by entry."""
    n_fn = library.function_count
    m = library.metallicity
    n = instance_count * (n_fn + 1)
    ata = np.zeros((n, n))
    atb = np.zeros((n, observation_count))
    for s in samples:
        row = np.zeros(n)
        for b in range(instance_count):
            w = s.instance_weights[b]
            row[b] = w * (m * s.analytic + 1 - m)
            if s.in_optimized_domain:
                for k in range(n_fn):
                    t = s.blending_weight
                    g = t * library.evaluate(k, s.floor) + (1 - t) * library.evaluate(k, s.floor + 1)
                    row[instance_count * (k + 1) + b] = s.analytic * w * g
        ata += s.sample_weight * np.outer(row, row)
        atb += s.sample_weight * np.outer(row, s.observed)
    return ata, atb
