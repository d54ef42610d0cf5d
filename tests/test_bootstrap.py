import threading

import numpy as np
import pandas as pd
import pytest

from breach_trends.bootstrap import (
    BootstrapCancelled,
    BootstrapParams,
    InsufficientSamples,
    TrendSample,
    aggregate_confidence_intervals,
    run_bootstrap,
)
from breach_trends.records import RecordSet
from breach_trends.validation import synthesize_breach_records


def _rare_cause_records(seed: int = 4) -> RecordSet:
    """60 rows of a common cause and 3 rows of a rare one, so many resamples lose it."""
    rng = np.random.default_rng(seed)
    n_common, n_rare = 60, 3
    dates = pd.Timestamp("2018-01-01") + pd.to_timedelta(
        rng.integers(0, 1000, size=n_common + n_rare), unit="D"
    )
    return RecordSet.from_frame(
        pd.DataFrame(
            {
                "record_id": [str(i) for i in range(n_common + n_rare)],
                "breach_date": dates,
                "cause": ["Common"] * n_common + ["Rare"] * n_rare,
                "sector": "Retail",
                "affected_count": 1,
                "total_amount": np.expm1(rng.normal(9.0, 1.0, size=n_common + n_rare)),
            }
        )
    )


def test_fixed_seed_is_reproducible():
    rs = synthesize_breach_records(200, seed=2)
    params = BootstrapParams(n_iterations=15, random_seed=123, n_workers=1)
    a = run_bootstrap(rs, [0.5, 0.9], rs.causes, params)
    b = run_bootstrap(rs, [0.9, 0.5], rs.causes, params)
    assert a.samples == b.samples
    assert a.diagnostics["seed_used"] == 123
    assert a.diagnostics["succeeded"] == 15
    assert len(a.samples) == 15 * 2 * 2


def test_results_independent_of_worker_count():
    rs = synthesize_breach_records(150, seed=3)
    serial = run_bootstrap(
        rs, [0.5], rs.causes, BootstrapParams(n_iterations=8, random_seed=7, n_workers=1)
    )
    pooled = run_bootstrap(
        rs, [0.5], rs.causes, BootstrapParams(n_iterations=8, random_seed=7, n_workers=2)
    )
    assert serial.samples == pooled.samples
    assert pooled.diagnostics["n_workers"] == 2


def test_seed_recorded_when_not_supplied():
    rs = synthesize_breach_records(100, seed=2)
    out = run_bootstrap(rs, [0.5], rs.causes, BootstrapParams(n_iterations=3, n_workers=1))
    assert isinstance(out.diagnostics["seed_used"], int)
    replay = run_bootstrap(
        rs,
        [0.5],
        rs.causes,
        BootstrapParams(n_iterations=3, random_seed=out.diagnostics["seed_used"], n_workers=1),
    )
    assert replay.samples == out.samples


def test_failed_iterations_are_skipped_and_counted():
    rs = _rare_cause_records()
    out = run_bootstrap(
        rs, [0.5], rs.causes, BootstrapParams(n_iterations=40, random_seed=1, n_workers=1)
    )
    d = out.diagnostics
    assert d["attempted"] == 40
    assert d["failed"] > 0
    assert d["succeeded"] + d["failed"] == d["attempted"]
    assert len(d["failures_sample"]) == min(10, d["failed"])
    assert len(out.samples) == d["succeeded"] * 2
    iterations = [s.iteration for s in out.samples]
    assert iterations == sorted(iterations)
    failed_ids = {f["iteration"] for f in d["failures_sample"]}
    assert failed_ids.isdisjoint(iterations)


def test_failure_fraction_ceiling():
    rs = _rare_cause_records()
    params = BootstrapParams(
        n_iterations=40, random_seed=1, n_workers=1, max_failure_fraction=0.0
    )
    with pytest.raises(InsufficientSamples) as exc:
        run_bootstrap(rs, [0.5], rs.causes, params)
    assert exc.value.attempted == 40


def test_too_few_successes():
    rs = synthesize_breach_records(80, seed=2)
    params = BootstrapParams(n_iterations=3, random_seed=1, n_workers=1, min_samples=5)
    with pytest.raises(InsufficientSamples) as exc:
        run_bootstrap(rs, [0.5], rs.causes, params)
    assert exc.value.attempted == 3
    assert exc.value.succeeded == 3


def test_cancellation_discards_results():
    rs = synthesize_breach_records(80, seed=2)
    event = threading.Event()
    event.set()
    with pytest.raises(BootstrapCancelled):
        run_bootstrap(
            rs,
            [0.5],
            rs.causes,
            BootstrapParams(n_iterations=5, random_seed=1, n_workers=1),
            cancel_event=event,
        )


def test_cancellation_stops_worker_pool():
    rs = synthesize_breach_records(300, seed=2)
    event = threading.Event()
    timer = threading.Timer(0.3, event.set)
    timer.start()
    try:
        with pytest.raises(BootstrapCancelled):
            run_bootstrap(
                rs,
                [0.5, 0.95],
                rs.causes,
                BootstrapParams(n_iterations=400, random_seed=1, n_workers=2),
                cancel_event=event,
            )
    finally:
        timer.cancel()
    assert event.is_set()


def test_non_positive_iterations_rejected():
    rs = synthesize_breach_records(80, seed=2)
    with pytest.raises(ValueError):
        run_bootstrap(rs, [0.5], rs.causes, BootstrapParams(n_iterations=0, n_workers=1))


def test_percentile_interval_values():
    samples = [TrendSample(i, "A", 0.5, float(i)) for i in range(101)]
    ci = aggregate_confidence_intervals(samples, level=0.9)
    assert ci[("A", 0.5)] == pytest.approx((5.0, 95.0))
    ci95 = aggregate_confidence_intervals(samples)
    assert ci95[("A", 0.5)] == pytest.approx((2.5, 97.5))


def test_aggregation_ignores_input_order():
    rng = np.random.default_rng(0)
    samples = [
        ("A" if i % 2 else "B", 0.5 if i % 3 else 0.95, float(v))
        for i, v in enumerate(rng.normal(size=300))
    ]
    shuffled = [samples[i] for i in rng.permutation(len(samples))]
    assert aggregate_confidence_intervals(samples) == aggregate_confidence_intervals(shuffled)


def test_interval_linear_interpolation_on_small_group():
    ci = aggregate_confidence_intervals([("A", 0.5, 0.0), ("A", 0.5, 1.0)], level=0.5)
    assert ci[("A", 0.5)] == pytest.approx((0.25, 0.75))


def test_empty_and_thin_groups_raise():
    with pytest.raises(InsufficientSamples):
        aggregate_confidence_intervals([])
    with pytest.raises(InsufficientSamples) as exc:
        aggregate_confidence_intervals(
            [("A", 0.5, 1.0), ("A", 0.5, 2.0), ("B", 0.5, 3.0)], min_samples=2
        )
    assert exc.value.group == ("B", 0.5)


def test_invalid_level():
    with pytest.raises(ValueError):
        aggregate_confidence_intervals([("A", 0.5, 1.0)], level=1.0)
