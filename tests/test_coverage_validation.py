from breach_trends.bootstrap import BootstrapParams
from breach_trends.main import TrendParams
from breach_trends.validation import (
    DEFAULT_DRIFTS,
    synthesize_breach_records,
    validate_interval_coverage,
)


def test_synthetic_records_layout():
    rs = synthesize_breach_records(101, seed=1)
    assert rs.causes == tuple(DEFAULT_DRIFTS)
    counts = rs.cause_counts()
    assert counts == {"B": 51, "A": 50}
    assert (rs.to_frame()["total_amount"] >= 0).all()


def test_synthetic_records_are_seeded():
    a = synthesize_breach_records(50, seed=4).to_frame()
    b = synthesize_breach_records(50, seed=4).to_frame()
    assert a.equals(b)


def test_interval_coverage_near_nominal():
    result = validate_interval_coverage(
        n_replications=20,
        n_records=300,
        trend_params=TrendParams(taus=(0.5,)),
        bootstrap_params=BootstrapParams(n_iterations=60, n_workers=1),
        seed=2024,
    )
    assert result.failed_replications == 0
    assert set(result.coverage) == {("A", 0.5), ("B", 0.5)}
    for key, rate in result.coverage.items():
        assert rate >= 0.65, (key, rate)
    for key, rate in result.point_in_interval.items():
        assert rate >= 0.9, (key, rate)
    assert "coverage=" in result.summarize()
