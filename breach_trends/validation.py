"""
Statistical validation for the trend pipeline.

Provides:
- synthesize_breach_records(n, seed, ...)   breach table with a known per-cause drift
- validate_interval_coverage(...)           repeat the pipeline on synthetic tables and
                                            measure how often the bootstrap interval
                                            contains the true slope

The synthetic scenario is a location-shift model on log cost, so every quantile of
a cause shares that cause's drift. Imports from .main are done lazily inside the
runner to avoid CLI side-effects at import time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

try:
    from .records import DAYS_PER_YEAR, RecordSet
except ImportError:
    from records import DAYS_PER_YEAR, RecordSet

logger = logging.getLogger(__name__)

# Per-day drift of log cost for cause "A"; cause "B" is flat.
DEFAULT_DRIFTS: Dict[str, float] = {"B": 0.0, "A": 0.0005}


def synthesize_breach_records(
    n: int,
    seed: int,
    drifts: Optional[Dict[str, float]] = None,
    start: str = "2010-01-01",
    span_days: int = 3650,
    base_log_cost: float = 10.0,
    noise_sd: float = 1.0,
    sectors: Sequence[str] = ("Finance", "Health", "Retail"),
) -> RecordSet:
    """
    Breach table where log(total_amount + 1) = base + drift[cause] * days + noise.

    Causes appear in the order of `drifts`, so the first key is the FIRST_SEEN
    reference. Causes are assigned round-robin so each gets ~n/len(drifts) rows.
    """
    drifts = dict(DEFAULT_DRIFTS if drifts is None else drifts)
    if n < 2 * len(drifts):
        raise ValueError(f"Need at least {2 * len(drifts)} records, got {n}")
    rng = np.random.default_rng(seed)
    causes = list(drifts)
    cause_col = [causes[i % len(causes)] for i in range(n)]
    offsets = rng.integers(0, span_days, size=n)
    dates = pd.Timestamp(start) + pd.to_timedelta(offsets, unit="D")
    slope = np.array([drifts[c] for c in cause_col], dtype=float)
    log_cost = base_log_cost + slope * offsets + rng.normal(0.0, noise_sd, size=n)
    frame = pd.DataFrame(
        {
            "record_id": [f"syn-{i:05d}" for i in range(n)],
            "breach_date": dates,
            "cause": cause_col,
            "sector": rng.choice(list(sectors), size=n),
            "affected_count": rng.integers(1, 100_000, size=n),
            "total_amount": np.expm1(log_cost),
        }
    )
    return RecordSet.from_frame(frame)


@dataclass
class CoverageResult:
    n_replications: int
    confidence_level: float
    # (cause, tau) -> fraction of replications whose interval held the true slope
    coverage: Dict[Tuple[str, float], float] = field(default_factory=dict)
    # (cause, tau) -> fraction whose point estimate fell inside its own interval
    point_in_interval: Dict[Tuple[str, float], float] = field(default_factory=dict)
    failed_replications: int = 0

    def summarize(self) -> str:
        lines = [
            f"Coverage validation: {self.n_replications} replications, "
            f"nominal level {self.confidence_level:.2f}, "
            f"{self.failed_replications} failed"
        ]
        for key in sorted(self.coverage):
            cause, tau = key
            lines.append(
                f"  cause={cause} tau={tau:g}: coverage={self.coverage[key]:.3f} "
                f"point_in_ci={self.point_in_interval.get(key, float('nan')):.3f}"
            )
        return "\n".join(lines)


def validate_interval_coverage(
    n_replications: int = 50,
    n_records: int = 400,
    drifts: Optional[Dict[str, float]] = None,
    trend_params=None,
    bootstrap_params=None,
    seed: int = 20240101,
) -> CoverageResult:
    """
    Simulate `n_replications` tables, run estimate_trends on each, and tally
    interval coverage of the true per-cause slopes.

    A replication whose pipeline raises a TrendEstimationError is counted in
    `failed_replications` and left out of the rates.
    """
    try:
        from .bootstrap import BootstrapParams
        from .main import TrendParams, estimate_trends
        from .quantile_model import TrendEstimationError
        from .records import ReferenceRule
    except ImportError:
        from bootstrap import BootstrapParams
        from main import TrendParams, estimate_trends
        from quantile_model import TrendEstimationError
        from records import ReferenceRule

    drifts = dict(DEFAULT_DRIFTS if drifts is None else drifts)
    trend_params = trend_params or TrendParams()
    # The synthetic reference is the first drift key regardless of the caller's rule.
    trend_params = replace(
        trend_params, reference_rule=ReferenceRule.FIRST_SEEN, reference_cause=next(iter(drifts))
    )
    bootstrap_params = bootstrap_params or BootstrapParams(n_iterations=200, n_workers=1)

    rng_master = np.random.default_rng(seed)
    hits: Dict[Tuple[str, float], int] = {}
    inside: Dict[Tuple[str, float], int] = {}
    completed = 0
    failed = 0
    for rep in range(int(n_replications)):
        data_seed, boot_seed = (int(s) for s in rng_master.integers(0, 2**31 - 1, size=2))
        records = synthesize_breach_records(n_records, data_seed, drifts=drifts)
        try:
            report, _ = estimate_trends(
                records, trend_params, replace(bootstrap_params, random_seed=boot_seed)
            )
        except TrendEstimationError as e:
            failed += 1
            logger.warning("Replication %d failed: %s", rep, e)
            continue
        completed += 1
        rows = list(report.rows) + list(report.baseline.values())
        for row in rows:
            key = (row.cause, row.tau)
            lo, hi = _slope_bounds(row)
            hits[key] = hits.get(key, 0) + int(lo <= drifts[row.cause] <= hi)
            inside[key] = inside.get(key, 0) + int(lo <= row.raw_slope <= hi)
        logger.debug("Replication %d complete", rep)

    denom = max(completed, 1)
    result = CoverageResult(
        n_replications=int(n_replications),
        confidence_level=trend_params.confidence_level,
        coverage={k: v / denom for k, v in hits.items()},
        point_in_interval={k: v / denom for k, v in inside.items()},
        failed_replications=failed,
    )
    logger.info("Coverage validation finished: %d completed, %d failed", completed, failed)
    return result


def _slope_bounds(row) -> Tuple[float, float]:
    # Invert the annualization to compare against per-day drifts.
    lo = np.log1p(row.ci_lo_pct / 100.0) / DAYS_PER_YEAR
    hi = np.log1p(row.ci_hi_pct / 100.0) / DAYS_PER_YEAR
    return float(lo), float(hi)
