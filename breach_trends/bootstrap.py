"""
Bootstrap resampling of cause trends and percentile confidence intervals.

run_bootstrap() fans out `n_iterations` independent refits (resample rows with
replacement, fit every tau, extract cause trends) and fans the results back in.
Per-iteration seeds are drawn up front from one master generator, so output is
identical for any worker count or completion order. Iterations whose fit raises
ModelFitFailure are skipped and counted; nothing is substituted for them.

aggregate_confidence_intervals() reduces the collected slopes per (cause, tau)
to empirical percentiles (linear interpolation between order statistics).
"""

from __future__ import annotations

import logging
import os
import threading
from collections import defaultdict
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# Support both package and script execution modes
try:
    from .quantile_model import (
        ModelFitFailure,
        QuantileSolver,
        TrendEstimationError,
        extract_cause_trends,
        fit_quantile_models,
    )
    from .records import RecordSet
except ImportError:
    from quantile_model import (
        ModelFitFailure,
        QuantileSolver,
        TrendEstimationError,
        extract_cause_trends,
        fit_quantile_models,
    )
    from records import RecordSet

logger = logging.getLogger(__name__)


class InsufficientSamples(TrendEstimationError):
    """Raised when too few bootstrap iterations succeeded to form an interval."""

    def __init__(
        self,
        message: str,
        attempted: Optional[int] = None,
        succeeded: Optional[int] = None,
        group: Optional[Tuple[str, float]] = None,
    ) -> None:
        details = []
        if attempted is not None:
            details.append(f"attempted={attempted}")
        if succeeded is not None:
            details.append(f"succeeded={succeeded}")
        if group is not None:
            details.append(f"group={group}")
        super().__init__(f"{message} ({', '.join(details)})" if details else message)
        self.attempted = attempted
        self.succeeded = succeeded
        self.group = group


class BootstrapCancelled(TrendEstimationError):
    """Raised when a bootstrap run is cancelled; partial results are discarded."""

    pass


class TrendSample(NamedTuple):
    iteration: int
    cause: str
    tau: float
    raw_slope: float


@dataclass
class BootstrapParams:
    n_iterations: int = 1000
    random_seed: Optional[int] = None
    # None -> os.cpu_count(); 1 -> run in-process without a pool
    n_workers: Optional[int] = None
    min_samples: int = 2
    # Optional ceiling on failed/attempted; exceeding it fails the whole stage
    max_failure_fraction: Optional[float] = None


@dataclass
class BootstrapSummary:
    samples: List[TrendSample] = field(default_factory=list)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.samples, columns=list(TrendSample._fields))


def get_default_bootstrap_params() -> BootstrapParams:
    """Single source of bootstrap defaults (also read by the CLI)."""
    return BootstrapParams(
        n_iterations=1000,
        random_seed=None,
        n_workers=None,
        min_samples=2,
        max_failure_fraction=None,
    )


def _bootstrap_iteration(
    records: RecordSet,
    taus: Sequence[float],
    causes: Sequence[str],
    solver: QuantileSolver,
    iteration: int,
    seed: int,
) -> Tuple[int, Optional[List[TrendSample]], Optional[str]]:
    rng = np.random.default_rng(seed)
    n = len(records)
    sample = records.take(rng.integers(0, n, size=n))
    try:
        models = fit_quantile_models(sample, taus, causes=causes, solver=solver)
    except ModelFitFailure as e:
        return iteration, None, str(e)
    rows: List[TrendSample] = []
    for tau, model in models.items():
        for cause, slope in extract_cause_trends(model).items():
            rows.append(TrendSample(iteration, cause, tau, slope))
    return iteration, rows, None


# Per-process state installed by the pool initializer (read-only after install).
_WORKER_STATE: Dict[str, Any] = {}


def _init_worker(
    records: RecordSet, taus: Sequence[float], causes: Sequence[str], solver: QuantileSolver
) -> None:
    _WORKER_STATE.update(records=records, taus=list(taus), causes=list(causes), solver=solver)


def _run_in_worker(iteration: int, seed: int):
    s = _WORKER_STATE
    return _bootstrap_iteration(
        s["records"], s["taus"], s["causes"], s["solver"], iteration, seed
    )


def _resolve_seed(random_seed: Optional[int]) -> int:
    if random_seed is not None:
        return int(random_seed)
    # Fresh entropy, recorded in diagnostics so the run can be replayed.
    return int(np.random.SeedSequence().generate_state(1)[0])


def run_bootstrap(
    records: RecordSet,
    taus: Iterable[float],
    causes: Sequence[str],
    params: BootstrapParams,
    solver: QuantileSolver = QuantileSolver.HIGHS,
    cancel_event: Optional[threading.Event] = None,
) -> BootstrapSummary:
    """
    Resample `records` `params.n_iterations` times and collect cause trends.

    `causes` must be the full-data category order (reference first) so every
    refit uses the same encoding as the point estimate. A resample that loses a
    cause fails its fit and is skipped.

    Raises InsufficientSamples when fewer than `params.min_samples` iterations
    succeed (or the failure fraction ceiling is exceeded), BootstrapCancelled
    when `cancel_event` is set before the run completes.
    """
    taus = sorted({float(t) for t in taus})
    n_target = int(params.n_iterations)
    if n_target <= 0:
        raise ValueError(f"n_iterations must be positive, got {n_target}")

    seed_used = _resolve_seed(params.random_seed)
    rng_master = np.random.default_rng(seed_used)
    iteration_seeds = rng_master.integers(0, 2**31 - 1, size=n_target)

    n_workers = params.n_workers if params.n_workers is not None else (os.cpu_count() or 1)
    n_workers = max(1, min(int(n_workers), n_target))
    logger.info(
        "Bootstrap: %d iterations over %d records, taus=%s, workers=%d, seed=%d",
        n_target,
        len(records),
        taus,
        n_workers,
        seed_used,
    )

    results: Dict[int, List[TrendSample]] = {}
    failures: List[Dict[str, Any]] = []

    def _collect(iteration: int, rows: Optional[List[TrendSample]], reason: Optional[str]):
        if rows is None:
            failures.append({"iteration": iteration, "reason": reason})
            logger.debug("Bootstrap iteration %d skipped: %s", iteration, reason)
        else:
            results[iteration] = rows

    def _cancelled() -> bool:
        return cancel_event is not None and cancel_event.is_set()

    if n_workers == 1:
        for i, seed in enumerate(iteration_seeds):
            if _cancelled():
                raise BootstrapCancelled(
                    f"Bootstrap cancelled after {i} of {n_target} iterations"
                )
            _collect(*_bootstrap_iteration(records, taus, causes, solver, i, int(seed)))
    else:
        with ProcessPoolExecutor(
            max_workers=n_workers,
            initializer=_init_worker,
            initargs=(records, taus, list(causes), solver),
        ) as executor:
            futures = [
                executor.submit(_run_in_worker, i, int(seed))
                for i, seed in enumerate(iteration_seeds)
            ]
            done = 0
            for fut in as_completed(futures):
                if _cancelled():
                    executor.shutdown(wait=True, cancel_futures=True)
                    raise BootstrapCancelled(
                        f"Bootstrap cancelled after {done} of {n_target} iterations"
                    )
                _collect(*fut.result())
                done += 1

    attempted = n_target
    succeeded = len(results)
    if failures:
        logger.warning(
            "Bootstrap skipped %d of %d iterations after model fit failures",
            len(failures),
            attempted,
        )
    if succeeded < params.min_samples:
        raise InsufficientSamples(
            "Too few successful bootstrap iterations", attempted=attempted, succeeded=succeeded
        )
    if (
        params.max_failure_fraction is not None
        and len(failures) / attempted > params.max_failure_fraction
    ):
        raise InsufficientSamples(
            f"Bootstrap failure fraction exceeds {params.max_failure_fraction}",
            attempted=attempted,
            succeeded=succeeded,
        )

    samples = [row for i in sorted(results) for row in results[i]]
    diagnostics = {
        "requested": n_target,
        "attempted": attempted,
        "succeeded": succeeded,
        "failed": len(failures),
        "failures_sample": failures[:10],
        "seed_used": seed_used,
        "n_workers": n_workers,
    }
    logger.info("Bootstrap finished: %d/%d iterations succeeded", succeeded, attempted)
    return BootstrapSummary(samples=samples, diagnostics=diagnostics)


def aggregate_confidence_intervals(
    samples: Iterable[Sequence[Any]],
    level: float = 0.95,
    min_samples: int = 2,
    attempted: Optional[int] = None,
) -> Dict[Tuple[str, float], Tuple[float, float]]:
    """
    Percentile interval per (cause, tau).

    Each sample is (cause, tau, raw_slope) or a TrendSample; only the last
    three fields are read. The result does not depend on input order.
    """
    if not 0.0 < level < 1.0:
        raise ValueError(f"Confidence level must lie in (0, 1), got {level}")
    groups: Dict[Tuple[str, float], List[float]] = defaultdict(list)
    for s in samples:
        cause, tau, slope = tuple(s)[-3:]
        groups[(str(cause), float(tau))].append(float(slope))
    if not groups:
        raise InsufficientSamples("No bootstrap samples to aggregate", attempted=attempted, succeeded=0)

    alpha = (1.0 - level) / 2.0
    intervals: Dict[Tuple[str, float], Tuple[float, float]] = {}
    for key in sorted(groups):
        values = np.sort(np.asarray(groups[key], dtype=float))
        if values.size < min_samples:
            raise InsufficientSamples(
                f"Need at least {min_samples} samples per group",
                attempted=attempted,
                succeeded=int(values.size),
                group=key,
            )
        lo, hi = np.percentile(values, [100.0 * alpha, 100.0 * (1.0 - alpha)])
        intervals[key] = (float(lo), float(hi))
    return intervals
