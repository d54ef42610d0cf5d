#!/usr/bin/env python3
"""
Breach cost trend estimator.

This module exposes the pipeline as explicit functional units:
- estimate_point_trends()  full-data quantile fits -> cause slopes
- estimate_trends()        point slopes + bootstrap intervals -> TrendReport
- build_trend_report()     join point estimates with intervals, annualize
- render_trend_plot()      SVG chart of the report

Each function takes explicit inputs and returns explicit outputs. The CLI
(main) wires them together and writes run artifacts under output/<timestamp>/.
"""

import logging
import os
import sys
import threading
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

# Non-interactive backend before pyplot is imported anywhere.
import matplotlib

matplotlib.use("Agg", force=True)
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

# Support both package and script execution modes
try:
    # When run as a package: python -m breach_trends.main
    from .bootstrap import (
        BootstrapParams,
        BootstrapSummary,
        InsufficientSamples,
        aggregate_confidence_intervals,
        get_default_bootstrap_params,
        run_bootstrap,
    )
    from .loader import BreachLoadError, LoadParams, load_breach_records
    from .quantile_model import (
        QuantileModel,
        QuantileSolver,
        TrendEstimationError,
        annualize_slope,
        extract_cause_trends,
        fit_quantile_models,
    )
    from .records import RecordSet, ReferenceRule
    from .utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
    )
except ImportError:
    # When run directly: python breach_trends/main.py
    from bootstrap import (
        BootstrapParams,
        BootstrapSummary,
        InsufficientSamples,
        aggregate_confidence_intervals,
        get_default_bootstrap_params,
        run_bootstrap,
    )
    from loader import BreachLoadError, LoadParams, load_breach_records
    from quantile_model import (
        QuantileModel,
        QuantileSolver,
        TrendEstimationError,
        annualize_slope,
        extract_cause_trends,
        fit_quantile_models,
    )
    from records import RecordSet, ReferenceRule
    from utils import (
        build_effective_parameters,
        canonical_json_hash,
        ensure_run_dir,
        normalize_abs_posix,
        utc_timestamp_seconds,
        write_manifest,
    )

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class ValidationTest(Enum):
    """Available validation scenarios for --validation-test."""

    COVERAGE = auto()


@dataclass
class TrendParams:
    taus: Tuple[float, ...] = (0.5, 0.95)
    reference_rule: ReferenceRule = ReferenceRule.FIRST_SEEN
    # Explicit reference cause; overrides reference_rule when set
    reference_cause: Optional[str] = None
    solver: QuantileSolver = QuantileSolver.HIGHS
    confidence_level: float = 0.95


@dataclass
class TrendReportRow:
    cause: str
    tau: float
    annualized_pct_change: float
    ci_lo_pct: float
    ci_hi_pct: float
    raw_slope: float


REPORT_COLUMNS = [
    "cause",
    "tau",
    "annualized_pct_change",
    "ci_lo_pct",
    "ci_hi_pct",
    "raw_slope",
]


@dataclass
class TrendReport:
    """
    Per-cause, per-quantile trends with bootstrap intervals.

    `rows` excludes the reference cause; its trend is kept in `baseline`, keyed by tau.
    """

    rows: List[TrendReportRow]
    reference_cause: str
    baseline: Dict[float, TrendReportRow] = field(default_factory=dict)
    diagnostics: Dict[str, Any] = field(default_factory=dict)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            [[getattr(r, c) for c in REPORT_COLUMNS] for r in self.rows],
            columns=REPORT_COLUMNS,
        )

    def row(self, cause: str, tau: float) -> TrendReportRow:
        for r in self.rows:
            if r.cause == cause and r.tau == float(tau):
                return r
        if cause == self.reference_cause and float(tau) in self.baseline:
            return self.baseline[float(tau)]
        raise KeyError((cause, tau))


@dataclass
class PointEstimates:
    causes: List[str]
    slopes: Dict[str, Dict[float, float]]
    models: Dict[float, QuantileModel]


def get_default_params() -> Tuple[LoadParams, TrendParams, BootstrapParams]:
    """Authoritative defaults for the CLI and for programmatic callers."""
    load = LoadParams(csv_path=None, header_map={}, date_format=None)
    trend = TrendParams(
        taus=(0.5, 0.95),
        reference_rule=ReferenceRule.FIRST_SEEN,
        reference_cause=None,
        solver=QuantileSolver.HIGHS,
        confidence_level=0.95,
    )
    return load, trend, get_default_bootstrap_params()


def estimate_point_trends(records: RecordSet, params: TrendParams) -> PointEstimates:
    """
    Fit the full-data models and extract cause slopes.

    ModelFitFailure here is fatal: there is no fallback for the point estimate.
    """
    causes = records.ordered_causes(params.reference_rule, params.reference_cause)
    logger.info(
        "Fitting taus=%s on %d records; causes=%s (reference '%s')",
        list(params.taus),
        len(records),
        causes,
        causes[0],
    )
    models = fit_quantile_models(records, params.taus, causes=causes, solver=params.solver)
    slopes: Dict[str, Dict[float, float]] = {c: {} for c in causes}
    for tau, model in models.items():
        for cause, slope in extract_cause_trends(model).items():
            slopes[cause][tau] = slope
    return PointEstimates(causes=causes, slopes=slopes, models=models)


def build_trend_report(
    point: Dict[str, Dict[float, float]],
    ci: Dict[Tuple[str, float], Tuple[float, float]],
    reference_cause: str,
    diagnostics: Optional[Dict[str, Any]] = None,
) -> TrendReport:
    """
    Join point slopes with their intervals and annualize everything.

    Rows are ordered by tau, then by the cause order of `point`. The reference
    cause is reported in `baseline` rather than as a cause row.
    """
    taus = sorted({float(t) for per_tau in point.values() for t in per_tau})
    rows: List[TrendReportRow] = []
    baseline: Dict[float, TrendReportRow] = {}
    for tau in taus:
        for cause, per_tau in point.items():
            if tau not in per_tau:
                continue
            key = (cause, tau)
            if key not in ci:
                raise InsufficientSamples(
                    "No bootstrap interval for point estimate",
                    attempted=(diagnostics or {}).get("attempted"),
                    succeeded=(diagnostics or {}).get("succeeded"),
                    group=key,
                )
            slope = float(per_tau[tau])
            lo, hi = ci[key]
            row = TrendReportRow(
                cause=cause,
                tau=tau,
                annualized_pct_change=float(annualize_slope(slope)),
                ci_lo_pct=float(annualize_slope(lo)),
                ci_hi_pct=float(annualize_slope(hi)),
                raw_slope=slope,
            )
            if cause == reference_cause:
                baseline[tau] = row
            else:
                rows.append(row)
    return TrendReport(
        rows=rows,
        reference_cause=reference_cause,
        baseline=baseline,
        diagnostics=dict(diagnostics or {}),
    )


def estimate_trends(
    records: RecordSet,
    trend_params: Optional[TrendParams] = None,
    bootstrap_params: Optional[BootstrapParams] = None,
    cancel_event: Optional[threading.Event] = None,
) -> Tuple[TrendReport, BootstrapSummary]:
    """Full pipeline: point estimates, bootstrap, intervals, report."""
    _, default_trend, default_boot = get_default_params()
    trend_params = trend_params or default_trend
    bootstrap_params = bootstrap_params or default_boot

    point = estimate_point_trends(records, trend_params)
    summary = run_bootstrap(
        records,
        trend_params.taus,
        point.causes,
        bootstrap_params,
        solver=trend_params.solver,
        cancel_event=cancel_event,
    )
    ci = aggregate_confidence_intervals(
        summary.samples,
        level=trend_params.confidence_level,
        min_samples=bootstrap_params.min_samples,
        attempted=summary.diagnostics.get("attempted"),
    )
    report = build_trend_report(
        point.slopes, ci, reference_cause=point.causes[0], diagnostics=summary.diagnostics
    )
    return report, summary


def render_trend_plot(report: TrendReport, output_svg: str) -> str:
    """
    One panel per tau: annualized percent change per cause with CI whiskers.
    The reference cause baseline is drawn as a dashed vertical line.
    """
    df = report.to_frame()
    taus = sorted(set(df["tau"]) | set(report.baseline))
    fig, axes = plt.subplots(
        1, max(1, len(taus)), figsize=(6 * max(1, len(taus)), 4), squeeze=False
    )
    for ax, tau in zip(axes[0], taus):
        sub = df[df["tau"] == tau]
        ypos = np.arange(len(sub))
        pct = sub["annualized_pct_change"].to_numpy(dtype=float)
        xerr = np.vstack(
            [
                pct - sub["ci_lo_pct"].to_numpy(dtype=float),
                sub["ci_hi_pct"].to_numpy(dtype=float) - pct,
            ]
        )
        ax.errorbar(pct, ypos, xerr=xerr, fmt="o", color="tab:blue", capsize=3)
        ax.axvline(0.0, color="grey", linewidth=0.8)
        if tau in report.baseline:
            ax.axvline(
                report.baseline[tau].annualized_pct_change,
                color="tab:orange",
                linestyle="--",
                linewidth=1.0,
                label=f"{report.reference_cause} (reference)",
            )
            ax.legend(loc="best", fontsize="small")
        ax.set_yticks(ypos)
        ax.set_yticklabels(sub["cause"].tolist())
        ax.set_title(f"tau = {tau:g}")
        ax.set_xlabel("Annualized change in cost (%)")
    fig.tight_layout()
    fig.savefig(output_svg, format="svg")
    plt.close(fig)
    return output_svg


def build_run_identity(
    load: LoadParams, trend: TrendParams, boot: BootstrapParams
) -> tuple[str, str, str, dict]:
    """
    Returns (abs_input_posix, short_hash, full_hash, effective_params)
    """
    abs_input_posix = normalize_abs_posix(load.csv_path) if load.csv_path else ""
    effective_params = build_effective_parameters(load=load, trend=trend, bootstrap=boot)
    canonical_payload = {
        "absolute_input_path": abs_input_posix,
        "effective_parameters": effective_params,
    }
    short_hash, full_hash = canonical_json_hash(canonical_payload)
    return abs_input_posix, short_hash, full_hash, effective_params


def build_manifest_dict(
    abs_input_posix: str,
    record_count: int,
    effective_params: dict,
    hashes: tuple[str, str],
    bootstrap_diagnostics: dict,
    artifact_paths: list[str],
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        "record_count": int(record_count),
        "bootstrap": {
            "requested": bootstrap_diagnostics.get("requested"),
            "attempted": bootstrap_diagnostics.get("attempted"),
            "succeeded": bootstrap_diagnostics.get("succeeded"),
            "failed": bootstrap_diagnostics.get("failed"),
            "seed_used": bootstrap_diagnostics.get("seed_used"),
        },
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": list(artifact_paths),
    }


def assemble_text_report(records: RecordSet, report: TrendReport) -> str:
    """Plain-text summary of the trend table and bootstrap diagnostics."""
    lines: List[str] = []
    lines.append(f"Records: {len(records)}")
    counts = records.cause_counts()
    lines.append(
        "Causes: " + ", ".join(f"{c} ({n})" for c, n in counts.items())
    )
    lines.append(f"Reference cause: {report.reference_cause}")
    for tau, row in sorted(report.baseline.items()):
        lines.append(
            f"  baseline tau={tau:g}: {row.annualized_pct_change:+.2f}%/yr "
            f"[{row.ci_lo_pct:+.2f}, {row.ci_hi_pct:+.2f}]"
        )
    diag = report.diagnostics
    if diag:
        lines.append(
            f"Bootstrap: {diag.get('succeeded')}/{diag.get('attempted')} iterations succeeded "
            f"(seed={diag.get('seed_used')})"
        )
    lines.append("")
    df = report.to_frame()
    if df.empty:
        lines.append("(no non-reference causes)")
    else:
        lines.append(df.to_string(index=False, float_format=lambda v: f"{v:.4g}"))
    return "\n".join(lines)


def _orchestrate(
    params_load: LoadParams,
    params_trend: TrendParams,
    params_boot: BootstrapParams,
    output_base: str = "output",
    render_plot: bool = True,
) -> TrendReport:
    """
    Run load -> estimate -> persist. Split from main() so tests can call it directly.
    """
    run_output_dir = ensure_run_dir(".", output_base)
    abs_input_posix, short_hash, full_hash, effective_params = build_run_identity(
        params_load, params_trend, params_boot
    )

    records = load_breach_records(params_load)
    try:
        report, summary = estimate_trends(records, params_trend, params_boot)
    except InsufficientSamples as e:
        logger.error(
            "Bootstrap stage failed: attempted=%s succeeded=%s", e.attempted, e.succeeded
        )
        raise

    artifact_paths: List[str] = []
    trends_csv = run_output_dir / f"trends-{short_hash}.csv"
    report.to_frame().to_csv(trends_csv, index=False)
    artifact_paths.append(str(trends_csv))

    samples_csv = run_output_dir / f"bootstrap-{short_hash}.csv"
    summary.to_frame().to_csv(samples_csv, index=False)
    artifact_paths.append(str(samples_csv))

    if render_plot:
        artifact_paths.append(
            render_trend_plot(report, str(run_output_dir / f"trends-{short_hash}.svg"))
        )

    text = assemble_text_report(records, report)
    report_path = run_output_dir / f"report-{short_hash}.txt"
    report_path.write_text(text, encoding="utf-8")
    artifact_paths.append(str(report_path))

    manifest = build_manifest_dict(
        abs_input_posix=abs_input_posix,
        record_count=len(records),
        effective_params=effective_params,
        hashes=(short_hash, full_hash),
        bootstrap_diagnostics=summary.diagnostics,
        artifact_paths=artifact_paths,
    )
    write_manifest(run_output_dir / f"manifest-{short_hash}.json", manifest)

    print(text)
    return report


def _parse_header_map(items: Optional[List[str]]) -> Dict[str, str]:
    mapping: Dict[str, str] = {}
    for item in items or []:
        if ":" not in item:
            raise ValueError(f"Invalid --header-map '{item}'; expected OLD:NEW")
        old, new = item.split(":", 1)
        if not old.strip() or not new.strip():
            raise ValueError(f"Invalid --header-map '{item}'; expected OLD:NEW")
        mapping[old.strip()] = new.strip()
    return mapping


def _build_cli_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="breach-trends",
        description="Quantile-regression trends in breach cost by cause, with bootstrap intervals.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    d_load, d_trend, d_boot = get_default_params()

    parser.add_argument(
        "--print-defaults",
        action="store_true",
        help="Print default parameter values and exit.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Show full tracebacks for debugging (also BREACH_TRENDS_DEBUG=1).",
    )

    g_load = parser.add_argument_group("LoadParams")
    g_load.add_argument("--csv-path", type=str, help="Path to the breach CSV (required).")
    g_load.add_argument(
        "--header-map",
        action="append",
        metavar="OLD:NEW",
        help="Map input header OLD to canonical NEW. Repeatable.",
    )
    g_load.add_argument("--date-format", type=str, help="strptime format for breach_date.")

    g_trend = parser.add_argument_group("TrendParams")
    g_trend.add_argument(
        "--tau",
        type=float,
        action="append",
        dest="taus",
        help=f"Quantile level; repeatable (default {list(d_trend.taus)}).",
    )
    g_trend.add_argument(
        "--reference-rule",
        choices=[r.name for r in ReferenceRule],
        default=d_trend.reference_rule.name,
        help="How the reference cause is chosen.",
    )
    g_trend.add_argument(
        "--reference-cause", type=str, help="Explicit reference cause (overrides rule)."
    )
    g_trend.add_argument(
        "--solver",
        choices=[s.name for s in QuantileSolver],
        default=d_trend.solver.name,
        help="Quantile regression engine.",
    )
    g_trend.add_argument(
        "--confidence-level", type=float, default=d_trend.confidence_level
    )

    g_boot = parser.add_argument_group("BootstrapParams")
    g_boot.add_argument(
        "--iterations", type=int, default=d_boot.n_iterations, help="Bootstrap iterations."
    )
    g_boot.add_argument("--seed", type=int, help="Random seed for resampling.")
    g_boot.add_argument(
        "--workers", type=int, help="Worker processes (default: CPU count; 1 = in-process)."
    )
    g_boot.add_argument("--min-samples", type=int, default=d_boot.min_samples)
    g_boot.add_argument(
        "--max-failure-fraction",
        type=float,
        help="Fail the bootstrap stage when failed/attempted exceeds this fraction.",
    )

    g_out = parser.add_argument_group("Output")
    g_out.add_argument("--output-dir", type=str, default="output")
    g_out.add_argument("--no-plot", action="store_true", help="Skip the SVG chart.")

    g_val = parser.add_argument_group("Validation")
    g_val.add_argument(
        "--validation-test",
        choices=[v.name for v in ValidationTest],
        help="Run a statistical validation scenario instead of the pipeline.",
    )
    g_val.add_argument(
        "--validation-replications",
        type=int,
        default=50,
        help="Synthetic datasets simulated by the validation scenario.",
    )
    return parser


def _args_to_params(args) -> Tuple[LoadParams, TrendParams, BootstrapParams]:
    d_load, d_trend, d_boot = get_default_params()
    load = LoadParams(
        csv_path=Path(args.csv_path) if args.csv_path else None,
        header_map=_parse_header_map(args.header_map),
        date_format=args.date_format,
    )
    trend = TrendParams(
        taus=tuple(args.taus) if args.taus else d_trend.taus,
        reference_rule=ReferenceRule[args.reference_rule],
        reference_cause=args.reference_cause,
        solver=QuantileSolver[args.solver],
        confidence_level=float(args.confidence_level),
    )
    boot = BootstrapParams(
        n_iterations=int(args.iterations),
        random_seed=args.seed,
        n_workers=args.workers,
        min_samples=int(args.min_samples),
        max_failure_fraction=args.max_failure_fraction,
    )
    return load, trend, boot


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point. Parses arguments, builds parameter objects, then orchestrates.
    """
    argv = sys.argv[1:] if argv is None else argv
    parser = _build_cli_parser()
    args = parser.parse_args(argv)

    if args.print_defaults:
        import json

        d_load, d_trend, d_boot = get_default_params()
        print(
            json.dumps(
                build_effective_parameters(load=d_load, trend=d_trend, bootstrap=d_boot),
                indent=2,
            )
        )
        return

    debug_mode = bool(args.debug or os.getenv("BREACH_TRENDS_DEBUG", "") == "1")
    if debug_mode:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        params_load, params_trend, params_boot = _args_to_params(args)
        if args.validation_test is not None:
            try:
                from .validation import validate_interval_coverage
            except ImportError:
                from validation import validate_interval_coverage

            vt = ValidationTest[args.validation_test]
            if vt is ValidationTest.COVERAGE:
                result = validate_interval_coverage(
                    n_replications=int(args.validation_replications),
                    trend_params=params_trend,
                    bootstrap_params=params_boot,
                )
                print(result.summarize())
                return
            raise ValueError(f"Selected validation test not supported: {args.validation_test}")

        if params_load.csv_path is None:
            parser.error("--csv-path is required")
        _orchestrate(
            params_load,
            params_trend,
            params_boot,
            output_base=args.output_dir,
            render_plot=not args.no_plot,
        )
    except (FileNotFoundError, ValueError, BreachLoadError, TrendEstimationError) as e:
        logger.info("User-facing error: %s", e)
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except Exception as e:
        logger.exception("Unhandled exception during execution")
        if debug_mode:
            import traceback

            traceback.print_exc()
        else:
            print(f"Unexpected error: {e}", file=sys.stderr)
            print(
                "Run with --debug or set BREACH_TRENDS_DEBUG=1 to see the full traceback.",
                file=sys.stderr,
            )
        sys.exit(1)


if __name__ == "__main__":
    main()
