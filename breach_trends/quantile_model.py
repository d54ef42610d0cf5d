"""
Quantile regression of log breach cost on time, cause, and time x cause.

Design matrix columns (term names are the public contract used by the extractor):

    const                 intercept (reference cause baseline)
    time                  days since epoch (reference cause slope)
    cause=<c>             indicator, one per non-reference cause
    time:cause=<c>        time * indicator, one per non-reference cause

Two solvers are available:
- QuantileSolver.HIGHS: exact linear-programming solve of the pinball objective
  via scipy.optimize.linprog(method="highs").
- QuantileSolver.IRLS:  statsmodels QuantReg (iteratively reweighted least squares).

Time stays in days throughout; slopes are annualized only at report time with
annualize_slope().
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from scipy import sparse
from scipy.optimize import linprog
from statsmodels.regression.quantile_regression import QuantReg
from statsmodels.tools.sm_exceptions import ConvergenceWarning, IterationLimitWarning

try:
    from .records import DAYS_PER_YEAR, RecordSet, ReferenceRule
except ImportError:
    from records import DAYS_PER_YEAR, RecordSet, ReferenceRule

logger = logging.getLogger(__name__)

TIME_TERM: str = "time"
CONST_TERM: str = "const"


class TrendEstimationError(RuntimeError):
    """Base class for trend estimation failures."""

    pass


class ModelFitFailure(TrendEstimationError):
    """Raised when a quantile model cannot be fit (degenerate design or solver failure)."""

    def __init__(self, message: str, tau: Optional[float] = None) -> None:
        super().__init__(message)
        self.tau = tau


class InvariantViolation(TrendEstimationError):
    """Raised when a fitted model lacks a term that the design guarantees."""

    def __init__(self, cause: str, tau: float, missing_term: str, available_terms: List[str]):
        super().__init__(
            f"Model for tau={tau} has no term '{missing_term}' (cause '{cause}'); "
            f"available terms: {available_terms}"
        )
        self.cause = cause
        self.tau = tau
        self.missing_term = missing_term
        self.available_terms = list(available_terms)


class QuantileSolver(Enum):
    HIGHS = auto()
    IRLS = auto()


def cause_term(cause: str) -> str:
    return f"cause={cause}"


def interaction_term(cause: str) -> str:
    return f"{TIME_TERM}:cause={cause}"


@dataclass
class QuantileModel:
    tau: float
    params: Dict[str, float]
    causes: List[str]
    solver: QuantileSolver
    n_obs: int
    objective: float
    diagnostics: Dict[str, object] = field(default_factory=dict)

    @property
    def reference_cause(self) -> str:
        return self.causes[0]

    def coef(self, term: str) -> float:
        return self.params[term]


def pinball_loss(residuals: np.ndarray, tau: float) -> float:
    """Sum of asymmetric absolute deviations: tau*r for r>=0, (tau-1)*r for r<0."""
    r = np.asarray(residuals, dtype=float)
    return float(np.sum(np.where(r >= 0.0, tau * r, (tau - 1.0) * r)))


def annualize_slope(slope):
    """Convert a per-day log-scale slope into an annualized percent change."""
    return (np.exp(DAYS_PER_YEAR * np.asarray(slope, dtype=float)) - 1.0) * 100.0


def build_design_matrix(
    time_days: np.ndarray, cause_values: np.ndarray, causes: Sequence[str]
) -> pd.DataFrame:
    """
    Build the named design matrix. `causes[0]` is the reference category and gets
    no indicator or interaction column.
    """
    t = np.asarray(time_days, dtype=float)
    cv = np.asarray(cause_values, dtype=object)
    cols: Dict[str, np.ndarray] = {TIME_TERM: t}
    indicators: Dict[str, np.ndarray] = {}
    for c in causes[1:]:
        indicators[c] = (cv == c).astype(float)
        cols[cause_term(c)] = indicators[c]
    for c in causes[1:]:
        cols[interaction_term(c)] = t * indicators[c]
    X = pd.DataFrame(cols)
    X = sm.add_constant(X, has_constant="add")
    return X


def _check_design(
    X: pd.DataFrame, time_days: np.ndarray, cause_values: np.ndarray, causes: Sequence[str]
) -> None:
    # Per-cause time variation: a cause with < 2 distinct dates makes its slope
    # unidentifiable (and a cause absent from a resample has none at all).
    t = np.asarray(time_days, dtype=float)
    cv = np.asarray(cause_values, dtype=object)
    for c in causes:
        n_distinct = int(np.unique(t[cv == c]).size)
        if n_distinct < 2:
            raise ModelFitFailure(
                f"Cause '{c}' has {n_distinct} distinct breach date(s); "
                "at least 2 are required to estimate its time trend"
            )

    values = X.to_numpy(dtype=float)
    norms = np.linalg.norm(values, axis=0)
    if (norms == 0).any():
        zero_cols = [name for name, n in zip(X.columns, norms) if n == 0]
        raise ModelFitFailure(f"Design matrix has all-zero columns: {zero_cols}")
    rank = int(np.linalg.matrix_rank(values / norms))
    if rank < values.shape[1]:
        raise ModelFitFailure(
            f"Design matrix is rank-deficient (rank {rank} < {values.shape[1]} columns)"
        )


def _solve_highs(X: np.ndarray, y: np.ndarray, tau: float) -> tuple[np.ndarray, dict]:
    # min tau*1'u + (1-tau)*1'v  s.t.  X b + u - v = y,  u, v >= 0,  b free
    n, p = X.shape
    scale = np.max(np.abs(X), axis=0)
    scale[scale == 0] = 1.0
    Xs = X / scale
    c = np.concatenate([np.zeros(p), np.full(n, tau), np.full(n, 1.0 - tau)])
    eye = sparse.identity(n, format="csr")
    A_eq = sparse.hstack([sparse.csr_matrix(Xs), eye, -eye], format="csr")
    bounds = [(None, None)] * p + [(0, None)] * (2 * n)
    res = linprog(c, A_eq=A_eq, b_eq=y, bounds=bounds, method="highs")
    if res.status != 0 or res.x is None:
        raise ModelFitFailure(f"HiGHS failed for tau={tau}: {res.message}", tau=tau)
    beta = res.x[:p] / scale
    return beta, {"solver_status": int(res.status), "solver_message": str(res.message)}


def _solve_irls(X: np.ndarray, y: np.ndarray, tau: float) -> tuple[np.ndarray, dict]:
    scale = np.max(np.abs(X), axis=0)
    scale[scale == 0] = 1.0
    diag: dict = {}
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        try:
            res = QuantReg(y, X / scale).fit(q=tau, max_iter=5000, p_tol=1e-8)
        except (np.linalg.LinAlgError, ValueError) as e:
            raise ModelFitFailure(f"QuantReg failed for tau={tau}: {e}", tau=tau) from e
    for w in caught:
        if issubclass(w.category, (IterationLimitWarning, ConvergenceWarning)):
            logger.warning("QuantReg tau=%s: %s", tau, w.message)
            diag["convergence_warning"] = str(w.message)
    beta = np.asarray(res.params, dtype=float) / scale
    diag["iterations"] = int(getattr(res, "iterations", 0) or 0)
    return beta, diag


def fit_quantile_models(
    records: RecordSet,
    taus: Iterable[float],
    causes: Optional[Sequence[str]] = None,
    reference_rule: ReferenceRule = ReferenceRule.FIRST_SEEN,
    reference_cause: Optional[str] = None,
    solver: QuantileSolver = QuantileSolver.HIGHS,
) -> Dict[float, QuantileModel]:
    """
    Fit one quantile model per tau on `records`.

    `causes` (reference first) pins the category encoding; when omitted it is
    derived from the record set with `reference_rule` / `reference_cause`.
    Raises ModelFitFailure on a degenerate design, a solver failure, or
    non-finite coefficients. Pure: no side effects beyond logging.
    """
    taus = sorted({float(t) for t in taus})
    if not taus:
        raise ValueError("At least one quantile level is required")
    for tau in taus:
        if not 0.0 < tau < 1.0:
            raise ValueError(f"Quantile level must lie in (0, 1), got {tau}")

    ordered = (
        list(causes)
        if causes is not None
        else records.ordered_causes(reference_rule, reference_cause)
    )
    y = records.response()
    if not np.isfinite(y).all():
        raise ValueError("log_total_amount contains non-finite values")

    t = records.time_days()
    cv = records.cause_values()
    X = build_design_matrix(t, cv, ordered)
    _check_design(X, t, cv, ordered)
    values = X.to_numpy(dtype=float)
    names = list(X.columns)

    models: Dict[float, QuantileModel] = {}
    for tau in taus:
        if solver is QuantileSolver.HIGHS:
            beta, diag = _solve_highs(values, y, tau)
        elif solver is QuantileSolver.IRLS:
            beta, diag = _solve_irls(values, y, tau)
        else:
            raise ValueError(f"Unsupported solver: {solver}")
        if not np.isfinite(beta).all():
            raise ModelFitFailure(f"Non-finite coefficients for tau={tau}", tau=tau)
        objective = pinball_loss(y - values @ beta, tau)
        models[tau] = QuantileModel(
            tau=tau,
            params=dict(zip(names, (float(b) for b in beta))),
            causes=list(ordered),
            solver=solver,
            n_obs=int(len(y)),
            objective=objective,
            diagnostics=diag,
        )
        logger.debug("Fitted tau=%s n=%d objective=%.6g", tau, len(y), objective)
    return models


def extract_cause_trends(model: QuantileModel) -> Dict[str, float]:
    """
    Cause-specific raw slope (per day, log scale).

    Reference cause: the bare `time` coefficient. Every other cause:
    `time` + `time:cause=<c>`. This is the only place the composition happens;
    the full-data fit and every bootstrap refit go through it.
    """

    def _lookup(term: str, cause: str) -> float:
        try:
            return float(model.params[term])
        except KeyError:
            raise InvariantViolation(cause, model.tau, term, list(model.params)) from None

    base = _lookup(TIME_TERM, model.reference_cause)
    trends: Dict[str, float] = {model.reference_cause: base}
    for c in model.causes[1:]:
        trends[c] = base + _lookup(interaction_term(c), c)
    return trends
