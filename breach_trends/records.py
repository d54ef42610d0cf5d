"""
Breach record model and the immutable RecordSet consumed by the trend estimators.

A RecordSet wraps a pandas DataFrame with canonical columns:

    record_id, breach_date, cause, sector, affected_count, total_amount, log_total_amount

Cause and sector are normalized to the UNKNOWN sentinel on construction, and
log_total_amount = log(total_amount + 1) is always derived here (never trusted
from input). The cause category order is fixed at construction time and carried
into every bootstrap resample, so the reference category never shifts between
the full-data fit and a refit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum, auto
from typing import Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

UNKNOWN: str = "Unknown"

RECORD_COLUMNS: List[str] = [
    "record_id",
    "breach_date",
    "cause",
    "sector",
    "affected_count",
    "total_amount",
    "log_total_amount",
]

# Days per year used to annualize a per-day slope. Time regressors are kept in days.
DAYS_PER_YEAR: float = 365.25

_EPOCH = pd.Timestamp("1970-01-01")


class ReferenceRule(Enum):
    """
    How the reference (baseline) cause category is chosen.

    - FIRST_SEEN:    first category by encounter order in the record set (default).
    - ALPHABETICAL:  lexicographically smallest category.
    - MOST_FREQUENT: category with the most rows; ties broken by encounter order.
    """

    FIRST_SEEN = auto()
    ALPHABETICAL = auto()
    MOST_FREQUENT = auto()


@dataclass(frozen=True)
class BreachRecord:
    record_id: str
    breach_date: date
    cause: Optional[str]
    sector: Optional[str]
    affected_count: int
    total_amount: float


def _normalize_category(series: pd.Series) -> pd.Series:
    # Blank strings count as absent.
    s = series.astype("object").where(series.notna(), None)
    s = s.map(lambda v: UNKNOWN if v is None or str(v).strip() == "" else str(v).strip())
    return s.astype(str)


def to_naive_utc(dates) -> pd.Series:
    """Parse dates; timezone-aware values are converted to UTC and the zone dropped."""
    ts = pd.to_datetime(pd.Series(dates))
    if ts.dt.tz is not None:
        ts = ts.dt.tz_convert(None)
    return ts


def days_since_epoch(dates: pd.Series) -> np.ndarray:
    """Return breach dates as float days since 1970-01-01."""
    ts = to_naive_utc(dates)
    return ((ts - _EPOCH) / pd.Timedelta(days=1)).to_numpy(dtype=float)


class RecordSet:
    """
    Ordered, read-only collection of breach records.

    The underlying frame is never handed out directly; `to_frame()` returns a copy.
    `causes` lists categories in encounter order; `ordered_causes(rule)` puts the
    reference category first.
    """

    def __init__(self, frame: pd.DataFrame, causes: Optional[Sequence[str]] = None):
        missing = [
            c for c in RECORD_COLUMNS if c != "log_total_amount" and c not in frame.columns
        ]
        if missing:
            raise ValueError(f"RecordSet frame missing columns: {missing}")

        df = frame.loc[:, [c for c in RECORD_COLUMNS if c != "log_total_amount"]].copy()
        df = df.reset_index(drop=True)
        df["record_id"] = df["record_id"].astype(str)
        df["breach_date"] = to_naive_utc(df["breach_date"]).dt.normalize()
        df["cause"] = _normalize_category(df["cause"])
        df["sector"] = _normalize_category(df["sector"])
        df["affected_count"] = pd.to_numeric(df["affected_count"]).fillna(0).astype("int64")
        df["total_amount"] = pd.to_numeric(df["total_amount"]).astype(float)

        if df["breach_date"].isna().any():
            raise ValueError("RecordSet contains rows without a breach date")
        if (df["affected_count"] < 0).any():
            raise ValueError("affected_count must be non-negative")
        amounts = df["total_amount"].to_numpy()
        if not np.isfinite(amounts).all() or (amounts < 0).any():
            raise ValueError("total_amount must be finite and non-negative")

        df["log_total_amount"] = np.log(amounts + 1.0)
        self._frame = df

        seen = list(pd.unique(df["cause"]))
        if causes is None:
            self._causes = tuple(seen)
        else:
            # Resamples inherit the parent's category order; categories absent from
            # this set are kept so a dropped cause surfaces as a degenerate design.
            unexpected = [c for c in seen if c not in causes]
            if unexpected:
                raise ValueError(f"Causes {unexpected} not in supplied category order")
            self._causes = tuple(causes)

    @classmethod
    def from_records(cls, records: Iterable[BreachRecord]) -> "RecordSet":
        rows = [
            {
                "record_id": r.record_id,
                "breach_date": r.breach_date,
                "cause": r.cause,
                "sector": r.sector,
                "affected_count": r.affected_count,
                "total_amount": r.total_amount,
            }
            for r in records
        ]
        if not rows:
            raise ValueError("RecordSet requires at least one record")
        return cls(pd.DataFrame(rows))

    @classmethod
    def from_frame(cls, frame: pd.DataFrame) -> "RecordSet":
        return cls(frame)

    def __len__(self) -> int:
        return len(self._frame)

    @property
    def causes(self) -> tuple[str, ...]:
        return self._causes

    def to_frame(self) -> pd.DataFrame:
        return self._frame.copy()

    def time_days(self) -> np.ndarray:
        return days_since_epoch(self._frame["breach_date"])

    def cause_values(self) -> np.ndarray:
        return self._frame["cause"].to_numpy(dtype=object)

    def response(self) -> np.ndarray:
        return self._frame["log_total_amount"].to_numpy(dtype=float)

    def ordered_causes(
        self,
        rule: ReferenceRule = ReferenceRule.FIRST_SEEN,
        reference: Optional[str] = None,
    ) -> List[str]:
        """
        Return cause categories with the reference category first.

        An explicit `reference` overrides `rule` and must name a known category.
        Non-reference categories keep encounter order.
        """
        causes = list(self._causes)
        if not causes:
            raise ValueError("RecordSet has no cause categories")
        if reference is not None:
            if reference not in causes:
                raise ValueError(
                    f"Reference cause '{reference}' not among categories {causes}"
                )
            ref = reference
        elif rule is ReferenceRule.FIRST_SEEN:
            ref = causes[0]
        elif rule is ReferenceRule.ALPHABETICAL:
            ref = sorted(causes)[0]
        elif rule is ReferenceRule.MOST_FREQUENT:
            counts = self._frame["cause"].value_counts()
            ref = max(causes, key=lambda c: (int(counts.get(c, 0)), -causes.index(c)))
        else:
            raise ValueError(f"Unsupported reference rule: {rule}")
        return [ref] + [c for c in causes if c != ref]

    def take(self, indices: np.ndarray) -> "RecordSet":
        """Row subset (with repetition allowed) sharing this set's category order."""
        sub = self._frame.iloc[np.asarray(indices, dtype=int)]
        return RecordSet(sub, causes=self._causes)

    def shuffled(self, rng: np.random.Generator) -> "RecordSet":
        return self.take(rng.permutation(len(self._frame)))

    def cause_counts(self) -> dict[str, int]:
        counts = self._frame["cause"].value_counts()
        return {c: int(counts.get(c, 0)) for c in self._causes}
