"""
Breach table loader.

Reads a CSV of breach records into a RecordSet. Input headers may be renamed to
the canonical names through a case-insensitive header map (OLD -> NEW); the map
is checked for collisions before anything is renamed.

Canonical input columns:
    breach_date, cause, sector, affected_count, total_amount   (required)
    record_id                                                 (optional; row number when absent)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

try:
    from .records import RecordSet
except ImportError:
    from records import RecordSet

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["breach_date", "cause", "sector", "affected_count", "total_amount"]


class BreachLoadError(Exception):
    """Base exception for breach table loading errors."""

    pass


class MissingColumnsError(BreachLoadError):
    """Raised when required canonical columns are absent after header mapping."""

    pass


class InvalidValueError(BreachLoadError):
    """Raised when a cell cannot be converted to its canonical type."""

    pass


@dataclass
class LoadParams:
    """
    Parameters for loading the breach table.

    Attributes:
        csv_path: Path to the CSV file.
        header_map: Input header -> canonical name. Matching is case-insensitive and
            whitespace-trimmed. Conflicting targets raise ValueError.
        date_format: Optional strptime format for breach_date; inferred when None.
    """

    csv_path: Optional[Path]
    header_map: Dict[str, str] = field(default_factory=dict)
    date_format: Optional[str] = None


def apply_header_map(df: pd.DataFrame, header_map: Dict[str, str]) -> pd.DataFrame:
    """Rename columns per header_map with duplicate-target detection."""
    if not header_map:
        return df

    value_to_keys: Dict[str, list[str]] = {}
    for k, v in header_map.items():
        value_to_keys.setdefault(v.strip(), []).append(k)
    duplicates = {tgt: keys for tgt, keys in value_to_keys.items() if len(keys) > 1}
    if duplicates:
        parts = [f"target '{tgt}' specified by keys {keys}" for tgt, keys in duplicates.items()]
        raise ValueError(
            "Conflicting --header-map targets specified (multiple OLD map to same NEW): "
            + "; ".join(parts)
        )

    lower_map = {k.strip().lower(): v.strip() for k, v in header_map.items()}
    original_columns = list(df.columns)
    remap: Dict[str, str] = {}
    for col in original_columns:
        mapped = lower_map.get(str(col).strip().lower())
        if mapped:
            remap[col] = mapped

    new_names = [remap.get(col, col) for col in original_columns]
    dup_targets = {name for name in new_names if new_names.count(name) > 1}
    if dup_targets:
        conflicts: Dict[str, list[str]] = {}
        for col in original_columns:
            target = remap.get(col, col)
            if target in dup_targets:
                conflicts.setdefault(target, []).append(col)
        msg_parts = [f"'{tgt}' <= columns {cols}" for tgt, cols in conflicts.items()]
        raise ValueError(
            "Header mapping would produce duplicate column names after rename: "
            + "; ".join(msg_parts)
        )

    if remap:
        df = df.rename(columns=remap)
        logger.info(f"Applied header mappings: {remap}")
    found_lower = {str(c).strip().lower() for c in original_columns}
    missing = [k for k in header_map if k.strip().lower() not in found_lower]
    if missing:
        logger.warning(f"Header map keys not found in CSV columns: {missing}")
    return df


class BreachCSVLoader:
    """
    Loads a breach CSV into a RecordSet.

    Usable as a context manager for symmetry with other file-backed readers.
    """

    def __init__(self, file_path: Union[str, Path]) -> None:
        self.file_path = Path(file_path)
        if not self.file_path.exists():
            raise FileNotFoundError(f"CSV file not found: {self.file_path}")
        if not self.file_path.is_file():
            raise BreachLoadError(f"Path is not a file: {self.file_path}")

    def read_frame(self) -> pd.DataFrame:
        try:
            return pd.read_csv(self.file_path)
        except pd.errors.EmptyDataError:
            return pd.DataFrame()
        except Exception as e:
            raise BreachLoadError(f"Error reading CSV file: {e}") from e

    def load(
        self, header_map: Optional[Dict[str, str]] = None, date_format: Optional[str] = None
    ) -> RecordSet:
        df = apply_header_map(self.read_frame(), header_map or {})
        if df.empty:
            raise BreachLoadError(f"No data rows in {self.file_path}")
        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise MissingColumnsError(
                f"Breach table missing columns {missing}; found {list(df.columns)}"
            )
        if "record_id" not in df.columns:
            df["record_id"] = [str(i) for i in range(1, len(df) + 1)]

        try:
            parsed = pd.to_datetime(df["breach_date"], format=date_format, utc=True)
            df["breach_date"] = parsed.dt.tz_convert(None)
        except (ValueError, TypeError) as e:
            raise InvalidValueError(f"Invalid breach_date values: {e}") from e
        for col in ("affected_count", "total_amount"):
            converted = pd.to_numeric(df[col], errors="coerce")
            bad = converted.isna() & df[col].notna()
            if bad.any():
                first = int(bad.idxmax())
                raise InvalidValueError(
                    f"Row {first + 2}: invalid {col} '{df.loc[first, col]}'"
                )
            df[col] = converted
        if df["total_amount"].isna().any():
            raise InvalidValueError("total_amount is required on every row")
        df["affected_count"] = df["affected_count"].fillna(0)

        try:
            records = RecordSet.from_frame(df)
        except ValueError as e:
            raise InvalidValueError(str(e)) from e
        logger.info("Loaded %d breach records from %s", len(records), self.file_path)
        return records

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        pass


def load_breach_records(params: LoadParams) -> RecordSet:
    """Load a RecordSet from params.csv_path; raises on any malformed input."""
    if params.csv_path is None:
        raise ValueError("csv_path is required")
    with BreachCSVLoader(params.csv_path) as loader:
        return loader.load(params.header_map, params.date_format)
