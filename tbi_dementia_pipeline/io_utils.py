"""Donor table loading helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

import pandas as pd

# Columns whose raw codes include literals pandas would otherwise parse as NaN ("N/A").
STRING_COLUMNS = [
    "age",
    "sex",
    "apo_e4_allele",
    "longest_loc_duration",
    "ever_tbi_w_loc",
    "dsm_iv_clinical_diagnosis",
    "nincds_arda_diagnosis",
]


class DataLoadError(RuntimeError):
    """Raised when the donor table cannot be read or lacks required columns."""


def _normalize_cols(df: pd.DataFrame) -> pd.DataFrame:
    # strip whitespace + leading BOM
    df.columns = [str(c).strip().lstrip("\ufeff") for c in df.columns]
    return df


def validate_columns(df: pd.DataFrame, required: Iterable[str]) -> pd.DataFrame:
    missing = [col for col in required if col not in df.columns]
    if missing:
        raise DataLoadError(f"Donor table is missing required columns: {', '.join(sorted(missing))}")
    return df


def load_donor_csv(path: str | Path, required_columns: Iterable[str] | None = None) -> pd.DataFrame:
    csv_path = Path(path)
    logging.info("Loading donor table: %s", csv_path)
    if not csv_path.exists():
        raise DataLoadError(f"Donor table not found: {csv_path}")
    try:
        df = pd.read_csv(
            csv_path,
            dtype={col: str for col in STRING_COLUMNS},
            keep_default_na=False,
            na_values=[""],
        )
    except (OSError, UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        logging.exception("Failed to read donor table: %s", csv_path)
        raise DataLoadError(f"Could not read donor table ({csv_path}): {exc}") from exc

    df = _normalize_cols(df)
    for col in STRING_COLUMNS:
        if col in df.columns:
            df[col] = df[col].where(df[col].isna(), df[col].astype(str).str.strip())
    if required_columns is not None:
        validate_columns(df, required_columns)
    logging.info("Finished loading donor table | rows=%s cols=%s", len(df), df.shape[1])
    return df
