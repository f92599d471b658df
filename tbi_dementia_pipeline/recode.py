"""Recoding of the raw donor table into the derived analysis tables."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence

import numpy as np
import pandas as pd

from .config import CONFIG, LOC_DURATION_LEVELS

AGE_BIN_PATTERN = re.compile(r"^(\d+)\s*-\s*(\d+)$")
AGE_OPEN_PATTERN = re.compile(r"^(\d+)\s*\+$")


class RecodingError(ValueError):
    """Raised when a column holds a value the recoding tables do not cover."""

    def __init__(self, column: str, values: Iterable[object], reason: str = "unmapped value(s)") -> None:
        self.column = column
        self.values = sorted({str(v) for v in values})
        preview = ", ".join(repr(v) for v in self.values[:10])
        super().__init__(f"{column}: {reason}: {preview}")


@dataclass
class DerivedTables:
    donor: pd.DataFrame
    donor2: pd.DataFrame
    donor3: pd.DataFrame
    donor4: pd.DataFrame
    sample_flow: pd.DataFrame


def _strict_numeric(series: pd.Series, column: str) -> pd.Series:
    out = pd.to_numeric(series, errors="coerce")
    bad = series.notna() & out.isna()
    if bad.any():
        raise RecodingError(column, series.loc[bad].tolist(), reason="non-numeric value(s)")
    return out


def drop_unused_levels(df: pd.DataFrame, columns: Iterable[str] | None = None) -> pd.DataFrame:
    """Remove categories with no observed rows so design matrices carry no all-zero columns."""
    out = df.copy()
    cols = list(columns) if columns is not None else list(out.columns)
    for col in cols:
        if col in out.columns and isinstance(out[col].dtype, pd.CategoricalDtype):
            out[col] = out[col].cat.remove_unused_categories()
    return out


def recode_outcome(df: pd.DataFrame, config: dict = CONFIG) -> pd.DataFrame:
    """Binary dementia outcome; drops the diagnosis-detail columns.

    Re-applying to a table that already carries a binary outcome and no
    diagnosis column returns the outcome unchanged.
    """
    out = df.copy()
    outcome = config["outcome_col"]
    diagnosis = config["diagnosis_col"]

    if diagnosis in out.columns:
        labels = out[diagnosis]
        if labels.isna().any():
            raise RecodingError(diagnosis, ["<missing>"], reason="missing diagnosis label(s)")
        out[outcome] = (labels.astype(str).str.strip() != config["no_dementia_label"]).astype(int)
    elif outcome in out.columns:
        values = pd.to_numeric(out[outcome], errors="coerce")
        bad = values.isna() | ~values.isin([0, 1])
        if bad.any():
            raise RecodingError(outcome, out.loc[bad, outcome].tolist(), reason="non-binary outcome value(s)")
        out[outcome] = values.astype(int)
    else:
        raise RecodingError(outcome, [diagnosis], reason="neither outcome nor diagnosis column present")

    drop_cols = [c for c in config["drop_diagnosis_columns"] if c in out.columns]
    return out.drop(columns=drop_cols)


def _age_value(raw: str, age_map: Mapping[str, float]) -> float | None:
    if raw in age_map:
        return float(age_map[raw])
    bin_match = AGE_BIN_PATTERN.match(raw)
    if bin_match:
        lo, hi = int(bin_match.group(1)), int(bin_match.group(2))
        return (lo + hi) / 2.0
    open_match = AGE_OPEN_PATTERN.match(raw)
    if open_match:
        return float(open_match.group(1))
    try:
        return float(raw)
    except ValueError:
        return None


def recode_age(series: pd.Series, age_map: Mapping[str, float] | None = None) -> pd.Series:
    """Map age ranges to a representative number ("100+" -> 100, "95-99" -> 97)."""
    mapping = dict(CONFIG["age_map"] if age_map is None else age_map)
    out = pd.Series(np.nan, index=series.index, name=series.name, dtype=float)
    bad: list[object] = []
    for idx, value in series.items():
        if pd.isna(value):
            continue
        parsed = _age_value(str(value).strip(), mapping)
        if parsed is None:
            bad.append(value)
        else:
            out.at[idx] = parsed
    if bad:
        raise RecodingError(series.name or "age", bad)
    return out


def apply_level_map(
    series: pd.Series,
    mapping: Mapping[str, str],
    *,
    column: str | None = None,
    levels: Sequence[str] | None = None,
    ordered: bool = False,
) -> pd.Series:
    """Recode through an explicit label table; any value outside it raises."""
    name = column or str(series.name)
    keys = series.dropna().astype(str).str.strip()
    unmapped = set(keys) - set(mapping)
    if unmapped:
        raise RecodingError(name, unmapped)

    mapped = series.map(lambda v: mapping[str(v).strip()] if pd.notna(v) else np.nan)
    categories = list(levels) if levels is not None else list(dict.fromkeys(mapping.values()))
    return pd.Series(
        pd.Categorical(mapped, categories=categories, ordered=ordered),
        index=series.index,
        name=series.name,
    )


def bucket_age_at_first_tbi(series: pd.Series, config: dict = CONFIG) -> pd.Series:
    values = _strict_numeric(series, "age_at_first_tbi")
    negative = values.notna() & (values < 0)
    if negative.any():
        raise RecodingError("age_at_first_tbi", values.loc[negative].tolist(), reason="negative age")

    split = float(config["age_first_tbi_split"])
    never, before, after = config["age_first_tbi_levels"]
    labels = np.select(
        [values == 0, (values > 0) & (values < split), values >= split],
        [never, before, after],
        default=None,
    )
    return pd.Series(
        pd.Categorical(labels, categories=config["age_first_tbi_levels"]),
        index=series.index,
        name=series.name,
    )


def recode_loc_duration(df: pd.DataFrame, config: dict = CONFIG) -> pd.Series:
    """Collapse LOC duration using the companion TBI-with-LOC count.

    "Unknown or N/A" is "never" when num_tbi_w_loc == 0 and missing when an
    event occurred; missing rows come back as NaN.
    """
    duration = df["longest_loc_duration"].astype(object)
    count = _strict_numeric(df["num_tbi_w_loc"], "num_tbi_w_loc")

    unknown = duration == config["loc_unknown_label"]
    short = duration.isin(config["loc_short_levels"])
    long = duration.isin(config["loc_long_levels"])

    unmapped = duration.notna() & ~(unknown | short | long)
    if unmapped.any():
        raise RecodingError("longest_loc_duration", duration.loc[unmapped].tolist())

    inconsistent = (short | long) & (count == 0)
    if inconsistent.any():
        logging.warning(
            "recode_loc_duration: %s rows report a LOC duration with num_tbi_w_loc == 0; keeping the duration.",
            int(inconsistent.sum()),
        )

    never_label, short_label, long_label = config["loc_collapsed_levels"]
    labels = np.select(
        [unknown & (count == 0), short, long],
        [never_label, short_label, long_label],
        default=None,
    )
    return pd.Series(
        pd.Categorical(labels, categories=config["loc_collapsed_levels"]),
        index=df.index,
        name="longest_loc_duration",
    )


def collapse_num_tbi_w_loc(series: pd.Series, config: dict = CONFIG) -> pd.Series:
    values = _strict_numeric(series, "num_tbi_w_loc")
    invalid = values.notna() & ((values < 0) | (values != np.floor(values)))
    if invalid.any():
        raise RecodingError("num_tbi_w_loc", values.loc[invalid].tolist(), reason="not a non-negative count")

    collapse_at = int(config["num_tbi_collapse_at"])
    levels = list(config["num_tbi_levels"])
    labels = np.select(
        [values < collapse_at, values >= collapse_at],
        [values.fillna(-1).astype(int).astype(str), levels[-1]],
        default=None,
    )
    return pd.Series(pd.Categorical(labels, categories=levels), index=series.index, name=series.name)


def _flow_row(step: str, description: str, df: pd.DataFrame, parent: pd.DataFrame | None, outcome: str) -> dict:
    return {
        "step": step,
        "description": description,
        "n": int(len(df)),
        "n_dementia": int(df[outcome].sum()),
        "n_removed": int(len(parent) - len(df)) if parent is not None else 0,
    }


def _require_complete(df: pd.DataFrame, columns: Sequence[str], config: dict = CONFIG) -> None:
    """Blank cells in analysis columns are data errors, not a silent filter."""
    id_col = config.get("id_col")
    for col in columns:
        blank = df[col].isna()
        if blank.any():
            rows = df.loc[blank, id_col] if id_col in df.columns else df.index[blank]
            raise RecodingError(col, list(rows), reason=f"{int(blank.sum())} blank value(s) in rows")


def build_donor(raw: pd.DataFrame, config: dict = CONFIG) -> pd.DataFrame:
    donor = recode_outcome(raw, config)
    maps = config["level_maps"]
    donor["age"] = recode_age(donor["age"], config["age_map"])
    donor["sex"] = apply_level_map(donor["sex"], maps["sex"], column="sex")
    donor["apo_e4_allele"] = apply_level_map(donor["apo_e4_allele"], maps["apo_e4_allele"], column="apo_e4_allele")
    donor["ever_tbi_w_loc"] = apply_level_map(donor["ever_tbi_w_loc"], maps["ever_tbi_w_loc"], column="ever_tbi_w_loc")
    donor["longest_loc_duration"] = apply_level_map(
        donor["longest_loc_duration"],
        maps["longest_loc_duration"],
        column="longest_loc_duration",
        levels=LOC_DURATION_LEVELS,
        ordered=True,
    )
    for col in ["education_years", "age_at_first_tbi", "num_tbi_w_loc"]:
        donor[col] = _strict_numeric(donor[col], col)
    _require_complete(donor, config["complete_columns"], config)
    return donor


def build_derived_tables(raw: pd.DataFrame, config: dict = CONFIG) -> DerivedTables:
    outcome = config["outcome_col"]

    donor = build_donor(raw, config)
    flow = [_flow_row("donor", "recoded donor table", donor, None, outcome)]

    keep_apoe = donor["apo_e4_allele"] != config["apoe_unknown_label"]
    donor2 = drop_unused_levels(donor.loc[keep_apoe], ["apo_e4_allele"])
    donor2["age_at_first_tbi"] = bucket_age_at_first_tbi(donor2["age_at_first_tbi"], config)
    flow.append(_flow_row("donor2", "APOE e4 status known; age at first TBI bucketed", donor2, donor, outcome))

    loc = recode_loc_duration(donor2, config)
    has_loc = loc.notna()
    donor3 = donor2.loc[has_loc].copy()
    donor3["longest_loc_duration_raw"] = donor3["longest_loc_duration"]
    donor3["longest_loc_duration"] = loc.loc[has_loc]
    flow.append(_flow_row("donor3", "LOC duration recorded; collapsed to 3 levels", donor3, donor2, outcome))
    if int((~has_loc).sum()):
        logging.info(
            "donor3: removed %s donors with an LOC event but no recorded duration.", int((~has_loc).sum())
        )

    donor4 = donor3.copy()
    donor4["num_tbi_w_loc_count"] = donor4["num_tbi_w_loc"]
    donor4["num_tbi_w_loc"] = collapse_num_tbi_w_loc(donor4["num_tbi_w_loc"], config)
    flow.append(_flow_row("donor4", "TBI-with-LOC count collapsed to 0/1/2-3", donor4, donor3, outcome))

    sizes = [len(donor), len(donor2), len(donor3), len(donor4)]
    if sizes != sorted(sizes, reverse=True):
        raise RuntimeError(f"Derived tables are not nested: row counts {sizes}")

    sample_flow = pd.DataFrame(flow)
    for row in flow:
        logging.info("%s: n=%s dementia=%s removed=%s", row["step"], row["n"], row["n_dementia"], row["n_removed"])

    return DerivedTables(donor=donor, donor2=donor2, donor3=donor3, donor4=donor4, sample_flow=sample_flow)
