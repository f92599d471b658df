"""Covariate-pattern aggregation, binomial refit and influence diagnostics."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import ConvergenceWarning

from .config import CONFIG
from .modeling import build_design, build_formula


@dataclass
class AggregatedFit:
    grouped: pd.DataFrame
    fit: object
    formula: str
    coefficients: pd.DataFrame
    influence: pd.DataFrame
    aliased: list[str]
    excluded: list[str]


def aggregate_binomial(df: pd.DataFrame, outcome: str, predictors: Sequence[str]) -> pd.DataFrame:
    """One row per observed covariate pattern with (cases, trials)."""
    cols = list(predictors)
    sample = df.dropna(subset=[outcome, *cols])
    if not cols:
        grouped = pd.DataFrame({"cases": [int(sample[outcome].sum())], "trials": [int(len(sample))]})
    else:
        grouped = (
            sample.groupby(cols, observed=True)[outcome]
            .agg(cases="sum", trials="size")
            .reset_index()
        )
        # keep the category order of the source table
        for col in cols:
            if isinstance(sample[col].dtype, pd.CategoricalDtype):
                grouped[col] = pd.Categorical(grouped[col], categories=sample[col].cat.categories)
    grouped["cases"] = grouped["cases"].astype(int)
    grouped["trials"] = grouped["trials"].astype(int)
    grouped["noncases"] = grouped["trials"] - grouped["cases"]
    grouped["proportion"] = grouped["cases"] / grouped["trials"]
    logging.info("aggregate_binomial: %s subjects -> %s covariate patterns", len(sample), len(grouped))
    return grouped


def fit_binomial_proportion(grouped: pd.DataFrame, predictors: Sequence[str], config: dict = CONFIG):
    """Binomial GLM of the case proportion weighted by trials; returns (fit, formula, aliased)."""
    formula = build_formula("proportion", list(predictors), grouped, config)
    design = build_design(formula, grouped)
    weights = grouped.loc[design.y.index, "trials"].to_numpy(dtype=float)
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        fit = sm.GLM(design.y, design.X, family=sm.families.Binomial(), var_weights=weights).fit()
    for w in caught:
        if issubclass(w.category, (RuntimeWarning, ConvergenceWarning)):
            logging.warning("aggregated binomial fit: %s", w.message)
    return fit, formula, design.aliased


def _coefficient_table(fit, label: str, confidence_level: float) -> pd.DataFrame:
    conf = fit.conf_int(alpha=1.0 - confidence_level)
    with np.errstate(over="ignore"):
        odds = np.exp(fit.params.values)
        odds_low = np.exp(conf[0].values)
        odds_high = np.exp(conf[1].values)
    return pd.DataFrame(
        {
            "term": fit.params.index,
            "coef": fit.params.values,
            "std_error": fit.bse.values,
            "z_value": fit.tvalues.values,
            "p_value": fit.pvalues.values,
            "or": odds,
            "or_ci_low": odds_low,
            "or_ci_high": odds_high,
            "model": label,
        }
    )


def influence_table(fit, grouped: pd.DataFrame, config: dict = CONFIG) -> pd.DataFrame:
    """Per-pattern residuals, leverage and Cook's distance with review flags.

    Flags mark rows for human review; nothing is excluded here.
    """
    infl = fit.get_influence(observed=False)
    n = int(fit.nobs)
    p = int(len(fit.params))
    out = grouped.loc[fit.model.data.row_labels].copy()
    out["fitted"] = np.asarray(fit.fittedvalues)
    out["resid_pearson"] = np.asarray(fit.resid_pearson)
    out["resid_deviance"] = np.asarray(fit.resid_deviance)
    out["resid_studentized"] = np.asarray(infl.resid_studentized)
    out["hat"] = np.asarray(infl.hat_matrix_diag)
    out["cooks_d"] = np.asarray(infl.cooks_distance[0])

    hat_cutoff = float(config["influence_hat_multiplier"]) * p / n if n else np.inf
    cooks_cutoff = float(config["influence_cooks_numerator"]) / n if n else np.inf
    stud_cutoff = float(config["influence_studentized_cutoff"])
    out["flag_resid"] = out["resid_studentized"].abs() > stud_cutoff
    out["flag_hat"] = out["hat"] > hat_cutoff
    out["flag_cooks"] = out["cooks_d"] > cooks_cutoff
    out["flag_for_review"] = out[["flag_resid", "flag_hat", "flag_cooks"]].any(axis=1)

    n_flagged = int(out["flag_for_review"].sum())
    if n_flagged:
        logging.warning(
            "influence: %s of %s covariate patterns flagged for review (hat>%.3f, cooks>%.3f, |rstud|>%.1f)",
            n_flagged,
            n,
            hat_cutoff,
            cooks_cutoff,
            stud_cutoff,
        )
    return out.reset_index(drop=True)


def pattern_predictors(df: pd.DataFrame, predictors: Sequence[str]) -> tuple[list[str], list[str]]:
    """Split predictors into categorical ones (pattern-forming) and the rest."""
    categorical: list[str] = []
    excluded: list[str] = []
    for col in predictors:
        series = df[col]
        if isinstance(series.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(series):
            categorical.append(col)
        else:
            excluded.append(col)
    return categorical, excluded


def run_aggregated_analysis(
    df: pd.DataFrame,
    predictors: Sequence[str],
    *,
    notes: list[str],
    label: str = "aggregated_binomial",
    config: dict = CONFIG,
) -> AggregatedFit:
    """Covariate-pattern refit over the categorical predictors.

    Numeric predictors would split the table into one pattern per subject,
    which makes leverage and Cook's distance meaningless; they are left out
    of the patterns and named in the notes.
    """
    categorical, excluded = pattern_predictors(df, predictors)
    if excluded:
        msg = (
            f"{label}: numeric predictor(s) {', '.join(excluded)} left out of the covariate patterns; "
            "the aggregated model is adjusted for categorical predictors only."
        )
        logging.warning(msg)
        notes.append(msg)
    grouped = aggregate_binomial(df, config["outcome_col"], categorical)
    fit, formula, aliased = fit_binomial_proportion(grouped, categorical, config)
    if aliased:
        msg = f"{label}: aliased terms dropped from the design ({', '.join(aliased)})."
        logging.warning(msg)
        notes.append(msg)
    coefficients = _coefficient_table(fit, label, float(config["confidence_level"]))
    coefficients["n_patterns"] = int(len(grouped))
    coefficients["n_subjects"] = int(grouped["trials"].sum())
    influence = influence_table(fit, grouped, config)
    n_flagged = int(influence["flag_for_review"].sum())
    if n_flagged:
        notes.append(f"{label}: {n_flagged} covariate pattern(s) flagged for manual review; none were removed.")
    return AggregatedFit(
        grouped=grouped,
        fit=fit,
        formula=formula,
        coefficients=coefficients,
        influence=influence,
        aliased=aliased,
        excluded=excluded,
    )
