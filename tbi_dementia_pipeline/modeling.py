"""Confounder selection, logistic model sequence and interaction tests."""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Iterable, Sequence

import numpy as np
import pandas as pd
import patsy
import statsmodels.api as sm
from scipy import stats
from scipy.special import expit
from statsmodels.tools.sm_exceptions import (
    ConvergenceWarning,
    HessianInversionWarning,
    PerfectSeparationError,
    PerfectSeparationWarning,
)

from .config import CONFIG
from .recode import DerivedTables, drop_unused_levels

SURFACED_WARNINGS = (PerfectSeparationWarning, ConvergenceWarning, HessianInversionWarning, RuntimeWarning)


@dataclass
class Design:
    y: pd.Series
    X: pd.DataFrame
    aliased: list[str]
    # patsy term name -> design columns kept for it
    terms: dict[str, list[str]] = field(default_factory=dict)


@dataclass
class FirthResult:
    params: pd.Series
    bse: pd.Series
    llf: float
    loglik: float
    nobs: int
    formula: str
    aliased: list[str] = field(default_factory=list)
    fixed: list[str] = field(default_factory=list)

    @property
    def df_model(self) -> int:
        return int(len(self.params) - 1 - len(self.fixed))

    @property
    def pvalues(self) -> pd.Series:
        z = self.params / self.bse
        return pd.Series(2 * stats.norm.sf(np.abs(z)), index=self.params.index)


@dataclass
class SelectionResult:
    retained: list[str]
    removed: list[str]
    steps: pd.DataFrame
    n: int
    final_fit: FirthResult


@dataclass
class ModelFit:
    label: str
    table_name: str
    formula: str
    fit: object | None
    table: pd.DataFrame
    n: int
    events: int
    warnings: list[str]
    aliased: list[str]


@dataclass
class ModelSequence:
    fits: dict[str, ModelFit]
    coefficients: pd.DataFrame
    distributions: dict[str, pd.DataFrame]
    separation: pd.DataFrame


# ---------------------------------------------------------------------------
# Formula and design helpers
# ---------------------------------------------------------------------------


def _reference_term(field_name: str, data: pd.DataFrame, config: dict) -> str:
    if field_name not in data.columns or not isinstance(data[field_name].dtype, pd.CategoricalDtype):
        return field_name
    ref = str(config.get("reference_levels", {}).get(field_name, "")).strip()
    if ref and ref in [str(c) for c in data[field_name].cat.categories]:
        return f'C({field_name}, Treatment(reference="{ref}"))'
    return f"C({field_name})"


def _term_string(term: str | tuple[str, ...], data: pd.DataFrame, config: dict) -> str:
    if isinstance(term, tuple):
        return ":".join(_reference_term(t, data, config) for t in term)
    return _reference_term(term, data, config)


def build_formula(outcome: str, terms: Sequence[str | tuple[str, ...]], data: pd.DataFrame, config: dict = CONFIG) -> str:
    rhs = [_term_string(t, data, config) for t in terms]
    return f"{outcome} ~ " + (" + ".join(rhs) if rhs else "1")


def _term_columns(terms: Iterable[str | tuple[str, ...]]) -> list[str]:
    cols: list[str] = []
    for term in terms:
        for name in term if isinstance(term, tuple) else (term,):
            if name not in cols:
                cols.append(name)
    return cols


def _full_rank_columns(X: pd.DataFrame) -> tuple[list[str], list[str]]:
    # Keep columns left to right while they add rank; later aliased columns are dropped.
    kept: list[str] = []
    aliased: list[str] = []
    rank = 0
    for col in X.columns:
        candidate = X[[*kept, col]].to_numpy(dtype=float)
        new_rank = int(np.linalg.matrix_rank(candidate))
        if new_rank > rank:
            kept.append(col)
            rank = new_rank
        else:
            aliased.append(col)
    return kept, aliased


def build_design(formula: str, data: pd.DataFrame) -> Design:
    y, X = patsy.dmatrices(formula, drop_unused_levels(data), return_type="dataframe", NA_action="drop")
    kept, aliased = _full_rank_columns(X)
    terms = {
        name: [c for c in X.columns[span] if c in kept]
        for name, span in X.design_info.term_name_slices.items()
    }
    return Design(y=y.iloc[:, 0], X=X[kept], aliased=aliased, terms=terms)


def distribution_by_outcome(df: pd.DataFrame, column: str, outcome: str = "dementia") -> pd.DataFrame:
    """Counts of each exposure level by outcome, with within-outcome proportions."""
    counts = (
        df.groupby([outcome, column], dropna=False, observed=True)
        .size()
        .rename("n")
        .reset_index()
    )
    counts["proportion_within_outcome"] = counts["n"] / counts.groupby(outcome)["n"].transform("sum")
    counts["variable"] = column
    return counts.rename(columns={column: "level"})[["variable", outcome, "level", "n", "proportion_within_outcome"]]


# ---------------------------------------------------------------------------
# Firth bias-reduced logistic regression
# ---------------------------------------------------------------------------


def _leverages(X_np: np.ndarray, XtWX_inv: np.ndarray, W: np.ndarray) -> np.ndarray:
    s = np.einsum("ij,jk,ik->i", X_np, XtWX_inv, X_np)
    return np.clip(W * s, 0.0, 1.0)


def _firth_core(
    X_np: np.ndarray,
    y_np: np.ndarray,
    maxiter: int,
    tol: float,
    max_step: float = 5.0,
    free: np.ndarray | None = None,
) -> np.ndarray:
    """Modified-score Newton iterations; coefficients outside ``free`` stay at 0.

    Leverages and the penalty always come from the full design, so a
    restricted fit carries the same Jeffreys prior as the unrestricted one.
    """
    p = X_np.shape[1]
    free = np.ones(p, dtype=bool) if free is None else np.asarray(free, dtype=bool)
    beta = np.zeros(p, dtype=np.float64)
    for _ in range(int(maxiter)):
        eta = np.clip(X_np @ beta, -35.0, 35.0)
        p_hat = np.clip(expit(eta), 1e-12, 1.0 - 1e-12)
        W = p_hat * (1.0 - p_hat)
        XtWX = (X_np.T * W) @ X_np
        try:
            XtWX_inv = np.linalg.inv(XtWX)
        except np.linalg.LinAlgError:
            XtWX_inv = np.linalg.pinv(XtWX)
        h = _leverages(X_np, XtWX_inv, W)
        score = X_np.T @ (y_np - p_hat + (0.5 - p_hat) * h)
        info_free = XtWX[np.ix_(free, free)]
        try:
            delta = np.linalg.solve(info_free, score[free])
        except np.linalg.LinAlgError:
            delta = np.linalg.pinv(info_free) @ score[free]
        largest = float(np.max(np.abs(delta))) if delta.size else 0.0
        if largest > max_step:
            delta = delta * (max_step / largest)
        beta_new = beta.copy()
        beta_new[free] += delta
        if not np.all(np.isfinite(beta_new)):
            break
        beta = beta_new
        if largest < tol:
            return beta
    raise RuntimeError("Firth logistic regression failed to converge")


def _term_design_columns(design: Design, drop: Sequence[str], data: pd.DataFrame, config: dict) -> list[str]:
    by_name = {name.replace(" ", ""): cols for name, cols in design.terms.items()}
    columns: list[str] = []
    for term in drop:
        name = _term_string(term, data, config)
        if name.replace(" ", "") not in by_name:
            raise ValueError(f"Term {term!r} ({name}) is not part of the design.")
        columns.extend(by_name[name.replace(" ", "")])
    return columns


def fit_firth_logit(
    formula: str,
    data: pd.DataFrame,
    config: dict = CONFIG,
    *,
    drop: Sequence[str] = (),
) -> FirthResult:
    """Firth-penalized logistic regression (Jeffreys-prior modified score).

    Terms named in ``drop`` keep their columns in the design with the
    coefficients held at 0; that is the restricted fit a penalized
    likelihood-ratio test compares against.
    """
    design = build_design(formula, data)
    fixed = _term_design_columns(design, drop, data, config)
    X_np = design.X.to_numpy(dtype=np.float64)
    y_np = design.y.to_numpy(dtype=np.float64)
    free = ~design.X.columns.isin(fixed)
    beta = _firth_core(X_np, y_np, int(config["firth_maxiter"]), float(config["firth_tol"]), free=free)

    eta = X_np @ beta
    p_hat = np.clip(expit(np.clip(eta, -35.0, 35.0)), 1e-12, 1.0 - 1e-12)
    W = p_hat * (1.0 - p_hat)
    XtWX = (X_np.T * W) @ X_np
    loglik = float(np.sum(y_np * eta - np.logaddexp(0.0, eta)))
    sign_det, logdet = np.linalg.slogdet(XtWX)
    pll = loglik + 0.5 * logdet if sign_det > 0 else -np.inf
    try:
        cov = np.linalg.inv(XtWX)
    except np.linalg.LinAlgError:
        cov = np.linalg.pinv(XtWX)
    bse = np.sqrt(np.clip(np.diag(cov), 0.0, np.inf))
    bse[~free] = np.nan

    return FirthResult(
        params=pd.Series(beta, index=design.X.columns),
        bse=pd.Series(bse, index=design.X.columns),
        llf=float(pll),
        loglik=loglik,
        nobs=int(len(y_np)),
        formula=formula,
        aliased=design.aliased,
        fixed=fixed,
    )


def penalized_lrt(full: FirthResult, reduced: FirthResult) -> tuple[float, int, float]:
    if full.nobs != reduced.nobs:
        raise ValueError(f"Nested fits use different samples ({full.nobs} vs {reduced.nobs}).")
    stat = max(2.0 * (full.llf - reduced.llf), 0.0)
    df = int(full.df_model - reduced.df_model)
    p_value = float(stats.chi2.sf(stat, df)) if df > 0 else np.nan
    return float(stat), df, p_value


def backward_eliminate(
    data: pd.DataFrame,
    outcome: str,
    candidates: Sequence[str],
    threshold: float | None = None,
    config: dict = CONFIG,
) -> SelectionResult:
    """Backward elimination on Firth fits using penalized likelihood-ratio p-values.

    Each candidate is one term, so a factor is kept or dropped as a whole.
    The candidate with the largest p-value is removed while that p-value
    exceeds ``threshold``.
    """
    cutoff = float(config["elimination_threshold"] if threshold is None else threshold)
    sample = data.dropna(subset=[outcome, *candidates]).copy()
    if len(sample) < len(data):
        logging.info("backward_eliminate: dropped %s rows with missing candidates.", len(data) - len(sample))

    remaining = list(candidates)
    removed: list[str] = []
    rows: list[dict[str, object]] = []
    step = 0
    formula = build_formula(outcome, remaining, sample, config)
    full = fit_firth_logit(formula, sample, config)
    while remaining:
        step += 1
        pvalues: dict[str, float] = {}
        for cand in remaining:
            reduced = fit_firth_logit(formula, sample, config, drop=[cand])
            stat, df, p_value = penalized_lrt(full, reduced)
            pvalues[cand] = p_value
            rows.append(
                {
                    "step": step,
                    "candidate": cand,
                    "plr_statistic": stat,
                    "df": df,
                    "p_value": p_value,
                    "removed": False,
                    "n": full.nobs,
                }
            )

        testable = {k: v for k, v in pvalues.items() if pd.notna(v)}
        if not testable:
            break
        worst = max(testable, key=testable.get)
        if testable[worst] <= cutoff:
            break
        for row in rows:
            if row["step"] == step and row["candidate"] == worst:
                row["removed"] = True
        remaining.remove(worst)
        removed.append(worst)
        logging.info("backward_eliminate: step %s removed %s (p=%.4f > %.2f)", step, worst, testable[worst], cutoff)
        formula = build_formula(outcome, remaining, sample, config)
        full = fit_firth_logit(formula, sample, config)

    logging.info("backward_eliminate: retained confounders=%s", remaining or "none")
    return SelectionResult(
        retained=remaining,
        removed=removed,
        steps=pd.DataFrame(rows),
        n=int(len(sample)),
        final_fit=full,
    )


# ---------------------------------------------------------------------------
# Ordinary logistic regression
# ---------------------------------------------------------------------------


def _logit_or_table(fit, label: str, confidence_level: float) -> pd.DataFrame:
    conf = fit.conf_int(alpha=1.0 - confidence_level)
    with np.errstate(over="ignore"):
        odds = np.exp(fit.params.values)
        odds_low = np.exp(conf[0].values)
        odds_high = np.exp(conf[1].values)
    out = pd.DataFrame(
        {
            "term": fit.params.index,
            "coef": fit.params.values,
            "std_error": fit.bse.values,
            "z_value": fit.tvalues.values,
            "p_value": fit.pvalues.values,
            "ci_low": conf[0].values,
            "ci_high": conf[1].values,
            "or": odds,
            "or_ci_low": odds_low,
            "or_ci_high": odds_high,
            "model": label,
            "aliased": False,
        }
    )
    return out


def _nonfinite_or_terms(table: pd.DataFrame) -> list[str]:
    values = table[["or", "or_ci_low", "or_ci_high"]].to_numpy(dtype=float)
    return table.loc[~np.isfinite(values).all(axis=1), "term"].tolist()


def _aliased_rows(aliased: list[str], label: str) -> pd.DataFrame:
    return pd.DataFrame({"term": aliased, "model": label, "aliased": True})


def _log_events_per_parameter(label: str, n: int, events: int, n_params: int, config: dict) -> None:
    epv_warn = float(config.get("logit_events_per_parameter_warn_threshold", 10.0))
    denom = max(n_params - 1, 1)
    epv = min(events, n - events) / denom if n else np.nan
    logging.info("%s: n=%s events=%s parameters=%s EPV=%.3f", label, n, events, n_params, epv)
    if pd.notna(epv) and epv < epv_warn:
        logging.warning("%s: low events-per-parameter (%.3f < %.3f)", label, epv, epv_warn)


def fit_logit(
    data: pd.DataFrame,
    formula: str,
    *,
    label: str,
    table_name: str = "",
    notes: list[str] | None = None,
    config: dict = CONFIG,
) -> ModelFit:
    """Maximum-likelihood logit; separation and convergence problems are surfaced, not hidden."""
    notes = notes if notes is not None else []
    design = build_design(formula, data)
    n = int(len(design.y))
    events = int(design.y.sum())
    _log_events_per_parameter(label, n, events, design.X.shape[1], config)
    if design.aliased:
        msg = f"{label}: aliased terms dropped from the design ({', '.join(design.aliased)})."
        logging.warning(msg)
        notes.append(msg)

    raised: list[str] = []
    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            fit = sm.Logit(design.y, design.X).fit(disp=False, maxiter=100)
        for w in caught:
            if issubclass(w.category, SURFACED_WARNINGS):
                raised.append(f"{w.category.__name__}: {w.message}")
        if not bool(fit.mle_retvals.get("converged", True)):
            raised.append("ConvergenceWarning: maximum likelihood did not converge")
    except (PerfectSeparationError, np.linalg.LinAlgError) as exc:
        msg = f"{label}: model could not be fitted ({type(exc).__name__}: {exc})."
        logging.warning(msg)
        notes.append(msg)
        table = pd.DataFrame(
            {"model": [label], "error": [str(exc)], "table": [table_name], "n": [n], "events": [events]}
        )
        return ModelFit(label, table_name, formula, None, table, n, events, [msg], design.aliased)

    for message in dict.fromkeys(raised):
        msg = f"{label}: {message}"
        logging.warning(msg)
        notes.append(msg)

    table = _logit_or_table(fit, label, float(config["confidence_level"]))
    unbounded = _nonfinite_or_terms(table)
    if unbounded:
        msg = f"{label}: non-finite odds ratio or interval for {', '.join(unbounded)}; estimates are not interpretable."
        logging.warning(msg)
        notes.append(msg)
        raised.append(msg)
    if design.aliased:
        table = pd.concat([table, _aliased_rows(design.aliased, label)], ignore_index=True, sort=False)
    table["table"] = table_name
    table["n"] = n
    table["events"] = events
    return ModelFit(label, table_name, formula, fit, table, n, events, raised, design.aliased)


def find_separation(
    df: pd.DataFrame,
    outcome: str,
    predictor: str,
    *,
    subgroup_col: str | None = None,
    subgroup_level: object | None = None,
) -> pd.DataFrame:
    """Flag predictor levels whose outcome is constant (complete or quasi-complete separation)."""
    scope = df
    scope_label = "overall"
    if subgroup_col is not None:
        scope = df.loc[df[subgroup_col] == subgroup_level]
        scope_label = f"{subgroup_col} == {subgroup_level}"

    tab = (
        scope.groupby(predictor, observed=True)[outcome]
        .agg(n="size", events="sum")
        .reset_index()
        .rename(columns={predictor: "level"})
    )
    tab["nonevents"] = tab["n"] - tab["events"]
    tab["separated"] = (tab["events"] == 0) | (tab["nonevents"] == 0)
    tab["predictor"] = predictor
    tab["scope"] = scope_label
    for _, row in tab.loc[tab["separated"]].iterrows():
        logging.warning(
            "Separation: %s=%s has constant outcome within %s (n=%s, events=%s)",
            predictor,
            row["level"],
            scope_label,
            row["n"],
            row["events"],
        )
    return tab[["predictor", "scope", "level", "n", "events", "nonevents", "separated"]]


def run_model_sequence(
    tables: DerivedTables,
    confounders: Sequence[str],
    *,
    notes: list[str],
    config: dict = CONFIG,
) -> ModelSequence:
    outcome = config["outcome_col"]
    base = list(confounders)
    fits: dict[str, ModelFit] = {}
    distributions: dict[str, pd.DataFrame] = {}

    def _fit(label: str, table_name: str, df: pd.DataFrame, terms: list[str]) -> None:
        sample = df.dropna(subset=[outcome, *_term_columns(terms)])
        formula = build_formula(outcome, terms, sample, config)
        fits[label] = fit_logit(sample, formula, label=label, table_name=table_name, notes=notes, config=config)

    _fit("m0_confounders", "donor2", tables.donor2, base)

    distributions["age_at_first_tbi"] = distribution_by_outcome(tables.donor, "age_at_first_tbi", outcome)
    _fit("m1_age_first_tbi", "donor2", tables.donor2, [*base, "age_at_first_tbi"])

    distributions["longest_loc_duration_raw"] = distribution_by_outcome(tables.donor2, "longest_loc_duration", outcome)
    _fit("m2_loc_duration_raw", "donor2", tables.donor2, [*base, "age_at_first_tbi", "longest_loc_duration"])
    separation = pd.concat(
        [
            find_separation(tables.donor2, outcome, "longest_loc_duration"),
            find_separation(
                tables.donor2,
                outcome,
                "longest_loc_duration",
                subgroup_col=config["separation_subgroup_col"],
                subgroup_level=config["separation_subgroup_level"],
            ),
        ],
        ignore_index=True,
    )
    if bool(separation["separated"].any()):
        levels = sorted({str(x) for x in separation.loc[separation["separated"], "level"]})
        notes.append(
            "Raw LOC duration shows (quasi-)complete separation at level(s) "
            f"{', '.join(levels)}; LOC duration is re-bucketed to never / < 3 min / >= 3 min."
        )

    distributions["longest_loc_duration"] = distribution_by_outcome(tables.donor3, "longest_loc_duration", outcome)
    _fit("m2_loc_duration", "donor3", tables.donor3, [*base, "age_at_first_tbi", "longest_loc_duration"])

    distributions["num_tbi_w_loc_count"] = distribution_by_outcome(tables.donor4, "num_tbi_w_loc_count", outcome)
    _fit(
        "m3_num_tbi_w_loc",
        "donor4",
        tables.donor4,
        [*base, "age_at_first_tbi", "longest_loc_duration", "num_tbi_w_loc"],
    )

    coefficients = pd.concat([f.table for f in fits.values()], ignore_index=True, sort=False)
    return ModelSequence(fits=fits, coefficients=coefficients, distributions=distributions, separation=separation)


# ---------------------------------------------------------------------------
# Interaction tests
# ---------------------------------------------------------------------------


def likelihood_ratio_test(full, reduced, alpha: float | None = None) -> dict[str, object]:
    """LRT of nested fits: 2 * (llf_full - llf_reduced) against chi2(df_full - df_reduced)."""
    level = float(CONFIG["lrt_alpha"] if alpha is None else alpha)
    if int(full.nobs) != int(reduced.nobs):
        raise ValueError(f"Nested fits use different samples ({full.nobs} vs {reduced.nobs}).")
    stat = 2.0 * (float(full.llf) - float(reduced.llf))
    df = int(round(float(full.df_model) - float(reduced.df_model)))
    if df <= 0:
        raise ValueError("Full model must have more parameters than the reduced model.")
    p_value = float(stats.chi2.sf(stat, df))
    return {
        "statistic": stat,
        "df": df,
        "p_value": p_value,
        "alpha": level,
        "reject": bool(p_value < level),
    }


def run_interaction_tests(
    data: pd.DataFrame,
    base_terms: Sequence[str],
    interactions: Sequence[tuple[str, str]],
    *,
    notes: list[str],
    config: dict = CONFIG,
) -> pd.DataFrame:
    outcome = config["outcome_col"]
    rows: list[dict[str, object]] = []
    for pair in interactions:
        pair = tuple(pair)
        label = ":".join(pair)
        missing_main = [t for t in pair if t not in base_terms]
        baseline = [*base_terms, *missing_main]
        if missing_main:
            msg = f"interaction {label}: main effect(s) {', '.join(missing_main)} added to the baseline."
            logging.info(msg)
            notes.append(msg)
        cols = _term_columns([*baseline, pair])
        sample = data.dropna(subset=[outcome, *cols])
        reduced = fit_logit(
            sample,
            build_formula(outcome, baseline, sample, config),
            label=f"baseline_for_{label}",
            notes=notes,
            config=config,
        )
        full = fit_logit(
            sample,
            build_formula(outcome, [*baseline, pair], sample, config),
            label=f"interaction_{label}",
            notes=notes,
            config=config,
        )
        if full.fit is None or reduced.fit is None:
            rows.append({"interaction": label, "n": int(len(sample)), "error": "model fit failed"})
            continue
        try:
            result = likelihood_ratio_test(full.fit, reduced.fit, alpha=float(config["lrt_alpha"]))
        except ValueError as exc:
            msg = f"interaction {label}: not testable ({exc})."
            logging.warning(msg)
            notes.append(msg)
            rows.append({"interaction": label, "n": int(len(sample)), "error": str(exc)})
            continue
        result["retain_interaction"] = result.pop("reject")
        logging.info(
            "interaction %s: LR=%.3f df=%s p=%.4f retain=%s",
            label,
            result["statistic"],
            result["df"],
            result["p_value"],
            result["retain_interaction"],
        )
        rows.append({"interaction": label, "n": int(len(sample)), **result})
    return pd.DataFrame(rows)
