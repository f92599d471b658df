"""Exploratory and GLM diagnostic figures."""

from __future__ import annotations

import logging
from pathlib import Path

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from scipy import stats

OUTCOME_COLORS = {0: "#4C72B0", 1: "#DD8452"}
OUTCOME_LABELS = {0: "No dementia", 1: "Dementia"}


def _save(fig, path: Path, dpi: int) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.tight_layout()
    fig.savefig(path, dpi=dpi)
    plt.close(fig)
    logging.info("Saved figure %s", path.name)
    return path


def plot_distribution_by_outcome(
    df: pd.DataFrame,
    column: str,
    path: Path,
    *,
    outcome: str = "dementia",
    dpi: int = 150,
) -> Path:
    """Histogram (numeric) or grouped bar chart (categorical) of ``column`` by outcome."""
    fig, ax = plt.subplots(figsize=(7, 4.5))
    series = df[column]
    if isinstance(series.dtype, pd.CategoricalDtype) or not pd.api.types.is_numeric_dtype(series):
        counts = pd.crosstab(series, df[outcome])
        counts = counts.reindex(columns=[0, 1], fill_value=0)
        x = np.arange(len(counts.index))
        width = 0.4
        for offset, value in [(-width / 2, 0), (width / 2, 1)]:
            ax.bar(x + offset, counts[value].to_numpy(), width, color=OUTCOME_COLORS[value], label=OUTCOME_LABELS[value])
        ax.set_xticks(x)
        ax.set_xticklabels([str(v) for v in counts.index], rotation=30, ha="right")
        ax.set_ylabel("Donors")
    else:
        values = series.dropna()
        bins = np.histogram_bin_edges(values, bins="auto") if len(values) else 10
        for value in (0, 1):
            ax.hist(
                series.loc[df[outcome] == value].dropna(),
                bins=bins,
                alpha=0.6,
                color=OUTCOME_COLORS[value],
                label=OUTCOME_LABELS[value],
            )
        ax.set_ylabel("Donors")
    ax.set_xlabel(column)
    ax.set_title(f"{column} by dementia status")
    ax.legend(frameon=False)
    return _save(fig, path, dpi)


def plot_glm_diagnostics(fit, path: Path, *, dpi: int = 150) -> Path:
    infl = fit.get_influence(observed=False)
    fitted = np.asarray(fit.fittedvalues)
    with np.errstate(divide="ignore", invalid="ignore"):
        linear = np.asarray(fit.model.family.link(fitted))
        resid_dev = np.asarray(fit.resid_deviance)
        resid_pearson = np.asarray(fit.resid_pearson)
        std_resid = np.asarray(infl.resid_studentized)
        hat = np.asarray(infl.hat_matrix_diag)
    # saturated patterns (hat == 1) have no finite studentized residual
    ok = np.isfinite(linear) & np.isfinite(std_resid) & np.isfinite(hat)

    fig, axes = plt.subplots(2, 2, figsize=(10, 8))

    ax = axes[0, 0]
    ax.scatter(linear[ok], resid_pearson[ok], s=18, alpha=0.7, color="#4C72B0")
    ax.axhline(0, color="grey", lw=1, ls="--")
    ax.set_xlabel("Linear predictor")
    ax.set_ylabel("Pearson residual")
    ax.set_title("Residuals vs fitted")

    ax = axes[0, 1]
    (osm, osr), (slope, intercept, _) = stats.probplot(resid_dev[np.isfinite(resid_dev)], dist="norm")
    ax.scatter(osm, osr, s=18, alpha=0.7, color="#4C72B0")
    ax.plot(osm, slope * np.asarray(osm) + intercept, color="red", lw=1.5, ls="--")
    ax.set_xlabel("Theoretical quantiles")
    ax.set_ylabel("Deviance residual")
    ax.set_title("Normal Q-Q")

    ax = axes[1, 0]
    ax.scatter(linear[ok], np.sqrt(np.abs(std_resid[ok])), s=18, alpha=0.7, color="#4C72B0")
    ax.set_xlabel("Linear predictor")
    ax.set_ylabel("sqrt(|studentized residual|)")
    ax.set_title("Scale-location")

    ax = axes[1, 1]
    ax.scatter(hat[ok], std_resid[ok], s=18, alpha=0.7, color="#4C72B0")
    ax.axhline(0, color="grey", lw=1, ls="--")
    ax.set_xlabel("Leverage")
    ax.set_ylabel("Studentized residual")
    ax.set_title("Residuals vs leverage")

    return _save(fig, path, dpi)


def plot_influence(influence: pd.DataFrame, path: Path, *, dpi: int = 150) -> Path:
    """Studentized residual vs hat value; bubble area proportional to Cook's distance."""
    fig, ax = plt.subplots(figsize=(7, 5))
    finite = influence[["hat", "resid_studentized"]].apply(np.isfinite).all(axis=1).to_numpy()
    shown = influence.loc[finite].reset_index()
    cooks = shown["cooks_d"].replace([np.inf, -np.inf], np.nan).fillna(0).to_numpy()
    scale = 1500.0 / max(float(cooks.max()) if len(cooks) else 0.0, 1e-12)
    flagged = shown["flag_for_review"].to_numpy(dtype=bool)
    ax.scatter(
        shown["hat"],
        shown["resid_studentized"],
        s=20 + cooks * scale,
        c=np.where(flagged, "#C44E52", "#4C72B0"),
        alpha=0.5,
        edgecolors="black",
        linewidths=0.5,
    )
    for pos in np.flatnonzero(flagged):
        ax.annotate(
            str(shown["index"].iloc[pos]),
            (shown["hat"].iloc[pos], shown["resid_studentized"].iloc[pos]),
            xytext=(4, 4),
            textcoords="offset points",
            fontsize=8,
        )
    for y in (-2, 0, 2):
        ax.axhline(y, color="grey", lw=1, ls="--" if y else "-")
    ax.set_xlabel("Hat value")
    ax.set_ylabel("Studentized residual")
    ax.set_title("Influence (bubble area ~ Cook's distance)")
    return _save(fig, path, dpi)
