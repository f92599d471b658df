import warnings

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm
from scipy import stats
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from tbi_dementia_pipeline.modeling import (
    backward_eliminate,
    build_formula,
    distribution_by_outcome,
    find_separation,
    fit_firth_logit,
    fit_logit,
    likelihood_ratio_test,
    penalized_lrt,
    run_interaction_tests,
    run_model_sequence,
)


def _logit(df, cols):
    X = sm.add_constant(df[cols], has_constant="add")
    return sm.Logit(df["dementia"], X).fit(disp=False)


def test_lrt_statistic_is_twice_loglik_difference(confounder_frame):
    full = _logit(confounder_frame, ["z1", "noise_a"])
    reduced = _logit(confounder_frame, ["z1"])
    result = likelihood_ratio_test(full, reduced, alpha=0.05)
    expected = 2.0 * (full.llf - reduced.llf)
    assert result["statistic"] == pytest.approx(expected)
    assert result["df"] == 1
    assert result["p_value"] == pytest.approx(stats.chi2.sf(expected, 1))
    assert result["reject"] == (result["p_value"] < 0.05)


def test_lrt_rejects_models_fitted_on_different_samples(confounder_frame):
    full = _logit(confounder_frame, ["z1", "noise_a"])
    reduced = _logit(confounder_frame.iloc[:-10], ["z1"])
    with pytest.raises(ValueError):
        likelihood_ratio_test(full, reduced)


def test_firth_matches_haldane_correction_under_complete_separation():
    df = pd.DataFrame({"x": [0.0] * 10 + [1.0] * 10, "dementia": [0] * 10 + [1] * 10})
    res = fit_firth_logit("dementia ~ x", df)
    # Saturated 2x2 table: Firth adds one half to every cell.
    assert res.params["x"] == pytest.approx(np.log((10.5 * 10.5) / (0.5 * 0.5)), rel=1e-4)
    assert np.isfinite(res.bse["x"])


def test_firth_close_to_mle_in_large_sample(confounder_frame):
    firth = fit_firth_logit("dementia ~ z1", confounder_frame)
    mle = _logit(confounder_frame, ["z1"])
    assert firth.params["z1"] == pytest.approx(mle.params["z1"], abs=0.05)
    assert abs(firth.params["z1"]) < abs(mle.params["z1"])


def test_penalized_lrt_has_one_df_per_dropped_column(confounder_frame):
    full = fit_firth_logit("dementia ~ z1 + noise_a", confounder_frame)
    reduced = fit_firth_logit("dementia ~ z1 + noise_a", confounder_frame, drop=["noise_a"])
    assert reduced.params["noise_a"] == 0.0
    assert reduced.fixed == ["noise_a"]
    stat, df, p_value = penalized_lrt(full, reduced)
    assert df == 1
    assert stat >= 0
    assert 0.0 <= p_value <= 1.0


def test_penalized_lrt_does_not_depend_on_covariate_scale():
    rng = np.random.default_rng(31)
    n = 250
    df = pd.DataFrame({"x": rng.normal(size=n), "dementia": (rng.random(n) < 0.4).astype(int)})
    p_values = []
    for frame in (df, df.assign(x=df["x"] * 100.0)):
        full = fit_firth_logit("dementia ~ x", frame)
        reduced = fit_firth_logit("dementia ~ x", frame, drop=["x"])
        p_values.append(penalized_lrt(full, reduced)[2])
    assert p_values[0] == pytest.approx(p_values[1], rel=1e-4)


def test_restricted_firth_fit_rejects_unknown_term(confounder_frame):
    with pytest.raises(ValueError, match="noise_b"):
        fit_firth_logit("dementia ~ z1", confounder_frame, drop=["noise_b"])


def test_backward_elimination_keeps_true_confounder(confounder_frame):
    result = backward_eliminate(confounder_frame, "dementia", ["z1", "noise_a", "noise_b"], threshold=0.2)
    assert "z1" in result.retained
    assert set(result.retained) | set(result.removed) == {"z1", "noise_a", "noise_b"}
    assert result.steps["removed"].sum() == len(result.removed)


def test_backward_elimination_treats_factor_as_one_term(tables):
    result = backward_eliminate(tables.donor, "dementia", ["apo_e4_allele", "sex"], threshold=0.2)
    step_one = result.steps.loc[result.steps["step"] == 1].set_index("candidate")
    assert step_one.loc["apo_e4_allele", "df"] == 2
    assert step_one.loc["sex", "df"] == 1


def test_backward_elimination_null_retention_near_nominal_rate():
    candidates = ["a", "b", "c"]
    retained = 0
    reps = 30
    for seed in range(reps):
        rng = np.random.default_rng(1000 + seed)
        n = 200
        df = pd.DataFrame({c: rng.normal(size=n) for c in candidates})
        df["dementia"] = (rng.random(n) < 0.4).astype(int)
        result = backward_eliminate(df, "dementia", candidates, threshold=0.2)
        retained += len(result.retained)
    assert retained / (reps * len(candidates)) <= 0.35


def test_backward_elimination_null_rate_with_wide_scale_confounders():
    retained = 0
    reps = 30
    for seed in range(reps):
        rng = np.random.default_rng(500 + seed)
        n = 200
        df = pd.DataFrame(
            {
                "age": rng.normal(88.0, 6.0, size=n),
                "education_years": rng.normal(15.0, 3.0, size=n),
                "dementia": (rng.random(n) < 0.4).astype(int),
            }
        )
        result = backward_eliminate(df, "dementia", ["age", "education_years"], threshold=0.2)
        retained += len(result.retained)
    assert retained / (reps * 2) <= 0.35


def test_fit_logit_reports_wald_table_on_both_scales(confounder_frame):
    model = fit_logit(confounder_frame, "dementia ~ z1 + noise_a", label="m_test", table_name="frame")
    table = model.table.set_index("term")
    assert model.n == len(confounder_frame)
    assert model.events == int(confounder_frame["dementia"].sum())
    row = table.loc["z1"]
    assert row["coef"] - row["ci_low"] == pytest.approx(row["ci_high"] - row["coef"])
    assert row["or"] == pytest.approx(np.exp(row["coef"]))
    assert row["or_ci_low"] == pytest.approx(np.exp(row["ci_low"]))
    assert row["z_value"] == pytest.approx(row["coef"] / row["std_error"])
    assert (table["table"] == "frame").all()


def test_fit_logit_drops_and_reports_aliased_columns(confounder_frame):
    df = confounder_frame.assign(z1_copy=confounder_frame["z1"])
    notes = []
    model = fit_logit(df, "dementia ~ z1 + z1_copy", label="m_alias", notes=notes)
    assert model.aliased == ["z1_copy"]
    aliased_rows = model.table.loc[model.table["aliased"].astype(bool)]
    assert aliased_rows["term"].tolist() == ["z1_copy"]
    assert any("aliased" in note for note in notes)


def test_fit_logit_surfaces_separation_in_notes():
    df = pd.DataFrame({"x": [0.0] * 10 + [1.0] * 10, "dementia": [0] * 10 + [1] * 10})
    notes = []
    model = fit_logit(df, "dementia ~ x", label="m_sep", notes=notes)
    flagged = [note for note in notes if note.startswith("m_sep:")]
    assert flagged
    keywords = ("PerfectSeparation", "Convergence", "could not be fitted", "non-finite")
    assert any(key in note for note in flagged for key in keywords)
    assert model.fit is None or model.warnings


def test_fit_logit_returns_error_row_when_fit_raises(confounder_frame, monkeypatch):
    def _raise(self, *args, **kwargs):
        raise PerfectSeparationError("Perfect separation detected, results not available")

    monkeypatch.setattr(sm.Logit, "fit", _raise)
    notes = []
    model = fit_logit(confounder_frame, "dementia ~ z1", label="m_err", table_name="frame", notes=notes)
    assert model.fit is None
    row = model.table.iloc[0]
    assert len(model.table) == 1
    assert row["model"] == "m_err"
    assert "Perfect separation" in row["error"]
    assert row["n"] == len(confounder_frame)
    assert any("m_err: model could not be fitted" in note for note in notes)


class _ExplodedFit:
    params = pd.Series([0.1, 800.0], index=["Intercept", "z1"])
    bse = pd.Series([0.1, 2.0], index=["Intercept", "z1"])
    tvalues = params / bse
    pvalues = pd.Series([0.3, 0.0], index=["Intercept", "z1"])
    mle_retvals = {"converged": True}

    def conf_int(self, alpha=0.05):
        return pd.DataFrame({0: self.params - 4.0, 1: self.params + 4.0})


def test_fit_logit_notes_overflowing_odds_ratios(confounder_frame, monkeypatch):
    monkeypatch.setattr(sm.Logit, "fit", lambda self, *args, **kwargs: _ExplodedFit())
    notes = []
    with warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        model = fit_logit(confounder_frame, "dementia ~ z1", label="m_big", notes=notes)
    row = model.table.set_index("term").loc["z1"]
    assert np.isinf(row["or_ci_high"])
    assert any(note.startswith("m_big: non-finite odds ratio") and "z1" in note for note in notes)


def test_find_separation_flags_constant_outcome_levels():
    df = pd.DataFrame(
        {
            "dementia": [1, 1, 1, 0, 1, 0, 1, 0],
            "loc": ["a", "a", "a", "b", "b", "b", "c", "c"],
            "ever": ["Y", "Y", "Y", "Y", "N", "N", "N", "N"],
        }
    )
    overall = find_separation(df, "dementia", "loc")
    assert overall.loc[overall["separated"], "level"].tolist() == ["a"]
    within = find_separation(df, "dementia", "loc", subgroup_col="ever", subgroup_level="Y")
    assert set(within.loc[within["separated"], "level"]) == {"a", "b"}
    assert (within["scope"] == "ever == Y").all()


def test_distribution_by_outcome_proportions_sum_to_one(tables):
    dist = distribution_by_outcome(tables.donor3, "longest_loc_duration")
    sums = dist.groupby("dementia")["proportion_within_outcome"].sum()
    assert np.allclose(sums.to_numpy(), 1.0)
    assert dist["n"].sum() == len(tables.donor3)


def test_build_formula_uses_reference_levels(tables):
    formula = build_formula("dementia", ["sex", "age", ("sex", "num_tbi_w_loc")], tables.donor4)
    assert formula == (
        'dementia ~ C(sex, Treatment(reference="Female")) + age + '
        'C(sex, Treatment(reference="Female")):C(num_tbi_w_loc, Treatment(reference="0"))'
    )
    assert build_formula("dementia", [], tables.donor4) == "dementia ~ 1"


def test_model_sequence_tracks_sample_size_per_table(tables):
    notes = []
    seq = run_model_sequence(tables, ["age", "apo_e4_allele"], notes=notes)
    assert list(seq.fits) == [
        "m0_confounders",
        "m1_age_first_tbi",
        "m2_loc_duration_raw",
        "m2_loc_duration",
        "m3_num_tbi_w_loc",
    ]
    assert seq.fits["m0_confounders"].n == len(tables.donor2)
    assert seq.fits["m2_loc_duration"].n == len(tables.donor3)
    assert seq.fits["m3_num_tbi_w_loc"].n == len(tables.donor4)
    assert {"table", "n", "events"} <= set(seq.coefficients.columns)
    assert set(seq.separation["scope"]) == {"overall", "ever_tbi_w_loc == N"}


def test_interaction_tests_gate_each_pair(tables):
    notes = []
    base = ["age", "apo_e4_allele", "age_at_first_tbi", "longest_loc_duration", "num_tbi_w_loc"]
    pairs = [("age_at_first_tbi", "longest_loc_duration"), ("sex", "num_tbi_w_loc")]
    result = run_interaction_tests(tables.donor4, base, pairs, notes=notes)
    assert result["interaction"].tolist() == ["age_at_first_tbi:longest_loc_duration", "sex:num_tbi_w_loc"]
    assert (result["df"] >= 1).all()
    assert result["p_value"].between(0, 1).all()
    assert (result["retain_interaction"] == (result["p_value"] < 0.05)).all()
    # sex is not in the baseline, so its main effect is added and only the interaction is tested
    sex_row = result.set_index("interaction").loc["sex:num_tbi_w_loc"]
    assert sex_row["df"] == 2
    assert any("main effect(s) sex added" in note for note in notes)
