import numpy as np
import pandas as pd
import pytest
import statsmodels.formula.api as smf

from tbi_dementia_pipeline.aggregate import (
    aggregate_binomial,
    fit_binomial_proportion,
    influence_table,
    pattern_predictors,
    run_aggregated_analysis,
)


@pytest.fixture
def categorical_frame():
    rng = np.random.default_rng(11)
    n = 500
    sex = rng.choice(["Female", "Male"], size=n)
    tbi = rng.choice(["never", "before 40", "after 40"], size=n)
    logit = -0.5 + 0.4 * (sex == "Male") + 0.6 * (tbi == "after 40")
    y = (rng.random(n) < 1.0 / (1.0 + np.exp(-logit))).astype(int)
    return pd.DataFrame(
        {
            "dementia": y,
            "sex": pd.Categorical(sex, categories=["Female", "Male"]),
            "age_at_first_tbi": pd.Categorical(tbi, categories=["never", "before 40", "after 40"]),
        }
    )


def test_aggregate_binomial_counts_cover_every_subject(categorical_frame):
    grouped = aggregate_binomial(categorical_frame, "dementia", ["sex", "age_at_first_tbi"])
    assert len(grouped) == 6
    assert grouped["trials"].sum() == len(categorical_frame)
    assert grouped["cases"].sum() == categorical_frame["dementia"].sum()
    assert (grouped["noncases"] == grouped["trials"] - grouped["cases"]).all()
    assert list(grouped["age_at_first_tbi"].cat.categories) == ["never", "before 40", "after 40"]


def test_binomial_proportion_refit_matches_individual_logit(categorical_frame):
    grouped = aggregate_binomial(categorical_frame, "dementia", ["sex", "age_at_first_tbi"])
    fit, _, aliased = fit_binomial_proportion(grouped, ["sex", "age_at_first_tbi"])
    individual = smf.logit(
        'dementia ~ C(sex, Treatment(reference="Female")) + C(age_at_first_tbi, Treatment(reference="never"))',
        data=categorical_frame,
    ).fit(disp=False)
    assert aliased == []
    np.testing.assert_allclose(fit.params.to_numpy(), individual.params.to_numpy(), rtol=1e-5, atol=1e-7)


def test_influence_table_flags_without_removing(categorical_frame):
    grouped = aggregate_binomial(categorical_frame, "dementia", ["sex", "age_at_first_tbi"])
    fit, _, _ = fit_binomial_proportion(grouped, ["sex", "age_at_first_tbi"])
    infl = influence_table(fit, grouped)
    assert len(infl) == len(grouped)
    assert infl["trials"].sum() == len(categorical_frame)
    for col in ["hat", "cooks_d", "resid_studentized", "flag_for_review"]:
        assert col in infl.columns
    assert infl["hat"].between(0, 1).all()
    expected = infl[["flag_resid", "flag_hat", "flag_cooks"]].any(axis=1)
    assert (infl["flag_for_review"] == expected).all()


def test_run_aggregated_analysis_on_final_table(tables):
    notes = []
    predictors = ["apo_e4_allele", "age_at_first_tbi", "longest_loc_duration", "num_tbi_w_loc"]
    result = run_aggregated_analysis(tables.donor4, predictors, notes=notes)
    assert result.grouped["trials"].sum() == len(tables.donor4)
    assert len(result.influence) == len(result.grouped)
    assert (result.coefficients["n_subjects"] == len(tables.donor4)).all()
    # "never" is shared by all three exposures, so part of the design is aliased.
    assert result.aliased


def test_pattern_predictors_split_on_dtype(tables):
    categorical, excluded = pattern_predictors(tables.donor4, ["age", "sex", "education_years", "num_tbi_w_loc"])
    assert categorical == ["sex", "num_tbi_w_loc"]
    assert excluded == ["age", "education_years"]


def test_numeric_confounders_do_not_split_covariate_patterns(tables):
    notes = []
    predictors = ["age", "education_years", "apo_e4_allele", "age_at_first_tbi", "longest_loc_duration", "num_tbi_w_loc"]
    result = run_aggregated_analysis(tables.donor4, predictors, notes=notes)
    assert result.excluded == ["age", "education_years"]
    assert "age" not in result.grouped.columns
    assert result.grouped["trials"].sum() == len(tables.donor4)
    assert len(result.grouped) <= len(tables.donor4) // 5
    assert any("left out of the covariate patterns" in note for note in notes)
