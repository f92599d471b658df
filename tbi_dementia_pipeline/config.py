"""Configuration for the TBI history and dementia donor-cohort analysis."""

from __future__ import annotations

from pathlib import Path

CHANGE_LOG = [
    "2026-10-12: Added aggregated binomial refit with influence table and bubble plot; rows are flagged, never removed.",
    "2026-10-12: Added likelihood-ratio gate for the age-at-first-TBI x LOC-duration and sex x TBI-count interactions.",
    "2026-10-11: Added raw 8-level LOC duration model as a separation diagnostic ahead of the collapsed 3-level model.",
    "2026-10-11: Replaced per-column LOC lookup with a joint predicate over longest_loc_duration and num_tbi_w_loc.",
    "2026-10-10: Added Firth-penalized backward elimination of confounders (retention threshold p <= 0.2).",
    "2026-10-10: Refactored the exploratory notebook into a modular pipeline with a single main() entrypoint.",
    "2026-10-10: Unmapped categorical values now raise instead of silently becoming missing.",
]

ASSUMPTIONS = [
    "Input is the donor information table with one row per donor and the documented column schema.",
    "Dementia is any DSM-IV clinical diagnosis other than the literal 'No Dementia'.",
    "NINCDS-ADRDA and ACT dementia labels are post-hoc diagnosis labels and are removed before modeling.",
    "age_at_first_tbi == 0 means the donor never had a TBI.",
    "'Unknown or N/A' LOC duration means 'never' only when num_tbi_w_loc == 0; otherwise the duration is missing.",
    "APOE e4 'unknown' is an analysis category for confounder selection and is filtered out of the model sequence.",
    "Wald intervals are symmetric on the log-odds scale and exponentiated for odds-ratio reporting.",
]

OPEN_QUESTIONS = [
    "Bucket boundaries (age at first TBI 40, LOC duration 3-minute split, TBI-with-LOC count 2+) were chosen "
    "after inspecting the outcome-conditional distributions of this cohort; they may be post hoc and "
    "carry a circularity/overfitting risk that this analysis does not address.",
]

LOC_DURATION_LEVELS = [
    "Unknown or N/A",
    "< 10 sec",
    "10 sec - 1 min",
    "1-2 min",
    "3-5 min",
    "6-9 min",
    "10 min - 1 hr",
    "> 1 hr",
]

CONFIG = {
    "input_csv": str(Path(__file__).resolve().parents[1] / "data" / "DonorInformation.csv"),
    "output_dir": str(Path(__file__).resolve().parents[1] / "tbi_dementia_outputs"),
    "outcome_col": "dementia",
    "diagnosis_col": "dsm_iv_clinical_diagnosis",
    "no_dementia_label": "No Dementia",
    # Post-hoc labels correlated with the outcome; never predictors.
    "drop_diagnosis_columns": [
        "dsm_iv_clinical_diagnosis",
        "nincds_arda_diagnosis",
        "act_demented",
    ],
    "required_columns": [
        "age",
        "sex",
        "apo_e4_allele",
        "education_years",
        "age_at_first_tbi",
        "longest_loc_duration",
        "num_tbi_w_loc",
        "ever_tbi_w_loc",
        "dsm_iv_clinical_diagnosis",
    ],
    "id_col": "donor_id",
    # Recoded columns that may not hold blank cells.
    "complete_columns": [
        "age",
        "sex",
        "apo_e4_allele",
        "education_years",
        "age_at_first_tbi",
        "longest_loc_duration",
        "num_tbi_w_loc",
        "ever_tbi_w_loc",
    ],
    "age_map": {"100+": 100, "95-99": 97, "90-94": 92},
    "level_maps": {
        "sex": {"F": "Female", "M": "Male"},
        "apo_e4_allele": {"N": "not carrier", "Y": "carrier", "N/A": "unknown"},
        "ever_tbi_w_loc": {"N": "N", "Y": "Y"},
        "longest_loc_duration": {level: level for level in LOC_DURATION_LEVELS},
    },
    "reference_levels": {
        "sex": "Female",
        "apo_e4_allele": "not carrier",
        "age_at_first_tbi": "never",
        "longest_loc_duration": "never",
        "num_tbi_w_loc": "0",
        "ever_tbi_w_loc": "N",
    },
    "apoe_unknown_label": "unknown",
    "loc_unknown_label": "Unknown or N/A",
    "loc_short_levels": ["< 10 sec", "10 sec - 1 min", "1-2 min"],
    "loc_long_levels": ["3-5 min", "6-9 min", "10 min - 1 hr", "> 1 hr"],
    "loc_collapsed_levels": ["never", "< 3 min", ">= 3 min"],
    "age_first_tbi_split": 40,
    "age_first_tbi_levels": ["never", "before 40", "after 40"],
    "num_tbi_collapse_at": 2,
    "num_tbi_levels": ["0", "1", "2-3"],
    "candidate_confounders": ["sex", "age", "apo_e4_allele", "education_years"],
    "elimination_threshold": 0.2,
    "firth_maxiter": 200,
    "firth_tol": 1e-8,
    "confidence_level": 0.95,
    "lrt_alpha": 0.05,
    "interaction_terms": [
        ("age_at_first_tbi", "longest_loc_duration"),
        ("sex", "num_tbi_w_loc"),
    ],
    "separation_subgroup_col": "ever_tbi_w_loc",
    "separation_subgroup_level": "N",
    "logit_events_per_parameter_warn_threshold": 10.0,
    "influence_studentized_cutoff": 2.0,
    "influence_hat_multiplier": 2.0,
    "influence_cooks_numerator": 4.0,
    "figure_dpi": 150,
    "print_tables": False,
    "print_table_max_rows": 30,
}

REQUIRED_OUTPUT_FILES = [
    "sample_flow.csv",
    "confounder_selection_steps.csv",
    "model_sequence_coefficients.csv",
    "exposure_distributions.csv",
    "separation_diagnostics.csv",
    "interaction_lrt.csv",
    "aggregated_counts.csv",
    "aggregated_model_coefficients.csv",
    "influence_table.csv",
    "dist_age_at_first_tbi.png",
    "dist_longest_loc_duration_raw.png",
    "dist_longest_loc_duration.png",
    "dist_num_tbi_w_loc.png",
    "glm_diagnostics.png",
    "influence_plot.png",
    "REPORT.md",
]


def validate_config() -> None:
    if not 0 < float(CONFIG["elimination_threshold"]) < 1:
        raise ValueError("elimination_threshold must lie in (0, 1).")
    if not 0 < float(CONFIG["lrt_alpha"]) < 1:
        raise ValueError("lrt_alpha must lie in (0, 1).")
    if not 0 < float(CONFIG["confidence_level"]) < 1:
        raise ValueError("confidence_level must lie in (0, 1).")
    overlap = set(CONFIG["loc_short_levels"]) & set(CONFIG["loc_long_levels"])
    if overlap:
        raise ValueError(f"LOC duration levels assigned to both buckets: {sorted(overlap)}")
    known = set(CONFIG["level_maps"]["longest_loc_duration"])
    bucketed = {CONFIG["loc_unknown_label"], *CONFIG["loc_short_levels"], *CONFIG["loc_long_levels"]}
    if known != bucketed:
        raise ValueError("Every raw LOC duration level must belong to exactly one collapsed bucket.")


def ensure_output_dir(output_dir: str | Path | None = None) -> Path:
    out_dir = Path(output_dir if output_dir is not None else CONFIG["output_dir"]).resolve()
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir
