"""Synthetic donor tables for mock runs and tests."""

from __future__ import annotations

import numpy as np
import pandas as pd

from .config import LOC_DURATION_LEVELS

DEMENTIA_LABELS = ["Alzheimer's Disease Type", "Vascular", "Other or Unknown Cause", "Multiple Etiologies"]
RACES = ["White", "Black or African American", "Asian", "Other"]


def _age_string(age: int) -> str:
    if age >= 100:
        return "100+"
    if age >= 95:
        return "95-99"
    if age >= 90:
        return "90-94"
    return str(age)


def make_synthetic_donors(
    n: int = 300,
    seed: int = 42,
    *,
    null_effects: bool = False,
    missing_loc_rate: float = 0.08,
) -> pd.DataFrame:
    """Raw donor table in the input CSV schema.

    With ``null_effects`` the dementia label is drawn independently of every
    other column.
    """
    rng = np.random.default_rng(seed)
    rows = []
    for i in range(n):
        age = int(rng.integers(78, 102))
        sex = rng.choice(["M", "F"])
        apoe = rng.choice(["N", "Y", "N/A"], p=[0.65, 0.25, 0.10])
        education = int(rng.integers(8, 22))

        ever_tbi = rng.random() < 0.5
        if ever_tbi:
            num_tbi = int(rng.choice([1, 1, 1, 2, 3, 5]))
            age_first = int(rng.integers(5, age - 1))
            if rng.random() < missing_loc_rate:
                loc = "Unknown or N/A"
            else:
                loc = str(rng.choice(LOC_DURATION_LEVELS[1:]))
        else:
            num_tbi = 0
            age_first = 0
            loc = "Unknown or N/A"

        if null_effects:
            logit = -0.3
        else:
            logit = (
                -4.0
                + 0.04 * (age - 78)
                + 0.9 * (apoe == "Y")
                - 0.05 * (education - 14)
                + 0.25 * (age_first >= 40)
                + 0.2 * (loc in LOC_DURATION_LEVELS[4:])
            )
        demented = rng.random() < 1.0 / (1.0 + np.exp(-logit))
        diagnosis = str(rng.choice(DEMENTIA_LABELS)) if demented else "No Dementia"

        rows.append(
            {
                "donor_id": 300000000 + i,
                "name": f"H14.09.{i:03d}",
                "age": _age_string(age),
                "sex": sex,
                "apo_e4_allele": apoe,
                "education_years": education,
                "age_at_first_tbi": age_first,
                "longest_loc_duration": loc,
                "cerad": int(rng.integers(0, 4)),
                "num_tbi_w_loc": num_tbi,
                "dsm_iv_clinical_diagnosis": diagnosis,
                "control_set": int(not ever_tbi),
                "nincds_arda_diagnosis": "Probable Alzheimer'S Disease" if demented else "No Dementia",
                "ever_tbi_w_loc": "Y" if ever_tbi else "N",
                "race": str(rng.choice(RACES)),
                "hispanic": str(rng.choice(["Not Hispanic", "Hispanic"], p=[0.95, 0.05])),
                "act_demented": "Dementia" if demented else "No Dementia",
                "braak": int(rng.integers(0, 7)),
                "nia_reagan": int(rng.integers(0, 4)),
            }
        )
    return pd.DataFrame(rows)
