import numpy as np
import pandas as pd
import pytest

from tbi_dementia_pipeline.recode import build_derived_tables
from tbi_dementia_pipeline.synthetic import make_synthetic_donors


@pytest.fixture
def raw_donors():
    return make_synthetic_donors(n=300, seed=2024)


@pytest.fixture
def tables(raw_donors):
    return build_derived_tables(raw_donors)


@pytest.fixture
def confounder_frame():
    """Individual-level frame with one real confounder and two noise columns."""
    rng = np.random.default_rng(7)
    n = 400
    z1 = rng.normal(size=n)
    noise_a = rng.normal(size=n)
    noise_b = rng.normal(size=n)
    p = 1.0 / (1.0 + np.exp(-(-0.2 + 1.5 * z1)))
    y = (rng.random(n) < p).astype(int)
    return pd.DataFrame({"dementia": y, "z1": z1, "noise_a": noise_a, "noise_b": noise_b})
