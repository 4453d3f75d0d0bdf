from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from gpmort.data import design_from_frame, load_mortality_table
from gpmort.models.gp import build_gp


def make_table(
    ages=range(60, 67),
    years=range(2000, 2008),
    noise_sd: float = 0.02,
    seed: int = 1,
) -> pd.DataFrame:
    """Gompertz-like log m with a linear time trend and iid noise."""
    rng = np.random.default_rng(seed)
    rows = []
    for a in ages:
        for t in years:
            log_m = -9.5 + 0.09 * a - 0.02 * (t - 2000) + rng.normal(0.0, noise_sd)
            exposure = 1e5
            rows.append(
                {
                    "Country": "XYZ",
                    "Sex": "Female",
                    "Age": a,
                    "Year": t,
                    "Deaths": exposure * np.exp(log_m),
                    "Exposure": exposure,
                }
            )
    return load_mortality_table(pd.DataFrame(rows))


@pytest.fixture
def synthetic_table() -> pd.DataFrame:
    return make_table()


@pytest.fixture
def constant_table() -> pd.DataFrame:
    rows = [
        {"age": a, "year": t, "deaths": 10.0, "exposure": 1000.0}
        for a in (60, 61, 62)
        for t in (2000, 2001, 2002)
    ]
    return load_mortality_table(pd.DataFrame(rows))


@pytest.fixture
def fixed_model(synthetic_table):
    """Explicit-noise model with hand-picked hyper-parameters (no optimiser)."""
    design = design_from_frame(synthetic_table)
    return build_gp(
        design,
        "linear_age_year",
        length_scales=np.array([4.0, 5.0]),
        signal_variance=0.01,
        noise_variance=4e-4,
    )
