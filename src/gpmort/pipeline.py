"""
GPMORT pipelines
================

End-to-end workflows built from the data, model and analysis layers. No
maths is re-implemented here:

- Data: data.py (validation, design sets)
- Fitting: models.gp (MLE fit, explicit-noise re-fit)
- Posterior: analysis.prediction, analysis.simulation
- Derived quantities: analysis.improvement, lifetables
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
import pandas as pd

from gpmort.analysis.improvement import improvement_draws, improvement_from_prediction
from gpmort.analysis.prediction import PredictionResult, predict, prediction_grid
from gpmort.analysis.risk_tools import (
    DrawSummary,
    SurfaceDrawSummary,
    summarize_draws,
    summarize_surface_draws,
)
from gpmort.analysis.simulation import SimulationDraws, simulate
from gpmort.data import design_from_frame
from gpmort.lifetables import QMethod, life_expectancy_from_log_m
from gpmort.models.gp import (
    FittedGP,
    NoiseMode,
    OptimizerConfig,
    fit_gp,
    with_explicit_noise,
)
from gpmort.models.trend import TrendName

logger = logging.getLogger(__name__)


@dataclass
class LifeExpectancyForecast:
    """
    Period life expectancy at ``age`` in ``year`` across posterior draws.

    Attributes
    ----------
    age, year : int
        Starting age and calendar year of the cross-section.
    n_ages : int
        Number of ages a, a+1, ..., a+n_ages-1 in each simulated curve.
    values : np.ndarray
        Life expectancy per draw, shape (n_draws,).
    summary : DrawSummary
        Boxplot statistics of ``values``.
    """

    age: int
    year: int
    n_ages: int
    values: np.ndarray
    summary: DrawSummary


@dataclass
class ImprovementForecast:
    years: np.ndarray  # (T-1,)
    ages: np.ndarray  # (A,)
    mean: pd.DataFrame  # improvement implied by posterior means
    draws: np.ndarray  # (N, A, T-1)
    summary: SurfaceDrawSummary


def fit_mortality_surface(
    df: pd.DataFrame,
    trend: TrendName = "linear_age_year",
    config: Optional[OptimizerConfig] = None,
    noise_mode: NoiseMode = "explicit",
) -> FittedGP:
    """
    Fit a GP to a validated single-population table.

    ``noise_mode="explicit"`` (default) runs the two-stage fit: joint MLE with
    a nugget, then re-declaration of the nugget as explicit noise so that
    predictions describe the latent surface. ``"nugget"`` returns the first
    stage unchanged.
    """
    if noise_mode not in ("nugget", "explicit"):
        raise ValueError("noise_mode must be 'nugget' or 'explicit'.")
    design = design_from_frame(df)
    model = fit_gp(design, trend=trend, config=config)
    if noise_mode == "explicit":
        model = with_explicit_noise(model)
    logger.info("Fitted %s model on %d cells (%s noise).", trend, design.n, noise_mode)
    return model


def smooth_surface(model: FittedGP, ages, years) -> PredictionResult:
    """Posterior prediction on the full (ages * years) grid, age-major."""
    return predict(model, prediction_grid(ages, years))


def simulate_surface(
    model: FittedGP,
    ages,
    years,
    n_draws: int = 100,
    jitter: float = 1e-8,
    seed: Optional[int] = None,
) -> SimulationDraws:
    return simulate(
        model, prediction_grid(ages, years), n_draws=n_draws, jitter=jitter, seed=seed
    )


def forecast_improvement(
    model: FittedGP,
    ages,
    years,
    n_draws: int = 100,
    jitter: float = 1e-8,
    seed: Optional[int] = None,
    percentiles=(5, 50, 95),
) -> ImprovementForecast:
    """
    Mortality improvement on an (ages * years) grid: from posterior means
    and for each posterior draw.
    """
    ages = np.asarray(ages, dtype=int).reshape(-1)
    years = np.asarray(years, dtype=int).reshape(-1)
    X = prediction_grid(ages, years)
    mean_mi = improvement_from_prediction(predict(model, X))
    sim = simulate(model, X, n_draws=n_draws, jitter=jitter, seed=seed)
    yrs, mi = improvement_draws(sim, ages.size, years.size, years)
    return ImprovementForecast(
        years=yrs,
        ages=ages,
        mean=mean_mi,
        draws=mi,
        summary=summarize_surface_draws(mi, percentiles=percentiles),
    )


def forecast_life_expectancy(
    model: FittedGP,
    age: int,
    year: int,
    n_ages: int,
    n_draws: int = 1000,
    jitter: float = 1e-8,
    seed: Optional[int] = None,
    method: QMethod = "exponential",
) -> LifeExpectancyForecast:
    """
    Period life expectancy at ``age`` in ``year`` from conditional
    simulations of log m at ages age..age+n_ages-1.
    """
    n_ages = int(n_ages)
    if n_ages <= 0:
        raise ValueError("n_ages must be > 0.")
    ages = np.arange(int(age), int(age) + n_ages)
    X = prediction_grid(ages, [int(year)])
    sim = simulate(model, X, n_draws=n_draws, jitter=jitter, seed=seed)
    values = life_expectancy_from_log_m(sim.draws, method=method)
    return LifeExpectancyForecast(
        age=int(age),
        year=int(year),
        n_ages=n_ages,
        values=values,
        summary=summarize_draws(values),
    )
