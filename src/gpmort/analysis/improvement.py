"""
improvement.py — Mortality improvement rates
============================================

    MI(x, t) = 1 - m(x, t) / m(x, t-1) = 1 - exp(log m(x, t) - log m(x, t-1))

Positive values mean mortality fell from year t-1 to year t.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
import pandas as pd

from gpmort.analysis.prediction import PredictionResult
from gpmort.analysis.simulation import SimulationDraws


def _check_years(years: np.ndarray, T: int) -> np.ndarray:
    years = np.asarray(years, dtype=int).reshape(-1)
    if years.shape[0] != T:
        raise ValueError(f"years has {years.shape[0]} entries but surface has {T} years.")
    if T < 2:
        raise ValueError("At least two years are needed for mortality improvement.")
    if np.any(np.diff(years) != 1):
        raise ValueError("years must be consecutive.")
    return years


def mortality_improvement(rates: np.ndarray, years: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Improvement on a surface of rates (A, T) or a batch of surfaces (N, A, T).
    Returns (years[1:], MI) with MI of shape (..., T-1).
    """
    rates = np.asarray(rates, dtype=float)
    if rates.ndim not in (2, 3):
        raise ValueError("rates must have shape (A, T) or (N, A, T).")
    if not np.isfinite(rates).all() or (rates <= 0).any():
        raise ValueError("rates must be strictly positive and finite.")
    years = _check_years(years, rates.shape[-1])
    mi = 1.0 - rates[..., 1:] / rates[..., :-1]
    return years[1:], mi


def mortality_improvement_from_log(
    log_m: np.ndarray, years: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """Same as ``mortality_improvement`` on log rates: 1 - exp(diff log m)."""
    log_m = np.asarray(log_m, dtype=float)
    if log_m.ndim not in (2, 3):
        raise ValueError("log_m must have shape (A, T) or (N, A, T).")
    if not np.isfinite(log_m).all():
        raise ValueError("log_m must be finite.")
    years = _check_years(years, log_m.shape[-1])
    return years[1:], -np.expm1(np.diff(log_m, axis=-1))


def _pair_with_previous_year(frame: pd.DataFrame, value: str) -> pd.DataFrame:
    prev = frame[["age", "year", value]].copy()
    prev["year"] = prev["year"] + 1
    merged = frame.merge(prev, on=["age", "year"], suffixes=("", "_prev"), how="inner")
    return merged.sort_values(["age", "year"]).reset_index(drop=True)


def improvement_from_prediction(result: PredictionResult) -> pd.DataFrame:
    """
    Improvement implied by posterior means, pairing each (age, year) with
    (age, year-1) in the same prediction. Points without a predecessor are
    dropped. Columns: age, year, mean, mean_prev, mi.
    """
    frame = pd.DataFrame(
        {"age": result.X[:, 0], "year": result.X[:, 1], "mean": result.mean}
    )
    if frame.duplicated(subset=["age", "year"]).any():
        raise ValueError("Prediction contains duplicated (age, year) points.")
    merged = _pair_with_previous_year(frame, "mean")
    merged["mi"] = 1.0 - np.exp(merged["mean"] - merged["mean_prev"])
    return merged[["age", "year", "mean", "mean_prev", "mi"]]


def improvement_from_table(df: pd.DataFrame) -> pd.DataFrame:
    """
    Improvement on observed rates of one population (validated table).
    Columns: age, year, rate, rate_prev, mi.
    """
    if "rate" not in df.columns:
        raise ValueError("Table must contain a 'rate' column.")
    frame = df[["age", "year", "rate"]]
    if frame.duplicated(subset=["age", "year"]).any():
        raise ValueError("Several populations share the same (age, year); select one.")
    merged = _pair_with_previous_year(frame, "rate")
    merged["mi"] = 1.0 - merged["rate"] / merged["rate_prev"]
    return merged[["age", "year", "rate", "rate_prev", "mi"]]


def improvement_draws(
    sim: SimulationDraws, n_ages: int, n_years: int, years: np.ndarray
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Improvement for each posterior draw simulated on an age-major grid.
    Returns (years[1:], MI) with MI of shape (n_draws, A, T-1).
    """
    surf = sim.to_surface(n_ages, n_years)
    return mortality_improvement_from_log(surf, years)
