"""
prediction.py — Posterior mean, sd and credible bands
=====================================================

Universal-kriging prediction from a ``FittedGP``, computed by gpmp. The trend
coefficients are treated as estimated, so the predictive variance carries the
trend uncertainty in addition to the usual conditional variance.

What ``sd`` describes depends on the model's noise mode:

- explicit-noise model: sd of the latent log-mortality surface;
  ``noise_variance`` holds the declared observation noise and
  ``sd_observed = sqrt(sd**2 + noise_variance)``.
- nugget model: the nugget is part of the covariance, so ``sd`` already
  describes an observation and ``noise_variance`` is 0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd
from scipy.stats import norm

from gpmort.models.gp import FittedGP, gpmp_model

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class PredictionResult:
    X: np.ndarray  # (m, 2) age, year
    mean: np.ndarray  # (m,)
    sd: np.ndarray  # (m,)
    noise_variance: float = 0.0
    latent: bool = True

    @property
    def sd_observed(self) -> np.ndarray:
        return np.sqrt(self.sd**2 + self.noise_variance)

    def interval(
        self, level: float = 0.95, observed: bool = True
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Central credible interval for log m. With ``observed=True`` the
        observation noise is added before forming the band.
        """
        if not 0.0 < level < 1.0:
            raise ValueError("level must be in (0, 1).")
        z = float(norm.ppf(0.5 + 0.5 * level))
        s = self.sd_observed if observed else self.sd
        return self.mean - z * s, self.mean + z * s

    def to_frame(self, level: float = 0.95, observed: bool = True) -> pd.DataFrame:
        lo, hi = self.interval(level=level, observed=observed)
        return pd.DataFrame(
            {
                "age": self.X[:, 0],
                "year": self.X[:, 1],
                "mean": self.mean,
                "sd": self.sd,
                "sd_observed": self.sd_observed,
                "lower": lo,
                "upper": hi,
                "rate": np.exp(self.mean),
            }
        )

    def to_surface(self, n_ages: int, n_years: int, what: str = "mean") -> np.ndarray:
        """Reshape an age-major prediction grid into (A, T)."""
        values = {"mean": self.mean, "sd": self.sd, "sd_observed": self.sd_observed}
        if what not in values:
            raise ValueError(f"what must be one of {list(values)}.")
        arr = np.asarray(values[what])
        if arr.shape[0] != n_ages * n_years:
            raise ValueError(
                f"{arr.shape[0]} predictions cannot be reshaped to ({n_ages}, {n_years})."
            )
        return arr.reshape(n_ages, n_years)


def prediction_grid(ages, years) -> np.ndarray:
    """Age-major (A*T, 2) grid of (age, year) pairs."""
    ages = np.asarray(ages, dtype=float).reshape(-1)
    years = np.asarray(years, dtype=float).reshape(-1)
    if ages.size == 0 or years.size == 0:
        raise ValueError("ages and years must be non-empty.")
    return np.column_stack(
        [np.repeat(ages, years.size), np.tile(years, ages.size)]
    )


def _check_query(model: FittedGP, X_new) -> np.ndarray:
    # always a fresh array: gpmp's self-covariance is keyed on object identity
    X_new = np.array(np.atleast_2d(X_new), dtype=float)
    if X_new.shape[1] != model.X.shape[1]:
        raise ValueError(
            f"X_new must have {model.X.shape[1]} columns (age, year), got {X_new.shape[1]}."
        )
    if not np.isfinite(X_new).all():
        raise ValueError("X_new must contain finite values.")
    lo = model.X.min(axis=0)
    hi = model.X.max(axis=0)
    outside = np.any((X_new < lo) | (X_new > hi), axis=1)
    if outside.any():
        logger.debug(
            "%d of %d query points lie outside the training range %s-%s; "
            "bands widen with distance.",
            int(outside.sum()),
            X_new.shape[0],
            lo,
            hi,
        )
    return X_new


def kriging_predict(model: FittedGP, X_new: np.ndarray, return_lambdas: bool = False):
    """
    gpmp universal-kriging prediction at checked query points: mean (m,),
    variance (m,) and, on request, the kriging weights (n, m).
    """
    out = gpmp_model(model).predict(model.X, model.y, X_new, return_lambdas=return_lambdas)
    mean = np.asarray(out[0], dtype=float).reshape(-1)
    var = np.asarray(out[1], dtype=float).reshape(-1)
    if return_lambdas:
        return mean, var, np.asarray(out[2], dtype=float)
    return mean, var


def predict(model: FittedGP, X_new) -> PredictionResult:
    """
    Posterior mean and sd of log m at the query points (age, year).

    Query points may lie outside the training range in either dimension.
    """
    X_new = _check_query(model, X_new)
    mean, var = kriging_predict(model, X_new)
    sd = np.sqrt(np.maximum(var, 0.0))

    if model.noise_mode == "explicit":
        return PredictionResult(
            X=X_new,
            mean=mean,
            sd=sd,
            noise_variance=model.observation_noise,
            latent=True,
        )
    return PredictionResult(X=X_new, mean=mean, sd=sd, noise_variance=0.0, latent=False)
