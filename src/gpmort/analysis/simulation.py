from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cholesky

from gpmort.analysis.prediction import _check_query, kriging_predict
from gpmort.models.gp import FittedGP, cross_covariance, prior_covariance, training_covariance


@dataclass(frozen=True, eq=False)
class SimulationDraws:
    """
    Conditional simulations of log m.

    Attributes
    ----------
    X : np.ndarray
        Query points (m, 2).
    draws : np.ndarray
        Posterior sample paths, shape (n_draws, m).
    mean : np.ndarray
        Posterior mean at X, shape (m,).
    """

    X: np.ndarray
    draws: np.ndarray
    mean: np.ndarray

    @property
    def n_draws(self) -> int:
        return int(self.draws.shape[0])

    def to_surface(self, n_ages: int, n_years: int) -> np.ndarray:
        """(n_draws, A, T) view of draws simulated on an age-major grid."""
        if self.draws.shape[1] != n_ages * n_years:
            raise ValueError(
                f"{self.draws.shape[1]} points cannot be reshaped to ({n_ages}, {n_years})."
            )
        return self.draws.reshape(self.n_draws, n_ages, n_years)

    def quantiles(self, levels: Iterable[float] = (0.05, 0.5, 0.95)) -> dict[float, np.ndarray]:
        out: dict[float, np.ndarray] = {}
        for lv in levels:
            lv = float(lv)
            if not 0.0 <= lv <= 1.0:
                raise ValueError("quantile levels must lie in [0, 1].")
            out[lv] = np.quantile(self.draws, lv, axis=0)
        return out


def posterior_covariance(model: FittedGP, X_new) -> Tuple[np.ndarray, np.ndarray]:
    """
    Posterior mean (m,) and full covariance (m, m) of log m at X_new.

    The covariance is that of the kriging error built from gpmp's weights
    lambda, so it includes the trend-estimation term:
    K_tt - lambda' K_it - K_it' lambda + lambda' K_ii lambda.
    """
    X_new = _check_query(model, X_new)
    mean, _, lam = kriging_predict(model, X_new, return_lambdas=True)
    Kit = cross_covariance(model, X_new).T  # (n, m)
    LK = lam.T @ Kit
    cov = prior_covariance(model, X_new) - LK - LK.T + lam.T @ training_covariance(model) @ lam
    cov = 0.5 * (cov + cov.T)
    return mean, cov


def simulate(
    model: FittedGP,
    X_new,
    n_draws: int,
    jitter: float = 1e-8,
    seed: Optional[int] = None,
) -> SimulationDraws:
    """
    Draw sample paths from the posterior GP at X_new.

    Uses the Cholesky factor of the posterior covariance plus ``jitter`` on
    the diagonal.
    """
    n_draws = int(n_draws)
    if n_draws <= 0:
        raise ValueError("n_draws must be > 0.")
    jitter = float(jitter)
    if not (np.isfinite(jitter) and jitter >= 0):
        raise ValueError("jitter must be finite and >= 0.")

    X_new = np.atleast_2d(np.asarray(X_new, dtype=float))
    mean, cov = posterior_covariance(model, X_new)
    cov[np.diag_indices_from(cov)] += jitter
    try:
        L = cholesky(cov, lower=True)
    except LinAlgError as exc:
        raise ValueError(
            "Posterior covariance is not positive definite; increase jitter "
            "or remove duplicated query points."
        ) from exc

    rng = np.random.default_rng(seed)
    z = rng.standard_normal(size=(n_draws, X_new.shape[0]))
    draws = mean[None, :] + z @ L.T
    return SimulationDraws(X=X_new, draws=draws, mean=mean)
