"""
gp.py — Kriging models for log-mortality surfaces
=================================================

A GP model for y = log m_{x,t} over inputs (age, year):

    y(x) = f(x)' beta + Z(x) + eps(x)

with a trend basis f (see ``trend.py``), a stationary Matérn-5/2 process Z of
variance sigma^2 and one length-scale per input, and observation noise eps.

Inference is delegated to ``gpmp``: a ``gpmp.core.Model`` with a
linear-predictor mean (the trend basis, coefficients integrated out) and the
covariance callable below gives the restricted likelihood and the kriging
predictor. This module only decides which covariance the library sees.

Two noise modes share the same covariance matrix on the training set,
K = sigma^2 C + tau^2 I, but differ at prediction time:

- ``"nugget"``: tau^2 is part of the covariance function. Predictions
  interpolate the noisy observations at training inputs and the predictive
  variance includes tau^2 away from them.
- ``"explicit"``: tau^2 is declared per observation as noise variance.
  Predictions describe the noise-free latent surface; add the noise variance
  back to get bands for observed rates.

``fit_gp`` estimates everything jointly (nugget mode) by maximising the
library's restricted log-likelihood with differential evolution.
``with_explicit_noise`` rebuilds the fitted model with the estimated nugget
declared as explicit noise, without re-optimising.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Literal, Optional, Tuple

import gpmp as gp
import gpmp.num as gnp
import numpy as np
from scipy.linalg import LinAlgError, cholesky, solve_triangular
from scipy.optimize import differential_evolution

from gpmort.data import DesignSet
from gpmort.models.kernels import coincident, matern52_correlation
from gpmort.models.trend import TrendName, check_trend_rank, n_trend_terms, trend_matrix

logger = logging.getLogger(__name__)

NoiseMode = Literal["nugget", "explicit"]

_VARIANCE_FLOOR = 1e-10
_PENALTY = 1e10


@dataclass(frozen=True)
class OptimizerConfig:
    """
    Settings for the differential-evolution likelihood search.

    pop_size is the total population per generation. length_scale_bounds are
    multiples of each input's observed range, variance_bounds multiples of
    the residual variance of an ordinary least-squares trend fit, and
    alpha = sigma^2/(sigma^2+tau^2) is searched within alpha_bounds.
    """

    pop_size: int = 40
    max_generations: int = 100
    tol: float = 1e-6
    seed: Optional[int] = None
    polish: bool = True
    length_scale_bounds: Tuple[float, float] = (0.05, 5.0)
    alpha_bounds: Tuple[float, float] = (1e-6, 1.0 - 1e-8)
    variance_bounds: Tuple[float, float] = (1e-3, 1e3)

    def __post_init__(self) -> None:
        if int(self.pop_size) <= 0:
            raise ValueError("pop_size must be > 0.")
        if int(self.max_generations) <= 0:
            raise ValueError("max_generations must be > 0.")
        if not self.tol > 0:
            raise ValueError("tol must be > 0.")
        lo, hi = self.length_scale_bounds
        if not (0 < lo < hi):
            raise ValueError("length_scale_bounds must satisfy 0 < lo < hi.")
        a_lo, a_hi = self.alpha_bounds
        if not (0 < a_lo < a_hi < 1):
            raise ValueError("alpha_bounds must satisfy 0 < lo < hi < 1.")
        v_lo, v_hi = self.variance_bounds
        if not (0 < v_lo < v_hi):
            raise ValueError("variance_bounds must satisfy 0 < lo < hi.")


@dataclass(frozen=True, eq=False)
class GPHyperparameters:
    trend_coef: np.ndarray  # (p,)
    length_scales: np.ndarray  # (d,) age, year
    signal_variance: float
    nugget: float


@dataclass(frozen=True, eq=False)
class FittedGP:
    """
    Immutable fitted kriging model.

    noise_variance is the per-observation noise (n,) in explicit mode and
    zeros in nugget mode, where the noise lives in ``hyper.nugget``.
    """

    trend: TrendName
    hyper: GPHyperparameters
    X: np.ndarray
    y: np.ndarray
    noise_mode: NoiseMode = "nugget"
    noise_variance: np.ndarray = field(default_factory=lambda: np.zeros(0))
    log_likelihood: float = float("nan")
    converged: bool = True
    n_evaluations: int = 0

    @property
    def n(self) -> int:
        return int(self.X.shape[0])

    @property
    def n_params(self) -> int:
        """Free parameters of the joint fit: trend, length-scales, sigma^2, tau^2."""
        return n_trend_terms(self.trend) + int(self.X.shape[1]) + 2

    @property
    def observation_noise(self) -> float:
        if self.noise_mode == "explicit":
            return float(np.mean(self.noise_variance))
        return float(self.hyper.nugget)

    def summary(self) -> dict:
        return {
            "trend": self.trend,
            "trend_coef": [float(b) for b in self.hyper.trend_coef],
            "length_scales": [float(v) for v in self.hyper.length_scales],
            "signal_variance": float(self.hyper.signal_variance),
            "nugget": float(self.hyper.nugget),
            "noise_mode": self.noise_mode,
            "observation_noise": self.observation_noise,
            "log_likelihood": float(self.log_likelihood),
            "converged": bool(self.converged),
            "n_evaluations": int(self.n_evaluations),
            "n_obs": self.n,
        }


# ---------------------------------------------------------------------------
# Callables handed to gpmp
# ---------------------------------------------------------------------------


class TrendMean:
    """gpmp mean function: the trend basis evaluated at x, shape (n, p)."""

    def __init__(self, trend: TrendName):
        self.trend = trend

    def __call__(self, x, meanparam=None):
        return gnp.asarray(trend_matrix(self.trend, np.asarray(x, dtype=float)))


class SurfaceCovariance:
    """
    gpmp covariance function ``k(x, y, covparam, pairwise=False)``.

    covparam is (log sigma^2, log ls_age, log ls_year), followed by
    log tau^2 in nugget mode. The self-covariance ``k(x, x)`` is the training
    covariance: it carries the nugget or the explicit noise on its diagonal.
    In nugget mode cross-covariances also carry the nugget where inputs
    coincide; explicit noise never enters a cross-covariance.
    """

    def __init__(self, noise_mode: NoiseMode = "nugget", noise_variance=None):
        if noise_mode == "explicit" and noise_variance is None:
            raise ValueError("explicit noise mode needs noise_variance.")
        self.noise_mode = noise_mode
        self.noise_variance = noise_variance

    def unpack(self, covparam) -> Tuple[float, np.ndarray, float]:
        p = np.asarray(covparam, dtype=float).reshape(-1)
        nugget = float(np.exp(p[3])) if self.noise_mode == "nugget" else 0.0
        return float(np.exp(p[0])), np.exp(p[1:3]), nugget

    def __call__(self, x, y, covparam, pairwise: bool = False):
        sigma2, ls, nugget = self.unpack(covparam)
        x_ = np.asarray(x, dtype=float)
        if pairwise:
            if y is None or y is x:
                return gnp.asarray(np.full(x_.shape[0], sigma2 + nugget))
            y_ = np.asarray(y, dtype=float)
            k = sigma2 * np.diag(matern52_correlation(x_, y_, ls))
            return gnp.asarray(k + nugget * np.all(x_ == y_, axis=1))

        if y is None or y is x:
            K = sigma2 * matern52_correlation(x_, None, ls)
            if self.noise_mode == "explicit":
                nv = np.asarray(self.noise_variance, dtype=float)
                if nv.shape[0] != K.shape[0]:
                    raise ValueError(
                        f"noise_variance has {nv.shape[0]} values for {K.shape[0]} inputs."
                    )
                K[np.diag_indices_from(K)] += nv
            else:
                K[np.diag_indices_from(K)] += nugget
            return gnp.asarray(K)

        y_ = np.asarray(y, dtype=float)
        K = sigma2 * matern52_correlation(x_, y_, ls)
        if nugget > 0:
            K = K + nugget * coincident(x_, y_)
        return gnp.asarray(K)


def _covparam(
    length_scales: np.ndarray, signal_variance: float, nugget: float, noise_mode: NoiseMode
) -> np.ndarray:
    head = [math.log(signal_variance)] + [math.log(v) for v in length_scales]
    if noise_mode == "nugget":
        head.append(math.log(max(nugget, np.finfo(float).tiny)))
    return np.asarray(head, dtype=float)


def _covariance_for(model: FittedGP) -> SurfaceCovariance:
    if model.noise_mode == "explicit":
        return SurfaceCovariance("explicit", noise_variance=model.noise_variance)
    return SurfaceCovariance("nugget")


def gpmp_model(model: FittedGP) -> gp.core.Model:
    """``gpmp.core.Model`` carrying the fitted covariance of ``model``."""
    h = model.hyper
    return gp.core.Model(
        TrendMean(model.trend),
        _covariance_for(model),
        covparam=gnp.asarray(
            _covparam(h.length_scales, h.signal_variance, h.nugget, model.noise_mode)
        ),
        meantype="linear_predictor",
    )


def _model_covparam(model: FittedGP) -> np.ndarray:
    h = model.hyper
    return _covparam(h.length_scales, h.signal_variance, h.nugget, model.noise_mode)


def training_covariance(model: FittedGP) -> np.ndarray:
    return np.asarray(_covariance_for(model)(model.X, model.X, _model_covparam(model)))


def cross_covariance(model: FittedGP, X_new: np.ndarray) -> np.ndarray:
    """Cov(Y(X_new), Y(X)) with shape (m, n)."""
    X_new = np.array(X_new, dtype=float)
    return np.asarray(_covariance_for(model)(X_new, model.X, _model_covparam(model)))


def prior_covariance(model: FittedGP, X_new: np.ndarray) -> np.ndarray:
    X_new = np.array(X_new, dtype=float)
    S = model.hyper.signal_variance * matern52_correlation(
        X_new, None, model.hyper.length_scales
    )
    if model.noise_mode == "nugget" and model.hyper.nugget > 0:
        S = S + model.hyper.nugget * coincident(X_new, X_new)
    return S


# ---------------------------------------------------------------------------
# Likelihood and trend estimate
# ---------------------------------------------------------------------------


def _check_length_scales(length_scales, d: int) -> np.ndarray:
    ls = np.asarray(length_scales, dtype=float).reshape(-1)
    if ls.shape[0] != d:
        raise ValueError(f"Expected {d} length-scales, got {ls.shape[0]}.")
    if not np.all(np.isfinite(ls)) or np.any(ls <= 0):
        raise ValueError("length_scales must be finite and > 0.")
    return ls


def _noise_vector(noise_variance, n: int) -> np.ndarray:
    nv = np.asarray(noise_variance, dtype=float)
    if nv.ndim == 0:
        nv = np.full(n, float(nv))
    nv = nv.reshape(-1)
    if nv.shape[0] != n:
        raise ValueError(
            f"noise_variance must be scalar or have {n} values, got {nv.shape[0]}."
        )
    if not np.all(np.isfinite(nv)) or np.any(nv < 0):
        raise ValueError("noise_variance must be finite and >= 0.")
    return nv


def log_restricted_likelihood(
    design: DesignSet,
    trend: TrendName,
    length_scales: np.ndarray,
    signal_variance: float,
    nugget: float = 0.0,
    noise_variance: Optional[np.ndarray] = None,
) -> float:
    """
    Restricted (REML) log-likelihood computed by gpmp for covariance
    sigma^2 C + tau^2 I, or sigma^2 C + diag(noise_variance).
    """
    ls = _check_length_scales(length_scales, design.X.shape[1])
    if not signal_variance > 0:
        raise ValueError("signal_variance must be > 0.")
    if nugget < 0:
        raise ValueError("nugget must be >= 0.")
    if noise_variance is not None:
        cov = SurfaceCovariance("explicit", _noise_vector(noise_variance, design.n))
        covparam = _covparam(ls, signal_variance, 0.0, "explicit")
    else:
        cov = SurfaceCovariance("nugget")
        covparam = _covparam(ls, signal_variance, nugget, "nugget")
    m = gp.core.Model(TrendMean(trend), cov, meantype="linear_predictor")
    nll = m.negative_log_restricted_likelihood(gnp.asarray(covparam), design.X, design.y)
    return -float(nll)


def gls_trend_coefficients(K: np.ndarray, F: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Generalised least-squares trend coefficients under covariance K."""
    L = cholesky(K, lower=True)
    coef, *_ = np.linalg.lstsq(
        solve_triangular(L, F, lower=True), solve_triangular(L, y, lower=True), rcond=None
    )
    return coef


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def build_gp(
    design: DesignSet,
    trend: TrendName,
    length_scales: np.ndarray,
    signal_variance: float,
    nugget: float = 0.0,
    noise_variance: Optional[np.ndarray] = None,
    trend_coef: Optional[np.ndarray] = None,
) -> FittedGP:
    """
    Kriging model with fixed covariance hyper-parameters.

    If ``noise_variance`` is given the model is in explicit-noise mode (the
    nugget must then be 0). Trend coefficients default to their GLS estimate.
    """
    X, y = design.X, design.y
    n, d = X.shape
    ls = _check_length_scales(length_scales, d)
    sigma2 = float(signal_variance)
    if not (np.isfinite(sigma2) and sigma2 > 0):
        raise ValueError("signal_variance must be finite and > 0.")
    nugget = float(nugget)
    if not (np.isfinite(nugget) and nugget >= 0):
        raise ValueError("nugget must be finite and >= 0.")

    if noise_variance is not None:
        if nugget != 0.0:
            raise ValueError("Give either a nugget or explicit noise_variance, not both.")
        mode: NoiseMode = "explicit"
        nv = _noise_vector(noise_variance, n)
    else:
        mode = "nugget"
        nv = np.zeros(n)

    F = check_trend_rank(trend, X)
    p = F.shape[1]
    if trend_coef is None:
        K = sigma2 * matern52_correlation(X, None, ls)
        K[np.diag_indices_from(K)] += nv if mode == "explicit" else nugget
        beta = gls_trend_coefficients(K, F, y)
    else:
        beta = np.asarray(trend_coef, dtype=float).reshape(-1)
        if beta.shape[0] != p:
            raise ValueError(f"trend '{trend}' needs {p} coefficients, got {beta.shape[0]}.")

    hyper = GPHyperparameters(
        trend_coef=beta,
        length_scales=ls,
        signal_variance=sigma2,
        nugget=nugget,
    )
    ll = log_restricted_likelihood(
        design,
        trend,
        ls,
        sigma2,
        nugget=nugget,
        noise_variance=nv if mode == "explicit" else None,
    )
    return FittedGP(
        trend=trend,
        hyper=hyper,
        X=design.X,
        y=design.y,
        noise_mode=mode,
        noise_variance=nv,
        log_likelihood=ll,
    )


def _search_box(X: np.ndarray, y: np.ndarray, F: np.ndarray, config: OptimizerConfig):
    """Bounds for (log ls_age, log ls_year, alpha, log total variance)."""
    span = np.ptp(X, axis=0).astype(float)
    span[span <= 0] = 1.0
    lo, hi = config.length_scale_bounds
    bounds = [(math.log(lo * s), math.log(hi * s)) for s in span]
    bounds.append(tuple(config.alpha_bounds))

    coef, *_ = np.linalg.lstsq(F, y, rcond=None)
    s2 = max(float(np.mean((y - F @ coef) ** 2)), _VARIANCE_FLOOR)
    v_lo, v_hi = config.variance_bounds
    bounds.append((math.log(v_lo * s2), math.log(v_hi * s2)))
    return bounds


def fit_gp(
    design: DesignSet,
    trend: TrendName = "linear_age_year",
    config: Optional[OptimizerConfig] = None,
) -> FittedGP:
    """
    Maximum-likelihood kriging fit with a Matérn-5/2 kernel and a nugget.

    Differential evolution searches the log length-scales, the signal
    fraction alpha and the log total variance sigma^2 + tau^2 against gpmp's
    restricted likelihood; the trend coefficients are integrated out by the
    library and reported at their GLS estimate. If the generation budget runs
    out before convergence, the best candidate found is returned with
    ``converged=False``.
    """
    config = config or OptimizerConfig()
    X, y = design.X, design.y
    n, d = X.shape
    p = n_trend_terms(trend)

    n_free = p + d + 2
    if n < n_free:
        raise ValueError(
            f"Design has {n} points but the '{trend}' model has {n_free} free "
            "parameters; add data or use a smaller trend."
        )
    F = check_trend_rank(trend, X)

    bounds = _search_box(X, y, F, config)
    lib_model = gp.core.Model(
        TrendMean(trend), SurfaceCovariance("nugget"), meantype="linear_predictor"
    )

    def to_covparam(theta: np.ndarray) -> np.ndarray:
        alpha, v = float(theta[d]), math.exp(float(theta[d + 1]))
        return _covparam(np.exp(theta[:d]), alpha * v, (1.0 - alpha) * v, "nugget")

    def objective(theta: np.ndarray) -> float:
        try:
            nll = float(
                lib_model.negative_log_restricted_likelihood(
                    gnp.asarray(to_covparam(theta)), X, y
                )
            )
        except LinAlgError:
            return _PENALTY
        return nll if np.isfinite(nll) else _PENALTY

    popsize = max(1, math.ceil(int(config.pop_size) / len(bounds)))
    logger.debug(
        "fit_gp: n=%d trend=%s popsize=%d max_generations=%d",
        n,
        trend,
        popsize * len(bounds),
        config.max_generations,
    )
    res = differential_evolution(
        objective,
        bounds,
        popsize=popsize,
        maxiter=int(config.max_generations),
        tol=float(config.tol),
        seed=config.seed,
        polish=bool(config.polish),
        init="latinhypercube",
    )

    theta = np.clip(res.x, [b[0] for b in bounds], [b[1] for b in bounds])
    converged = bool(res.success)
    if not converged:
        logger.warning(
            "Likelihood search did not converge after %d generations (%s); "
            "using best candidate found.",
            res.nit,
            res.message,
        )

    alpha, v = float(theta[d]), math.exp(float(theta[d + 1]))
    signal_variance, nugget = alpha * v, (1.0 - alpha) * v
    length_scales = np.exp(theta[:d])
    K = signal_variance * matern52_correlation(X, None, length_scales)
    K[np.diag_indices_from(K)] += nugget
    try:
        beta = gls_trend_coefficients(K, F, y)
    except LinAlgError as exc:
        raise RuntimeError(
            "Fitted covariance is numerically singular; narrow alpha_bounds "
            "or length_scale_bounds."
        ) from exc

    hyper = GPHyperparameters(
        trend_coef=beta,
        length_scales=length_scales,
        signal_variance=signal_variance,
        nugget=nugget,
    )
    model = FittedGP(
        trend=trend,
        hyper=hyper,
        X=design.X,
        y=design.y,
        noise_mode="nugget",
        noise_variance=np.zeros(n),
        log_likelihood=-float(objective(theta)),
        converged=converged,
        n_evaluations=int(res.nfev),
    )
    logger.info(
        "fit_gp: trend=%s length_scales=%s sigma2=%.4g nugget=%.4g loglik=%.3f",
        trend,
        np.array2string(hyper.length_scales, precision=3),
        hyper.signal_variance,
        hyper.nugget,
        model.log_likelihood,
    )
    return model


def with_explicit_noise(
    model: FittedGP, noise_variance: Optional[float | np.ndarray] = None
) -> FittedGP:
    """
    Re-declare the observation noise of a fitted model explicitly.

    Keeps trend coefficients, length-scales and signal variance; the noise
    variance (default: the estimated nugget) is attached to each observation
    and the nugget is set to 0. No optimisation is performed.
    """
    if noise_variance is None:
        if model.noise_mode == "explicit":
            noise_variance = model.noise_variance
        else:
            noise_variance = model.hyper.nugget
    nv = _noise_vector(noise_variance, model.n)

    hyper = GPHyperparameters(
        trend_coef=np.array(model.hyper.trend_coef, dtype=float),
        length_scales=np.array(model.hyper.length_scales, dtype=float),
        signal_variance=float(model.hyper.signal_variance),
        nugget=0.0,
    )
    design = DesignSet(X=model.X, y=model.y)
    ll = log_restricted_likelihood(
        design,
        model.trend,
        hyper.length_scales,
        hyper.signal_variance,
        noise_variance=nv,
    )
    return FittedGP(
        trend=model.trend,
        hyper=hyper,
        X=model.X,
        y=model.y,
        noise_mode="explicit",
        noise_variance=nv,
        log_likelihood=ll,
        converged=model.converged,
        n_evaluations=model.n_evaluations,
    )
