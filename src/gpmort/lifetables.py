"""
lifetables.py — Life-table utilities for GPMORT
===============================================

Conversions between central death rates *mₓ,ₜ* and one-year death
probabilities *qₓ,ₜ*, survival curves, and the period life expectancy used
to summarise simulated mortality curves.

Life expectancy convention
--------------------------
For a curve of one-year death probabilities q_1, ..., q_k at ages
a, a+1, ..., a+k-1 the expected age-at-death (in years after a) is

    e_a = Σ_n  n · q_n · Π_{i<n} (1 - q_i),     n = 1..k

The probability mass of surviving past the last simulated age is dropped,
so 0 < e_a <= k whenever at least one q_n is positive.
"""

from __future__ import annotations

from typing import Literal

import numpy as np

QMethod = Literal["exponential", "linear", "identity"]


def m_to_q(m: np.ndarray) -> np.ndarray:
    """
    Convert central death rates m_x,t into one-year death probabilities q_x,t
    using the standard approximation q = m / (1 + 0.5*m). The output is clipped
    to maintain 0 < q < 1.
    """
    q = m / (1.0 + 0.5 * m)
    return np.clip(q, 1e-10, 1 - 1e-10)


def log_m_to_q(log_m: np.ndarray, method: QMethod = "exponential") -> np.ndarray:
    """
    Map log central death rates to one-year death probabilities.

    - "exponential": q = 1 - exp(-m)   (constant force within the year)
    - "linear":      q = m / (1 + m/2)  (uniform deaths, see ``m_to_q``)
    - "identity":    q = m
    """
    m = np.exp(np.asarray(log_m, dtype=float))
    if method == "exponential":
        q = -np.expm1(-m)
    elif method == "linear":
        return m_to_q(m)
    elif method == "identity":
        q = m
    else:
        raise ValueError(
            f"Unknown method '{method}'; expected 'exponential', 'linear' or 'identity'."
        )
    return np.clip(q, 1e-10, 1 - 1e-10)


def validate_q(q: np.ndarray) -> None:
    """
    Validate that all q_x,t lie strictly within (0,1).
    """
    q = np.asarray(q, dtype=float)
    if not np.isfinite(q).all():
        raise ValueError("q must contain finite values.")
    if not (np.all(q > 0) and np.all(q < 1)):
        raise ValueError("q must be in (0,1).")


def survival_from_q(q: np.ndarray) -> np.ndarray:
    """
    Compute survival probabilities S(n) = Π_{i<=n} (1 - q_i) by cumulative
    multiplication along the last axis.
    """
    q = np.asarray(q, dtype=float)

    if q.ndim < 1:
        raise ValueError(f"q must have at least 1 dimension, got shape {q.shape}.")
    validate_q(q)

    return np.cumprod(1.0 - q, axis=-1)


def period_life_expectancy(q: np.ndarray) -> np.ndarray | float:
    """
    Expected age-at-death after the starting age for one curve (K,) or a batch
    of curves (..., K) of one-year death probabilities.

    Parameters
    ----------
    q : np.ndarray
        Death probabilities q_1..q_K along the last axis, strictly in (0,1).

    Returns
    -------
    float or np.ndarray
        e = Σ n q_n Π_{i<n}(1 - q_i); a float for a single curve, otherwise
        an array with the leading shape of ``q``.
    """
    q = np.asarray(q, dtype=float)
    if q.ndim < 1 or q.shape[-1] == 0:
        raise ValueError("q must have a non-empty last axis.")
    S = survival_from_q(q)
    ones = np.ones(q.shape[:-1] + (1,), dtype=float)
    S_prev = np.concatenate([ones, S[..., :-1]], axis=-1)

    n = np.arange(1, q.shape[-1] + 1, dtype=float)
    e = np.sum(n * q * S_prev, axis=-1)

    if q.ndim == 1:
        return float(e)
    return e


def life_expectancy_from_log_m(
    log_m_paths: np.ndarray, method: QMethod = "exponential"
) -> np.ndarray:
    """
    Period life expectancy for each simulated log-mortality curve.

    ``log_m_paths`` has shape (N, K): N draws of log m at K consecutive ages.
    Returns an array of shape (N,).
    """
    log_m_paths = np.asarray(log_m_paths, dtype=float)
    if log_m_paths.ndim != 2:
        raise ValueError(
            f"log_m_paths must have shape (N, K), got {log_m_paths.shape}."
        )
    if not np.isfinite(log_m_paths).all():
        raise ValueError("log_m_paths must contain finite values.")
    q = log_m_to_q(log_m_paths, method=method)
    return np.asarray(period_life_expectancy(q), dtype=float)
