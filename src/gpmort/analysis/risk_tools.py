from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass

import numpy as np


@dataclass
class DrawSummary:
    """Boxplot statistics of a scalar quantity across posterior draws.

    Attributes:
    ----------
    mean, std : float
        Mean and standard deviation over draws.
    q1, median, q3 : float
        Quartiles.
    whisker_low, whisker_high : float
        Most extreme draws within 1.5 IQR of the quartiles.
    min, max : float
        Extremes over draws.
    n_draws : int
        Number of finite draws summarised.
    """

    mean: float
    std: float
    q1: float
    median: float
    q3: float
    whisker_low: float
    whisker_high: float
    min: float
    max: float
    n_draws: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SurfaceDrawSummary:
    """Cell-wise statistics of simulated surfaces (N, A, T).

    Attributes:
    ----------
    mean, std : np.ndarray
        Shape (A, T).
    quantiles : dict[int, np.ndarray]
        Percentile -> surface of shape (A, T).
    """

    mean: np.ndarray
    std: np.ndarray
    quantiles: dict[int, np.ndarray]


def summarize_draws(values: np.ndarray) -> DrawSummary:
    """Summarise a vector of draws, e.g. life expectancies, as a boxplot.

    Non-finite entries are ignored.
    """
    x = np.asarray(values, dtype=float).reshape(-1)
    x = x[np.isfinite(x)]
    if x.size == 0:
        raise ValueError("values contains no finite draws.")

    q1, med, q3 = np.percentile(x, [25, 50, 75])
    iqr = q3 - q1
    inside = x[(x >= q1 - 1.5 * iqr) & (x <= q3 + 1.5 * iqr)]

    return DrawSummary(
        mean=float(x.mean()),
        std=float(x.std(ddof=0)),
        q1=float(q1),
        median=float(med),
        q3=float(q3),
        whisker_low=float(inside.min()),
        whisker_high=float(inside.max()),
        min=float(x.min()),
        max=float(x.max()),
        n_draws=int(x.size),
    )


def summarize_surface_draws(
    draws: np.ndarray,
    *,
    percentiles: Iterable[int] = (5, 50, 95),
) -> SurfaceDrawSummary:
    """Mean / std / percentiles across draws of a (N, A, T) array."""
    arr = np.asarray(draws, dtype=float)
    if arr.ndim != 3:
        raise ValueError(f"draws must be 3D (N, A, T); got shape {arr.shape}.")

    percentiles = sorted({int(p) for p in percentiles})
    if len(percentiles) == 0:
        raise ValueError("percentiles must be non-empty.")
    if any(p < 0 or p > 100 for p in percentiles):
        raise ValueError("percentiles must be between 0 and 100.")

    return SurfaceDrawSummary(
        mean=arr.mean(axis=0),
        std=arr.std(axis=0),
        quantiles={p: np.percentile(arr, p, axis=0) for p in percentiles},
    )
