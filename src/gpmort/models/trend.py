from __future__ import annotations

from typing import Callable, Dict, Literal

import numpy as np

TrendName = Literal[
    "constant",
    "linear_age",
    "linear_age_year",
    "quadratic_age_linear_year",
]


def _constant(age: np.ndarray, year: np.ndarray) -> np.ndarray:
    return np.ones((age.shape[0], 1))


def _linear_age(age: np.ndarray, year: np.ndarray) -> np.ndarray:
    return np.column_stack([np.ones_like(age), age])


def _linear_age_year(age: np.ndarray, year: np.ndarray) -> np.ndarray:
    return np.column_stack([np.ones_like(age), age, year])


def _quadratic_age_linear_year(age: np.ndarray, year: np.ndarray) -> np.ndarray:
    return np.column_stack([np.ones_like(age), age, age**2, year])


_BASES: Dict[str, tuple[Callable[[np.ndarray, np.ndarray], np.ndarray], tuple[str, ...]]] = {
    "constant": (_constant, ("intercept",)),
    "linear_age": (_linear_age, ("intercept", "age")),
    "linear_age_year": (_linear_age_year, ("intercept", "age", "year")),
    "quadratic_age_linear_year": (
        _quadratic_age_linear_year,
        ("intercept", "age", "age^2", "year"),
    ),
}

TREND_NAMES = tuple(_BASES)


def _lookup(name: str):
    try:
        return _BASES[name]
    except KeyError:
        raise ValueError(
            f"Unknown trend '{name}'; expected one of {list(TREND_NAMES)}."
        ) from None


def trend_terms(name: TrendName) -> tuple[str, ...]:
    """Labels of the basis functions, in column order."""
    return _lookup(name)[1]


def n_trend_terms(name: TrendName) -> int:
    return len(_lookup(name)[1])


def trend_matrix(name: TrendName, X: np.ndarray) -> np.ndarray:
    """
    Evaluate the trend basis on inputs X[:, 0] = age, X[:, 1] = year.
    Returns F with shape (n, p).
    """
    fn, _ = _lookup(name)
    X = np.asarray(X, dtype=float)
    if X.ndim != 2 or X.shape[1] != 2:
        raise ValueError(f"X must have shape (n, 2) (age, year), got {X.shape}.")
    return np.asarray(fn(X[:, 0], X[:, 1]), dtype=float)


def check_trend_rank(name: TrendName, X: np.ndarray) -> np.ndarray:
    """
    Trend matrix of ``name`` on X, or ``ValueError`` if its columns are
    linearly dependent there (e.g. a year term fitted on a single year).
    """
    F = trend_matrix(name, X)
    scale = np.linalg.norm(F, axis=0)
    scale[scale == 0] = 1.0
    if np.linalg.matrix_rank(F / scale) < F.shape[1]:
        flat = [c for c, col in zip(("age", "year"), np.asarray(X, float).T) if np.ptp(col) == 0]
        hint = f" ({' and '.join(flat)} constant on the design)" if flat else ""
        raise ValueError(
            f"Trend '{name}' cannot be estimated on this design{hint}; "
            "use a smaller trend or add ages/years."
        )
    return F
