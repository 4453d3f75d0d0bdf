from __future__ import annotations

import numpy as np
import pytest

from gpmort.models.kernels import coincident, matern52_correlation
from gpmort.models.trend import TREND_NAMES, n_trend_terms, trend_matrix, trend_terms

X = np.array([[60.0, 2000.0], [61.0, 2001.0], [65.0, 2010.0]])


@pytest.mark.parametrize(
    "name, p",
    [
        ("constant", 1),
        ("linear_age", 2),
        ("linear_age_year", 3),
        ("quadratic_age_linear_year", 4),
    ],
)
def test_trend_matrix_shapes(name, p):
    F = trend_matrix(name, X)
    assert F.shape == (3, p)
    assert n_trend_terms(name) == p
    assert len(trend_terms(name)) == p
    assert np.all(F[:, 0] == 1.0)


def test_trend_matrix_columns():
    F = trend_matrix("quadratic_age_linear_year", X)
    assert np.allclose(F[:, 1], X[:, 0])
    assert np.allclose(F[:, 2], X[:, 0] ** 2)
    assert np.allclose(F[:, 3], X[:, 1])
    assert set(TREND_NAMES) == {
        "constant",
        "linear_age",
        "linear_age_year",
        "quadratic_age_linear_year",
    }


def test_trend_matrix_errors():
    with pytest.raises(ValueError):
        trend_matrix("cubic", X)
    with pytest.raises(ValueError):
        trend_matrix("constant", X[:, :1])


def test_matern52_correlation_values():
    ls = np.array([2.0, 4.0])
    C = matern52_correlation(X, None, ls)
    assert C.shape == (3, 3)
    assert np.allclose(np.diag(C), 1.0)
    assert np.allclose(C, C.T)

    # closed form Matérn-5/2 at scaled distance r
    r = np.sqrt((1.0 / 2.0) ** 2 + (1.0 / 4.0) ** 2)
    s = np.sqrt(5.0) * r
    expected = (1.0 + s + s**2 / 3.0) * np.exp(-s)
    assert C[0, 1] == pytest.approx(expected)

    # correlation decays with distance
    assert C[0, 2] < C[0, 1] < 1.0

    K12 = matern52_correlation(X[:1], X, ls)
    assert K12.shape == (1, 3)
    assert np.allclose(K12[0], C[0])


def test_matern52_correlation_rejects_bad_length_scales():
    with pytest.raises(ValueError):
        matern52_correlation(X, None, np.array([1.0]))
    with pytest.raises(ValueError):
        matern52_correlation(X, None, np.array([1.0, 0.0]))


def test_coincident():
    M = coincident(X, X[[1, 1]])
    assert M.shape == (3, 2)
    assert M[1].all() and not M[0].any() and not M[2].any()
