from __future__ import annotations

import numpy as np
import pytest

import gpmort.lifetables as lt


# ----------------------------
# Core conversions
# ----------------------------

def test_m_to_q_bounds():
    m = np.array([[1e-8, 0.02], [0.05, 0.1], [0.0, 1e6]], dtype=float)
    q = lt.m_to_q(m)
    assert q.shape == m.shape
    assert np.all((q > 0) & (q < 1))
    assert q[0, 1] == pytest.approx(0.02 / 1.01)


def test_log_m_to_q_methods():
    log_m = np.log(np.array([0.01, 0.2]))
    q_exp = lt.log_m_to_q(log_m, "exponential")
    q_lin = lt.log_m_to_q(log_m, "linear")
    q_id = lt.log_m_to_q(log_m, "identity")
    assert np.allclose(q_exp, 1 - np.exp(-np.array([0.01, 0.2])))
    assert np.allclose(q_lin, lt.m_to_q(np.array([0.01, 0.2])))
    assert np.allclose(q_id, [0.01, 0.2])
    # constant force gives fewer deaths than the rate itself
    assert np.all(q_exp < q_id)
    with pytest.raises(ValueError):
        lt.log_m_to_q(log_m, "cubic")


# ----------------------------
# Survival and validators
# ----------------------------

def test_survival_from_q_monotonic_and_shapes():
    q = np.array([[0.1, 0.2, 0.05]], dtype=float)
    S = lt.survival_from_q(q)
    assert S.shape == q.shape
    assert np.allclose(S, [[0.9, 0.72, 0.684]])
    assert np.all(np.diff(S, axis=-1) <= 0)


def test_survival_from_q_rejects_bad_q():
    with pytest.raises(ValueError):
        lt.survival_from_q(np.array([0.0, 0.5], dtype=float))
    with pytest.raises(ValueError):
        lt.survival_from_q(np.array([0.5, 1.0], dtype=float))
    with pytest.raises(ValueError):
        lt.survival_from_q(np.array([0.5, np.inf], dtype=float))


# ----------------------------
# Life expectancy
# ----------------------------

def test_period_life_expectancy_known_values():
    # die in year 1 w.p. 0.5, in year 2 w.p. 0.25 -> 0.5 + 2 * 0.25
    assert lt.period_life_expectancy(np.array([0.5, 0.5])) == pytest.approx(1.0)
    # a single age: e = q
    assert lt.period_life_expectancy(np.array([0.3])) == pytest.approx(0.3)
    q = np.array([0.1, 0.2, 0.3])
    expected = 1 * 0.1 + 2 * 0.2 * 0.9 + 3 * 0.3 * 0.9 * 0.8
    assert lt.period_life_expectancy(q) == pytest.approx(expected)


def test_period_life_expectancy_batch_and_bounds():
    rng = np.random.default_rng(0)
    q = rng.uniform(0.001, 0.999, size=(50, 30))
    e = lt.period_life_expectancy(q)
    assert e.shape == (50,)
    assert np.all(e > 0)
    assert np.all(e <= 30)
    # batch result matches per-curve result
    assert e[7] == pytest.approx(lt.period_life_expectancy(q[7]))


def test_period_life_expectancy_rejects_empty_and_invalid():
    with pytest.raises(ValueError):
        lt.period_life_expectancy(np.array([]))
    with pytest.raises(ValueError):
        lt.period_life_expectancy(np.array([0.2, 1.2]))


def test_life_expectancy_from_log_m_positive_and_bounded():
    log_m = np.log(np.tile(np.linspace(0.01, 0.3, 40), (5, 1)))
    e = lt.life_expectancy_from_log_m(log_m)
    assert e.shape == (5,)
    assert np.all((e > 0) & (e <= 40))
    assert np.allclose(e, e[0])
    with pytest.raises(ValueError):
        lt.life_expectancy_from_log_m(log_m[0])
    with pytest.raises(ValueError):
        lt.life_expectancy_from_log_m(np.full((2, 3), np.nan))
