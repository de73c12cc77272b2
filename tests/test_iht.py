from __future__ import annotations

import logging

import numpy as np
import numpy.testing as npt
import pytest

from ihtcv.models import iht
from ihtcv.models.errors import ConfigurationError, DescentFailureError, NumericalDegeneracyError
from ihtcv.models.iht import fit_iht, predict_loss, predict_mean
from ihtcv.models.projection import project_k


def test_recovers_true_support_for_gaussian_response(sparse_normal):
    X, y, beta = sparse_normal
    result = fit_iht(y, X, k=3)
    assert result.converged
    npt.assert_array_equal(result.selected, np.flatnonzero(beta))
    npt.assert_allclose(result.beta[result.selected], beta[result.selected], atol=0.2)
    assert result.c[0] == pytest.approx(0.5, abs=0.2)
    assert np.count_nonzero(result.beta) <= 3


def test_objective_trace_never_increases(sparse_normal):
    X, y, _ = sparse_normal
    result = fit_iht(y, X, k=5, tol=1e-6)
    objectives = np.array([rec.objective for rec in result.trace])
    assert objectives.size >= 1
    assert np.all(np.diff(objectives) <= 1e-6)


def test_small_coefficients_are_hard_zeroed(sparse_normal):
    X, y, _ = sparse_normal
    tol = 1e-3
    result = fit_iht(y, X, k=8, tol=tol)
    nz = result.beta[result.beta != 0]
    assert np.all(np.abs(nz) >= tol)
    assert result.support.sum() == 8


def test_iteration_cap_is_reported_not_raised(sparse_normal):
    X, y, _ = sparse_normal
    result = fit_iht(y, X, k=3, max_iter=1, tol=1e-12)
    assert not result.converged
    assert result.iterations == 1


def test_zero_design_raises_numerical_degeneracy():
    rng = np.random.default_rng(0)
    with pytest.raises(NumericalDegeneracyError):
        fit_iht(rng.normal(size=50), np.zeros((50, 10)), k=2)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"k": 0},
        {"k": 2, "J": 0},
        {"k": 2, "tol": 0.0},
        {"k": 2, "max_iter": 0},
        {"k": 2, "max_step": -1},
        {"k": 2, "debias_policy": "local"},
    ],
)
def test_invalid_controls_are_rejected_before_fitting(sparse_normal, kwargs):
    X, y, _ = sparse_normal
    with pytest.raises(ConfigurationError):
        fit_iht(y, X, **kwargs)


def test_zero_cv_weights_match_fit_on_subset(sparse_normal):
    X, y, _ = sparse_normal
    keep = np.ones(y.size, dtype=bool)
    keep[::4] = False
    masked = fit_iht(y, X, k=3, cv_wts=keep.astype(float))
    subset = fit_iht(y[keep], X[keep], k=3)
    npt.assert_array_equal(masked.selected, subset.selected)
    npt.assert_allclose(masked.beta, subset.beta, rtol=1e-6, atol=1e-8)
    npt.assert_allclose(masked.c, subset.c, rtol=1e-6, atol=1e-8)


def test_debias_returns_least_squares_on_selected_support(sparse_normal):
    X, y, beta = sparse_normal
    result = fit_iht(y, X, k=3, debias=True)
    support = np.flatnonzero(beta)
    npt.assert_array_equal(result.selected, support)
    A = np.column_stack([X[:, support], np.ones(y.size)])
    ols, *_ = np.linalg.lstsq(A, y, rcond=None)
    npt.assert_allclose(result.beta[support], ols[:3], rtol=1e-4)
    npt.assert_allclose(result.c, ols[3:], rtol=1e-4)


def test_logistic_fit_selects_strong_predictors():
    rng = np.random.default_rng(5)
    n, p = 600, 30
    X = rng.normal(size=(n, p))
    beta = np.zeros(p)
    beta[[2, 11]] = [2.0, -2.0]
    y = (rng.random(n) < 1.0 / (1.0 + np.exp(-(X @ beta)))).astype(float)
    result = fit_iht(y, X, k=2, family="bernoulli", max_iter=200)
    npt.assert_array_equal(result.selected, [2, 11])
    assert np.isfinite(result.loglikelihood)
    mu = predict_mean(result, X)
    assert np.all((mu > 0) & (mu < 1))


def test_poisson_and_negative_binomial_fits_run():
    rng = np.random.default_rng(9)
    n, p = 300, 20
    X = rng.normal(size=(n, p)) * 0.5
    beta = np.zeros(p)
    beta[[0, 5]] = [0.6, -0.6]
    mu = np.exp(1.0 + X @ beta)
    y = rng.poisson(mu).astype(float)
    pois = fit_iht(y, X, k=2, family="poisson", max_iter=200)
    assert set(pois.selected) == {0, 5}

    nb = fit_iht(y, X, k=2, family="negative_binomial", estimate_nuisance=True, max_iter=200)
    assert nb.nuisance is not None and nb.nuisance > 0
    assert np.isfinite(nb.objective)


def test_group_budget_keeps_a_single_group():
    rng = np.random.default_rng(4)
    n, p = 150, 12
    X = rng.normal(size=(n, p))
    group = np.repeat([1, 2, 3], 4)
    beta = np.zeros(p)
    beta[[4, 5]] = [2.0, 1.5]
    y = X @ beta + 0.3 * rng.normal(size=n)
    result = fit_iht(y, X, k=2, J=1, group=group)
    assert set(group[result.selected]) == {2}
    assert set(result.selected) == {4, 5}


def test_backtracking_exhaustion_is_logged(sparse_normal, monkeypatch, caplog):
    X, y, _ = sparse_normal
    monkeypatch.setattr(iht, "_rose", lambda new, old, eps: True)
    with caplog.at_level(logging.WARNING, logger="ihtcv.models.iht"):
        result = fit_iht(y, X, k=3, max_step=2, max_iter=5)
    assert result.max_backtracks_hit >= 1
    assert any("Backtracking exhausted" in rec.getMessage() for rec in caplog.records)


def test_objective_increase_raises_descent_failure(sparse_normal, monkeypatch):
    X, y, _ = sparse_normal
    original = iht._backtrack

    def _worse(state, step, obj_prev, max_step, eps):
        step, backtracks, obj, hit = original(state, step, obj_prev, max_step, eps)
        return step, backtracks, obj_prev + 10.0, hit

    monkeypatch.setattr(iht, "_backtrack", _worse)
    with pytest.raises(DescentFailureError):
        fit_iht(y, X, k=3)


def test_predict_loss_is_deviance_on_selected_rows(sparse_normal):
    X, y, _ = sparse_normal
    result = fit_iht(y, X, k=3)
    rows = np.zeros(y.size)
    rows[:20] = 1.0
    mu = predict_mean(result, X)
    expected = float(np.sum((y[:20] - mu[:20]) ** 2))
    assert predict_loss(result, X, y, weights=rows) == pytest.approx(expected)


def test_result_to_dict_is_json_friendly(sparse_normal):
    X, y, _ = sparse_normal
    payload = fit_iht(y, X, k=3).to_dict()
    assert payload["k"] == 3
    assert payload["family"] == "normal/identity"
    assert len(payload["selected"]) == len(payload["beta_selected"])


def test_backtracking_exhaustion_keeps_lowest_objective_trial(sparse_normal, monkeypatch):
    X, y, _ = sparse_normal
    trials = []
    original = iht._take_step

    def _recording(state, step):
        obj = original(state, step)
        trials.append((step, obj))
        return obj

    monkeypatch.setattr(iht, "_rose", lambda new, old, eps: True)
    monkeypatch.setattr(iht, "_take_step", _recording)
    result = fit_iht(y, X, k=3, max_step=3, max_iter=1)
    best_step, best_obj = min(trials[:4], key=lambda trial: trial[1])
    assert result.max_backtracks_hit == 1
    assert result.trace[0].step == best_step
    assert result.trace[0].objective == pytest.approx(best_obj)


def test_repeated_fits_are_identical(sparse_normal):
    X, y, _ = sparse_normal
    first = fit_iht(y, X, k=5)
    second = fit_iht(y, X, k=5)
    npt.assert_array_equal(first.beta, second.beta)
    npt.assert_array_equal(first.c, second.c)
    assert first.iterations == second.iterations


def test_fitted_coefficients_are_a_fixed_point_of_projection(sparse_normal):
    X, y, _ = sparse_normal
    result = fit_iht(y, X, k=4)
    projected, mask = project_k(result.beta, 4)
    npt.assert_array_equal(projected, result.beta)
    assert np.all(mask[result.beta != 0])
