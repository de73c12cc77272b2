from __future__ import annotations

import numpy as np
import numpy.testing as npt
import pytest
from scipy import stats

from ihtcv.models.errors import ConfigurationError
from ihtcv.models.families import (
    Bernoulli,
    Gamma,
    LogLink,
    NegativeBinomial,
    Normal,
    Poisson,
    ProbitLink,
    get_family,
)


def test_get_family_resolves_aliases_and_links():
    assert isinstance(get_family("gaussian"), Normal)
    fam = get_family("logistic", "probit")
    assert isinstance(fam, Bernoulli)
    assert isinstance(fam.link, ProbitLink)
    assert fam.describe() == "bernoulli/probit"
    assert isinstance(get_family("gamma", "log").link, LogLink)


def test_get_family_rejects_unknown_names_and_links():
    with pytest.raises(ConfigurationError):
        get_family("cauchy")
    with pytest.raises(ConfigurationError):
        get_family("poisson", "logit")
    with pytest.raises(ConfigurationError):
        get_family("normal", r=3.0)
    with pytest.raises(ConfigurationError):
        get_family("nb", r=-1.0)


def test_get_family_passes_instances_through_and_replaces_params():
    fam = get_family("negbin", r=4.0)
    assert get_family(fam) is fam
    updated = get_family(fam, r=2.0)
    assert isinstance(updated, NegativeBinomial)
    assert updated.r == pytest.approx(2.0)
    assert fam.r == pytest.approx(4.0)


def test_deviance_is_zero_at_saturated_mean():
    y = np.array([0.0, 1.0, 3.0, 7.0])
    for name in ("normal", "poisson", "negative_binomial"):
        fam = get_family(name)
        assert fam.deviance(y, y) == pytest.approx(0.0, abs=1e-8)
    yb = np.array([0.0, 1.0, 1.0])
    assert get_family("bernoulli").deviance(yb, yb) == pytest.approx(0.0, abs=1e-6)


def test_normal_deviance_is_weighted_residual_sum_of_squares():
    fam = get_family("normal")
    y = np.array([1.0, 2.0, 3.0])
    mu = np.array([0.0, 2.0, 5.0])
    assert fam.deviance(y, mu) == pytest.approx(5.0)
    assert fam.deviance(y, mu, np.array([1.0, 1.0, 0.0])) == pytest.approx(1.0)


def test_loglikelihood_matches_scipy_distributions():
    rng = np.random.default_rng(0)
    mu = rng.uniform(0.5, 4.0, size=20)
    counts = rng.poisson(mu).astype(float)
    npt.assert_allclose(
        get_family("poisson").loglikelihood(counts, mu),
        stats.poisson.logpmf(counts, mu).sum(),
    )

    r = 3.0
    nb = get_family("negative_binomial", r=r)
    npt.assert_allclose(
        nb.loglikelihood(counts, mu),
        stats.nbinom.logpmf(counts, r, r / (r + mu)).sum(),
    )

    y = rng.normal(size=20)
    npt.assert_allclose(
        get_family("normal").loglikelihood(y, mu),
        stats.norm.logpdf(y, loc=mu).sum(),
    )

    yb = (rng.random(20) < 0.4).astype(float)
    p = rng.uniform(0.1, 0.9, size=20)
    npt.assert_allclose(
        get_family("bernoulli").loglikelihood(yb, p),
        stats.bernoulli.logpmf(yb, p).sum(),
    )


def test_canonical_working_weights_reduce_to_raw_residuals():
    fam = Poisson()
    eta = np.array([-0.5, 0.0, 1.0])
    mu = fam.mean(eta)
    y = np.array([0.0, 2.0, 1.0])
    score, fisher = fam.working_weights(y, mu, eta, np.ones(3))
    npt.assert_allclose(score, y - mu)
    npt.assert_allclose(fisher, mu)
    assert fam.is_canonical
    assert not Gamma(link=LogLink()).is_canonical


def test_validate_y_enforces_support():
    with pytest.raises(ConfigurationError):
        get_family("bernoulli").validate_y(np.array([0.0, 0.5]))
    with pytest.raises(ConfigurationError):
        get_family("poisson").validate_y(np.array([-1.0, 2.0]))
    with pytest.raises(ConfigurationError):
        get_family("gamma").validate_y(np.array([0.0, 2.0]))
    with pytest.raises(ConfigurationError):
        get_family("normal").validate_y(np.array([np.nan]))


def test_negative_binomial_nuisance_estimate_recovers_dispersion():
    rng = np.random.default_rng(7)
    r_true, mu = 2.0, np.full(4000, 5.0)
    y = rng.negative_binomial(r_true, r_true / (r_true + mu)).astype(float)
    fitted = get_family("nb", r=10.0).estimate_nuisance(y, mu)
    assert fitted.nuisance == pytest.approx(r_true, rel=0.2)
    assert get_family("poisson").estimate_nuisance(y, mu).nuisance is None
