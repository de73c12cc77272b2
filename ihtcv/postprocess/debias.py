from __future__ import annotations

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
from sklearn.linear_model import LinearRegression

from ihtcv.models.errors import NumericalDegeneracyError
from ihtcv.models.families import Family, Normal

__all__ = ["fit_unpenalized", "debias_support", "refit_unpenalized"]

logger = logging.getLogger(__name__)

_IRLS_MAX_ITER = 50
_IRLS_TOL = 1e-8


def _weighted_least_squares(A: np.ndarray, target: np.ndarray, sample_weight: np.ndarray) -> np.ndarray:
    model = LinearRegression(fit_intercept=False)
    model.fit(A, target, sample_weight=sample_weight)
    return np.asarray(model.coef_, dtype=float).reshape(-1)


def fit_unpenalized(
    y: np.ndarray,
    A: np.ndarray,
    family: Family,
    weights: Optional[np.ndarray] = None,
    *,
    offset: Optional[np.ndarray] = None,
    max_iter: int = _IRLS_MAX_ITER,
    tol: float = _IRLS_TOL,
) -> np.ndarray:
    """Unpenalised GLM fit of ``y`` on the columns of ``A`` (plus a fixed offset).

    Gaussian/identity is a single weighted least-squares solve; other families
    run IRLS where every step is a weighted least-squares problem.
    """

    y = np.asarray(y, dtype=float)
    A = np.asarray(A, dtype=float)
    n, m = A.shape
    w = np.ones(n) if weights is None else np.asarray(weights, dtype=float)
    off = np.zeros(n) if offset is None else np.asarray(offset, dtype=float)
    if m == 0:
        return np.zeros(0)
    if not np.any(w > 0):
        raise NumericalDegeneracyError("Unpenalised refit received no samples with positive weight.")

    if isinstance(family, Normal):
        return _weighted_least_squares(A, y - off, w)

    mu = family.initial_mean(y)
    eta = family.link.link(mu)
    coef = np.zeros(m)
    dev = np.inf
    for _ in range(max_iter):
        d = family.mu_eta(eta)
        v = np.maximum(family.variance(mu), 1e-10)
        irls_w = w * np.square(d) / v
        working = (eta - off) + (y - mu) / d
        if not (np.all(np.isfinite(irls_w)) and np.all(np.isfinite(working))):
            break
        new_coef = _weighted_least_squares(A, working, irls_w)
        new_eta = off + A @ new_coef
        new_mu = family.mean(new_eta)
        new_dev = family.deviance(y, new_mu, w)
        if not np.isfinite(new_dev):
            break
        delta = np.max(np.abs(new_coef - coef)) if coef.size else 0.0
        coef, eta, mu = new_coef, new_eta, new_mu
        if delta < tol * (1.0 + np.max(np.abs(coef))) or abs(dev - new_dev) < tol * (abs(new_dev) + 0.1):
            break
        dev = new_dev
    if not np.all(np.isfinite(coef)):
        raise NumericalDegeneracyError("Unpenalised refit produced non-finite coefficients.")
    return coef


def debias_support(
    y: np.ndarray,
    xk: np.ndarray,
    z: np.ndarray,
    b_active: np.ndarray,
    c: np.ndarray,
    family: Family,
    weights: Optional[np.ndarray] = None,
    *,
    policy: str = "global",
    groups: Optional[Sequence] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Refit the active coefficients without the sparsity penalty.

    ``policy="global"`` refits ``[X_S, Z]`` jointly. ``policy="per_group"``
    refits each active group in turn with every other active coefficient and
    the covariates held fixed as an offset.
    """

    policy = str(policy).lower()
    if policy == "global" or groups is None:
        coef = fit_unpenalized(y, np.hstack([xk, z]), family, weights)
        k = xk.shape[1]
        return coef[:k], coef[k:]
    if policy != "per_group":
        raise ValueError(f"Unknown debias policy '{policy}'. Use 'global' or 'per_group'.")

    labels = np.asarray(groups)
    b_new = np.array(b_active, dtype=float, copy=True)
    zc = z @ np.asarray(c, dtype=float)
    for label in np.unique(labels):
        cols = labels == label
        offset = xk[:, ~cols] @ b_new[~cols] + zc
        b_new[cols] = fit_unpenalized(y, xk[:, cols], family, weights, offset=offset)
    return b_new, np.asarray(c, dtype=float).copy()


def refit_unpenalized(
    y: np.ndarray,
    x,
    z: np.ndarray,
    support: np.ndarray,
    family: Family,
    weights: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Full-length coefficients from an unpenalised refit on a fixed support."""

    support = np.asarray(support, dtype=bool)
    xk = x.columns(support) if hasattr(x, "columns") else np.asarray(x)[:, support]
    coef = fit_unpenalized(y, np.hstack([xk, z]), family, weights)
    beta = np.zeros(support.size)
    beta[support] = coef[: xk.shape[1]]
    logger.debug("Unpenalised refit on %d predictors and %d covariates.", xk.shape[1], z.shape[1])
    return beta, coef[xk.shape[1]:]
