"""Iterative hard thresholding for sparse generalised linear models.

A fit moves through INIT (covariate-only fit, gradient at ``b = 0``, initial
support from the projected gradient), ITERATE (gradient step with a
Barzilai-Borwein style step size, projection, backtracking) and finishes as
converged, out of iterations (reported through ``converged=False``) or with
a fatal :class:`NumericalDegeneracyError` / :class:`DescentFailureError`.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

import numpy as np

from ihtcv.models.design import as_design
from ihtcv.models.errors import ConfigurationError, DescentFailureError, NumericalDegeneracyError
from ihtcv.models.families import Family, get_family
from ihtcv.models.projection import project
from ihtcv.models.state import ModelState, initialize_state, validate_size
from ihtcv.postprocess.debias import debias_support, fit_unpenalized

__all__ = [
    "IterationRecord",
    "IHTResult",
    "fit_iht",
    "fit_state",
    "predict_mean",
    "predict_loss",
    "validate_controls",
]

logger = logging.getLogger(__name__)

DEBIAS_POLICIES = ("global", "per_group")


@dataclass
class IterationRecord:
    iteration: int
    objective: float
    step: float
    backtracks: int
    support_size: int
    change: float


@dataclass
class IHTResult:
    """Outcome of one IHT fit at a fixed sparsity level."""

    beta: np.ndarray
    c: np.ndarray
    converged: bool
    iterations: int
    objective: float
    loglikelihood: float
    elapsed: float
    k: int
    J: int
    support: np.ndarray
    family: Family
    max_backtracks_hit: int = 0
    trace: List[IterationRecord] = field(default_factory=list)
    nuisance: Optional[float] = None

    @property
    def selected(self) -> np.ndarray:
        return np.flatnonzero(self.beta)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "k": int(self.k),
            "J": int(self.J),
            "family": self.family.describe(),
            "converged": bool(self.converged),
            "iterations": int(self.iterations),
            "objective": float(self.objective),
            "loglikelihood": float(self.loglikelihood),
            "elapsed": float(self.elapsed),
            "max_backtracks_hit": int(self.max_backtracks_hit),
            "nuisance": self.nuisance,
            "selected": [int(i) for i in self.selected],
            "beta_selected": [float(self.beta[i]) for i in self.selected],
            "c": [float(v) for v in self.c],
        }


def validate_controls(
    *,
    tol: float,
    max_iter: int,
    max_step: int,
    dtype: Union[str, np.dtype] = np.float64,
    debias_policy: str = "global",
) -> None:
    eps = float(np.finfo(np.dtype(dtype)).eps)
    if not np.isfinite(tol) or tol <= eps:
        raise ConfigurationError(f"Tolerance must be finite and larger than machine epsilon ({eps:.3g}), got {tol!r}.")
    if int(max_iter) != max_iter or max_iter < 1:
        raise ConfigurationError(f"max_iter must be a positive integer, got {max_iter!r}.")
    if int(max_step) != max_step or max_step < 0:
        raise ConfigurationError(f"max_step must be a non-negative integer, got {max_step!r}.")
    if str(debias_policy).lower() not in DEBIAS_POLICIES:
        raise ConfigurationError(f"Unknown debias_policy '{debias_policy}'. Use one of {DEBIAS_POLICIES}.")


# ------------------------------
# Engine pieces
# ------------------------------
def _project_into(state: ModelState, v: np.ndarray) -> None:
    projected, _ = project(v, state.k, J=state.J, group=state.group, weight=state.weight, out_mask=state.idx)
    state.b[:] = projected


def _initialize(state: ModelState, warm_start: bool) -> None:
    if not (warm_start and np.any(state.b)):
        state.b.fill(0.0)
        state.idx.fill(False)
    state.update_linear_predictor()
    state.c[:] = fit_unpenalized(state.y, state.z, state.family, state.cv_wts, offset=state.xb)
    state.update_linear_predictor()
    state.update_gradient()
    if not np.any(state.idx):
        _, mask = project(state.df, state.k, J=state.J, group=state.group, weight=state.weight)
        state.idx[:] = mask
        state.gk = state.df[state.idx]


def _check_active_image(state: ModelState) -> np.ndarray:
    xk = state.active_columns()
    if not np.any(xk):
        raise NumericalDegeneracyError(
            f"Image of the active set {np.flatnonzero(state.idx).tolist()} under the design matrix is identically zero."
        )
    return xk


def _step_size(state: ModelState) -> float:
    """``(|g_S|^2 + |g_c|^2) / |W^1/2 (X_S g_S + Z g_c)|^2``."""

    xk = _check_active_image(state)
    g = np.where(state.idx, state.df, 0.0)
    if not np.any(g):
        # Gradient vanishes on the support (after a refit); borrow the support of the projected gradient.
        _, mask = project(state.df, state.k, J=state.J, group=state.group, weight=state.weight)
        g = np.where(mask, state.df, 0.0)
        image = state.x.matvec(g, support=mask)
    else:
        image = xk @ g[state.idx]
    gc = state.dfc
    image = image + state.z @ gc
    numer = float(np.dot(g, g) + np.dot(gc, gc))
    denom = float(np.dot(state.fisher, np.square(image)))
    if denom == 0.0 or not np.isfinite(denom):
        raise NumericalDegeneracyError(f"Step-size denominator is {denom!r} at k={state.k}.")
    step = numer / denom
    if not np.isfinite(step):
        raise NumericalDegeneracyError(f"Step size is not finite ({step!r}) at k={state.k}.")
    return step


def _take_step(state: ModelState, step: float) -> float:
    _project_into(state, state.b0 + step * state.df)
    state.c[:] = state.c0 + step * state.dfc
    state.update_linear_predictor()
    return state.objective()


def _curvature_bound(state: ModelState) -> float:
    diff = state.b - state.b0
    image = state.xb - state.xb0
    denom = float(np.dot(state.fisher, np.square(image)))
    if denom <= 0.0:
        return np.inf
    return float(np.dot(diff, diff)) / denom


def _rose(new: float, old: float, eps: float) -> bool:
    return new > old + eps * max(1.0, abs(old))


def _backtrack(state: ModelState, step: float, obj_prev: float, max_step: int, eps: float):
    obj = _take_step(state, step)
    backtracks = 0
    best_step, best_obj = step, obj
    while True:
        support_changed = not np.array_equal(state.idx, state.idx0)
        overshoot = support_changed and step >= 0.99 * _curvature_bound(state)
        if not (overshoot or not np.isfinite(obj) or _rose(obj, obj_prev, eps)):
            return step, backtracks, obj, False
        if backtracks >= max_step:
            if best_step != step:
                obj = _take_step(state, best_step)
            return best_step, backtracks, obj, True
        step /= 2.0
        backtracks += 1
        obj = _take_step(state, step)
        if np.isfinite(obj) and not (np.isfinite(best_obj) and best_obj <= obj):
            best_step, best_obj = step, obj


def _relative_change(state: ModelState) -> float:
    new = np.concatenate([state.b, state.c])
    old = np.concatenate([state.b0, state.c0])
    return float(np.max(np.abs(new - old), initial=0.0) / (np.max(np.abs(old), initial=0.0) + 1.0))


def _debias(state: ModelState, obj: float, policy: str) -> float:
    if not np.any(state.idx):
        return obj
    b_keep = state.b.copy()
    c_keep = state.c.copy()
    groups = None if state.group is None else state.group[state.idx]
    try:
        b_act, c_new = debias_support(
            state.y,
            state.active_columns(),
            state.z,
            state.b[state.idx],
            state.c,
            state.family,
            state.cv_wts,
            policy=policy,
            groups=groups,
        )
    except NumericalDegeneracyError as exc:
        logger.debug("Debias refit skipped at k=%d: %s", state.k, exc)
        return obj
    state.b[state.idx] = b_act
    state.c[:] = c_new
    state.update_linear_predictor()
    new_obj = state.objective()
    if np.isfinite(new_obj) and new_obj < obj:
        return new_obj
    state.b[:] = b_keep
    state.c[:] = c_keep
    state.update_linear_predictor()
    return obj


def fit_state(
    state: ModelState,
    *,
    debias: bool = False,
    debias_policy: str = "global",
    tol: float = 1e-4,
    max_iter: int = 100,
    max_step: int = 50,
    estimate_nuisance: bool = False,
    verbose: bool = False,
    warm_start: bool = False,
) -> IHTResult:
    """Run IHT on an allocated :class:`ModelState` at ``state.k``."""

    validate_controls(tol=tol, max_iter=max_iter, max_step=max_step, dtype=state.dtype, debias_policy=debias_policy)
    level = logging.INFO if verbose else logging.DEBUG
    eps = 16.0 * float(np.finfo(state.dtype).eps)
    start = time.perf_counter()

    _initialize(state, warm_start)
    obj = state.objective()
    if not np.isfinite(obj):
        raise NumericalDegeneracyError(f"Initial objective is not finite at k={state.k}.")

    trace: List[IterationRecord] = []
    converged = False
    exhausted = 0
    iterations = 0
    for iteration in range(1, max_iter + 1):
        iterations = iteration
        _check_active_image(state)
        if not (np.any(state.df) or np.any(state.dfc)):
            converged = True
            break
        state.snapshot()
        obj_prev = obj
        step = _step_size(state)
        step, backtracks, obj, hit = _backtrack(state, step, obj_prev, max_step, eps)
        if hit:
            exhausted += 1
            logger.warning(
                "Backtracking exhausted %d halvings at k=%d, iteration %d; keeping step %.3g.",
                max_step,
                state.k,
                iteration,
                step,
            )
        if not np.isfinite(obj):
            raise NumericalDegeneracyError(f"Objective is not finite after backtracking at k={state.k}, iteration {iteration}.")
        if debias:
            obj = _debias(state, obj, debias_policy)
        state.update_gradient()

        change = _relative_change(state)
        trace.append(
            IterationRecord(
                iteration=iteration,
                objective=float(obj),
                step=float(step),
                backtracks=int(backtracks),
                support_size=int(np.count_nonzero(state.idx)),
                change=change,
            )
        )
        logger.log(
            level,
            "iht k=%d iter=%d objective=%.6g step=%.3g backtracks=%d change=%.3g",
            state.k,
            iteration,
            obj,
            step,
            backtracks,
            change,
        )
        if change < tol:
            converged = True
            break
        if obj > obj_prev + tol:
            raise DescentFailureError(
                f"Objective increased from {obj_prev:.6g} to {obj:.6g} at k={state.k}, iteration {iteration}."
            )
        if estimate_nuisance and state.family.nuisance is not None:
            state.family = state.family.estimate_nuisance(state.y, state.mu, state.cv_wts)
            state.update_linear_predictor()
            state.update_gradient()
            obj = state.objective()

    if not converged:
        logger.log(level, "iht k=%d did not converge within %d iterations", state.k, max_iter)

    beta = state.b.copy()
    beta[np.abs(beta) < tol] = 0.0
    c = state.c.copy()
    return IHTResult(
        beta=beta,
        c=c,
        converged=converged,
        iterations=iterations,
        objective=float(obj),
        loglikelihood=state.family.loglikelihood(state.y, state.mu, state.cv_wts),
        elapsed=time.perf_counter() - start,
        k=state.k,
        J=state.J,
        support=state.idx.copy(),
        family=state.family,
        max_backtracks_hit=exhausted,
        trace=trace,
        nuisance=state.family.nuisance,
    )


def fit_iht(
    y: np.ndarray,
    x: Any,
    z: Optional[np.ndarray] = None,
    *,
    k: int,
    J: int = 1,
    family: Union[str, Family] = "normal",
    link: Optional[str] = None,
    group: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
    cv_wts: Optional[np.ndarray] = None,
    debias: bool = False,
    debias_policy: str = "global",
    tol: float = 1e-4,
    max_iter: int = 100,
    max_step: int = 50,
    dtype: Union[str, np.dtype] = np.float64,
    estimate_nuisance: bool = False,
    verbose: bool = False,
) -> IHTResult:
    """Fit a ``k``-sparse GLM of ``y`` on ``x`` with unpenalised covariates ``z``.

    Parameters
    ----------
    y, x, z:
        Response (length n), design (n x p array or design object) and
        covariates (n x m, defaults to an intercept column).
    k, J:
        Sparsity level; with ``group`` given, at most ``J`` groups with at
        most ``k`` predictors each stay active.
    cv_wts:
        Per-sample weights; zero entries drop samples without resizing.
    debias:
        Refit the active coefficients without penalty after every step.
    tol, max_iter, max_step:
        Convergence tolerance, iteration cap and backtracking cap.

    Returns
    -------
    IHTResult
        ``converged=False`` signals the iteration cap, never an exception.
    """

    validate_size(k, J)
    validate_controls(tol=tol, max_iter=max_iter, max_step=max_step, dtype=dtype, debias_policy=debias_policy)
    fam = get_family(family, link)
    state = initialize_state(
        y,
        x,
        z,
        k=k,
        J=J,
        family=fam,
        group=group,
        weight=weight,
        cv_wts=cv_wts,
        dtype=dtype,
    )
    return fit_state(
        state,
        debias=debias,
        debias_policy=debias_policy,
        tol=tol,
        max_iter=max_iter,
        max_step=max_step,
        estimate_nuisance=estimate_nuisance,
        verbose=verbose,
    )


def predict_mean(result: IHTResult, x: Any, z: Optional[np.ndarray] = None) -> np.ndarray:
    """Mean response implied by ``result`` on new samples."""
    design = as_design(x)
    n = design.shape[0]
    if z is None:
        z = np.ones((n, 1))
    z = np.asarray(z, dtype=float)
    if z.ndim == 1:
        z = z.reshape(-1, 1)
    if z.shape[1] != result.c.shape[0]:
        raise ConfigurationError(f"Covariates have {z.shape[1]} columns, the fit used {result.c.shape[0]}.")
    eta = design.matvec(result.beta, support=result.beta != 0) + z @ result.c
    return result.family.mean(eta)


def predict_loss(
    result: IHTResult,
    x: Any,
    y: np.ndarray,
    z: Optional[np.ndarray] = None,
    weights: Optional[np.ndarray] = None,
) -> float:
    """Deviance of ``result`` on ``(x, y, z)``; ``weights`` selects samples."""
    mu = predict_mean(result, x, z)
    return result.family.deviance(np.asarray(y, dtype=float), mu, weights)
