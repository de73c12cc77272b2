"""q-fold cross-validation over a path of sparsity levels.

Two mutually exclusive ways of distributing the work:

* :func:`cv_iht` (parallel over the path) keeps the data in place. For every
  fold each model size is one work unit that trains with the held-out samples
  weighted by zero and scores the held-out samples only.
* :func:`cv_iht_distribute_fold` (parallel over folds) materialises train and
  test rows of each fold through an :class:`EphemeralStore`; one work unit
  walks the whole path on its fold.

Both report the out-of-sample deviance of every (model size, fold) pair,
aggregate folds with :func:`meanloss` and pick the size with
:func:`select_model_size`.
"""
from __future__ import annotations

import logging
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from data.splits import fold_masks, fold_sizes, random_fold_assignment, validate_folds
from ihtcv.experiments.executors import make_executor, run_units
from ihtcv.experiments.store import EphemeralStore, FoldView
from ihtcv.models.design import DesignMatrix, as_design
from ihtcv.models.errors import ConfigurationError, WorkUnitError
from ihtcv.models.families import Family, get_family
from ihtcv.models.iht import IHTResult, fit_iht, fit_state, predict_loss, validate_controls
from ihtcv.models.state import as_response, initialize_state, validate_size
from ihtcv.utils.logging_utils import Timer, progress

__all__ = [
    "FitOptions",
    "CVResult",
    "cv_iht",
    "cv_iht_distribute_fold",
    "iht_run_many_models",
    "meanloss",
    "select_model_size",
    "validate_path",
]

logger = logging.getLogger(__name__)

ExecutorLike = Union[str, Any]


@dataclass(frozen=True)
class FitOptions:
    """Per-fit settings shipped to every work unit."""

    family: Family
    J: int = 1
    debias: bool = False
    debias_policy: str = "global"
    tol: float = 1e-4
    max_iter: int = 100
    max_step: int = 50
    dtype: str = "float64"
    estimate_nuisance: bool = False

    def fit_kwargs(self) -> Dict[str, Any]:
        return {
            "debias": self.debias,
            "debias_policy": self.debias_policy,
            "tol": self.tol,
            "max_iter": self.max_iter,
            "max_step": self.max_step,
            "estimate_nuisance": self.estimate_nuisance,
        }


@dataclass
class CVResult:
    """Cross-validated error per model size and the selected size."""

    path: np.ndarray
    errors: np.ndarray
    fold_errors: np.ndarray
    best_k: int
    folds: np.ndarray
    fold_sizes: np.ndarray
    axis: str
    refit: Optional[IHTResult] = None
    elapsed: float = 0.0

    @property
    def q(self) -> int:
        return int(self.fold_errors.shape[1])

    def to_frame(self) -> pd.DataFrame:
        frame = pd.DataFrame(
            self.fold_errors,
            columns=[f"fold_{j + 1}" for j in range(self.q)],
        )
        frame.insert(0, "k", self.path.astype(int))
        frame.insert(1, "error", self.errors)
        return frame

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "axis": self.axis,
            "path": [int(k) for k in self.path],
            "errors": [float(e) for e in self.errors],
            "best_k": int(self.best_k),
            "q": self.q,
            "fold_sizes": [int(s) for s in self.fold_sizes],
            "elapsed": float(self.elapsed),
        }
        if self.refit is not None:
            payload["refit"] = self.refit.to_dict()
        return payload


# ------------------------------
# Aggregation and selection
# ------------------------------
def meanloss(fitloss: np.ndarray, q: int, folds: np.ndarray) -> np.ndarray:
    """Sum the per-fold errors, weighting fold ``j`` by ``n_j / n``."""
    fitloss = np.asarray(fitloss, dtype=float)
    if fitloss.ndim != 2 or fitloss.shape[1] != q:
        raise ConfigurationError(f"Error matrix must have shape (len(path), {q}), got {fitloss.shape}.")
    folds = np.asarray(folds, dtype=int)
    wfold = fold_sizes(folds, q) / float(folds.shape[0])
    return fitloss @ wfold


def select_model_size(path: Sequence[int], errors: np.ndarray) -> int:
    """Model size with the smallest error; ties go to the smallest size."""
    path_arr = np.asarray(path, dtype=int)
    errors = np.asarray(errors, dtype=float)
    if path_arr.shape != errors.shape or path_arr.size == 0:
        raise ConfigurationError("path and errors must be non-empty and of equal length.")
    if not np.any(np.isfinite(errors)):
        raise ConfigurationError("No finite cross-validation error to select from.")
    best = np.nanmin(np.where(np.isfinite(errors), errors, np.nan))
    return int(path_arr[errors == best].min())


def validate_path(path: Iterable[int]) -> np.ndarray:
    arr = np.asarray(list(path))
    if arr.size == 0:
        raise ConfigurationError("path must contain at least one model size.")
    if arr.ndim != 1 or not np.all(np.equal(np.mod(arr, 1), 0)) or np.any(arr < 1):
        raise ConfigurationError(f"path must hold positive integers, got {arr.tolist()}.")
    arr = arr.astype(int)
    if np.unique(arr).size != arr.size:
        raise ConfigurationError(f"path contains duplicate model sizes: {arr.tolist()}.")
    return arr


def _resolve_folds(n: int, q: int, folds: Optional[np.ndarray], seed: Optional[int]) -> np.ndarray:
    if folds is None:
        return random_fold_assignment(n, q, seed)
    return validate_folds(folds, n, q)


def _prepare(
    y: np.ndarray,
    x: Any,
    z: Optional[np.ndarray],
    *,
    path: Iterable[int],
    q: Optional[int],
    folds: Optional[np.ndarray],
    fold_seed: Optional[int],
    family: Union[str, Family],
    link: Optional[str],
    J: int,
    group: Optional[np.ndarray],
    weight: Optional[np.ndarray],
    debias: bool,
    debias_policy: str,
    tol: float,
    max_iter: int,
    max_step: int,
    dtype: Union[str, np.dtype],
    estimate_nuisance: bool,
) -> Tuple[np.ndarray, DesignMatrix, np.ndarray, np.ndarray, Optional[np.ndarray], FitOptions]:
    path_arr = validate_path(path)
    validate_size(int(path_arr.min()), J)
    validate_controls(tol=tol, max_iter=max_iter, max_step=max_step, dtype=dtype, debias_policy=debias_policy)
    dtype = np.dtype(dtype)
    design = as_design(x, dtype=dtype)
    n = design.shape[0]
    y = as_response(y, n, dtype)
    z = np.ones((n, 1), dtype=dtype) if z is None else np.asarray(z, dtype=dtype)
    if z.ndim == 1:
        z = z.reshape(-1, 1)
    if z.shape[0] != n:
        raise ConfigurationError(f"Covariates have {z.shape[0]} rows but the design has {n}.")
    fold_arr = None if q is None else _resolve_folds(n, q, folds, fold_seed)
    fam = get_family(family, link)
    fam.validate_y(y)
    options = FitOptions(
        family=fam,
        J=int(J),
        debias=bool(debias),
        debias_policy=str(debias_policy).lower(),
        tol=float(tol),
        max_iter=int(max_iter),
        max_step=int(max_step),
        dtype=dtype.name,
        estimate_nuisance=bool(estimate_nuisance),
    )
    return y, design, z, path_arr, fold_arr, options


def _log_path_results(path: np.ndarray, errors: np.ndarray, best_k: int, axis: str) -> None:
    logger.info("Cross validation (%s axis): out-of-sample error per model size", axis)
    for k, err in zip(path, errors):
        marker = "  <- best" if int(k) == best_k else ""
        logger.info("  k=%-4d error=%.6g%s", int(k), float(err), marker)


def _executor_scope(stack: ExitStack, executor: ExecutorLike, n_jobs: Optional[int]):
    if isinstance(executor, str):
        return stack.enter_context(make_executor(executor, n_jobs))
    return executor


def _refit_all(
    y: np.ndarray,
    design: DesignMatrix,
    z: np.ndarray,
    k: int,
    options: FitOptions,
    group: Optional[np.ndarray],
    weight: Optional[np.ndarray],
) -> IHTResult:
    logger.info("Refitting k=%d on all %d samples.", k, y.shape[0])
    return fit_iht(
        y,
        design,
        z,
        k=k,
        J=options.J,
        family=options.family,
        group=group,
        weight=weight,
        dtype=options.dtype,
        **options.fit_kwargs(),
    )


# ------------------------------
# Axis A: parallel over the path
# ------------------------------
@dataclass
class _PathTask:
    fold: int
    k: int
    y: np.ndarray
    x: DesignMatrix
    z: np.ndarray
    train_wts: np.ndarray
    test_wts: np.ndarray
    group: Optional[np.ndarray]
    weight: Optional[np.ndarray]
    options: FitOptions


def _path_unit(task: _PathTask) -> float:
    try:
        result = fit_iht(
            task.y,
            task.x,
            task.z,
            k=task.k,
            J=task.options.J,
            family=task.options.family,
            group=task.group,
            weight=task.weight,
            cv_wts=task.train_wts,
            dtype=task.options.dtype,
            **task.options.fit_kwargs(),
        )
        return predict_loss(result, task.x, task.y, task.z, weights=task.test_wts)
    except Exception as exc:
        raise WorkUnitError(
            f"Work unit failed for fold {task.fold}, k={task.k}: {type(exc).__name__}: {exc}",
            fold=task.fold,
            k=task.k,
        ) from exc


def cv_iht(
    y: np.ndarray,
    x: Any,
    z: Optional[np.ndarray] = None,
    *,
    path: Iterable[int] = range(1, 21),
    q: int = 5,
    folds: Optional[np.ndarray] = None,
    fold_seed: Optional[int] = None,
    family: Union[str, Family] = "normal",
    link: Optional[str] = None,
    J: int = 1,
    group: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
    debias: bool = False,
    debias_policy: str = "global",
    tol: float = 1e-4,
    max_iter: int = 100,
    max_step: int = 50,
    dtype: Union[str, np.dtype] = np.float64,
    estimate_nuisance: bool = False,
    executor: ExecutorLike = "serial",
    n_jobs: Optional[int] = None,
    refit: bool = False,
    verbose: bool = False,
) -> CVResult:
    """Cross-validate the sparsity level, distributing the model sizes of each fold.

    Held-out samples are masked through per-sample weights, so no data is
    copied. Returns a :class:`CVResult`; with ``refit=True`` the selected
    size is refitted on every sample.
    """

    y, design, z, path_arr, fold_arr, options = _prepare(
        y, x, z, path=path, q=q, folds=folds, fold_seed=fold_seed, family=family, link=link, J=J,
        group=group, weight=weight, debias=debias, debias_policy=debias_policy, tol=tol,
        max_iter=max_iter, max_step=max_step, dtype=dtype, estimate_nuisance=estimate_nuisance,
    )
    dt = np.dtype(options.dtype)
    mses = np.zeros((path_arr.size, q), dtype=float)
    with ExitStack() as stack, Timer("cv_iht", logger if verbose else None) as timer:
        pool = _executor_scope(stack, executor, n_jobs)
        for fold in progress(range(1, q + 1), total=q, desc="cv folds", enabled=verbose):
            train, test = fold_masks(fold_arr, fold)
            if not test.any():
                logger.debug("Fold %d is empty; it contributes with zero weight.", fold)
                continue
            units = [
                (
                    i,
                    _PathTask(
                        fold=fold,
                        k=int(k),
                        y=y,
                        x=design,
                        z=z,
                        train_wts=train.astype(dt),
                        test_wts=test.astype(dt),
                        group=group,
                        weight=weight,
                        options=options,
                    ),
                )
                for i, k in enumerate(path_arr)
            ]
            results = run_units(_path_unit, units, pool)
            for i, err in results.items():
                mses[i, fold - 1] = err
            logger.debug("Fold %d/%d done.", fold, q)

    return _finish(
        path_arr, mses, fold_arr, q, "path", timer.elapsed, refit, y, design, z, options, group, weight
    )


# ------------------------------
# Axis B: parallel over folds
# ------------------------------
@dataclass
class _FoldTask:
    fold: int
    path: np.ndarray
    train: FoldView
    test: FoldView
    group: Optional[np.ndarray]
    weight: Optional[np.ndarray]
    options: FitOptions


def _fold_unit(task: _FoldTask) -> np.ndarray:
    errors = np.empty(task.path.size, dtype=float)
    options = task.options
    state = None
    for i, k in enumerate(task.path):
        try:
            if state is None:
                state = initialize_state(
                    task.train.y,
                    task.train.x,
                    task.train.z,
                    k=int(k),
                    J=options.J,
                    family=options.family,
                    group=task.group,
                    weight=task.weight,
                    dtype=options.dtype,
                )
            else:
                state.family = options.family
                state.reset_for_size(int(k))
            result = fit_state(state, **options.fit_kwargs())
            errors[i] = predict_loss(result, task.test.x, task.test.y, task.test.z)
        except Exception as exc:
            raise WorkUnitError(
                f"Work unit failed for fold {task.fold}, k={int(k)}: {type(exc).__name__}: {exc}",
                fold=task.fold,
                k=int(k),
            ) from exc
    return errors


def cv_iht_distribute_fold(
    y: np.ndarray,
    x: Any,
    z: Optional[np.ndarray] = None,
    *,
    path: Iterable[int] = range(1, 21),
    q: int = 5,
    folds: Optional[np.ndarray] = None,
    fold_seed: Optional[int] = None,
    family: Union[str, Family] = "normal",
    link: Optional[str] = None,
    J: int = 1,
    group: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
    debias: bool = False,
    debias_policy: str = "global",
    tol: float = 1e-4,
    max_iter: int = 100,
    max_step: int = 50,
    dtype: Union[str, np.dtype] = np.float64,
    estimate_nuisance: bool = False,
    executor: ExecutorLike = "serial",
    n_jobs: Optional[int] = None,
    destin: Optional[str] = None,
    refit: bool = False,
    verbose: bool = False,
) -> CVResult:
    """Cross-validate the sparsity level with one work unit per fold.

    Train and test rows of each fold are written under ``destin`` (a fresh
    temporary directory when omitted) and removed when the run ends, on
    success and on failure alike.
    """

    y, design, z, path_arr, fold_arr, options = _prepare(
        y, x, z, path=path, q=q, folds=folds, fold_seed=fold_seed, family=family, link=link, J=J,
        group=group, weight=weight, debias=debias, debias_policy=debias_policy, tol=tol,
        max_iter=max_iter, max_step=max_step, dtype=dtype, estimate_nuisance=estimate_nuisance,
    )
    mses = np.zeros((path_arr.size, q), dtype=float)
    with ExitStack() as stack, Timer("cv_iht_distribute_fold", logger if verbose else None) as timer:
        pool = _executor_scope(stack, executor, n_jobs)
        units: List[Tuple[int, _FoldTask]] = []
        for fold in range(1, q + 1):
            train, test = fold_masks(fold_arr, fold)
            if not test.any():
                logger.debug("Fold %d is empty; it contributes with zero weight.", fold)
                continue
            store = stack.enter_context(EphemeralStore(destin, prefix=f"ihtcv-fold{fold}"))
            units.append(
                (
                    fold,
                    _FoldTask(
                        fold=fold,
                        path=path_arr,
                        train=store.fold_view(train, design, y, z, tag="train"),
                        test=store.fold_view(test, design, y, z, tag="test"),
                        group=group,
                        weight=weight,
                        options=options,
                    ),
                )
            )
        results = run_units(_fold_unit, units, pool)
        for fold, errs in results.items():
            mses[:, fold - 1] = errs

    return _finish(
        path_arr, mses, fold_arr, q, "fold", timer.elapsed, refit, y, design, z, options, group, weight
    )


def _finish(
    path_arr: np.ndarray,
    mses: np.ndarray,
    fold_arr: np.ndarray,
    q: int,
    axis: str,
    elapsed: float,
    refit: bool,
    y: np.ndarray,
    design: DesignMatrix,
    z: np.ndarray,
    options: FitOptions,
    group: Optional[np.ndarray],
    weight: Optional[np.ndarray],
) -> CVResult:
    errors = meanloss(mses, q, fold_arr)
    best_k = select_model_size(path_arr, errors)
    _log_path_results(path_arr, errors, best_k, axis)
    refit_result = _refit_all(y, design, z, best_k, options, group, weight) if refit else None
    return CVResult(
        path=path_arr,
        errors=errors,
        fold_errors=mses,
        best_k=best_k,
        folds=fold_arr,
        fold_sizes=fold_sizes(fold_arr, q),
        axis=axis,
        refit=refit_result,
        elapsed=elapsed,
    )


# ------------------------------
# Whole-data path
# ------------------------------
@dataclass
class _ModelTask:
    k: int
    y: np.ndarray
    x: DesignMatrix
    z: np.ndarray
    group: Optional[np.ndarray]
    weight: Optional[np.ndarray]
    options: FitOptions


def _model_unit(task: _ModelTask) -> IHTResult:
    try:
        return fit_iht(
            task.y,
            task.x,
            task.z,
            k=task.k,
            J=task.options.J,
            family=task.options.family,
            group=task.group,
            weight=task.weight,
            dtype=task.options.dtype,
            **task.options.fit_kwargs(),
        )
    except Exception as exc:
        raise WorkUnitError(f"Fit failed for k={task.k}: {type(exc).__name__}: {exc}", k=task.k) from exc


def iht_run_many_models(
    y: np.ndarray,
    x: Any,
    z: Optional[np.ndarray] = None,
    *,
    path: Iterable[int] = range(1, 21),
    family: Union[str, Family] = "normal",
    link: Optional[str] = None,
    J: int = 1,
    group: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
    debias: bool = False,
    debias_policy: str = "global",
    tol: float = 1e-4,
    max_iter: int = 100,
    max_step: int = 50,
    dtype: Union[str, np.dtype] = np.float64,
    estimate_nuisance: bool = False,
    executor: ExecutorLike = "serial",
    n_jobs: Optional[int] = None,
    return_results: bool = False,
):
    """Fit every size in ``path`` on all samples and return the log-likelihoods.

    No validation happens here; with ``return_results=True`` the fitted
    :class:`IHTResult` objects are returned alongside.
    """

    y, design, z, path_arr, _, options = _prepare(
        y, x, z, path=path, q=None, folds=None, fold_seed=None, family=family, link=link, J=J,
        group=group, weight=weight, debias=debias, debias_policy=debias_policy, tol=tol,
        max_iter=max_iter, max_step=max_step, dtype=dtype, estimate_nuisance=estimate_nuisance,
    )
    units = [
        (i, _ModelTask(k=int(k), y=y, x=design, z=z, group=group, weight=weight, options=options))
        for i, k in enumerate(path_arr)
    ]
    with ExitStack() as stack:
        pool = _executor_scope(stack, executor, n_jobs)
        results = run_units(_model_unit, units, pool)
    ordered = [results[i] for i in range(path_arr.size)]
    loglikelihoods = np.array([r.loglikelihood for r in ordered], dtype=float)
    for k, ll in zip(path_arr, loglikelihoods):
        logger.info("  k=%-4d loglikelihood=%.6g", int(k), float(ll))
    if return_results:
        return loglikelihoods, ordered
    return loglikelihoods
