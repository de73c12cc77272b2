"""Fold assignment helpers for q-fold cross-validation.

A fold assignment is an integer vector of length ``n`` with values in
``1..q`` (fold ids are 1-based, matching how folds are reported).
"""
from __future__ import annotations

import hashlib
from typing import Optional

import numpy as np
from sklearn.model_selection import KFold, StratifiedKFold

from ihtcv.models.errors import ConfigurationError

__all__ = [
    "random_fold_assignment",
    "kfold_assignment",
    "validate_folds",
    "fold_sizes",
    "fold_masks",
    "fold_hash",
]


def _check_q(n: int, q: int) -> None:
    if n <= 0:
        raise ConfigurationError("n must be positive.")
    if int(q) != q or q < 2:
        raise ConfigurationError(f"Number of folds q must be an integer >= 2, got {q!r}.")


def random_fold_assignment(n: int, q: int, seed: Optional[int] = None) -> np.ndarray:
    """Assign each sample to a fold uniformly at random.

    Fold sizes are not forced to be equal; a fold may even come out empty for
    tiny ``n``, which later contributes with zero weight.
    """

    _check_q(n, q)
    rng = np.random.default_rng(seed)
    return rng.integers(1, q + 1, size=n).astype(int)


def kfold_assignment(
    n: int,
    q: int,
    *,
    y: Optional[np.ndarray] = None,
    stratify: bool = False,
    shuffle: bool = True,
    seed: Optional[int] = None,
) -> np.ndarray:
    """Balanced fold ids from sklearn ``KFold`` / ``StratifiedKFold``."""

    _check_q(n, q)
    if q > n:
        raise ConfigurationError("q cannot exceed the number of samples.")

    stratify_flag = bool(stratify)
    y_array: Optional[np.ndarray] = None
    if stratify_flag:
        if y is None:
            raise ConfigurationError("Stratified folds require the response 'y'.")
        y_array = np.asarray(y, dtype=int)
        unique, counts = np.unique(y_array, return_counts=True)
        if unique.size < 2 or np.any(counts < q):
            stratify_flag = False

    random_state = seed if shuffle else None
    if stratify_flag and y_array is not None:
        splitter = StratifiedKFold(n_splits=q, shuffle=shuffle, random_state=random_state)
        iterator = splitter.split(np.zeros(n, dtype=int), y_array)
    else:
        splitter = KFold(n_splits=q, shuffle=shuffle, random_state=random_state)
        iterator = splitter.split(np.zeros(n, dtype=int))

    folds = np.zeros(n, dtype=int)
    for fold_idx, (_, test_idx) in enumerate(iterator, start=1):
        folds[np.asarray(test_idx, dtype=int)] = fold_idx
    return folds


def validate_folds(folds: np.ndarray, n: int, q: int) -> np.ndarray:
    """Check an externally supplied assignment and return it as an int array."""

    _check_q(n, q)
    arr = np.asarray(folds)
    if arr.ndim != 1 or arr.shape[0] != n:
        raise ConfigurationError(f"Fold assignment must have length {n}, got shape {arr.shape}.")
    if arr.size and not np.all(np.equal(np.mod(arr, 1), 0)):
        raise ConfigurationError("Fold ids must be integers.")
    arr = arr.astype(int)
    if arr.size and (arr.min() < 1 or arr.max() > q):
        raise ConfigurationError(f"Fold ids must lie in [1, {q}], got range [{arr.min()}, {arr.max()}].")
    return arr


def fold_sizes(folds: np.ndarray, q: int) -> np.ndarray:
    """Number of samples in each fold ``1..q`` (index 0 is fold 1)."""
    return np.bincount(np.asarray(folds, dtype=int), minlength=q + 1)[1 : q + 1]


def fold_masks(folds: np.ndarray, fold: int) -> tuple[np.ndarray, np.ndarray]:
    """Return ``(train, test)`` boolean masks for one fold id."""
    test = np.asarray(folds) == fold
    return ~test, test


def fold_hash(folds: np.ndarray) -> str:
    """Stable hash identifying a fold assignment."""
    return hashlib.sha1(np.asarray(folds, dtype=np.int64).tobytes()).hexdigest()
