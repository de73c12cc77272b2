"""Plotting utilities for cross-validation runs."""
from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
import matplotlib.pyplot as plt


def _get_fig_ax(ax: Optional[plt.Axes]) -> Tuple[plt.Figure, plt.Axes]:
    """Return a figure/axes pair, creating one if needed."""
    if ax is None:
        fig, new_ax = plt.subplots()
        return fig, new_ax
    return ax.figure, ax


def plot_cv_curve(
    path: Sequence[int],
    errors: Sequence[float],
    *,
    fold_errors: Optional[np.ndarray] = None,
    best_k: Optional[int] = None,
    ax: Optional[plt.Axes] = None,
    title: Optional[str] = None,
) -> plt.Axes:
    """Aggregated out-of-sample error against model size, with optional per-fold traces."""
    fig, ax = _get_fig_ax(ax)
    path = np.asarray(path, dtype=int)
    errors = np.asarray(errors, dtype=float)
    if fold_errors is not None:
        fold_errors = np.asarray(fold_errors, dtype=float)
        for j in range(fold_errors.shape[1]):
            ax.plot(path, fold_errors[:, j], color="grey", alpha=0.35, linewidth=1)
    ax.plot(path, errors, marker="o", color="tab:blue", label="weighted mean")
    if best_k is not None:
        ax.axvline(best_k, color="tab:red", linestyle="--", linewidth=1, label=f"best k = {best_k}")
    ax.set_xlabel("Model size k")
    ax.set_ylabel("Out-of-sample deviance")
    ax.set_title(title or "Cross-validation error")
    ax.legend(loc="best")
    fig.tight_layout()
    return ax


def coefficient_bar(
    coefficients: Sequence[float],
    *,
    truth: Optional[Sequence[float]] = None,
    ax: Optional[plt.Axes] = None,
    title: Optional[str] = None,
) -> plt.Axes:
    """Bar plot of the non-zero coefficients, with true effects overlaid when known."""
    fig, ax = _get_fig_ax(ax)
    coef = np.asarray(coefficients, dtype=float).ravel()
    shown = np.flatnonzero(coef)
    if truth is not None:
        truth_arr = np.asarray(truth, dtype=float).ravel()
        shown = np.union1d(shown, np.flatnonzero(truth_arr))
    pos = np.arange(shown.size)
    ax.bar(pos, coef[shown], label="estimate")
    if truth is not None:
        ax.scatter(pos, truth_arr[shown], color="black", marker="x", zorder=3, label="truth")
        ax.legend(loc="best")
    ax.set_xticks(pos)
    ax.set_xticklabels([str(i) for i in shown], rotation=90)
    ax.set_xlabel("Predictor index")
    ax.set_ylabel("Coefficient")
    ax.set_title(title or "Selected coefficients")
    fig.tight_layout()
    return ax
