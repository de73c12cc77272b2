"""Support-recovery metrics against a known set of causal predictors."""
from __future__ import annotations

from typing import Dict

import numpy as np
from sklearn.metrics import f1_score, precision_score, recall_score


def _as_indicator(support: np.ndarray, p: int) -> np.ndarray:
    arr = np.asarray(support).reshape(-1)
    if arr.dtype == bool and arr.size == p:
        return arr.astype(int)
    if arr.size == p and np.issubdtype(arr.dtype, np.floating):
        return (arr != 0).astype(int)
    indicator = np.zeros(p, dtype=int)
    indicator[arr.astype(int)] = 1
    return indicator


def true_positive_rate(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """Compute TPR (recall) for binary indicators using sklearn."""
    y_t = np.asarray(y_true).reshape(-1)
    y_p = np.asarray(y_pred).reshape(-1)
    return float(recall_score(y_t, y_p, zero_division=0))


def false_discovery_rate(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """Share of selected predictors that are not causal (0 when nothing is selected)."""
    y_t = np.asarray(y_true).reshape(-1)
    y_p = np.asarray(y_pred).reshape(-1)
    if not np.any(y_p):
        return 0.0
    return 1.0 - float(precision_score(y_t, y_p, zero_division=0))


def support_recovery(beta_true: np.ndarray, beta_hat: np.ndarray) -> Dict[str, float]:
    """TPR, FDR, F1 and counts comparing the non-zero patterns of two coefficient vectors."""
    beta_true = np.asarray(beta_true, dtype=float).reshape(-1)
    p = beta_true.size
    truth = (beta_true != 0).astype(int)
    selected = _as_indicator(beta_hat, p)
    return {
        "tpr": true_positive_rate(truth, selected),
        "fdr": false_discovery_rate(truth, selected),
        "f1": float(f1_score(truth, selected, zero_division=0)),
        "n_true": int(truth.sum()),
        "n_selected": int(selected.sum()),
        "n_overlap": int(np.sum(truth & selected)),
    }
