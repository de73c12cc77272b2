"""Hard-thresholding projections onto sparse and group-sparse constraint sets."""
from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from ihtcv.models.errors import ConfigurationError

__all__ = ["project_k", "project_group_sparse", "project", "selection_scores"]


def selection_scores(v: np.ndarray, weight: Optional[np.ndarray] = None) -> np.ndarray:
    """Magnitudes used to rank coefficients, optionally scaled by prior weights."""
    score = np.abs(np.asarray(v, dtype=float))
    if weight is not None:
        w = np.asarray(weight, dtype=float)
        if w.shape != score.shape:
            raise ConfigurationError(f"Weight vector has shape {w.shape}, expected {score.shape}.")
        score = score * w
    return score


def _top_indices(score: np.ndarray, k: int) -> np.ndarray:
    # Stable ordering: equal scores keep their original (lower index first) order.
    order = np.argsort(-score, kind="stable")
    return order[: min(max(int(k), 0), score.size)]


def project_k(
    v: np.ndarray,
    k: int,
    weight: Optional[np.ndarray] = None,
    out_mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Keep the ``k`` largest entries of ``v`` (by ``|v|`` or ``|v| * weight``).

    Returns a new vector and a boolean mask with exactly ``min(k, p)`` true
    entries. ``v`` itself is not modified; ``out_mask`` is overwritten when given.
    """

    v = np.asarray(v)
    if v.ndim != 1:
        raise ConfigurationError(f"Projection expects a 1D vector, got shape {v.shape}.")
    keep = _top_indices(selection_scores(v, weight), k)
    mask = np.zeros(v.size, dtype=bool)
    mask[keep] = True
    projected = np.where(mask, v, 0).astype(v.dtype, copy=False)
    if out_mask is not None:
        out_mask[:] = mask
        mask = out_mask
    return projected, mask


def project_group_sparse(
    v: np.ndarray,
    group: np.ndarray,
    J: int,
    k: int,
    weight: Optional[np.ndarray] = None,
    out_mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Keep at most ``J`` groups and at most ``k`` entries inside each kept group.

    Within every group the ``k`` largest (weighted) entries are retained; groups
    are then ranked by the squared norm of those retained entries and only the
    best ``J`` survive. Entries of discarded groups are zeroed even when they are
    individually larger than entries that survive.
    """

    v = np.asarray(v)
    group = np.asarray(group)
    if group.shape != v.shape:
        raise ConfigurationError(f"Group labels have shape {group.shape}, expected {v.shape}.")
    score = selection_scores(v, weight)
    labels = np.unique(group)
    members = []
    strengths = np.empty(labels.size, dtype=float)
    for i, label in enumerate(labels):
        cols = np.flatnonzero(group == label)
        top = cols[_top_indices(score[cols], k)]
        members.append(top)
        strengths[i] = float(np.sum(np.square(score[top])))
    kept = _top_indices(strengths, J)
    mask = np.zeros(v.size, dtype=bool)
    for i in kept:
        mask[members[i]] = True
    projected = np.where(mask, v, 0).astype(v.dtype, copy=False)
    if out_mask is not None:
        out_mask[:] = mask
        mask = out_mask
    return projected, mask


def project(
    v: np.ndarray,
    k: int,
    *,
    J: int = 1,
    group: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
    out_mask: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """Dispatch to the plain or group-sparse projection."""
    if group is None:
        return project_k(v, k, weight=weight, out_mask=out_mask)
    return project_group_sparse(v, group, J, k, weight=weight, out_mask=out_mask)
