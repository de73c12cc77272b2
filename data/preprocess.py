"""Column moments and scaling helpers for genotype and dense designs."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

__all__ = [
    "ColumnMoments",
    "genotype_moments",
    "standardize_X",
    "maf_weights",
]

_EPS = 1e-8


@dataclass(frozen=True)
class ColumnMoments:
    """Per-column mean / scale used by implicitly standardised designs."""

    mean: np.ndarray
    scale: np.ndarray
    missing_rate: np.ndarray

    @property
    def allele_frequency(self) -> np.ndarray:
        """Frequency of the counted allele under 0/1/2 additive coding."""
        return np.clip(self.mean / 2.0, 0.0, 1.0)


def genotype_moments(
    G: np.ndarray,
    *,
    missing_code: int = -1,
    chunk_size: int = 4096,
    eps: float = _EPS,
) -> ColumnMoments:
    """Mean and standard deviation of every column, ignoring missing calls.

    Columns are visited in chunks so that memory-mapped genotype matrices are
    never decoded to floating point as a whole.
    """

    n, p = G.shape
    mean = np.zeros(p, dtype=float)
    scale = np.ones(p, dtype=float)
    missing = np.zeros(p, dtype=float)
    for start in range(0, p, max(int(chunk_size), 1)):
        stop = min(start + chunk_size, p)
        block = np.asarray(G[:, start:stop])
        observed = block != missing_code
        counts = observed.sum(axis=0)
        values = np.where(observed, block, 0).astype(float)
        safe = np.maximum(counts, 1)
        mu = values.sum(axis=0) / safe
        centered = np.where(observed, values - mu, 0.0)
        var = np.square(centered).sum(axis=0) / safe
        mean[start:stop] = mu
        scale[start:stop] = np.maximum(np.sqrt(var), eps)
        missing[start:stop] = 1.0 - counts / max(n, 1)
    return ColumnMoments(mean=mean, scale=scale, missing_rate=missing)


def standardize_X(
    X: np.ndarray,
    method: str = "unit_variance",
    eps: float = _EPS,
) -> tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """Standardize feature matrix according to the requested method."""

    arr = np.asarray(X, dtype=float)
    if method is None or str(method).lower() == "none":
        return arr.copy(), None, None

    method_l = str(method).lower()
    mean = arr.mean(axis=0, keepdims=True) if arr.size else np.zeros((1, arr.shape[1]))
    centered = arr - mean

    if method_l == "unit_variance":
        scale = np.std(centered, axis=0, keepdims=True)
        scale = np.maximum(scale, eps)
    elif method_l == "unit_l2":
        scale = np.linalg.norm(centered, axis=0, keepdims=True)
        scale = np.maximum(scale, eps)
    else:
        raise ValueError(f"Unknown standardization method '{method}'.")

    standardized = centered / scale
    return standardized, mean.squeeze(0), scale.squeeze(0)


def maf_weights(moments: ColumnMoments, *, floor: float = 1e-3) -> np.ndarray:
    """Prior weights favouring rare variants: ``1 / sqrt(2 f (1 - f))``.

    Weights are normalised to mean one so that the weighted projection keeps
    the same overall scale as the unweighted one.
    """

    f = np.clip(moments.allele_frequency, floor, 1.0 - floor)
    w = 1.0 / np.sqrt(2.0 * f * (1.0 - f))
    return w / w.mean()
