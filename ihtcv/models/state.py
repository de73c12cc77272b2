"""Working buffers of one IHT fit and the reset contract between model sizes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union

import numpy as np

from ihtcv.models.design import DesignMatrix, as_design
from ihtcv.models.errors import ConfigurationError
from ihtcv.models.families import Family, get_family
from ihtcv.models.projection import project

__all__ = ["ModelState", "as_response", "initialize_state", "validate_size"]


def validate_size(k: int, J: int = 1) -> None:
    if int(k) != k or k < 1:
        raise ConfigurationError(f"Sparsity level k must be a positive integer, got {k!r}.")
    if int(J) != J or J < 1:
        raise ConfigurationError(f"Group budget J must be a positive integer, got {J!r}.")


def as_response(y: Any, n: int, dtype: np.dtype) -> np.ndarray:
    """Single-trait response of length ``n``; an (n, 1) column is flattened."""
    arr = np.asarray(y, dtype=dtype)
    if arr.ndim == 2 and arr.shape[1] == 1:
        arr = arr[:, 0]
    if arr.ndim != 1:
        raise ConfigurationError(f"Response must be a vector, got shape {arr.shape}.")
    if arr.shape[0] != n:
        raise ConfigurationError(f"Response has length {arr.shape[0]} but the design has {n} rows.")
    return arr


@dataclass
class ModelState:
    """Everything an IHT fit mutates, allocated once per dataset.

    ``reset_for_size`` re-arms the buffers for a new sparsity level. It always
    clears the previous iterate (``b0``, ``c0``, ``xb0``, ``zc0``), the
    gradients and ``idx0``. Data references, ``cv_wts``, ``group``, ``weight``
    and the cached active columns ``xk`` with their ``xk_support`` survive, so
    column extraction is skipped whenever the support comes back unchanged.
    """

    y: np.ndarray
    x: DesignMatrix
    z: np.ndarray
    family: Family
    k: int
    J: int
    b: np.ndarray
    b0: np.ndarray
    c: np.ndarray
    c0: np.ndarray
    xb: np.ndarray
    xb0: np.ndarray
    zc: np.ndarray
    zc0: np.ndarray
    eta: np.ndarray
    mu: np.ndarray
    r: np.ndarray
    fisher: np.ndarray
    df: np.ndarray
    dfc: np.ndarray
    gk: np.ndarray
    idx: np.ndarray
    idx0: np.ndarray
    cv_wts: np.ndarray
    group: Optional[np.ndarray] = None
    weight: Optional[np.ndarray] = None
    xk: Optional[np.ndarray] = None
    xk_support: Optional[np.ndarray] = None

    @property
    def n(self) -> int:
        return int(self.y.shape[0])

    @property
    def p(self) -> int:
        return int(self.b.shape[0])

    @property
    def dtype(self) -> np.dtype:
        return self.b.dtype

    # ------------------------------------------------------------------
    def reset_for_size(self, k: int, warm_start: bool = False) -> "ModelState":
        validate_size(k, self.J)
        self.k = int(k)
        self.b0.fill(0.0)
        self.c0.fill(0.0)
        self.xb0.fill(0.0)
        self.zc0.fill(0.0)
        self.df.fill(0.0)
        self.dfc.fill(0.0)
        self.idx0.fill(False)
        self.gk = np.zeros(0, dtype=self.dtype)
        if warm_start and np.any(self.b):
            projected, _ = project(self.b, self.k, J=self.J, group=self.group, weight=self.weight, out_mask=self.idx)
            self.b[:] = projected
        else:
            self.b.fill(0.0)
            self.c.fill(0.0)
            self.idx.fill(False)
        self.update_linear_predictor()
        return self

    def snapshot(self) -> None:
        """Copy the current iterate into the ``*0`` buffers."""
        self.b0[:] = self.b
        self.c0[:] = self.c
        self.xb0[:] = self.xb
        self.zc0[:] = self.zc
        self.idx0[:] = self.idx

    def restore(self) -> None:
        self.b[:] = self.b0
        self.c[:] = self.c0
        self.xb[:] = self.xb0
        self.zc[:] = self.zc0
        self.idx[:] = self.idx0
        self._refresh_mean()

    def active_columns(self) -> np.ndarray:
        """Dense columns of the current support, re-extracted only on change."""
        if self.xk is None or self.xk_support is None or not np.array_equal(self.xk_support, self.idx):
            self.xk = self.x.columns(self.idx)
            self.xk_support = self.idx.copy()
        return self.xk

    def update_linear_predictor(self) -> None:
        if np.any(self.idx):
            self.xb[:] = self.active_columns() @ self.b[self.idx]
        else:
            self.xb.fill(0.0)
        self.zc[:] = self.z @ self.c
        self._refresh_mean()

    def _refresh_mean(self) -> None:
        self.eta[:] = self.xb + self.zc
        self.mu[:] = self.family.mean(self.eta)

    def update_gradient(self) -> None:
        score, fisher = self.family.working_weights(self.y, self.mu, self.eta, self.cv_wts)
        self.r[:] = score
        self.fisher[:] = fisher
        self.df[:] = self.x.rmatvec(score)
        self.dfc[:] = self.z.T @ score
        self.gk = self.df[self.idx]

    def objective(self) -> float:
        """Half the weighted deviance (half the residual sum of squares for Gaussian)."""
        return 0.5 * self.family.deviance(self.y, self.mu, self.cv_wts)


def initialize_state(
    y: np.ndarray,
    x: Any,
    z: Optional[np.ndarray] = None,
    *,
    k: int,
    J: int = 1,
    family: Union[str, Family] = "normal",
    group: Optional[np.ndarray] = None,
    weight: Optional[np.ndarray] = None,
    cv_wts: Optional[np.ndarray] = None,
    dtype: Union[str, np.dtype] = np.float64,
) -> ModelState:
    """Allocate a :class:`ModelState` for ``y ~ x`` with covariates ``z``.

    ``z`` defaults to a single intercept column. Covariate coefficients are
    never penalised.
    """

    validate_size(k, J)
    dtype = np.dtype(dtype)
    design = as_design(x, dtype=dtype)
    n, p = design.shape
    y = as_response(y, n, dtype)
    if z is None:
        z = np.ones((n, 1), dtype=dtype)
    z = np.asarray(z, dtype=dtype)
    if z.ndim == 1:
        z = z.reshape(-1, 1)
    if z.shape[0] != n:
        raise ConfigurationError(f"Covariates have {z.shape[0]} rows but the design has {n}.")
    fam = get_family(family)
    fam.validate_y(y)
    if cv_wts is None:
        wts = np.ones(n, dtype=dtype)
    else:
        wts = np.asarray(cv_wts, dtype=dtype).reshape(-1)
        if wts.shape[0] != n:
            raise ConfigurationError(f"cv_wts has length {wts.shape[0]}, expected {n}.")
    if group is not None:
        group = np.asarray(group).reshape(-1)
        if group.shape[0] != p:
            raise ConfigurationError(f"Group vector has length {group.shape[0]}, expected {p}.")
    if weight is not None:
        weight = np.asarray(weight, dtype=dtype).reshape(-1)
        if weight.shape[0] != p:
            raise ConfigurationError(f"Weight vector has length {weight.shape[0]}, expected {p}.")
        if np.any(weight < 0) or not np.all(np.isfinite(weight)):
            raise ConfigurationError("Prior weights must be finite and non-negative.")

    nz = z.shape[1]
    state = ModelState(
        y=y,
        x=design,
        z=z,
        family=fam,
        k=int(k),
        J=int(J),
        b=np.zeros(p, dtype=dtype),
        b0=np.zeros(p, dtype=dtype),
        c=np.zeros(nz, dtype=dtype),
        c0=np.zeros(nz, dtype=dtype),
        xb=np.zeros(n, dtype=dtype),
        xb0=np.zeros(n, dtype=dtype),
        zc=np.zeros(n, dtype=dtype),
        zc0=np.zeros(n, dtype=dtype),
        eta=np.zeros(n, dtype=dtype),
        mu=np.zeros(n, dtype=dtype),
        r=np.zeros(n, dtype=dtype),
        fisher=np.zeros(n, dtype=dtype),
        df=np.zeros(p, dtype=dtype),
        dfc=np.zeros(nz, dtype=dtype),
        gk=np.zeros(0, dtype=dtype),
        idx=np.zeros(p, dtype=bool),
        idx0=np.zeros(p, dtype=bool),
        cv_wts=wts,
        group=group,
        weight=weight,
    )
    state._refresh_mean()
    return state
