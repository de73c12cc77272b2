"""Design-matrix capability: products, column access and row sub-setting.

The IHT engine never touches the storage of ``X`` directly. It only asks for

* ``matvec(v, support)`` – ``X[:, support] @ v[support]`` (whole matrix when
  ``support`` is None),
* ``rmatvec(r)`` – ``X.T @ r``,
* ``columns(support)`` – the dense active columns,

so in-memory arrays, memory-mapped files streamed in row blocks and compact
genotype encodings with an implicit centring/scaling are interchangeable.
``take_rows`` / ``rebind`` let the ephemeral store materialise a row subset
of the raw storage and wrap it with the same transformation.
"""
from __future__ import annotations

from pathlib import Path
from typing import Any, Iterator, Optional, Protocol, Tuple, Union, runtime_checkable

import numpy as np

from data.preprocess import ColumnMoments, genotype_moments
from ihtcv.models.errors import ConfigurationError

__all__ = [
    "DesignMatrix",
    "DenseDesign",
    "StandardizedGenotypes",
    "as_design",
    "support_indices",
    "pack_storage",
    "unpack_storage",
]

SupportLike = Union[np.ndarray, None]


@runtime_checkable
class DesignMatrix(Protocol):
    """Minimal linear-algebra surface the engine relies on."""

    storage: Any

    @property
    def shape(self) -> Tuple[int, int]:
        ...

    @property
    def dtype(self) -> np.dtype:
        ...

    def matvec(self, v: np.ndarray, support: SupportLike = None) -> np.ndarray:
        ...

    def rmatvec(self, r: np.ndarray) -> np.ndarray:
        ...

    def columns(self, support: np.ndarray) -> np.ndarray:
        ...

    def take_rows(self, rows: np.ndarray) -> np.ndarray:
        ...

    def rebind(self, storage: Any) -> "DesignMatrix":
        ...


def support_indices(support: np.ndarray, p: int) -> np.ndarray:
    """Normalise a boolean mask or index array into sorted column indices."""
    arr = np.asarray(support)
    if arr.dtype == bool:
        if arr.shape != (p,):
            raise ConfigurationError(f"Support mask has shape {arr.shape}, expected ({p},).")
        return np.flatnonzero(arr)
    return np.asarray(arr, dtype=np.intp).reshape(-1)


def _block_slices(total: int, chunk: Optional[int]) -> Iterator[slice]:
    if chunk is None or chunk <= 0 or chunk >= total:
        yield slice(0, total)
        return
    for start in range(0, total, chunk):
        yield slice(start, min(start + chunk, total))


class _MemmapRef:
    """Pickle stand-in for a read-only ``.npy`` memory map."""

    __slots__ = ("path",)

    def __init__(self, path: str) -> None:
        self.path = path


def pack_storage(arr: Any) -> Any:
    """Replace a file-backed ``.npy`` memmap by a reference to its path."""
    filename = getattr(arr, "filename", None)
    if isinstance(arr, np.memmap) and filename and str(filename).endswith(".npy"):
        return _MemmapRef(str(filename))
    return arr


def unpack_storage(obj: Any) -> Any:
    if isinstance(obj, _MemmapRef):
        return np.load(obj.path, mmap_mode="r")
    return obj


class _PicklesByReference:
    # Memory-mapped storage travels to worker processes as a path, not as data.
    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state["storage"] = pack_storage(state["storage"])
        return state

    def __setstate__(self, state: dict) -> None:
        state["storage"] = unpack_storage(state["storage"])
        self.__dict__.update(state)


class DenseDesign(_PicklesByReference):
    """Floating-point design held in memory or in a ``numpy.memmap``.

    With ``chunk_size`` set, full products stream over row blocks of that
    many samples, which keeps the resident set bounded for disk-backed
    matrices.
    """

    def __init__(
        self,
        X: Any,
        *,
        chunk_size: Optional[int] = None,
        dtype: Optional[Union[str, np.dtype]] = None,
    ) -> None:
        arr = X if isinstance(X, np.memmap) else np.asarray(X)
        if arr.ndim != 2:
            raise ConfigurationError(f"Design matrix must be 2D, got shape {arr.shape}.")
        if dtype is None:
            dtype = arr.dtype if np.issubdtype(arr.dtype, np.floating) else np.float64
        self._dtype = np.dtype(dtype)
        if not isinstance(arr, np.memmap):
            arr = arr.astype(self._dtype, copy=False)
        self.storage = arr
        self.chunk_size = None if chunk_size is None else int(chunk_size)

    @classmethod
    def from_file(
        cls,
        path: Union[str, Path],
        *,
        mmap: bool = True,
        chunk_size: Optional[int] = None,
        dtype: Optional[Union[str, np.dtype]] = None,
    ) -> "DenseDesign":
        """Open a ``.npy`` matrix, memory-mapped read-only by default."""
        arr = np.load(Path(path), mmap_mode="r" if mmap else None)
        return cls(arr, chunk_size=chunk_size, dtype=dtype)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.storage.shape)  # type: ignore[return-value]

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    def _as_float(self, block: np.ndarray) -> np.ndarray:
        return np.asarray(block, dtype=self._dtype)

    def matvec(self, v: np.ndarray, support: SupportLike = None) -> np.ndarray:
        n, p = self.shape
        v = np.asarray(v, dtype=self._dtype)
        if support is not None:
            cols = support_indices(support, p)
            if cols.size == 0:
                return np.zeros(n, dtype=self._dtype)
            return self.columns(cols) @ v[cols]
        out = np.empty(n, dtype=self._dtype)
        for rows in _block_slices(n, self.chunk_size):
            out[rows] = self._as_float(self.storage[rows]) @ v
        return out

    def rmatvec(self, r: np.ndarray) -> np.ndarray:
        n, p = self.shape
        r = np.asarray(r, dtype=self._dtype)
        out = np.zeros(p, dtype=self._dtype)
        for rows in _block_slices(n, self.chunk_size):
            out += self._as_float(self.storage[rows]).T @ r[rows]
        return out

    def columns(self, support: np.ndarray) -> np.ndarray:
        cols = support_indices(support, self.shape[1])
        return self._as_float(self.storage[:, cols])

    def take_rows(self, rows: np.ndarray) -> np.ndarray:
        return np.asarray(self.storage[np.asarray(rows)])

    def rebind(self, storage: Any) -> "DenseDesign":
        return DenseDesign(storage, chunk_size=self.chunk_size, dtype=self._dtype)

    def __repr__(self) -> str:
        kind = "memmap" if isinstance(self.storage, np.memmap) else "array"
        return f"DenseDesign(shape={self.shape}, dtype={self._dtype}, storage={kind})"


class StandardizedGenotypes(_PicklesByReference):
    """Additive 0/1/2 genotype codes with an implicit per-column transform.

    The stored matrix stays in its compact integer encoding (``int8`` by
    default, ``missing_code`` marking missing calls). Every product decodes a
    block of columns on the fly as ``(g - mean) / scale`` with missing calls
    imputed to the column mean, so the float matrix is never materialised.
    Row subsets created through :meth:`rebind` keep the parent's moments.
    """

    def __init__(
        self,
        G: Any,
        *,
        center: bool = True,
        scale: bool = True,
        impute: bool = True,
        missing_code: int = -1,
        moments: Optional[ColumnMoments] = None,
        chunk_size: int = 1024,
        dtype: Union[str, np.dtype] = np.float64,
    ) -> None:
        arr = G if isinstance(G, np.memmap) else np.asarray(G)
        if arr.ndim != 2:
            raise ConfigurationError(f"Genotype matrix must be 2D, got shape {arr.shape}.")
        if not np.issubdtype(arr.dtype, np.integer):
            raise ConfigurationError(f"Genotype matrix must use an integer encoding, got {arr.dtype}.")
        self.storage = arr
        self.center = bool(center)
        self.scale = bool(scale)
        self.impute = bool(impute)
        self.missing_code = int(missing_code)
        self.chunk_size = max(int(chunk_size), 1)
        self._dtype = np.dtype(dtype)
        self.moments = moments if moments is not None else genotype_moments(arr, missing_code=self.missing_code)
        if self.moments.mean.shape[0] != arr.shape[1]:
            raise ConfigurationError("Column moments do not match the number of genotype columns.")
        p = arr.shape[1]
        self._shift = self.moments.mean.astype(self._dtype) if self.center else np.zeros(p, dtype=self._dtype)
        self._scale = self.moments.scale.astype(self._dtype) if self.scale else np.ones(p, dtype=self._dtype)

    @property
    def shape(self) -> Tuple[int, int]:
        return tuple(self.storage.shape)  # type: ignore[return-value]

    @property
    def dtype(self) -> np.dtype:
        return self._dtype

    def _decode(self, block: np.ndarray, cols: Union[slice, np.ndarray]) -> np.ndarray:
        raw = np.asarray(block)
        vals = raw.astype(self._dtype)
        missing = raw == self.missing_code
        if missing.any():
            fill = self.moments.mean[cols].astype(self._dtype) if self.impute else np.zeros(1, dtype=self._dtype)
            vals = np.where(missing, fill, vals)
        return (vals - self._shift[cols]) / self._scale[cols]

    def columns(self, support: np.ndarray) -> np.ndarray:
        cols = support_indices(support, self.shape[1])
        return self._decode(self.storage[:, cols], cols)

    def matvec(self, v: np.ndarray, support: SupportLike = None) -> np.ndarray:
        n, p = self.shape
        v = np.asarray(v, dtype=self._dtype)
        if support is not None:
            cols = support_indices(support, p)
            if cols.size == 0:
                return np.zeros(n, dtype=self._dtype)
            return self.columns(cols) @ v[cols]
        out = np.zeros(n, dtype=self._dtype)
        for cols in _block_slices(p, self.chunk_size):
            out += self._decode(self.storage[:, cols], cols) @ v[cols]
        return out

    def rmatvec(self, r: np.ndarray) -> np.ndarray:
        n, p = self.shape
        r = np.asarray(r, dtype=self._dtype)
        out = np.empty(p, dtype=self._dtype)
        for cols in _block_slices(p, self.chunk_size):
            out[cols] = self._decode(self.storage[:, cols], cols).T @ r
        return out

    def take_rows(self, rows: np.ndarray) -> np.ndarray:
        return np.asarray(self.storage[np.asarray(rows)])

    def rebind(self, storage: Any) -> "StandardizedGenotypes":
        return StandardizedGenotypes(
            storage,
            center=self.center,
            scale=self.scale,
            impute=self.impute,
            missing_code=self.missing_code,
            moments=self.moments,
            chunk_size=self.chunk_size,
            dtype=self._dtype,
        )

    def __repr__(self) -> str:
        return (
            f"StandardizedGenotypes(shape={self.shape}, center={self.center}, "
            f"scale={self.scale}, impute={self.impute})"
        )


def as_design(X: Any, *, dtype: Optional[Union[str, np.dtype]] = None) -> DesignMatrix:
    """Wrap array-likes into a :class:`DenseDesign`; design objects pass through.

    A design object whose precision differs from ``dtype`` is rejected, so one
    run never mixes float32 and float64 products.
    """
    if hasattr(X, "matvec") and hasattr(X, "rmatvec") and hasattr(X, "columns"):
        if dtype is not None and np.dtype(X.dtype) != np.dtype(dtype):
            raise ConfigurationError(
                f"Design computes in {np.dtype(X.dtype)} but the fit requests {np.dtype(dtype)}; "
                "construct the design with the same dtype."
            )
        return X
    return DenseDesign(X, dtype=dtype)
