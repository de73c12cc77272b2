"""Ephemeral on-disk train/test views for fold-parallel cross-validation.

Each fold gets its own :class:`EphemeralStore`. Artefacts are ``.npy`` files
with random (``uuid4``) names under the caller's directory, opened back as
read-only memory maps, and removed exactly once when the store closes,
whether the fold succeeded or not. Files that cannot be removed are reported
in a single warning and left behind.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Union

import numpy as np

from ihtcv.models.design import DesignMatrix, as_design, pack_storage, unpack_storage

__all__ = ["EphemeralStore", "FoldView"]

logger = logging.getLogger(__name__)


@dataclass
class FoldView:
    """Row subset of the data backed by store artefacts."""

    x: DesignMatrix
    y: np.ndarray
    z: np.ndarray
    rows: np.ndarray

    @property
    def n(self) -> int:
        return int(self.y.shape[0])

    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state["y"] = pack_storage(self.y)
        state["z"] = pack_storage(self.z)
        return state

    def __setstate__(self, state: dict) -> None:
        state["y"] = unpack_storage(state["y"])
        state["z"] = unpack_storage(state["z"])
        self.__dict__.update(state)


class EphemeralStore:
    """Scoped owner of the temporary files created for one fold."""

    def __init__(self, destin: Optional[Union[str, Path]] = None, prefix: str = "ihtcv") -> None:
        self.destin = None if destin is None else Path(destin)
        self.prefix = prefix
        self._paths: List[Path] = []
        self._tmpdir: Optional[Path] = None
        self._closed = False

    def __enter__(self) -> "EphemeralStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def paths(self) -> List[Path]:
        return list(self._paths)

    @property
    def closed(self) -> bool:
        return self._closed

    def _directory(self) -> Path:
        if self.destin is not None:
            self.destin.mkdir(parents=True, exist_ok=True)
            return self.destin
        if self._tmpdir is None:
            self._tmpdir = Path(tempfile.mkdtemp(prefix=f"{self.prefix}-"))
        return self._tmpdir

    def materialize(self, array: Any, tag: str = "data") -> np.memmap:
        """Write ``array`` to a uniquely named ``.npy`` and map it back read-only."""
        if self._closed:
            raise RuntimeError("EphemeralStore is closed.")
        path = self._directory() / f"{self.prefix}-{tag}-{uuid.uuid4().hex}.npy"
        self._paths.append(path)
        np.save(path, np.ascontiguousarray(array))
        return np.load(path, mmap_mode="r")

    def fold_view(
        self,
        rows: np.ndarray,
        x: Any,
        y: np.ndarray,
        z: np.ndarray,
        tag: str = "fold",
    ) -> FoldView:
        """Materialise ``rows`` of ``(x, y, z)``; the design keeps its transformation."""
        rows = np.asarray(rows)
        if rows.dtype == bool:
            rows = np.flatnonzero(rows)
        design = as_design(x)
        x_rows = self.materialize(design.take_rows(rows), f"{tag}-x")
        y_rows = self.materialize(np.asarray(y)[rows], f"{tag}-y")
        z_rows = self.materialize(np.asarray(z)[rows], f"{tag}-z")
        return FoldView(x=design.rebind(x_rows), y=y_rows, z=z_rows, rows=rows)

    def close(self) -> List[Path]:
        """Delete every artefact once; return (and warn about) the ones left behind."""
        if self._closed:
            return []
        self._closed = True
        orphans: List[Path] = []
        for path in self._paths:
            try:
                path.unlink(missing_ok=True)
            except OSError:
                orphans.append(path)
        self._paths = []
        if self._tmpdir is not None:
            if orphans:
                orphans.append(self._tmpdir)
            else:
                shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None
        if orphans:
            logger.warning(
                "Could not delete %d ephemeral artefact(s): %s",
                len(orphans),
                ", ".join(str(p) for p in orphans),
            )
        return orphans
