"""Loading helpers for externally provided designs, responses and covariates."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd
import yaml

__all__ = ["LoadedDataset", "GroupMap", "load_dataset"]

GroupMap = Dict[str, int]

_LOADER_KEYS = {
    "path_X", "X_key", "path_y", "y_key", "path_z", "z_key", "path_feature_names",
    "path_group_map", "path_groups", "path_weights", "beta_path", "beta_key",
    "genotype", "mmap", "add_intercept",
}


@dataclass
class LoadedDataset:
    """Container for externally provided datasets."""

    X: np.ndarray
    y: np.ndarray
    z: Optional[np.ndarray] = None
    group: Optional[np.ndarray] = None
    weight: Optional[np.ndarray] = None
    feature_names: Optional[List[str]] = None
    beta: Optional[np.ndarray] = None
    genotype: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)


def _ensure_path(path_like: str | Path, base_dir: Optional[Path]) -> Path:
    path = Path(path_like)
    if not path.is_absolute() and base_dir is not None:
        path = (base_dir / path).resolve()
    return path


def _load_array(
    path: Path,
    *,
    key: Optional[str] = None,
    dtype: Optional[str] = None,
    mmap: bool = False,
) -> np.ndarray:
    if not path.exists():
        raise FileNotFoundError(f"Dataset file not found: {path}")

    suffix = path.suffix.lower()
    if suffix == ".npy":
        arr = np.load(path, mmap_mode="r" if mmap else None)
    elif suffix == ".npz":
        with np.load(path) as data:
            if key is None:
                if len(data.files) != 1:
                    raise ValueError(f"Ambiguous npz file {path}; specify key via loader config (e.g. X_key).")
                key = data.files[0]
            if key not in data:
                raise KeyError(f"Key '{key}' not found in npz file {path}.")
            arr = data[key]
    elif suffix in {".csv", ".tsv", ".txt"}:
        delimiter = "\t" if suffix == ".tsv" else ","
        arr = pd.read_csv(path, sep=delimiter).to_numpy()
    else:
        raise ValueError(f"Unsupported file format for array loading: {path.suffix}")

    if dtype is not None and not isinstance(arr, np.memmap):
        arr = arr.astype(dtype, copy=False)
    return arr if isinstance(arr, np.memmap) else np.asarray(arr)


def _load_feature_names(path: Path) -> List[str]:
    if not path.exists():
        raise FileNotFoundError(f"Feature-name file not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".json":
        names = json.loads(path.read_text(encoding="utf-8"))
    elif suffix in {".yaml", ".yml"}:
        names = yaml.safe_load(path.read_text(encoding="utf-8"))
    else:
        names = [line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
    return [str(name) for name in names]


def _load_group_map(path: Path) -> GroupMap:
    if not path.exists():
        raise FileNotFoundError(f"Group-map file not found: {path}")
    suffix = path.suffix.lower()
    if suffix == ".json":
        payload = json.loads(path.read_text(encoding="utf-8"))
    elif suffix in {".yaml", ".yml"}:
        payload = yaml.safe_load(path.read_text(encoding="utf-8"))
    elif suffix in {".csv", ".tsv"}:
        frame = pd.read_csv(path, sep="\t" if suffix == ".tsv" else ",")
        if frame.shape[1] < 2:
            raise ValueError("Group map CSV must contain at least two columns: feature and group.")
        payload = dict(zip(frame.iloc[:, 0].astype(str), frame.iloc[:, 1].astype(int)))
    else:
        raise ValueError(f"Unsupported group-map file format: {path.suffix}")

    if not isinstance(payload, Mapping):
        raise TypeError("Group map file must decode into a mapping of feature -> group id.")
    return {str(key): int(val) for key, val in payload.items()}


def load_dataset(
    loader_cfg: Mapping[str, Any],
    *,
    base_dir: Optional[Path] = None,
) -> LoadedDataset:
    """Load an external dataset according to loader configuration.

    Supported fields in ``loader_cfg``:
        path_X (str): predictors (.npy, .npz, .csv, .tsv); with ``genotype: true``
            the values are additive 0/1/2 codes with -1 for missing calls.
        mmap (bool): memory-map ``.npy`` predictors instead of reading them.
        path_y (str): response vector.
        path_z (str, optional): covariates; an intercept column is prepended
            unless ``add_intercept: false``.
        path_groups (str, optional): per-predictor group labels.
        path_group_map (str, optional): JSON/YAML/CSV feature -> group id,
            used together with ``path_feature_names``.
        path_weights (str, optional): per-predictor prior weights.
        beta_path (str, optional): true coefficients for simulations on real designs.
    """

    if not loader_cfg:
        raise ValueError("loader configuration must be provided for data.type=loader")

    root = base_dir.resolve() if base_dir is not None else None
    genotype = bool(loader_cfg.get("genotype", False))

    path_X = loader_cfg.get("path_X")
    if not path_X:
        raise ValueError("loader.path_X is required to locate the design matrix")
    X = _load_array(
        _ensure_path(path_X, root),
        key=loader_cfg.get("X_key"),
        dtype="int8" if genotype else "float64",
        mmap=bool(loader_cfg.get("mmap", False)),
    )
    if X.ndim != 2:
        raise ValueError(f"Design matrix must be 2D, got shape {X.shape}.")
    n, p = X.shape

    path_y = loader_cfg.get("path_y")
    if not path_y:
        raise ValueError("loader.path_y is required to locate the response")
    y = _load_array(_ensure_path(path_y, root), key=loader_cfg.get("y_key"), dtype="float64").reshape(-1)
    if y.shape[0] != n:
        raise ValueError(f"Target length {y.shape[0]} does not match number of samples {n}.")

    z = None
    if loader_cfg.get("path_z"):
        z = _load_array(_ensure_path(loader_cfg["path_z"], root), key=loader_cfg.get("z_key"), dtype="float64")
        z = z.reshape(n, -1)
        if loader_cfg.get("add_intercept", True):
            z = np.hstack([np.ones((n, 1)), z])

    feature_names: Optional[List[str]] = None
    if loader_cfg.get("path_feature_names"):
        feature_names = _load_feature_names(_ensure_path(loader_cfg["path_feature_names"], root))
        if len(feature_names) != p:
            raise ValueError("Number of feature names does not match columns in X.")

    group = None
    if loader_cfg.get("path_groups"):
        group = _load_array(_ensure_path(loader_cfg["path_groups"], root)).reshape(-1).astype(int)
    elif loader_cfg.get("path_group_map"):
        if feature_names is None:
            raise ValueError("Feature names are required when using path_group_map.")
        group_map = _load_group_map(_ensure_path(loader_cfg["path_group_map"], root))
        missing = [name for name in feature_names if name not in group_map]
        if missing:
            raise ValueError(f"Group map lacks {len(missing)} feature(s), e.g. '{missing[0]}'.")
        group = np.array([group_map[name] for name in feature_names], dtype=int)
    if group is not None and group.shape[0] != p:
        raise ValueError("Group labels do not match the number of predictors.")

    weight = None
    if loader_cfg.get("path_weights"):
        weight = _load_array(_ensure_path(loader_cfg["path_weights"], root), dtype="float64").reshape(-1)
        if weight.shape[0] != p:
            raise ValueError("Prior weights do not match the number of predictors.")

    beta = None
    if loader_cfg.get("beta_path"):
        beta = _load_array(_ensure_path(loader_cfg["beta_path"], root), key=loader_cfg.get("beta_key"), dtype="float64").reshape(-1)
        if beta.shape[0] != p:
            raise ValueError("Ground-truth beta length does not match number of features.")

    metadata: Dict[str, Any] = {key: value for key, value in loader_cfg.items() if key not in _LOADER_KEYS}
    metadata.setdefault("source_path", str(_ensure_path(path_X, root)))
    metadata.setdefault("target_path", str(_ensure_path(path_y, root)))

    return LoadedDataset(
        X=X,
        y=y,
        z=z,
        group=group,
        weight=weight,
        feature_names=feature_names,
        beta=beta,
        genotype=genotype,
        metadata=metadata,
    )
