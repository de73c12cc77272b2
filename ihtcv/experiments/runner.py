"""
Configuration-driven cross-validation runs.

:func:`run_cv_experiment` is the entry point used by the CLI
(``python -m ihtcv.cli.run_cv``). It takes a fully merged configuration
dictionary, builds the dataset (synthetic or loaded from disk), assigns folds,
cross-validates the sparsity level along the configured axis, optionally
refits the selected model on every sample, and writes the artefacts of the
run into ``output_dir``:

* ``folds.npy`` – fold id per sample,
* ``cv_errors.csv`` – per-fold and aggregated error for every model size,
* ``cv_summary.json`` – selected size, timing and refit summary,
* ``refit_coefficients.npz`` – refitted (and unpenalised) coefficients,
* ``cv_curve.png`` / ``coefficients.png`` – figures when enabled.
"""

from __future__ import annotations

import json
import logging
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import numpy as np

from data.generators import generate_synthetic, synthetic_config_from_dict
from data.loaders import load_dataset
from data.preprocess import genotype_moments, maf_weights, standardize_X
from data.splits import fold_hash, kfold_assignment, random_fold_assignment, validate_folds
from ihtcv.experiments.cross_validation import CVResult, cv_iht, cv_iht_distribute_fold
from ihtcv.metrics.selection import support_recovery
from ihtcv.models.design import DenseDesign, StandardizedGenotypes
from ihtcv.postprocess.debias import refit_unpenalized
from ihtcv.utils.logging_utils import Timer

logger = logging.getLogger(__name__)

AXES = {"path": cv_iht, "fold": cv_iht_distribute_fold}


class ExperimentError(RuntimeError):
    """Raised when a configuration-driven experiment cannot be executed."""


def _to_serializable(value: Any) -> Any:
    """Convert NumPy / Path rich objects into JSON serialisable forms."""
    if isinstance(value, (np.generic,)):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, Mapping):
        return {k: _to_serializable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_serializable(v) for v in value]
    if isinstance(value, Path):
        return str(value)
    return value


def _resolve_seed(*candidates: Any) -> Optional[int]:
    for value in candidates:
        if value is None:
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            continue
    return None


def _resolve_path(value: Any) -> list[int]:
    if value is None:
        return list(range(1, 21))
    if isinstance(value, Mapping):
        start = int(value.get("start", 1))
        stop = int(value.get("stop", 20))
        step = int(value.get("step", 1))
        return list(range(start, stop + 1, step))
    if isinstance(value, (int, np.integer)):
        return list(range(1, int(value) + 1))
    return [int(k) for k in value]


def _prepare_dataset_bundle(config: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> Dict[str, Any]:
    data_cfg = config.get("data", {}) or {}
    model_cfg = config.get("model", {}) or {}
    data_type = str(data_cfg.get("type", "synthetic")).lower()
    seed = _resolve_seed(data_cfg.get("seed"), config.get("seed"))

    if data_type == "synthetic":
        syn_cfg = synthetic_config_from_dict(
            data_cfg,
            seed=seed,
            name=config.get("name"),
            family=model_cfg.get("family"),
            link=model_cfg.get("link"),
        )
        dataset = generate_synthetic(syn_cfg)
        genotype = syn_cfg.design == "genotype"
        group = dataset.group_labels if syn_cfg.group_sizes is not None else None
        bundle = {
            "X": dataset.X,
            "y": dataset.y,
            "z": dataset.z,
            "group": group,
            "weight": None,
            "beta_true": dataset.beta,
            "genotype": genotype,
            "metadata": {"active_idx": dataset.info.get("active_idx"), "design": syn_cfg.design},
        }
    elif data_type == "loader":
        loader_cfg = data_cfg.get("loader", {}) or {}
        loaded = load_dataset(loader_cfg, base_dir=base_dir)
        bundle = {
            "X": loaded.X,
            "y": loaded.y,
            "z": loaded.z,
            "group": loaded.group,
            "weight": loaded.weight,
            "beta_true": loaded.beta,
            "genotype": loaded.genotype,
            "metadata": loaded.metadata,
        }
    else:
        raise ExperimentError(f"Unsupported data.type '{data_type}'. Use 'synthetic' or 'loader'.")

    dtype = str(model_cfg.get("dtype", "float64"))
    if bundle["genotype"]:
        moments = genotype_moments(bundle["X"])
        bundle["design"] = StandardizedGenotypes(bundle["X"], moments=moments, dtype=dtype)
        weighting = str(model_cfg.get("weight", "none") or "none").lower()
        if weighting == "maf":
            bundle["weight"] = maf_weights(moments)
        elif weighting not in {"none", "loader"}:
            raise ExperimentError(f"Unsupported model.weight '{weighting}'. Use 'none', 'maf' or 'loader'.")
    else:
        method = data_cfg.get("standardize")
        if method and str(method).lower() != "none":
            bundle["X"], _, _ = standardize_X(bundle["X"], method=str(method))
        bundle["design"] = DenseDesign(bundle["X"], chunk_size=data_cfg.get("chunk_size"), dtype=dtype)
    if not model_cfg.get("group", bundle["group"] is not None):
        bundle["group"] = None
    return bundle


def _prepare_folds(cv_cfg: Mapping[str, Any], y: np.ndarray, q: int, seed: Optional[int]) -> np.ndarray:
    n = y.shape[0]
    scheme = str(cv_cfg.get("folds", "random"))
    if scheme.lower() == "random":
        return random_fold_assignment(n, q, seed)
    if scheme.lower() == "kfold":
        return kfold_assignment(n, q, y=y, stratify=bool(cv_cfg.get("stratify", False)), seed=seed)
    path = Path(scheme)
    if path.suffix == ".npy" and path.exists():
        return validate_folds(np.load(path), n, q)
    raise ExperimentError(f"Unsupported cv.folds '{scheme}'. Use 'random', 'kfold' or a .npy file.")


def _save_plots(output_path: Path, result: CVResult, beta_true: Optional[np.ndarray]) -> None:
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    from ihtcv.viz.plots import coefficient_bar, plot_cv_curve

    ax = plot_cv_curve(result.path, result.errors, fold_errors=result.fold_errors, best_k=result.best_k)
    ax.figure.savefig(output_path / "cv_curve.png", dpi=150, bbox_inches="tight")
    plt.close(ax.figure)
    if result.refit is not None:
        ax = coefficient_bar(result.refit.beta, truth=beta_true)
        ax.figure.savefig(output_path / "coefficients.png", dpi=150, bbox_inches="tight")
        plt.close(ax.figure)


def run_cv_experiment(config: Mapping[str, Any], output_dir: Path | str) -> Dict[str, Any]:
    """
    Execute the cross-validation run described by ``config``.

    Args:
        config: Fully merged experiment configuration.
        output_dir: Directory where artefacts should be written.

    Returns:
        Dictionary with the selected model size, errors and recovery metrics.
    """

    if "cv" not in config:
        raise ExperimentError("Configuration requires a 'cv' section.")
    effective_config = deepcopy(dict(config))
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    model_cfg = effective_config.get("model", {}) or {}
    cv_cfg = effective_config.get("cv", {}) or {}
    exp_cfg = effective_config.get("experiments", {}) or {}

    axis = str(cv_cfg.get("axis", "path")).lower()
    if axis not in AXES:
        raise ExperimentError(f"Unsupported cv.axis '{axis}'. Use 'path' or 'fold'.")
    q = int(cv_cfg.get("q", 5))
    path = _resolve_path(cv_cfg.get("path"))
    seed = _resolve_seed(cv_cfg.get("fold_seed"), effective_config.get("seed"))

    dataset = _prepare_dataset_bundle(effective_config, base_dir=Path(exp_cfg.get("base_dir", ".")))
    y = dataset["y"]
    folds = _prepare_folds(cv_cfg, y, q, seed)
    np.save(output_path / "folds.npy", folds)
    logger.info(
        "Dataset ready: n=%d, p=%d, axis=%s, q=%d, path=%s..%s",
        dataset["design"].shape[0],
        dataset["design"].shape[1],
        axis,
        q,
        path[0],
        path[-1],
    )

    kwargs: Dict[str, Any] = dict(
        path=path,
        q=q,
        folds=folds,
        family=model_cfg.get("family", "normal"),
        link=model_cfg.get("link"),
        J=int(model_cfg.get("J", 1)),
        group=dataset["group"],
        weight=dataset["weight"],
        debias=bool(model_cfg.get("debias", False)),
        debias_policy=str(model_cfg.get("debias_policy", "global")),
        tol=float(model_cfg.get("tol", 1e-4)),
        max_iter=int(model_cfg.get("max_iter", 100)),
        max_step=int(model_cfg.get("max_step", 50)),
        dtype=str(model_cfg.get("dtype", "float64")),
        estimate_nuisance=bool(model_cfg.get("estimate_nuisance", False)),
        executor=str(cv_cfg.get("executor", "serial")),
        n_jobs=cv_cfg.get("n_jobs"),
        refit=bool(cv_cfg.get("refit", True)),
    )
    if axis == "fold":
        kwargs["destin"] = cv_cfg.get("destin")

    with Timer(f"cv[{axis}]", logger):
        result = AXES[axis](y, dataset["design"], dataset["z"], **kwargs)

    result.to_frame().to_csv(output_path / "cv_errors.csv", index=False)

    metrics: Dict[str, Any] = {
        "best_k": int(result.best_k),
        "min_error": float(np.min(result.errors)),
        "axis": axis,
        "q": q,
    }
    beta_true = dataset.get("beta_true")
    if result.refit is not None:
        refit = result.refit
        z = dataset["z"] if dataset["z"] is not None else np.ones((y.shape[0], 1))
        beta_unpen, c_unpen = refit_unpenalized(y, dataset["design"], z, refit.beta != 0, refit.family)
        np.savez(
            output_path / "refit_coefficients.npz",
            beta=refit.beta,
            c=refit.c,
            beta_unpenalized=beta_unpen,
            c_unpenalized=c_unpen,
        )
        metrics["refit_converged"] = bool(refit.converged)
        metrics["refit_iterations"] = int(refit.iterations)
        metrics["refit_loglikelihood"] = float(refit.loglikelihood)
        if beta_true is not None:
            metrics["support"] = support_recovery(beta_true, refit.beta)

    summary = result.to_dict()
    summary["name"] = effective_config.get("name")
    summary["fold_hash"] = fold_hash(folds)
    summary["metadata"] = dataset.get("metadata")
    (output_path / "cv_summary.json").write_text(json.dumps(_to_serializable(summary), indent=2), encoding="utf-8")

    if bool(exp_cfg.get("save_plot", False)):
        _save_plots(output_path, result, beta_true)

    return _to_serializable(metrics)
