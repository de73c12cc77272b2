from __future__ import annotations

import json

import numpy as np
import pandas as pd
import pytest

from ihtcv.experiments.runner import ExperimentError, run_cv_experiment


def _config(**sections):
    cfg = {
        "name": "runner-test",
        "seed": 7,
        "data": {
            "type": "synthetic",
            "design": "genotype",
            "n": 150,
            "p": 120,
            "k": 3,
            "maf_range": [0.2, 0.5],
            "intercept": 0.2,
            "n_covariates": 1,
            "noise_sigma": 0.5,
            "effect": {"distribution": "constant", "value": 1.0},
        },
        "model": {"family": "normal"},
        "cv": {"axis": "path", "q": 3, "path": {"start": 1, "stop": 5}, "refit": True},
        "experiments": {"save_plot": False},
    }
    for key, value in sections.items():
        cfg[key] = {**cfg.get(key, {}), **value}
    return cfg


@pytest.mark.parametrize("axis", ["path", "fold"])
def test_synthetic_run_writes_artefacts(tmp_path, axis):
    metrics = run_cv_experiment(_config(cv={"axis": axis}), tmp_path)

    assert metrics["axis"] == axis
    assert metrics["best_k"] >= 3
    assert metrics["support"]["tpr"] == pytest.approx(1.0)
    assert (tmp_path / "folds.npy").exists()
    assert np.load(tmp_path / "folds.npy").shape == (150,)

    frame = pd.read_csv(tmp_path / "cv_errors.csv")
    assert list(frame["k"]) == [1, 2, 3, 4, 5]
    summary = json.loads((tmp_path / "cv_summary.json").read_text(encoding="utf-8"))
    assert summary["best_k"] == metrics["best_k"]
    assert len(summary["fold_hash"]) == 40
    assert summary["refit"]["k"] == metrics["best_k"]

    coefs = np.load(tmp_path / "refit_coefficients.npz")
    assert coefs["beta"].shape == (120,)
    assert coefs["c"].shape == (2,)
    np.testing.assert_array_equal(coefs["beta_unpenalized"] != 0, coefs["beta"] != 0)
    json.dumps(metrics)


def test_plots_and_maf_weights(tmp_path):
    cfg = _config(
        model={"family": "normal", "weight": "maf"},
        cv={"folds": "kfold", "path": [1, 2, 3]},
        experiments={"save_plot": True},
    )
    run_cv_experiment(cfg, tmp_path)
    assert (tmp_path / "cv_curve.png").exists()
    assert (tmp_path / "coefficients.png").exists()


def test_loader_dataset_run(tmp_path):
    rng = np.random.default_rng(0)
    X = rng.normal(size=(90, 15))
    beta = np.zeros(15)
    beta[[1, 7]] = [2.0, -2.0]
    y = X @ beta + 0.3 * rng.normal(size=90)
    np.save(tmp_path / "X.npy", X)
    np.save(tmp_path / "y.npy", y)
    np.save(tmp_path / "beta.npy", beta)
    cfg = {
        "data": {
            "type": "loader",
            "standardize": "unit_variance",
            "loader": {"path_X": "X.npy", "path_y": "y.npy", "beta_path": "beta.npy"},
        },
        "cv": {"q": 3, "path": [1, 2, 3, 4], "fold_seed": 1},
        "experiments": {"base_dir": str(tmp_path)},
    }
    metrics = run_cv_experiment(cfg, tmp_path / "out")
    assert metrics["support"]["n_overlap"] == 2


@pytest.mark.parametrize(
    "cfg",
    [
        {"data": {"type": "synthetic", "n": 10, "p": 5}},
        {"data": {"type": "database"}, "cv": {}},
        {"data": {"type": "synthetic", "n": 30, "p": 5}, "cv": {"axis": "diagonal"}},
        {"data": {"type": "synthetic", "n": 30, "p": 5}, "cv": {"folds": "leave-one-out"}},
    ],
)
def test_bad_configurations_raise_experiment_error(tmp_path, cfg):
    with pytest.raises(ExperimentError):
        run_cv_experiment(cfg, tmp_path)
