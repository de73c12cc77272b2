from __future__ import annotations

import json

import numpy as np
import numpy.testing as npt
import pandas as pd
import pytest

from data.loaders import load_dataset


def _write_basic(tmp_path, n=8, p=3):
    rng = np.random.default_rng(0)
    X = rng.normal(size=(n, p))
    y = rng.normal(size=n)
    np.save(tmp_path / "X.npy", X)
    np.save(tmp_path / "y.npy", y)
    return X, y


def test_load_npy_with_relative_paths_and_intercept(tmp_path):
    X, y = _write_basic(tmp_path)
    cov = np.arange(8.0)
    pd.DataFrame({"age": cov}).to_csv(tmp_path / "z.csv", index=False)
    data = load_dataset({"path_X": "X.npy", "path_y": "y.npy", "path_z": "z.csv", "study": "demo"}, base_dir=tmp_path)
    npt.assert_allclose(data.X, X)
    npt.assert_allclose(data.y, y)
    assert data.z.shape == (8, 2)
    npt.assert_array_equal(data.z[:, 0], 1.0)
    npt.assert_allclose(data.z[:, 1], cov)
    assert data.metadata["study"] == "demo"
    assert not data.genotype


def test_memory_mapped_genotypes(tmp_path):
    G = np.array([[0, 1, 2], [2, -1, 0], [1, 1, 1], [0, 0, 2]], dtype=np.int8)
    np.save(tmp_path / "G.npy", G)
    np.save(tmp_path / "y.npy", np.zeros(4))
    data = load_dataset({"path_X": "G.npy", "path_y": "y.npy", "genotype": True, "mmap": True}, base_dir=tmp_path)
    assert isinstance(data.X, np.memmap)
    assert data.genotype
    npt.assert_array_equal(np.asarray(data.X), G)


def test_group_map_requires_feature_names(tmp_path):
    _write_basic(tmp_path)
    (tmp_path / "names.txt").write_text("a\nb\nc\n", encoding="utf-8")
    (tmp_path / "groups.json").write_text(json.dumps({"a": 1, "b": 1, "c": 2}), encoding="utf-8")
    cfg = {"path_X": "X.npy", "path_y": "y.npy", "path_group_map": "groups.json"}
    with pytest.raises(ValueError):
        load_dataset(cfg, base_dir=tmp_path)
    data = load_dataset({**cfg, "path_feature_names": "names.txt"}, base_dir=tmp_path)
    npt.assert_array_equal(data.group, [1, 1, 2])
    assert data.feature_names == ["a", "b", "c"]


def test_weights_and_truth_lengths_are_checked(tmp_path):
    _write_basic(tmp_path)
    np.save(tmp_path / "w.npy", np.ones(2))
    with pytest.raises(ValueError):
        load_dataset({"path_X": "X.npy", "path_y": "y.npy", "path_weights": "w.npy"}, base_dir=tmp_path)
    np.savez(tmp_path / "truth.npz", beta=np.array([0.0, 1.0, 0.0]))
    data = load_dataset({"path_X": "X.npy", "path_y": "y.npy", "beta_path": "truth.npz"}, base_dir=tmp_path)
    npt.assert_allclose(data.beta, [0.0, 1.0, 0.0])


def test_missing_inputs_raise(tmp_path):
    with pytest.raises(ValueError):
        load_dataset({}, base_dir=tmp_path)
    with pytest.raises(FileNotFoundError):
        load_dataset({"path_X": "absent.npy", "path_y": "y.npy"}, base_dir=tmp_path)
    _write_basic(tmp_path)
    np.save(tmp_path / "short.npy", np.zeros(3))
    with pytest.raises(ValueError):
        load_dataset({"path_X": "X.npy", "path_y": "short.npy"}, base_dir=tmp_path)
