from __future__ import annotations

import pickle

import numpy as np
import numpy.testing as npt
import pytest

from data.preprocess import genotype_moments
from ihtcv.models.design import (
    DenseDesign,
    StandardizedGenotypes,
    as_design,
    pack_storage,
    support_indices,
)
from ihtcv.models.errors import ConfigurationError
from ihtcv.models.iht import fit_iht


def _genotypes(seed: int = 0, n: int = 30, p: int = 12, missing: bool = True) -> np.ndarray:
    rng = np.random.default_rng(seed)
    G = rng.binomial(2, rng.uniform(0.1, 0.5, size=p), size=(n, p)).astype(np.int8)
    if missing:
        G[rng.random((n, p)) < 0.05] = -1
    return G


def _dense_reference(G: np.ndarray) -> np.ndarray:
    moments = genotype_moments(G)
    vals = np.where(G == -1, moments.mean, G).astype(float)
    return (vals - moments.mean) / moments.scale


@pytest.mark.parametrize("chunk_size", [None, 4, 100])
def test_dense_design_products_match_numpy(chunk_size):
    rng = np.random.default_rng(1)
    X = rng.normal(size=(25, 8))
    design = DenseDesign(X, chunk_size=chunk_size)
    v = rng.normal(size=8)
    r = rng.normal(size=25)
    npt.assert_allclose(design.matvec(v), X @ v)
    npt.assert_allclose(design.rmatvec(r), X.T @ r)
    mask = np.zeros(8, dtype=bool)
    mask[[1, 5]] = True
    npt.assert_allclose(design.matvec(v, mask), X[:, mask] @ v[mask])
    npt.assert_allclose(design.columns(mask), X[:, [1, 5]])


def test_empty_support_gives_zero_image():
    design = DenseDesign(np.ones((4, 3)))
    npt.assert_array_equal(design.matvec(np.ones(3), np.zeros(3, dtype=bool)), np.zeros(4))


def test_dense_design_casts_to_requested_dtype():
    design = DenseDesign(np.arange(6).reshape(3, 2), dtype="float32")
    assert design.dtype == np.float32
    assert design.matvec(np.ones(2)).dtype == np.float32


@pytest.mark.parametrize("chunk_size", [1, 5, 1024])
def test_standardized_genotypes_agree_with_dense_reference(chunk_size):
    G = _genotypes()
    ref = _dense_reference(G)
    design = StandardizedGenotypes(G, chunk_size=chunk_size)
    rng = np.random.default_rng(2)
    v = rng.normal(size=G.shape[1])
    r = rng.normal(size=G.shape[0])
    npt.assert_allclose(design.matvec(v), ref @ v, atol=1e-10)
    npt.assert_allclose(design.rmatvec(r), ref.T @ r, atol=1e-10)
    npt.assert_allclose(design.columns(np.array([0, 3])), ref[:, [0, 3]], atol=1e-12)
    # standardized columns are centred
    npt.assert_allclose(ref.mean(axis=0), 0.0, atol=1e-10)


def test_standardized_genotypes_reject_float_storage():
    with pytest.raises(ConfigurationError):
        StandardizedGenotypes(np.zeros((3, 2)))


def test_rebind_keeps_parent_moments():
    G = _genotypes(missing=False)
    design = StandardizedGenotypes(G)
    rows = np.arange(0, 30, 3)
    sub = design.rebind(design.take_rows(rows))
    ref = _dense_reference(G)[rows]
    assert sub.moments is design.moments
    npt.assert_allclose(sub.columns(np.arange(G.shape[1])), ref, atol=1e-12)


def test_memmap_designs_pickle_by_path(tmp_path):
    rng = np.random.default_rng(3)
    X = rng.normal(size=(10, 4))
    path = tmp_path / "X.npy"
    np.save(path, X)
    design = DenseDesign.from_file(path, chunk_size=3)
    assert isinstance(design.storage, np.memmap)
    assert pack_storage(design.storage) is not design.storage

    clone = pickle.loads(pickle.dumps(design))
    assert isinstance(clone.storage, np.memmap)
    assert clone.chunk_size == 3
    npt.assert_allclose(clone.matvec(np.ones(4)), X.sum(axis=1))


def test_as_design_passes_design_objects_through():
    design = DenseDesign(np.eye(3))
    assert as_design(design) is design
    assert isinstance(as_design(np.eye(2)), DenseDesign)


def test_as_design_rejects_precision_mismatch():
    G = _genotypes(missing=False)
    design = StandardizedGenotypes(G)
    assert as_design(design, dtype="float64") is design
    with pytest.raises(ConfigurationError):
        as_design(design, dtype="float32")
    narrow = StandardizedGenotypes(G, dtype="float32")
    assert as_design(narrow, dtype=np.float32) is narrow
    y = np.random.default_rng(1).normal(size=G.shape[0])
    with pytest.raises(ConfigurationError):
        fit_iht(y, design, k=2, dtype="float32")


def test_support_indices_validates_mask_length():
    npt.assert_array_equal(support_indices(np.array([True, False, True]), 3), [0, 2])
    with pytest.raises(ConfigurationError):
        support_indices(np.array([True, False]), 3)
