import numpy as np
import pytest

from scintegrate.evaluation import compute_condition_entropy
from scintegrate.integration import (
    compute_neighbors_and_umap,
    find_mutual_nn,
    harmony_embedding,
    mnn_correct_pair,
    run_harmony,
    run_leiden_clustering,
    run_mnn,
    run_scanorama,
)


def test_run_harmony(processed_adata):
    result = run_harmony(processed_adata, "condition", theta=2)

    assert result.shape == processed_adata.obsm["X_pca"].shape
    assert np.isfinite(result).all()
    np.testing.assert_array_equal(processed_adata.obsm["X_harmony"], result)


def test_run_harmony_improves_mixing(processed_adata):
    run_harmony(processed_adata, "condition", theta=2)

    before = compute_condition_entropy(processed_adata, "condition", "X_pca", n_neighbors=15)
    after = compute_condition_entropy(processed_adata, "condition", "X_harmony", n_neighbors=15)

    assert after > before


def test_harmony_embedding_label_mismatch():
    with pytest.raises(ValueError):
        harmony_embedding(np.zeros((10, 3)), ["a"] * 9)


def test_run_harmony_missing_keys(processed_adata):
    with pytest.raises(ValueError, match="Batch key"):
        run_harmony(processed_adata, "batch")
    with pytest.raises(ValueError, match="Embedding"):
        run_harmony(processed_adata, "condition", use_rep="X_scvi")


def test_find_mutual_nn_identical_sets():
    points = np.arange(20, dtype=float).reshape(10, 2)

    ref_idx, target_idx = find_mutual_nn(points, points, k=1)

    np.testing.assert_array_equal(np.sort(ref_idx), np.arange(10))
    np.testing.assert_array_equal(ref_idx, target_idx)


def test_mnn_correct_pair_removes_shift():
    grid = np.array([[i, j] for i in range(5) for j in range(5)], dtype=float)
    shifted = grid + np.array([0.1, -0.1])

    corrected, n_pairs = mnn_correct_pair(grid, shifted, k=1, sigma=1.0)

    assert n_pairs == len(grid)
    np.testing.assert_allclose(corrected, grid, atol=1e-8)


def test_run_mnn_keeps_reference_batch(processed_adata):
    corrected = run_mnn(
        processed_adata, "condition", k=10, batch_order=["ctrl", "stim"], cos_norm=False
    )

    ctrl = (processed_adata.obs["condition"] == "ctrl").to_numpy()
    assert corrected.shape == processed_adata.obsm["X_pca"].shape
    np.testing.assert_allclose(corrected[ctrl], processed_adata.obsm["X_pca"][ctrl])
    assert "X_mnn" in processed_adata.obsm


def test_run_mnn_invalid_batch_order(processed_adata):
    with pytest.raises(ValueError, match="batch_order"):
        run_mnn(processed_adata, "condition", batch_order=["ctrl"])


def test_run_mnn_needs_two_batches(processed_adata):
    adata = processed_adata[processed_adata.obs["condition"] == "ctrl"].copy()

    with pytest.raises(ValueError, match="two batches"):
        run_mnn(adata, "condition")


def test_compute_neighbors_and_umap_suffix(processed_adata):
    compute_neighbors_and_umap(processed_adata, "X_pca", n_neighbors=10, key_added_suffix="pca")

    assert processed_adata.obsm["X_umap_pca"].shape == (processed_adata.n_obs, 2)
    assert "neighbors_pca" in processed_adata.uns


def test_run_leiden_clustering(processed_adata):
    pytest.importorskip("leidenalg")
    compute_neighbors_and_umap(processed_adata, "X_pca", n_neighbors=10, key_added_suffix="pca")

    keys = run_leiden_clustering(
        processed_adata, resolutions=[0.3, 1.0], neighbors_key="neighbors_pca"
    )

    assert keys == ["leiden_0.3", "leiden_1.0"]
    for key in keys:
        assert processed_adata.obs[key].nunique() >= 1


def test_run_scanorama(processed_adata):
    pytest.importorskip("scanorama")

    result = run_scanorama(processed_adata, "condition")

    assert result.shape[0] == processed_adata.n_obs
