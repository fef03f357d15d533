import numpy as np
import pytest

from scintegrate.preprocessing import (
    find_hvgs,
    normalize_and_log,
    regress_and_scale,
    run_pca,
    standard_preprocess,
    subset_to_hvgs,
    to_dense,
)


def test_standard_preprocess_layers(counts_adata):
    raw = counts_adata.X.copy()

    adata = standard_preprocess(counts_adata, n_hvgs=40, n_pcs=10)

    assert adata.n_vars == 40
    assert adata.n_obs == counts_adata.n_obs
    assert set(adata.layers.keys()) >= {"counts", "logcounts"}
    assert adata.obsm["X_pca"].shape == (adata.n_obs, 10)

    genes = counts_adata.var_names.get_indexer(adata.var_names)
    np.testing.assert_array_equal(to_dense(adata.layers["counts"]), raw[:, genes])
    np.testing.assert_allclose(to_dense(adata.layers["logcounts"]), to_dense(adata.X))


def test_normalize_and_log_copy(counts_adata):
    result = normalize_and_log(counts_adata, target_sum=1e4, copy=True)

    assert "logcounts" in result.layers
    assert "logcounts" not in counts_adata.layers
    totals = np.expm1(to_dense(result.X)).sum(axis=1)
    np.testing.assert_allclose(totals, 1e4, rtol=1e-3)


def test_find_hvgs_clips_to_gene_count(counts_adata):
    normalize_and_log(counts_adata)

    find_hvgs(counts_adata, n_top_genes=500)

    assert counts_adata.var["highly_variable"].sum() <= counts_adata.n_vars


def test_subset_to_hvgs_requires_annotation(counts_adata):
    with pytest.raises(ValueError, match="find_hvgs"):
        subset_to_hvgs(counts_adata)


def test_run_pca_clips_components(counts_adata):
    small = counts_adata[:8].copy()
    normalize_and_log(small)

    run_pca(small, n_comps=30)

    assert small.obsm["X_pca"].shape == (8, 7)


def test_standard_preprocess_scaled_keeps_logcounts(counts_adata):
    adata = standard_preprocess(counts_adata, n_hvgs=40, n_pcs=5, scale=True)

    X = to_dense(adata.X)
    np.testing.assert_allclose(X.mean(axis=0), 0, atol=0.05)
    assert to_dense(adata.layers["logcounts"]).min() >= 0


def test_regress_and_scale_unknown_covariate(counts_adata):
    with pytest.raises(ValueError, match="total_counts"):
        regress_and_scale(counts_adata, regress_vars=["total_counts"])
