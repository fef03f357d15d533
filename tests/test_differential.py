import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scintegrate.differential import (
    mark_neighborhood,
    pseudobulk,
    pseudobulk_neighborhood_test,
    rank_markers,
)
from scintegrate.preprocessing import to_dense


def _neighborhoods(adata, genes, cells=None):
    cells = list(adata.obs_names) if cells is None else list(cells)
    return pd.DataFrame({
        "name": genes,
        "neighborhood": [cells for _ in genes],
        "n_cells": [len(cells) for _ in genes],
    })


def test_pseudobulk_mean(processed_adata):
    result = pseudobulk(processed_adata, ["subject", "condition"])

    assert result.shape == (6, processed_adata.n_vars)
    X = to_dense(processed_adata.layers["logcounts"])
    mask = (
        (processed_adata.obs["subject"] == "s1") & (processed_adata.obs["condition"] == "ctrl")
    ).to_numpy()
    np.testing.assert_allclose(result.loc[("s1", "ctrl")].to_numpy(), X[mask].mean(axis=0))


def test_pseudobulk_sum_of_counts_for_subset(processed_adata):
    cells = processed_adata.obs_names[:40]

    result = pseudobulk(processed_adata, ["condition"], layer="counts", cells=cells, func="sum")

    assert list(result.index) == ["ctrl"]
    np.testing.assert_allclose(
        result.to_numpy()[0], to_dense(processed_adata[cells].layers["counts"]).sum(axis=0)
    )


def test_pseudobulk_missing_column(processed_adata):
    with pytest.raises(ValueError):
        pseudobulk(processed_adata, ["donor"])


def test_mark_neighborhood(processed_adata):
    cells = processed_adata.obs_names[:10]

    mark_neighborhood(processed_adata, cells)

    col = processed_adata.obs["in_neighborhood"]
    assert list(col.cat.categories) == ["inside", "outside"]
    assert (col == "inside").sum() == 10


def test_pseudobulk_neighborhood_test_columns(processed_adata):
    genes = list(processed_adata.var_names[:5])

    result = pseudobulk_neighborhood_test(
        processed_adata, _neighborhoods(processed_adata, genes), contrast=("stim", "ctrl")
    )

    for col in ("lfc", "did", "n_subjects", "pval", "adj_pval"):
        assert col in result.columns
    assert (result["n_subjects"] == 3).all()
    pvals = result["pval"].dropna().to_numpy()
    assert np.all(np.diff(pvals) >= 0)
    valid = result["pval"].notna()
    assert (result.loc[valid, "adj_pval"] >= result.loc[valid, "pval"] - 1e-12).all()


def test_pseudobulk_neighborhood_test_detects_stimulation(processed_adata):
    stim_genes = [g for g in (f"g{j}" for j in range(15, 20)) if g in processed_adata.var_names]
    assert stim_genes

    result = pseudobulk_neighborhood_test(
        processed_adata, _neighborhoods(processed_adata, stim_genes), contrast=("stim", "ctrl")
    )

    assert (result["lfc"] > 0).all()
    assert (result["pval"] < 0.05).all()


def test_pseudobulk_neighborhood_test_single_subject(processed_adata):
    cells = processed_adata.obs_names[(processed_adata.obs["subject"] == "s1").to_numpy()]
    genes = list(processed_adata.var_names[:3])

    result = pseudobulk_neighborhood_test(
        processed_adata, _neighborhoods(processed_adata, genes, cells), contrast=("stim", "ctrl")
    )

    assert (result["n_subjects"] == 1).all()
    assert result["pval"].isna().all()
    assert result["lfc"].notna().all()


def test_pseudobulk_neighborhood_test_unknown_condition(processed_adata):
    neighborhoods = _neighborhoods(processed_adata, list(processed_adata.var_names[:2]))

    with pytest.raises(ValueError, match="placebo"):
        pseudobulk_neighborhood_test(processed_adata, neighborhoods, contrast=("placebo", "ctrl"))


def test_rank_markers(processed_adata):
    markers = rank_markers(processed_adata, "cell_type")

    assert set(markers) == {"A", "B"}
    assert list(markers["B"].columns) == ["gene", "score", "logfoldchange", "pval", "pval_adj"]
    top = list(markers["B"]["gene"][:5])
    assert all(int(g[1:]) < 10 for g in top)


def test_pseudobulk_neighborhood_test_zero_variance_differences():
    subjects = ["s1", "s2", "s3"]
    obs = pd.DataFrame(
        [(s, c) for s in subjects for c in ("ctrl", "stim")],
        columns=["subject", "condition"],
        index=[f"cell{i}" for i in range(6)],
    )
    stim = (obs["condition"] == "stim").to_numpy()
    X = np.column_stack([
        np.where(stim, 2.5, 1.0),                 # same non-zero shift in every subject
        np.full(6, 3.0),                          # no shift
        [1.0, 2.0, 1.0, 3.5, 1.0, 2.2],           # shift varies between subjects
    ])
    adata = ad.AnnData(X=X, obs=obs, var=pd.DataFrame(index=["const", "flat", "noisy"]))

    result = pseudobulk_neighborhood_test(
        adata, _neighborhoods(adata, ["const", "flat", "noisy"]),
        contrast=("stim", "ctrl"), layer=None,
    ).set_index("name")

    assert result.loc["const", "lfc"] == pytest.approx(1.5)
    assert result.loc["const", "pval"] == 0.0
    assert result.loc["flat", "pval"] == 1.0
    assert 0 < result.loc["noisy", "pval"] < 1
    assert result["adj_pval"].notna().all()
