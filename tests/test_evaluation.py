import anndata as ad
import numpy as np
import pandas as pd
import pytest

from scintegrate.evaluation import (
    compare_integration_methods,
    compute_ari,
    compute_celltype_silhouette,
    compute_cluster_purity,
    compute_condition_entropy,
    compute_mixing_silhouette,
    summarize_integration_metrics,
)


def _make_embeddings(n=200, seed=0):
    """Two conditions x two cell types, with a 'separated' and a 'mixed' embedding."""
    rng = np.random.default_rng(seed)
    condition = np.array(["ctrl", "stim"] * (n // 2))
    cell_type = np.repeat(["A", "B"], n // 2)

    type_shift = np.where(cell_type == "B", 10.0, 0.0)[:, None]
    condition_shift = np.where(condition == "stim", 5.0, 0.0)[:, None]
    noise = rng.normal(size=(n, 2))

    obs = pd.DataFrame(
        {"condition": condition, "cell_type": cell_type, "cluster": cell_type},
        index=[f"c{i}" for i in range(n)],
    )
    adata = ad.AnnData(X=np.zeros((n, 1)), obs=obs)
    adata.obsm["X_mixed"] = noise + type_shift * np.array([1, 0])
    adata.obsm["X_separated"] = adata.obsm["X_mixed"] + condition_shift * np.array([0, 1])
    return adata


def test_mixing_silhouette_prefers_mixed():
    adata = _make_embeddings()

    mixed = compute_mixing_silhouette(adata, "condition", "X_mixed")
    separated = compute_mixing_silhouette(adata, "condition", "X_separated")

    assert mixed > separated
    assert 0 <= separated <= 2


def test_condition_entropy_range():
    adata = _make_embeddings()

    mixed = compute_condition_entropy(adata, "condition", "X_mixed", n_neighbors=20)
    separated = compute_condition_entropy(adata, "condition", "X_separated", n_neighbors=20)

    assert 0 <= separated < mixed <= 1


def test_condition_entropy_single_condition():
    adata = _make_embeddings()
    adata.obs["condition"] = "ctrl"

    assert compute_condition_entropy(adata, "condition", "X_mixed") == 0.0


def test_celltype_silhouette_high_for_separated_types():
    adata = _make_embeddings()

    score = compute_celltype_silhouette(adata, "cell_type", "X_mixed")

    assert 0.5 < score <= 1


def test_purity_and_ari_perfect_clusters():
    adata = _make_embeddings()

    assert compute_cluster_purity(adata, "cluster", "cell_type") == pytest.approx(1.0)
    assert compute_ari(adata, "cluster", "cell_type") == pytest.approx(1.0)


def test_summarize_integration_metrics_keys():
    adata = _make_embeddings()

    metrics = summarize_integration_metrics(
        adata, "condition", label_key="cell_type", cluster_key="cluster",
        use_rep="X_mixed", sample_size=100,
    )

    assert set(metrics) == {
        "condition_mixing", "condition_entropy", "celltype_silhouette",
        "cluster_purity", "ari",
    }


def test_compare_integration_methods_skips_missing():
    adata = _make_embeddings()

    df = compare_integration_methods(
        adata,
        "condition",
        {"Mixed": "X_mixed", "Separated": "X_separated", "scVI": "X_scvi"},
        label_key="cell_type",
    )

    assert list(df.index) == ["Mixed", "Separated"]
    assert df.loc["Mixed", "condition_mixing"] > df.loc["Separated", "condition_mixing"]


def test_missing_embedding_raises():
    adata = _make_embeddings()

    with pytest.raises(ValueError):
        compute_mixing_silhouette(adata, "condition", "X_scvi")
