import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import pytest

from scintegrate.visualization import (
    plot_condition_distribution,
    plot_embedding_values,
    plot_method_comparison,
    plot_metrics_comparison,
    plot_neighborhood,
    plot_umap_grid,
    plot_volcano,
)


@pytest.fixture
def embedded(processed_adata):
    rng = np.random.default_rng(0)
    processed_adata.obsm["X_umap"] = rng.normal(size=(processed_adata.n_obs, 2))
    processed_adata.obsm["X_umap_harmony"] = rng.normal(size=(processed_adata.n_obs, 2))
    yield processed_adata
    plt.close("all")


def test_plot_umap_grid(embedded, tmp_path):
    path = tmp_path / "grid.png"

    fig = plot_umap_grid(embedded, ["condition", "cell_type"], save_path=str(path))

    assert isinstance(fig, plt.Figure)
    assert path.exists()


def test_plot_method_comparison_categorical(embedded):
    fig = plot_method_comparison(
        embedded, {"PCA": "X_umap", "Harmony": "X_umap_harmony"}, color_by="condition"
    )

    assert len(fig.axes) == 2
    assert fig.axes[1].get_legend() is not None


def test_plot_method_comparison_missing_embedding(embedded):
    fig = plot_method_comparison(
        embedded, {"PCA": "X_umap", "MNN": "X_umap_mnn"}, color_by="cell_type"
    )

    assert "not found" in fig.axes[1].get_title()


def test_plot_condition_distribution(embedded):
    fig = plot_condition_distribution(embedded, "condition", "cell_type")

    assert fig.axes[0].get_ylabel() == "Fraction of cells"


def test_plot_metrics_comparison(tmp_path):
    metrics = pd.DataFrame(
        {"condition_mixing": [0.2, 0.9], "celltype_silhouette": [0.8, 0.7]},
        index=pd.Index(["PCA", "Harmony"], name="method"),
    )
    path = tmp_path / "sub" / "metrics.png"

    fig = plot_metrics_comparison(metrics, save_path=str(path))

    assert len(fig.axes) == 2
    assert path.exists()


def test_plot_embedding_values_on_axis(embedded):
    fig, axes = plt.subplots(1, 2)
    values = np.linspace(-1, 1, embedded.n_obs)

    returned = plot_embedding_values(embedded, values, title="g1", ax=axes[1])

    assert returned is fig
    assert axes[1].get_title() == "g1"


def test_plot_embedding_values_length_mismatch(embedded):
    with pytest.raises(ValueError, match="values"):
        plot_embedding_values(embedded, np.zeros(3))


def test_plot_neighborhood(embedded):
    cells = embedded.obs_names[:25]

    fig = plot_neighborhood(embedded, cells, title="g1 neighborhood")

    labels = [t.get_text() for t in fig.axes[0].get_legend().get_texts()]
    assert labels == ["25 cells"]


def test_plot_volcano():
    results = pd.DataFrame({
        "name": [f"g{i}" for i in range(20)],
        "lfc": np.linspace(-2, 2, 20),
        "pval": np.linspace(1e-6, 1, 20),
        "adj_pval": np.linspace(1e-5, 1, 20),
    })
    results.loc[3, "pval"] = np.nan

    fig = plot_volcano(results, n_labels=5)

    assert len(fig.axes[0].texts) == 5


def test_plot_volcano_missing_column():
    with pytest.raises(ValueError, match="lfc"):
        plot_volcano(pd.DataFrame({"name": ["g1"], "pval": [0.1]}))
