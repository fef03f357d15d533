"""
Visualization utilities for the integration tutorials.

Provides UMAP plots colored by metadata or by continuous values such as
predicted differential expression, method comparisons, condition
composition, DE neighborhoods and volcano plots.
"""

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import scanpy as sc
from anndata import AnnData
from typing import Optional, List, Dict, Sequence, Tuple
from pathlib import Path


def _save(fig: plt.Figure, save_path: Optional[str]) -> None:
    if save_path:
        Path(save_path).parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(save_path, dpi=150, bbox_inches="tight")


def _strip_axes(ax: plt.Axes, basis_label: str = "UMAP") -> None:
    ax.set_xlabel(f"{basis_label} 1")
    ax.set_ylabel(f"{basis_label} 2")
    ax.set_xticks([])
    ax.set_yticks([])


def plot_umap_grid(
    adata: AnnData,
    color_keys: List[str],
    basis: str = "X_umap",
    ncols: int = 3,
    panel_size: float = 4,
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
    **kwargs,
) -> plt.Figure:
    """
    One ``sc.pl.embedding`` panel per obs column or gene in ``color_keys``.

    Extra keyword arguments go to ``sc.pl.embedding``; unused grid cells
    are hidden.
    """
    ncols = min(ncols, len(color_keys))
    nrows = -(-len(color_keys) // ncols)

    fig, axes = plt.subplots(
        nrows, ncols, figsize=(panel_size * ncols, panel_size * nrows), squeeze=False
    )
    axes = axes.ravel()

    for ax, color in zip(axes, color_keys):
        sc.pl.embedding(
            adata, basis=basis, color=color, ax=ax, show=False, palette=palette, **kwargs
        )
    for ax in axes[len(color_keys):]:
        ax.set_visible(False)

    fig.tight_layout()
    _save(fig, save_path)
    return fig


def plot_method_comparison(
    adata: AnnData,
    embeddings: Dict[str, str],
    color_by: str,
    ncols: int = 2,
    figsize: Optional[Tuple[float, float]] = None,
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
    point_size: float = 1,
    **kwargs,
) -> plt.Figure:
    """
    Side-by-side comparison of embeddings from several integration methods.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with multiple 2-D embeddings.
    embeddings : dict
        Mapping from method name to obsm key
        (e.g., {'Harmony': 'X_umap_harmony', 'MNN': 'X_umap_mnn'}).
    color_by : str
        Column in .obs to color points by.
    ncols : int
        Number of columns.
    figsize : tuple, optional
        Figure size.
    save_path : str, optional
        Path to save figure.
    palette : dict, optional
        Color palette for categorical values.
    point_size : float
        Size of points.
    **kwargs
        Additional arguments passed to ax.scatter.

    Returns
    -------
    matplotlib.figure.Figure
    """
    methods = list(embeddings.keys())
    n_methods = len(methods)
    ncols = min(ncols, n_methods)
    nrows = int(np.ceil(n_methods / ncols))

    if figsize is None:
        figsize = (5 * ncols, 5 * nrows)

    fig, axes = plt.subplots(nrows, ncols, figsize=figsize, squeeze=False)
    axes = axes.flatten()

    colors = adata.obs[color_by]
    categorical = isinstance(colors.dtype, pd.CategoricalDtype) or colors.dtype == object
    if categorical:
        unique_vals = list(pd.unique(colors))
        if palette is None:
            cmap = plt.get_cmap("tab20", max(len(unique_vals), 1))
            palette = {v: cmap(j) for j, v in enumerate(unique_vals)}
        point_colors = [palette.get(v, "#999999") for v in colors]

    for i, method in enumerate(methods):
        ax = axes[i]
        embed_key = embeddings[method]

        if embed_key not in adata.obsm:
            ax.set_title(f"{method}\n(embedding not found)")
            ax.axis("off")
            continue

        coords = np.asarray(adata.obsm[embed_key])
        if categorical:
            ax.scatter(
                coords[:, 0], coords[:, 1],
                c=point_colors, s=point_size, alpha=0.6, **kwargs,
            )
        else:
            scatter = ax.scatter(
                coords[:, 0], coords[:, 1],
                c=colors, s=point_size, alpha=0.6, cmap="viridis", **kwargs,
            )
            fig.colorbar(scatter, ax=ax)

        ax.set_title(method)
        _strip_axes(ax)

    if categorical:
        handles = [
            plt.Line2D([], [], marker="o", linestyle="", color=palette.get(v, "#999999"), label=str(v))
            for v in unique_vals
        ]
        axes[n_methods - 1].legend(
            handles=handles, title=color_by, bbox_to_anchor=(1.02, 1), loc="upper left"
        )

    for i in range(n_methods, len(axes)):
        axes[i].axis("off")

    fig.tight_layout()
    _save(fig, save_path)
    return fig


def plot_condition_distribution(
    adata: AnnData,
    condition_key: str,
    group_key: str,
    normalize: bool = True,
    figsize: Tuple[float, float] = (10, 6),
    save_path: Optional[str] = None,
    palette: Optional[Dict[str, str]] = None,
) -> plt.Figure:
    """
    Stacked bars of the condition composition of every group.

    Groups are clusters or cell types; numeric cluster ids are ordered
    numerically. With ``normalize`` each bar sums to one.
    """
    composition = pd.crosstab(
        adata.obs[group_key],
        adata.obs[condition_key],
        normalize="index" if normalize else False,
    )
    labels = [str(g) for g in composition.index]
    if all(label.isdigit() for label in labels):
        composition = composition.iloc[np.argsort([int(label) for label in labels])]
    else:
        composition = composition.sort_index()

    colors = None
    if palette:
        colors = [palette.get(c, "#999999") for c in composition.columns]

    fig, ax = plt.subplots(figsize=figsize)
    composition.plot(kind="bar", stacked=True, ax=ax, color=colors)
    ax.set_xlabel(group_key)
    ax.set_ylabel("Fraction of cells" if normalize else "Cells")
    ax.set_title(f"{condition_key} per {group_key}")
    ax.legend(title=condition_key, bbox_to_anchor=(1.02, 1), loc="upper left")

    fig.tight_layout()
    _save(fig, save_path)
    return fig


def plot_metrics_comparison(
    metrics_df: pd.DataFrame,
    figsize: Tuple[float, float] = (10, 5),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """One bar panel per metric column, methods on the x axis."""
    fig, axes = plt.subplots(1, metrics_df.shape[1], figsize=figsize, squeeze=False)

    for ax, (metric, values) in zip(axes[0], metrics_df.items()):
        ax.bar([str(m) for m in values.index], values.to_numpy(), color="#4C72B0")
        ax.set_title(metric)
        ax.tick_params(axis="x", rotation=45)

    axes[0, 0].set_ylabel("Score")
    fig.tight_layout()
    _save(fig, save_path)
    return fig


def plot_embedding_values(
    adata: AnnData,
    values: np.ndarray,
    basis: str = "X_umap",
    title: str = "",
    symmetric: bool = True,
    cmap: str = "RdBu_r",
    point_size: float = 1,
    ax: Optional[plt.Axes] = None,
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Scatter a 2-D embedding colored by one continuous value per cell.

    With ``symmetric=True`` the color scale is centered at zero, which
    suits signed values such as predicted log fold changes.
    """
    values = np.asarray(values, dtype=float).ravel()
    if len(values) != adata.n_obs:
        raise ValueError(f"Got {len(values)} values for {adata.n_obs} cells")
    if basis not in adata.obsm:
        raise ValueError(f"Embedding '{basis}' not found in adata.obsm")

    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 5))
    else:
        fig = ax.figure

    coords = np.asarray(adata.obsm[basis])
    # Draw the largest absolute values on top
    order = np.argsort(np.abs(values))

    vlim = {}
    if symmetric:
        limit = np.nanmax(np.abs(values)) or 1.0
        vlim = {"vmin": -limit, "vmax": limit}

    scatter = ax.scatter(
        coords[order, 0], coords[order, 1],
        c=values[order], s=point_size, cmap=cmap, **vlim,
    )
    fig.colorbar(scatter, ax=ax)
    ax.set_title(title)
    _strip_axes(ax)

    _save(fig, save_path)
    return fig


def plot_neighborhood(
    adata: AnnData,
    cells: Sequence[str],
    basis: str = "X_umap",
    title: str = "",
    color: str = "#E41A1C",
    point_size: float = 1,
    ax: Optional[plt.Axes] = None,
    save_path: Optional[str] = None,
) -> plt.Figure:
    """Highlight a set of cells (e.g. a DE neighborhood) over a grey background."""
    if basis not in adata.obsm:
        raise ValueError(f"Embedding '{basis}' not found in adata.obsm")

    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 5))
    else:
        fig = ax.figure

    coords = np.asarray(adata.obsm[basis])
    mask = adata.obs_names.isin(cells)

    ax.scatter(
        coords[~mask, 0], coords[~mask, 1],
        c="#EEEEEE", s=point_size, alpha=0.5,
    )
    ax.scatter(
        coords[mask, 0], coords[mask, 1],
        c=color, s=point_size * 2, alpha=0.8,
        label=f"{int(mask.sum())} cells",
    )
    ax.set_title(title)
    _strip_axes(ax)
    ax.legend()

    _save(fig, save_path)
    return fig


def plot_volcano(
    results: pd.DataFrame,
    lfc_col: str = "lfc",
    pval_col: str = "pval",
    label_col: str = "name",
    n_labels: int = 10,
    alpha: float = 0.1,
    adj_pval_col: Optional[str] = "adj_pval",
    figsize: Tuple[float, float] = (6, 5),
    save_path: Optional[str] = None,
) -> plt.Figure:
    """
    Volcano plot of neighborhood DE results.

    Genes with ``adj_pval_col`` below ``alpha`` are drawn in red and the
    ``n_labels`` smallest p-values are labelled.
    """
    for col in (lfc_col, pval_col, label_col):
        if col not in results.columns:
            raise ValueError(f"Column '{col}' not found in results")

    df = results.dropna(subset=[lfc_col, pval_col])
    neg_log_p = -np.log10(df[pval_col].clip(lower=1e-300))

    significant = np.zeros(len(df), dtype=bool)
    if adj_pval_col is not None and adj_pval_col in df.columns:
        significant = (df[adj_pval_col] < alpha).to_numpy()

    fig, ax = plt.subplots(figsize=figsize)
    ax.scatter(df[lfc_col][~significant], neg_log_p[~significant], s=6, c="#999999")
    ax.scatter(df[lfc_col][significant], neg_log_p[significant], s=8, c="#E41A1C")

    for idx in df[pval_col].nsmallest(n_labels).index:
        ax.annotate(
            str(df.loc[idx, label_col]),
            (df.loc[idx, lfc_col], neg_log_p.loc[idx]),
            fontsize=7,
        )

    ax.axvline(0, color="black", linewidth=0.5)
    ax.set_xlabel("Log fold change")
    ax.set_ylabel("-log10(p-value)")

    fig.tight_layout()
    _save(fig, save_path)
    return fig
