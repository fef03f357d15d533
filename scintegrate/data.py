"""
Dataset loading and cell selection for the integration tutorials.

The tutorials use the interferon-beta stimulation PBMC dataset of
Kang et al. (2018): cells from several subjects, each measured in a
control and a stimulated condition. Any h5ad file with a condition,
subject and cell type column works; dataset-specific column names are
mapped onto the canonical ``condition``/``subject``/``cell_type`` keys.
"""

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence


CANONICAL_KEYS = ("condition", "subject", "cell_type")

# Public datasets: name -> pertpy.data accessor
PUBLIC_DATASETS = {
    "kang2018": "kang_2018",
}


def fetch_dataset(name: str) -> AnnData:
    """
    Download a public dataset through its ``pertpy.data`` accessor.

    pertpy is an optional dependency (``pip install pertpy``); it caches
    the download, so repeated calls are cheap.
    """
    if name not in PUBLIC_DATASETS:
        raise ValueError(
            f"Unknown dataset '{name}'. Available: {sorted(PUBLIC_DATASETS)}"
        )

    try:
        import pertpy
    except ImportError:
        raise ImportError(
            f"Fetching '{name}' needs the optional pertpy package: pip install pertpy"
        )

    print(f"Fetching {name} with pertpy.data.{PUBLIC_DATASETS[name]}()...")
    return getattr(pertpy.data, PUBLIC_DATASETS[name])()


def load_dataset(
    path: str,
    backup_url: Optional[str] = None,
    obs_rename: Optional[Dict[str, str]] = None,
    required_keys: Sequence[str] = CANONICAL_KEYS,
    dataset: Optional[str] = None,
) -> AnnData:
    """
    Load an h5ad file and harmonize its cell metadata.

    Parameters
    ----------
    path : str
        Path to the h5ad file.
    backup_url : str, optional
        URL to download the file from if ``path`` does not exist.
    obs_rename : dict, optional
        Mapping from dataset column names to canonical names,
        e.g. ``{'label': 'condition', 'replicate': 'subject'}``.
    required_keys : sequence of str
        Columns that must be present in .obs after renaming.
    dataset : str, optional
        Public dataset name (see ``PUBLIC_DATASETS``). If ``path`` does
        not exist, the dataset is fetched and written to ``path``.

    Returns
    -------
    AnnData
        Dataset with required obs columns cast to categorical.
    """
    if dataset is not None and backup_url is not None:
        raise ValueError("Pass either dataset or backup_url, not both")

    print(f"Loading {path}...")
    if dataset is not None and not Path(path).exists():
        adata = fetch_dataset(dataset)
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        adata.write_h5ad(path)
    elif backup_url is not None and not Path(path).exists():
        adata = sc.read(path, backup_url=backup_url)
    else:
        adata = sc.read_h5ad(path)
    adata.obs_names_make_unique()
    adata.var_names_make_unique()

    if obs_rename:
        unknown = [k for k in obs_rename if k not in adata.obs.columns]
        if unknown:
            raise ValueError(f"Columns to rename not found in adata.obs: {unknown}")
        adata.obs = adata.obs.rename(columns=obs_rename)

    missing = [k for k in required_keys if k not in adata.obs.columns]
    if missing:
        raise ValueError(
            f"Required columns not found in adata.obs: {missing}. "
            f"Available: {list(adata.obs.columns)}"
        )

    for key in required_keys:
        adata.obs[key] = adata.obs[key].astype("category")

    print(f"  Shape: {adata.shape}")
    if "condition" in adata.obs.columns:
        for condition, count in adata.obs["condition"].value_counts().items():
            print(f"    {condition}: {count}")

    return adata


def filter_obs(adata: AnnData, key: str, keep: Iterable) -> AnnData:
    """
    Keep only cells whose ``key`` value is in ``keep``.

    Returns a copy.
    """
    if key not in adata.obs.columns:
        raise ValueError(f"Column '{key}' not found in adata.obs")

    keep = list(keep)
    mask = adata.obs[key].isin(keep).to_numpy()
    print(f"Filtering on {key} in {keep}: {adata.n_obs} -> {int(mask.sum())} cells")
    adata = adata[mask].copy()

    if isinstance(adata.obs[key].dtype, pd.CategoricalDtype):
        adata.obs[key] = adata.obs[key].cat.remove_unused_categories()

    return adata


def filter_cells_and_genes(
    adata: AnnData,
    min_genes: int = 0,
    min_cells: int = 0,
) -> None:
    """
    Remove cells with fewer than ``min_genes`` detected genes and genes
    detected in fewer than ``min_cells`` cells (in place).
    """
    n_obs, n_vars = adata.shape
    if min_genes > 0:
        sc.pp.filter_cells(adata, min_genes=min_genes)
    if min_cells > 0:
        sc.pp.filter_genes(adata, min_cells=min_cells)
    print(f"  Cells: {n_obs} -> {adata.n_obs}, genes: {n_vars} -> {adata.n_vars}")


def downsample_cells(
    adata: AnnData,
    n_cells: int,
    stratify_key: Optional[str] = None,
    seed: int = 42,
) -> AnnData:
    """
    Randomly downsample to a target cell count.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    n_cells : int
        Target total cell count. Datasets that are already smaller are
        returned unchanged (as a copy).
    stratify_key : str, optional
        If given, each stratum (e.g. condition) keeps its share of cells;
        shares are rounded so that exactly n_cells are returned, and
        strata too small for a share may be dropped.
    seed : int
        Random seed.

    Returns
    -------
    AnnData
        Downsampled copy, cells in their original order.
    """
    if n_cells >= adata.n_obs:
        print(f"  {adata.n_obs} cells (no downsampling needed)")
        return adata.copy()

    rng = np.random.default_rng(seed)

    if stratify_key is None:
        indices = rng.choice(adata.n_obs, size=n_cells, replace=False)
    else:
        if stratify_key not in adata.obs.columns:
            raise ValueError(f"Column '{stratify_key}' not found in adata.obs")
        labels = adata.obs[stratify_key].to_numpy()
        strata = pd.unique(labels)
        sizes = np.array([(labels == label).sum() for label in strata])

        # Largest-remainder allocation: shares sum to exactly n_cells
        quotas = n_cells * sizes / adata.n_obs
        targets = np.floor(quotas).astype(int)
        remainder = n_cells - targets.sum()
        targets[np.argsort(-(quotas - targets), kind="stable")[:remainder]] += 1

        indices = []
        for label, target in zip(strata, targets):
            label_idx = np.where(labels == label)[0]
            indices.extend(rng.choice(label_idx, size=target, replace=False))
        indices = np.asarray(indices, dtype=int)

    indices = np.sort(indices)
    print(f"  {adata.n_obs} -> {len(indices)} cells")
    return adata[indices].copy()


def summarize_design(
    adata: AnnData,
    condition_key: str = "condition",
    subject_key: str = "subject",
) -> pd.DataFrame:
    """Cell counts per subject (rows) and condition (columns)."""
    for key in (condition_key, subject_key):
        if key not in adata.obs.columns:
            raise ValueError(f"Column '{key}' not found in adata.obs")
    return pd.crosstab(adata.obs[subject_key], adata.obs[condition_key])
