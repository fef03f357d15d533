"""
Preprocessing utilities for condition integration tutorials.

Normalization, log transform, highly variable gene selection and PCA
following the scanpy workflow. All integration methods downstream start
from the log-transformed HVG matrix or its principal components.
"""

import numpy as np
import scanpy as sc
from anndata import AnnData
from scipy import sparse
from typing import Optional, List


def to_dense(matrix) -> np.ndarray:
    """Return ``matrix`` as a dense float64 numpy array."""
    if sparse.issparse(matrix):
        matrix = matrix.toarray()
    return np.asarray(matrix, dtype=np.float64)


def store_raw_counts(adata: AnnData, layer: str = "counts") -> None:
    """Keep a copy of the unnormalized counts in ``adata.layers[layer]``."""
    adata.layers[layer] = adata.X.copy()


def normalize_and_log(
    adata: AnnData,
    target_sum: Optional[float] = 1e4,
    layer_added: Optional[str] = "logcounts",
    copy: bool = False,
) -> Optional[AnnData]:
    """
    Scale every cell to ``target_sum`` total counts and take log1p.

    Parameters
    ----------
    adata : AnnData
        Cells x genes with raw counts in .X.
    target_sum : float, optional
        Counts per cell after normalization. None uses the median library size.
    layer_added : str, optional
        Layer that receives a copy of the log-normalized matrix.
    copy : bool
        Work on and return a copy.

    Returns
    -------
    AnnData or None
        The normalized copy when copy=True.
    """
    if copy:
        adata = adata.copy()

    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)

    if layer_added is not None:
        adata.layers[layer_added] = adata.X.copy()

    if copy:
        return adata


def find_hvgs(
    adata: AnnData,
    n_top_genes: int = 500,
    flavor: str = "seurat",
    batch_key: Optional[str] = None,
) -> None:
    """
    Flag the ``n_top_genes`` most variable genes in ``.var['highly_variable']``.

    ``n_top_genes`` is clipped to the number of genes. With ``batch_key``
    the genes are ranked within every batch and the rankings merged.
    """
    sc.pp.highly_variable_genes(
        adata,
        n_top_genes=min(n_top_genes, adata.n_vars),
        flavor=flavor,
        batch_key=batch_key,
    )


def subset_to_hvgs(adata: AnnData) -> AnnData:
    """Copy of ``adata`` restricted to the genes flagged by ``find_hvgs``."""
    if "highly_variable" not in adata.var.columns:
        raise ValueError("No 'highly_variable' column in adata.var; call find_hvgs() first")

    return adata[:, adata.var["highly_variable"].to_numpy()].copy()


def regress_and_scale(
    adata: AnnData,
    regress_vars: Optional[List[str]] = None,
    max_value: float = 10,
) -> None:
    """Optionally regress out obs covariates, then scale genes to unit variance (in place)."""
    if regress_vars:
        missing = [v for v in regress_vars if v not in adata.obs.columns]
        if missing:
            raise ValueError(f"Covariates to regress out not found in adata.obs: {missing}")
        sc.pp.regress_out(adata, regress_vars)

    sc.pp.scale(adata, max_value=max_value)


def run_pca(
    adata: AnnData,
    n_comps: int = 30,
    svd_solver: str = "arpack",
    random_state: int = 0,
) -> None:
    """
    PCA of the working matrix into ``.obsm['X_pca']``.

    The number of components is clipped to ``min(n_obs, n_vars) - 1``.
    Only highly variable genes are used when they are flagged.
    """
    n_comps = min(n_comps, adata.n_obs - 1, adata.n_vars - 1)
    mask_var = "highly_variable" if "highly_variable" in adata.var.columns else None

    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var=mask_var,
        svd_solver=svd_solver,
        random_state=random_state,
    )


def standard_preprocess(
    adata: AnnData,
    n_hvgs: int = 500,
    n_pcs: int = 30,
    target_sum: Optional[float] = 1e4,
    scale: bool = False,
    regress_vars: Optional[List[str]] = None,
    max_scale_value: float = 10,
    random_state: int = 0,
) -> AnnData:
    """
    Counts -> normalize/log -> HVGs -> (scale) -> PCA.

    The returned object is restricted to the highly variable genes and
    keeps the raw counts in ``layers['counts']`` and the log-normalized
    values in ``layers['logcounts']``. Scaling is off by default because
    the projection and LEMUR steps work on centered, unscaled log values.

    Parameters
    ----------
    adata : AnnData
        Cells x genes with raw counts in .X. Modified in place up to the
        HVG subsetting step.
    n_hvgs : int
        Number of highly variable genes to keep.
    n_pcs : int
        Number of principal components.
    target_sum : float, optional
        Counts per cell after normalization.
    scale : bool
        Scale genes to unit variance before PCA.
    regress_vars : list of str, optional
        Covariates to regress out before scaling (only with scale=True).
    max_scale_value : float
        Clip scaled values at this magnitude.
    random_state : int
        Seed for PCA.

    Returns
    -------
    AnnData
        HVG-subset AnnData with ``.obsm['X_pca']``.

    Example
    -------
    >>> adata = load_dataset("data/kang2018.h5ad")
    >>> adata = standard_preprocess(adata, n_hvgs=500, n_pcs=30)
    """
    if "counts" not in adata.layers:
        store_raw_counts(adata)

    normalize_and_log(adata, target_sum=target_sum)
    find_hvgs(adata, n_top_genes=n_hvgs)
    adata = subset_to_hvgs(adata)

    if scale:
        regress_and_scale(adata, regress_vars=regress_vars, max_value=max_scale_value)

    run_pca(adata, n_comps=n_pcs, random_state=random_state)

    return adata
