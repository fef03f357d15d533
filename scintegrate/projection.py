"""
Manual subspace projection for two or more conditions.

Each condition is centered by its own mean, a low-rank basis is
computed from one reference condition, and every condition's centered
data is projected onto that basis. Removing the per-condition means
takes out the global shift between conditions; the shared basis makes
the coordinates comparable. The result is asymmetric: choosing the
other condition as reference gives a different embedding.
"""

import numpy as np
import pandas as pd
from anndata import AnnData
from typing import Dict, Optional, Tuple

from .preprocessing import to_dense


def center_by_condition(
    X: np.ndarray,
    conditions: np.ndarray,
) -> Tuple[np.ndarray, Dict[str, np.ndarray]]:
    """
    Subtract each condition's gene-wise mean.

    Parameters
    ----------
    X : np.ndarray
        Cells x genes matrix.
    conditions : np.ndarray
        Condition label per cell.

    Returns
    -------
    centered : np.ndarray
        Cells x genes matrix with zero mean within every condition.
    means : dict
        Gene-wise mean per condition.
    """
    X = to_dense(X)
    conditions = np.asarray(conditions)
    if len(conditions) != X.shape[0]:
        raise ValueError(
            f"Got {len(conditions)} condition labels for {X.shape[0]} cells"
        )

    centered = np.empty_like(X)
    means = {}
    for condition in pd.unique(conditions):
        mask = conditions == condition
        means[condition] = X[mask].mean(axis=0)
        centered[mask] = X[mask] - means[condition]

    return centered, means


def reference_basis(
    centered: np.ndarray,
    conditions: np.ndarray,
    reference: str,
    n_comps: int = 30,
) -> np.ndarray:
    """
    Orthonormal low-rank basis (genes x n_comps) of the reference condition.

    The basis holds the top right singular vectors of the reference
    condition's centered data.
    """
    conditions = np.asarray(conditions)
    mask = conditions == reference
    if not mask.any():
        raise ValueError(
            f"Reference condition '{reference}' not found. "
            f"Available: {list(pd.unique(conditions))}"
        )

    ref = centered[mask]
    rank = np.linalg.matrix_rank(ref)
    if n_comps > rank:
        raise ValueError(
            f"n_comps={n_comps} exceeds the rank {rank} of the centered "
            f"reference condition '{reference}'"
        )

    _, _, vt = np.linalg.svd(ref, full_matrices=False)
    return vt[:n_comps].T


def manual_projection(
    adata: AnnData,
    condition_key: str,
    reference: str,
    n_comps: int = 30,
    layer: Optional[str] = "logcounts",
    key_added: str = "X_projection",
) -> np.ndarray:
    """
    Project all conditions onto the principal subspace of a reference.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with log-transformed expression.
    condition_key : str
        Column in .obs with condition labels.
    reference : str
        Condition whose centered data defines the basis.
    n_comps : int
        Dimension of the projection.
    layer : str, optional
        Layer with log-transformed values. None uses .X.
    key_added : str
        Key in .obsm for the projected coordinates. The basis is stored
        in .varm[key_added] and the settings in .uns[key_added].

    Returns
    -------
    np.ndarray
        Projected coordinates (n_cells x n_comps).
    """
    if condition_key not in adata.obs.columns:
        raise ValueError(f"Condition key '{condition_key}' not found in adata.obs")
    if layer is not None and layer not in adata.layers:
        raise ValueError(f"Layer '{layer}' not found in adata.layers")

    X = adata.layers[layer] if layer is not None else adata.X
    conditions = adata.obs[condition_key].astype(str).to_numpy()

    centered, _ = center_by_condition(X, conditions)
    basis = reference_basis(centered, conditions, str(reference), n_comps=n_comps)
    projected = centered @ basis

    adata.obsm[key_added] = projected
    adata.varm[key_added] = basis
    adata.uns[key_added] = {
        "reference": str(reference),
        "condition_key": condition_key,
        "n_comps": n_comps,
    }

    return projected
