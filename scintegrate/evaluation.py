"""
Evaluation metrics for condition integration quality.

Includes metrics for:
- Condition mixing (how well conditions overlap after integration)
- Biological conservation (how well cell types stay separated)
"""

import numpy as np
import pandas as pd
from anndata import AnnData
from scipy.stats import entropy
from sklearn.metrics import adjusted_rand_score, silhouette_score
from sklearn.neighbors import NearestNeighbors
from typing import Dict, Optional, Tuple


def _subsample(
    embedding: np.ndarray,
    labels: np.ndarray,
    sample_size: Optional[int],
    random_state: int,
) -> Tuple[np.ndarray, np.ndarray]:
    if sample_size is not None and sample_size < len(labels):
        rng = np.random.default_rng(random_state)
        idx = rng.choice(len(labels), sample_size, replace=False)
        return embedding[idx], labels[idx]
    return embedding, labels


def compute_mixing_silhouette(
    adata: AnnData,
    condition_key: str,
    use_rep: str,
    sample_size: Optional[int] = None,
    random_state: int = 0,
) -> float:
    """
    Silhouette-based condition mixing score.

    The silhouette of condition labels is high when conditions form
    separate clouds. We return 1 - silhouette so that higher = better
    mixing (range 0 to 2).

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    condition_key : str
        Column in .obs with condition labels.
    use_rep : str
        Key in .obsm with embedding to evaluate.
    sample_size : int, optional
        If provided, subsample cells for faster computation.
    random_state : int
        Random seed for subsampling.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    embedding, labels = _subsample(
        np.asarray(adata.obsm[use_rep]),
        adata.obs[condition_key].astype(str).to_numpy(),
        sample_size,
        random_state,
    )
    return 1 - silhouette_score(embedding, labels)


def compute_celltype_silhouette(
    adata: AnnData,
    label_key: str,
    use_rep: str,
    sample_size: Optional[int] = None,
    random_state: int = 0,
) -> float:
    """
    Silhouette of cell type labels, rescaled to 0-1 (higher = better
    separated cell types).
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    embedding, labels = _subsample(
        np.asarray(adata.obsm[use_rep]),
        adata.obs[label_key].astype(str).to_numpy(),
        sample_size,
        random_state,
    )
    return (silhouette_score(embedding, labels) + 1) / 2


def compute_cluster_purity(
    adata: AnnData,
    cluster_key: str,
    label_key: str,
) -> float:
    """
    Fraction of cells whose label is the majority label of their cluster.

    Range 0 to 1, higher indicates better biological conservation.
    """
    ct = pd.crosstab(adata.obs[cluster_key], adata.obs[label_key])
    return ct.max(axis=1).sum() / ct.to_numpy().sum()


def compute_ari(
    adata: AnnData,
    cluster_key: str,
    label_key: str,
) -> float:
    """Adjusted Rand Index between clusters and labels."""
    return adjusted_rand_score(
        adata.obs[label_key].astype(str).to_numpy(),
        adata.obs[cluster_key].astype(str).to_numpy(),
    )


def compute_condition_entropy(
    adata: AnnData,
    condition_key: str,
    use_rep: str,
    n_neighbors: int = 50,
    sample_size: Optional[int] = 5000,
    random_state: int = 0,
) -> float:
    """
    Mean condition entropy in local neighborhoods.

    Normalized by log2(n_conditions), so 1 means every neighborhood
    holds all conditions in equal proportion.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    condition_key : str
        Column in .obs with condition labels.
    use_rep : str
        Key in .obsm with embedding.
    n_neighbors : int
        Number of neighbors to consider for each cell.
    sample_size : int, optional
        Subsample query cells for faster computation.
    random_state : int
        Random seed.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    embedding = np.asarray(adata.obsm[use_rep])
    labels = adata.obs[condition_key].astype(str).to_numpy()
    conditions = np.unique(labels)
    max_entropy = np.log2(len(conditions))
    if max_entropy == 0:
        return 0.0

    query, _ = _subsample(embedding, labels, sample_size, random_state)

    n_neighbors = min(n_neighbors, len(labels) - 1)
    nn = NearestNeighbors(n_neighbors=n_neighbors + 1).fit(embedding)
    _, indices = nn.kneighbors(query)

    entropies = []
    for neighbor_idx in indices:
        # First neighbor is the cell itself
        neighbor_labels = labels[neighbor_idx[1:]]
        counts = np.array([(neighbor_labels == c).sum() for c in conditions])
        entropies.append(entropy(counts / counts.sum(), base=2))

    return float(np.mean(entropies) / max_entropy)


def summarize_integration_metrics(
    adata: AnnData,
    condition_key: str,
    label_key: Optional[str] = None,
    cluster_key: Optional[str] = None,
    use_rep: str = "X_pca",
    sample_size: int = 5000,
) -> Dict[str, float]:
    """
    All metrics for one embedding.

    Condition mixing and entropy are always reported; the cell type
    silhouette needs ``label_key``, cluster purity and ARI additionally
    need ``cluster_key``. Columns that are missing are skipped.
    """
    scores = {
        "condition_mixing": compute_mixing_silhouette(
            adata, condition_key, use_rep, sample_size=sample_size
        ),
        "condition_entropy": compute_condition_entropy(
            adata, condition_key, use_rep, sample_size=sample_size
        ),
    }

    has_labels = label_key is not None and label_key in adata.obs.columns
    if has_labels:
        scores["celltype_silhouette"] = compute_celltype_silhouette(
            adata, label_key, use_rep, sample_size=sample_size
        )
    if has_labels and cluster_key is not None and cluster_key in adata.obs.columns:
        scores["cluster_purity"] = compute_cluster_purity(adata, cluster_key, label_key)
        scores["ari"] = compute_ari(adata, cluster_key, label_key)

    return scores


def compare_integration_methods(
    adata: AnnData,
    condition_key: str,
    embeddings: Dict[str, str],
    label_key: Optional[str] = None,
    cluster_keys: Optional[Dict[str, str]] = None,
    sample_size: int = 5000,
) -> pd.DataFrame:
    """
    Metrics table, one row per method.

    Parameters
    ----------
    adata : AnnData
        Cells with one .obsm entry per method.
    condition_key : str
        Column in .obs with condition labels.
    embeddings : dict
        Method name -> .obsm key, e.g. ``{'Harmony': 'X_harmony'}``.
        Methods whose embedding is missing are skipped with a warning.
    label_key : str, optional
        Column in .obs with cell type labels.
    cluster_keys : dict, optional
        Method name -> cluster column in .obs.
    sample_size : int
        Cells used for the silhouette and entropy scores.

    Returns
    -------
    pd.DataFrame
        Methods (index, named 'method') x metrics.
    """
    cluster_keys = cluster_keys or {}
    rows = {}
    for method, rep in embeddings.items():
        if rep not in adata.obsm:
            print(f"Warning: '{rep}' not in adata.obsm, skipping {method}")
            continue
        rows[method] = summarize_integration_metrics(
            adata,
            condition_key=condition_key,
            label_key=label_key,
            cluster_key=cluster_keys.get(method),
            use_rep=rep,
            sample_size=sample_size,
        )

    table = pd.DataFrame.from_dict(rows, orient="index")
    table.index.name = "method"
    return table
