"""
Integration method wrappers for removing condition effects.

Includes:
- Harmony (via harmonypy)
- MNN correction in PC space (fastMNN-style, sklearn nearest neighbors)
- Scanorama (panoramic stitching, optional)
- Neighbors / UMAP / Leiden helpers shared by all methods
"""

import harmonypy
import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from sklearn.metrics.pairwise import euclidean_distances
from sklearn.neighbors import NearestNeighbors
from typing import Optional, List, Sequence, Tuple


def harmony_embedding(
    embedding: np.ndarray,
    batch_labels: Sequence,
    theta: Optional[float] = None,
    max_iter_harmony: int = 10,
    random_state: int = 0,
) -> np.ndarray:
    """
    Run Harmony on a cells x dims embedding.

    Parameters
    ----------
    embedding : np.ndarray
        Cells x dims coordinates, e.g. principal components.
    batch_labels : sequence
        Batch (condition) label per cell.
    theta : float, optional
        Diversity clustering penalty. Higher values = more aggressive
        correction. None uses the harmonypy default.
    max_iter_harmony : int
        Maximum number of Harmony iterations.
    random_state : int
        Random seed for the clustering initialization.

    Returns
    -------
    np.ndarray
        Corrected embedding (n_cells x dims).
    """
    embedding = np.asarray(embedding, dtype=np.float64)
    batch_labels = np.asarray(batch_labels).astype(str)
    if len(batch_labels) != embedding.shape[0]:
        raise ValueError(
            f"Got {len(batch_labels)} batch labels for {embedding.shape[0]} cells"
        )

    meta = pd.DataFrame({"batch": batch_labels})
    harmony_args = {
        "max_iter_harmony": max_iter_harmony,
        "random_state": random_state,
        "verbose": False,
    }
    if theta is not None:
        harmony_args["theta"] = theta

    ho = harmonypy.run_harmony(embedding, meta, "batch", **harmony_args)

    corrected = np.asarray(ho.Z_corr)
    if corrected.shape[0] != embedding.shape[0]:
        corrected = corrected.T
    return corrected


def run_harmony(
    adata: AnnData,
    batch_key: str,
    use_rep: str = "X_pca",
    theta: Optional[float] = None,
    random_state: int = 0,
    key_added: str = "X_harmony",
) -> np.ndarray:
    """
    Run Harmony batch correction on an embedding in .obsm.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with PCA computed in .obsm[use_rep].
    batch_key : str
        Column in .obs containing batch (condition) labels.
    use_rep : str
        Key in .obsm for input embedding (default: 'X_pca').
    theta : float, optional
        Diversity clustering penalty parameter for Harmony.
    random_state : int
        Random seed.
    key_added : str
        Key to store result in .obsm.

    Returns
    -------
    np.ndarray
        Harmonized embedding matrix (n_cells x n_dims).
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    if batch_key not in adata.obs.columns:
        raise ValueError(f"Batch key '{batch_key}' not found in adata.obs")

    harmonized = harmony_embedding(
        adata.obsm[use_rep],
        adata.obs[batch_key].to_numpy(),
        theta=theta,
        random_state=random_state,
    )
    adata.obsm[key_added] = harmonized

    return harmonized


def _cosine_normalize(X: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(X, axis=1, keepdims=True)
    norms[norms == 0] = 1
    return X / norms


def find_mutual_nn(
    ref: np.ndarray,
    target: np.ndarray,
    k: int = 20,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Find mutual nearest neighbor pairs between two sets of cells.

    Returns
    -------
    ref_idx, target_idx : np.ndarray
        Row indices into ``ref`` and ``target``; pair i is
        (ref[ref_idx[i]], target[target_idx[i]]).
    """
    k_ref = min(k, ref.shape[0])
    k_target = min(k, target.shape[0])

    _, target_to_ref = NearestNeighbors(n_neighbors=k_ref).fit(ref).kneighbors(target)
    _, ref_to_target = NearestNeighbors(n_neighbors=k_target).fit(target).kneighbors(ref)

    ref_neighbors = [set(row) for row in ref_to_target]
    ref_idx = []
    target_idx = []
    for t, row in enumerate(target_to_ref):
        for r in row:
            if t in ref_neighbors[r]:
                ref_idx.append(r)
                target_idx.append(t)

    return np.asarray(ref_idx, dtype=int), np.asarray(target_idx, dtype=int)


def mnn_correct_pair(
    ref: np.ndarray,
    target: np.ndarray,
    k: int = 20,
    sigma: float = 0.1,
) -> Tuple[np.ndarray, int]:
    """
    Correct ``target`` towards ``ref`` using MNN correction vectors.

    Each MNN pair gives a vector from the target cell to its reference
    partner. Vectors are averaged per target cell and smoothed over the
    whole target batch with a Gaussian kernel of bandwidth ``sigma``.

    Returns
    -------
    corrected : np.ndarray
        Corrected target coordinates.
    n_pairs : int
        Number of MNN pairs found.
    """
    ref_idx, target_idx = find_mutual_nn(ref, target, k=k)
    if len(ref_idx) == 0:
        raise ValueError(
            "No mutual nearest neighbors found between batches; "
            "try a larger k"
        )

    vectors = ref[ref_idx] - target[target_idx]
    anchors = np.unique(target_idx)
    anchor_vectors = np.vstack(
        [vectors[target_idx == a].mean(axis=0) for a in anchors]
    )

    # Gaussian kernel in log space, stabilized per row
    log_w = -euclidean_distances(target, target[anchors], squared=True) / sigma
    log_w -= log_w.max(axis=1, keepdims=True)
    weights = np.exp(log_w)
    weights /= weights.sum(axis=1, keepdims=True)

    return target + weights @ anchor_vectors, len(ref_idx)


def run_mnn(
    adata: AnnData,
    batch_key: str,
    use_rep: str = "X_pca",
    k: int = 20,
    sigma: float = 0.1,
    batch_order: Optional[List[str]] = None,
    cos_norm: bool = True,
    key_added: str = "X_mnn",
) -> np.ndarray:
    """
    Mutual nearest neighbor correction in a low-dimensional space.

    Batches are merged one at a time: the first batch is the reference,
    each following batch is corrected towards everything merged so far.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix with an embedding in .obsm[use_rep].
    batch_key : str
        Column in .obs containing batch (condition) labels.
    use_rep : str
        Key in .obsm for the input embedding.
    k : int
        Number of nearest neighbors used to define mutual pairs.
    sigma : float
        Bandwidth of the Gaussian smoothing kernel.
    batch_order : list of str, optional
        Merge order. Default: largest batch first.
    cos_norm : bool
        Whether to cosine-normalize cells before matching.
    key_added : str
        Key to store the corrected embedding in .obsm.

    Returns
    -------
    np.ndarray
        Corrected embedding (n_cells x n_dims), in the original cell order.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    if batch_key not in adata.obs.columns:
        raise ValueError(f"Batch key '{batch_key}' not found in adata.obs")

    embedding = np.asarray(adata.obsm[use_rep], dtype=np.float64)
    if cos_norm:
        embedding = _cosine_normalize(embedding)

    labels = adata.obs[batch_key].astype(str).to_numpy()
    if batch_order is None:
        batch_order = list(pd.Series(labels).value_counts().index)
    else:
        batch_order = [str(b) for b in batch_order]
        unknown = set(batch_order) - set(labels)
        if unknown or len(set(batch_order)) != len(set(labels)):
            raise ValueError(
                f"batch_order must list every batch exactly once; "
                f"batches: {sorted(set(labels))}"
            )

    if len(batch_order) < 2:
        raise ValueError("MNN correction needs at least two batches")

    corrected = np.empty_like(embedding)
    merged_idx = np.where(labels == batch_order[0])[0]
    corrected[merged_idx] = embedding[merged_idx]

    for batch in batch_order[1:]:
        batch_idx = np.where(labels == batch)[0]
        corrected[batch_idx], n_pairs = mnn_correct_pair(
            corrected[merged_idx], embedding[batch_idx], k=k, sigma=sigma
        )
        print(f"  MNN: merged {batch} ({len(batch_idx)} cells, {n_pairs} pairs)")
        merged_idx = np.concatenate([merged_idx, batch_idx])

    adata.obsm[key_added] = corrected

    return corrected


def run_scanorama(
    adata: AnnData,
    batch_key: str,
    key_added: str = "X_scanorama",
    knn: int = 20,
    sigma: float = 15,
    approx: bool = True,
    alpha: float = 0.1,
) -> np.ndarray:
    """
    Scanorama panoramic stitching of the log-normalized HVG matrix.

    Each batch is integrated as a separate AnnData; the joint embedding
    is written back in the original cell order. ``knn``, ``sigma``,
    ``approx`` and ``alpha`` are passed to ``scanorama.integrate_scanpy``.

    Scanorama is an optional dependency (``pip install scanorama``).
    """
    try:
        import scanorama
    except ImportError:
        raise ImportError(
            "run_scanorama needs the optional scanorama package: pip install scanorama"
        )

    if batch_key not in adata.obs.columns:
        raise ValueError(f"Batch key '{batch_key}' not found in adata.obs")

    labels = adata.obs[batch_key].astype(str)
    per_batch = [adata[(labels == b).to_numpy()].copy() for b in pd.unique(labels)]

    scanorama.integrate_scanpy(
        per_batch,
        knn=knn,
        sigma=sigma,
        approx=approx,
        alpha=alpha,
    )

    integrated = pd.concat(
        [pd.DataFrame(a.obsm["X_scanorama"], index=a.obs_names) for a in per_batch]
    ).loc[adata.obs_names]

    adata.obsm[key_added] = integrated.to_numpy()

    return adata.obsm[key_added]


def compute_neighbors_and_umap(
    adata: AnnData,
    use_rep: str,
    n_neighbors: int = 30,
    metric: str = "cosine",
    n_pcs: Optional[int] = None,
    random_state: int = 0,
    key_added_suffix: Optional[str] = None,
) -> None:
    """
    kNN graph and UMAP of one embedding.

    With ``key_added_suffix='harmony'`` the graph goes to
    ``uns['neighbors_harmony']`` and the layout to ``obsm['X_umap_harmony']``,
    so several embeddings can be laid out side by side. ``X_umap`` always
    holds the most recent layout. ``n_neighbors`` is clipped to
    ``n_obs - 1``.
    """
    if use_rep not in adata.obsm:
        raise ValueError(f"Embedding '{use_rep}' not found in adata.obsm")

    neighbors_key = f"neighbors_{key_added_suffix}" if key_added_suffix else None
    sc.pp.neighbors(
        adata,
        use_rep=use_rep,
        n_neighbors=min(n_neighbors, adata.n_obs - 1),
        metric=metric,
        n_pcs=n_pcs,
        random_state=random_state,
        key_added=neighbors_key,
    )
    sc.tl.umap(adata, neighbors_key=neighbors_key, random_state=random_state)

    if key_added_suffix:
        adata.obsm[f"X_umap_{key_added_suffix}"] = adata.obsm["X_umap"].copy()


def run_leiden_clustering(
    adata: AnnData,
    resolutions: Sequence[float] = (0.5,),
    neighbors_key: Optional[str] = None,
    key_prefix: str = "leiden",
    random_state: int = 0,
) -> List[str]:
    """
    Leiden clustering at each resolution; returns the added obs columns.

    Columns are named ``{key_prefix}_{resolution}``. Needs a graph from
    ``compute_neighbors_and_umap`` (pass its ``neighbors_key``).
    """
    added = []
    for resolution in resolutions:
        key = f"{key_prefix}_{resolution}"
        sc.tl.leiden(
            adata,
            resolution=resolution,
            neighbors_key=neighbors_key,
            key_added=key,
            random_state=random_state,
        )
        print(f"  Leiden {resolution}: {adata.obs[key].nunique()} clusters")
        added.append(key)
    return added
