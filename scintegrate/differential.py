"""
Post-hoc differential expression exploration.

Pseudobulk aggregation, a paired per-subject test for DE neighborhoods
and marker ranking with scanpy.
"""

import numpy as np
import pandas as pd
import scanpy as sc
from anndata import AnnData
from scipy import stats
from typing import Dict, Optional, Sequence, Tuple

from .preprocessing import to_dense


def pseudobulk(
    adata: AnnData,
    group_keys: Sequence[str],
    layer: Optional[str] = "logcounts",
    cells: Optional[Sequence[str]] = None,
    func: str = "mean",
) -> pd.DataFrame:
    """
    Aggregate expression per metadata group.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    group_keys : sequence of str
        Columns in .obs defining the groups, e.g. ['subject', 'condition'].
    layer : str, optional
        Layer to aggregate. None uses .X. Use 'counts' with func='sum'
        for count-based pseudobulk.
    cells : sequence of str, optional
        Restrict to these obs names.
    func : str
        Aggregation passed to pandas ('mean', 'sum', ...).

    Returns
    -------
    pd.DataFrame
        Groups (rows, indexed by group_keys) x genes.
    """
    group_keys = list(group_keys)
    missing = [k for k in group_keys if k not in adata.obs.columns]
    if missing:
        raise ValueError(f"Columns not found in adata.obs: {missing}")
    if layer is not None and layer not in adata.layers:
        raise ValueError(f"Layer '{layer}' not found in adata.layers")

    X = to_dense(adata.layers[layer] if layer is not None else adata.X)
    obs = adata.obs[group_keys].astype(str).reset_index(drop=True)

    if cells is not None:
        mask = adata.obs_names.isin(cells)
        X = X[mask]
        obs = obs[mask].reset_index(drop=True)

    df = pd.DataFrame(X, columns=adata.var_names)
    df = pd.concat([obs, df], axis=1)
    return df.groupby(group_keys).agg(func)


def mark_neighborhood(
    adata: AnnData,
    neighborhood: Sequence[str],
    key_added: str = "in_neighborhood",
) -> None:
    """Add a categorical 'inside'/'outside' column for a set of obs names."""
    inside = adata.obs_names.isin(neighborhood)
    adata.obs[key_added] = pd.Categorical(
        np.where(inside, "inside", "outside"),
        categories=["inside", "outside"],
    )


def _adjust_pvalues(pvals: np.ndarray) -> np.ndarray:
    adjusted = np.full(len(pvals), np.nan)
    valid = ~np.isnan(pvals)
    if valid.any():
        adjusted[valid] = stats.false_discovery_control(pvals[valid], method="bh")
    return adjusted


def pseudobulk_neighborhood_test(
    adata: AnnData,
    neighborhoods: pd.DataFrame,
    contrast: Tuple[str, str],
    condition_key: str = "condition",
    subject_key: str = "subject",
    layer: Optional[str] = "logcounts",
) -> pd.DataFrame:
    """
    Paired pseudobulk test of DE neighborhoods.

    For every gene, each subject contributes the difference between the
    two contrast conditions of the gene's mean expression inside the
    neighborhood. ``lfc`` is the mean of these differences (in the units
    of ``layer``, natural log for log1p data), ``did`` the mean
    difference-in-differences inside vs. outside the neighborhood. The
    p-value comes from a one-sample t-test over subjects and is
    Benjamini-Hochberg adjusted across genes. Identical differences in
    every subject give p = 0 when they are non-zero and p = 1 when they
    are all zero. Fewer than two subjects give p = NaN.

    Parameters
    ----------
    adata : AnnData
        Annotated data matrix.
    neighborhoods : pd.DataFrame
        Output of ``LemurModel.find_de_neighborhoods``.
    contrast : tuple of str
        (condition, reference condition).
    condition_key, subject_key : str
        Columns in .obs.
    layer : str, optional
        Layer with log-transformed values. None uses .X.

    Returns
    -------
    pd.DataFrame
        ``neighborhoods`` with columns ``lfc``, ``did``, ``n_subjects``,
        ``pval`` and ``adj_pval`` added, sorted by ``pval``.
    """
    for key in (condition_key, subject_key):
        if key not in adata.obs.columns:
            raise ValueError(f"Column '{key}' not found in adata.obs")
    if layer is not None and layer not in adata.layers:
        raise ValueError(f"Layer '{layer}' not found in adata.layers")

    first, second = (str(c) for c in contrast)
    conditions = adata.obs[condition_key].astype(str).to_numpy()
    for c in (first, second):
        if c not in conditions:
            raise ValueError(f"Condition '{c}' not found in adata.obs['{condition_key}']")

    gene_idx = adata.var_names.get_indexer(neighborhoods["name"])
    if (gene_idx < 0).any():
        missing = list(neighborhoods["name"][gene_idx < 0])
        raise ValueError(f"Genes not found in adata.var_names: {missing}")

    X = to_dense(adata.layers[layer] if layer is not None else adata.X)
    subjects = adata.obs[subject_key].astype(str).to_numpy()
    is_first = conditions == first
    is_second = conditions == second

    lfcs, dids, n_subjects, pvals = [], [], [], []
    for gi, neighborhood in zip(gene_idx, neighborhoods["neighborhood"]):
        values = X[:, gi]
        inside = adata.obs_names.isin(neighborhood)

        diffs_in, diffs_out = [], []
        for subject in pd.unique(subjects):
            s = subjects == subject
            a_in, b_in = s & inside & is_first, s & inside & is_second
            if not a_in.any() or not b_in.any():
                continue
            diffs_in.append(values[a_in].mean() - values[b_in].mean())

            a_out, b_out = s & ~inside & is_first, s & ~inside & is_second
            if a_out.any() and b_out.any():
                diffs_out.append(values[a_out].mean() - values[b_out].mean())
            else:
                diffs_out.append(np.nan)

        diffs_in = np.asarray(diffs_in)
        diffs_out = np.asarray(diffs_out)
        n_subjects.append(len(diffs_in))

        if len(diffs_in) == 0:
            lfcs.append(np.nan)
            dids.append(np.nan)
            pvals.append(np.nan)
            continue

        lfcs.append(diffs_in.mean())
        did = diffs_in - diffs_out
        dids.append(did[~np.isnan(did)].mean() if (~np.isnan(did)).any() else np.nan)

        if len(diffs_in) < 2:
            pvals.append(np.nan)
        elif np.ptp(diffs_in) > 0:
            pvals.append(stats.ttest_1samp(diffs_in, 0.0).pvalue)
        else:
            # Zero variance: the t statistic is infinite or undefined
            pvals.append(0.0 if diffs_in[0] != 0 else 1.0)

    result = neighborhoods.copy()
    result["lfc"] = lfcs
    result["did"] = dids
    result["n_subjects"] = n_subjects
    result["pval"] = np.asarray(pvals, dtype=float)
    result["adj_pval"] = _adjust_pvalues(result["pval"].to_numpy())

    return result.sort_values("pval", na_position="last").reset_index(drop=True)


def rank_markers(
    adata: AnnData,
    groupby: str,
    method: str = "wilcoxon",
    layer: Optional[str] = "logcounts",
) -> Dict[str, pd.DataFrame]:
    """
    Rank marker genes per group with scanpy.

    Returns
    -------
    dict
        Group name -> DataFrame with columns gene, score, logfoldchange,
        pval, pval_adj (ranked).
    """
    if groupby not in adata.obs.columns:
        raise ValueError(f"Column '{groupby}' not found in adata.obs")

    adata.obs[groupby] = adata.obs[groupby].astype("category")
    sc.tl.rank_genes_groups(
        adata,
        groupby=groupby,
        method=method,
        layer=layer,
        use_raw=False,
    )

    result = adata.uns["rank_genes_groups"]
    groups = result["names"].dtype.names

    return {
        group: pd.DataFrame({
            "gene": result["names"][group],
            "score": result["scores"][group],
            "logfoldchange": result["logfoldchanges"][group],
            "pval": result["pvals"][group],
            "pval_adj": result["pvals_adj"][group],
        })
        for group in groups
    }
