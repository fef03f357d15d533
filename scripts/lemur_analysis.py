#!/usr/bin/env python
"""
Tutorial 2: invertible embeddings and differential expression with LEMUR.

Fits a condition-aware linear embedding, aligns the conditions (with
Harmony, a cell grouping or Leiden clusters), predicts per-cell
differential expression, searches DE neighborhoods, tests them with a
paired pseudobulk test and renders the narrative as a Markdown report.

Usage:
    python scripts/lemur_analysis.py --config config/kang2018.yaml
    python scripts/lemur_analysis.py --input kang2018.h5ad --contrast stim ctrl --output results/lemur/
"""

import argparse
import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import yaml
from pathlib import Path
from typing import Dict, List, Optional

from scintegrate.data import (
    load_dataset,
    filter_obs,
    downsample_cells,
)
from scintegrate.preprocessing import standard_preprocess, to_dense
from scintegrate.integration import (
    compute_neighbors_and_umap,
    run_leiden_clustering,
)
from scintegrate.lemur import LemurModel
from scintegrate.differential import (
    mark_neighborhood,
    pseudobulk_neighborhood_test,
    rank_markers,
)
from scintegrate.visualization import (
    plot_method_comparison,
    plot_embedding_values,
    plot_neighborhood,
    plot_volcano,
)
from scintegrate.report import TutorialReport, load_bibliography


DEFAULT_BIBLIOGRAPHY = Path(__file__).parent.parent / "config" / "references.yaml"
ALIGNMENTS = ("harmony", "grouping", "leiden", "none")


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file."""
    with open(config_path) as f:
        return yaml.safe_load(f)


def run_lemur_analysis(
    input_path: str,
    output_dir: str,
    condition_key: str = "condition",
    subject_key: str = "subject",
    cell_type_key: str = "cell_type",
    obs_rename: Optional[Dict[str, str]] = None,
    backup_url: Optional[str] = None,
    dataset: Optional[str] = None,
    filter_key: Optional[str] = None,
    filter_keep: Optional[List[str]] = None,
    n_cells: Optional[int] = None,
    n_hvgs: int = 500,
    n_pcs: int = 30,
    n_embedding: int = 15,
    alignment: str = "harmony",
    grouping_key: Optional[str] = None,
    harmony_theta: Optional[float] = 2,
    leiden_resolution: float = 0.5,
    contrast: Optional[List[str]] = None,
    genes: Optional[List[str]] = None,
    n_plot_genes: int = 4,
    min_neighborhood_size: int = 50,
    n_neighbors: int = 30,
    metric: str = "cosine",
    bibliography_path: Optional[str] = None,
    save_h5ad: bool = True,
    seed: int = 0,
):
    """
    Run the LEMUR tutorial and write its report.

    Parameters
    ----------
    input_path : str
        Path to the h5ad file with raw counts.
    output_dir : str
        Output directory for the report, figures, tables and h5ad.
    condition_key, subject_key, cell_type_key : str
        Columns in obs (after renaming).
    obs_rename : dict, optional
        Mapping from dataset column names to the keys above.
    backup_url : str, optional
        Download URL used when input_path does not exist.
    dataset : str, optional
        Public dataset fetched with pertpy when input_path does not exist,
        e.g. "kang2018". The download is cached at input_path.
    filter_key, filter_keep : optional
        Keep only cells whose filter_key value is in filter_keep.
    n_cells : int, optional
        Downsample to this many cells (stratified by condition).
    n_hvgs : int
        Number of highly variable genes.
    n_pcs : int
        Number of principal components for the uncorrected reference UMAP.
    n_embedding : int
        LEMUR latent dimensions.
    alignment : str
        'harmony', 'grouping' (obs column), 'leiden' (clusters of the
        uncorrected data) or 'none'.
    grouping_key : str, optional
        obs column for alignment='grouping'. Default: cell_type_key.
    harmony_theta : float
        Harmony diversity penalty.
    leiden_resolution : float
        Resolution for alignment='leiden'.
    contrast : list of str, optional
        [condition, reference]. Default: second vs. first condition.
    genes : list of str, optional
        Genes whose predicted DE is plotted. Default: the genes with the
        largest mean absolute predicted DE.
    n_plot_genes : int
        Number of genes to plot when ``genes`` is not given.
    min_neighborhood_size : int
        Minimum number of cells in a DE neighborhood.
    n_neighbors : int
        Number of neighbors for the UMAP graph.
    metric : str
        Distance metric for the UMAP graph.
    bibliography_path : str, optional
        YAML citation-key file.
    save_h5ad : bool
        Whether to save the processed AnnData.
    seed : int
        Random seed.
    """
    if alignment not in ALIGNMENTS:
        raise ValueError(f"alignment must be one of {ALIGNMENTS}, got '{alignment}'")

    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    (output_path / "de").mkdir(exist_ok=True)

    bibliography = load_bibliography(bibliography_path or DEFAULT_BIBLIOGRAPHY)
    report = TutorialReport(
        "Differential expression with invertible embeddings",
        bibliography=bibliography,
        assets_dir=output_path / "figures",
    )
    ref, cite = report.ref, report.cite

    # =========================================================================
    # Data
    # =========================================================================
    adata = load_dataset(
        input_path,
        backup_url=backup_url,
        dataset=dataset,
        obs_rename=obs_rename,
        required_keys=(condition_key, subject_key, cell_type_key),
    )
    if filter_key is not None:
        adata = filter_obs(adata, filter_key, filter_keep or [])
    if n_cells is not None:
        adata = downsample_cells(adata, n_cells, stratify_key=condition_key, seed=seed)

    conditions = [str(c) for c in adata.obs[condition_key].cat.categories]
    if len(conditions) < 2:
        raise ValueError(f"Need at least two conditions, found {conditions}")
    if contrast is None:
        contrast = [conditions[1], conditions[0]]
    contrast = [str(c) for c in contrast]
    treated, control = contrast

    print("\nPreprocessing...")
    adata = standard_preprocess(adata, n_hvgs=n_hvgs, n_pcs=n_pcs, random_state=seed)
    compute_neighbors_and_umap(
        adata, use_rep="X_pca", n_neighbors=n_neighbors, metric=metric,
        random_state=seed, key_added_suffix="pca",
    )

    report.section("Data")
    report.text(
        f"We reuse the stimulation dataset {cite('kang2018')}: {adata.n_obs} cells from "
        f"{adata.obs[subject_key].nunique()} subjects in the conditions "
        f"{', '.join(conditions)}, restricted to the {adata.n_vars} most variable genes. "
        f"The question is which cells change their expression under {treated} "
        f"compared to {control}, without first assigning cells to discrete clusters."
    )

    # =========================================================================
    # LEMUR fit and alignment
    # =========================================================================
    print(f"\nFitting LEMUR with {n_embedding} latent dimensions...")
    model = LemurModel(adata, condition_key=condition_key, n_embedding=n_embedding)
    model.fit()

    alignment_text = "The conditions are not aligned further."
    if alignment == "harmony":
        model.align_with_harmony(theta=harmony_theta)
        alignment_text = (
            f"The conditions are aligned by fitting an affine map per condition to the "
            f"Harmony-corrected coordinates {cite('korsunsky2019')}."
        )
    elif alignment == "grouping":
        grouping_key = grouping_key or cell_type_key
        model.align_with_grouping(grouping_key)
        alignment_text = (
            f"The conditions are aligned so that cells with the same `{grouping_key}` "
            "share a centroid across conditions."
        )
    elif alignment == "leiden":
        print("\nClustering uncorrected data for alignment...")
        (cluster_key,) = run_leiden_clustering(
            adata, resolutions=[leiden_resolution],
            neighbors_key="neighbors_pca", random_state=seed,
        )
        model.align_with_grouping(cluster_key)
        alignment_text = (
            f"The conditions are aligned on Leiden clusters {cite('traag2019')} "
            f"of the uncorrected data (resolution {leiden_resolution})."
        )

    model.store_embedding("X_lemur")
    compute_neighbors_and_umap(
        adata, use_rep="X_lemur", n_neighbors=n_neighbors, metric=metric,
        random_state=seed, key_added_suffix="lemur",
    )

    report.section("Latent embedding multivariate regression")
    report.text(
        f"LEMUR {cite('ahlmanneltze2025')} models every condition with its own linear "
        f"subspace of dimension {n_embedding}. {alignment_text} "
        f"{ref('fig:lemur-umap')} compares the UMAP of the uncorrected principal "
        "components with the UMAP of the aligned LEMUR embedding."
    )
    report.code(
        f"model = LemurModel(adata, condition_key='{condition_key}', n_embedding={n_embedding})\n"
        f"model.fit()\n"
        + (f"model.align_with_harmony(theta={harmony_theta})" if alignment == "harmony" else
           f"model.align_with_grouping(...)  # alignment='{alignment}'")
    )
    umaps = {"PCA": "X_umap_pca", "LEMUR": "X_umap_lemur"}
    report.figure(
        plot_method_comparison(adata, umaps, color_by=condition_key),
        "fig:lemur-umap",
        f"UMAP of the uncorrected PCA and of the LEMUR embedding, colored by {condition_key}.",
    )
    report.figure(
        plot_method_comparison(adata, umaps, color_by=cell_type_key),
        "fig:lemur-celltype",
        f"As {ref('fig:lemur-umap')}, colored by {cell_type_key}.",
    )

    # =========================================================================
    # Differential expression
    # =========================================================================
    print(f"\nPredicting differential expression {treated} - {control}...")
    de = model.test_de(contrast=(treated, control), key_added="DE")

    if genes is None:
        order = np.argsort(-np.abs(de).mean(axis=0))
        genes = list(adata.var_names[order[:n_plot_genes]])
    gene_idx = adata.var_names.get_indexer(genes)
    if (gene_idx < 0).any():
        raise ValueError(f"Genes not found: {[g for g, i in zip(genes, gene_idx) if i < 0]}")

    fig, axes = plt.subplots(1, len(genes), figsize=(4.5 * len(genes), 4), squeeze=False)
    for ax, gene, gi in zip(axes[0], genes, gene_idx):
        plot_embedding_values(adata, de[:, gi], basis="X_umap_lemur", title=gene, ax=ax)
    fig.tight_layout()

    report.section("Differential expression")
    report.text(
        "Because the embedding is invertible, every cell can be mapped into both "
        f"conditions. The difference of the two predictions is a per-cell estimate "
        f"of the {treated} vs. {control} effect ({ref('fig:de-umap')})."
    )
    report.code(f"de = model.test_de(contrast=('{treated}', '{control}'))")
    report.figure(
        fig,
        "fig:de-umap",
        f"Predicted log fold change {treated} vs. {control} on the LEMUR UMAP.",
    )

    # =========================================================================
    # Neighborhoods and pseudobulk test
    # =========================================================================
    min_size = min(min_neighborhood_size, adata.n_obs)
    print(f"\nFinding DE neighborhoods (min size {min_size})...")
    neighborhoods = model.find_de_neighborhoods(de_layer="DE", min_size=min_size)
    results = pseudobulk_neighborhood_test(
        adata, neighborhoods, contrast=(treated, control),
        condition_key=condition_key, subject_key=subject_key,
    )
    results.drop(columns="neighborhood").to_csv(
        output_path / "de" / "neighborhood_de.tsv", sep="\t", index=False
    )
    print(f"  {int((results['adj_pval'] < 0.1).sum())} genes with adj. p < 0.1")

    columns = ["name", "n_cells", "lfc", "did", "pval", "adj_pval"]
    report.section("DE neighborhoods")
    report.text(
        "For each gene we search the set of cells that shows a consistent predicted "
        "effect and test it with a paired pseudobulk comparison across subjects. "
        f"{ref('tab:de')} lists the top genes, {ref('fig:volcano')} shows all of them."
    )
    report.code(
        f"neighborhoods = model.find_de_neighborhoods(min_size={min_size})\n"
        "results = pseudobulk_neighborhood_test(adata, neighborhoods, contrast)"
    )
    report.table(
        results[columns].head(10).set_index("name"),
        "tab:de",
        "Top DE neighborhoods (paired t-test over subjects, BH-adjusted).",
    )
    report.figure(
        plot_volcano(results),
        "fig:volcano",
        "Log fold change inside the neighborhood vs. p-value; red: adj. p < 0.1.",
    )

    top = results.iloc[0]
    mark_neighborhood(adata, top["neighborhood"], key_added="in_neighborhood")
    composition = pd.crosstab(adata.obs[cell_type_key], adata.obs["in_neighborhood"])
    report.section(f"The {top['name']} neighborhood", level=2)
    report.figure(
        plot_neighborhood(
            adata, top["neighborhood"], basis="X_umap_lemur",
            title=f"{top['name']} neighborhood",
        ),
        "fig:neighborhood",
        f"Cells in the DE neighborhood of {top['name']}.",
    )
    report.table(
        composition,
        "tab:composition",
        f"Cell types inside and outside the {top['name']} neighborhood.",
    )
    report.text(
        f"The neighborhood of {top['name']} ({ref('fig:neighborhood')}) contains "
        f"{int(top['n_cells'])} cells; {ref('tab:composition')} shows their cell types."
    )

    n_inside = int((adata.obs["in_neighborhood"] == "inside").sum())
    if 1 < n_inside < adata.n_obs - 1:
        markers = rank_markers(adata, "in_neighborhood")
        markers["inside"].to_csv(output_path / "de" / "neighborhood_markers.tsv", sep="\t", index=False)
        report.table(
            markers["inside"].head(10).set_index("gene"),
            "tab:markers",
            "Genes distinguishing the neighborhood from the remaining cells (Wilcoxon).",
        )
        report.text(f"{ref('tab:markers')} characterizes the neighborhood by marker genes.")

    # =========================================================================
    # Counterfactual prediction
    # =========================================================================
    gene = top["name"]
    gi = adata.var_names.get_loc(gene)
    observed = to_dense(adata.layers["logcounts"][:, gi]).ravel()
    counterfactual = model.predict(new_condition=control)[:, gi]

    fig, axes = plt.subplots(1, 2, figsize=(9, 4))
    plot_embedding_values(
        adata, observed, basis="X_umap_lemur", symmetric=False, cmap="viridis",
        title=f"{gene}: observed", ax=axes[0],
    )
    plot_embedding_values(
        adata, counterfactual, basis="X_umap_lemur", symmetric=False, cmap="viridis",
        title=f"{gene}: predicted in {control}", ax=axes[1],
    )
    fig.tight_layout()

    report.section("Counterfactual prediction")
    report.text(
        f"The model can also predict what every cell would look like in {control} "
        f"({ref('fig:counterfactual')}). For cells measured in {treated}, this is the "
        "expression they would have had without the stimulation."
    )
    report.code(f"counterfactual = model.predict(new_condition='{control}')")
    report.figure(
        fig,
        "fig:counterfactual",
        f"Observed and counterfactual ({control}) expression of {gene}.",
    )

    # =========================================================================
    # Save
    # =========================================================================
    if save_h5ad:
        print(f"\nSaving to {output_path}...")
        adata.write_h5ad(output_path / "lemur_analysis.h5ad")

    report.write(output_path / "lemur_analysis.md")

    print("\nDone!")
    return adata, results


def main():
    parser = argparse.ArgumentParser(
        description="Tutorial: differential expression with invertible embeddings"
    )
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--input", type=str, help="Input h5ad file")
    parser.add_argument("--dataset", type=str, default=None, help="Public dataset to fetch when --input is missing (e.g. kang2018)")
    parser.add_argument("--output", type=str, default="./results/lemur/", help="Output directory")
    parser.add_argument("--condition-key", type=str, default="condition")
    parser.add_argument("--subject-key", type=str, default="subject")
    parser.add_argument("--cell-type-key", type=str, default="cell_type")
    parser.add_argument("--n-cells", type=int, default=None, help="Downsample to this many cells")
    parser.add_argument("--n-hvgs", type=int, default=500, help="Number of HVGs")
    parser.add_argument("--n-embedding", type=int, default=15, help="LEMUR latent dimensions")
    parser.add_argument("--alignment", choices=ALIGNMENTS, default="harmony")
    parser.add_argument("--grouping-key", type=str, default=None)
    parser.add_argument("--theta", type=float, default=2, help="Harmony theta parameter")
    parser.add_argument("--contrast", nargs=2, default=None, metavar=("CONDITION", "REFERENCE"))
    parser.add_argument("--genes", nargs="+", default=None, help="Genes to plot")
    parser.add_argument("--min-size", type=int, default=50, help="Minimum neighborhood size")
    parser.add_argument("--bibliography", type=str, default=None, help="YAML citation-key file")
    parser.add_argument("--no-h5ad", action="store_true", help="Don't save the processed h5ad")
    parser.add_argument("--seed", type=int, default=0)

    args = parser.parse_args()

    if args.config:
        config = load_config(args.config)
        keys = config.get("keys", {})
        filters = config["input"].get("filter") or {}
        lemur = config["lemur"]
        run_lemur_analysis(
            input_path=config["input"]["h5ad_path"],
            output_dir=str(Path(config["output"]["dir"]) / "lemur"),
            condition_key=keys.get("condition", "condition"),
            subject_key=keys.get("subject", "subject"),
            cell_type_key=keys.get("cell_type", "cell_type"),
            obs_rename=config["input"].get("obs_rename"),
            backup_url=config["input"].get("backup_url"),
            dataset=config["input"].get("dataset"),
            filter_key=filters.get("key"),
            filter_keep=filters.get("keep"),
            n_cells=config["input"].get("n_cells"),
            n_hvgs=config["preprocessing"].get("n_top_genes", 500),
            n_pcs=config["preprocessing"].get("n_pcs", 30),
            n_embedding=lemur.get("n_embedding", 15),
            alignment=lemur.get("alignment", "harmony"),
            grouping_key=lemur.get("grouping_key"),
            harmony_theta=config["integration"]["harmony"].get("theta", 2),
            leiden_resolution=lemur.get("leiden_resolution", 0.5),
            contrast=lemur.get("contrast"),
            genes=lemur.get("genes"),
            min_neighborhood_size=lemur.get("min_neighborhood_size", 50),
            n_neighbors=config["umap"].get("n_neighbors", 30),
            metric=config["umap"].get("metric", "cosine"),
            bibliography_path=config.get("report", {}).get("bibliography"),
            save_h5ad=config["output"].get("save_h5ad", True),
            seed=config.get("seed", 0),
        )
    else:
        if not args.input:
            parser.error("Either --config or --input required")
        run_lemur_analysis(
            input_path=args.input,
            dataset=args.dataset,
            output_dir=args.output,
            condition_key=args.condition_key,
            subject_key=args.subject_key,
            cell_type_key=args.cell_type_key,
            n_cells=args.n_cells,
            n_hvgs=args.n_hvgs,
            n_embedding=args.n_embedding,
            alignment=args.alignment,
            grouping_key=args.grouping_key,
            harmony_theta=args.theta,
            contrast=args.contrast,
            genes=args.genes,
            min_neighborhood_size=args.min_size,
            bibliography_path=args.bibliography,
            save_h5ad=not args.no_h5ad,
            seed=args.seed,
        )


if __name__ == "__main__":
    main()
