#!/usr/bin/env python
"""
Tutorial 1: integrating single-cell data across conditions.

Walks through an uncorrected PCA, a manual per-condition projection,
Harmony and MNN correction on a control vs. stimulated dataset and
renders the narrative as a Markdown report.

Usage:
    python scripts/integration_basics.py --config config/kang2018.yaml
    python scripts/integration_basics.py --input kang2018.h5ad --output results/basics/
"""

import argparse
import yaml
from pathlib import Path
from typing import Dict, List, Optional

from scintegrate.data import (
    load_dataset,
    filter_obs,
    downsample_cells,
    summarize_design,
)
from scintegrate.preprocessing import standard_preprocess
from scintegrate.projection import manual_projection
from scintegrate.integration import (
    run_harmony,
    run_mnn,
    compute_neighbors_and_umap,
)
from scintegrate.evaluation import compare_integration_methods
from scintegrate.visualization import (
    plot_umap_grid,
    plot_method_comparison,
    plot_metrics_comparison,
    plot_condition_distribution,
)
from scintegrate.report import TutorialReport, load_bibliography


DEFAULT_BIBLIOGRAPHY = Path(__file__).parent.parent / "config" / "references.yaml"


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file."""
    with open(config_path) as f:
        return yaml.safe_load(f)


def run_integration_basics(
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
    reference: Optional[str] = None,
    n_neighbors: int = 30,
    metric: str = "cosine",
    harmony_theta: Optional[float] = 2,
    mnn_k: int = 20,
    mnn_sigma: float = 0.1,
    bibliography_path: Optional[str] = None,
    save_h5ad: bool = True,
    seed: int = 0,
):
    """
    Run the integration basics tutorial and write its report.

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
        Number of principal components (and projection dimensions).
    reference : str, optional
        Reference condition of the manual projection. Default: the
        first condition.
    n_neighbors : int
        Number of neighbors for the UMAP graph.
    metric : str
        Distance metric for the UMAP graph.
    harmony_theta : float
        Harmony diversity penalty.
    mnn_k : int
        Number of neighbors for MNN pairs.
    mnn_sigma : float
        MNN smoothing bandwidth.
    bibliography_path : str, optional
        YAML citation-key file.
    save_h5ad : bool
        Whether to save the processed AnnData.
    seed : int
        Random seed.
    """
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)
    (output_path / "metrics").mkdir(exist_ok=True)

    bibliography = load_bibliography(bibliography_path or DEFAULT_BIBLIOGRAPHY)
    report = TutorialReport(
        "Integrating single-cell data across conditions",
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
    reference = str(reference) if reference is not None else conditions[0]
    if reference not in conditions:
        raise ValueError(f"Reference '{reference}' not in conditions {conditions}")
    other = next(c for c in conditions if c != reference)

    report.section("Data")
    report.text(
        f"We use peripheral blood mononuclear cells from {adata.obs[subject_key].nunique()} "
        f"subjects, each measured in the conditions {', '.join(conditions)} "
        f"{cite('kang2018')}. The dataset has {adata.n_obs} cells and {adata.n_vars} genes. "
        f"{ref('tab:design')} lists the number of cells per subject and condition, "
        f"{ref('fig:composition')} the condition balance of every cell type."
    )
    report.table(
        summarize_design(adata, condition_key, subject_key),
        "tab:design",
        "Cells per subject and condition.",
    )
    report.figure(
        plot_condition_distribution(adata, condition_key, cell_type_key),
        "fig:composition",
        f"Fraction of cells per {condition_key} within each {cell_type_key}.",
    )

    # =========================================================================
    # Preprocessing
    # =========================================================================
    print("\nPreprocessing...")
    adata = standard_preprocess(adata, n_hvgs=n_hvgs, n_pcs=n_pcs, random_state=seed)
    print(f"HVGs: {adata.n_vars}")

    report.section("Preprocessing")
    report.text(
        f"Counts are normalized to the same total per cell and log-transformed. "
        f"We keep the {adata.n_vars} most variable genes and compute "
        f"{adata.obsm['X_pca'].shape[1]} principal components with scanpy {cite('wolf2018')}."
    )
    report.code(
        "adata = standard_preprocess(adata, n_hvgs=n_hvgs, n_pcs=n_pcs)\n"
        "compute_neighbors_and_umap(adata, use_rep='X_pca', key_added_suffix='pca')"
    )

    print("\nComputing uncorrected UMAP...")
    compute_neighbors_and_umap(
        adata, use_rep="X_pca", n_neighbors=n_neighbors, metric=metric,
        random_state=seed, key_added_suffix="pca",
    )
    report.figure(
        plot_umap_grid(adata, [condition_key, cell_type_key], basis="X_umap_pca", ncols=2),
        "fig:umap-pca",
        f"UMAP {cite('mcinnes2018')} of the uncorrected principal components, "
        f"colored by {condition_key} and {cell_type_key}.",
    )
    report.text(
        f"Without correction the cells separate by {condition_key} ({ref('fig:umap-pca')}): "
        f"the same cell type forms one cluster per condition."
    )

    # =========================================================================
    # Manual projection
    # =========================================================================
    print(f"\nManual projection (reference: {reference}, then {other})...")
    projection_keys = {}
    for ref_condition in (reference, other):
        key = "X_projection" if ref_condition == reference else f"X_projection_{ref_condition}"
        manual_projection(
            adata, condition_key, ref_condition, n_comps=n_pcs, key_added=key,
        )
        suffix = f"projection_{ref_condition}"
        compute_neighbors_and_umap(
            adata, use_rep=key, n_neighbors=n_neighbors, metric=metric,
            random_state=seed, key_added_suffix=suffix,
        )
        projection_keys[f"Reference: {ref_condition}"] = f"X_umap_{suffix}"

    report.section("Manual projection")
    report.text(
        "The simplest integration centers every condition on its own mean and "
        "projects all cells onto the principal subspace of one reference condition. "
        f"Choosing {reference} or {other} as reference gives different results "
        f"({ref('fig:projection')}): the projection is asymmetric, and structure that "
        "exists only in the non-reference condition is lost."
    )
    report.code(
        f"manual_projection(adata, '{condition_key}', reference='{reference}', n_comps={n_pcs})"
    )
    report.figure(
        plot_method_comparison(adata, projection_keys, color_by=condition_key),
        "fig:projection",
        "UMAP of the manual projection with each condition as reference.",
    )

    # =========================================================================
    # Harmony
    # =========================================================================
    print(f"\nRunning Harmony on {condition_key}...")
    run_harmony(
        adata, batch_key=condition_key, use_rep="X_pca",
        theta=harmony_theta, random_state=seed, key_added="X_harmony",
    )
    compute_neighbors_and_umap(
        adata, use_rep="X_harmony", n_neighbors=n_neighbors, metric=metric,
        random_state=seed, key_added_suffix="harmony",
    )

    report.section("Harmony")
    report.text(
        f"Harmony {cite('korsunsky2019')} iteratively clusters the cells, rewarding "
        "clusters that contain every condition, and removes the condition effect "
        f"within each cluster ({ref('fig:comparison-condition')})."
    )
    report.code(f"run_harmony(adata, batch_key='{condition_key}', theta={harmony_theta})")

    # =========================================================================
    # MNN
    # =========================================================================
    print(f"\nRunning MNN correction on {condition_key}...")
    run_mnn(
        adata, batch_key=condition_key, use_rep="X_pca",
        k=mnn_k, sigma=mnn_sigma, key_added="X_mnn",
    )
    compute_neighbors_and_umap(
        adata, use_rep="X_mnn", n_neighbors=n_neighbors, metric=metric,
        random_state=seed, key_added_suffix="mnn",
    )

    report.section("Mutual nearest neighbors")
    report.text(
        f"MNN correction {cite('haghverdi2018')} pairs cells that are mutual nearest "
        "neighbors across conditions and moves each condition along the smoothed "
        "difference vectors of these pairs."
    )
    report.code(f"run_mnn(adata, batch_key='{condition_key}', k={mnn_k}, sigma={mnn_sigma})")

    # =========================================================================
    # Comparison
    # =========================================================================
    umaps = {
        "Uncorrected": "X_umap_pca",
        f"Projection ({reference})": f"X_umap_projection_{reference}",
        "Harmony": "X_umap_harmony",
        "MNN": "X_umap_mnn",
    }

    report.section("Comparison")
    report.figure(
        plot_method_comparison(adata, umaps, color_by=condition_key),
        "fig:comparison-condition",
        f"UMAPs of all integration approaches, colored by {condition_key}.",
    )
    report.figure(
        plot_method_comparison(adata, umaps, color_by=cell_type_key),
        "fig:comparison-celltype",
        f"UMAPs of all integration approaches, colored by {cell_type_key}.",
    )

    print("\nComputing integration metrics...")
    metrics_df = compare_integration_methods(
        adata,
        condition_key=condition_key,
        embeddings={
            "Uncorrected": "X_pca",
            f"Projection ({reference})": "X_projection",
            "Harmony": "X_harmony",
            "MNN": "X_mnn",
        },
        label_key=cell_type_key,
    )
    print(metrics_df)
    metrics_df.to_csv(output_path / "metrics" / "integration_metrics.csv")

    report.text(
        f"{ref('tab:metrics')} and {ref('fig:metrics')} summarize how well the conditions "
        "mix (higher condition mixing and entropy) and how well cell types stay "
        f"separated (higher cell type silhouette). Compare {ref('fig:comparison-celltype')} "
        "to judge whether cell types were merged."
    )
    report.table(metrics_df, "tab:metrics", "Integration metrics per method.")
    report.figure(
        plot_metrics_comparison(metrics_df),
        "fig:metrics",
        "Integration metrics per method.",
    )

    # =========================================================================
    # Save
    # =========================================================================
    if save_h5ad:
        print(f"\nSaving to {output_path}...")
        adata.write_h5ad(output_path / "integration_basics.h5ad")
    adata.obs.to_csv(output_path / "cell_metadata.tsv", sep="\t")

    report.write(output_path / "integration_basics.md")

    print("\nDone!")
    return adata


def main():
    parser = argparse.ArgumentParser(
        description="Tutorial: integrating single-cell data across conditions"
    )
    parser.add_argument("--config", type=str, help="Path to YAML config file")
    parser.add_argument("--input", type=str, help="Input h5ad file")
    parser.add_argument("--dataset", type=str, default=None, help="Public dataset to fetch when --input is missing (e.g. kang2018)")
    parser.add_argument("--output", type=str, default="./results/basics/", help="Output directory")
    parser.add_argument("--condition-key", type=str, default="condition")
    parser.add_argument("--subject-key", type=str, default="subject")
    parser.add_argument("--cell-type-key", type=str, default="cell_type")
    parser.add_argument("--n-cells", type=int, default=None, help="Downsample to this many cells")
    parser.add_argument("--n-hvgs", type=int, default=500, help="Number of HVGs")
    parser.add_argument("--n-pcs", type=int, default=30, help="Number of PCs")
    parser.add_argument("--reference", type=str, default=None, help="Reference condition for the projection")
    parser.add_argument("--n-neighbors", type=int, default=30, help="Number of neighbors")
    parser.add_argument("--theta", type=float, default=2, help="Harmony theta parameter")
    parser.add_argument("--mnn-k", type=int, default=20, help="Neighbors for MNN pairs")
    parser.add_argument("--bibliography", type=str, default=None, help="YAML citation-key file")
    parser.add_argument("--no-h5ad", action="store_true", help="Don't save the processed h5ad")
    parser.add_argument("--seed", type=int, default=0)

    args = parser.parse_args()

    if args.config:
        config = load_config(args.config)
        keys = config.get("keys", {})
        filters = config["input"].get("filter") or {}
        run_integration_basics(
            input_path=config["input"]["h5ad_path"],
            output_dir=str(Path(config["output"]["dir"]) / "basics"),
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
            reference=config["projection"].get("reference"),
            n_neighbors=config["umap"].get("n_neighbors", 30),
            metric=config["umap"].get("metric", "cosine"),
            harmony_theta=config["integration"]["harmony"].get("theta", 2),
            mnn_k=config["integration"]["mnn"].get("k", 20),
            mnn_sigma=config["integration"]["mnn"].get("sigma", 0.1),
            bibliography_path=config.get("report", {}).get("bibliography"),
            save_h5ad=config["output"].get("save_h5ad", True),
            seed=config.get("seed", 0),
        )
    else:
        if not args.input:
            parser.error("Either --config or --input required")
        run_integration_basics(
            input_path=args.input,
            dataset=args.dataset,
            output_dir=args.output,
            condition_key=args.condition_key,
            subject_key=args.subject_key,
            cell_type_key=args.cell_type_key,
            n_cells=args.n_cells,
            n_hvgs=args.n_hvgs,
            n_pcs=args.n_pcs,
            reference=args.reference,
            n_neighbors=args.n_neighbors,
            harmony_theta=args.theta,
            mnn_k=args.mnn_k,
            bibliography_path=args.bibliography,
            save_h5ad=not args.no_h5ad,
            seed=args.seed,
        )


if __name__ == "__main__":
    main()
