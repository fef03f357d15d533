"""
Single-cell Condition Integration Tutorials

Reusable functions for loading, preprocessing, integrating, analysing and
reporting on single-cell RNA-seq data measured under several conditions.
"""

from .data import (
    load_dataset,
    fetch_dataset,
    filter_obs,
    filter_cells_and_genes,
    downsample_cells,
    summarize_design,
)

from .preprocessing import (
    standard_preprocess,
    store_raw_counts,
    normalize_and_log,
    find_hvgs,
    subset_to_hvgs,
    regress_and_scale,
    run_pca,
)

from .projection import (
    center_by_condition,
    reference_basis,
    manual_projection,
)

from .integration import (
    harmony_embedding,
    run_harmony,
    run_mnn,
    run_scanorama,
    compute_neighbors_and_umap,
    run_leiden_clustering,
)

from .lemur import LemurModel

from .differential import (
    pseudobulk,
    mark_neighborhood,
    pseudobulk_neighborhood_test,
    rank_markers,
)

from .evaluation import (
    compute_mixing_silhouette,
    compute_condition_entropy,
    summarize_integration_metrics,
    compare_integration_methods,
)

from .visualization import (
    plot_umap_grid,
    plot_method_comparison,
    plot_condition_distribution,
    plot_metrics_comparison,
    plot_embedding_values,
    plot_neighborhood,
    plot_volcano,
)

from .report import TutorialReport, ReportError, load_bibliography

__all__ = [
    # Data
    "load_dataset",
    "fetch_dataset",
    "filter_obs",
    "filter_cells_and_genes",
    "downsample_cells",
    "summarize_design",
    # Preprocessing
    "standard_preprocess",
    "store_raw_counts",
    "normalize_and_log",
    "find_hvgs",
    "subset_to_hvgs",
    "regress_and_scale",
    "run_pca",
    # Projection
    "center_by_condition",
    "reference_basis",
    "manual_projection",
    # Integration
    "harmony_embedding",
    "run_harmony",
    "run_mnn",
    "run_scanorama",
    "compute_neighbors_and_umap",
    "run_leiden_clustering",
    # LEMUR
    "LemurModel",
    # Differential expression
    "pseudobulk",
    "mark_neighborhood",
    "pseudobulk_neighborhood_test",
    "rank_markers",
    # Evaluation
    "compute_mixing_silhouette",
    "compute_condition_entropy",
    "summarize_integration_metrics",
    "compare_integration_methods",
    # Visualization
    "plot_umap_grid",
    "plot_method_comparison",
    "plot_condition_distribution",
    "plot_metrics_comparison",
    "plot_embedding_values",
    "plot_neighborhood",
    "plot_volcano",
    # Report
    "TutorialReport",
    "ReportError",
    "load_bibliography",
]
